"""
Rollback Controller

Restores ``{app}-old``, the unit displaced by the last blue/green swap, as
the active ``{app}``. Only possible while ``{app}-old`` still exists: after
a normal cleanup it is gone, unless ``KEEP_PREVIOUS`` is set.

The current active unit is stopped and parked under the staging name
(``{app}-green``) so its name is free. If restoring fails, the parked unit
is put back.
"""

import logging
import time

from deploy import metrics
from deploy.config import Settings, settings as default_settings
from deploy.errors import DeploymentError, GatewayError, PreconditionError
from deploy.history import DeploymentHistory
from deploy.locking import AppLock
from deploy.orchestrator import PRIMARY_PROCESS, latest_image, previous_name, staging_name
from deploy.registry import ContainerRecord, ContainerRegistry

logger = logging.getLogger(__name__)


class RollbackController:
    def __init__(
        self,
        gateway,
        registry: ContainerRegistry | None = None,
        history: DeploymentHistory | None = None,
        settings: Settings = default_settings,
        sleep=time.sleep,
    ):
        self.gateway = gateway
        self.settings = settings
        self.registry = registry or ContainerRegistry(settings.apps_dir)
        self.history = history or DeploymentHistory(settings.apps_dir, limit=settings.HISTORY_LIMIT)
        self.sleep = sleep

    def rollback(self, app_name: str) -> None:
        old = previous_name(app_name)
        if not self.gateway.exists(old):
            metrics.record_rollback(False)
            raise PreconditionError(f"No previous unit found for '{app_name}' ({old} does not exist)")

        with AppLock(app_name, self.settings.locks_dir, timeout=self.settings.LOCK_TIMEOUT):
            # Checked again now that no deploy can be mid-swap
            if not self.gateway.exists(old):
                metrics.record_rollback(False)
                raise PreconditionError(f"No previous unit found for '{app_name}' ({old} does not exist)")

            logger.info("=" * 60)
            logger.info(f"ROLLBACK: {app_name} -> {old}", extra={"app_name": app_name})
            logger.info("=" * 60)

            start = time.time()
            try:
                self._rollback(app_name, old)
            except DeploymentError as e:
                logger.error(f"ROLLBACK FAILED: {e}", extra={"app_name": app_name})
                metrics.record_rollback(False)
                self._record_history(app_name, start, error=str(e))
                raise

            metrics.record_rollback(True)
            self._record_history(app_name, start)

            logger.info("=" * 60)
            logger.info(f"ROLLBACK COMPLETE: previous {app_name} is active again")
            logger.info("=" * 60)

    def _rollback(self, app: str, old: str) -> None:
        parked = staging_name(app)
        has_active = self.gateway.exists(app)

        if has_active:
            if self.gateway.exists(parked):
                logger.info(f"  Removing stale {parked}...")
                self._discard(parked)

            logger.info(f"  Stopping current {app}...")
            try:
                self.gateway.stop(app)
            except GatewayError as e:
                logger.warning(f"  Warning: could not stop {app}: {e}")
            try:
                self.gateway.rename(app, parked)
            except GatewayError as e:
                self._start_quietly(app)
                raise DeploymentError(f"Could not move current {app} aside: {e}") from e

        # The previous unit may still be paused from the cut-over
        try:
            self.gateway.unpause(old)
        except GatewayError as e:
            logger.debug(f"  Unpause of {old} skipped: {e}")

        logger.info(f"  Restoring {old} as {app}...")
        renamed = False
        try:
            self.gateway.rename(old, app)
            renamed = True
            self.gateway.start(app)
        except GatewayError as e:
            self._undo(app, old, parked if has_active else None, renamed)
            raise DeploymentError(f"Failed to restore previous unit {old}: {e}") from e

        self.sleep(self.settings.ROLLBACK_WAIT)
        if not self.gateway.is_running(app):
            logs = self.gateway.logs(app)
            self._undo(app, old, parked if has_active else None, renamed=True)
            raise DeploymentError(f"Restored unit {app} is not running, logs:\n{logs}")

        self._set_restart_policy(app, "always")
        if has_active:
            logger.info(f"  Removing rolled-back release ({parked})...")
            self._discard(parked)

        self._record_primary(app)
        self._tag_latest(app)

    # ── Recovery Helpers ──────────────────────────────────────────

    def _undo(self, app: str, old: str, parked: str | None, renamed: bool) -> None:
        if renamed:
            try:
                self.gateway.stop(app)
            except GatewayError as e:
                logger.debug(f"  Stop of {app} failed: {e}")
            try:
                self.gateway.rename(app, old)
            except GatewayError as e:
                logger.critical(f"  CRITICAL: could not rename {app} back to {old}: {e}")
                return
        if parked is not None:
            try:
                self.gateway.rename(parked, app)
            except GatewayError as e:
                logger.critical(f"  CRITICAL: could not restore {parked} as {app}: {e}")
                return
            self._start_quietly(app)

    def _start_quietly(self, name: str) -> None:
        try:
            self.gateway.start(name)
        except GatewayError as e:
            logger.critical(f"  CRITICAL: could not restart {name}: {e}")

    def _discard(self, name: str) -> None:
        try:
            self.gateway.remove(name, force=True)
        except GatewayError as e:
            logger.warning(f"  Warning: could not remove {name}: {e}")

    def _set_restart_policy(self, name: str, policy: str) -> None:
        try:
            self.gateway.set_restart_policy(name, policy)
        except GatewayError as e:
            logger.warning(f"  Warning: could not set restart policy of {name}: {e}")

    def _record_primary(self, app: str) -> None:
        # Ports come from the restored unit itself, not from the release it replaced
        bindings = self.gateway.published_ports(app)
        host_port, internal_port = bindings[0] if bindings else (None, None)
        record = ContainerRecord(
            name=app,
            app_name=app,
            process_type=PRIMARY_PROCESS,
            ordinal=1,
            host_port=host_port,
            internal_port=internal_port,
        )
        try:
            self.registry.save(record)
        except OSError as e:
            logger.warning(f"  Warning: could not record {app} in registry: {e}")

    def _tag_latest(self, app: str) -> None:
        image = self.gateway.image_of(app)
        target = latest_image(app)
        if image is None or image == target:
            return
        try:
            self.gateway.tag(image, target)
        except GatewayError as e:
            logger.error(f"  Could not tag {image} as {target}, scaled units will not run it: {e}")

    def _record_history(self, app_name: str, start: float, error: str | None = None) -> None:
        entry = {
            "strategy": "rollback",
            "duration_seconds": round(time.time() - start, 1),
            "success": error is None,
            "rollback": True,
        }
        if error is not None:
            entry["error"] = error
        try:
            self.history.record(app_name, **entry)
        except OSError as e:
            logger.warning(f"  Warning: could not write deployment history: {e}")
