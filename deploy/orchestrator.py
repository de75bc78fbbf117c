"""
Deployment Orchestrator

Replaces an application's running unit with a freshly built image, using
one of two strategies:

  standard    stop and remove ``{app}``, then start the new unit. Accepts a
              short availability gap.
  blue-green  start ``{app}-green`` next to ``{app}``, gate on its health,
              then swap names (``{app}`` -> ``{app}-old``, ``{app}-green`` ->
              ``{app}``) and retire ``{app}-old`` after a drain period.

The previously working unit is never removed before its replacement has
passed the health gate. The strategy is chosen from ``ZERO_DOWNTIME`` in the
application's env file (enabled unless explicitly disabled).
"""

import logging
import time
from pathlib import Path

from pydantic import BaseModel

from deploy import envfile, metrics
from deploy.config import Settings, settings as default_settings
from deploy.errors import DeploymentError, GatewayError, HealthCheckError
from deploy.gateway import RunSpec
from deploy.health import HealthMonitor
from deploy.history import DeploymentHistory
from deploy.locking import AppLock
from deploy.registry import ContainerRecord, ContainerRegistry

logger = logging.getLogger(__name__)

PRIMARY_PROCESS = "primary"
LATEST_TAG = "latest"


class DeploymentConfig(BaseModel):
    app_name: str
    image_tag: str
    env_file_path: str | None = None
    release_directory: str
    zero_downtime_requested: bool = True
    health_timeout_seconds: int = 180
    network_mode: str = "bridge"
    port_mappings: list[str] = []
    volume_mounts: list[str] = []
    default_port: int | None = None

    @property
    def image(self) -> str:
        return f"{self.app_name}:{self.image_tag}"


def staging_name(app_name: str) -> str:
    return f"{app_name}-green"


def previous_name(app_name: str) -> str:
    return f"{app_name}-old"


def latest_image(app_name: str) -> str:
    """Image that extra process units of an app run: the last deployed release."""
    return f"{app_name}:{LATEST_TAG}"


def parse_port_mapping(mapping: str) -> tuple[int | None, int | None]:
    """Host and container port of a ``[ip:]host:container[/proto]`` mapping."""
    parts = mapping.split("/")[0].split(":")
    try:
        if len(parts) == 1:
            return None, int(parts[0])
        return int(parts[-2]) if parts[-2] else None, int(parts[-1])
    except ValueError:
        return None, None


class DeploymentOrchestrator:
    def __init__(
        self,
        gateway,
        registry: ContainerRegistry | None = None,
        history: DeploymentHistory | None = None,
        health_monitor: HealthMonitor | None = None,
        settings: Settings = default_settings,
        sleep=time.sleep,
    ):
        self.gateway = gateway
        self.settings = settings
        self.registry = registry or ContainerRegistry(settings.apps_dir)
        self.history = history or DeploymentHistory(settings.apps_dir, limit=settings.HISTORY_LIMIT)
        self.health_monitor = health_monitor or HealthMonitor(
            gateway,
            poll_interval=settings.HEALTH_POLL_INTERVAL,
            no_healthcheck_grace=settings.NO_HEALTHCHECK_GRACE,
        )
        self.sleep = sleep

    def _lock(self, app_name: str) -> AppLock:
        return AppLock(app_name, self.settings.locks_dir, timeout=self.settings.LOCK_TIMEOUT)

    # ── Strategy Selection ────────────────────────────────────────

    def zero_downtime_enabled(self, config: DeploymentConfig) -> bool:
        values = envfile.read_env(config.env_file_path)
        if "ZERO_DOWNTIME" not in values:
            return config.zero_downtime_requested
        return envfile.is_zero_downtime_enabled(config.env_file_path)

    def deploy(self, config: DeploymentConfig) -> None:
        with self._lock(config.app_name):
            zero_downtime = self.zero_downtime_enabled(config)
            strategy = "blue-green" if zero_downtime else "standard"
            deployment_start = time.time()

            logger.info("=" * 60)
            logger.info(
                f"DEPLOYMENT START: {config.app_name} -> {config.image} ({strategy})",
                extra={"app_name": config.app_name, "strategy": strategy},
            )
            logger.info("=" * 60)

            try:
                if zero_downtime:
                    self.blue_green_deploy(config)
                else:
                    self.standard_deploy(config)
            except DeploymentError as e:
                elapsed = round(time.time() - deployment_start, 1)
                logger.error(
                    f"DEPLOYMENT FAILED: {e}",
                    extra={"app_name": config.app_name, "strategy": strategy, "duration_seconds": elapsed},
                )
                metrics.record_deployment(strategy, False, elapsed)
                self._record_history(config, strategy, elapsed, error=str(e))
                raise

            self._tag_latest(config)
            elapsed = round(time.time() - deployment_start, 1)
            metrics.record_deployment(strategy, True, elapsed)
            self._record_history(config, strategy, elapsed)

            logger.info("=" * 60)
            logger.info(
                f"DEPLOYMENT COMPLETE: {config.app_name} is running {config.image} ({elapsed}s)",
                extra={"app_name": config.app_name, "strategy": strategy, "duration_seconds": elapsed},
            )
            logger.info("=" * 60)

    # ── Container Configuration ───────────────────────────────────

    def _ports(self, config: DeploymentConfig, container_port: int | None) -> list[str]:
        if config.network_mode == "host":
            logger.info("  Using host network (all ports exposed)")
            return []
        if config.port_mappings:
            return list(config.port_mappings)
        if container_port is not None:
            return [f"{container_port}:{container_port}"]
        return []

    def build_run_spec(
        self, config: DeploymentConfig, name: str, restart_policy: str, container_port: int | None
    ) -> RunSpec:
        env_file = config.env_file_path
        if env_file and not Path(env_file).is_file():
            env_file = None

        return RunSpec(
            name=name,
            image=config.image,
            ports=self._ports(config, container_port),
            env_file=env_file,
            volumes=[f"{config.release_directory}:{self.settings.CONTAINER_WORKDIR}", *config.volume_mounts],
            working_dir=self.settings.CONTAINER_WORKDIR,
            restart_policy=restart_policy,
            network_mode=config.network_mode,
            ulimits={"nofile": self.settings.NOFILE_LIMIT, "nproc": self.settings.NPROC_LIMIT},
        )

    # ── Best-effort Helpers ───────────────────────────────────────

    def _discard(self, name: str) -> None:
        """Stop and force-remove a unit. Failures are logged, not raised."""
        try:
            self.gateway.stop(name)
        except GatewayError as e:
            logger.debug(f"  Stop of {name} failed: {e}")
        try:
            self.gateway.remove(name, force=True)
        except GatewayError as e:
            logger.warning(f"  Warning: could not remove {name}: {e}", extra={"container": name})

    def _set_restart_policy(self, name: str, policy: str) -> None:
        try:
            self.gateway.set_restart_policy(name, policy)
        except GatewayError as e:
            logger.warning(f"  Warning: could not set restart policy of {name} to {policy}: {e}")

    def _tag_latest(self, config: DeploymentConfig) -> None:
        """Point ``{app}:latest`` at the release now active, for units started by scaling."""
        target = latest_image(config.app_name)
        if config.image == target:
            return
        try:
            self.gateway.tag(config.image, target)
        except GatewayError as e:
            logger.error(
                f"  Could not tag {config.image} as {target}, scaled units will not run this release: {e}",
                extra={"app_name": config.app_name},
            )

    def _record_primary(self, config: DeploymentConfig, container_port: int | None) -> None:
        host_port = None
        if config.port_mappings:
            host_port, container_port = parse_port_mapping(config.port_mappings[0])
        elif config.network_mode != "host":
            host_port = container_port

        record = ContainerRecord(
            name=config.app_name,
            app_name=config.app_name,
            process_type=PRIMARY_PROCESS,
            ordinal=1,
            host_port=host_port,
            internal_port=container_port,
        )
        try:
            self.registry.save(record)
        except OSError as e:
            logger.warning(f"  Warning: could not record {config.app_name} in registry: {e}")

    def _record_history(self, config: DeploymentConfig, strategy: str, elapsed: float, error: str | None = None):
        entry = {
            "strategy": strategy,
            "image": config.image,
            "duration_seconds": elapsed,
            "success": error is None,
        }
        if error is not None:
            entry["error"] = error
        try:
            self.history.record(config.app_name, **entry)
        except OSError as e:
            logger.warning(f"  Warning: could not write deployment history: {e}")

    # ── Standard Strategy ─────────────────────────────────────────

    def standard_deploy(self, config: DeploymentConfig) -> None:
        app = config.app_name

        # Step 1: Remove the current unit
        if self.gateway.exists(app):
            logger.info(f"Step 1: Stopping old container {app}...")
            self._discard(app)
            self.registry.remove(app, PRIMARY_PROCESS, 1)
            self.sleep(self.settings.NAME_RELEASE_WAIT)

        # Step 2: Start the new unit
        container_port = envfile.container_port(config.env_file_path, config.default_port)
        spec = self.build_run_spec(config, app, "no", container_port)
        logger.info(f"Step 2: Starting new container {app}...")
        try:
            self.gateway.create(spec)
        except GatewayError as e:
            raise DeploymentError(f"Failed to start container {app}: {e}") from e

        # Step 3: Verify it stayed up
        logger.info("Step 3: Waiting for container to be ready...")
        self.sleep(self.settings.STARTUP_WAIT)
        if not self.gateway.is_running(app):
            logs = self.gateway.logs(app)
            raise DeploymentError(f"Container '{app}' failed to start, logs:\n{logs}")

        self._record_primary(config, container_port)
        logger.info(f"  Active container: {app} (port {container_port})")

    # ── Blue/Green Strategy ───────────────────────────────────────

    def blue_green_deploy(self, config: DeploymentConfig) -> None:
        app = config.app_name
        green = staging_name(app)
        old = previous_name(app)
        container_port = envfile.container_port(config.env_file_path, config.default_port)

        # Step 1: Stale staging unit from a previous failed attempt
        if self.gateway.exists(green):
            logger.info(f"Step 1: Removing stale {green}...")
            self._discard(green)

        # Step 2: Start the staging unit
        logger.info(f"Step 2: Starting {green}...")
        spec = self.build_run_spec(config, green, "unless-stopped", container_port)
        try:
            self.gateway.create(spec)
        except GatewayError as e:
            self._discard(green)
            raise DeploymentError(f"Failed to start {green}: {e}") from e

        # Step 3: Health gate. The active unit has not been touched yet.
        logger.info(f"Step 3: Health check (timeout={config.health_timeout_seconds}s)...")
        try:
            self.health_monitor.wait_until_healthy(green, config.health_timeout_seconds)
        except HealthCheckError:
            logger.info(f"  Stopping failed {green}...")
            self._discard(green)
            raise

        # Step 4: First deployment
        if not self.gateway.exists(app):
            logger.info(f"Step 4: First deployment, activating {green} as {app}")
            try:
                self.gateway.rename(green, app)
            except GatewayError as e:
                self._discard(green)
                raise DeploymentError(f"Failed to rename {green} to {app}: {e}") from e
            self._set_restart_policy(app, "always")
            self._record_primary(config, container_port)
            return

        # ── POINT OF NO RETURN ──
        # Before this: failure = remove green
        # After this: failure = restore the previous active unit

        if self.gateway.exists(old):
            logger.info(f"  Removing leftover {old} from an earlier release...")
            self._discard(old)

        # Step 5: Cut over
        logger.info(f"Step 5: Switching traffic {green} -> {app}...")
        self._cut_over(app, green, old)

        # Step 6: Drain and retire the previous unit
        logger.info(f"Step 6: Draining {old} ({self.settings.DRAIN_SECONDS}s)...")
        self.sleep(self.settings.DRAIN_SECONDS)
        self._retire(old)

        self._record_primary(config, container_port)

    def _cut_over(self, app: str, green: str, old: str) -> None:
        paused = False
        if self.gateway.is_running(app):
            logger.info(f"  Pausing {app}...")
            try:
                self.gateway.pause(app)
                paused = True
            except GatewayError as e:
                logger.warning(f"  Warning: could not pause {app}: {e}")
            self.sleep(self.settings.PAUSE_SETTLE)

        renamed_active = False
        try:
            self.gateway.rename(app, old)
            renamed_active = True
            self.gateway.rename(green, app)
        except GatewayError as e:
            logger.error(f"  Name swap failed: {e}")
            self._restore_active(app, old, renamed_active, paused)
            self._discard(green)
            raise DeploymentError(f"Failed to switch traffic to {green}: {e}") from e

        self._set_restart_policy(app, "always")
        logger.info(f"  Traffic switch complete ({green} -> {app})")

    def _restore_active(self, app: str, old: str, renamed: bool, paused: bool) -> None:
        if renamed:
            try:
                self.gateway.rename(old, app)
            except GatewayError as e:
                logger.critical(f"  CRITICAL: could not rename {old} back to {app}: {e}")
                return
        if paused:
            try:
                self.gateway.unpause(app)
            except GatewayError as e:
                logger.critical(f"  CRITICAL: could not unpause {app}: {e}")
                return
        logger.info(f"  {app} restored")

    def _retire(self, old: str) -> None:
        if not self.settings.KEEP_PREVIOUS:
            self._discard(old)
            logger.info(f"  {old} stopped and removed")
            return

        # Kept stopped for rollback
        try:
            self.gateway.unpause(old)
        except GatewayError as e:
            logger.debug(f"  Unpause of {old} failed: {e}")
        self._set_restart_policy(old, "no")
        try:
            self.gateway.stop(old)
            logger.info(f"  {old} stopped and kept for rollback")
        except GatewayError as e:
            logger.warning(f"  Warning: could not stop {old}, removing it: {e}")
            self._discard(old)
