import logging

from deploy.config import Settings, settings as default_settings
from deploy.errors import GatewayError
from deploy.locking import AppLock
from deploy.registry import ContainerRegistry, UnitStatus

logger = logging.getLogger(__name__)


class ProcessManager:
    """Start, stop and restart every recorded unit of an application."""

    def __init__(self, gateway, registry: ContainerRegistry | None = None, settings: Settings = default_settings):
        self.gateway = gateway
        self.settings = settings
        self.registry = registry or ContainerRegistry(settings.apps_dir)

    def _apply(self, app_name: str, verb: str, action, status: UnitStatus) -> list[str]:
        failed = []
        with AppLock(app_name, self.settings.locks_dir, timeout=self.settings.LOCK_TIMEOUT):
            records = self.registry.list_all(app_name)
            if not records:
                logger.info(f"No processes found for app '{app_name}'")
                return failed

            for record in records:
                logger.info(f"-----> {verb} {record.name}")
                try:
                    action(record.name)
                except GatewayError as e:
                    logger.error(f"       Error: {verb.lower()} {record.name} failed: {e}")
                    failed.append(record.name)
                    continue
                self.registry.update_status(app_name, record.process_type, record.ordinal, status)
        return failed

    def start(self, app_name: str) -> list[str]:
        return self._apply(app_name, "Starting", self.gateway.start, UnitStatus.RUNNING)

    def stop(self, app_name: str) -> list[str]:
        return self._apply(app_name, "Stopping", self.gateway.stop, UnitStatus.STOPPED)

    def restart(self, app_name: str) -> list[str]:
        return self._apply(app_name, "Restarting", self.gateway.restart, UnitStatus.RUNNING)

    def status(self, app_name: str) -> list[dict]:
        rows = []
        for record in self.registry.list_all(app_name):
            running = self.gateway.is_running(record.name)
            rows.append({
                "name": record.name,
                "process_type": record.process_type,
                "ordinal": record.ordinal,
                "host_port": record.host_port,
                "internal_port": record.internal_port,
                "recorded_status": record.status.value,
                "running": running,
                "drift": running != (record.status == UnitStatus.RUNNING),
            })
        return rows
