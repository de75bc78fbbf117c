"""
Scaling Controller

Adjusts the number of ``{app}-{process}-{ordinal}`` units of one process
type. Each unit is created or removed independently: a failure is logged,
counted, and the batch carries on with the remaining units.
"""

import logging
from dataclasses import dataclass, field

from deploy import metrics, plugins
from deploy.config import Settings, settings as default_settings
from deploy.errors import DeploymentError, GatewayError, PreconditionError
from deploy.gateway import RunSpec
from deploy.locking import AppLock
from deploy.ports import PortAllocator
from deploy.orchestrator import latest_image
from deploy.registry import ContainerRecord, ContainerRegistry, unit_name

logger = logging.getLogger(__name__)


@dataclass
class ScaleResult:
    app_name: str
    process_type: str
    previous: int
    target: int
    created: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    failed_attempts: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.removed)


def parse_scale_argument(arg: str) -> tuple[str, int]:
    """Parse ``web=4`` into ``("web", 4)``."""
    parts = arg.split("=")
    if len(parts) != 2 or not parts[0]:
        raise ValueError(f"invalid scale format: {arg} (expected: process=count)")

    process_type, count = parts
    try:
        count = int(count)
    except ValueError:
        raise ValueError(f"invalid count: {count}")
    if count < 0:
        raise ValueError(f"count must be non-negative: {count}")
    return process_type, count


class ScalingController:
    def __init__(
        self,
        gateway,
        registry: ContainerRegistry | None = None,
        port_allocator: PortAllocator | None = None,
        settings: Settings = default_settings,
    ):
        self.gateway = gateway
        self.settings = settings
        self.registry = registry or ContainerRegistry(settings.apps_dir)
        self.port_allocator = port_allocator or PortAllocator(
            settings.PORT_RANGE_START, settings.PORT_RANGE_END
        )

    def image_for(self, app_name: str) -> str:
        return latest_image(app_name)

    def scale(self, app_name: str, process_type: str, target: int) -> ScaleResult:
        if target < 0:
            raise ValueError(f"count must be non-negative: {target}")

        with AppLock(app_name, self.settings.locks_dir, timeout=self.settings.LOCK_TIMEOUT):
            current = self.registry.list_units(app_name, process_type)
            result = ScaleResult(app_name, process_type, previous=len(current), target=target)

            if target == len(current):
                logger.info(f"{app_name}/{process_type} already at {target} unit(s)")
                return result

            logger.info(
                f"Scaling {app_name}/{process_type}: {len(current)} -> {target}",
                extra={"app_name": app_name, "process_type": process_type},
            )
            if target > len(current):
                self._scale_up(app_name, process_type, target - len(current), result)
            else:
                self._scale_down(app_name, process_type, current, len(current) - target, result)

            remaining = len(self.registry.list_units(app_name, process_type))
            metrics.set_managed_units(app_name, process_type, remaining)
            logger.info(
                f"Scaled {app_name}/{process_type} to {remaining} unit(s) "
                f"(created={result.created}, removed={result.removed}, "
                f"failed attempts={result.failed_attempts})"
            )

        if result.changed:
            plugins.notify_scale_change(self.settings.plugins_dir, app_name, process_type)
        return result

    # ── Scale Up ──────────────────────────────────────────────────

    def _scale_up(self, app_name: str, process_type: str, count: int, result: ScaleResult) -> None:
        reserved = {r.host_port for r in self.registry.list_all(app_name) if r.host_port}
        internal_port = self.settings.internal_port(process_type)

        for _ in range(count):
            ordinal = self.registry.next_ordinal(app_name, process_type)
            name = unit_name(app_name, process_type, ordinal)
            try:
                host_port = self.port_allocator.next_available_port(exclude=reserved)
                reserved.add(host_port)
                self._create_unit(app_name, name, host_port, internal_port)
                record = ContainerRecord.for_unit(app_name, process_type, ordinal, host_port, internal_port)
                self.registry.save(record)
            except (DeploymentError, OSError) as e:
                logger.error(
                    f"  Failed to create {name}: {e}",
                    extra={"app_name": app_name, "process_type": process_type, "ordinal": ordinal},
                )
                metrics.record_unit_failure("scale-up")
                result.failed_attempts += 1
                # Nothing was recorded, so the next attempt reuses this ordinal
                if ordinal not in result.failed:
                    result.failed.append(ordinal)
                continue

            metrics.record_scale(process_type, "up")
            result.created.append(ordinal)
            logger.info(f"  Started {name} on port {host_port}", extra={"container": name, "port": host_port})

    def _create_unit(self, app_name: str, name: str, host_port: int, internal_port: int) -> None:
        image = self.image_for(app_name)
        if not self.gateway.image_exists(image):
            raise PreconditionError(f"image {image} not found, deploy the app first")

        env_file = self.settings.env_file(app_name)
        spec = RunSpec(
            name=name,
            image=image,
            ports=[f"{host_port}:{internal_port}"],
            env_file=str(env_file) if env_file.is_file() else None,
            restart_policy="always",
            ulimits={"nofile": self.settings.NOFILE_LIMIT, "nproc": self.settings.NPROC_LIMIT},
        )
        try:
            self.gateway.create(spec)
        except GatewayError:
            # docker run can leave a created-but-not-started unit behind
            try:
                self.gateway.remove(name, force=True)
            except GatewayError as e:
                logger.debug(f"  Cleanup of {name} failed: {e}")
            raise

    # ── Scale Down ────────────────────────────────────────────────

    def _scale_down(
        self, app_name: str, process_type: str, current: list[ContainerRecord], count: int, result: ScaleResult
    ) -> None:
        # Newest first
        victims = sorted(current, key=lambda r: r.ordinal, reverse=True)[:count]

        for record in victims:
            try:
                self._remove_unit(record.name)
            except GatewayError as e:
                logger.error(
                    f"  Failed to remove {record.name}: {e}",
                    extra={"app_name": app_name, "process_type": process_type, "ordinal": record.ordinal},
                )
                metrics.record_unit_failure("scale-down")
                result.failed_attempts += 1
                result.failed.append(record.ordinal)
                continue

            self.registry.remove(app_name, process_type, record.ordinal)
            metrics.record_scale(process_type, "down")
            result.removed.append(record.ordinal)
            logger.info(f"  Removed {record.name}", extra={"container": record.name})

    def _remove_unit(self, name: str) -> None:
        try:
            self.gateway.stop(name)
        except GatewayError as e:
            logger.debug(f"  Stop of {name} failed: {e}")
        try:
            self.gateway.remove(name, force=True)
        except GatewayError:
            # Already gone from the runtime: the record is all that is left
            if self.gateway.exists(name):
                raise
