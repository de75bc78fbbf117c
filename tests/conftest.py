"""
Shared fixtures: an in-memory container runtime and zero-wait components.
"""

import itertools
from dataclasses import dataclass, field

import pytest

from deploy.config import Settings
from deploy.errors import GatewayError
from deploy.gateway import HealthState
from deploy.health import HealthMonitor
from deploy.orchestrator import DeploymentConfig, DeploymentOrchestrator, parse_port_mapping
from deploy.ports import PortAllocator
from deploy.registry import ContainerRegistry
from deploy.rollback import RollbackController
from deploy.scaling import ScalingController


@dataclass
class FakeUnit:
    name: str
    image: str
    restart_policy: str | None = None
    running: bool = True
    paused: bool = False
    ports: list = field(default_factory=list)
    labels: dict = field(default_factory=dict)


class FakeGateway:
    """Behaves like the docker CLI for the operations the core uses."""

    def __init__(self):
        self.units: dict[str, FakeUnit] = {}
        self.images: set[str] = set()
        self.health: dict[str, list[HealthState]] = {}
        self.failures: set[tuple[str, str]] = set()
        self.calls: list[tuple] = []
        self.reachable = True

    def fail(self, op: str, name: str) -> None:
        self.failures.add((op, name))

    def _check(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        if (op, name) in self.failures:
            raise GatewayError(f"{op} {name} failed")

    def _unit(self, op: str, name: str) -> FakeUnit:
        if name not in self.units:
            raise GatewayError(f"Error: No such container: {name}")
        return self.units[name]

    def mutations(self) -> list[tuple]:
        reads = {"exists", "is_running", "inspect_health", "logs", "image_exists", "image_of", "published_ports"}
        return [c for c in self.calls if c[0] not in reads]

    # Queries

    def exists(self, name):
        self.calls.append(("exists", name))
        return name in self.units

    def is_running(self, name):
        self.calls.append(("is_running", name))
        unit = self.units.get(name)
        return bool(unit and unit.running)

    def image_exists(self, image):
        self.calls.append(("image_exists", image))
        return image in self.images

    def ping(self):
        return self.reachable

    def inspect_health(self, name):
        self.calls.append(("inspect_health", name))
        if name not in self.units:
            return HealthState.UNKNOWN
        script = self.health.get(name, [HealthState.NO_HEALTHCHECK])
        if len(script) > 1:
            return script.pop(0)
        return script[0]

    def logs(self, name, tail=100):
        self.calls.append(("logs", name))
        return f"logs of {name}"

    def image_of(self, name):
        self.calls.append(("image_of", name))
        unit = self.units.get(name)
        return unit.image if unit else None

    def published_ports(self, name):
        self.calls.append(("published_ports", name))
        unit = self.units.get(name)
        return [parse_port_mapping(p) for p in unit.ports] if unit else []

    # Mutations

    def create(self, spec):
        self._check("create", spec.name)
        if spec.name in self.units:
            raise GatewayError(f"Conflict. The container name {spec.name} is already in use")
        self.units[spec.name] = FakeUnit(
            name=spec.name,
            image=spec.image,
            restart_policy=spec.restart_policy,
            ports=list(spec.ports),
            labels=dict(spec.labels),
        )

    def start(self, name):
        self._check("start", name)
        unit = self._unit("start", name)
        unit.running = True
        unit.paused = False

    def stop(self, name):
        self._check("stop", name)
        unit = self._unit("stop", name)
        unit.running = False
        unit.paused = False

    def restart(self, name):
        self._check("restart", name)
        unit = self._unit("restart", name)
        unit.running = True
        unit.paused = False

    def remove(self, name, force=False):
        self._check("remove", name)
        unit = self._unit("remove", name)
        if unit.running and not force:
            raise GatewayError(f"You cannot remove a running container {name}")
        del self.units[name]

    def rename(self, old_name, new_name):
        self._check("rename", old_name)
        unit = self._unit("rename", old_name)
        if new_name in self.units:
            raise GatewayError(f"Conflict. The container name {new_name} is already in use")
        del self.units[old_name]
        unit.name = new_name
        self.units[new_name] = unit

    def pause(self, name):
        self._check("pause", name)
        unit = self._unit("pause", name)
        if not unit.running:
            raise GatewayError(f"Container {name} is not running")
        unit.paused = True

    def unpause(self, name):
        self._check("unpause", name)
        unit = self._unit("unpause", name)
        if not unit.paused:
            raise GatewayError(f"Container {name} is not paused")
        unit.paused = False

    def set_restart_policy(self, name, policy):
        self._check("set_restart_policy", name)
        self._unit("set_restart_policy", name).restart_policy = policy

    def tag(self, source, target):
        self._check("tag", target)
        self.images.add(target)

    # Helpers for arranging state

    def add_unit(self, name, image="app:old", restart_policy="always", running=True):
        self.units[name] = FakeUnit(name=name, image=image, restart_policy=restart_policy, running=running)
        return self.units[name]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        BASE_DIR=str(tmp_path / "berth"),
        HEALTH_POLL_INTERVAL=0,
        NO_HEALTHCHECK_GRACE=0,
        NAME_RELEASE_WAIT=0,
        PAUSE_SETTLE=0,
        STARTUP_WAIT=0,
        DRAIN_SECONDS=0,
        ROLLBACK_WAIT=0,
        LOCK_TIMEOUT=1,
        LOG_FILE="",
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def registry(settings):
    return ContainerRegistry(settings.apps_dir)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def monitor(gateway):
    # Each clock read advances one second
    return HealthMonitor(gateway, poll_interval=0, no_healthcheck_grace=0, clock=itertools.count().__next__)


@pytest.fixture
def orchestrator(gateway, registry, monitor, settings, sleeps):
    return DeploymentOrchestrator(
        gateway,
        registry=registry,
        health_monitor=monitor,
        settings=settings,
        sleep=sleeps.append,
    )


@pytest.fixture
def rollback_controller(gateway, registry, settings, sleeps):
    return RollbackController(gateway, registry=registry, settings=settings, sleep=sleeps.append)


@pytest.fixture
def free_ports():
    return PortAllocator(40000, 40100, probes=[lambda: {40000}])


@pytest.fixture
def scaler(gateway, registry, free_ports, settings):
    gateway.images.add("api:latest")
    return ScalingController(gateway, registry=registry, port_allocator=free_ports, settings=settings)


@pytest.fixture
def make_config(tmp_path):
    def _make(app_name="api", env=None, **overrides):
        env_file = tmp_path / f"{app_name}.env"
        if env is not None:
            env_file.write_text("".join(f"{k}={v}\n" for k, v in env.items()))
        values = {
            "app_name": app_name,
            "image_tag": "release-2",
            "env_file_path": str(env_file),
            "release_directory": str(tmp_path / "release"),
            "health_timeout_seconds": 5,
        }
        values.update(overrides)
        return DeploymentConfig(**values)

    return _make
