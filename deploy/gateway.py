"""
Container Runtime Gateway

Thin synchronous facade over the docker CLI. Every operation builds an
argument list (never a shell string) and runs it through ``run()``, which
raises ``GatewayError`` on a non-zero exit. The gateway owns no state.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum

from deploy.errors import GatewayError

logger = logging.getLogger(__name__)

LABEL_KEY = "createdby"


class HealthState(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NO_HEALTHCHECK = "no-healthcheck-configured"
    UNKNOWN = "unknown"


@dataclass
class RunSpec:
    """Typed options for ``docker run -d``."""

    name: str
    image: str
    ports: list[str] = field(default_factory=list)
    env_file: str | None = None
    volumes: list[str] = field(default_factory=list)
    working_dir: str | None = None
    restart_policy: str | None = None
    network_mode: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    ulimits: dict[str, int] = field(default_factory=dict)
    command: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        args = ["run", "-d", "--name", self.name]
        for key, value in self.labels.items():
            args += ["--label", f"{key}={value}"]
        if self.restart_policy:
            args += ["--restart", self.restart_policy]
        if self.network_mode:
            args += ["--network", self.network_mode]
        for port in self.ports:
            args += ["-p", port]
        if self.env_file:
            args += ["--env-file", str(self.env_file)]
        for volume in self.volumes:
            args += ["-v", volume]
        if self.working_dir:
            args += ["-w", self.working_dir]
        for limit, value in self.ulimits.items():
            args += ["--ulimit", f"{limit}={value}:{value}"]
        args.append(self.image)
        args += list(self.command)
        return args


class DockerGateway:
    def __init__(
        self,
        docker_bin: str = "docker",
        platform_name: str = "berth",
        timeout: int = 60,
        runner=subprocess.run,
    ):
        self.docker_bin = docker_bin
        self.platform_name = platform_name
        self.timeout = timeout
        self._runner = runner

    @property
    def label(self) -> str:
        return f"{LABEL_KEY}={self.platform_name}"

    # ── Command Execution ─────────────────────────────────────────

    def run(self, args: list[str], timeout: int | None = None, check: bool = True) -> subprocess.CompletedProcess:
        argv = [self.docker_bin, *args]
        cmd_str = " ".join(argv)
        timeout = timeout or self.timeout

        logger.debug(f"  $ {cmd_str}")
        try:
            result = self._runner(argv, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise GatewayError(f"Command timed out after {timeout}s: {cmd_str}", argv=argv)
        except OSError as e:
            raise GatewayError(f"Could not execute {cmd_str}: {e}", argv=argv)

        if check and result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            logger.debug(f"  Command failed (rc={result.returncode}): {output}")
            raise GatewayError(
                f"Command failed: {cmd_str}\nstderr: {output}",
                argv=argv,
                returncode=result.returncode,
                output=output,
            )
        return result

    # ── Queries ───────────────────────────────────────────────────

    def list_by_label(self, all: bool = False) -> list[dict]:
        args = ["ps", "--format", "json", "--filter", f"label={self.label}"]
        if all:
            args.insert(1, "-a")
        result = self.run(args, check=False)
        if result.returncode != 0:
            return []

        containers = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                containers.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return containers

    def _names_by_filter(self, name: str, all: bool) -> list[str]:
        args = ["ps", "--format", "{{.Names}}", "--filter", f"name=^/?{re.escape(name)}$"]
        if all:
            args.insert(1, "-a")
        result = self.run(args, check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _lookup(self, name: str, all: bool) -> bool:
        for container in self.list_by_label(all=all):
            names = container.get("Names", "")
            if name in [n.strip() for n in names.split(",")]:
                return True
        # Units created before labelling only match by name
        return name in self._names_by_filter(name, all=all)

    def exists(self, name: str) -> bool:
        return self._lookup(name, all=True)

    def is_running(self, name: str) -> bool:
        return self._lookup(name, all=False)

    def image_exists(self, image: str) -> bool:
        return self.run(["image", "inspect", image], check=False).returncode == 0

    def ping(self) -> bool:
        try:
            return self.run(["version", "--format", "{{.Server.Version}}"], timeout=10, check=False).returncode == 0
        except GatewayError:
            return False

    def inspect_health(self, name: str) -> HealthState:
        try:
            result = self.run(
                ["inspect", "--format", "{{json .State.Health}}", name], timeout=10, check=False
            )
        except GatewayError:
            return HealthState.UNKNOWN
        if result.returncode != 0:
            return HealthState.UNKNOWN

        try:
            health = json.loads(result.stdout.strip() or "null")
        except json.JSONDecodeError:
            return HealthState.UNKNOWN
        if health is None:
            return HealthState.NO_HEALTHCHECK

        try:
            return HealthState(health.get("Status", "unknown"))
        except ValueError:
            return HealthState.UNKNOWN

    def image_of(self, name: str) -> str | None:
        """Image reference a unit was created from, or None if it cannot be inspected."""
        try:
            result = self.run(["inspect", "--format", "{{.Config.Image}}", name], timeout=10, check=False)
        except GatewayError:
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def published_ports(self, name: str) -> list[tuple[int, int]]:
        """``(host_port, container_port)`` pairs bound for a unit. Empty when unknown."""
        try:
            result = self.run(
                ["inspect", "--format", "{{json .HostConfig.PortBindings}}", name], timeout=10, check=False
            )
        except GatewayError:
            return []
        if result.returncode != 0:
            return []
        try:
            bindings = json.loads(result.stdout.strip() or "null") or {}
        except json.JSONDecodeError:
            return []

        ports = []
        for container_port, hosts in bindings.items():
            for host in hosts or []:
                host_port = host.get("HostPort", "")
                if host_port.isdigit():
                    ports.append((int(host_port), int(container_port.split("/")[0])))
        return ports

    def logs(self, name: str, tail: int | None = 100) -> str:
        """Recent output of a unit, for diagnostics only. Never raises."""
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        args.append(name)
        try:
            result = self.run(args, timeout=10, check=False)
        except GatewayError as e:
            logger.debug(f"  Could not fetch logs for {name}: {e}")
            return ""
        return (result.stdout or "") + (result.stderr or "")

    # ── Mutations ─────────────────────────────────────────────────

    def create(self, spec: RunSpec) -> None:
        spec.labels.setdefault(LABEL_KEY, self.platform_name)
        self.run(spec.to_args())

    def start(self, name: str) -> None:
        self.run(["start", name])

    def stop(self, name: str) -> None:
        self.run(["stop", name])

    def restart(self, name: str) -> None:
        self.run(["restart", name])

    def remove(self, name: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(name)
        self.run(args)

    def rename(self, old_name: str, new_name: str) -> None:
        self.run(["rename", old_name, new_name])

    def pause(self, name: str) -> None:
        self.run(["pause", name])

    def unpause(self, name: str) -> None:
        self.run(["unpause", name])

    def set_restart_policy(self, name: str, policy: str) -> None:
        self.run(["update", "--restart", policy, name])

    def tag(self, source: str, target: str) -> None:
        self.run(["tag", source, target])
