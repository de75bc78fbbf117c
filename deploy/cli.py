#!/usr/bin/env python3
"""
berth command line

Runs on the HOST machine (not inside a container).

Usage:
    berth deploy api --tag release-20240101 --release-dir /opt/berth/apps/api/releases/20240101
    berth rollback api
    berth scale api web=4 worker=2
    berth ps api
    berth start|stop|restart api
    berth history api
    berth serve --port 8700
"""

import argparse
import sys

import uvicorn

from deploy.config import settings
from deploy.errors import DeploymentError
from deploy.gateway import DockerGateway
from deploy.history import DeploymentHistory
from deploy.logging_config import setup_logging
from deploy.orchestrator import DeploymentConfig, DeploymentOrchestrator
from deploy.processes import ProcessManager
from deploy.rollback import RollbackController
from deploy.scaling import ScalingController, parse_scale_argument


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="berth", description="Single-host container deployments")
    parser.add_argument("--log-level", default=None, help="Override BERTH_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Release a built image")
    deploy.add_argument("app")
    deploy.add_argument("--tag", default="latest", help="Image tag (image is <app>:<tag>)")
    deploy.add_argument("--release-dir", required=True, help="Release directory mounted into the unit")
    deploy.add_argument("--env-file", default=None, help="Defaults to <base>/apps/<app>/shared/.env")
    deploy.add_argument("--health-timeout", type=int, default=settings.HEALTH_TIMEOUT)
    deploy.add_argument("--network", default="bridge")
    deploy.add_argument("-p", "--port", action="append", default=[], help="host:container, repeatable")
    deploy.add_argument("-v", "--volume", action="append", default=[], help="Extra volume, repeatable")
    deploy.add_argument("--default-port", type=int, default=settings.DEFAULT_CONTAINER_PORT)
    deploy.add_argument("--standard", action="store_true", help="Request stop-then-start deployment")

    rollback = sub.add_parser("rollback", help="Restore the unit displaced by the last swap")
    rollback.add_argument("app")

    scale = sub.add_parser("scale", help="Scale process types")
    scale.add_argument("app")
    scale.add_argument("scales", nargs="+", metavar="process=count")

    for name in ("ps", "start", "stop", "restart", "history"):
        cmd = sub.add_parser(name)
        cmd.add_argument("app")

    serve = sub.add_parser("serve", help="Run the status API")
    serve.add_argument("--host", default=settings.API_HOST)
    serve.add_argument("--port", type=int, default=settings.API_PORT)

    return parser


def print_ps(rows: list[dict]) -> None:
    if not rows:
        print("No processes recorded.")
        return
    print(f"{'NAME':<32} {'STATUS':<10} {'RUNNING':<8} PORTS")
    for row in rows:
        ports = f"{row['host_port']}->{row['internal_port']}" if row["host_port"] else "-"
        drift = " (drift)" if row["drift"] else ""
        print(f"{row['name']:<32} {row['recorded_status']:<10} {str(row['running']).lower():<8} {ports}{drift}")


def print_history(history: list[dict]) -> None:
    if not history:
        print("No deployment history.")
        return

    print(f"\n{'=' * 70}")
    print(f"  Deployment History (last {len(history)} entries)")
    print(f"{'=' * 70}")
    for i, entry in enumerate(reversed(history), 1):
        status = "OK" if entry.get("success") else "FAILED"
        rollback = " [ROLLBACK]" if entry.get("rollback") else ""
        error = f" - {entry['error'].splitlines()[0]}" if entry.get("error") else ""
        print(
            f"  {i}. [{status}{rollback}] {entry.get('strategy', '?')} "
            f"{entry.get('image', '')} "
            f"| {entry.get('duration_seconds', '?')}s "
            f"| {entry.get('timestamp', '?')}{error}"
        )
    print(f"{'=' * 70}\n")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    if args.command == "serve":
        uvicorn.run("api.main:app", host=args.host, port=args.port, log_config=None)
        return 0

    gateway = DockerGateway(settings.DOCKER_BIN, settings.PLATFORM_NAME, settings.COMMAND_TIMEOUT)

    try:
        if args.command == "deploy":
            config = DeploymentConfig(
                app_name=args.app,
                image_tag=args.tag,
                env_file_path=args.env_file or str(settings.env_file(args.app)),
                release_directory=args.release_dir,
                zero_downtime_requested=not args.standard,
                health_timeout_seconds=args.health_timeout,
                network_mode=args.network,
                port_mappings=args.port,
                volume_mounts=args.volume,
                default_port=args.default_port,
            )
            DeploymentOrchestrator(gateway).deploy(config)
        elif args.command == "rollback":
            RollbackController(gateway).rollback(args.app)
        elif args.command == "scale":
            controller = ScalingController(gateway)
            failures = 0
            for spec in args.scales:
                process_type, count = parse_scale_argument(spec)
                result = controller.scale(args.app, process_type, count)
                failures += result.failed_attempts
            return 1 if failures else 0
        elif args.command == "ps":
            print_ps(ProcessManager(gateway).status(args.app))
        elif args.command in ("start", "stop", "restart"):
            failed = getattr(ProcessManager(gateway), args.command)(args.app)
            return 1 if failed else 0
        elif args.command == "history":
            print_history(DeploymentHistory(settings.apps_dir).read(args.app))
    except DeploymentError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
