import json
import subprocess

import pytest

from deploy.errors import GatewayError
from deploy.gateway import DockerGateway, HealthState, RunSpec


class RecordingRunner:
    """Stands in for subprocess.run; replies are matched on the docker subcommand."""

    def __init__(self):
        self.argvs = []
        self.replies = {}

    def reply(self, subcommand, stdout="", returncode=0, stderr=""):
        self.replies[subcommand] = (returncode, stdout, stderr)

    def __call__(self, argv, capture_output, text, timeout):
        self.argvs.append(argv)
        reply = self.replies.get(argv[1], (0, "", ""))
        if isinstance(reply, BaseException):
            raise reply
        returncode, stdout, stderr = reply
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def docker(runner):
    return DockerGateway("docker", "berth", timeout=5, runner=runner)


def test_run_spec_arguments():
    spec = RunSpec(
        name="api-green",
        image="api:release-2",
        ports=["8080:5000"],
        env_file="/opt/berth/apps/api/shared/.env",
        volumes=["/srv/release:/app"],
        working_dir="/app",
        restart_policy="unless-stopped",
        network_mode="bridge",
        labels={"createdby": "berth"},
        ulimits={"nofile": 65536},
    )

    assert spec.to_args() == [
        "run", "-d", "--name", "api-green",
        "--label", "createdby=berth",
        "--restart", "unless-stopped",
        "--network", "bridge",
        "-p", "8080:5000",
        "--env-file", "/opt/berth/apps/api/shared/.env",
        "-v", "/srv/release:/app",
        "-w", "/app",
        "--ulimit", "nofile=65536:65536",
        "api:release-2",
    ]


def test_minimal_run_spec():
    assert RunSpec(name="api", image="api:1", command=["serve"]).to_args() == [
        "run", "-d", "--name", "api", "api:1", "serve",
    ]


def test_create_labels_unit(docker, runner):
    docker.create(RunSpec(name="api", image="api:1"))

    assert runner.argvs[0][:6] == ["docker", "run", "-d", "--name", "api", "--label"]
    assert "createdby=berth" in runner.argvs[0]


def test_nonzero_exit_raises_with_output(docker, runner):
    runner.reply("rename", returncode=1, stderr="Error: No such container: api\n")

    with pytest.raises(GatewayError) as exc_info:
        docker.rename("api", "api-old")

    assert exc_info.value.returncode == 1
    assert exc_info.value.output == "Error: No such container: api"
    assert exc_info.value.argv == ["docker", "rename", "api", "api-old"]


def test_timeout_raises(docker, runner):
    runner.replies["stop"] = subprocess.TimeoutExpired(["docker", "stop"], 5)

    with pytest.raises(GatewayError, match="timed out"):
        docker.stop("api")


def test_missing_binary_raises(docker, runner):
    runner.replies["start"] = FileNotFoundError("docker")

    with pytest.raises(GatewayError, match="Could not execute"):
        docker.start("api")


def test_mutation_arguments(docker, runner):
    docker.remove("api-old", force=True)
    docker.pause("api")
    docker.set_restart_policy("api", "always")

    assert runner.argvs == [
        ["docker", "rm", "-f", "api-old"],
        ["docker", "pause", "api"],
        ["docker", "update", "--restart", "always", "api"],
    ]


def test_exists_matches_labelled_units(docker, runner):
    runner.reply("ps", stdout=json.dumps({"Names": "api-green", "State": "running"}) + "\n")

    assert docker.exists("api-green")
    assert "-a" in runner.argvs[0]
    assert "label=createdby=berth" in runner.argvs[0]


def test_lookup_falls_back_to_name_filter(docker, runner):
    replies = iter([(0, "", ""), (0, "api\n", "")])
    runner.replies = {}

    def ps_runner(argv, capture_output, text, timeout):
        runner.argvs.append(argv)
        returncode, stdout, stderr = next(replies)
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

    docker._runner = ps_runner

    assert docker.is_running("api")
    assert "-a" not in runner.argvs[1]
    assert "name=^/?api$" in runner.argvs[1]


def test_similar_names_do_not_match(docker, runner):
    runner.reply("ps", stdout=json.dumps({"Names": "api-old"}) + "\n")

    assert not docker.exists("api")


@pytest.mark.parametrize(
    "stdout, returncode, expected",
    [
        ('{"Status":"healthy","FailingStreak":0}', 0, HealthState.HEALTHY),
        ('{"Status":"starting"}', 0, HealthState.STARTING),
        ('{"Status":"unhealthy"}', 0, HealthState.UNHEALTHY),
        ("null", 0, HealthState.NO_HEALTHCHECK),
        ('{"Status":"weird"}', 0, HealthState.UNKNOWN),
        ("not json", 0, HealthState.UNKNOWN),
        ("", 1, HealthState.UNKNOWN),
    ],
)
def test_inspect_health(docker, runner, stdout, returncode, expected):
    runner.reply("inspect", stdout=stdout + "\n", returncode=returncode)

    assert docker.inspect_health("api-green") == expected


def test_logs_never_raise(docker, runner):
    runner.replies["logs"] = subprocess.TimeoutExpired(["docker", "logs"], 10)

    assert docker.logs("api") == ""


def test_logs_combine_streams(docker, runner):
    runner.reply("logs", stdout="out\n", stderr="err\n", returncode=1)

    assert docker.logs("api", tail=5) == "out\nerr\n"
    assert runner.argvs[0] == ["docker", "logs", "--tail", "5", "api"]


def test_ping(docker, runner):
    assert docker.ping()

    runner.reply("version", returncode=1)
    assert not docker.ping()


def test_tag_arguments(docker, runner):
    docker.tag("api:release-2", "api:latest")

    assert runner.argvs == [["docker", "tag", "api:release-2", "api:latest"]]


def test_image_of(docker, runner):
    runner.reply("inspect", stdout="api:release-1\n")
    assert docker.image_of("api") == "api:release-1"

    runner.reply("inspect", returncode=1, stderr="No such object")
    assert docker.image_of("api") is None


def test_published_ports(docker, runner):
    bindings = {
        "5000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}],
        "53/udp": [{"HostIp": "", "HostPort": "5353"}],
        "9000/tcp": None,
    }
    runner.reply("inspect", stdout=json.dumps(bindings) + "\n")

    assert docker.published_ports("api") == [(8080, 5000), (5353, 53)]
    assert "{{json .HostConfig.PortBindings}}" in runner.argvs[0]


@pytest.mark.parametrize("stdout, returncode", [("null", 0), ("{}", 0), ("garbage", 0), ("", 1)])
def test_published_ports_when_none_or_unknown(docker, runner, stdout, returncode):
    runner.reply("inspect", stdout=stdout + "\n", returncode=returncode)

    assert docker.published_ports("api") == []
