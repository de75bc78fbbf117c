import pytest

from deploy.envfile import container_port, is_zero_downtime_enabled, read_env


@pytest.fixture
def env_file(tmp_path):
    def _write(content):
        path = tmp_path / ".env"
        path.write_text(content)
        return str(path)

    return _write


@pytest.mark.parametrize("value", ["0", "false", "False", "NO", "off", "n"])
def test_zero_downtime_disabled(env_file, value):
    assert is_zero_downtime_enabled(env_file(f"ZERO_DOWNTIME={value}\n")) is False


@pytest.mark.parametrize("value", ["1", "true", "yes", "on", "y", "maybe", ""])
def test_zero_downtime_enabled(env_file, value):
    assert is_zero_downtime_enabled(env_file(f"ZERO_DOWNTIME={value}\n")) is True


def test_zero_downtime_defaults_to_enabled(env_file, tmp_path):
    assert is_zero_downtime_enabled(env_file("PORT=5000\n")) is True
    assert is_zero_downtime_enabled(str(tmp_path / "missing.env")) is True
    assert is_zero_downtime_enabled(None) is True


def test_container_port(env_file):
    assert container_port(env_file("FOO=bar\nPORT=5000\n"), 8080) == 5000


def test_container_port_fallback(env_file, tmp_path):
    assert container_port(env_file("PORT=web\n"), 8080) == 8080
    assert container_port(str(tmp_path / "missing.env"), None) is None


def test_read_env_missing_file(tmp_path):
    assert read_env(tmp_path / "nope") == {}
