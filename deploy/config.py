from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    BASE_DIR: str = "/opt/berth"
    PLATFORM_NAME: str = "berth"
    DOCKER_BIN: str = "docker"
    COMMAND_TIMEOUT: int = 60

    HEALTH_TIMEOUT: int = 180
    HEALTH_POLL_INTERVAL: float = 2.0
    NO_HEALTHCHECK_GRACE: float = 3.0

    # Settle times between runtime steps
    NAME_RELEASE_WAIT: float = 2.0
    PAUSE_SETTLE: float = 2.0
    STARTUP_WAIT: float = 5.0
    DRAIN_SECONDS: float = 5.0
    ROLLBACK_WAIT: float = 5.0
    KEEP_PREVIOUS: bool = False

    DEFAULT_CONTAINER_PORT: int = 8080
    PROCESS_PORTS: dict[str, int] = {}
    PORT_RANGE_START: int = 32768
    PORT_RANGE_END: int = 65535

    CONTAINER_WORKDIR: str = "/app"
    NOFILE_LIMIT: int = 65536
    NPROC_LIMIT: int = 4096

    LOCK_TIMEOUT: float = 300.0
    HISTORY_LIMIT: int = 20

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8700

    class Config:
        env_prefix = "BERTH_"
        env_file = ".env"

    @property
    def apps_dir(self) -> Path:
        return Path(self.BASE_DIR) / "apps"

    @property
    def plugins_dir(self) -> Path:
        return Path(self.BASE_DIR) / "plugins"

    @property
    def locks_dir(self) -> Path:
        return Path(self.BASE_DIR) / "locks"

    def app_dir(self, app_name: str) -> Path:
        return self.apps_dir / app_name

    def env_file(self, app_name: str) -> Path:
        return self.app_dir(app_name) / "shared" / ".env"

    def internal_port(self, process_type: str) -> int:
        return self.PROCESS_PORTS.get(process_type, self.DEFAULT_CONTAINER_PORT)


settings = Settings()
