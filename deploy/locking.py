import fcntl
import logging
import os
import time
from pathlib import Path

from deploy.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class AppLock:
    """Exclusive per-application lock held for a deploy, rollback or scale.

    Backed by ``flock`` on ``{lock_dir}/{app}.lock`` so separate CLI
    processes and threads in one process exclude each other alike.
    """

    def __init__(self, app_name: str, lock_dir, timeout: float = 300.0, poll_interval: float = 0.2):
        self.app_name = app_name
        self.path = Path(lock_dir) / f"{app_name}.lock"
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            self._wait_for(fd)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        logger.debug(f"  Acquired lock {self.path}")

    def _wait_for(self, fd: int) -> None:
        deadline = time.monotonic() + self.timeout
        waited = False

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Another operation on '{self.app_name}' holds {self.path} "
                        f"(waited {self.timeout}s)"
                    )
                if not waited:
                    logger.info(f"  Waiting for lock on {self.app_name}...")
                    waited = True
                time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"  Released lock {self.path}")

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
