import logging
import threading
import time

from deploy import metrics
from deploy.errors import HealthCheckCancelled, HealthCheckTimeout, UnhealthyError
from deploy.gateway import HealthState

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Polls one unit's health until healthy, unhealthy, or the deadline.

    Waits go through ``cancel_event.wait()`` so another thread (or a signal
    handler) can interrupt a health wait by setting the event.
    """

    def __init__(
        self,
        gateway,
        poll_interval: float = 2.0,
        no_healthcheck_grace: float = 3.0,
        cancel_event: threading.Event | None = None,
        clock=time.monotonic,
    ):
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.no_healthcheck_grace = no_healthcheck_grace
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

    def _wait(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise HealthCheckCancelled("Health check cancelled")

    def wait_until_healthy(self, name: str, timeout: float) -> HealthState:
        start = self.clock()
        attempts = 0
        logger.info(f"  Waiting for {name} to be healthy (max {timeout}s)...", extra={"container": name})

        while True:
            elapsed = self.clock() - start
            if elapsed > timeout:
                metrics.record_health_check("timeout")
                logger.error(f"  Health check timed out after {timeout}s ({attempts} attempts)")
                raise HealthCheckTimeout(f"{name} failed to become healthy within {timeout}s")

            attempts += 1
            state = self.gateway.inspect_health(name)

            if state == HealthState.HEALTHY:
                metrics.record_health_check("healthy")
                logger.info(f"  Health OK after {attempts} attempts ({round(elapsed, 1)}s)")
                return state

            if state == HealthState.UNHEALTHY:
                metrics.record_health_check("unhealthy")
                logs = self.gateway.logs(name)
                raise UnhealthyError(f"{name} is unhealthy, logs:\n{logs}", logs=logs)

            if state == HealthState.NO_HEALTHCHECK:
                self._wait(self.no_healthcheck_grace)
                metrics.record_health_check("no-healthcheck")
                logger.info(f"  {name} ready (no health check configured)")
                return state

            logger.info(f"  Poll {attempts}: status={state.value} ({int(elapsed)}/{timeout}s)")
            self._wait(self.poll_interval)
