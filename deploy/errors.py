class DeploymentError(Exception):
    """Raised when a deployment step fails."""
    pass


class GatewayError(DeploymentError):
    """A container runtime command exited non-zero or timed out."""

    def __init__(self, message: str, argv=None, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.argv = list(argv or [])
        self.returncode = returncode
        self.output = output


class PreconditionError(DeploymentError):
    """A required unit, image or port is missing. Never retried."""
    pass


class PortExhaustedError(PreconditionError):
    pass


class HealthCheckError(DeploymentError):
    pass


class UnhealthyError(HealthCheckError):
    def __init__(self, message: str, logs: str = ""):
        super().__init__(message)
        self.logs = logs


class HealthCheckTimeout(HealthCheckError):
    pass


class HealthCheckCancelled(HealthCheckError):
    pass


class LockTimeoutError(DeploymentError):
    pass
