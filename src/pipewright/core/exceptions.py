class PipewrightError(Exception):
    pass

class ConfigurationError(PipewrightError):
    """Invalid pipeline definition, expression, parameter or settings."""
    pass

class ExpressionError(ConfigurationError):
    """Malformed expression or unresolved reference."""
    pass

class TemplateError(ConfigurationError):
    pass

class EnvironmentUnavailable(PipewrightError):
    """Pool, container or VM image could not be acquired."""
    pass

class DockerNotAvailableError(EnvironmentUnavailable):
    """Docker is not available or not running."""
    pass

class StepFailure(PipewrightError):
    """A step exited non-zero."""

    code = "step_failed"

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code

class StepTimeout(StepFailure):
    """A step or job exceeded its timeout."""

    code = "timeout"

class StateTransitionError(PipewrightError):
    """A node was asked to move backwards or sideways."""
    pass

class StorageError(PipewrightError):
    pass

class LogNotFoundError(StorageError):
    pass

class AuditLogError(PipewrightError):
    """Failed to write to audit log. Run should be aborted."""
    pass

class NotificationError(PipewrightError):
    pass
