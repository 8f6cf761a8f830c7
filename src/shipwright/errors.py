"""Domain errors for shipwright."""


class PipelineError(RuntimeError):
    """Raised when a pipeline stage cannot continue safely."""

    kind = "pipeline"
    allows_rollback = True


class ValidationError(PipelineError):
    """Run parameters are malformed. Nothing has been touched yet."""

    kind = "validation"
    allows_rollback = False


class TransientExternalError(PipelineError):
    """A remote call failed in a way that may succeed on a later attempt."""

    kind = "transient"


class BuildError(PipelineError):
    kind = "build"


class SmokeTestError(PipelineError):
    kind = "smoke_test"


class PublishError(PipelineError):
    kind = "publish"


class ApplyError(PipelineError):
    """Infrastructure plan/apply/destroy failed, or the apply was not approved."""

    kind = "apply"


class HealthCheckExhausted(PipelineError):
    """The deployed endpoint never answered 200 within the retry budget."""

    kind = "health_check"


class CommandError(PipelineError):
    """An external command could not be run or exited non-zero."""

    kind = "command"

    def __init__(self, message: str, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
