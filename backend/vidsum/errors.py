"""Error taxonomy shared by the orchestrator, job store and HTTP layer.

Every error carries the HTTP status it maps to and a short machine-readable
code. Stage failures are never raised past the orchestrator; they are
recorded on the job instead.
"""


class VidsumError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class AuthenticationError(VidsumError):
    """No valid caller identity."""

    status_code = 401
    code = "unauthorized"


class AuthorizationOrNotFoundError(VidsumError):
    """Job absent or not owned by the caller.

    Both cases share one error so responses never reveal whether another
    owner's job exists.
    """

    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Not Found"):
        super().__init__(message)


class ValidationError(VidsumError):
    """Malformed identifier or parameter."""

    status_code = 400
    code = "invalid_request"


class InvalidStateError(VidsumError):
    """Operation not allowed from the job's current stage."""

    status_code = 409
    code = "invalid_state"


class JobInFlightError(VidsumError):
    """A processing attempt for this job is already running."""

    status_code = 409
    code = "job_in_flight"


class RetryExhaustedError(VidsumError):
    """Retry attempted beyond the configured maximum."""

    status_code = 409
    code = "retry_exhausted"


class StageExecutionError(VidsumError):
    """A stage executor failed.

    Attributes:
        stage: Stage value that was executing
        cause: Original exception (if any)
    """

    status_code = 500
    code = "stage_failed"

    def __init__(self, stage: str, message: str, cause: Exception | None = None):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {message}")


class TransientStoreError(VidsumError):
    """A job store read or write failed transiently."""

    status_code = 503
    code = "store_unavailable"
