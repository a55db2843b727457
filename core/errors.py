"""Domain errors used by MeterLab services."""


class MeterLabError(Exception):
    """Base exception for user-facing MeterLab errors."""

    exit_code = 1
    status_code = 400


class ConfigError(MeterLabError):
    """Raised when configuration cannot be located or parsed."""

    exit_code = 2


class ValidationError(MeterLabError):
    """Raised when a request is missing required fields or carries invalid values."""


class PreconditionError(MeterLabError):
    """Raised when an operation is not allowed in the current state."""

    status_code = 409


class NotFoundError(MeterLabError):
    """Raised when a referenced record does not exist."""

    status_code = 404


class ExtractionError(MeterLabError):
    """Raised when the extraction gateway returns no usable result for a photo."""

    status_code = 502

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class RunFailedError(MeterLabError):
    """Raised when a whole test run fails or stalls."""

    status_code = 502
