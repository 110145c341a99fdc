"""Custom exceptions for the X bookmark sync engine.

All failures that callers are expected to handle inherit from XAutoError,
which carries a `retryable` flag the same way the retry helpers expect.
Unauthorized, ServiceUnavailable and ValidationError are the typed failures
surfaced to callers; the rest are internal to a component and absorbed by
its fallback logic.
"""


class XAutoError(Exception):
    """Base class for sync and normalization errors."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class Unauthorized(XAutoError):
    """No usable X credentials.

    Raised when the account was never connected or a token refresh failed.
    Never retried; the user has to re-run the authorization flow.
    """

    retryable: bool = False


class ServiceUnavailable(XAutoError):
    """An upstream service failed after local retries were exhausted.

    Attributes:
        status: Upstream HTTP status, or None for transport failures.
        detail: Best-effort error detail extracted from the response body.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.detail = detail


class ValidationError(XAutoError):
    """Malformed caller input, rejected before any side effect."""

    retryable: bool = False


class RateLimitError(XAutoError):
    """The X API answered 429.

    Only raised inside the API client retry loop; callers see a
    ServiceUnavailable once the backoff schedule is exhausted.
    """

    retryable: bool = True

    def __init__(self, message: str, *, status: int = 429, detail: str | None = None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class ExtractionError(XAutoError):
    """Model output could not be turned into a usable structure."""

    retryable: bool = False


class SummaryShapeError(ExtractionError):
    """Parsed model output is missing a required summary field."""


class ConfigurationError(Exception):
    """Invalid configuration.

    This is NOT an XAutoError - configuration issues should be fixed
    before the engine runs, not retried automatically.
    """

    pass
