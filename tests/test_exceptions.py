"""Tests for the exception hierarchy."""

from xauto.core.exceptions import (
    ConfigurationError,
    ExtractionError,
    RateLimitError,
    ServiceUnavailable,
    SummaryShapeError,
    Unauthorized,
    ValidationError,
    XAutoError,
)


class TestRetryableFlags:
    """Only rate limits are retryable by default."""

    def test_rate_limit_is_retryable(self):
        error = RateLimitError("slow down")
        assert error.retryable is True
        assert error.status == 429

    def test_typed_failures_are_not_retryable(self):
        for cls in (Unauthorized, ValidationError, ExtractionError, SummaryShapeError):
            assert cls("x").retryable is False

    def test_retryable_can_be_overridden(self):
        assert XAutoError("flaky", retryable=True).retryable is True


class TestServiceUnavailable:
    def test_carries_status_and_detail(self):
        error = ServiceUnavailable("X API failed", status=503, detail="over capacity")

        assert error.status == 503
        assert error.detail == "over capacity"
        assert str(error) == "X API failed"
        assert error.retryable is False

    def test_defaults_to_no_status(self):
        error = ServiceUnavailable("network down")
        assert error.status is None
        assert error.detail is None


class TestHierarchy:
    def test_summary_shape_error_is_extraction_error(self):
        assert issubclass(SummaryShapeError, ExtractionError)

    def test_typed_failures_share_base(self):
        for cls in (Unauthorized, ServiceUnavailable, ValidationError, RateLimitError):
            assert issubclass(cls, XAutoError)

    def test_configuration_error_is_separate(self):
        assert not issubclass(ConfigurationError, XAutoError)
