from app.services.result import Outcome, Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("reply text")
        assert result.ok is True
        assert result.needs_fallback is False
        assert result.outcome is Outcome.SUCCESS
        assert result.value == "reply text"
        assert result.error is None

    def test_success_with_different_types(self):
        assert Result.success(42).value == 42
        assert Result.success({"key": "value"}).value == {"key": "value"}


class TestResultFallback:
    def test_fallback_is_not_ok(self):
        result = Result.fallback("run failed", "remote_thread_error")
        assert result.ok is False
        assert result.needs_fallback is True
        assert result.outcome is Outcome.NEEDS_FALLBACK
        assert result.error_code == "remote_thread_error"

    def test_fallback_default_code(self):
        assert Result.fallback("boom").error_code == "remote_error"


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Something went wrong", "stateless_error")
        assert result.ok is False
        assert result.needs_fallback is False
        assert result.error == "Something went wrong"
        assert result.error_code == "stateless_error"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_unwrap_or_returns_default_on_fallback(self):
        assert Result.fallback("Error").unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None
