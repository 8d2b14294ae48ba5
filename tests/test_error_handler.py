"""
Tests for the failure taxonomy and centralized error handling
"""
import pytest
from unittest.mock import Mock

from broker_harness.errors import (
    HarnessError, InfrastructureError, ContractViolationError,
    VerificationMismatchError, HarnessTimeoutError
)
from broker_harness.harness.error_handler import (
    ErrorHandler, ErrorContext, ErrorCategory, ErrorSeverity, categorize
)
from broker_harness.models import Guarantee, VerificationResult


class TestErrorContext:
    """Test ErrorContext dataclass"""

    def test_create_error_context(self):
        """Test creating error context"""
        context = ErrorContext(
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.HIGH,
            message="Test error",
            node_name="broker-0"
        )

        assert context.category == ErrorCategory.TIMEOUT
        assert context.severity == ErrorSeverity.HIGH
        assert context.message == "Test error"
        assert context.node_name == "broker-0"
        assert context.run_id is None


class TestCategorize:

    @pytest.mark.parametrize("exc, category", [
        (InfrastructureError("node down"), ErrorCategory.INFRASTRUCTURE),
        (ContractViolationError("succeeded"), ErrorCategory.CONTRACT_VIOLATION),
        (VerificationMismatchError("diff"), ErrorCategory.VERIFICATION_MISMATCH),
        (HarnessTimeoutError("late"), ErrorCategory.TIMEOUT),
        (ValueError("bad yaml"), ErrorCategory.CONFIGURATION),
        (KeyError("no broker"), ErrorCategory.CONFIGURATION),
        (RuntimeError("anything else"), ErrorCategory.INFRASTRUCTURE),
    ])
    def test_categorize(self, exc, category):
        assert categorize(exc) == category

    def test_harness_error_details(self):
        error = HarnessTimeoutError("late", details={'acked': 3})
        assert error.message == "late"
        assert error.details == {'acked': 3}
        assert HarnessError("plain").details == {}


class TestErrorHandler:
    """Test ErrorHandler class"""

    def test_handle_collected_error(self):
        handler = ErrorHandler(run_id="run-1")
        context = ErrorContext(
            category=ErrorCategory.CONTRACT_VIOLATION,
            severity=ErrorSeverity.HIGH,
            message="create succeeded twice"
        )

        assert handler.handle_error(context) is True
        assert context.run_id == "run-1"
        assert handler.failures() == [context]

    def test_fatal_error_with_exception_is_raised(self):
        handler = ErrorHandler()
        exc = InfrastructureError("broker-0 exited")
        context = ErrorContext(
            category=ErrorCategory.INFRASTRUCTURE,
            severity=ErrorSeverity.FATAL,
            message=str(exc),
            exception=exc
        )

        with pytest.raises(InfrastructureError):
            handler.handle_error(context)
        assert len(handler.error_history) == 1

    def test_aborting_category_without_exception_returns_false(self):
        handler = ErrorHandler()
        context = ErrorContext(
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.HIGH,
            message="only 3 of 5 acked"
        )
        assert handler.handle_error(context) is False

    def test_low_and_medium_are_not_failures(self):
        handler = ErrorHandler()
        handler.handle_error(ErrorContext(ErrorCategory.RESOURCE_CLEANUP, ErrorSeverity.MEDIUM, "leftover dir"))
        handler.handle_error(ErrorContext(ErrorCategory.CONFIGURATION, ErrorSeverity.LOW, "note"))

        assert handler.failures() == []
        assert len(handler.error_history) == 2

    def test_handle_exception_categorizes(self):
        handler = ErrorHandler()
        with pytest.raises(HarnessTimeoutError):
            handler.handle_exception(HarnessTimeoutError("late", details={'acked': 1}), component="oracle")

        context = handler.error_history[0]
        assert context.category == ErrorCategory.TIMEOUT
        assert context.severity == ErrorSeverity.FATAL
        assert context.metadata == {'acked': 1}

    def test_handle_exception_collects_mismatch(self):
        handler = ErrorHandler()
        assert handler.handle_exception(VerificationMismatchError("diff")) is True
        assert handler.error_history[0].severity == ErrorSeverity.HIGH


class TestExpectFailure:

    def test_expected_failure_returns_exception(self):
        handler = ErrorHandler()
        operation = Mock(side_effect=KeyError("missing"))

        exc = handler.expect_failure("delete stream", operation, "s1", expected=KeyError)

        assert isinstance(exc, KeyError)
        operation.assert_called_once_with("s1")
        assert handler.error_history == []

    def test_unexpected_success_is_contract_violation(self):
        handler = ErrorHandler(run_id="run-2")
        operation = Mock(return_value=None)

        assert handler.expect_failure("create stream", operation, "s1", expected=(ValueError,)) is None

        violation = handler.failures()[0]
        assert violation.category == ErrorCategory.CONTRACT_VIOLATION
        assert violation.operation == "create stream"
        assert violation.metadata['args'] == ["'s1'"]
        assert "expected to fail with ValueError" in violation.message

    def test_other_exceptions_propagate(self):
        handler = ErrorHandler()
        operation = Mock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            handler.expect_failure("create stream", operation, expected=(ValueError,))


class TestVerificationAndSummary:

    def _result(self, passed):
        return VerificationResult(
            guarantee=Guarantee.EXACT_MULTISET,
            passed=passed,
            expected_count=3,
            observed_count=3 if passed else 2,
            missing=[] if passed else [b"x"]
        )

    def test_record_verification(self):
        handler = ErrorHandler()
        assert handler.record_verification(self._result(True)) is True
        assert handler.error_history == []

        assert handler.record_verification(self._result(False)) is False
        failure = handler.failures()[0]
        assert failure.category == ErrorCategory.VERIFICATION_MISMATCH
        assert failure.metadata['missing_sample'] == ["b'x'"]

    def test_raise_if_failed(self):
        handler = ErrorHandler()
        handler.raise_if_failed()

        handler.record_verification(self._result(False))
        handler.handle_error(ErrorContext(ErrorCategory.CONTRACT_VIOLATION, ErrorSeverity.HIGH, "second"))

        with pytest.raises(VerificationMismatchError) as exc_info:
            handler.raise_if_failed()
        assert exc_info.value.details['other_failures'] == ["second"]

    def test_raise_if_failed_wraps_plain_failures(self):
        handler = ErrorHandler()
        handler.handle_error(ErrorContext(ErrorCategory.CONTRACT_VIOLATION, ErrorSeverity.HIGH, "plain"))
        with pytest.raises(HarnessError, match="plain"):
            handler.raise_if_failed()

    def test_error_summary(self):
        handler = ErrorHandler()
        handler.handle_error(ErrorContext(ErrorCategory.RESOURCE_CLEANUP, ErrorSeverity.MEDIUM, "a"))
        handler.handle_error(ErrorContext(ErrorCategory.RESOURCE_CLEANUP, ErrorSeverity.MEDIUM, "b"))
        handler.record_verification(self._result(False))

        summary = handler.get_error_summary()
        assert summary['total_errors'] == 3
        assert summary['by_category'] == {'resource_cleanup': 2, 'verification_mismatch': 1}
        assert summary['by_severity'] == {'medium': 2, 'high': 1}
        assert summary['recent_errors'][0]['message'] == "a"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
