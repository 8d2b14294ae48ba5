"""
Error Handler - Failure taxonomy and centralized error handling

Separates the four kinds of failure a harness run can hit so that flaky
timing is diagnosable apart from logic bugs:

- infrastructure failures (a node never became ready) abort immediately
- timeouts (a bounded wait expired) abort immediately
- contract violations (an operation that must fail succeeded, or vice versa)
  are collected and reported with the operation's arguments
- verification mismatches (expected vs observed diverged) are collected and
  reported with a diff summary
"""
import logging
from typing import Optional, Callable, Any, Dict, List, Tuple, Type
from enum import Enum
from dataclasses import dataclass
from ..errors import (
    HarnessError, InfrastructureError, ContractViolationError,
    VerificationMismatchError, HarnessTimeoutError
)

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)
logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    LOW = "low"  # Informational, run continues
    MEDIUM = "medium"  # Recorded failure, run continues to collect more
    HIGH = "high"  # Test case failed
    FATAL = "fatal"  # Abort the test case now


class ErrorCategory(Enum):
    """Categories of errors for targeted handling"""
    INFRASTRUCTURE = "infrastructure"
    CONTRACT_VIOLATION = "contract_violation"
    VERIFICATION_MISMATCH = "verification_mismatch"
    TIMEOUT = "timeout"
    RESOURCE_CLEANUP = "resource_cleanup"
    CONFIGURATION = "configuration"


ABORTING_CATEGORIES = (ErrorCategory.INFRASTRUCTURE, ErrorCategory.TIMEOUT)

EXCEPTION_CATEGORIES = {
    InfrastructureError: ErrorCategory.INFRASTRUCTURE,
    ContractViolationError: ErrorCategory.CONTRACT_VIOLATION,
    VerificationMismatchError: ErrorCategory.VERIFICATION_MISMATCH,
    HarnessTimeoutError: ErrorCategory.TIMEOUT,
}


def categorize(exc: BaseException) -> ErrorCategory:
    """Map an exception onto the failure taxonomy"""
    for exc_type, category in EXCEPTION_CATEGORIES.items():
        if isinstance(exc, exc_type):
            return category
    if isinstance(exc, (ValueError, KeyError)):
        return ErrorCategory.CONFIGURATION
    return ErrorCategory.INFRASTRUCTURE


@dataclass
class ErrorContext:
    """Context information for an error"""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception: Optional[BaseException] = None
    component: Optional[str] = None
    run_id: Optional[str] = None
    node_name: Optional[str] = None
    operation: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorHandler:
    """
    Centralized error handling for a harness run.

    Aborting categories are logged, recorded and re-raised; contract and
    verification failures are collected so one run can report all of them.
    """

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id
        self.error_history: List[ErrorContext] = []

    def handle_error(self, error_context: ErrorContext) -> bool:
        """Record an error. Returns True if the run may continue."""
        if error_context.run_id is None:
            error_context.run_id = self.run_id
        self._log_error(error_context)
        self.error_history.append(error_context)

        if error_context.severity == ErrorSeverity.FATAL or error_context.category in ABORTING_CATEGORIES:
            if error_context.exception is not None:
                raise error_context.exception
            return False

        return True

    def handle_exception(self, exc: BaseException, component: Optional[str] = None) -> bool:
        """Categorize and handle an exception raised by a harness component"""
        category = categorize(exc)
        severity = ErrorSeverity.FATAL if category in ABORTING_CATEGORIES else ErrorSeverity.HIGH
        return self.handle_error(ErrorContext(
            category=category,
            severity=severity,
            message=str(exc),
            exception=exc,
            component=component,
            metadata=getattr(exc, 'details', None)
        ))

    def expect_failure(
        self,
        operation_name: str,
        operation: Callable,
        *args,
        expected: Tuple[Type[BaseException], ...] = (Exception,),
        **kwargs
    ) -> Optional[BaseException]:
        """Run an operation that must fail; record a contract violation if it succeeds"""
        if not isinstance(expected, tuple):
            expected = (expected,)
        try:
            operation(*args, **kwargs)
        except expected as e:
            logger.info(f"{operation_name} failed as expected: {type(e).__name__}: {e}")
            return e

        violation = ContractViolationError(
            f"{operation_name} succeeded but was expected to fail with "
            f"{', '.join(t.__name__ for t in expected)}",
            details={'operation': operation_name, 'args': [repr(a) for a in args],
                     'kwargs': {k: repr(v) for k, v in kwargs.items()}}
        )
        self.handle_error(ErrorContext(
            category=ErrorCategory.CONTRACT_VIOLATION,
            severity=ErrorSeverity.HIGH,
            message=violation.message,
            exception=violation,
            operation=operation_name,
            metadata=violation.details
        ))
        return None

    def record_verification(self, result) -> bool:
        """Record a failed verification result as a mismatch; passing results are ignored"""
        if result.passed:
            return True
        mismatch = VerificationMismatchError(result.summary(), details={
            'guarantee': result.guarantee.value,
            'expected_count': result.expected_count,
            'observed_count': result.observed_count,
            'missing_sample': [repr(m) for m in result.missing],
            'unexpected_sample': [repr(u) for u in result.unexpected],
        })
        self.handle_error(ErrorContext(
            category=ErrorCategory.VERIFICATION_MISMATCH,
            severity=ErrorSeverity.HIGH,
            message=mismatch.message,
            exception=mismatch,
            component="verifier",
            metadata=mismatch.details
        ))
        return False

    def failures(self) -> List[ErrorContext]:
        return [e for e in self.error_history if e.severity in (ErrorSeverity.HIGH, ErrorSeverity.FATAL)]

    def raise_if_failed(self) -> None:
        """Raise the first collected failure, with the remaining ones attached"""
        failures = self.failures()
        if not failures:
            return
        first = failures[0]
        exc = first.exception if isinstance(first.exception, HarnessError) else HarnessError(first.message)
        exc.details.setdefault('other_failures', [f.message for f in failures[1:]])
        raise exc

    def _log_error(self, error_context: ErrorContext):
        """Log error with appropriate level based on severity"""
        log_message = f"[{error_context.category.value}] {error_context.message}"

        if error_context.component:
            log_message = f"[{error_context.component}] {log_message}"

        if error_context.run_id:
            log_message += f" (run: {error_context.run_id})"

        if error_context.node_name:
            log_message += f" (node: {error_context.node_name})"

        if error_context.severity == ErrorSeverity.FATAL:
            logger.critical(log_message)
        elif error_context.severity == ErrorSeverity.HIGH:
            logger.error(log_message)
        elif error_context.severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message)
        else:
            logger.info(log_message)

    def get_error_summary(self) -> Dict[str, Any]:
        """Get summary of all errors encountered"""
        errors_by_category: Dict[str, int] = {}
        errors_by_severity: Dict[str, int] = {}

        for error in self.error_history:
            category = error.category.value
            errors_by_category[category] = errors_by_category.get(category, 0) + 1

            severity = error.severity.value
            errors_by_severity[severity] = errors_by_severity.get(severity, 0) + 1

        return {
            'total_errors': len(self.error_history),
            'by_category': errors_by_category,
            'by_severity': errors_by_severity,
            'recent_errors': [
                {
                    'category': e.category.value,
                    'severity': e.severity.value,
                    'message': e.message
                }
                for e in self.error_history[-10:]
            ]
        }

