"""
Failure taxonomy shared by every harness layer
"""
from typing import Any, Dict, Optional


class HarnessError(Exception):
    """Base class for every failure the harness reports"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InfrastructureError(HarnessError):
    """A node failed to start or become ready within its bound"""


class ContractViolationError(HarnessError):
    """An operation asserted to fail succeeded, or asserted to succeed failed"""


class VerificationMismatchError(HarnessError):
    """Expected and observed models diverged"""


class HarnessTimeoutError(HarnessError):
    """A bounded wait expired"""
