"""
Exception hierarchy for the QA kernel.

Learning failures must never abort the enclosing generation task, so callers
inside a task catch QAKernelError, log it, and carry on. The API layer maps
the specific subclasses to HTTP status codes.
"""

from typing import Any, Dict, Optional


class QAKernelError(Exception):
    """Base exception for all QA kernel errors."""

    def __init__(
        self,
        message: str,
        code: str = "QA_KERNEL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class RuleStoreError(QAKernelError):
    """Raised when the rule store cannot complete a read or write."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="RULE_STORE_ERROR", details=details)


class ConcurrentUpdateError(RuleStoreError):
    """Raised when an optimistic update keeps losing to concurrent writers."""

    def __init__(self, rule_id: str, attempts: int):
        super().__init__(
            f"Rule {rule_id} changed concurrently {attempts} times; giving up",
            details={"rule_id": rule_id, "attempts": attempts},
        )
        self.code = "CONCURRENT_UPDATE"


class RuleNotFoundError(QAKernelError):
    """Raised when a rule id does not exist."""

    def __init__(self, rule_id: str):
        super().__init__(
            f"Rule {rule_id} not found",
            code="RULE_NOT_FOUND",
            details={"rule_id": rule_id},
        )


class InvalidTransitionError(QAKernelError):
    """Raised when a requested state change is not allowed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INVALID_TRANSITION", details=details)
