"""
Exception types raised by the engine.

Per-test-case failures are never raised; they are carried as ErrorKind values
on TestCaseOutcome objects. The exceptions below cover misuse of the attempt
lifecycle, sandbox infrastructure failures and invalid requests.
"""


class CodeTestError(Exception):
    """Base class for all engine errors."""


class InvalidStateTransition(CodeTestError):
    """Raised when an attempt lifecycle operation is not allowed in the current state."""

    def __init__(self, message: str, status=None):
        super().__init__(message)
        self.status = status


class InternalExecutionError(CodeTestError):
    """Sandbox infrastructure failure not attributable to user code. Safe to retry."""


class GradingCancelled(CodeTestError):
    """Raised when a submission's grading was cancelled before completion."""


class UnsupportedLanguage(CodeTestError, ValueError):
    """Raised when no language profile matches the requested language."""


class RequestValidationError(CodeTestError, ValueError):
    """Raised when an execute request fails validation."""

    def __init__(self, errors):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class NotFound(CodeTestError, KeyError):
    """Raised when an entity id is not present in the store or bank."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""
