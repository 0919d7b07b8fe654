"""Error taxonomy for the stock ledger.

Every error carries a short ``context`` label (for example ``"Stock Saving"``)
so a front-end can render it without re-deriving where it came from. Storage
errors additionally carry the backend ``code`` used by the retry controller
to decide whether another attempt is worthwhile.
"""

from __future__ import annotations

from typing import Optional

from .constants import StorageErrorCode


class LedgerError(Exception):
    """Base class for all errors raised by the stock ledger."""

    default_context = "Stock Ledger"

    def __init__(self, message: str, *, context: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or self.default_context

    def __str__(self) -> str:
        return self.message


class ValidationError(LedgerError):
    """Raised for malformed identifiers or structurally invalid input."""

    default_context = "Validation"

    def __init__(self, message: str, *, context: Optional[str] = None, violations: Optional[list[str]] = None) -> None:
        super().__init__(message, context=context)
        self.violations = list(violations or [])


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""

    default_context = "Business Rule"


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced store or catalog entry is unknown."""


class StorageError(LedgerError):
    """Raised by document store backends; ``code`` mirrors the backend's code."""

    default_context = "Storage"
    default_code = StorageErrorCode.UNKNOWN.value

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, context=context)
        self.code = code or self.default_code
        self.original_error = original_error


class TransientStorageError(StorageError):
    """Connectivity or timeout class failure; worth retrying."""

    default_code = StorageErrorCode.UNAVAILABLE.value


class RetryExhaustedError(TransientStorageError):
    """Raised when every retry attempt failed with a transient error."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        backup_saved: bool,
        context: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, context=context, original_error=original_error)
        self.attempts = attempts
        self.backup_saved = backup_saved


class PermissionDeniedError(StorageError):
    """The backend refused the operation for the current identity."""

    default_code = StorageErrorCode.PERMISSION_DENIED.value


class AuthError(StorageError):
    """The current identity is no longer authenticated."""

    default_code = StorageErrorCode.UNAUTHENTICATED.value


class NotFoundError(StorageError):
    """A referenced document does not exist."""

    default_code = StorageErrorCode.NOT_FOUND.value


def user_message(error: BaseException) -> str:
    """Translate an error into the text shown to the person at the counter."""

    if isinstance(error, RetryExhaustedError):
        if error.backup_saved:
            return "Unable to save due to connection issues. Saved to local backup, retry when online."
        return "Unable to save due to connection issues. Please try again later."
    if isinstance(error, TransientStorageError):
        return "Network connection lost. Please check your internet connection and try again."
    if isinstance(error, PermissionDeniedError):
        return "Permission denied. Please contact your administrator."
    if isinstance(error, AuthError):
        return "Authentication expired. Please log in again."
    if isinstance(error, ValidationError) and error.violations:
        return "; ".join(error.violations)
    return str(error) or "Unknown error occurred while saving."


__all__ = [
    "LedgerError",
    "ValidationError",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "StorageError",
    "TransientStorageError",
    "RetryExhaustedError",
    "PermissionDeniedError",
    "AuthError",
    "NotFoundError",
    "user_message",
]
