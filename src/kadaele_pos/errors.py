"""Exception taxonomy raised by the ledger and synchronization layers."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every domain error raised by Kadaele POS."""


class ValidationError(LedgerError):
    """Raised for malformed or out-of-range input such as non-positive amounts."""


class NotFoundError(LedgerError):
    """Raised when a referenced good, purchase, or debtor does not exist."""


class InvalidStateError(LedgerError):
    """Raised when an operation is not permitted from the record's current status."""


class EditWindowExpiredError(LedgerError):
    """Raised when a purchase is edited after its edit window has closed."""


class StorageError(LedgerError):
    """Raised when the underlying persistence layer could not complete a write."""


class SyncError(LedgerError):
    """Raised by transports when a remote delivery attempt fails."""


# Errors the caller is expected to turn into user-facing messages.
RULE_VIOLATIONS = (ValidationError, NotFoundError, InvalidStateError, EditWindowExpiredError)


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "EditWindowExpiredError",
    "StorageError",
    "SyncError",
    "RULE_VIOLATIONS",
]
