"""
Shared error messages and the storage error taxonomy.

User-visible errors must be clear and actionable.
"""


class AppErrors:
    """Centralized actionable error messages."""

    NO_INVOICE = (
        "No invoice to save. Open an invoice first."
    )

    SAVE_FAILED = (
        "Failed to save changes. Your edits are kept; try saving again."
    )

    UPDATE_REVERTED = (
        "Update failed. Changes have been reverted. Please try again."
    )

    CHANGES_SAVED = "All changes saved"

    CHANGES_DISCARDED = "Changes discarded"

    INVOICE_NOT_FOUND = (
        "Invoice not found. It may have been deleted; reload the list."
    )

    LINE_ITEM_NOT_FOUND = (
        "Line item not found. Reload the invoice and retry."
    )


class StorageError(Exception):
    """A create/update/delete/replace/notes call failed in the persistence layer."""

    def __init__(self, message: str, operation: str = "", invoice_id: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.invoice_id = invoice_id


class RollbackFailure(StorageError):
    """Restoring an optimistic snapshot failed; the cache falls back to a refetch."""


class ReconciliationWarning(UserWarning):
    """Recalculating invoice totals failed after a committed mutation. Logged, never raised."""

    def __init__(self, invoice_id: str, cause: Exception):
        super().__init__(f"Totals recalculation failed for invoice {invoice_id}: {cause}")
        self.invoice_id = invoice_id
        self.cause = cause


def format_storage_error(error: Exception) -> str:
    """Format a storage failure as an actionable message."""
    if isinstance(error, RollbackFailure):
        return f"{AppErrors.UPDATE_REVERTED} ({error})"
    if isinstance(error, StorageError):
        if error.operation:
            return f"{AppErrors.SAVE_FAILED} [{error.operation}: {error}]"
        return f"{AppErrors.SAVE_FAILED} [{error}]"
    return f"Unexpected error: {error}"
