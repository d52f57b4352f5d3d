"""
Asynchronous line item store.

LineItemStore is transport only: every operation is awaitable, fails
independently with StorageError, and is never retried implicitly.
SqliteLineItemStore runs the blocking InvoiceRepository calls in worker
threads so the event loop stays responsive.
"""
import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Callable

from src.invoicing.models import Invoice, InvoiceTotals, LineItem
from src.invoicing.storage.invoice_repository import InvoiceRepository
from src.shared.errors import StorageError

log = logging.getLogger(__name__)


class LineItemStore(ABC):
    """Async CRUD/batch-replace contract over persisted line items."""

    @abstractmethod
    async def fetch(self, invoice_id: str) -> list[LineItem]:
        """Return the invoice's line items in display order."""

    @abstractmethod
    async def create(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        """Append items to the invoice and return them as persisted."""

    @abstractmethod
    async def update(self, item_id: str, changes: dict) -> LineItem:
        """Apply a partial update to one item and return the stored row."""

    @abstractmethod
    async def delete(self, item_id: str) -> None:
        """Delete one item."""

    @abstractmethod
    async def replace_all(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        """Replace every item on the invoice."""

    @abstractmethod
    async def recalculate_totals(self, invoice_id: str) -> InvoiceTotals:
        """Idempotently recompute the invoice aggregate on the authoritative side."""

    @abstractmethod
    async def update_notes(
        self,
        invoice_id: str,
        customer_notes: str | None = None,
        admin_notes: str | None = None,
    ) -> Invoice:
        """Write the notes fields of the invoice record."""

    @abstractmethod
    async def fetch_invoice(self, invoice_id: str) -> Invoice:
        """Return the invoice record, including server-computed totals."""


class SqliteLineItemStore(LineItemStore):
    """LineItemStore backed by InvoiceRepository."""

    def __init__(self, repository: InvoiceRepository):
        self.repository = repository

    async def _call(self, operation: str, func: Callable[..., Any], *args, invoice_id: str | None = None, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (sqlite3.Error, ValueError, KeyError) as e:
            log.debug("Store operation %s failed: %s", operation, e)
            raise StorageError(str(e), operation=operation, invoice_id=invoice_id) from e

    async def fetch(self, invoice_id: str) -> list[LineItem]:
        return await self._call("fetch", self.repository.get_line_items, invoice_id, invoice_id=invoice_id)

    async def create(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        return await self._call("create", self.repository.add_line_items, invoice_id, items, invoice_id=invoice_id)

    async def update(self, item_id: str, changes: dict) -> LineItem:
        item = await self._call("update", self.repository.update_line_item, item_id, **changes)
        if item is None:
            raise StorageError(f"Line item {item_id} not found", operation="update")
        return item

    async def delete(self, item_id: str) -> None:
        deleted = await self._call("delete", self.repository.delete_line_item, item_id)
        if not deleted:
            raise StorageError(f"Line item {item_id} not found", operation="delete")

    async def replace_all(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        return await self._call(
            "replace_all", self.repository.replace_line_items, invoice_id, items, invoice_id=invoice_id,
        )

    async def recalculate_totals(self, invoice_id: str) -> InvoiceTotals:
        totals = await self._call(
            "recalculate_totals", self.repository.recalculate_invoice_totals, invoice_id, invoice_id=invoice_id,
        )
        if totals is None:
            raise StorageError(f"Invoice {invoice_id} not found", operation="recalculate_totals", invoice_id=invoice_id)
        return totals

    async def update_notes(
        self,
        invoice_id: str,
        customer_notes: str | None = None,
        admin_notes: str | None = None,
    ) -> Invoice:
        invoice = await self._call(
            "update_notes", self.repository.update_invoice_notes, invoice_id,
            customer_notes=customer_notes, admin_notes=admin_notes, invoice_id=invoice_id,
        )
        if invoice is None:
            raise StorageError(f"Invoice {invoice_id} not found", operation="update_notes", invoice_id=invoice_id)
        return invoice

    async def fetch_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self._call("fetch_invoice", self.repository.get_invoice, invoice_id, invoice_id=invoice_id)
        if invoice is None:
            raise StorageError(f"Invoice {invoice_id} not found", operation="fetch_invoice", invoice_id=invoice_id)
        return invoice
