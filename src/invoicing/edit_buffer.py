"""
Local editing of one invoice's line items and notes.

EditBuffer is pure in-memory state: setters do no I/O and every change is
tracked as dirty until it is saved or discarded. EditableInvoice wraps a
buffer with the invoice lifecycle (first load, invoice switch, clean-only
re-sync) and the batch save that hands off to the TotalsReconciler.

Per item: Clean --update--> Dirty --save/discard--> Clean. Re-syncing from
the source only ever happens while nothing is dirty.
"""
import logging
from dataclasses import asdict, fields, replace
from typing import Callable, Iterable

from src.invoicing.models import LineItem, LocalLineItem, to_int
from src.invoicing.query_cache import query_keys
from src.invoicing.reconciler import TotalsReconciler
from src.invoicing.storage.invoice_repository import validate_line_item
from src.invoicing.storage.line_item_store import LineItemStore
from src.shared.errors import AppErrors, StorageError, format_storage_error

log = logging.getLogger(__name__)

EDITABLE_FIELDS = ("quantity", "unit_price_cents", "description")
_ITEM_FIELDS = tuple(f.name for f in fields(LineItem))

Notifier = Callable[[str, str], None]


def log_notifier(level: str, message: str) -> None:
    """Default notifier: user-facing messages go to the log."""
    if level == "error":
        log.error("%s", message)
    else:
        log.info("%s", message)


def _same_values(a: LineItem, b: LineItem) -> bool:
    return all(getattr(a, name) == getattr(b, name) for name in _ITEM_FIELDS)


class EditBuffer:
    """Dirty-tracked local copy of an invoice's line items and notes."""

    def __init__(self):
        self._items: dict[str, LocalLineItem] = {}
        # Last known server values per item; discard reverts to these
        self._snapshots: dict[str, LineItem] = {}
        self.customer_notes = ""
        self.original_customer_notes = ""
        self.admin_notes = ""
        self.original_admin_notes = ""
        self.is_initialized = False

    def initialize(self, items: Iterable[LineItem], notes: str | None = None, admin_notes: str | None = None) -> None:
        """Build the buffer from a source snapshot. Everything starts clean."""
        self._load_items(items)
        self.customer_notes = self.original_customer_notes = notes or ""
        self.admin_notes = self.original_admin_notes = admin_notes or ""
        self.is_initialized = True

    def _load_items(self, items: Iterable[LineItem]) -> None:
        self._items = {}
        self._snapshots = {}
        for item in items:
            local = LocalLineItem.from_item(item)
            self._items[item.id] = local
            self._snapshots[item.id] = local.to_item()

    # ── Read side ──

    @property
    def items(self) -> list[LocalLineItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> LocalLineItem | None:
        return self._items.get(item_id)

    @property
    def dirty_item_ids(self) -> set[str]:
        return {item_id for item_id, item in self._items.items() if item.is_dirty}

    def dirty_items(self) -> list[LocalLineItem]:
        return [item for item in self._items.values() if item.is_dirty]

    @property
    def customer_notes_changed(self) -> bool:
        return self.customer_notes != self.original_customer_notes

    @property
    def admin_notes_changed(self) -> bool:
        return self.admin_notes != self.original_admin_notes

    def has_unsaved_changes(self) -> bool:
        return bool(self.dirty_item_ids) or self.customer_notes_changed or self.admin_notes_changed

    def validation_errors(self) -> list[str]:
        """Problems in dirty items that would be rejected on save, by list position."""
        errors = []
        for position, item in enumerate(self._items.values(), start=1):
            if item.is_dirty:
                errors.extend(validate_line_item(asdict(item.to_item()), position))
        return errors

    # ── Local setters ──

    def update_item(self, item_id: str, **changes) -> LocalLineItem | None:
        """
        Merge quantity/unit_price_cents/description into an item and mark it dirty.

        The line total is recomputed from the merged values whenever quantity
        or unit price is part of the change. Quantity and unit price are
        coerced to int; a value that is not a whole number raises ValueError
        and leaves the item untouched. Unknown ids are ignored.
        """
        item = self._items.get(item_id)
        if item is None:
            return None
        updates = {}
        for name, value in changes.items():
            if name not in EDITABLE_FIELDS or value is None:
                continue
            updates[name] = str(value) if name == "description" else to_int(value, name)
        updated = replace(item, **updates, is_dirty=True)
        if "quantity" in updates or "unit_price_cents" in updates:
            updated.total_price_cents = updated.quantity * updated.unit_price_cents
        self._items[item_id] = updated
        return updated

    def set_customer_notes(self, text: str) -> None:
        self.customer_notes = text

    def set_admin_notes(self, text: str) -> None:
        self.admin_notes = text

    # ── Source synchronisation ──

    def sync_from_source(self, items: Iterable[LineItem], notes: str | None = None, admin_notes: str | None = None) -> bool:
        """
        Adopt externally added/removed items while the buffer is clean.

        Never touches in-progress edits: with unsaved changes this is a no-op.
        Returns True if the buffer was rebuilt.
        """
        if self.has_unsaved_changes():
            return False
        items = list(items)
        current_ids = set(self._items)
        source_ids = {item.id for item in items}
        if current_ids == source_ids:
            return False
        self._load_items(items)
        if notes is not None:
            self.customer_notes = self.original_customer_notes = notes
        if admin_notes is not None:
            self.admin_notes = self.original_admin_notes = admin_notes
        log.debug("Buffer re-synced: +%d -%d items", len(source_ids - current_ids), len(current_ids - source_ids))
        return True

    # ── Save / discard bookkeeping ──

    def mark_saved(self, saved: LineItem) -> bool:
        """
        Record that saved's values are persisted.

        The item is cleaned only if it still holds exactly those values; an
        edit made while the save was in flight stays dirty.
        """
        self._snapshots[saved.id] = LineItem(**{name: getattr(saved, name) for name in _ITEM_FIELDS})
        item = self._items.get(saved.id)
        if item is None or not _same_values(item, saved):
            return False
        item.is_dirty = False
        return True

    def mark_notes_saved(self, customer_notes: str | None = None, admin_notes: str | None = None) -> None:
        if customer_notes is not None:
            self.original_customer_notes = customer_notes
        if admin_notes is not None:
            self.original_admin_notes = admin_notes

    def discard_all_changes(self) -> list[str]:
        """Revert dirty items to their last known server values and reset notes."""
        reverted = []
        for item_id, item in self._items.items():
            if not item.is_dirty:
                continue
            snapshot = self._snapshots.get(item_id)
            self._items[item_id] = LocalLineItem.from_item(snapshot) if snapshot else replace(item, is_dirty=False)
            reverted.append(item_id)
        self.customer_notes = self.original_customer_notes
        self.admin_notes = self.original_admin_notes
        return reverted


class EditableInvoice:
    """
    Editing session for one invoice at a time.

    Exposes the buffer to a UI: local setters, dirty tracking, is_saving,
    save_all_changes() and discard_all_changes(). Callers must not start a
    second save while is_saving is True; a concurrent call returns False.
    """

    def __init__(
        self,
        store: LineItemStore,
        reconciler: TotalsReconciler,
        invoice_id: str | None = None,
        notify: Notifier | None = None,
        invalidate_milestones: bool = True,
    ):
        self.store = store
        self.reconciler = reconciler
        self.invoice_id = invoice_id
        self.notify = notify or log_notifier
        self.invalidate_milestones = invalidate_milestones
        self.buffer = EditBuffer()
        self.is_saving = False
        self.last_error: str | None = None

    @property
    def cache(self):
        return self.reconciler.cache

    # ── Lifecycle ──

    def set_source(
        self,
        invoice_id: str | None,
        items: Iterable[LineItem],
        notes: str | None = None,
        admin_notes: str | None = None,
    ) -> None:
        """
        Feed the latest source data for invoice_id.

        Switching invoices drops the buffer. The first data to arrive for an
        invoice initializes it; later data only re-syncs a clean buffer.
        """
        items = list(items)
        if invoice_id != self.invoice_id:
            log.debug("Editor switched from invoice %s to %s", self.invoice_id, invoice_id)
            self.invoice_id = invoice_id
            self.buffer = EditBuffer()
            self.last_error = None
        if not self.buffer.is_initialized:
            if items or notes is not None:
                self.buffer.initialize(items, notes, admin_notes)
            return
        self.buffer.sync_from_source(items, notes, admin_notes)

    async def load(self, invoice_id: str | None = None) -> None:
        """Read line items and the invoice record through the cache and feed them as source."""
        invoice_id = invoice_id or self.invoice_id
        if not invoice_id:
            raise ValueError("invoice_id is required")
        items = await self.cache.fetch(query_keys.line_items(invoice_id), lambda: self.store.fetch(invoice_id))
        invoice = await self.cache.fetch(query_keys.invoice(invoice_id), lambda: self.store.fetch_invoice(invoice_id))
        self.set_source(invoice_id, items, invoice.notes or "", invoice.admin_notes or "")

    # ── UI-facing state ──

    @property
    def local_line_items(self) -> list[LocalLineItem]:
        return self.buffer.items

    @property
    def customer_notes(self) -> str:
        return self.buffer.customer_notes

    @property
    def admin_notes(self) -> str:
        return self.buffer.admin_notes

    @property
    def has_unsaved_changes(self) -> bool:
        return self.buffer.has_unsaved_changes()

    @property
    def dirty_item_ids(self) -> set[str]:
        return self.buffer.dirty_item_ids

    def update_line_item(self, item_id: str, **changes) -> LocalLineItem | None:
        return self.buffer.update_item(item_id, **changes)

    def set_customer_notes(self, text: str) -> None:
        self.buffer.set_customer_notes(text)

    def set_admin_notes(self, text: str) -> None:
        self.buffer.set_admin_notes(text)

    def sync_from_source(self, items: Iterable[LineItem], notes: str | None = None, admin_notes: str | None = None) -> bool:
        return self.buffer.sync_from_source(items, notes, admin_notes)

    # ── Actions ──

    async def save_all_changes(self) -> bool:
        """
        Persist dirty items, then changed notes, then reconcile totals.

        Invalid dirty items fail the save before anything is written. Stops
        at the first StorageError: items already written stay written
        and clean, everything else stays dirty so the whole save can be
        retried. The reconciler only runs after a fully successful save.
        """
        if not self.invoice_id:
            self.last_error = AppErrors.NO_INVOICE
            self.notify("error", AppErrors.NO_INVOICE)
            return False
        if self.is_saving:
            log.warning("Save already in progress for invoice %s", self.invoice_id)
            return False
        if not self.buffer.has_unsaved_changes():
            return True

        errors = self.buffer.validation_errors()
        if errors:
            self.last_error = "; ".join(errors)
            self.notify("error", self.last_error)
            return False

        invoice_id = self.invoice_id
        self.is_saving = True
        self.last_error = None
        try:
            for item in self.buffer.dirty_items():
                sent = item.to_item()
                await self.store.update(item.id, {
                    "quantity": sent.quantity,
                    "unit_price_cents": sent.unit_price_cents,
                    "total_price_cents": sent.total_price_cents,
                    "description": sent.description,
                })
                self.buffer.mark_saved(sent)

            customer_notes = self.buffer.customer_notes if self.buffer.customer_notes_changed else None
            admin_notes = self.buffer.admin_notes if self.buffer.admin_notes_changed else None
            if customer_notes is not None or admin_notes is not None:
                await self.store.update_notes(invoice_id, customer_notes=customer_notes, admin_notes=admin_notes)
                self.buffer.mark_notes_saved(customer_notes, admin_notes)

            await self.reconciler.reconcile(invoice_id, invalidate_milestones=self.invalidate_milestones)
            self.notify("success", AppErrors.CHANGES_SAVED)
            return True
        except StorageError as e:
            log.error("Error saving changes for invoice %s: %s", invoice_id, e, exc_info=True)
            self.last_error = format_storage_error(e)
            self.notify("error", self.last_error)
            return False
        finally:
            self.is_saving = False

    def discard_all_changes(self) -> list[str]:
        """Drop local edits and mark the invoice's views stale so they refetch."""
        reverted = self.buffer.discard_all_changes()
        if self.invoice_id:
            self.cache.invalidate(query_keys.line_items(self.invoice_id))
            self.cache.invalidate(query_keys.invoice(self.invoice_id))
        self.notify("info", AppErrors.CHANGES_DISCARDED)
        return reverted
