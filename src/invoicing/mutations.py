"""
Committed line item mutations.

Every wrapper persists through the LineItemStore first; only a successful
write hands off to the TotalsReconciler. A failed write propagates to the
caller and the reconciler is not run.

update_line_item() is the optimistic single-item path: the cached
collection is changed before the write resolves and restored exactly if
the write fails.
"""
import copy
import logging
from dataclasses import replace

from src.invoicing.edit_buffer import EDITABLE_FIELDS, Notifier, log_notifier
from src.invoicing.models import Invoice, LineItem
from src.invoicing.query_cache import CacheEntry, QueryCache, QueryKey, query_keys
from src.invoicing.reconciler import ReconcileResult, TotalsReconciler
from src.invoicing.storage.invoice_repository import coerce_line_item_fields, validate_line_item, validate_line_items
from src.invoicing.storage.line_item_store import LineItemStore
from src.invoicing.templates import DEFAULT_PRICE_PER_PERSON_CENTS, per_person_items, template_item
from src.shared.errors import AppErrors, RollbackFailure, StorageError

log = logging.getLogger(__name__)

_OPTIMISTIC_FIELDS = EDITABLE_FIELDS + ("title", "category", "sort_order", "total_price_cents")


def _apply_changes(item: LineItem, changes: dict) -> LineItem:
    updated = replace(item, **changes)
    if "total_price_cents" not in changes and ("quantity" in changes or "unit_price_cents" in changes):
        updated.total_price_cents = updated.quantity * updated.unit_price_cents
    return updated


class LineItemMutations:
    """CRUD wrappers over the store that reconcile invoice totals after each commit."""

    def __init__(
        self,
        store: LineItemStore,
        cache: QueryCache,
        reconciler: TotalsReconciler,
        notify: Notifier | None = None,
        invalidate_milestones: bool = True,
    ):
        self.store = store
        self.cache = cache
        self.reconciler = reconciler
        self.notify = notify or log_notifier
        self.invalidate_milestones = invalidate_milestones

    # ── Optimistic single-item update ──

    async def update_line_item(self, invoice_id: str, item_id: str, changes: dict) -> LineItem:
        """
        Optimistically update one item in the cached collection, then persist it.

        Raises ValueError (before touching the cache) if the changes are not
        valid line item values, and StorageError after restoring the
        pre-mutation cache entry if the write fails.
        """
        changes = coerce_line_item_fields({k: v for k, v in changes.items() if k in _OPTIMISTIC_FIELDS})
        key = query_keys.line_items(invoice_id)
        current = next((i for i in self.cache.get_data(key) or [] if i.id == item_id), None)
        errors = validate_line_item({"category": current.category if current else "", **changes}, partial=True)
        if errors:
            raise ValueError("; ".join(errors))

        # A read landing after the optimistic write would overwrite it with stale rows
        await self.cache.cancel(key)

        snapshot = copy.deepcopy(self.cache.get_entry(key))
        optimistic = None
        if snapshot is not None and snapshot.data is not None:
            items = [_apply_changes(item, changes) if item.id == item_id else item for item in snapshot.data]
            optimistic = next((i for i in items if i.id == item_id), None)
            self.cache.set_data(key, items)

        payload = dict(changes)
        if optimistic is not None and "total_price_cents" not in payload and (
            "quantity" in payload or "unit_price_cents" in payload
        ):
            payload["total_price_cents"] = optimistic.total_price_cents

        try:
            updated = await self.store.update(item_id, payload)
        except StorageError:
            self._rollback(key, snapshot)
            self.notify("error", AppErrors.UPDATE_REVERTED)
            raise

        await self.reconciler.reconcile_single_edit(invoice_id, self.invalidate_milestones)
        return updated

    def _rollback(self, key: QueryKey, snapshot: CacheEntry | None) -> None:
        try:
            if snapshot is not None:
                self.cache.restore_entry(key, snapshot)
            else:
                self.cache.remove(key)
        except Exception as e:
            # Last resort: let the next read refetch server state
            self.cache.invalidate(key)
            log.error("Rollback of %s failed: %s", key, e, exc_info=True)
            raise RollbackFailure(str(e), operation="rollback") from e
        log.info("Rolled back optimistic update of %s", key)

    # ── Structural changes ──

    async def create_line_items(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        validate_line_items(items)
        created = await self.store.create(invoice_id, items)
        await self.reconciler.reconcile(invoice_id, invalidate_milestones=self.invalidate_milestones)
        return created

    async def delete_line_item(self, invoice_id: str, item_id: str) -> None:
        await self.store.delete(item_id)
        await self.reconciler.reconcile(invoice_id, invalidate_milestones=self.invalidate_milestones)

    async def replace_line_items(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        validate_line_items(items)
        replaced = await self.store.replace_all(invoice_id, items)
        await self.reconciler.reconcile(invoice_id, invalidate_milestones=self.invalidate_milestones)
        return replaced

    async def add_template_item(self, invoice_id: str, template_id: str, guest_count: int | None = None) -> LineItem:
        """Append one line item built from a common template."""
        item = template_item(template_id, guest_count)
        if item is None:
            raise ValueError(f"Unknown line item template: {template_id}")
        created = await self.create_line_items(invoice_id, [item])
        return created[0]

    async def quick_calculate_per_person(
        self,
        invoice_id: str,
        guest_count: int,
        price_per_person_cents: int = DEFAULT_PRICE_PER_PERSON_CENTS,
    ) -> list[LineItem]:
        """Replace every line item with the standard per-person quote."""
        return await self.replace_line_items(invoice_id, per_person_items(guest_count, price_per_person_cents))

    async def update_invoice_notes(
        self,
        invoice_id: str,
        customer_notes: str | None = None,
        admin_notes: str | None = None,
    ) -> Invoice:
        invoice = await self.store.update_notes(invoice_id, customer_notes=customer_notes, admin_notes=admin_notes)
        await self.reconciler.reconcile(invoice_id, invalidate_milestones=self.invalidate_milestones)
        return invoice

    async def recalculate(self, invoice_id: str) -> ReconcileResult:
        """Explicit recalculation with no tolerance wait."""
        return await self.reconciler.reconcile(invoice_id, delay=0, invalidate_milestones=self.invalidate_milestones)
