"""
Invoice totals reconciliation.

Runs after a committed line item or notes mutation:

1. wait a short tolerance window so a server-side trigger can recompute
   the aggregate on its own,
2. call the idempotent recalculation anyway (the deterministic backstop);
   a failure here is logged as a ReconciliationWarning and does not stop
   the protocol,
3. invalidate every cached view that embeds the invoice.

The wait is an asyncio sleep, so only the reconciling task is suspended.
"""
import asyncio
import logging
from dataclasses import dataclass, field

from src.invoicing.models import InvoiceTotals
from src.invoicing.query_cache import QueryCache, QueryKey, query_keys
from src.invoicing.storage.line_item_store import LineItemStore
from src.shared.errors import ReconciliationWarning

log = logging.getLogger(__name__)

BATCH_DELAY = 0.2
SINGLE_EDIT_DELAY = 0.1


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run."""
    invoice_id: str
    totals: InvoiceTotals | None = None
    warning: ReconciliationWarning | None = None
    invalidated: list[QueryKey] = field(default_factory=list)

    @property
    def recalculated(self) -> bool:
        return self.warning is None


class TotalsReconciler:
    """Makes the authoritative invoice aggregate consistent and fans out invalidation."""

    def __init__(
        self,
        store: LineItemStore,
        cache: QueryCache,
        batch_delay: float = BATCH_DELAY,
        single_edit_delay: float = SINGLE_EDIT_DELAY,
    ):
        self.store = store
        self.cache = cache
        self.batch_delay = batch_delay
        self.single_edit_delay = single_edit_delay
        self.last_warning: ReconciliationWarning | None = None

    async def reconcile(
        self,
        invoice_id: str,
        delay: float | None = None,
        invalidate_milestones: bool = True,
    ) -> ReconcileResult:
        """Run the full protocol for a batch or structural change (default delay)."""
        wait = self.batch_delay if delay is None else delay
        if wait > 0:
            await asyncio.sleep(wait)

        result = ReconcileResult(invoice_id=invoice_id)
        try:
            result.totals = await self.store.recalculate_totals(invoice_id)
            log.debug("Invoice %s totals reconciled: %s", invoice_id, result.totals)
        except Exception as e:
            warning = ReconciliationWarning(invoice_id, e)
            result.warning = warning
            self.last_warning = warning
            log.warning("%s", warning)

        result.invalidated = self.invalidate_dependents(invoice_id, invalidate_milestones)
        return result

    async def reconcile_single_edit(self, invoice_id: str, invalidate_milestones: bool = True) -> ReconcileResult:
        """Reconcile after one optimistic field edit (shorter tolerance window)."""
        return await self.reconcile(invoice_id, self.single_edit_delay, invalidate_milestones)

    def dependent_keys(self, invoice_id: str, invalidate_milestones: bool = True) -> list[QueryKey]:
        keys = [
            query_keys.invoice(invoice_id),
            query_keys.invoices(),
            query_keys.line_items(invoice_id),
            query_keys.events(),
            query_keys.quotes(),
        ]
        if invalidate_milestones:
            keys.append(query_keys.payment_milestones(invoice_id))
            keys.append(query_keys.invoice_with_milestones(invoice_id))
        return keys

    def invalidate_dependents(self, invoice_id: str, invalidate_milestones: bool = True) -> list[QueryKey]:
        keys = self.dependent_keys(invoice_id, invalidate_milestones)
        for key in keys:
            self.cache.invalidate(key)
        return keys
