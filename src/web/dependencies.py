"""
Dependency wiring for FastAPI routes.

The query cache and editor sessions live for the whole process; repositories
and stores are cheap and built per call against DATA_ROOT.
"""
import os
from dataclasses import replace
from pathlib import Path

from src.invoicing.edit_buffer import EditableInvoice
from src.invoicing.mutations import LineItemMutations
from src.invoicing.query_cache import QueryCache
from src.invoicing.reconciler import TotalsReconciler
from src.invoicing.storage.invoice_repository import InvoiceRepository
from src.invoicing.storage.line_item_store import SqliteLineItemStore
from src.shared.app_state import AppState

DATA_ROOT = Path(os.environ.get("CATERING_DATA_ROOT", "./data"))

_QUERY_CACHE = QueryCache()
_EDITORS: dict[str, EditableInvoice] = {}


def get_state() -> AppState:
    """Configuration from the environment, rooted at DATA_ROOT."""
    return replace(AppState.from_env(), data_root=DATA_ROOT)


def get_invoice_repository() -> InvoiceRepository:
    state = get_state()
    state.data_root.mkdir(parents=True, exist_ok=True)
    return InvoiceRepository(state.data_root / "invoices.sqlite", default_tax_rate=state.default_tax_rate)


def get_query_cache() -> QueryCache:
    return _QUERY_CACHE


def get_line_item_store() -> SqliteLineItemStore:
    return SqliteLineItemStore(get_invoice_repository())


def get_reconciler(store: SqliteLineItemStore | None = None) -> TotalsReconciler:
    state = get_state()
    return TotalsReconciler(
        store or get_line_item_store(),
        get_query_cache(),
        batch_delay=state.batch_reconcile_delay,
        single_edit_delay=state.single_edit_reconcile_delay,
    )


def get_mutations() -> LineItemMutations:
    state = get_state()
    store = get_line_item_store()
    return LineItemMutations(
        store,
        get_query_cache(),
        get_reconciler(store),
        invalidate_milestones=state.invalidate_milestones,
    )


def get_editor(invoice_id: str) -> EditableInvoice:
    """Return the editing session for an invoice, creating it on first use."""
    editor = _EDITORS.get(invoice_id)
    if editor is None:
        store = get_line_item_store()
        editor = EditableInvoice(
            store,
            get_reconciler(store),
            invalidate_milestones=get_state().invalidate_milestones,
        )
        _EDITORS[invoice_id] = editor
    return editor


def drop_editor(invoice_id: str) -> None:
    _EDITORS.pop(invoice_id, None)


def reset_sessions() -> None:
    """Forget every editor session and cached query."""
    global _QUERY_CACHE
    _EDITORS.clear()
    _QUERY_CACHE = QueryCache()
