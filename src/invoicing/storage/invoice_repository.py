"""Invoice repository - sqlite persistence for invoices and their line items.

This is the authoritative side: it owns persisted line items and is the only
place invoice subtotal/tax/total are computed.
"""
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path

from src.invoicing.models import Invoice, InvoiceTotals, LineItem, compute_totals, to_int

log = logging.getLogger(__name__)

_INVOICE_COLUMNS = (
    "id, invoice_number, customer_name, status, tax_rate, is_government_contract, "
    "discount_cents, subtotal_cents, tax_amount_cents, total_amount_cents, "
    "notes, admin_notes, quote_request_id, created_at, updated_at"
)
_ITEM_COLUMNS = (
    "id, invoice_id, title, quantity, unit_price_cents, total_price_cents, "
    "description, category, sort_order"
)


def _row_to_invoice(row) -> Invoice:
    values = list(row)
    values[5] = bool(values[5])
    return Invoice(*values)


INTEGER_FIELDS = ("quantity", "unit_price_cents", "total_price_cents", "sort_order")


def coerce_line_item_fields(data: dict) -> dict:
    """Return a copy of data with its integer fields as ints. Raises ValueError."""
    coerced = dict(data)
    for name in INTEGER_FIELDS:
        if coerced.get(name) is not None:
            coerced[name] = to_int(coerced[name], name)
    return coerced


def validate_line_item(item: dict, position: int = 1, partial: bool = False) -> list[str]:
    """
    Return validation errors for a line item payload.

    With partial=True only the fields present in item are checked, for
    payloads that change an existing item.
    """
    if not isinstance(item, dict):
        return [f"Line item {position}: must be an object"]
    errors = []
    if not partial or "title" in item:
        if not str(item.get("title") or "").strip():
            errors.append(f"Line item {position}: Title is required")
    if not partial or "quantity" in item:
        try:
            if to_int(item.get("quantity", 0), "quantity") <= 0:
                errors.append(f"Line item {position}: Quantity must be greater than 0")
        except ValueError:
            errors.append(f"Line item {position}: Quantity must be a whole number")
    if not partial or "unit_price_cents" in item:
        try:
            if to_int(item.get("unit_price_cents", 0), "unit_price_cents") < 0 and item.get("category") != "discount":
                errors.append(f"Line item {position}: Unit price cannot be negative")
        except ValueError:
            errors.append(f"Line item {position}: Unit price must be a whole number of cents")
    for name in ("total_price_cents", "sort_order"):
        if item.get(name) is not None:
            try:
                to_int(item[name], name)
            except ValueError:
                errors.append(f"Line item {position}: {name} must be a whole number")
    return errors


def validate_line_items(items) -> None:
    """Raise ValueError listing every problem in a batch of line item payloads."""
    if not isinstance(items, list):
        raise ValueError("items must be a list of line items")
    errors = []
    for position, item in enumerate(items, start=1):
        errors.extend(validate_line_item(item, position))
    if errors:
        raise ValueError("; ".join(errors))


class InvoiceRepository:
    """Repository for invoice DB operations. Uses a single SQLite file."""

    def __init__(self, db_path: Path, default_tax_rate: float = 0.08):
        self.db_path = Path(db_path)
        self.default_tax_rate = default_tax_rate
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    invoice_number TEXT NOT NULL,
                    customer_name TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'draft',
                    tax_rate REAL NOT NULL DEFAULT 0.08,
                    is_government_contract INTEGER NOT NULL DEFAULT 0,
                    discount_cents INTEGER NOT NULL DEFAULT 0,
                    subtotal_cents INTEGER NOT NULL DEFAULT 0,
                    tax_amount_cents INTEGER NOT NULL DEFAULT 0,
                    total_amount_cents INTEGER NOT NULL DEFAULT 0,
                    notes TEXT,
                    admin_notes TEXT,
                    quote_request_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS invoice_line_items (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    unit_price_cents INTEGER NOT NULL,
                    total_price_cents INTEGER NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    category TEXT NOT NULL DEFAULT '',
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_line_items_invoice
                ON invoice_line_items(invoice_id, sort_order)
            """)
            conn.commit()

    # ── Invoices ──

    def create_invoice(
        self,
        invoice_number: str,
        customer_name: str = "",
        status: str = "draft",
        tax_rate: float | None = None,
        is_government_contract: bool = False,
        discount_cents: int = 0,
        notes: str | None = None,
        admin_notes: str | None = None,
        quote_request_id: str | None = None,
        items: list[dict] | None = None,
    ) -> Invoice:
        """Create an invoice, optionally with line items. Raises ValueError on invalid items."""
        if items:
            validate_line_items(items)
        invoice_id = str(uuid.uuid4())
        now = datetime.now(UTC).isoformat()
        rate = self.default_tax_rate if tax_rate is None else tax_rate
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO invoices ({_INVOICE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, 0, ?, ?, ?, ?, ?)",
                (invoice_id, invoice_number, customer_name, status, rate,
                 int(is_government_contract), discount_cents, notes, admin_notes,
                 quote_request_id, now, now),
            )
            if items:
                self._insert_items(conn, invoice_id, items, start=0)
            conn.commit()
        if items:
            self.recalculate_invoice_totals(invoice_id)
        return self.get_invoice(invoice_id)

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE id = ?", (invoice_id,),
            ).fetchone()
            return _row_to_invoice(row) if row else None

    def list_invoices(
        self,
        status: str | None = None,
        quote_request_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Invoice]:
        clauses = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if quote_request_id:
            clauses.append("quote_request_id = ?")
            params.append(quote_request_id)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = f"SELECT {_INVOICE_COLUMNS} FROM invoices{where} ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with self._connect() as conn:
            return [_row_to_invoice(r) for r in conn.execute(sql, params).fetchall()]

    def update_invoice(self, invoice_id: str, **kwargs) -> Invoice | None:
        """Update invoice attributes. Totals are never written here."""
        allowed = {
            "invoice_number", "customer_name", "status", "tax_rate",
            "is_government_contract", "discount_cents", "notes", "admin_notes",
            "quote_request_id",
        }
        updates = []
        params = []
        for k, v in kwargs.items():
            if k in allowed:
                if k == "is_government_contract":
                    v = int(v)
                updates.append(f"{k} = ?")
                params.append(v)
        if not updates:
            return self.get_invoice(invoice_id)
        updates.append("updated_at = ?")
        params.append(datetime.now(UTC).isoformat())
        params.append(invoice_id)
        with self._connect() as conn:
            conn.execute(f"UPDATE invoices SET {', '.join(updates)} WHERE id = ?", params)
            conn.commit()
        return self.get_invoice(invoice_id)

    def update_invoice_notes(
        self,
        invoice_id: str,
        customer_notes: str | None = None,
        admin_notes: str | None = None,
    ) -> Invoice | None:
        changes = {}
        if customer_notes is not None:
            changes["notes"] = customer_notes
        if admin_notes is not None:
            changes["admin_notes"] = admin_notes
        return self.update_invoice(invoice_id, **changes)

    def delete_invoice(self, invoice_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM invoice_line_items WHERE invoice_id = ?", (invoice_id,))
            deleted = conn.execute("DELETE FROM invoices WHERE id = ?", (invoice_id,)).rowcount
            conn.commit()
            return deleted > 0

    # ── Line Items ──

    def get_line_items(self, invoice_id: str) -> list[LineItem]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM invoice_line_items "
                "WHERE invoice_id = ? ORDER BY sort_order ASC, rowid ASC",
                (invoice_id,),
            ).fetchall()
            return [LineItem(*r) for r in rows]

    def get_line_item(self, item_id: str) -> LineItem | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM invoice_line_items WHERE id = ?", (item_id,),
            ).fetchone()
            return LineItem(*row) if row else None

    def add_line_items(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        """Append items to an invoice. Returns the created items in insert order."""
        with self._connect() as conn:
            if not conn.execute("SELECT 1 FROM invoices WHERE id = ?", (invoice_id,)).fetchone():
                raise ValueError(f"Invoice {invoice_id} does not exist")
            start = conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM invoice_line_items WHERE invoice_id = ?",
                (invoice_id,),
            ).fetchone()[0]
            ids = self._insert_items(conn, invoice_id, items, start=start)
            conn.commit()
        return [self.get_line_item(i) for i in ids]

    def update_line_item(self, item_id: str, **kwargs) -> LineItem | None:
        allowed = {
            "title", "description", "category", "quantity",
            "unit_price_cents", "total_price_cents", "sort_order",
        }
        current = self.get_line_item(item_id)
        if current is None:
            return None
        changes = coerce_line_item_fields({k: v for k, v in kwargs.items() if k in allowed})
        if not changes:
            return current
        if "total_price_cents" not in changes and (
            "quantity" in changes or "unit_price_cents" in changes
        ):
            quantity = changes.get("quantity", current.quantity)
            unit_price = changes.get("unit_price_cents", current.unit_price_cents)
            changes["total_price_cents"] = quantity * unit_price
        assignments = ", ".join(f"{k} = ?" for k in changes)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE invoice_line_items SET {assignments} WHERE id = ?",
                [*changes.values(), item_id],
            )
            conn.commit()
        return self.get_line_item(item_id)

    def delete_line_item(self, item_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM invoice_line_items WHERE id = ?", (item_id,)).rowcount
            conn.commit()
            return deleted > 0

    def replace_line_items(self, invoice_id: str, items: list[dict]) -> list[LineItem]:
        """Replace all items for an invoice in a single transaction."""
        with self._connect() as conn:
            if not conn.execute("SELECT 1 FROM invoices WHERE id = ?", (invoice_id,)).fetchone():
                raise ValueError(f"Invoice {invoice_id} does not exist")
            conn.execute("DELETE FROM invoice_line_items WHERE invoice_id = ?", (invoice_id,))
            self._insert_items(conn, invoice_id, items, start=0)
            conn.commit()
        return self.get_line_items(invoice_id)

    def _insert_items(self, conn: sqlite3.Connection, invoice_id: str, items: list[dict], start: int) -> list[str]:
        ids = []
        for offset, item in enumerate(items):
            item_id = item.get("id") or str(uuid.uuid4())
            item = coerce_line_item_fields(item)
            quantity = item.get("quantity", 1)
            unit_price = item.get("unit_price_cents", 0)
            total = item.get("total_price_cents")
            conn.execute(
                f"INSERT INTO invoice_line_items ({_ITEM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (item_id, invoice_id, item["title"], quantity, unit_price,
                 quantity * unit_price if total is None else total,
                 item.get("description") or "", item.get("category") or "",
                 item.get("sort_order", start + offset)),
            )
            ids.append(item_id)
        return ids

    # ── Totals ──

    def recalculate_invoice_totals(self, invoice_id: str) -> InvoiceTotals | None:
        """
        Recompute subtotal, tax and total from the committed line items.

        Idempotent: the result depends only on stored rows, so calling it
        twice without an intervening mutation writes the same values.
        Returns None if the invoice does not exist.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT tax_rate, is_government_contract, discount_cents FROM invoices WHERE id = ?",
                (invoice_id,),
            ).fetchone()
            if row is None:
                return None
            tax_rate, is_government, discount = row
            line_totals = [
                r[0] for r in conn.execute(
                    "SELECT total_price_cents FROM invoice_line_items WHERE invoice_id = ?",
                    (invoice_id,),
                ).fetchall()
            ]
            totals = compute_totals(line_totals, tax_rate, bool(is_government), discount)
            conn.execute(
                "UPDATE invoices SET subtotal_cents = ?, tax_amount_cents = ?, total_amount_cents = ?, "
                "updated_at = ? WHERE id = ?",
                (totals.subtotal_cents, totals.tax_amount_cents, totals.total_amount_cents,
                 datetime.now(UTC).isoformat(), invoice_id),
            )
            conn.commit()
        log.debug("Recalculated totals for invoice %s: %s", invoice_id, totals)
        return totals
