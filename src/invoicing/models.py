"""Invoice and line item entities. All money amounts are integer cents."""
from dataclasses import dataclass, fields
from decimal import ROUND_HALF_UP, Decimal


@dataclass
class LineItem:
    id: str
    invoice_id: str
    title: str
    quantity: int
    unit_price_cents: int
    total_price_cents: int
    description: str = ""
    category: str = ""
    sort_order: int = 0


@dataclass
class LocalLineItem(LineItem):
    """A line item held in an edit buffer, with its dirty flag."""
    is_dirty: bool = False

    @classmethod
    def from_item(cls, item: LineItem, is_dirty: bool = False) -> "LocalLineItem":
        values = {f.name: getattr(item, f.name) for f in fields(LineItem)}
        return cls(**values, is_dirty=is_dirty)

    def to_item(self) -> LineItem:
        return LineItem(**{f.name: getattr(self, f.name) for f in fields(LineItem)})


@dataclass
class Invoice:
    id: str
    invoice_number: str
    customer_name: str
    status: str
    tax_rate: float
    is_government_contract: bool
    discount_cents: int
    subtotal_cents: int
    tax_amount_cents: int
    total_amount_cents: int
    notes: str | None
    admin_notes: str | None
    quote_request_id: str | None
    created_at: str
    updated_at: str


@dataclass
class InvoiceTotals:
    """Server-computed aggregate for one invoice."""
    subtotal_cents: int
    tax_amount_cents: int
    total_amount_cents: int


def to_int(value, field_name: str = "value") -> int:
    """
    Coerce a quantity or cents amount to int.

    Accepts ints, integral floats and integer strings ("3", " -500 ").
    Rejects bools, fractional numbers, None and anything else with ValueError.
    """
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a whole number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValueError(f"{field_name} must be a whole number, got {value!r}")


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_totals(
    line_totals: list[int],
    tax_rate: float,
    is_government_contract: bool = False,
    discount_cents: int = 0,
) -> InvoiceTotals:
    """
    Compute invoice totals from committed line totals.

    Government contracts are tax exempt. The invoice-level discount is applied
    before tax and never drives the taxable amount below zero.
    """
    subtotal = sum(line_totals)
    taxable = max(subtotal - discount_cents, 0)
    if is_government_contract:
        tax = 0
    else:
        tax = round_half_up(Decimal(taxable) * Decimal(str(tax_rate)))
    return InvoiceTotals(subtotal_cents=subtotal, tax_amount_cents=tax, total_amount_cents=taxable + tax)
