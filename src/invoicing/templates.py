"""Common catering line item templates and the per-person quick quote."""
from src.invoicing.models import to_int

DEFAULT_GUEST_COUNT = 50
DEFAULT_PRICE_PER_PERSON_CENTS = 2500

SERVICE_FEE_CENTS = 15000

_TEMPLATES = {
    "service_fee": {
        "title": "Service Fee",
        "description": "Professional catering service including setup and cleanup",
        "category": "service",
        "unit_price_cents": SERVICE_FEE_CENTS,
    },
    "equipment_rental": {
        "title": "Equipment Rental",
        "description": "Tables, chairs, linens, and serving equipment",
        "category": "equipment",
        "unit_price_cents": 10000,
    },
    "per_person_catering": {
        "title": "Per-Person Catering",
        "description": "Complete catering package per guest",
        "category": "catering",
        "unit_price_cents": DEFAULT_PRICE_PER_PERSON_CENTS,
        "per_guest": True,
    },
    "delivery_fee": {
        "title": "Delivery Fee",
        "description": "Transportation and delivery of catering items",
        "category": "service",
        "unit_price_cents": 5000,
    },
}


def get_common_templates() -> list[dict]:
    """Template ids with display name and category, in menu order."""
    return [
        {"id": template_id, "name": t["title"], "category": t["category"]}
        for template_id, t in _TEMPLATES.items()
    ]


def template_item(template_id: str, guest_count: int | None = None) -> dict | None:
    """
    Build a line item payload from a template, or None for an unknown id.

    Per-guest templates use guest_count as quantity (DEFAULT_GUEST_COUNT when
    missing or zero); every other template is a single unit.
    """
    template = _TEMPLATES.get(template_id)
    if template is None:
        return None
    quantity = 1
    if template.get("per_guest"):
        quantity = to_int(guest_count, "guest_count") if guest_count else DEFAULT_GUEST_COUNT
    return {
        "title": template["title"],
        "description": template["description"],
        "category": template["category"],
        "quantity": quantity,
        "unit_price_cents": template["unit_price_cents"],
        "total_price_cents": quantity * template["unit_price_cents"],
    }


def per_person_items(guest_count: int, price_per_person_cents: int = DEFAULT_PRICE_PER_PERSON_CENTS) -> list[dict]:
    """Standard quote: per-person catering for every guest plus the service fee."""
    guest_count = to_int(guest_count, "guest_count")
    price_per_person_cents = to_int(price_per_person_cents, "price_per_person_cents")
    return [
        {
            "title": "Per-Person Catering",
            "description": "Complete catering package including appetizers, main course, sides, and service",
            "category": "catering",
            "quantity": guest_count,
            "unit_price_cents": price_per_person_cents,
            "total_price_cents": guest_count * price_per_person_cents,
        },
        {
            "title": "Service Fee",
            "description": "Professional catering service including setup, serving, and cleanup",
            "category": "service",
            "quantity": 1,
            "unit_price_cents": SERVICE_FEE_CENTS,
            "total_price_cents": SERVICE_FEE_CENTS,
        },
    ]
