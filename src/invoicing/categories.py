"""
Line item category classification.

Auto-generated items come from menu/package configuration; everything else,
including "food", "other" and blank categories, was added by hand.
"""
from typing import Iterable

from src.invoicing.models import LineItem

AUTO_GENERATED_CATEGORIES = frozenset({
    "package",
    "proteins",
    "sides",
    "appetizers",
    "desserts",
    "dietary",
    "service",
    "supplies",
    "equipment",
    "beverages",
})


def is_auto_generated_category(category: str | None) -> bool:
    """Return True if the category tag belongs to the auto-generated set."""
    if not category:
        return False
    return category.lower() in AUTO_GENERATED_CATEGORIES


def is_custom_category(category: str | None) -> bool:
    return not is_auto_generated_category(category)


def partition_line_items(items: Iterable[LineItem]) -> tuple[list[LineItem], list[LineItem]]:
    """Split items into (auto_generated, custom), preserving input order."""
    auto_generated: list[LineItem] = []
    custom: list[LineItem] = []
    for item in items:
        if is_auto_generated_category(getattr(item, "category", None)):
            auto_generated.append(item)
        else:
            custom.append(item)
    return auto_generated, custom
