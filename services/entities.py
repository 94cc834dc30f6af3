"""Entity kinds and the canonical record passed between import stages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EntityKind(str, Enum):
    ORDERS = "orders"
    QUOTES = "quotes"
    ORDER_ITEMS = "order_items"
    CONTACTS = "contacts"
    TASKS = "tasks"
    ENQUIRIES = "enquiries"
    UNKNOWN = "unknown"

    @property
    def table(self) -> str:
        return _TABLES[self]

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


_TABLES = {
    EntityKind.ORDERS: "orders",
    EntityKind.QUOTES: "quotes",
    EntityKind.ORDER_ITEMS: "order_items",
    EntityKind.CONTACTS: "contacts",
    EntityKind.TASKS: "tasks",
    EntityKind.ENQUIRIES: "enquiries",
    EntityKind.UNKNOWN: "",
}

# Kinds in the order a multi-kind import must write them so that references
# created by one kind are cached before a later kind needs them.
IMPORT_ORDER = (
    EntityKind.CONTACTS,
    EntityKind.ORDERS,
    EntityKind.ORDER_ITEMS,
    EntityKind.QUOTES,
    EntityKind.TASKS,
    EntityKind.ENQUIRIES,
)

_KIND_ALIASES = {
    "order": EntityKind.ORDERS,
    "orders": EntityKind.ORDERS,
    "orderlist": EntityKind.ORDERS,
    "quote": EntityKind.QUOTES,
    "quotes": EntityKind.QUOTES,
    "quotelist": EntityKind.QUOTES,
    "orderitem": EntityKind.ORDER_ITEMS,
    "orderitems": EntityKind.ORDER_ITEMS,
    "items": EntityKind.ORDER_ITEMS,
    "lineitems": EntityKind.ORDER_ITEMS,
    "contact": EntityKind.CONTACTS,
    "contacts": EntityKind.CONTACTS,
    "customers": EntityKind.CONTACTS,
    "task": EntityKind.TASKS,
    "tasks": EntityKind.TASKS,
    "enquiry": EntityKind.ENQUIRIES,
    "enquiries": EntityKind.ENQUIRIES,
    "inquiries": EntityKind.ENQUIRIES,
}

_KIND_KEY_PATTERN = re.compile(r"[^a-z]+")


def parse_kind(value: Optional[str]) -> Optional[EntityKind]:
    """Translate a user supplied kind name (``order-items``, ``Orders``...).

    Returns ``None`` for blank values and ``auto`` so callers can fall back to
    detection.
    """

    if value is None:
        return None
    key = _KIND_KEY_PATTERN.sub("", str(value).lower())
    if not key or key in {"auto", "detect"}:
        return None
    kind = _KIND_ALIASES.get(key)
    if kind is None:
        raise ValueError(f"Unknown record kind '{value}'")
    return kind


@dataclass
class CanonicalRecord:
    """A record after alias resolution and sanitizing, for exactly one kind."""

    kind: EntityKind
    values: Dict[str, Any] = field(default_factory=dict)
    warnings: List[Any] = field(default_factory=list)

    def get(self, name: str, default: Any = None) -> Any:
        value = self.values.get(name, default)
        return default if value is None else value

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self.values[name] = value


__all__ = ["CanonicalRecord", "EntityKind", "IMPORT_ORDER", "parse_kind"]
