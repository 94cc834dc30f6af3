"""Adapters for exports produced by other bakery management systems.

A :class:`LegacyFormat` is pure data: the collection names a foreign JSON
export uses and the tables translating its enumerations (event type, order
status, enquiry status) into ours.  Supporting another system means
registering another format in :data:`LEGACY_FORMATS`; the importer does not
change.

:class:`LegacyFormatAdapter` does two things with a format:

* :meth:`LegacyFormatAdapter.extract` walks the foreign document and returns
  a :class:`LegacyDataset` of flat records per entity kind, with nested order
  lines flattened and customer ids replaced by the customer's email and name
  so the reference resolver can link them.
* :meth:`LegacyFormatAdapter.apply` maps the enum fields of a normalised
  record onto canonical values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .entities import IMPORT_ORDER, CanonicalRecord, EntityKind
from .field_normalizer import field_key
from .reference_resolver import synthesize_identifier

LOGGER = logging.getLogger(__name__)


EVENT_TYPES = (
    "Birthday",
    "Wedding",
    "Corporate",
    "Anniversary",
    "Baby Shower",
    "Gender Reveal",
    "Christening",
    "Hen/Stag",
    "Other",
)
ORDER_STATUSES = ("Draft", "Confirmed", "Paid", "Ready", "Delivered", "Cancelled")
QUOTE_STATUSES = ("Draft", "Sent", "Accepted", "Declined", "Expired", "Cancelled")
ENQUIRY_STATUSES = ("Open", "Replied", "Waiting for Reply", "Converted to Order", "Closed")


def _fold(value: Any) -> str:
    return field_key(value or "")


@dataclass(frozen=True)
class EnumMapping:
    """Case-insensitive lookup table with an explicit catch-all value."""

    table: Mapping[str, str]
    default: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "table", {_fold(key): value for key, value in self.table.items()})

    def map(self, value: Any) -> str:
        return self.table.get(_fold(value), self.default)


def _identity_table(values: Iterable[str]) -> Dict[str, str]:
    return {value: value for value in values}


# ---------------------------------------------------------------------------
# Formats
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LegacyFormat:
    name: str
    label: str
    enums: Mapping[EntityKind, Mapping[str, EnumMapping]]
    collections: Mapping[EntityKind, Set[str]]
    ignored_collections: Set[str] = frozenset()
    default_country: Optional[str] = None


_EVENT_TYPE_MAP = EnumMapping(
    {
        **_identity_table(EVENT_TYPES),
        "hen": "Hen/Stag",
        "stag": "Hen/Stag",
        "hen do": "Hen/Stag",
        "stag do": "Hen/Stag",
    },
    default="Other",
)

_ORDER_STATUS_MAP = EnumMapping(
    {
        **_identity_table(ORDER_STATUSES),
        "": "Draft",
        "quote": "Draft",
        "booked": "Confirmed",
        "collected": "Delivered",
        "canceled": "Cancelled",
    },
    default="Draft",
)

_QUOTE_STATUS_MAP = EnumMapping(
    {**_identity_table(QUOTE_STATUSES), "": "Draft", "quote": "Draft", "canceled": "Cancelled"},
    default="Draft",
)

_ENQUIRY_STATUS_MAP = EnumMapping(
    {
        **_identity_table(ENQUIRY_STATUSES),
        "new": "Open",
        "waiting": "Waiting for Reply",
        "converted": "Converted to Order",
    },
    default="Open",
)

BAKE_DIARY = LegacyFormat(
    name="bake-diary",
    label="Bake Diary",
    enums={
        EntityKind.ORDERS: {"event_type": _EVENT_TYPE_MAP, "status": _ORDER_STATUS_MAP},
        EntityKind.QUOTES: {"event_type": _EVENT_TYPE_MAP, "status": _QUOTE_STATUS_MAP},
        EntityKind.ENQUIRIES: {"event_type": _EVENT_TYPE_MAP, "status": _ENQUIRY_STATUS_MAP},
    },
    collections={
        EntityKind.CONTACTS: {"customers", "contacts", "clients"},
        EntityKind.ORDERS: {"orders", "order_list", "orderhistory"},
        EntityKind.QUOTES: {"quotes", "quote_list"},
        EntityKind.TASKS: {"tasks", "todos"},
        EntityKind.ENQUIRIES: {"enquiries", "inquiries", "leads"},
    },
    ignored_collections={"recipes", "products", "settings", "expenses", "income", "financials"},
    default_country="United Kingdom",
)

LEGACY_FORMATS: Dict[str, LegacyFormat] = {BAKE_DIARY.name: BAKE_DIARY}


def get_legacy_format(name: Optional[str]) -> LegacyFormat:
    """Look a format up by name or label (``bake-diary``, ``Bake Diary``)."""

    wanted = _fold(name or BAKE_DIARY.name)
    for legacy_format in LEGACY_FORMATS.values():
        if wanted in (_fold(legacy_format.name), _fold(legacy_format.label)):
            return legacy_format
    raise ValueError(f"Unsupported source system '{name}'")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


@dataclass
class LegacyDataset:
    """Flat records per entity kind gleaned from a foreign export."""

    source_system: str = ""
    records: Dict[EntityKind, List[Dict[str, Any]]] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    def add(self, kind: EntityKind, rows: Iterable[Dict[str, Any]]) -> None:
        self.records.setdefault(kind, []).extend(rows)

    def plan(self, kinds: Optional[Iterable[EntityKind]] = None) -> List[Tuple[EntityKind, List[Dict[str, Any]]]]:
        wanted = set(kinds) if kinds is not None else set(IMPORT_ORDER)
        return [
            (kind, self.records[kind])
            for kind in IMPORT_ORDER
            if kind in wanted and self.records.get(kind)
        ]

    def count(self, kind: EntityKind) -> int:
        return len(self.records.get(kind, []))


def _ensure_list_of_dicts(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, Mapping):
        return [dict(value)]
    if isinstance(value, list):
        return [dict(entry) for entry in value if isinstance(entry, Mapping)]
    return []


def _first_value(payload: Mapping[str, Any], *candidates: str) -> Optional[Any]:
    for candidate in candidates:
        if candidate in payload:
            value = payload[candidate]
            if value not in (None, ""):
                return value
    return None


class LegacyFormatAdapter:
    def __init__(self, legacy_format: LegacyFormat = BAKE_DIARY):
        self.format = legacy_format

    @property
    def source_system(self) -> str:
        return self.format.label

    # -- enum mapping ---------------------------------------------------------

    def apply(self, record: CanonicalRecord) -> CanonicalRecord:
        for field_name, mapping in self.format.enums.get(record.kind, {}).items():
            if field_name in record.values:
                record.values[field_name] = mapping.map(record.values[field_name])
        return record

    # -- document walking -----------------------------------------------------

    def extract(self, payload: Any) -> LegacyDataset:
        collected: Dict[EntityKind, List[Dict[str, Any]]] = {}
        ignored: Dict[str, int] = {}
        self._walk(payload, collected, ignored)

        dataset = LegacyDataset(source_system=self.format.label)
        customers = collected.get(EntityKind.CONTACTS, [])
        customer_index = self._index_customers(customers)
        dataset.add(EntityKind.CONTACTS, (self._contact(row) for row in customers))

        order_numbers: Dict[str, str] = {}
        for order in collected.get(EntityKind.ORDERS, []):
            row, items = self._order(order, customer_index)
            legacy_id = _first_value(order, "id", "orderId", "order_id")
            if legacy_id is not None:
                order_numbers[str(legacy_id)] = row["orderNumber"]
            dataset.add(EntityKind.ORDERS, [row])
            dataset.add(EntityKind.ORDER_ITEMS, items)

        dataset.add(EntityKind.QUOTES, (self._with_customer(row, customer_index) for row in collected.get(EntityKind.QUOTES, [])))
        dataset.add(EntityKind.TASKS, (self._task(row, order_numbers) for row in collected.get(EntityKind.TASKS, [])))
        dataset.add(
            EntityKind.ENQUIRIES,
            (self._enquiry(row, customer_index) for row in collected.get(EntityKind.ENQUIRIES, [])),
        )

        for name, count in sorted(ignored.items()):
            dataset.notes.append(f"Skipped {count} {name} record(s); {self.format.label} {name} are not imported.")
        LOGGER.info(
            "Extracted %s export: %s",
            self.format.label,
            ", ".join(f"{kind.value}={dataset.count(kind)}" for kind in IMPORT_ORDER),
        )
        return dataset

    def _walk(self, node: Any, collected: Dict[EntityKind, List[Dict[str, Any]]], ignored: Dict[str, int]) -> None:
        if isinstance(node, Mapping):
            lower_keys = {str(key).lower(): key for key in node.keys()}
            claimed: Set[Any] = set()
            for kind, key_set in self.format.collections.items():
                for alias in key_set:
                    if alias in lower_keys:
                        original = lower_keys[alias]
                        collected.setdefault(kind, []).extend(_ensure_list_of_dicts(node[original]))
                        claimed.add(original)
            for alias in self.format.ignored_collections:
                if alias in lower_keys:
                    original = lower_keys[alias]
                    value = node[original]
                    ignored[alias] = ignored.get(alias, 0) + (len(value) if isinstance(value, list) else 1)
                    claimed.add(original)
            for key, value in node.items():
                if key not in claimed:
                    self._walk(value, collected, ignored)
        elif isinstance(node, list):
            for entry in node:
                self._walk(entry, collected, ignored)

    # -- reshaping ------------------------------------------------------------

    @staticmethod
    def _index_customers(customers: Sequence[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
        index: Dict[str, Dict[str, Any]] = {}
        for customer in customers:
            legacy_id = _first_value(customer, "id", "customerId", "customer_id")
            if legacy_id is None:
                continue
            first = _first_value(customer, "firstName", "first_name") or ""
            last = _first_value(customer, "lastName", "last_name") or ""
            index[str(legacy_id)] = {
                "email": _first_value(customer, "email", "Email") or "",
                "name": " ".join(part for part in (str(first).strip(), str(last).strip()) if part),
            }
        return index

    def _contact(self, customer: Mapping[str, Any]) -> Dict[str, Any]:
        row = {key: value for key, value in customer.items() if key not in ("id", "customerId", "customer_id")}
        if self.format.default_country and not _first_value(row, "country", "Country"):
            row["country"] = self.format.default_country
        return row

    @staticmethod
    def _with_customer(row: Mapping[str, Any], customer_index: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        reshaped = {key: value for key, value in row.items() if not isinstance(value, (list, dict))}
        legacy_customer = _first_value(row, "customerId", "customer_id", "contactId")
        customer = customer_index.get(str(legacy_customer)) if legacy_customer is not None else None
        if customer:
            reshaped.setdefault("contact_email", customer["email"])
            reshaped.setdefault("contact_name", customer["name"])
        return reshaped

    def _order(
        self, order: Mapping[str, Any], customer_index: Mapping[str, Dict[str, Any]]
    ) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        row = self._with_customer(order, customer_index)
        number = _first_value(order, "orderNumber", "order_number", "Order Number")
        if number is None:
            number = synthesize_identifier("ORD")
        row["orderNumber"] = str(number)
        items: List[Dict[str, Any]] = []
        for item in _ensure_list_of_dicts(order.get("items")):
            line = {key: value for key, value in item.items() if not isinstance(value, (list, dict))}
            line["order_number"] = row["orderNumber"]
            items.append(line)
        return row, items

    @staticmethod
    def _task(task: Mapping[str, Any], order_numbers: Mapping[str, str]) -> Dict[str, Any]:
        row = {key: value for key, value in task.items() if not isinstance(value, (list, dict))}
        legacy_order = _first_value(task, "orderId", "order_id")
        if legacy_order is not None and str(legacy_order) in order_numbers:
            row["order_number"] = order_numbers[str(legacy_order)]
        return row

    def _enquiry(self, enquiry: Mapping[str, Any], customer_index: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        row = self._with_customer(enquiry, customer_index)
        if "contact_name" in row:
            row.setdefault("name", row.pop("contact_name"))
        if "contact_email" in row:
            row.setdefault("email", row.pop("contact_email"))
        return row


__all__ = [
    "BAKE_DIARY",
    "ENQUIRY_STATUSES",
    "EVENT_TYPES",
    "EnumMapping",
    "LEGACY_FORMATS",
    "LegacyDataset",
    "LegacyFormat",
    "LegacyFormatAdapter",
    "ORDER_STATUSES",
    "QUOTE_STATUSES",
    "get_legacy_format",
]
