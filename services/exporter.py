"""Outbound exports: full JSON snapshots, per-entity CSV and legacy templates.

Entities are read table by table; nested children (order items under orders,
quote items under quotes, ingredients under recipes) are fetched in a second
query per child table and grouped by parent id, never with one query per
parent.  Money and dates go through the same formatters the importer uses so
an exported file can be fed straight back into the importer.
"""

from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pytz

from .errors import ExportRequestError, InfrastructureError, RecordWriteError
from .sanitizers import format_date, format_decimal, format_money
from .storage import Storage, quote_identifier

LOGGER = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
SOURCE_SYSTEM = "Bakery Data Bridge"
CSV_MIMETYPE = "text/csv"

# SQLite caps bound parameters per statement; stay well below it.
_IN_CHUNK = 500

_MONEY_COLUMNS = {
    "total",
    "delivery_fee",
    "amount_paid",
    "price",
    "cost_price",
    "budget",
    "cost",
    "total_cost",
}
# Finer than a cent; exported exactly.
_EXACT_COLUMNS = {"unit_cost"}
_DATE_COLUMNS = {"event_date", "due_date", "expiry_date"}


def _rows_to_dicts(rows: Iterable[Any]) -> List[Dict[str, Any]]:
    normalised: List[Dict[str, Any]] = []
    for row in rows:
        if hasattr(row, "keys"):
            normalised.append({key: row[key] for key in row.keys()})
        else:
            normalised.append(dict(row))
    return normalised


def _format_entity(row: Mapping[str, Any]) -> Dict[str, Any]:
    formatted = dict(row)
    for key, value in row.items():
        if value is None:
            continue
        if key in _MONEY_COLUMNS:
            formatted[key] = format_money(value)
        elif key in _EXACT_COLUMNS:
            formatted[key] = format_decimal(value)
        elif key in _DATE_COLUMNS:
            formatted[key] = format_date(value)
    return formatted


# ---------------------------------------------------------------------------
# Column templates
# ---------------------------------------------------------------------------

Extractor = Callable[[Mapping[str, Any]], str]


def _text(name: str) -> Extractor:
    return lambda row: "" if row.get(name) is None else str(row.get(name))


def _money(name: str) -> Extractor:
    return lambda row: format_money(row.get(name))


def _exact(name: str) -> Extractor:
    return lambda row: format_decimal(row.get(name))


def _date(name: str) -> Extractor:
    return lambda row: format_date(row.get(name))


def _flag(name: str) -> Extractor:
    return lambda row: "Yes" if row.get(name) in (1, True, "1", "true", "True") else "No"


def _outstanding(row: Mapping[str, Any]) -> str:
    return format_money(Decimal(format_money(row.get("total"))) - Decimal(format_money(row.get("amount_paid"))))


Columns = Sequence[Tuple[str, Extractor]]

ORDER_COLUMNS: Columns = (
    ("Order Number", _text("order_number")),
    ("Status", _text("status")),
    ("Event Type", _text("event_type")),
    ("Event Date", _date("event_date")),
    ("Customer Name", _text("contact_name")),
    ("Customer Email", _text("contact_email")),
    ("Theme", _text("theme")),
    ("Delivery Type", _text("delivery_type")),
    ("Delivery Details", _text("delivery_details")),
    ("Delivery Fee", _money("delivery_fee")),
    ("Total", _money("total")),
    ("Amount Paid", _money("amount_paid")),
    ("Notes", _text("notes")),
)

QUOTE_COLUMNS: Columns = (
    ("Quote Number", _text("quote_number")),
    ("Status", _text("status")),
    ("Event Type", _text("event_type")),
    ("Event Date", _date("event_date")),
    ("Customer Name", _text("contact_name")),
    ("Customer Email", _text("contact_email")),
    ("Theme", _text("theme")),
    ("Delivery Type", _text("delivery_type")),
    ("Delivery Details", _text("delivery_details")),
    ("Total", _money("total")),
    ("Expiry Date", _date("expiry_date")),
    ("Notes", _text("notes")),
)

ORDER_ITEM_COLUMNS: Columns = (
    ("Order Number", _text("order_number")),
    ("Item Name", _text("name")),
    ("Description", _text("description")),
    ("Quantity", _text("quantity")),
    ("Servings", _text("servings")),
    ("Price", _money("price")),
    ("Cost Price", _money("cost_price")),
    ("Date Created", _date("created_at")),
)

CONTACT_COLUMNS: Columns = (
    ("First Name", _text("first_name")),
    ("Last Name", _text("last_name")),
    ("Business Name", _text("business_name")),
    ("Email", _text("email")),
    ("Phone", _text("phone")),
    ("Address", _text("address")),
    ("City", _text("city")),
    ("State", _text("state")),
    ("Zip", _text("zip")),
    ("Country", _text("country")),
    ("Type", _text("type")),
    ("Notes", _text("notes")),
)

TASK_COLUMNS: Columns = (
    ("Title", _text("title")),
    ("Description", _text("description")),
    ("Due Date", _date("due_date")),
    ("Priority", _text("priority")),
    ("Completed", _flag("completed")),
    ("Order Number", _text("order_number")),
)

ENQUIRY_COLUMNS: Columns = (
    ("Name", _text("name")),
    ("Email", _text("email")),
    ("Phone", _text("phone")),
    ("Event Type", _text("event_type")),
    ("Event Date", _date("event_date")),
    ("Budget", _text("budget")),
    ("Message", _text("message")),
    ("Status", _text("status")),
    ("Date Received", _date("created_at")),
)

RECIPE_COLUMNS: Columns = (
    ("Recipe Name", _text("name")),
    ("Description", _text("description")),
    ("Category", _text("category")),
    ("Servings", _text("servings")),
    ("Preparation Time", _text("prep_time")),
    ("Cooking Time", _text("cook_time")),
    ("Ingredient", _text("ingredient_name")),
    ("Quantity", _text("quantity")),
    ("Unit", _text("unit")),
    ("Cost", _text("ingredient_cost")),
)

INGREDIENT_COLUMNS: Columns = (
    ("Name", _text("name")),
    ("Unit", _text("unit")),
    ("Cost Per Unit", _exact("unit_cost")),
    ("Category", _text("category")),
    ("In Stock", _flag("in_stock")),
    ("Stock Quantity", _text("stock_quantity")),
    ("Supplier", _text("supplier")),
)

PRODUCT_COLUMNS: Columns = (
    ("Name", _text("name")),
    ("Type", _text("type")),
    ("Description", _text("description")),
    ("Servings", _text("servings")),
    ("Price", _money("price")),
    ("Cost", _money("cost")),
    ("Active", _flag("active")),
)

# Layouts understood by Bake Diary's own importer.
TEMPLATE_ORDER_COLUMNS: Columns = (
    ("Order Number", _text("order_number")),
    ("Contact", _text("contact_name")),
    ("Contact Email", _text("contact_email")),
    ("Theme", _text("theme")),
    ("Event Type", _text("event_type")),
    ("Event Date", _date("event_date")),
    ("Status", _text("status")),
    ("Delivery", _text("delivery_type")),
    ("Delivery Amount", _money("delivery_fee")),
    ("Order Total", _money("total")),
    ("Amount Outstanding", _outstanding),
    ("Notes", _text("notes")),
)

TEMPLATE_QUOTE_COLUMNS: Columns = (
    ("Order Number", _text("quote_number")),
    ("Contact", _text("contact_name")),
    ("Event Type", _text("event_type")),
    ("Event Date", _date("event_date")),
    ("Theme", _text("theme")),
    ("Order Total", _money("total")),
    ("Notes", _text("notes")),
)

TEMPLATE_ORDER_ITEM_COLUMNS: Columns = (
    ("Order Number", _text("order_number")),
    ("Date", _date("created_at")),
    ("Item", _text("name")),
    ("Details", _text("description")),
    ("Servings", _text("servings")),
    ("Sell Price", _money("price")),
)

# kind -> (entity the rows come from, column template)
TABLE_LAYOUTS: Dict[str, Tuple[str, Columns]] = {
    "orders": ("orders", ORDER_COLUMNS),
    "quotes": ("quotes", QUOTE_COLUMNS),
    "order_items": ("order_items", ORDER_ITEM_COLUMNS),
    "contacts": ("contacts", CONTACT_COLUMNS),
    "tasks": ("tasks", TASK_COLUMNS),
    "enquiries": ("enquiries", ENQUIRY_COLUMNS),
    "recipes": ("recipes", RECIPE_COLUMNS),
    "ingredients": ("ingredients", INGREDIENT_COLUMNS),
    "products": ("products", PRODUCT_COLUMNS),
    "template_orders": ("orders", TEMPLATE_ORDER_COLUMNS),
    "template_quotes": ("quotes", TEMPLATE_QUOTE_COLUMNS),
    "template_order_items": ("order_items", TEMPLATE_ORDER_ITEM_COLUMNS),
}

SNAPSHOT_KINDS = ("contacts", "orders", "quotes", "tasks", "enquiries", "recipes", "ingredients", "products")

_KIND_ALIASES = {
    "orderitems": "order_items",
    "items": "order_items",
    "customers": "contacts",
    "inquiries": "enquiries",
    "templateorders": "template_orders",
    "templatequotes": "template_quotes",
    "templateorderitems": "template_order_items",
}


def export_kind(value: Optional[str]) -> str:
    """Canonical export kind for ``value`` (``all`` included)."""

    raw = (value or "all").strip().lower().replace("-", "_")
    if raw == "all":
        return raw
    if raw in TABLE_LAYOUTS:
        return raw
    folded = raw.replace("_", "")
    if folded in _KIND_ALIASES:
        return _KIND_ALIASES[folded]
    raise ExportRequestError(f"Unsupported export type '{value}'")


def headers_for(kind: str) -> List[str]:
    return [header for header, _ in TABLE_LAYOUTS[export_kind(kind)][1]]


@dataclass
class TabularExport:
    kind: str
    headers: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def filename(self) -> str:
        stamp = (self.created_at or datetime.now(pytz.UTC)).strftime("%Y%m%d_%H%M%S")
        return f"{self.kind}-export-{stamp}.csv"

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=self.headers, extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        writer.writerows(self.rows)
        return buffer.getvalue()


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


class ExportAssembler:
    def __init__(self, storage: Storage, *, timezone: str = "UTC"):
        self.storage = storage
        self.timezone = timezone

    def _now(self) -> datetime:
        try:
            return datetime.now(pytz.timezone(self.timezone))
        except pytz.UnknownTimeZoneError:
            return datetime.now(pytz.UTC)

    # -- queries --------------------------------------------------------------

    def _fetch(self, table: str, user_id: Any) -> List[Dict[str, Any]]:
        """All rows of ``table`` for the user; missing tables read as empty."""

        columns = self.storage.introspect_columns(table)
        if not columns:
            return []
        query = f"SELECT * FROM {quote_identifier(table)}"
        params: Tuple[Any, ...] = ()
        if "user_id" in columns and user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        if "id" in columns:
            query += " ORDER BY id"
        return _rows_to_dicts(self.storage.execute(query, params))

    def _fetch_grouped(self, table: str, column: str, parent_ids: Iterable[Any]) -> Dict[Any, List[Dict[str, Any]]]:
        """Rows of ``table`` whose ``column`` is in ``parent_ids``, grouped by it."""

        ids = [value for value in dict.fromkeys(parent_ids) if value is not None]
        columns = self.storage.introspect_columns(table)
        grouped: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
        if not ids or column not in columns:
            return grouped
        order_by = " ORDER BY id" if "id" in columns else ""
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start:start + _IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self.storage.execute(
                f"SELECT * FROM {quote_identifier(table)} "
                f"WHERE {quote_identifier(column)} IN ({placeholders}){order_by}",
                chunk,
            )
            for row in _rows_to_dicts(rows):
                grouped[row[column]].append(row)
        return grouped

    def _fetch_by_id(self, table: str, ids: Iterable[Any]) -> Dict[Any, Dict[str, Any]]:
        return {key: rows[0] for key, rows in self._fetch_grouped(table, "id", ids).items()}

    # -- entities -------------------------------------------------------------

    def _attach_contacts(self, rows: List[Dict[str, Any]]) -> None:
        contacts = self._fetch_by_id("contacts", (row.get("contact_id") for row in rows))
        for row in rows:
            contact = contacts.get(row.get("contact_id"))
            if contact:
                name = " ".join(
                    part for part in (contact.get("first_name") or "", contact.get("last_name") or "") if part
                )
                row["contact_name"] = name
                row["contact_email"] = contact.get("email") or ""
            else:
                row.setdefault("contact_name", "")
                row.setdefault("contact_email", "")

    def _orders(self, user_id: Any) -> List[Dict[str, Any]]:
        orders = [_format_entity(row) for row in self._fetch("orders", user_id)]
        self._attach_contacts(orders)
        items = self._fetch_grouped("order_items", "order_id", (order["id"] for order in orders))
        for order in orders:
            order["items"] = [_format_entity(item) for item in items.get(order["id"], [])]
        return orders

    def _quotes(self, user_id: Any) -> List[Dict[str, Any]]:
        quotes = [_format_entity(row) for row in self._fetch("quotes", user_id)]
        self._attach_contacts(quotes)
        items = self._fetch_grouped("quote_items", "quote_id", (quote["id"] for quote in quotes))
        for quote in quotes:
            quote["items"] = [_format_entity(item) for item in items.get(quote["id"], [])]
        return quotes

    def _order_items(self, user_id: Any) -> List[Dict[str, Any]]:
        flattened: List[Dict[str, Any]] = []
        for order in self._orders(user_id):
            for item in order["items"]:
                flattened.append({**item, "order_number": order.get("order_number", "")})
        return flattened

    def _tasks(self, user_id: Any) -> List[Dict[str, Any]]:
        tasks = [_format_entity(row) for row in self._fetch("tasks", user_id)]
        orders = self._fetch_by_id("orders", (task.get("order_id") for task in tasks))
        for task in tasks:
            order = orders.get(task.get("order_id"))
            task["order_number"] = order.get("order_number", "") if order else ""
        return tasks

    def _recipes(self, user_id: Any) -> List[Dict[str, Any]]:
        recipes = [_format_entity(row) for row in self._fetch("recipes", user_id)]
        links = self._fetch_grouped("recipe_ingredients", "recipe_id", (recipe["id"] for recipe in recipes))
        catalogue = self._fetch_by_id(
            "ingredients", (link.get("ingredient_id") for rows in links.values() for link in rows)
        )
        for recipe in recipes:
            ingredients = []
            for link in links.get(recipe["id"], []):
                ingredient = catalogue.get(link.get("ingredient_id"), {})
                ingredients.append(
                    {
                        "ingredient_id": link.get("ingredient_id"),
                        "name": ingredient.get("name", ""),
                        "quantity": link.get("quantity"),
                        "unit": ingredient.get("unit", ""),
                        "unit_cost": format_decimal(ingredient.get("unit_cost")),
                        "notes": link.get("notes"),
                    }
                )
            recipe["ingredients"] = ingredients
        return recipes

    def export_entity(self, kind: str, user_id: Any) -> List[Dict[str, Any]]:
        """Entities of ``kind`` with their children attached."""

        entity = TABLE_LAYOUTS[export_kind(kind)][0]
        loaders = {
            "orders": self._orders,
            "quotes": self._quotes,
            "order_items": self._order_items,
            "tasks": self._tasks,
            "recipes": self._recipes,
        }
        loader = loaders.get(entity)
        if loader is not None:
            return loader(user_id)
        return [_format_entity(row) for row in self._fetch(entity, user_id)]

    def export_snapshot(self, user_id: Any, kinds: Sequence[str] = SNAPSHOT_KINDS) -> Dict[str, List[Dict[str, Any]]]:
        return {kind: self.export_entity(kind, user_id) for kind in kinds}

    def snapshot_envelope(self, user_id: Any, kind: str = "all") -> Dict[str, Any]:
        kind = export_kind(kind)
        kinds = SNAPSHOT_KINDS if kind == "all" else (kind,)
        return {
            "success": True,
            "data": self.export_snapshot(user_id, kinds),
            "exportDate": self._now().isoformat(),
            "version": EXPORT_VERSION,
            "sourceSystem": SOURCE_SYSTEM,
        }

    # -- tables -----------------------------------------------------------------

    def _flat_rows(self, kind: str, user_id: Any) -> List[Mapping[str, Any]]:
        entities = self.export_entity(kind, user_id)
        if TABLE_LAYOUTS[kind][0] != "recipes":
            return entities
        rows: List[Mapping[str, Any]] = []
        for recipe in entities:
            rows.append(recipe)
            for ingredient in recipe.get("ingredients", []):
                rows.append(
                    {
                        "name": recipe.get("name"),
                        "ingredient_name": ingredient["name"],
                        "quantity": ingredient["quantity"],
                        "unit": ingredient["unit"],
                        "ingredient_cost": ingredient["unit_cost"],
                    }
                )
        return rows

    def export_table(self, kind: str, user_id: Any) -> TabularExport:
        """Flat rows for ``kind``; an empty table with the template headers if the query fails."""

        kind = export_kind(kind)
        if kind == "all":
            raise ExportRequestError("CSV exports cover one entity type at a time")
        columns = TABLE_LAYOUTS[kind][1]
        table = TabularExport(kind=kind, headers=[header for header, _ in columns], created_at=self._now())
        try:
            entities = self._flat_rows(kind, user_id)
        except (InfrastructureError, RecordWriteError) as exc:
            LOGGER.warning("Export of %s failed, returning empty template: %s", kind, exc)
            return table
        table.rows = [{header: extract(entity) for header, extract in columns} for entity in entities]
        return table


def export_payload(
    storage: Storage,
    kind: Optional[str] = "all",
    fmt: str = "json",
    *,
    user_id: Any = 1,
    timezone: str = "UTC",
):
    """Dispatch an export request.

    Returns the snapshot envelope for ``json`` and a :class:`TabularExport`
    for ``csv``.
    """

    assembler = ExportAssembler(storage, timezone=timezone)
    fmt = (fmt or "json").strip().lower()
    if fmt == "json":
        return assembler.snapshot_envelope(user_id, kind or "all")
    if fmt == "csv":
        return assembler.export_table(kind or "all", user_id)
    raise ExportRequestError(f"Unsupported export format '{fmt}'")


__all__ = [
    "CSV_MIMETYPE",
    "EXPORT_VERSION",
    "ExportAssembler",
    "SNAPSHOT_KINDS",
    "SOURCE_SYSTEM",
    "TABLE_LAYOUTS",
    "TabularExport",
    "export_kind",
    "export_payload",
    "headers_for",
]
