"""Alias-driven mapping of arbitrary input rows onto canonical fields.

Source files use every naming convention imaginable for the same attribute
(``order_number``, ``orderNumber``, ``Order Number``, ``Order No``).  Each
canonical field therefore carries an ordered alias list and resolution picks
the first alias holding a non-empty value.  Keys are compared after folding
case and dropping spaces, underscores and punctuation, so the lists below only
need to spell out genuinely different names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .entities import CanonicalRecord, EntityKind
from .errors import MissingRequiredFieldError
from .sanitizers import (
    POLICY_DATE_TODAY,
    FallbackWarning,
    clean_bounded_int,
    clean_int,
    clean_text,
    clean_text_number,
    parse_boolean,
    parse_date,
    today,
)

_KEY_PATTERN = re.compile(r"[^a-z0-9]+")

# Marker defaults.  ``NEUTRAL`` picks the neutral value for the field type,
# ``TODAY`` resolves to the current date in the batch timezone and is reported
# as a fallback warning.
NEUTRAL = "<neutral>"
TODAY = "<today>"

_NEUTRAL_VALUES = {
    "string": "",
    "money": "0.00",
    "bounded": 0,
    "integer": 0,
    "date": None,
    "boolean": False,
}


def field_key(name: Any) -> str:
    return _KEY_PATTERN.sub("", str(name).lower())


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return True
    return False


def is_blank_row(raw: Mapping[str, Any]) -> bool:
    return all(_is_blank(value) for value in raw.values())


@dataclass
class FieldDefinition:
    """A canonical field with its accepted source aliases."""

    name: str
    aliases: Sequence[str] = ()
    field_type: str = "string"
    required: bool = False
    default: Any = NEUTRAL
    description: str = ""
    _keys: List[str] = field(init=False, default_factory=list, repr=False)

    def __post_init__(self) -> None:
        aliases = list(self.aliases) or [self.name]
        if self.name not in aliases:
            aliases.insert(0, self.name)
        self.aliases = tuple(aliases)
        keys: List[str] = []
        for alias in self.aliases:
            key = field_key(alias)
            if key and key not in keys:
                keys.append(key)
        self._keys = keys

    def pick(self, index: Mapping[str, Any]) -> Any:
        for key in self._keys:
            value = index.get(key)
            if not _is_blank(value):
                return value
        return None

    def default_value(self, timezone: str) -> Any:
        if self.default == NEUTRAL:
            return _NEUTRAL_VALUES.get(self.field_type, "")
        if self.default == TODAY:
            return today(timezone)
        return self.default

    def clean(self, value: Any, warnings: List[FallbackWarning], timezone: str) -> Any:
        if self.field_type == "money":
            return clean_text_number(value, field=self.name, warnings=warnings)
        if self.field_type == "bounded":
            return clean_bounded_int(value, field=self.name, warnings=warnings)
        if self.field_type == "integer":
            fallback = self.default_value(timezone)
            return clean_int(value, default=fallback or 0, field=self.name, warnings=warnings)
        if self.field_type == "date":
            return parse_date(value, field=self.name, warnings=warnings, timezone=timezone)
        if self.field_type == "boolean":
            return parse_boolean(value)
        return clean_text(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "field_type": self.field_type,
            "required": self.required,
            "aliases": list(self.aliases),
            "description": self.description,
        }


Finaliser = Callable[[Dict[str, Any]], None]


@dataclass
class CanonicalSchema:
    """The canonical fields of one entity kind."""

    kind: EntityKind
    fields: List[FieldDefinition]
    finalisers: Sequence[Finaliser] = ()

    def normalize(self, raw: Mapping[str, Any], *, timezone: str = "UTC") -> CanonicalRecord:
        index = _index_row(raw)
        record = CanonicalRecord(kind=self.kind)
        for definition in self.fields:
            incoming = definition.pick(index)
            if incoming is None:
                if definition.required:
                    raise MissingRequiredFieldError(definition.name)
                value = definition.default_value(timezone)
                if definition.default == TODAY:
                    record.warnings.append(
                        FallbackWarning(
                            field=definition.name,
                            raw_value=None,
                            policy=POLICY_DATE_TODAY,
                            message=f"No {definition.name} given; used {value.isoformat()}",
                        )
                    )
                record.values[definition.name] = value
                continue
            record.values[definition.name] = definition.clean(incoming, record.warnings, timezone)
        for finalise in self.finalisers:
            finalise(record.values)
        return record

    def headers(self) -> List[str]:
        return [definition.name for definition in self.fields]


def _index_row(raw: Mapping[str, Any]) -> Dict[str, Any]:
    index: Dict[str, Any] = {}
    for key, value in raw.items():
        if key is None:
            continue
        folded = field_key(key)
        if not folded:
            continue
        if folded not in index or _is_blank(index[folded]):
            index[folded] = value.strip() if isinstance(value, str) else value
    return index


# ---------------------------------------------------------------------------
# Shared alias lists
# ---------------------------------------------------------------------------

_CONTACT_NAME = ("contact_name", "Customer Name", "Customer", "Contact", "Contact Name", "Client", "Client Name")
_CONTACT_EMAIL = ("contact_email", "Customer Email", "Contact Email", "Email", "Email Address")
_CONTACT_PHONE = ("contact_phone", "Customer Phone", "Contact Phone", "Phone", "Phone Number")
_EVENT_TYPE = ("event_type", "eventType", "Event Type", "Occasion", "Event")
_EVENT_DATE = ("event_date", "eventDate", "Event Date", "Date of Event", "Delivery Date", "Due Date", "Date")
_DELIVERY_TYPE = ("delivery_type", "deliveryType", "Delivery Type", "Delivery", "Delivery Method", "Collection")
_DELIVERY_DETAILS = ("delivery_details", "deliveryDetails", "Delivery Details", "Delivery Address", "deliveryAddress")
_DELIVERY_FEE = ("delivery_fee", "deliveryFee", "Delivery Fee", "Delivery Amount", "deliveryAmount", "Delivery Cost", "Delivery Charge")
_TOTAL = ("total", "Total", "Order Total", "orderTotal", "Total Amount", "total_amount", "Amount")
_NOTES = ("notes", "Notes", "Special Instructions", "specialInstructions", "Comments")
_THEME = ("theme", "Theme", "Title", "Order Title")


def _split_contact_name(values: Dict[str, Any]) -> None:
    full_name = values.pop("full_name", "") or ""
    if not values.get("first_name") and full_name:
        first, _, rest = full_name.partition(" ")
        values["first_name"] = first
        if not values.get("last_name"):
            values["last_name"] = rest.strip()
    if not values.get("first_name") and values.get("business_name"):
        values["first_name"] = values["business_name"]
    if not values.get("first_name"):
        raise MissingRequiredFieldError("first_name")
    if values.get("email"):
        values["email"] = values["email"].lower()


SCHEMAS: Dict[EntityKind, CanonicalSchema] = {
    EntityKind.ORDERS: CanonicalSchema(
        kind=EntityKind.ORDERS,
        fields=[
            FieldDefinition("order_number", ("orderNumber", "Order Number", "Order No", "Order Ref", "Order Reference", "Order #"), required=True),
            FieldDefinition("contact_name", _CONTACT_NAME),
            FieldDefinition("contact_email", _CONTACT_EMAIL),
            FieldDefinition("contact_phone", _CONTACT_PHONE),
            FieldDefinition("event_type", _EVENT_TYPE, default="Other"),
            FieldDefinition("event_date", _EVENT_DATE, field_type="date", default=TODAY),
            FieldDefinition("status", ("Status", "Order Status", "orderStatus"), default="Draft"),
            FieldDefinition("theme", _THEME),
            FieldDefinition("delivery_type", _DELIVERY_TYPE),
            FieldDefinition("delivery_details", _DELIVERY_DETAILS),
            FieldDefinition("delivery_fee", _DELIVERY_FEE, field_type="money"),
            FieldDefinition("total", _TOTAL, field_type="money"),
            FieldDefinition("amount_paid", ("amountPaid", "Amount Paid", "Paid Amount", "Deposit"), field_type="money", default=None),
            FieldDefinition("amount_outstanding", ("amountOutstanding", "Amount Outstanding", "Balance Due", "Outstanding", "Balance"), field_type="money", default=None),
            FieldDefinition("deposit_paid", ("depositPaid", "Deposit Paid"), field_type="boolean"),
            FieldDefinition("balance_paid", ("balancePaid", "Balance Paid"), field_type="boolean"),
            FieldDefinition("notes", _NOTES),
        ],
    ),
    EntityKind.QUOTES: CanonicalSchema(
        kind=EntityKind.QUOTES,
        fields=[
            # Bake Diary quote exports reuse the "Order Number" column.
            FieldDefinition("quote_number", ("quoteNumber", "Quote Number", "Quote No", "Quote Ref", "Quote #", "Order Number"), required=True),
            FieldDefinition("contact_name", _CONTACT_NAME),
            FieldDefinition("contact_email", _CONTACT_EMAIL),
            FieldDefinition("contact_phone", _CONTACT_PHONE),
            FieldDefinition("event_type", _EVENT_TYPE, default="Other"),
            FieldDefinition("event_date", _EVENT_DATE, field_type="date", default=TODAY),
            FieldDefinition("status", ("Status", "Quote Status", "quoteStatus"), default="Draft"),
            FieldDefinition("theme", _THEME),
            FieldDefinition("delivery_type", _DELIVERY_TYPE),
            FieldDefinition("delivery_details", _DELIVERY_DETAILS),
            FieldDefinition("delivery_fee", _DELIVERY_FEE, field_type="money"),
            FieldDefinition("total", _TOTAL, field_type="money"),
            FieldDefinition("expiry_date", ("expiryDate", "Expiry Date", "Valid Until", "Expires"), field_type="date"),
            FieldDefinition("notes", _NOTES),
        ],
    ),
    EntityKind.ORDER_ITEMS: CanonicalSchema(
        kind=EntityKind.ORDER_ITEMS,
        fields=[
            FieldDefinition("order_number", ("orderNumber", "Order Number", "order_id", "orderId", "Order ID", "Order No", "Order Ref", "Order #")),
            FieldDefinition("name", ("Item Name", "itemName", "item_name", "Item", "Product", "Product Name")),
            FieldDefinition("description", ("Description", "Details", "Item Description")),
            FieldDefinition("quantity", ("Quantity", "Qty"), field_type="integer", default=1),
            FieldDefinition("servings", ("Servings", "Serving", "Portions"), field_type="bounded"),
            FieldDefinition("price", ("Price", "Unit Price", "unit_price", "Sell Price (excl VAT)", "Sell Price", "sell_price", "sellPrice"), field_type="money"),
            FieldDefinition("cost_price", ("costPrice", "Cost Price", "Cost"), field_type="money"),
            FieldDefinition("labour", ("Labour", "labor"), field_type="bounded"),
            FieldDefinition("hours", ("Hours",), field_type="bounded"),
            FieldDefinition("overhead", ("Overhead",), field_type="bounded"),
            FieldDefinition("recipes", ("Recipes", "Recipe")),
            FieldDefinition("contact_item", ("contactItem", "Contact Item")),
            FieldDefinition("created_at", ("createdAt", "Date Created", "Created", "Date"), field_type="date", default=None),
        ],
    ),
    EntityKind.CONTACTS: CanonicalSchema(
        kind=EntityKind.CONTACTS,
        fields=[
            FieldDefinition("first_name", ("firstName", "First Name", "Forename", "Given Name")),
            FieldDefinition("last_name", ("lastName", "Last Name", "Surname", "Family Name")),
            FieldDefinition("full_name", ("fullName", "Name", "Full Name", "Contact Name", "Customer Name", "Customer", "Contact")),
            FieldDefinition("email", ("Email", "Email Address", "E-mail")),
            FieldDefinition("phone", ("Phone", "Phone Number", "Mobile", "Telephone", "Tel", "Number")),
            FieldDefinition("business_name", ("businessName", "Business Name", "Company", "Company Name", "Supplier Name")),
            FieldDefinition("type", ("Type", "Contact Type"), default="Customer"),
            FieldDefinition("address", ("Address", "Address Line 1", "Street")),
            FieldDefinition("city", ("City", "Town")),
            FieldDefinition("state", ("State", "County", "Region")),
            FieldDefinition("zip", ("Zip", "zip_code", "Postcode", "Post Code", "Postal Code")),
            FieldDefinition("country", ("Country",)),
            FieldDefinition("notes", ("Notes", "Comments")),
        ],
        finalisers=(_split_contact_name,),
    ),
    EntityKind.TASKS: CanonicalSchema(
        kind=EntityKind.TASKS,
        fields=[
            FieldDefinition("title", ("Title", "Task", "Task Name", "Name", "Subject"), required=True),
            FieldDefinition("description", ("Description", "Details", "Notes")),
            FieldDefinition("due_date", ("dueDate", "Due Date", "Due", "Deadline"), field_type="date"),
            FieldDefinition("priority", ("Priority",), default="Medium"),
            FieldDefinition("completed", ("Completed", "Done", "Status"), field_type="boolean"),
            FieldDefinition("order_number", ("orderNumber", "Order Number", "Related Order")),
        ],
    ),
    EntityKind.ENQUIRIES: CanonicalSchema(
        kind=EntityKind.ENQUIRIES,
        fields=[
            FieldDefinition("name", ("Name", "Customer Name", "Contact Name", "Full Name", "Contact"), required=True),
            FieldDefinition("email", ("Email", "Email Address")),
            FieldDefinition("phone", ("Phone", "Phone Number", "Mobile")),
            FieldDefinition("event_type", _EVENT_TYPE, default="Other"),
            FieldDefinition("event_date", ("eventDate", "Event Date", "Date of Event"), field_type="date"),
            FieldDefinition("budget", ("Budget",), field_type="money", default=None),
            FieldDefinition("message", ("Message", "Details", "Enquiry", "Enquiry Details", "Description", "Notes")),
            FieldDefinition("status", ("Status",), default="Open"),
            FieldDefinition("created_at", ("createdAt", "Date Received", "Enquiry Date", "Date"), field_type="date", default=None),
        ],
    ),
}


def get_schema(kind: EntityKind) -> CanonicalSchema:
    try:
        return SCHEMAS[kind]
    except KeyError:
        raise ValueError(f"No canonical schema for {kind.value}") from None


def normalize(raw: Mapping[str, Any], kind: EntityKind, *, timezone: str = "UTC") -> CanonicalRecord:
    """Map ``raw`` onto the canonical fields of ``kind``.

    Raises :class:`MissingRequiredFieldError` when a required field has no
    usable value.  Fallback substitutions are listed on ``record.warnings``.
    """

    return get_schema(kind).normalize(raw, timezone=timezone)


def describe_fields(kind: EntityKind) -> List[Dict[str, Any]]:
    return [definition.to_dict() for definition in get_schema(kind).fields]


def accepted_headers(kind: EntityKind) -> Iterable[str]:
    for definition in get_schema(kind).fields:
        yield from definition.aliases


def resolves_to(header: str, kind: EntityKind) -> Optional[str]:
    """Return the canonical field a header would populate, if any."""

    key = field_key(header)
    for definition in get_schema(kind).fields:
        if key in definition._keys:
            return definition.name
    return None


__all__ = [
    "CanonicalSchema",
    "FieldDefinition",
    "NEUTRAL",
    "SCHEMAS",
    "TODAY",
    "accepted_headers",
    "describe_fields",
    "field_key",
    "get_schema",
    "is_blank_row",
    "normalize",
    "resolves_to",
]
