"""Transactional batch import of orders, quotes, order items and contacts.

The coordinator runs every record of a batch through the same pipeline::

    detect -> normalise (+ legacy enum mapping) -> resolve references -> write

inside a single transaction.  Record level problems (a missing required
field, a placeholder that cannot be created, a rejected insert) are recorded
against that record and the batch carries on; the transaction is still
committed so the good records are kept.  Anything else (a lost connection, a
failed commit, an unexpected exception) rolls the whole batch back and is
reported as a failed batch with nothing written.

The bottom of the module holds the entry points that turn an uploaded CSV or
JSON payload into a batch plan.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .entities import IMPORT_ORDER, CanonicalRecord, EntityKind, parse_kind
from .errors import (
    DuplicateNaturalKeyError,
    InfrastructureError,
    MissingRequiredFieldError,
    ParseError,
    RecordError,
    RecordWriteError,
    UnrecognisedFormatError,
)
from .field_normalizer import is_blank_row, normalize
from .format_detector import detect_format, detect_record_kind
from .legacy_format import LegacyFormatAdapter, get_legacy_format
from .reference_resolver import BatchContext, ReferenceKey, ReferenceResolver
from .sanitizers import (
    POLICY_REFERENCE_NOT_FOUND,
    FallbackWarning,
    clean_reference,
    clean_text_number,
    parse_boolean,
    timestamp_text,
    today,
)
from .storage import Storage

LOGGER = logging.getLogger(__name__)

QUOTE_VALIDITY_DAYS = 30
SUMMARY_ROW_MARKERS = {"total", "totals", "grand total"}

Plan = Sequence[Tuple[EntityKind, Sequence[Mapping[str, Any]]]]


class RecordStage(str, Enum):
    DETECTING = "detecting"
    NORMALIZING = "normalizing"
    RESOLVING = "resolving"
    WRITING = "writing"
    RECORDED = "recorded"


class BatchStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ImportOutcome:
    """What happened to one input record."""

    row: int
    kind: EntityKind
    status: str
    internal_id: Any = None
    reason: str = ""
    error: str = ""
    stage: RecordStage = RecordStage.RECORDED

    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"

    @classmethod
    def imported(cls, row: int, kind: EntityKind, internal_id: Any) -> "ImportOutcome":
        return cls(row=row, kind=kind, status=cls.IMPORTED, internal_id=internal_id)

    @classmethod
    def skipped(cls, row: int, kind: EntityKind, reason: str) -> "ImportOutcome":
        return cls(row=row, kind=kind, status=cls.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, row: int, kind: EntityKind, error: str, stage: RecordStage) -> "ImportOutcome":
        return cls(row=row, kind=kind, status=cls.FAILED, error=error, stage=stage)

    def describe(self) -> str:
        detail = self.error or self.reason
        return f"Row {self.row} ({self.kind.label}): {detail}"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"row": self.row, "kind": self.kind.value, "status": self.status}
        if self.internal_id is not None:
            payload["id"] = self.internal_id
        if self.reason:
            payload["reason"] = self.reason
        if self.error:
            payload["error"] = self.error
            payload["stage"] = self.stage.value
        return payload


@dataclass
class ImportResult:
    status: BatchStatus = BatchStatus.STARTED
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: List[ImportOutcome] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    message: str = ""
    source_system: Optional[str] = None

    @classmethod
    def failure(cls, message: str) -> "ImportResult":
        return cls(status=BatchStatus.FAILED, message=message)

    @property
    def success(self) -> bool:
        return self.status is BatchStatus.COMPLETED

    @property
    def errors(self) -> List[str]:
        if self.status is BatchStatus.FAILED:
            return [self.message]
        return [outcome.describe() for outcome in self.outcomes if outcome.status == ImportOutcome.FAILED]

    def record(self, outcome: ImportOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == ImportOutcome.IMPORTED:
            self.processed += 1
        elif outcome.status == ImportOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def add_warnings(self, row: int, kind: EntityKind, warnings: Iterable[FallbackWarning]) -> None:
        for warning in warnings:
            entry = warning.to_dict()
            entry.update({"row": row, "kind": kind.value})
            entry["message"] = f"Row {row} ({kind.label}): {warning.message}"
            self.warnings.append(entry)

    def finalize(self) -> None:
        self.status = BatchStatus.COMPLETED
        self.message = (
            f"Imported {self.processed} record(s), skipped {self.skipped}, failed {self.failed}."
        )

    def to_envelope(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
            "processedRows": self.processed,
            "skippedRows": self.skipped,
            "failedRows": self.failed,
            "errors": self.errors,
            "warnings": self.warnings,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }
        if self.notes:
            envelope["notes"] = list(self.notes)
        if self.source_system:
            envelope["sourceSystem"] = self.source_system
        return envelope


@dataclass
class ImportOptions:
    """Per-kind inclusion flags for multi-kind payloads."""

    import_contacts: bool = True
    import_orders: bool = True
    import_order_items: bool = True
    import_quotes: bool = True
    import_tasks: bool = True
    import_enquiries: bool = True

    _FLAGS = {
        EntityKind.CONTACTS: "import_contacts",
        EntityKind.ORDERS: "import_orders",
        EntityKind.ORDER_ITEMS: "import_order_items",
        EntityKind.QUOTES: "import_quotes",
        EntityKind.TASKS: "import_tasks",
        EntityKind.ENQUIRIES: "import_enquiries",
    }

    def includes(self, kind: EntityKind) -> bool:
        attribute = self._FLAGS.get(kind)
        return bool(attribute and getattr(self, attribute))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ImportOptions":
        """Read ``importContacts`` / ``import_contacts`` style flags."""

        options = cls()
        for attribute in cls._FLAGS.values():
            suffix = attribute[len("import_"):]
            camel = "import" + "".join(part.title() for part in suffix.split("_"))
            for candidate in (attribute, camel, camel.replace("import", "include", 1)):
                if candidate in payload and payload[candidate] not in (None, ""):
                    setattr(options, attribute, parse_boolean(payload[candidate]))
                    break
        return options


@dataclass
class PreparedWrite:
    table: str
    values: Dict[str, Any]
    keys: List[ReferenceKey] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class ImportCoordinator:
    def __init__(
        self,
        storage: Storage,
        *,
        user_id: Any = 1,
        timezone: str = "UTC",
        adapter: Optional[LegacyFormatAdapter] = None,
    ):
        self.storage = storage
        self.user_id = user_id
        self.timezone = timezone
        self.adapter = adapter

    def import_batch(self, records: Sequence[Mapping[str, Any]], kind: EntityKind) -> ImportResult:
        return self.import_plan([(kind, records)])

    def import_plan(self, plan: Plan) -> ImportResult:
        """Run every ``(kind, records)`` pair of ``plan`` as one batch."""

        context = BatchContext(storage=self.storage, user_id=self.user_id, timezone=self.timezone)
        resolver = ReferenceResolver(context)
        result = ImportResult()
        total = sum(len(records) for _, records in plan)
        LOGGER.info(
            "Starting import batch of %s record(s) [%s]",
            total,
            ", ".join(kind.value for kind, _ in plan) or "empty",
        )

        try:
            self.storage.begin_transaction()
        except InfrastructureError as exc:
            LOGGER.error("Could not open import transaction: %s", exc)
            return ImportResult.failure(f"Import failed: {exc}")

        try:
            for kind, records in plan:
                for row, raw in enumerate(records, start=1):
                    result.record(self._process(kind, row, raw, resolver, result))
            self.storage.commit()
        except Exception as exc:
            LOGGER.exception("Import batch failed; rolling back")
            self._rollback()
            return ImportResult.failure(f"Import failed: {exc}")
        except BaseException:
            self._rollback()
            raise

        result.finalize()
        LOGGER.info("Import batch finished: %s", result.message)
        return result

    def _rollback(self) -> None:
        try:
            self.storage.rollback()
        except InfrastructureError as exc:
            LOGGER.error("Rollback after failed import also failed: %s", exc)

    def _process(
        self,
        kind: EntityKind,
        row: int,
        raw: Mapping[str, Any],
        resolver: ReferenceResolver,
        result: ImportResult,
    ) -> ImportOutcome:
        stage = RecordStage.DETECTING
        record: Optional[CanonicalRecord] = None
        try:
            if not isinstance(raw, Mapping):
                return ImportOutcome.skipped(row, kind, "not a record")
            if is_blank_row(raw):
                return ImportOutcome.skipped(row, kind, "empty row")

            stage = RecordStage.NORMALIZING
            record = normalize(raw, kind, timezone=self.timezone)
            if self.adapter is not None:
                self.adapter.apply(record)
            if _is_summary_row(record):
                return ImportOutcome.skipped(row, kind, "summary row")

            stage = RecordStage.RESOLVING
            prepared = self._prepare(record, resolver)

            stage = RecordStage.WRITING
            internal_id = self._write(prepared, resolver)
            return ImportOutcome.imported(row, kind, internal_id)
        except DuplicateNaturalKeyError as exc:
            return ImportOutcome.skipped(row, kind, str(exc))
        except RecordError as exc:
            LOGGER.warning("Row %s (%s) failed while %s: %s", row, kind.value, stage.value, exc)
            return ImportOutcome.failed(row, kind, str(exc), stage)
        finally:
            if record is not None and record.warnings:
                result.add_warnings(row, kind, record.warnings)

    # -- writing ------------------------------------------------------------

    def _write(self, prepared: PreparedWrite, resolver: ReferenceResolver) -> Any:
        shape = resolver.context.shape(prepared.table)
        if not shape.exists:
            raise RecordWriteError(f"table {prepared.table} does not exist")
        internal_id = self.storage.insert(shape.table, shape.prepare(prepared.values))
        for key in prepared.keys:
            resolver.remember(key, internal_id)
        return internal_id

    def _prepare(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        builders = {
            EntityKind.ORDERS: self._prepare_order,
            EntityKind.QUOTES: self._prepare_quote,
            EntityKind.ORDER_ITEMS: self._prepare_order_item,
            EntityKind.CONTACTS: self._prepare_contact,
            EntityKind.TASKS: self._prepare_task,
            EntityKind.ENQUIRIES: self._prepare_enquiry,
        }
        return builders[record.kind](record, resolver)

    def _base_values(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "created_at": timestamp_text(self.timezone)}

    def _resolve_contact(
        self, resolver: ReferenceResolver, name: str, email: str, phone: str = ""
    ) -> Optional[Any]:
        if not name and not email:
            return None
        first, _, last = name.strip().partition(" ")
        fallback = {
            "first_name": first or None,
            "last_name": last.strip() or None,
            "email": email.lower() or None,
            "phone": phone or None,
        }
        key = ReferenceKey.for_contact(email, first, last)
        return resolver.resolve(EntityKind.CONTACTS, key, fallback)

    def _claim_number(self, record: CanonicalRecord, resolver: ReferenceResolver, field_name: str) -> ReferenceKey:
        number = clean_reference(record.get(field_name))
        if not number:
            raise MissingRequiredFieldError(field_name)
        key = ReferenceKey.for_number(record.kind, number)
        if resolver.lookup(record.kind, key) is not None:
            raise DuplicateNaturalKeyError(record.kind.value, number)
        return key

    def _prepare_order(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        key = self._claim_number(record, resolver, "order_number")
        values = self._base_values()
        values.update(
            {
                "order_number": key.value,
                "contact_id": self._resolve_contact(
                    resolver, record.get("contact_name", ""), record.get("contact_email", ""), record.get("contact_phone", "")
                ),
                "event_type": record.get("event_type") or "Other",
                "event_date": record.get("event_date"),
                "status": record.get("status") or "Draft",
                "theme": record.get("theme"),
                "delivery_type": delivery_type(record.get("delivery_type"), record.get("delivery_fee")),
                "delivery_details": record.get("delivery_details"),
                "delivery_fee": record.get("delivery_fee", "0.00"),
                "total": record.get("total", "0.00"),
                "amount_paid": amount_paid(
                    record.get("total", "0.00"), record.values.get("amount_paid"), record.values.get("amount_outstanding")
                ),
                "deposit_paid": record.get("deposit_paid", False),
                "balance_paid": record.get("balance_paid", False),
                "notes": record.get("notes"),
            }
        )
        return PreparedWrite(EntityKind.ORDERS.table, values, [key])

    def _prepare_quote(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        key = self._claim_number(record, resolver, "quote_number")
        expiry = record.get("expiry_date")
        if expiry is None:
            expiry = today(self.timezone) + timedelta(days=QUOTE_VALIDITY_DAYS)
        values = self._base_values()
        values.update(
            {
                "quote_number": key.value,
                "contact_id": self._resolve_contact(
                    resolver, record.get("contact_name", ""), record.get("contact_email", ""), record.get("contact_phone", "")
                ),
                "event_type": record.get("event_type") or "Other",
                "event_date": record.get("event_date"),
                "status": record.get("status") or "Draft",
                "theme": record.get("theme"),
                "delivery_type": delivery_type(record.get("delivery_type"), record.get("delivery_fee")),
                "delivery_details": record.get("delivery_details"),
                "delivery_fee": record.get("delivery_fee", "0.00"),
                "total": record.get("total", "0.00"),
                "expiry_date": expiry,
                "notes": record.get("notes"),
            }
        )
        return PreparedWrite(EntityKind.QUOTES.table, values, [key])

    def _prepare_order_item(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        number = clean_reference(record.get("order_number"))
        fallback = {"event_date": record.get("created_at")}
        order_id = resolver.resolve(EntityKind.ORDERS, number or None, fallback)
        values = {
            "order_id": order_id,
            "name": record.get("name") or record.get("description") or "Order Item",
            "description": record.get("description"),
            "quantity": max(1, record.get("quantity", 1)),
            "servings": record.get("servings", 0),
            "price": record.get("price", "0.00"),
            "cost_price": record.get("cost_price", "0.00"),
            "labour": record.get("labour", 0),
            "hours": record.get("hours", 0),
            "overhead": record.get("overhead", 0),
            "recipes": record.get("recipes"),
            "contact_item": record.get("contact_item"),
            "created_at": record.get("created_at") or timestamp_text(self.timezone),
        }
        return PreparedWrite(EntityKind.ORDER_ITEMS.table, values)

    def _prepare_contact(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        email = record.get("email", "")
        keys = []
        if email:
            email_key = ReferenceKey.for_contact(email=email)
            if resolver.lookup(EntityKind.CONTACTS, email_key) is not None:
                raise DuplicateNaturalKeyError(EntityKind.CONTACTS.value, email)
            keys.append(email_key)
        keys.append(ReferenceKey.for_contact(first_name=record.get("first_name"), last_name=record.get("last_name")))
        values = self._base_values()
        values.update(
            {
                field_name: record.get(field_name) or None
                for field_name in (
                    "first_name",
                    "last_name",
                    "email",
                    "phone",
                    "business_name",
                    "type",
                    "address",
                    "city",
                    "state",
                    "zip",
                    "country",
                    "notes",
                )
            }
        )
        values["last_name"] = values["last_name"] or ""
        return PreparedWrite(EntityKind.CONTACTS.table, values, keys)

    def _prepare_task(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        order_id = None
        order_number = record.get("order_number", "")
        if order_number:
            order_id = resolver.lookup(EntityKind.ORDERS, order_number)
            if order_id is None:
                record.warnings.append(
                    FallbackWarning(
                        field="order_number",
                        raw_value=order_number,
                        policy=POLICY_REFERENCE_NOT_FOUND,
                        message=f"Order '{order_number}' not found; task saved without an order link",
                    )
                )
        values = self._base_values()
        values.update(
            {
                "title": record.get("title"),
                "description": record.get("description"),
                "due_date": record.get("due_date"),
                "priority": record.get("priority") or "Medium",
                "completed": record.get("completed", False),
                "order_id": order_id,
            }
        )
        return PreparedWrite(EntityKind.TASKS.table, values)

    def _prepare_enquiry(self, record: CanonicalRecord, resolver: ReferenceResolver) -> PreparedWrite:
        values = self._base_values()
        values.update(
            {
                "contact_id": self._resolve_contact(
                    resolver, record.get("name", ""), record.get("email", ""), record.get("phone", "")
                ),
                "name": record.get("name"),
                "email": record.get("email") or None,
                "phone": record.get("phone") or None,
                "event_type": record.get("event_type") or "Other",
                "event_date": record.get("event_date"),
                "budget": record.values.get("budget"),
                "message": record.get("message"),
                "status": record.get("status") or "Open",
            }
        )
        if record.get("created_at"):
            values["created_at"] = record.get("created_at")
        return PreparedWrite(EntityKind.ENQUIRIES.table, values)


def _is_summary_row(record: CanonicalRecord) -> bool:
    for field_name in ("order_number", "quote_number"):
        value = record.values.get(field_name)
        if isinstance(value, str) and value.strip().lower() in SUMMARY_ROW_MARKERS:
            return True
    return False


def delivery_type(value: Any, fee: Any = None) -> str:
    """Canonical delivery type; inferred from the delivery fee when absent."""

    text = str(value or "").strip().lower()
    if not text:
        return "Delivery" if Decimal(clean_text_number(fee)) > 0 else "Pickup"
    if text.startswith("deliver") or text in {"yes", "y", "true", "1"}:
        return "Delivery"
    return "Pickup"


def amount_paid(total: Any, paid: Optional[str], outstanding: Optional[str]) -> str:
    if paid is not None:
        return clean_text_number(paid)
    if outstanding is None:
        return "0.00"
    try:
        return clean_text_number(Decimal(clean_text_number(total)) - Decimal(clean_text_number(outstanding)))
    except InvalidOperation:
        return "0.00"


# ---------------------------------------------------------------------------
# Payload parsing and entry points
# ---------------------------------------------------------------------------

_COLLECTION_KEYS = {
    EntityKind.CONTACTS: {"contacts", "customers", "clients"},
    EntityKind.ORDERS: {"orders", "order_list", "orderlist"},
    EntityKind.ORDER_ITEMS: {"order_items", "orderitems", "line_items", "lineitems"},
    EntityKind.QUOTES: {"quotes", "quote_list", "quotelist"},
    EntityKind.TASKS: {"tasks", "todos"},
    EntityKind.ENQUIRIES: {"enquiries", "inquiries"},
}
_NESTED_ITEM_KEYS = ("items", "order_items", "orderItems", "lineItems")
# Collections a snapshot carries that are exported but never imported.
_EXPORT_ONLY_COLLECTIONS = ("recipes", "ingredients", "products")
_ORDER_NUMBER_KEYS = ("order_number", "orderNumber", "Order Number")


def _decode(payload: bytes) -> str:
    if isinstance(payload, str):
        return payload
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return payload.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ParseError("File is not valid UTF-8 or Windows-1252 text")


def parse_table(payload: Union[bytes, str]) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Parse CSV bytes into ``(headers, rows)``; values are whitespace-trimmed."""

    text = _decode(payload)
    try:
        reader = csv.DictReader(io.StringIO(text))
        if not reader.fieldnames:
            raise ParseError("CSV file has no header row")
        headers = [(header or "").strip() for header in reader.fieldnames]
        reader.fieldnames = headers
        rows = [
            {
                key: value.strip() if isinstance(value, str) else value
                for key, value in row.items()
                if key
            }
            for row in reader
        ]
    except csv.Error as exc:
        raise ParseError(f"Could not read CSV data: {exc}") from exc
    return headers, rows


def parse_json(payload: Union[bytes, str]) -> Any:
    text = _decode(payload)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON: {exc.msg} (line {exc.lineno})") from exc


def looks_like_json(payload: Union[bytes, str], filename: Optional[str] = None) -> bool:
    if filename:
        lowered = filename.lower()
        if lowered.endswith(".json"):
            return True
        if lowered.endswith(".csv"):
            return False
    head = payload[:64].lstrip() if isinstance(payload, str) else payload[:64].lstrip(b"\xef\xbb\xbf \t\r\n")
    if isinstance(head, bytes):
        return head[:1] in (b"{", b"[")
    return head[:1] in ("{", "[")


def _flatten_order_items(orders: Iterable[Mapping[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    flat_orders: List[Dict[str, Any]] = []
    items: List[Dict[str, Any]] = []
    for order in orders:
        if not isinstance(order, Mapping):
            continue
        number = next((order[key] for key in _ORDER_NUMBER_KEYS if order.get(key) not in (None, "")), None)
        flat_orders.append({key: value for key, value in order.items() if key not in _NESTED_ITEM_KEYS})
        for nested_key in _NESTED_ITEM_KEYS:
            nested = order.get(nested_key)
            if nested in (None, ""):
                continue
            if not isinstance(nested, list):
                label = number if number is not None else "without a number"
                raise ParseError(f"Order {label} has an invalid '{nested_key}' value; expected a list of items")
            for item in nested:
                if isinstance(item, Mapping):
                    line = dict(item)
                    if number is not None:
                        line["order_number"] = number
                    items.append(line)
    return flat_orders, items


def _plan_from_records(records: List[Any], kind: Optional[EntityKind]) -> List[Tuple[EntityKind, List[Any]]]:
    if kind is None:
        kind = detect_record_kind(records)
        if kind is EntityKind.UNKNOWN:
            keys = sorted({str(key) for record in records if isinstance(record, Mapping) for key in record})
            raise UnrecognisedFormatError(keys)
    if kind is EntityKind.ORDERS:
        orders, items = _flatten_order_items(records)
        plan = [(EntityKind.ORDERS, orders)]
        if items:
            plan.append((EntityKind.ORDER_ITEMS, items))
        return plan
    return [(kind, records)]


def _plan_from_document(
    document: Mapping[str, Any],
    kind: Optional[EntityKind],
    notes: Optional[List[str]] = None,
) -> List[Tuple[EntityKind, List[Any]]]:
    data = document.get("data")
    if isinstance(data, Mapping):
        document = data
    lower_keys = {str(key).lower(): key for key in document.keys()}
    if notes is not None:
        for name in _EXPORT_ONLY_COLLECTIONS:
            skipped = document.get(lower_keys.get(name, name))
            if isinstance(skipped, list) and skipped:
                notes.append(f"Skipped {len(skipped)} {name} record(s); {name} are exported but not imported.")
    collections: Dict[EntityKind, List[Any]] = {}
    for collection_kind, aliases in _COLLECTION_KEYS.items():
        for alias in aliases:
            if alias in lower_keys and isinstance(document[lower_keys[alias]], list):
                collections.setdefault(collection_kind, []).extend(document[lower_keys[alias]])
    if EntityKind.ORDERS in collections:
        orders, items = _flatten_order_items(collections[EntityKind.ORDERS])
        collections[EntityKind.ORDERS] = orders
        if items:
            collections.setdefault(EntityKind.ORDER_ITEMS, []).extend(items)
    if not collections:
        raise ParseError("JSON document contains no importable collections")
    return [
        (collection_kind, collections[collection_kind])
        for collection_kind in IMPORT_ORDER
        if collection_kind in collections and (kind is None or collection_kind is kind)
    ]


def build_plan(
    payload: Union[bytes, str],
    kind: Optional[EntityKind] = None,
    *,
    filename: Optional[str] = None,
    options: Optional[ImportOptions] = None,
    notes: Optional[List[str]] = None,
) -> List[Tuple[EntityKind, List[Any]]]:
    """Parse ``payload`` and work out which records go to which kind.

    Collections that are left out on purpose are described on ``notes``.
    Raises :class:`ParseError` for unreadable payloads and
    :class:`UnrecognisedFormatError` when the kind cannot be detected.
    """

    options = options or ImportOptions()
    if looks_like_json(payload, filename):
        document = parse_json(payload)
        if isinstance(document, list):
            plan = _plan_from_records(document, kind)
        elif isinstance(document, Mapping):
            plan = _plan_from_document(document, kind, notes)
        else:
            raise ParseError("JSON payload must be an object or a list of records")
    else:
        headers, rows = parse_table(payload)
        if kind is None:
            kind = detect_format(headers)
            if kind is EntityKind.UNKNOWN:
                raise UnrecognisedFormatError(headers)
        plan = [(kind, rows)]
    return [(plan_kind, records) for plan_kind, records in plan if options.includes(plan_kind)]


def import_payload(
    storage: Storage,
    payload: Union[bytes, str],
    kind: Union[EntityKind, str, None] = None,
    *,
    filename: Optional[str] = None,
    options: Optional[ImportOptions] = None,
    user_id: Any = 1,
    timezone: str = "UTC",
    source_system: Optional[str] = None,
) -> ImportResult:
    """Import a CSV or JSON payload.

    ``kind`` may be omitted (or ``"auto"``) to detect it from the headers.
    ``source_system`` applies that system's enum mapping tables to every
    record, e.g. for CSV exports downloaded from Bake Diary.
    """

    if not isinstance(kind, EntityKind):
        kind = parse_kind(kind)
    adapter = LegacyFormatAdapter(get_legacy_format(source_system)) if source_system else None
    notes: List[str] = []
    plan = build_plan(payload, kind, filename=filename, options=options, notes=notes)
    coordinator = ImportCoordinator(storage, user_id=user_id, timezone=timezone, adapter=adapter)
    result = coordinator.import_plan(plan)
    result.notes.extend(notes)
    if adapter is not None:
        result.source_system = adapter.source_system
    return result


def import_legacy_payload(
    storage: Storage,
    payload: Union[bytes, str],
    *,
    source_system: str = "bake-diary",
    options: Optional[ImportOptions] = None,
    user_id: Any = 1,
    timezone: str = "UTC",
) -> ImportResult:
    """Import a foreign system's full JSON export."""

    adapter = LegacyFormatAdapter(get_legacy_format(source_system))
    document = parse_json(payload)
    dataset = adapter.extract(document)
    options = options or ImportOptions()
    plan = dataset.plan(kind for kind in IMPORT_ORDER if options.includes(kind))
    coordinator = ImportCoordinator(storage, user_id=user_id, timezone=timezone, adapter=adapter)
    result = coordinator.import_plan(plan)
    result.source_system = adapter.source_system
    result.notes.extend(dataset.notes)
    return result


__all__ = [
    "BatchStatus",
    "ImportCoordinator",
    "ImportOptions",
    "ImportOutcome",
    "ImportResult",
    "RecordStage",
    "amount_paid",
    "build_plan",
    "delivery_type",
    "import_legacy_payload",
    "import_payload",
    "looks_like_json",
    "parse_json",
    "parse_table",
]
