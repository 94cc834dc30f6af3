"""Find-or-create of the entities an imported record points at.

Imported rows reference contacts and orders by business identifiers (an email
address, an order number) rather than internal ids, and the referenced entity
may not exist yet.  :class:`ReferenceResolver` looks such references up and,
when allowed, writes a minimal placeholder so the record can still be linked.

Everything here is scoped to one batch: the :class:`ReferenceCache` and the
:class:`SchemaShape` values live on a :class:`BatchContext` that the importer
creates per call and throws away afterwards.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from .entities import EntityKind
from .errors import RecordWriteError, ReferenceCreationError
from .sanitizers import clean_reference, timestamp_text, today
from .storage import ColumnInfo, Storage, quote_identifier

LOGGER = logging.getLogger(__name__)

PLACEHOLDER_ORDER_NOTE = "Auto-created from order items import"
PLACEHOLDER_NOTE = "Auto-created during import"

_NUMERIC_TYPES = ("INT", "REAL", "FLOA", "DOUB", "NUM", "DEC")


def synthesize_identifier(prefix: str = "AUTO") -> str:
    """Build a unique-enough business identifier for rows that lack one."""
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 9999)}"


# ---------------------------------------------------------------------------
# Schema shape
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchemaShape:
    """Live column layout of one table, as introspected for the current batch."""

    table: str
    columns: Tuple[ColumnInfo, ...] = ()

    @classmethod
    def introspect(cls, storage: Storage, table: str) -> "SchemaShape":
        return cls(table=table, columns=tuple(storage.describe_columns(table)))

    @property
    def exists(self) -> bool:
        return bool(self.columns)

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(column.name for column in self.columns)

    def has(self, column: str) -> bool:
        return column in self.names

    def prepare(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Restrict ``values`` to live columns and fill mandatory gaps.

        Unknown columns are dropped.  NOT NULL columns without a database
        default that ``values`` leaves empty get a neutral value for their
        declared type.
        """

        known = self.names
        prepared = {name: value for name, value in values.items() if name in known}
        dropped = sorted(set(values) - known)
        if dropped:
            LOGGER.debug("Skipping columns absent from %s: %s", self.table, ", ".join(dropped))
        for column in self.columns:
            if column.needs_value and prepared.get(column.name) is None:
                prepared[column.name] = _neutral_for(column)
        return prepared


def _neutral_for(column: ColumnInfo) -> Any:
    declared = column.declared_type.upper()
    if any(marker in declared for marker in _NUMERIC_TYPES):
        return 0
    return ""


# ---------------------------------------------------------------------------
# Batch scoped state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceKey:
    """Natural key of a referenced entity.

    ``field`` names what the value matches against: ``email`` or ``name`` for
    contacts, ``order_number`` / ``quote_number`` otherwise.  Name keys keep
    the individual parts so the store lookup can match first and last name.
    """

    kind: EntityKind
    field: str
    value: str
    parts: Tuple[str, ...] = ()

    @property
    def is_blank(self) -> bool:
        return not self.value

    @classmethod
    def for_contact(
        cls, email: Optional[str] = None, first_name: Optional[str] = None, last_name: Optional[str] = None
    ) -> "ReferenceKey":
        email_value = (email or "").strip().lower()
        if email_value:
            return cls(EntityKind.CONTACTS, "email", email_value)
        first = (first_name or "").strip().lower()
        last = (last_name or "").strip().lower()
        return cls(EntityKind.CONTACTS, "name", " ".join(part for part in (first, last) if part), (first, last))

    @classmethod
    def for_number(cls, kind: EntityKind, number: Optional[str]) -> "ReferenceKey":
        column = "quote_number" if kind is EntityKind.QUOTES else "order_number"
        return cls(kind, column, clean_reference(number))


class ReferenceCache:
    """Maps natural keys to internal ids for the lifetime of one batch."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[EntityKind, str, str], Any] = {}

    @staticmethod
    def _slot(key: ReferenceKey) -> Tuple[EntityKind, str, str]:
        return (key.kind, key.field, key.value)

    def get(self, key: ReferenceKey) -> Optional[Any]:
        return self._entries.get(self._slot(key))

    def put(self, key: ReferenceKey, internal_id: Any) -> None:
        self._entries[self._slot(key)] = internal_id

    def __contains__(self, key: ReferenceKey) -> bool:
        return self._slot(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class BatchContext:
    """State shared by every record of one import batch."""

    storage: Storage
    user_id: Any = 1
    timezone: str = "UTC"
    cache: ReferenceCache = field(default_factory=ReferenceCache)
    _shapes: Dict[str, SchemaShape] = field(default_factory=dict, repr=False)

    def shape(self, table: str) -> SchemaShape:
        if table not in self._shapes:
            self._shapes[table] = SchemaShape.introspect(self.storage, table)
        return self._shapes[table]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

NaturalKey = Union[str, ReferenceKey, None]


class ReferenceResolver:
    """Cache, then store lookup, then placeholder creation."""

    def __init__(self, context: BatchContext):
        self.context = context

    @property
    def storage(self) -> Storage:
        return self.context.storage

    def make_key(
        self, kind: EntityKind, natural_key: NaturalKey, fallback_fields: Optional[Mapping[str, Any]] = None
    ) -> ReferenceKey:
        if isinstance(natural_key, ReferenceKey):
            return natural_key
        fallback = fallback_fields or {}
        if kind is EntityKind.CONTACTS:
            if natural_key and "@" in natural_key:
                return ReferenceKey.for_contact(email=natural_key)
            if natural_key:
                first, _, last = natural_key.strip().partition(" ")
                return ReferenceKey.for_contact(first_name=first, last_name=last)
            return ReferenceKey.for_contact(
                fallback.get("email"), fallback.get("first_name"), fallback.get("last_name")
            )
        if kind in (EntityKind.ORDERS, EntityKind.QUOTES):
            return ReferenceKey.for_number(kind, natural_key)
        raise ValueError(f"References to {kind.value} are not supported")

    def remember(self, key: ReferenceKey, internal_id: Any) -> None:
        self.context.cache.put(key, internal_id)

    def lookup(self, kind: EntityKind, natural_key: NaturalKey) -> Optional[Any]:
        """Cache then store; never creates anything."""

        key = self.make_key(kind, natural_key)
        if key.is_blank:
            return None
        cached = self.context.cache.get(key)
        if cached is not None:
            return cached
        found = self._find_in_store(key)
        if found is not None:
            self.remember(key, found)
        return found

    def resolve(
        self,
        kind: EntityKind,
        natural_key: NaturalKey,
        fallback_fields: Optional[Mapping[str, Any]] = None,
        *,
        create: bool = True,
    ) -> Optional[Any]:
        """Return the internal id for ``natural_key``, creating a placeholder if needed.

        Contacts without any email or name resolve to ``None``; orders and
        quotes without a number get a synthesized one.  Placeholder write
        failures raise :class:`ReferenceCreationError`.
        """

        key = self.make_key(kind, natural_key, fallback_fields)
        if key.is_blank:
            if kind is EntityKind.CONTACTS or not create:
                return None
            key = ReferenceKey(kind, key.field, synthesize_identifier())
        else:
            existing = self.lookup(kind, key)
            if existing is not None:
                return existing
        if not create:
            return None
        internal_id = self._create_placeholder(key, fallback_fields or {})
        self.remember(key, internal_id)
        return internal_id

    # -- store access -----------------------------------------------------

    def _scope(self, shape: SchemaShape) -> Tuple[str, Tuple[Any, ...]]:
        if shape.has("user_id") and self.context.user_id is not None:
            return " AND user_id = ?", (self.context.user_id,)
        return "", ()

    def _find_in_store(self, key: ReferenceKey) -> Optional[Any]:
        shape = self.context.shape(key.kind.table)
        table = quote_identifier(shape.table)
        scope_sql, scope_params = self._scope(shape)
        if key.field == "email":
            if not shape.has("email"):
                return None
            query = f"SELECT id FROM {table} WHERE lower(email) = ?{scope_sql} ORDER BY id LIMIT 1"
            params: Tuple[Any, ...] = (key.value,) + scope_params
        elif key.field == "name":
            if not shape.has("first_name"):
                return None
            first, last = key.parts
            if shape.has("last_name"):
                query = (
                    f"SELECT id FROM {table} WHERE lower(first_name) = ? "
                    f"AND lower(coalesce(last_name, '')) = ?{scope_sql} ORDER BY id LIMIT 1"
                )
                params = (first, last) + scope_params
            else:
                query = f"SELECT id FROM {table} WHERE lower(first_name) = ?{scope_sql} ORDER BY id LIMIT 1"
                params = (first,) + scope_params
        else:
            if not shape.has(key.field):
                return None
            query = f"SELECT id FROM {table} WHERE {quote_identifier(key.field)} = ?{scope_sql} ORDER BY id LIMIT 1"
            params = (key.value,) + scope_params
        rows = self.storage.execute(query, params)
        return rows[0][0] if rows else None

    def _placeholder_values(self, key: ReferenceKey, fallback: Mapping[str, Any]) -> Dict[str, Any]:
        timezone = self.context.timezone
        values: Dict[str, Any] = {"user_id": self.context.user_id, "created_at": timestamp_text(timezone)}
        if key.kind is EntityKind.CONTACTS:
            first, last = key.parts if key.parts else ("", "")
            values.update(
                {
                    "first_name": fallback.get("first_name") or first.title() or "Unknown",
                    "last_name": fallback.get("last_name") or last.title(),
                    "email": key.value if key.field == "email" else None,
                    "type": "Customer",
                    "notes": PLACEHOLDER_NOTE,
                }
            )
        elif key.kind is EntityKind.ORDERS:
            values.update(
                {
                    "order_number": key.value,
                    "status": "Draft",
                    "event_type": "Other",
                    "event_date": today(timezone),
                    "theme": f"Order Item Import - {key.value}",
                    "delivery_type": "Pickup",
                    "delivery_fee": "0.00",
                    "total": "0.00",
                    "amount_paid": "0.00",
                    "notes": PLACEHOLDER_ORDER_NOTE,
                }
            )
        else:
            values.update(
                {
                    "quote_number": key.value,
                    "status": "Draft",
                    "event_type": "Other",
                    "event_date": today(timezone),
                    "delivery_type": "Pickup",
                    "total": "0.00",
                    "notes": PLACEHOLDER_NOTE,
                }
            )
        for name, value in fallback.items():
            if value not in (None, ""):
                values[name] = value
        return values

    def _create_placeholder(self, key: ReferenceKey, fallback: Mapping[str, Any]) -> Any:
        shape = self.context.shape(key.kind.table)
        if not shape.exists:
            raise ReferenceCreationError(key.kind.label, key.value, f"table {shape.table} does not exist")
        values = shape.prepare(self._placeholder_values(key, fallback))
        try:
            internal_id = self.storage.insert(shape.table, values)
        except RecordWriteError as exc:
            raise ReferenceCreationError(key.kind.label, key.value, str(exc)) from exc
        LOGGER.info("Created placeholder %s '%s' (id %s)", key.kind.label, key.value, internal_id)
        return internal_id


__all__ = [
    "BatchContext",
    "PLACEHOLDER_NOTE",
    "PLACEHOLDER_ORDER_NOTE",
    "ReferenceCache",
    "ReferenceKey",
    "ReferenceResolver",
    "SchemaShape",
    "synthesize_identifier",
]
