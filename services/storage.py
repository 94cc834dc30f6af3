"""Storage collaborator used by the import and export services.

The services only need a narrow contract: run a parameterised statement,
insert a row and get its id back, control one transaction and introspect the
live shape of a table.  :class:`SqliteStorage` implements it on top of a
``sqlite3`` connection and translates driver exceptions into the import error
taxonomy so callers never have to know about ``sqlite3``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, List, Mapping, Protocol, Sequence, Set, Tuple

from .errors import InfrastructureError, RecordWriteError

LOGGER = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# OperationalErrors that are caused by the statement itself rather than by the
# connection.  Everything else is treated as infrastructure trouble.
_STATEMENT_ERRORS = ("no such column", "has no column named")
_BINDING_ERROR = "binding parameter"


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    declared_type: str = ""
    not_null: bool = False
    has_default: bool = False
    primary_key: bool = False

    @property
    def needs_value(self) -> bool:
        """``True`` for NOT NULL columns that the database cannot fill itself."""
        if self.primary_key and "INT" in self.declared_type.upper():
            return False
        return self.not_null and not self.has_default


class Storage(Protocol):
    def execute(self, query: str, params: Sequence[Any] = ()) -> List[Any]: ...

    def insert(self, table: str, values: Mapping[str, Any]) -> Any: ...

    def begin_transaction(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def introspect_columns(self, table: str) -> Set[str]: ...

    def describe_columns(self, table: str) -> List[ColumnInfo]: ...


def quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def to_storage_value(value: Any) -> Any:
    """Convert typed record values into the text/integer forms the tables hold."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return f"{value:f}"
    return value


def build_insert(table: str, values: Mapping[str, Any]) -> Tuple[str, Tuple[Any, ...]]:
    """Return an ``INSERT`` statement with bound parameters for ``values``."""

    columns = list(values.keys())
    if not columns:
        return f"INSERT INTO {quote_identifier(table)} DEFAULT VALUES", ()
    column_sql = ", ".join(quote_identifier(column) for column in columns)
    placeholders = ", ".join("?" for _ in columns)
    query = f"INSERT INTO {quote_identifier(table)} ({column_sql}) VALUES ({placeholders})"
    return query, tuple(to_storage_value(values[column]) for column in columns)


@contextmanager
def _translated_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise RecordWriteError(str(exc)) from exc
    except sqlite3.InterfaceError as exc:
        raise RecordWriteError(str(exc)) from exc
    except sqlite3.OperationalError as exc:
        message = str(exc)
        if any(marker in message for marker in _STATEMENT_ERRORS):
            raise RecordWriteError(message) from exc
        LOGGER.error("Storage failure during %s: %s", action, message)
        raise InfrastructureError(message) from exc
    except sqlite3.Error as exc:
        if _BINDING_ERROR in str(exc):
            raise RecordWriteError(str(exc)) from exc
        LOGGER.error("Storage failure during %s: %s", action, exc)
        raise InfrastructureError(str(exc)) from exc
    except OverflowError as exc:
        # Integers beyond 64 bits cannot be bound.
        raise RecordWriteError(str(exc)) from exc


class SqliteStorage:
    """:class:`Storage` backed by a ``sqlite3`` connection owned by the caller."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def execute(self, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with _translated_errors("query"):
            cursor = self.conn.execute(query, tuple(to_storage_value(param) for param in params))
            return cursor.fetchall()

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        query, params = build_insert(table, values)
        with _translated_errors(f"insert into {table}"):
            cursor = self.conn.execute(query, params)
            return cursor.lastrowid

    def begin_transaction(self) -> None:
        with _translated_errors("begin"):
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN")

    def commit(self) -> None:
        with _translated_errors("commit"):
            self.conn.commit()

    def rollback(self) -> None:
        with _translated_errors("rollback"):
            self.conn.rollback()

    def table_exists(self, table: str) -> bool:
        rows = self.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (table,),
        )
        return bool(rows)

    def describe_columns(self, table: str) -> List[ColumnInfo]:
        with _translated_errors(f"introspect {table}"):
            cursor = self.conn.execute(f"PRAGMA table_info({quote_identifier(table)})")
            rows = cursor.fetchall()
        return [
            ColumnInfo(
                name=row[1],
                declared_type=row[2] or "",
                not_null=bool(row[3]),
                has_default=row[4] is not None,
                primary_key=bool(row[5]),
            )
            for row in rows
        ]

    def introspect_columns(self, table: str) -> Set[str]:
        return {column.name for column in self.describe_columns(table)}


__all__ = [
    "ColumnInfo",
    "SqliteStorage",
    "Storage",
    "build_insert",
    "quote_identifier",
    "to_storage_value",
]
