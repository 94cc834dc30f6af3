"""Classify a parsed table by its header row."""

from __future__ import annotations

from typing import Any, FrozenSet, Iterable, Mapping, Sequence, Set, Tuple

from .entities import EntityKind
from .field_normalizer import field_key


# Each slot lists the folded header names that satisfy it.
_ORDER_NUMBER = frozenset({"ordernumber", "orderno", "orderid", "orderref", "orderreference"})
_QUOTE_NUMBER = frozenset({"quotenumber", "quoteno", "quoteid", "quoteref"})
_ITEM_NAME = frozenset({"itemname", "item", "product", "productname"})
_PRICE = frozenset({"price", "unitprice", "sellprice", "sellpriceexclvat"})
_STATUS = frozenset({"status", "orderstatus", "quotestatus"})
_EVENT_DATE = frozenset({"eventdate", "dateofevent"})

Signature = Tuple[EntityKind, Tuple[FrozenSet[str], ...]]

# Most specific first: an order items table also carries an order number, so
# it has to be recognised before the looser orders signature can claim it.
SIGNATURES: Sequence[Signature] = (
    (EntityKind.ORDER_ITEMS, (_ORDER_NUMBER, _ITEM_NAME, _PRICE)),
    (EntityKind.QUOTES, (_QUOTE_NUMBER, _STATUS, _EVENT_DATE)),
    (EntityKind.ORDERS, (_ORDER_NUMBER, _STATUS, _EVENT_DATE)),
)


def detect_format(headers: Iterable[Any]) -> EntityKind:
    """Return the first kind whose signature is covered by ``headers``.

    Returns :attr:`EntityKind.UNKNOWN` when nothing matches; deciding whether
    that is fatal is left to the caller.
    """

    observed: Set[str] = {field_key(header) for header in headers if header is not None}
    for kind, slots in SIGNATURES:
        if all(observed & slot for slot in slots):
            return kind
    return EntityKind.UNKNOWN


def detect_record_kind(records: Iterable[Mapping[str, Any]]) -> EntityKind:
    """Classify a list of JSON records from the union of their keys."""

    keys: Set[str] = set()
    for record in records:
        if isinstance(record, Mapping):
            keys.update(str(key) for key in record.keys())
    return detect_format(keys)


__all__ = ["SIGNATURES", "detect_format", "detect_record_kind"]
