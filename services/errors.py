"""Exception hierarchy shared by the import and export services."""

from __future__ import annotations

from typing import Optional


class BakeryDataError(Exception):
    """Base class for all import/export failures."""


class ParseError(BakeryDataError):
    """Raised when the uploaded bytes are not a readable table or JSON document."""


class UnrecognisedFormatError(ParseError):
    """Raised when a table's headers do not match any known record kind."""

    def __init__(self, headers):
        self.headers = list(headers)
        preview = ", ".join(self.headers[:8]) or "no headers"
        super().__init__(f"Unrecognised file format (headers: {preview})")


class RecordError(BakeryDataError):
    """Base class for failures that only affect the record being processed."""


class MissingRequiredFieldError(RecordError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Missing required field '{field}'")


class ReferenceCreationError(RecordError):
    """Raised when a placeholder entity could not be written."""

    def __init__(self, kind: str, key: Optional[str], reason: str = ""):
        self.kind = kind
        self.key = key
        message = f"Could not create placeholder {kind} '{key or '?'}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RecordWriteError(RecordError):
    """Statement-level storage failure (constraint violation, unknown column)."""


class DuplicateNaturalKeyError(BakeryDataError):
    """Raised when an order or quote with the same number already exists.

    Not a failure: the coordinator records the row as skipped.
    """

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__("already exists")


class InfrastructureError(BakeryDataError):
    """Connection or transaction level failure; the whole batch is rolled back."""


class ExportRequestError(BakeryDataError):
    """Raised for an unsupported export kind or format."""


__all__ = [
    "BakeryDataError",
    "DuplicateNaturalKeyError",
    "ExportRequestError",
    "InfrastructureError",
    "MissingRequiredFieldError",
    "ParseError",
    "RecordError",
    "RecordWriteError",
    "ReferenceCreationError",
    "UnrecognisedFormatError",
]
