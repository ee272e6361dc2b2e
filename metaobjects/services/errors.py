"""Typed failures raised by the metadata registries and the instance engine."""
from __future__ import annotations

from enum import Enum
from typing import Iterable

from metaobjects.schemas import FieldErrorDetail


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_ERROR = "DUPLICATE_ERROR"
    CONSTRAINT_ERROR = "CONSTRAINT_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MetadataError(Exception):
    """Base class for every failure the core reports to its callers."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, details: Iterable[FieldErrorDetail] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: list[FieldErrorDetail] = list(details or [])


class NotFoundError(MetadataError):
    kind = ErrorKind.NOT_FOUND


class RecordValidationError(MetadataError):
    kind = ErrorKind.VALIDATION_ERROR

    @classmethod
    def for_field(cls, field: str, message: str, value=None) -> "RecordValidationError":
        return cls(message, [FieldErrorDetail(field=field, message=message, value=value)])


class DuplicateError(MetadataError):
    kind = ErrorKind.DUPLICATE_ERROR


class ConstraintError(MetadataError):
    kind = ErrorKind.CONSTRAINT_ERROR


class InternalError(MetadataError):
    kind = ErrorKind.INTERNAL_ERROR


class SchemaLockTimeoutError(InternalError):
    """Raised when a schema mutation cannot obtain its lock in time."""


__all__ = [
    "ConstraintError",
    "DuplicateError",
    "ErrorKind",
    "InternalError",
    "MetadataError",
    "NotFoundError",
    "RecordValidationError",
    "SchemaLockTimeoutError",
]
