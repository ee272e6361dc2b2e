from metaobjects.models.entities import (
    FieldDefinition,
    ObjectDefinition,
    ObjectFieldReference,
    TimestampMixin,
    utcnow,
)

__all__ = [
    "FieldDefinition",
    "ObjectDefinition",
    "ObjectFieldReference",
    "TimestampMixin",
    "utcnow",
]
