"""Resolved object schemas shared by instance requests.

Entries are dropped by the registries inside the mutation that changes the
schema, never on a timer. A load that raced with an invalidation is returned
to its caller but not stored.

Other worker processes keep their own caches, so a cached entry can also be
checked against the object's stored ``(id, schema_version)`` before use and
is reloaded when it no longer matches.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import Table
from sqlalchemy.orm import Session, selectinload

from metaobjects.models import ObjectDefinition, ObjectFieldReference
from metaobjects.schemas import DisplayProperties
from metaobjects.services.schema_provisioner import SchemaProvisioner, columns_for_definition

logger = logging.getLogger(__name__)

VersionToken = tuple[uuid.UUID, int]


@dataclass(frozen=True)
class SchemaField:
    short_name: str
    display_name: str
    datatype: str
    datatype_properties: dict[str, Any]
    validation_rules: tuple[dict[str, Any], ...]
    mandatory: bool
    order: int


@dataclass(frozen=True)
class ObjectSchema:
    short_name: str
    display_name: str
    fields: tuple[SchemaField, ...]
    display_properties: DisplayProperties
    table: Table
    definition_id: Optional[uuid.UUID] = None
    schema_version: int = 0

    def field(self, short_name: str) -> Optional[SchemaField]:
        for schema_field in self.fields:
            if schema_field.short_name == short_name:
                return schema_field
        return None

    @property
    def field_names(self) -> list[str]:
        return [schema_field.short_name for schema_field in self.fields]

    @property
    def version_token(self) -> Optional[VersionToken]:
        if self.definition_id is None:
            return None
        return (self.definition_id, self.schema_version)


def build_object_schema(definition: ObjectDefinition, provisioner: SchemaProvisioner) -> ObjectSchema:
    fields = tuple(
        SchemaField(
            short_name=reference.field.short_name,
            display_name=reference.field.display_name,
            datatype=reference.field.datatype,
            datatype_properties=dict(reference.field.datatype_properties or {}),
            validation_rules=tuple(reference.field.validation_rules or ()),
            mandatory=reference.effective_mandatory,
            order=reference.display_order,
        )
        for reference in definition.field_references
    )
    return ObjectSchema(
        short_name=definition.short_name,
        display_name=definition.display_name,
        fields=fields,
        display_properties=DisplayProperties.model_validate(definition.display_properties or {}),
        table=provisioner.build_table(definition.short_name, columns_for_definition(definition)),
        definition_id=definition.id,
        schema_version=definition.schema_version,
    )


def load_object_schema(
    db: Session, short_name: str, provisioner: SchemaProvisioner
) -> Optional[ObjectSchema]:
    definition = (
        db.query(ObjectDefinition)
        .options(
            selectinload(ObjectDefinition.field_references).joinedload(ObjectFieldReference.field)
        )
        .filter(ObjectDefinition.short_name == short_name)
        .one_or_none()
    )
    if definition is None:
        return None
    return build_object_schema(definition, provisioner)


def load_schema_version(db: Session, short_name: str) -> Optional[VersionToken]:
    row = (
        db.query(ObjectDefinition.id, ObjectDefinition.schema_version)
        .filter(ObjectDefinition.short_name == short_name)
        .one_or_none()
    )
    if row is None:
        return None
    return (row[0], row[1])


class SchemaCache:
    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._lock = Lock()
        self._entries: dict[str, ObjectSchema] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0

    def get_or_load(
        self,
        short_name: str,
        loader: Callable[[], Optional[ObjectSchema]],
        *,
        current_version: Optional[Callable[[], Optional[VersionToken]]] = None,
    ) -> Optional[ObjectSchema]:
        if not self.enabled:
            return loader()

        with self._lock:
            cached = self._entries.get(short_name)
        if cached is not None:
            if current_version is None or current_version() == cached.version_token:
                return cached
            logger.debug("Cached schema for %s is out of date; reloading", short_name)
            self.invalidate([short_name])

        with self._lock:
            snapshot = (self._epoch, self._generations.get(short_name, 0))

        schema = loader()
        if schema is None:
            return None

        with self._lock:
            if (self._epoch, self._generations.get(short_name, 0)) == snapshot:
                self._entries[short_name] = schema
        return schema

    def invalidate(self, short_names: Iterable[str]) -> None:
        with self._lock:
            for short_name in short_names:
                self._entries.pop(short_name, None)
                self._generations[short_name] = self._generations.get(short_name, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()

    def __contains__(self, short_name: str) -> bool:
        with self._lock:
            return short_name in self._entries


_schema_cache: SchemaCache | None = None
_schema_cache_guard = Lock()


def get_schema_cache() -> SchemaCache:
    global _schema_cache
    with _schema_cache_guard:
        if _schema_cache is None:
            from metaobjects.config import get_settings

            _schema_cache = SchemaCache(enabled=get_settings().schema_cache_enabled)
        return _schema_cache


__all__ = [
    "ObjectSchema",
    "SchemaCache",
    "SchemaField",
    "build_object_schema",
    "get_schema_cache",
    "load_object_schema",
    "load_schema_version",
]
