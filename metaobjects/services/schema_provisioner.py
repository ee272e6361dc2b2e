"""Keeps one storage table per object definition in step with its field list."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Iterable, Sequence

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    MetaData,
    String,
    Table,
    Text,
    Time,
    Uuid,
    inspect,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateColumn
from sqlalchemy.types import TypeEngine

from metaobjects.config import get_settings
from metaobjects.constants.datatypes import (
    EMAIL_MAX_LENGTH,
    TEXT_MAX_LENGTH,
    URL_MAX_LENGTH,
    FieldDatatype,
)
from metaobjects.constants.system_columns import SYSTEM_COLUMN_NAME_SET

if TYPE_CHECKING:
    from metaobjects.models import ObjectDefinition

logger = getLogger(__name__)

MANAGED_INDEX_PREFIX = "ixs_"


class SchemaProvisionerError(Exception):
    """Raised when a storage table cannot be brought in line with its definition."""


def _column_type_for(datatype: str) -> TypeEngine:
    """Map a field datatype tag to the column type used for its storage."""
    type_mapping: dict[str, TypeEngine] = {
        FieldDatatype.TEXT.value: String(TEXT_MAX_LENGTH),
        FieldDatatype.TEXT_AREA.value: Text(),
        FieldDatatype.EMAIL.value: String(EMAIL_MAX_LENGTH),
        FieldDatatype.URL.value: String(URL_MAX_LENGTH),
        FieldDatatype.INTEGER.value: BigInteger(),
        FieldDatatype.NUMBER.value: Float(),
        FieldDatatype.BOOLEAN.value: Boolean(),
        FieldDatatype.DATE.value: Date(),
        FieldDatatype.TIME.value: Time(),
        FieldDatatype.DATETIME.value: DateTime(timezone=True),
        FieldDatatype.SINGLE_SELECT.value: String(TEXT_MAX_LENGTH),
        FieldDatatype.MULTI_SELECT.value: JSON(none_as_null=True),
    }
    key = datatype.value if isinstance(datatype, FieldDatatype) else str(datatype)
    try:
        return type_mapping[key]
    except KeyError as exc:
        raise SchemaProvisionerError(f"Unsupported datatype '{datatype}'") from exc


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    datatype: str


@dataclass
class SchemaChange:
    """What a provisioning call did to the storage table."""

    table_name: str
    created: bool = False
    dropped: bool = False
    added_columns: list[str] = field(default_factory=list)
    dropped_columns: list[str] = field(default_factory=list)
    added_indexes: list[str] = field(default_factory=list)
    dropped_indexes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.created
            or self.dropped
            or self.added_columns
            or self.dropped_columns
            or self.added_indexes
            or self.dropped_indexes
        )


def columns_for_definition(definition: "ObjectDefinition") -> list[ColumnSpec]:
    return [
        ColumnSpec(reference.field.short_name, reference.field.datatype)
        for reference in definition.field_references
    ]


def searchable_for_definition(definition: "ObjectDefinition") -> list[str]:
    properties = definition.display_properties or {}
    return list(properties.get("searchableFields") or [])


class SchemaProvisioner:
    def __init__(self, *, table_prefix: str | None = None) -> None:
        self.table_prefix = table_prefix or get_settings().instance_table_prefix

    def table_name(self, object_short_name: str) -> str:
        return f"{self.table_prefix}{object_short_name}"

    def index_name(self, object_short_name: str, field_short_name: str) -> str:
        digest = hashlib.sha1(
            f"{self.table_name(object_short_name)}.{field_short_name}".encode("utf-8")
        ).hexdigest()[:10]
        return f"{MANAGED_INDEX_PREFIX}{object_short_name}_{digest}"

    def build_table(
        self,
        object_short_name: str,
        columns: Sequence[ColumnSpec],
        *,
        metadata: MetaData | None = None,
    ) -> Table:
        field_columns = [
            Column(spec.name, _column_type_for(spec.datatype), nullable=True) for spec in columns
        ]
        return Table(
            self.table_name(object_short_name),
            metadata or MetaData(),
            Column("id", Uuid, primary_key=True),
            *field_columns,
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=False),
        )

    def _managed_indexes(
        self, table: Table, object_short_name: str, searchable_fields: Iterable[str]
    ) -> dict[str, Index]:
        indexes: dict[str, Index] = {}
        for field_short_name in searchable_fields:
            if field_short_name not in table.c:
                continue
            name = self.index_name(object_short_name, field_short_name)
            indexes[name] = Index(name, table.c[field_short_name])
        return indexes

    def provision(self, connection: Connection, definition: "ObjectDefinition") -> SchemaChange:
        """Create the storage table, its field columns and its search indexes."""
        return self._provision(
            connection,
            definition.short_name,
            columns_for_definition(definition),
            searchable_for_definition(definition),
        )

    def _provision(
        self,
        connection: Connection,
        object_short_name: str,
        columns: Sequence[ColumnSpec],
        searchable_fields: Sequence[str],
    ) -> SchemaChange:
        table = self.build_table(object_short_name, columns)
        change = SchemaChange(table_name=table.name, created=True)
        try:
            logger.info("Creating storage table %s", table.name)
            table.create(bind=connection)
            change.added_columns = [spec.name for spec in columns]
            for name, index in self._managed_indexes(table, object_short_name, searchable_fields).items():
                logger.info("Creating index %s on %s", name, table.name)
                index.create(bind=connection)
                change.added_indexes.append(name)
        except SQLAlchemyError as exc:
            logger.error("Failed to provision table %s: %s", table.name, exc)
            raise SchemaProvisionerError(f"Failed to provision table {table.name}: {exc}") from exc
        return change

    def reconcile(self, connection: Connection, definition: "ObjectDefinition") -> SchemaChange:
        """Converge the live table to the definition.

        The live table is inspected rather than trusting the previous definition,
        so running this twice is a no-op and a missing table is provisioned.
        Column types are never altered in place.
        """
        object_short_name = definition.short_name
        columns = columns_for_definition(definition)
        searchable_fields = searchable_for_definition(definition)
        table_name = self.table_name(object_short_name)

        try:
            inspector = inspect(connection)
            if not inspector.has_table(table_name):
                logger.warning("Storage table %s is missing; provisioning it", table_name)
                return self._provision(connection, object_short_name, columns, searchable_fields)

            existing_columns = {column["name"] for column in inspector.get_columns(table_name)}
            existing_indexes = {
                index["name"]
                for index in inspector.get_indexes(table_name)
                if index.get("name") and index["name"].startswith(MANAGED_INDEX_PREFIX)
            }
        except SQLAlchemyError as exc:
            raise SchemaProvisionerError(f"Failed to inspect table {table_name}: {exc}") from exc

        table = self.build_table(object_short_name, columns)
        desired_indexes = self._managed_indexes(table, object_short_name, searchable_fields)
        desired_columns = [spec.name for spec in columns]
        change = SchemaChange(table_name=table_name)
        preparer = connection.dialect.identifier_preparer
        quoted_table = preparer.quote(table_name)

        try:
            # Indexes go first: SQLite refuses to drop an indexed column.
            for name in sorted(existing_indexes - set(desired_indexes)):
                logger.info("Dropping index %s on %s", name, table_name)
                connection.exec_driver_sql(f"DROP INDEX {preparer.quote(name)}")
                change.dropped_indexes.append(name)

            for name in sorted(existing_columns - set(desired_columns) - SYSTEM_COLUMN_NAME_SET):
                logger.info("Dropping column %s from %s", name, table_name)
                connection.exec_driver_sql(
                    f"ALTER TABLE {quoted_table} DROP COLUMN {preparer.quote(name)}"
                )
                change.dropped_columns.append(name)

            for name in desired_columns:
                if name in existing_columns:
                    continue
                column_sql = CreateColumn(table.c[name]).compile(dialect=connection.dialect)
                logger.info("Adding column %s to %s", name, table_name)
                connection.exec_driver_sql(f"ALTER TABLE {quoted_table} ADD COLUMN {column_sql}")
                change.added_columns.append(name)

            for name, index in desired_indexes.items():
                if name in existing_indexes:
                    continue
                logger.info("Creating index %s on %s", name, table_name)
                index.create(bind=connection)
                change.added_indexes.append(name)
        except SQLAlchemyError as exc:
            logger.error("Failed to reconcile table %s: %s", table_name, exc)
            raise SchemaProvisionerError(f"Failed to reconcile table {table_name}: {exc}") from exc

        return change

    def deprovision(self, connection: Connection, definition: "ObjectDefinition") -> SchemaChange:
        """Drop the storage table. Only the object registry's delete calls this."""
        table_name = self.table_name(definition.short_name)
        quoted_table = connection.dialect.identifier_preparer.quote(table_name)
        try:
            logger.info("Dropping storage table %s", table_name)
            connection.exec_driver_sql(f"DROP TABLE IF EXISTS {quoted_table}")
        except SQLAlchemyError as exc:
            logger.error("Failed to drop table %s: %s", table_name, exc)
            raise SchemaProvisionerError(f"Failed to drop table {table_name}: {exc}") from exc
        return SchemaChange(table_name=table_name, dropped=True)


__all__ = [
    "ColumnSpec",
    "SchemaChange",
    "SchemaProvisioner",
    "SchemaProvisionerError",
    "columns_for_definition",
    "searchable_for_definition",
]
