"""Generic list/get/create/update/delete over provisioned instance tables."""
from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Mapping, Optional

from sqlalchemy import String, cast, delete, false, func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from metaobjects.config import Settings, get_settings
from metaobjects.constants.datatypes import FieldDatatype
from metaobjects.constants.system_columns import SORTABLE_SYSTEM_COLUMNS
from metaobjects.models import utcnow
from metaobjects.schemas import FieldErrorDetail, InstanceListParams, InstancePage, SortOrder
from metaobjects.services.errors import InternalError, NotFoundError, RecordValidationError
from metaobjects.services.schema_cache import (
    ObjectSchema,
    SchemaCache,
    get_schema_cache,
    load_object_schema,
    load_schema_version,
)
from metaobjects.services.schema_provisioner import SchemaProvisioner
from metaobjects.services.validation_engine import (
    FieldValueError,
    ValidationEngine,
    validation_engine,
)

logger = logging.getLogger(__name__)

_STRING_DATATYPES = {
    FieldDatatype.TEXT.value,
    FieldDatatype.TEXT_AREA.value,
    FieldDatatype.EMAIL.value,
    FieldDatatype.URL.value,
    FieldDatatype.SINGLE_SELECT.value,
}
LIKE_ESCAPE = "\\"


def escape_like(term: str) -> str:
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def parse_instance_id(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class InstanceEngine:
    def __init__(
        self,
        db: Session,
        *,
        cache: Optional[SchemaCache] = None,
        provisioner: Optional[SchemaProvisioner] = None,
        validator: Optional[ValidationEngine] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.db = db
        self.cache = cache or get_schema_cache()
        self.provisioner = provisioner or SchemaProvisioner()
        self.validator = validator or validation_engine
        self.settings = settings or get_settings()

    def _schema(self, object_type: str) -> ObjectSchema:
        schema = self.cache.get_or_load(
            object_type,
            lambda: load_object_schema(self.db, object_type, self.provisioner),
            current_version=lambda: load_schema_version(self.db, object_type),
        )
        if schema is None:
            raise NotFoundError(f"Object type '{object_type}' not found")
        return schema

    def _fetch(self, schema: ObjectSchema, instance_id: uuid.UUID) -> Optional[dict[str, Any]]:
        table = schema.table
        row = self.db.execute(select(table).where(table.c.id == instance_id)).first()
        return dict(row._mapping) if row is not None else None

    def _resolve_paging(self, params: InstanceListParams) -> tuple[int, int, list[FieldErrorDetail]]:
        errors: list[FieldErrorDetail] = []
        if params.page < 1:
            errors.append(
                FieldErrorDetail(field="page", message="Page must be 1 or greater", value=params.page)
            )
        page_size = params.page_size if params.page_size is not None else self.settings.default_page_size
        if page_size < 1:
            errors.append(
                FieldErrorDetail(
                    field="pageSize", message="Page size must be 1 or greater", value=params.page_size
                )
            )
        return params.page, min(page_size, self.settings.max_page_size), errors

    def _resolve_sort(
        self, schema: ObjectSchema, params: InstanceListParams
    ) -> tuple[str, str, list[FieldErrorDetail]]:
        display = schema.display_properties
        if params.sort_by:
            sort_by, default_order = params.sort_by, SortOrder.ASC.value
        elif display.default_sort_field:
            sort_by = display.default_sort_field
            default_order = display.default_sort_order.value if display.default_sort_order else SortOrder.ASC.value
        else:
            # Newest first when nothing says otherwise.
            sort_by, default_order = "created_at", SortOrder.DESC.value
        sort_order = (params.sort_order or default_order).lower()

        errors: list[FieldErrorDetail] = []
        schema_field = schema.field(sort_by)
        if schema_field is None and sort_by not in SORTABLE_SYSTEM_COLUMNS:
            errors.append(
                FieldErrorDetail(field="sortBy", message=f"Cannot sort by '{sort_by}'", value=sort_by)
            )
        elif schema_field is not None and schema_field.datatype == FieldDatatype.MULTI_SELECT.value:
            errors.append(
                FieldErrorDetail(
                    field="sortBy", message="Multi-select fields cannot be sorted", value=sort_by
                )
            )
        if sort_order not in {order.value for order in SortOrder}:
            errors.append(
                FieldErrorDetail(
                    field="sortOrder", message="Sort order must be 'asc' or 'desc'", value=params.sort_order
                )
            )
        return sort_by, sort_order, errors

    def _search_condition(self, schema: ObjectSchema, search: Optional[str]):
        term = (search or "").strip()
        if not term:
            return None
        table = schema.table
        searchable = [name for name in schema.display_properties.searchable_fields if name in table.c]
        if not searchable:
            return false()

        pattern = f"%{escape_like(term)}%"
        clauses = []
        for name in searchable:
            schema_field = schema.field(name)
            column = table.c[name]
            if schema_field is None or schema_field.datatype not in _STRING_DATATYPES:
                column = cast(column, String)
            clauses.append(column.ilike(pattern, escape=LIKE_ESCAPE))
        return or_(*clauses)

    def _filter_conditions(
        self, schema: ObjectSchema, filters: Mapping[str, Any]
    ) -> tuple[list[Any], list[FieldErrorDetail]]:
        conditions: list[Any] = []
        errors: list[FieldErrorDetail] = []
        for name, raw_value in filters.items():
            schema_field = schema.field(name)
            if schema_field is None:
                errors.append(FieldErrorDetail(field=name, message=f"Unknown filter field '{name}'", value=raw_value))
                continue
            if schema_field.datatype == FieldDatatype.MULTI_SELECT.value:
                errors.append(
                    FieldErrorDetail(field=name, message="Multi-select fields cannot be filtered", value=raw_value)
                )
                continue
            try:
                value = self.validator.coerce_value(schema_field, raw_value)
            except FieldValueError as exc:
                errors.append(FieldErrorDetail(field=name, message=str(exc), value=raw_value))
                continue
            conditions.append(schema.table.c[name] == value)
        return conditions, errors

    def list(self, object_type: str, params: InstanceListParams) -> InstancePage:
        schema = self._schema(object_type)
        table = schema.table

        page, page_size, errors = self._resolve_paging(params)
        sort_by, sort_order, sort_errors = self._resolve_sort(schema, params)
        conditions, filter_errors = self._filter_conditions(schema, params.filters)
        errors += sort_errors + filter_errors
        if errors:
            raise RecordValidationError("Invalid list parameters", errors)

        search_condition = self._search_condition(schema, params.search)
        if search_condition is not None:
            conditions.append(search_condition)

        sort_column = table.c[sort_by]
        order_by = [sort_column.desc() if sort_order == SortOrder.DESC.value else sort_column.asc()]
        if sort_by != "id":
            order_by.append(table.c.id.asc())

        try:
            total_items = self.db.execute(
                select(func.count()).select_from(table).where(*conditions)
            ).scalar_one()
            rows = self.db.execute(
                select(table)
                .where(*conditions)
                .order_by(*order_by)
                .limit(page_size)
                .offset((page - 1) * page_size)
            ).all()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to list instances of %s", object_type)
            raise InternalError(f"Failed to list instances of '{object_type}'") from exc

        return InstancePage(
            items=[dict(row._mapping) for row in rows],
            page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=math.ceil(total_items / page_size) if total_items else 0,
        )

    def get(self, object_type: str, instance_id: Any) -> dict[str, Any]:
        schema = self._schema(object_type)
        parsed_id = parse_instance_id(instance_id)
        record = self._fetch(schema, parsed_id) if parsed_id is not None else None
        if record is None:
            raise NotFoundError(f"Instance '{instance_id}' of '{object_type}' not found")
        return record

    def create(self, object_type: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        schema = self._schema(object_type)
        values = self.validator.validate_or_raise(schema, payload)

        now = utcnow()
        instance_id = uuid.uuid4()
        row = {"id": instance_id, **values, "created_at": now, "updated_at": now}
        try:
            self.db.execute(insert(schema.table).values(row))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to create instance of %s", object_type)
            raise InternalError(f"Failed to create instance of '{object_type}'") from exc

        logger.debug("Created %s instance %s", object_type, instance_id)
        return self._fetch(schema, instance_id) or row

    def update(self, object_type: str, instance_id: Any, payload: Mapping[str, Any]) -> dict[str, Any]:
        schema = self._schema(object_type)
        parsed_id = parse_instance_id(instance_id)
        if parsed_id is None or self._fetch(schema, parsed_id) is None:
            raise NotFoundError(f"Instance '{instance_id}' of '{object_type}' not found")

        values = self.validator.validate_or_raise(schema, payload, partial=True)
        if values:
            values["updated_at"] = utcnow()
            table = schema.table
            try:
                self.db.execute(update(table).where(table.c.id == parsed_id).values(values))
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Failed to update %s instance %s", object_type, parsed_id)
                raise InternalError(f"Failed to update instance '{parsed_id}' of '{object_type}'") from exc

        record = self._fetch(schema, parsed_id)
        if record is None:
            raise NotFoundError(f"Instance '{instance_id}' of '{object_type}' not found")
        return record

    def delete(self, object_type: str, instance_id: Any) -> bool:
        schema = self._schema(object_type)
        parsed_id = parse_instance_id(instance_id)
        if parsed_id is None:
            return False
        table = schema.table
        try:
            result = self.db.execute(delete(table).where(table.c.id == parsed_id))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to delete %s instance %s", object_type, parsed_id)
            raise InternalError(f"Failed to delete instance '{parsed_id}' of '{object_type}'") from exc
        return result.rowcount > 0


__all__ = ["InstanceEngine", "escape_like", "parse_instance_id"]
