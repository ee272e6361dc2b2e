"""CRUD for reusable field definitions."""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from metaobjects.constants.datatypes import FieldDatatype
from metaobjects.constants.system_columns import (
    SHORT_NAME_MAX_LENGTH,
    SYSTEM_COLUMN_NAME_SET,
    is_valid_short_name,
)
from metaobjects.models import FieldDefinition, ObjectDefinition, ObjectFieldReference
from metaobjects.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldErrorDetail,
    ValidationRule,
)
from metaobjects.services.errors import (
    ConstraintError,
    DuplicateError,
    InternalError,
    NotFoundError,
    RecordValidationError,
)
from metaobjects.services.schema_cache import SchemaCache, get_schema_cache
from metaobjects.services.schema_locks import SchemaLockRegistry, field_lock_key, get_schema_locks
from metaobjects.services.validation_engine import (
    datatype_properties_problem,
    describe_rule_problem,
)

logger = logging.getLogger(__name__)


def check_short_name(value: Optional[str], *, field: str = "shortName") -> list[FieldErrorDetail]:
    """Identifier problems for a field or object short name."""
    if value is None or not value.strip():
        return [FieldErrorDetail(field=field, message="Short name is required", value=value)]
    if value in SYSTEM_COLUMN_NAME_SET:
        return [
            FieldErrorDetail(field=field, message=f"'{value}' is a reserved name", value=value)
        ]
    if not is_valid_short_name(value):
        return [
            FieldErrorDetail(
                field=field,
                message=(
                    "Short name must start with a lowercase letter, contain only lowercase"
                    f" letters, digits and underscores, and be at most {SHORT_NAME_MAX_LENGTH}"
                    " characters"
                ),
                value=value,
            )
        ]
    return []


def check_display_name(value: Optional[str]) -> list[FieldErrorDetail]:
    if value is None or not value.strip():
        return [FieldErrorDetail(field="displayName", message="Display name is required", value=value)]
    return []


def _check_datatype_shape(
    datatype: FieldDatatype,
    datatype_properties: dict[str, Any],
    rules: list[ValidationRule],
) -> list[FieldErrorDetail]:
    errors: list[FieldErrorDetail] = []
    problem = datatype_properties_problem(datatype, datatype_properties)
    if problem:
        errors.append(
            FieldErrorDetail(field="datatypeProperties", message=problem, value=datatype_properties)
        )
    for index, rule in enumerate(rules):
        problem = describe_rule_problem(rule, datatype)
        if problem:
            errors.append(
                FieldErrorDetail(
                    field=f"validationRules[{index}]",
                    message=problem,
                    value=rule.model_dump(mode="json"),
                )
            )
    return errors


def field_to_read(field: FieldDefinition) -> FieldDefinitionRead:
    return FieldDefinitionRead(
        id=field.id,
        short_name=field.short_name,
        display_name=field.display_name,
        description=field.description,
        datatype=FieldDatatype(field.datatype),
        datatype_properties=dict(field.datatype_properties or {}),
        mandatory=field.mandatory,
        validation_rules=[ValidationRule.model_validate(rule) for rule in field.validation_rules or []],
        created_at=field.created_at,
        updated_at=field.updated_at,
    )


class FieldRegistry:
    def __init__(
        self,
        db: Session,
        *,
        locks: Optional[SchemaLockRegistry] = None,
        cache: Optional[SchemaCache] = None,
    ) -> None:
        self.db = db
        self.locks = locks or get_schema_locks()
        self.cache = cache or get_schema_cache()

    def _get_or_404(self, short_name: str) -> FieldDefinition:
        field = (
            self.db.query(FieldDefinition)
            .filter(FieldDefinition.short_name == short_name)
            .one_or_none()
        )
        if field is None:
            raise NotFoundError(f"Field '{short_name}' not found")
        return field

    def find_referencing_objects(self, short_name: str) -> list[str]:
        rows = (
            self.db.query(ObjectDefinition.short_name)
            .join(ObjectFieldReference, ObjectFieldReference.object_id == ObjectDefinition.id)
            .join(FieldDefinition, ObjectFieldReference.field_id == FieldDefinition.id)
            .filter(FieldDefinition.short_name == short_name)
            .order_by(ObjectDefinition.short_name)
            .all()
        )
        return [row[0] for row in rows]

    def register(self, payload: FieldDefinitionCreate) -> FieldDefinitionRead:
        errors = check_short_name(payload.short_name) + check_display_name(payload.display_name)
        errors += _check_datatype_shape(
            payload.datatype, payload.datatype_properties, payload.validation_rules
        )
        if errors:
            raise RecordValidationError("Invalid field definition", errors)

        with self.locks.hold([field_lock_key(payload.short_name)], session=self.db):
            existing = (
                self.db.query(FieldDefinition.id)
                .filter(FieldDefinition.short_name == payload.short_name)
                .first()
            )
            if existing:
                raise DuplicateError(f"Field '{payload.short_name}' already exists")

            field = FieldDefinition(
                short_name=payload.short_name,
                display_name=payload.display_name.strip(),
                description=payload.description,
                datatype=payload.datatype.value,
                datatype_properties=dict(payload.datatype_properties),
                mandatory=payload.mandatory,
                validation_rules=[rule.model_dump(mode="json") for rule in payload.validation_rules],
            )
            self.db.add(field)
            try:
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                raise DuplicateError(f"Field '{payload.short_name}' already exists") from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Failed to register field %s", payload.short_name)
                raise InternalError(f"Failed to register field '{payload.short_name}'") from exc

            self.db.refresh(field)
            logger.info("Registered field %s (%s)", field.short_name, field.datatype)
            return field_to_read(field)

    def get(self, short_name: str) -> FieldDefinitionRead:
        return field_to_read(self._get_or_404(short_name))

    def list_fields(self) -> list[FieldDefinitionRead]:
        fields = self.db.query(FieldDefinition).order_by(FieldDefinition.short_name).all()
        return [field_to_read(field) for field in fields]

    def update(self, short_name: str, payload: FieldDefinitionUpdate) -> FieldDefinitionRead:
        update_data = payload.model_dump(exclude_unset=True)
        referencing: list[str] = []

        with self.locks.hold([field_lock_key(short_name)], session=self.db):
            field = self._get_or_404(short_name)
            try:
                if "display_name" in update_data:
                    errors = check_display_name(update_data["display_name"])
                    if errors:
                        raise RecordValidationError("Invalid field definition", errors)

                datatype = FieldDatatype(update_data.get("datatype") or field.datatype)
                datatype_properties = (
                    update_data["datatype_properties"]
                    if update_data.get("datatype_properties") is not None
                    else dict(field.datatype_properties or {})
                )
                rules = (
                    payload.validation_rules
                    if payload.validation_rules is not None
                    else [ValidationRule.model_validate(rule) for rule in field.validation_rules or []]
                )
                errors = _check_datatype_shape(datatype, datatype_properties, rules)
                if errors:
                    raise RecordValidationError("Invalid field definition", errors)

                referencing = self.find_referencing_objects(short_name)
                if datatype.value != field.datatype and referencing:
                    raise ConstraintError(
                        f"Cannot change the datatype of field '{short_name}' while it is used by: "
                        + ", ".join(referencing)
                    )

                if update_data.get("display_name") is not None:
                    field.display_name = update_data["display_name"].strip()
                if "description" in update_data:
                    field.description = update_data["description"]
                field.datatype = datatype.value
                field.datatype_properties = dict(datatype_properties)
                if update_data.get("mandatory") is not None:
                    field.mandatory = update_data["mandatory"]
                field.validation_rules = [rule.model_dump(mode="json") for rule in rules]
                try:
                    if referencing:
                        self.db.query(ObjectDefinition).filter(
                            ObjectDefinition.short_name.in_(referencing)
                        ).update(
                            {ObjectDefinition.schema_version: ObjectDefinition.schema_version + 1},
                            synchronize_session=False,
                        )
                    self.db.commit()
                except SQLAlchemyError as exc:
                    self.db.rollback()
                    logger.exception("Failed to update field %s", short_name)
                    raise InternalError(f"Failed to update field '{short_name}'") from exc
            finally:
                self.cache.invalidate(referencing)

            self.db.refresh(field)
            logger.info("Updated field %s", short_name)
            return field_to_read(field)

    def delete(self, short_name: str) -> None:
        with self.locks.hold([field_lock_key(short_name)], session=self.db):
            field = self._get_or_404(short_name)
            referencing = self.find_referencing_objects(short_name)
            if referencing:
                raise ConstraintError(
                    f"Field '{short_name}' is used by: " + ", ".join(referencing)
                )

            self.db.delete(field)
            try:
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                raise ConstraintError(f"Field '{short_name}' is still referenced") from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Failed to delete field %s", short_name)
                raise InternalError(f"Failed to delete field '{short_name}'") from exc
            logger.info("Deleted field %s", short_name)


__all__ = [
    "FieldRegistry",
    "check_display_name",
    "check_short_name",
    "field_to_read",
]
