"""CRUD for object definitions with storage provisioning in the same transaction."""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from metaobjects.constants.datatypes import FieldDatatype
from metaobjects.constants.system_columns import SORTABLE_SYSTEM_COLUMNS
from metaobjects.models import FieldDefinition, ObjectDefinition, ObjectFieldReference
from metaobjects.schemas import (
    DisplayProperties,
    FieldErrorDetail,
    FieldGroup,
    ObjectDefinitionCreate,
    ObjectDefinitionRead,
    ObjectDefinitionUpdate,
    ObjectFieldRef,
)
from metaobjects.services.errors import (
    DuplicateError,
    InternalError,
    MetadataError,
    NotFoundError,
    RecordValidationError,
)
from metaobjects.services.field_registry import check_display_name, check_short_name
from metaobjects.services.schema_cache import SchemaCache, get_schema_cache
from metaobjects.services.schema_locks import (
    SchemaLockRegistry,
    field_lock_key,
    get_schema_locks,
    object_lock_key,
)
from metaobjects.services.schema_provisioner import (
    SchemaChange,
    SchemaProvisioner,
    SchemaProvisionerError,
)

logger = logging.getLogger(__name__)


def object_to_read(definition: ObjectDefinition) -> ObjectDefinitionRead:
    return ObjectDefinitionRead(
        id=definition.id,
        short_name=definition.short_name,
        display_name=definition.display_name,
        description=definition.description,
        fields=[
            ObjectFieldRef(
                field_short_name=reference.field_short_name,
                mandatory=reference.mandatory,
                order=reference.display_order,
            )
            for reference in definition.field_references
        ],
        display_properties=DisplayProperties.model_validate(definition.display_properties or {}),
        field_groups=(
            [FieldGroup.model_validate(group) for group in definition.field_groups]
            if definition.field_groups is not None
            else None
        ),
        wizard_config=definition.wizard_config,
        created_at=definition.created_at,
        updated_at=definition.updated_at,
    )


def _check_field_refs(refs: list[ObjectFieldRef]) -> list[FieldErrorDetail]:
    errors: list[FieldErrorDetail] = []
    seen: set[str] = set()
    for index, ref in enumerate(refs):
        name = ref.field_short_name
        if name in seen:
            errors.append(
                FieldErrorDetail(
                    field=f"fields[{index}].fieldShortName",
                    message=f"Field '{name}' is referenced more than once",
                    value=name,
                )
            )
        seen.add(name)
    return errors


def _check_display_properties(
    display_properties: DisplayProperties, datatypes: Mapping[str, str]
) -> list[FieldErrorDetail]:
    """Problems with display properties, given the object's field datatypes by short name."""
    errors: list[FieldErrorDetail] = []

    sort_field = display_properties.default_sort_field
    if sort_field and sort_field not in datatypes and sort_field not in SORTABLE_SYSTEM_COLUMNS:
        errors.append(
            FieldErrorDetail(
                field="displayProperties.defaultSortField",
                message=f"'{sort_field}' is not a field of this object",
                value=sort_field,
            )
        )
    elif sort_field and datatypes.get(sort_field) == FieldDatatype.MULTI_SELECT.value:
        errors.append(
            FieldErrorDetail(
                field="displayProperties.defaultSortField",
                message="Multi-select fields cannot be sorted",
                value=sort_field,
            )
        )
    for key, alias in (("searchable_fields", "searchableFields"), ("table_columns", "tableColumns")):
        for name in getattr(display_properties, key):
            if name not in datatypes:
                errors.append(
                    FieldErrorDetail(
                        field=f"displayProperties.{alias}",
                        message=f"'{name}' is not a field of this object",
                        value=name,
                    )
                )
    return errors


def _check_field_groups(
    field_groups: Optional[list[FieldGroup]], field_names: Iterable[str]
) -> list[FieldErrorDetail]:
    allowed = set(field_names)
    errors: list[FieldErrorDetail] = []
    for index, group in enumerate(field_groups or []):
        if not group.name.strip():
            errors.append(
                FieldErrorDetail(
                    field=f"fieldGroups[{index}].name",
                    message="Field group must have a name",
                    value=group.name,
                )
            )
        if not group.description.strip():
            errors.append(
                FieldErrorDetail(
                    field=f"fieldGroups[{index}].description",
                    message=f"Field group '{group.name}' must have a description",
                    value=group.description,
                )
            )
        for name in group.fields:
            if name not in allowed:
                errors.append(
                    FieldErrorDetail(
                        field=f"fieldGroups[{index}].fields",
                        message=f"Field group '{group.name}' references '{name}', which is not a field of this object",
                        value=name,
                    )
                )
    return errors


def _dump_field_groups(field_groups: Optional[list[FieldGroup]]) -> Optional[list[dict[str, Any]]]:
    if field_groups is None:
        return None
    return [group.model_dump(by_alias=True, mode="json") for group in field_groups]


class ObjectRegistry:
    def __init__(
        self,
        db: Session,
        *,
        provisioner: Optional[SchemaProvisioner] = None,
        locks: Optional[SchemaLockRegistry] = None,
        cache: Optional[SchemaCache] = None,
    ) -> None:
        self.db = db
        self.provisioner = provisioner or SchemaProvisioner()
        self.locks = locks or get_schema_locks()
        self.cache = cache or get_schema_cache()

    def _query(self):
        return self.db.query(ObjectDefinition).options(
            selectinload(ObjectDefinition.field_references)
        )

    def _find(self, short_name: str) -> Optional[ObjectDefinition]:
        return self._query().filter(ObjectDefinition.short_name == short_name).one_or_none()

    def _get_or_404(self, short_name: str) -> ObjectDefinition:
        definition = self._find(short_name)
        if definition is None:
            raise NotFoundError(f"Object '{short_name}' not found")
        return definition

    def _resolve_fields(self, refs: list[ObjectFieldRef]) -> dict[str, FieldDefinition]:
        errors = _check_field_refs(refs)
        names = [ref.field_short_name for ref in refs]
        resolved: dict[str, FieldDefinition] = {}
        if names:
            resolved = {
                field.short_name: field
                for field in self.db.query(FieldDefinition)
                .filter(FieldDefinition.short_name.in_(names))
                .all()
            }
        for index, name in enumerate(names):
            if name not in resolved:
                errors.append(
                    FieldErrorDetail(
                        field=f"fields[{index}].fieldShortName",
                        message=f"Field '{name}' does not exist",
                        value=name,
                    )
                )
        if errors:
            raise RecordValidationError("Invalid object definition", errors)
        return resolved

    @staticmethod
    def _build_references(
        refs: list[ObjectFieldRef], resolved: dict[str, FieldDefinition]
    ) -> list[ObjectFieldReference]:
        return [
            ObjectFieldReference(
                field=resolved[ref.field_short_name],
                mandatory=ref.mandatory,
                display_order=ref.order,
                position=position,
            )
            for position, ref in enumerate(refs)
        ]

    def _commit_with_storage(
        self,
        action: str,
        short_name: str,
        apply: Callable[[Connection], SchemaChange],
        *,
        prepare: Optional[Callable[[], None]] = None,
    ) -> SchemaChange:
        """Flush metadata, run the storage change on the same connection, then commit."""
        try:
            if prepare is not None:
                prepare()
            self.db.flush()
            change = apply(self.db.connection())
            self.db.commit()
        except (SQLAlchemyError, SchemaProvisionerError) as exc:
            self.db.rollback()
            if isinstance(exc, IntegrityError) and action == "register":
                logger.warning("Integrity error while registering object %s: %s", short_name, exc)
                raise DuplicateError(f"Object '{short_name}' already exists") from exc
            logger.exception("Failed to %s object %s", action, short_name)
            raise InternalError(f"Failed to {action} object '{short_name}': {exc}") from exc
        if not change.is_empty:
            logger.info("Schema change for %s: %s", short_name, change)
        return change

    def register(self, payload: ObjectDefinitionCreate) -> ObjectDefinitionRead:
        errors = check_short_name(payload.short_name) + check_display_name(payload.display_name)
        if errors:
            raise RecordValidationError("Invalid object definition", errors)

        keys = [object_lock_key(payload.short_name)]
        keys += [field_lock_key(ref.field_short_name) for ref in payload.fields]
        with self.locks.hold(keys, session=self.db):
            try:
                if self._find(payload.short_name) is not None:
                    raise DuplicateError(f"Object '{payload.short_name}' already exists")

                resolved = self._resolve_fields(payload.fields)
                datatypes = {name: field.datatype for name, field in resolved.items()}
                errors = _check_display_properties(payload.display_properties, datatypes)
                errors += _check_field_groups(payload.field_groups, datatypes)
                if errors:
                    raise RecordValidationError("Invalid object definition", errors)

                definition = ObjectDefinition(
                    short_name=payload.short_name,
                    display_name=payload.display_name.strip(),
                    description=payload.description,
                    display_properties=payload.display_properties.model_dump(
                        by_alias=True, mode="json"
                    ),
                    field_groups=_dump_field_groups(payload.field_groups),
                    wizard_config=payload.wizard_config,
                )
                definition.field_references = self._build_references(payload.fields, resolved)
                self.db.add(definition)
                self._commit_with_storage(
                    "register",
                    payload.short_name,
                    lambda connection: self.provisioner.provision(connection, definition),
                )
            finally:
                self.cache.invalidate([payload.short_name])

            self.db.refresh(definition)
            logger.info("Registered object %s", definition.short_name)
            return object_to_read(definition)

    def get(self, short_name: str) -> ObjectDefinitionRead:
        return object_to_read(self._get_or_404(short_name))

    def list_objects(self) -> list[ObjectDefinitionRead]:
        definitions = self._query().order_by(ObjectDefinition.short_name).all()
        return [object_to_read(definition) for definition in definitions]

    def update(self, short_name: str, payload: ObjectDefinitionUpdate) -> ObjectDefinitionRead:
        update_data = payload.model_dump(exclude_unset=True)
        if "display_name" in update_data:
            errors = check_display_name(update_data["display_name"])
            if errors:
                raise RecordValidationError("Invalid object definition", errors)

        current = self._get_or_404(short_name)
        keys = {object_lock_key(short_name)}
        keys.update(field_lock_key(reference.field_short_name) for reference in current.field_references)
        if payload.fields is not None:
            keys.update(field_lock_key(ref.field_short_name) for ref in payload.fields)

        with self.locks.hold(keys, session=self.db):
            try:
                self.db.expire_all()
                definition = self._get_or_404(short_name)

                if payload.fields is not None:
                    resolved = self._resolve_fields(payload.fields)
                    datatypes = {name: field.datatype for name, field in resolved.items()}
                else:
                    datatypes = {
                        reference.field_short_name: reference.field.datatype
                        for reference in definition.field_references
                    }

                display_properties = (
                    payload.display_properties
                    if payload.display_properties is not None
                    else DisplayProperties.model_validate(definition.display_properties or {})
                )
                field_groups = (
                    payload.field_groups
                    if payload.field_groups is not None
                    else (
                        [FieldGroup.model_validate(group) for group in definition.field_groups]
                        if definition.field_groups is not None
                        else None
                    )
                )
                errors = _check_display_properties(display_properties, datatypes)
                errors += _check_field_groups(field_groups, datatypes)
                if errors:
                    raise RecordValidationError("Invalid object definition", errors)

                if update_data.get("display_name") is not None:
                    definition.display_name = update_data["display_name"].strip()
                if "description" in update_data:
                    definition.description = update_data["description"]
                definition.display_properties = display_properties.model_dump(by_alias=True, mode="json")
                definition.field_groups = _dump_field_groups(field_groups)
                if payload.wizard_config is not None:
                    definition.wizard_config = payload.wizard_config
                definition.schema_version = (definition.schema_version or 0) + 1

                def replace_references() -> None:
                    # Old rows must be gone before the new ones hit the unique constraint.
                    definition.field_references = []
                    self.db.flush()
                    definition.field_references = self._build_references(payload.fields, resolved)

                self._commit_with_storage(
                    "update",
                    short_name,
                    lambda connection: self.provisioner.reconcile(connection, definition),
                    prepare=replace_references if payload.fields is not None else None,
                )
            except MetadataError:
                self.db.rollback()
                raise
            finally:
                self.cache.invalidate([short_name])

            self.db.refresh(definition)
            logger.info("Updated object %s", short_name)
            return object_to_read(definition)

    def delete(self, short_name: str) -> None:
        current = self._get_or_404(short_name)
        keys = {object_lock_key(short_name)}
        keys.update(field_lock_key(reference.field_short_name) for reference in current.field_references)

        with self.locks.hold(keys, session=self.db):
            try:
                self.db.expire_all()
                definition = self._get_or_404(short_name)
                self.db.delete(definition)
                self._commit_with_storage(
                    "delete",
                    short_name,
                    lambda connection: self.provisioner.deprovision(connection, definition),
                )
            finally:
                self.cache.invalidate([short_name])
            logger.info("Deleted object %s", short_name)


__all__ = ["ObjectRegistry", "object_to_read"]
