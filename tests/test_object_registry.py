import pytest
from sqlalchemy import inspect

from metaobjects.models import ObjectDefinition, ObjectFieldReference
from metaobjects.schemas import (
    DisplayProperties,
    FieldDefinitionCreate,
    FieldGroup,
    ObjectDefinitionCreate,
    ObjectDefinitionUpdate,
    ObjectFieldRef,
)
from metaobjects.services import (
    DuplicateError,
    FieldRegistry,
    InternalError,
    NotFoundError,
    ObjectRegistry,
    RecordValidationError,
    SchemaLockRegistry,
    SchemaLockTimeoutError,
)
from metaobjects.services.schema_locks import object_lock_key
from metaobjects.services.schema_provisioner import SchemaProvisioner, SchemaProvisionerError


@pytest.fixture()
def registered_fields(db_session):
    registry = FieldRegistry(db_session)
    registry.register(FieldDefinitionCreate(short_name="email", display_name="Email", datatype="email", mandatory=True))
    registry.register(FieldDefinitionCreate(short_name="phone", display_name="Phone", datatype="text"))
    registry.register(FieldDefinitionCreate(short_name="age", display_name="Age", datatype="integer"))
    return registry


def _customer(**overrides):
    payload = {
        "short_name": "customer",
        "display_name": "Customer",
        "fields": [ObjectFieldRef(field_short_name="email"), ObjectFieldRef(field_short_name="phone", order=1)],
        "display_properties": DisplayProperties(searchable_fields=["email"], default_sort_field="email"),
    }
    payload.update(overrides)
    return ObjectDefinitionCreate(**payload)


def _columns(db_session, table_name):
    return {column["name"] for column in inspect(db_session.connection()).get_columns(table_name)}


def _has_table(db_session, table_name):
    return inspect(db_session.connection()).has_table(table_name)


def test_register_persists_definition_and_provisions_storage(db_session, registered_fields):
    registry = ObjectRegistry(db_session)

    created = registry.register(_customer())

    assert created.short_name == "customer"
    assert [ref.field_short_name for ref in created.fields] == ["email", "phone"]
    assert created.display_properties.searchable_fields == ["email"]
    assert registry.get("customer") == created
    assert _columns(db_session, "instances_customer") == {"id", "email", "phone", "created_at", "updated_at"}


def test_display_properties_are_stored_with_camel_case_keys(db_session, registered_fields):
    ObjectRegistry(db_session).register(_customer())

    stored = db_session.query(ObjectDefinition).filter_by(short_name="customer").one()
    assert stored.display_properties["searchableFields"] == ["email"]
    assert stored.display_properties["defaultSortField"] == "email"


def test_empty_field_list_is_valid(db_session):
    created = ObjectRegistry(db_session).register(
        ObjectDefinitionCreate(short_name="note", display_name="Note")
    )

    assert created.fields == []
    assert _columns(db_session, "instances_note") == {"id", "created_at", "updated_at"}


def test_unknown_field_fails_before_any_write(db_session, registered_fields):
    registry = ObjectRegistry(db_session)

    with pytest.raises(RecordValidationError) as excinfo:
        registry.register(_customer(fields=[ObjectFieldRef(field_short_name="email"), ObjectFieldRef(field_short_name="ghost")]))

    assert excinfo.value.details[0].field == "fields[1].fieldShortName"
    assert db_session.query(ObjectDefinition).count() == 0
    assert not _has_table(db_session, "instances_customer")


def test_field_may_be_referenced_once(db_session, registered_fields):
    with pytest.raises(RecordValidationError):
        ObjectRegistry(db_session).register(
            _customer(fields=[ObjectFieldRef(field_short_name="email"), ObjectFieldRef(field_short_name="email")])
        )


def test_display_properties_must_name_object_fields(db_session, registered_fields):
    with pytest.raises(RecordValidationError) as excinfo:
        ObjectRegistry(db_session).register(
            _customer(display_properties=DisplayProperties(searchable_fields=["age"], table_columns=["email"]))
        )

    assert [detail.field for detail in excinfo.value.details] == ["displayProperties.searchableFields"]


def test_duplicate_object_is_rejected(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    with pytest.raises(DuplicateError):
        registry.register(_customer(display_name="Customer again"))


def test_update_replaces_fields_and_reconciles_storage(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    updated = registry.update(
        "customer",
        ObjectDefinitionUpdate(
            fields=[ObjectFieldRef(field_short_name="age"), ObjectFieldRef(field_short_name="email", mandatory=False)],
            display_properties=DisplayProperties(searchable_fields=["email"]),
        ),
    )

    assert [ref.field_short_name for ref in updated.fields] == ["age", "email"]
    assert updated.fields[1].mandatory is False
    assert _columns(db_session, "instances_customer") == {"id", "age", "email", "created_at", "updated_at"}
    assert db_session.query(ObjectFieldReference).count() == 2


def test_partial_update_keeps_fields_and_display_properties(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    updated = registry.update("customer", ObjectDefinitionUpdate(display_name="Client"))

    assert updated.display_name == "Client"
    assert [ref.field_short_name for ref in updated.fields] == ["email", "phone"]
    assert updated.display_properties.default_sort_field == "email"


def test_update_rejects_display_properties_outside_new_fields(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    with pytest.raises(RecordValidationError):
        registry.update("customer", ObjectDefinitionUpdate(fields=[ObjectFieldRef(field_short_name="phone")]))

    assert [ref.field_short_name for ref in registry.get("customer").fields] == ["email", "phone"]
    assert "email" in _columns(db_session, "instances_customer")


def test_delete_removes_definition_and_storage(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    registry.delete("customer")

    with pytest.raises(NotFoundError):
        registry.get("customer")
    assert not _has_table(db_session, "instances_customer")
    assert db_session.query(ObjectFieldReference).count() == 0


def test_storage_failure_rolls_back_metadata(db_session, registered_fields):
    db_session.connection().exec_driver_sql("CREATE TABLE instances_customer (legacy INTEGER)")
    db_session.commit()

    with pytest.raises(InternalError):
        ObjectRegistry(db_session).register(_customer())

    assert db_session.query(ObjectDefinition).count() == 0
    assert db_session.query(ObjectFieldReference).count() == 0
    assert _columns(db_session, "instances_customer") == {"legacy"}


def test_lock_timeout_leaves_registry_untouched(db_session, registered_fields):
    locks = SchemaLockRegistry(default_timeout=0.05)

    with locks.hold([object_lock_key("customer")]):
        with pytest.raises(SchemaLockTimeoutError):
            ObjectRegistry(db_session, locks=locks).register(_customer())

    assert db_session.query(ObjectDefinition).count() == 0
    assert locks.active_keys() == []


class FailingProvisioner(SchemaProvisioner):
    """Applies the storage change, then fails before the transaction commits."""

    def reconcile(self, connection, definition):
        super().reconcile(connection, definition)
        raise SchemaProvisionerError("storage unavailable")

    def deprovision(self, connection, definition):
        super().deprovision(connection, definition)
        raise SchemaProvisionerError("storage unavailable")


def _schema_version(db_session):
    return db_session.query(ObjectDefinition.schema_version).filter_by(short_name="customer").scalar()


def test_failed_reconcile_rolls_back_update(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    with pytest.raises(InternalError):
        ObjectRegistry(db_session, provisioner=FailingProvisioner()).update(
            "customer",
            ObjectDefinitionUpdate(
                display_name="Client",
                fields=[ObjectFieldRef(field_short_name="email"), ObjectFieldRef(field_short_name="age")],
            ),
        )

    current = registry.get("customer")
    assert current.display_name == "Customer"
    assert [ref.field_short_name for ref in current.fields] == ["email", "phone"]
    assert db_session.query(ObjectFieldReference).count() == 2
    assert _columns(db_session, "instances_customer") == {"id", "email", "phone", "created_at", "updated_at"}
    assert _schema_version(db_session) == 1


def test_failed_deprovision_keeps_definition_and_storage(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())

    with pytest.raises(InternalError):
        ObjectRegistry(db_session, provisioner=FailingProvisioner()).delete("customer")

    assert registry.get("customer").short_name == "customer"
    assert db_session.query(ObjectFieldReference).count() == 2
    assert _has_table(db_session, "instances_customer")


def test_update_bumps_schema_version(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer())
    assert _schema_version(db_session) == 1

    registry.update("customer", ObjectDefinitionUpdate(display_name="Client"))

    assert _schema_version(db_session) == 2


def test_multi_select_cannot_be_the_default_sort_field(db_session, registered_fields):
    registered_fields.register(
        FieldDefinitionCreate(
            short_name="tags",
            display_name="Tags",
            datatype="multi_select",
            datatype_properties={"options": ["vip", "new"]},
        )
    )

    with pytest.raises(RecordValidationError) as excinfo:
        ObjectRegistry(db_session).register(
            _customer(
                fields=[ObjectFieldRef(field_short_name="email"), ObjectFieldRef(field_short_name="tags")],
                display_properties=DisplayProperties(default_sort_field="tags"),
            )
        )

    assert [detail.field for detail in excinfo.value.details] == ["displayProperties.defaultSortField"]
    assert excinfo.value.details[0].message == "Multi-select fields cannot be sorted"


def _contact_group(**overrides):
    payload = {"name": "Contact", "description": "How to reach them", "fields": ["email", "phone"], "order": 1}
    payload.update(overrides)
    return FieldGroup(**payload)


def test_field_groups_and_wizard_config_are_stored(db_session, registered_fields):
    registry = ObjectRegistry(db_session)

    created = registry.register(
        _customer(field_groups=[_contact_group()], wizard_config={"steps": 2, "showProgress": True})
    )

    assert created.field_groups == [_contact_group()]
    assert created.wizard_config == {"steps": 2, "showProgress": True}
    stored = db_session.query(ObjectDefinition).filter_by(short_name="customer").one()
    assert stored.field_groups == [
        {"name": "Contact", "description": "How to reach them", "fields": ["email", "phone"], "order": 1}
    ]

    updated = registry.update("customer", ObjectDefinitionUpdate(display_name="Client"))
    assert updated.field_groups == [_contact_group()]
    assert updated.wizard_config == {"steps": 2, "showProgress": True}


def test_field_groups_must_be_complete_and_name_object_fields(db_session, registered_fields):
    with pytest.raises(RecordValidationError) as excinfo:
        ObjectRegistry(db_session).register(
            _customer(field_groups=[_contact_group(description=" ", fields=["email", "age"])])
        )

    assert [detail.field for detail in excinfo.value.details] == [
        "fieldGroups[0].description",
        "fieldGroups[0].fields",
    ]
    assert excinfo.value.details[1].value == "age"
    assert db_session.query(ObjectDefinition).count() == 0


def test_update_checks_field_groups_against_the_new_fields(db_session, registered_fields):
    registry = ObjectRegistry(db_session)
    registry.register(_customer(field_groups=[_contact_group()]))

    with pytest.raises(RecordValidationError) as excinfo:
        registry.update(
            "customer",
            ObjectDefinitionUpdate(
                fields=[ObjectFieldRef(field_short_name="email")],
                display_properties=DisplayProperties(searchable_fields=["email"]),
            ),
        )
    assert [detail.field for detail in excinfo.value.details] == ["fieldGroups[0].fields"]

    updated = registry.update(
        "customer",
        ObjectDefinitionUpdate(
            fields=[ObjectFieldRef(field_short_name="email")],
            display_properties=DisplayProperties(searchable_fields=["email"]),
            field_groups=[_contact_group(fields=["email"])],
        ),
    )
    assert updated.field_groups[0].fields == ["email"]
    assert "phone" not in _columns(db_session, "instances_customer")
