import pytest
from sqlalchemy import inspect

from metaobjects.models import FieldDefinition, ObjectDefinition, ObjectFieldReference
from metaobjects.services.schema_provisioner import (
    SchemaProvisioner,
    SchemaProvisionerError,
    _column_type_for,
)


def _definition(*fields, searchable=()):
    definition = ObjectDefinition(
        short_name="customer",
        display_name="Customer",
        display_properties={"searchableFields": list(searchable)},
    )
    definition.field_references = [
        ObjectFieldReference(field=field, display_order=position, position=position)
        for position, field in enumerate(fields)
    ]
    return definition


def _columns(engine, table_name):
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def _indexes(engine, table_name):
    return {index["name"] for index in inspect(engine).get_indexes(table_name)}


@pytest.fixture()
def fields():
    return {
        "email": FieldDefinition(short_name="email", display_name="Email", datatype="email"),
        "phone": FieldDefinition(short_name="phone", display_name="Phone", datatype="text"),
        "tags": FieldDefinition(short_name="tags", display_name="Tags", datatype="multi_select"),
    }


def test_provision_creates_table_columns_and_search_indexes(engine, fields):
    provisioner = SchemaProvisioner(table_prefix="instances_")
    definition = _definition(fields["email"], fields["tags"], searchable=["email"])

    with engine.begin() as connection:
        change = provisioner.provision(connection, definition)

    assert change.created is True
    assert change.added_columns == ["email", "tags"]
    assert _columns(engine, "instances_customer") == {"id", "email", "tags", "created_at", "updated_at"}
    assert _indexes(engine, "instances_customer") == {provisioner.index_name("customer", "email")}


def test_reconcile_converges_and_is_idempotent(engine, fields):
    provisioner = SchemaProvisioner(table_prefix="instances_")
    definition = _definition(fields["email"], searchable=["email"])
    with engine.begin() as connection:
        provisioner.provision(connection, definition)

    definition.field_references = [ObjectFieldReference(field=fields["phone"], display_order=0, position=0)]
    definition.display_properties = {"searchableFields": ["phone"]}

    with engine.begin() as connection:
        change = provisioner.reconcile(connection, definition)

    assert change.added_columns == ["phone"]
    assert change.dropped_columns == ["email"]
    assert change.dropped_indexes == [provisioner.index_name("customer", "email")]
    assert change.added_indexes == [provisioner.index_name("customer", "phone")]
    assert _columns(engine, "instances_customer") == {"id", "phone", "created_at", "updated_at"}

    with engine.begin() as connection:
        assert provisioner.reconcile(connection, definition).is_empty


def test_reconcile_provisions_a_missing_table(engine, fields):
    provisioner = SchemaProvisioner(table_prefix="instances_")
    definition = _definition(fields["email"])

    with engine.begin() as connection:
        change = provisioner.reconcile(connection, definition)

    assert change.created is True
    assert inspect(engine).has_table("instances_customer")


def test_deprovision_drops_the_table(engine, fields):
    provisioner = SchemaProvisioner(table_prefix="instances_")
    definition = _definition(fields["email"])
    with engine.begin() as connection:
        provisioner.provision(connection, definition)

    with engine.begin() as connection:
        change = provisioner.deprovision(connection, definition)

    assert change.dropped is True
    assert not inspect(engine).has_table("instances_customer")


def test_schema_changes_roll_back_with_the_transaction(engine, fields):
    provisioner = SchemaProvisioner(table_prefix="instances_")
    definition = _definition(fields["email"])

    with pytest.raises(RuntimeError):
        with engine.begin() as connection:
            provisioner.provision(connection, definition)
            raise RuntimeError("abort")

    assert not inspect(engine).has_table("instances_customer")


def test_provision_failure_is_wrapped(engine, fields):
    provisioner = SchemaProvisioner(table_prefix="instances_")
    definition = _definition(fields["email"])
    with engine.begin() as connection:
        provisioner.provision(connection, definition)

    with pytest.raises(SchemaProvisionerError):
        with engine.begin() as connection:
            provisioner.provision(connection, definition)


def test_unknown_datatype_is_rejected():
    with pytest.raises(SchemaProvisionerError):
        _column_type_for("geometry")


def test_index_names_are_stable_and_prefixed():
    provisioner = SchemaProvisioner(table_prefix="instances_")
    name = provisioner.index_name("customer", "email")
    assert name == provisioner.index_name("customer", "email")
    assert name.startswith("ixs_customer_")
    assert name != provisioner.index_name("customer", "phone")
