import pytest

from metaobjects.models import FieldDefinition, ObjectDefinition
from metaobjects.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionUpdate,
    ObjectDefinitionCreate,
    ObjectFieldRef,
)
from metaobjects.services import (
    ConstraintError,
    DuplicateError,
    FieldRegistry,
    NotFoundError,
    ObjectRegistry,
    RecordValidationError,
    get_schema_cache,
)
from metaobjects.services.schema_cache import load_object_schema
from metaobjects.services.schema_provisioner import SchemaProvisioner


def _email_field(**overrides):
    payload = {
        "short_name": "email",
        "display_name": "Email",
        "datatype": "email",
        "mandatory": True,
    }
    payload.update(overrides)
    return FieldDefinitionCreate(**payload)


def test_register_and_get_round_trip(db_session):
    registry = FieldRegistry(db_session)

    created = registry.register(
        _email_field(validation_rules=[{"type": "max_length", "params": {"value": 120}}])
    )
    fetched = registry.get("email")

    assert fetched == created
    assert fetched.datatype.value == "email"
    assert fetched.mandatory is True
    assert fetched.validation_rules[0].params == {"value": 120}


def test_list_is_ordered_by_short_name(db_session):
    registry = FieldRegistry(db_session)
    for name in ("zip", "age", "name"):
        registry.register(FieldDefinitionCreate(short_name=name, display_name=name.title(), datatype="text"))

    assert [field.short_name for field in registry.list_fields()] == ["age", "name", "zip"]


def test_duplicate_short_name_is_rejected(db_session):
    registry = FieldRegistry(db_session)
    registry.register(_email_field())

    with pytest.raises(DuplicateError):
        registry.register(_email_field(display_name="Another email"))


@pytest.mark.parametrize("short_name", ["", "Email", "1st", "has-dash", "id", "created_at", "a" * 41])
def test_invalid_short_names_are_rejected(db_session, short_name):
    registry = FieldRegistry(db_session)

    with pytest.raises(RecordValidationError) as excinfo:
        registry.register(_email_field(short_name=short_name))

    assert excinfo.value.details[0].field == "shortName"
    assert db_session.query(FieldDefinition).count() == 0


def test_blank_display_name_is_rejected(db_session):
    with pytest.raises(RecordValidationError) as excinfo:
        FieldRegistry(db_session).register(_email_field(display_name="   "))

    assert [detail.field for detail in excinfo.value.details] == ["displayName"]


def test_select_fields_need_options(db_session):
    registry = FieldRegistry(db_session)

    with pytest.raises(RecordValidationError) as excinfo:
        registry.register(FieldDefinitionCreate(short_name="tier", display_name="Tier", datatype="single_select"))
    assert excinfo.value.details[0].field == "datatypeProperties"

    created = registry.register(
        FieldDefinitionCreate(
            short_name="tier",
            display_name="Tier",
            datatype="single_select",
            datatype_properties={"options": ["gold", {"value": "silver", "label": "Silver"}]},
        )
    )
    assert created.datatype_properties["options"][0] == "gold"


def test_malformed_rules_are_rejected(db_session):
    with pytest.raises(RecordValidationError) as excinfo:
        FieldRegistry(db_session).register(
            _email_field(validation_rules=[{"type": "pattern", "params": {"value": "(["}}])
        )

    assert excinfo.value.details[0].field == "validationRules[0]"


def test_update_is_partial(db_session):
    registry = FieldRegistry(db_session)
    registry.register(_email_field(description="Primary contact"))

    updated = registry.update("email", FieldDefinitionUpdate(display_name="E-mail"))

    assert updated.display_name == "E-mail"
    assert updated.description == "Primary contact"
    assert updated.mandatory is True


def test_update_unknown_field_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        FieldRegistry(db_session).update("ghost", FieldDefinitionUpdate(display_name="Ghost"))


def test_datatype_change_is_rejected_while_referenced(db_session):
    registry = FieldRegistry(db_session)
    registry.register(_email_field())
    registry.register(FieldDefinitionCreate(short_name="notes", display_name="Notes", datatype="text"))
    ObjectRegistry(db_session).register(
        ObjectDefinitionCreate(
            short_name="customer",
            display_name="Customer",
            fields=[ObjectFieldRef(field_short_name="email")],
        )
    )

    with pytest.raises(ConstraintError):
        registry.update("email", FieldDefinitionUpdate(datatype="text"))

    assert registry.update("notes", FieldDefinitionUpdate(datatype="text_area")).datatype.value == "text_area"
    assert registry.get("email").datatype.value == "email"


def test_update_invalidates_cached_schemas_of_referencing_objects(db_session):
    registry = FieldRegistry(db_session)
    registry.register(_email_field(mandatory=False))
    ObjectRegistry(db_session).register(
        ObjectDefinitionCreate(
            short_name="customer",
            display_name="Customer",
            fields=[ObjectFieldRef(field_short_name="email")],
        )
    )
    cache = get_schema_cache()
    provisioner = SchemaProvisioner()
    schema = cache.get_or_load("customer", lambda: load_object_schema(db_session, "customer", provisioner))
    assert schema.field("email").mandatory is False
    assert "customer" in cache

    registry.update("email", FieldDefinitionUpdate(mandatory=True))

    assert "customer" not in cache
    reloaded = cache.get_or_load("customer", lambda: load_object_schema(db_session, "customer", provisioner))
    assert reloaded.field("email").mandatory is True


def test_update_bumps_schema_version_of_referencing_objects(db_session):
    registry = FieldRegistry(db_session)
    registry.register(_email_field(mandatory=False))
    registry.register(_email_field(short_name="notes", display_name="Notes", datatype="text_area"))
    ObjectRegistry(db_session).register(
        ObjectDefinitionCreate(
            short_name="customer",
            display_name="Customer",
            fields=[ObjectFieldRef(field_short_name="email")],
        )
    )

    def version():
        return db_session.query(ObjectDefinition.schema_version).filter_by(short_name="customer").scalar()

    assert version() == 1
    registry.update("email", FieldDefinitionUpdate(mandatory=True))
    assert version() == 2
    registry.update("notes", FieldDefinitionUpdate(display_name="Long notes"))
    assert version() == 2


def test_delete_is_blocked_while_referenced(db_session):
    registry = FieldRegistry(db_session)
    registry.register(_email_field())
    objects = ObjectRegistry(db_session)
    objects.register(
        ObjectDefinitionCreate(
            short_name="customer",
            display_name="Customer",
            fields=[ObjectFieldRef(field_short_name="email")],
        )
    )

    assert registry.find_referencing_objects("email") == ["customer"]
    with pytest.raises(ConstraintError):
        registry.delete("email")

    objects.delete("customer")
    registry.delete("email")

    with pytest.raises(NotFoundError):
        registry.get("email")


def test_delete_unknown_field_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        FieldRegistry(db_session).delete("ghost")
