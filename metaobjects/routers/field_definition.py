from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from metaobjects.database import get_db
from metaobjects.schemas import FieldDefinitionCreate, FieldDefinitionRead, FieldDefinitionUpdate
from metaobjects.services import FieldRegistry

router = APIRouter(prefix="/metadata/fields", tags=["Field Definitions"])


def get_field_registry(db: Session = Depends(get_db)) -> FieldRegistry:
    return FieldRegistry(db)


@router.post("", response_model=FieldDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_field_definition(
    payload: FieldDefinitionCreate, registry: FieldRegistry = Depends(get_field_registry)
) -> FieldDefinitionRead:
    return registry.register(payload)


@router.get("", response_model=list[FieldDefinitionRead])
def list_field_definitions(
    registry: FieldRegistry = Depends(get_field_registry),
) -> list[FieldDefinitionRead]:
    return registry.list_fields()


@router.get("/{short_name}", response_model=FieldDefinitionRead)
def get_field_definition(
    short_name: str, registry: FieldRegistry = Depends(get_field_registry)
) -> FieldDefinitionRead:
    return registry.get(short_name)


@router.put("/{short_name}", response_model=FieldDefinitionRead)
def update_field_definition(
    short_name: str,
    payload: FieldDefinitionUpdate,
    registry: FieldRegistry = Depends(get_field_registry),
) -> FieldDefinitionRead:
    return registry.update(short_name, payload)


@router.delete("/{short_name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_field_definition(
    short_name: str, registry: FieldRegistry = Depends(get_field_registry)
) -> None:
    registry.delete(short_name)
