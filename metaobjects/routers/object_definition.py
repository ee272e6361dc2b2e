from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from metaobjects.database import get_db
from metaobjects.schemas import ObjectDefinitionCreate, ObjectDefinitionRead, ObjectDefinitionUpdate
from metaobjects.services import ObjectRegistry

router = APIRouter(prefix="/metadata/objects", tags=["Object Definitions"])


def get_object_registry(db: Session = Depends(get_db)) -> ObjectRegistry:
    return ObjectRegistry(db)


@router.post("", response_model=ObjectDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_object_definition(
    payload: ObjectDefinitionCreate, registry: ObjectRegistry = Depends(get_object_registry)
) -> ObjectDefinitionRead:
    return registry.register(payload)


@router.get("", response_model=list[ObjectDefinitionRead])
def list_object_definitions(
    registry: ObjectRegistry = Depends(get_object_registry),
) -> list[ObjectDefinitionRead]:
    return registry.list_objects()


@router.get("/{short_name}", response_model=ObjectDefinitionRead)
def get_object_definition(
    short_name: str, registry: ObjectRegistry = Depends(get_object_registry)
) -> ObjectDefinitionRead:
    return registry.get(short_name)


@router.put("/{short_name}", response_model=ObjectDefinitionRead)
def update_object_definition(
    short_name: str,
    payload: ObjectDefinitionUpdate,
    registry: ObjectRegistry = Depends(get_object_registry),
) -> ObjectDefinitionRead:
    return registry.update(short_name, payload)


@router.delete("/{short_name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_object_definition(
    short_name: str, registry: ObjectRegistry = Depends(get_object_registry)
) -> None:
    registry.delete(short_name)
