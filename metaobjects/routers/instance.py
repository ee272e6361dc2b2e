from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from metaobjects.database import get_db
from metaobjects.schemas import InstanceListParams, InstancePage
from metaobjects.services import InstanceEngine, NotFoundError

router = APIRouter(prefix="/objects/{object_type}/instances", tags=["Instances"])

# Query parameters with a fixed meaning; everything else is an equality filter.
LIST_PARAMETERS = frozenset({"page", "pageSize", "sortBy", "sortOrder", "search"})


def get_instance_engine(db: Session = Depends(get_db)) -> InstanceEngine:
    return InstanceEngine(db)


@router.get("", response_model=InstancePage)
def list_instances(
    object_type: str,
    request: Request,
    page: int = Query(1),
    page_size: Optional[int] = Query(None, alias="pageSize"),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    search: Optional[str] = Query(None),
    engine: InstanceEngine = Depends(get_instance_engine),
) -> InstancePage:
    filters = {
        key: value for key, value in request.query_params.items() if key not in LIST_PARAMETERS
    }
    params = InstanceListParams(
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
        search=search,
        filters=filters,
    )
    return engine.list(object_type, params)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_instance(
    object_type: str,
    payload: dict[str, Any] = Body(...),
    engine: InstanceEngine = Depends(get_instance_engine),
) -> dict[str, Any]:
    return engine.create(object_type, payload)


@router.get("/{instance_id}")
def get_instance(
    object_type: str, instance_id: str, engine: InstanceEngine = Depends(get_instance_engine)
) -> dict[str, Any]:
    return engine.get(object_type, instance_id)


@router.put("/{instance_id}")
def update_instance(
    object_type: str,
    instance_id: str,
    payload: dict[str, Any] = Body(...),
    engine: InstanceEngine = Depends(get_instance_engine),
) -> dict[str, Any]:
    return engine.update(object_type, instance_id, payload)


@router.delete("/{instance_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_instance(
    object_type: str, instance_id: str, engine: InstanceEngine = Depends(get_instance_engine)
) -> None:
    if not engine.delete(object_type, instance_id):
        raise NotFoundError(f"Instance '{instance_id}' of '{object_type}' not found")
