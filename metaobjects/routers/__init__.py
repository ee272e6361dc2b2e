from fastapi import APIRouter

from metaobjects.routers import field_definition, instance, object_definition

api_router = APIRouter()
api_router.include_router(field_definition.router)
api_router.include_router(object_definition.router)
api_router.include_router(instance.router)

__all__ = ["api_router"]
