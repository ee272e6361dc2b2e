from metaobjects.services.errors import (
    ConstraintError,
    DuplicateError,
    ErrorKind,
    InternalError,
    MetadataError,
    NotFoundError,
    RecordValidationError,
    SchemaLockTimeoutError,
)
from metaobjects.services.field_registry import FieldRegistry
from metaobjects.services.instance_engine import InstanceEngine
from metaobjects.services.object_registry import ObjectRegistry
from metaobjects.services.schema_cache import SchemaCache, get_schema_cache
from metaobjects.services.schema_locks import SchemaLockRegistry, get_schema_locks
from metaobjects.services.schema_provisioner import SchemaChange, SchemaProvisioner
from metaobjects.services.validation_engine import (
    ValidationEngine,
    register_custom_validator,
    validation_engine,
)

__all__ = [
    "ConstraintError",
    "DuplicateError",
    "ErrorKind",
    "FieldRegistry",
    "InstanceEngine",
    "InternalError",
    "MetadataError",
    "NotFoundError",
    "ObjectRegistry",
    "RecordValidationError",
    "SchemaCache",
    "SchemaChange",
    "SchemaLockRegistry",
    "SchemaLockTimeoutError",
    "SchemaProvisioner",
    "ValidationEngine",
    "get_schema_cache",
    "get_schema_locks",
    "register_custom_validator",
    "validation_engine",
]
