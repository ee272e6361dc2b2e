from metaobjects.constants.datatypes import FieldDatatype, ValidationRuleType
from metaobjects.schemas.entities import (
    DisplayProperties,
    ErrorBody,
    ErrorResponse,
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldErrorDetail,
    FieldGroup,
    InstanceListParams,
    InstancePage,
    ObjectDefinitionCreate,
    ObjectDefinitionRead,
    ObjectDefinitionUpdate,
    ObjectFieldRef,
    SortOrder,
    ValidationRule,
)

__all__ = [
    "DisplayProperties",
    "ErrorBody",
    "ErrorResponse",
    "FieldDatatype",
    "FieldDefinitionCreate",
    "FieldDefinitionRead",
    "FieldDefinitionUpdate",
    "FieldErrorDetail",
    "FieldGroup",
    "InstanceListParams",
    "InstancePage",
    "ObjectDefinitionCreate",
    "ObjectDefinitionRead",
    "ObjectDefinitionUpdate",
    "ObjectFieldRef",
    "SortOrder",
    "ValidationRule",
    "ValidationRuleType",
]
