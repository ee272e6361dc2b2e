from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from metaobjects.constants.datatypes import FieldDatatype, ValidationRuleType


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TimestampSchema(CamelModel):
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class ValidationRule(BaseModel):
    type: ValidationRuleType
    message: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)


class FieldDefinitionBase(CamelModel):
    display_name: str = Field(..., max_length=200, alias="displayName")
    description: Optional[str] = None
    datatype: FieldDatatype
    datatype_properties: dict[str, Any] = Field(default_factory=dict, alias="datatypeProperties")
    mandatory: bool = False
    validation_rules: list[ValidationRule] = Field(default_factory=list, alias="validationRules")


class FieldDefinitionCreate(FieldDefinitionBase):
    short_name: str = Field(..., max_length=200, alias="shortName")


class FieldDefinitionUpdate(CamelModel):
    display_name: Optional[str] = Field(None, max_length=200, alias="displayName")
    description: Optional[str] = None
    datatype: Optional[FieldDatatype] = None
    datatype_properties: Optional[dict[str, Any]] = Field(None, alias="datatypeProperties")
    mandatory: Optional[bool] = None
    validation_rules: Optional[list[ValidationRule]] = Field(None, alias="validationRules")


class FieldDefinitionRead(FieldDefinitionBase, TimestampSchema):
    id: UUID
    short_name: str = Field(alias="shortName")


class ObjectFieldRef(CamelModel):
    field_short_name: str = Field(..., alias="fieldShortName")
    mandatory: Optional[bool] = None
    order: int = 0


class DisplayProperties(CamelModel):
    default_sort_field: Optional[str] = Field(None, alias="defaultSortField")
    default_sort_order: Optional[SortOrder] = Field(None, alias="defaultSortOrder")
    searchable_fields: list[str] = Field(default_factory=list, alias="searchableFields")
    table_columns: list[str] = Field(default_factory=list, alias="tableColumns")

    def referenced_fields(self) -> list[str]:
        names = list(self.searchable_fields) + list(self.table_columns)
        if self.default_sort_field:
            names.insert(0, self.default_sort_field)
        return names


class FieldGroup(CamelModel):
    """A named set of object fields shown together, e.g. one wizard step."""
    name: str
    description: str
    fields: list[str]
    order: Union[int, float]


class ObjectDefinitionBase(CamelModel):
    display_name: str = Field(..., max_length=200, alias="displayName")
    description: Optional[str] = None
    fields: list[ObjectFieldRef] = Field(default_factory=list)
    display_properties: DisplayProperties = Field(
        default_factory=DisplayProperties, alias="displayProperties"
    )
    field_groups: Optional[list[FieldGroup]] = Field(None, alias="fieldGroups")
    wizard_config: Optional[dict[str, Any]] = Field(None, alias="wizardConfig")


class ObjectDefinitionCreate(ObjectDefinitionBase):
    short_name: str = Field(..., max_length=200, alias="shortName")


class ObjectDefinitionUpdate(CamelModel):
    display_name: Optional[str] = Field(None, max_length=200, alias="displayName")
    description: Optional[str] = None
    fields: Optional[list[ObjectFieldRef]] = None
    display_properties: Optional[DisplayProperties] = Field(None, alias="displayProperties")
    field_groups: Optional[list[FieldGroup]] = Field(None, alias="fieldGroups")
    wizard_config: Optional[dict[str, Any]] = Field(None, alias="wizardConfig")


class ObjectDefinitionRead(ObjectDefinitionBase, TimestampSchema):
    id: UUID
    short_name: str = Field(alias="shortName")


class InstanceListParams(CamelModel):
    page: int = 1
    page_size: Optional[int] = Field(None, alias="pageSize")
    sort_by: Optional[str] = Field(None, alias="sortBy")
    sort_order: Optional[str] = Field(None, alias="sortOrder")
    search: Optional[str] = None
    filters: dict[str, Any] = Field(default_factory=dict)


class InstancePage(CamelModel):
    items: list[dict[str, Any]]
    page: int
    page_size: int = Field(alias="pageSize")
    total_items: int = Field(alias="totalItems")
    total_pages: int = Field(alias="totalPages")


class FieldErrorDetail(BaseModel):
    """Details of a single field-level failure."""
    field: str
    message: str
    value: Any = None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: list[FieldErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: ErrorBody
