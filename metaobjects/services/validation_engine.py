"""
Validation engine for instance payloads.

Checks a payload against an object schema in three passes per field:
- required: mandatory fields must be present and non-empty (create only,
  or when an update sends the field)
- datatype: the value must coerce to the field's datatype
- rules: the field's validation rules run in declared order; the first
  failing rule stops that field only

Unknown payload keys are ignored. Errors come back in the object's field order.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import AnyUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from metaobjects.constants.datatypes import (
    BOUNDED_RULE_TYPES,
    EMAIL_MAX_LENGTH,
    INTEGER_MAX_VALUE,
    INTEGER_MIN_VALUE,
    SELECT_DATATYPES,
    TEXT_MAX_LENGTH,
    URL_MAX_LENGTH,
    FieldDatatype,
    ValidationRuleType,
)
from metaobjects.schemas import FieldErrorDetail, ValidationRule
from metaobjects.services.errors import RecordValidationError
from metaobjects.services.schema_cache import ObjectSchema, SchemaField

logger = logging.getLogger(__name__)

CustomValidator = Callable[[Any], bool]

_URL_ADAPTER = TypeAdapter(AnyUrl)
_TRUE_LITERALS = {"true", "1", "yes", "y", "on"}
_FALSE_LITERALS = {"false", "0", "no", "n", "off"}


class FieldValueError(ValueError):
    """Raised by a datatype coercer when a value does not fit the field."""


@dataclass
class ValidationResult:
    values: dict[str, Any] = field(default_factory=dict)
    errors: list[FieldErrorDetail] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def select_option_values(datatype_properties: Mapping[str, Any] | None) -> list[str]:
    options = (datatype_properties or {}).get("options") or []
    values: list[str] = []
    for option in options:
        if isinstance(option, Mapping):
            option_value = option.get("value")
            if option_value is not None:
                values.append(str(option_value))
        elif option is not None:
            values.append(str(option))
    return values


def _ensure_string(value: Any, message: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float, Decimal)):
        raise FieldValueError(message)
    return str(value)


def _parse_email(value: Any) -> str:
    if not isinstance(value, str):
        raise FieldValueError("Must be a valid email address")
    candidate = value.strip()
    if len(candidate) > EMAIL_MAX_LENGTH:
        raise FieldValueError(f"Must be at most {EMAIL_MAX_LENGTH} characters")
    try:
        return validate_email(candidate, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise FieldValueError("Must be a valid email address") from exc


def _parse_url(value: Any) -> str:
    if not isinstance(value, str):
        raise FieldValueError("Must be a valid URL")
    candidate = value.strip()
    if len(candidate) > URL_MAX_LENGTH:
        raise FieldValueError(f"Must be at most {URL_MAX_LENGTH} characters")
    try:
        parsed = _URL_ADAPTER.validate_python(candidate)
    except PydanticValidationError as exc:
        raise FieldValueError("Must be a valid URL") from exc
    if not parsed.host:
        raise FieldValueError("Must be a valid URL")
    return candidate


def _coerce_text(value: Any, _field: SchemaField) -> str:
    text = _ensure_string(value, "Must be text")
    if len(text) > TEXT_MAX_LENGTH:
        raise FieldValueError(f"Must be at most {TEXT_MAX_LENGTH} characters")
    return text


def _coerce_text_area(value: Any, _field: SchemaField) -> str:
    return _ensure_string(value, "Must be text")


def _coerce_email(value: Any, _field: SchemaField) -> str:
    return _parse_email(value)


def _coerce_url(value: Any, _field: SchemaField) -> str:
    return _parse_url(value)


def _parse_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise FieldValueError("Must be a whole number")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        if math.isfinite(value) and float(value).is_integer():
            return int(value)
        raise FieldValueError("Must be a whole number")
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise FieldValueError("Must be a whole number") from exc
    raise FieldValueError("Must be a whole number")


def _coerce_integer(value: Any, _field: SchemaField) -> int:
    number = _parse_integer(value)
    if not INTEGER_MIN_VALUE <= number <= INTEGER_MAX_VALUE:
        raise FieldValueError("Must be a whole number")
    return number


def _coerce_number(value: Any, _field: SchemaField) -> float:
    if isinstance(value, bool):
        raise FieldValueError("Must be a valid number")
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise FieldValueError("Must be a valid number") from exc
    else:
        raise FieldValueError("Must be a valid number")
    if not math.isfinite(number):
        raise FieldValueError("Must be a valid number")
    return number


def _coerce_boolean(value: Any, _field: SchemaField) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_LITERALS:
            return True
        if lowered in _FALSE_LITERALS:
            return False
    raise FieldValueError("Must be true or false")


def _coerce_date(value: Any, _field: SchemaField) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise FieldValueError("Must be a valid date (YYYY-MM-DD)") from exc
    raise FieldValueError("Must be a valid date (YYYY-MM-DD)")


def _coerce_time(value: Any, _field: SchemaField) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError as exc:
            raise FieldValueError("Must be a valid time (HH:MM[:SS])") from exc
    raise FieldValueError("Must be a valid time (HH:MM[:SS])")


def _coerce_datetime(value: Any, _field: SchemaField) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith(("Z", "z")):
            candidate = f"{candidate[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise FieldValueError("Must be a valid ISO 8601 date and time") from exc
    else:
        raise FieldValueError("Must be a valid ISO 8601 date and time")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce_single_select(value: Any, schema_field: SchemaField) -> str:
    choice = _ensure_string(value, "Must be one of the available options")
    if choice not in select_option_values(schema_field.datatype_properties):
        raise FieldValueError("Must be one of the available options")
    return choice


def _coerce_multi_select(value: Any, schema_field: SchemaField) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise FieldValueError("Must be a list of options")
    allowed = set(select_option_values(schema_field.datatype_properties))
    choices: list[str] = []
    for item in value:
        choice = _ensure_string(item, "Must be a list of options")
        if choice not in allowed:
            raise FieldValueError(f"'{choice}' is not one of the available options")
        if choice not in choices:
            choices.append(choice)
    return choices


_COERCERS: dict[str, Callable[[Any, SchemaField], Any]] = {
    FieldDatatype.TEXT.value: _coerce_text,
    FieldDatatype.TEXT_AREA.value: _coerce_text_area,
    FieldDatatype.EMAIL.value: _coerce_email,
    FieldDatatype.URL.value: _coerce_url,
    FieldDatatype.INTEGER.value: _coerce_integer,
    FieldDatatype.NUMBER.value: _coerce_number,
    FieldDatatype.BOOLEAN.value: _coerce_boolean,
    FieldDatatype.DATE.value: _coerce_date,
    FieldDatatype.TIME.value: _coerce_time,
    FieldDatatype.DATETIME.value: _coerce_datetime,
    FieldDatatype.SINGLE_SELECT.value: _coerce_single_select,
    FieldDatatype.MULTI_SELECT.value: _coerce_multi_select,
}


def describe_rule_problem(rule: ValidationRule, datatype: FieldDatatype | str) -> Optional[str]:
    """Return why a rule definition is unusable, or None when it is fine."""
    params = rule.params or {}
    if rule.type in BOUNDED_RULE_TYPES:
        bound = params.get("value")
        if isinstance(bound, bool) or not isinstance(bound, (int, float)):
            return f"Rule '{rule.type.value}' requires a numeric params.value"
        if rule.type in (ValidationRuleType.MIN_LENGTH, ValidationRuleType.MAX_LENGTH):
            if not float(bound).is_integer() or bound < 0:
                return f"Rule '{rule.type.value}' requires a non-negative whole number"
    elif rule.type == ValidationRuleType.PATTERN:
        pattern = params.get("value")
        if not isinstance(pattern, str) or not pattern:
            return "Rule 'pattern' requires a regular expression in params.value"
        try:
            re.compile(pattern)
        except re.error as exc:
            return f"Invalid regex pattern: {exc}"
    elif rule.type == ValidationRuleType.CUSTOM:
        name = params.get("name")
        if not isinstance(name, str) or not name.strip():
            return "Rule 'custom' requires a validator name in params.name"
    return None


def datatype_properties_problem(
    datatype: FieldDatatype | str, datatype_properties: Mapping[str, Any] | None
) -> Optional[str]:
    tag = FieldDatatype(datatype)
    if tag in SELECT_DATATYPES:
        if not select_option_values(datatype_properties):
            return f"Datatype '{tag.value}' requires a non-empty datatypeProperties.options list"
    return None


class ValidationEngine:
    """Engine for evaluating object payloads against resolved field definitions."""

    def __init__(self, custom_validators: Optional[Mapping[str, CustomValidator]] = None) -> None:
        self._custom_validators: dict[str, CustomValidator] = dict(custom_validators or {})

    def register_custom_validator(self, name: str, validator: CustomValidator) -> None:
        self._custom_validators[name] = validator

    def unregister_custom_validator(self, name: str) -> None:
        self._custom_validators.pop(name, None)

    def coerce_value(self, schema_field: SchemaField, value: Any) -> Any:
        """Coerce one value to its field's datatype; raises FieldValueError."""
        coercer = _COERCERS.get(schema_field.datatype)
        if coercer is None:
            raise FieldValueError(f"Unsupported datatype '{schema_field.datatype}'")
        return coercer(value, schema_field)

    def validate(
        self,
        schema: ObjectSchema,
        payload: Mapping[str, Any],
        *,
        partial: bool = False,
    ) -> ValidationResult:
        """
        Validate a create (partial=False) or update (partial=True) payload.

        Returns the normalized values for every field that will be written;
        for a create that includes null for every optional field left out.
        """
        result = ValidationResult()

        for schema_field in schema.fields:
            name = schema_field.short_name
            present = name in payload
            if partial and not present:
                continue

            value = payload.get(name)
            if is_empty_value(value):
                if schema_field.mandatory:
                    result.errors.append(
                        FieldErrorDetail(
                            field=name,
                            message=f"{schema_field.display_name} is required",
                            value=value,
                        )
                    )
                else:
                    result.values[name] = None
                continue

            try:
                coerced = self.coerce_value(schema_field, value)
            except FieldValueError as exc:
                result.errors.append(FieldErrorDetail(field=name, message=str(exc), value=value))
                continue

            rule_error = self._first_rule_failure(schema_field, coerced)
            if rule_error is not None:
                result.errors.append(FieldErrorDetail(field=name, message=rule_error, value=value))
                continue

            result.values[name] = coerced

        return result

    def validate_or_raise(
        self,
        schema: ObjectSchema,
        payload: Mapping[str, Any],
        *,
        partial: bool = False,
    ) -> dict[str, Any]:
        result = self.validate(schema, payload, partial=partial)
        if not result.valid:
            raise RecordValidationError(
                f"Validation failed for {len(result.errors)} field(s) of '{schema.short_name}'",
                result.errors,
            )
        return result.values

    def _first_rule_failure(self, schema_field: SchemaField, value: Any) -> Optional[str]:
        for raw_rule in schema_field.validation_rules:
            rule = ValidationRule.model_validate(raw_rule)
            message = self._evaluate_rule(rule, value)
            if message is not None:
                return message
        return None

    def _evaluate_rule(self, rule: ValidationRule, value: Any) -> Optional[str]:
        """Dispatch to the rule type's check. Returns the failure message or None."""
        if rule.type == ValidationRuleType.MIN_LENGTH:
            return self._validate_length(rule, value, minimum=True)
        elif rule.type == ValidationRuleType.MAX_LENGTH:
            return self._validate_length(rule, value, minimum=False)
        elif rule.type == ValidationRuleType.PATTERN:
            return self._validate_pattern(rule, value)
        elif rule.type == ValidationRuleType.MIN_VALUE:
            return self._validate_bound(rule, value, minimum=True)
        elif rule.type == ValidationRuleType.MAX_VALUE:
            return self._validate_bound(rule, value, minimum=False)
        elif rule.type == ValidationRuleType.EMAIL:
            return self._validate_with(rule, value, _parse_email, "Must be a valid email")
        elif rule.type == ValidationRuleType.URL:
            return self._validate_with(rule, value, _parse_url, "Must be a valid URL")
        elif rule.type == ValidationRuleType.CUSTOM:
            return self._validate_custom(rule, value)
        return f"Unknown rule type: {rule.type}"

    def _validate_length(self, rule: ValidationRule, value: Any, *, minimum: bool) -> Optional[str]:
        if not isinstance(value, (str, list)):
            return None
        bound = int(rule.params.get("value", 0))
        if minimum and len(value) < bound:
            return rule.message or f"Minimum length is {bound}"
        if not minimum and len(value) > bound:
            return rule.message or f"Maximum length is {bound}"
        return None

    def _validate_pattern(self, rule: ValidationRule, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        pattern = rule.params.get("value")
        try:
            if not re.search(pattern, value):
                return rule.message or "Invalid format"
        except (re.error, TypeError) as exc:
            return f"Invalid regex pattern: {exc}"
        return None

    def _validate_bound(self, rule: ValidationRule, value: Any, *, minimum: bool) -> Optional[str]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        bound = rule.params.get("value")
        if minimum and value < bound:
            return rule.message or f"Minimum value is {bound}"
        if not minimum and value > bound:
            return rule.message or f"Maximum value is {bound}"
        return None

    def _validate_with(
        self,
        rule: ValidationRule,
        value: Any,
        parser: Callable[[Any], Any],
        default_message: str,
    ) -> Optional[str]:
        if not isinstance(value, str):
            return None
        try:
            parser(value)
        except FieldValueError:
            return rule.message or default_message
        return None

    def _validate_custom(self, rule: ValidationRule, value: Any) -> Optional[str]:
        name = rule.params.get("name")
        validator = self._custom_validators.get(name)
        if validator is None:
            logger.warning("Custom validator %s is not registered", name)
            return f"Custom validator '{name}' is not registered"
        try:
            passed = bool(validator(value))
        except (TypeError, ValueError) as exc:
            logger.debug("Custom validator %s raised %s", name, exc)
            passed = False
        return None if passed else rule.message or "Validation failed"


validation_engine = ValidationEngine()


def register_custom_validator(name: str, validator: CustomValidator) -> None:
    """Public helper to add a named predicate usable by 'custom' rules."""

    validation_engine.register_custom_validator(name, validator)


__all__ = [
    "FieldValueError",
    "ValidationEngine",
    "ValidationResult",
    "datatype_properties_problem",
    "describe_rule_problem",
    "is_empty_value",
    "register_custom_validator",
    "select_option_values",
    "validation_engine",
]
