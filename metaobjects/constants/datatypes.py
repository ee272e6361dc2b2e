from enum import Enum


class FieldDatatype(str, Enum):
    TEXT = "text"
    TEXT_AREA = "text_area"
    EMAIL = "email"
    URL = "url"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"


class ValidationRuleType(str, Enum):
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    PATTERN = "pattern"
    MIN_VALUE = "min_value"
    MAX_VALUE = "max_value"
    EMAIL = "email"
    URL = "url"
    CUSTOM = "custom"


SELECT_DATATYPES = frozenset({FieldDatatype.SINGLE_SELECT, FieldDatatype.MULTI_SELECT})

TEXT_MAX_LENGTH = 255
EMAIL_MAX_LENGTH = 320
URL_MAX_LENGTH = 2048

# Integer columns are BIGINT.
INTEGER_MIN_VALUE = -(2**63)
INTEGER_MAX_VALUE = 2**63 - 1

# Rules that need a numeric bound in params.value.
BOUNDED_RULE_TYPES = frozenset(
    {
        ValidationRuleType.MIN_LENGTH,
        ValidationRuleType.MAX_LENGTH,
        ValidationRuleType.MIN_VALUE,
        ValidationRuleType.MAX_VALUE,
    }
)
