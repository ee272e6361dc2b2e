import re

SYSTEM_COLUMN_DEFINITIONS = (
    {
        "name": "id",
        "description": "Generated identifier of the instance.",
        "sortable": True,
    },
    {
        "name": "created_at",
        "description": "UTC timestamp when the instance was created.",
        "sortable": True,
    },
    {
        "name": "updated_at",
        "description": "UTC timestamp when the instance was last modified.",
        "sortable": True,
    },
)

SYSTEM_COLUMN_NAME_SET = frozenset(spec["name"] for spec in SYSTEM_COLUMN_DEFINITIONS)
SORTABLE_SYSTEM_COLUMNS = frozenset(
    spec["name"] for spec in SYSTEM_COLUMN_DEFINITIONS if spec["sortable"]
)

# Short names double as table and column names, so they must be safe SQL identifiers
# on every supported backend once the instance table prefix is applied.
SHORT_NAME_MAX_LENGTH = 40
SHORT_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


def is_valid_short_name(value: str) -> bool:
    return len(value) <= SHORT_NAME_MAX_LENGTH and bool(SHORT_NAME_PATTERN.match(value))
