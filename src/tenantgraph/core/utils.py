"""
Utility functions for tenantgraph.

Includes:
- Case conversion (camelCase <-> snake_case)
- Value coercion to a field's declared type
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

from .defs import FieldDef
from .errors import ValidationError


# =============================================================================
# Case conversion utilities
# =============================================================================

_CAMEL_TO_SNAKE_PATTERN = re.compile(r'(?<!^)(?=[A-Z])')
_SNAKE_TO_CAMEL_PATTERN = re.compile(r'_([a-z])')


def to_snake_case(name: str) -> str:
    """
    Convert camelCase to snake_case.

    Examples:
        firstName -> first_name
        hasEvery -> has_every
        ClassStudent -> class_student
        HTTPResponse -> http_response
    """
    result = re.sub(r'([A-Z]+)([A-Z][a-z])', r'\1_\2', name)
    result = _CAMEL_TO_SNAKE_PATTERN.sub('_', result)
    return result.lower()


def to_camel_case(name: str) -> str:
    """
    Convert snake_case to camelCase.

    Examples:
        order_by -> orderBy
        skip_duplicates -> skipDuplicates
        _count -> _count
    """
    if name.startswith("_"):
        return name

    def replace_underscore(match):
        return match.group(1).upper()

    return _SNAKE_TO_CAMEL_PATTERN.sub(replace_underscore, name)


# =============================================================================
# Value coercion
# =============================================================================

def coerce_value(field_def: FieldDef, value: Any, path: str) -> Any:
    """
    Coerce a caller-supplied value to the field's declared type.

    Handles:
    - ISO strings -> date / datetime
    - numeric strings -> int / float
    - int / float -> str for string columns
    - enum membership
    - list fields, element by element

    Raises ValidationError when the value cannot represent the type.
    """
    if value is None:
        return None

    if field_def.is_list:
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"{path}: expected a list for '{field_def.name}'")
        return [_coerce_scalar(field_def, item, f"{path}[{i}]") for i, item in enumerate(value)]

    return _coerce_scalar(field_def, value, path)


def _coerce_scalar(field_def: FieldDef, value: Any, path: str) -> Any:
    kind = field_def.type

    if kind == "json":
        return value

    if value is None:
        raise ValidationError(f"{path}: null is not a valid element of '{field_def.name}'")

    if kind in ("string", "text"):
        if isinstance(value, bool):
            raise ValidationError(f"{path}: expected a string for '{field_def.name}'")
        if isinstance(value, (int, float)):
            return str(value)
        if not isinstance(value, str):
            raise ValidationError(f"{path}: expected a string for '{field_def.name}'")
        return value

    if kind == "enum":
        if value not in field_def.enum_values:
            raise ValidationError(
                f"{path}: invalid value {value!r} for '{field_def.name}' "
                f"(allowed: {', '.join(field_def.enum_values)})"
            )
        return value

    if kind == "bool":
        if not isinstance(value, bool):
            raise ValidationError(f"{path}: expected a boolean for '{field_def.name}'")
        return value

    if kind == "int":
        if isinstance(value, bool):
            raise ValidationError(f"{path}: expected an integer for '{field_def.name}'")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                pass
        raise ValidationError(f"{path}: expected an integer for '{field_def.name}'")

    if kind == "float":
        if isinstance(value, bool):
            raise ValidationError(f"{path}: expected a number for '{field_def.name}'")
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
        raise ValidationError(f"{path}: expected a number for '{field_def.name}'")

    if kind == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                if len(value) > 10:
                    return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
                return date.fromisoformat(value)
            except ValueError:
                pass
        raise ValidationError(f"{path}: expected an ISO date for '{field_def.name}'")

    if kind == "datetime":
        if isinstance(value, datetime):
            return _to_utc(value)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        if isinstance(value, str):
            try:
                return _to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
            except ValueError:
                pass
        raise ValidationError(f"{path}: expected an ISO datetime for '{field_def.name}'")

    return value


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
