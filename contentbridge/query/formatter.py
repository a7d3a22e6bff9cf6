#!/usr/bin/env python3
"""
Literal formatting for every compiler target.

Each function either returns a value the target can carry or raises
LiteralFormatError; compilers catch it and drop only the affected leaf.
"""

import math
import uuid
from datetime import date, datetime, time
from enum import Enum
from typing import Any, List, Tuple, Union

from .base import CompileContext

_MAX_VALUE_DEPTH = 32


class LiteralFormatError(ValueError):
    """Raised when a literal cannot be represented by a target."""
    pass


def _scalar(value: Any) -> Any:
    """Unwrap enums and stringify UUIDs and temporal values."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def to_json_value(value: Any, _depth: int = 0) -> Any:
    """
    Convert a literal into a JSON-compatible value.

    Tuples become lists, sets become sorted lists, datetimes ISO strings.

    Raises:
        LiteralFormatError: For values with no JSON form
    """
    if _depth > _MAX_VALUE_DEPTH:
        raise LiteralFormatError("value nesting is too deep")

    value = _scalar(value)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise LiteralFormatError(f"{value} is not a finite number")
        return value
    if isinstance(value, (list, tuple)):
        return [to_json_value(v, _depth + 1) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [to_json_value(v, _depth + 1) for v in value]
        return sorted(items, key=repr)
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise LiteralFormatError(f"object key {key!r} is not a string")
            result[key] = to_json_value(item, _depth + 1)
        return result
    raise LiteralFormatError(f"{type(value).__name__} is not serializable")


def placeholder(ctx: CompileContext, value: Any) -> str:
    """
    Register ``value`` as a named parameter and return its ``$name`` reference.
    """
    return "$" + ctx.add_param(to_json_value(value))


# -- flat parameter maps (Contentful) ----------------------------------------

def _param_scalar(value: Any) -> Union[str, int, float]:
    value = _scalar(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise LiteralFormatError(f"{value} is not a finite number")
        return value
    if isinstance(value, str):
        return value
    if value is None:
        raise LiteralFormatError("null cannot be sent as a parameter value")
    raise LiteralFormatError(f"{type(value).__name__} cannot be sent as a parameter value")


def to_param_value(value: Any) -> Union[str, int, float]:
    """
    Format a literal for a REST query parameter.

    Booleans become ``true``/``false``, sequences a comma separated list.
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        if isinstance(value, (set, frozenset)):
            items = sorted(items, key=repr)
        if not items:
            raise LiteralFormatError("an empty list cannot be sent as a parameter value")
        parts = []
        for item in items:
            if isinstance(item, (list, tuple, set, frozenset, dict)):
                raise LiteralFormatError("nested collections cannot be sent as a parameter value")
            part = str(_param_scalar(item))
            if "," in part:
                raise LiteralFormatError(f"list item {part!r} contains a comma")
            parts.append(part)
        return ",".join(parts)
    if isinstance(value, dict):
        raise LiteralFormatError("objects cannot be sent as a parameter value")
    return _param_scalar(value)


# -- payload filters (Qdrant) ------------------------------------------------

def to_match_value(value: Any) -> Union[str, int, bool]:
    """Format a literal for an exact keyword/integer/bool match."""
    value = _scalar(value)
    if isinstance(value, (bool, int, str)):
        return value
    raise LiteralFormatError(
        f"exact match requires a string, integer or boolean, got {type(value).__name__}"
    )


def to_match_values(value: Any) -> Union[List[str], List[int]]:
    """Format a literal or list for an any-of match (all strings or all integers)."""
    items = list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]
    if isinstance(value, (set, frozenset)):
        items = sorted(items, key=repr)
    items = [_scalar(v) for v in items]
    if not items:
        raise LiteralFormatError("an empty list cannot be matched")
    if all(isinstance(v, str) for v in items):
        return items
    if all(isinstance(v, int) and not isinstance(v, bool) for v in items):
        return items
    raise LiteralFormatError("any-of match requires only strings or only integers")


def to_range_value(value: Any) -> Tuple[str, Union[float, datetime]]:
    """
    Format a literal for a range comparison.

    Returns:
        Tuple of ("number", float) or ("datetime", datetime)
    """
    if isinstance(value, bool):
        raise LiteralFormatError("booleans cannot be range-compared")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise LiteralFormatError(f"{value} is not a finite number")
        return "number", float(value)
    if isinstance(value, datetime):
        return "datetime", value
    if isinstance(value, date):
        return "datetime", datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return "datetime", datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError as e:
            raise LiteralFormatError(f"{value!r} is neither a number nor an ISO timestamp") from e
    raise LiteralFormatError(f"{type(value).__name__} cannot be range-compared")


def to_point_id(value: Any) -> Union[int, str]:
    """Format a literal as a point ID (unsigned integer or UUID string)."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise LiteralFormatError(f"point ID {value} is negative")
        return value
    if isinstance(value, str):
        try:
            return str(uuid.UUID(value))
        except ValueError as e:
            raise LiteralFormatError(f"{value!r} is not a UUID point ID") from e
    raise LiteralFormatError(f"{type(value).__name__} cannot be a point ID")
