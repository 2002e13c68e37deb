"""Translate model-supplied filter maps into bound SQLAlchemy conditions."""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from datetime import date, datetime
from typing import Any

from sqlalchemy import Table
from sqlalchemy.sql.elements import ColumnElement

from query_gateway.config import QueryConfig
from query_gateway.errors import MalformedToolArguments, SchemaResolutionFailed

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Signed 64-bit range; larger integers overflow the database drivers.
INT_MIN = -(2**63)
INT_MAX = 2**63 - 1

_OPERATORS: dict[str, Callable[[Any, Any], ColumnElement[bool]]] = {
    "eq": lambda column, value: column == value,
    "neq": lambda column, value: column != value,
    "gt": lambda column, value: column > value,
    "gte": lambda column, value: column >= value,
    "lt": lambda column, value: column < value,
    "lte": lambda column, value: column <= value,
    "like": lambda column, value: column.like(f"%{value}%"),
    "ilike": lambda column, value: column.ilike(f"%{value}%"),
    "in": lambda column, value: column.in_(value),
    "between": lambda column, value: column.between(value[0], value[1]),
}


def validate_identifier(name: Any, *, what: str = "identifier") -> str:
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise MalformedToolArguments(f"Invalid {what}: {name!r}")
    return name


def build_conditions(
    table: Table,
    filters: Mapping[str, Any] | None,
    config: QueryConfig,
) -> list[ColumnElement[bool]]:
    """Build WHERE conditions; every value becomes a bound parameter.

    Plain values mean equality. Operator objects look like
    ``{"type": "gte", "value": 10}``. ``None`` values are skipped.
    """

    if not filters:
        return []
    if not isinstance(filters, Mapping):
        raise MalformedToolArguments("filters must be an object of column/value pairs")
    if len(filters) > config.max_filters:
        raise MalformedToolArguments(f"Too many filters (max {config.max_filters})")

    conditions: list[ColumnElement[bool]] = []
    for key, raw in filters.items():
        validate_identifier(key, what="filter key")
        if key not in table.c:
            raise SchemaResolutionFailed(
                f"Column {key!r} does not exist on {table.name!r}",
                available=[column.name for column in table.c],
            )
        if raw is None:
            continue

        op, value = _split_operator(raw)
        if value is None:
            continue
        value = _sanitize(value, config)
        _check_shape(op, value, config)
        conditions.append(_OPERATORS[op](table.c[key], value))
    return conditions


def _split_operator(raw: Any) -> tuple[str, Any]:
    if isinstance(raw, Mapping):
        op = raw.get("type")
        if op not in _OPERATORS:
            raise MalformedToolArguments(f"Invalid filter type: {op!r}")
        return op, raw.get("value")
    if isinstance(raw, list):
        return "in", raw
    return "eq", raw


def _check_shape(op: str, value: Any, config: QueryConfig) -> None:
    if op == "in":
        if not isinstance(value, list):
            raise MalformedToolArguments("'in' filters need a list value")
        if len(value) > config.max_in_items:
            raise MalformedToolArguments(f"'in' list exceeds {config.max_in_items} items")
    elif op == "between":
        if not isinstance(value, list) or len(value) != 2:
            raise MalformedToolArguments("'between' filters need a [low, high] list")
    elif isinstance(value, list):
        raise MalformedToolArguments(f"'{op}' filters need a scalar value")


def _sanitize(value: Any, config: QueryConfig) -> Any:
    if isinstance(value, str):
        if len(value) > config.max_string_length:
            raise MalformedToolArguments("String value exceeds maximum length")
        return value.replace("\x00", "").strip()
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if not INT_MIN <= value <= INT_MAX:
            raise MalformedToolArguments("Integer value out of range")
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MalformedToolArguments("Invalid number value")
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return [_sanitize(item, config) for item in value]
    raise MalformedToolArguments(f"Unsupported filter value type: {type(value).__name__}")
