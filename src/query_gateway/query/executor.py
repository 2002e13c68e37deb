"""Read-only query executor backing the model's database tools."""

from __future__ import annotations

import base64
import logging
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any

from sqlalchemy import Table, select
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from query_gateway.config import QueryConfig
from query_gateway.errors import (
    JoinNotResolvable,
    MalformedToolArguments,
    QueryExecutionFailed,
    SchemaResolutionFailed,
)
from query_gateway.query.filters import build_conditions, validate_identifier
from query_gateway.query.joins import (
    DEFAULT_JOIN_PATTERNS,
    JoinPattern,
    JoinRequest,
    ResolvedJoin,
    discover_join,
    explicit_join,
)
from query_gateway.query.store import SqlStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("query_gateway.audit")


class QueryExecutor:
    """Turns structured tool arguments into bounded SELECT statements.

    Safety comes from the interface: tables and columns must exist in the live
    schema (refreshed every ``schema_cache_seconds``), filter values are bound
    parameters, and the only statement ever built is ``select``. The row cap
    is ``min(requested, max_limit)`` regardless of what the model asks for.
    """

    def __init__(
        self,
        store: SqlStore,
        config: QueryConfig | None = None,
        *,
        join_patterns: Sequence[JoinPattern] = DEFAULT_JOIN_PATTERNS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config or QueryConfig()
        self.join_patterns = tuple(join_patterns)
        self._clock = clock
        self._relations: list[str] = []
        self._loaded_at: float | None = None

    def list_tables(self) -> list[str]:
        return list(self._allowed_relations(force=True))

    def describe_table(self, name: str) -> list[str]:
        table = self._resolve_table(name)
        return [column.name for column in table.c]

    def sample_row(self, name: str) -> dict[str, Any] | None:
        rows = self.query_table(name, limit=1)
        return rows[0] if rows else None

    def effective_limit(self, requested: int | None) -> int:
        if requested is None or requested <= 0:
            requested = self.config.default_limit
        return min(requested, self.config.max_limit)

    def query_table(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        joins: Sequence[JoinRequest] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows from one table or view, optionally left-joining others.

        Joined columns are nested under the joined table's name; the nested
        value is ``None`` when no joined row matched.
        """

        base = self._resolve_table(table)
        joined = self._resolve_joins(base, joins or [])
        row_cap = self.effective_limit(limit)

        try:
            conditions = build_conditions(base, filters, self.config)
        except (MalformedToolArguments, SchemaResolutionFailed):
            self._audit(table, "FAILURE", filters, reason="invalid filters")
            raise

        from_clause = base
        columns = list(base.c)
        for right, resolved in joined:
            from_clause = from_clause.outerjoin(
                right, base.c[resolved.left_column] == right.c[resolved.right_column]
            )
            columns.extend(right.c)

        statement = select(*columns).select_from(from_clause).where(*conditions).limit(row_cap)

        try:
            rows = self.store.fetch(statement)
        except SQLAlchemyError as exc:
            self._audit(table, "FAILURE", filters, reason=type(exc).__name__)
            logger.error("Query on %s failed: %s", table, exc)
            raise QueryExecutionFailed(
                f"Query on {table!r} failed ({type(exc).__name__})"
            ) from exc

        records = [self._shape_row(row, base, joined) for row in rows]
        self._audit(table, "SUCCESS", filters, rows=len(records), joins=[r.name for r, _ in joined])
        return records

    def query_table_with_join(
        self,
        table: str,
        join_table: str,
        join_column: str | None = None,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return self.query_table(
            table,
            filters=filters,
            limit=limit,
            joins=[JoinRequest(table=join_table, column=join_column)],
        )

    def resolve_join(self, table: str, join_table: str, join_column: str | None = None) -> ResolvedJoin:
        left = self._resolve_table(table)
        right = self._resolve_table(join_table)
        return self._resolve_join_columns(left, right, join_column)

    def _allowed_relations(self, *, force: bool = False) -> list[str]:
        now = self._clock()
        stale = (
            self._loaded_at is None
            or now - self._loaded_at >= self.config.schema_cache_seconds
        )
        if force or stale:
            try:
                names = self.store.relation_names()
            except SQLAlchemyError as exc:
                logger.error("Schema introspection failed: %s", exc)
                raise QueryExecutionFailed(
                    f"Schema introspection failed ({type(exc).__name__})"
                ) from exc
            hidden = set(self.config.hidden_tables)
            self._relations = [name for name in names if name not in hidden]
            self._loaded_at = now
        return self._relations

    def _resolve_table(self, name: Any) -> Table:
        validate_identifier(name, what="table name")
        if name not in self._allowed_relations():
            # The table may have been created since the last introspection.
            if name not in self._allowed_relations(force=True):
                raise SchemaResolutionFailed(
                    f"Table {name!r} does not exist or is not accessible",
                    available=self._relations,
                )
        try:
            return self.store.reflect(name)
        except NoSuchTableError as exc:
            raise SchemaResolutionFailed(
                f"Table {name!r} does not exist or is not accessible",
                available=self._relations,
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Reflection of %s failed: %s", name, exc)
            raise QueryExecutionFailed(f"Could not inspect {name!r} ({type(exc).__name__})") from exc

    def _resolve_joins(
        self, base: Table, joins: Sequence[JoinRequest]
    ) -> list[tuple[Table, ResolvedJoin]]:
        resolved: list[tuple[Table, ResolvedJoin]] = []
        seen = {base.name}
        for join in joins:
            if join.table in seen:
                raise MalformedToolArguments(f"Table {join.table!r} is joined more than once")
            seen.add(join.table)
            right = self._resolve_table(join.table)
            resolved.append((right, self._resolve_join_columns(base, right, join.column)))
        return resolved

    def _resolve_join_columns(self, left: Table, right: Table, join_column: str | None) -> ResolvedJoin:
        left_columns = {column.name for column in left.c}
        right_columns = {column.name for column in right.c}

        if join_column:
            validate_identifier(join_column, what="join column")
            match, attempted = explicit_join(join_column, left_columns, right_columns)
        else:
            match, attempted = discover_join(
                left.name, right.name, left_columns, right_columns, self.join_patterns
            )
        if match is None:
            raise JoinNotResolvable(left.name, right.name, attempted)
        logger.debug("Joining %s to %s via %s", left.name, right.name, match.pattern)
        return match

    @staticmethod
    def _shape_row(
        row: Sequence[Any], base: Table, joined: Sequence[tuple[Table, ResolvedJoin]]
    ) -> dict[str, Any]:
        values = list(row)
        width = len(base.c)
        record = {
            column.name: _jsonable(value) for column, value in zip(base.c, values[:width], strict=True)
        }
        offset = width
        for right, _ in joined:
            chunk = values[offset : offset + len(right.c)]
            offset += len(right.c)
            if all(value is None for value in chunk):
                record[right.name] = None
            else:
                record[right.name] = {
                    column.name: _jsonable(value) for column, value in zip(right.c, chunk, strict=True)
                }
        return record

    @staticmethod
    def _audit(
        table: str,
        outcome: str,
        filters: Mapping[str, Any] | None,
        **metadata: Any,
    ) -> None:
        # Filter values may hold personal data; only keys are recorded.
        filter_keys = sorted(filters) if isinstance(filters, Mapping) else []
        audit_logger.info(
            "QUERY table=%s outcome=%s filters=%s meta=%s",
            table,
            outcome,
            filter_keys,
            metadata,
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value
