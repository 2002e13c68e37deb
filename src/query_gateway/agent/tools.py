"""Database tools exposed to the model."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from query_gateway.agent.registry import ToolRegistry, ToolSpec
from query_gateway.query.executor import QueryExecutor
from query_gateway.query.joins import JoinRequest


class _ToolInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JoinInput(_ToolInput):
    table: str = Field(min_length=1, description="Table or view to left-join.")
    column: str | None = Field(
        default=None,
        description="Join column; discovered from naming conventions when omitted.",
    )


class QueryTableInput(_ToolInput):
    table_name: str = Field(alias="tableName", min_length=1, description="Table or view name.")
    filters: dict[str, Any] | None = Field(
        default=None,
        description=(
            "Column filters. Plain values mean equality; lists mean 'in'; operator "
            'objects look like {"type": "gte", "value": 10}. Supported types: eq, '
            "neq, gt, gte, lt, lte, like, ilike, in, between."
        ),
    )
    limit: int | None = Field(default=None, ge=1, description="Maximum rows (default 100).")
    joins: list[JoinInput] | None = Field(default=None, description="Tables to left-join.")


class QueryTableWithJoinInput(_ToolInput):
    table_name: str = Field(alias="tableName", min_length=1, description="Base table or view.")
    join_table: str = Field(alias="joinTable", min_length=1, description="Table to join.")
    join_column: str | None = Field(
        default=None,
        alias="joinColumn",
        description="Explicit join column; omit to auto-discover (e.g. material_id).",
    )
    filters: dict[str, Any] | None = Field(default=None, description="Filters on the base table.")
    limit: int | None = Field(default=None, ge=1, description="Maximum rows (default 100).")


class ListTablesInput(_ToolInput):
    pass


class DescribeTableInput(_ToolInput):
    table_name: str = Field(alias="tableName", min_length=1, description="Table or view name.")


def register_query_tools(registry: ToolRegistry, executor: QueryExecutor) -> None:
    """Register the four read-only database tools.

    Tools:
    - `queryTable`: filtered, bounded read of one table with optional joins.
    - `queryTableWithJoin`: two-table read with join-column discovery.
    - `listTables`: table and view names.
    - `describeTable`: column names plus one sample row.
    """

    def _query_table(input_data: QueryTableInput) -> dict[str, Any]:
        joins = [JoinRequest(table=join.table, column=join.column) for join in input_data.joins or []]
        rows = executor.query_table(
            input_data.table_name,
            filters=input_data.filters,
            limit=input_data.limit,
            joins=joins,
        )
        return {"tableName": input_data.table_name, "rowCount": len(rows), "rows": rows}

    def _query_table_with_join(input_data: QueryTableWithJoinInput) -> dict[str, Any]:
        rows = executor.query_table_with_join(
            input_data.table_name,
            input_data.join_table,
            join_column=input_data.join_column,
            filters=input_data.filters,
            limit=input_data.limit,
        )
        return {
            "tableName": input_data.table_name,
            "joinTable": input_data.join_table,
            "rowCount": len(rows),
            "rows": rows,
        }

    def _list_tables(_: ListTablesInput) -> dict[str, Any]:
        return {"tables": executor.list_tables()}

    def _describe_table(input_data: DescribeTableInput) -> dict[str, Any]:
        return {
            "tableName": input_data.table_name,
            "columns": executor.describe_table(input_data.table_name),
            "sampleRow": executor.sample_row(input_data.table_name),
        }

    registry.register(
        ToolSpec(
            name="queryTable",
            description=(
                "Read rows from a table or view with optional filters, limit and joins. "
                "Prefer views (v_*) that already resolve foreign keys."
            ),
            args_schema=QueryTableInput,
            handler=_query_table,
            tags=["db", "read"],
        )
    )
    registry.register(
        ToolSpec(
            name="queryTableWithJoin",
            description=(
                "Read rows from a table left-joined with a second table. The join column "
                "is discovered from naming conventions when joinColumn is omitted."
            ),
            args_schema=QueryTableWithJoinInput,
            handler=_query_table_with_join,
            tags=["db", "read", "join"],
        )
    )
    registry.register(
        ToolSpec(
            name="listTables",
            description="List all available tables and views.",
            args_schema=ListTablesInput,
            handler=_list_tables,
            tags=["db", "schema"],
        )
    )
    registry.register(
        ToolSpec(
            name="describeTable",
            description="List the columns of a table or view, with one sample row.",
            args_schema=DescribeTableInput,
            handler=_describe_table,
            tags=["db", "schema"],
        )
    )
