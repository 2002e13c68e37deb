"""Join-column discovery from foreign-key naming conventions."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass
from enum import Enum

_TABLE_PREFIXES = ("t_", "v_")


class JoinKind(str, Enum):
    SHARED = "shared"  # same column name on both tables
    FORWARD = "forward"  # base.<col> -> joined.id
    REVERSE = "reverse"  # base.id <- joined.<col>


@dataclass(frozen=True, slots=True)
class JoinRequest:
    table: str
    column: str | None = None


@dataclass(frozen=True, slots=True)
class ResolvedJoin:
    left_column: str
    right_column: str
    pattern: str


@dataclass(frozen=True, slots=True)
class JoinPattern:
    """One naming convention, e.g. ``shared:{table_entity}_id``.

    Template fields: ``table``, ``join_table`` (raw names) and
    ``table_entity``, ``join_entity`` (prefix-stripped singular names).
    """

    kind: JoinKind
    template: str

    def column_name(self, table: str, join_table: str) -> str:
        return self.template.format(
            table=table,
            join_table=join_table,
            table_entity=entity_name(table),
            join_entity=entity_name(join_table),
        )

    def describe(self, table: str, join_table: str) -> str:
        return f"{self.kind.value}:{self.column_name(table, join_table)}"

    def resolve(
        self,
        table: str,
        join_table: str,
        left_columns: Collection[str],
        right_columns: Collection[str],
    ) -> ResolvedJoin | None:
        column = self.column_name(table, join_table)
        return resolve_column(
            self.kind, column, left_columns, right_columns, pattern=self.describe(table, join_table)
        )


DEFAULT_JOIN_PATTERNS: tuple[JoinPattern, ...] = (
    JoinPattern(JoinKind.SHARED, "{table_entity}_id"),
    JoinPattern(JoinKind.SHARED, "{join_entity}_id"),
    JoinPattern(JoinKind.FORWARD, "{join_entity}_id"),
    JoinPattern(JoinKind.REVERSE, "{table_entity}_id"),
    JoinPattern(JoinKind.SHARED, "{table}_id"),
    JoinPattern(JoinKind.SHARED, "{join_table}_id"),
)


def resolve_column(
    kind: JoinKind,
    column: str,
    left_columns: Collection[str],
    right_columns: Collection[str],
    *,
    pattern: str,
) -> ResolvedJoin | None:
    if kind is JoinKind.SHARED and column in left_columns and column in right_columns:
        return ResolvedJoin(left_column=column, right_column=column, pattern=pattern)
    if kind is JoinKind.FORWARD and column in left_columns and "id" in right_columns:
        return ResolvedJoin(left_column=column, right_column="id", pattern=pattern)
    if kind is JoinKind.REVERSE and column in right_columns and "id" in left_columns:
        return ResolvedJoin(left_column="id", right_column=column, pattern=pattern)
    return None


def discover_join(
    table: str,
    join_table: str,
    left_columns: Collection[str],
    right_columns: Collection[str],
    patterns: Sequence[JoinPattern] = DEFAULT_JOIN_PATTERNS,
) -> tuple[ResolvedJoin | None, list[str]]:
    """Try ``patterns`` in order; return the first hit and every pattern tried."""

    attempted: list[str] = []
    for pattern in patterns:
        label = pattern.describe(table, join_table)
        if label in attempted:
            continue
        attempted.append(label)
        resolved = pattern.resolve(table, join_table, left_columns, right_columns)
        if resolved is not None:
            return resolved, attempted
    return None, attempted


def explicit_join(
    column: str,
    left_columns: Collection[str],
    right_columns: Collection[str],
) -> tuple[ResolvedJoin | None, list[str]]:
    """Resolve a caller-supplied join column, preferring a shared column."""

    attempted: list[str] = []
    for kind in (JoinKind.SHARED, JoinKind.FORWARD, JoinKind.REVERSE):
        label = f"{kind.value}:{column}"
        attempted.append(label)
        resolved = resolve_column(kind, column, left_columns, right_columns, pattern=label)
        if resolved is not None:
            return resolved, attempted
    return None, attempted


def entity_name(table: str) -> str:
    name = table.lower()
    for prefix in _TABLE_PREFIXES:
        if name.startswith(prefix) and len(name) > len(prefix):
            name = name[len(prefix) :]
            break
    return singularize(name)


def singularize(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith(("sses", "xes", "zes", "ches", "shes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word
