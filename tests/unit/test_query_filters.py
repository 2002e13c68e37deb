import pytest
from sqlalchemy import Column, Float, Integer, MetaData, String, Table

from query_gateway.config import QueryConfig
from query_gateway.errors import MalformedToolArguments, SchemaResolutionFailed
from query_gateway.query.filters import build_conditions, validate_identifier

_metadata = MetaData()
materials = Table(
    "materials",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String),
    Column("price", Float),
)


def _sql(condition) -> str:
    return str(condition.compile(compile_kwargs={"literal_binds": True}))


def test_plain_values_mean_equality_and_none_is_skipped() -> None:
    conditions = build_conditions(materials, {"name": "Zement", "price": None}, QueryConfig())

    assert [_sql(c) for c in conditions] == ["materials.name = 'Zement'"]


def test_operator_objects_and_lists() -> None:
    conditions = build_conditions(
        materials,
        {
            "price": {"type": "gte", "value": 10},
            "name": {"type": "like", "value": "Zem"},
            "id": [1, 2],
        },
        QueryConfig(),
    )

    rendered = [_sql(c) for c in conditions]
    assert rendered[0] == "materials.price >= 10"
    assert rendered[1] == "materials.name LIKE '%Zem%'"
    assert rendered[2] == "materials.id IN (1, 2)"


def test_between_needs_two_bounds() -> None:
    conditions = build_conditions(
        materials, {"price": {"type": "between", "value": [1, 5]}}, QueryConfig()
    )
    assert _sql(conditions[0]) == "materials.price BETWEEN 1 AND 5"

    with pytest.raises(MalformedToolArguments):
        build_conditions(materials, {"price": {"type": "between", "value": [1]}}, QueryConfig())


def test_strings_are_stripped_of_nul_bytes() -> None:
    conditions = build_conditions(materials, {"name": " Ze\x00ment "}, QueryConfig())

    assert _sql(conditions[0]) == "materials.name = 'Zement'"


@pytest.mark.parametrize(
    "filters",
    [
        {"name": {"type": "regex", "value": "Z.*"}},
        {"name": "x" * 11},
        {"price": float("nan")},
        {"id": 10**30},
        {"id": [1, -(2**63) - 1]},
        {"price": {"type": "eq", "value": [1, 2]}},
        {"name": {"nested": "object"}},
        {"name; drop": "x"},
    ],
)
def test_malformed_filters_are_rejected(filters) -> None:
    with pytest.raises(MalformedToolArguments):
        build_conditions(materials, filters, QueryConfig(max_string_length=10))


def test_filter_count_and_in_list_bounds() -> None:
    config = QueryConfig(max_filters=1, max_in_items=2)

    with pytest.raises(MalformedToolArguments):
        build_conditions(materials, {"name": "a", "price": 1}, config)
    with pytest.raises(MalformedToolArguments):
        build_conditions(materials, {"id": [1, 2, 3]}, config)


def test_unknown_column_lists_available_columns() -> None:
    with pytest.raises(SchemaResolutionFailed) as excinfo:
        build_conditions(materials, {"colour": "grey"}, QueryConfig())

    assert excinfo.value.available == ["id", "name", "price"]


def test_validate_identifier() -> None:
    assert validate_identifier("material_prices") == "material_prices"
    with pytest.raises(MalformedToolArguments):
        validate_identifier("1abc")
    with pytest.raises(MalformedToolArguments):
        validate_identifier(None)


def test_integers_at_64_bit_bounds_are_accepted() -> None:
    conditions = build_conditions(
        materials, {"id": {"type": "between", "value": [-(2**63), 2**63 - 1]}}, QueryConfig()
    )

    assert _sql(conditions[0]) == f"materials.id BETWEEN {-(2**63)} AND {2**63 - 1}"
