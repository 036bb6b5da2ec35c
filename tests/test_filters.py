"""Tests for filter parsing and SQL translation."""

import pytest

from recordcache.cache.errors import (
    InvalidFilter,
    SchemaDrift,
    UnknownField,
    UnsupportedComparator,
)
from recordcache.cache.expressions import (
    DateValue,
    FilterGroup,
    ListValue,
    NullValue,
    TextValue,
    all_of,
    any_of,
    condition,
    parse_filter,
    referenced_fields,
)
from recordcache.cache.filters import FilterTranslator, escape_like
from recordcache.cache.schema import Column, ColumnType

from conftest import BASE_TIME

SCHEMA = [
    Column(name="status", type=ColumnType.TEXT),
    Column(name="priority", type=ColumnType.INTEGER),
    Column(name="score", type=ColumnType.REAL),
    Column(name="active", type=ColumnType.BOOLEAN),
    Column(name="tags", type=ColumnType.JSON),
    Column(name="due", type=ColumnType.TEXT),
    Column(name="Due Date", type=ColumnType.JSON),
]


@pytest.fixture
def translator():
    return FilterTranslator(clock=lambda: BASE_TIME)


def _sql(translator, expr, **kwargs):
    return translator.translate(expr, SCHEMA, **kwargs)


# ═══════════════ PARSING ═══════════════


class TestParseFilter:
    def test_empty_means_no_filter(self):
        assert parse_filter(None) is None
        assert parse_filter({}) is None

    def test_wire_shape(self):
        expr = parse_filter({
            "operator": "and",
            "fields": [
                {"field": "status", "comparison": "is_any_of", "value": ["open", "pending"]},
                {"operator": "or", "fields": [
                    {"field": "priority", "comparison": "is_greater_than", "value": 3},
                    {"field": "due", "comparison": "is_before", "value": {"date_mode": "today"}},
                ]},
            ],
        })
        assert isinstance(expr, FilterGroup)
        assert expr.fields[0].value == ListValue(items=("open", "pending"))
        assert expr.fields[1].operator == "or"
        assert expr.fields[1].fields[1].value == DateValue(date_mode="today")
        assert referenced_fields(expr) == ["status", "priority", "due"]

    def test_value_kinds(self):
        assert parse_filter({"field": "a", "comparison": "is", "value": "x"}).value == TextValue(value="x")
        assert parse_filter({"field": "a", "comparison": "is_empty"}).value == NullValue()
        date_value = parse_filter({"field": "a", "comparison": "is", "value": {"date": "2025-01-01"}}).value
        assert date_value == DateValue(date_mode="exact_date", date_mode_value="2025-01-01")

    def test_empty_group_rejected(self):
        with pytest.raises(InvalidFilter):
            parse_filter({"operator": "and", "fields": []})

    def test_bad_operator(self):
        with pytest.raises(InvalidFilter):
            parse_filter({"operator": "xor", "fields": [{"field": "a", "comparison": "is", "value": 1}]})

    def test_missing_comparison(self):
        with pytest.raises(InvalidFilter):
            parse_filter({"field": "a", "value": 1})

    def test_nested_list_value_rejected(self):
        with pytest.raises(InvalidFilter):
            parse_filter({"field": "a", "comparison": "is_any_of", "value": [["x"]]})


# ═══════════════ TRANSLATION ═══════════════


class TestTranslate:
    def test_and_scenario(self, translator):
        expr = all_of(
            condition("status", "is_any_of", ["open", "pending"]),
            condition("priority", "is_greater_than", 3),
        )
        result = _sql(translator, expr)
        assert result.sql == '("status" IN (:p0, :p1) AND "priority" > :p2)'
        assert result.params == {"p0": "open", "p1": "pending", "p2": 3}

    def test_or_group(self, translator):
        expr = any_of(condition("status", "is", "open"), condition("active", "is", True))
        result = _sql(translator, expr)
        assert result.sql == '("status" = :p0 OR "active" = :p1)'
        assert result.params == {"p0": "open", "p1": True}

    def test_table_qualified_columns(self, translator):
        result = _sql(translator, condition("status", "is", "x"), table_name="cache_records_orders")
        assert result.sql == '"cache_records_orders"."status" = :p0'

    def test_negative_equality_matches_null(self, translator):
        result = _sql(translator, condition("status", "is_not", "open"))
        assert result.sql == '("status" IS NULL OR "status" <> :p0)'

    def test_values_never_inlined(self, translator):
        hostile = "x' OR '1'='1"
        result = _sql(translator, condition("status", "is", hostile))
        assert hostile not in result.sql
        assert result.params == {"p0": hostile}

    def test_contains_escapes_wildcards(self, translator):
        result = _sql(translator, condition("status", "contains", "50%_off\\"))
        assert result.sql == "\"status\" LIKE :p0 ESCAPE '\\'"
        assert result.params == {"p0": "%50\\%\\_off\\\\%"}

    def test_escape_like(self):
        assert escape_like("a%b_c\\d") == "a\\%b\\_c\\\\d"

    def test_membership_on_json(self, translator):
        result = _sql(translator, condition("tags", "has_any_of", ["vip"]))
        assert result.sql.startswith('EXISTS (SELECT 1 FROM json_each("tags", CASE WHEN json_type("tags", ')
        assert result.sql.endswith("AS je WHERE je.value IN (:p0))")

    def test_has_none_of_on_json(self, translator):
        result = _sql(translator, condition("tags", "has_none_of", ["vip"]))
        assert result.sql.startswith("NOT EXISTS (")

    def test_is_exactly_counts_distinct_values(self, translator):
        result = _sql(translator, condition("tags", "is_exactly", ["a", "b", "a"]))
        assert 'json_array_length("tags") = :p0' in result.sql
        assert result.params["p0"] == 2
        assert result.sql.count("EXISTS") == 2

    def test_empty_per_type(self, translator):
        assert _sql(translator, condition("status", "is_empty")).sql == '("status" IS NULL OR "status" = \'\')'
        assert _sql(translator, condition("priority", "is_empty")).sql == '"priority" IS NULL'
        assert "'[]'" in _sql(translator, condition("tags", "is_empty")).sql
        assert _sql(translator, condition("priority", "is_not_empty")).sql == '"priority" IS NOT NULL'

    def test_numeric_coercion_from_text(self, translator):
        result = _sql(translator, condition("score", "is_equal_or_less_than", "2.5"))
        assert result.sql == '"score" <= :p0'
        assert result.params == {"p0": 2.5}

    def test_date_on_text_column(self, translator):
        result = _sql(translator, condition("due", "is_before", {"date_mode": "days_ago", "date_mode_value": 7}))
        assert result.sql == 'substr("due", 1, 10) < :p0'
        assert result.params == {"p0": "2025-01-08"}

    def test_date_on_numeric_column_uses_day_boundaries(self, translator):
        result = _sql(translator, condition("priority", "is_on_or_before", "2025-01-15"))
        assert result.sql == '"priority" < :p0'
        assert result.params == {"p0": 1736985600.0}  # 2025-01-16T00:00:00Z

    def test_date_on_json_column(self, translator):
        result = _sql(translator, condition("Due Date", "is_after", {"date_mode": "today"}))
        assert "json_extract(\"due_date\", '$.to_date.date')" in result.sql
        assert result.params == {"p0": "2025-01-15"}

    def test_date_on_json_reads_string_to_date(self, translator):
        result = _sql(translator, condition("Due Date", "is_after", "2025-01-01"))
        assert "CASE WHEN json_type(\"due_date\", '$.to_date') = 'text'" in result.sql

    def test_contains_on_json_searches_text_leaves(self, translator):
        result = _sql(translator, condition("tags", "contains", "vip"))
        assert result.sql == (
            'EXISTS (SELECT 1 FROM json_tree("tags") AS jt '
            "WHERE jt.type = 'text' AND jt.value LIKE :p0 ESCAPE '\\')"
        )
        assert result.params == {"p0": "%vip%"}
        assert _sql(translator, condition("tags", "not_contains", "vip")).sql.startswith("NOT EXISTS (")

    def test_equality_on_json_reads_status_value(self, translator):
        result = _sql(translator, condition("tags", "is", "open"))
        assert "json_extract(\"tags\", '$.value')" in result.sql
        assert result.sql.endswith(" = :p0")
        assert result.params == {"p0": "open"}

    def test_file_name_contains(self, translator):
        result = _sql(translator, condition("tags", "file_name_contains", "re_port"))
        assert result.sql == (
            'EXISTS (SELECT 1 FROM json_each("tags") AS je WHERE '
            "CASE WHEN je.type = 'object' THEN json_extract(je.value, '$.name') END "
            "LIKE :p0 ESCAPE '\\')"
        )
        assert result.params == {"p0": "%re\\_port%"}

    def test_file_type_is(self, translator):
        result = _sql(translator, condition("tags", "file_type_is", "pdf"))
        assert result.sql.endswith("json_extract(je.value, '$.type') END = :p0)")
        assert result.params == {"p0": "pdf"}

    def test_comparison_is_case_insensitive(self, translator):
        assert _sql(translator, condition("status", "IS", "x")).sql == '"status" = :p0'


class TestTranslateErrors:
    def test_unknown_field(self, translator):
        with pytest.raises(UnknownField):
            _sql(translator, condition("nope", "is", 1))

    def test_unknown_comparator(self, translator):
        with pytest.raises(UnsupportedComparator):
            _sql(translator, condition("status", "resembles", "x"))

    @pytest.mark.parametrize("field,comparison,value", [
        ("priority", "contains", "1"),
        ("status", "is_greater_than", 1),
        ("status", "has_all_of", ["a"]),
        ("status", "is_exactly", ["a"]),
        ("active", "is_before", "2025-01-01"),
        ("status", "file_name_contains", "x"),
        ("priority", "file_type_is", "pdf"),
    ])
    def test_comparator_not_valid_for_type(self, translator, field, comparison, value):
        with pytest.raises(UnsupportedComparator):
            _sql(translator, condition(field, comparison, value))

    @pytest.mark.parametrize("field,comparison,value", [
        ("status", "is_any_of", "open"),
        ("status", "is_any_of", []),
        ("status", "is", ["open"]),
        ("status", "is", None),
        ("priority", "is", "many"),
        ("priority", "is_greater_than", True),
        ("active", "is", "maybe"),
        ("due", "is_before", "not a date"),
        ("due", "is_before", {"date_mode": "whenever"}),
        ("due", "is_before", {"date_mode": "days_ago"}),
        ("due", "is_before", {"date_mode": "days_ago", "date_mode_value": 900000}),
        ("due", "is_after", {"date_mode": "days_from_now", "date_mode_value": 10**12}),
        ("priority", "is_after", "9999-12-31"),
        ("priority", "is_on_or_before", "9999-12-31"),
        ("priority", "is", {"date": "9999-12-31"}),
        ("tags", "file_name_contains", ["a"]),
    ])
    def test_invalid_values(self, translator, field, comparison, value):
        with pytest.raises(InvalidFilter):
            _sql(translator, condition(field, comparison, value))

    def test_empty_group(self, translator):
        with pytest.raises(InvalidFilter):
            _sql(translator, FilterGroup(operator="and", fields=()))


class TestSchemaDrift:
    DROPPED = [Column(name="legacy", type=ColumnType.TEXT)]

    def test_dropped_field_reads_as_null(self, translator):
        result = _sql(translator, condition("legacy", "is", "x"), dropped=self.DROPPED)
        assert result.sql == "NULL = :p0"

    def test_strict_raises(self, translator):
        with pytest.raises(SchemaDrift) as exc:
            _sql(translator, condition("legacy", "is", "x"), dropped=self.DROPPED, strict=True)
        assert exc.value.fields == ["legacy"]
