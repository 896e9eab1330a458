"""
Unit tests for identifier guards and the snapshot query builder.
"""

import pytest

from dbaas.gridsync_server.errors import ValidationError
from dbaas.gridsync_server.schema import ColumnDef, ColumnKind, TableDef
from dbaas.gridsync_server.storage import Filter, RowQuery, parse_order_by
from dbaas.gridsync_server.storage.sql import (
    quote_ident,
    validate_check_expression,
    validate_identifier,
    validate_table_name,
)

ORDERS = TableDef(
    "orders",
    "id",
    ColumnKind.INTEGER,
    (
        ColumnDef("qty", ColumnKind.INTEGER),
        ColumnDef("name", ColumnKind.TEXT),
        ColumnDef("active", ColumnKind.BOOLEAN),
    ),
)


class TestIdentifiers:
    """Tests for identifier validation."""

    def test_valid_identifiers(self):
        assert validate_identifier("qty") == "qty"
        assert validate_identifier("_x1") == "_x1"
        assert quote_ident("Order_Items") == '"Order_Items"'

    @pytest.mark.parametrize("name", ["", "1abc", "a-b", 'a"b', "a b", "x" * 65, None])
    def test_invalid_identifiers(self, name):
        with pytest.raises(ValidationError):
            validate_identifier(name)

    def test_internal_table_prefixes_are_reserved(self):
        with pytest.raises(ValidationError):
            validate_table_name("_audit_log")
        with pytest.raises(ValidationError):
            validate_table_name("SQLITE_sequence")

    def test_check_expression_allow_list(self):
        assert validate_check_expression("qty >= 0 AND qty < 100", "qty")
        assert validate_check_expression("length(name) <= 20", "name")
        assert validate_check_expression("status IN ('a', 'b')", "status")

    @pytest.mark.parametrize(
        "expr",
        ["other > 0", "qty > 0; DROP TABLE x", "(qty > 0", "qty > 0)", "   "],
    )
    def test_check_expression_rejections(self, expr):
        with pytest.raises(ValidationError):
            validate_check_expression(expr, "qty")


class TestRowQuery:
    """Tests for RowQuery."""

    def test_default_query(self):
        sql, params = RowQuery(ORDERS).build()
        assert sql == 'SELECT * FROM "orders" WHERE "deleted" = 0 ORDER BY "row_version" ASC'
        assert params == []

    def test_filters_bind_values_by_kind(self):
        sql, params = (
            RowQuery(ORDERS)
            .where("qty", ">", "3")
            .where("active", "eq", True)
            .where("id", "in", ["1", 2])
            .build()
        )
        assert '"qty" > ?' in sql
        assert '"active" = ?' in sql
        assert '"id" IN (?, ?)' in sql
        assert params == [3, 1, 1, 2]

    def test_null_operators_take_no_params(self):
        sql, params = RowQuery(ORDERS, include_deleted=True).where("name", "is_null").build()
        assert sql.startswith('SELECT * FROM "orders" WHERE "name" IS NULL')
        assert params == []

    def test_reserved_columns_are_filterable(self):
        sql, params = RowQuery(ORDERS).filter([Filter("row_version", "gt", 10)]).build()
        assert '"row_version" > ?' in sql
        assert params == [10]

    def test_unknown_column_rejected(self):
        with pytest.raises(ValidationError):
            RowQuery(ORDERS).where("missing", "eq", 1).build()

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            RowQuery(ORDERS).where("qty", "between", 1).build()

    def test_order_and_limit(self):
        sql, params = (
            RowQuery(ORDERS).order_by(parse_order_by("qty DESC, name")).limit(10, 5).build()
        )
        assert sql.endswith(
            'ORDER BY "qty" DESC, "name" ASC, "row_version" ASC LIMIT ? OFFSET ?'
        )
        assert params == [10, 5]

    def test_parse_order_by_rejects_garbage(self):
        with pytest.raises(ValidationError):
            parse_order_by("qty sideways")
        with pytest.raises(ValidationError):
            parse_order_by("qty DESC extra")

    def test_filter_from_dict(self):
        f = Filter.from_dict({"column": "qty", "op": "ge", "value": 2})
        assert f == Filter("qty", "ge", 2)
        with pytest.raises(ValidationError):
            Filter.from_dict({"op": "eq"})
