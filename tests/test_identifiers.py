"""H-1: identifier allow-list, batch id validation, quoting."""

from __future__ import annotations

import pytest

from connections import quote_identifier, quote_table, validate_batch_id, validate_identifier
from scd2.errors import InvalidIdentifier


class TestValidateIdentifier:
    @pytest.mark.parametrize("name", ["dim_veteran", "Dim2", "_x", "A" * 128])
    def test_accepts_allow_listed_names(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", [
        "",
        None,
        42,
        "dim veteran",
        "dim;DROP",
        "dim]",
        "dim'",
        "dim-veteran",
        "warehouse.dim_x",
        "dim\n",
        "A" * 129,
        "café",
    ])
    def test_rejects_everything_else(self, name):
        with pytest.raises(InvalidIdentifier):
            validate_identifier(name)

    def test_error_carries_kind_and_code(self):
        with pytest.raises(InvalidIdentifier) as exc:
            validate_identifier("bad name", "business key column")
        assert exc.value.kind == "business key column"
        assert exc.value.error_code == "INVALID_IDENTIFIER"
        assert "business key column" in str(exc.value)

    def test_long_values_are_truncated_in_message(self):
        with pytest.raises(InvalidIdentifier) as exc:
            validate_identifier("x;" * 200)
        assert len(str(exc.value)) < 200


class TestValidateBatchId:
    @pytest.mark.parametrize("batch_id", ["BATCH_20250117_120000", "b-1", "X" * 64])
    def test_accepts(self, batch_id):
        assert validate_batch_id(batch_id) == batch_id

    @pytest.mark.parametrize("batch_id", ["", None, "B1 ", "B1'; --", "X" * 65, "B\n"])
    def test_rejects(self, batch_id):
        with pytest.raises(InvalidIdentifier):
            validate_batch_id(batch_id)


class TestQuoting:
    def test_quote_identifier(self):
        assert quote_identifier("dim_x") == "[dim_x]"

    def test_quote_identifier_validates(self):
        with pytest.raises(InvalidIdentifier):
            quote_identifier("x] ; DROP TABLE y --")

    @pytest.mark.parametrize("name, expected", [
        ("warehouse.dim_x", "[warehouse].[dim_x]"),
        ("DW.warehouse.dim_x", "[DW].[warehouse].[dim_x]"),
    ])
    def test_quote_table(self, name, expected):
        assert quote_table(name) == expected

    @pytest.mark.parametrize("name", ["dim_x", "a.b.c.d", "warehouse.", "warehouse.dim x", None])
    def test_quote_table_rejects(self, name):
        with pytest.raises(InvalidIdentifier):
            quote_table(name)
