"""
Test output validation and failure rendering.
"""

from __future__ import annotations

import pytest

from sqldoctest.models import MismatchedValues, WrongNumberOfRows
from sqldoctest.validation import (
    EXPECTED_STYLE,
    RECEIVED_STYLE,
    render_diff,
    stringify_table,
    to_table,
    validate_output,
)

from conftest import make_test


class TestValidateOutput:
    """validate_output compares rows as strings."""

    def test_matching_rows_pass(self):
        test = make_test("q", (("1", "a"), ("2", "b")))
        assert validate_output([(1, "a"), (2, "b")], test) is None

    def test_no_rows_expected_and_received(self):
        assert validate_output([], make_test("q")) is None

    def test_wrong_row_count(self):
        test = make_test("q", (("1",),))
        failure = validate_output([("1",), ("2",)], test)
        assert failure == WrongNumberOfRows(received=(("1",), ("2",)), expected=1, found=2)

    def test_mismatched_values(self):
        test = make_test("q", (("1",),))
        assert validate_output([("2",)], test) == MismatchedValues(received=(("2",),))

    def test_comparison_is_textual(self):
        test = make_test("q", (("1",),))
        assert isinstance(validate_output([("1.0",)], test), MismatchedValues)

    def test_column_count_mismatch(self):
        test = make_test("q", (("1",),))
        assert isinstance(validate_output([("1", "2")], test), MismatchedValues)

    def test_ignore_output_always_passes(self):
        test = make_test("q", (("1",),), ignore_output=True)
        assert validate_output([("x",), ("y",)], test) is None

    def test_null_is_empty_string(self):
        test = make_test("q", (("",),))
        assert validate_output([(None,)], test) is None

    @pytest.mark.parametrize("rows, expected", [
        ([("1",), ("2",)], (("1",),)),
        ([("2",)], (("1",),)),
        ([("1",)], (("1",),)),
    ])
    def test_repeatable(self, rows, expected):
        """Validating the same rows twice gives the same verdict."""
        test = make_test("q", expected)
        first = validate_output(rows, test)
        second = validate_output(rows, test)
        assert first == second
        assert type(first) is type(second)


class TestToTable:

    def test_stringifies_values(self):
        assert to_table([(1, None, "x")]) == (("1", "", "x"),)


class TestStringifyTable:
    """Tables render with right-aligned columns."""

    def test_empty_table(self):
        assert stringify_table(()) == "---"

    def test_columns_right_aligned(self):
        table = (("1", "long"), ("100", "x"))
        assert stringify_table(table) == "  1 | long\n100 |    x"

    def test_ragged_rows(self):
        assert stringify_table((("a", "b"), ("ccc",))) == "  a | b\nccc"


class TestRenderDiff:
    """render_diff marks differing cells."""

    def test_equal_tables_have_no_markers(self):
        diff = render_diff((("1", "2"),), (("1", "2"),))
        assert diff.plain == "1 | 2"
        assert not diff.spans

    def test_differing_cell(self):
        diff = render_diff((("1", "a"),), (("2", "a"),))
        assert diff.plain == "-1+2 | a"
        styles = {diff.plain[span.start:span.end]: span.style for span in diff.spans}
        assert styles == {"-1": EXPECTED_STYLE, "+2": RECEIVED_STYLE}

    def test_columns_padded_to_widest_cell(self):
        diff = render_diff((("1",), ("22",)), (("1",), ("33",)))
        assert diff.plain.split("\n") == ["     1", "-22+33"]

    def test_missing_rows_count_as_empty(self):
        diff = render_diff((("1",),), (("1",), ("2",)))
        assert diff.plain.split("\n") == ["  1", "-+2"]

    def test_extra_expected_cells(self):
        diff = render_diff((("1", "2"),), (("1",),))
        assert diff.plain == "1 | -2+"
