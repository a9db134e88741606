"""
Output validation for sqldoctest.

Compares the rows a query returned with the table written in the test,
and renders both sides (and a cell-by-cell diff) for failure reports.
"""

from itertools import zip_longest
from typing import Any, List, Optional, Sequence

from rich.text import Text

from .models import (
    FailureInfo,
    MismatchedValues,
    Table,
    Test,
    WrongNumberOfRows,
)


# Styles for the two sides of a differing cell
EXPECTED_STYLE = "magenta"
RECEIVED_STYLE = "yellow"


def to_table(rows: Sequence[Sequence[Any]]) -> Table:
    """Convert query rows to string cells. NULL becomes an empty string."""
    return tuple(
        tuple("" if value is None else str(value) for value in row)
        for row in rows
    )


def validate_output(rows: Sequence[Sequence[Any]], test: Test) -> Optional[FailureInfo]:
    """
    Check query rows against the expected output of a test.

    Cells are compared as strings, so ``1.0`` and ``1`` differ.

    Returns:
        None if the test passed, otherwise the reason it failed
    """
    if test.ignore_output:
        return None

    received = to_table(rows)

    if len(received) != len(test.output):
        return WrongNumberOfRows(
            received=received,
            expected=len(test.output),
            found=len(received),
        )

    if received != test.output:
        return MismatchedValues(received=received)

    return None


def _column_widths(table: Sequence[Sequence[str]]) -> List[int]:
    widths: List[int] = []
    for row in table:
        if len(widths) < len(row):
            widths.extend([0] * (len(row) - len(widths)))
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    return widths


def stringify_table(table: Sequence[Sequence[str]]) -> str:
    """
    Render a table with right-aligned columns separated by `` | ``.

    An empty table renders as ``---``.
    """
    if not table:
        return "---"

    widths = _column_widths(table)
    lines = [
        " | ".join(value.rjust(widths[i]) for i, value in enumerate(row))
        for row in table
    ]
    return "\n".join(lines)


def render_diff(expected: Sequence[Sequence[str]], received: Sequence[Sequence[str]]) -> Text:
    """
    Render a cell-by-cell diff of two tables.

    Equal cells are printed once. Differing cells are printed as
    ``-expected+received``. Missing rows and cells count as empty strings.
    """
    # Pair up rows and cells, padding the shorter side with ""
    pairs = [
        list(zip_longest(left, right, fillvalue=""))
        for left, right in zip_longest(expected, received, fillvalue=())
    ]

    widths: List[int] = []
    for row in pairs:
        if len(widths) < len(row):
            widths.extend([0] * (len(row) - len(widths)))
        for i, (left, right) in enumerate(row):
            if left == right:
                widths[i] = max(widths[i], len(left))
            else:
                widths[i] = max(widths[i], len(left) + len(right) + 2)

    text = Text()
    for row_num, row in enumerate(pairs):
        if row_num:
            text.append("\n")
        for i, (left, right) in enumerate(row):
            if i:
                text.append(" | ")
            if left == right:
                text.append(left.rjust(widths[i]))
            else:
                text.append(" " * (widths[i] - len(left) - len(right) - 2))
                text.append(f"-{left}", style=EXPECTED_STYLE)
                text.append(f"+{right}", style=RECEIVED_STYLE)

    return text
