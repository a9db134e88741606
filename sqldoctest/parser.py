"""
Test block extraction for sqldoctest.

Turns the text of a test block into Test records. The grammar is a tiny
subset of markdown: ``#`` headings name the tests below them, and fenced
code blocks tagged ``sql`` / ``output`` hold a query and its expected
result table.

Example test block::

    # Success
    ```SQL
    select 1;
    ```
    ```output
     a
    ---
     1
    ```
"""

from dataclasses import dataclass, replace
from typing import Iterator, List, Optional, Union

from .models import Table, Test


FENCE = "```"
COLUMN_SEPARATOR = "|"


class ExtractionError(Exception):
    """Raised when a test block cannot be turned into tests."""

    def __init__(self, message: str, source: Optional[str] = None, line: Optional[int] = None):
        self.message = message
        self.source = source
        self.line = line
        super().__init__(str(self))

    def __str__(self) -> str:
        location = self.source or "<string>"
        if self.line is not None:
            location = f"{location}:{self.line}"
        return f"{location}: {self.message}"


@dataclass(frozen=True)
class Heading:
    level: int
    text: str


@dataclass(frozen=True)
class CodeBlock:
    starting_line: int
    attributes: str
    contents: str


Event = Union[Heading, CodeBlock]


@dataclass(frozen=True)
class BlockAttributes:
    """Classified attribute tokens of a fenced code block."""
    sql: bool = False
    output: bool = False
    ignore: bool = False
    ignore_output: bool = False
    stateful: bool = False


def iter_blocks(text: str) -> Iterator[Event]:
    """
    Yield headings and fenced code blocks in the order they appear.

    Lines outside of headings and fences are skipped. The indentation in
    front of an opening fence is removed from every line of the block body,
    so examples can be nested inside indented comments.
    """
    lines = iter(text.splitlines())
    line_num = 0

    for line in lines:
        line_num += 1
        trimmed = line.lstrip()

        if trimmed.startswith("#"):
            level = len(trimmed) - len(trimmed.lstrip("#"))
            yield Heading(level=level, text=trimmed[level:].strip())

        elif trimmed.startswith(FENCE):
            indent = line[:line.find(FENCE)]
            starting_line = line_num
            attributes = trimmed[len(FENCE):].lstrip()

            body: List[str] = []
            for body_line in lines:
                line_num += 1
                if body_line.lstrip().startswith(FENCE):
                    break
                body.append(body_line.removeprefix(indent))

            yield CodeBlock(
                starting_line=starting_line,
                attributes=attributes,
                contents="\n".join(body),
            )


def parse_block_attributes(attributes: str) -> BlockAttributes:
    """Classify a comma-separated attribute string. Unknown tokens are ignored."""
    tokens = {token.strip().lower() for token in attributes.split(",")}
    return BlockAttributes(
        sql="sql" in tokens,
        output="output" in tokens,
        ignore="ignore" in tokens,
        ignore_output="ignore-output" in tokens,
        stateful=bool(tokens & {"stateful", "non-transactional"}),
    )


def parse_output(contents: str) -> Table:
    """
    Parse an expected-output block into rows of cells.

    The first two lines are the column labels and the separator; every
    following line is one row split on ``|``.
    """
    return tuple(
        tuple(cell.strip() for cell in line.split(COLUMN_SEPARATOR))
        for line in contents.split("\n")[2:]
    )


def extract_tests_from_string(
    text: str,
    source: Optional[str] = None,
    line_offset: int = 0,
) -> List[Test]:
    """
    Extract all tests from a test block.

    Args:
        text: The test block
        source: Name used in error messages (usually the file path)
        line_offset: Added to every line number, to report file positions
                     for blocks cut out of a larger file

    Returns:
        Tests in source order

    Raises:
        ExtractionError: An output block appears with no query waiting for it
    """
    heading_stack = [""]
    tests: List[Test] = []
    pending: Optional[Test] = None

    for event in iter_blocks(text):
        if isinstance(event, Heading):
            del heading_stack[event.level:]
            heading_stack.append(f"`{event.text}`")
            continue

        attrs = parse_block_attributes(event.attributes)
        if attrs.ignore:
            continue

        if attrs.output:
            if pending is None:
                raise ExtractionError(
                    "output block without a preceding sql block",
                    source=source,
                    line=event.starting_line + line_offset,
                )
            tests.append(replace(pending, output=parse_output(event.contents)))
            pending = None

        elif attrs.sql:
            if pending is not None:
                tests.append(replace(pending, ignore_output=True))
            pending = Test(
                line=event.starting_line + line_offset,
                header="".join(heading_stack),
                text=event.contents,
                transactional=not attrs.stateful,
                ignore_output=attrs.ignore_output,
            )

    if pending is not None:
        tests.append(replace(pending, ignore_output=True))

    return tests
