"""
Test discovery for sqldoctest.

Finds input files, cuts them into test blocks and extracts the tests of
each file. Markdown files are one test block as a whole; every other file
only contributes the text between a start marker and the next end marker,
so tests can live in source comments::

    /*--[sql-tests]
    # Success
    ```SQL
    select 1;
    ```
    */
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from .models import Test, TestFile
from .parser import ExtractionError, extract_tests_from_string


# Extensions picked up when walking directories
TEST_FILE_EXTENSIONS = (".rs", ".c", ".h", ".md", ".sql")

# Files read as a single test block
WHOLE_FILE_EXTENSIONS = (".md",)


def find_marked_blocks(
    contents: str,
    start_marker: str,
    end_marker: str,
    source: str = "<string>",
) -> List[Tuple[int, str]]:
    """
    Find every test block delimited by the markers.

    Returns:
        List of (line offset, block text) tuples. The offset is the number
        of newlines before the start marker, so that line N of the block is
        line N + offset of the file.

    Raises:
        ValueError: A marker is empty
        ExtractionError: A start marker has no end marker after it
    """
    if not start_marker or not end_marker:
        raise ValueError("test block markers must not be empty")

    blocks: List[Tuple[int, str]] = []
    position = 0

    while True:
        start = contents.find(start_marker, position)
        if start == -1:
            return blocks

        body_start = start + len(start_marker)
        end = contents.find(end_marker, body_start)
        line_offset = contents.count("\n", 0, start)
        if end == -1:
            raise ExtractionError(
                f"could not find test end `{end_marker}`",
                source=source,
                line=line_offset + 1,
            )

        blocks.append((line_offset, contents[body_start:end]))
        position = end + len(end_marker)


def extract_marked_tests(
    name: str,
    contents: str,
    start_marker: str,
    end_marker: str,
) -> TestFile:
    """Extract the tests of every marker-delimited block of a file."""
    tests: List[Test] = []
    for line_offset, block in find_marked_blocks(contents, start_marker, end_marker, name):
        tests.extend(extract_tests_from_string(block, source=name, line_offset=line_offset))
    return TestFile(name=name, tests=tuple(tests))


def extract_all_tests(name: str, contents: str) -> TestFile:
    """Extract tests treating the whole file as one test block."""
    return TestFile(name=name, tests=tuple(extract_tests_from_string(contents, source=name)))


def extract_tests_from_path(path: Path, start_marker: str, end_marker: str) -> TestFile:
    """
    Read a file and extract its tests.

    Raises:
        ExtractionError: The file cannot be read or contains a malformed block
    """
    name = str(path)
    try:
        contents = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ExtractionError(f"could not read file: {e}", source=name)

    if path.suffix.lower() in WHOLE_FILE_EXTENSIONS:
        return extract_all_tests(name, contents)
    return extract_marked_tests(name, contents, start_marker, end_marker)


def collect_input_files(
    paths: Iterable[Path],
    extensions: Tuple[str, ...] = TEST_FILE_EXTENSIONS,
) -> List[Path]:
    """
    Expand input paths into the list of files to read.

    Files given directly are always included. Directories are walked
    recursively in sorted order, skipping hidden entries and keeping only
    files with a known extension.
    """
    files: List[Path] = []

    for path in paths:
        if path.is_file():
            files.append(path)
        elif path.is_dir():
            for candidate in sorted(path.rglob("*")):
                relative = candidate.relative_to(path)
                if any(part.startswith('.') for part in relative.parts):
                    continue
                if candidate.is_file() and candidate.suffix.lower() in extensions:
                    files.append(candidate)

    return files


def discover_test_files(
    paths: Iterable[Path],
    start_marker: str = "/*--[sql-tests]",
    end_marker: str = "*/",
) -> Tuple[List[TestFile], List[ExtractionError]]:
    """
    Extract tests from every input file.

    Errors do not stop discovery; they are collected so they can all be
    reported together before anything runs.

    Returns:
        (files that contain at least one test, extraction errors)
    """
    test_files: List[TestFile] = []
    errors: List[ExtractionError] = []

    for path in collect_input_files(paths):
        try:
            test_file = extract_tests_from_path(path, start_marker, end_marker)
        except ExtractionError as e:
            errors.append(e)
            continue
        if test_file.tests:
            test_files.append(test_file)

    return test_files, errors


def get_test_summary(files: List[TestFile]) -> Dict[str, Any]:
    """Summary statistics about discovered tests."""
    stateless_files = [f for f in files if f.stateless]
    return {
        "files": len(files),
        "total": sum(len(f.tests) for f in files),
        "stateless_files": len(stateless_files),
        "stateful_files": len(files) - len(stateless_files),
        "unchecked": sum(1 for f in files for t in f.tests if t.ignore_output),
    }
