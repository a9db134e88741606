"""
Reporting and TUI output for sqldoctest.

Uses Rich library for terminal output: per-file headers, a status line per
test, failure details with expected/received tables and a diff, and the
final summary.
"""

import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text
from rich.tree import Tree

from .models import QueryError, RunConfig, RunSummary, TestFile, TestOutcome
from .parser import ExtractionError
from .validation import render_diff, stringify_table


class TestReporter:
    """
    Main reporter class for test output.

    Handles streaming per-test results and final summary output.
    """
    __test__ = False

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        no_color: bool = False,
        console: Optional[Console] = None,
    ):
        """
        Initialize reporter.

        Args:
            verbose: Also print tests whose output is not checked as such
            quiet: Minimal output (only failures and summary)
            no_color: Disable colored output
            console: Console to write to (a new stdout console by default)
        """
        self.verbose = verbose
        self.quiet = quiet
        self.no_color = no_color
        self.console = console or Console(no_color=no_color, highlight=False)

        self._current_file: Optional[str] = None

    def print(self, message: str, style: Optional[str] = None) -> None:
        """Print a message to the console."""
        if self.quiet:
            return
        self.console.print(message, style=style)

    def print_error(self, message: str) -> None:
        """Print an error message (always shown, even in quiet mode)."""
        self.console.print(f"[bold red]Error:[/bold red] {escape(message)}")

    def print_extraction_errors(self, errors: List[ExtractionError]) -> None:
        """Print every extraction error collected during discovery."""
        self.console.print(
            f"[bold red]Error:[/bold red] could not extract tests "
            f"({len(errors)} error{'s' if len(errors) != 1 else ''})"
        )
        for error in errors:
            self.console.print(f"  {escape(str(error))}")

    def print_header(self, files: List[TestFile]) -> None:
        """Print test run header."""
        if self.quiet:
            return
        total = sum(len(f.tests) for f in files)
        self.console.print(f"running [cyan]{total}[/cyan] tests from {len(files)} files")

    def _print_file_header(self, file_name: str) -> None:
        self.console.print()
        self.console.print(f"[bold blue]File[/bold blue]: {escape(file_name)}")
        self.console.print()

    def report_outcome(self, outcome: TestOutcome) -> None:
        """
        Print the status line of one test.

        Outcomes arrive grouped by file; a header is printed whenever the
        file changes.
        """
        if self.quiet:
            return

        if outcome.file_name != self._current_file:
            self._current_file = outcome.file_name
            self._print_file_header(outcome.file_name)

        test = outcome.test
        line = Text(f"test {test.header} ")
        line.append(f"(line {test.line})", style="dim")
        line.append(" ... ")
        if not outcome.passed:
            line.append("FAILED", style="bold red")
        elif test.ignore_output and self.verbose:
            line.append("ok (output not checked)", style="green")
        else:
            line.append("ok", style="green")
        self.console.print(line)

    def print_failures(self, summary: RunSummary) -> None:
        """Print the details of every failure, grouped by file."""
        if not summary.failures:
            return

        by_file: Dict[str, List[TestOutcome]] = {}
        for outcome in summary.failures:
            by_file.setdefault(outcome.file_name, []).append(outcome)

        self.console.print()
        self.console.print("[bold blue]Failures[/bold blue]:")
        for file_name, outcomes in by_file.items():
            self._print_file_header(file_name)
            for outcome in outcomes:
                self._print_failure_details(outcome)

    def _print_failure_details(self, outcome: TestOutcome) -> None:
        """Print detailed failure information."""
        test = outcome.test
        failure = outcome.failure
        name = Text(test.header or "<unnamed>", style="bold")
        name.append(f" (line {test.line})", style="dim")

        if isinstance(failure, QueryError):
            name.append(" failed due to ")
            name.append("error", style="red")
            name.append(":")
            self.console.print(name)
            self.console.print(Text(failure.message))
            self.console.print()
            return

        name.append(" failed with:")
        self.console.print(name)
        self.console.print()

        received = failure.received
        self.console.print("Expected", style="blue")
        self.console.print(Text(stringify_table(test.output)))
        self.console.print(f"({len(test.output)} rows)", style="dim")
        self.console.print("Received", style="blue")
        self.console.print(Text(stringify_table(received)))
        self.console.print(f"({len(received)} rows)", style="dim")
        self.console.print()
        self.console.print("Diff", style="blue")
        self.console.print(render_diff(test.output, received))
        self.console.print()

    def print_summary(self, summary: RunSummary) -> None:
        """
        Print final test summary.

        Args:
            summary: Summary of the run
        """
        counts = f"{summary.passed} passed; {len(summary.failures)} failed"
        if summary.ok:
            text = f"test result: [green bold]ok[/green bold]. {counts}"
            border_style = "green"
        else:
            text = f"test result: [red bold]FAILED[/red bold]. {counts}"
            border_style = "red"

        self.console.print()
        self.console.print(Panel(
            f"{text} [dim]({summary.duration_seconds:.2f}s)[/dim]",
            title="Results",
            border_style=border_style,
        ))

    def print_test_list(self, files: List[TestFile]) -> None:
        """
        Print list of discovered tests.

        Useful for --list flag.
        """
        if not files:
            self.print("No tests found.")
            return

        tree = Tree("[bold]Tests[/bold]")
        for test_file in files:
            kind = "[blue]stateless[/blue]" if test_file.stateless else "[yellow]stateful[/yellow]"
            branch = tree.add(f"[cyan]{escape(test_file.name)}[/cyan] {kind}")
            for test in test_file.tests:
                flags = []
                if not test.transactional:
                    flags.append("[yellow]non-transactional[/yellow]")
                if test.ignore_output:
                    flags.append("[dim]output not checked[/dim]")
                flags_str = " " + " ".join(flags) if flags else ""
                branch.add(f"{escape(test.header or '<unnamed>')} [dim]line {test.line}[/dim]{flags_str}")

        self.console.print(tree)


def write_json_report(
    summary: RunSummary,
    output_path: Path,
    config: Optional[RunConfig] = None,
) -> None:
    """
    Write the failures of a run to a JSON file.

    Args:
        summary: Summary of the run
        output_path: Path to output JSON file
        config: Run configuration (optional; the password is left out)
    """
    config_data: Optional[Dict[str, Any]] = None
    if config:
        config_data = asdict(config)
        config_data.pop("password", None)

    report = {
        "timestamp": datetime.now().isoformat(),
        "duration_seconds": summary.duration_seconds,
        "summary": {
            "total": summary.total,
            "passed": summary.passed,
            "failed": len(summary.failures),
        },
        "config": config_data,
        "failures": [
            {
                "file": outcome.file_name,
                "line": outcome.test.line,
                "header": outcome.test.header,
                "query": outcome.test.text,
                "expected": outcome.test.output,
                "kind": type(outcome.failure).__name__,
                "failure": asdict(outcome.failure),
            }
            for outcome in summary.failures
        ],
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(report, indent=2, default=str))
