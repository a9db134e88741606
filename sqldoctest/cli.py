"""
CLI entry point for sqldoctest.

Uses Click for argument parsing and provides a clean interface
for running SQL examples from the command line.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .database import DatabaseError
from .discovery import discover_test_files, get_test_summary
from .instance import EngineStartupError, PostgresInstance, locate_engine
from .models import RunConfig
from .reporting import TestReporter, write_json_report
from .runner import run_tests


DEFAULT_START_MARKER = "/*--[sql-tests]"
DEFAULT_END_MARKER = "*/"


def _non_empty_marker(ctx: click.Context, param: click.Parameter, value: str) -> str:
    if not value:
        raise click.BadParameter("marker must not be empty")
    return value


def configure_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Send sqldoctest's log records to stderr through Rich."""
    logger = logging.getLogger("sqldoctest")
    logger.handlers.clear()
    logger.addHandler(RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_time=False,
        show_path=False,
    ))
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


@click.command()
@click.argument(
    "paths",
    nargs=-1,
    type=click.Path(),
)
@click.option(
    "-h", "--host",
    default="localhost",
    envvar="SQLDOCTEST_HOST",
    help="Host the test server listens on (default: localhost)",
)
@click.option(
    "-p", "--port",
    default=1763,
    type=int,
    envvar="SQLDOCTEST_PORT",
    help="Port the test server listens on (default: 1763)",
)
@click.option(
    "-a", "--password",
    envvar="SQLDOCTEST_PASSWORD",
    help="Password for test connections",
)
@click.option(
    "-s", "--start-marker",
    default=DEFAULT_START_MARKER,
    callback=_non_empty_marker,
    help=f"Marker opening a block of tests (default: {DEFAULT_START_MARKER})",
)
@click.option(
    "-e", "--end-marker",
    default=DEFAULT_END_MARKER,
    callback=_non_empty_marker,
    help=f"Marker closing a block of tests (default: {DEFAULT_END_MARKER})",
)
@click.option(
    "--pg-config",
    default="pg_config",
    envvar="SQLDOCTEST_PG_CONFIG",
    help="pg_config used to locate the PostgreSQL binaries",
)
@click.option(
    "--role",
    default="postgres",
    help="Role the tests connect as (default: postgres)",
)
@click.option(
    "-j", "--jobs",
    default=4,
    type=click.IntRange(min=1),
    help="Sessions running stateless tests concurrently (default: 4)",
)
@click.option(
    "--pipeline",
    default=4,
    type=click.IntRange(min=1),
    help="Stateful files running concurrently (default: 4)",
)
@click.option(
    "--log-dir",
    default=".",
    type=click.Path(file_okay=False),
    help="Directory receiving the postmaster logs (default: .)",
)
@click.option(
    "--json",
    "json_output",
    type=click.Path(),
    help="Write JSON report to file",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Verbose output",
)
@click.option(
    "-q", "--quiet",
    is_flag=True,
    help="Quiet mode (failures and summary only)",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "--list", "list_tests",
    is_flag=True,
    help="List tests without running them",
)
@click.version_option(version=__version__, prog_name="sqldoctest")
def main(
    paths: Tuple[str, ...],
    host: str,
    port: int,
    password: Optional[str],
    start_marker: str,
    end_marker: str,
    pg_config: str,
    role: str,
    jobs: int,
    pipeline: int,
    log_dir: str,
    json_output: Optional[str],
    verbose: bool,
    quiet: bool,
    no_color: bool,
    list_tests: bool,
):
    """
    Run the SQL examples found in PATHS against a throwaway PostgreSQL.

    \b
    Examples:
        sqldoctest docs/                # every .md, .rs, .c, .h, .sql file
        sqldoctest README.md            # a single file
        sqldoctest -j 8 src/            # 8 sessions for stateless tests
        sqldoctest --list docs/         # list tests
    """
    exit_code = run_cli(
        paths=paths,
        host=host,
        port=port,
        password=password,
        start_marker=start_marker,
        end_marker=end_marker,
        pg_config=pg_config,
        role=role,
        jobs=jobs,
        pipeline=pipeline,
        log_dir=log_dir,
        json_output=json_output,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        list_tests=list_tests,
    )
    sys.exit(exit_code)


def run_cli(
    paths: Tuple[str, ...] = (),
    host: str = "localhost",
    port: int = 1763,
    password: Optional[str] = None,
    start_marker: str = DEFAULT_START_MARKER,
    end_marker: str = DEFAULT_END_MARKER,
    pg_config: str = "pg_config",
    role: str = "postgres",
    jobs: int = 4,
    pipeline: int = 4,
    log_dir: str = ".",
    json_output: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    no_color: bool = False,
    list_tests: bool = False,
) -> int:
    """
    Main CLI logic (can be called programmatically).

    Returns exit code (0 for success, 1 for failures or errors).
    """
    reporter = TestReporter(verbose=verbose, quiet=quiet, no_color=no_color)
    configure_logging(verbose=verbose, no_color=no_color)

    if not paths:
        reporter.print_error("no input files provided")
        return 1

    input_paths = [Path(p) for p in paths]
    for path in input_paths:
        if not path.exists():
            reporter.print_error(f"Path does not exist: {path}")
            return 1

    # Every file is extracted before anything starts, so all errors show up at once
    files, errors = discover_test_files(input_paths, start_marker, end_marker)
    if errors:
        reporter.print_extraction_errors(errors)
        return 1

    if list_tests:
        reporter.print_test_list(files)
        summary = get_test_summary(files)
        reporter.print(
            f"\nTotal: {summary['total']} tests in {summary['files']} files "
            f"({summary['stateless_files']} stateless, {summary['stateful_files']} stateful)"
        )
        return 0

    if not files:
        reporter.print("No tests found.", style="yellow")
        return 0

    config = RunConfig(
        host=host,
        port=port,
        password=password,
        role=role,
        pg_config=pg_config,
        start_marker=start_marker,
        end_marker=end_marker,
        pool_size=jobs,
        pipeline_size=pipeline,
        log_dir=Path(log_dir),
        verbose=verbose,
    )

    try:
        engine = locate_engine(
            config.pg_config,
            host=config.host,
            port=config.port,
            superuser=config.superuser,
            password=config.password,
        )
        with PostgresInstance(
            engine,
            log_dir=config.log_dir,
            health_timeout=config.health_timeout,
            health_interval=config.health_interval,
        ):
            reporter.print_header(files)
            summary = run_tests(engine, files, config, on_test_complete=reporter.report_outcome)
            reporter.print_failures(summary)
            reporter.print_summary(summary)
    except EngineStartupError as e:
        reporter.print_error(f"could not start PostgreSQL: {e}")
        return 1
    except DatabaseError as e:
        reporter.print_error(f"test run aborted: {e}")
        return 1

    if json_output:
        write_json_report(summary, Path(json_output), config)
        reporter.print(f"\nJSON report written to {json_output}")

    return 0 if summary.ok else 1


if __name__ == "__main__":
    main()
