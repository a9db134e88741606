"""
sqldoctest - SQL example test runner

Runs the SQL examples embedded in documentation and source comments
against a throwaway PostgreSQL instance and checks their output.
"""

from .database import DatabaseError, PostgresEngine
from .discovery import discover_test_files
from .instance import EngineStartupError, PostgresInstance
from .models import RunConfig, RunSummary, Test, TestFile, TestOutcome
from .parser import ExtractionError, extract_tests_from_string
from .runner import run_tests

__version__ = "0.1.0"
__all__ = [
    "DatabaseError",
    "EngineStartupError",
    "ExtractionError",
    "PostgresEngine",
    "PostgresInstance",
    "RunConfig",
    "RunSummary",
    "Test",
    "TestFile",
    "TestOutcome",
    "discover_test_files",
    "extract_tests_from_string",
    "run_tests",
]
