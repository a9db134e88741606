"""
Data models for sqldoctest.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union


Row = Tuple[str, ...]
Table = Tuple[Row, ...]


@dataclass(frozen=True)
class Test:
    """A single SQL example extracted from a test block."""
    __test__ = False  # not a pytest test class

    line: int
    header: str
    text: str
    output: Table = ()
    transactional: bool = True
    ignore_output: bool = False


@dataclass(frozen=True)
class TestFile:
    """All tests extracted from one source file, in source order."""
    __test__ = False

    name: str
    tests: Tuple[Test, ...] = ()

    @property
    def stateless(self) -> bool:
        """True iff every test runs inside a rolled-back transaction."""
        return all(test.transactional for test in self.tests)


@dataclass(frozen=True)
class QueryError:
    """The engine rejected the query; no rows were produced."""
    message: str


@dataclass(frozen=True)
class WrongNumberOfRows:
    """The query returned a different number of rows than expected."""
    received: Table
    expected: int
    found: int


@dataclass(frozen=True)
class MismatchedValues:
    """Row count matched but at least one cell differs."""
    received: Table


FailureInfo = Union[QueryError, WrongNumberOfRows, MismatchedValues]


@dataclass(frozen=True)
class TestOutcome:
    """Result of running one test. ``failure`` is None when it passed."""
    __test__ = False

    file_name: str
    test: Test
    failure: Optional[FailureInfo] = None

    @property
    def passed(self) -> bool:
        return self.failure is None


@dataclass
class RunSummary:
    """Aggregated result of a whole run."""
    total: int = 0
    failures: List[TestOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def passed(self) -> int:
        return self.total - len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record(self, outcome: TestOutcome) -> None:
        self.total += 1
        if not outcome.passed:
            self.failures.append(outcome)

    def merge(self, other: "RunSummary") -> None:
        self.total += other.total
        self.failures.extend(other.failures)


@dataclass
class RunConfig:
    """Configuration for a test run."""
    host: str = "localhost"
    port: int = 1763
    password: Optional[str] = None
    role: str = "postgres"  # Login role tests run as
    superuser: str = "sqldoctest"  # Bootstrap superuser of the fresh cluster
    pg_config: str = "pg_config"
    start_marker: str = "/*--[sql-tests]"
    end_marker: str = "*/"
    pool_size: int = 4  # Sessions shared by stateless tests
    pipeline_size: int = 4  # Stateful files in flight
    health_timeout: float = 60.0
    health_interval: float = 1.0
    log_dir: Path = field(default_factory=lambda: Path("."))
    verbose: bool = False
