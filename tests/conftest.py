"""
Shared pytest fixtures for sqldoctest tests.

Most tests run against in-memory fakes of the engine, its sessions and the
postmaster process, so they need no PostgreSQL installation. Tests marked
``@pytest.mark.live`` start a real instance and are skipped unless
``pg_config`` is on PATH.

Fake query language understood by FakeSession (one command per query):

    value <v>            -> one row (v,)
    values <a> <b> ...   -> one row per argument
    pair <a> <b>         -> one row (a, b)
    sleep <secs> <v>     -> waits, then one row (v,)
    insert <v>           -> stores v in the database (no rows)
    select               -> one row per stored value, in insertion order
    error <message>      -> fails with DatabaseError(message)
    null                 -> one row (None,)
    (anything else)      -> no rows

Run tests:
    pytest                  # all tests
    pytest -m "not live"    # skip tests needing PostgreSQL
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import IO, Any

import pytest

from sqldoctest.database import DatabaseError
from sqldoctest.models import RunConfig, Test, TestFile


# ---------------------------------------------------------------------------
# Test data helpers (importable by tests as plain functions)
# ---------------------------------------------------------------------------

def make_test(
    text: str,
    output: tuple[tuple[str, ...], ...] = (),
    *,
    line: int = 1,
    header: str = "`t`",
    transactional: bool = True,
    ignore_output: bool = False,
) -> Test:
    """Build a Test with sensible defaults."""
    return Test(
        line=line,
        header=header,
        text=text,
        output=output,
        transactional=transactional,
        ignore_output=ignore_output,
    )


def make_file(name: str, *tests: Test) -> TestFile:
    """Build a TestFile from tests."""
    return TestFile(name=name, tests=tuple(tests))


# ---------------------------------------------------------------------------
# Fake engine for the runner
# ---------------------------------------------------------------------------

class FakeSession:
    """In-memory session that understands the fake query language."""

    def __init__(self, engine: FakeEngine, dbname: str, role: str) -> None:
        self.engine = engine
        self.dbname = dbname
        self.role = role
        self.in_transaction = False
        self.pending: list[str] = []
        self.closed = False
        self.busy = False

    async def begin(self) -> None:
        self.in_transaction = True
        self.pending = []

    async def rollback(self) -> None:
        self.in_transaction = False
        self.pending = []
        self.engine.rollbacks += 1

    async def execute_query(self, text: str) -> list[tuple[Any, ...]]:
        assert not self.busy, "session used by two tests at once"
        self.busy = True
        self.engine.in_flight += 1
        self.engine.max_in_flight = max(self.engine.max_in_flight, self.engine.in_flight)
        self.engine.queries.append((self.dbname, text))
        try:
            return await self._run(text)
        finally:
            self.engine.in_flight -= 1
            self.busy = False

    async def _run(self, text: str) -> list[tuple[Any, ...]]:
        command, _, rest = text.strip().partition(" ")
        args = rest.split()
        table = self.engine.tables[self.dbname]

        if command == "value":
            return [(args[0],)]
        if command == "values":
            return [(a,) for a in args]
        if command == "pair":
            return [(args[0], args[1])]
        if command == "sleep":
            await asyncio.sleep(float(args[0]))
            return [(args[1],)]
        if command == "insert":
            if self.in_transaction:
                self.pending.append(args[0])
            else:
                table.append(args[0])
            return []
        if command == "select":
            return [(v,) for v in table + self.pending]
        if command == "error":
            raise DatabaseError(rest)
        if command == "null":
            return [(None,)]
        return []

    async def close(self) -> None:
        self.closed = True


class FakeEngine:
    """Stands in for PostgresEngine's database operations."""

    def __init__(self) -> None:
        self.port = 1763
        self.roles: list[str] = []
        self.ensure_role_calls = 0
        self.created: list[str] = []
        self.dropped: list[str] = []
        self.tables: dict[str, list[str]] = {}
        self.sessions: list[FakeSession] = []
        self.queries: list[tuple[str, str]] = []
        self.rollbacks = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.live_databases = 0
        self.max_live_databases = 0
        self.fail_create = False

    async def ensure_role(self, role: str) -> None:
        self.ensure_role_calls += 1
        # Let concurrent callers pile up on the guard
        await asyncio.sleep(0)
        if role not in self.roles:
            self.roles.append(role)

    async def create_database(self, name: str, owner: str) -> None:
        if self.fail_create:
            raise DatabaseError(f"could not create {name}")
        assert name not in self.tables, f"database {name} created twice"
        assert owner in self.roles, "database created before its owner role"
        self.created.append(name)
        self.tables[name] = []
        self.live_databases += 1
        self.max_live_databases = max(self.max_live_databases, self.live_databases)

    async def drop_database(self, name: str) -> None:
        self.dropped.append(name)
        self.live_databases -= 1

    async def connect(self, dbname: str, role: str) -> FakeSession:
        assert dbname in self.tables, f"connect to unknown database {dbname}"
        session = FakeSession(self, dbname, role)
        self.sessions.append(session)
        return session


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def config() -> RunConfig:
    return RunConfig(pool_size=2, pipeline_size=2)


# ---------------------------------------------------------------------------
# Fake postmaster for the instance lifecycle
# ---------------------------------------------------------------------------

class FakeProcess:
    """Mimics the parts of subprocess.Popen the instance uses."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.signals: list[int] = []
        self.killed = False
        self.signal_error: OSError | None = None

    def poll(self) -> int | None:
        return self.returncode

    def send_signal(self, sig: int) -> None:
        if self.signal_error:
            raise self.signal_error
        self.signals.append(sig)
        self.returncode = 0

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode


class FakeServerEngine:
    """Stands in for PostgresEngine's process control."""

    def __init__(self, ready_after: int = 0) -> None:
        self.port = 1763
        self.process = FakeProcess()
        self.ready_after = ready_after
        self.ready_checks = 0
        self.init_error: DatabaseError | None = None
        self.spawn_error: OSError | None = None
        self.exit_status_during_check: int | None = None
        self.data_dirs: list[Path] = []

    def init_storage(self, data_dir: Path) -> None:
        if self.init_error:
            raise self.init_error
        data_dir.mkdir(parents=True)
        (data_dir / "PG_VERSION").write_text("16\n")
        self.data_dirs.append(data_dir)

    def spawn(self, data_dir: Path, socket_dir: Path, stdout: IO[Any], stderr: IO[Any]) -> FakeProcess:
        if self.spawn_error:
            raise self.spawn_error
        stdout.write("postmaster says hi\n")
        stderr.write("LOG:  database system is ready to accept connections\n")
        return self.process

    def is_ready(self) -> bool:
        self.ready_checks += 1
        if self.exit_status_during_check is not None:
            self.process.returncode = self.exit_status_during_check
            return False
        return self.ready_after is not None and self.ready_checks > self.ready_after


@pytest.fixture()
def server_engine() -> FakeServerEngine:
    return FakeServerEngine()


# ---------------------------------------------------------------------------
# Live PostgreSQL
# ---------------------------------------------------------------------------

def pg_bindir() -> Path | None:
    """bindir of the local PostgreSQL installation, or None."""
    try:
        result = subprocess.run(
            ["pg_config", "--bindir"], capture_output=True, text=True, timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    bindir = Path(result.stdout.strip())
    return bindir if (bindir / "initdb").exists() else None
