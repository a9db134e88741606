"""
Test execution engine for sqldoctest.

Stateless files (every test transactional) share one database and a
fixed pool of sessions: each test runs inside a transaction that is always
rolled back, on whichever session is free. Results are reported in
dispatch order, not completion order.

Stateful files each get their own database and a single session; their
tests run strictly in source order so later tests see what earlier
non-transactional tests committed. A bounded number of stateful files
run at the same time.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, List, Optional

from .database import DatabaseError, PostgresEngine, Session
from .models import FailureInfo, QueryError, RunConfig, RunSummary, Test, TestFile, TestOutcome
from .validation import validate_output


logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[TestOutcome], None]


class BootstrapGuard:
    """
    Creates the test role at most once per run.

    Shared by both scheduling strategies; whoever gets there first
    does the work, everyone else waits for it.
    """

    def __init__(self, engine: PostgresEngine, role: str):
        self.engine = engine
        self.role = role
        self._lock = asyncio.Lock()
        self._done = False

    async def ensure(self) -> None:
        async with self._lock:
            if self._done:
                return
            await self.engine.ensure_role(self.role)
            self._done = True


class TestRunner:
    """
    Main test execution engine.

    Handles:
    - Partitioning files into stateless and stateful groups
    - Pooled execution of stateless tests with ordered reporting
    - Pipelined execution of stateful files
    - Database setup and cleanup
    - Result collection and callbacks
    """
    __test__ = False

    def __init__(
        self,
        engine: PostgresEngine,
        config: RunConfig,
        on_test_complete: Optional[OutcomeCallback] = None,
    ):
        """
        Initialize test runner.

        Args:
            engine: Engine used to create databases and open sessions
            config: Run configuration
            on_test_complete: Callback receiving each TestOutcome, in report order
        """
        self.engine = engine
        self.config = config
        self.on_test_complete = on_test_complete
        self.bootstrap = BootstrapGuard(engine, config.role)

    async def run_all(self, files: List[TestFile]) -> RunSummary:
        """
        Execute all tests: stateless files first, then stateful ones.

        Returns:
            Summary of the whole run
        """
        start_time = time.perf_counter()

        stateless = [f for f in files if f.stateless]
        stateful = [f for f in files if not f.stateless]

        summary = RunSummary()
        summary.merge(await self.run_stateless(stateless))
        summary.merge(await self.run_stateful(stateful))
        summary.duration_seconds = time.perf_counter() - start_time
        return summary

    # ------------------------------------------------------------------
    # Stateless tests
    # ------------------------------------------------------------------

    async def run_stateless(self, files: List[TestFile]) -> RunSummary:
        """Run transactional-only files on a shared database and session pool."""
        summary = RunSummary()
        if not any(f.tests for f in files):
            return summary

        dbname = f"sqldoctest_stateless_{uuid.uuid4().hex[:8]}"
        await self.bootstrap.ensure()
        await self.engine.create_database(dbname, owner=self.config.role)
        try:
            sessions = await self._open_sessions(dbname, self.config.pool_size)
            try:
                await self._dispatch_pooled(files, sessions, summary)
            finally:
                for session in sessions:
                    await session.close()
        finally:
            await self._drop_database(dbname)

        return summary

    async def _open_sessions(self, dbname: str, count: int) -> List[Session]:
        results = await asyncio.gather(
            *(self.engine.connect(dbname, self.config.role) for _ in range(count)),
            return_exceptions=True,
        )
        sessions = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for session in sessions:
                await session.close()
            raise errors[0]
        return sessions

    async def _dispatch_pooled(
        self,
        files: List[TestFile],
        sessions: List[Session],
        summary: RunSummary,
    ) -> None:
        """
        Hand every test to the first free session, report in dispatch order.

        Each dispatched test gets a future created at dispatch time. The
        futures go through a queue and are awaited in that order, so a
        slow test holds back the report of faster tests dispatched after
        it, never the other way round.
        """
        loop = asyncio.get_running_loop()
        pool: asyncio.Queue = asyncio.Queue(maxsize=len(sessions))
        for session in sessions:
            pool.put_nowait(session)

        slots: asyncio.Queue = asyncio.Queue()
        workers = set()

        async def dispatch() -> None:
            for test_file in files:
                for test in test_file.tests:
                    session = await pool.get()
                    slot = loop.create_future()
                    slots.put_nowait(slot)
                    worker = asyncio.create_task(
                        self._run_pooled(session, pool, test_file.name, test, slot)
                    )
                    workers.add(worker)
                    worker.add_done_callback(workers.discard)
            slots.put_nowait(None)

        dispatcher = asyncio.create_task(dispatch())
        try:
            while True:
                slot = await slots.get()
                if slot is None:
                    break
                self._report(await slot, summary)
        finally:
            dispatcher.cancel()
            await asyncio.gather(dispatcher, *workers, return_exceptions=True)

    async def _run_pooled(
        self,
        session: Session,
        pool: asyncio.Queue,
        file_name: str,
        test: Test,
        slot: asyncio.Future,
    ) -> None:
        try:
            failure = await self._execute(session, test)
        except Exception as e:
            if not slot.done():
                slot.set_exception(e)
        else:
            if not slot.done():
                slot.set_result(TestOutcome(file_name, test, failure))
        finally:
            pool.put_nowait(session)

    # ------------------------------------------------------------------
    # Stateful tests
    # ------------------------------------------------------------------

    async def run_stateful(self, files: List[TestFile]) -> RunSummary:
        """
        Run each file on its own database, pipeline_size files at a time.

        A file is admitted as soon as another one finishes. Each file's
        results are reported together when it completes.
        """
        summary = RunSummary()
        if not files:
            return summary

        pipeline = asyncio.Semaphore(self.config.pipeline_size)

        async def admit(index: int, test_file: TestFile) -> List[TestOutcome]:
            async with pipeline:
                return await self._run_stateful_file(index, test_file)

        tasks = [
            asyncio.create_task(admit(index, test_file))
            for index, test_file in enumerate(files)
        ]
        try:
            for finished in asyncio.as_completed(tasks):
                for outcome in await finished:
                    self._report(outcome, summary)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return summary

    async def _run_stateful_file(self, index: int, test_file: TestFile) -> List[TestOutcome]:
        dbname = f"sqldoctest_stateful_{index}_{uuid.uuid4().hex[:8]}"
        await self.bootstrap.ensure()
        await self.engine.create_database(dbname, owner=self.config.role)
        try:
            session = await self.engine.connect(dbname, self.config.role)
            try:
                outcomes = []
                for test in test_file.tests:
                    failure = await self._execute(session, test)
                    outcomes.append(TestOutcome(test_file.name, test, failure))
                return outcomes
            finally:
                await session.close()
        finally:
            await self._drop_database(dbname)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _execute(self, session: Session, test: Test) -> Optional[FailureInfo]:
        """
        Run one test on a session and validate its output.

        Transactional tests are rolled back whatever happens; the others
        commit.
        """
        try:
            if test.transactional:
                await session.begin()
                try:
                    rows = await session.execute_query(test.text)
                finally:
                    await self._rollback(session)
            else:
                rows = await session.execute_query(test.text)
        except DatabaseError as e:
            return QueryError(str(e))

        return validate_output(rows, test)

    async def _rollback(self, session: Session) -> None:
        try:
            await session.rollback()
        except DatabaseError as e:
            logger.warning("Rollback failed on %s: %s", session.dbname, e)

    async def _drop_database(self, dbname: str) -> None:
        try:
            await self.engine.drop_database(dbname)
        except DatabaseError as e:
            logger.warning("Could not drop database %s: %s", dbname, e)

    def _report(self, outcome: TestOutcome, summary: RunSummary) -> None:
        summary.record(outcome)
        if self.on_test_complete:
            self.on_test_complete(outcome)


def run_tests(
    engine: PostgresEngine,
    files: List[TestFile],
    config: Optional[RunConfig] = None,
    on_test_complete: Optional[OutcomeCallback] = None,
) -> RunSummary:
    """
    Convenience function to run tests on a fresh event loop.

    Args:
        engine: Engine of a running instance
        files: Test files to run
        config: Run configuration (uses defaults if not provided)
        on_test_complete: Callback receiving each outcome, in report order

    Returns:
        Summary of the run
    """
    if config is None:
        config = RunConfig()

    runner = TestRunner(engine=engine, config=config, on_test_complete=on_test_complete)
    return asyncio.run(runner.run_all(files))
