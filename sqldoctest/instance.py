"""
Ephemeral PostgreSQL instance for sqldoctest.

PostgresInstance creates a throwaway cluster, starts a postmaster on it,
waits until it accepts connections, and tears everything down when the
``with`` block exits, however it exits::

    with PostgresInstance(engine) as instance:
        run_tests(engine, files, config)

Teardown runs exactly once. If the postmaster died on its own, its logs are
kept under crash names and the data directory is left for inspection.
Otherwise the postmaster is stopped, its logs are kept, and the data
directory is removed.
"""

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .database import DatabaseError, PostgresEngine


logger = logging.getLogger(__name__)

# POSIX platforms get a SIGTERM (smart shutdown), others a hard kill
CAN_SIGNAL = hasattr(os, "killpg")

TEMP_STDOUT_LOG = "postmaster-stdout.temp.log"
TEMP_STDERR_LOG = "postmaster-stderr.temp.log"
STDOUT_LOG = "postmaster-out.log"
STDERR_LOG = "postmaster-err.log"
CRASH_STDOUT_LOG = "postmaster-crash-out.log"
CRASH_STDERR_LOG = "postmaster-crash-err.log"


class EngineStartupError(Exception):
    """The instance could not be initialized, started, or reached."""
    pass


class ShutdownError(Exception):
    """The postmaster could not be stopped during teardown."""
    pass


class InstanceState(str, Enum):
    """Lifecycle state of a PostgresInstance."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CRASHED = "crashed"
    TERMINATED = "terminated"


def locate_engine(pg_config: str = "pg_config", **kwargs: Any) -> PostgresEngine:
    """
    Build an engine from the binaries pg_config points at.

    Raises:
        EngineStartupError: pg_config is missing or failed
    """
    try:
        return PostgresEngine.from_pg_config(pg_config, **kwargs)
    except DatabaseError as e:
        raise EngineStartupError(str(e)) from e


def terminate(process: subprocess.Popen) -> None:
    """
    Ask a process to exit.

    Raises:
        OSError: The signal could not be delivered
    """
    if CAN_SIGNAL:
        process.send_signal(signal.SIGTERM)
    else:
        process.kill()


class PostgresInstance:
    """
    Owner of the postmaster process and its data directory.

    No other component touches either; they only talk to the server
    through the engine's connections.
    """

    def __init__(
        self,
        engine: PostgresEngine,
        log_dir: Path = Path("."),
        health_timeout: float = 60.0,
        health_interval: float = 1.0,
    ):
        """
        Args:
            engine: Control plane used to init, spawn and check the server
            log_dir: Directory receiving the postmaster logs
            health_timeout: Seconds to wait for the server to accept connections
            health_interval: Seconds between two readiness checks
        """
        self.engine = engine
        self.log_dir = log_dir
        self.health_timeout = health_timeout
        self.health_interval = health_interval

        self.state = InstanceState.UNINITIALIZED
        self.storage_dir: Optional[Path] = None
        self.process: Optional[subprocess.Popen] = None
        self.shutdown_error: Optional[ShutdownError] = None
        self._closed = False

    @property
    def data_dir(self) -> Optional[Path]:
        return self.storage_dir / "data" if self.storage_dir else None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def __enter__(self) -> "PostgresInstance":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def start(self) -> None:
        """
        Initialize, spawn and health-check the instance.

        On failure the instance is torn down before the error propagates.

        Raises:
            EngineStartupError: Any step failed
        """
        try:
            self._initialize()
            self._spawn()
            self._wait_until_ready()
        except BaseException:
            self.close()
            raise

        self.state = InstanceState.READY
        logger.info(
            "Postmaster running on port %s with PID %s", self.engine.port, self.pid
        )

    def _initialize(self) -> None:
        self.state = InstanceState.INITIALIZING
        self.storage_dir = Path(tempfile.mkdtemp(prefix="sqldoctest-"))
        logger.info("Initializing DB at %s", self.data_dir)

        try:
            self.engine.init_storage(self.data_dir)
        except DatabaseError as e:
            raise EngineStartupError(str(e)) from e

    def _spawn(self) -> None:
        self.state = InstanceState.STARTING
        logger.info("Starting postmaster...")

        self.log_dir.mkdir(parents=True, exist_ok=True)
        try:
            # The child keeps its own copies of the descriptors
            with open(self.log_dir / TEMP_STDOUT_LOG, "w") as out, \
                    open(self.log_dir / TEMP_STDERR_LOG, "w") as err:
                self.process = self.engine.spawn(self.data_dir, self.storage_dir, out, err)
        except OSError as e:
            raise EngineStartupError(f"could not start postmaster: {e}") from e

    def _wait_until_ready(self) -> None:
        self.state = InstanceState.HEALTH_CHECKING

        deadline = time.monotonic() + self.health_timeout
        while time.monotonic() < deadline:
            if self.engine.is_ready():
                return

            status = self.process.poll()
            if status is not None:
                raise EngineStartupError(f"postmaster failed with exit status {status}")

            time.sleep(self.health_interval)

        raise EngineStartupError(
            f"postmaster did not respond within {self.health_timeout:g} seconds"
        )

    def close(self) -> None:
        """Tear the instance down. Only the first call does anything."""
        if self._closed:
            return
        self._closed = True

        if self.process is None:
            self._discard_logs()
            self._remove_storage()
            self.state = InstanceState.TERMINATED
            return

        status = self.process.poll()
        if status is not None:
            self.state = InstanceState.CRASHED
            logger.error(
                "Postmaster exited unexpectedly with status %s, "
                "data directory kept at %s", status, self.storage_dir,
            )
            self._persist_logs(CRASH_STDOUT_LOG, CRASH_STDERR_LOG)
            self.state = InstanceState.TERMINATED
            return

        self.state = InstanceState.SHUTTING_DOWN
        logger.info("Stopping postmaster (PID %s)...", self.pid)
        try:
            terminate(self.process)
            self.process.wait()
        except (OSError, subprocess.SubprocessError) as e:
            self.shutdown_error = ShutdownError(
                f"could not stop postmaster at PID {self.pid} due to {e}"
            )
            logger.error("%s, data directory left at %s", self.shutdown_error, self.storage_dir)
            return

        logger.info("Postmaster stopped")
        self._persist_logs(STDOUT_LOG, STDERR_LOG)
        self._remove_storage()
        self.state = InstanceState.TERMINATED

    def _persist_logs(self, stdout_name: str, stderr_name: str) -> None:
        for temp_name, name, label in (
            (TEMP_STDOUT_LOG, stdout_name, "stdout"),
            (TEMP_STDERR_LOG, stderr_name, "stderr"),
        ):
            target = self.log_dir / name
            try:
                (self.log_dir / temp_name).replace(target)
            except OSError as e:
                logger.error("Could not keep postmaster %s from %s: %s", label, temp_name, e)
                continue
            logger.info("Postmaster %s can be found in %s", label, target)

    def _discard_logs(self) -> None:
        for name in (TEMP_STDOUT_LOG, TEMP_STDERR_LOG):
            try:
                (self.log_dir / name).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove %s: %s", name, e)

    def _remove_storage(self) -> None:
        if self.storage_dir is None:
            return
        try:
            shutil.rmtree(self.storage_dir)
        except OSError as e:
            logger.warning("Could not remove %s: %s", self.storage_dir, e)
