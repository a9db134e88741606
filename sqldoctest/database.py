"""
Database access for sqldoctest.

PostgresEngine wraps the PostgreSQL server binaries (initdb, postgres,
pg_isready) and the administrative connection used to create roles and
databases. Session wraps one async psycopg connection used to run tests.
"""

import logging
import subprocess
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Sequence

import psycopg
from psycopg import sql
from psycopg.postgres import types as builtin_types
from psycopg.types.string import TextLoader


logger = logging.getLogger(__name__)

# Settings appended to postgresql.conf of every fresh cluster
POSTGRES_CONF_ADDITIONS = """
# Configuration added by sqldoctest
log_autovacuum_min_duration = 0
log_checkpoints = on
log_line_prefix = '%m %b[%p] %q%a '
log_lock_waits = on
log_temp_files = 128kB
max_prepared_transactions = 2
"""

APPLICATION_NAME = "sqldoctest"
CONNECT_TIMEOUT = 10
READY_TIMEOUT = 10


class DatabaseError(Exception):
    """Exception raised for database-related errors."""
    pass


def find_bindir(pg_config: str = "pg_config") -> Path:
    """
    Locate the PostgreSQL binaries through ``pg_config --bindir``.

    Raises:
        DatabaseError: pg_config is missing or fails
    """
    try:
        result = subprocess.run(
            [pg_config, "--bindir"],
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
    except FileNotFoundError:
        raise DatabaseError(f"`{pg_config}` not found, is PostgreSQL installed?")
    except subprocess.CalledProcessError as e:
        raise DatabaseError(f"`{pg_config} --bindir` failed:\n{e.stderr}")
    except subprocess.TimeoutExpired:
        raise DatabaseError(f"`{pg_config} --bindir` timed out")
    return Path(result.stdout.strip())


def use_text_loaders(conn: psycopg.AsyncConnection) -> None:
    """
    Load every built-in type as the text the server sent.

    Values then look exactly like psql prints them (``t`` for true,
    ``{1,2}`` for arrays). Types unknown to psycopg already load as text.
    """
    for info in builtin_types:
        conn.adapters.register_loader(info.oid, TextLoader)
        if info.array_oid:
            conn.adapters.register_loader(info.array_oid, TextLoader)


class Session:
    """
    One connection used to run tests.

    The connection is in autocommit mode: statements outside of
    begin()/rollback() are committed immediately.
    """

    def __init__(self, conn: psycopg.AsyncConnection):
        self._conn = conn

    @property
    def dbname(self) -> str:
        return self._conn.info.dbname

    async def _run(self, statement: str) -> None:
        try:
            await self._conn.execute(statement)
        except psycopg.Error as e:
            raise DatabaseError(_describe_error(e)) from e

    async def begin(self) -> None:
        await self._run("BEGIN")

    async def rollback(self) -> None:
        await self._run("ROLLBACK")

    async def execute_query(self, text: str) -> List[Sequence[Any]]:
        """
        Run query text, which may hold several statements.

        Returns:
            Rows of the first result set, empty if it returned no rows

        Raises:
            DatabaseError: The server reported an error
        """
        try:
            async with self._conn.cursor() as cur:
                await cur.execute(text)
                if cur.description is None:
                    return []
                return await cur.fetchall()
        except psycopg.Error as e:
            raise DatabaseError(_describe_error(e)) from e

    async def close(self) -> None:
        try:
            await self._conn.close()
        except psycopg.Error as e:
            logger.debug("Error closing session on %s: %s", self.dbname, e)


def _describe_error(error: psycopg.Error) -> str:
    message = str(error).strip()
    if error.sqlstate:
        message = f"{message} (SQLSTATE {error.sqlstate})"
    return message


class PostgresEngine:
    """
    Control plane of a PostgreSQL installation.

    Process-level operations (init_storage, spawn, is_ready) are blocking and
    meant for the instance lifecycle. Database operations are coroutines.
    """

    def __init__(
        self,
        bindir: Path,
        host: str = "localhost",
        port: int = 1763,
        superuser: str = "sqldoctest",
        password: Optional[str] = None,
    ):
        self.bindir = bindir
        self.host = host
        self.port = port
        self.superuser = superuser
        self.password = password

    @classmethod
    def from_pg_config(cls, pg_config: str = "pg_config", **kwargs: Any) -> "PostgresEngine":
        return cls(find_bindir(pg_config), **kwargs)

    def _binary(self, name: str) -> str:
        return str(self.bindir / name)

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------

    def init_storage(self, data_dir: Path) -> None:
        """
        Create a new cluster in data_dir and append our logging settings.

        Raises:
            DatabaseError: initdb failed (message holds its output)
        """
        try:
            result = subprocess.run(
                [
                    self._binary("initdb"),
                    "-D", str(data_dir),
                    "-U", self.superuser,
                    "--auth=trust",
                    "--no-clean",
                    "--no-sync",
                ],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise DatabaseError(f"could not run initdb: {e}")

        if result.returncode != 0:
            raise DatabaseError(
                f"initdb failed with\nout:\n{result.stdout}\nerr:\n{result.stderr}"
            )

        conf_path = data_dir / "postgresql.conf"
        try:
            with conf_path.open("a") as conf:
                conf.write(POSTGRES_CONF_ADDITIONS)
        except OSError as e:
            raise DatabaseError(f"failed to write to `{conf_path}` due to {e}")

    def spawn(
        self,
        data_dir: Path,
        socket_dir: Path,
        stdout: IO[Any],
        stderr: IO[Any],
    ) -> subprocess.Popen:
        """Start the postmaster. Its output goes to the given files."""
        return subprocess.Popen(
            [
                self._binary("postgres"),
                "-D", str(data_dir),
                "-F",
                "-c", f"port={self.port}",
                "-c", f"listen_addresses={self.host}",
                "-c", f"unix_socket_directories={socket_dir}",
            ],
            stdout=stdout,
            stderr=stderr,
            # Keep terminal signals (Ctrl-C) away from the server
            start_new_session=True,
        )

    def is_ready(self) -> bool:
        """Return True if the server accepts connections."""
        try:
            result = subprocess.run(
                [
                    self._binary("pg_isready"),
                    "-q",
                    "-h", self.host,
                    "-p", str(self.port),
                    "-U", self.superuser,
                    "-d", "postgres",
                ],
                capture_output=True,
                timeout=READY_TIMEOUT,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, FileNotFoundError):
            return False

    # ------------------------------------------------------------------
    # Databases and sessions
    # ------------------------------------------------------------------

    def _connect_kwargs(self, dbname: str, user: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": user,
            "dbname": dbname,
            "autocommit": True,
            "connect_timeout": CONNECT_TIMEOUT,
            "application_name": APPLICATION_NAME,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs

    async def _admin_execute(self, query: Any, params: Optional[Sequence[Any]] = None) -> List[Any]:
        try:
            async with await psycopg.AsyncConnection.connect(
                **self._connect_kwargs("postgres", self.superuser)
            ) as conn:
                cur = await conn.execute(query, params)
                if cur.description is None:
                    return []
                return await cur.fetchall()
        except psycopg.Error as e:
            raise DatabaseError(_describe_error(e)) from e

    async def ensure_role(self, role: str) -> None:
        """Create the login role tests connect as, unless it exists."""
        rows = await self._admin_execute(
            "SELECT 1 FROM pg_roles WHERE rolname = %s", (role,)
        )
        if rows:
            return

        query = sql.SQL("CREATE ROLE {} WITH LOGIN").format(sql.Identifier(role))
        if self.password:
            query = sql.SQL("{} PASSWORD {}").format(query, sql.Literal(self.password))
        await self._admin_execute(query)
        logger.debug("Created role %s", role)

    async def create_database(self, name: str, owner: str) -> None:
        await self._admin_execute(
            sql.SQL("CREATE DATABASE {} OWNER {}").format(
                sql.Identifier(name), sql.Identifier(owner)
            )
        )
        logger.debug("Created database %s", name)

    async def drop_database(self, name: str) -> None:
        """Drop a database, force-terminating its connections."""
        await self._admin_execute(
            sql.SQL("DROP DATABASE IF EXISTS {} WITH (FORCE)").format(sql.Identifier(name))
        )
        logger.debug("Dropped database %s", name)

    async def connect(self, dbname: str, role: str) -> Session:
        """Open a test session on dbname as role."""
        try:
            conn = await psycopg.AsyncConnection.connect(**self._connect_kwargs(dbname, role))
        except psycopg.Error as e:
            raise DatabaseError(_describe_error(e)) from e
        use_text_loaders(conn)
        return Session(conn)
