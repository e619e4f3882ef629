"""
Shared psycopg3 pool for the warehouse stores

The batch store, record writer, audit logger and metrics aggregator all take
one DatabaseConnectionPool. The CLI opens it once per invocation and closes it
on exit; tests open it against a throwaway container.
"""
import time
from contextlib import contextmanager
from typing import Any, Iterator

from psycopg import Connection, Cursor, OperationalError
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from patient_sync.core.config import PipelineSettings
from patient_sync.observability.logger import get_logger

logger = get_logger(__name__)

APPLICATION_NAME = "patient-sync"


class DatabaseConnectionPool:
    """
    Dict-row connection pool shared by the orchestrator and its page workers.

    Every block run through get_connection is one transaction: committed when
    the block exits cleanly and rolled back when it raises.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "patient_sync",
        user: str = "pipeline",
        password: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 30.0,
    ) -> None:
        """
        Args:
            host, port, database, user: Warehouse location and role
            password: Role password; there is no default
            min_size: Connections kept warm
            max_size: Upper bound, sized above the per-page worker count
            timeout: Seconds allowed for connecting and for pool checkout

        Raises:
            ValueError: No password given
        """
        if not password:
            raise ValueError("Database password must be provided (DB_PASSWORD).")

        self.host = host
        self.database = database
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.conninfo = make_conninfo(
            host=host,
            port=port,
            dbname=database,
            user=user,
            password=password,
            connect_timeout=int(timeout),
            application_name=APPLICATION_NAME,
        )
        self._pool: ConnectionPool | None = None

    @classmethod
    def from_settings(cls, settings: PipelineSettings, **overrides: Any) -> "DatabaseConnectionPool":
        params = dict(
            host=settings.db_host,
            port=settings.db_port,
            database=settings.db_name,
            user=settings.db_user,
            password=settings.db_password,
            max_size=settings.db_pool_max_size,
        )
        params.update(overrides)
        return cls(**params)

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the pool, waiting until min_size connections are established.

        A warehouse that is still starting gets max_retries attempts,
        retry_delay seconds apart, before OperationalError is raised.
        Opening an open pool is a no-op.
        """
        if self._pool is not None:
            return

        attempt = 0
        while True:
            attempt += 1
            candidate = ConnectionPool(
                conninfo=self.conninfo,
                min_size=self.min_size,
                max_size=self.max_size,
                timeout=self.timeout,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            try:
                candidate.open(wait=True, timeout=self.timeout)
            except Exception as e:
                candidate.close()
                if attempt >= max_retries:
                    raise OperationalError(
                        f"Warehouse {self.host}/{self.database} unreachable after {attempt} attempts: {e}"
                    ) from e
                logger.warning(
                    f"Warehouse not ready (attempt {attempt}/{max_retries}): {e}",
                    extra={"db_host": self.host, "retry_in_seconds": retry_delay},
                )
                time.sleep(retry_delay)
                continue

            self._pool = candidate
            logger.info(
                "Warehouse pool open",
                extra={"db_host": self.host, "db_name": self.database, "max_size": self.max_size},
            )
            return

    def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.close()

    @contextmanager
    def get_connection(self) -> Iterator[Connection]:
        """
        Borrow a connection for one transaction.

        Raises:
            RuntimeError: The pool has not been opened
        """
        if self._pool is None:
            raise RuntimeError("Warehouse pool is not open; call open() first.")
        with self._pool.connection() as conn:
            yield conn

    @contextmanager
    def get_cursor(self) -> Iterator[Cursor]:
        with self.get_connection() as conn, conn.cursor() as cur:
            yield cur

    def execute_query(self, query: str, params: tuple | dict | None = None) -> list[dict]:
        """Run a SELECT (or DML ... RETURNING) and fetch every row as a dict."""
        with self.get_cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def execute_command(self, command: str, params: tuple | dict | None = None) -> int:
        """Run an INSERT, UPDATE or DELETE and return the affected row count."""
        with self.get_cursor() as cur:
            cur.execute(command, params)
            return cur.rowcount

    def __enter__(self) -> "DatabaseConnectionPool":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
