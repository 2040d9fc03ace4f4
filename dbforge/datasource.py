"""
DataSource - the single boundary where dbforge talks to PostgreSQL.

Every call opens its own asyncpg connection to the database named in the
credentials it is given, so concurrent builds against different databases
never share a connection.

Error classification:
- asyncpg / OS / timeout errors -> QueryError (no finer taxonomy, no retry)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import asyncpg

from dbforge.config import Credentials
from dbforge.errors import QueryError
from dbforge.utils import database_logger


@dataclass
class QueryResult:
    """Rows returned by a structural query."""
    rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class DataSource:
    """
    Thin async wrapper around asyncpg.

    Args:
        command_timeout: Per-call deadline in seconds (None for no deadline)
        logger: Logger receiving server NOTICE messages at DEBUG level
    """

    def __init__(
        self,
        command_timeout: Optional[float] = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.command_timeout = command_timeout
        self.logger = logger or logging.getLogger(__name__)

    async def _connect(self, creds: Credentials) -> asyncpg.Connection:
        if not creds.database:
            raise QueryError("No database selected in credentials")
        conn = await asyncpg.connect(
            **creds.connect_kwargs(),
            timeout=self.command_timeout or 60,
            command_timeout=self.command_timeout,
        )
        log = database_logger(self.logger, creds.database)
        conn.add_log_listener(lambda _conn, message: self._on_notice(log, message))
        return conn

    def _on_notice(self, log: logging.LoggerAdapter, message: Any) -> None:
        log.debug(
            getattr(message, "message", str(message)),
            extra={"event": "server_notice"},
        )

    async def query(self, sql: str, creds: Credentials) -> QueryResult:
        """
        Run a parameterless query and return its rows.

        Raises:
            QueryError: If the connection or the query fails
        """
        try:
            conn = await self._connect(creds)
            try:
                records = await conn.fetch(sql)
            finally:
                await conn.close()
        except QueryError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise QueryError(f"Query failed on {creds.database}: {e}", database=creds.database) from e

        return QueryResult(rows=[dict(r) for r in records])

    async def execute(self, sql: str, creds: Credentials) -> str:
        """
        Execute a multi-statement script as one unit.

        Uses the simple query protocol (no parameters), so any number of
        semicolon-separated statements run in a single round trip.

        Returns:
            Status of the last statement (e.g. "CREATE FUNCTION")

        Raises:
            QueryError: If the connection or any statement fails
        """
        try:
            conn = await self._connect(creds)
            try:
                return await conn.execute(sql)
            finally:
                await conn.close()
        except QueryError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise QueryError(f"Execution failed on {creds.database}: {e}", database=creds.database) from e
