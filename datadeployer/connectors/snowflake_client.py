"""
Snowflake Session

One connection per request, built from caller-supplied credentials. Connects
with retry logic and runs blocking connector calls in a thread executor.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, cast

import snowflake.connector
from snowflake.connector import DictCursor, SnowflakeConnection
from snowflake.connector.errors import Error as SnowflakeError
from snowflake.connector.errors import OperationalError

from datadeployer.config import settings
from datadeployer.models.connection import WarehouseConnectionConfig
from datadeployer.models.validation import ColumnDescriptor

logger = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"^[A-Z0-9_]+$")


class WarehouseQueryError(Exception):
    """A warehouse statement (or connect) failed; message is Snowflake's, verbatim."""


def validate_ident(value: Any, *, label: str) -> str:
    """Upper-case and check a bare identifier (database, schema, table)."""
    ident = str(value or "").strip().upper()
    if not ident:
        raise ValueError(f"Missing {label}")
    if not _IDENT_RE.fullmatch(ident):
        raise ValueError(f"Invalid {label}: {value!r}")
    return ident


def split_table_name(
    table_name: str, database: str | None, schema: str | None
) -> tuple[str | None, str | None, str]:
    """
    Split `DB.SCHEMA.TABLE` / `SCHEMA.TABLE` / `TABLE`.

    Qualified parts override the given database/schema.
    """
    parts = [p.strip() for p in str(table_name).split(".") if p.strip()]
    if len(parts) >= 3:
        return parts[-3], parts[-2], parts[-1]
    if len(parts) == 2:
        return database, parts[0], parts[1]
    return database, schema, parts[0] if parts else ""


class SnowflakeSession:
    """
    A single Snowflake connection scoped to one request.

    Usage:
        async with open_session(config) as session:
            rows = await session.execute("SELECT 1 AS X")
    """

    def __init__(
        self,
        config: WarehouseConnectionConfig,
        *,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        session_parameters: Optional[Dict[str, Any]] = None,
    ):
        self.config = config
        self.max_retries = max(
            1,
            int(max_retries if max_retries is not None else settings.SNOWFLAKE_CONNECT_MAX_RETRIES),
        )
        self.retry_delay = float(
            retry_delay if retry_delay is not None else settings.SNOWFLAKE_CONNECT_RETRY_DELAY
        )
        self._session_parameters: Dict[str, Any] = dict(session_parameters or {})
        self._conn: SnowflakeConnection | None = None

    def _run_in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, func, *args)

    def _get_connection_params(self) -> Dict[str, Any]:
        """Get connection parameters for snowflake.connector."""
        session_params: Dict[str, Any] = {"QUERY_TAG": settings.SNOWFLAKE_QUERY_TAG}
        session_params.update(self._session_parameters)
        cfg = self.config
        params: Dict[str, Any] = {
            "account": cfg.account,
            "user": cfg.username,
            "password": cfg.password,
            # `?` placeholders everywhere.
            "paramstyle": "qmark",
            "login_timeout": settings.SNOWFLAKE_CONNECT_LOGIN_TIMEOUT,
            "network_timeout": settings.SNOWFLAKE_CONNECT_NETWORK_TIMEOUT,
            "socket_timeout": settings.SNOWFLAKE_CONNECT_SOCKET_TIMEOUT,
            "session_parameters": session_params,
            "role": cfg.role or settings.SNOWFLAKE_DEFAULT_ROLE,
        }
        if cfg.warehouse:
            params["warehouse"] = cfg.warehouse
        if cfg.database:
            params["database"] = cfg.database
        if cfg.schema_name:
            params["schema"] = cfg.schema_name
        return params

    async def connect(self) -> None:
        """
        Open the connection with retry logic.

        Raises:
            WarehouseQueryError: If the connection fails after retries
        """
        if self._conn is not None:
            return

        params = self._get_connection_params()
        for attempt in range(self.max_retries):
            try:
                self._conn = cast(
                    SnowflakeConnection,
                    await self._run_in_executor(
                        lambda: snowflake.connector.connect(**params)
                    ),
                )
                logger.debug(
                    f"Connected to Snowflake: {self.config.username}@{self.config.account}"
                )
                return
            except OperationalError as e:
                if attempt < self.max_retries - 1:
                    logger.warning(
                        f"Connection attempt {attempt + 1} failed, retrying: {e}"
                    )
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                else:
                    logger.error(
                        f"Failed to connect after {self.max_retries} attempts"
                    )
                    raise WarehouseQueryError(str(e)) from e
            except SnowflakeError as e:
                logger.error(f"Snowflake connection error: {e}")
                raise WarehouseQueryError(str(e)) from e

    async def execute(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Execute a statement and return its rows as dicts keyed by column name.

        Raises:
            WarehouseQueryError: With Snowflake's message on failure
        """
        await self.connect()
        conn = cast(SnowflakeConnection, self._conn)
        cursor = await self._run_in_executor(conn.cursor, DictCursor)
        try:
            if params is None:
                await self._run_in_executor(cursor.execute, query)
            else:
                await self._run_in_executor(cursor.execute, query, list(params))
            rows = await self._run_in_executor(cursor.fetchall)
            return [dict(r) for r in rows or []]
        except SnowflakeError as e:
            raise WarehouseQueryError(getattr(e, "msg", None) or str(e)) from e
        finally:
            await self._run_in_executor(cursor.close)

    async def describe_table(
        self, database: str | None, schema: str | None, table: str
    ) -> List[ColumnDescriptor]:
        """Columns of a table via DESCRIBE TABLE."""
        parts = [
            validate_ident(p, label=label)
            for p, label in ((database, "database"), (schema, "schema"))
            if p
        ]
        parts.append(validate_ident(table, label="table"))
        rows = await self.execute(f"DESCRIBE TABLE {'.'.join(parts)}")
        columns: List[ColumnDescriptor] = []
        for row in rows:
            name = row.get("name") or row.get("NAME")
            if not name:
                continue
            nullable = str(row.get("null?") or row.get("NULL?") or "Y").upper() == "Y"
            columns.append(
                ColumnDescriptor(
                    name=str(name),
                    type=str(row.get("type") or row.get("TYPE") or ""),
                    nullable=nullable,
                )
            )
        return columns

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await self._run_in_executor(conn.close)
        except SnowflakeError as e:
            logger.debug(f"Error closing Snowflake connection: {e}")


@asynccontextmanager
async def open_session(config: WarehouseConnectionConfig) -> AsyncIterator[SnowflakeSession]:
    session = SnowflakeSession(config)
    try:
        await session.connect()
        yield session
    finally:
        await session.close()
