"""
Async database access (raw SQL) using asyncpg.

`ConnectionManager` owns the pool. `main.py` creates it on startup and closes
it on shutdown. Every request gets its own `Connection` handle wrapping one
pooled connection; handles are never shared between requests, so one
request's rollback cannot touch another request's transaction.

SQL parameter style:
- callers write `?` placeholders (the query builder emits them too)
- they are rewritten to asyncpg's positional `$1, $2, ...` right before
  the statement is sent
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Sequence
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import asyncpg

from .config import DatabaseConfig, Settings
from .errors import ConnectionStateError, DatabaseConnectionError, QueryError
from .logging import RequestLogger, bind_logger

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)
_ROW_RETURNING_RE = re.compile(r"^\s*(SELECT|WITH|VALUES|SHOW)\b|\bRETURNING\b", re.IGNORECASE)
# Leading whitespace, comments and opening parentheses before the statement keyword.
_LEADING_NOISE_RE = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/|\()*", re.DOTALL)


def _sanitize_database_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def database_url(config: DatabaseConfig) -> str:
    # DATABASE_URL wins over the config file, e.g. inside docker-compose.
    url = os.environ.get("DATABASE_URL", "").strip()
    if url:
        return _sanitize_database_url(url)
    credentials = f"{quote(config.user, safe='')}:{quote(config.password, safe='')}"
    return f"postgresql://{credentials}@{config.host}:{config.port}/{quote(config.database, safe='')}"


def to_postgres_placeholders(sql: str) -> str:
    """
    Rewrite `?` placeholders as `$1, $2, ...`. Quoted text is left alone.
    """
    out: list[str] = []
    index = 0
    quote_char: str | None = None
    for char in sql:
        if quote_char is not None:
            if char == quote_char:
                quote_char = None
        elif char in ("'", '"'):
            quote_char = char
        elif char == "?":
            index += 1
            out.append(f"${index}")
            continue
        out.append(char)
    return "".join(out)


def returns_rows(sql: str) -> bool:
    body = _LEADING_NOISE_RE.sub("", sql, count=1)
    return _ROW_RETURNING_RE.search(body) is not None


def _affected_rows(status: str | None) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3" or "INSERT 0 2".
    last = (status or "").rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


@dataclass
class PoolStats:
    acquired: int = 0
    released: int = 0

    @property
    def in_use(self) -> int:
        return self.acquired - self.released


class Connection:
    """
    One request's database handle.

    Holds at most one pooled connection and at most one open transaction.
    """

    def __init__(self, manager: ConnectionManager, request_id: str) -> None:
        self.manager = manager
        self.request_id = request_id
        self.logger: RequestLogger = bind_logger(manager.logger, request_id)
        self._raw: Any = None
        self._transaction: Any = None

    @property
    def is_acquired(self) -> bool:
        return self._raw is not None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    async def acquire(self) -> Connection:
        if self._raw is None:
            self._raw = await self.manager._checkout(self.request_id)
        return self

    def _require_connection(self, action: str) -> Any:
        if self._raw is None:
            raise ConnectionStateError(f"Cannot {action}: no active database connection.")
        return self._raw

    def _take_transaction(self, action: str) -> Any:
        self._require_connection(action)
        if self._transaction is None:
            raise ConnectionStateError(f"Cannot {action}: no transaction in progress.")
        transaction, self._transaction = self._transaction, None
        return transaction

    async def begin_transaction(self) -> None:
        raw = self._require_connection("begin a transaction")
        if self._transaction is not None:
            raise ConnectionStateError("Cannot begin a transaction: one is already in progress.")
        transaction = raw.transaction()
        await transaction.start()
        self._transaction = transaction
        self.logger.debug("Transaction started.")

    async def commit(self) -> None:
        transaction = self._take_transaction("commit")
        await transaction.commit()
        self.logger.debug("Transaction committed.")

    async def rollback(self) -> None:
        transaction = self._take_transaction("roll back")
        await transaction.rollback()
        self.logger.debug("Transaction rolled back.")

    async def release(self) -> None:
        """
        Give the connection back to the pool. An open transaction is rolled
        back first.
        """
        raw = self._require_connection("release")
        try:
            if self._transaction is not None:
                self.logger.warning("Releasing a connection with an open transaction; rolling back.")
                await self.rollback()
        finally:
            self._raw = None
            self._transaction = None
            await self.manager._checkin(self.request_id, raw)

    async def execute_query(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]] | int:
        """
        Run one statement.

        Returns rows as dicts for row-returning statements, otherwise the
        number of affected rows. Failures raise QueryError and are never
        retried.
        """
        values = list(params or [])
        if self._raw is None:
            self.logger.warning("No connection held; acquiring one before running the query.")
            await self.acquire()
        raw = self._raw
        timeout = self.manager.query_timeout
        statement = to_postgres_placeholders(sql)
        self.logger.debug("SQL: %s | Params: %r", sql, values)

        try:
            if returns_rows(sql):
                rows = await raw.fetch(statement, *values, timeout=timeout)
                return [dict(row) for row in rows]
            status = await raw.execute(statement, *values, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise self._query_failed(f"Query exceeded the {timeout}s deadline.", sql, values) from exc
        except DRIVER_ERRORS as exc:
            raise self._query_failed(f"Unable to execute sql query. Error: {exc}", sql, values) from exc
        return _affected_rows(status)

    def _query_failed(self, message: str, sql: str, params: list[Any]) -> QueryError:
        error = QueryError(message, sql=sql, params=params)
        self.logger.error(error.describe())
        return error

    async def ping(self) -> bool:
        """
        Liveness check for the held connection. Failures are logged.
        """
        raw = self._require_connection("verify the connection")
        self.logger.info("Verifying the database server connection...")
        try:
            await raw.fetchval("SELECT 1", timeout=self.manager.query_timeout)
        except DRIVER_ERRORS as exc:
            self.logger.error("Database server connection verification failed. Error: %s", exc)
            return False
        self.logger.info("Connection to the database server verified.")
        return True


class ConnectionManager:
    def __init__(self, pool: Any, *, logger: logging.Logger, query_timeout: float = 30.0) -> None:
        self._pool = pool
        self.logger = logger
        self.query_timeout = query_timeout
        self.stats = PoolStats()

    @classmethod
    async def create(cls, settings: Settings, logger: logging.Logger) -> ConnectionManager:
        system = bind_logger(logger)
        system.info("Generating new database connection pool...")
        config = settings.database
        try:
            pool = await asyncpg.create_pool(
                dsn=database_url(config),
                min_size=config.min_size,
                max_size=config.max_size,
                command_timeout=config.query_timeout,
            )
        except DRIVER_ERRORS as exc:
            system.error("Can't establish a connection pool to the database server. Error: %s", exc)
            raise DatabaseConnectionError(f"Can't establish a connection pool: {exc}") from exc
        system.info("New database connection pool created successfully.")
        return cls(pool, logger=logger, query_timeout=config.query_timeout)

    @property
    def pool(self) -> Any:
        if self._pool is None:
            raise DatabaseConnectionError("DB pool is not initialized. Call ConnectionManager.create() on startup.")
        return self._pool

    async def close(self) -> None:
        if self._pool is None:
            return None
        await self._pool.close()
        self._pool = None
        bind_logger(self.logger).info("Database connection pool closed.")

    def connection(self, request_id: str | None) -> Connection:
        """
        A handle for `request_id` that acquires lazily.
        """
        if not request_id:
            raise DatabaseConnectionError("Requesting for connection without request id.")
        return Connection(self, request_id)

    async def acquire(self, request_id: str | None) -> Connection:
        return await self.connection(request_id).acquire()

    async def _checkout(self, request_id: str) -> Any:
        logger = bind_logger(self.logger, request_id)
        logger.info("Acquiring connection to the database server...")
        try:
            raw = await self.pool.acquire(timeout=self.query_timeout)
        except DRIVER_ERRORS as exc:
            logger.error("Can't connect to the database server. Error: %s", exc or type(exc).__name__)
            raise DatabaseConnectionError(f"Can't connect to the database server: {exc or type(exc).__name__}") from exc
        self.stats.acquired += 1
        logger.info("Connection to the database server acquired.")
        return raw

    async def _checkin(self, request_id: str, raw: Any) -> None:
        try:
            await self.pool.release(raw)
        finally:
            self.stats.released += 1
            bind_logger(self.logger, request_id).debug("Connection released to the pool.")
