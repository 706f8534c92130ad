"""
Error taxonomy shared by the core building blocks.

Request handlers raise FastAPI `HTTPException` for expected failures. The
classes below are for faults in config, DB wiring and query building; the
transaction middleware turns anything that escapes a handler into a 500.
"""

from __future__ import annotations

from typing import Any, Sequence


class ConfigError(RuntimeError):
    pass


class DatabaseError(RuntimeError):
    pass


# Pool exhausted/unreachable, or acquisition without a request id.
class DatabaseConnectionError(DatabaseError):
    pass


# Transaction op on a handle that holds no connection.
class ConnectionStateError(DatabaseError):
    pass


class QueryError(DatabaseError):
    def __init__(self, message: str, *, sql: str | None = None, params: Sequence[Any] | None = None) -> None:
        super().__init__(message)
        self.sql = sql
        self.params = list(params) if params is not None else []

    def describe(self) -> str:
        """
        Message plus the offending statement, for logs only.
        """
        if self.sql is None:
            return str(self)
        return f"{self} | Query: {self.sql} | Params: {self.params!r}"


class InvalidQueryError(QueryError):
    pass


# UPDATE/DELETE without a predicate. Raised before anything reaches the DB.
class DangerousQueryError(InvalidQueryError):
    pass
