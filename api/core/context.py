"""
Per-request state shared between the transaction middleware and handlers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from fastapi import Request

from .config import Settings
from .db import Connection
from .errors import ConnectionStateError
from .logging import RequestLogger
from .query import QueryBuilder


@dataclass
class RequestContext:
    request_id: str
    connection: Connection
    logger: RequestLogger
    started_at: float = field(default_factory=time.perf_counter)
    rollback_requested: bool = False

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(name, self.connection)

    def request_rollback(self) -> None:
        """
        Roll back instead of committing even if the handler returns cleanly.
        """
        self.rollback_requested = True

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        raise ConnectionStateError("Request has no database context. Is TransactionMiddleware installed?")
    return context


def get_settings(request: Request) -> Settings:
    return request.app.state.settings

