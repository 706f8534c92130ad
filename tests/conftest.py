# Ensure api/ is at sys.path[0] when pytest runs (from repo root or from tests dir)
from __future__ import annotations

import sys
import uuid
from pathlib import Path
from typing import Any, Callable

_tests_dir = Path(__file__).resolve().parent
_api = _tests_dir.parent / "api"
_str_api = str(_api)
if sys.path[0:1] != [_str_api]:
    sys.path.insert(0, _str_api)

import pytest  # noqa: E402

from core.config import Settings, parse_settings  # noqa: E402
from core.db import ConnectionManager  # noqa: E402
from core.logging import setup_logging, shutdown_logging  # noqa: E402

Responder = Callable[[str, list], Any]


class FakeTransaction:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self.state = "new"

    async def start(self) -> None:
        self.connection.log.append("BEGIN")
        self.state = "started"

    async def commit(self) -> None:
        if self.connection.pool.commit_error is not None:
            raise self.connection.pool.commit_error
        self.connection.log.append("COMMIT")
        self.state = "committed"

    async def rollback(self) -> None:
        self.connection.log.append("ROLLBACK")
        self.state = "rolled_back"


class FakeConnection:
    """
    Stand-in for asyncpg.Connection that records what it is asked to do.
    """

    def __init__(self, pool: FakePool, name: str) -> None:
        self.pool = pool
        self.name = name
        self.log: list[str] = []
        self.queries: list[tuple[str, list, float | None]] = []

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    async def _run(self, sql: str, args: tuple, timeout: float | None) -> Any:
        self.queries.append((sql, list(args), timeout))
        self.log.append(sql)
        if self.pool.query_error is not None:
            raise self.pool.query_error
        return await self.pool.respond(sql, list(args))

    async def fetch(self, sql: str, *args: Any, timeout: float | None = None) -> list[dict]:
        result = await self._run(sql, args, timeout)
        return list(result or [])

    async def execute(self, sql: str, *args: Any, timeout: float | None = None) -> str:
        result = await self._run(sql, args, timeout)
        return result if isinstance(result, str) else "UPDATE 1"

    async def fetchval(self, sql: str, *args: Any, timeout: float | None = None) -> Any:
        if self.pool.ping_error is not None:
            raise self.pool.ping_error
        return 1


class FakePool:
    """
    Stand-in for asyncpg.Pool. Every acquire hands out a new FakeConnection.
    """

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.released: list[FakeConnection] = []
        self.closed = False
        self.acquire_error: BaseException | None = None
        self.query_error: BaseException | None = None
        self.commit_error: BaseException | None = None
        self.ping_error: BaseException | None = None
        self.release_error: BaseException | None = None
        self.responder: Responder | None = None

    async def acquire(self, timeout: float | None = None) -> FakeConnection:
        if self.acquire_error is not None:
            raise self.acquire_error
        connection = FakeConnection(self, f"conn-{len(self.connections) + 1}")
        self.connections.append(connection)
        return connection

    async def release(self, connection: FakeConnection) -> None:
        if self.release_error is not None:
            raise self.release_error
        self.released.append(connection)

    async def close(self) -> None:
        self.closed = True

    async def respond(self, sql: str, args: list) -> Any:
        if self.responder is None:
            return []
        result = self.responder(sql, args)
        if hasattr(result, "__await__"):
            result = await result
        return result


def settings_dict(log_directory: str, **overrides: Any) -> dict:
    block = {
        "app_name": "rest-api-test",
        "port": 3000,
        "url": "http://localhost:3000",
        "production": False,
        "database": {
            "host": "localhost",
            "user": "app",
            "password": "app",
            "database": "app",
            "port": 5432,
            "query_timeout": 5.0,
        },
        "log": {"directory": log_directory, "level": "DEBUG"},
        "auth": {"jwt_secret": "test-secret", "jwt_algorithm": "HS256", "token_expire_minutes": 5},
    }
    block.update(overrides)
    return {"env": "test", "test": block}


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def settings(log_dir: Path) -> Settings:
    return parse_settings(settings_dict(str(log_dir)))


@pytest.fixture
def logger(log_dir: Path):
    instance = setup_logging(log_dir, "DEBUG", name=f"restapi-test-{uuid.uuid4().hex}", console=False)
    yield instance
    shutdown_logging(instance)


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def manager(pool: FakePool, logger) -> ConnectionManager:
    return ConnectionManager(pool, logger=logger, query_timeout=5.0)
