"""
Auth persistence helpers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from core.db import Connection
from core.query import QueryBuilder

USER_COLUMNS = ("id", "tenant_id", "username", "role_id", "created_at", "updated_at")
ROLE_COLUMN = "name AS role"
ROLE_JOIN = "users_roles.id = users.role_id"


def normalize_username(username: str) -> str:
    return (username or "").strip()


def _users(connection: Connection) -> QueryBuilder:
    return QueryBuilder("users", connection)


def _first(rows: list[dict[str, Any]] | int) -> dict | None:
    if isinstance(rows, list) and rows:
        return rows[0]
    return None


async def get_user_by_username(connection: Connection, username: str) -> dict | None:
    # auth_token holds the bcrypt hash of the user's password.
    rows = await (
        _users(connection)
        .select([*USER_COLUMNS, "auth_token"])
        .join("LEFT", "users_roles", ROLE_JOIN, [ROLE_COLUMN])
        .where({"username": normalize_username(username)})
        .limit(1)
        .execute()
    )
    return _first(rows)


async def get_user_by_id(connection: Connection, user_id: int) -> dict | None:
    rows = await (
        _users(connection)
        .select(USER_COLUMNS)
        .join("LEFT", "users_roles", ROLE_JOIN, [ROLE_COLUMN])
        .where({"id": user_id})
        .limit(1)
        .execute()
    )
    return _first(rows)


async def list_users(
    connection: Connection,
    *,
    search: dict[str, str],
    limit: int,
    offset: int,
) -> list[dict]:
    builder = (
        _users(connection)
        .select(USER_COLUMNS)
        .order_by("created_at", "DESC")
        .row_number()
        .total()
    )
    if search:
        builder.search(search)
    rows = await builder.limit(limit).offset(offset).execute()
    return rows if isinstance(rows, list) else []


async def create_user(
    connection: Connection,
    *,
    username: str,
    password_hash: str,
    tenant_id: int | None = None,
    role_id: int | None = None,
) -> dict:
    row = _first(
        await _users(connection)
        .insert(
            {
                "username": normalize_username(username),
                "auth_token": password_hash,
                "tenant_id": tenant_id,
                "role_id": role_id,
            }
        )
        .returning(USER_COLUMNS)
        .execute()
    )
    if row is None:
        raise RuntimeError("Failed to create user.")
    return row


async def update_user(connection: Connection, user_id: int, changes: dict[str, Any]) -> dict | None:
    return _first(
        await _users(connection)
        .update({**changes, "updated_at": datetime.now(timezone.utc)})
        .where({"id": user_id})
        .returning(USER_COLUMNS)
        .execute()
    )
