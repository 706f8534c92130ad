"""
Auth business logic.
"""

from __future__ import annotations

from fastapi import HTTPException, status

from core.config import Settings
from core.context import RequestContext

from . import repository, schemas, security

MAX_PAGE_SIZE = 100
# Columns a client may filter on with `search=<column>:<term>`.
SEARCHABLE_COLUMNS = frozenset({"username"})


def _to_user(user_row: dict) -> dict:
    return {key: value for key, value in user_row.items() if key != "auth_token"}


def parse_search_terms(terms: list[str]) -> dict[str, str]:
    """
    Turn `["username:jo"]` into `{"username": "%jo%"}`.
    """
    conditions: dict[str, str] = {}
    for term in terms:
        column, sep, value = (term or "").partition(":")
        column = column.strip().lower()
        if not sep or not column or not value.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="search must look like <column>:<term>.",
            )
        if column not in SEARCHABLE_COLUMNS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Cannot search on '{column}'.",
            )
        conditions[column] = f"%{value.strip()}%"
    return conditions


async def login(ctx: RequestContext, settings: Settings, payload: schemas.LoginRequest) -> str:
    user_row = await repository.get_user_by_username(ctx.connection, payload.username)
    if user_row is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password.",
        )

    is_valid = security.verify_password(payload.password, str(user_row.get("auth_token") or ""))
    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password.",
        )

    ctx.logger.info("User %s logged in.", user_row["username"])
    return security.build_access_token(
        settings.auth,
        user_id=int(user_row["id"]),
        username=str(user_row["username"]),
        role=user_row.get("role"),
    )


async def list_users(ctx: RequestContext, *, search: list[str], limit: int, offset: int) -> list[dict]:
    conditions = parse_search_terms(search)
    return await repository.list_users(
        ctx.connection,
        search=conditions,
        limit=min(limit, MAX_PAGE_SIZE),
        offset=offset,
    )


async def create_user(ctx: RequestContext, payload: schemas.CreateUserRequest) -> dict:
    existing = await repository.get_user_by_username(ctx.connection, payload.username)
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username is already taken.",
        )

    user_row = await repository.create_user(
        ctx.connection,
        username=payload.username,
        password_hash=security.hash_password(payload.password),
        tenant_id=payload.tenant_id,
        role_id=payload.role_id,
    )
    ctx.logger.info("Created user %s.", user_row["id"])
    return _to_user(user_row)


async def update_user(ctx: RequestContext, user_id: int, payload: schemas.UpdateUserRequest) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Nothing to update.",
        )

    password = changes.pop("password", None)
    if password is not None:
        changes["auth_token"] = security.hash_password(password)
    if "username" in changes:
        changes["username"] = repository.normalize_username(changes["username"])
        existing = await repository.get_user_by_username(ctx.connection, changes["username"])
        if existing is not None and int(existing["id"]) != user_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Username is already taken.",
            )

    user_row = await repository.update_user(ctx.connection, user_id, changes)
    if user_row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found.",
        )
    ctx.logger.info("Updated user %s (%s).", user_id, ", ".join(sorted(changes)))
    return _to_user(user_row)


async def get_user_from_access_token(ctx: RequestContext, settings: Settings, access_token: str) -> dict:
    try:
        payload = security.decode_access_token(settings.auth, access_token)
    except security.AuthSecurityError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc

    subject = str(payload.get("sub") or "").strip()
    if not subject.isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid access token subject.",
        )

    user_row = await repository.get_user_by_id(ctx.connection, int(subject))
    if user_row is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found.",
        )
    return _to_user(user_row)
