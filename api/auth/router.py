"""
Auth API endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from core.config import Settings
from core.context import RequestContext, get_request_context, get_settings
from core.responses import envelope
from permissions.dependencies import require_permission

from . import dependencies as auth_dependencies
from . import schemas, service

router = APIRouter()


@router.post("/login")
async def login(
    payload: schemas.LoginRequest,
    ctx: RequestContext = Depends(get_request_context),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = await service.login(ctx, settings, payload)
    return envelope("Logged in.", token=token)


@router.get("/list")
async def list_users(
    search: list[str] = Query(default=[]),
    limit: int = Query(default=20, ge=1),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    rows = await service.list_users(ctx, search=search, limit=limit, offset=offset)
    return envelope("Users fetched.", data=rows)


@router.get("/me")
async def me(current_user: dict = Depends(auth_dependencies.get_current_user)) -> dict:
    return envelope("Current user.", data=current_user)


@router.post("/users", status_code=201)
async def create_user(
    payload: schemas.CreateUserRequest,
    ctx: RequestContext = Depends(get_request_context),
    _: dict = Depends(require_permission("users", "create")),
) -> dict:
    user = await service.create_user(ctx, payload)
    return envelope("User created.", data=user)


@router.patch("/users/{user_id}")
async def update_user(
    user_id: int,
    payload: schemas.UpdateUserRequest,
    ctx: RequestContext = Depends(get_request_context),
    _: dict = Depends(require_permission("users", "edit")),
) -> dict:
    user = await service.update_user(ctx, user_id, payload)
    return envelope("User updated.", data=user)
