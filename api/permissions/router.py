"""
Permission API endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from auth import dependencies as auth_dependencies
from core.context import RequestContext, get_request_context
from core.responses import envelope

from . import service

router = APIRouter()


@router.get("")
async def list_permissions(
    ctx: RequestContext = Depends(get_request_context),
    _: dict = Depends(auth_dependencies.get_current_user),
) -> dict:
    data = await service.role_permissions(ctx.connection)
    return envelope("Role permissions.", data=data)
