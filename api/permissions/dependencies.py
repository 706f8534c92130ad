"""
Permission dependencies for protected FastAPI routes.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, status

from auth import dependencies as auth_dependencies
from core.context import RequestContext, get_request_context

from . import service


def require_permission(resource: str, action: str) -> Callable[..., Awaitable[dict]]:
    """
    Dependency that returns the current user if their role may perform
    `action` on `resource`, else 403.
    """

    async def _check(
        current_user: dict = Depends(auth_dependencies.get_current_user),
        ctx: RequestContext = Depends(get_request_context),
    ) -> dict:
        engine = await service.load_engine(ctx.connection)
        role = current_user.get("role")
        if not engine.can_perform(role, action, resource):
            ctx.logger.warning("Role %s may not %s %s.", role, action, resource)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not allowed to {action} {resource}.",
            )
        return current_user

    return _check
