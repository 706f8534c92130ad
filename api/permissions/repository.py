"""
Role permission persistence (roles_permissions + app_features + users_roles).
"""

from __future__ import annotations

from core.db import Connection
from core.query import QueryBuilder

# Action name -> roles_permissions flag column.
ACTION_COLUMNS = {
    "read": "read_access",
    "create": "write_access",
    "edit": "edit_access",
    "delete": "delete_access",
}


async def list_role_permissions(connection: Connection) -> list[dict]:
    """
    One row per role/feature pair with the four access flags.
    """
    rows = await (
        QueryBuilder("roles_permissions", connection)
        .select(list(ACTION_COLUMNS.values()))
        .join("INNER", "users_roles", "users_roles.id = roles_permissions.role_id", ["name AS role"])
        .join("INNER", "app_features", "app_features.id = roles_permissions.feature_id", ["feature_key"])
        .execute()
    )
    return rows if isinstance(rows, list) else []
