"""
Build the policy engine from the database.
"""

from __future__ import annotations

from core.db import Connection

from . import repository
from .policies import ALLOW, PolicyEngine


def build_engine(rows: list[dict]) -> PolicyEngine:
    """
    One policy per role/feature pair, named `<role>:<feature>`.
    """
    engine = PolicyEngine()
    for row in rows:
        role = row.get("role")
        feature = row.get("feature_key")
        if not role or not feature:
            continue
        actions = [action for action, column in repository.ACTION_COLUMNS.items() if row.get(column)]
        if not actions:
            continue
        policy_name = f"{role}:{feature}"
        engine.add_policy(policy_name, [{"effect": ALLOW, "action": actions, "resource": feature}])
        engine.attach_policy(role, policy_name)
    return engine


async def load_engine(connection: Connection) -> PolicyEngine:
    return build_engine(await repository.list_role_permissions(connection))


async def role_permissions(connection: Connection) -> dict[str, dict[str, list[str]]]:
    engine = await load_engine(connection)
    return {role: engine.permissions_for(role) for role in engine.roles}
