"""
In-memory role/policy engine.

A policy is a list of statements:

    {"effect": "Allow", "action": ["read", "edit"], "resource": "users"}

`action` and `resource` take a string or a list of strings; patterns use
`*` (any run of characters) and `?` (exactly one). Policies are attached to
roles. When checking, the role's policies are walked in attachment order and
the first statement matching both action and resource decides.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Iterable

ALLOW = "Allow"
DENY = "Deny"


class PolicyNotFoundError(KeyError):
    pass


@lru_cache(maxsize=512)
def _pattern(pattern: str) -> re.Pattern[str]:
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


def matches(pattern: str | Iterable[str], value: str) -> bool:
    if isinstance(pattern, str):
        return _pattern(pattern).match(value) is not None
    return any(matches(item, value) for item in pattern)


class PolicyEngine:
    def __init__(self) -> None:
        self.policies: dict[str, list[dict[str, Any]]] = {}
        # role -> policy names, kept in attachment order
        self.roles: dict[str, dict[str, None]] = {}

    def add_policy(self, name: str, statements: list[dict[str, Any]]) -> None:
        self.policies[name] = list(statements)

    def remove_policy(self, name: str) -> None:
        self.policies.pop(name, None)

    def attach_policy(self, role: str, policy_name: str) -> None:
        if policy_name not in self.policies:
            raise PolicyNotFoundError(f"Policy {policy_name} not found")
        self.roles.setdefault(role, {})[policy_name] = None

    def detach_policy(self, role: str, policy_name: str) -> None:
        self.roles.get(role, {}).pop(policy_name, None)

    def can_perform(self, role: str | None, action: str, resource: str) -> bool:
        if not role or role not in self.roles:
            return False

        for policy_name in self.roles[role]:
            # A removed policy may still be attached; skip it.
            for statement in self.policies.get(policy_name, ()):
                if matches(statement.get("action", ()), action) and matches(statement.get("resource", ()), resource):
                    return statement.get("effect") == ALLOW
        return False

    def permissions_for(self, role: str) -> dict[str, list[str]]:
        """
        Resource -> allowed actions for `role`, from literal Allow statements.
        """
        result: dict[str, list[str]] = {}
        for policy_name in self.roles.get(role, {}):
            for statement in self.policies.get(policy_name, ()):
                if statement.get("effect") != ALLOW:
                    continue
                resources = statement.get("resource", ())
                actions = statement.get("action", ())
                for resource in [resources] if isinstance(resources, str) else resources:
                    allowed = result.setdefault(resource, [])
                    for action in [actions] if isinstance(actions, str) else actions:
                        if action not in allowed:
                            allowed.append(action)
        return result
