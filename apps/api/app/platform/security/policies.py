from __future__ import annotations

from enum import StrEnum
from threading import Lock
from typing import Protocol

from app.platform.security.context import AuthContext
from app.platform.security.errors import CapabilityDeniedError


class ResourceAction(StrEnum):
    READ = "read"
    TRANSITION = "transition"
    CLOSE_WON = "close_won"


CLOSE_WON_CAPABILITY = f"sales.leads.{ResourceAction.CLOSE_WON.value}"

DEFAULT_ROLE_PERMISSIONS: dict[str, set[str]] = {
    "admin": {"*"},
    "sales_director": {"sales.leads.*", "quotations.*"},
    "sales_manager": {CLOSE_WON_CAPABILITY, "sales.leads.read", "sales.leads.transition"},
}


class PolicyBackend(Protocol):
    """Pluggable policy backend interface for capability checks."""

    def is_resource_allowed(self, resource: str, action: ResourceAction, ctx: AuthContext) -> bool:
        ...


class InMemoryPolicyBackend:
    """Role + direct-permission policy backend with wildcard support."""

    def __init__(self, role_permissions: dict[str, set[str]] | None = None, *, default_allow: bool = False) -> None:
        self._role_permissions = DEFAULT_ROLE_PERMISSIONS if role_permissions is None else role_permissions
        self._default_allow = default_allow

    def is_resource_allowed(self, resource: str, action: ResourceAction, ctx: AuthContext) -> bool:
        if self._default_allow or ctx.is_super_admin:
            return True
        return self._has_permission(f"{resource}.{action.value}", ctx)

    def _has_permission(self, required: str, ctx: AuthContext) -> bool:
        grants = set(ctx.permissions)
        for role in ctx.roles:
            grants.update(self._role_permissions.get(role, set()))

        return any(self._matches(grant, required) for grant in grants)

    @staticmethod
    def _matches(grant: str, required: str) -> bool:
        if grant in {"*", required}:
            return True
        if grant.endswith(".*"):
            return required.startswith(grant[:-1])
        return False


_POLICY_BACKEND: PolicyBackend = InMemoryPolicyBackend()
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    """Get the active policy backend instance."""

    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    """Set the active policy backend instance."""

    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend


def require_capability(ctx: AuthContext, resource: str, action: ResourceAction) -> None:
    if not get_policy_backend().is_resource_allowed(resource, action, ctx):
        raise CapabilityDeniedError(f"{resource}.{action.value}", ctx.user_id)
