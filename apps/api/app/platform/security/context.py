from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Authorization context used by policy evaluation."""

    user_id: str
    tenant_id: str | None = None
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str
    permissions: set[str]
    roles: list[str] = field(default_factory=list)
    is_super_admin: bool = False
    correlation_id: str | None = None


def to_auth_context(actor_user: ActorUser) -> AuthContext:
    return AuthContext(
        user_id=actor_user.user_id,
        tenant_id=actor_user.tenant_id,
        correlation_id=actor_user.correlation_id,
        is_super_admin=actor_user.is_super_admin,
        roles=sorted({role.lower() for role in actor_user.roles}),
        permissions=sorted(actor_user.permissions),
    )
