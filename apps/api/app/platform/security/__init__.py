from app.platform.security.context import ActorUser, AuthContext, to_auth_context
from app.platform.security.errors import AuthorizationError, CapabilityDeniedError
from app.platform.security.policies import (
    CLOSE_WON_CAPABILITY,
    InMemoryPolicyBackend,
    PolicyBackend,
    ResourceAction,
    get_policy_backend,
    require_capability,
    set_policy_backend,
)

__all__ = [
    "ActorUser",
    "AuthContext",
    "AuthorizationError",
    "CapabilityDeniedError",
    "CLOSE_WON_CAPABILITY",
    "InMemoryPolicyBackend",
    "PolicyBackend",
    "ResourceAction",
    "get_policy_backend",
    "require_capability",
    "set_policy_backend",
    "to_auth_context",
]
