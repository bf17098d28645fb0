from app.platform.security.context import ActorUser, AuthContext
from app.platform.security.errors import AuthorizationError, CapabilityDeniedError
from app.platform.security.policies import (
    InMemoryPolicyBackend,
    PolicyBackend,
    get_policy_backend,
    require_capability,
    set_policy_backend,
)

__all__ = [
    "ActorUser",
    "AuthContext",
    "AuthorizationError",
    "CapabilityDeniedError",
    "InMemoryPolicyBackend",
    "PolicyBackend",
    "get_policy_backend",
    "require_capability",
    "set_policy_backend",
]
