from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for policy enforcement failures."""


class CapabilityDeniedError(AuthorizationError):
    """Raised when the acting user lacks a named capability."""

    def __init__(self, capability: str, user_id: str) -> None:
        self.capability = capability
        self.user_id = user_id
        super().__init__(f"User '{user_id}' lacks capability '{capability}'")
