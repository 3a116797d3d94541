from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Set

ERR_INVALID = "Invalid or missing API key"
DEFAULT_TTL_SECONDS = 30 * 24 * 3600
KEY_PREFIX = "slk"

# Roles allowed to resolve review and conflict work items.
REVIEWER_ROLES = frozenset({"admin", "compliance", "legal"})


class AuthResult:
    """Result of API key verification with details for proper status codes."""

    __slots__ = (
        "valid",
        "reason",
        "key_prefix",
        "tenant_id",
        "scopes",
        "user_id",
        "user_email",
        "role",
    )

    def __init__(
        self,
        valid: bool,
        reason: str = "",
        key_prefix: Optional[str] = None,
        tenant_id: Optional[str] = None,
        scopes: Optional[Set[str]] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        role: Optional[str] = None,
    ):
        self.valid = valid
        self.reason = reason
        self.key_prefix = key_prefix
        self.tenant_id = tenant_id
        self.scopes = scopes or set()
        self.user_id = user_id
        self.user_email = user_email
        self.role = role

    @property
    def is_missing_key(self) -> bool:
        return self.reason == "no_key_provided"

    @property
    def is_invalid_key(self) -> bool:
        return not self.valid and not self.is_missing_key


@dataclass(frozen=True)
class Principal:
    """The authenticated session a request acts as."""

    tenant_id: str
    user_id: str
    email: Optional[str] = None
    role: str = "user"
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    key_prefix: Optional[str] = None

    def has_role(self, *roles: str) -> bool:
        return self.role in roles
