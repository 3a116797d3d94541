from .definitions import (
    ERR_INVALID,
    REVIEWER_ROLES,
    AuthResult,
    Principal,
)
from .mapping import list_api_keys, mint_key, revoke_api_key
from .resolution import (
    bind_tenant_id,
    current_principal,
    require_api_key_always,
    require_bound_tenant,
    require_scopes,
    verify_api_key,
    verify_api_key_detailed,
)

__all__ = [
    "ERR_INVALID",
    "REVIEWER_ROLES",
    "AuthResult",
    "Principal",
    "bind_tenant_id",
    "current_principal",
    "list_api_keys",
    "mint_key",
    "require_api_key_always",
    "require_bound_tenant",
    "require_scopes",
    "revoke_api_key",
    "verify_api_key",
    "verify_api_key_detailed",
]
