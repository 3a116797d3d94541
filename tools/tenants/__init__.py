# tools/tenants/__init__.py

from .registry import (  # noqa: F401
    ROLE_SCOPES,
    TenantRecord,
    ensure_tenant,
    issue_api_key,
    list_keys,
    list_tenants,
    revoke_key,
    set_tenant_data_mode,
)
