from __future__ import annotations

import re
import time
from typing import Optional, Tuple

_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def _is_key_expired(payload: Optional[dict], now: Optional[int] = None) -> bool:
    """Check if key is expired based on token payload."""
    if payload is None:
        return False

    exp = payload.get("exp")
    if exp is None:
        return False

    now_ts = now if now is not None else int(time.time())
    return now_ts > int(exp)


def _is_row_expired(expires_at: Optional[int], now: Optional[int] = None) -> bool:
    """The stored expiry wins over the token; a revoked TTL shows up here first."""
    if expires_at is None:
        return False
    now_ts = now if now is not None else int(time.time())
    return now_ts > int(expires_at)


def _validate_tenant_id(tenant_id: Optional[str]) -> Tuple[bool, str]:
    """
    Validate tenant_id format.
    Returns (is_valid, error_message).
    """
    if tenant_id is None:
        return False, "tenant_id is required"

    tenant_id = str(tenant_id).strip()
    if not tenant_id:
        return False, "tenant_id is required"

    if len(tenant_id) > 128:
        return False, "tenant_id exceeds maximum length"

    if not _TENANT_ID_RE.match(tenant_id):
        return False, "tenant_id contains invalid characters"

    return True, ""
