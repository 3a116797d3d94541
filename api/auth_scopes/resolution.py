from __future__ import annotations

import hashlib
import logging
import re
import time
from typing import Callable, Optional, Set

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select

from api.config import get_settings, is_production_env
from api.db import get_sessionmaker, set_tenant_context
from api.db_models import ApiKey

from .definitions import ERR_INVALID, AuthResult, Principal
from .helpers import (
    _decode_token_payload,
    _get_key_pepper,
    _key_lookup_hash,
    _parse_scopes_csv,
    verify_key,
)
from .mapping import _update_key_usage
from .validation import _is_key_expired, _is_row_expired, _validate_tenant_id

log = logging.getLogger("supplylens.auth")
_security_log = logging.getLogger("supplylens.security")

DEV_USER_ID = "dev-user"


def redact_detail(detail: str, generic: str = "forbidden") -> str:
    return generic if is_production_env() else detail


def _error_detail(code: str, message: str) -> dict:
    return {"error_code": code, "message": redact_detail(message, generic=code.lower())}


def _normalize_field(value: Optional[str], *, max_len: int = 128) -> Optional[str]:
    if value is None:
        return None
    text = re.sub(r"[\x00-\x1f\x7f]", "", str(value)).strip()
    if not text:
        return None
    return text[:max_len]


def _tenant_hash(value: Optional[str]) -> Optional[str]:
    norm = _normalize_field(value, max_len=256)
    if not norm:
        return None
    return hashlib.sha256(norm.encode("utf-8")).hexdigest()[:16]


def _log_auth_event(
    event_type: str,
    success: bool,
    key_prefix: Optional[str] = None,
    tenant_id: Optional[str] = None,
    reason: Optional[str] = None,
    request_path: Optional[str] = None,
) -> None:
    """Log security-relevant authentication events."""
    log_data = {
        "event": event_type,
        "success": success,
        "key_prefix": key_prefix[:12] if key_prefix else None,
        "tenant_id_hash": _tenant_hash(tenant_id),
        "reason": reason,
        "path": request_path,
        "timestamp": int(time.time()),
    }

    if success:
        _security_log.info("auth_event", extra=log_data)
    else:
        _security_log.warning("auth_event", extra=log_data)


def log_tenant_denial_event(
    *,
    request: Optional[Request],
    reason: str,
    tenant_from_key: Optional[str],
    tenant_supplied: Optional[str],
    key_id: Optional[str],
) -> None:
    _security_log.warning(
        "tenant_denial",
        extra={
            "event": "tenant_denial",
            "reason": _normalize_field(reason, max_len=64) or "tenant_denied",
            "route": _normalize_field(str(request.url.path), max_len=256)
            if request
            else None,
            "method": _normalize_field(request.method, max_len=16) if request else None,
            "correlation_id": getattr(
                getattr(request, "state", None), "correlation_id", None
            ),
            "tenant_id_hash": _tenant_hash(tenant_from_key),
            "tenant_supplied_hash": _tenant_hash(tenant_supplied),
            "key_id": _normalize_field(key_id, max_len=32),
        },
    )


def _lookup_key_row(db, key_prefix: str, secret: str) -> Optional[ApiKey]:
    lookup = _key_lookup_hash(secret, _get_key_pepper())
    return db.execute(
        select(ApiKey).where(ApiKey.prefix == key_prefix, ApiKey.key_lookup == lookup)
    ).scalar_one_or_none()


def _row_rejection(row: Optional[ApiKey], secret: str, check_expiration: bool) -> Optional[str]:
    if row is None:
        return "key_not_found"
    if not row.enabled:
        return "key_disabled"
    if check_expiration and _is_row_expired(row.expires_at):
        return "key_expired_db"
    if not verify_key(secret, row.key_hash, row.hash_alg):
        return "key_hash_mismatch"
    return None


def verify_api_key_detailed(
    raw: Optional[str],
    required_scopes: Optional[Set[str]] = None,
    request: Optional[Request] = None,
    check_expiration: bool = True,
) -> AuthResult:
    """
    Resolve a raw X-API-Key value to an AuthResult.

    Rejections are returned, not raised; callers map `reason` to 401 or 403.
    Order: shape, token expiry, row lookup, enabled, row expiry, argon2
    hash, scopes.
    """
    request_path = str(request.url.path) if request is not None else None

    def _reject(reason: str, key_prefix: Optional[str] = None, **extra) -> AuthResult:
        _log_auth_event(
            "auth_attempt",
            success=False,
            key_prefix=key_prefix,
            tenant_id=extra.get("tenant_id"),
            reason=reason,
            request_path=request_path,
        )
        return AuthResult(valid=False, reason=reason, key_prefix=key_prefix, **extra)

    raw = (raw or "").strip()
    if not raw:
        return _reject("no_key_provided")

    parts = raw.split(".")
    if len(parts) != 3 or not all(parts):
        return _reject("malformed_key")
    key_prefix, token, secret = parts

    if check_expiration and _is_key_expired(_decode_token_payload(token)):
        return _reject("key_expired_token", key_prefix)

    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        row = _lookup_key_row(db, key_prefix, secret)
        rejection = _row_rejection(row, secret, check_expiration)
        if rejection is not None:
            return _reject(rejection, key_prefix)

        have = _parse_scopes_csv(row.scopes_csv)
        identity = {
            "tenant_id": row.tenant_id,
            "scopes": have,
            "user_id": row.user_id,
            "user_email": row.user_email,
            "role": row.role,
        }
        missing = {s for s in (required_scopes or ()) if s} - have
        if missing and "*" not in have:
            return _reject(
                f"missing_scopes:{','.join(sorted(missing))}", key_prefix, **identity
            )

        _update_key_usage(db, row.id)

    _log_auth_event(
        "auth_attempt",
        success=True,
        key_prefix=key_prefix,
        tenant_id=identity["tenant_id"],
        request_path=request_path,
    )
    return AuthResult(valid=True, reason="valid", key_prefix=key_prefix, **identity)


def _dev_auth_result(request: Request) -> AuthResult:
    """
    Auth disabled (dev only; prod invariants refuse this). The tenant header
    stands in for the key binding.
    """
    tenant = _normalize_field(request.headers.get("x-tenant-id"))
    return AuthResult(
        valid=True,
        reason="auth_disabled",
        key_prefix=None,
        tenant_id=tenant,
        scopes={"*"},
        user_id=DEV_USER_ID,
        user_email=None,
        role="admin",
    )


def require_api_key_always(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    required_scopes: Set[str] | None = None,
) -> AuthResult:
    if not get_settings().auth_enabled:
        result = _dev_auth_result(request)
        request.state.auth = result
        return result

    cached = getattr(request.state, "auth", None)
    if isinstance(cached, AuthResult) and cached.valid and cached.key_prefix:
        have = cached.scopes
        if not required_scopes or "*" in have or set(required_scopes) <= have:
            return cached
        raise HTTPException(
            status_code=403, detail=_error_detail("FORBIDDEN", "missing scope")
        )

    result = verify_api_key_detailed(
        x_api_key, required_scopes=required_scopes, request=request
    )

    if result.valid:
        request.state.auth = result
        return result

    if result.reason.startswith("missing_scopes:"):
        raise HTTPException(
            status_code=403, detail=_error_detail("FORBIDDEN", "missing scope")
        )
    raise HTTPException(status_code=401, detail=_error_detail("UNAUTHORIZED", ERR_INVALID))


def verify_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> AuthResult:
    return require_api_key_always(request, x_api_key, required_scopes=None)


def bind_tenant_id(request: Request, requested_tenant: Optional[str]) -> str:
    """
    Resolve the tenant for this request from the key binding.

    A tenant supplied by the client is only ever compared against the bound
    one; a mismatch is a 403 and never selects another tenant.
    """
    requested = _normalize_field(requested_tenant)
    auth = getattr(request.state, "auth", None)
    key_prefix = getattr(auth, "key_prefix", None)

    cached = getattr(request.state, "tenant_id", None)
    if cached and getattr(request.state, "tenant_is_key_bound", False):
        if requested and requested != cached:
            log_tenant_denial_event(
                request=request,
                reason="cached_tenant_mismatch",
                tenant_from_key=cached,
                tenant_supplied=requested,
                key_id=key_prefix,
            )
            raise HTTPException(
                status_code=403,
                detail=_error_detail("TENANT_MISMATCH", "tenant mismatch"),
            )
        return cached

    auth_tenant = _normalize_field(getattr(auth, "tenant_id", None))
    if auth_tenant:
        if requested and requested != auth_tenant:
            log_tenant_denial_event(
                request=request,
                reason="requested_tenant_mismatch",
                tenant_from_key=auth_tenant,
                tenant_supplied=requested,
                key_id=key_prefix,
            )
            raise HTTPException(
                status_code=403,
                detail=_error_detail("TENANT_MISMATCH", "tenant mismatch"),
            )
        valid, _err = _validate_tenant_id(auth_tenant)
        if not valid:
            raise HTTPException(
                status_code=400,
                detail=_error_detail("INVALID_TENANT", "invalid tenant_id"),
            )
        request.state.tenant_id = auth_tenant
        request.state.tenant_is_key_bound = True
        db_session = getattr(request.state, "db_session", None)
        if db_session is not None:
            set_tenant_context(db_session, auth_tenant)
        return auth_tenant

    log_tenant_denial_event(
        request=request,
        reason="missing_key_bound_tenant",
        tenant_from_key=None,
        tenant_supplied=requested,
        key_id=key_prefix,
    )
    raise HTTPException(
        status_code=400,
        detail=_error_detail("TENANT_REQUIRED", "key is not bound to a tenant"),
    )


def require_bound_tenant(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id and getattr(request.state, "tenant_is_key_bound", False):
        return str(tenant_id)
    raise HTTPException(
        status_code=400,
        detail=_error_detail("TENANT_REQUIRED", "key is not bound to a tenant"),
    )


def require_scopes(*scopes: str) -> Callable[..., None]:
    needed: Set[str] = {str(s).strip() for s in scopes if str(s).strip()}

    def _scoped_key_dep(
        request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ) -> AuthResult:
        return require_api_key_always(
            request, x_api_key, required_scopes=needed or None
        )

    def _dep(_: AuthResult = Depends(_scoped_key_dep)) -> None:
        return None

    return _dep


def current_principal(request: Request) -> Principal:
    """
    The authenticated session for this request. Attestation and audit actor
    fields are read from here, never from the request body.
    """
    auth = getattr(request.state, "auth", None)
    if not isinstance(auth, AuthResult) or not auth.valid:
        raise HTTPException(
            status_code=401, detail=_error_detail("UNAUTHORIZED", ERR_INVALID)
        )
    tenant_id = require_bound_tenant(request)
    return Principal(
        tenant_id=tenant_id,
        user_id=auth.user_id or DEV_USER_ID,
        email=auth.user_email,
        role=(auth.role or "user").lower(),
        scopes=frozenset(auth.scopes),
        key_prefix=auth.key_prefix,
    )
