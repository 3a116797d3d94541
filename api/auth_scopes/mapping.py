from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from api.db import get_sessionmaker, init_db
from api.db_models import ApiKey

from .definitions import DEFAULT_TTL_SECONDS, KEY_PREFIX
from .helpers import _b64url, _parse_scopes_csv, hash_key
from .validation import _validate_tenant_id

log = logging.getLogger("supplylens.auth")


def _new_prefix() -> str:
    return f"{KEY_PREFIX}{secrets.token_hex(4)}"


def _update_key_usage(db: Session, key_id: int) -> None:
    db.execute(
        update(ApiKey)
        .where(ApiKey.id == key_id)
        .values(last_used_at=int(time.time()), use_count=ApiKey.use_count + 1)
    )
    db.commit()


def mint_key(
    *scopes: str,
    tenant_id: Optional[str] = None,
    user_id: str = "api-user",
    email: Optional[str] = None,
    role: str = "user",
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: Optional[int] = None,
    secret: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """
    Mint a key and persist it into `api_keys`.

    Returned key format:
      <prefix>.<token>.<secret>

    The token is an unsigned base64url JSON blob carrying the expiry. Only
    the secret is verified; scopes and tenant always come from the row.
    """
    if tenant_id is not None:
        ok, err = _validate_tenant_id(tenant_id)
        if not ok:
            raise ValueError(err)

    init_db()

    now_i = int(now) if now is not None else int(time.time())
    exp_i = now_i + int(ttl_seconds)
    if secret is None:
        secret = secrets.token_urlsafe(32)

    prefix = _new_prefix()
    token = _b64url(
        json.dumps(
            {"iat": now_i, "exp": exp_i}, separators=(",", ":"), sort_keys=True
        ).encode("utf-8")
    )
    key_hash, hash_alg, hash_params, key_lookup = hash_key(secret)
    scopes_csv = ",".join(sorted({s.strip() for s in scopes if s.strip()}))

    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        db.add(
            ApiKey(
                prefix=prefix,
                name=name or "minted:" + (scopes_csv or "none"),
                key_lookup=key_lookup,
                key_hash=key_hash,
                hash_alg=hash_alg,
                hash_params=json.dumps(
                    hash_params, separators=(",", ":"), sort_keys=True
                ),
                scopes_csv=scopes_csv,
                tenant_id=tenant_id,
                user_id=user_id,
                user_email=email,
                role=role,
                enabled=True,
                expires_at=exp_i,
                use_count=0,
            )
        )
        db.commit()

    log.info("api key minted prefix=%s tenant=%s role=%s", prefix, tenant_id, role)
    return f"{prefix}.{token}.{secret}"


def revoke_api_key(key_prefix: str, *, tenant_id: Optional[str] = None) -> bool:
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        stmt = update(ApiKey).where(ApiKey.prefix == key_prefix)
        if tenant_id:
            stmt = stmt.where(ApiKey.tenant_id == tenant_id)
        res = db.execute(stmt.values(enabled=False))
        db.commit()
        revoked = (res.rowcount or 0) > 0

    if revoked:
        from .resolution import _log_auth_event

        _log_auth_event("key_revoked", success=True, key_prefix=key_prefix)
    return revoked


def list_api_keys(
    tenant_id: Optional[str] = None,
    include_disabled: bool = False,
) -> list[dict]:
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        stmt = select(ApiKey).order_by(ApiKey.id)
        if not include_disabled:
            stmt = stmt.where(ApiKey.enabled.is_(True))
        if tenant_id:
            stmt = stmt.where(ApiKey.tenant_id == tenant_id)
        rows = db.execute(stmt).scalars().all()

    return [
        {
            "prefix": r.prefix,
            "name": r.name,
            "tenant_id": r.tenant_id,
            "user_id": r.user_id,
            "user_email": r.user_email,
            "role": r.role,
            "scopes": sorted(_parse_scopes_csv(r.scopes_csv)),
            "enabled": bool(r.enabled),
            "expires_at": r.expires_at,
            "last_used_at": r.last_used_at,
            "use_count": r.use_count,
        }
        for r in rows
    ]
