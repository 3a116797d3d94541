# tools/tenants/registry.py

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from loguru import logger
from sqlalchemy import select

from api.auth_scopes import list_api_keys, mint_key, revoke_api_key
from api.db import get_sessionmaker, init_db
from api.db_models import TenantProfile
from services.canonical import isoz
from services.evidence_kernel import tenants

CLI_ACTOR = "tenant-cli"

# Operator roles map to the scopes their keys carry.
ROLE_SCOPES = {
    "user": ("evidence:read", "evidence:write", "evidence:seal"),
    "compliance": (
        "evidence:read",
        "evidence:write",
        "evidence:seal",
        "review:write",
        "audit:read",
    ),
    "legal": ("evidence:read", "review:write", "audit:read"),
    "admin": (
        "evidence:read",
        "evidence:write",
        "evidence:seal",
        "review:write",
        "audit:read",
        "admin:write",
    ),
    "auditor": ("evidence:read", "audit:read"),
}


@dataclass
class TenantRecord:
    tenant_id: str
    name: Optional[str]
    data_mode: str
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_profile(cls, profile: TenantProfile) -> "TenantRecord":
        return cls(
            tenant_id=profile.tenant_id,
            name=profile.display_name,
            data_mode=profile.data_mode,
            created_at=isoz(profile.created_at),
            updated_at=isoz(profile.updated_at),
        )


def ensure_tenant(
    tenant_id: str,
    name: Optional[str] = None,
    data_mode: Optional[str] = None,
) -> TenantRecord:
    """
    Idempotent "upsert" for a tenant profile:
      - if exists: returns it (data mode untouched, name refreshed if given)
      - if not: creates it with the given or configured default data mode
    """
    init_db()
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        existed = tenants.get_profile(db, tenant_id) is not None
        profile = tenants.ensure_profile(
            db, tenant_id, display_name=name, data_mode=data_mode
        )
        db.commit()
        rec = TenantRecord.from_profile(profile)
    if not existed:
        logger.info("tenant_created", tenant_id=tenant_id, data_mode=rec.data_mode)
    return rec


def set_tenant_data_mode(tenant_id: str, data_mode: str) -> TenantRecord:
    init_db()
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        profile = tenants.set_data_mode(
            db,
            tenant_id=tenant_id,
            data_mode=data_mode,
            actor_user_id=CLI_ACTOR,
        )
        rec = TenantRecord.from_profile(profile)
    logger.info("tenant_data_mode_set", tenant_id=tenant_id, data_mode=rec.data_mode)
    return rec


def list_tenants() -> List[TenantRecord]:
    init_db()
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        rows = (
            db.execute(select(TenantProfile).order_by(TenantProfile.tenant_id))
            .scalars()
            .all()
        )
        return [TenantRecord.from_profile(r) for r in rows]


def issue_api_key(
    tenant_id: str,
    *,
    user_id: str,
    email: Optional[str] = None,
    role: str = "user",
    scopes: Optional[List[str]] = None,
    ttl_days: int = 30,
) -> str:
    """Mint a tenant-bound key; the tenant profile is created if missing."""
    role = role.lower()
    if scopes is None:
        if role not in ROLE_SCOPES:
            raise KeyError(f"Unknown role: {role}")
        scopes = list(ROLE_SCOPES[role])
    ensure_tenant(tenant_id)
    key = mint_key(
        *scopes,
        tenant_id=tenant_id,
        user_id=user_id,
        email=email,
        role=role,
        ttl_seconds=int(ttl_days) * 24 * 3600,
        name=f"cli:{user_id}",
    )
    logger.info(
        "tenant_key_issued",
        tenant_id=tenant_id,
        user_id=user_id,
        role=role,
        prefix=key.split(".", 1)[0],
    )
    return key


def list_keys(tenant_id: Optional[str] = None, include_disabled: bool = False) -> list[dict]:
    init_db()
    return list_api_keys(tenant_id=tenant_id, include_disabled=include_disabled)


def revoke_key(prefix: str, tenant_id: Optional[str] = None) -> bool:
    init_db()
    revoked = revoke_api_key(prefix, tenant_id=tenant_id)
    if revoked:
        logger.info("tenant_key_revoked", prefix=prefix, tenant_id=tenant_id)
    else:
        logger.warning("tenant_key_not_found", prefix=prefix, tenant_id=tenant_id)
    return revoked
