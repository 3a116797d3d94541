from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from api.config import get_settings
from api.db_models import TenantProfile
from services.canonical import isoz, utcnow
from services.evidence_kernel.audit_log import ENTITY_TENANT, get_audit_log
from services.evidence_kernel.contracts import DATA_MODES
from services.evidence_kernel.errors import ERR_VALIDATION_FAILED, validation_error

log = logging.getLogger("supplylens.evidence_kernel.tenants")


def get_profile(db: Session, tenant_id: str) -> Optional[TenantProfile]:
    return db.execute(
        select(TenantProfile).where(TenantProfile.tenant_id == tenant_id)
    ).scalar_one_or_none()


def get_data_mode(db: Session, tenant_id: str) -> str:
    """Server-side data mode; tenants without a profile get the configured default."""
    profile = get_profile(db, tenant_id)
    if profile is not None:
        return profile.data_mode
    return get_settings().default_data_mode


def ensure_profile(
    db: Session,
    tenant_id: str,
    *,
    display_name: Optional[str] = None,
    data_mode: Optional[str] = None,
) -> TenantProfile:
    profile = get_profile(db, tenant_id)
    if profile is None:
        mode = (data_mode or get_settings().default_data_mode).upper()
        if mode not in DATA_MODES:
            raise validation_error(
                ERR_VALIDATION_FAILED, f"Unknown data_mode: {mode}", field="data_mode"
            )
        profile = TenantProfile(
            tenant_id=tenant_id, display_name=display_name, data_mode=mode
        )
        db.add(profile)
        db.flush()
        log.info("tenant.provisioned tenant=%s data_mode=%s", tenant_id, mode)
    elif display_name and profile.display_name != display_name:
        profile.display_name = display_name
        profile.updated_at = utcnow()
    return profile


def set_data_mode(
    db: Session,
    *,
    tenant_id: str,
    data_mode: str,
    actor_user_id: str,
    actor_email: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> TenantProfile:
    mode = (data_mode or "").strip().upper()
    if mode not in DATA_MODES:
        raise validation_error(
            ERR_VALIDATION_FAILED,
            f"data_mode must be one of: {', '.join(DATA_MODES)}",
            field="data_mode",
        )
    profile = ensure_profile(db, tenant_id)
    previous = profile.data_mode
    if previous != mode:
        profile.data_mode = mode
        profile.updated_at = utcnow()
        get_audit_log().append(
            db,
            tenant_id=tenant_id,
            entity_type=ENTITY_TENANT,
            entity_id=tenant_id,
            action="DATA_MODE_CHANGED",
            actor_user_id=actor_user_id,
            actor_email=actor_email,
            previous_state=previous,
            new_state=mode,
            correlation_id=correlation_id,
        )
    db.commit()
    return profile


def serialize_profile(profile: TenantProfile | None, tenant_id: str) -> dict:
    if profile is None:
        return {
            "tenant_id": tenant_id,
            "display_name": None,
            "data_mode": get_settings().default_data_mode,
            "provisioned": False,
            "created_at": None,
            "updated_at": None,
        }
    return {
        "tenant_id": profile.tenant_id,
        "display_name": profile.display_name,
        "data_mode": profile.data_mode,
        "provisioned": True,
        "created_at": isoz(profile.created_at),
        "updated_at": isoz(profile.updated_at),
    }
