from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from api.auth_scopes import current_principal, require_scopes
from api.deps import tenant_db_required
from services.evidence_kernel import tenants

router = APIRouter(prefix="/tenants", tags=["tenants"])


class DataModeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_mode: str


def _cid(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


@router.get("/me", dependencies=[Depends(require_scopes("evidence:read"))])
def get_my_tenant(
    request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    principal = current_principal(request)
    profile = tenants.get_profile(db, principal.tenant_id)
    return {
        "ok": True,
        "tenant": tenants.serialize_profile(profile, principal.tenant_id),
        "principal": {
            "user_id": principal.user_id,
            "email": principal.email,
            "role": principal.role,
            "scopes": sorted(principal.scopes),
        },
        "correlation_id": _cid(request),
    }


@router.put("/me/data-mode", dependencies=[Depends(require_scopes("admin:write"))])
def set_my_data_mode(
    body: DataModeRequest, request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    principal = current_principal(request)
    profile = tenants.set_data_mode(
        db,
        tenant_id=principal.tenant_id,
        data_mode=body.data_mode,
        actor_user_id=principal.user_id,
        actor_email=principal.email,
        correlation_id=_cid(request),
    )
    return {
        "ok": True,
        "tenant": tenants.serialize_profile(profile, principal.tenant_id),
        "correlation_id": _cid(request),
    }
