from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from api.auth_scopes import current_principal, require_scopes
from api.deps import tenant_db_required
from services.evidence_kernel import get_work_item_service
from services.evidence_kernel.work_items import serialize_work_item

router = APIRouter(prefix="/work-items", tags=["work-items"])
service = get_work_item_service()


class ResolveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolution: Optional[str] = None
    note: Optional[str] = None


def _cid(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


@router.get("", dependencies=[Depends(require_scopes("evidence:read"))])
def list_work_items(
    request: Request,
    status: Optional[str] = Query(None),
    item_type: Optional[str] = Query(None),
    evidence_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    rows = service.list_items(
        db,
        tenant_id=principal.tenant_id,
        status=status,
        item_type=item_type,
        evidence_id=evidence_id,
        limit=limit,
        offset=offset,
    )
    return {
        "ok": True,
        "work_items": [serialize_work_item(r) for r in rows],
        "count": len(rows),
        "correlation_id": _cid(request),
    }


@router.get(
    "/{work_item_id}", dependencies=[Depends(require_scopes("evidence:read"))]
)
def get_work_item(
    work_item_id: str, request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    principal = current_principal(request)
    item = service.get(db, tenant_id=principal.tenant_id, work_item_id=work_item_id)
    return {
        "ok": True,
        "work_item": serialize_work_item(item),
        "correlation_id": _cid(request),
    }


@router.post(
    "/{work_item_id}/resolve",
    dependencies=[Depends(require_scopes("review:write"))],
)
def resolve_work_item(
    work_item_id: str,
    body: ResolveRequest,
    request: Request,
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    item = service.resolve(
        db,
        principal=principal,
        work_item_id=work_item_id,
        resolution=body.resolution,
        note=body.note,
        correlation_id=_cid(request),
    )
    return {
        "ok": True,
        "work_item": serialize_work_item(item),
        "correlation_id": _cid(request),
    }
