from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from api.auth_scopes import current_principal, require_scopes
from api.deps import tenant_db_required
from services.evidence_kernel import get_record_service
from services.evidence_kernel.records import serialize_record

router = APIRouter(prefix="/evidence", tags=["evidence"])
records = get_record_service()


def _cid(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


@router.get("/records", dependencies=[Depends(require_scopes("evidence:read"))])
def list_records(
    request: Request,
    dataset_type: Optional[str] = Query(None),
    ingestion_method: Optional[str] = Query(None),
    trust_level: Optional[str] = Query(None),
    request_id: Optional[str] = Query(None),
    evidence_id: Optional[str] = Query(None),
    display_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    rows = records.list_records(
        db,
        tenant_id=principal.tenant_id,
        dataset_type=dataset_type,
        ingestion_method=ingestion_method,
        trust_level=trust_level,
        request_id=request_id,
        evidence_id=evidence_id,
        display_id=display_id,
        limit=limit,
        offset=offset,
    )
    return {
        "ok": True,
        "records": [serialize_record(r) for r in rows],
        "count": len(rows),
        "correlation_id": _cid(request),
    }


@router.get(
    "/records/{evidence_id}", dependencies=[Depends(require_scopes("evidence:read"))]
)
def get_record(
    evidence_id: str,
    request: Request,
    include_payload: bool = Query(False),
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    record = records.get(db, tenant_id=principal.tenant_id, evidence_id=evidence_id)
    return {
        "ok": True,
        "record": serialize_record(record, include_payload=include_payload),
        "correlation_id": _cid(request),
    }


@router.api_route(
    "/records/{evidence_id}",
    methods=["PATCH", "PUT", "DELETE"],
    dependencies=[Depends(require_scopes("evidence:write"))],
)
def reject_record_update(
    evidence_id: str, request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    """Sealed records never change; every write is audited and refused."""
    principal = current_principal(request)
    raise records.reject_update(
        db,
        principal=principal,
        evidence_id=evidence_id,
        operation=request.method,
        correlation_id=_cid(request),
    )
