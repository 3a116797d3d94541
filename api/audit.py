from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from api.auth_scopes import require_bound_tenant, require_scopes
from api.deps import tenant_db_required
from services.evidence_kernel import get_audit_log
from services.evidence_kernel.audit_log import serialize_event

router = APIRouter(prefix="/audit", tags=["audit"])
audit = get_audit_log()


@router.get("/events", dependencies=[Depends(require_scopes("audit:read"))])
def list_audit_events(
    request: Request,
    entity_id: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    after_sequence: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    tenant_id = require_bound_tenant(request)
    rows = audit.list_events(
        db,
        tenant_id,
        entity_id=entity_id,
        entity_type=entity_type,
        action=action,
        after_sequence=after_sequence,
        limit=limit,
    )
    return {
        "ok": True,
        "events": [serialize_event(r) for r in rows],
        "count": len(rows),
        "next_after_sequence": rows[-1].sequence if rows else after_sequence,
        "correlation_id": getattr(request.state, "correlation_id", None),
    }


@router.get("/verify", dependencies=[Depends(require_scopes("audit:read"))])
def verify_audit_chain(
    request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    tenant_id = require_bound_tenant(request)
    result = audit.verify_chain(db, tenant_id)
    return {
        "ok": True,
        "chain": result.to_dict(),
        "correlation_id": getattr(request.state, "correlation_id", None),
    }
