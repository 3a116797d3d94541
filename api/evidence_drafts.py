from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from api.auth_scopes import current_principal, require_scopes
from api.deps import tenant_db_required
from services.evidence_kernel.drafts import serialize_draft
from services.evidence_kernel import get_draft_service, get_sealing_engine
from services.evidence_kernel.records import serialize_record

router = APIRouter(prefix="/evidence", tags=["evidence"])
drafts = get_draft_service()
sealing = get_sealing_engine()

REPLAY_HEADER = "Idempotent-Replay"


class DraftDeclaration(BaseModel):
    # Unknown keys pass through so the gate can name forged or
    # client-hashed fields instead of a generic schema error.
    model_config = ConfigDict(extra="allow")

    request_id: Optional[str] = None
    command_id: Optional[str] = None
    ingestion_method: Optional[str] = None
    source_system: Optional[str] = None
    dataset_type: Optional[str] = None
    declared_scope: Optional[str] = None
    scope_target_id: Optional[str] = None
    scope_target_name: Optional[str] = None
    primary_intent: Optional[str] = None
    purpose_tags: Any = None
    retention_policy: Optional[str] = None
    retention_custom_days: Any = None
    contains_personal_data: Any = None
    gdpr_legal_basis: Optional[str] = None
    unlinked_reason: Optional[str] = None
    resolution_due_date: Optional[str] = None
    entry_notes: Optional[str] = None
    origin: Optional[str] = None
    external_reference_id: Optional[str] = None
    export_job_id: Optional[str] = None
    connector_reference: Optional[str] = None
    snapshot_datetime_utc: Optional[str] = None
    payload: Any = None
    # ingest wire name for `payload`
    payload_bytes: Any = None


class PayloadAttachRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payload: Any = None


class QuarantineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = None


async def _raw_body(request: Request) -> bytes:
    return await request.body()


def _cid(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def _declared(body: BaseModel) -> dict[str, Any]:
    return body.model_dump(exclude_unset=True)


@router.post(
    "/drafts",
    status_code=201,
    dependencies=[Depends(require_scopes("evidence:write"))],
)
def create_draft(
    body: DraftDeclaration,
    request: Request,
    response: Response,
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    result = drafts.create_draft(
        db,
        principal=principal,
        declaration=_declared(body),
        correlation_id=_cid(request),
    )
    if result.idempotent_replay:
        response.status_code = 200
        response.headers[REPLAY_HEADER] = "true"
    return {
        "ok": True,
        "draft": serialize_draft(result.draft),
        "idempotent_replay": result.idempotent_replay,
        "correlation_id": _cid(request),
    }


@router.get(
    "/drafts/{draft_id}", dependencies=[Depends(require_scopes("evidence:read"))]
)
def get_draft(
    draft_id: str, request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    principal = current_principal(request)
    draft = drafts.get_draft(db, tenant_id=principal.tenant_id, draft_id=draft_id)
    return {"ok": True, "draft": serialize_draft(draft), "correlation_id": _cid(request)}


@router.patch(
    "/drafts/{draft_id}", dependencies=[Depends(require_scopes("evidence:write"))]
)
def update_draft(
    draft_id: str,
    body: DraftDeclaration,
    request: Request,
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    draft = drafts.update_draft(
        db,
        principal=principal,
        draft_id=draft_id,
        patch=_declared(body),
        correlation_id=_cid(request),
    )
    return {"ok": True, "draft": serialize_draft(draft), "correlation_id": _cid(request)}


@router.post(
    "/drafts/{draft_id}/payload",
    dependencies=[Depends(require_scopes("evidence:write"))],
)
def attach_payload(
    draft_id: str,
    body: PayloadAttachRequest,
    request: Request,
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    draft = drafts.attach_payload(
        db,
        principal=principal,
        draft_id=draft_id,
        payload=body.payload,
        correlation_id=_cid(request),
    )
    return {"ok": True, "draft": serialize_draft(draft), "correlation_id": _cid(request)}


@router.post(
    "/drafts/{draft_id}/file",
    dependencies=[Depends(require_scopes("evidence:write"))],
)
def attach_file(
    draft_id: str,
    request: Request,
    data: bytes = Depends(_raw_body),
    x_filename: Optional[str] = Header(None, alias="X-Filename"),
    content_type: Optional[str] = Header(None, alias="Content-Type"),
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    draft = drafts.attach_file(
        db,
        principal=principal,
        draft_id=draft_id,
        data=data,
        file_name=x_filename,
        content_type=content_type,
        correlation_id=_cid(request),
    )
    return {"ok": True, "draft": serialize_draft(draft), "correlation_id": _cid(request)}


@router.post(
    "/drafts/{draft_id}/quarantine",
    dependencies=[Depends(require_scopes("evidence:write"))],
)
def quarantine_draft(
    draft_id: str,
    body: QuarantineRequest,
    request: Request,
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    principal = current_principal(request)
    draft = drafts.quarantine_draft(
        db,
        principal=principal,
        draft_id=draft_id,
        reason=body.reason,
        correlation_id=_cid(request),
    )
    return {"ok": True, "draft": serialize_draft(draft), "correlation_id": _cid(request)}


@router.post(
    "/drafts/{draft_id}/cancel",
    dependencies=[Depends(require_scopes("evidence:write"))],
)
def cancel_draft(
    draft_id: str, request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    principal = current_principal(request)
    draft = drafts.cancel_draft(
        db, principal=principal, draft_id=draft_id, correlation_id=_cid(request)
    )
    return {"ok": True, "draft": serialize_draft(draft), "correlation_id": _cid(request)}


@router.post(
    "/drafts/{draft_id}/seal",
    status_code=201,
    dependencies=[Depends(require_scopes("evidence:seal"))],
)
def seal_draft(
    draft_id: str, request: Request, db: Session = Depends(tenant_db_required)
) -> dict[str, object]:
    principal = current_principal(request)
    result = sealing.seal(
        db, principal=principal, draft_id=draft_id, correlation_id=_cid(request)
    )
    out: dict[str, object] = {"ok": True, **result.summary()}
    out["record"] = serialize_record(result.record)
    out["correlation_id"] = _cid(request)
    return out


@router.post(
    "/ingest",
    status_code=201,
    dependencies=[Depends(require_scopes("evidence:seal"))],
)
def ingest(
    body: DraftDeclaration,
    request: Request,
    response: Response,
    db: Session = Depends(tenant_db_required),
) -> dict[str, object]:
    """Create, attach and seal in one call; replays return 200."""
    principal = current_principal(request)
    result = sealing.ingest(
        db,
        principal=principal,
        declaration=_declared(body),
        correlation_id=_cid(request),
    )
    if result.is_replay:
        response.status_code = 200
        response.headers[REPLAY_HEADER] = "true"
    out: dict[str, object] = {"ok": True, **result.summary()}
    out["record"] = serialize_record(result.record)
    out["correlation_id"] = _cid(request)
    return out
