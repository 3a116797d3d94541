from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from api.auth_scopes.definitions import Principal
from api.db_models import EvidenceRecord
from services.canonical import isoz
from services.evidence_kernel.audit_log import ENTITY_RECORD, AuditLog, get_audit_log
from services.evidence_kernel.contracts import LEDGER_SEALED, PAYLOAD_FILE, PAYLOAD_TEXT
from services.evidence_kernel.errors import (
    ERR_SEALED_IMMUTABLE,
    EvidenceKernelError,
    conflict,
    not_found,
)

log = logging.getLogger("supplylens.evidence_kernel.records")


def _payload_preview(record: EvidenceRecord) -> Any:
    data = record.payload_bytes
    if data is None or record.payload_kind == PAYLOAD_FILE:
        return None
    if record.payload_kind == PAYLOAD_TEXT:
        return data.decode("utf-8", errors="replace")
    try:
        return json.loads(data.decode("utf-8"))
    except ValueError:
        return base64.b64encode(data).decode("ascii")


def serialize_record(record: EvidenceRecord, *, include_payload: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "evidence_id": record.evidence_id,
        "display_id": record.display_id,
        "sequence": record.sequence,
        "tenant_id": record.tenant_id,
        "draft_id": record.draft_id,
        "request_id": record.request_id,
        "ingestion_method": record.ingestion_method,
        "source_system": record.source_system,
        "dataset_type": record.dataset_type,
        "declared_scope": record.declared_scope,
        "scope_target_id": record.scope_target_id,
        "link_status": record.link_status,
        "payload_kind": record.payload_kind,
        "payload_hash_sha256": record.payload_hash_sha256,
        "file_name": record.file_name,
        "metadata_hash_sha256": record.metadata_hash_sha256,
        "metadata": json.loads(record.metadata_canonical_json),
        "trust_level": record.trust_level,
        "review_status": record.review_status,
        "retention_policy": record.retention_policy,
        "retention_ends_at_utc": isoz(record.retention_ends_at_utc),
        "data_mode": record.data_mode,
        "contains_personal_data": record.contains_personal_data,
        "attestor_user_id": record.attestor_user_id,
        "attested_by_email": record.attested_by_email,
        "attestation_method": record.attestation_method,
        "attested_at_utc": isoz(record.attested_at_utc),
        "created_by_user_id": record.created_by_user_id,
        "ledger_state": record.ledger_state,
        "sealed_at_utc": isoz(record.sealed_at_utc),
    }
    if include_payload:
        out["payload"] = _payload_preview(record)
    return out


class EvidenceRecordService:
    def __init__(self, audit: Optional[AuditLog] = None) -> None:
        self.audit = audit or get_audit_log()

    def get(self, db: Session, *, tenant_id: str, evidence_id: str) -> EvidenceRecord:
        record = db.execute(
            select(EvidenceRecord).where(
                EvidenceRecord.tenant_id == tenant_id,
                EvidenceRecord.evidence_id == evidence_id,
            )
        ).scalar_one_or_none()
        if record is None:
            raise not_found("evidence record")
        return record

    def find_by_request_id(
        self, db: Session, *, tenant_id: str, request_id: str
    ) -> Optional[EvidenceRecord]:
        return db.execute(
            select(EvidenceRecord).where(
                EvidenceRecord.tenant_id == tenant_id,
                EvidenceRecord.request_id == request_id,
            )
        ).scalar_one_or_none()

    def find_by_draft(
        self, db: Session, *, tenant_id: str, draft_id: str
    ) -> Optional[EvidenceRecord]:
        return db.execute(
            select(EvidenceRecord).where(
                EvidenceRecord.tenant_id == tenant_id,
                EvidenceRecord.draft_id == draft_id,
            )
        ).scalar_one_or_none()

    def list_records(
        self,
        db: Session,
        *,
        tenant_id: str,
        dataset_type: Optional[str] = None,
        ingestion_method: Optional[str] = None,
        trust_level: Optional[str] = None,
        request_id: Optional[str] = None,
        evidence_id: Optional[str] = None,
        display_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EvidenceRecord]:
        # An id owned by another tenant matches nothing: empty list, not 404.
        stmt = select(EvidenceRecord).where(EvidenceRecord.tenant_id == tenant_id)
        if evidence_id:
            stmt = stmt.where(EvidenceRecord.evidence_id == evidence_id)
        if display_id:
            stmt = stmt.where(EvidenceRecord.display_id == display_id)
        if dataset_type:
            stmt = stmt.where(EvidenceRecord.dataset_type == dataset_type)
        if ingestion_method:
            stmt = stmt.where(EvidenceRecord.ingestion_method == ingestion_method)
        if trust_level:
            stmt = stmt.where(EvidenceRecord.trust_level == trust_level)
        if request_id:
            stmt = stmt.where(EvidenceRecord.request_id == request_id)
        stmt = (
            stmt.order_by(EvidenceRecord.sequence.desc())
            .offset(max(0, int(offset)))
            .limit(max(1, min(int(limit), 500)))
        )
        return list(db.execute(stmt).scalars().all())

    def reject_update(
        self,
        db: Session,
        *,
        principal: Principal,
        evidence_id: str,
        operation: str,
        correlation_id: Optional[str] = None,
    ) -> EvidenceKernelError:
        """
        Every write against a sealed record lands here. The attempt is
        audited and committed; the caller raises the returned error.
        """
        record = self.get(db, tenant_id=principal.tenant_id, evidence_id=evidence_id)
        self.audit.append(
            db,
            tenant_id=principal.tenant_id,
            entity_type=ENTITY_RECORD,
            entity_id=record.evidence_id,
            action="SEALED_UPDATE_REJECTED",
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=record.ledger_state,
            new_state=record.ledger_state,
            details={"operation": operation},
            correlation_id=correlation_id,
        )
        db.commit()
        log.warning(
            "record.update_rejected tenant=%s evidence=%s op=%s user=%s",
            principal.tenant_id,
            evidence_id,
            operation,
            principal.user_id,
        )
        return conflict(
            ERR_SEALED_IMMUTABLE,
            "Evidence record is sealed and cannot be modified",
            evidence_id=record.evidence_id,
            ledger_state=record.ledger_state or LEDGER_SEALED,
        )


_RECORDS = EvidenceRecordService()


def get_record_service() -> EvidenceRecordService:
    return _RECORDS
