"""
Append-only audit log with a per-tenant SHA-256 hash chain.

Hash chain design:
  body       = canonical_json({every stored column except the two hashes})
  event_hash = SHA256(prev_hash || "|" || body)
  first event of a tenant links to GENESIS

Invariants:
  - Every draft, record and work-item transition emits exactly one event.
  - Sequence is dense per tenant, starting at 1, guarded by a unique
    (tenant_id, sequence) constraint. Lost races retry a bounded number
    of times inside a savepoint.
  - Appends flush but never commit; the event lands in the same
    transaction as the transition it records.
  - Reads are always filtered by the caller's tenant.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.db_models import AuditEvent
from services.canonical import canonical_json, isoz, sha256_hex, utcnow
from services.evidence_kernel.metrics import AUDIT_SEQUENCE_RETRIES

log = logging.getLogger("supplylens.evidence_kernel.audit")

GENESIS = "GENESIS"
MAX_SEQUENCE_RETRIES = 5

ENTITY_DRAFT = "EvidenceDraft"
ENTITY_RECORD = "EvidenceRecord"
ENTITY_WORK_ITEM = "WorkItem"
ENTITY_TENANT = "Tenant"
ENTITY_REQUEST = "Request"

ENTITY_TYPES = frozenset(
    {ENTITY_DRAFT, ENTITY_RECORD, ENTITY_WORK_ITEM, ENTITY_TENANT, ENTITY_REQUEST}
)

# action -> regulatory citation recorded with the event
REGULATORY_CITATIONS = {
    "DRAFT_CREATED": "ISO/IEC 27001:2022 A.8.15 (logging); GDPR Art. 5(2) (accountability)",
    "DRAFT_UPDATED": "ISO/IEC 27001:2022 A.8.15 (logging); GDPR Art. 5(1)(d) (accuracy)",
    "PAYLOAD_ATTACHED": "ISO/IEC 27001:2022 A.8.15 (logging); ISO/IEC 27037 (evidence acquisition)",
    "FILE_ATTACHED": "ISO/IEC 27001:2022 A.8.15 (logging); ISO/IEC 27037 (evidence acquisition)",
    "DRAFT_QUARANTINED": "ISO/IEC 27001:2022 A.5.28 (collection of evidence)",
    "DRAFT_CANCELLED": "ISO/IEC 27001:2022 A.8.15 (logging)",
    "DRAFT_SEALED": "ISO/IEC 27001:2022 A.5.33 (protection of records)",
    "EVIDENCE_SEALED": "eIDAS Art. 3(34) (qualified preservation); ISO/IEC 27001:2022 A.5.33 (protection of records)",
    "SEALED_UPDATE_REJECTED": "ISO/IEC 27001:2022 A.5.33 (protection of records)",
    "WORK_ITEM_CREATED": "ISO/IEC 27001:2022 A.5.24 (incident management planning)",
    "WORK_ITEM_RESOLVED": "ISO/IEC 27001:2022 A.5.26 (response to events)",
    "IDEMPOTENCY_CONFLICT": "ISO/IEC 27001:2022 A.8.15 (logging)",
    "DATA_MODE_CHANGED": "ISO/IEC 27001:2022 A.8.32 (change management)",
    "SECURITY_VIOLATION": "ISO/IEC 27001:2022 A.5.25 (assessment of security events); GDPR Art. 32",
}
DEFAULT_CITATION = "ISO/IEC 27001:2022 A.8.15 (logging)"


@dataclass
class ChainVerificationResult:
    ok: bool
    tenant_id: str
    total_events: int
    first_broken_sequence: Optional[int] = None
    error_detail: Optional[str] = None
    head_hash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "tenant_id": self.tenant_id,
            "total_events": self.total_events,
            "first_broken_sequence": self.first_broken_sequence,
            "error_detail": self.error_detail,
            "head_hash": self.head_hash,
        }


def _details_text(details: Any) -> Optional[str]:
    if details is None:
        return None
    if isinstance(details, str):
        return details
    return canonical_json(details)


def event_body(row: AuditEvent) -> dict[str, Any]:
    return {
        "audit_event_id": row.audit_event_id,
        "tenant_id": row.tenant_id,
        "sequence": int(row.sequence),
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "action": row.action,
        "actor_user_id": row.actor_user_id,
        "actor_email": row.actor_email,
        "previous_state": row.previous_state,
        "new_state": row.new_state,
        "regulatory_citation": row.regulatory_citation,
        "details": row.details,
        "correlation_id": row.correlation_id,
        "created_at": isoz(row.created_at),
    }


def compute_event_hash(prev_hash: str, body: dict[str, Any]) -> str:
    return sha256_hex(f"{prev_hash}|{canonical_json(body)}")


def serialize_event(row: AuditEvent) -> dict[str, Any]:
    out = event_body(row)
    out["prev_hash"] = row.prev_hash
    out["event_hash"] = row.event_hash
    return out


class AuditLog:
    def _tip(self, db: Session, tenant_id: str) -> tuple[int, str]:
        row = db.execute(
            select(AuditEvent.sequence, AuditEvent.event_hash)
            .where(AuditEvent.tenant_id == tenant_id)
            .order_by(AuditEvent.sequence.desc())
            .limit(1)
        ).first()
        if row is None:
            return 0, GENESIS
        return int(row[0]), str(row[1])

    def append(
        self,
        db: Session,
        *,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_user_id: str,
        actor_email: Optional[str] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        details: Any = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        """
        Append one event to the tenant's chain.

        Raises RuntimeError when the sequence cannot be claimed after
        MAX_SEQUENCE_RETRIES attempts (fail-closed).
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Invalid entity_type: {entity_type!r}")

        for attempt in range(1, MAX_SEQUENCE_RETRIES + 1):
            seq, prev_hash = self._tip(db, tenant_id)
            row = AuditEvent(
                audit_event_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                sequence=seq + 1,
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                actor_user_id=actor_user_id,
                actor_email=actor_email,
                previous_state=previous_state,
                new_state=new_state,
                regulatory_citation=REGULATORY_CITATIONS.get(action, DEFAULT_CITATION),
                details=_details_text(details),
                correlation_id=correlation_id,
                created_at=utcnow(),
                prev_hash=prev_hash,
                event_hash="",
            )
            row.event_hash = compute_event_hash(prev_hash, event_body(row))
            try:
                with db.begin_nested():
                    db.add(row)
            except IntegrityError:
                AUDIT_SEQUENCE_RETRIES.inc()
                log.warning(
                    "audit.sequence_conflict tenant=%s sequence=%s attempt=%s",
                    tenant_id,
                    seq + 1,
                    attempt,
                )
                continue

            log.debug(
                "audit.appended tenant=%s seq=%s action=%s entity=%s/%s",
                tenant_id,
                row.sequence,
                action,
                entity_type,
                entity_id,
            )
            return row

        raise RuntimeError(
            f"audit sequence contention for tenant after {MAX_SEQUENCE_RETRIES} attempts"
        )

    def list_events(
        self,
        db: Session,
        tenant_id: str,
        *,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        action: Optional[str] = None,
        after_sequence: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        stmt = select(AuditEvent).where(
            AuditEvent.tenant_id == tenant_id,
            AuditEvent.sequence > after_sequence,
        )
        if entity_id:
            stmt = stmt.where(AuditEvent.entity_id == entity_id)
        if entity_type:
            stmt = stmt.where(AuditEvent.entity_type == entity_type)
        if action:
            stmt = stmt.where(AuditEvent.action == action)
        stmt = stmt.order_by(AuditEvent.sequence).limit(max(1, min(limit, 1000)))
        return list(db.execute(stmt).scalars().all())

    def verify_chain(self, db: Session, tenant_id: str) -> ChainVerificationResult:
        rows = (
            db.execute(
                select(AuditEvent)
                .where(AuditEvent.tenant_id == tenant_id)
                .order_by(AuditEvent.sequence)
            )
            .scalars()
            .all()
        )
        prev_hash = GENESIS
        for idx, row in enumerate(rows, start=1):
            if int(row.sequence) != idx:
                return ChainVerificationResult(
                    ok=False,
                    tenant_id=tenant_id,
                    total_events=len(rows),
                    first_broken_sequence=int(row.sequence),
                    error_detail="sequence gap",
                )
            expected = compute_event_hash(prev_hash, event_body(row))
            if row.prev_hash != prev_hash or row.event_hash != expected:
                return ChainVerificationResult(
                    ok=False,
                    tenant_id=tenant_id,
                    total_events=len(rows),
                    first_broken_sequence=int(row.sequence),
                    error_detail="prev_hash or event_hash mismatch",
                )
            prev_hash = row.event_hash

        return ChainVerificationResult(
            ok=True,
            tenant_id=tenant_id,
            total_events=len(rows),
            head_hash=prev_hash if rows else None,
        )


_AUDIT_LOG = AuditLog()


def get_audit_log() -> AuditLog:
    return _AUDIT_LOG
