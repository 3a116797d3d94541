"""
Sealing engine: turns a draft into an immutable evidence record.

Seal protocol:
  1. claim     UPDATE drafts SET status=SEALED
               WHERE tenant=? AND draft=? AND status IN (DRAFT, READY_TO_SEAL)
                 AND (payload attached OR method == ERP_API)
               Exactly one caller sees rowcount == 1.
  2. build     payload hash, canonical metadata + hash, trust level,
               retention end, link status, data mode, attestation from the
               authenticated principal.
  3. insert    per-tenant sequence, unique (tenant_id, draft_id) as the
               second guard against double sealing.
  4. audit     DRAFT_SEALED + EVIDENCE_SEALED, then follow-up work items.
  5. commit    all of the above or none of it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.auth_scopes.definitions import Principal
from api.db_models import EvidenceDraft, EvidenceRecord, WorkItem
from services.canonical import canonical_json, isoz, sha256_hex, utcnow
from services.evidence_kernel import contracts as c
from services.evidence_kernel import tenants
from services.evidence_kernel.audit_log import (
    ENTITY_DRAFT,
    ENTITY_RECORD,
    ENTITY_REQUEST,
    AuditLog,
    get_audit_log,
)
from services.evidence_kernel.drafts import (
    EvidenceDraftService,
    declaration_of,
    get_draft_service,
)
from services.evidence_kernel.errors import (
    ERR_DRAFT_NOT_SEALABLE,
    ERR_IDEMPOTENCY_CONFLICT,
    ERR_MISSING_PAYLOAD,
    ERR_SEALED_IMMUTABLE,
    conflict,
    not_found,
    validation_error,
)
from services.evidence_kernel.metrics import (
    IDEMPOTENCY_CONFLICTS_TOTAL,
    IDEMPOTENT_REPLAYS_TOTAL,
    SEAL_CONFLICTS_TOTAL,
    SEALS_TOTAL,
)
from services.evidence_kernel.records import EvidenceRecordService, get_record_service
from services.evidence_kernel.validation import (
    PreparedPayload,
    declaration_fingerprint,
    server_fetch_payload,
)
from services.evidence_kernel.work_items import WorkItemService, get_work_item_service

log = logging.getLogger("supplylens.evidence_kernel.sealing")

MAX_SEQUENCE_RETRIES = 5


@dataclass
class SealResult:
    record: EvidenceRecord
    work_items: list[WorkItem] = field(default_factory=list)
    is_replay: bool = False

    def summary(self) -> dict[str, Any]:
        r = self.record
        return {
            "evidence_id": r.evidence_id,
            "display_id": r.display_id,
            "draft_id": r.draft_id,
            "payload_hash_sha256": r.payload_hash_sha256,
            "metadata_hash_sha256": r.metadata_hash_sha256,
            "trust_level": r.trust_level,
            "review_status": r.review_status,
            "retention_ends_at_utc": isoz(r.retention_ends_at_utc),
            "ledger_state": r.ledger_state,
            "work_item_ids": [w.work_item_id for w in self.work_items],
            "is_replay": self.is_replay,
        }


def _add_years(ts: datetime, years: int) -> datetime:
    try:
        return ts.replace(year=ts.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return ts.replace(year=ts.year + years, day=28)


def compute_retention_end(
    sealed_at: datetime, policy: str, custom_days: Optional[int] = None
) -> datetime:
    if policy == "CUSTOM":
        if not custom_days:
            raise ValueError("CUSTOM retention requires custom_days")
        return sealed_at + timedelta(days=int(custom_days))
    years = c.RETENTION_YEARS.get(policy)
    if years is None:
        raise ValueError(f"unknown retention policy: {policy}")
    return _add_years(sealed_at, years)


def metadata_of(declaration: Mapping[str, Any]) -> dict[str, Any]:
    return {k: declaration.get(k) for k in c.METADATA_FIELDS}


def display_id_for(payload_hash: str, sequence: int) -> str:
    return f"EV-{payload_hash[:8].upper()}-{sequence:06d}"


class SealingEngine:
    def __init__(
        self,
        drafts: Optional[EvidenceDraftService] = None,
        records: Optional[EvidenceRecordService] = None,
        work_items: Optional[WorkItemService] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.drafts = drafts or get_draft_service()
        self.records = records or get_record_service()
        self.work_items = work_items or get_work_item_service()
        self.audit = audit or get_audit_log()

    # -- claim ------------------------------------------------------------

    def _claim(self, db: Session, *, tenant_id: str, draft_id: str) -> bool:
        result = db.execute(
            update(EvidenceDraft)
            .where(
                EvidenceDraft.tenant_id == tenant_id,
                EvidenceDraft.draft_id == draft_id,
                EvidenceDraft.status.in_(c.SEALABLE_STATUSES),
                or_(
                    EvidenceDraft.payload_hash_sha256.is_not(None),
                    EvidenceDraft.ingestion_method == "ERP_API",
                ),
            )
            .values(status=c.DRAFT_SEALED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _load_draft(
        self, db: Session, *, tenant_id: str, draft_id: str
    ) -> Optional[EvidenceDraft]:
        return db.execute(
            select(EvidenceDraft)
            .where(
                EvidenceDraft.tenant_id == tenant_id,
                EvidenceDraft.draft_id == draft_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _claim_failure(self, db: Session, *, tenant_id: str, draft_id: str):
        draft = self._load_draft(db, tenant_id=tenant_id, draft_id=draft_id)
        if draft is None:
            return not_found("draft")
        if draft.status == c.DRAFT_SEALED:
            SEAL_CONFLICTS_TOTAL.inc()
            existing = self.records.find_by_draft(
                db, tenant_id=tenant_id, draft_id=draft_id
            )
            return conflict(
                ERR_SEALED_IMMUTABLE,
                "Draft is already sealed",
                draft_id=draft_id,
                evidence_id=existing.evidence_id if existing else None,
            )
        if draft.status in c.TERMINAL_DRAFT_STATUSES:
            return conflict(
                ERR_DRAFT_NOT_SEALABLE,
                f"Draft is {draft.status} and cannot be sealed",
                draft_id=draft_id,
                status=draft.status,
            )
        return validation_error(
            ERR_MISSING_PAYLOAD,
            "Attach a payload or file before sealing",
            field="payload",
        )

    # -- record -----------------------------------------------------------

    def _next_sequence(self, db: Session, tenant_id: str) -> int:
        current = db.execute(
            select(func.max(EvidenceRecord.sequence)).where(
                EvidenceRecord.tenant_id == tenant_id
            )
        ).scalar_one_or_none()
        return int(current or 0) + 1

    def _payload_for(self, draft: EvidenceDraft) -> PreparedPayload:
        if draft.payload_hash_sha256 is None:
            return server_fetch_payload(declaration_of(draft))
        return PreparedPayload(
            kind=draft.payload_kind or c.PAYLOAD_JSON,
            data=draft.payload_bytes or b"",
            sha256=draft.payload_hash_sha256,
            file_name=draft.file_name,
            content_type=draft.file_content_type,
        )

    def _seal_claimed(
        self,
        db: Session,
        *,
        principal: Principal,
        draft: EvidenceDraft,
        correlation_id: Optional[str],
    ) -> SealResult:
        """Build, insert and audit the record. Flushes, never commits."""
        previous_status = (
            c.DRAFT_READY if draft.payload_hash_sha256 is not None else c.DRAFT_DRAFT
        )
        payload = self._payload_for(draft)
        metadata_json = canonical_json(metadata_of(declaration_of(draft)))
        sealed_at = utcnow()
        data_mode = tenants.get_data_mode(db, principal.tenant_id)

        fields = dict(
            tenant_id=principal.tenant_id,
            draft_id=draft.draft_id,
            request_id=draft.request_id,
            ingestion_method=draft.ingestion_method,
            source_system=draft.source_system,
            dataset_type=draft.dataset_type,
            declared_scope=draft.declared_scope,
            scope_target_id=draft.scope_target_id,
            link_status="UNLINKED" if draft.declared_scope == "UNKNOWN" else "LINKED",
            payload_kind=payload.kind,
            payload_bytes=payload.data,
            payload_hash_sha256=payload.sha256,
            file_name=payload.file_name,
            metadata_canonical_json=metadata_json,
            metadata_hash_sha256=sha256_hex(metadata_json),
            trust_level=c.trust_level_for(draft.ingestion_method),
            review_status=c.REVIEW_NOT_REVIEWED,
            retention_policy=draft.retention_policy,
            retention_ends_at_utc=compute_retention_end(
                sealed_at, draft.retention_policy, draft.retention_custom_days
            ),
            data_mode=data_mode,
            contains_personal_data=bool(draft.contains_personal_data),
            attestor_user_id=principal.user_id,
            attested_by_email=principal.email,
            attestation_method=draft.ingestion_method,
            attested_at_utc=sealed_at,
            created_by_user_id=draft.created_by_user_id,
            ledger_state=c.LEDGER_SEALED,
            sealed_at_utc=sealed_at,
        )

        record: Optional[EvidenceRecord] = None
        for attempt in range(1, MAX_SEQUENCE_RETRIES + 1):
            seq = self._next_sequence(db, principal.tenant_id)
            candidate = EvidenceRecord(
                evidence_id=str(uuid.uuid4()),
                display_id=display_id_for(payload.sha256, seq),
                sequence=seq,
                **fields,
            )
            try:
                with db.begin_nested():
                    db.add(candidate)
            except IntegrityError:
                if self.records.find_by_draft(
                    db, tenant_id=principal.tenant_id, draft_id=draft.draft_id
                ):
                    SEAL_CONFLICTS_TOTAL.inc()
                    raise conflict(
                        ERR_SEALED_IMMUTABLE,
                        "Draft is already sealed",
                        draft_id=draft.draft_id,
                    ) from None
                log.warning(
                    "seal.sequence_conflict tenant=%s sequence=%s attempt=%s",
                    principal.tenant_id,
                    seq,
                    attempt,
                )
                continue
            record = candidate
            break
        if record is None:
            raise RuntimeError(
                f"record sequence contention after {MAX_SEQUENCE_RETRIES} attempts"
            )

        self.audit.append(
            db,
            tenant_id=principal.tenant_id,
            entity_type=ENTITY_DRAFT,
            entity_id=draft.draft_id,
            action="DRAFT_SEALED",
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=previous_status,
            new_state=c.DRAFT_SEALED,
            details={"evidence_id": record.evidence_id},
            correlation_id=correlation_id,
        )
        self.audit.append(
            db,
            tenant_id=principal.tenant_id,
            entity_type=ENTITY_RECORD,
            entity_id=record.evidence_id,
            action="EVIDENCE_SEALED",
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=c.LEDGER_INGESTED,
            new_state=c.LEDGER_SEALED,
            details={
                "display_id": record.display_id,
                "draft_id": draft.draft_id,
                "payload_hash_sha256": record.payload_hash_sha256,
                "metadata_hash_sha256": record.metadata_hash_sha256,
                "trust_level": record.trust_level,
            },
            correlation_id=correlation_id,
        )
        items = self.work_items.spawn_for_record(
            db,
            record=record,
            actor=principal,
            resolution_due_date=draft.resolution_due_date,
            correlation_id=correlation_id,
        )
        return SealResult(record=record, work_items=items)

    # -- public -----------------------------------------------------------

    def seal(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        correlation_id: Optional[str] = None,
    ) -> SealResult:
        if not self._claim(db, tenant_id=principal.tenant_id, draft_id=draft_id):
            err = self._claim_failure(
                db, tenant_id=principal.tenant_id, draft_id=draft_id
            )
            db.rollback()
            raise err

        draft = self._load_draft(db, tenant_id=principal.tenant_id, draft_id=draft_id)
        if draft is None:  # claimed in this transaction; cannot vanish
            db.rollback()
            raise not_found("draft")
        try:
            result = self._seal_claimed(
                db, principal=principal, draft=draft, correlation_id=correlation_id
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        SEALS_TOTAL.labels(ingestion_method=result.record.ingestion_method).inc()
        log.info(
            "evidence.sealed tenant=%s evidence=%s display=%s draft=%s trust=%s",
            result.record.tenant_id,
            result.record.evidence_id,
            result.record.display_id,
            draft_id,
            result.record.trust_level,
        )
        return result

    def _ingest_existing(
        self,
        db: Session,
        *,
        principal: Principal,
        request_id: str,
        incoming_hash: str,
        correlation_id: Optional[str],
    ) -> Optional[SealResult]:
        """Replay, conflict, or None when request_id is unused."""
        record = self.records.find_by_request_id(
            db, tenant_id=principal.tenant_id, request_id=request_id
        )
        if record is not None:
            if record.payload_hash_sha256 == incoming_hash:
                IDEMPOTENT_REPLAYS_TOTAL.labels(kind="ingest").inc()
                return SealResult(record=record, is_replay=True)

            IDEMPOTENCY_CONFLICTS_TOTAL.labels(kind="ingest").inc()
            item = self.work_items.open_conflict(
                db,
                record=record,
                request_id=request_id,
                actor=principal,
                correlation_id=correlation_id,
            )
            self.audit.append(
                db,
                tenant_id=principal.tenant_id,
                entity_type=ENTITY_REQUEST,
                entity_id=request_id,
                action="IDEMPOTENCY_CONFLICT",
                actor_user_id=principal.user_id,
                actor_email=principal.email,
                details={
                    "existing_evidence_id": record.evidence_id,
                    "existing_payload_hash_sha256": record.payload_hash_sha256,
                    "incoming_payload_hash_sha256": incoming_hash,
                    "work_item_id": item.work_item_id,
                },
                correlation_id=correlation_id,
            )
            db.commit()
            log.warning(
                "ingest.idempotency_conflict tenant=%s request=%s evidence=%s",
                principal.tenant_id,
                request_id,
                record.evidence_id,
            )
            raise conflict(
                ERR_IDEMPOTENCY_CONFLICT,
                "request_id was already sealed with a different payload",
                field="request_id",
                existing_evidence_id=record.evidence_id,
                work_item_id=item.work_item_id,
            )

        draft = self.drafts.find_by_request_id(
            db, tenant_id=principal.tenant_id, request_id=request_id
        )
        if draft is not None:
            IDEMPOTENCY_CONFLICTS_TOTAL.labels(kind="ingest").inc()
            err = conflict(
                ERR_IDEMPOTENCY_CONFLICT,
                "request_id belongs to an existing unsealed draft",
                field="request_id",
                existing_draft_id=draft.draft_id,
                draft_status=draft.status,
            )
            db.rollback()
            raise err
        return None

    def ingest(
        self,
        db: Session,
        *,
        principal: Principal,
        declaration: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> SealResult:
        """
        Validate, create, attach and seal in one transaction.

        Idempotent on (tenant_id, request_id): the same payload replays the
        existing record, a different one is a conflict with a
        CONFLICT_RESOLUTION work item.
        """
        gate = self.drafts.run_gate(declaration)
        decl = gate.declaration
        self.drafts.enforce_data_mode(
            db, principal=principal, declaration=decl, correlation_id=correlation_id
        )
        payload = gate.payload
        if payload is None:
            if decl["ingestion_method"] != "ERP_API":
                db.rollback()
                raise validation_error(
                    ERR_MISSING_PAYLOAD,
                    f"{decl['ingestion_method']} ingest requires a payload",
                    field="payload",
                )
            incoming_hash = server_fetch_payload(decl).sha256
        else:
            incoming_hash = payload.sha256

        request_id = decl["request_id"]
        existing = self._ingest_existing(
            db,
            principal=principal,
            request_id=request_id,
            incoming_hash=incoming_hash,
            correlation_id=correlation_id,
        )
        if existing is not None:
            return existing

        try:
            draft = self.drafts._insert_draft(
                db,
                principal=principal,
                gate=gate,
                fingerprint=declaration_fingerprint(decl, payload),
                correlation_id=correlation_id,
            )
            if not self._claim(
                db, tenant_id=principal.tenant_id, draft_id=draft.draft_id
            ):
                raise RuntimeError("freshly inserted draft could not be claimed")
            db.refresh(draft)
            result = self._seal_claimed(
                db, principal=principal, draft=draft, correlation_id=correlation_id
            )
            db.commit()
        except IntegrityError:
            # Another ingest with this request_id committed first.
            db.rollback()
            replay = self._ingest_existing(
                db,
                principal=principal,
                request_id=request_id,
                incoming_hash=incoming_hash,
                correlation_id=correlation_id,
            )
            if replay is None:
                raise
            return replay
        except Exception:
            db.rollback()
            raise

        SEALS_TOTAL.labels(ingestion_method=result.record.ingestion_method).inc()
        log.info(
            "evidence.ingested tenant=%s evidence=%s request=%s method=%s",
            result.record.tenant_id,
            result.record.evidence_id,
            request_id,
            result.record.ingestion_method,
        )
        return result


_ENGINE = SealingEngine()


def get_sealing_engine() -> SealingEngine:
    return _ENGINE
