"""
Draft store and attachment service.

Draft lifecycle:
  DRAFT --attach--> READY_TO_SEAL --seal--> SEALED
  DRAFT | READY_TO_SEAL --quarantine--> QUARANTINED (terminal)
  DRAFT | READY_TO_SEAL --cancel--> CANCELLED (terminal)

Invariants:
  - Drafts are unique per (tenant_id, request_id). A repeated create with
    the same declaration replays the existing draft; a different one is
    an IDEMPOTENCY_CONFLICT.
  - SEALED drafts never change (409 SEALED_IMMUTABLE).
  - Scope fields freeze once a payload is attached.
  - Every transition appends exactly one audit event in the same
    transaction.
  - Every query is filtered by the caller's tenant. A foreign draft is
    indistinguishable from a missing one.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.auth_scopes.definitions import Principal
from api.config import get_settings
from api.db_models import EvidenceDraft
from services.canonical import isoz, utcnow
from services.evidence_kernel import contracts as c
from services.evidence_kernel import tenants
from services.evidence_kernel.audit_log import (
    ENTITY_DRAFT,
    ENTITY_REQUEST,
    AuditLog,
    get_audit_log,
)
from services.evidence_kernel.errors import (
    ERR_DRAFT_NOT_EDITABLE,
    ERR_FIXTURE_BLOCKED_IN_LIVE,
    ERR_IDEMPOTENCY_CONFLICT,
    ERR_SCOPE_IMMUTABLE_AFTER_PAYLOAD,
    ERR_SEALED_IMMUTABLE,
    ERR_VALIDATION_FAILED,
    EvidenceKernelError,
    conflict,
    forbidden,
    not_found,
    validation_error,
)
from services.evidence_kernel.metrics import (
    GATE_REJECTIONS_TOTAL,
    IDEMPOTENCY_CONFLICTS_TOTAL,
    IDEMPOTENT_REPLAYS_TOTAL,
)
from services.evidence_kernel.validation import (
    PAYLOAD_KEYS,
    GateResult,
    PreparedPayload,
    check_file,
    check_payload,
    declaration_fingerprint,
    fixture_blocked,
    validate_declaration,
)

log = logging.getLogger("supplylens.evidence_kernel.drafts")

QUARANTINE_REASON_MIN_LEN = 10

DECLARATION_FIELDS = (
    "request_id",
    "ingestion_method",
    "source_system",
    "dataset_type",
    "declared_scope",
    "scope_target_id",
    "scope_target_name",
    "primary_intent",
    "purpose_tags",
    "retention_policy",
    "retention_custom_days",
    "contains_personal_data",
    "gdpr_legal_basis",
    "unlinked_reason",
    "resolution_due_date",
    "entry_notes",
    "origin",
    "external_reference_id",
    "export_job_id",
    "connector_reference",
    "snapshot_datetime_utc",
)

# Fixed at creation; a PATCH touching them is rejected.
IMMUTABLE_DECLARATION_FIELDS = frozenset({"request_id", "command_id", "ingestion_method", "origin"})

PATCHABLE_FIELDS = frozenset(DECLARATION_FIELDS) - IMMUTABLE_DECLARATION_FIELDS


@dataclass
class DraftResult:
    draft: EvidenceDraft
    idempotent_replay: bool = False


def declaration_of(draft: EvidenceDraft) -> dict[str, Any]:
    """The draft's current declaration in request form (dates as ISO strings)."""
    out: dict[str, Any] = {}
    for key in DECLARATION_FIELDS:
        value = getattr(draft, key)
        if isinstance(value, date):
            value = value.isoformat()
        out[key] = value
    return out


def serialize_draft(draft: EvidenceDraft) -> dict[str, Any]:
    out = declaration_of(draft)
    out.update(
        {
            "draft_id": draft.draft_id,
            "tenant_id": draft.tenant_id,
            "status": draft.status,
            "payload_attached": draft.payload_hash_sha256 is not None,
            "payload_kind": draft.payload_kind,
            "payload_hash_sha256": draft.payload_hash_sha256,
            "payload_size_bytes": draft.payload_size_bytes,
            "file_name": draft.file_name,
            "file_content_type": draft.file_content_type,
            "quarantine_reason": draft.quarantine_reason,
            "created_by_user_id": draft.created_by_user_id,
            "created_at": isoz(draft.created_at),
            "updated_at": isoz(draft.updated_at),
        }
    )
    return out


def _apply_payload(draft: EvidenceDraft, payload: PreparedPayload) -> None:
    draft.payload_kind = payload.kind
    draft.payload_bytes = payload.data
    draft.payload_hash_sha256 = payload.sha256
    draft.payload_size_bytes = payload.size
    draft.file_name = payload.file_name
    draft.file_content_type = payload.content_type


class EvidenceDraftService:
    """
    Draft CRUD and payload attachment.

    Public methods commit. The underscored helpers only flush so the
    one-shot ingest can compose create + seal in one transaction.
    """

    def __init__(
        self,
        audit: Optional[AuditLog] = None,
        max_payload_bytes: Optional[int] = None,
    ) -> None:
        self.audit = audit or get_audit_log()
        self._max_payload_bytes = max_payload_bytes

    @property
    def max_payload_bytes(self) -> int:
        if self._max_payload_bytes is not None:
            return self._max_payload_bytes
        return get_settings().max_payload_bytes

    # -- gate -------------------------------------------------------------

    def run_gate(self, declaration: Mapping[str, Any]) -> GateResult:
        try:
            return validate_declaration(
                declaration, max_payload_bytes=self.max_payload_bytes
            )
        except EvidenceKernelError as exc:
            GATE_REJECTIONS_TOTAL.labels(error_code=exc.error_code).inc()
            raise

    def enforce_data_mode(
        self,
        db: Session,
        *,
        principal: Principal,
        declaration: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Return the tenant's data mode, refusing test fixtures in LIVE
        tenants. The refusal itself is audited and committed.
        """
        mode = tenants.get_data_mode(db, principal.tenant_id)
        if fixture_blocked(declaration.get("origin"), mode):
            self.audit.append(
                db,
                tenant_id=principal.tenant_id,
                entity_type=ENTITY_REQUEST,
                entity_id=str(declaration.get("request_id") or "unknown"),
                action="SECURITY_VIOLATION",
                actor_user_id=principal.user_id,
                actor_email=principal.email,
                details={"reason": "TEST_FIXTURE creation blocked in LIVE"},
                correlation_id=correlation_id,
            )
            db.commit()
            log.warning(
                "security.fixture_blocked tenant=%s user=%s",
                principal.tenant_id,
                principal.user_id,
            )
            raise forbidden(
                ERR_FIXTURE_BLOCKED_IN_LIVE,
                "TEST_FIXTURE records cannot be created in LIVE mode",
            )
        return mode

    # -- reads ------------------------------------------------------------

    def find_by_request_id(
        self, db: Session, *, tenant_id: str, request_id: str
    ) -> Optional[EvidenceDraft]:
        return db.execute(
            select(EvidenceDraft).where(
                EvidenceDraft.tenant_id == tenant_id,
                EvidenceDraft.request_id == request_id,
            )
        ).scalar_one_or_none()

    def get_draft(
        self, db: Session, *, tenant_id: str, draft_id: str, for_update: bool = False
    ) -> EvidenceDraft:
        stmt = select(EvidenceDraft).where(
            EvidenceDraft.tenant_id == tenant_id,
            EvidenceDraft.draft_id == draft_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        draft = db.execute(stmt).scalar_one_or_none()
        if draft is None:
            raise not_found("draft")
        return draft

    # -- create -----------------------------------------------------------

    def _replay_or_conflict(
        self, existing: EvidenceDraft, fingerprint: str
    ) -> DraftResult:
        if existing.declaration_hash == fingerprint:
            IDEMPOTENT_REPLAYS_TOTAL.labels(kind="draft").inc()
            return DraftResult(draft=existing, idempotent_replay=True)
        IDEMPOTENCY_CONFLICTS_TOTAL.labels(kind="draft").inc()
        raise conflict(
            ERR_IDEMPOTENCY_CONFLICT,
            "request_id was already used with a different declaration",
            field="request_id",
            existing_draft_id=existing.draft_id,
        )

    def _insert_draft(
        self,
        db: Session,
        *,
        principal: Principal,
        gate: GateResult,
        fingerprint: str,
        correlation_id: Optional[str],
    ) -> EvidenceDraft:
        decl = gate.declaration
        now = utcnow()
        draft = EvidenceDraft(
            draft_id=str(uuid.uuid4()),
            tenant_id=principal.tenant_id,
            status=c.DRAFT_READY if gate.payload else c.DRAFT_DRAFT,
            declaration_hash=fingerprint,
            created_by_user_id=principal.user_id,
            created_at=now,
            updated_at=now,
            **{k: decl[k] for k in DECLARATION_FIELDS},
        )
        if gate.payload:
            _apply_payload(draft, gate.payload)
        db.add(draft)
        db.flush()
        self.audit.append(
            db,
            tenant_id=principal.tenant_id,
            entity_type=ENTITY_DRAFT,
            entity_id=draft.draft_id,
            action="DRAFT_CREATED",
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=None,
            new_state=draft.status,
            details={
                "request_id": draft.request_id,
                "ingestion_method": draft.ingestion_method,
                "dataset_type": draft.dataset_type,
            },
            correlation_id=correlation_id,
        )
        return draft

    def create_draft(
        self,
        db: Session,
        *,
        principal: Principal,
        declaration: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> DraftResult:
        """
        Validate and store a draft.

        Returns the existing draft (idempotent_replay=True) when the same
        request_id and declaration were seen before for this tenant.
        """
        gate = self.run_gate(declaration)
        self.enforce_data_mode(
            db,
            principal=principal,
            declaration=gate.declaration,
            correlation_id=correlation_id,
        )
        fingerprint = declaration_fingerprint(gate.declaration, gate.payload)
        request_id = gate.declaration["request_id"]

        existing = self.find_by_request_id(
            db, tenant_id=principal.tenant_id, request_id=request_id
        )
        if existing is not None:
            return self._replay_or_conflict(existing, fingerprint)

        try:
            draft = self._insert_draft(
                db,
                principal=principal,
                gate=gate,
                fingerprint=fingerprint,
                correlation_id=correlation_id,
            )
            db.commit()
        except IntegrityError:
            # Lost the insert race on (tenant_id, request_id); answer from the winner.
            db.rollback()
            winner = self.find_by_request_id(
                db, tenant_id=principal.tenant_id, request_id=request_id
            )
            if winner is None:
                raise
            return self._replay_or_conflict(winner, fingerprint)

        log.info(
            "draft.created tenant=%s draft=%s method=%s dataset=%s",
            draft.tenant_id,
            draft.draft_id,
            draft.ingestion_method,
            draft.dataset_type,
        )
        return DraftResult(draft=draft)

    # -- mutations --------------------------------------------------------

    def _editable(self, db: Session, *, tenant_id: str, draft_id: str) -> EvidenceDraft:
        draft = self.get_draft(db, tenant_id=tenant_id, draft_id=draft_id, for_update=True)
        if draft.status == c.DRAFT_SEALED:
            raise conflict(
                ERR_SEALED_IMMUTABLE,
                "Draft is sealed; sealed evidence cannot be modified",
                draft_id=draft.draft_id,
            )
        if draft.status in c.TERMINAL_DRAFT_STATUSES:
            raise conflict(
                ERR_DRAFT_NOT_EDITABLE,
                f"Draft is {draft.status} and can no longer be edited",
                draft_id=draft.draft_id,
                status=draft.status,
            )
        return draft

    def update_draft(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        patch: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> EvidenceDraft:
        draft = self._editable(db, tenant_id=principal.tenant_id, draft_id=draft_id)

        for key in PAYLOAD_KEYS:
            if key in patch:
                raise validation_error(
                    ERR_VALIDATION_FAILED,
                    f"{key} cannot be patched; use the payload or file endpoint",
                    field=key,
                )
        for key in patch:
            if key in IMMUTABLE_DECLARATION_FIELDS:
                raise validation_error(
                    ERR_VALIDATION_FAILED, f"{key} cannot be changed", field=key
                )

        current = declaration_of(draft)
        if draft.payload_hash_sha256 is not None:
            for key in c.SCOPE_FIELDS:
                if key in patch and patch[key] != current.get(key):
                    raise validation_error(
                        ERR_SCOPE_IMMUTABLE_AFTER_PAYLOAD,
                        "Scope is frozen once a payload is attached",
                        field=key,
                    )

        merged = dict(current)
        merged.update(patch)
        gate = self.run_gate(merged)

        changed = sorted(
            k
            for k in PATCHABLE_FIELDS
            if k in patch and gate.declaration[k] != getattr(draft, k)
        )
        for key in changed:
            setattr(draft, key, gate.declaration[key])

        # Unknown keys in the patch are validated by the gate (forgery,
        # hashes) and otherwise ignored.
        draft.updated_at = utcnow()
        self.audit.append(
            db,
            tenant_id=draft.tenant_id,
            entity_type=ENTITY_DRAFT,
            entity_id=draft.draft_id,
            action="DRAFT_UPDATED",
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=draft.status,
            new_state=draft.status,
            details={"changed_fields": changed},
            correlation_id=correlation_id,
        )
        db.commit()
        return draft

    def attach_payload(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        payload: Any,
        correlation_id: Optional[str] = None,
    ) -> EvidenceDraft:
        draft = self._editable(db, tenant_id=principal.tenant_id, draft_id=draft_id)
        try:
            prepared = check_payload(
                draft.ingestion_method, payload, max_bytes=self.max_payload_bytes
            )
        except EvidenceKernelError as exc:
            GATE_REJECTIONS_TOTAL.labels(error_code=exc.error_code).inc()
            raise
        return self._attach(
            db,
            principal=principal,
            draft=draft,
            prepared=prepared,
            action="PAYLOAD_ATTACHED",
            correlation_id=correlation_id,
        )

    def attach_file(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        data: bytes,
        file_name: Optional[str],
        content_type: Optional[str],
        correlation_id: Optional[str] = None,
    ) -> EvidenceDraft:
        draft = self._editable(db, tenant_id=principal.tenant_id, draft_id=draft_id)
        try:
            prepared = check_file(
                draft.ingestion_method,
                data,
                file_name=file_name,
                content_type=content_type,
                max_bytes=self.max_payload_bytes,
            )
        except EvidenceKernelError as exc:
            GATE_REJECTIONS_TOTAL.labels(error_code=exc.error_code).inc()
            raise
        return self._attach(
            db,
            principal=principal,
            draft=draft,
            prepared=prepared,
            action="FILE_ATTACHED",
            correlation_id=correlation_id,
        )

    def _attach(
        self,
        db: Session,
        *,
        principal: Principal,
        draft: EvidenceDraft,
        prepared: PreparedPayload,
        action: str,
        correlation_id: Optional[str],
    ) -> EvidenceDraft:
        previous = draft.status
        _apply_payload(draft, prepared)
        draft.status = c.DRAFT_READY
        draft.updated_at = utcnow()
        self.audit.append(
            db,
            tenant_id=draft.tenant_id,
            entity_type=ENTITY_DRAFT,
            entity_id=draft.draft_id,
            action=action,
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=previous,
            new_state=draft.status,
            details={
                "payload_kind": prepared.kind,
                "payload_hash_sha256": prepared.sha256,
                "payload_size_bytes": prepared.size,
                "file_name": prepared.file_name,
            },
            correlation_id=correlation_id,
        )
        db.commit()
        log.info(
            "draft.payload_attached tenant=%s draft=%s kind=%s size=%s",
            draft.tenant_id,
            draft.draft_id,
            prepared.kind,
            prepared.size,
        )
        return draft

    def quarantine_draft(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        reason: Optional[str],
        correlation_id: Optional[str] = None,
    ) -> EvidenceDraft:
        text = (reason or "").strip()
        if len(text) < QUARANTINE_REASON_MIN_LEN:
            raise validation_error(
                ERR_VALIDATION_FAILED,
                f"reason must be at least {QUARANTINE_REASON_MIN_LEN} characters",
                field="reason",
            )
        return self._terminate(
            db,
            principal=principal,
            draft_id=draft_id,
            status=c.DRAFT_QUARANTINED,
            action="DRAFT_QUARANTINED",
            reason=text,
            correlation_id=correlation_id,
        )

    def cancel_draft(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        correlation_id: Optional[str] = None,
    ) -> EvidenceDraft:
        return self._terminate(
            db,
            principal=principal,
            draft_id=draft_id,
            status=c.DRAFT_CANCELLED,
            action="DRAFT_CANCELLED",
            reason=None,
            correlation_id=correlation_id,
        )

    def _terminate(
        self,
        db: Session,
        *,
        principal: Principal,
        draft_id: str,
        status: str,
        action: str,
        reason: Optional[str],
        correlation_id: Optional[str],
    ) -> EvidenceDraft:
        draft = self._editable(db, tenant_id=principal.tenant_id, draft_id=draft_id)
        previous = draft.status
        draft.status = status
        if reason:
            draft.quarantine_reason = reason
        draft.updated_at = utcnow()
        self.audit.append(
            db,
            tenant_id=draft.tenant_id,
            entity_type=ENTITY_DRAFT,
            entity_id=draft.draft_id,
            action=action,
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=previous,
            new_state=status,
            details={"reason": reason} if reason else None,
            correlation_id=correlation_id,
        )
        db.commit()
        log.info(
            "draft.%s tenant=%s draft=%s", status.lower(), draft.tenant_id, draft.draft_id
        )
        return draft


_DRAFT_SERVICE = EvidenceDraftService()


def get_draft_service() -> EvidenceDraftService:
    return _DRAFT_SERVICE
