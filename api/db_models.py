from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from services.canonical import utcnow

log = logging.getLogger("supplylens.db")


class Base(DeclarativeBase):
    pass


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    key_lookup: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    hash_alg: Mapped[str] = mapped_column(String(32), nullable=False)
    hash_params: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scopes_csv: Mapped[str] = mapped_column(Text, nullable=False, default="")

    tenant_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="user")

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_used_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class TenantProfile(Base):
    __tablename__ = "tenant_profiles"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    data_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="LIVE")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class EvidenceDraft(Base):
    __tablename__ = "evidence_drafts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "request_id", name="uq_drafts_tenant_request"),
    )

    draft_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    ingestion_method: Mapped[str] = mapped_column(String(32), nullable=False)
    source_system: Mapped[str] = mapped_column(String(64), nullable=False)
    dataset_type: Mapped[str] = mapped_column(String(32), nullable=False)
    declared_scope: Mapped[str] = mapped_column(String(32), nullable=False)
    scope_target_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    scope_target_name: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    primary_intent: Mapped[str] = mapped_column(Text, nullable=False)
    purpose_tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    retention_policy: Mapped[str] = mapped_column(String(32), nullable=False)
    retention_custom_days: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )
    contains_personal_data: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    gdpr_legal_basis: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    unlinked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    entry_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    origin: Mapped[str] = mapped_column(
        String(32), nullable=False, default="USER_SUBMITTED"
    )

    external_reference_id: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    export_job_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    connector_reference: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    snapshot_datetime_utc: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )

    payload_kind: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    payload_bytes: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    payload_hash_sha256: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    payload_size_bytes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    file_content_type: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )

    declaration_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    quarantine_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class EvidenceRecord(Base):
    __tablename__ = "evidence_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "draft_id", name="uq_records_tenant_draft"),
        UniqueConstraint("tenant_id", "sequence", name="uq_records_tenant_sequence"),
    )

    evidence_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    draft_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    ingestion_method: Mapped[str] = mapped_column(String(32), nullable=False)
    source_system: Mapped[str] = mapped_column(String(64), nullable=False)
    dataset_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    declared_scope: Mapped[str] = mapped_column(String(32), nullable=False)
    scope_target_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    link_status: Mapped[str] = mapped_column(String(16), nullable=False)

    payload_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    payload_bytes: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    payload_hash_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    file_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    metadata_canonical_json: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_hash_sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    trust_level: Mapped[str] = mapped_column(String(16), nullable=False)
    review_status: Mapped[str] = mapped_column(String(32), nullable=False)
    retention_policy: Mapped[str] = mapped_column(String(32), nullable=False)
    retention_ends_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    data_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    contains_personal_data: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    attestor_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    attested_by_email: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    attestation_method: Mapped[str] = mapped_column(String(32), nullable=False)
    attested_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_by_user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    ledger_state: Mapped[str] = mapped_column(String(16), nullable=False)
    sealed_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class WorkItem(Base):
    __tablename__ = "work_items"

    work_item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    evidence_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by_user_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_audit_tenant_sequence"),
    )

    audit_event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    previous_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    regulatory_citation: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)
