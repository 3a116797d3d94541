"""
Follow-up work items spawned by sealing and ingest conflicts.

  REVIEW               LOW trust record            priority MEDIUM
  MAPPING_REVIEW       declared_scope == UNKNOWN   priority HIGH, due on resolution_due_date
  CONFLICT_RESOLUTION  request_id reuse on ingest  priority HIGH

An item is resolved exactly once, by a reviewer role. The outcome lives on
the item; the referenced records stay untouched.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from api.auth_scopes.definitions import REVIEWER_ROLES, Principal
from api.db_models import EvidenceRecord, WorkItem
from services.canonical import isoz, utcnow
from services.evidence_kernel.audit_log import (
    ENTITY_WORK_ITEM,
    AuditLog,
    get_audit_log,
)
from services.evidence_kernel.errors import (
    ERR_UNAUTHORIZED_ROLE,
    ERR_VALIDATION_FAILED,
    ERR_WORK_ITEM_ALREADY_RESOLVED,
    conflict,
    forbidden,
    not_found,
    validation_error,
)

log = logging.getLogger("supplylens.evidence_kernel.work_items")

TYPE_REVIEW = "REVIEW"
TYPE_MAPPING_REVIEW = "MAPPING_REVIEW"
TYPE_CONFLICT_RESOLUTION = "CONFLICT_RESOLUTION"
ITEM_TYPES = (TYPE_REVIEW, TYPE_MAPPING_REVIEW, TYPE_CONFLICT_RESOLUTION)

STATUS_OPEN = "OPEN"
STATUS_RESOLVED = "RESOLVED"
STATUSES = (STATUS_OPEN, STATUS_RESOLVED)

PRIORITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
RESOLUTIONS = ("ACCEPTED", "REJECTED", "SUPERSEDED")


def serialize_work_item(item: WorkItem) -> dict[str, Any]:
    return {
        "work_item_id": item.work_item_id,
        "tenant_id": item.tenant_id,
        "item_type": item.item_type,
        "status": item.status,
        "priority": item.priority,
        "evidence_ids": list(item.evidence_ids or []),
        "title": item.title,
        "due_date": item.due_date.isoformat() if item.due_date else None,
        "resolution": item.resolution,
        "resolution_note": item.resolution_note,
        "resolved_by_user_id": item.resolved_by_user_id,
        "resolved_at": isoz(item.resolved_at),
        "created_at": isoz(item.created_at),
    }


class WorkItemService:
    def __init__(self, audit: Optional[AuditLog] = None) -> None:
        self.audit = audit or get_audit_log()

    def _create(
        self,
        db: Session,
        *,
        tenant_id: str,
        item_type: str,
        priority: str,
        evidence_ids: Iterable[str],
        title: str,
        actor: Principal,
        due_date: Optional[date] = None,
        correlation_id: Optional[str] = None,
    ) -> WorkItem:
        item = WorkItem(
            work_item_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            item_type=item_type,
            status=STATUS_OPEN,
            priority=priority,
            evidence_ids=list(evidence_ids),
            title=title,
            due_date=due_date,
            created_at=utcnow(),
        )
        db.add(item)
        db.flush()
        self.audit.append(
            db,
            tenant_id=tenant_id,
            entity_type=ENTITY_WORK_ITEM,
            entity_id=item.work_item_id,
            action="WORK_ITEM_CREATED",
            actor_user_id=actor.user_id,
            actor_email=actor.email,
            previous_state=None,
            new_state=STATUS_OPEN,
            details={
                "item_type": item_type,
                "priority": priority,
                "evidence_ids": item.evidence_ids,
            },
            correlation_id=correlation_id,
        )
        log.info(
            "work_item.created tenant=%s id=%s type=%s",
            tenant_id,
            item.work_item_id,
            item_type,
        )
        return item

    def spawn_for_record(
        self,
        db: Session,
        *,
        record: EvidenceRecord,
        actor: Principal,
        resolution_due_date: Optional[date] = None,
        correlation_id: Optional[str] = None,
    ) -> list[WorkItem]:
        """Flush-only; runs inside the sealing transaction."""
        items: list[WorkItem] = []
        if record.trust_level == "LOW":
            items.append(
                self._create(
                    db,
                    tenant_id=record.tenant_id,
                    item_type=TYPE_REVIEW,
                    priority="MEDIUM",
                    evidence_ids=[record.evidence_id],
                    title=f"Review low-trust evidence {record.display_id}",
                    actor=actor,
                    correlation_id=correlation_id,
                )
            )
        if record.declared_scope == "UNKNOWN":
            items.append(
                self._create(
                    db,
                    tenant_id=record.tenant_id,
                    item_type=TYPE_MAPPING_REVIEW,
                    priority="HIGH",
                    evidence_ids=[record.evidence_id],
                    title=f"Map unlinked evidence {record.display_id} to a scope",
                    due_date=resolution_due_date,
                    actor=actor,
                    correlation_id=correlation_id,
                )
            )
        return items

    def open_conflict(
        self,
        db: Session,
        *,
        record: EvidenceRecord,
        request_id: str,
        actor: Principal,
        correlation_id: Optional[str] = None,
    ) -> WorkItem:
        return self._create(
            db,
            tenant_id=record.tenant_id,
            item_type=TYPE_CONFLICT_RESOLUTION,
            priority="HIGH",
            evidence_ids=[record.evidence_id],
            title=f"request_id {request_id} reused with a different payload",
            actor=actor,
            correlation_id=correlation_id,
        )

    def get(self, db: Session, *, tenant_id: str, work_item_id: str) -> WorkItem:
        item = db.execute(
            select(WorkItem).where(
                WorkItem.tenant_id == tenant_id,
                WorkItem.work_item_id == work_item_id,
            )
        ).scalar_one_or_none()
        if item is None:
            raise not_found("work item")
        return item

    def list_items(
        self,
        db: Session,
        *,
        tenant_id: str,
        status: Optional[str] = None,
        item_type: Optional[str] = None,
        evidence_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WorkItem]:
        stmt = select(WorkItem).where(WorkItem.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(WorkItem.status == status)
        if item_type:
            stmt = stmt.where(WorkItem.item_type == item_type)
        stmt = stmt.order_by(WorkItem.created_at.desc(), WorkItem.work_item_id)
        rows = list(db.execute(stmt).scalars().all())
        if evidence_id:
            # evidence_ids is a JSON list; filtered here to stay dialect-neutral
            rows = [r for r in rows if evidence_id in (r.evidence_ids or [])]
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        return rows[offset : offset + limit]

    def resolve(
        self,
        db: Session,
        *,
        principal: Principal,
        work_item_id: str,
        resolution: Optional[str],
        note: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> WorkItem:
        if not principal.has_role(*REVIEWER_ROLES):
            log.warning(
                "work_item.resolve_denied tenant=%s user=%s role=%s",
                principal.tenant_id,
                principal.user_id,
                principal.role,
            )
            raise forbidden(
                ERR_UNAUTHORIZED_ROLE,
                "Only admin, compliance or legal may resolve work items",
                role=principal.role,
            )

        outcome = (resolution or "").strip().upper()
        if outcome not in RESOLUTIONS:
            raise validation_error(
                ERR_VALIDATION_FAILED,
                f"resolution must be one of: {', '.join(RESOLUTIONS)}",
                field="resolution",
                allowed_values=list(RESOLUTIONS),
            )

        item = self.get(db, tenant_id=principal.tenant_id, work_item_id=work_item_id)
        now = utcnow()
        claimed = db.execute(
            update(WorkItem)
            .where(
                WorkItem.tenant_id == principal.tenant_id,
                WorkItem.work_item_id == work_item_id,
                WorkItem.status == STATUS_OPEN,
            )
            .values(
                status=STATUS_RESOLVED,
                resolution=outcome,
                resolution_note=(note or "").strip() or None,
                resolved_by_user_id=principal.user_id,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            raise conflict(
                ERR_WORK_ITEM_ALREADY_RESOLVED,
                "Work item is already resolved",
                work_item_id=work_item_id,
            )

        self.audit.append(
            db,
            tenant_id=principal.tenant_id,
            entity_type=ENTITY_WORK_ITEM,
            entity_id=work_item_id,
            action="WORK_ITEM_RESOLVED",
            actor_user_id=principal.user_id,
            actor_email=principal.email,
            previous_state=STATUS_OPEN,
            new_state=STATUS_RESOLVED,
            details={"resolution": outcome, "evidence_ids": list(item.evidence_ids or [])},
            correlation_id=correlation_id,
        )
        db.refresh(item)
        db.commit()
        log.info(
            "work_item.resolved tenant=%s id=%s resolution=%s",
            principal.tenant_id,
            work_item_id,
            outcome,
        )
        return item


_WORK_ITEMS = WorkItemService()


def get_work_item_service() -> WorkItemService:
    return _WORK_ITEMS
