from __future__ import annotations

import pytest
from sqlalchemy import update

from api.db import get_sessionmaker
from api.db_models import AuditEvent
from services.evidence_kernel.audit_log import (
    ENTITY_DRAFT,
    GENESIS,
    compute_event_hash,
    event_body,
    get_audit_log,
)

audit = get_audit_log()


def _append(db, tenant_id: str, entity_id: str, action: str = "DRAFT_CREATED", **kw):
    return audit.append(
        db,
        tenant_id=tenant_id,
        entity_type=ENTITY_DRAFT,
        entity_id=entity_id,
        action=action,
        actor_user_id="user-1",
        **kw,
    )


def test_sequences_are_dense_per_tenant():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        for i in range(3):
            _append(db, "tenant-a", f"d-{i}")
        _append(db, "tenant-b", "d-x")
        db.commit()

        a = audit.list_events(db, "tenant-a")
        b = audit.list_events(db, "tenant-b")

    assert [e.sequence for e in a] == [1, 2, 3]
    assert [e.sequence for e in b] == [1]
    assert a[0].prev_hash == GENESIS
    assert b[0].prev_hash == GENESIS
    assert a[1].prev_hash == a[0].event_hash
    assert a[2].prev_hash == a[1].event_hash


def test_event_hash_covers_body():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        row = _append(
            db,
            "tenant-a",
            "d-1",
            details={"b": 2, "a": 1},
            previous_state="DRAFT",
            new_state="READY_TO_SEAL",
            correlation_id="corr-1",
        )
        db.commit()
        assert row.details == '{"a":1,"b":2}'
        assert row.event_hash == compute_event_hash(GENESIS, event_body(row))
        assert "ISO/IEC 27001" in row.regulatory_citation


def test_verify_chain_ok_and_head():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        for i in range(4):
            _append(db, "tenant-a", f"d-{i}")
        db.commit()
        result = audit.verify_chain(db, "tenant-a")
        last = audit.list_events(db, "tenant-a")[-1]

    assert result.ok
    assert result.total_events == 4
    assert result.head_hash == last.event_hash
    assert result.first_broken_sequence is None


def test_verify_empty_chain():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        result = audit.verify_chain(db, "tenant-empty")
    assert result.ok
    assert result.total_events == 0
    assert result.head_hash is None


def test_tampered_details_break_the_chain():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        for i in range(3):
            _append(db, "tenant-a", f"d-{i}", details={"n": i})
        db.commit()

        db.execute(
            update(AuditEvent)
            .where(AuditEvent.tenant_id == "tenant-a", AuditEvent.sequence == 2)
            .values(details='{"n":99}')
        )
        db.commit()

    with SessionLocal() as db:
        result = audit.verify_chain(db, "tenant-a")

    assert not result.ok
    assert result.first_broken_sequence == 2
    assert result.to_dict()["error_detail"]


def test_deleted_event_is_a_gap():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        for i in range(3):
            _append(db, "tenant-a", f"d-{i}")
        db.commit()
        db.query(AuditEvent).filter(
            AuditEvent.tenant_id == "tenant-a", AuditEvent.sequence == 2
        ).delete(synchronize_session=False)
        db.commit()

    with SessionLocal() as db:
        result = audit.verify_chain(db, "tenant-a")

    assert not result.ok
    assert result.first_broken_sequence == 3
    assert result.error_detail == "sequence gap"


def test_list_events_filters_and_paging():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        _append(db, "tenant-a", "d-1", action="DRAFT_CREATED")
        _append(db, "tenant-a", "d-1", action="PAYLOAD_ATTACHED")
        _append(db, "tenant-a", "d-2", action="DRAFT_CREATED")
        db.commit()

        by_entity = audit.list_events(db, "tenant-a", entity_id="d-1")
        by_action = audit.list_events(db, "tenant-a", action="DRAFT_CREATED")
        after = audit.list_events(db, "tenant-a", after_sequence=2)
        other = audit.list_events(db, "tenant-b")

    assert [e.action for e in by_entity] == ["DRAFT_CREATED", "PAYLOAD_ATTACHED"]
    assert [e.entity_id for e in by_action] == ["d-1", "d-2"]
    assert [e.sequence for e in after] == [3]
    assert other == []


def test_invalid_entity_type_rejected():
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        with pytest.raises(ValueError):
            audit.append(
                db,
                tenant_id="tenant-a",
                entity_type="Spaceship",
                entity_id="x",
                action="DRAFT_CREATED",
                actor_user_id="user-1",
            )
