from __future__ import annotations

import hashlib

import pytest


def test_one_shot_ingest(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    res = client.post("/evidence/ingest", json=declaration("API_PUSH"), headers=headers)
    assert res.status_code == 201
    body = res.json()
    assert body["ok"] is True
    assert body["is_replay"] is False
    assert body["record"]["request_id"] == "req-api_push-0001"
    assert body["record"]["attestation_method"] == "API_PUSH"

    draft = client.get(f"/evidence/drafts/{body['draft_id']}", headers=headers)
    assert draft.json()["draft"]["status"] == "SEALED"


def test_ingest_replay_returns_existing_record(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    decl = declaration("API_PUSH")
    first = client.post("/evidence/ingest", json=decl, headers=headers)
    replay = client.post("/evidence/ingest", json=decl, headers=headers)

    assert replay.status_code == 200
    assert replay.headers["Idempotent-Replay"] == "true"
    assert replay.json()["is_replay"] is True
    assert replay.json()["evidence_id"] == first.json()["evidence_id"]
    assert replay.json()["payload_hash_sha256"] == first.json()["payload_hash_sha256"]
    assert client.get("/evidence/records", headers=headers).json()["count"] == 1


def test_ingest_replay_matches_on_payload_hash(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    first = client.post("/evidence/ingest", json=declaration("API_PUSH"), headers=headers)
    # same bytes once canonicalized
    reordered = declaration("API_PUSH", payload={"amount": 1200, "po_number": "4500012345"})
    replay = client.post("/evidence/ingest", json=reordered, headers=headers)
    assert replay.status_code == 200
    assert replay.json()["evidence_id"] == first.json()["evidence_id"]


def test_ingest_conflict_opens_work_item(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    first = client.post("/evidence/ingest", json=declaration("API_PUSH"), headers=headers)
    evidence_id = first.json()["evidence_id"]

    changed = declaration("API_PUSH", payload={"po_number": "4500012345", "amount": 9999})
    res = client.post("/evidence/ingest", json=changed, headers=headers)
    assert res.status_code == 409
    body = res.json()
    assert body["error_code"] == "IDEMPOTENCY_CONFLICT"
    assert body["existing_evidence_id"] == evidence_id
    assert body["work_item_id"]

    item = client.get(f"/work-items/{body['work_item_id']}", headers=headers).json()[
        "work_item"
    ]
    assert item["item_type"] == "CONFLICT_RESOLUTION"
    assert item["priority"] == "HIGH"
    assert item["status"] == "OPEN"
    assert item["evidence_ids"] == [evidence_id]

    conflicts = client.get(
        "/audit/events?action=IDEMPOTENCY_CONFLICT", headers=headers
    ).json()["events"]
    assert len(conflicts) == 1
    assert conflicts[0]["entity_type"] == "Request"
    assert conflicts[0]["entity_id"] == "req-api_push-0001"

    # the sealed record itself did not change
    record = client.get(f"/evidence/records/{evidence_id}", headers=headers).json()
    assert record["record"]["payload_hash_sha256"] == first.json()["payload_hash_sha256"]


def test_ingest_requires_payload(client, auth_headers, declaration):
    res = client.post(
        "/evidence/ingest",
        json=declaration("FILE_UPLOAD"),
        headers=auth_headers("tenant-a"),
    )
    assert res.status_code == 422
    assert res.json()["error_code"] == "MISSING_PAYLOAD"


def test_ingest_erp_api_without_payload(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    first = client.post("/evidence/ingest", json=declaration("ERP_API"), headers=headers)
    assert first.status_code == 201
    assert first.json()["record"]["payload_kind"] == "SERVER_FETCH"

    replay = client.post("/evidence/ingest", json=declaration("ERP_API"), headers=headers)
    assert replay.status_code == 200
    assert replay.json()["evidence_id"] == first.json()["evidence_id"]


def test_ingest_request_id_held_by_open_draft(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    draft = client.post(
        "/evidence/drafts", json=declaration("API_PUSH", payload=None), headers=headers
    ).json()["draft"]
    res = client.post("/evidence/ingest", json=declaration("API_PUSH"), headers=headers)
    assert res.status_code == 409
    assert res.json()["error_code"] == "IDEMPOTENCY_CONFLICT"
    assert res.json()["existing_draft_id"] == draft["draft_id"]


def test_gate_failure_writes_nothing(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    res = client.post(
        "/evidence/ingest",
        json=declaration("API_PUSH", payload=[1, 2, 3]),
        headers=headers,
    )
    assert res.status_code == 422
    assert res.json()["error_code"] == "INVALID_PAYLOAD"
    assert client.get("/audit/events", headers=headers).json()["events"] == []
    assert client.get("/evidence/records", headers=headers).json()["records"] == []


def test_fixture_blocked_in_live(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    res = client.post(
        "/evidence/ingest",
        json=declaration("API_PUSH", origin="TEST_FIXTURE"),
        headers=headers,
    )
    assert res.status_code == 403
    assert res.json()["error_code"] == "FIXTURE_BLOCKED_IN_LIVE"

    draft = client.post(
        "/evidence/drafts",
        json=declaration("FILE_UPLOAD", origin="TEST_FIXTURE"),
        headers=headers,
    )
    assert draft.status_code == 403

    events = client.get("/audit/events", headers=headers).json()["events"]
    assert [e["action"] for e in events] == ["SECURITY_VIOLATION", "SECURITY_VIOLATION"]
    assert events[0]["entity_type"] == "Request"
    assert client.get("/evidence/records", headers=headers).json()["records"] == []


def test_fixture_allowed_in_sandbox(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    mode = client.put(
        "/tenants/me/data-mode", json={"data_mode": "SANDBOX"}, headers=headers
    )
    assert mode.status_code == 200
    assert mode.json()["tenant"]["data_mode"] == "SANDBOX"

    res = client.post(
        "/evidence/ingest",
        json=declaration("API_PUSH", origin="TEST_FIXTURE"),
        headers=headers,
    )
    assert res.status_code == 201
    assert res.json()["record"]["data_mode"] == "SANDBOX"

    changes = client.get(
        "/audit/events?action=DATA_MODE_CHANGED", headers=headers
    ).json()["events"]
    assert changes[0]["previous_state"] == "LIVE"
    assert changes[0]["new_state"] == "SANDBOX"


def test_data_mode_requires_admin_scope(client, mint_key):
    headers = {"X-API-Key": mint_key("tenant-a", "evidence:read", role="compliance")}
    res = client.put("/tenants/me/data-mode", json={"data_mode": "SANDBOX"}, headers=headers)
    assert res.status_code == 403

    me = client.get("/tenants/me", headers=headers).json()
    assert me["tenant"]["data_mode"] == "LIVE"
    assert me["tenant"]["provisioned"] is False
    assert me["principal"]["role"] == "compliance"
    assert me["principal"]["scopes"] == ["evidence:read"]


def test_invalid_data_mode(client, auth_headers):
    res = client.put(
        "/tenants/me/data-mode", json={"data_mode": "STAGING"}, headers=auth_headers()
    )
    assert res.status_code == 422
    assert res.json()["field"] == "data_mode"


def test_ingest_accepts_payload_bytes(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    decl = declaration(
        "MANUAL_ENTRY", payload=None, payload_bytes='{"supplier_id": "SUP-0042"}'
    )
    res = client.post("/evidence/ingest", json=decl, headers=headers)
    assert res.status_code == 201, res.json()
    assert res.json()["record"]["payload_kind"] == "JSON"
    expected = hashlib.sha256(b'{"supplier_id":"SUP-0042"}').hexdigest()
    assert res.json()["record"]["payload_hash_sha256"] == expected


def test_ingest_payload_bytes_goes_through_the_gate(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    prose = client.post(
        "/evidence/ingest",
        json=declaration("MANUAL_ENTRY", payload=None, payload_bytes="hello world, free prose"),
        headers=headers,
    )
    assert prose.status_code == 422
    assert prose.json()["error_code"] == "INVALID_PAYLOAD"

    erp = client.post(
        "/evidence/ingest",
        json=declaration("ERP_API", payload_bytes='{"x": 1}'),
        headers=headers,
    )
    assert erp.status_code == 422
    assert erp.json()["error_code"] == "CLIENT_PAYLOAD_NOT_ALLOWED"

    both = client.post(
        "/evidence/ingest",
        json=declaration("API_PUSH", payload_bytes='{"po_number": "1"}'),
        headers=headers,
    )
    assert both.status_code == 422
    assert both.json()["error_code"] == "VALIDATION_FAILED"
    assert both.json()["field"] == "payload_bytes"

    assert client.get("/evidence/records", headers=headers).json()["records"] == []


@pytest.mark.parametrize("path", ["/evidence/drafts", "/evidence/ingest"])
def test_manual_certificate_rejected_before_payload(client, auth_headers, path):
    body = {
        "ingestion_method": "MANUAL_ENTRY",
        "dataset_type": "CERTIFICATE",
        "payload_bytes": "{}",
    }
    res = client.post(path, json=body, headers=auth_headers("tenant-a"))
    assert res.status_code == 422
    assert res.json()["error_code"] == "UNSUPPORTED_METHOD_DATASET_COMBINATION"


def test_create_draft_with_payload_bytes(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    res = client.post(
        "/evidence/drafts",
        json=declaration("FILE_UPLOAD", payload_bytes="hello world"),
        headers=headers,
    )
    assert res.status_code == 201
    draft = res.json()["draft"]
    assert draft["payload_attached"] is True
    assert draft["status"] == "READY_TO_SEAL"
    assert draft["payload_size_bytes"] == len(b"hello world")

    patched = client.patch(
        f"/evidence/drafts/{draft['draft_id']}",
        json={"payload_bytes": "other"},
        headers=headers,
    )
    assert patched.status_code == 422
    assert patched.json()["field"] == "payload_bytes"
