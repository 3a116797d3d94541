from __future__ import annotations

from fastapi.testclient import TestClient

from api.auth_scopes import mint_key


def test_same_request_id_in_two_tenants(client, auth_headers, declaration):
    a = auth_headers("tenant-a")
    b = auth_headers("tenant-b")
    decl = declaration("API_PUSH")

    ra = client.post("/evidence/ingest", json=decl, headers=a)
    rb = client.post("/evidence/ingest", json=decl, headers=b)
    assert ra.status_code == 201
    assert rb.status_code == 201
    assert ra.json()["evidence_id"] != rb.json()["evidence_id"]
    # independent per-tenant sequences
    assert ra.json()["display_id"].endswith("-000001")
    assert rb.json()["display_id"].endswith("-000001")
    assert ra.json()["record"]["tenant_id"] == "tenant-a"
    assert rb.json()["record"]["tenant_id"] == "tenant-b"


def test_foreign_rows_are_not_found(client, auth_headers, declaration):
    a = auth_headers("tenant-a")
    b = auth_headers("tenant-b")

    draft_id = client.post(
        "/evidence/drafts", json=declaration("FILE_UPLOAD"), headers=a
    ).json()["draft"]["draft_id"]
    sealed = client.post(
        "/evidence/ingest", json=declaration("MANUAL_ENTRY"), headers=a
    ).json()
    evidence_id = sealed["evidence_id"]
    work_item_id = sealed["work_item_ids"][0]

    assert client.get(f"/evidence/drafts/{draft_id}", headers=b).status_code == 404
    assert client.post(f"/evidence/drafts/{draft_id}/seal", headers=b).status_code == 404
    assert (
        client.post(f"/evidence/drafts/{draft_id}/cancel", headers=b).status_code == 404
    )
    assert client.get(f"/evidence/records/{evidence_id}", headers=b).status_code == 404
    assert client.patch(f"/evidence/records/{evidence_id}", headers=b).status_code == 404
    assert client.get(f"/work-items/{work_item_id}", headers=b).status_code == 404
    resolve = client.post(
        f"/work-items/{work_item_id}/resolve",
        json={"resolution": "ACCEPTED"},
        headers=b,
    )
    assert resolve.status_code == 404
    # 404 body never hints that the row exists elsewhere
    assert resolve.json()["message"] == "work item not found"

    assert client.get("/evidence/records", headers=b).json()["records"] == []
    assert client.get("/work-items", headers=b).json()["work_items"] == []
    assert client.get("/audit/events", headers=b).json()["events"] == []

    # tenant-a's draft was untouched by tenant-b's attempts
    still = client.get(f"/evidence/drafts/{draft_id}", headers=a).json()["draft"]
    assert still["status"] == "DRAFT"


def test_tenant_mismatch_is_403(client, auth_headers):
    a = auth_headers("tenant-a")
    res = client.get("/evidence/records?tenant_id=tenant-b", headers=a)
    assert res.status_code == 403
    assert res.json()["error_code"] == "TENANT_MISMATCH"

    res = client.get("/evidence/records", headers={**a, "X-Tenant-Id": "tenant-b"})
    assert res.status_code == 403

    same = client.get(
        "/evidence/records?tenant_id=tenant-a", headers={**a, "X-Tenant-Id": "tenant-a"}
    )
    assert same.status_code == 200


def test_unbound_key_is_rejected(client):
    key = mint_key("evidence:read", user_id="orphan", role="admin")
    res = client.get("/evidence/records", headers={"X-API-Key": key})
    assert res.status_code == 400
    assert res.json()["error_code"] == "TENANT_REQUIRED"


def test_audit_chains_are_per_tenant(client, auth_headers, declaration):
    a = auth_headers("tenant-a")
    b = auth_headers("tenant-b")
    client.post("/evidence/ingest", json=declaration("API_PUSH"), headers=a)
    client.post("/evidence/drafts", json=declaration("FILE_UPLOAD"), headers=b)

    ea = client.get("/audit/events", headers=a).json()["events"]
    eb = client.get("/audit/events", headers=b).json()["events"]
    assert {e["tenant_id"] for e in ea} == {"tenant-a"}
    assert {e["tenant_id"] for e in eb} == {"tenant-b"}
    assert [e["sequence"] for e in eb] == [1]
    assert client.get("/audit/verify", headers=a).json()["chain"]["ok"] is True
    assert client.get("/audit/verify", headers=b).json()["chain"]["ok"] is True


def test_dev_mode_takes_tenant_from_header(build_app, declaration):
    app = build_app(auth_enabled=False)
    with TestClient(app) as client:
        res = client.post(
            "/evidence/ingest",
            json=declaration("API_PUSH"),
            headers={"X-Tenant-Id": "tenant-dev"},
        )
        assert res.status_code == 201
        assert res.json()["record"]["tenant_id"] == "tenant-dev"
        assert res.json()["record"]["attestor_user_id"] == "dev-user"

        missing = client.get("/evidence/records")
        assert missing.status_code == 400


def test_record_id_filters_are_tenant_scoped(client, auth_headers, declaration):
    a = auth_headers("tenant-a")
    b = auth_headers("tenant-b")
    first = client.post("/evidence/ingest", json=declaration("API_PUSH"), headers=a).json()
    second = client.post(
        "/evidence/ingest",
        json=declaration("API_PUSH", request_id="req-api_push-0002", payload={"po_number": "2"}),
        headers=a,
    ).json()
    assert client.get("/evidence/records", headers=a).json()["count"] == 2

    by_id = client.get(
        f"/evidence/records?evidence_id={first['evidence_id']}", headers=a
    ).json()
    assert by_id["count"] == 1
    assert by_id["records"][0]["evidence_id"] == first["evidence_id"]

    by_display = client.get(
        f"/evidence/records?display_id={second['display_id']}", headers=a
    ).json()
    assert by_display["count"] == 1
    assert by_display["records"][0]["evidence_id"] == second["evidence_id"]

    foreign = client.get(
        f"/evidence/records?evidence_id={first['evidence_id']}", headers=b
    )
    assert foreign.status_code == 200
    assert foreign.json()["records"] == []
    foreign = client.get(
        f"/evidence/records?display_id={first['display_id']}", headers=b
    )
    assert foreign.json()["records"] == []
