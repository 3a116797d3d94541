from __future__ import annotations

from datetime import date, timedelta


def _unknown_scope_manual(declaration, due: date):
    return declaration(
        "MANUAL_ENTRY",
        request_id="req-unlinked-1",
        declared_scope="UNKNOWN",
        unlinked_reason="Legal entity mapping pending confirmation from procurement",
        resolution_due_date=due.isoformat(),
    )


def test_low_trust_seal_spawns_review(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    res = client.post("/evidence/ingest", json=declaration("MANUAL_ENTRY"), headers=headers)
    assert res.status_code == 201
    body = res.json()
    assert body["trust_level"] == "LOW"
    assert len(body["work_item_ids"]) == 1

    item = client.get(f"/work-items/{body['work_item_ids'][0]}", headers=headers).json()[
        "work_item"
    ]
    assert item["item_type"] == "REVIEW"
    assert item["priority"] == "MEDIUM"
    assert item["evidence_ids"] == [body["evidence_id"]]
    assert body["display_id"] in item["title"]


def test_unknown_scope_spawns_mapping_review(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    due = date.today() + timedelta(days=14)
    res = client.post(
        "/evidence/ingest", json=_unknown_scope_manual(declaration, due), headers=headers
    )
    assert res.status_code == 201
    body = res.json()
    assert body["record"]["link_status"] == "UNLINKED"
    assert body["record"]["scope_target_id"] is None

    items = client.get(
        f"/work-items?evidence_id={body['evidence_id']}", headers=headers
    ).json()["work_items"]
    by_type = {i["item_type"]: i for i in items}
    assert set(by_type) == {"REVIEW", "MAPPING_REVIEW"}
    assert by_type["MAPPING_REVIEW"]["priority"] == "HIGH"
    assert by_type["MAPPING_REVIEW"]["due_date"] == due.isoformat()


def test_high_trust_seal_spawns_nothing(client, auth_headers, declaration):
    res = client.post(
        "/evidence/ingest", json=declaration("ERP_EXPORT"), headers=auth_headers()
    )
    assert res.json()["work_item_ids"] == []


def test_resolve_requires_reviewer_role(client, auth_headers, declaration):
    admin = auth_headers("tenant-a")
    item_id = client.post(
        "/evidence/ingest", json=declaration("MANUAL_ENTRY"), headers=admin
    ).json()["work_item_ids"][0]

    user = auth_headers("tenant-a", "evidence:read", "review:write", role="user")
    denied = client.post(
        f"/work-items/{item_id}/resolve", json={"resolution": "ACCEPTED"}, headers=user
    )
    assert denied.status_code == 403
    assert denied.json()["error_code"] == "UNAUTHORIZED_ROLE"

    no_scope = auth_headers("tenant-a", "evidence:read", role="compliance")
    res = client.post(
        f"/work-items/{item_id}/resolve", json={"resolution": "ACCEPTED"}, headers=no_scope
    )
    assert res.status_code == 403
    assert res.json()["error_code"] == "FORBIDDEN"

    item = client.get(f"/work-items/{item_id}", headers=admin).json()["work_item"]
    assert item["status"] == "OPEN"


def test_resolve_once(client, auth_headers, declaration):
    admin = auth_headers("tenant-a")
    item_id = client.post(
        "/evidence/ingest", json=declaration("MANUAL_ENTRY"), headers=admin
    ).json()["work_item_ids"][0]
    legal = auth_headers("tenant-a", "evidence:read", "review:write", role="legal")

    bad = client.post(
        f"/work-items/{item_id}/resolve", json={"resolution": "MAYBE"}, headers=legal
    )
    assert bad.status_code == 422
    assert bad.json()["field"] == "resolution"

    ok = client.post(
        f"/work-items/{item_id}/resolve",
        json={"resolution": "accepted", "note": "Matches the signed questionnaire"},
        headers=legal,
    )
    assert ok.status_code == 200
    item = ok.json()["work_item"]
    assert item["status"] == "RESOLVED"
    assert item["resolution"] == "ACCEPTED"
    assert item["resolution_note"] == "Matches the signed questionnaire"
    assert item["resolved_by_user_id"] == "legal-tenant-a"
    assert item["resolved_at"]

    again = client.post(
        f"/work-items/{item_id}/resolve", json={"resolution": "REJECTED"}, headers=legal
    )
    assert again.status_code == 409
    assert again.json()["error_code"] == "WORK_ITEM_ALREADY_RESOLVED"

    events = client.get(
        f"/audit/events?entity_id={item_id}", headers=admin
    ).json()["events"]
    assert [e["action"] for e in events] == ["WORK_ITEM_CREATED", "WORK_ITEM_RESOLVED"]
    assert events[1]["actor_user_id"] == "legal-tenant-a"


def test_list_filters(client, auth_headers, declaration):
    headers = auth_headers("tenant-a")
    client.post("/evidence/ingest", json=declaration("MANUAL_ENTRY"), headers=headers)
    client.post(
        "/evidence/ingest",
        json=declaration("MANUAL_ENTRY", request_id="req-manual-2", payload={"supplier_id": "SUP-0043"}),
        headers=headers,
    )
    items = client.get("/work-items?status=OPEN", headers=headers).json()
    assert items["count"] == 2
    assert client.get("/work-items?status=RESOLVED", headers=headers).json()["count"] == 0
    assert (
        client.get("/work-items?item_type=CONFLICT_RESOLUTION", headers=headers).json()[
            "count"
        ]
        == 0
    )
