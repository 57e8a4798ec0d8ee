import json
import threading
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from action_ledger.config import LedgerSettings
from action_ledger.crypto import create_key_pair
from action_ledger.server import create_app
from action_ledger.service import LedgerService

REFUND_BUNDLE = {
    "policy_id": "refunds",
    "version": "refunds-2026.01",
    "default": "allow",
    "rules": [
        {
            "id": "refund_over_limit",
            "decision": "approve",
            "reason": "refund_over_500",
            "actions": ["issue_refund"],
            "when": [{"field": "payload.amount", "op": "gt", "value": 500}],
        }
    ],
}


def _event(minute=0, **extra):
    doc = {
        "app_id": "billing",
        "session_id": "s1",
        "actor": "agent",
        "timestamp": f"2026-01-13T09:{minute:02d}:00Z",
        "input": {"prompt": f"step {minute}"},
    }
    doc.update(extra)
    return doc


@pytest.fixture
def service(tmp_path):
    bundle = tmp_path / "bundle.json"
    bundle.write_text(json.dumps(REFUND_BUNDLE), encoding="utf-8")
    settings = LedgerSettings(
        db_path=str(tmp_path / "ledger.db"),
        export_dir=str(tmp_path / "exports"),
        policy_bundle_file=str(bundle),
        approval_timeout_seconds=5.0,
    )
    svc = LedgerService.from_settings(settings, signer=create_key_pair("server_test"))
    yield svc
    svc.broker.shutdown()
    svc.ingestor.close()


@pytest.fixture
def client(service):
    with TestClient(create_app(service, start_workers=False)) as c:
        yield c


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["signing_key_id"] == "server_test"
    assert body["policy_bundle"] == "refunds-2026.01"
    assert body["pending_approvals"] == 0


def test_append_and_read_back(client):
    r1 = client.post("/v1/events", json={"event": _event(0)})
    r2 = client.post("/v1/events", json={"event": _event(1), "expected_sequence": 2})
    assert r1.status_code == 201
    assert r2.status_code == 201
    first, second = r1.json(), r2.json()
    assert first["stream"] == "app:billing"
    assert first["sequence"] == 1
    assert second["hash_prev"] == first["hash_self"]
    assert second["signature"].startswith("server_test:")

    r = client.get("/v1/events", params={"stream": "app:billing"})
    assert r.status_code == 200
    body = r.json()
    assert (body["start"], body["end"]) == (1, 2)
    assert [e["event_id"] for e in body["events"]] == [first["event_id"], second["event_id"]]

    streams = client.get("/v1/streams", params={"app_id": "billing"}).json()["streams"]
    assert streams == [{"stream": "app:billing", "sequence": 2, "hash_self": second["hash_self"]}]


def test_invalid_event_is_422_with_error_envelope(client):
    r = client.post("/v1/events", json={"event": _event(0, actor="robot")})
    assert r.status_code == 422
    assert r.json()["code"] == "LEDGER_E_VALIDATION"


def test_stale_expected_sequence_is_409(client):
    client.post("/v1/events", json={"event": _event(0)})
    r = client.post("/v1/events", json={"event": _event(1), "expected_sequence": 1})
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "LEDGER_E_CONCURRENCY_CONFLICT"
    assert body["retryable"] is True


def test_unknown_stream_is_404(client):
    r = client.get("/v1/events", params={"stream": "app:ghost"})
    assert r.status_code == 404
    assert r.json()["code"] == "LEDGER_E_NOT_FOUND"


def test_verify_endpoint(client):
    for i in range(3):
        client.post("/v1/events", json={"event": _event(i)})
    r = client.post("/v1/verify", json={"stream": "app:billing", "start": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["checked"] == 2


def test_gate_allows_small_refund_and_records_it(client, service):
    r = client.post(
        "/v1/gate/evaluate",
        json={
            "action": "issue_refund",
            "risk": "low",
            "payload": {"amount": 20},
            "context": {"app_id": "billing", "session_id": "s7"},
        },
    )
    assert r.status_code == 200
    body = r.json()
    assert body["result"] == "allow"
    assert body["reasons"] == ["no_rule_matched"]
    assert body["bundle_version"] == "refunds-2026.01"
    assert service.ingestor.flush(timeout=5)
    assert service.store.head("app:billing").sequence == 1


def test_gate_waits_for_human_approval(client, service):
    def approve_when_pending():
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            pending = service.broker.pending()
            if pending:
                service.broker.approve(pending[0].approval_id, "alice@ops")
                return
            time.sleep(0.01)

    t = threading.Thread(target=approve_when_pending, daemon=True)
    t.start()
    r = client.post("/v1/gate/evaluate", json={"action": "issue_refund", "risk": "high", "payload": {"amount": 750}})
    t.join(timeout=5)
    body = r.json()
    assert body["result"] == "allow"
    assert body["reasons"] == ["refund_over_500", "approval_granted"]
    assert body["approval_id"].startswith("apr_")


def test_gate_rejects_unknown_risk_tier(client):
    r = client.post("/v1/gate/evaluate", json={"action": "issue_refund", "risk": "yolo"})
    assert r.status_code == 422


def test_approval_endpoints(client, service):
    req = service.broker.request({"action": "issue_refund"}, timeout_seconds=60)
    pending = client.get("/v1/approvals").json()["approvals"]
    assert [a["approval_id"] for a in pending] == [req.approval_id]

    r = client.post(f"/v1/approvals/{req.approval_id}/resolve", json={"approved": False, "resolver": "bob", "reason": "no"})
    assert r.status_code == 200
    assert r.json()["state"] == "denied"

    again = client.post(f"/v1/approvals/{req.approval_id}/resolve", json={"approved": True, "resolver": "carol"})
    assert again.status_code == 409
    assert again.json()["code"] == "LEDGER_E_APPROVAL_ALREADY_RESOLVED"

    assert client.get(f"/v1/approvals/{req.approval_id}").json()["resolver"] == "bob"
    assert client.get("/v1/approvals/apr_missing").status_code == 404


def test_checkpoint_endpoints(client):
    for i in range(3):
        client.post("/v1/events", json={"event": _event(i)})
    cp = client.post("/v1/checkpoints", json={"stream": "app:billing"}).json()["checkpoint"]
    assert (cp["seq_start"], cp["seq_end"]) == (1, 3)
    assert cp["anchored"] is True
    assert client.post("/v1/checkpoints", json={"stream": "app:billing"}).json()["checkpoint"] is None

    listed = client.get("/v1/checkpoints", params={"stream": "app:billing"}).json()["checkpoints"]
    assert [c["checkpoint_id"] for c in listed] == [cp["checkpoint_id"]]
    assert client.get("/v1/checkpoints", params={"unanchored_only": True}).json()["checkpoints"] == []


def test_export_then_verify_upload(client, service):
    for i in range(3):
        client.post("/v1/events", json={"event": _event(i)})
    r = client.post(
        "/v1/exports",
        json={
            "app_id": "billing",
            "time_from": "2026-01-13T00:00:00Z",
            "time_to": "2026-01-14T00:00:00Z",
            "include_kinds": ["traces"],
        },
    )
    assert r.status_code == 201
    body = r.json()
    path = Path(body["path"])
    assert path.exists()
    assert path.parent == Path(service.settings.export_dir)
    assert "traces.json" in body["manifest"]["files"]

    v = client.post("/v1/evidence/verify", content=path.read_bytes())
    assert v.status_code == 200
    assert v.json()["ok"] is True
    assert v.json()["keys_source"] == "external"


def test_export_unknown_kind_is_422(client):
    client.post("/v1/events", json={"event": _event(0)})
    r = client.post(
        "/v1/exports",
        json={"app_id": "billing", "time_from": "2026-01-13T00:00:00Z", "time_to": "2026-01-14T00:00:00Z", "include_kinds": ["secrets"]},
    )
    assert r.status_code == 422


def test_evidence_verify_rejects_non_zip(client):
    assert client.post("/v1/evidence/verify", content=b"").status_code == 422
    assert client.post("/v1/evidence/verify", content=b"hello").status_code == 422


def test_metrics_endpoint_requires_token_when_configured(monkeypatch, service):
    monkeypatch.setenv("LEDGER_METRICS_TOKEN", "s3cret")
    with TestClient(create_app(service, start_workers=False)) as c:
        assert c.get("/metrics").status_code == 403
        r = c.get("/metrics", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200
        assert "ledger_appends_total" in r.text
