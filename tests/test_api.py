import pytest
from fastapi.testclient import TestClient

from reliance_engine import config
from reliance_engine.liveness import TrustStatus
from reliance_engine.main import Services, create_app

from conftest import onboard_payload

API_TOKEN = "test-api-token"
ADMIN_TOKEN = "test-admin-token"
API = {"Authorization": f"Bearer {API_TOKEN}"}
ADMIN = {"Authorization": f"Bearer {ADMIN_TOKEN}", "X-Admin-Id": "auditor-7"}


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(config, "API_AUTH_TOKEN", API_TOKEN)
    monkeypatch.setattr(config, "ADMIN_AUTH_TOKEN", ADMIN_TOKEN)
    services = Services(
        db=engine.db,
        ledger=engine.ledger,
        evidence=engine.evidence,
        revocations=engine.revocations,
        monitor=engine.monitor,
        queue=engine.queue,
        orchestrator=engine.orchestrator,
    )
    return TestClient(create_app(services, background=False))


def test_onboard_investor(client, engine):
    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "VERIFIED_AND_SECURED"
    assert body["transaction_id"] == "tx-0001"
    assert len(body["shard_b"]) == 64
    assert body["manual_review_required"] is False
    assert engine.evidence.exists("tx-0001")


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": API_TOKEN}])
def test_onboard_requires_api_token(client, headers):
    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=headers)
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHORIZED"


def test_unconfigured_token_refuses_everything(client, monkeypatch):
    monkeypatch.setattr(config, "API_AUTH_TOKEN", "")
    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    assert r.status_code == 500
    assert r.json()["detail"] == "AUTH_NOT_CONFIGURED"


def test_admin_routes_reject_api_token(client):
    assert client.get("/v1/ledger", headers=API).status_code == 401


def test_malformed_request(client):
    payload = onboard_payload()
    del payload["compliance_warranty"]
    assert client.post("/v1/onboard-investor", json=payload, headers=API).status_code == 422


def test_revoke_then_onboard_is_refused(client, engine):
    r = client.post("/v1/revoke", json={"token": "wt-0001"}, headers=API)
    assert r.status_code == 200
    assert r.json() == {"message": "Token revoked", "total_revoked": 1}

    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    assert r.status_code == 401
    assert r.json()["detail"] == "CREDENTIAL_REVOKED"
    assert not engine.evidence.exists("tx-0001")


def test_suspended_reliance_is_503(client, engine):
    engine.monitor.force_state(TrustStatus.SUSPENDED, reason="grace period expired")
    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    assert r.status_code == 503
    assert r.json()["detail"] == "RELIANCE_SUSPENDED"


def test_revocation_store_outage_is_503(client, redis_server):
    redis_server.connected = False
    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    assert r.status_code == 503
    assert r.json()["detail"] == "REVOCATION_LIST_UNAVAILABLE"


def test_duplicate_transaction_is_409(client):
    client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    r = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    assert r.status_code == 409


def test_evidence_metadata_hides_shard_a(client):
    client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)
    r = client.get("/v1/evidence/tx-0001", headers=ADMIN)
    assert r.status_code == 200
    body = r.json()
    assert body["transaction_id"] == "tx-0001"
    assert "shard_a" not in body
    assert client.get("/v1/evidence/tx-missing", headers=ADMIN).status_code == 404


def test_reconstruct_with_both_shards(client, engine):
    shard_b = client.post("/v1/onboard-investor", json=onboard_payload(), headers=API).json()["shard_b"]

    r = client.post("/v1/evidence/tx-0001/reconstruct", json={"shard_b": shard_b}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["record"] == onboard_payload()["investor_profile"]
    last = engine.ledger.entries()[-1]
    assert last["action"] == "EVIDENCE_RECONSTRUCTED"
    assert last["admin_id"] == "auditor-7"


def test_reconstruct_rejects_bad_shards(client):
    client.post("/v1/onboard-investor", json=onboard_payload(), headers=API)

    r = client.post("/v1/evidence/tx-0001/reconstruct", json={"shard_b": "zz"}, headers=ADMIN)
    assert (r.status_code, r.json()["detail"]) == (400, "INVALID_SHARD")

    r = client.post("/v1/evidence/tx-0001/reconstruct", json={"shard_b": "ab" * 32}, headers=ADMIN)
    assert (r.status_code, r.json()["detail"]) == (422, "DECRYPTION_FAILED")


def test_ledger_export_and_verify(client):
    client.post("/v1/onboard-investor", json=onboard_payload("tx-1", "wt-1"), headers=API)
    client.post("/v1/onboard-investor", json=onboard_payload("tx-2", "wt-2"), headers=API)

    entries = client.get("/v1/ledger", headers=ADMIN).json()
    assert [e["transaction_id"] for e in entries] == ["tx-1", "tx-2"]
    assert "wt-1" not in str(entries)

    assert client.get("/v1/ledger/verify", headers=ADMIN).json() == {"valid": True, "entries": 2, "errors": []}


def test_reliance_state_and_manual_reset(client, engine):
    engine.monitor.force_state(TrustStatus.SUSPENDED, reason="grace period expired")
    r = client.get("/v1/admin/reliance", headers=ADMIN)
    assert r.json()["status"] == "SUSPENDED"
    assert r.json()["counterparty_id"] == "BANK-001"

    r = client.post("/v1/admin/reliance/reset", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["previous_status"] == "SUSPENDED"
    assert r.json()["status"] == "ACTIVE"

    last = engine.ledger.entries()[-1]
    assert last["action"] == "RELIANCE_MANUAL_RESET"
    assert last["admin_id"] == "auditor-7"
    assert client.post("/v1/onboard-investor", json=onboard_payload(), headers=API).status_code == 201


def test_health(client, redis_server):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["reliance"]["status"] == "ACTIVE"
    assert body["ledger"] == "OK"

    redis_server.connected = False
    body = client.get("/health").json()
    assert body["ok"] is False
    assert body["shared_store"] == "UNREACHABLE"


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_dead_letters_listing(client):
    r = client.get("/v1/admin/dead-letters", headers=ADMIN)
    assert r.json() == {"count": 0, "events": []}
