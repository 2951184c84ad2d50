import asyncio

from fastapi.testclient import TestClient
from sqlalchemy import select

from fuep_payments.main import create_app
from fuep_payments.models import WebhookEvent
from fuep_payments.services.settlement import SettlementListener

from conftest import APPLICATION_FEE, signed_webhook, success_payload

INIT_BODY = {
    "candidate_id": "C-001",
    "purpose": "application_fee",
    "amount": APPLICATION_FEE,
    "currency": "NGN",
    "session": "2025/2026",
    "email": "candidate@example.com",
}


def post_webhook(client, payload, provider="gatewayA", signature=None, **kwargs):
    body, good_signature, ts = signed_webhook(payload, **kwargs)
    headers = {
        "Content-Type": "application/json",
        "x-gateway-signature": signature or good_signature,
        "x-gateway-timestamp": ts,
    }
    return client.post(f"/webhooks/{provider}", content=body, headers=headers)


def test_init_payment(client):
    res = client.post("/payments/init", json=INIT_BODY)

    assert res.status_code == 201
    data = res.json()
    assert data["provider"] == "gatewayA"
    assert data["provider_reference"] == "refA-123"
    assert data["payment_url"] == "https://gatewayA.example/pay/refA-123"
    assert data["status"] == "initiated"
    assert data["reconciliation_required"] is False
    assert data["payment_id"]


def test_init_rejects_wrong_fee(client):
    res = client.post("/payments/init", json={**INIT_BODY, "amount": 100})
    assert res.status_code == 422


def test_init_rejects_unknown_purpose(client):
    res = client.post("/payments/init", json={**INIT_BODY, "purpose": "hostel_fee"})
    assert res.status_code == 422


def test_init_accepted_when_not_persisted(client):
    client.post("/payments/init", json=INIT_BODY)
    res = client.post("/payments/init", json={**INIT_BODY, "candidate_id": "C-002"})

    assert res.status_code == 202
    data = res.json()
    assert data["reconciliation_required"] is True
    assert data["payment_id"] is None
    assert data["provider_reference"] == "refA-123"


def test_status_and_receipt_flow(client, listener):
    payment_id = client.post("/payments/init", json=INIT_BODY).json()["payment_id"]

    assert client.get(f"/payments/{payment_id}/status").json()["status"] == "initiated"
    assert client.get(f"/payments/{payment_id}/receipt").status_code == 409

    res = post_webhook(client, success_payload())
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "duplicate": False}

    status = client.get(f"/payments/{payment_id}/status").json()
    assert status["status"] == "succeeded"
    assert status["amount"] == APPLICATION_FEE

    receipt = client.get(f"/payments/{payment_id}/receipt")
    assert receipt.status_code == 200
    serial = receipt.json()["serial"]
    assert serial.startswith("FUEP-")

    verified = client.get(f"/payments/receipts/{serial}/verify").json()
    assert verified == {"serial": serial, "valid": True, "payment_id": payment_id}
    assert listener.calls == [("C-001", "application_fee")]


def test_unknown_payment_status(client):
    assert client.get("/payments/nope/status").status_code == 404
    assert client.get("/payments/nope/receipt").status_code == 404
    assert client.get("/payments/receipts/FUEP-2026-0000000000/verify").status_code == 404


def test_webhook_replay_reports_duplicate(client, db):
    client.post("/payments/init", json=INIT_BODY)

    first = post_webhook(client, success_payload())
    second = post_webhook(client, success_payload())

    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    logged = db.execute(select(WebhookEvent).order_by(WebhookEvent.id)).scalars().all()
    assert [e.status for e in logged] == ["processed", "processed"]
    assert logged[1].error == "duplicate"


def test_forged_webhook_gets_generic_rejection(client, db):
    payment_id = client.post("/payments/init", json=INIT_BODY).json()["payment_id"]

    res = post_webhook(client, success_payload(), signature="ab" * 64)

    assert res.status_code == 400
    assert res.json() == {"detail": "Webhook rejected"}
    assert client.get(f"/payments/{payment_id}/status").json()["status"] == "initiated"

    logged = db.execute(select(WebhookEvent)).scalar_one()
    assert logged.status == "rejected"
    assert logged.error == "signature_invalid"
    assert logged.headers["x-gateway-signature"] == "***"


def test_amount_mismatch_gets_generic_rejection(client):
    client.post("/payments/init", json=INIT_BODY)
    res = post_webhook(client, success_payload(amount=1))
    assert res.status_code == 400
    assert res.json() == {"detail": "Webhook rejected"}


def test_malformed_webhook_rejected(client):
    client.post("/payments/init", json=INIT_BODY)
    res = post_webhook(client, {"reference": "refA-123"})
    assert res.status_code == 400


def test_webhook_for_unknown_reference(client, db):
    res = post_webhook(client, success_payload(reference="refA-999"))
    assert res.status_code == 404
    assert db.execute(select(WebhookEvent)).scalar_one().status == "rejected"


def test_webhook_for_unknown_provider(client, db):
    res = post_webhook(client, success_payload(), provider="paystack")
    assert res.status_code == 404
    assert db.execute(select(WebhookEvent)).scalars().all() == []


def test_verify_requires_admin_key_when_configured(make_client, gateway):
    client = make_client(ADMIN_API_KEY="admin-secret")
    payment_id = client.post("/payments/init", json=INIT_BODY).json()["payment_id"]

    assert client.post(f"/payments/verify/{payment_id}").status_code == 401
    assert client.post(f"/payments/verify/{payment_id}", headers={"X-Admin-Key": "wrong"}).status_code == 401

    # The fake gateway has no canned status, so reconciliation reports it unavailable.
    res = client.post(f"/payments/verify/{payment_id}", headers={"X-Admin-Key": "admin-secret"})
    assert res.status_code == 503


def test_verify_unknown_payment(client):
    assert client.post("/payments/verify/missing").status_code == 404


def test_providers_status(client):
    res = client.get("/payments/providers/status")
    assert res.status_code == 200
    assert res.json() == {
        "providers": {"gatewayA": {"enabled": True, "is_primary": True}},
        "available": True,
    }


def test_candidate_history(client):
    client.post("/payments/init", json=INIT_BODY)
    history = client.get("/payments/candidates/C-001").json()
    assert len(history) == 1
    assert history[0]["provider_reference"] == "refA-123"
    assert client.get("/payments/candidates/C-404").json() == []


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.json()["database"] == "ok"


def test_request_id_is_echoed(client):
    res = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert res.headers["X-Request-ID"] == "req-42"


class LoopAwareListener(SettlementListener):
    def __init__(self):
        self.loop_running = []

    def on_payment_settled(self, candidate_id, purpose):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.loop_running.append(False)
        else:
            self.loop_running.append(True)


def test_webhook_settlement_runs_off_the_event_loop(session_factory, registry, test_settings):
    listener = LoopAwareListener()
    client = TestClient(create_app(
        settings=test_settings,
        registry=registry,
        listener=listener,
        session_factory=session_factory,
    ))
    client.post("/payments/init", json=INIT_BODY)

    res = post_webhook(client, success_payload())

    assert res.status_code == 200
    assert listener.loop_running == [False]


def test_statistics_requires_admin_key_when_configured(make_client):
    client = make_client(ADMIN_API_KEY="admin-secret")
    client.post("/payments/init", json=INIT_BODY)
    post_webhook(client, success_payload())

    assert client.get("/payments/statistics").status_code == 401
    assert client.get("/payments/statistics", headers={"X-Admin-Key": "wrong"}).status_code == 401

    res = client.get("/payments/statistics", headers={"X-Admin-Key": "admin-secret"})
    assert res.status_code == 200
    data = res.json()
    assert data["total_payments"] == 1
    assert data["collected_amount"] == APPLICATION_FEE
    assert data["by_status"]["succeeded"] == {"count": 1, "amount": APPLICATION_FEE}
    assert data["by_purpose"]["application_fee"]["collected_amount"] == APPLICATION_FEE


def test_statistics_filtered_by_session(client):
    client.post("/payments/init", json=INIT_BODY)

    assert client.get("/payments/statistics", params={"session": "2025/2026"}).json()["total_payments"] == 1
    other = client.get("/payments/statistics", params={"session": "2024/2025"}).json()
    assert other["total_payments"] == 0
    assert other["session"] == "2024/2025"
