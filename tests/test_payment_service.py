import time
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select
from structlog.testing import capture_logs

from fuep_payments.errors import (
    AmountMismatch,
    InvalidAmount,
    NoProviderAvailable,
    PaymentNotFound,
    PaymentNotSuccessful,
    ProviderUnavailable,
    ReferenceMismatch,
    SignatureInvalid,
    TimestampStale,
    UnknownProvider,
)
from fuep_payments.models import Payment, PaymentEvent, PaymentStatus, Receipt
from fuep_payments.psp.adapter import PaymentContact, ReportedStatus, StatusQueryResult
from fuep_payments.psp.flutterwave_adapter import FlutterwaveAdapter
from fuep_payments.psp.registry import ProviderRegistry
from fuep_payments.services.payment_service import PaymentService
from fuep_payments.utils import as_utc, utcnow

from conftest import APPLICATION_FEE, FakeGateway, RecordingListener, signed_webhook, success_payload


def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def initiate_application_fee(service, candidate_id="C-001"):
    return service.initiate(
        candidate_id=candidate_id,
        purpose="application_fee",
        amount=APPLICATION_FEE,
        currency="NGN",
        contact=PaymentContact(email="candidate@example.com"),
        session="2025/2026",
    )


def deliver(service, payload, provider="gatewayA", **kwargs):
    body, signature, ts = signed_webhook(payload, **kwargs)
    return service.process_webhook(provider, body, signature, ts)


# -- the ₦2,000 application fee ---------------------------------------------

def test_application_fee_paid_end_to_end(service, db, listener):
    outcome = initiate_application_fee(service)

    assert outcome.persisted is True
    assert outcome.provider == "gatewayA"
    assert outcome.provider_reference == "refA-123"
    assert outcome.payment.status == "initiated"
    assert outcome.payment.amount == 200000
    assert outcome.payment.currency == "NGN"

    result = deliver(service, success_payload())

    assert result.transitioned is True
    assert result.duplicate is False
    payment = service.get_status(outcome.payment_id)
    assert payment.status == "succeeded"
    assert payment.settled_at is not None

    receipts = db.execute(select(Receipt)).scalars().all()
    assert len(receipts) == 1
    assert receipts[0].payment_id == payment.id
    assert receipts[0].serial.startswith("FUEP-")
    assert "NGN 2,000.00" in receipts[0].body
    assert listener.calls == [("C-001", "application_fee")]


def test_replayed_webhook_is_a_no_op(service, db, listener):
    outcome = initiate_application_fee(service)
    body, signature, ts = signed_webhook(success_payload())

    first = service.process_webhook("gatewayA", body, signature, ts)
    events_after_first = count(db, PaymentEvent)
    second = service.process_webhook("gatewayA", body, signature, ts)

    assert first.duplicate is False
    assert second.duplicate is True
    assert service.get_status(outcome.payment_id).status == "succeeded"
    assert count(db, Receipt) == 1
    assert count(db, PaymentEvent) == events_after_first
    assert len(listener.calls) == 1


def test_initiate_records_audit_event(service, db):
    outcome = initiate_application_fee(service)
    events = db.execute(select(PaymentEvent).where(PaymentEvent.payment_id == outcome.payment_id)).scalars().all()
    assert [e.event_type for e in events] == ["initiated"]
    assert events[0].to_status == "initiated"


def test_expiry_defaults_from_settings(service, test_settings):
    before = utcnow()
    outcome = initiate_application_fee(service)
    expected = before + timedelta(hours=test_settings.PAYMENT_EXPIRY_HOURS)
    assert abs((as_utc(outcome.expires_at) - expected).total_seconds()) < 5


# -- webhook rejections -------------------------------------------------------

def test_forged_signature_touches_nothing(service, db, listener):
    outcome = initiate_application_fee(service)
    body, _, ts = signed_webhook(success_payload())

    with pytest.raises(SignatureInvalid):
        service.process_webhook("gatewayA", body, "0" * 128, ts)

    assert service.get_status(outcome.payment_id).status == "initiated"
    assert count(db, Receipt) == 0
    assert listener.calls == []


def test_signature_from_wrong_secret_rejected(service):
    initiate_application_fee(service)
    with pytest.raises(SignatureInvalid):
        deliver(service, success_payload(), secret="someone-elses-secret")


def test_body_tampered_after_signing_rejected(service):
    initiate_application_fee(service)
    body, signature, ts = signed_webhook(success_payload())
    tampered = body.replace(b"200000", b"100")
    with pytest.raises(SignatureInvalid):
        service.process_webhook("gatewayA", tampered, signature, ts)


def test_stale_timestamp_rejected(service):
    outcome = initiate_application_fee(service)
    with pytest.raises(TimestampStale):
        deliver(service, success_payload(), timestamp=int(time.time()) - 3600)
    assert service.get_status(outcome.payment_id).status == "initiated"


def test_missing_webhook_secret_fails_closed(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(FakeGateway(webhook_secret=None))
    service = PaymentService(db, registry, settings=test_settings, listener=listener)
    initiate_application_fee(service)

    with pytest.raises(SignatureInvalid):
        deliver(service, success_payload())


def test_amount_mismatch_keeps_payment_open(service, db, listener):
    outcome = initiate_application_fee(service)

    with pytest.raises(AmountMismatch):
        deliver(service, success_payload(amount=100000))

    assert service.get_status(outcome.payment_id).status == "initiated"
    assert count(db, Receipt) == 0
    assert listener.calls == []


def test_currency_mismatch_keeps_payment_open(service):
    outcome = initiate_application_fee(service)
    with pytest.raises(AmountMismatch):
        deliver(service, success_payload(currency="USD"))
    assert service.get_status(outcome.payment_id).status == "initiated"


def test_unknown_reference_creates_nothing(service, db):
    initiate_application_fee(service)

    with pytest.raises(PaymentNotFound):
        deliver(service, success_payload(reference="refA-999"))

    assert count(db, Payment) == 1


def test_unknown_provider(service):
    body, signature, ts = signed_webhook(success_payload())
    with pytest.raises(UnknownProvider):
        service.process_webhook("paystack", body, signature, ts)


def test_metadata_for_another_candidate_rejected(service):
    outcome = initiate_application_fee(service)
    with pytest.raises(ReferenceMismatch):
        deliver(service, success_payload(candidate_id="C-002"))
    assert service.get_status(outcome.payment_id).status == "initiated"


def test_metadata_for_another_purpose_rejected(service):
    initiate_application_fee(service)
    with pytest.raises(ReferenceMismatch):
        deliver(service, success_payload(purpose="school_fees"))


# -- lifecycle ----------------------------------------------------------------

def test_failed_payment_is_final(service, db, listener):
    outcome = initiate_application_fee(service)

    failed = deliver(service, success_payload(status="failed"))
    late_success = deliver(service, success_payload())

    assert failed.transitioned is True
    assert late_success.duplicate is True
    assert service.get_status(outcome.payment_id).status == "failed"
    assert count(db, Receipt) == 0
    assert listener.calls == []


def test_pending_report_only_records_event(service, db):
    outcome = initiate_application_fee(service)

    result = deliver(service, success_payload(status="pending"))

    assert result.transitioned is False
    assert result.duplicate is False
    assert service.get_status(outcome.payment_id).status == "initiated"
    types = [e.event_type for e in db.execute(select(PaymentEvent)).scalars()]
    assert "webhook_received" in types


def test_listener_failure_does_not_undo_payment(db, registry, test_settings):
    listener = RecordingListener(fail=True)
    service = PaymentService(db, registry, settings=test_settings, listener=listener)
    outcome = initiate_application_fee(service)

    result = deliver(service, success_payload())

    assert result.transitioned is True
    assert service.get_status(outcome.payment_id).status == "succeeded"
    assert len(listener.calls) == 1


def test_other_purpose_does_not_notify(db, registry, test_settings, listener):
    service = PaymentService(db, registry, settings=test_settings, listener=listener)
    service.initiate("C-001", "other", 50000, "NGN")

    deliver(service, success_payload(amount=50000))

    assert listener.calls == []


# -- initiation ---------------------------------------------------------------

@pytest.mark.parametrize("amount, currency", [
    (0, "NGN"),
    (-200000, "NGN"),
    (APPLICATION_FEE, "USD"),
    (150000, "NGN"),
])
def test_invalid_amount_never_reaches_gateway(service, gateway, db, amount, currency):
    with pytest.raises(InvalidAmount):
        service.initiate("C-001", "application_fee", amount, currency)
    assert gateway.initiate_calls == []
    assert count(db, Payment) == 0


def test_unknown_purpose_rejected(service):
    with pytest.raises(InvalidAmount):
        service.initiate("C-001", "hostel_fee", APPLICATION_FEE, "NGN")


def test_falls_back_when_primary_disabled(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(FakeGateway(name="gatewayA", enabled=False))
    registry.register(FakeGateway(name="gatewayB", reference="refB-456"))
    service = PaymentService(db, registry, settings=test_settings, listener=listener)

    outcome = initiate_application_fee(service)

    assert outcome.provider == "gatewayB"
    assert outcome.provider_reference == "refB-456"


def test_preferred_provider_wins(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(FakeGateway(name="gatewayA"))
    registry.register(FakeGateway(name="gatewayB", reference="refB-456"))
    service = PaymentService(db, registry, settings=test_settings, listener=listener)

    outcome = service.initiate("C-001", "application_fee", APPLICATION_FEE, "NGN",
                               preferred_providers=["gatewayB"])

    assert outcome.provider == "gatewayB"


def test_no_provider_available(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(FakeGateway(enabled=False))
    service = PaymentService(db, registry, settings=test_settings, listener=listener)

    with pytest.raises(NoProviderAvailable):
        initiate_application_fee(service)


def test_gateway_outage_writes_nothing(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(FakeGateway(fail_with=ProviderUnavailable("timed out", provider="gatewayA")))
    service = PaymentService(db, registry, settings=test_settings, listener=listener)

    with pytest.raises(ProviderUnavailable):
        initiate_application_fee(service)
    assert count(db, Payment) == 0


def test_persistence_failure_still_returns_reference(service, db):
    initiate_application_fee(service, candidate_id="C-001")

    # The fake gateway hands out the same reference again, which breaks the unique key.
    outcome = initiate_application_fee(service, candidate_id="C-002")

    assert outcome.persisted is False
    assert outcome.payment is None
    assert outcome.provider_reference == "refA-123"
    assert outcome.payment_url
    assert count(db, Payment) == 1


# -- verification -------------------------------------------------------------

def test_verify_reconciles_success(service, gateway, db, listener):
    outcome = initiate_application_fee(service)
    gateway.status_result = StatusQueryResult("refA-123", ReportedStatus.SUCCEEDED, APPLICATION_FEE, "NGN")

    payment = service.verify_payment(outcome.payment_id)

    assert payment.status == "succeeded"
    assert count(db, Receipt) == 1
    assert listener.calls == [("C-001", "application_fee")]


def test_verify_leaves_terminal_payment_alone(service, gateway):
    outcome = initiate_application_fee(service)
    deliver(service, success_payload(status="failed"))
    gateway.status_result = StatusQueryResult("refA-123", ReportedStatus.SUCCEEDED, APPLICATION_FEE, "NGN")

    payment = service.verify_payment(outcome.payment_id)

    assert payment.status == "failed"
    assert gateway.query_calls == []


def test_verify_amount_mismatch(service, gateway):
    outcome = initiate_application_fee(service)
    gateway.status_result = StatusQueryResult("refA-123", ReportedStatus.SUCCEEDED, 100, "NGN")

    with pytest.raises(AmountMismatch):
        service.verify_payment(outcome.payment_id)
    assert service.get_status(outcome.payment_id).status == "initiated"


def test_verify_unknown_payment(service):
    with pytest.raises(PaymentNotFound):
        service.verify_payment("does-not-exist")


def test_verify_provider_no_longer_registered(service, db, test_settings, listener):
    outcome = initiate_application_fee(service)
    other = PaymentService(db, ProviderRegistry(), settings=test_settings, listener=listener)

    with pytest.raises(ProviderUnavailable):
        other.verify_payment(outcome.payment_id)


def test_verify_provider_disabled(service, gateway):
    outcome = initiate_application_fee(service)
    gateway._enabled = False

    with pytest.raises(ProviderUnavailable):
        service.verify_payment(outcome.payment_id)


def test_verify_expires_overdue_pending_payment(service, gateway, db):
    outcome = initiate_application_fee(service)
    payment = service.get_status(outcome.payment_id)
    payment.expires_at = utcnow() - timedelta(hours=1)
    db.commit()
    gateway.status_result = StatusQueryResult("refA-123", ReportedStatus.PENDING)

    payment = service.verify_payment(outcome.payment_id)

    assert payment.status == "expired"
    assert count(db, Receipt) == 0


# -- expiry sweep -------------------------------------------------------------

def test_expire_stale_payments(service, db):
    outcome = initiate_application_fee(service)
    later = utcnow() + timedelta(hours=25)

    assert service.expire_stale_payments(now=later) == 1
    assert service.expire_stale_payments(now=later) == 0
    assert service.get_status(outcome.payment_id).status == "expired"

    # A success arriving after expiry does not resurrect the payment.
    late = deliver(service, success_payload())
    assert late.duplicate is True
    assert service.get_status(outcome.payment_id).status == "expired"


def test_sweep_ignores_fresh_payments(service):
    initiate_application_fee(service)
    assert service.expire_stale_payments() == 0


# -- receipts -----------------------------------------------------------------

def test_receipt_requires_success(service):
    outcome = initiate_application_fee(service)
    with pytest.raises(PaymentNotSuccessful):
        service.generate_receipt(outcome.payment_id)


def test_receipt_for_unknown_payment(service):
    with pytest.raises(PaymentNotFound):
        service.generate_receipt("missing")


def test_receipt_generation_is_idempotent(service, db):
    outcome = initiate_application_fee(service)
    deliver(service, success_payload())

    first = service.generate_receipt(outcome.payment_id)
    second = service.generate_receipt(outcome.payment_id)

    assert first.id == second.id
    assert first.serial == second.serial
    assert count(db, Receipt) == 1


def test_receipt_verification(service, db):
    outcome = initiate_application_fee(service)
    deliver(service, success_payload())
    receipt = service.get_receipt(outcome.payment_id)

    found, valid = service.verify_receipt(receipt.serial)
    assert found.id == receipt.id
    assert valid is True

    receipt.body = receipt.body.replace("NGN 2,000.00", "NGN 20,000.00")
    db.commit()
    _, valid = service.verify_receipt(receipt.serial)
    assert valid is False

    assert service.verify_receipt("FUEP-2026-0000000000") == (None, False)


def test_candidate_history(service, db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(FakeGateway(name="gatewayB", reference="refB-1"))
    other = PaymentService(db, registry, settings=test_settings, listener=listener)

    initiate_application_fee(service, candidate_id="C-001")
    other.initiate("C-001", "acceptance_fee", 500000, "NGN", session="2024/2025")

    assert len(service.list_candidate_payments("C-001")) == 2
    assert [p.purpose for p in service.list_candidate_payments("C-001", session="2024/2025")] == ["acceptance_fee"]
    assert service.list_candidate_payments("C-404") == []


# -- gateway disagreements and races ------------------------------------------

def flutterwave_without_transaction():
    def handler(request):
        if request.url.path == "/v3/payments":
            return httpx.Response(200, json={"status": "success", "data": {"link": "https://checkout.test/pay"}})
        return httpx.Response(
            400, json={"status": "error", "message": "No transaction was found for this id", "data": None}
        )

    return FlutterwaveAdapter(
        secret_key="FLWSECK_TEST-x",
        base_url="https://fw.test",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_verify_expires_abandoned_checkout(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(flutterwave_without_transaction())
    service = PaymentService(db, registry, settings=test_settings, listener=listener)
    outcome = initiate_application_fee(service)
    payment = service.get_status(outcome.payment_id)
    payment.expires_at = utcnow() - timedelta(hours=1)
    db.commit()

    payment = service.verify_payment(outcome.payment_id)

    assert payment.status == "expired"
    events = db.execute(
        select(PaymentEvent.event_type).where(PaymentEvent.payment_id == outcome.payment_id)
    ).scalars().all()
    assert "verified" in events
    assert "expired" in events
    assert count(db, Receipt) == 0


def test_verify_abandoned_checkout_still_open(db, test_settings, listener):
    registry = ProviderRegistry()
    registry.register(flutterwave_without_transaction())
    service = PaymentService(db, registry, settings=test_settings, listener=listener)
    outcome = initiate_application_fee(service)

    assert service.verify_payment(outcome.payment_id).status == "initiated"


def test_success_after_expiry_alerts_operator(service, db, listener):
    outcome = initiate_application_fee(service)
    service.expire_stale_payments(now=utcnow() + timedelta(hours=25))

    with capture_logs() as logs:
        result = deliver(service, success_payload())

    assert result.duplicate is True
    assert service.get_status(outcome.payment_id).status == "expired"
    alerts = [e for e in logs if e["event"] == "webhook_conflicts_with_terminal_state"]
    assert len(alerts) == 1
    assert alerts[0]["channel"] == "operator"
    assert alerts[0]["log_level"] == "warning"
    assert alerts[0]["status"] == "expired"
    assert alerts[0]["reported_status"] == "succeeded"
    assert count(db, Receipt) == 0
    assert listener.calls == []


def test_plain_replay_does_not_alert_operator(service):
    initiate_application_fee(service)
    deliver(service, success_payload())

    with capture_logs() as logs:
        assert deliver(service, success_payload()).duplicate is True

    assert [e for e in logs if e.get("channel") == "operator"] == []
    assert any(e["event"] == "webhook_duplicate" for e in logs)


def test_losing_writer_has_no_side_effects(service, db, session_factory, registry, test_settings, listener):
    outcome = initiate_application_fee(service)
    stale = service.get_status(outcome.payment_id)
    assert stale.status == "initiated"

    winner_listener = RecordingListener()
    other_db = session_factory()
    try:
        winner = PaymentService(other_db, registry, settings=test_settings, listener=winner_listener)
        assert winner._transition(winner.get_status(outcome.payment_id), PaymentStatus.SUCCEEDED, "webhook")
    finally:
        other_db.close()

    # ``stale`` still says initiated; only the conditional UPDATE stands in the way.
    assert service._transition(stale, PaymentStatus.SUCCEEDED, "verify") is False

    assert count(db, Receipt) == 1
    changes = db.execute(
        select(func.count()).select_from(PaymentEvent).where(PaymentEvent.event_type == "status_changed")
    ).scalar_one()
    assert changes == 1
    assert winner_listener.calls == [("C-001", "application_fee")]
    assert listener.calls == []
    assert service.get_status(outcome.payment_id).status == "succeeded"


# -- statistics ---------------------------------------------------------------

def initiate_with(service, gateway, reference, purpose="application_fee", amount=APPLICATION_FEE,
                  session="2025/2026", candidate_id="C-001"):
    gateway.reference = reference
    return service.initiate(candidate_id=candidate_id, purpose=purpose, amount=amount,
                            currency="NGN", session=session)


def test_payment_statistics(service, gateway):
    initiate_with(service, gateway, "refA-1")
    initiate_with(service, gateway, "refA-2", candidate_id="C-002")
    initiate_with(service, gateway, "refA-3", purpose="acceptance_fee", amount=500000)
    initiate_with(service, gateway, "refA-4", session="2024/2025", candidate_id="C-009")
    deliver(service, success_payload(reference="refA-1"))
    deliver(service, success_payload(reference="refA-3", amount=500000, status="failed"))
    deliver(service, success_payload(reference="refA-4"))

    stats = service.payment_statistics(session="2025/2026")

    assert stats["session"] == "2025/2026"
    assert stats["currency"] == "NGN"
    assert stats["total_payments"] == 3
    assert stats["collected_amount"] == 200000
    assert stats["by_status"] == {
        "initiated": {"count": 1, "amount": 200000},
        "succeeded": {"count": 1, "amount": 200000},
        "failed": {"count": 1, "amount": 500000},
        "expired": {"count": 0, "amount": 0},
    }
    assert stats["by_purpose"] == {
        "application_fee": {"count": 2, "amount": 400000, "collected_amount": 200000},
        "acceptance_fee": {"count": 1, "amount": 500000, "collected_amount": 0},
    }

    overall = service.payment_statistics()
    assert overall["total_payments"] == 4
    assert overall["collected_amount"] == 400000


def test_payment_statistics_empty(service):
    stats = service.payment_statistics(session="2030/2031")
    assert stats["total_payments"] == 0
    assert stats["collected_amount"] == 0
    assert stats["by_purpose"] == {}
    assert all(bucket == {"count": 0, "amount": 0} for bucket in stats["by_status"].values())
