import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fuep_payments import models  # noqa: F401
from fuep_payments.config import Settings
from fuep_payments.db import Base
from fuep_payments.errors import ProviderUnavailable
from fuep_payments.main import create_app
from fuep_payments.psp.adapter import InitiationResult
from fuep_payments.psp.mock_adapter import MockAdapter
from fuep_payments.psp.registry import ProviderRegistry
from fuep_payments.services.payment_service import PaymentService
from fuep_payments.services.settlement import SettlementListener
from fuep_payments.services.webhook_verifier import WebhookVerifier

GATEWAY_SECRET = "gatewayA-webhook-secret"
APPLICATION_FEE = 200000   # ₦2,000.00


class FakeGateway(MockAdapter):
    """Scriptable gateway: fixed reference, optional failure, canned status query."""

    signature_header = "x-gateway-signature"
    timestamp_header = "x-gateway-timestamp"
    supports_verification = True

    def __init__(self, name="gatewayA", reference="refA-123", enabled=True,
                 webhook_secret=GATEWAY_SECRET, fail_with=None):
        super().__init__(webhook_secret=webhook_secret)
        self.provider_name = name
        self.reference = reference
        self._enabled = enabled
        self.fail_with = fail_with
        self.status_result = None
        self.initiate_calls = []
        self.query_calls = []

    @property
    def enabled(self):
        return self._enabled

    def initiate(self, candidate_id, purpose, amount, currency, contact=None):
        self.initiate_calls.append((candidate_id, purpose, amount, currency))
        if self.fail_with is not None:
            raise self.fail_with
        return InitiationResult(
            provider_reference=self.reference,
            payment_url=f"https://{self.provider_name}.example/pay/{self.reference}",
        )

    def query_status(self, provider_reference):
        self.query_calls.append(provider_reference)
        if self.status_result is None:
            raise ProviderUnavailable("no canned status", provider=self.provider_name)
        return self.status_result


class RecordingListener(SettlementListener):
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def on_payment_settled(self, candidate_id, purpose):
        self.calls.append((candidate_id, purpose))
        if self.fail:
            raise RuntimeError("candidate service down")


def signed_webhook(payload, secret=GATEWAY_SECRET, timestamp=None):
    """Body bytes plus the signature/timestamp pair a gateway would send."""
    body = json.dumps(payload).encode()
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return body, WebhookVerifier().sign(body, ts, secret), ts


def success_payload(reference="refA-123", amount=APPLICATION_FEE, currency="NGN", status="successful", **extra):
    payload = {"reference": reference, "status": status, "amount": amount, "currency": currency}
    payload.update(extra)
    return payload


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        DATABASE_URL="sqlite://",
        PAYMENT_PROVIDERS="",
        ALLOW_MOCK_PROVIDER=False,
        PURPOSE_AMOUNTS={"application_fee": APPLICATION_FEE},
        RECEIPT_SIGNING_KEY="test-receipt-key",
        ADMIN_API_KEY=None,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def registry(gateway):
    reg = ProviderRegistry()
    reg.register(gateway)
    return reg


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def service(db, registry, test_settings, listener):
    return PaymentService(db, registry, settings=test_settings, listener=listener)


@pytest.fixture
def make_client(session_factory, registry, listener, test_settings):
    def _make(**overrides):
        app_settings = test_settings.model_copy(update=overrides) if overrides else test_settings
        app = create_app(
            settings=app_settings,
            registry=registry,
            listener=listener,
            session_factory=session_factory,
        )
        return TestClient(app)
    return _make


@pytest.fixture
def client(make_client):
    return make_client()
