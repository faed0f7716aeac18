import pytest
import os
import uuid
from types import SimpleNamespace

import requests
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import payflow.models  # noqa: F401
from payflow.core.config import settings
from payflow.core.deps import get_db
from payflow.db.base import Base
from payflow.main import app
from payflow.models.payment import PaymentGatewayConfig
from payflow.services import gateway_registry
from payflow.services.credential_store import encrypt_credentials, encrypt_secret
from payflow.services.gateways.sepay_provider import SePayGatewayProvider
from payflow.services.gateways.stripe_provider import StripeGatewayProvider


def _seed_gateway(
    session_local,
    *,
    provider: str,
    tenant_id: str,
    credentials: dict[str, str] | None = None,
    webhook_secret: str | None = None,
    supported_methods: list[str] | None = None,
    supported_currencies: list[str] | None = None,
    min_amount=None,
    max_amount=None,
    sort_order: int = 0,
    is_active: bool = True,
) -> str:
    config_id = str(uuid.uuid4())
    with session_local() as db:
        db.add(
            PaymentGatewayConfig(
                id=config_id,
                tenant_id=tenant_id,
                provider=provider,
                display_name=provider.title(),
                environment="sandbox",
                is_active=is_active,
                sort_order=sort_order,
                encrypted_credentials=encrypt_credentials(credentials) if credentials else None,
                webhook_secret=encrypt_secret(webhook_secret) if webhook_secret else None,
                supported_methods=supported_methods or [],
                supported_currencies=supported_currencies or [],
                min_amount=min_amount,
                max_amount=max_amount,
            )
        )
        db.commit()
    return config_id


class FakeStripePaymentIntents:
    def __init__(self):
        self.created: list[dict] = []
        self.intents: dict[str, SimpleNamespace] = {}
        self.create_error: Exception | None = None
        self.initial_status = "requires_payment_method"

    def create(self, params=None, options=None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"params": params, "options": options})
        intent_id = f"pi_test_{len(self.created)}"
        intent = SimpleNamespace(
            id=intent_id,
            status=self.initial_status,
            client_secret=f"{intent_id}_secret_abc",
            amount=params["amount"],
            currency=params["currency"],
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve(self, intent_id, params=None, options=None):
        return self.intents[intent_id]


class FakeStripeRefunds:
    def __init__(self):
        self.created: list[dict] = []
        self.status = "succeeded"

    def create(self, params=None, options=None):
        self.created.append(params)
        return SimpleNamespace(id=f"re_test_{len(self.created)}", status=self.status)


class FakeStripeBalance:
    def __init__(self):
        self.error: Exception | None = None

    def retrieve(self, params=None, options=None):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(available=[])


class FakeStripeClient:
    """Stands in for ``stripe.StripeClient`` with the ``v1`` services the provider calls."""

    def __init__(self):
        self.api_keys: list[str] = []
        self.payment_intents = FakeStripePaymentIntents()
        self.refunds = FakeStripeRefunds()
        self.balance = FakeStripeBalance()
        self.v1 = SimpleNamespace(
            payment_intents=self.payment_intents,
            refunds=self.refunds,
            balance=self.balance,
        )

    def __call__(self, api_key):
        self.api_keys.append(api_key)
        return self


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeSePayHttp:
    """Replays canned SePay API bodies keyed by path suffix."""

    def __init__(self):
        self.responses: dict[str, dict] = {}
        self.calls: list[dict] = []
        self.error: Exception | None = None

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        for suffix, payload in self.responses.items():
            if url.endswith(suffix):
                return FakeResponse(payload)
        return FakeResponse({"status": 404}, status_code=404)


@pytest.fixture()
def test_context():
    original_secret = settings.secret_key
    settings.secret_key = "test-secret-key"

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    settings.secret_key = original_secret


@pytest.fixture()
def seed_gateway(test_context):
    _, session_local = test_context

    def _seed(provider: str, **kwargs) -> str:
        kwargs.setdefault("tenant_id", "tenant-alpha")
        return _seed_gateway(session_local, provider=provider, **kwargs)

    return _seed


@pytest.fixture()
def fake_stripe(monkeypatch):
    client = FakeStripeClient()
    monkeypatch.setitem(
        gateway_registry._PROVIDER_FACTORIES,
        "stripe",
        lambda: StripeGatewayProvider(client_factory=client),
    )
    return client


@pytest.fixture()
def fake_sepay_http(monkeypatch):
    http = FakeSePayHttp()
    monkeypatch.setitem(
        gateway_registry._PROVIDER_FACTORIES,
        "sepay",
        lambda: SePayGatewayProvider(http=http),
    )
    return http
