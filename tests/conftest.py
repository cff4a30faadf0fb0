import json
import os
from datetime import datetime, timezone
from decimal import Decimal

# checkout.database refuses to import without a DATABASE_URL
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_checkout.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from checkout.database import Base, make_engine
from checkout.domain import (
    CheckoutReference, OrderStatus, ProviderCapture, ProviderOrder, SubjectType, WebhookEvent,
)
from checkout.effects import SqlEffectApplier
from checkout.exceptions import OrderNotFound
from checkout.ledger import IdempotencyLedger
from checkout.models import Coupon, Course, Plan
from checkout.orchestrator import CheckoutOrchestrator
from checkout.pricing import PricingResolver
from checkout.reconciliation import ReconciliationLog
from checkout.settings import Settings


class FakeProvider:
    """In-memory provider: orders are whatever the test registers with `set_capture`."""

    def __init__(self, name="fake", client_token=False):
        self.name = name
        self.client_token = client_token
        self.created = []
        self.capture_calls = []
        self.captures = {}
        self.before_capture = None

    def set_capture(self, order_id, result):
        self.captures[order_id] = result

    def create_order(self, intent):
        self.created.append(intent)
        order_id = f"{self.name}-order-{len(self.created)}"
        if self.client_token:
            return ProviderOrder(provider_order_id=order_id, provider=self.name, client_token=f"secret-{order_id}")
        return ProviderOrder(provider_order_id=order_id, provider=self.name, redirect_url=f"https://pay.example/{order_id}")

    def capture_order(self, provider_order_id):
        self.capture_calls.append(provider_order_id)
        if self.before_capture:
            self.before_capture()
        result = self.captures.get(provider_order_id)
        if result is None:
            raise OrderNotFound(f"{self.name} order {provider_order_id} not found")
        if isinstance(result, Exception):
            raise result
        return result

    def parse_webhook(self, request):
        data = json.loads(request.body or b"{}")
        if not data.get("order_id"):
            return None
        return WebhookEvent(self.name, data["order_id"], data.get("type", ""), data.get("event_id"))

    def order_id_from_redirect(self, query):
        return query.get("order_id")


def make_capture(order_id, status=OrderStatus.APPROVED, user_id="user-1",
                 subject_type=SubjectType.COURSE, subject_id="course-123",
                 coupon_code=None, amount="100.00", provider="fake"):
    return ProviderCapture(
        provider_order_id=order_id,
        status=status,
        amount=Decimal(amount),
        currency="ARS",
        reference=CheckoutReference(user_id, subject_type, subject_id, coupon_code),
        provider=provider,
    )


@pytest.fixture
def capture():
    return make_capture


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def catalog(TestingSessionLocal):
    db = TestingSessionLocal()
    db.add_all([
        Course(id="course-123", slug="python-basics", title="Python Basics",
               price=Decimal("100.00"), currency="ARS", access_months=12),
        Course(id="course-odd", slug="odd-price", title="Odd Price",
               price=Decimal("99.99"), currency="ARS", access_months=6),
        Course(id="course-old", slug="retired", title="Retired",
               price=Decimal("10.00"), currency="ARS", is_active=False),
        Plan(id="plan-pro", slug="pro", name="Pro", price=Decimal("20.00"),
             currency="USD", billing_interval="month"),
        Plan(id="plan-pro-annual", slug="pro-annual", name="Pro Annual", price=Decimal("200.00"),
             currency="USD", billing_interval="year"),
        Coupon(code="FREE100", discount_percent=100),
        Coupon(code="HALF", discount_percent=50),
        Coupon(code="THIRD", discount_percent=33),
        Coupon(code="EXPIRED", discount_percent=20, expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc)),
        Coupon(code="USEDUP", discount_percent=10, max_redemptions=1, redemptions=1),
        Coupon(code="INACTIVE", discount_percent=10, is_active=False),
        Coupon(code="PLANONLY", discount_percent=10, subject_type="subscription"),
    ])
    db.commit()
    db.close()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(TestingSessionLocal, catalog, fake_provider):
    return CheckoutOrchestrator(
        pricing=PricingResolver(TestingSessionLocal),
        providers={"fake": fake_provider},
        ledger=IdempotencyLedger(TestingSessionLocal),
        effects=SqlEffectApplier(TestingSessionLocal),
        reconciliations=ReconciliationLog(TestingSessionLocal),
    )


@pytest.fixture
def settings():
    return Settings(
        public_base_url="http://api.test",
        frontend_base_url="http://app.test",
        http_timeout=5.0,
        mp_access_token="TEST-mp-token",
        paypal_client_id="pp-client",
        paypal_client_secret="pp-secret",
        paypal_base_url="https://api-m.sandbox.paypal.com",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
    )


def make_token(user_id="user-1", **claims):
    return jwt.encode({"sub": user_id, **claims}, os.environ["JWT_SECRET"], algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token('ops-1', role='admin')}"}


@pytest.fixture
def client(orchestrator, settings):
    from checkout.main import app
    from checkout.routes import get_orchestrator, get_settings

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_settings] = lambda: settings
    # no context manager: the lifespan would build providers from the real environment
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    return lambda user_id: {"Authorization": f"Bearer {make_token(user_id)}"}
