"""
Pytest fixtures for gemach backend tests.

Provides the test database, locations, staff accounts, auth headers and
in-process fakes for the Stripe and PayPal providers.
"""

import json

import pytest

from gemach import create_app
from gemach.errors import InvalidArgumentError, ProviderError
from gemach.extensions import db
from gemach.models import Location, User
from gemach.services import providers
from gemach.services.auth_service import hash_secret
from gemach.services.authorization import ROLE_ADMIN, ROLE_OPERATOR, Actor
from gemach.services.inventory_service import set_absolute
from gemach.services.providers import (
    CardCharge,
    CardSetup,
    PaymentProvider,
    ProviderIntent,
    ProviderRefund,
    ProviderStatus,
)
from gemach.services.session_service import actor_for_user


PASSWORD = "Password123"
OPERATOR_PIN = "4321"
STRIPE_SIGNATURE = "t=1,v1=valid"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STRIPE_PUBLISHABLE_KEY': 'pk_test_gemach',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# PROVIDER FAKES
# =============================================================================


class FakeStripe(PaymentProvider):
    """Records every call; outcomes are set per test through attributes."""
    name = "stripe"

    def __init__(self):
        self.calls = []
        self.counter = 0
        self.statuses = {}
        self.charge_status = "succeeded"
        self.charge_error = None
        self.refund_error = None
        self.release_error = None

    def _next(self, prefix):
        self.counter += 1
        return f"{prefix}_test_{self.counter}"

    def create_payment(self, *, amount_cents, currency, metadata):
        self.calls.append(("create_payment", amount_cents, metadata))
        intent_id = self._next("pi")
        return ProviderIntent(
            external_id=intent_id,
            status="pending",
            client_secret=f"{intent_id}_secret",
            publishable_key="pk_test_gemach",
            payload={"stripe_payment_intent_id": intent_id},
        )

    def refund(self, *, external_payment_id, amount_cents, currency, idempotency_key, metadata):
        self.calls.append(("refund", external_payment_id, amount_cents, idempotency_key))
        if self.refund_error:
            raise self.refund_error
        refund_id = self._next("re")
        return ProviderRefund(external_id=refund_id, status="succeeded", payload={"refund_id": refund_id})

    def fetch_status(self, external_payment_id):
        self.calls.append(("fetch_status", external_payment_id))
        return self.statuses.get(external_payment_id, ProviderStatus(status="processing"))

    def setup_card(self, *, name, email, phone, metadata):
        self.calls.append(("setup_card", name, metadata))
        return CardSetup(
            customer_id=self._next("cus"),
            setup_intent_id=self._next("seti"),
            client_secret="seti_secret",
            publishable_key="pk_test_gemach",
        )

    def set_default_payment_method(self, customer_id, payment_method_id):
        self.calls.append(("set_default_payment_method", customer_id, payment_method_id))

    def charge_saved_card(self, *, customer_id, payment_method_id, amount_cents, currency, idempotency_key, metadata):
        self.calls.append(("charge_saved_card", customer_id, payment_method_id, amount_cents, idempotency_key))
        if self.charge_error:
            raise self.charge_error
        return CardCharge(
            external_id=self._next("pi_charge"),
            status=self.charge_status,
            client_secret="pi_charge_secret" if self.charge_status == "requires_action" else None,
            payload={"status": self.charge_status},
        )

    def release_hold(self, setup_intent_id):
        self.calls.append(("release_hold", setup_intent_id))
        if self.release_error:
            raise self.release_error

    def construct_event(self, raw_body, signature):
        if signature != STRIPE_SIGNATURE:
            raise InvalidArgumentError("Invalid webhook signature")
        return json.loads(raw_body)

    def decline_charges(self, code="card_declined"):
        self.charge_error = ProviderError("stripe", "Your card was declined.", provider_code=code)

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


class FakePayPal(PaymentProvider):
    name = "paypal"

    def __init__(self):
        self.calls = []
        self.counter = 0

    def create_payment(self, *, amount_cents, currency, metadata):
        self.calls.append(("create_payment", amount_cents, metadata))
        self.counter += 1
        order_id = f"ORDER-{self.counter}"
        return ProviderIntent(
            external_id=order_id,
            status="pending",
            approval_url=f"https://paypal.test/approve/{order_id}",
            payload={"order_id": order_id},
        )

    def refund(self, *, external_payment_id, amount_cents, currency, idempotency_key, metadata):
        self.calls.append(("refund", external_payment_id, amount_cents, metadata.get("capture_id")))
        return ProviderRefund(external_id="PP-REFUND-1", status="completed")

    def verify_webhook(self, raw_body, headers):
        if headers.get("PAYPAL-TRANSMISSION-SIG") != "valid":
            raise InvalidArgumentError("Invalid webhook signature")
        return json.loads(raw_body)


@pytest.fixture(autouse=True)
def fake_providers(monkeypatch):
    """Swap the card and PayPal adapters for fakes; cash stays real."""
    stripe = FakeStripe()
    paypal = FakePayPal()
    monkeypatch.setitem(providers.PROVIDER_FACTORIES, "stripe", lambda config: stripe)
    monkeypatch.setitem(providers.PROVIDER_FACTORIES, "paypal", lambda config: paypal)

    class Fakes:
        pass

    fakes = Fakes()
    fakes.stripe = stripe
    fakes.paypal = paypal
    return fakes


# =============================================================================
# LOCATIONS AND STAFF
# =============================================================================


@pytest.fixture(scope='function')
def location(db_session):
    """Lakewood: $20 deposit, cash/card/PayPal, 3% fee, operator PIN."""
    loc = Location(
        name="Lakewood Gemach",
        location_code="LKW",
        deposit_amount=20,
        payment_methods=["cash", "stripe", "paypal"],
        processing_fee_bps=300,
        operator_pin_hash=hash_secret(OPERATOR_PIN, rounds=4),
        is_active=True,
    )
    db_session.add(loc)
    db_session.commit()
    return loc


@pytest.fixture(scope='function')
def other_location(db_session):
    """A second, cash-only location."""
    loc = Location(
        name="Monsey Gemach",
        location_code="MNS",
        deposit_amount=20,
        payment_methods=["cash"],
        processing_fee_bps=300,
        is_active=True,
    )
    db_session.add(loc)
    db_session.commit()
    return loc


def _user(db_session, username, role, location_id=None):
    user = User(
        username=username,
        email=f"{username}@gemach.test",
        # Low cost factor keeps the suite fast
        password_hash=hash_secret(PASSWORD, rounds=4),
        role=role,
        location_id=location_id,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _user(db_session, "admin", ROLE_ADMIN)


@pytest.fixture(scope='function')
def operator_user(db_session, location):
    return _user(db_session, "operator", ROLE_OPERATOR, location.id)


@pytest.fixture(scope='function')
def other_operator(db_session, other_location):
    return _user(db_session, "other_op", ROLE_OPERATOR, other_location.id)


@pytest.fixture(scope='function')
def admin_actor(admin_user):
    return actor_for_user(admin_user)


@pytest.fixture(scope='function')
def operator_actor(operator_user):
    return actor_for_user(operator_user)


@pytest.fixture(scope='function')
def other_actor(other_operator):
    return actor_for_user(other_operator)


@pytest.fixture(scope='function')
def borrower_actor():
    return Actor.borrower()


@pytest.fixture(scope='function')
def stocked(location):
    """Three blue and one red at Lakewood."""
    set_absolute(location.id, "blue", 3)
    set_absolute(location.id, "red", 1)
    return location


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, "admin", PASSWORD))


@pytest.fixture(scope='function')
def operator_headers(client, operator_user):
    return auth_headers(get_auth_token(client, "operator", PASSWORD))


@pytest.fixture(scope='function')
def other_headers(client, other_operator):
    return auth_headers(get_auth_token(client, "other_op", PASSWORD))


def get_auth_token(client, username: str, password: str) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
