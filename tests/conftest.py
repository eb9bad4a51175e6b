import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta, timezone

import pytest
import stripe

from tuition_billing import create_app
from tuition_billing.extensions import db
from tuition_billing.models import (
    BillingAccount,
    BillingAssignment,
    ContactPoint,
    CONTACT_EMAIL,
    CONTACT_PHONE,
    Enrollment,
    Person,
    ProgramProfile,
    Subscription,
)

ACCOUNT_KEYS = {"MAHAD": "sk_test_mahad", "DUGSI": "sk_test_dugsi"}


def ts(days_from_now=0):
    return int((datetime.now(timezone.utc) + timedelta(days=days_from_now)).timestamp())


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin_headers(app):
    return {"Authorization": f"Bearer {app.config['ADMIN_API_TOKEN']}"}


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


# ----- Fake Stripe -----

class FakeStripe:
    """Per-account in-memory Stripe state shared by every fake client."""

    def __init__(self):
        self.subscriptions = {key: {} for key in ACCOUNT_KEYS.values()}
        self.checkout_sessions = {}
        self.customers = {}
        self.canceled = []
        self.retrieve_calls = []
        self.list_params = []

    def add(self, account, sub):
        self.subscriptions[ACCOUNT_KEYS[account]][sub["id"]] = sub
        return sub


def _missing(what, obj_id):
    return stripe.InvalidRequestError(f"No such {what}: '{obj_id}'", "id", code="resource_missing")


class _FakeSubscriptions:
    def __init__(self, state, key):
        self._state = state
        self._key = key

    def _store(self):
        return self._state.subscriptions.setdefault(self._key, {})

    def retrieve(self, sub_id):
        self._state.retrieve_calls.append(sub_id)
        if sub_id not in self._store():
            raise _missing("subscription", sub_id)
        return self._store()[sub_id]

    def list(self, params=None):
        params = params or {}
        self._state.list_params.append(params)
        items = list(self._store().values())
        after = params.get("starting_after")
        if after:
            ids = [s["id"] for s in items]
            items = items[ids.index(after) + 1:]
        limit = params.get("limit", 100)
        return {"object": "list", "data": items[:limit], "has_more": len(items) > limit}

    def cancel(self, sub_id):
        sub = self.retrieve(sub_id)
        sub["status"] = "canceled"
        self._state.canceled.append(sub_id)
        return sub


class _FakeCustomers:
    def __init__(self, state):
        self._state = state

    def retrieve(self, customer_id):
        if customer_id not in self._state.customers:
            raise _missing("customer", customer_id)
        return self._state.customers[customer_id]


class _FakeSessions:
    def __init__(self, state):
        self._state = state

    def retrieve(self, session_id):
        if session_id not in self._state.checkout_sessions:
            raise _missing("checkout.session", session_id)
        return self._state.checkout_sessions[session_id]


class _FakeCheckout:
    def __init__(self, state):
        self.sessions = _FakeSessions(state)


@pytest.fixture()
def fake_stripe(monkeypatch):
    state = FakeStripe()

    class _FakeClient:
        def __init__(self, key):
            self.subscriptions = _FakeSubscriptions(state, key)
            self.customers = _FakeCustomers(state)
            self.checkout = _FakeCheckout(state)

    monkeypatch.setattr("tuition_billing.services.gateway.StripeClient", _FakeClient)
    return state


@pytest.fixture()
def stripe_sub():
    """Builds a Stripe-shaped subscription dict (customer expanded when email/name given)."""
    def _make(sub_id, customer="cus_1", status="active", amount=15000, email=None, name=None,
              period_days=30, metadata=None, on_item=False):
        cust = {"id": customer, "email": email, "name": name} if (email or name) else customer
        start, end = ts(0), ts(period_days)
        item = {"id": f"si_{sub_id}", "price": {"unit_amount": amount, "currency": "usd", "recurring": {"interval": "month"}}}
        sub = {
            "id": sub_id,
            "object": "subscription",
            "status": status,
            "customer": cust,
            "created": ts(-60),
            "currency": "usd",
            "metadata": metadata or {},
            "items": {"data": [item]},
        }
        if on_item:
            item.update(current_period_start=start, current_period_end=end)
        else:
            sub.update(current_period_start=start, current_period_end=end)
        return sub
    return _make


# ----- Seeding -----

class Seeder:
    """Small helpers that insert rows and return them (call inside an app context)."""

    def person(self, name="Test Person", email=None, phone=None):
        p = Person(name=name)
        db.session.add(p)
        db.session.flush()
        if email:
            db.session.add(ContactPoint(person_id=p.id, type=CONTACT_EMAIL, value=email.lower(), is_primary=True))
        if phone:
            db.session.add(ContactPoint(person_id=p.id, type=CONTACT_PHONE, value=phone))
        db.session.commit()
        return p

    def profile(self, person, program="MAHAD_PROGRAM", guardian_email=None, family=None, **fields):
        pp = ProgramProfile(
            person_id=person.id,
            program=program,
            guardian_email=guardian_email,
            family_reference_id=family,
            **fields,
        )
        db.session.add(pp)
        db.session.commit()
        return pp

    def enrollment(self, profile, status="ENROLLED", **fields):
        e = Enrollment(program_profile_id=profile.id, status=status, **fields)
        db.session.add(e)
        db.session.commit()
        return e

    def account(self, person=None, account_type="MAHAD", **fields):
        a = BillingAccount(person_id=person.id if person else None, account_type=account_type, **fields)
        db.session.add(a)
        db.session.commit()
        return a

    def subscription(self, account, stripe_id="sub_local", status="active", amount=15000, account_type="MAHAD", **fields):
        s = Subscription(
            billing_account_id=account.id,
            stripe_account_type=account_type,
            stripe_subscription_id=stripe_id,
            stripe_customer_id=fields.pop("stripe_customer_id", "cus_1"),
            status=status,
            amount=amount,
            **fields,
        )
        db.session.add(s)
        db.session.commit()
        return s

    def assignment(self, subscription, profile, amount=15000, is_active=True, **fields):
        a = BillingAssignment(
            subscription_id=subscription.id,
            program_profile_id=profile.id,
            amount=amount,
            is_active=is_active,
            **fields,
        )
        db.session.add(a)
        db.session.commit()
        return a


@pytest.fixture()
def seed():
    return Seeder()
