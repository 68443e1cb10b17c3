"""
Shared fixtures for the payments test suite.

- In-memory SQLite with every table created from the ORM metadata
- A controllable clock
- FakeGateway standing in for RazorpayClient
- A TestClient wired to the same database
"""

import os

# The in-process worker must not start while tests import the app
os.environ.setdefault("WORKER_ENABLED", "false")

import itertools
import sys
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from gully.database import Base  # noqa: E402
from gully import models  # noqa: E402,F401
from gully.models import (  # noqa: E402
    User, Package, PackageFor, Tournament, PromotionalBanner, Shop, Venue, Individual,
)
from gully.schemas.booking import ScheduledDate, TimeSlot  # noqa: E402
from gully.utils.clock import utcnow  # noqa: E402
from gully.utils.dependencies import Principal  # noqa: E402
from gully.utils.security import create_access_token  # noqa: E402


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now=None):
        self.now = now or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records calls the services make against Razorpay."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.orders = []
        self.contacts = []
        self.fund_accounts = []
        self.payouts = []
        self.next_order_id = None
        self.order_error = None
        self.payout_error = None
        self.payout_status = "processing"
        # Accept the transfer, then raise payout_error as if the response was lost
        self.accept_then_fail = False
        self.accepted_payouts = {}

    def create_order(self, amount_minor, currency, receipt, notes=None):
        if self.order_error:
            raise self.order_error
        order_id = self.next_order_id or f"order_T{next(self._ids):06d}"
        self.next_order_id = None
        order = {
            "id": order_id,
            "entity": "order",
            "amount": amount_minor,
            "amount_paid": 0,
            "amount_due": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }
        self.orders.append(order)
        return order

    def create_contact(self, name, reference_id, contact_type="vendor", email=None, contact=None):
        contact = {"id": f"cont_{next(self._ids):06d}", "name": name, "reference_id": reference_id}
        self.contacts.append(contact)
        return contact

    def create_fund_account(self, contact_id, vpa):
        account = {"id": f"fa_{next(self._ids):06d}", "contact_id": contact_id, "vpa": {"address": vpa}}
        self.fund_accounts.append(account)
        return account

    def create_payout(self, fund_account_id, amount_minor, currency, purpose, reference_id,
                      idempotency_key, mode="UPI", narration=None):
        self.payouts.append({
            "fund_account_id": fund_account_id,
            "amount": amount_minor,
            "reference_id": reference_id,
            "idempotency_key": idempotency_key,
        })
        if self.payout_error and not self.accept_then_fail:
            raise self.payout_error
        # Same idempotency key returns the transfer created the first time
        transfer = self.accepted_payouts.get(idempotency_key)
        if transfer is None:
            transfer = {
                "id": f"pout_{next(self._ids):06d}",
                "status": self.payout_status,
                "amount": amount_minor,
                "reference_id": reference_id,
            }
            self.accepted_payouts[idempotency_key] = transfer
        if self.payout_error:
            raise self.payout_error
        return dict(transfer)

    def find_payout_by_reference(self, reference_id):
        matches = [t for t in self.accepted_payouts.values() if t["reference_id"] == reference_id]
        return dict(matches[-1]) if matches else None

    def fetch_payout(self, payout_id):
        return {"id": payout_id, "status": self.payout_status}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


class Factory:
    """Persists the rows orders and bookings point at."""

    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, role="player", email="player@example.com", fcm_token="fcm-token-1", **kwargs):
        return self._save(User(
            full_name=kwargs.pop("full_name", "Test Player"),
            email=email,
            fcm_token=fcm_token,
            role=role,
            **kwargs
        ))

    def package(self, package_for=PackageFor.SHOP, duration_days=30, price=Decimal("999.00"), **kwargs):
        return self._save(Package(
            name=kwargs.pop("name", f"{package_for.value} plan"),
            package_for=package_for.value,
            duration_days=duration_days,
            price=price,
            **kwargs
        ))

    def tournament(self, **kwargs):
        return self._save(Tournament(name=kwargs.pop("name", "Sunday League"), **kwargs))

    def banner(self, **kwargs):
        return self._save(PromotionalBanner(title=kwargs.pop("title", "Summer Cup"), **kwargs))

    def shop(self, **kwargs):
        return self._save(Shop(shop_name=kwargs.pop("shop_name", "Bat & Ball"), **kwargs))

    def venue(self, sports=None, playable_areas=2, upi_id="turf@upi", **kwargs):
        fields = {
            "name": "Green Turf",
            "is_active": True,
            "slot_version": 0,
            "total_bookings": 0,
            "total_amount": Decimal("0"),
            "amount_need_to_pay": Decimal("0"),
            "total_amount_paid": Decimal("0"),
        }
        fields.update(kwargs)
        return self._save(Venue(
            sports=sports or ["cricket", "football"],
            playable_areas=playable_areas,
            upi_id=upi_id,
            **fields
        ))

    def individual(self, upi_id="coach@upi", **kwargs):
        return self._save(Individual(full_name=kwargs.pop("full_name", "Coach Ravi"), upi_id=upi_id, **kwargs))


@pytest.fixture
def factory(db):
    return Factory(db)


def slots(on_date, *ranges, area=1):
    """[ScheduledDate] for ("09:00", "10:00") style ranges on one date."""
    return [ScheduledDate(
        date=on_date,
        time_slots=[TimeSlot(start_time=start, end_time=end, playable_area=area) for start, end in ranges],
    )]


def principal_for(user, role="player"):
    return Principal(user_id=user.id, role=role, email=user.email)


def auth_headers(user_id, role="player"):
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def play_date():
    return date.today() + timedelta(days=3)


@pytest.fixture
def client(session_factory, gateway):
    from fastapi.testclient import TestClient

    from gully.database import get_db
    from gully.main import app
    from gully.services.razorpay_client import get_razorpay_client
    from gully.utils.rate_limiter import limiter

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_razorpay_client] = lambda: gateway
    limiter.enabled = False

    # No context manager: the lifespan (create_tables, worker) is not needed here
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client

    app.dependency_overrides.clear()
    limiter.enabled = True
