import os
from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

# Must be set before consultbook.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("IDENTITY_TOKEN_SECRET", "test-identity-secret")
os.environ.setdefault("DODO_PAYMENTS_WEBHOOK_SECRET", "whsec_dGVzdC13ZWJob29rLXNlY3JldA==")
os.environ.setdefault("DODO_ADHOC_PRODUCT_ID", "pdt_adhoc_test")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ.pop("NOTIFICATION_SERVICE_URL", None)

from consultbook.auth import Caller, issue_caller_token  # noqa: E402
from consultbook.database import Base, SessionLocal, engine  # noqa: E402
from consultbook.domain.payments.gateway import DodoPaymentsGateway, get_payment_gateway  # noqa: E402
from consultbook.domain.plans.schemas import PlanCreate  # noqa: E402
from consultbook.domain.plans.service import PlanService  # noqa: E402
from consultbook.domain.providers.schemas import WEEKDAYS  # noqa: E402
from consultbook.main import app  # noqa: E402
from consultbook.models import ProviderSchedule  # noqa: E402

CLIENT = Caller(id="client-1", role="client")
OTHER_CLIENT = Caller(id="client-2", role="client")
PROVIDER = Caller(id="provider-1", role="provider")
ADMIN = Caller(id="admin-1", role="admin")

# Fixed clock for service-level tests
NOW = datetime(2025, 1, 5, 9, 0)
SESSION_DAY = date(2025, 1, 10)


class _FakeCheckoutSessions:
    def __init__(self, owner):
        self.owner = owner

    async def create(self, **kwargs):
        self.owner.checkouts.append(kwargs)
        n = len(self.owner.checkouts)
        return {"session_id": f"cks_{n}", "checkout_url": f"https://checkout.test/cks_{n}"}


class _FakePayments:
    def __init__(self, owner):
        self.owner = owner

    async def retrieve(self, payment_id):
        if payment_id in self.owner.failures:
            raise self.owner.failures[payment_id]
        outcome = self.owner.outcomes[payment_id]
        return {"payment_id": payment_id, **outcome}


class FakeDodoClient:
    """Stands in for AsyncDodoPayments: records checkouts, replays scripted payment outcomes"""

    def __init__(self):
        self.checkouts = []
        self.outcomes = {}
        self.failures = {}
        self.checkout_sessions = _FakeCheckoutSessions(self)
        self.payments = _FakePayments(self)

    def settle(self, payment_id: str, reference: str, status: str = "succeeded"):
        self.outcomes[payment_id] = {"status": status, "metadata": {"payment_ref": reference}}


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


OPEN_HOURS = [{"start_time": "08:00", "end_time": "20:00"}]


@pytest.fixture(autouse=True)
def provider_hours(_schema):
    """PROVIDER takes free direct bookings 08:00-20:00 every day"""
    session = SessionLocal()
    try:
        session.add(
            ProviderSchedule(
                provider_id=PROVIDER.id,
                hourly_rate=0.0,
                weekly_hours={day: list(OPEN_HOURS) for day in WEEKDAYS},
            )
        )
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def dodo():
    return FakeDodoClient()


@pytest.fixture()
def gateway(dodo):
    return DodoPaymentsGateway(client=dodo, timeout=1)


@pytest.fixture()
def api(gateway):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(caller: Caller) -> dict:
    return {"Authorization": f"Bearer {issue_caller_token(caller.id, caller.role)}"}


@pytest.fixture()
def single_plan(db):
    return PlanService(db).create_plan(
        PlanCreate(name="Intro call", kind="single", duration_minutes=30, price=500.0), PROVIDER
    )


@pytest.fixture()
def monthly_plan(db):
    return PlanService(db).create_plan(
        PlanCreate(
            name="Monthly coaching",
            kind="monthly",
            duration_minutes=30,
            sessions_per_month=8,
            monthly_price=4000.0,
        ),
        PROVIDER,
    )


@pytest.fixture()
def group_plan(db):
    return PlanService(db).create_plan(
        PlanCreate(
            name="Group therapy",
            kind="monthly",
            session_format="one_to_many",
            duration_minutes=60,
            sessions_per_month=4,
            monthly_price=2000.0,
            group_session_date=SESSION_DAY,
            group_start_time="18:00",
            group_end_time="19:00",
        ),
        PROVIDER,
    )
