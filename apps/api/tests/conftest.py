import os
import tempfile

# Settings read at import time by auth, database and rate_limit
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-clinic-api")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["USE_SQLITE"] = "true"
os.environ.setdefault("SQLITE_FILE", os.path.join(tempfile.gettempdir(), "clinic_api_test.db"))
os.environ.pop("REDIS_URL", None)

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from auth import create_access_token, get_password_hash
from database import build_engine, create_db_and_tables, get_session
from dependencies import get_clock
from main import app
from models import User
from services.booking import AppointmentLifecycleManager
from services.payment_gateway import RazorpayGateway
from services.pricing import DEFAULT_PRICING, PricingResolver
from utils.notification_service import DELIVERED, DeliveryReport, Message
from validators.business_rules import ClinicRules

# Monday 09:00 at the clinic
FIXED_NOW = datetime(2026, 3, 2, 9, 0)
ADMIN_PHONE = "+919000000001"
GATEWAY_SECRET = "test_gateway_secret"


@dataclass
class SentMessage:
    phone: Optional[str]
    email: Optional[str]
    message: Message
    prefer: Optional[str]


class RecordingDispatcher:
    """Stands in for NotificationDispatcher; records instead of sending"""

    def __init__(self):
        self.sent: List[SentMessage] = []

    def dispatch(self, phone, email, message, prefer=None):
        self.sent.append(SentMessage(phone, email, message, prefer))
        return DeliveryReport(status=DELIVERED, channel="sms")


class FakeGateway(RazorpayGateway):
    """Real signature checks, canned order creation"""

    def __init__(self):
        super().__init__("rzp_test_key", GATEWAY_SECRET)
        self.orders = []

    def create_order(self, amount, currency, receipt, notes=None):
        order = {"id": f"order_{len(self.orders) + 1}", "amount": amount * 100, "currency": currency}
        self.orders.append(order)
        return order


@pytest.fixture
def rules():
    return ClinicRules(admin_identifier=ADMIN_PHONE)


@pytest.fixture
def engine():
    test_engine = build_engine("sqlite://", poolclass=StaticPool)
    create_db_and_tables(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as db_session:
        yield db_session


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make_user(name="Test Patient", phone=None, email=None, password="password123",
                   is_admin=False, is_verified=True, is_blocked=False):
        counter["n"] += 1
        user = User(
            name=name,
            phone=phone or f"+9198765{counter['n']:05d}",
            email=email,
            password_hash=get_password_hash(password),
            is_admin=is_admin,
            is_verified=is_verified,
            is_blocked=is_blocked,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def manager(session, rules, dispatcher):
    return AppointmentLifecycleManager(
        session,
        rules,
        PricingResolver(DEFAULT_PRICING),
        dispatcher,
        now=lambda: FIXED_NOW,
    )


@pytest.fixture
def client(engine, rules, dispatcher, gateway):
    def _get_session():
        with Session(engine) as db_session:
            yield db_session

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_clock] = lambda: (lambda: FIXED_NOW)
    app.state.rules = rules
    app.state.dispatcher = dispatcher
    app.state.payment_gateway = gateway

    yield TestClient(app)

    app.dependency_overrides.clear()
    app.state.rules = None
    app.state.dispatcher = None
    app.state.payment_gateway = None


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def auth_headers():
    def _auth_headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _auth_headers
