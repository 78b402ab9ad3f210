"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Generator, Optional
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Keep the application engine off Postgres during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from settlement.main import app
from settlement.db.session import get_db
from settlement.models import Base
from settlement.models.group import Group
from settlement.models.order import Order
from settlement.models.post import Post
from settlement.models.user import User
from settlement.services.email_service import EmailSender, get_email_sender
from settlement.services.stripe_service import PaymentGateway, get_payment_gateway

WEBHOOK_SECRET = "whsec_test_secret"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_id: str,
    event_type: str,
    obj: Dict[str, Any],
    livemode: bool = False,
    previous_attributes: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "created": int(time.time()),
        "data": data,
    }


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def gateway() -> PaymentGateway:
    """Real signature verification, mocked Stripe API calls"""
    gw = PaymentGateway("sk_test_123", WEBHOOK_SECRET)
    gw.cancel_subscription = Mock(return_value=Mock(id="sub_test123", status="canceled"))
    gw.retrieve_card = Mock(return_value={"brand": "visa", "last4": "4242"})
    return gw


@pytest.fixture(scope="function")
def mailer() -> Mock:
    """Email transport that accepts every message"""
    sender = Mock(spec=EmailSender)
    sender.send.return_value = True
    return sender


@pytest.fixture(scope="function")
def client(db_session: Session, gateway: PaymentGateway, mailer: Mock) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and faked Stripe/Resend"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_email_sender] = lambda: mailer

    try:
        # Skip real database and OpenTelemetry setup in tests
        with patch('settlement.main.initialize_otel', return_value=False):
            with patch('settlement.main.init_db'):
                with patch('settlement.main.instrument_sqlalchemy'):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def post_event(client: TestClient):
    """Sign and deliver an event to the webhook endpoint"""
    def _post(event: Dict[str, Any], secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event).encode("utf-8")
        return client.post(
            "/api/stripe/webhook",
            content=payload,
            headers={"stripe-signature": sign_payload(payload, secret), "content-type": "application/json"},
        )
    return _post


@pytest.fixture(scope="function")
def payer(db_session: Session) -> User:
    """Paying member using Resend test email"""
    user = User(
        id="uid_payer",
        email="delivered@resend.dev",
        display_name="Hana",
        stripe_customer_id="cus_test123",
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def creator(db_session: Session) -> User:
    """Post author who receives Special Cheers"""
    user = User(id="uid_creator", email="delivered+creator@resend.dev", display_name="Creator")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def post(db_session: Session, creator: User) -> Post:
    post = Post(id="post_9", user_id=creator.id, title="Live at Budokan", super_thanks=0, super_thanks_count=0)
    db_session.add(post)
    db_session.commit()
    db_session.refresh(post)
    return post


@pytest.fixture(scope="function")
def group(db_session: Session) -> Group:
    group = Group(id="grp_1", name="Aurora Fan Club")
    db_session.add(group)
    db_session.commit()
    return group


@pytest.fixture(scope="function")
def product_order(db_session: Session, payer: User) -> Order:
    """Pending order with one regular product"""
    order = Order(
        id="pi_1",
        user_id=payer.id,
        status="pending",
        items=[{"id": "tee", "name": "Tour T-shirt", "price": 3000, "quantity": 1}],
        total=3300,
        shipping_fee=0,
        shipping_info={"name": "Hana", "prefecture": "Tokyo", "city": "Shibuya", "line1": "1-2-3"},
    )
    db_session.add(order)
    db_session.commit()
    return order


@pytest.fixture(scope="function")
def cheer_order(db_session: Session, payer: User, post: Post) -> Order:
    """Pending order carrying a single Special Cheer item"""
    order = Order(
        id="pi_2",
        user_id=payer.id,
        status="pending",
        items=[{
            "id": "cheer",
            "name": "Special Cheer",
            "itemType": "special_cheer",
            "postId": post.id,
            "price": 500,
            "quantity": 1,
            "metadata": {"message": "Loved the show!"},
        }],
        total=500,
    )
    db_session.add(order)
    db_session.commit()
    return order


def payment_intent(pi_id: str, uid: Optional[str] = None, **extra) -> Dict[str, Any]:
    obj = {"id": pi_id, "object": "payment_intent", "metadata": {"uid": uid} if uid else {}}
    obj.update(extra)
    return obj


def subscription_object(
    sub_id: str = "sub_test123",
    customer: str = "cus_test123",
    status: str = "active",
    group_id: str = "grp_1",
    interval: str = "month",
    unit_amount: int = 50000,
    **extra,
) -> Dict[str, Any]:
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_end": 1893456000,
        "default_payment_method": "pm_card_old",
        "metadata": {"groupId": group_id},
        "items": {"data": [{
            "plan": {"interval": interval},
            "price": {"unit_amount": unit_amount},
        }]},
    }
    obj.update(extra)
    return obj
