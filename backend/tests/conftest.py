"""テスト共通フィクスチャ

app を import する前に環境変数を設定する (settings はモジュール読み込み時に確定するため)。
DB は StaticPool のインメモリSQLiteを全セッションで共有する。
"""
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ADMIN_API_TOKEN"] = "admin-test-token"
os.environ.setdefault("DEBUG", "false")

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.core.database import Base, SessionLocal, get_db
from app.main import app
from app.models import Appointment, BillingCustomer, PlanCatalogEntry, User, UserSubscription
from app.routers.deps import get_current_user
from app.services.stripe_service import PriceDetail, to_timestamp

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

# 期間は実行日基準 (期間内判定が日付に依存しないように)
NOW = datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)
PERIOD_START = NOW - timedelta(days=10)
PERIOD_END = NOW + timedelta(days=20)
NEXT_PERIOD_END = PERIOD_END + timedelta(days=30)

PRICE_A = "price_plan_a"
PRICE_B = "price_plan_b"


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
SessionLocal.configure(bind=test_engine)


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(test_engine)
    yield
    Base.metadata.drop_all(test_engine)


@pytest.fixture
def db() -> Session:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db) -> User:
    u = User(email="hanako@example.com", name="山田 花子")
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def customer(db, user) -> BillingCustomer:
    mapping = BillingCustomer(user_id=user.id, stripe_customer_id="cus_hanako")
    db.add(mapping)
    db.commit()
    return mapping


@pytest.fixture
def catalog(db):
    db.add_all([
        PlanCatalogEntry(
            stripe_product_id="prod_a", stripe_price_id=PRICE_A, name="Plan A",
            cuts_included_per_period=4, interval="month", active=True, price_amount=4000,
        ),
        PlanCatalogEntry(
            stripe_product_id="prod_b", stripe_price_id=PRICE_B, name="Plan B",
            cuts_included_per_period=8, interval="month", active=True, price_amount=7000,
        ),
    ])
    db.commit()


@pytest.fixture
def client(user):
    def _current_user(db: Session = Depends(get_db)):
        return db.query(User).filter(User.id == user.id).first()

    app.dependency_overrides[get_current_user] = _current_user
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client():
    app.dependency_overrides[get_current_user] = lambda: None
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# =========================================================
# データ作成ヘルパー
# =========================================================

def add_subscription(db: Session, user_id: int, **overrides) -> UserSubscription:
    values = dict(
        user_id=user_id,
        stripe_subscription_id="sub_1",
        stripe_price_id=PRICE_A,
        plan_name="Plan A",
        status="active",
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        cuts_included=4,
        cuts_used=0,
        cancel_at_period_end=False,
        interval="month",
        price_amount=4000,
    )
    values.update(overrides)
    sub = UserSubscription(**values)
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def add_appointment(db: Session, user_id: int, status: str = "completed") -> Appointment:
    appointment = Appointment(customer_id=user_id, status=status)
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def price_detail(price_id: str = PRICE_A, cuts: int = 4, name: str = "Plan A", **overrides) -> PriceDetail:
    values = dict(
        price_id=price_id,
        product_id=f"prod_{price_id}",
        plan_name=name,
        cuts_included=cuts,
        interval="month",
        unit_amount=1000 * cuts,
    )
    values.update(overrides)
    return PriceDetail(**values)


def stripe_subscription(
    subscription_id: str = "sub_1",
    customer: str = "cus_hanako",
    price_id: str = PRICE_A,
    period_start: datetime = PERIOD_START,
    period_end: datetime = PERIOD_END,
    status: str = "active",
    schedule=None,
    cancel_at_period_end: bool = False,
) -> dict:
    """Stripe Subscription オブジェクト相当の dict"""
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": to_timestamp(period_start),
        "current_period_end": to_timestamp(period_end),
        "cancel_at_period_end": cancel_at_period_end,
        "schedule": schedule,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """stripe-signature ヘッダーを作成"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


def days_ago(days: int) -> datetime:
    return NOW - timedelta(days=days)
