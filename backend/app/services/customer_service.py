"""ユーザー ↔ Stripe Customer の解決"""
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from app.models.billing_customer import BillingCustomer
from app.models.user import User
from app.services import stripe_service
from app.core.logging import get_logger

logger = get_logger(__name__)


def get_customer_id(db: Session, user_id: int) -> Optional[str]:
    mapping = db.query(BillingCustomer).filter(BillingCustomer.user_id == user_id).first()
    return mapping.stripe_customer_id if mapping else None


def get_user_id_for_customer(db: Session, stripe_customer_id: str) -> Optional[int]:
    """Stripe Customer ID → ユーザーID 逆引き"""
    if not stripe_customer_id:
        return None
    mapping = db.query(BillingCustomer).filter(
        BillingCustomer.stripe_customer_id == stripe_customer_id
    ).first()
    return mapping.user_id if mapping else None


def resolve_customer(db: Session, user: User) -> str:
    """Stripe Customer ID を取得。未作成なら作成して対応を保存する

    同一ユーザーの同時初回呼び出しは user_id の UNIQUE 制約で1件に決まり、
    負けた側は IntegrityError 後に保存済みの対応を返す。
    Stripe側の作成失敗時は何も保存しない。
    """
    existing = get_customer_id(db, user.id)
    if existing:
        return existing

    customer_id = stripe_service.create_customer(user.id, user.email, user.name)

    try:
        db.add(BillingCustomer(user_id=user.id, stripe_customer_id=customer_id))
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_customer_id(db, user.id)
        if existing is None:
            raise
        logger.info(f"Customer対応は既に作成済み: user_id={user.id}, customer={existing}")
        return existing

    logger.info(f"Customer対応作成: user_id={user.id}, customer={customer_id}")
    return customer_id
