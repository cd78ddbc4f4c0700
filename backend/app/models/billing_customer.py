from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from app.core.database import Base


class BillingCustomer(Base):
    """ユーザー ↔ Stripe Customer 対応 (作成後は不変)"""
    __tablename__ = "billing_customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    stripe_customer_id = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
