from sqlalchemy import Column, Integer, String, DateTime, func
from app.core.database import Base


class ProcessedStripeEvent(Base):
    """Webhook冪等性: 行が存在するイベントは再適用しない"""
    __tablename__ = "processed_stripe_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    outcome = Column(String(20), nullable=False, default="processed", comment="processed / skipped")
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
