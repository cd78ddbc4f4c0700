from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from app.core.database import Base


class SubscriptionPlanChange(Base):
    """ユーザー操作によるプラン変更履歴"""
    __tablename__ = "subscription_plan_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_subscription_id = Column(
        Integer, ForeignKey("user_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    old_price_id = Column(String(255), nullable=True)
    new_price_id = Column(String(255), nullable=False)
    old_plan_name = Column(String(255), nullable=True)
    new_plan_name = Column(String(255), nullable=False)
    change_type = Column(String(20), nullable=False, comment="upgrade / lateral / downgrade")
    effective_at = Column(DateTime, nullable=True, comment="変更適用予定日時 (即時適用はNULL)")
    state = Column(String(20), nullable=False, default="applied", comment="applied / scheduled / canceled")
    stripe_schedule_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
