from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum as SAEnum, ForeignKey, CheckConstraint, func,
)
from app.core.database import Base

SUBSCRIPTION_STATUSES = ("incomplete", "trialing", "active", "past_due", "canceled", "unpaid")
CONSUMABLE_STATUSES = ("active", "trialing")


class UserSubscription(Base):
    """ユーザーごとの購読ミラー (1ユーザー1行、解約後も監査用に保持)"""
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        CheckConstraint("cuts_used >= 0", name="ck_user_subscriptions_cuts_used"),
        CheckConstraint("cuts_included >= 0", name="ck_user_subscriptions_cuts_included"),
        CheckConstraint(
            "(scheduled_plan_name IS NULL AND scheduled_price_id IS NULL AND scheduled_effective_date IS NULL)"
            " OR (scheduled_plan_name IS NOT NULL AND scheduled_price_id IS NOT NULL"
            " AND scheduled_effective_date IS NOT NULL)",
            name="ck_user_subscriptions_scheduled_triple",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    stripe_subscription_id = Column(String(255), nullable=False, index=True)
    stripe_price_id = Column(String(255), nullable=False)
    plan_name = Column(String(255), nullable=False)
    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="incomplete",
    )
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cuts_included = Column(Integer, nullable=False, default=0)
    cuts_used = Column(Integer, nullable=False, default=0)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    interval = Column(String(20), nullable=False, default="month")
    price_amount = Column(Integer, nullable=False, default=0)
    scheduled_plan_name = Column(String(255), nullable=True, comment="ダウングレード予定プラン名")
    scheduled_price_id = Column(String(255), nullable=True, comment="ダウングレード予定Price ID")
    scheduled_effective_date = Column(DateTime, nullable=True, comment="プラン変更予定日時")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def cuts_remaining(self) -> int:
        # ダウングレード直後は cuts_used > cuts_included になり得る
        return max(0, (self.cuts_included or 0) - (self.cuts_used or 0))

    @property
    def has_scheduled_change(self) -> bool:
        return self.scheduled_price_id is not None
