from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from app.core.database import Base


class RewardPoint(Base):
    """リワードポイント取引 (reference_key で同一付与の重複を防ぐ)"""
    __tablename__ = "reward_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    points = Column(Integer, nullable=False)
    transaction_type = Column(String(20), nullable=False, default="earned")
    source = Column(String(50), nullable=False, comment="signup_bonus / plan_upgrade / monthly_loyalty")
    description = Column(String(500), nullable=True)
    reference_key = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
