from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from app.core.database import Base


class PlanCatalogEntry(Base):
    """Stripe Product/Price のローカルミラー (同期で丸ごと上書き)"""
    __tablename__ = "plan_catalog"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_product_id = Column(String(255), nullable=False, index=True)
    stripe_price_id = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False, comment="プラン名")
    cuts_included_per_period = Column(Integer, nullable=False, comment="1期間あたりのカット回数")
    interval = Column(String(20), nullable=False, default="month")
    active = Column(Boolean, nullable=False, default=True)
    price_amount = Column(Integer, nullable=False, default=0, comment="金額 (通貨の最小単位)")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
