from sqlalchemy import Column, Integer, DateTime, Enum as SAEnum, ForeignKey, func
from app.core.database import Base


class Appointment(Base):
    """予約 (予約サービス所有、ここでは消費条件の確認のみ)"""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        SAEnum("scheduled", "completed", "canceled", "no_show", name="appointment_status"),
        nullable=False,
        default="scheduled",
    )
    scheduled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
