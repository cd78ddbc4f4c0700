from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from app.core.database import Base


class User(Base):
    """ユーザー (認証サービスと共有、ここでは参照とポイント残高更新のみ)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    total_points = Column(Integer, nullable=False, default=0, comment="リワードポイント残高")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
