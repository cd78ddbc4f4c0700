from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime


class StartSubscriptionRequest(BaseModel):
    price_id: str = Field(min_length=1)


class StartSubscriptionResponse(BaseModel):
    subscription_id: str
    client_secret: Optional[str] = None


class PlanChangeRequest(BaseModel):
    new_price_id: str = Field(min_length=1)


class PlanChangeResult(BaseModel):
    change_type: Literal["upgrade", "lateral", "downgrade"]
    applied: bool  # True=即時適用, False=期間終了時に予約
    plan_name: str
    price_id: str
    cuts_included: int
    effective_date: Optional[datetime] = None


class AutoRenewRequest(BaseModel):
    auto_renew: bool


class ScheduledChangeInfo(BaseModel):
    plan_name: str
    price_id: str
    effective_date: datetime


class SubscriptionSummary(BaseModel):
    plan_name: str
    price_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cuts_included: int
    cuts_used: int
    cuts_remaining: int
    cancel_at_period_end: bool
    scheduled_change: Optional[ScheduledChangeInfo] = None
