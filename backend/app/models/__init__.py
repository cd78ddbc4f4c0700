# 全モデルをインポート (Alembic autogenerate用)
from app.models.user import User
from app.models.billing_customer import BillingCustomer
from app.models.plan_catalog import PlanCatalogEntry
from app.models.subscription import UserSubscription
from app.models.subscription_plan_change import SubscriptionPlanChange
from app.models.processed_stripe_event import ProcessedStripeEvent
from app.models.appointment import Appointment
from app.models.reward_point import RewardPoint

__all__ = [
    "User",
    "BillingCustomer",
    "PlanCatalogEntry",
    "UserSubscription",
    "SubscriptionPlanChange",
    "ProcessedStripeEvent",
    "Appointment",
    "RewardPoint",
]
