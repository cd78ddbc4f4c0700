"""購読ストア: user_subscriptions の正規更新

ここの関数は commit しない。Webhook処理では処理済みイベントの記録と同一トランザクションで
commit するため、commit は呼び出し側 (webhook_processor / plan_change_service / ルーター) で行う。
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, case, update
from sqlalchemy.orm import Session

from app.core.exceptions import DataInvariantViolation
from app.core.upsert import build_upsert
from app.models.subscription import UserSubscription, SUBSCRIPTION_STATUSES
from app.schemas.subscription import SubscriptionSummary, ScheduledChangeInfo
from app.services.stripe_service import PriceDetail, from_timestamp
from app.core.logging import get_logger

logger = get_logger(__name__)

# ローカルの列挙に無いStripeステータスの読み替え
STATUS_ALIASES = {
    "incomplete_expired": "canceled",
    "paused": "unpaid",
}

_SCHEDULED_COLUMNS = ("scheduled_plan_name", "scheduled_price_id", "scheduled_effective_date")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class CanonicalSubscriptionState:
    """Stripe Subscription の正規スナップショット (ローカル行を丸ごと上書きする)"""
    stripe_subscription_id: str
    stripe_price_id: str
    plan_name: str
    status: str
    period_start: datetime
    period_end: datetime
    cuts_included: int
    cancel_at_period_end: bool = False
    interval: str = "month"
    price_amount: int = 0


def normalize_status(status: Optional[str]) -> str:
    status = STATUS_ALIASES.get(status, status)
    if status not in SUBSCRIPTION_STATUSES:
        raise DataInvariantViolation(f"不明な購読ステータスです: {status}")
    return status


def canonical_state_from(subscription, price: PriceDetail) -> CanonicalSubscriptionState:
    """Stripe Subscription + Price情報 → 正規スナップショット

    期間は subscription 直下の current_period_start / current_period_end を正とする。
    """
    period_start = from_timestamp(subscription.get("current_period_start"))
    period_end = from_timestamp(subscription.get("current_period_end"))
    if not period_start or not period_end:
        raise DataInvariantViolation(
            f"購読期間が取得できません: subscription={subscription.get('id')}"
        )
    if price.cuts_included <= 0:
        raise DataInvariantViolation(
            f"cuts_included メタデータが不正です: product={price.product_id}"
        )
    return CanonicalSubscriptionState(
        stripe_subscription_id=subscription["id"],
        stripe_price_id=price.price_id,
        plan_name=price.plan_name,
        status=normalize_status(subscription.get("status")),
        period_start=period_start,
        period_end=period_end,
        cuts_included=price.cuts_included,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        interval=price.interval,
        price_amount=price.unit_amount,
    )


def get_subscription(db: Session, user_id: int) -> Optional[UserSubscription]:
    return db.query(UserSubscription).filter(UserSubscription.user_id == user_id).first()


def get_subscription_by_stripe_id(db: Session, stripe_subscription_id: str) -> Optional[UserSubscription]:
    return db.query(UserSubscription).filter(
        UserSubscription.stripe_subscription_id == stripe_subscription_id
    ).first()


# =========================================================
# 正規UPSERT
# =========================================================

def upsert_from_provider(db: Session, user_id: int, state: CanonicalSubscriptionState) -> None:
    """Stripeの正規状態で購読行を丸ごと上書き (1文のUPSERT、冪等)

    cuts_used は 購読IDと期間開始が既存行と一致する場合のみ保持し、それ以外は0。
    購読IDが変わった場合、または予約していた価格の期間が始まった場合は予約を破棄する。
    """
    table = UserSubscription.__table__
    now = _utcnow()
    values = {
        "user_id": user_id,
        "stripe_subscription_id": state.stripe_subscription_id,
        "stripe_price_id": state.stripe_price_id,
        "plan_name": state.plan_name,
        "status": state.status,
        "current_period_start": state.period_start,
        "current_period_end": state.period_end,
        "cuts_included": state.cuts_included,
        "cuts_used": 0,
        "cancel_at_period_end": state.cancel_at_period_end,
        "interval": state.interval,
        "price_amount": state.price_amount,
        "created_at": now,
        "updated_at": now,
    }

    same_subscription = table.c.stripe_subscription_id == state.stripe_subscription_id
    same_period = and_(same_subscription, table.c.current_period_start == state.period_start)
    # 予約していた価格の期間が始まっていれば予約は適用済み
    schedule_applied = and_(
        table.c.scheduled_price_id == state.stripe_price_id,
        table.c.scheduled_effective_date <= state.period_start,
    )
    keep_schedule = and_(same_subscription, ~schedule_applied)

    # 既存行を参照する式は上書き列より先に並べる (MySQLは左から順に代入)
    update_exprs = [("cuts_used", case((same_period, table.c.cuts_used), else_=0))]
    update_exprs += [
        (col, case((keep_schedule, table.c[col]), else_=None))
        for col in _SCHEDULED_COLUMNS
    ]

    overwrite = [
        col for col in values
        if col not in ("user_id", "cuts_used", "created_at")
    ]
    stmt = build_upsert(
        db,
        table,
        values,
        conflict_columns=["user_id"],
        update_columns=overwrite,
        update_exprs=update_exprs,
    )
    db.execute(stmt)
    db.expire_all()
    logger.info(
        f"購読UPSERT: user_id={user_id}, subscription={state.stripe_subscription_id}, "
        f"price={state.stripe_price_id}, status={state.status}"
    )


# =========================================================
# 部分更新
# =========================================================

def mark_canceled(db: Session, user_id: int, stripe_subscription_id: str) -> bool:
    """購読終了 (行は監査用に残す)。別の購読に置き換わっている場合は何もしない"""
    result = db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.stripe_subscription_id == stripe_subscription_id,
        )
        .values(
            status="canceled",
            scheduled_plan_name=None,
            scheduled_price_id=None,
            scheduled_effective_date=None,
            updated_at=_utcnow(),
        )
    )
    if result.rowcount:
        logger.info(f"購読終了: user_id={user_id}, subscription={stripe_subscription_id}")
    else:
        logger.info(f"購読終了スキップ (対象なし/置換済み): user_id={user_id}, subscription={stripe_subscription_id}")
    return bool(result.rowcount)


def apply_price_change(db: Session, sub: UserSubscription, price: PriceDetail) -> None:
    """即時プラン変更の楽観的反映 (cuts_used は変更しない)"""
    sub.stripe_price_id = price.price_id
    sub.plan_name = price.plan_name
    sub.cuts_included = price.cuts_included
    sub.interval = price.interval
    sub.price_amount = price.unit_amount
    sub.scheduled_plan_name = None
    sub.scheduled_price_id = None
    sub.scheduled_effective_date = None
    sub.updated_at = _utcnow()
    db.flush()


def set_scheduled_change(
    db: Session,
    user_id: int,
    plan_name: str,
    price_id: str,
    effective_date: datetime,
) -> bool:
    """予約中のプラン変更 (scheduled_* の3項目) を設定"""
    if not (plan_name and price_id and effective_date):
        raise DataInvariantViolation("予約プラン情報が不足しています")
    result = db.execute(
        update(UserSubscription)
        .where(UserSubscription.user_id == user_id)
        .values(
            scheduled_plan_name=plan_name,
            scheduled_price_id=price_id,
            scheduled_effective_date=effective_date,
            updated_at=_utcnow(),
        )
    )
    return bool(result.rowcount)


def clear_scheduled_change(db: Session, user_id: int) -> bool:
    """予約中のプラン変更をクリア (ライブのプラン項目には触れない)"""
    result = db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.scheduled_price_id.is_not(None),
        )
        .values(
            scheduled_plan_name=None,
            scheduled_price_id=None,
            scheduled_effective_date=None,
            updated_at=_utcnow(),
        )
    )
    return bool(result.rowcount)


def set_cancel_at_period_end(db: Session, user_id: int, cancel_at_period_end: bool) -> None:
    db.execute(
        update(UserSubscription)
        .where(UserSubscription.user_id == user_id)
        .values(cancel_at_period_end=cancel_at_period_end, updated_at=_utcnow())
    )


# =========================================================
# 読み取りモデル
# =========================================================

def build_summary(sub: UserSubscription) -> SubscriptionSummary:
    scheduled = None
    if sub.has_scheduled_change:
        scheduled = ScheduledChangeInfo(
            plan_name=sub.scheduled_plan_name,
            price_id=sub.scheduled_price_id,
            effective_date=sub.scheduled_effective_date,
        )
    return SubscriptionSummary(
        plan_name=sub.plan_name,
        price_id=sub.stripe_price_id,
        status=sub.status,
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        cuts_included=sub.cuts_included,
        cuts_used=sub.cuts_used,
        cuts_remaining=sub.cuts_remaining,
        cancel_at_period_end=sub.cancel_at_period_end,
        scheduled_change=scheduled,
    )


def get_summary(db: Session, user_id: int) -> Optional[SubscriptionSummary]:
    """現在の購読サマリー (UI向け)"""
    sub = get_subscription(db, user_id)
    if not sub:
        return None
    return build_summary(sub)
