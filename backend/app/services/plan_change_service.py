"""プラン変更オーケストレーション

- アップグレード/同等: Stripe で即時に価格を入替 (日割り即時請求) → ローカルにも即反映
- ダウングレード: 期間終了時に切り替わるスケジュールを作成し、予約として表示

ローカル反映は楽観的に行い、後続のWebhookが同じ状態を冪等に上書きする。
"""
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    AlreadyOnPlan,
    DataInvariantViolation,
    NoActiveSubscription,
    NoScheduledChange,
    PlanNotAvailable,
)
from app.models.plan_catalog import PlanCatalogEntry
from app.models.subscription import UserSubscription
from app.models.subscription_plan_change import SubscriptionPlanChange
from app.models.user import User
from app.schemas.subscription import (
    PlanChangeResult,
    StartSubscriptionResponse,
    SubscriptionSummary,
)
from app.services import reward_service, stripe_service, subscription_service
from app.services.customer_service import resolve_customer
from app.services.reward_service import RewardEvent
from app.services.stripe_service import PriceDetail
from app.core.logging import get_logger, log_context

logger = get_logger(__name__)

# 新規購読の開始をブロックするステータス
BLOCKING_STATUSES = ("active", "trialing", "past_due")


def _object_id(value) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _require_live_subscription(db: Session, user_id: int) -> UserSubscription:
    sub = subscription_service.get_subscription(db, user_id)
    if not sub or sub.status == "canceled":
        raise NoActiveSubscription()
    return sub


def _available_price(price_id: str) -> PriceDetail:
    """選択可能なプランの価格情報 (無効・非定期・cuts_included 不正は選択不可)"""
    price = stripe_service.retrieve_price_detail(price_id)
    if not price.active or not price.recurring or price.cuts_included <= 0:
        logger.warning(f"選択不可のプラン: price={price_id}")
        raise PlanNotAvailable(context={"price_id": price_id})
    return price


def _catalog_entry(db: Session, price_id: str) -> Optional[PlanCatalogEntry]:
    return db.query(PlanCatalogEntry).filter(PlanCatalogEntry.stripe_price_id == price_id).first()


def _classify(current_cuts: int, new_cuts: int) -> str:
    if new_cuts > current_cuts:
        return "upgrade"
    if new_cuts == current_cuts:
        return "lateral"
    return "downgrade"


def _retrieve_owned_subscription(db: Session, user: User, sub: UserSubscription):
    """Stripe上の購読を取得し、ユーザーのCustomerと一致することを確認"""
    customer_id = resolve_customer(db, user)
    subscription = stripe_service.retrieve_subscription(sub.stripe_subscription_id)
    if _object_id(subscription.get("customer")) != customer_id:
        logger.error(
            f"購読のCustomer不一致: user_id={user.id}, subscription={sub.stripe_subscription_id}",
            extra=log_context(user_id=user.id, expected=customer_id, actual=_object_id(subscription.get("customer"))),
        )
        raise DataInvariantViolation("購読の契約者情報が一致しません")
    return subscription


def _cancel_pending_history(db: Session, user_subscription_id: int) -> None:
    db.query(SubscriptionPlanChange).filter(
        SubscriptionPlanChange.user_subscription_id == user_subscription_id,
        SubscriptionPlanChange.state == "scheduled",
    ).update({"state": "canceled"}, synchronize_session=False)


def _apply_local(db: Session, action: str, user_id: int, writes: Callable[[], None]) -> bool:
    """Stripe側の成功後のローカル反映 (書き込み + commit)

    失敗してもWebhookで追いつくためログのみ。反映できたら True
    """
    try:
        writes()
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"ローカル反映失敗 (Webhookで同期予定): {action} user_id={user_id} - {e}",
            extra=log_context(action=action, user_id=user_id),
        )
        return False


# =========================================================
# プラン変更
# =========================================================

def change_plan(db: Session, user: User, new_price_id: str) -> tuple[PlanChangeResult, list[RewardEvent]]:
    """プラン変更

    Returns:
        (結果, commit後に付与するリワード)

    Raises:
        NoActiveSubscription / AlreadyOnPlan / PlanNotAvailable / TransientProviderError
    """
    sub = _require_live_subscription(db, user.id)
    if sub.stripe_price_id == new_price_id:
        raise AlreadyOnPlan()

    scheduled_entry = _catalog_entry(db, new_price_id) if sub.scheduled_price_id == new_price_id else None
    if scheduled_entry:
        logger.info(f"同じプラン変更が予約済み: user_id={user.id}, price={new_price_id}")
        return PlanChangeResult(
            change_type="downgrade",
            applied=False,
            plan_name=sub.scheduled_plan_name,
            price_id=sub.scheduled_price_id,
            cuts_included=scheduled_entry.cuts_included_per_period,
            effective_date=sub.scheduled_effective_date,
        ), []

    price = _available_price(new_price_id)
    subscription = _retrieve_owned_subscription(db, user, sub)
    change_type = _classify(sub.cuts_included, price.cuts_included)

    if change_type == "downgrade":
        return _schedule_downgrade(db, user, sub, subscription, price), []
    return _apply_immediately(db, user, sub, subscription, price, change_type)


def _apply_immediately(
    db: Session,
    user: User,
    sub: UserSubscription,
    subscription,
    price: PriceDetail,
    change_type: str,
) -> tuple[PlanChangeResult, list[RewardEvent]]:
    item_id = stripe_service.first_item(subscription).get("id")
    if not item_id:
        raise DataInvariantViolation(f"購読アイテムがありません: subscription={sub.stripe_subscription_id}")

    # 予約中のダウングレードがあれば先に解除 (スケジュール管理下の購読は直接変更できない)
    schedule_id = _object_id(subscription.get("schedule"))
    if schedule_id:
        stripe_service.release_subscription_schedule(schedule_id)

    stripe_service.swap_subscription_price(sub.stripe_subscription_id, item_id, price.price_id)

    sub_id = sub.id
    old_price_id, old_plan_name = sub.stripe_price_id, sub.plan_name
    period_start = sub.current_period_start
    stripe_subscription_id = sub.stripe_subscription_id

    def _writes():
        subscription_service.apply_price_change(db, sub, price)
        _cancel_pending_history(db, sub_id)
        db.add(SubscriptionPlanChange(
            user_subscription_id=sub_id,
            old_price_id=old_price_id,
            new_price_id=price.price_id,
            old_plan_name=old_plan_name,
            new_plan_name=price.plan_name,
            change_type=change_type,
            state="applied",
        ))

    stored = _apply_local(db, "change_plan", user.id, _writes)

    logger.info(
        f"プラン即時変更: user_id={user.id}, {old_price_id} → {price.price_id} ({change_type})",
        extra=log_context(user_id=user.id, change_type=change_type, new_price_id=price.price_id),
    )

    # ローカル未反映のときはWebhookでの反映時に付与する
    rewards = []
    if change_type == "upgrade" and stored:
        rewards.append(reward_service.upgrade_bonus(
            user.id, stripe_subscription_id, price.price_id, period_start, price.plan_name,
        ))

    return PlanChangeResult(
        change_type=change_type,
        applied=True,
        plan_name=price.plan_name,
        price_id=price.price_id,
        cuts_included=price.cuts_included,
    ), rewards


def _schedule_downgrade(
    db: Session,
    user: User,
    sub: UserSubscription,
    subscription,
    price: PriceDetail,
) -> PlanChangeResult:
    schedule = stripe_service.schedule_price_change(subscription, price.price_id)
    effective_date = stripe_service.from_timestamp(subscription.get("current_period_end")) or sub.current_period_end

    sub_id = sub.id
    old_price_id, old_plan_name = sub.stripe_price_id, sub.plan_name

    def _writes():
        subscription_service.set_scheduled_change(db, user.id, price.plan_name, price.price_id, effective_date)
        _cancel_pending_history(db, sub_id)
        db.add(SubscriptionPlanChange(
            user_subscription_id=sub_id,
            old_price_id=old_price_id,
            new_price_id=price.price_id,
            old_plan_name=old_plan_name,
            new_plan_name=price.plan_name,
            change_type="downgrade",
            effective_at=effective_date,
            state="scheduled",
            stripe_schedule_id=schedule.get("id"),
        ))

    _apply_local(db, "schedule_downgrade", user.id, _writes)

    logger.info(
        f"ダウングレード予約: user_id={user.id}, price={price.price_id}, effective={effective_date.isoformat()}"
    )
    return PlanChangeResult(
        change_type="downgrade",
        applied=False,
        plan_name=price.plan_name,
        price_id=price.price_id,
        cuts_included=price.cuts_included,
        effective_date=effective_date,
    )


def cancel_scheduled_change(db: Session, user: User) -> bool:
    """予約中のプラン変更を取消 (スケジュールを解除し、購読は現行プランで継続)"""
    sub = _require_live_subscription(db, user.id)
    if not sub.has_scheduled_change:
        raise NoScheduledChange()

    subscription = _retrieve_owned_subscription(db, user, sub)
    schedule_id = _object_id(subscription.get("schedule"))
    if schedule_id:
        stripe_service.release_subscription_schedule(schedule_id)
    else:
        logger.warning(f"Stripe上にスケジュールがありません (ローカル予約のみ削除): user_id={user.id}")

    sub_id = sub.id

    def _writes():
        subscription_service.clear_scheduled_change(db, user.id)
        _cancel_pending_history(db, sub_id)

    _apply_local(db, "cancel_scheduled_change", user.id, _writes)
    logger.info(f"予約プラン変更を取消: user_id={user.id}, schedule={schedule_id}")
    return True


# =========================================================
# 自動更新 / 購読開始
# =========================================================

def set_auto_renew(db: Session, user: User, auto_renew: bool) -> SubscriptionSummary:
    """自動更新の切替 (OFF = 期間終了時に解約)"""
    sub = _require_live_subscription(db, user.id)
    stripe_service.set_cancel_at_period_end(sub.stripe_subscription_id, not auto_renew)
    _apply_local(
        db, "set_auto_renew", user.id,
        lambda: subscription_service.set_cancel_at_period_end(db, user.id, not auto_renew),
    )
    logger.info(f"自動更新切替: user_id={user.id}, auto_renew={auto_renew}")
    return subscription_service.get_summary(db, user.id)


def start_subscription(db: Session, user: User, price_id: str) -> StartSubscriptionResponse:
    """初回購読を作成し、支払い確定用の client_secret を返す

    購読行はWebhook (customer.subscription.created / invoice.paid) で作成される。
    """
    sub = subscription_service.get_subscription(db, user.id)
    if sub and sub.status in BLOCKING_STATUSES:
        raise AlreadyOnPlan("既に有効な購読があります")

    price = _available_price(price_id)
    customer_id = resolve_customer(db, user)
    subscription_id, client_secret = stripe_service.create_incomplete_subscription(customer_id, price.price_id)
    logger.info(f"購読開始: user_id={user.id}, subscription={subscription_id}, price={price.price_id}")
    return StartSubscriptionResponse(subscription_id=subscription_id, client_secret=client_secret)
