"""Subscription Schedule → 予約プラン変更 (scheduled_*) への射影"""
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import DataInvariantViolation
from app.services import stripe_service, subscription_service
from app.services.customer_service import get_user_id_for_customer
from app.core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_SCHEDULE_STATUSES = ("completed", "canceled", "released")


def _schedule_user_id(db: Session, schedule) -> int:
    customer = schedule.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    user_id = get_user_id_for_customer(db, customer)
    if user_id is None:
        raise DataInvariantViolation(
            f"スケジュールの顧客に対応するユーザーがいません: customer={customer}",
            context={"schedule_id": schedule.get("id")},
        )
    return user_id


def _schedule_subscription_id(schedule) -> Optional[str]:
    subscription = schedule.get("subscription") or schedule.get("released_subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def next_phase(schedule) -> Optional[dict]:
    """現在フェーズの次のフェーズ (無ければNone)"""
    phases = schedule.get("phases") or []
    current = schedule.get("current_phase") or {}
    current_end = current.get("end_date")
    if current_end:
        for phase in phases:
            if phase.get("start_date") == current_end:
                return phase
        return None
    return phases[1] if len(phases) > 1 else None


def _is_current_subscription(db: Session, user_id: int, schedule) -> bool:
    sub = subscription_service.get_subscription(db, user_id)
    subscription_id = _schedule_subscription_id(schedule)
    if not sub or (subscription_id and sub.stripe_subscription_id != subscription_id):
        logger.info(
            f"スケジュール反映スキップ (購読不一致): user_id={user_id}, "
            f"schedule={schedule.get('id')}, subscription={subscription_id}"
        )
        return False
    return True


def reconcile_schedule(db: Session, schedule) -> bool:
    """スケジュールの次フェーズを予約プラン変更として反映 (commit しない)

    次フェーズが無い・現行と同一価格・終了済みスケジュールなら予約をクリアする。

    Returns:
        行を更新した場合 True
    """
    user_id = _schedule_user_id(db, schedule)
    if not _is_current_subscription(db, user_id, schedule):
        return False

    if schedule.get("status") in TERMINAL_SCHEDULE_STATUSES:
        return subscription_service.clear_scheduled_change(db, user_id)

    phase = next_phase(schedule)
    price_id = stripe_service.phase_price_id(phase) if phase else None
    if not phase or not price_id:
        return subscription_service.clear_scheduled_change(db, user_id)

    sub = subscription_service.get_subscription(db, user_id)
    if price_id == sub.stripe_price_id:
        return subscription_service.clear_scheduled_change(db, user_id)

    effective_date = stripe_service.from_timestamp(phase.get("start_date"))
    if not effective_date:
        raise DataInvariantViolation(
            f"スケジュールの次フェーズに開始日がありません: schedule={schedule.get('id')}"
        )

    price = stripe_service.retrieve_price_detail(price_id)
    if not price.plan_name:
        raise DataInvariantViolation(f"プラン名が取得できません: price={price_id}")

    updated = subscription_service.set_scheduled_change(
        db, user_id, price.plan_name, price.price_id, effective_date,
    )
    logger.info(
        f"予約プラン変更を反映: user_id={user_id}, schedule={schedule.get('id')}, "
        f"plan={price.plan_name}, effective={effective_date.isoformat()}"
    )
    return updated


def clear_schedule(db: Session, schedule) -> bool:
    """完了・キャンセル・解除されたスケジュールの予約をクリア (commit しない)"""
    user_id = _schedule_user_id(db, schedule)
    if not _is_current_subscription(db, user_id, schedule):
        return False
    cleared = subscription_service.clear_scheduled_change(db, user_id)
    if cleared:
        logger.info(f"予約プラン変更をクリア: user_id={user_id}, schedule={schedule.get('id')}")
    return cleared
