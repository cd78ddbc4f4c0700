"""利用台帳: 期間内のカット消費・返却

消費は1文の条件付きUPDATE (cuts_used < cuts_included を WHERE に含める) で行い、
同時に完了した予約が上限を超えて両方成功することはない。
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    AppointmentNotEligible,
    LedgerConflict,
    NoActiveSubscription,
    QuotaExceeded,
)
from app.models.appointment import Appointment
from app.models.subscription import UserSubscription, CONSUMABLE_STATUSES
from app.schemas.usage import UsageBalance
from app.services.subscription_service import get_subscription
from app.core.logging import get_logger, log_context

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _balance(sub: UserSubscription) -> UsageBalance:
    return UsageBalance(cuts_used=sub.cuts_used, cuts_remaining=sub.cuts_remaining)


def _ensure_completed_appointment(db: Session, user_id: int, appointment_id: int) -> None:
    appointment = db.query(Appointment).filter(
        Appointment.id == appointment_id,
        Appointment.customer_id == user_id,
    ).first()
    if not appointment or appointment.status != "completed":
        raise AppointmentNotEligible(context={"appointment_id": appointment_id})


def _classify_rejection(db: Session, user_id: int, now: datetime) -> Exception:
    """条件付きUPDATEが0件だった理由を再読込で判定"""
    sub = get_subscription(db, user_id)
    if not sub or sub.status not in CONSUMABLE_STATUSES or sub.current_period_end < now:
        return NoActiveSubscription()
    return QuotaExceeded(context={"cuts_used": sub.cuts_used, "cuts_included": sub.cuts_included})


def _with_retry(db: Session, operation: str, user_id: int, func):
    """ロック待ち・デッドロックは上限回数まで再試行し、超えたら LedgerConflict"""
    attempts = max(1, settings.LEDGER_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except OperationalError as e:
            db.rollback()
            logger.warning(
                f"利用台帳の更新競合: {operation} user_id={user_id} ({attempt}/{attempts}) - {e}"
            )
    raise LedgerConflict(context={"operation": operation, "user_id": user_id})


def consume_credit(db: Session, user_id: int, appointment_id: int) -> UsageBalance:
    """完了済み予約に対してカットを1回消費する

    Raises:
        AppointmentNotEligible: 予約が無い・本人のものでない・未完了
        NoActiveSubscription: 有効 (active/trialing) かつ期間内の購読がない
        QuotaExceeded: 今期の上限に到達済み
        LedgerConflict: DB競合がリトライ上限を超えた
    """
    _ensure_completed_appointment(db, user_id, appointment_id)

    def _attempt() -> UsageBalance:
        now = _utcnow()
        result = db.execute(
            update(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status.in_(CONSUMABLE_STATUSES),
                UserSubscription.current_period_end >= now,
                UserSubscription.cuts_used < UserSubscription.cuts_included,
            )
            .values(cuts_used=UserSubscription.cuts_used + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise _classify_rejection(db, user_id, now)
        db.commit()
        return _balance(get_subscription(db, user_id))

    balance = _with_retry(db, "consume", user_id, _attempt)
    logger.info(
        f"カット消費: user_id={user_id}, appointment_id={appointment_id}, remaining={balance.cuts_remaining}",
        extra=log_context(user_id=user_id, appointment_id=appointment_id, cuts_used=balance.cuts_used),
    )
    return balance


def refund_credit(db: Session, user_id: int) -> Optional[UsageBalance]:
    """予約キャンセル時にカットを1回返却 (0未満にはしない)

    購読が無い・解約済みの場合は何もせず None
    """
    def _attempt() -> Optional[UsageBalance]:
        result = db.execute(
            update(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status != "canceled",
                UserSubscription.cuts_used > 0,
            )
            .values(cuts_used=UserSubscription.cuts_used - 1, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        sub = get_subscription(db, user_id)
        if not sub or sub.status == "canceled":
            return None
        if result.rowcount:
            logger.info(f"カット返却: user_id={user_id}, remaining={sub.cuts_remaining}")
        return _balance(sub)

    return _with_retry(db, "refund", user_id, _attempt)
