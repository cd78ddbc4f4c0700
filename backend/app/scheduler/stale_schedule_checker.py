"""予約プラン変更の取りこぼし検知

予定日時を過ぎても scheduled_* が残っている購読を警告ログに出すだけで、ローカルでは適用しない。
(適用は subscription_schedule.* / customer.subscription.updated の Webhook が正)
"""
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.database import SessionLocal
from app.models.subscription import UserSubscription
from app.core.logging import get_logger, log_context

logger = get_logger(__name__)


def find_stale_scheduled_changes(db, now: datetime = None) -> list[UserSubscription]:
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    threshold = now - timedelta(hours=settings.STALE_SCHEDULE_GRACE_HOURS)
    return db.query(UserSubscription).filter(
        UserSubscription.scheduled_effective_date.is_not(None),
        UserSubscription.scheduled_effective_date < threshold,
        UserSubscription.status != "canceled",
    ).all()


def check_stale_scheduled_changes(session_factory=SessionLocal) -> int:
    db = session_factory()
    try:
        stale = find_stale_scheduled_changes(db)
        for sub in stale:
            logger.warning(
                f"予約プラン変更が未反映: user_id={sub.user_id}, subscription={sub.stripe_subscription_id}, "
                f"scheduled={sub.scheduled_price_id}, effective={sub.scheduled_effective_date.isoformat()}",
                extra=log_context(
                    user_id=sub.user_id,
                    stripe_subscription_id=sub.stripe_subscription_id,
                    scheduled_price_id=sub.scheduled_price_id,
                ),
            )
        if stale:
            logger.info(f"未反映の予約プラン変更: {len(stale)}件")
        return len(stale)
    except Exception as e:
        logger.error(f"予約プラン変更チェックエラー: {e}")
        return 0
    finally:
        db.close()
