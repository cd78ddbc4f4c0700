"""リワードポイント付与 (ベストエフォート)

付与は主処理のコミット後に BackgroundTasks で実行する。失敗してもログのみで、
プラン変更やWebhook処理の結果には影響しない。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from fastapi import BackgroundTasks
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.models.reward_point import RewardPoint
from app.models.user import User
from app.services.stripe_service import to_timestamp
from app.core.logging import get_logger, log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class RewardEvent:
    user_id: int
    points: int
    source: str
    description: str
    reference_key: Optional[str] = None


def signup_bonus(user_id: int) -> RewardEvent:
    return RewardEvent(
        user_id=user_id,
        points=settings.SIGNUP_BONUS_POINTS,
        source="signup_bonus",
        description="サブスクリプション登録ボーナス",
        reference_key=f"signup_bonus:{user_id}",
    )


def upgrade_bonus(
    user_id: int,
    stripe_subscription_id: str,
    new_price_id: str,
    period_start: datetime,
    plan_name: str = "",
) -> RewardEvent:
    """同一期間・同一プランへのアップグレードは1回のみ (API経由とWebhook経由で共通のキー)"""
    return RewardEvent(
        user_id=user_id,
        points=settings.UPGRADE_BONUS_POINTS,
        source="plan_upgrade",
        description=f"プランアップグレードボーナス ({plan_name})" if plan_name else "プランアップグレードボーナス",
        reference_key=f"plan_upgrade:{stripe_subscription_id}:{new_price_id}:{to_timestamp(period_start)}",
    )


def loyalty_bonus(user_id: int, stripe_subscription_id: str, period_start: datetime) -> RewardEvent:
    return RewardEvent(
        user_id=user_id,
        points=settings.LOYALTY_BONUS_POINTS,
        source="monthly_loyalty",
        description="継続ボーナス",
        reference_key=f"monthly_loyalty:{stripe_subscription_id}:{to_timestamp(period_start)}",
    )


def award_points(db: Session, event: RewardEvent) -> bool:
    """ポイント付与 (取引記録 + 残高加算を1トランザクション)

    Returns:
        付与した場合 True、reference_key が付与済みなら False
    """
    if event.points <= 0:
        return False

    try:
        db.add(RewardPoint(
            user_id=event.user_id,
            points=event.points,
            transaction_type="earned",
            source=event.source,
            description=event.description,
            reference_key=event.reference_key,
        ))
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(f"リワード付与済みスキップ: user_id={event.user_id}, key={event.reference_key}")
        return False

    db.execute(
        update(User)
        .where(User.id == event.user_id)
        .values(total_points=User.total_points + event.points)
    )
    db.commit()
    logger.info(
        f"リワード付与: user_id={event.user_id}, points={event.points}, source={event.source}",
        extra=log_context(user_id=event.user_id, points=event.points, source=event.source),
    )
    return True


def run_reward_event(event: RewardEvent, session_factory: Callable[[], Session] = SessionLocal) -> bool:
    """バックグラウンドタスク本体: 独自セッションで付与し、失敗はログのみ"""
    db = session_factory()
    try:
        return award_points(db, event)
    except Exception as e:
        db.rollback()
        logger.error(
            f"リワード付与失敗: user_id={event.user_id}, source={event.source} - {e}",
            exc_info=True,
            extra=log_context(
                user_id=event.user_id,
                points=event.points,
                source=event.source,
                reference_key=event.reference_key,
            ),
        )
        return False
    finally:
        db.close()


def enqueue_rewards(background_tasks: BackgroundTasks, events: Iterable[RewardEvent]) -> int:
    """レスポンス送信後に実行するようキューに積む"""
    count = 0
    for event in events:
        background_tasks.add_task(run_reward_event, event)
        count += 1
    return count
