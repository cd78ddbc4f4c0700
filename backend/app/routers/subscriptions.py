"""購読ルーター: サマリー, 購読開始, プラン変更, 予約取消, 自動更新"""
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.rate_limit import limiter, PLAN_CHANGE_RATE_LIMIT
from app.models.user import User
from app.schemas.subscription import (
    AutoRenewRequest,
    PlanChangeRequest,
    PlanChangeResult,
    StartSubscriptionRequest,
    StartSubscriptionResponse,
    SubscriptionSummary,
)
from app.services import plan_change_service, subscription_service
from app.services.reward_service import enqueue_rewards
from app.routers.deps import require_login

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])


@router.get("", response_model=Optional[SubscriptionSummary])
async def get_my_subscription(
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """現在の購読サマリー (未加入ならnull)"""
    return subscription_service.get_summary(db, user.id)


@router.post("/start", response_model=StartSubscriptionResponse)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
async def start_subscription(
    request: Request,
    req: StartSubscriptionRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """購読開始 (client_secret で支払いを確定すると Webhook で購読が有効になる)"""
    return plan_change_service.start_subscription(db, user, req.price_id)


@router.post("/change-plan", response_model=PlanChangeResult)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
async def change_plan(
    request: Request,
    req: PlanChangeRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """プラン変更 (アップグレードは即時、ダウングレードは期間終了時)"""
    result, rewards = plan_change_service.change_plan(db, user, req.new_price_id)
    enqueue_rewards(background_tasks, rewards)
    return result


@router.delete("/scheduled-change")
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
async def cancel_scheduled_change(
    request: Request,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """予約中のプラン変更を取消"""
    plan_change_service.cancel_scheduled_change(db, user)
    return {"message": "プラン変更の予約を取り消しました"}


@router.post("/auto-renew", response_model=SubscriptionSummary)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
async def set_auto_renew(
    request: Request,
    req: AutoRenewRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """自動更新の切替 (OFFにすると期間終了時に解約)"""
    return plan_change_service.set_auto_renew(db, user, req.auto_renew)
