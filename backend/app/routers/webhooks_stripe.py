"""Stripe Webhook ルーター

200: 反映済み・重複・対象外 / 400: 署名不正 (再送不要) / 500: 反映失敗 (Stripeが再送)
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import AuthenticityFailure
from app.services.reward_service import enqueue_rewards
from app.services.webhook_processor import WebhookProcessor
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
    )


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Stripe Webhook エンドポイント (署名検証)"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        result = processor.process(db, payload, sig_header)
    except AuthenticityFailure as e:
        raise HTTPException(status_code=400, detail=e.detail)
    except Exception:
        # 処理済みとして記録されていないので、Stripeの再送で再処理される
        logger.exception("Stripe webhook処理失敗")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    enqueue_rewards(background_tasks, result.rewards)
    return {"received": True, "outcome": result.outcome}
