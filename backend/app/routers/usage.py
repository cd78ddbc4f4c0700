"""カット利用ルーター: 予約完了時の消費 / キャンセル時の返却"""
from typing import Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.rate_limit import limiter, USAGE_RATE_LIMIT
from app.models.user import User
from app.schemas.usage import ConsumeCreditRequest, UsageBalance
from app.services import usage_service
from app.routers.deps import require_login

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.post("/consume", response_model=UsageBalance)
@limiter.limit(USAGE_RATE_LIMIT)
async def consume(
    request: Request,
    req: ConsumeCreditRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    return usage_service.consume_credit(db, user.id, req.appointment_id)


@router.post("/refund", response_model=Optional[UsageBalance])
@limiter.limit(USAGE_RATE_LIMIT)
async def refund(
    request: Request,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """返却 (購読が無い・解約済みならnull)"""
    return usage_service.refund_credit(db, user.id)
