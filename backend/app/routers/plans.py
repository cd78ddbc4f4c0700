"""公開プランAPI"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.plan import PlanInfo
from app.services import catalog_service

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=list[PlanInfo])
async def list_public_plans(db: Session = Depends(get_db)):
    """公開プラン一覧 (アクティブのみ)"""
    return [
        PlanInfo(
            price_id=p.stripe_price_id,
            product_id=p.stripe_product_id,
            name=p.name,
            cuts_included_per_period=p.cuts_included_per_period,
            interval=p.interval,
            price_amount=p.price_amount,
        )
        for p in catalog_service.list_active_plans(db)
    ]
