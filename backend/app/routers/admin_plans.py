"""管理API: プランカタログ同期・無効化"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.plan import CatalogSyncResult
from app.services import catalog_service
from app.routers.deps import require_admin_token
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/admin/plans",
    tags=["admin-plans"],
    dependencies=[Depends(require_admin_token)],
)


@router.post("/sync", response_model=CatalogSyncResult)
async def sync_plans(db: Session = Depends(get_db)):
    """Stripeの有効プランをカタログへ同期"""
    synced = catalog_service.sync_catalog(db)
    logger.info(f"管理API: カタログ同期 {synced}件")
    return CatalogSyncResult(synced=synced)


@router.post("/{price_id}/deactivate")
async def deactivate_plan(price_id: str, db: Session = Depends(get_db)):
    """プランを新規選択不可にする (既存の購読には影響しない)"""
    if not catalog_service.deactivate_plan(db, price_id):
        raise HTTPException(status_code=404, detail="プランが見つかりません")
    return {"message": "プランを無効化しました", "price_id": price_id}
