from fastapi import APIRouter
from app.core.config import settings
from app.core.database import check_db_connection
from app.core.redis import check_redis_connection

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """ヘルスチェック (DB / Redis 接続、Stripe設定有無)"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    return {
        "status": "ok" if (db_ok and redis_ok) else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "stripe": "configured" if (settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET) else "not_configured",
    }
