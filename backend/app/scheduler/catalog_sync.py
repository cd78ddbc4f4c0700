"""毎時: Stripe → プランカタログ同期"""
from app.core.database import SessionLocal
from app.services import catalog_service
from app.core.logging import get_logger

logger = get_logger(__name__)


def catalog_sync_job(session_factory=SessionLocal) -> int:
    db = session_factory()
    try:
        return catalog_service.sync_catalog(db)
    except Exception as e:
        db.rollback()
        logger.error(f"カタログ同期エラー: {e}")
        return 0
    finally:
        db.close()
