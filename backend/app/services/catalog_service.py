"""プランカタログ同期 (Stripe Product/Price → plan_catalog)"""
from datetime import datetime, timezone
from sqlalchemy.orm import Session

from app.models.plan_catalog import PlanCatalogEntry
from app.core.upsert import build_upsert
from app.services import stripe_service
from app.core.logging import get_logger

logger = get_logger(__name__)

_UPDATE_COLUMNS = (
    "stripe_product_id",
    "name",
    "cuts_included_per_period",
    "interval",
    "active",
    "price_amount",
    "updated_at",
)


def _catalog_row(product, now: datetime):
    """Product 1件をカタログ行に変換。対象外ならNone"""
    default_price = product.get("default_price")
    if not default_price or isinstance(default_price, str):
        logger.info(f"カタログ同期スキップ (default_price なし): product={product.get('id')}")
        return None
    if default_price.get("type") != "recurring":
        return None

    cuts_included = stripe_service.parse_cuts_included(product.get("metadata"))
    if cuts_included <= 0:
        logger.warning(f"カタログ同期スキップ (cuts_included 不正): product={product.get('id')}")
        return None

    return {
        "stripe_product_id": product["id"],
        "stripe_price_id": default_price["id"],
        "name": product.get("name") or "",
        "cuts_included_per_period": cuts_included,
        "interval": (default_price.get("recurring") or {}).get("interval") or "month",
        "active": True,
        "price_amount": default_price.get("unit_amount") or 0,
        "updated_at": now,
    }


def sync_catalog(db: Session) -> int:
    """Stripeの有効プランをカタログへ一括UPSERT (削除はしない)

    Returns:
        同期した件数
    """
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    rows = []
    for product in stripe_service.iter_active_products():
        row = _catalog_row(product, now)
        if row:
            rows.append(row)

    if not rows:
        logger.info("カタログ同期: 対象プランなし")
        return 0

    stmt = build_upsert(
        db,
        PlanCatalogEntry.__table__,
        rows,
        conflict_columns=["stripe_price_id"],
        update_columns=_UPDATE_COLUMNS,
    )
    db.execute(stmt)
    db.commit()
    logger.info(f"カタログ同期完了: {len(rows)}件")
    return len(rows)


def deactivate_plan(db: Session, stripe_price_id: str) -> bool:
    """カタログのプランを明示的に無効化"""
    entry = db.query(PlanCatalogEntry).filter(PlanCatalogEntry.stripe_price_id == stripe_price_id).first()
    if not entry:
        return False
    if entry.active:
        entry.active = False
        db.commit()
        logger.info(f"プラン無効化: price_id={stripe_price_id}")
    return True


def list_active_plans(db: Session) -> list[PlanCatalogEntry]:
    """公開プラン一覧 (カット回数の少ない順)"""
    return db.query(PlanCatalogEntry).filter(
        PlanCatalogEntry.active == True,
    ).order_by(PlanCatalogEntry.cuts_included_per_period.asc(), PlanCatalogEntry.price_amount.asc()).all()
