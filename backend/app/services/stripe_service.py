"""Stripe API操作サービス

Stripe SDK の例外はここで課金ドメインの例外に変換する:
通信断・5xx・レート制限 → TransientProviderError, カード拒否・不正パラメータ → ProviderRequestRejected
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

import stripe

from app.core.config import settings
from app.core.exceptions import TransientProviderError, ProviderRequestRejected
from app.core.logging import get_logger

logger = get_logger(__name__)


def _init_stripe():
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION
    # Webhook処理中の外部呼び出しは短く打ち切り、再送はStripe側のリトライに任せる
    stripe.max_network_retries = 0
    if not isinstance(stripe.default_http_client, stripe.RequestsClient):
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)


@contextmanager
def _provider_call(operation: str, **context):
    """Stripe呼び出しの例外をドメイン例外に変換"""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        logger.error(f"Stripe一時エラー: {operation} {context} - {e}")
        raise TransientProviderError(context={"operation": operation, **context}) from e
    except (stripe.CardError, stripe.InvalidRequestError) as e:
        logger.warning(f"Stripeリクエスト拒否: {operation} {context} - {e}")
        raise ProviderRequestRejected(
            detail=getattr(e, "user_message", None) or None,
            context={"operation": operation, **context},
        ) from e
    except stripe.StripeError as e:
        logger.error(f"Stripeエラー: {operation} {context} - {e}")
        raise TransientProviderError(context={"operation": operation, **context}) from e


# =========================================================
# 値変換
# =========================================================

@dataclass(frozen=True)
class PriceDetail:
    """Price + Product から読み取ったプラン情報"""
    price_id: str
    product_id: str
    plan_name: str
    cuts_included: int
    interval: str
    unit_amount: int
    active: bool = True
    recurring: bool = True


def parse_cuts_included(metadata) -> int:
    """Product metadata の cuts_included を整数化 (欠落・不正値は0)"""
    raw = (metadata or {}).get("cuts_included") or "0"
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def price_detail_from(price) -> PriceDetail:
    """product を展開済みの Price オブジェクトから PriceDetail を作る"""
    product = price.get("product") or {}
    if isinstance(product, str):
        product = {"id": product}
    recurring = price.get("recurring") or {}
    return PriceDetail(
        price_id=price["id"],
        product_id=product.get("id", ""),
        plan_name=product.get("name") or "",
        cuts_included=parse_cuts_included(product.get("metadata")),
        interval=recurring.get("interval") or "month",
        unit_amount=price.get("unit_amount") or 0,
        active=bool(price.get("active", True)) and bool(product.get("active", True)),
        recurring=price.get("type", "recurring") == "recurring",
    )


def from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    """UNIX秒 → naive UTC datetime"""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def first_item(subscription) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(subscription) -> Optional[str]:
    """購読の先頭アイテムのPrice ID"""
    return (first_item(subscription).get("price") or {}).get("id")


def phase_price_id(phase) -> Optional[str]:
    """スケジュールのフェーズ先頭アイテムのPrice ID (展開済み/未展開どちらも可)"""
    items = phase.get("items") or []
    if not items:
        return None
    price = items[0].get("price")
    if isinstance(price, str):
        return price
    return (price or {}).get("id")


# =========================================================
# Customer
# =========================================================

def create_customer(user_id: int, email: str, name: str = "") -> str:
    """Stripe Customer 作成 (同一ユーザーの同時作成は冪等キーで1件に収束)"""
    _init_stripe()
    with _provider_call("customer.create", user_id=user_id):
        customer = stripe.Customer.create(
            email=email,
            name=name or None,
            metadata={"user_id": str(user_id)},
            idempotency_key=f"customer-create-user-{user_id}",
        )
    logger.info(f"Stripe Customer作成: user_id={user_id}, customer={customer.id}")
    return customer.id


# =========================================================
# Product / Price
# =========================================================

def retrieve_price_detail(price_id: str) -> PriceDetail:
    """Price を Product 展開付きで取得"""
    _init_stripe()
    with _provider_call("price.retrieve", price_id=price_id):
        price = stripe.Price.retrieve(price_id, expand=["product"])
    return price_detail_from(price)


def iter_active_products() -> Iterator:
    """有効な Product を default_price 展開付きで全件取得"""
    _init_stripe()
    with _provider_call("product.list"):
        products = stripe.Product.list(active=True, limit=100, expand=["data.default_price"])
        yield from products.auto_paging_iter()


# =========================================================
# Subscription
# =========================================================

def retrieve_subscription(subscription_id: str):
    """Stripe Subscription を取得"""
    _init_stripe()
    with _provider_call("subscription.retrieve", subscription_id=subscription_id):
        return stripe.Subscription.retrieve(subscription_id)


def create_incomplete_subscription(customer_id: str, price_id: str) -> tuple[str, Optional[str]]:
    """初回支払い待ちの購読を作成し (subscription_id, client_secret) を返す"""
    _init_stripe()
    with _provider_call("subscription.create", customer=customer_id, price_id=price_id):
        subscription = stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
        )
    invoice = subscription.get("latest_invoice") or {}
    payment_intent = invoice.get("payment_intent") or {}
    return subscription.id, payment_intent.get("client_secret")


def swap_subscription_price(subscription_id: str, item_id: str, new_price_id: str):
    """購読の価格を即時入替 (日割り額を即時請求、請求サイクルは維持)"""
    _init_stripe()
    with _provider_call("subscription.modify", subscription_id=subscription_id, price_id=new_price_id):
        return stripe.Subscription.modify(
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior="always_invoice",
            billing_cycle_anchor="unchanged",
        )


def set_cancel_at_period_end(subscription_id: str, cancel_at_period_end: bool):
    """期間終了時の解約フラグを更新"""
    _init_stripe()
    with _provider_call("subscription.modify", subscription_id=subscription_id):
        return stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel_at_period_end)


# =========================================================
# Subscription Schedule
# =========================================================

def schedule_price_change(subscription, new_price_id: str):
    """期間終了時に新価格へ切り替える2フェーズのスケジュールを設定

    フェーズ0: 現行価格で current_period_end まで
    フェーズ1: 新価格 (日割りなし) を1サイクル → 以降は release で通常購読に戻る
    """
    _init_stripe()
    subscription_id = subscription["id"]
    current_price_id = subscription_price_id(subscription)
    with _provider_call("subscription_schedule.upsert", subscription_id=subscription_id, price_id=new_price_id):
        schedule_id = subscription.get("schedule")
        if isinstance(schedule_id, dict):
            schedule_id = schedule_id.get("id")
        if schedule_id:
            schedule = stripe.SubscriptionSchedule.retrieve(schedule_id)
        else:
            schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription_id)

        current_phase = (schedule.get("phases") or [{}])[0]
        return stripe.SubscriptionSchedule.modify(
            schedule.id,
            end_behavior="release",
            phases=[
                {
                    "items": [{"price": current_price_id, "quantity": 1}],
                    "start_date": current_phase.get("start_date") or subscription["current_period_start"],
                    "end_date": subscription["current_period_end"],
                },
                {
                    "items": [{"price": new_price_id, "quantity": 1}],
                    "proration_behavior": "none",
                    "iterations": 1,
                },
            ],
        )


def release_subscription_schedule(schedule_id: str):
    """スケジュールを解除 (購読自体は現行プランのまま継続)"""
    _init_stripe()
    with _provider_call("subscription_schedule.release", schedule_id=schedule_id):
        return stripe.SubscriptionSchedule.release(schedule_id)


# =========================================================
# Webhook
# =========================================================

def construct_webhook_event(payload: bytes, sig_header: str, secret: str, tolerance: int):
    """Webhook イベントを構築・検証 (署名 + タイムスタンプ許容幅)"""
    return stripe.Webhook.construct_event(payload, sig_header, secret, tolerance=tolerance)
