"""Stripe Webhook イベント処理

1. 署名検証 (失敗 → AuthenticityFailure)
2. processed_stripe_events による冪等性チェック
3. イベント種別ごとの反映
4. 反映と処理済み記録を同一トランザクションで commit

反映中の例外は rollback して再送出する (Stripe側の再送で回復させる)。
リワードは戻り値で返し、呼び出し側が commit 後にバックグラウンドで付与する。
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import AuthenticityFailure, DataInvariantViolation, SupersededSubscription
from app.models.processed_stripe_event import ProcessedStripeEvent
from app.models.subscription import CONSUMABLE_STATUSES
from app.services import (
    reward_service,
    schedule_service,
    stripe_service,
    subscription_service,
)
from app.services.customer_service import get_user_id_for_customer
from app.services.reward_service import RewardEvent
from app.core.logging import get_logger, log_context

logger = get_logger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"


@dataclass
class WebhookResult:
    outcome: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    rewards: list[RewardEvent] = field(default_factory=list)


@dataclass(frozen=True)
class _RowSnapshot:
    stripe_subscription_id: str
    stripe_price_id: str
    cuts_included: int
    period_start: object
    status: str


def _object_id(value) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


class WebhookProcessor:
    """Stripe Webhook の検証と反映

    Args:
        webhook_secret: Webhook署名シークレット
        tolerance_seconds: 署名タイムスタンプの許容幅 (秒)
    """

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._handlers: dict[str, Callable[[Session, dict], list[RewardEvent]]] = {
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "subscription_schedule.created": self._handle_schedule_changed,
            "subscription_schedule.updated": self._handle_schedule_changed,
            "subscription_schedule.completed": self._handle_schedule_finished,
            "subscription_schedule.canceled": self._handle_schedule_finished,
            "subscription_schedule.released": self._handle_schedule_finished,
        }

    @property
    def handled_event_types(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def verify(self, payload: bytes, sig_header: Optional[str]):
        """署名とタイムスタンプを検証してイベントを返す"""
        if not self.webhook_secret:
            raise AuthenticityFailure("Webhookシークレットが設定されていません")
        if not sig_header:
            raise AuthenticityFailure("stripe-signature ヘッダーがありません")
        try:
            return stripe_service.construct_webhook_event(
                payload, sig_header, self.webhook_secret, self.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"Stripe webhook署名検証失敗: {e}")
            raise AuthenticityFailure() from e

    def process(self, db: Session, payload: bytes, sig_header: Optional[str]) -> WebhookResult:
        event = self.verify(payload, sig_header)
        return self.process_event(db, event)

    def process_event(self, db: Session, event) -> WebhookResult:
        """検証済みイベントを反映"""
        event_id = event["id"]
        event_type = event["type"]
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"未処理のStripeイベント: {event_type} ({event_id})")
            return WebhookResult(OUTCOME_IGNORED, event_id, event_type)

        if self._is_event_processed(db, event_id):
            logger.info(f"Stripe webhook重複スキップ: {event_id} ({event_type})")
            return WebhookResult(OUTCOME_DUPLICATE, event_id, event_type)

        data = event["data"]["object"]
        outcome = OUTCOME_PROCESSED
        rewards: list[RewardEvent] = []
        try:
            try:
                rewards = handler(db, data) or []
            except DataInvariantViolation as e:
                db.rollback()
                outcome = OUTCOME_SKIPPED
                rewards = []
                logger.warning(
                    f"Stripe webhookスキップ (データ不整合): {event_type} ({event_id}) - {e.detail}",
                    extra=log_context(event_id=event_id, event_type=event_type, **e.context),
                )
            except SupersededSubscription as e:
                db.rollback()
                outcome = OUTCOME_SKIPPED
                rewards = []
                logger.info(
                    f"Stripe webhookスキップ (置換済みの旧購読): {event_type} ({event_id}) - {e.detail}",
                    extra=log_context(event_id=event_id, event_type=event_type, **e.context),
                )

            db.add(ProcessedStripeEvent(event_id=event_id, event_type=event_type, outcome=outcome))
            db.commit()
        except IntegrityError:
            db.rollback()
            if self._is_event_processed(db, event_id):
                logger.info(f"Stripe webhook同時受信の重複: {event_id} ({event_type})")
                return WebhookResult(OUTCOME_DUPLICATE, event_id, event_type)
            logger.error(f"Stripe webhook処理エラー: {event_type} ({event_id})", exc_info=True)
            raise
        except Exception as e:
            db.rollback()
            logger.error(
                f"Stripe webhook処理エラー: {event_type} ({event_id}) - {e}",
                extra=log_context(event_id=event_id, event_type=event_type),
            )
            raise

        logger.info(f"Stripe webhook処理完了: {event_type} ({event_id}) outcome={outcome}")
        return WebhookResult(outcome, event_id, event_type, rewards)

    # =========================================================
    # 冪等性ヘルパー
    # =========================================================

    @staticmethod
    def _is_event_processed(db: Session, event_id: str) -> bool:
        return db.query(ProcessedStripeEvent.id).filter(
            ProcessedStripeEvent.event_id == event_id
        ).first() is not None

    # =========================================================
    # イベントハンドラ
    # =========================================================

    @staticmethod
    def _user_id_for(db: Session, obj) -> int:
        customer_id = _object_id(obj.get("customer"))
        user_id = get_user_id_for_customer(db, customer_id)
        if user_id is None:
            raise DataInvariantViolation(
                f"Customerに対応するユーザーがいません: customer={customer_id}",
                context={"customer": customer_id},
            )
        return user_id

    def _handle_subscription_changed(self, db: Session, data) -> list[RewardEvent]:
        """customer.subscription.created / updated: 最新状態を取得して丸ごと反映

        イベント到着順は保証されないため、埋め込みオブジェクトではなく取得し直した状態を使う
        """
        subscription = stripe_service.retrieve_subscription(data["id"])
        return self._sync_subscription(db, subscription)

    def _handle_invoice_paid(self, db: Session, data) -> list[RewardEvent]:
        """invoice.paid: 更新後の購読を取得して反映 (新しい期間の開始)"""
        subscription_id = _object_id(data.get("subscription"))
        if not subscription_id:
            raise DataInvariantViolation(
                f"購読に紐づかない請求書です: invoice={data.get('id')}",
                context={"invoice": data.get("id")},
            )
        subscription = stripe_service.retrieve_subscription(subscription_id)
        return self._sync_subscription(db, subscription)

    def _handle_subscription_deleted(self, db: Session, data) -> list[RewardEvent]:
        user_id = self._user_id_for(db, data)
        subscription_service.mark_canceled(db, user_id, data["id"])
        return []

    def _handle_schedule_changed(self, db: Session, data) -> list[RewardEvent]:
        schedule_service.reconcile_schedule(db, data)
        return []

    def _handle_schedule_finished(self, db: Session, data) -> list[RewardEvent]:
        schedule_service.clear_schedule(db, data)
        return []

    def _sync_subscription(self, db: Session, subscription) -> list[RewardEvent]:
        user_id = self._user_id_for(db, subscription)
        price_id = stripe_service.subscription_price_id(subscription)
        if not price_id:
            raise DataInvariantViolation(
                f"購読に価格がありません: subscription={subscription.get('id')}",
                context={"subscription": subscription.get("id")},
            )
        price = stripe_service.retrieve_price_detail(price_id)
        state = subscription_service.canonical_state_from(subscription, price)

        existing = subscription_service.get_subscription(db, user_id)
        if (
            existing
            and existing.stripe_subscription_id != state.stripe_subscription_id
            and existing.status != "canceled"
            and state.status == "canceled"
        ):
            # 旧購読の遅延イベントで現行の購読行を上書きしない
            raise SupersededSubscription(
                f"旧購読の終了イベント: subscription={state.stripe_subscription_id}, "
                f"current={existing.stripe_subscription_id}",
                context={
                    "subscription": state.stripe_subscription_id,
                    "current_subscription": existing.stripe_subscription_id,
                },
            )

        before = None
        if existing:
            before = _RowSnapshot(
                stripe_subscription_id=existing.stripe_subscription_id,
                stripe_price_id=existing.stripe_price_id,
                cuts_included=existing.cuts_included,
                period_start=existing.current_period_start,
                status=existing.status,
            )

        subscription_service.upsert_from_provider(db, user_id, state)
        return self._detect_rewards(user_id, before, state)

    @staticmethod
    def _detect_rewards(
        user_id: int,
        before: Optional[_RowSnapshot],
        state: subscription_service.CanonicalSubscriptionState,
    ) -> list[RewardEvent]:
        """反映前後の差分からリワード対象を判定"""
        if state.status not in CONSUMABLE_STATUSES:
            return []

        if before is None or before.stripe_subscription_id != state.stripe_subscription_id:
            return [reward_service.signup_bonus(user_id)]

        rewards = []
        if before.status not in CONSUMABLE_STATUSES:
            rewards.append(reward_service.signup_bonus(user_id))
        elif before.period_start != state.period_start:
            rewards.append(reward_service.loyalty_bonus(
                user_id, state.stripe_subscription_id, state.period_start,
            ))
        if before.stripe_price_id != state.stripe_price_id and state.cuts_included > before.cuts_included:
            rewards.append(reward_service.upgrade_bonus(
                user_id,
                state.stripe_subscription_id,
                state.stripe_price_id,
                state.period_start,
                state.plan_name,
            ))
        return rewards
