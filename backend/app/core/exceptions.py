"""課金ドメインの例外

status_code / error_code はAPIレスポンスにそのまま使う (main.py の例外ハンドラ参照)。
"""
from typing import Any, Optional


class BillingError(Exception):
    """課金処理の基底例外"""

    status_code = 400
    error_code = "BILLING_ERROR"
    default_detail = "課金処理でエラーが発生しました"

    def __init__(self, detail: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        self.detail = detail or self.default_detail
        self.context = context or {}
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.error_code}


# --- Webhook / Stripe 連携 ---

class AuthenticityFailure(BillingError):
    """署名不正・タイムスタンプ超過 (リトライ不要)"""
    status_code = 400
    error_code = "AUTHENTICITY_FAILURE"
    default_detail = "Webhook署名の検証に失敗しました"


class TransientProviderError(BillingError):
    """Stripeの通信断・5xx・レート制限 (呼び出し側でリトライ)"""
    status_code = 503
    error_code = "PROVIDER_UNAVAILABLE"
    default_detail = "決済システムに接続できません。しばらくしてから再度お試しください"


class ProviderRequestRejected(BillingError):
    """Stripeがリクエストを拒否 (カード拒否・不正パラメータ等)"""
    status_code = 402
    error_code = "PROVIDER_REJECTED"
    default_detail = "決済システムがリクエストを受け付けませんでした"


class DataInvariantViolation(BillingError):
    """cuts_included メタデータ欠落など、データ前提の不整合"""
    status_code = 422
    error_code = "DATA_INVARIANT_VIOLATION"
    default_detail = "プラン情報が不正です"


class SupersededSubscription(BillingError):
    """別の購読に置き換わった後に届いた、旧購読の終了イベント (反映しない)"""
    status_code = 409
    error_code = "SUPERSEDED_SUBSCRIPTION"
    default_detail = "既に別の購読に置き換わっています"


# --- ユーザー向け業務エラー ---

class NoActiveSubscription(BillingError):
    status_code = 404
    error_code = "NO_ACTIVE_SUBSCRIPTION"
    default_detail = "有効な購読が見つかりません"


class QuotaExceeded(BillingError):
    status_code = 409
    error_code = "QUOTA_EXCEEDED"
    default_detail = "今期のカット回数の上限に達しています"


class AlreadyOnPlan(BillingError):
    status_code = 400
    error_code = "ALREADY_ON_PLAN"
    default_detail = "既にこのプランに加入しています"


class PlanNotAvailable(BillingError):
    status_code = 400
    error_code = "PLAN_NOT_AVAILABLE"
    default_detail = "このプランは選択できません"


class NoScheduledChange(BillingError):
    status_code = 404
    error_code = "NO_SCHEDULED_CHANGE"
    default_detail = "予約中のプラン変更はありません"


class AppointmentNotEligible(BillingError):
    status_code = 400
    error_code = "APPOINTMENT_NOT_ELIGIBLE"
    default_detail = "予約が見つからないか、まだ完了していません"


class LedgerConflict(BillingError):
    """利用台帳の更新競合がリトライ上限を超えた (一時的)"""
    status_code = 409
    error_code = "LEDGER_CONFLICT"
    default_detail = "利用回数の更新が混み合っています。再度お試しください"
