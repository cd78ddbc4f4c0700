from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://billing:billingpassword@db:3306/cut_billing?charset=utf8mb4"

    # Redis (セッション参照用)
    REDIS_URL: str = "redis://redis:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    # 期間情報は subscription 直下の current_period_* を正とするため API バージョンを固定
    STRIPE_API_VERSION: str = "2024-06-20"
    STRIPE_TIMEOUT_SECONDS: int = 10
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # 利用台帳
    LEDGER_MAX_ATTEMPTS: int = 3

    # リワード (ベストエフォート)
    SIGNUP_BONUS_POINTS: int = 100
    UPGRADE_BONUS_POINTS: int = 250
    LOYALTY_BONUS_POINTS: int = 100

    # 管理API
    ADMIN_API_TOKEN: str = ""

    # レート制限
    RATE_LIMIT_ENABLED: bool = True

    # スケジューラ
    CATALOG_SYNC_CRON_MINUTE: str = "0"
    STALE_SCHEDULE_GRACE_HOURS: int = 6

    # サービス設定
    SITE_NAME: str = "Cut Billing"
    ALLOWED_ORIGINS: str = "http://localhost:8081,http://localhost:3000"

    # 環境
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
