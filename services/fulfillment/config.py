"""
Fulfillment Service — 設定

環境変数から一度だけ読み込み、Dispatcher / Worker / SMS ゲートウェイに
コンストラクタ経由で渡す。モジュールのグローバル状態としては参照しない。
"""

import os
from typing import Literal

from pydantic import BaseModel

SmsProviderName = Literal["orange", "mtn", "moov"]


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class EnvelopePolicy(BaseModel):
    """Envelope Builder に渡す閾値とフォーマット設定"""

    large_transaction_threshold: int = 1_000_000
    low_stock_percent: int = 10
    currency: str = "XOF"
    currency_exponent: int = 0


class FulfillmentConfig(BaseModel):
    database_url: str = "postgresql+asyncpg://localhost/marketplace"
    redis_url: str | None = None
    create_schema: bool = False

    # ── SMS ─────────────────────────────────────
    sms_provider: SmsProviderName | None = None
    sms_api_key: str = ""
    sms_api_secret: str = ""
    sms_sender_id: str = "AgriConnect"
    sms_base_url: str | None = None
    sms_country_code: str = "225"
    sms_timeout: float = 10.0

    # ── 通知 ─────────────────────────────────────
    large_transaction_threshold: int = 1_000_000
    low_stock_percent: int = 10
    currency: str = "XOF"
    currency_exponent: int = 0

    # ── Webhook ─────────────────────────────────
    webhook_timeout: float = 5.0
    webhook_max_retries: int = 5
    webhook_backoff_base: int = 60
    webhook_backoff_cap: int = 3600
    webhook_user_agent: str = "AgriConnect-Webhook/1.0"
    webhook_worker_enabled: bool = True
    webhook_poll_interval: float = 1.0
    webhook_batch_size: int = 20
    webhook_concurrency: int = 8

    @property
    def envelope_policy(self) -> EnvelopePolicy:
        return EnvelopePolicy(
            large_transaction_threshold=self.large_transaction_threshold,
            low_stock_percent=self.low_stock_percent,
            currency=self.currency,
            currency_exponent=self.currency_exponent,
        )

    @classmethod
    def from_env(cls) -> "FulfillmentConfig":
        env = os.environ
        return cls(
            database_url=env.get("DATABASE_URL", cls.model_fields["database_url"].default),
            redis_url=env.get("REDIS_URL") or None,
            create_schema=_env_bool("CREATE_SCHEMA", False),
            sms_provider=env.get("SMS_PROVIDER") or None,
            sms_api_key=env.get("SMS_API_KEY", ""),
            sms_api_secret=env.get("SMS_API_SECRET", ""),
            sms_sender_id=env.get("SMS_SENDER_ID", "AgriConnect"),
            sms_base_url=env.get("SMS_BASE_URL") or None,
            sms_country_code=env.get("SMS_COUNTRY_CODE", "225"),
            sms_timeout=float(env.get("SMS_TIMEOUT", "10.0")),
            large_transaction_threshold=int(
                env.get("LARGE_TRANSACTION_THRESHOLD", "1000000")
            ),
            low_stock_percent=int(env.get("LOW_STOCK_PERCENT", "10")),
            currency=env.get("CURRENCY", "XOF"),
            currency_exponent=int(env.get("CURRENCY_EXPONENT", "0")),
            webhook_timeout=float(env.get("WEBHOOK_TIMEOUT", "5.0")),
            webhook_max_retries=int(env.get("WEBHOOK_MAX_RETRIES", "5")),
            webhook_worker_enabled=_env_bool("WEBHOOK_WORKER_ENABLED", True),
            webhook_poll_interval=float(env.get("WEBHOOK_POLL_INTERVAL", "1.0")),
            webhook_batch_size=int(env.get("WEBHOOK_BATCH_SIZE", "20")),
            webhook_concurrency=int(env.get("WEBHOOK_CONCURRENCY", "8")),
        )
