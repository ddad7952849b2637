"""
Order Service — 設定

環境変数から設定を読み込む。
本番環境 (APP_ENV=production) で署名検証を無効にすることはできない。
"""

import os
from typing import Literal

from pydantic import BaseModel, model_validator

DEFAULT_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
DEFAULT_API_URL = "https://api.sandbox.midtrans.com/v2"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    environment: str = "development"

    # ── 決済ゲートウェイ ─────────────────────────
    gateway_backend: Literal["http", "fake"] = "http"
    gateway_server_key: str = ""
    gateway_snap_url: str = DEFAULT_SNAP_URL
    gateway_api_url: str = DEFAULT_API_URL
    gateway_timeout: float = 10.0
    verify_signature: bool = True

    # ── 照合ポリシー ─────────────────────────────
    allow_late_settlement: bool = True

    # ── ストレージ ───────────────────────────────
    db_pool_timeout: float = 5.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @model_validator(mode="after")
    def _check_policy(self) -> "Settings":
        if self.is_production and not self.verify_signature:
            raise ValueError("Webhook signature verification cannot be disabled in production")
        if self.gateway_backend == "http" and not self.gateway_server_key:
            raise ValueError("PAYMENT_SERVER_KEY is required for the http payment gateway")
        if self.gateway_timeout <= 0:
            raise ValueError("PAYMENT_GATEWAY_TIMEOUT must be positive")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から Settings を組み立てる。DATABASE_URL は必須。"""
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            environment=os.environ.get("APP_ENV", "development"),
            gateway_backend=os.environ.get("PAYMENT_GATEWAY", "http"),
            gateway_server_key=os.environ.get("PAYMENT_SERVER_KEY", ""),
            gateway_snap_url=os.environ.get("PAYMENT_SNAP_URL", DEFAULT_SNAP_URL),
            gateway_api_url=os.environ.get("PAYMENT_API_URL", DEFAULT_API_URL),
            gateway_timeout=float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "10")),
            verify_signature=_env_bool("PAYMENT_VERIFY_SIGNATURE", True),
            allow_late_settlement=_env_bool("ALLOW_LATE_SETTLEMENT", True),
            db_pool_timeout=float(os.environ.get("DB_POOL_TIMEOUT", "5")),
        )
