"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./rental_platform.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # Email (SendGrid)
    sendgrid_api_key: str = ""
    email_from: str = "no-reply@rental-platform.local"

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"
    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:8080"

    # VNPay payment gateway
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_payout_url: str = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_return_path: str = "/api/payments/vnpay/return"
    vnpay_payout_return_path: str = "/api/withdrawals/vnpay/return"
    vnpay_payout_expire_minutes: int = 15

    # E-signature provider (BoldSign)
    boldsign_api_url: str = "https://api.boldsign.com"
    boldsign_api_key: str = ""
    # HMAC secret for X-BoldSign-Signature; verification is skipped when unset
    boldsign_webhook_secret: str = ""
    esign_timeout_seconds: float = 30.0
    esign_max_attempts: int = 3
    esign_backoff_seconds: float = 2.0
    contracts_dir: str = "./contracts"

    # Workflow
    confirmation_ttl_hours: int = 48
    monitor_interval_minutes: int = 15

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def vnpay_return_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}{self.vnpay_return_path}"

    @property
    def vnpay_payout_return_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}{self.vnpay_payout_return_path}"


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
