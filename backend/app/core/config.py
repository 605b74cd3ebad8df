"""Application configuration using Pydantic BaseSettings"""
import logging
from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

# Setup logging
logger = logging.getLogger("config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database (SQLite runs in WAL mode, see app.db.session)
    DATABASE_URL: str = "sqlite:///./reconciler.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Logging
    LOG_LEVEL: str = "INFO"

    # OpenTelemetry
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "merchant-reconciler"
    OTEL_ENVIRONMENT: str = "development"

    # BTCPay Server (Greenfield API)
    BTCPAY_URL: str = "http://localhost:3003"
    BTCPAY_API_KEY: str = ""
    BTCPAY_STORE_ID: str = ""
    BTCPAY_WEBHOOK_SECRET: str = ""
    # Public URL of /api/webhooks/btcpay; when set the webhook is registered at startup
    BTCPAY_WEBHOOK_URL: str = ""
    BTCPAY_TIMEOUT: float = 10.0

    # Ledger backend: "quickbooks" or "memory"
    LEDGER_BACKEND: str = "memory"
    # Ledger write mode: "deposit" or "invoice_payment"
    LEDGER_MODE: str = "deposit"
    LEDGER_CALL_TIMEOUT: float = 30.0
    LEDGER_REFRESH_WAIT: float = 10.0  # seconds to wait on another worker's token refresh

    # QuickBooks Online
    QUICKBOOKS_CLIENT_ID: str = ""
    QUICKBOOKS_CLIENT_SECRET: str = ""
    QUICKBOOKS_REALM_ID: str = ""
    QUICKBOOKS_API_BASE: str = "https://quickbooks.api.intuit.com"
    QUICKBOOKS_TOKEN_URL: str = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    QUICKBOOKS_DEPOSIT_ACCOUNT_ID: str = ""
    QUICKBOOKS_INCOME_ACCOUNT_ID: str = ""
    QUICKBOOKS_DEFAULT_CUSTOMER_ID: str = ""  # customer for unapplied payments when no invoice matches
    QUICKBOOKS_MINOR_VERSION: int = 70

    # Reconciliation
    RECONCILE_TOLERANCE: Decimal = Decimal("0.01")  # +/- 1% band for full payment
    RETRY_BACKOFF_SCHEDULE: str = "5,15,60"  # seconds between attempts
    WORKER_POLL_INTERVAL: float = 2.0  # seconds
    WORKER_BATCH_SIZE: int = 100
    INVOICE_LOCK_TIMEOUT: int = 120  # seconds
    RUN_BACKGROUND_TASKS: bool = True  # reconcile worker and fallback sweep inside the API process

    # Fallback reconciler
    FALLBACK_SWEEP_ENABLED: bool = True
    FALLBACK_SWEEP_INTERVAL: int = 3600  # seconds
    FALLBACK_SWEEP_LOOKBACK: int = 7 * 24 * 3600  # first sweep window, seconds
    FALLBACK_SWEEP_OVERLAP: int = 300  # seconds re-scanned before the cursor
    FALLBACK_SWEEP_SETTLE_WINDOW: int = 3 * 24 * 3600  # invoices created this recently are listed on every sweep

    # Security
    # ENCRYPTION_KEY is a Fernet key for ledger credentials and webhook secrets at rest.
    ENCRYPTION_KEY: str = ""
    OPERATOR_API_KEY: str = ""

    # Pydantic V2 Config
    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("LEDGER_MODE")
    @classmethod
    def check_ledger_mode(cls, v):
        if v not in ("deposit", "invoice_payment"):
            raise ValueError(f"LEDGER_MODE must be 'deposit' or 'invoice_payment', got {v!r}")
        return v

    @field_validator("RECONCILE_TOLERANCE")
    @classmethod
    def check_tolerance(cls, v):
        if v < 0 or v >= 1:
            raise ValueError("RECONCILE_TOLERANCE must be in [0, 1)")
        return v

    @field_validator("RETRY_BACKOFF_SCHEDULE")
    @classmethod
    def check_backoff_schedule(cls, v):
        try:
            delays = [int(part) for part in v.split(",") if part.strip()]
        except ValueError:
            raise ValueError(f"RETRY_BACKOFF_SCHEDULE must be comma-separated seconds, got {v!r}")
        if any(d < 0 for d in delays):
            raise ValueError("RETRY_BACKOFF_SCHEDULE delays must be non-negative")
        return v

    @field_validator("ENCRYPTION_KEY")
    @classmethod
    def check_encryption_key(cls, v):
        if not v or v.strip() == "":
            # Stored ledger credentials cannot be read back without this
            logger.warning("ENCRYPTION_KEY is not set - ledger credentials cannot be stored")
        return v


# Create global settings instance
settings = Settings()


def parse_backoff_schedule(value: str) -> List[int]:
    """Turn '5,15,60' into [5, 15, 60]"""
    return [int(part) for part in value.split(",") if part.strip()]


# --- Module-level Constants (Extracted from settings) ---
BTCPAY_SIGNATURE_HEADER = "BTCPay-Sig"
BTCPAY_API_BASE = f"{settings.BTCPAY_URL.rstrip('/')}/api/v1"
QUICKBOOKS_COMPANY_URL = f"{settings.QUICKBOOKS_API_BASE.rstrip('/')}/v3/company"
