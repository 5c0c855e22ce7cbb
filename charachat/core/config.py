import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Auth (tokens are issued elsewhere, we only verify them)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHMS: str = "HS256"  # comma-separated

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PLUS: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None

    # PayPal
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    PAYPAL_API_BASE: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_PLAN_PLUS: Optional[str] = None
    PAYPAL_PLAN_PREMIUM: Optional[str] = None

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"

    # Rewards
    DAILY_REWARD_CREDITS: int = 50
    DAILY_REWARD_PREMIUM_CREDITS: int = 100
    DAILY_FIRST_CHAT_REWARD_CREDITS: int = 25

    # Plan cycles
    CREDIT_CYCLE_DAYS: int = 30
    SUBSCRIPTION_FALLBACK_DAYS: int = 30

    # Usage metering
    USAGE_BATCH_SIZE: int = 100

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("charachat")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
