import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_REGULAR: Optional[str] = None
    STRIPE_PRICE_CREATOR: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"

    # Apple App Store
    APPLE_SHARED_SECRET: Optional[str] = None
    APPLE_VERIFY_TIMEOUT_SECONDS: float = 10.0
    APPLE_BUNDLE_ID: Optional[str] = None
    APPLE_ROOT_CERT_FILE: Optional[str] = None  # DER or PEM, pins notification signing chain

    # Google Play
    GOOGLE_PLAY_PACKAGE_NAME: Optional[str] = None
    GOOGLE_SERVICE_ACCOUNT_FILE: Optional[str] = None
    GOOGLE_VERIFY_TIMEOUT_SECONDS: float = 10.0

    # Store product ids per tier
    IOS_PRODUCT_REGULAR: str = "com.example.app.regular"
    IOS_PRODUCT_CREATOR: str = "com.example.app.creator"
    ANDROID_PRODUCT_REGULAR: str = "regular_monthly"
    ANDROID_PRODUCT_CREATOR: str = "creator_monthly"

    # Subscription lifecycle
    DEFAULT_PERIOD_DAYS: int = 30
    SWEEP_ENABLED: bool = False
    SWEEP_INTERVAL_SECONDS: int = 3600
    SWEEP_BATCH_LIMIT: int = 100

    # Monetization
    REFERRAL_SHARE_PERCENT: int = 30
    MONETIZATION_WORKERS: int = 2

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
    log = logger or logging.getLogger("commerce")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
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
