import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Stripe (provider A)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # PayPal (provider B)
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_API_BASE: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_WEBHOOK_ID: Optional[str] = None

    # Bounded timeout applied to every provider network call
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # App URLs
    BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:8080"

    # Daily question rewards
    REWARD_POINTS_PER_CORRECT: int = 10
    REWARD_POINTS_THRESHOLD: int = 500
    REWARD_AWARD_COOLDOWN_DAYS: int = 30
    REWARD_TIER_NAME: str = "Monthly Basic"

    # Complimentary tiers
    ADMIN_DEFAULT_TIER_NAME: str = "1 Month"
    TRIAL_TIER_NAME: str = "3-Day Trial"
    TRIAL_DURATION_DAYS: int = 3

    # User auth (JWT issued by the identity subsystem)
    AUTH_JWT_SECRET: Optional[str] = None

    # Admin access
    ADMIN_API_KEY: Optional[str] = None
    ADMIN_JWT_SECRET: Optional[str] = None
    ADMIN_AUTH_MODE: str = "hybrid"  # "jwt" | "legacy" | "hybrid"

    # Notifications (outbound queue)
    NOTIFICATIONS_ENABLED: bool = False
    NOTIFICATION_QUEUE: str = "notifications"
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Study Prometric MCQs <no-reply@studyprometric.com>"
    OPS_ALERT_EMAIL: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


# Keys without which payments cannot be taken or verified
REQUIRED_KEYS = (
    "DATABASE_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_WEBHOOK_ID",
)


def missing_keys(cfg=None) -> List[str]:
    cfg = cfg or settings
    return [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Warn about missing payment configuration, or raise RuntimeError in strict mode.

    Only key names are reported, never values.
    """
    cfg = settings_obj or settings
    if strict is None:
        strict = bool(getattr(cfg, "CONFIG_STRICT", False))

    missing = missing_keys(cfg)
    if not missing:
        return True
    message = f"Missing required configuration: {', '.join(missing)}"
    if strict:
        raise RuntimeError(message)
    (logger or logging.getLogger("mcqprep")).warning(message)
    return True
