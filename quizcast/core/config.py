import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (entitlement store)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    AUTO_CREATE_SCHEMA: bool = True
    STORE_TIMEOUT_SECONDS: float = 5.0
    ENTITLEMENT_CAS_MAX_RETRIES: int = 5

    # Entitlements
    DAILY_FREE_CREDITS: int = Field(default=2, ge=0)
    # Lifetime of an unlimited grant from checkout when the subscription period end
    # cannot be read yet; the invoice event extends it to the real period end.
    CHECKOUT_GRANT_TTL_HOURS: int = Field(default=72, gt=0)

    # Identity (ID token verification)
    AUTH_JWT_SECRET: Optional[str] = None  # HS256, dev/test only
    AUTH_ISSUER: Optional[str] = None  # e.g. https://securetoken.google.com/<project>
    AUTH_AUDIENCE: Optional[str] = None  # e.g. <project>
    AUTH_JWKS_URL: Optional[str] = None

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_MONTHLY_PRICE_ID: Optional[str] = None
    STRIPE_YEARLY_PRICE_ID: Optional[str] = None

    # App URLs
    APP_BASE_URL: str = "https://quizcast.online"
    ALLOWED_ORIGINS: str = "https://quizcast.online,https://www.quizcast.online,http://localhost:5173"

    # Documents / generation
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"
    DOCUMENT_CONTEXT_CHARS: int = 8000
    MAX_UPLOAD_BYTES: int = 20 * 1024 * 1024
    # Stored document text is purged by quizcast.jobs.retention_cleanup after this long
    DOCUMENT_RETENTION_MONTHS: int = Field(default=3, gt=0)
    DOCUMENT_CLEANUP_BATCH_SIZE: int = Field(default=500, gt=0)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quizcast")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "GROQ_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not (cfg.AUTH_JWT_SECRET or cfg.AUTH_JWKS_URL or cfg.AUTH_ISSUER):
        missing.append("AUTH_JWKS_URL")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
