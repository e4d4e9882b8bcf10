"""
Configuration settings for the application
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Normalized plan ids
PLAN_TRIAL = "trial"
PLAN_BASIC = "basic"
PLAN_PREMIUM = "premium"
PLAN_PROFESSIONAL = "professional"
PLAN_ENTERPRISE = "enterprise"

PAID_PLANS = (PLAN_BASIC, PLAN_PREMIUM, PLAN_PROFESSIONAL, PLAN_ENTERPRISE)

# Sentinel for "no monthly cap"
UNLIMITED = -1

# Monthly caps and upload size per plan. The trial tier is metered by the
# trial counter instead of a monthly count, its row here only bounds file size.
PLAN_LIMITS = {
    PLAN_TRIAL: {"contracts_per_month": 3, "analyses_per_month": 3, "file_size_mb": 5},
    PLAN_BASIC: {"contracts_per_month": 25, "analyses_per_month": 25, "file_size_mb": 10},
    PLAN_PREMIUM: {"contracts_per_month": 100, "analyses_per_month": 100, "file_size_mb": 25},
    PLAN_PROFESSIONAL: {"contracts_per_month": 100, "analyses_per_month": 100, "file_size_mb": 25},
    PLAN_ENTERPRISE: {"contracts_per_month": UNLIMITED, "analyses_per_month": UNLIMITED, "file_size_mb": 50},
}

# Failure policies for checks that depend on an external store
FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Hosted identity provider (HS256 session tokens)
    auth_jwt_secret: Optional[str] = Field(default=None, alias="AUTH_JWT_SECRET")
    auth_jwt_audience: Optional[str] = Field(default="authenticated", alias="AUTH_JWT_AUDIENCE")
    session_cookie_name: str = Field(default="auth_token", alias="SESSION_COOKIE_NAME")
    session_max_age: int = Field(default=604800, alias="SESSION_MAX_AGE")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_basic_monthly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_BASIC_MONTHLY")
    stripe_price_basic_yearly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_BASIC_YEARLY")
    stripe_price_professional_monthly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_PROFESSIONAL_MONTHLY")
    stripe_price_professional_yearly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_PROFESSIONAL_YEARLY")
    stripe_price_enterprise_monthly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ENTERPRISE_MONTHLY")
    stripe_price_enterprise_yearly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ENTERPRISE_YEARLY")
    billing_currency: str = Field(default="usd", alias="BILLING_CURRENCY")
    # Accept unsigned webhook deliveries outside production (logged as a warning)
    allow_unsigned_webhooks: bool = Field(default=False, alias="ALLOW_UNSIGNED_WEBHOOKS")

    # Language model
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_max_tokens: int = Field(default=4096, alias="OPENAI_MAX_TOKENS")
    openai_temperature: float = Field(default=0.1, alias="OPENAI_TEMPERATURE")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")
    media_dir: str = Field(default="./media", alias="MEDIA_DIR")

    # Uploads
    max_file_size: int = Field(default=50 * 1024 * 1024, alias="MAX_FILE_SIZE")

    # Usage ledger
    trial_analyses_limit: int = Field(default=3, alias="TRIAL_ANALYSES_LIMIT")
    trial_gate_failure_policy: str = Field(default=FAIL_CLOSED, alias="TRIAL_GATE_FAILURE_POLICY")
    paid_cap_failure_policy: str = Field(default=FAIL_OPEN, alias="PAID_CAP_FAILURE_POLICY")

    # Rate limits: requests per window (seconds)
    rate_limit_general: int = Field(default=100, alias="RATE_LIMIT_GENERAL")
    rate_limit_upload: int = Field(default=10, alias="RATE_LIMIT_UPLOAD")
    rate_limit_analysis: int = Field(default=5, alias="RATE_LIMIT_ANALYSIS")
    rate_limit_auth: int = Field(default=20, alias="RATE_LIMIT_AUTH")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_failure_policy: str = Field(default=FAIL_OPEN, alias="RATE_LIMIT_FAILURE_POLICY")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")
    render_external_url: Optional[str] = Field(default=None, alias="RENDER_EXTERNAL_URL")
    render_service_name: Optional[str] = Field(default=None, alias="RENDER_SERVICE_NAME")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    def stripe_price_for(self, plan_type: str, billing_cycle: str) -> Optional[str]:
        return getattr(self, f"stripe_price_{plan_type}_{billing_cycle}", None)

    def rate_limit_for(self, limit_class: str) -> int:
        return getattr(self, f"rate_limit_{limit_class}")


# Instantiate settings object
settings = Settings()

MEDIA_DIR = Path(settings.media_dir)


def _is_render_env() -> bool:
    return bool(settings.render or settings.render_external_url or settings.render_service_name)


def is_production() -> bool:
    """Production is Render or ENV=production; read at call time so tests can flip it."""
    return _is_render_env() or bool(settings.env and settings.env.lower() == "production")


IS_PRODUCTION = is_production()
