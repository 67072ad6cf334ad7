"""
Application configuration using environment variables.
"""
import os
import secrets
from functools import lru_cache
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Outreach API"
    debug: bool = False
    environment: str = "development"

    # Security
    secret_key: str = os.getenv("SECRET_KEY", secrets.token_urlsafe(32))
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60  # 1 hour
    refresh_token_expire_days: int = 7

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./outreach.db")

    # CORS
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Rate limiting
    login_rate_limit: str = "5/minute"
    oauth_start_rate_limit: str = "10/minute"

    # Public URLs
    public_base_url: str = "http://localhost:8000/api"  # tracking links point here
    click_fallback_url: str = "https://example.com"
    frontend_redirect_url: str = "http://localhost:3000/portal/multi-channel"

    # Email delivery
    email_provider: str = "ses"  # ses, resend
    default_from_email: str = ""
    default_from_name: str = ""
    resend_api_key: str = ""
    resend_api_url: str = "https://api.resend.com/emails"
    resend_webhook_secret: str = ""  # whsec_..., verification skipped when empty
    aws_region: str = "us-east-1"
    ses_configuration_set: str = ""
    sns_topic_arns: List[str] = []  # empty = accept any topic

    # Campaign sending
    send_delay_ms: int = 40
    send_concurrency: int = 4
    provider_timeout_seconds: float = 15.0
    send_default_limit: int = 200
    send_max_limit: int = 1000
    claim_ttl_minutes: int = 15  # claimed rows older than this can be claimed again

    # Credits
    price_per_email: int = 1
    publish_cost_facebook: int = 1
    publish_cost_linkedin: int = 1

    # Social connections
    connection_change_limit: int = 2
    oauth_state_ttl_minutes: int = 15

    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    facebook_redirect_uri: str = ""
    facebook_scopes: str = "pages_show_list,pages_manage_posts,pages_read_engagement"
    facebook_api_version: str = "v19.0"

    linkedin_client_id: str = ""
    linkedin_client_secret: str = ""
    linkedin_redirect_uri: str = ""
    linkedin_scopes: str = "openid profile w_member_social"

    # Payments
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    credit_price_minor: int = 100  # paise per credit
    currency: str = "INR"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Validate secret key on startup
settings = get_settings()
if settings.environment == "production" and not os.getenv("SECRET_KEY"):
    raise ValueError(
        "SECRET_KEY must be set in production! "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )
