"""
Process-wide settings

Read once from the environment when the module is imported and never
mutated afterwards.
"""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    environment: str
    log_level: str
    database_url: str
    database_name: str
    jwt_secret: str
    jwt_algorithm: str
    jwt_expire_days: int
    razorpay_key_id: Optional[str]
    razorpay_key_secret: str
    razorpay_webhook_secret: str
    razorpay_api_url: str
    payment_currency: str
    smtp_host: Optional[str]
    smtp_port: int
    smtp_user: Optional[str]
    smtp_password: Optional[str]
    mail_from: str
    admin_email: Optional[str]
    admin_password: Optional[str]
    frontend_url: str
    reset_token_ttl_minutes: int

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def gateway_configured(self) -> bool:
        return bool(self.razorpay_key_id)


def load_settings() -> Settings:
    return Settings(
        environment=os.getenv("ENVIRONMENT", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "storefront"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change"),
        jwt_algorithm="HS256",
        jwt_expire_days=int(os.getenv("JWT_EXPIRE_DAYS", "30")),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", "dev-razorpay-secret"),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", "dev-webhook-secret"),
        razorpay_api_url=os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
        payment_currency=os.getenv("PAYMENT_CURRENCY", "INR"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        mail_from=os.getenv("MAIL_FROM", "no-reply@storefront.local"),
        admin_email=os.getenv("ADMIN_EMAIL"),
        admin_password=os.getenv("ADMIN_PASSWORD"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        reset_token_ttl_minutes=int(os.getenv("RESET_TOKEN_TTL_MINUTES", "60")),
    )


settings = load_settings()
