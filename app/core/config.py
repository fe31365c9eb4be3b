from dataclasses import dataclass
from typing import Optional

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class BillingConfig:
    """Gateway settings handed to the billing services at construction time."""
    gateway_name: str
    secret_key: Optional[str]
    webhook_secret: Optional[str]
    currency: str
    default_success_url: Optional[str]
    default_cancel_url: Optional[str]
    timeout_seconds: int = 30
    webhook_tolerance_seconds: int = 300
    dedup_window_minutes: int = 5
    automatic_tax: bool = False
    company_name: Optional[str] = None
    tax_id: Optional[str] = None


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str

    # JWT
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24

    # App Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Billing Reconciliation Service"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    APP_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_CURRENCY: str = "eur"
    # Frontend should send success/cancel URLs; these are fallbacks
    STRIPE_SUCCESS_URL: Optional[str] = None
    STRIPE_CANCEL_URL: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: int = 30
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_AUTOMATIC_TAX: bool = False
    STRIPE_COMPANY_NAME: Optional[str] = None
    STRIPE_TAX_ID: Optional[str] = None

    # Backup payment handler skips inserts when a completed payment was recorded this recently
    PAYMENT_DEDUP_WINDOW_MINUTES: int = 5

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ]

    def billing_config(self) -> BillingConfig:
        """Snapshot of the gateway settings used by checkout and webhook handling."""
        return BillingConfig(
            gateway_name="stripe",
            secret_key=self.STRIPE_SECRET or None,
            webhook_secret=self.STRIPE_WEBHOOK_SECRET or None,
            currency=self.STRIPE_CURRENCY.lower(),
            default_success_url=self.STRIPE_SUCCESS_URL or f"{self.APP_URL}/payment/success",
            default_cancel_url=self.STRIPE_CANCEL_URL or f"{self.APP_URL}/payment/cancel",
            timeout_seconds=self.STRIPE_TIMEOUT_SECONDS,
            webhook_tolerance_seconds=self.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            dedup_window_minutes=self.PAYMENT_DEDUP_WINDOW_MINUTES,
            automatic_tax=self.STRIPE_AUTOMATIC_TAX,
            company_name=self.STRIPE_COMPANY_NAME,
            tax_id=self.STRIPE_TAX_ID,
        )

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
