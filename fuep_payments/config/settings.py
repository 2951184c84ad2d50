"""
Configuration settings for the FUEP payment service
Handles environment variables and application settings
"""
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator


DEFAULT_RECEIPT_SIGNING_KEY = "change-this-in-production"


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "FUEP-PAYMENTS"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./fuep_payments.db"

    # Payments
    PAYMENT_CURRENCY: str = "NGN"
    PAYMENT_PROVIDERS: str = "remita,flutterwave"   # priority order, first enabled is primary
    PAYMENT_EXPIRY_HOURS: int = 24
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    ALLOW_MOCK_PROVIDER: bool = True
    PAYMENT_CALLBACK_URL: str = "http://localhost:5173/payment/callback"

    # Fee schedule in kobo, e.g. {"application_fee": 200000}. Empty disables the check.
    PURPOSE_AMOUNTS: Dict[str, int] = {}

    # Remita
    REMITA_SERVICE_TYPE_ID: Optional[str] = None
    REMITA_SECRET_KEY: Optional[str] = None
    REMITA_MERCHANT_ID: Optional[str] = None
    REMITA_WEBHOOK_SECRET: Optional[str] = None
    REMITA_BASE_URL: str = "https://remitademo.net"

    # Flutterwave
    FLUTTERWAVE_PUBLIC_KEY: Optional[str] = None
    FLUTTERWAVE_SECRET_KEY: Optional[str] = None
    FLUTTERWAVE_WEBHOOK_SECRET: Optional[str] = None
    FLUTTERWAVE_BASE_URL: str = "https://api.flutterwave.com"

    # Mock gateway (only used when no real gateway is enabled)
    MOCK_WEBHOOK_SECRET: Optional[str] = None
    MOCK_BASE_URL: str = "https://mock-payment.example.com"

    # Receipts
    RECEIPT_SERIAL_PREFIX: str = "FUEP"
    RECEIPT_SIGNING_KEY: str = DEFAULT_RECEIPT_SIGNING_KEY

    # Candidate status collaborator
    SETTLEMENT_CALLBACK_URL: Optional[str] = None

    # Admin reconciliation endpoints
    ADMIN_API_KEY: Optional[str] = None

    # Worker
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    @field_validator("PAYMENT_CURRENCY")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def provider_order(self) -> List[str]:
        return [p.strip().lower() for p in self.PAYMENT_PROVIDERS.split(",") if p.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env file


# Create settings instance
settings = Settings()


# Environment-specific overrides
if settings.ENVIRONMENT == "development":
    settings.DEBUG = True


# Validation
def validate_settings(s: Settings = settings):
    """Validate critical settings"""
    issues = []

    if s.ENVIRONMENT == "production":
        if s.RECEIPT_SIGNING_KEY == DEFAULT_RECEIPT_SIGNING_KEY:
            issues.append("RECEIPT_SIGNING_KEY must be set in production")
        if s.ALLOW_MOCK_PROVIDER:
            issues.append("ALLOW_MOCK_PROVIDER must be disabled in production")
        if not s.DATABASE_URL.startswith("postgresql"):
            issues.append("DATABASE_URL must point at Postgres in production")

    if issues:
        raise ValueError(f"Configuration issues: {', '.join(issues)}")


# Auto-validate on import in production
if settings.ENVIRONMENT == "production":
    validate_settings()
