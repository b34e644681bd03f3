"""Application settings loaded from the environment (and an optional .env file)."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    app_name: str = Field(default="streetpay-api", description="Service name")
    app_env: str = Field(default="development", description="development / test / production")
    log_level: str = Field(default="INFO", description="Logging level")
    port: int = Field(default=8000, description="HTTP port")
    allowed_origins: str = Field(default="*", description="CORS origins (comma-separated)")
    frontend_url: str = Field(default="http://localhost:5173", description="Base URL for payment links")

    # Sessions & credentials
    jwt_secret: str = Field(default="dev-secret", description="HMAC key for session tokens")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24 * 7)  # 7 days
    bcrypt_rounds: int = Field(default=12, description="bcrypt cost factor")

    # Lifecycle
    payment_ttl_minutes: int = Field(default=15)
    otp_ttl_minutes: int = Field(default=10)
    otp_digits: int = Field(default=4)
    otp_max_attempts: int = Field(default=5, description="wrong guesses before a code is discarded")
    platform_fee_rate: Decimal = Field(default=Decimal("0.01"))

    # Card processor
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")

    # SMS
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None

    # Storage
    database_url: Optional[str] = Field(default=None, description="MongoDB URL; in-memory when unset")
    database_name: str = Field(default="streetpay")

    # QR rendering
    qr_size: int = Field(default=300)
    qr_margin: int = Field(default=2)
    qr_dark: str = Field(default="#000000")
    qr_light: str = Field(default="#FFFFFF")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, v: int) -> int:
        if v < 10:
            raise ValueError("bcrypt_rounds must be at least 10")
        return v

    @field_validator("platform_fee_rate")
    @classmethod
    def validate_fee_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 1:
            raise ValueError("platform_fee_rate must be in [0, 1)")
        return v

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
