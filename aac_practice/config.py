# aac_practice/config.py - configuration management
from dotenv import load_dotenv

load_dotenv()
from datetime import time
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False
    )

    # Application
    app_name: str = "AAC Practice Management API"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # Database
    database_url: str = Field(default="sqlite:///./aac_practice.db", alias="DATABASE_URL")

    # Security
    secret_key: str = Field(..., alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    admin_username: Optional[str] = Field(default=None, alias="ADMIN_USERNAME")
    admin_password: Optional[str] = Field(default=None, alias="ADMIN_PASSWORD")
    admin_email: str = Field(default="admin@example.com", alias="ADMIN_EMAIL")

    # Encryption
    encryption_key: str = Field(..., alias="ENCRYPTION_KEY")
    encryption_salt: str = Field(default="aac-practice-phi", alias="ENCRYPTION_SALT")
    previous_encryption_keys: Union[str, list[str]] = Field(default=[], alias="PREVIOUS_ENCRYPTION_KEYS")

    # HIPAA audit
    audit_buffer_size: int = Field(default=10000, alias="AUDIT_BUFFER_SIZE")
    audit_persist_limit: int = Field(default=1000, alias="AUDIT_PERSIST_LIMIT")
    backups_configured: bool = Field(default=False, alias="BACKUPS_CONFIGURED")
    baa_on_file: bool = Field(default=False, alias="BAA_ON_FILE")

    # Billing
    private_rate_multiplier: float = Field(default=1.2, alias="PRIVATE_RATE_MULTIPLIER")
    min_billable_minutes: int = Field(default=8, alias="MIN_BILLABLE_MINUTES")

    # Scheduling
    late_cancellation_hours: int = Field(default=24, alias="LATE_CANCELLATION_HOURS")
    working_day_start: time = Field(default=time(8, 0), alias="WORKING_DAY_START")
    working_day_end: time = Field(default=time(17, 0), alias="WORKING_DAY_END")
    lunch_start: time = Field(default=time(12, 0), alias="LUNCH_START")
    lunch_end: time = Field(default=time(13, 0), alias="LUNCH_END")
    slot_minutes: int = Field(default=15, alias="SLOT_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000", "http://localhost:8000"], alias="CORS_ORIGINS")

    # Twilio (SMS / voice)
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_from_number: Optional[str] = Field(default=None, alias="TWILIO_FROM_NUMBER")

    # SendGrid (email)
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")
    sender_email: str = Field(default="noreply@aacpractice.example", alias="SENDER_EMAIL")

    # Payment webhooks
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000", "http://localhost:8000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("previous_encryption_keys", mode='before')
    @classmethod
    def parse_previous_keys(cls, v):
        if isinstance(v, str):
            return [key.strip() for key in v.split(',') if key.strip()]
        return v or []

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key", "encryption_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY and ENCRYPTION_KEY must be at least 32 characters long")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def sms_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
