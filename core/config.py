"""
Configuration management using Pydantic Settings
Handles environment variables and validation
"""
import os
from functools import lru_cache
from typing import Optional

from pydantic import ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Environment
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    testing: bool = Field(default=False)

    # Application
    app_name: str = "Storefront"
    app_version: str = "0.1.0"
    base_url: str = Field(default="http://localhost:8000")
    secret_key: str = Field(default="dev-secret-key-change-in-production")

    # Database
    database_url: str = Field(default="sqlite:///tmp/storefront.db")
    database_pool_size: int = Field(default=10)
    database_echo: bool = Field(default=False)
    database_timeout_seconds: int = Field(default=5, description="Connect/lock timeout for draft and order writes")

    # Stripe - use SecretStr for sensitive data
    stripe_secret_key: Optional[SecretStr] = Field(default=None)
    stripe_publishable_key: Optional[str] = Field(default=None)
    stripe_webhook_secret: Optional[SecretStr] = Field(default=None)
    stripe_api_version: Optional[str] = Field(default=None, description="Pin the Stripe API version")
    stripe_timeout_seconds: int = Field(default=10, description="HTTP timeout for Stripe calls")
    stripe_max_network_retries: int = Field(default=0, ge=0)

    # Checkout
    currency: str = Field(default="usd")
    shipping_rate_price_id: Optional[str] = Field(
        default=None, description="Stripe price added as a shipping line to one-time carts"
    )
    checkout_draft_ttl_minutes: int = Field(default=1440, gt=0)

    # Auth
    jwt_secret_key: SecretStr = Field(default=SecretStr("dev-jwt-secret-change-in-production"))
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiration_minutes: int = Field(default=60)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v, info):
        if info.data.get("testing") and not v.startswith("sqlite"):
            # Force SQLite for testing
            return "sqlite:///tmp/test.db"
        return v

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v):
        return v.lower()

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v, info):
        # Allow default secret key in CI environment
        if os.getenv("CI") == "true":
            return v

        if info.data.get("environment") == "production" and v == "dev-secret-key-change-in-production":
            raise ValueError("Secret key must be changed for production")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Validate production-specific settings after all fields are set"""
        if self.environment == "production":
            if not self.stripe_secret_key:
                raise ValueError("Stripe secret key required in production")
            if not self.stripe_webhook_secret:
                raise ValueError("Stripe webhook secret required in production")
            if self.jwt_secret_key.get_secret_value() == "dev-jwt-secret-change-in-production":
                raise ValueError("JWT secret key must be changed for production")

        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    def model_dump(self, **kwargs):
        """Override to mask sensitive fields when serializing"""
        data = super().model_dump(**kwargs)

        sensitive_fields = [
            "secret_key",
            "stripe_secret_key",
            "stripe_publishable_key",
            "stripe_webhook_secret",
            "jwt_secret_key",
        ]

        for field in sensitive_fields:
            if field in data and data[field]:
                # Handle SecretStr values
                if hasattr(data[field], "get_secret_value"):
                    value = data[field].get_secret_value()
                else:
                    value = str(data[field])

                # Keep first 4 chars for identification
                if len(value) > 4:
                    data[field] = value[:4] + "*" * (len(value) - 4)
                else:
                    data[field] = "*" * len(value)

        return data


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
