"""
ChainCare Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MAX_FEE_RATE_BPS = 1000


class LedgerSettings(BaseSettings):
    """Main ledger settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHAINCARE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # Well-known actors
    admin_address: str = "admin"
    orchestrator_address: str = "chaincare-hub"


class PaymentSettings(BaseSettings):
    """Stablecoin payment settings."""

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT_",
        env_file=".env",
        extra="ignore",
    )

    default_stablecoin: str = "USDC"
    stablecoin_decimals: int = 6
    fee_collector: str = "fee-collector"
    fee_rate_bps: int = Field(default=250, description="Platform fee in basis points")

    @field_validator("fee_rate_bps")
    @classmethod
    def _fee_rate_bounded(cls, value: int) -> int:
        if value < 0 or value > MAX_FEE_RATE_BPS:
            raise ValueError(f"fee_rate_bps must be within 0..{MAX_FEE_RATE_BPS}")
        return value


class ClaimsSettings(BaseSettings):
    """Claims adjudication settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAIMS_",
        env_file=".env",
        extra="ignore",
    )

    # Share of the claimed amount approved on the emergency fast path
    emergency_approval_pct: int = Field(default=80, ge=0, le=100)


class IdentitySettings(BaseSettings):
    """Identity verification settings."""

    model_config = SettingsConfigDict(
        env_prefix="IDENTITY_",
        env_file=".env",
        extra="ignore",
    )

    verification_validity_days: int = Field(default=365, gt=0)


class Settings:
    """
    Aggregated settings container.

    Usage:
        from chaincare.config import get_settings
        settings = get_settings()
        print(settings.payments.fee_rate_bps)
    """

    def __init__(self):
        self.ledger = LedgerSettings()
        self.payments = PaymentSettings()
        self.claims = ClaimsSettings()
        self.identity = IdentitySettings()

    @property
    def is_development(self) -> bool:
        return self.ledger.env == "development"

    @property
    def is_production(self) -> bool:
        return self.ledger.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The ledger settings
    """
    return Settings()
