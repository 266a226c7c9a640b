"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class EasyCashConfig(BaseSettings):
    """EasyCash ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="EASYCASH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db, postgresql://...
    database_timeout: float = 5.0  # Seconds to wait for a competing writer

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Fee policy (all amounts in the smallest currency unit)
    send_money_fee: int = Field(5, ge=0, description="Flat send-money fee")
    send_money_fee_threshold: int = Field(100, ge=0, description="Fee applies from this principal upwards")
    cash_out_fee_bps: int = Field(150, ge=0, description="Cash-out fee in basis points (1.5%)")
    cash_out_agent_bps: int = Field(100, ge=0, description="Agent share of the principal in basis points")

    # Float and onboarding amounts
    float_amount: int = Field(100000, gt=0, description="Fixed top-up for an approved money request")
    user_starter_balance: int = Field(40, ge=0)
    agent_starter_balance: int = Field(100000, ge=0)

    # Query limits
    history_limit: int = Field(100, gt=0, description="Cap on self-service history queries")

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = EasyCashConfig()


def get_config() -> EasyCashConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EasyCashConfig:
    """Reload configuration from environment"""
    global config
    config = EasyCashConfig()
    return config
