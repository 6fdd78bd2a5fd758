"""Configuration management for the Stellar arbitrage ledger."""

from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", env="ENVIRONMENT"
    )
    app_name: str = Field(default="Stellar Arbitrage Ledger", env="APP_NAME")
    app_version: str = Field(default="1.0.0", env="APP_VERSION")

    # Stellar network the bot trades on
    network: Literal["testnet", "mainnet"] = Field(
        default="testnet", validation_alias="STELLAR_NETWORK"
    )


# =============================================================================
# Risk Defaults Configuration
# =============================================================================


class RiskDefaultsConfig(BaseSettings):
    """Per-trade risk defaults applied when a trade is recorded.

    Values are fractions (0.01 = 1%).
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_slippage: Decimal = Field(
        default=Decimal("0.01"), validation_alias="RISK_MAX_SLIPPAGE"
    )
    min_profit_threshold: Decimal = Field(
        default=Decimal("0.001"), validation_alias="RISK_MIN_PROFIT_THRESHOLD"
    )

    @field_validator("max_slippage", "min_profit_threshold")
    @classmethod
    def validate_fraction(cls, v):
        """Validate that the fraction is between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("Risk fractions must be between 0 and 1")
        return v


# =============================================================================
# Security Configuration
# =============================================================================


class SecurityConfig(BaseSettings):
    """Account security configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Lockout
    max_login_attempts: int = Field(
        default=5, ge=1, validation_alias="MAX_LOGIN_ATTEMPTS"
    )
    lock_duration_hours: float = Field(
        default=2.0, gt=0, validation_alias="LOCK_DURATION_HOURS"
    )

    # Password hashing
    bcrypt_rounds: int = Field(default=12, ge=4, le=31, validation_alias="BCRYPT_ROUNDS")
    min_password_length: int = Field(default=6, validation_alias="MIN_PASSWORD_LENGTH")

    # API access
    api_key_bytes: int = Field(default=32, ge=16, validation_alias="API_KEY_BYTES")
    api_rate_limit: int = Field(default=100, validation_alias="API_RATE_LIMIT")


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/arbitrage_ledger.db", env="DATABASE_URL"
    )
    echo_sql: bool = Field(default=False, validation_alias="DATABASE_ECHO")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", env="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/arbitrage_ledger.log", env="LOG_FILE")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")


# =============================================================================
# Global Configuration Container
# =============================================================================


class LedgerConfig:
    """
    Container for all ledger configurations.

    Usage:
        from src.core.config import ledger_config

        if ledger_config.security.max_login_attempts > 3:
            ...
    """

    def __init__(self):
        self.system = SystemConfig()
        self.risk = RiskDefaultsConfig()
        self.security = SecurityConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.risk.min_profit_threshold > self.risk.max_slippage * 10:
            issues.append(
                "min_profit_threshold is more than ten times max_slippage; "
                "almost no opportunity will qualify"
            )
        if self.system.environment == "production" and self.security.bcrypt_rounds < 10:
            issues.append("bcrypt_rounds below 10 is too weak for production")
        if self.system.environment == "production" and self.system.network != "mainnet":
            issues.append("production environment is pointed at testnet")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

risk_config = RiskDefaultsConfig()
security_config = SecurityConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

ledger_config = LedgerConfig()


__all__ = [
    "LedgerConfig",
    "ledger_config",
    "risk_config",
    "security_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "RiskDefaultsConfig",
    "SecurityConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
