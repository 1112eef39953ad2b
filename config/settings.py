"""Application settings and configuration management."""
from decimal import Decimal
from typing import Dict, List, Literal, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class PricingSettings(BaseSettings):
    """Server-side pricing configuration."""

    tax_rate: Decimal = Decimal("0.10")
    service_fee_rate: Decimal = Decimal("0.05")
    currency: str = "VND"
    amount_decimal_places: int = 0
    # Night weekdays (Monday=0) that get the weekend multiplier: Friday and Saturday nights
    weekend_nights: List[int] = [4, 5]
    promo_codes: Dict[str, Decimal] = {}

    model_config = SettingsConfigDict(env_prefix="PRICING_")


class ReservationSettings(BaseSettings):
    """Reservation lifecycle configuration."""

    pending_ttl_minutes: int = 30
    # How often the background sweeper looks for stale PENDING holds
    sweep_interval_seconds: float = 60.0
    check_in_window_hours: int = 24
    max_stay_nights: int = 30
    # (hours before check-in, fee rate), checked in ascending order
    cancellation_tiers: List[Tuple[int, Decimal]] = [
        (24, Decimal("0.50")),
        (72, Decimal("0.25")),
    ]

    model_config = SettingsConfigDict(env_prefix="RESERVATION_")


class LedgerSettings(BaseSettings):
    """Ledger configuration."""

    commission_rate: Decimal = Decimal("0.10")

    model_config = SettingsConfigDict(env_prefix="LEDGER_")


class PersistenceSettings(BaseSettings):
    """Unit of work configuration."""

    lock_timeout_seconds: float = 5.0
    max_retries: int = 3
    retry_backoff_seconds: float = 0.05

    model_config = SettingsConfigDict(env_prefix="PERSISTENCE_")


class SecuritySettings(BaseSettings):
    """JWT configuration for the auth collaborator."""

    secret_key: str = "change-me-in-production"  # Override with SECURITY_SECRET_KEY
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    model_config = SettingsConfigDict(env_prefix="SECURITY_")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "console"

    model_config = SettingsConfigDict(env_prefix="LOG_")


class Settings(BaseSettings):
    """Main application settings."""

    environment: Literal["dev", "staging", "prod"] = "dev"
    debug: bool = False

    # Sub-settings
    pricing: PricingSettings = PricingSettings()
    reservation: ReservationSettings = ReservationSettings()
    ledger: LedgerSettings = LedgerSettings()
    persistence: PersistenceSettings = PersistenceSettings()
    security: SecuritySettings = SecuritySettings()
    logging: LoggingSettings = LoggingSettings()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
