"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Invalid config is rejected at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    # Receipt validation
    validator_url: str | None = None  # Default HTTP validator, None = disabled
    validator_timeout: float = 30.0
    validation_cache_ttl: float = 120.0  # Seconds a validator response is reused
    local_verification_delay: float = 0.5  # Simulated latency of the test backend
    validation_debounce: float = 0.05  # Delay between verify() and the validator run

    # Native bridges
    bridge_timeout: float = 5.0
    receipts_debounce: float = 0.3
    google_play_auto_refresh: float = 24 * 3600.0  # 0 disables periodic refresh

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    service_name: str = "iapledger"
    version: str = "0.1.0"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate configuration at startup.

        A bad timeout or cache TTL would otherwise only show up as silently
        stuck or never-cached validations.
        """
        errors: list[str] = []

        if self.validator_url and not self.validator_url.startswith(("http://", "https://")):
            errors.append(
                f"VALIDATOR_URL must be an http(s) URL, got: {self.validator_url[:20]}..."
            )
        if self.validator_timeout <= 0:
            errors.append(f"VALIDATOR_TIMEOUT must be positive, got: {self.validator_timeout}")
        if self.validation_cache_ttl < 0:
            errors.append(f"VALIDATION_CACHE_TTL cannot be negative: {self.validation_cache_ttl}")
        if self.bridge_timeout <= 0:
            errors.append(f"BRIDGE_TIMEOUT must be positive, got: {self.bridge_timeout}")
        for name in ("local_verification_delay", "validation_debounce", "receipts_debounce"):
            if getattr(self, name) < 0:
                errors.append(f"{name.upper()} cannot be negative: {getattr(self, name)}")
        if self.log_format not in ("json", "console"):
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CONFIGURATION ERROR - IAPLEDGER CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance."""
    return settings
