"""
Visibility Configuration
========================

Configuration for the visibility analytics core and its collaborator APIs.
Set credentials via environment variables or .env file.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv
import structlog

from .models import DEFAULT_PROVIDERS, Provider

logger = structlog.get_logger(__name__)

load_dotenv()


def _providers_from_env() -> list[Provider]:
    raw = os.getenv("DEFAULT_PROVIDERS", "")
    if not raw.strip():
        return list(DEFAULT_PROVIDERS)
    return [Provider(p.strip().lower()) for p in raw.split(",") if p.strip()]


@dataclass
class APIConfig:
    """Collaborator API configuration"""
    base_url: str = field(default_factory=lambda: os.getenv("VISIBILITY_API_URL", "http://localhost:3000/api"))
    api_key: str = field(default_factory=lambda: os.getenv("VISIBILITY_API_KEY", ""))
    account_id: str = field(default_factory=lambda: os.getenv("VISIBILITY_ACCOUNT_ID", ""))
    max_retries: int = field(default_factory=lambda: int(os.getenv("HTTP_MAX_RETRIES", "3")))
    retry_delay: float = field(default_factory=lambda: float(os.getenv("HTTP_RETRY_DELAY", "1.0")))

    @property
    def is_configured(self) -> bool:
        return all([self.base_url, self.api_key])


@dataclass
class BatchConfig:
    """Batch run polling and pricing"""
    poll_interval: float = field(default_factory=lambda: float(os.getenv("BATCH_POLL_INTERVAL", "3")))
    recovery_lookback_hours: float = field(
        default_factory=lambda: float(os.getenv("BATCH_RECOVERY_LOOKBACK_HOURS", "2"))
    )
    # Credits charged per question for each provider
    provider_credit_cost: int = field(default_factory=lambda: int(os.getenv("PROVIDER_CREDIT_COST", "1")))

    def provider_costs(self) -> dict[Provider, int]:
        return {provider: self.provider_credit_cost for provider in Provider}


@dataclass
class VisibilityConfig:
    """Master configuration for the visibility dashboard"""
    api: APIConfig = field(default_factory=APIConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    # Whose visibility is tracked
    target_domain: str = field(default_factory=lambda: os.getenv("VISIBILITY_TARGET_DOMAIN", ""))
    brand_name: str = field(default_factory=lambda: os.getenv("VISIBILITY_BRAND_NAME", ""))

    # Result store
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///visibility.db"))

    # Dashboard settings
    results_fetch_limit: int = field(default_factory=lambda: int(os.getenv("RESULTS_FETCH_LIMIT", "200")))
    page_size: int = field(default_factory=lambda: int(os.getenv("VIEW_PAGE_SIZE", "25")))
    default_providers: list[Provider] = field(default_factory=_providers_from_env)
    demo_mode: bool = field(default_factory=lambda: os.getenv("VISIBILITY_DEMO_MODE", "true").lower() == "true")

    # Environment
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def validate(self) -> bool:
        """Validate configuration.

        Returns:
            True if configuration is valid
        """
        errors = []

        if not self.demo_mode and not self.api.is_configured:
            errors.append("VISIBILITY_API_URL and VISIBILITY_API_KEY are required outside demo mode")

        if self.results_fetch_limit < 1:
            errors.append("RESULTS_FETCH_LIMIT must be at least 1")

        if self.page_size < 1:
            errors.append("VIEW_PAGE_SIZE must be at least 1")

        if self.batch.poll_interval <= 0:
            errors.append("BATCH_POLL_INTERVAL must be positive")

        if not self.default_providers:
            errors.append("DEFAULT_PROVIDERS must name at least one provider")

        if errors:
            for error in errors:
                logger.error("config_validation_error", error=error)
            return False

        logger.info("config_validated")
        return True

    def log_configuration(self):
        """Log configuration (with secrets masked)."""
        logger.info(
            "configuration_loaded",
            api_base_url=self.api.base_url,
            api_key=self._mask_secret(self.api.api_key),
            account_id=self.api.account_id,
            target_domain=self.target_domain,
            brand_name=self.brand_name,
            database_url=self._mask_secret(self.database_url),
            poll_interval=self.batch.poll_interval,
            recovery_lookback_hours=self.batch.recovery_lookback_hours,
            results_fetch_limit=self.results_fetch_limit,
            page_size=self.page_size,
            default_providers=[p.value for p in self.default_providers],
            demo_mode=self.demo_mode,
            environment=self.environment,
            log_level=self.log_level,
        )

    def get_status(self) -> dict:
        """Get configuration status for the collaborator integrations"""
        return {
            "api": self.api.is_configured,
            "target_domain": bool(self.target_domain),
            "demo_mode": self.demo_mode,
        }

    @staticmethod
    def _mask_secret(value: str) -> str:
        """Mask secret values for logging (first 4 chars + ***)."""
        if not value:
            return ""
        if len(value) <= 4:
            return "***"
        return f"{value[:4]}***"


# Global configuration instance
_config: Optional[VisibilityConfig] = None


def get_config() -> VisibilityConfig:
    """Get the visibility configuration singleton"""
    global _config
    if _config is None:
        _config = VisibilityConfig()
    return _config


def init_config(**kwargs) -> VisibilityConfig:
    """Initialize global configuration with custom values."""
    global _config
    _config = VisibilityConfig(**kwargs)
    return _config


def reset_config() -> None:
    """Reset configuration (useful for testing)"""
    global _config
    _config = None
