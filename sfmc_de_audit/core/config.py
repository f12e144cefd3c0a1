"""Configuration management for the Data Extension audit.

Loads configuration from environment variables with .env file support:
- SFMCConfig: credentials and API endpoints
- AuditSettings: pacing, batching, cache and staleness tuning
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from platformdirs import user_cache_dir

_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)

APP_NAME = "sfmc-de-audit"
APP_AUTHOR = "sfmc-de-audit"


@dataclass
class SFMCConfig:
    """Credentials and endpoints for one SFMC business unit."""

    subdomain: str
    client_id: str
    client_secret: str
    account_id: Optional[str] = None
    soap_debug: bool = False
    rest_debug: bool = False
    soap_max_pages: int = 100

    @property
    def auth_url(self) -> str:
        return f"https://{self.subdomain}.auth.marketingcloudapis.com/v2/token"

    @property
    def rest_url(self) -> str:
        """REST API base URL."""
        return f"https://{self.subdomain}.rest.marketingcloudapis.com"

    @property
    def soap_url(self) -> str:
        return f"https://{self.subdomain}.soap.marketingcloudapis.com/Service.asmx"

    @property
    def cache_account_key(self) -> str:
        """Account identifier used to name cache files."""
        return self.account_id or "default"

    def validate(self) -> list[str]:
        """Return one message per missing required setting."""
        errors = []
        if not self.subdomain:
            errors.append("SFMC_SUBDOMAIN is required")
        if not self.client_id:
            errors.append("SFMC_CLIENT_ID is required")
        if not self.client_secret:
            errors.append("SFMC_CLIENT_SECRET is required")
        return errors


@dataclass
class AuditSettings:
    """Tuning knobs for bulk loading, caching and classification."""

    api_rate_limit_delay: float = 0.2  # Seconds slept after every platform call
    default_page_size: int = 500
    journey_page_size: int = 100
    automation_details_batch_size: int = 10
    query_text_batch_size: int = 500
    query_text_concurrency: int = 10
    cache_dir: Optional[Path] = None
    cache_max_age_hours: float = 24.0
    stale_days: int = 365

    def __post_init__(self):
        """Resolve the default cache directory."""
        if self.cache_dir is None:
            self.cache_dir = Path(user_cache_dir(APP_NAME, APP_AUTHOR))
        else:
            self.cache_dir = Path(self.cache_dir)

    @property
    def cache_max_age_seconds(self) -> float:
        """Cache TTL in seconds."""
        return self.cache_max_age_hours * 3600


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    return int(value) if value.strip() else default


def get_config() -> SFMCConfig:
    """Build an SFMCConfig from SFMC_* environment variables."""
    return SFMCConfig(
        subdomain=os.environ.get("SFMC_SUBDOMAIN", ""),
        client_id=os.environ.get("SFMC_CLIENT_ID", ""),
        client_secret=os.environ.get("SFMC_CLIENT_SECRET", ""),
        account_id=os.environ.get("SFMC_ACCOUNT_ID"),
        soap_debug=os.environ.get("SFMC_SOAP_DEBUG", "").lower() == "true",
        rest_debug=os.environ.get("SFMC_REST_DEBUG", "").lower() == "true",
        soap_max_pages=_env_int("SFMC_SOAP_MAX_PAGES", 100),
    )


def get_settings() -> AuditSettings:
    """Load audit settings from environment variables.

    Returns:
        AuditSettings instance, defaults filled in for unset variables.
    """
    cache_dir = os.environ.get("SFMC_CACHE_DIR")
    max_age = os.environ.get("SFMC_CACHE_MAX_AGE_HOURS", "")

    return AuditSettings(
        api_rate_limit_delay=_env_int("SFMC_API_RATE_LIMIT_DELAY_MS", 200) / 1000,
        default_page_size=_env_int("SFMC_DEFAULT_PAGE_SIZE", 500),
        journey_page_size=_env_int("SFMC_JOURNEY_PAGE_SIZE", 100),
        automation_details_batch_size=_env_int("SFMC_AUTOMATION_DETAILS_BATCH_SIZE", 10),
        query_text_batch_size=_env_int("SFMC_QUERY_TEXT_BATCH_SIZE", 500),
        query_text_concurrency=_env_int("SFMC_QUERY_TEXT_CONCURRENCY", 10),
        cache_dir=Path(cache_dir) if cache_dir else None,
        cache_max_age_hours=float(max_age) if max_age.strip() else 24.0,
        stale_days=_env_int("SFMC_STALE_DAYS", 365),
    )
