"""
Configuration management with validation.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from constants import Defaults

logger = logging.getLogger(__name__)

# Load environment variables from .env file if it exists
try:
    from dotenv import load_dotenv

    # Look for .env file in current directory or next to this module
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        logger.debug(f"Loaded environment variables from {env_path.absolute()}")
    else:
        module_env = Path(__file__).parent / ".env"
        if module_env.exists():
            load_dotenv(dotenv_path=module_env, override=False)
            logger.debug(f"Loaded environment variables from {module_env.absolute()}")
except OSError as e:
    logger.warning(f"Could not load .env file: {e}")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    """Application configuration with validation."""

    def __init__(
        self,
        request_timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        cache_ttl_minutes: Optional[int] = None,
        cache_dir: Optional[str] = None,
        max_workers: Optional[int] = None,
        risk_free_rate: Optional[float] = None,
        benchmark_ticker: Optional[str] = None,
        initial_investment: Optional[float] = None,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
    ):
        """Initialize configuration, loading from environment variables if not specified."""
        self.request_timeout = (
            request_timeout
            if request_timeout is not None
            else _env_int("REQUEST_TIMEOUT", Defaults.REQUEST_TIMEOUT)
        )
        self.max_retries = (
            max_retries
            if max_retries is not None
            else _env_int("MAX_RETRIES", Defaults.MAX_RETRIES)
        )
        self.cache_ttl_minutes = (
            cache_ttl_minutes
            if cache_ttl_minutes is not None
            else _env_int("CACHE_TTL_MINUTES", Defaults.CACHE_TTL_MINUTES)
        )
        self.cache_dir = (
            cache_dir if cache_dir is not None else os.getenv("CACHE_DIR", Defaults.CACHE_DIR)
        )
        self.max_workers = (
            max_workers
            if max_workers is not None
            else _env_int("MAX_WORKERS", Defaults.MAX_WORKERS)
        )
        self.risk_free_rate = (
            risk_free_rate
            if risk_free_rate is not None
            else _env_float("RISK_FREE_RATE", Defaults.RISK_FREE_RATE)
        )
        self.benchmark_ticker = (
            benchmark_ticker
            if benchmark_ticker is not None
            else os.getenv("BENCHMARK_TICKER", Defaults.BENCHMARK_TICKER)
        ).strip().upper()
        self.initial_investment = (
            initial_investment
            if initial_investment is not None
            else _env_float("INITIAL_INVESTMENT", Defaults.INITIAL_INVESTMENT)
        )
        self.supabase_url = (
            supabase_url if supabase_url is not None else os.getenv("SUPABASE_URL")
        )
        self.supabase_key = (
            supabase_key if supabase_key is not None else os.getenv("SUPABASE_KEY")
        )

        # Call post-init validation
        self.__post_init__()

    def __repr__(self) -> str:
        """Safe string representation that masks the Supabase key."""
        masked_key = self._mask_api_key(self.supabase_key)
        return (
            f"Config(supabase_url='{self.supabase_url}', "
            f"supabase_key='{masked_key}', "
            f"benchmark_ticker='{self.benchmark_ticker}', "
            f"cache_ttl_minutes={self.cache_ttl_minutes}, ...)"
        )

    def __str__(self) -> str:
        """Safe string conversion that masks the Supabase key."""
        return self.__repr__()

    @staticmethod
    def _mask_api_key(api_key: Optional[str]) -> str:
        """Mask API key for safe logging/display."""
        if not api_key:
            return "NOT_SET"
        if len(api_key) <= 8:
            return "***"
        # Show first 4 and last 4 characters
        return f"{api_key[:4]}...{api_key[-4:]}"

    @property
    def persistence_configured(self) -> bool:
        """True when both Supabase settings are present."""
        return bool(self.supabase_url and self.supabase_key)

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_minutes * 60

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.supabase_key is not None and self.supabase_key == "":
            raise ValueError("SUPABASE_KEY cannot be empty string")

        if self.supabase_url:
            parsed = urlparse(self.supabase_url)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(
                    f"SUPABASE_URL must be a valid URL with scheme and host. Got: {self.supabase_url}"
                )
            if parsed.scheme not in ("http", "https"):
                raise ValueError(
                    f"SUPABASE_URL must use http or https scheme. Got: {parsed.scheme}"
                )

        if not self.benchmark_ticker:
            raise ValueError("BENCHMARK_TICKER cannot be empty")

        # Allow wider ranges for testing purposes
        if not (0 <= self.max_retries <= 10):
            logger.warning(
                f"max_retries {self.max_retries} outside recommended range [0, 10]"
            )

        if not (1 <= self.request_timeout <= 60):
            logger.warning(
                f"request_timeout {self.request_timeout} outside recommended range [1, 60]"
            )

        if not (1 <= self.cache_ttl_minutes <= 1440):
            logger.warning(
                f"cache_ttl_minutes {self.cache_ttl_minutes} outside recommended range [1, 1440]"
            )

        if not (1 <= self.max_workers <= 32):
            logger.warning(
                f"max_workers {self.max_workers} outside recommended range [1, 32]"
            )

        if not (0 <= self.risk_free_rate <= 0.1):
            logger.warning(
                f"risk_free_rate {self.risk_free_rate} outside recommended range [0, 0.1]"
            )

        if self.initial_investment <= 0:
            logger.warning(
                f"initial_investment {self.initial_investment} should be positive"
            )

        if self.persistence_configured:
            logger.info(
                f"Configuration loaded - Supabase: {self.supabase_url}, "
                f"Key: {self._mask_api_key(self.supabase_key)}"
            )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Loads the configuration from environment variables.

        Returns:
            Config: The configuration object.
        """
        return cls()
