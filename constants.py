"""
Configuration constants for portfolio performance comparison.

This module centralizes the magic numbers and lookup tables used throughout the
engine so they are easy to find, understand, and modify.

Constants are grouped into classes. Use `ClassName.CONSTANT_NAME` to access values.
"""

# ============================================================================
# THRESHOLD CLASSES (Organized Configuration)
# ============================================================================


class TimeConstants:
    """Time and annualization constants."""

    # Trading days
    TRADING_DAYS_PER_YEAR = 252  # Standard number of trading days in a year
    CALENDAR_DAYS_PER_YEAR = 365

    # Minimum data requirements
    MIN_POINTS_FOR_METRICS = 2  # Need two values to form a single return
    MIN_POINTS_FOR_PERIOD_RETURN = 2

    SECONDS_PER_DAY = 86400
    SECONDS_PER_MINUTE = 60


class LimitsAndConstraints:
    """System limits and constraints."""

    # Symbols
    SYMBOL_PATTERN = r"^[A-Za-z0-9.\-]{1,10}$"
    MAX_SYMBOL_LENGTH = 10

    # Comparison fan-out
    MAX_PARTICIPANTS = 10

    # Provider sentinel rows carry a non-positive close
    MIN_VALID_CLOSE = 0.0

    # Crumb used by the fundamentals endpoint
    CRUMB_TTL_SECONDS = 3600


class Timeframes:
    """Named comparison timeframes mapped to provider (range, interval) pairs."""

    ONE_WEEK = "1W"
    ONE_MONTH = "1M"
    THREE_MONTHS = "3M"
    SIX_MONTHS = "6M"
    ONE_YEAR = "1Y"
    YEAR_TO_DATE = "YTD"

    PROVIDER_PARAMS = {
        ONE_WEEK: ("5d", "1h"),
        ONE_MONTH: ("1mo", "1d"),
        THREE_MONTHS: ("3mo", "1d"),
        SIX_MONTHS: ("6mo", "1d"),
        ONE_YEAR: ("1y", "1d"),
        YEAR_TO_DATE: ("ytd", "1d"),
    }

    VALID = list(PROVIDER_PARAMS.keys())

    # Challenge durations in calendar days
    CHALLENGE_DAYS = {"1W": 7, "2W": 14, "1M": 30, "3M": 90}


class ProviderEndpoints:
    """Yahoo Finance endpoints, in the order they are tried."""

    CHART_HOSTS = [
        "https://query1.finance.yahoo.com",
        "https://query2.finance.yahoo.com",
    ]
    CHART_PATH = "/v8/finance/chart/{symbol}"
    QUOTE_SUMMARY_URL = "https://query1.finance.yahoo.com/v10/finance/quoteSummary/{symbol}"
    QUOTE_SUMMARY_MODULES = "summaryDetail,defaultKeyStatistics,financialData,assetProfile"
    COOKIE_URL = "https://fc.yahoo.com"
    CRUMB_URL = "https://query1.finance.yahoo.com/v1/test/getcrumb"
    USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )


class Defaults:
    """Default configuration values."""

    # Cache defaults (can be overridden by config)
    CACHE_TTL_MINUTES = 15
    CACHE_DIR = "./.cache"

    # Risk-free rate used by the Sharpe ratio (4% annual)
    RISK_FREE_RATE = 0.04

    # Benchmark ticker (can be overridden by config)
    BENCHMARK_TICKER = "SPY"

    # Parallel processing (can be overridden by config)
    MAX_WORKERS = 8

    # Provider call timeout (can be overridden by config)
    REQUEST_TIMEOUT = 10  # seconds
    MAX_RETRIES = 2

    # Normalized series base and the notional amount it represents
    BASE_INDEX = 100.0
    INITIAL_INVESTMENT = 10000.0

    # Beta assumed when no holding reports one
    DEFAULT_BETA = 1.0

    # Debounce delay for recomputation
    DEBOUNCE_SECONDS = 0.5


# Benchmarks offered for comparison, with their display names
BENCHMARKS = {
    "SPY": "S&P 500",
    "QQQ": "Nasdaq 100",
    "DIA": "Dow Jones",
    "IWM": "Russell 2000",
    "VTI": "Total Market",
}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def validate_constants() -> None:
    """
    Validates that all constants are within reasonable ranges.

    Raises:
        ValueError: If any constant is invalid.
    """
    if TimeConstants.TRADING_DAYS_PER_YEAR <= 0:
        raise ValueError(
            f"TRADING_DAYS_PER_YEAR must be positive, got {TimeConstants.TRADING_DAYS_PER_YEAR}"
        )

    if TimeConstants.MIN_POINTS_FOR_METRICS < 2:
        raise ValueError("MIN_POINTS_FOR_METRICS must be at least 2")

    if Defaults.CACHE_TTL_MINUTES <= 0:
        raise ValueError(
            f"CACHE_TTL_MINUTES must be positive, got {Defaults.CACHE_TTL_MINUTES}"
        )

    if Defaults.BASE_INDEX <= 0:
        raise ValueError(f"BASE_INDEX must be positive, got {Defaults.BASE_INDEX}")

    if LimitsAndConstraints.MAX_PARTICIPANTS <= 0:
        raise ValueError(
            f"MAX_PARTICIPANTS must be positive, got {LimitsAndConstraints.MAX_PARTICIPANTS}"
        )

    if Defaults.BENCHMARK_TICKER not in BENCHMARKS:
        raise ValueError(f"Default benchmark {Defaults.BENCHMARK_TICKER} is not a known benchmark")


# Validate on import
validate_constants()
