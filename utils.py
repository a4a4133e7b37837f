"""
Utility functions and helpers.
"""

import re
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Union

from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from constants import LimitsAndConstraints, Timeframes

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(LimitsAndConstraints.SYMBOL_PATTERN)


class InvalidSymbolError(ValueError):
    """Raised when a ticker symbol fails format validation."""


def validate_ticker_symbol(ticker: str) -> str:
    """
    Validates and normalizes a single ticker symbol.

    This is the centralized ticker validation logic used across the application.
    It runs before any network call is made.

    Args:
        ticker (str): The ticker symbol to validate.

    Returns:
        str: The validated and normalized ticker symbol (uppercased and stripped).

    Raises:
        InvalidSymbolError: If the ticker is empty, too long, or has invalid characters.

    Examples:
        >>> validate_ticker_symbol("aapl")
        'AAPL'
        >>> validate_ticker_symbol("BRK.B")
        'BRK.B'
        >>> validate_ticker_symbol("")
        InvalidSymbolError: Ticker cannot be empty
    """
    if not isinstance(ticker, str):
        raise InvalidSymbolError(f"Ticker must be a string, got {type(ticker).__name__}")

    ticker = ticker.strip()

    if not ticker:
        raise InvalidSymbolError("Ticker cannot be empty")

    if len(ticker) > LimitsAndConstraints.MAX_SYMBOL_LENGTH:
        raise InvalidSymbolError(
            f"Ticker '{ticker}' has invalid length (must be 1-10 characters)"
        )

    if not _SYMBOL_RE.match(ticker):
        raise InvalidSymbolError(
            f"Invalid characters in ticker '{ticker}'. Only alphanumeric, dots, and hyphens allowed."
        )

    return ticker.upper()


def normalize_timeframe(user_timeframe: Optional[str]) -> str:
    """
    Normalizes a user-provided timeframe to one of the named comparison timeframes.

    Args:
        user_timeframe: The user-provided timeframe (e.g. "3m", "ytd", "year").

    Returns:
        str: One of `Timeframes.VALID`. Unknown values fall back to 1M.
    """
    if not user_timeframe:
        return Timeframes.ONE_MONTH

    normalized = user_timeframe.strip().upper()
    if normalized in Timeframes.VALID:
        return normalized

    # Natural language mappings
    mappings = {
        "WEEK": Timeframes.ONE_WEEK,
        "QUARTER": Timeframes.THREE_MONTHS,
        "MONTH": Timeframes.ONE_MONTH,
        "YEAR": Timeframes.ONE_YEAR,
        "ANNUAL": Timeframes.ONE_YEAR,
    }

    for key, value in mappings.items():
        if key in normalized:
            return value

    logger.warning(f"Unknown timeframe '{user_timeframe}', defaulting to 1M")
    return Timeframes.ONE_MONTH


def _subtract_months(day: date, months: int) -> date:
    """Step back whole months, clamping to the last day of the target month."""
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    next_month = date(year + (month // 12), (month % 12) + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(day.day, last_day))


def resolve_range_start(timeframe: str, today: Optional[date] = None) -> date:
    """
    Gets the calendar start date a named timeframe covers.

    Args:
        timeframe: One of `Timeframes.VALID`.
        today: Reference date; defaults to the current date.

    Returns:
        date: The first day of the window.
    """
    today = today or date.today()

    match timeframe:
        case Timeframes.ONE_WEEK:
            return today - timedelta(weeks=1)
        case Timeframes.THREE_MONTHS:
            return _subtract_months(today, 3)
        case Timeframes.SIX_MONTHS:
            return _subtract_months(today, 6)
        case Timeframes.ONE_YEAR:
            return _subtract_months(today, 12)
        case Timeframes.YEAR_TO_DATE:
            return date(today.year, 1, 1)
        case _:
            return _subtract_months(today, 1)


def parse_date(value: Union[str, date, datetime]) -> date:
    """
    Parses an ISO date or timestamp string (e.g. "2024-05-01T10:00:00Z") into a date.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        raise ValueError("Date cannot be empty")
    return date.fromisoformat(text.split("T")[0].split(" ")[0])


def is_before_creation(day: Union[str, date], created_at: Union[str, date, datetime]) -> bool:
    """Returns True when *day* falls before the calendar date of *created_at*."""
    return parse_date(day) < parse_date(created_at)


def create_pooled_session(
    pool_connections: int = 10,
    pool_maxsize: int = 10,
    total_retries: int = 3,
    user_agent: Optional[str] = None,
) -> Session:
    """Create a requests Session with connection pooling and retry logic.

    Args:
        pool_connections: Number of connection pools
        pool_maxsize: Max connections per pool
        total_retries: Status-code retries handled by urllib3
        user_agent: Optional User-Agent header

    Returns:
        Configured Session object
    """
    session = Session()

    retry_strategy = Retry(
        total=total_retries,
        backoff_factor=1,  # Wait 1, 2, 4 seconds between retries
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET", "OPTIONS"],
    )

    adapter = HTTPAdapter(
        pool_connections=pool_connections,
        pool_maxsize=pool_maxsize,
        max_retries=retry_strategy,
        pool_block=False,  # Don't block when pool is full
    )

    session.mount("http://", adapter)
    session.mount("https://", adapter)

    if user_agent:
        session.headers.update({"User-Agent": user_agent})

    logger.debug(f"Created HTTP session with connection pool (size: {pool_maxsize})")
    return session
