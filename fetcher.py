"""
Market data fetching with caching support.

`YahooFinanceGateway` talks to Yahoo Finance and returns typed `FetchResult`
values; `CachedDataFetcher` composes it with a `TieredCache`.
"""

import time
import logging
from dataclasses import asdict
from datetime import datetime, time as dt_time, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from concurrent.futures import ThreadPoolExecutor

import pandas as pd
import requests
import yfinance as yf
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from cache import TieredCache, cache_key
from constants import Defaults, LimitsAndConstraints, ProviderEndpoints, TimeConstants, Timeframes
from models import (
    AssetQuote,
    FetchErrorKind,
    FetchResult,
    Fundamentals,
    HistoricalPoint,
    RangeSpec,
)
from utils import InvalidSymbolError, create_pooled_session, validate_ticker_symbol

logger = logging.getLogger(__name__)


class SymbolNotFoundError(LookupError):
    """The provider positively reported the symbol as unknown or without data."""


class ProviderResponseError(RuntimeError):
    """Non-2xx status, malformed payload or failed authentication."""


# Errors that end one provider attempt; the next shape is tried afterwards
ATTEMPT_ERRORS = (
    requests.RequestException,
    ProviderResponseError,
    KeyError,
    AttributeError,
    TypeError,
    ValueError,
    IndexError,
    OverflowError,
    OSError,
)

_ASSET_TYPES = {"EQUITY": "stock", "ETF": "etf", "MUTUALFUND": "etf"}


def _map_instrument_type(instrument_type: Optional[str]) -> str:
    return _ASSET_TYPES.get((instrument_type or "").upper(), "stock")


def _raw(field: Any) -> Optional[float]:
    """Unwraps Yahoo's `{raw: x, fmt: "..."}` values."""
    if isinstance(field, dict):
        field = field.get("raw")
    if field is None or isinstance(field, bool):
        return None
    try:
        return float(field)
    except (TypeError, ValueError):
        return None


def _first_not_none(*values: Optional[float]) -> Optional[float]:
    for value in values:
        if value is not None:
            return value
    return None


def _utc_date(epoch_seconds: int) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).date().isoformat()


def collapse_to_daily(points: List[HistoricalPoint]) -> List[HistoricalPoint]:
    """
    Collapses intraday bars into one point per calendar date.

    The daily point keeps the first open, the highest high, the lowest low,
    the last close and adjusted close, and the summed volume.
    """
    daily: Dict[str, HistoricalPoint] = {}
    for point in sorted(points, key=lambda p: p.timestamp):
        existing = daily.get(point.date)
        if existing is None:
            daily[point.date] = point
            continue
        daily[point.date] = HistoricalPoint(
            timestamp=existing.timestamp,
            date=existing.date,
            open=existing.open,
            high=max(existing.high, point.high),
            low=min(existing.low, point.low),
            close=point.close,
            volume=existing.volume + point.volume,
            adj_close=point.adj_close,
        )
    return list(daily.values())


class YahooFinanceGateway:
    """
    Quote, historical and fundamentals lookups against Yahoo Finance.

    Each operation tries the provider's response shapes in order (chart API on
    query1, chart API on query2, then the yfinance library) and returns the
    first usable result. Symbols are validated before any network call;
    `InvalidSymbolError` is the only exception that leaves this class.
    This class never touches the cache.
    """

    def __init__(
        self,
        timeout: int = Defaults.REQUEST_TIMEOUT,
        max_retries: int = Defaults.MAX_RETRIES,
        session: Optional[requests.Session] = None,
        use_yfinance_fallback: bool = True,
        clock: Callable[[], float] = time.time,
        pool_maxsize: int = 10,
    ) -> None:
        """
        Initializes the gateway.

        Args:
            timeout (int): Per-request timeout in seconds.
            max_retries (int): Retries for transient network errors.
            session (requests.Session): Optional pre-built session (tests).
            use_yfinance_fallback (bool): Whether yfinance is the last resort shape.
            clock: Time source used for crumb expiry.
            pool_maxsize (int): Max pooled connections per host.
        """
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.use_yfinance_fallback = use_yfinance_fallback
        self._clock = clock
        self.session = session or create_pooled_session(
            pool_maxsize=pool_maxsize,
            total_retries=self.max_retries,
            user_agent=ProviderEndpoints.USER_AGENT,
        )
        self._crumb: Optional[Tuple[str, float]] = None
        self._crumb_lock = Lock()

        # Transient network errors are retried; status retries live in the session adapter
        self._get_json = retry(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )(self._get_json_once)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_quote(self, symbol: str) -> FetchResult:
        """
        Fetches a quote snapshot.

        Args:
            symbol (str): Ticker symbol.

        Returns:
            FetchResult: AssetQuote on success, NOT_FOUND or PROVIDER_ERROR otherwise.

        Raises:
            InvalidSymbolError: If the symbol format is invalid.
        """
        symbol = validate_ticker_symbol(symbol)
        attempts = [
            (host, lambda host=host: self._chart_quote(host, symbol))
            for host in ProviderEndpoints.CHART_HOSTS
        ]
        if self.use_yfinance_fallback:
            attempts.append(("yfinance", lambda: self._yfinance_quote(symbol)))
        return self._first_success(symbol, "quote", attempts)

    def get_historical(self, symbol: str, range_spec: RangeSpec) -> FetchResult:
        """
        Fetches daily historical points for a named timeframe or explicit range.

        Explicit ranges include their end date. Points with a non-positive
        close are dropped.

        Args:
            symbol (str): Ticker symbol.
            range_spec (RangeSpec): Timeframe or start/end pair.

        Returns:
            FetchResult: List[HistoricalPoint] on success (possibly empty).

        Raises:
            InvalidSymbolError: If the symbol format is invalid.
        """
        symbol = validate_ticker_symbol(symbol)
        attempts = [
            (host, lambda host=host: self._chart_history(host, symbol, range_spec))
            for host in ProviderEndpoints.CHART_HOSTS
        ]
        if self.use_yfinance_fallback:
            attempts.append(("yfinance", lambda: self._yfinance_history(symbol, range_spec)))
        return self._first_success(symbol, "historical", attempts)

    def get_fundamentals(self, symbol: str) -> FetchResult:
        """
        Fetches extended ratios and classification for a symbol.

        Returns:
            FetchResult: Fundamentals on success, NOT_FOUND or PROVIDER_ERROR otherwise.

        Raises:
            InvalidSymbolError: If the symbol format is invalid.
        """
        symbol = validate_ticker_symbol(symbol)
        attempts = [("quoteSummary", lambda: self._quote_summary_fundamentals(symbol))]
        if self.use_yfinance_fallback:
            attempts.append(("yfinance", lambda: self._yfinance_fundamentals(symbol)))
        return self._first_success(symbol, "fundamentals", attempts)

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # Attempt handling
    # ------------------------------------------------------------------

    def _first_success(
        self,
        symbol: str,
        operation: str,
        attempts: List[Tuple[str, Callable[[], Any]]],
    ) -> FetchResult:
        """Runs attempts in order and returns the first success as a FetchResult."""
        not_found = False
        errors = []
        for name, attempt in attempts:
            try:
                data = attempt()
            except SymbolNotFoundError as e:
                not_found = True
                errors.append(f"{name}: {e}")
                logger.debug(f"{operation} for {symbol} not found via {name}: {e}")
            except ATTEMPT_ERRORS as e:
                errors.append(f"{name}: {e}")
                logger.warning(f"{operation} for {symbol} failed via {name}: {e}")
            else:
                logger.debug(f"Fetched {operation} for {symbol} via {name}")
                return FetchResult.success(symbol, data)

        message = "; ".join(errors) or "no provider attempts available"
        if not_found:
            return FetchResult.failure(
                symbol, FetchErrorKind.NOT_FOUND, f"Symbol {symbol} not found ({message})"
            )
        logger.error(f"All {operation} attempts failed for {symbol}: {message}")
        return FetchResult.failure(symbol, FetchErrorKind.PROVIDER_ERROR, message)

    def _get_json_once(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        if response.status_code == 404:
            raise SymbolNotFoundError("Symbol not found")
        if not response.ok:
            raise ProviderResponseError(f"HTTP {response.status_code} from {url}")
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderResponseError(f"Malformed JSON from {url}") from e
        if not isinstance(payload, dict):
            raise ProviderResponseError(f"Unexpected payload type from {url}")
        return payload

    # ------------------------------------------------------------------
    # Chart API shapes
    # ------------------------------------------------------------------

    def _chart_result(self, host: str, symbol: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = host + ProviderEndpoints.CHART_PATH.format(symbol=symbol)
        payload = self._get_json(url, params=params)

        chart = payload.get("chart")
        if not isinstance(chart, dict):
            raise ProviderResponseError("Response has no chart section")
        error = chart.get("error")
        if error:
            description = error.get("description") if isinstance(error, dict) else str(error)
            raise SymbolNotFoundError(description or "Symbol not found")
        results = chart.get("result")
        if not results:
            raise SymbolNotFoundError("Symbol not found")
        return results[0]

    def _chart_quote(self, host: str, symbol: str) -> AssetQuote:
        result = self._chart_result(host, symbol, {"interval": "1d", "range": "1d"})
        meta = result.get("meta") or {}

        # A price of 0 is allowed for inactive tickers; only a missing price is unusable
        price = _raw(meta.get("regularMarketPrice"))
        if price is None:
            raise SymbolNotFoundError("No price data available for this symbol")

        previous_close = _raw(meta.get("chartPreviousClose")) or 0.0
        change = price - previous_close
        change_percent = (change / previous_close) * 100 if previous_close > 0 else 0.0
        meta_symbol = str(meta.get("symbol") or symbol).upper()

        return AssetQuote(
            symbol=meta_symbol,
            name=meta.get("longName") or meta.get("shortName") or meta_symbol,
            asset_type=_map_instrument_type(meta.get("instrumentType")),
            price=price,
            previous_close=previous_close,
            change=change,
            change_percent=change_percent,
            fifty_two_week_high=_raw(meta.get("fiftyTwoWeekHigh")),
            fifty_two_week_low=_raw(meta.get("fiftyTwoWeekLow")),
        )

    @staticmethod
    def _chart_params(range_spec: RangeSpec) -> Dict[str, Any]:
        if range_spec.is_explicit:
            start = datetime.combine(range_spec.start, dt_time.min, tzinfo=timezone.utc)
            end = datetime.combine(range_spec.end, dt_time.min, tzinfo=timezone.utc)
            return {
                "interval": "1d",
                "period1": int(start.timestamp()),
                # One extra day makes the end date inclusive
                "period2": int(end.timestamp()) + TimeConstants.SECONDS_PER_DAY,
            }
        provider_range, interval = Timeframes.PROVIDER_PARAMS[range_spec.timeframe]
        return {"interval": interval, "range": provider_range}

    def _chart_history(self, host: str, symbol: str, range_spec: RangeSpec) -> List[HistoricalPoint]:
        params = self._chart_params(range_spec)
        result = self._chart_result(host, symbol, params)

        timestamps = result.get("timestamp") or []
        indicators = result.get("indicators") or {}
        quote = (indicators.get("quote") or [{}])[0] or {}
        adjclose = ((indicators.get("adjclose") or [{}])[0] or {}).get("adjclose") or []

        def value_at(series: List[Optional[float]], index: int) -> Optional[float]:
            return series[index] if index < len(series) else None

        points = []
        for index, ts in enumerate(timestamps):
            close = value_at(quote.get("close") or [], index)
            close = float(close) if close is not None else 0.0
            if close <= LimitsAndConstraints.MIN_VALID_CLOSE:
                continue
            adj = value_at(adjclose, index)
            points.append(
                HistoricalPoint(
                    timestamp=int(ts),
                    date=_utc_date(int(ts)),
                    open=float(value_at(quote.get("open") or [], index) or 0.0),
                    high=float(value_at(quote.get("high") or [], index) or 0.0),
                    low=float(value_at(quote.get("low") or [], index) or 0.0),
                    close=close,
                    volume=int(value_at(quote.get("volume") or [], index) or 0),
                    adj_close=float(adj) if adj is not None else close,
                )
            )

        if params["interval"] != "1d":
            points = collapse_to_daily(points)
        return points

    # ------------------------------------------------------------------
    # quoteSummary (fundamentals) with crumb authentication
    # ------------------------------------------------------------------

    def _get_crumb(self) -> str:
        """Returns a cached crumb, refreshing it through the cookie handshake when stale."""
        with self._crumb_lock:
            now = self._clock()
            if self._crumb and now - self._crumb[1] < LimitsAndConstraints.CRUMB_TTL_SECONDS:
                return self._crumb[0]

            # fc.yahoo.com answers 404 but sets the session cookies the crumb needs
            self.session.get(ProviderEndpoints.COOKIE_URL, timeout=self.timeout)
            response = self.session.get(ProviderEndpoints.CRUMB_URL, timeout=self.timeout)
            if not response.ok:
                raise ProviderResponseError(f"Failed to get crumb: HTTP {response.status_code}")
            crumb = (response.text or "").strip()
            if not crumb:
                raise ProviderResponseError("Empty crumb received")

            self._crumb = (crumb, now)
            logger.debug("Obtained Yahoo Finance crumb")
            return crumb

    def _invalidate_crumb(self) -> None:
        with self._crumb_lock:
            self._crumb = None

    def _quote_summary_fundamentals(self, symbol: str) -> Fundamentals:
        crumb = self._get_crumb()
        url = ProviderEndpoints.QUOTE_SUMMARY_URL.format(symbol=symbol)
        try:
            payload = self._get_json(
                url, params={"modules": ProviderEndpoints.QUOTE_SUMMARY_MODULES, "crumb": crumb}
            )
        except ProviderResponseError:
            # A rejected crumb is refreshed on the next call
            self._invalidate_crumb()
            raise

        summary = payload.get("quoteSummary")
        if not isinstance(summary, dict):
            raise ProviderResponseError("Response has no quoteSummary section")
        error = summary.get("error")
        if error:
            description = error.get("description") if isinstance(error, dict) else str(error)
            raise SymbolNotFoundError(description or "Symbol not found")
        results = summary.get("result")
        if not results:
            raise SymbolNotFoundError("No data available for this symbol")

        result = results[0]
        detail = result.get("summaryDetail") or {}
        stats = result.get("defaultKeyStatistics") or {}
        financial = result.get("financialData") or {}
        profile = result.get("assetProfile") or {}

        return Fundamentals(
            symbol=symbol,
            pe_ratio=_raw(detail.get("trailingPE")),
            forward_pe=_raw(detail.get("forwardPE")),
            eps=_raw(stats.get("trailingEps")),
            forward_eps=_raw(stats.get("forwardEps")),
            peg_ratio=_raw(stats.get("pegRatio")),
            price_to_book=_first_not_none(
                _raw(detail.get("priceToBook")), _raw(stats.get("priceToBook"))
            ),
            dividend_yield=_raw(detail.get("dividendYield")),
            beta=_first_not_none(_raw(detail.get("beta")), _raw(stats.get("beta"))),
            market_cap=_raw(detail.get("marketCap")),
            roe=_raw(financial.get("returnOnEquity")),
            roa=_raw(financial.get("returnOnAssets")),
            profit_margin=_raw(financial.get("profitMargins")),
            operating_margin=_raw(financial.get("operatingMargins")),
            gross_margin=_raw(financial.get("grossMargins")),
            debt_to_equity=_raw(financial.get("debtToEquity")),
            current_ratio=_raw(financial.get("currentRatio")),
            revenue_growth=_raw(financial.get("revenueGrowth")),
            earnings_growth=_raw(financial.get("earningsGrowth")),
            sector=profile.get("sector"),
            industry=profile.get("industry"),
        )

    # ------------------------------------------------------------------
    # yfinance shapes
    # ------------------------------------------------------------------

    def _yfinance_call(self, symbol: str, fetch: Callable[[Any], Any]) -> Any:
        """Runs a yfinance call, converting library failures into ProviderResponseError."""
        try:
            return fetch(yf.Ticker(symbol))
        except Exception as e:
            raise ProviderResponseError(f"yfinance error: {e}") from e

    def _yfinance_info(self, symbol: str) -> Dict[str, Any]:
        info = self._yfinance_call(symbol, lambda ticker: ticker.info)
        if not info or not isinstance(info, dict) or len(info) <= 1:
            raise SymbolNotFoundError("No info returned")
        return info

    def _yfinance_quote(self, symbol: str) -> AssetQuote:
        info = self._yfinance_info(symbol)
        price = _first_not_none(
            _raw(info.get("regularMarketPrice")), _raw(info.get("currentPrice"))
        )
        if price is None:
            raise SymbolNotFoundError("No price data available for this symbol")

        previous_close = _first_not_none(
            _raw(info.get("regularMarketPreviousClose")), _raw(info.get("previousClose"))
        ) or 0.0
        change = price - previous_close
        return AssetQuote(
            symbol=symbol,
            name=info.get("longName") or info.get("shortName") or symbol,
            asset_type=_map_instrument_type(info.get("quoteType")),
            price=price,
            previous_close=previous_close,
            change=change,
            change_percent=(change / previous_close) * 100 if previous_close > 0 else 0.0,
            market_cap=_raw(info.get("marketCap")),
            beta=_raw(info.get("beta")),
            pe_ratio=_raw(info.get("trailingPE")),
            dividend_yield=_raw(info.get("dividendYield")),
            fifty_two_week_high=_raw(info.get("fiftyTwoWeekHigh")),
            fifty_two_week_low=_raw(info.get("fiftyTwoWeekLow")),
        )

    def _yfinance_history(self, symbol: str, range_spec: RangeSpec) -> List[HistoricalPoint]:
        if range_spec.is_explicit:
            interval = "1d"
            kwargs = {
                "start": range_spec.start.isoformat(),
                "end": (range_spec.end + timedelta(days=1)).isoformat(),
            }
        else:
            provider_range, interval = Timeframes.PROVIDER_PARAMS[range_spec.timeframe]
            kwargs = {"period": provider_range}

        history = self._yfinance_call(
            symbol,
            lambda ticker: ticker.history(interval=interval, auto_adjust=False, **kwargs),
        )
        if history is None or history.empty:
            raise SymbolNotFoundError(f"No data for {symbol}")

        def cell(row: pd.Series, column: str) -> float:
            value = row.get(column)
            return 0.0 if value is None or pd.isna(value) else float(value)

        points = []
        for ts, row in history.iterrows():
            close = cell(row, "Close")
            if close <= LimitsAndConstraints.MIN_VALID_CLOSE:
                continue
            adj = cell(row, "Adj Close")
            points.append(
                HistoricalPoint(
                    timestamp=int(ts.timestamp()),
                    date=ts.date().isoformat(),
                    open=cell(row, "Open"),
                    high=cell(row, "High"),
                    low=cell(row, "Low"),
                    close=close,
                    volume=int(cell(row, "Volume")),
                    adj_close=adj if adj > 0 else close,
                )
            )

        if interval != "1d":
            points = collapse_to_daily(points)
        return points

    def _yfinance_fundamentals(self, symbol: str) -> Fundamentals:
        info = self._yfinance_info(symbol)
        return Fundamentals(
            symbol=symbol,
            pe_ratio=_raw(info.get("trailingPE")),
            forward_pe=_raw(info.get("forwardPE")),
            eps=_raw(info.get("trailingEps")),
            forward_eps=_raw(info.get("forwardEps")),
            peg_ratio=_first_not_none(
                _raw(info.get("pegRatio")), _raw(info.get("trailingPegRatio"))
            ),
            price_to_book=_raw(info.get("priceToBook")),
            dividend_yield=_raw(info.get("dividendYield")),
            beta=_raw(info.get("beta")),
            market_cap=_raw(info.get("marketCap")),
            roe=_raw(info.get("returnOnEquity")),
            roa=_raw(info.get("returnOnAssets")),
            profit_margin=_raw(info.get("profitMargins")),
            operating_margin=_raw(info.get("operatingMargins")),
            gross_margin=_raw(info.get("grossMargins")),
            debt_to_equity=_raw(info.get("debtToEquity")),
            current_ratio=_raw(info.get("currentRatio")),
            revenue_growth=_raw(info.get("revenueGrowth")),
            earnings_growth=_raw(info.get("earningsGrowth")),
            sector=info.get("sector"),
            industry=info.get("industry"),
        )


# ============================================================================
# CACHED FETCHER
# ============================================================================


def _encode(result: FetchResult) -> Dict[str, Any]:
    """Converts a FetchResult to a JSON-compatible dict for the cache."""
    if not result.ok:
        return {
            "ok": False,
            "error": result.error,
            "error_kind": result.error_kind.value if result.error_kind else None,
        }
    if isinstance(result.data, list):
        data = [asdict(point) for point in result.data]
    else:
        data = asdict(result.data)
    return {"ok": True, "data": data}


def _decode(symbol: str, payload: Dict[str, Any], data_type: str) -> FetchResult:
    if not payload.get("ok"):
        kind = payload.get("error_kind")
        return FetchResult.failure(
            symbol,
            FetchErrorKind(kind) if kind else FetchErrorKind.PROVIDER_ERROR,
            payload.get("error") or "Unknown error",
        )
    data = payload["data"]
    if data_type == "historical":
        return FetchResult.success(symbol, [HistoricalPoint.from_dict(p) for p in data])
    if data_type == "quote":
        return FetchResult.success(symbol, AssetQuote.from_dict(data))
    return FetchResult.success(symbol, Fundamentals.from_dict(data))


# Cached payloads that no longer match the record dataclasses
DECODE_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


def _is_success(payload: Dict[str, Any]) -> bool:
    return bool(payload.get("ok"))


class CachedDataFetcher:
    """Market data fetcher with two-tier caching and request de-duplication."""

    def __init__(
        self,
        gateway: YahooFinanceGateway,
        cache: TieredCache,
        ttl_seconds: Optional[float] = None,
        max_workers: int = Defaults.MAX_WORKERS,
    ) -> None:
        """
        Initializes the CachedDataFetcher.

        Args:
            gateway (YahooFinanceGateway): Provider access.
            cache (TieredCache): Cache placed in front of the gateway.
            ttl_seconds (float): TTL for cached lookups; defaults to the cache TTL.
            max_workers (int): Thread pool size for batch lookups.
        """
        self.gateway = gateway
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_workers = max(1, max_workers)

    def _cached(self, data_type: str, symbol: str, producer: Callable[[], FetchResult], *extra: str) -> FetchResult:
        key = cache_key("yahoo", data_type, symbol, *extra)
        payload = self.cache.get_or_compute(
            key,
            lambda: _encode(producer()),
            ttl_seconds=self.ttl_seconds,
            cacheable=_is_success,
        )
        try:
            return _decode(symbol, payload, data_type)
        except DECODE_ERRORS as e:
            # Entries written by an older record layout are refetched
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            self.cache.delete(key)

        payload = self.cache.get_or_compute(
            key,
            lambda: _encode(producer()),
            ttl_seconds=self.ttl_seconds,
            cacheable=_is_success,
        )
        return _decode(symbol, payload, data_type)

    def get_quote(self, symbol: str) -> FetchResult:
        """
        Fetches a quote, using the cache if available.

        Raises:
            InvalidSymbolError: If the symbol format is invalid.
        """
        symbol = validate_ticker_symbol(symbol)
        return self._cached("quote", symbol, lambda: self.gateway.get_quote(symbol))

    def get_historical(self, symbol: str, range_spec: RangeSpec) -> FetchResult:
        """
        Fetches historical points, using the cache if available.

        Raises:
            InvalidSymbolError: If the symbol format is invalid.
        """
        symbol = validate_ticker_symbol(symbol)
        return self._cached(
            "historical",
            symbol,
            lambda: self.gateway.get_historical(symbol, range_spec),
            range_spec.key,
        )

    def get_fundamentals(self, symbol: str) -> FetchResult:
        """
        Fetches fundamentals, using the cache if available.

        Raises:
            InvalidSymbolError: If the symbol format is invalid.
        """
        symbol = validate_ticker_symbol(symbol)
        return self._cached("fundamentals", symbol, lambda: self.gateway.get_fundamentals(symbol))

    def _fetch_many(self, symbols: List[str], fetch: Callable[[str], FetchResult]) -> Dict[str, FetchResult]:
        """Fetches unique symbols concurrently. Invalid symbols become INVALID_INPUT results."""
        results: Dict[str, FetchResult] = {}
        valid = []
        for raw_symbol in symbols:
            try:
                symbol = validate_ticker_symbol(raw_symbol)
            except InvalidSymbolError as e:
                results[str(raw_symbol)] = FetchResult.failure(
                    str(raw_symbol), FetchErrorKind.INVALID_INPUT, str(e)
                )
                continue
            if symbol not in valid:
                valid.append(symbol)

        if not valid:
            return results

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(valid))) as executor:
            futures = {symbol: executor.submit(fetch, symbol) for symbol in valid}
            for symbol, future in futures.items():
                try:
                    results[symbol] = future.result()
                except Exception as e:
                    # Failures stay per symbol
                    logger.error(f"Unexpected error fetching {symbol}: {e}")
                    results[symbol] = FetchResult.failure(
                        symbol, FetchErrorKind.PROVIDER_ERROR, f"Unexpected error: {e}"
                    )
        return results

    def get_many_fundamentals(self, symbols: List[str]) -> Dict[str, FetchResult]:
        """
        Fetches fundamentals for several symbols concurrently.

        Returns:
            Dict[str, FetchResult]: Results keyed by normalized symbol.
        """
        return self._fetch_many(symbols, self.get_fundamentals)

    def get_many_historical(self, symbols: List[str], range_spec: RangeSpec) -> Dict[str, FetchResult]:
        """
        Fetches historical points for several symbols concurrently.

        Returns:
            Dict[str, FetchResult]: Results keyed by normalized symbol.
        """
        return self._fetch_many(symbols, lambda symbol: self.get_historical(symbol, range_spec))

    def close(self) -> None:
        self.gateway.close()

    def __del__(self) -> None:
        """Cleanup: Close the session when object is destroyed."""
        if hasattr(self, "gateway"):
            try:
                self.gateway.close()
                logger.debug("Closed HTTP session pool")
            except Exception:
                pass  # Ignore errors during cleanup
