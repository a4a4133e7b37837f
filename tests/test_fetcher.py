"""
Tests for the Yahoo Finance gateway and the cached fetcher.

All network traffic is mocked at the requests.Session / yfinance boundary.
"""

import pytest
import pandas as pd
from datetime import date
from unittest.mock import Mock, patch

import requests

from cache import TieredCache
from constants import ProviderEndpoints
from fetcher import CachedDataFetcher, YahooFinanceGateway, collapse_to_daily
from models import (
    AssetQuote,
    FetchErrorKind,
    FetchResult,
    Fundamentals,
    HistoricalPoint,
    RangeSpec,
)
from persistence import FileKeyValueStore
from utils import InvalidSymbolError

# 2024-01-02 14:30 UTC
FIRST_TS = 1704205800
DAY = 86400


def _response(payload=None, status=200, text=""):
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 400
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def _chart_payload(closes, timestamps=None, meta=None, adjclose=None):
    timestamps = timestamps or [FIRST_TS + i * DAY for i in range(len(closes))]
    quote = {
        "open": list(closes),
        "high": [c + 1 if c else c for c in closes],
        "low": [c - 1 if c else c for c in closes],
        "close": list(closes),
        "volume": [1000] * len(closes),
    }
    indicators = {"quote": [quote]}
    if adjclose is not None:
        indicators["adjclose"] = [{"adjclose": adjclose}]
    return {
        "chart": {
            "result": [{"meta": meta or {}, "timestamp": timestamps, "indicators": indicators}],
            "error": None,
        }
    }


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def gateway(session):
    """Gateway without retries or the yfinance fallback."""
    return YahooFinanceGateway(timeout=5, max_retries=0, session=session, use_yfinance_fallback=False)


@pytest.fixture
def gateway_with_yfinance(session):
    return YahooFinanceGateway(timeout=5, max_retries=0, session=session)


class TestGatewayInitialization:
    """Test session and retry configuration."""

    def test_default_session_is_pooled(self):
        gateway = YahooFinanceGateway(max_retries=2)
        adapter = gateway.session.get_adapter("https://query1.finance.yahoo.com")

        assert adapter.max_retries.total == 2
        assert gateway.session.headers["User-Agent"] == ProviderEndpoints.USER_AGENT
        gateway.close()

    def test_negative_retries_clamped(self, session):
        gateway = YahooFinanceGateway(max_retries=-3, session=session)

        assert gateway.max_retries == 0


class TestQuote:
    """Test quote lookups through the chart API."""

    def test_parses_meta(self, gateway, session):
        session.get.return_value = _response(
            _chart_payload(
                [190.0],
                meta={
                    "symbol": "SPY",
                    "regularMarketPrice": 190.0,
                    "chartPreviousClose": 180.0,
                    "longName": "SPDR S&P 500 ETF Trust",
                    "instrumentType": "ETF",
                    "fiftyTwoWeekHigh": 200.0,
                },
            )
        )

        result = gateway.get_quote("spy")

        assert result.ok
        quote = result.data
        assert quote.symbol == "SPY"
        assert quote.name == "SPDR S&P 500 ETF Trust"
        assert quote.asset_type == "etf"
        assert quote.change == pytest.approx(10.0)
        assert quote.change_percent == pytest.approx(10.0 / 180.0 * 100)
        assert quote.fifty_two_week_high == 200.0

    def test_zero_price_is_a_valid_quote(self, gateway, session):
        session.get.return_value = _response(
            _chart_payload([], meta={"regularMarketPrice": 0, "chartPreviousClose": 0})
        )

        result = gateway.get_quote("DEAD")

        assert result.ok
        assert result.data.price == 0.0
        assert result.data.change_percent == 0.0

    def test_missing_price_is_not_found(self, gateway, session):
        session.get.return_value = _response(_chart_payload([], meta={"symbol": "XYZ"}))

        result = gateway.get_quote("XYZ")

        assert not result.ok
        assert result.error_kind == FetchErrorKind.NOT_FOUND

    def test_http_404_is_not_found(self, gateway, session):
        session.get.return_value = _response(status=404)

        result = gateway.get_quote("NOPE")

        assert result.error_kind == FetchErrorKind.NOT_FOUND

    def test_server_errors_are_provider_errors(self, gateway, session):
        session.get.return_value = _response(status=500)

        result = gateway.get_quote("AAPL")

        assert result.error_kind == FetchErrorKind.PROVIDER_ERROR
        assert session.get.call_count == len(ProviderEndpoints.CHART_HOSTS)

    def test_malformed_json_is_provider_error(self, gateway, session):
        session.get.return_value = _response(ValueError("bad json"))

        result = gateway.get_quote("AAPL")

        assert result.error_kind == FetchErrorKind.PROVIDER_ERROR

    def test_falls_back_to_second_host(self, gateway, session):
        session.get.side_effect = [
            requests.ConnectionError("reset"),
            _response(_chart_payload([1.0], meta={"regularMarketPrice": 101.0})),
        ]

        result = gateway.get_quote("AAPL")

        assert result.ok
        assert result.data.price == 101.0
        second_url = session.get.call_args_list[1].args[0]
        assert second_url.startswith(ProviderEndpoints.CHART_HOSTS[1])

    def test_invalid_symbol_raises_before_network(self, gateway, session):
        with pytest.raises(InvalidSymbolError):
            gateway.get_quote("BAD SYMBOL!")

        session.get.assert_not_called()

    def test_yfinance_is_last_resort(self, gateway_with_yfinance, session):
        session.get.return_value = _response(status=503)

        with patch("fetcher.yf.Ticker") as mock_ticker:
            mock_ticker.return_value.info = {
                "regularMarketPrice": 50.0,
                "previousClose": 40.0,
                "shortName": "Example Corp",
                "quoteType": "EQUITY",
                "beta": 1.3,
            }
            result = gateway_with_yfinance.get_quote("EXMP")

        assert result.ok
        assert result.data.name == "Example Corp"
        assert result.data.change_percent == pytest.approx(25.0)
        assert result.data.beta == 1.3

    def test_not_found_wins_over_provider_errors(self, gateway_with_yfinance, session):
        session.get.side_effect = [_response(status=404), _response(status=500)]

        with patch("fetcher.yf.Ticker") as mock_ticker:
            mock_ticker.side_effect = RuntimeError("rate limited")
            result = gateway_with_yfinance.get_quote("GONE")

        assert result.error_kind == FetchErrorKind.NOT_FOUND


class TestHistorical:
    """Test historical lookups."""

    def test_named_timeframe_params(self, gateway, session):
        session.get.return_value = _response(_chart_payload([10.0, 11.0]))

        gateway.get_historical("AAPL", RangeSpec.named("3M"))

        params = session.get.call_args.kwargs["params"]
        assert params == {"interval": "1d", "range": "3mo"}

    def test_explicit_range_includes_end_date(self, gateway, session):
        session.get.return_value = _response(_chart_payload([10.0]))

        gateway.get_historical("AAPL", RangeSpec.between(date(2024, 1, 2), date(2024, 1, 5)))

        params = session.get.call_args.kwargs["params"]
        assert params["period1"] == 1704153600  # 2024-01-02 00:00 UTC
        assert params["period2"] == 1704412800 + DAY  # 2024-01-05 00:00 UTC + 1 day

    def test_points_parsed_and_invalid_closes_dropped(self, gateway, session):
        session.get.return_value = _response(
            _chart_payload([100.0, None, 0.0, 102.0], adjclose=[99.0, None, None, None])
        )

        result = gateway.get_historical("AAPL", RangeSpec.named("1M"))

        assert result.ok
        points = result.data
        assert [p.close for p in points] == [100.0, 102.0]
        assert [p.date for p in points] == ["2024-01-02", "2024-01-05"]
        assert points[0].adj_close == 99.0
        assert points[1].adj_close == 102.0  # falls back to close

    def test_out_of_range_timestamp_is_provider_error(self, gateway, session):
        session.get.return_value = _response(_chart_payload([10.0], timestamps=[10**20]))

        result = gateway.get_historical("AAPL", RangeSpec.named("1M"))

        assert result.error_kind == FetchErrorKind.PROVIDER_ERROR

    def test_empty_history_is_success(self, gateway, session):
        session.get.return_value = _response(_chart_payload([]))

        result = gateway.get_historical("AAPL", RangeSpec.named("1M"))

        assert result.ok
        assert result.data == []

    def test_chart_error_is_not_found(self, gateway, session):
        session.get.return_value = _response(
            {"chart": {"result": None, "error": {"code": "Not Found", "description": "No data found"}}}
        )

        result = gateway.get_historical("ZZZZ", RangeSpec.named("1M"))

        assert result.error_kind == FetchErrorKind.NOT_FOUND

    def test_hourly_bars_collapse_to_daily(self, gateway, session):
        timestamps = [FIRST_TS, FIRST_TS + 3600, FIRST_TS + DAY]
        session.get.return_value = _response(_chart_payload([10.0, 12.0, 11.0], timestamps=timestamps))

        result = gateway.get_historical("AAPL", RangeSpec.named("1W"))

        assert session.get.call_args.kwargs["params"] == {"interval": "1h", "range": "5d"}
        assert [(p.date, p.close) for p in result.data] == [("2024-01-02", 12.0), ("2024-01-03", 11.0)]

    def test_yfinance_history_fallback(self, gateway_with_yfinance, session):
        session.get.return_value = _response(status=500)
        index = pd.DatetimeIndex(["2024-01-02", "2024-01-03"], tz="America/New_York")
        frame = pd.DataFrame(
            {
                "Open": [1.0, 2.0],
                "High": [1.5, 2.5],
                "Low": [0.5, 1.5],
                "Close": [1.2, float("nan")],
                "Adj Close": [1.1, 2.1],
                "Volume": [100, 200],
            },
            index=index,
        )

        with patch("fetcher.yf.Ticker") as mock_ticker:
            mock_ticker.return_value.history.return_value = frame
            result = gateway_with_yfinance.get_historical(
                "AAPL", RangeSpec.between(date(2024, 1, 2), date(2024, 1, 3))
            )

        assert result.ok
        assert [(p.date, p.close) for p in result.data] == [("2024-01-02", 1.2)]
        kwargs = mock_ticker.return_value.history.call_args.kwargs
        assert kwargs["start"] == "2024-01-02"
        assert kwargs["end"] == "2024-01-04"


class TestCollapseToDaily:
    def test_ohlcv_aggregation(self):
        points = [
            HistoricalPoint(2, "2024-01-02", 11.0, 15.0, 10.0, 14.0, 5, 14.0),
            HistoricalPoint(1, "2024-01-02", 10.0, 12.0, 9.0, 11.0, 3, 11.0),
        ]

        (daily,) = collapse_to_daily(points)

        assert daily.open == 10.0
        assert daily.high == 15.0
        assert daily.low == 9.0
        assert daily.close == 14.0
        assert daily.volume == 8


class TestFundamentals:
    """Test quoteSummary fundamentals with the crumb handshake."""

    @pytest.fixture
    def summary_payload(self):
        return {
            "quoteSummary": {
                "result": [
                    {
                        "summaryDetail": {"trailingPE": {"raw": 28.5, "fmt": "28.50"}, "dividendYield": {"raw": 0.005}},
                        "defaultKeyStatistics": {"beta": {"raw": 1.2}, "priceToBook": {"raw": 40.1}, "trailingEps": {"raw": 6.4}},
                        "financialData": {"returnOnEquity": {"raw": 1.5}, "profitMargins": {"raw": 0.25}},
                        "assetProfile": {"sector": "Technology", "industry": "Consumer Electronics"},
                    }
                ],
                "error": None,
            }
        }

    def _route(self, summary_response, crumb_status=200):
        def route(url, params=None, headers=None, timeout=None):
            if url == ProviderEndpoints.COOKIE_URL:
                return _response(status=404)
            if url == ProviderEndpoints.CRUMB_URL:
                return _response(status=crumb_status, text="crumb-abc")
            return summary_response

        return route

    def test_parses_modules_with_fallbacks(self, gateway, session, summary_payload):
        session.get.side_effect = self._route(_response(summary_payload))

        result = gateway.get_fundamentals("AAPL")

        assert result.ok
        data = result.data
        assert data.pe_ratio == 28.5
        assert data.beta == 1.2  # from defaultKeyStatistics
        assert data.price_to_book == 40.1
        assert data.eps == 6.4
        assert data.sector == "Technology"
        summary_call = session.get.call_args_list[-1]
        assert summary_call.kwargs["params"]["crumb"] == "crumb-abc"

    def test_crumb_reused_within_ttl(self, gateway, session, summary_payload):
        session.get.side_effect = self._route(_response(summary_payload))

        gateway.get_fundamentals("AAPL")
        gateway.get_fundamentals("MSFT")

        crumb_calls = [c for c in session.get.call_args_list if c.args[0] == ProviderEndpoints.CRUMB_URL]
        assert len(crumb_calls) == 1

    def test_rejected_crumb_invalidated(self, gateway, session, summary_payload):
        session.get.side_effect = self._route(_response(status=401))

        result = gateway.get_fundamentals("AAPL")

        assert result.error_kind == FetchErrorKind.PROVIDER_ERROR
        assert gateway._crumb is None

    def test_crumb_failure_falls_back_to_yfinance(self, gateway_with_yfinance, session):
        session.get.side_effect = self._route(_response(status=500), crumb_status=403)

        with patch("fetcher.yf.Ticker") as mock_ticker:
            mock_ticker.return_value.info = {"trailingPE": 20.0, "beta": 0.9, "sector": "Energy"}
            result = gateway_with_yfinance.get_fundamentals("XOM")

        assert result.ok
        assert result.data.pe_ratio == 20.0
        assert result.data.sector == "Energy"


@pytest.fixture
def mock_gateway():
    return Mock(spec=YahooFinanceGateway)


@pytest.fixture
def cached_fetcher(mock_gateway):
    return CachedDataFetcher(mock_gateway, TieredCache(default_ttl_seconds=60), max_workers=4)


def _points(*closes):
    return [
        HistoricalPoint(FIRST_TS + i * DAY, f"2024-01-{2 + i:02d}", c, c, c, c, 100, c)
        for i, c in enumerate(closes)
    ]


class TestCachedDataFetcher:
    """Test caching and batching on top of the gateway."""

    def test_successful_quote_cached(self, cached_fetcher, mock_gateway):
        mock_gateway.get_quote.return_value = FetchResult.success(
            "AAPL", AssetQuote(symbol="AAPL", name="Apple", asset_type="stock", price=190.0)
        )

        first = cached_fetcher.get_quote("aapl")
        second = cached_fetcher.get_quote("AAPL")

        assert first.data == second.data
        assert second.data.name == "Apple"
        mock_gateway.get_quote.assert_called_once_with("AAPL")

    def test_failures_not_cached(self, cached_fetcher, mock_gateway):
        mock_gateway.get_fundamentals.return_value = FetchResult.failure(
            "AAPL", FetchErrorKind.PROVIDER_ERROR, "down"
        )

        result = cached_fetcher.get_fundamentals("AAPL")
        cached_fetcher.get_fundamentals("AAPL")

        assert result.error_kind == FetchErrorKind.PROVIDER_ERROR
        assert mock_gateway.get_fundamentals.call_count == 2

    def test_historical_keyed_by_range(self, cached_fetcher, mock_gateway):
        mock_gateway.get_historical.side_effect = lambda symbol, range_spec: FetchResult.success(
            symbol, _points(1.0, 2.0)
        )

        cached_fetcher.get_historical("AAPL", RangeSpec.named("1M"))
        cached_fetcher.get_historical("AAPL", RangeSpec.named("1M"))
        cached_fetcher.get_historical("AAPL", RangeSpec.named("3M"))

        assert mock_gateway.get_historical.call_count == 2

    def test_get_many_dedups_and_flags_invalid(self, cached_fetcher, mock_gateway):
        mock_gateway.get_historical.side_effect = lambda symbol, range_spec: FetchResult.success(
            symbol, _points(1.0)
        )

        results = cached_fetcher.get_many_historical(["aapl", "AAPL", "MSFT", "bad sym"], RangeSpec.named("1M"))

        assert set(results) == {"AAPL", "MSFT", "bad sym"}
        assert results["bad sym"].error_kind == FetchErrorKind.INVALID_INPUT
        assert mock_gateway.get_historical.call_count == 2

    def test_get_many_fundamentals(self, cached_fetcher, mock_gateway):
        mock_gateway.get_fundamentals.side_effect = lambda symbol: FetchResult.success(
            symbol, Fundamentals(symbol=symbol, beta=1.1)
        )

        results = cached_fetcher.get_many_fundamentals(["AAPL", "MSFT"])

        assert results["MSFT"].data.beta == 1.1

    def test_invalid_symbol_raises(self, cached_fetcher, mock_gateway):
        with pytest.raises(InvalidSymbolError):
            cached_fetcher.get_quote("")

        mock_gateway.get_quote.assert_not_called()

    def test_persisted_results_decode_to_records(self, tmp_path, mock_gateway):
        store = FileKeyValueStore(str(tmp_path / ".cache"))
        mock_gateway.get_historical.return_value = FetchResult.success("AAPL", _points(1.0, 2.0))

        CachedDataFetcher(mock_gateway, TieredCache(store=store)).get_historical("AAPL", RangeSpec.named("1M"))
        reread = CachedDataFetcher(mock_gateway, TieredCache(store=store)).get_historical(
            "AAPL", RangeSpec.named("1M")
        )

        assert reread.data == _points(1.0, 2.0)
        mock_gateway.get_historical.assert_called_once()

    def test_undecodable_cache_entry_refetched(self, mock_gateway):
        cache = TieredCache(default_ttl_seconds=60)
        cache.set("yahoo:historical:AAPL:1M", {"ok": True, "data": [{"close": 1.0, "split": 2}]})
        mock_gateway.get_historical.return_value = FetchResult.success("AAPL", _points(1.0, 2.0))

        result = CachedDataFetcher(mock_gateway, cache).get_historical("AAPL", RangeSpec.named("1M"))

        assert result.data == _points(1.0, 2.0)
        mock_gateway.get_historical.assert_called_once()
        assert "timestamp" in cache.get("yahoo:historical:AAPL:1M")["data"][0]

    def test_unexpected_error_stays_with_its_symbol(self, cached_fetcher, mock_gateway):
        def get_historical(symbol, range_spec):
            if symbol == "MSFT":
                raise RuntimeError("boom")
            return FetchResult.success(symbol, _points(1.0))

        mock_gateway.get_historical.side_effect = get_historical

        results = cached_fetcher.get_many_historical(["AAPL", "MSFT"], RangeSpec.named("1M"))

        assert results["AAPL"].ok
        assert results["MSFT"].error_kind == FetchErrorKind.PROVIDER_ERROR
        assert "boom" in results["MSFT"].error
