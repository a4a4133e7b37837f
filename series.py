"""
Historical series building: aligns holdings on date and rebases them to 100.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from constants import Defaults
from fetcher import CachedDataFetcher
from models import FetchErrorKind, HistoricalPoint, NormalizedSeriesPoint, PortfolioHolding, RangeSpec
from utils import InvalidSymbolError, validate_ticker_symbol

logger = logging.getLogger(__name__)


@dataclass
class SeriesBuildResult:
    """Weighted series plus the holdings that contributed to it."""

    series: List[NormalizedSeriesPoint]
    holdings: List[PortfolioHolding]
    dropped: Dict[str, str] = field(default_factory=dict)
    error_kind: Optional[FetchErrorKind] = None

    @property
    def empty(self) -> bool:
        return not self.series


def _merge_holdings(holdings: List[PortfolioHolding], dropped: Dict[str, str]) -> Dict[str, float]:
    """Validates symbols and sums allocations of repeated symbols, keeping first-seen order."""
    allocations: Dict[str, float] = {}
    for holding in holdings:
        try:
            symbol = validate_ticker_symbol(holding.symbol)
        except InvalidSymbolError as e:
            dropped[str(holding.symbol)] = str(e)
            continue
        allocations[symbol] = allocations.get(symbol, 0.0) + float(holding.allocation)
    return allocations


def _close_series(points: List[HistoricalPoint]) -> pd.Series:
    closes = pd.Series(
        [point.close for point in points],
        index=[point.date for point in points],
        dtype="float64",
    )
    closes = closes[~closes.index.duplicated(keep="last")].sort_index()
    return closes[closes > 0]


class PortfolioSeriesBuilder:
    """Builds base-100 portfolio series from weighted holdings."""

    def __init__(self, fetcher: CachedDataFetcher) -> None:
        self.fetcher = fetcher

    def build_portfolio_series(
        self, holdings: List[PortfolioHolding], range_spec: RangeSpec
    ) -> List[NormalizedSeriesPoint]:
        """
        Builds the weighted, normalized series of a portfolio.

        Args:
            holdings (List[PortfolioHolding]): Symbols with allocation percentages.
            range_spec (RangeSpec): Date range to cover.

        Returns:
            List[NormalizedSeriesPoint]: Ascending points; empty when no data is available.
        """
        return self.build(holdings, range_spec).series

    def build_symbol_series(self, symbol: str, range_spec: RangeSpec) -> SeriesBuildResult:
        """Builds the normalized series of a single symbol."""
        return self.build([PortfolioHolding(symbol=symbol, allocation=100.0)], range_spec)

    def build(self, holdings: List[PortfolioHolding], range_spec: RangeSpec) -> SeriesBuildResult:
        """
        Builds a series and reports which holdings survived.

        Holdings whose fetch failed or returned no points are dropped, and
        the remaining allocations are renormalized over the survivors. Only
        dates on which every surviving holding has a close are kept.

        Args:
            holdings (List[PortfolioHolding]): Symbols with allocation percentages.
            range_spec (RangeSpec): Date range to cover.

        Returns:
            SeriesBuildResult: The series, surviving holdings and drop reasons.
        """
        dropped: Dict[str, str] = {}
        allocations = _merge_holdings(holdings, dropped)
        if not allocations:
            kind = FetchErrorKind.INVALID_INPUT if dropped else None
            return SeriesBuildResult(series=[], holdings=[], dropped=dropped, error_kind=kind)

        results = self.fetcher.get_many_historical(list(allocations.keys()), range_spec)

        normalized: Dict[str, pd.Series] = {}
        error_kinds = set()
        for symbol in allocations:
            result = results.get(symbol)
            if result is None or not result.ok:
                reason = result.error if result is not None else "no result"
                dropped[symbol] = reason
                if result is not None and result.error_kind:
                    error_kinds.add(result.error_kind)
                continue
            closes = _close_series(result.data)
            if closes.empty:
                dropped[symbol] = "no historical data in range"
                error_kinds.add(FetchErrorKind.NOT_FOUND)
                continue
            # Each holding is rebased on its own first available close
            normalized[symbol] = closes / closes.iloc[0] * Defaults.BASE_INDEX

        for symbol, reason in dropped.items():
            logger.warning(f"Dropping holding {symbol} from series: {reason}")

        if not normalized:
            kind = (
                FetchErrorKind.PROVIDER_ERROR
                if FetchErrorKind.PROVIDER_ERROR in error_kinds
                else FetchErrorKind.NOT_FOUND
            )
            return SeriesBuildResult(series=[], holdings=[], dropped=dropped, error_kind=kind)

        survivors = [
            PortfolioHolding(symbol=symbol, allocation=allocations[symbol]) for symbol in normalized
        ]
        weights = pd.Series({holding.symbol: holding.allocation for holding in survivors}, dtype="float64")
        total_allocation = float(weights.sum())
        if total_allocation <= 0:
            logger.warning("Surviving holdings have no positive allocation, weighting equally")
            weights = pd.Series(1.0, index=weights.index)
            total_allocation = float(len(weights))

        # Strict intersection: dates missing for any survivor are excluded
        frame = pd.concat(normalized, axis=1).sort_index().dropna(how="any")
        if frame.empty:
            logger.warning("Holdings share no common dates in range")
            return SeriesBuildResult(series=[], holdings=survivors, dropped=dropped)

        index_values = (frame * weights[frame.columns]).sum(axis=1) / total_allocation

        series = [
            NormalizedSeriesPoint(
                date=str(day),
                index_value=float(value),
                return_from_start=float(value) - Defaults.BASE_INDEX,
            )
            for day, value in index_values.items()
        ]
        logger.debug(
            f"Built series with {len(series)} points from {len(survivors)} holdings "
            f"({range_spec})"
        )
        return SeriesBuildResult(series=series, holdings=survivors, dropped=dropped)
