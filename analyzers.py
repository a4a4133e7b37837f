"""
Performance analysis components.
"""

import math
import logging
from dataclasses import replace
from typing import Dict, List, Optional

import numpy as np

from constants import Defaults, TimeConstants
from models import (
    AggregateFundamentals,
    Fundamentals,
    NormalizedSeriesPoint,
    PerformanceMetrics,
    PortfolioHolding,
)

logger = logging.getLogger(__name__)

# Aggregate field -> Fundamentals attribute it averages
WEIGHTED_FIELDS = {
    "weighted_pe": "pe_ratio",
    "weighted_eps": "eps",
    "weighted_roe": "roe",
    "weighted_margin": "profit_margin",
    "weighted_debt_to_equity": "debt_to_equity",
    "weighted_peg": "peg_ratio",
    "weighted_price_to_book": "price_to_book",
    "weighted_dividend_yield": "dividend_yield",
    "weighted_beta": "beta",
}


def _finite_or(value: Optional[float], default: Optional[float]) -> Optional[float]:
    if value is None:
        return default
    value = float(value)
    return value if math.isfinite(value) else default


class PerformanceAnalyzer:
    """Risk and return metrics for normalized series and weighted holdings."""

    def __init__(
        self,
        risk_free_rate: float = Defaults.RISK_FREE_RATE,
        initial_investment: float = Defaults.INITIAL_INVESTMENT,
    ) -> None:
        """
        Initializes the PerformanceAnalyzer.

        Args:
            risk_free_rate (float): Annual risk-free rate used by the Sharpe ratio.
            initial_investment (float): Notional amount represented by index 100.
        """
        self.risk_free_rate = risk_free_rate
        self.initial_investment = initial_investment

    def compute_metrics(self, series: List[NormalizedSeriesPoint]) -> PerformanceMetrics:
        """
        Computes return, volatility, Sharpe ratio, max drawdown and win rate.

        Volatility and Sharpe are annualized over 252 trading days using the
        sample standard deviation of simple daily returns. Degenerate inputs
        (fewer than two points, zero denominators) produce 0 rather than NaN.

        Args:
            series (List[NormalizedSeriesPoint]): Ascending base-100 series.

        Returns:
            PerformanceMetrics: The computed metrics.
        """
        if not series:
            return PerformanceMetrics(total_value=self.initial_investment)

        values = [float(point.index_value) for point in series]
        total_value = _finite_or(
            self.initial_investment * values[-1] / Defaults.BASE_INDEX, self.initial_investment
        )

        if len(values) < TimeConstants.MIN_POINTS_FOR_METRICS:
            return PerformanceMetrics(
                total_value=total_value,
                total_return=total_value - self.initial_investment,
                data_points=len(values),
            )

        first, last = values[0], values[-1]
        total_return_percent = (last - first) / first * 100 if first != 0 else 0.0

        daily_returns = self._daily_returns(values)
        volatility, sharpe, win_rate = 0.0, 0.0, 0.0
        if daily_returns.size > 0:
            annualizer = math.sqrt(TimeConstants.TRADING_DAYS_PER_YEAR)
            mean_return = float(daily_returns.mean())
            std_dev = self._sample_std(daily_returns, mean_return)

            volatility = std_dev * annualizer * 100
            sharpe = (mean_return * TimeConstants.TRADING_DAYS_PER_YEAR - self.risk_free_rate) / (
                std_dev * annualizer or 1
            )
            win_rate = float((daily_returns > 0).sum()) / daily_returns.size * 100

        return PerformanceMetrics(
            total_return_percent=_finite_or(total_return_percent, 0.0),
            volatility=_finite_or(volatility, 0.0),
            sharpe_ratio=_finite_or(sharpe, 0.0),
            max_drawdown=_finite_or(self._max_drawdown(values), 0.0),
            win_rate=_finite_or(win_rate, 0.0),
            total_value=total_value,
            total_return=total_value - self.initial_investment,
            data_points=len(values),
        )

    @staticmethod
    def _daily_returns(values: List[float]) -> np.ndarray:
        """Simple returns between consecutive values, skipping non-positive bases."""
        array = np.asarray(values, dtype="float64")
        previous, current = array[:-1], array[1:]
        mask = previous > 0
        return (current[mask] - previous[mask]) / previous[mask]

    @staticmethod
    def _sample_std(returns: np.ndarray, mean_return: float) -> float:
        # Divide by n-1; a single return has no spread
        denominator = (returns.size - 1) or 1
        variance = float(((returns - mean_return) ** 2).sum()) / denominator
        return math.sqrt(variance)

    @staticmethod
    def _max_drawdown(values: List[float]) -> float:
        """Largest peak-to-trough decline as a percentage of the running peak."""
        array = np.asarray(values, dtype="float64")
        peaks = np.maximum.accumulate(array)
        valid = peaks > 0
        if not valid.any():
            return 0.0
        drawdowns = (peaks[valid] - array[valid]) / peaks[valid] * 100
        return float(drawdowns.max())

    @staticmethod
    def compute_alpha(
        portfolio_return: Optional[float],
        portfolio_beta: float,
        benchmark_return: Optional[float],
        risk_free_return: float = 0.0,
    ) -> Optional[float]:
        """
        CAPM-style excess return, in percentage points.

        alpha = portfolio_return - (rf + beta * (benchmark_return - rf))

        Args:
            portfolio_return: Portfolio return over the period (%).
            portfolio_beta: Portfolio beta.
            benchmark_return: Benchmark return over the period (%), or None.
            risk_free_return: Risk-free return over the same period (%).

        Returns:
            Optional[float]: Alpha, or None when the benchmark return is unavailable.
        """
        if benchmark_return is None or portfolio_return is None:
            return None
        alpha = portfolio_return - (
            risk_free_return + portfolio_beta * (benchmark_return - risk_free_return)
        )
        return _finite_or(alpha, None)

    def period_risk_free_return(self, series: List[NormalizedSeriesPoint]) -> float:
        """Risk-free return (%) over the calendar span of the series."""
        if len(series) < 2:
            return 0.0
        first = np.datetime64(series[0].date)
        last = np.datetime64(series[-1].date)
        days = int((last - first) / np.timedelta64(1, "D"))
        return self.risk_free_rate * 100 * max(days, 0) / TimeConstants.CALENDAR_DAYS_PER_YEAR

    @staticmethod
    def compute_aggregate_fundamentals(
        holdings: List[PortfolioHolding], fundamentals: Dict[str, Fundamentals]
    ) -> AggregateFundamentals:
        """
        Allocation-weighted averages of fundamental fields.

        Each field only averages over holdings that report it; a field no
        holding reports stays None.

        Args:
            holdings: Holdings with allocation percentages.
            fundamentals: Fundamentals keyed by symbol.

        Returns:
            AggregateFundamentals: The weighted fields.
        """
        aggregates = {}
        for aggregate_field, source_field in WEIGHTED_FIELDS.items():
            weighted_sum = 0.0
            weight_total = 0.0
            for holding in holdings:
                data = fundamentals.get(holding.symbol.upper())
                if data is None:
                    continue
                value = _finite_or(getattr(data, source_field), None)
                if value is None:
                    continue
                weighted_sum += value * holding.allocation
                weight_total += holding.allocation
            aggregates[aggregate_field] = (
                _finite_or(weighted_sum / weight_total, None) if weight_total > 0 else None
            )
        return AggregateFundamentals(**aggregates)

    @staticmethod
    def compute_portfolio_beta(
        holdings: List[PortfolioHolding], fundamentals: Dict[str, Fundamentals]
    ) -> float:
        """Allocation-weighted beta of the holdings that report one; 1.0 when none do."""
        weighted = PerformanceAnalyzer.compute_aggregate_fundamentals(holdings, fundamentals)
        return weighted.weighted_beta if weighted.weighted_beta is not None else Defaults.DEFAULT_BETA

    def analyze(
        self,
        series: List[NormalizedSeriesPoint],
        holdings: Optional[List[PortfolioHolding]] = None,
        fundamentals: Optional[Dict[str, Fundamentals]] = None,
        benchmark_return: Optional[float] = None,
    ) -> PerformanceMetrics:
        """
        Computes series metrics enriched with beta, alpha and weighted fundamentals.

        Args:
            series: Ascending base-100 series.
            holdings: Holdings that produced the series.
            fundamentals: Fundamentals keyed by symbol.
            benchmark_return: Benchmark return over the same range (%).

        Returns:
            PerformanceMetrics: The combined metrics.
        """
        metrics = self.compute_metrics(series)
        holdings = holdings or []
        fundamentals = fundamentals or {}

        aggregates = self.compute_aggregate_fundamentals(holdings, fundamentals)
        beta = (
            aggregates.weighted_beta
            if aggregates.weighted_beta is not None
            else Defaults.DEFAULT_BETA
        )
        alpha = None
        if series:
            alpha = self.compute_alpha(
                metrics.total_return_percent,
                beta,
                benchmark_return,
                self.period_risk_free_return(series),
            )

        return replace(
            metrics,
            beta=beta,
            alpha=alpha,
            benchmark_return=benchmark_return,
            fundamentals=aggregates,
        )
