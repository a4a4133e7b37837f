"""
Comparison orchestrator coordinating series building and metrics.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, NamedTuple, Optional, Union
from concurrent.futures import ThreadPoolExecutor, as_completed

from analyzers import PerformanceAnalyzer
from config import Config
from constants import BENCHMARKS, TimeConstants
from fetcher import CachedDataFetcher
from models import (
    ComparisonRequest,
    ComparisonResult,
    FetchErrorKind,
    Fundamentals,
    MetricRow,
    NormalizedSeriesPoint,
    ParticipantResult,
    ParticipantSpec,
    ParticipantType,
    PortfolioHolding,
    RangeSpec,
    SkippedParticipant,
)
from persistence import PortfolioRepository, UnconfiguredPortfolioRepository
from series import PortfolioSeriesBuilder
from utils import InvalidSymbolError, is_before_creation, parse_date

logger = logging.getLogger(__name__)


class MetricDefinition(NamedTuple):
    metric: str  # PerformanceMetrics attribute
    label: str
    higher_is_better: bool


METRIC_DEFINITIONS = [
    MetricDefinition("total_value", "Total Value", True),
    MetricDefinition("total_return_percent", "Total Return %", True),
    MetricDefinition("sharpe_ratio", "Sharpe Ratio", True),
    MetricDefinition("beta", "Beta", False),
    MetricDefinition("volatility", "Volatility %", False),
    MetricDefinition("max_drawdown", "Max Drawdown %", False),
    MetricDefinition("win_rate", "Win Rate %", True),
    MetricDefinition("alpha", "Alpha", True),
]


def pick_best(values: Dict[str, Optional[float]], higher_is_better: bool) -> Optional[str]:
    """
    Key of the best value. The first occurrence wins ties and None never wins.

    Returns:
        Optional[str]: The best key, or None when fewer than two values are present.
    """
    present = [(key, value) for key, value in values.items() if value is not None]
    if len(present) < 2:
        return None

    best_key, best_value = present[0]
    for key, value in present[1:]:
        if (value > best_value) if higher_is_better else (value < best_value):
            best_key, best_value = key, value
    return best_key


def build_metric_rows(participants: List[ParticipantResult]) -> List[MetricRow]:
    """One row per metric, one column per participant, with the best column flagged."""
    rows = []
    for definition in METRIC_DEFINITIONS:
        values = {
            result.key: getattr(result.metrics, definition.metric) for result in participants
        }
        rows.append(
            MetricRow(
                metric=definition.metric,
                label=definition.label,
                higher_is_better=definition.higher_is_better,
                values=values,
                best=pick_best(values, definition.higher_is_better),
            )
        )
    return rows


def series_return(series: List[NormalizedSeriesPoint]) -> Optional[float]:
    """Return (%) from the first to the last point, or None with fewer than two points."""
    if len(series) < TimeConstants.MIN_POINTS_FOR_PERIOD_RETURN:
        return None
    first, last = series[0].index_value, series[-1].index_value
    if first <= 0:
        return None
    return (last - first) / first * 100


@dataclass
class _ParticipantData:
    label: str
    range_spec: RangeSpec
    series: List[NormalizedSeriesPoint]
    holdings: List[PortfolioHolding] = field(default_factory=list)
    fundamentals: Dict[str, Fundamentals] = field(default_factory=dict)
    created_at: Optional[str] = None
    dropped_holdings: Dict[str, str] = field(default_factory=dict)


class ComparisonOrchestrator:
    """Side-by-side comparison of portfolios, benchmarks and symbols."""

    def __init__(
        self,
        config: Config,
        fetcher: CachedDataFetcher,
        portfolio_repository: Optional[PortfolioRepository] = None,
        series_builder: Optional[PortfolioSeriesBuilder] = None,
        analyzer: Optional[PerformanceAnalyzer] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        """
        Initializes the ComparisonOrchestrator.

        Args:
            config (Config): The configuration object.
            fetcher (CachedDataFetcher): Cached market data access.
            portfolio_repository: Portfolio read interface; unconfigured when omitted.
            series_builder: Series builder; built on the fetcher when omitted.
            analyzer: Metrics engine; built from the config when omitted.
            today: Current date source, used for since-creation ranges.
        """
        self.config = config
        self.fetcher = fetcher
        self.portfolios = portfolio_repository or UnconfiguredPortfolioRepository()
        self.series_builder = series_builder or PortfolioSeriesBuilder(fetcher)
        self.analyzer = analyzer or PerformanceAnalyzer(
            risk_free_rate=config.risk_free_rate,
            initial_investment=config.initial_investment,
        )
        self._today = today

    def run(self, request: ComparisonRequest) -> ComparisonResult:
        """Runs a validated comparison request."""
        return self.compare(
            request.participants,
            request.range,
            benchmark_symbol=request.benchmark,
            since_creation=request.since_creation,
        )

    def compare(
        self,
        participants: List[ParticipantSpec],
        range_spec: RangeSpec,
        benchmark_symbol: Optional[str] = None,
        since_creation: bool = False,
    ) -> ComparisonResult:
        """
        Compares participants over a date range.

        Participants are evaluated concurrently; the result lists them in the
        order given. Participants that cannot be evaluated are reported in
        `skipped` instead of failing the comparison.

        Args:
            participants: Portfolios, benchmarks and symbols to compare.
            range_spec: Shared date range.
            benchmark_symbol: Benchmark used for alpha; defaults to the config.
            since_creation: Portfolios use the range from their creation date to today.

        Returns:
            ComparisonResult: The comparison table.

        Raises:
            ValueError: If no participants are given.
        """
        if not participants:
            raise ValueError("At least one participant is required")

        benchmark = (benchmark_symbol or self.config.benchmark_ticker).upper()
        outcomes: Dict[str, Union[ParticipantResult, SkippedParticipant]] = {}

        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            future_to_participant = {
                executor.submit(
                    self._evaluate_participant, participant, range_spec, benchmark, since_creation
                ): participant
                for participant in participants
            }

            for future in as_completed(future_to_participant):
                participant = future_to_participant[future]
                try:
                    outcomes[participant.key] = future.result()
                except Exception as e:
                    # Handle unexpected exceptions from worker threads
                    logger.error(f"Unexpected error evaluating {participant.key}: {e}")
                    outcomes[participant.key] = SkippedParticipant(
                        participant=participant,
                        reason=f"Thread error: {e}",
                        error_kind=FetchErrorKind.PROVIDER_ERROR,
                    )

        results: List[ParticipantResult] = []
        skipped: List[SkippedParticipant] = []
        for participant in participants:
            outcome = outcomes[participant.key]
            if isinstance(outcome, SkippedParticipant):
                logger.warning(f"Skipping {participant.key}: {outcome.reason}")
                skipped.append(outcome)
            else:
                results.append(outcome)

        range_label = self._range_label(range_spec)
        if since_creation:
            range_label += " (portfolios since creation)"
        result = ComparisonResult(
            range_label=range_label,
            benchmark_symbol=benchmark,
            participants=results,
            rows=build_metric_rows(results),
            skipped=skipped,
            benchmark_return=self._benchmark_return(benchmark, range_spec),
            generated_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info(
            f"Compared {len(results)} participants over {range_label} "
            f"({len(skipped)} skipped, benchmark {benchmark})"
        )
        return result

    # ------------------------------------------------------------------
    # Participant evaluation
    # ------------------------------------------------------------------

    def _evaluate_participant(
        self,
        participant: ParticipantSpec,
        range_spec: RangeSpec,
        benchmark: str,
        since_creation: bool,
    ) -> Union[ParticipantResult, SkippedParticipant]:
        try:
            if participant.type == ParticipantType.PORTFOLIO:
                data = self._load_portfolio(participant, range_spec, since_creation)
            else:
                data = self._load_symbol(participant, range_spec)
        except InvalidSymbolError as e:
            return SkippedParticipant(participant, str(e), FetchErrorKind.INVALID_INPUT)

        if isinstance(data, SkippedParticipant):
            return data

        metrics = self.analyzer.analyze(
            data.series,
            holdings=data.holdings,
            fundamentals=data.fundamentals,
            benchmark_return=self._benchmark_return(benchmark, data.range_spec),
        )
        return ParticipantResult(
            participant=participant,
            label=data.label,
            series=data.series,
            metrics=metrics,
            holdings=data.holdings,
            created_at=data.created_at,
            simulated_points=self._simulated_points(data.series, data.created_at),
            dropped_holdings=data.dropped_holdings,
        )

    def _load_portfolio(
        self, participant: ParticipantSpec, range_spec: RangeSpec, since_creation: bool
    ) -> Union[_ParticipantData, SkippedParticipant]:
        lookup = self.portfolios.get_portfolio(participant.id)
        if not lookup.ok:
            return SkippedParticipant(
                participant, lookup.error or "Portfolio unavailable", lookup.error_kind
            )

        portfolio = lookup.portfolio
        if since_creation:
            range_spec = self._since_creation_range(portfolio.created_at, range_spec)

        built = self.series_builder.build(portfolio.holdings, range_spec)
        if built.error_kind is not None:
            reasons = "; ".join(f"{symbol}: {reason}" for symbol, reason in built.dropped.items())
            return SkippedParticipant(
                participant, f"No holding returned data ({reasons})", built.error_kind
            )

        return _ParticipantData(
            label=portfolio.name,
            range_spec=range_spec,
            series=built.series,
            holdings=built.holdings,
            fundamentals=self._fundamentals_for(built.holdings),
            created_at=portfolio.created_at,
            dropped_holdings=dict(built.dropped),
        )

    def _load_symbol(
        self, participant: ParticipantSpec, range_spec: RangeSpec
    ) -> Union[_ParticipantData, SkippedParticipant]:
        symbol = participant.id
        built = self.series_builder.build_symbol_series(symbol, range_spec)
        if built.error_kind is not None or not built.series:
            reason = built.dropped.get(symbol, "no historical data in range")
            return SkippedParticipant(
                participant, reason, built.error_kind or FetchErrorKind.NOT_FOUND
            )

        if participant.type == ParticipantType.BENCHMARK:
            # Benchmarks are the market reference: beta 1.0, no fundamentals
            return _ParticipantData(
                label=BENCHMARKS.get(symbol, symbol),
                range_spec=range_spec,
                series=built.series,
            )

        return _ParticipantData(
            label=self._symbol_label(symbol),
            range_spec=range_spec,
            series=built.series,
            holdings=built.holdings,
            fundamentals=self._fundamentals_for(built.holdings),
        )

    def _symbol_label(self, symbol: str) -> str:
        if symbol in BENCHMARKS:
            return BENCHMARKS[symbol]
        quote = self.fetcher.get_quote(symbol)
        if quote.ok and quote.data.name:
            return quote.data.name
        return symbol

    def _fundamentals_for(self, holdings: List[PortfolioHolding]) -> Dict[str, Fundamentals]:
        """Fundamentals of the holdings that have them; failures only log."""
        if not holdings:
            return {}
        results = self.fetcher.get_many_fundamentals([holding.symbol for holding in holdings])
        fundamentals = {}
        for symbol, result in results.items():
            if result.ok:
                fundamentals[symbol] = result.data
            else:
                logger.debug(f"No fundamentals for {symbol}: {result.error}")
        return fundamentals

    def _benchmark_return(self, benchmark: str, range_spec: RangeSpec) -> Optional[float]:
        """Benchmark return (%) over the range, or None when unavailable."""
        try:
            built = self.series_builder.build_symbol_series(benchmark, range_spec)
        except InvalidSymbolError as e:
            logger.warning(f"Invalid benchmark {benchmark}: {e}")
            return None
        return series_return(built.series)

    def _since_creation_range(self, created_at: Optional[str], fallback: RangeSpec) -> RangeSpec:
        if not created_at:
            logger.warning("Portfolio has no creation date, using the requested range")
            return fallback
        try:
            start = parse_date(created_at)
        except ValueError:
            logger.warning(f"Unparseable creation date {created_at!r}, using the requested range")
            return fallback
        today = self._today()
        return RangeSpec.between(min(start, today), today)

    def _range_label(self, range_spec: RangeSpec) -> str:
        if range_spec.is_explicit:
            return str(range_spec)
        start, end = range_spec.window(self._today())
        return f"{range_spec} ({start.isoformat()} to {end.isoformat()})"

    @staticmethod
    def _simulated_points(series: List[NormalizedSeriesPoint], created_at: Optional[str]) -> int:
        """Number of points dated before the portfolio was created."""
        if not created_at or not series:
            return 0
        try:
            return sum(1 for point in series if is_before_creation(point.date, created_at))
        except ValueError:
            return 0
