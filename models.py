"""
Data models for portfolio performance comparison.
"""

from datetime import date
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from constants import LimitsAndConstraints, Timeframes
from utils import resolve_range_start, validate_ticker_symbol


# ============================================================================
# PYDANTIC MODELS (With Validation)
# ============================================================================


class RangeSpec(BaseModel):
    """
    Validated date range: either a named timeframe or an explicit start/end pair.

    The end date of an explicit range is inclusive.
    """

    model_config = ConfigDict(frozen=True)

    timeframe: Optional[str] = Field(
        default=None, description="Named timeframe (1W, 1M, 3M, 6M, 1Y, YTD)"
    )
    start: Optional[date] = Field(default=None, description="Inclusive start date")
    end: Optional[date] = Field(default=None, description="Inclusive end date")

    @field_validator("timeframe")
    @classmethod
    def validate_timeframe(cls, v: Optional[str]) -> Optional[str]:
        """
        Validates the named timeframe.

        Args:
            v (Optional[str]): The timeframe to validate.

        Returns:
            Optional[str]: The upper-cased timeframe.
        """
        if v is None:
            return v
        v = v.strip().upper()
        if v not in Timeframes.VALID:
            raise ValueError(
                f"Invalid timeframe '{v}'. Must be one of: {', '.join(Timeframes.VALID)}"
            )
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "RangeSpec":
        """Requires exactly one of timeframe or a complete start/end pair."""
        has_dates = self.start is not None or self.end is not None
        if has_dates:
            if self.start is None or self.end is None:
                raise ValueError("Explicit ranges need both start and end dates")
            if self.timeframe is not None:
                raise ValueError("Use either a timeframe or explicit dates, not both")
            if self.end < self.start:
                raise ValueError(
                    f"End date {self.end.isoformat()} is before start date {self.start.isoformat()}"
                )
        elif self.timeframe is None:
            raise ValueError("A timeframe or explicit start/end dates are required")
        return self

    @classmethod
    def named(cls, timeframe: str) -> "RangeSpec":
        return cls(timeframe=timeframe)

    @classmethod
    def between(cls, start: date, end: date) -> "RangeSpec":
        return cls(start=start, end=end)

    @property
    def is_explicit(self) -> bool:
        return self.timeframe is None

    def window(self, today: Optional[date] = None) -> Tuple[date, date]:
        """Calendar dates the range covers; named timeframes end today."""
        if self.is_explicit:
            return self.start, self.end
        today = today or date.today()
        return resolve_range_start(self.timeframe, today), today

    @property
    def key(self) -> str:
        """Stable string used in cache keys and report headers."""
        if self.is_explicit:
            return f"{self.start.isoformat()}_{self.end.isoformat()}"
        return self.timeframe

    def __str__(self) -> str:
        if self.is_explicit:
            return f"{self.start.isoformat()} to {self.end.isoformat()}"
        return self.timeframe


class ParticipantType(str, Enum):
    PORTFOLIO = "portfolio"
    BENCHMARK = "benchmark"
    SYMBOL = "symbol"


class ParticipantSpec(BaseModel):
    """Validated comparison participant."""

    model_config = ConfigDict(frozen=True)

    type: ParticipantType = Field(..., description="Portfolio, benchmark or custom symbol")
    id: str = Field(..., min_length=1, max_length=64, description="Portfolio id or ticker")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str, info: ValidationInfo) -> str:
        """Ticker participants must carry a valid, upper-cased symbol."""
        if info.data.get("type") == ParticipantType.PORTFOLIO:
            v = v.strip()
            if not v:
                raise ValueError("Portfolio id cannot be empty")
            return v
        return validate_ticker_symbol(v)

    @property
    def key(self) -> str:
        """Column key used in comparison tables."""
        return f"{self.type.value}:{self.id}"


class ComparisonRequest(BaseModel):
    """Validated comparison request."""

    participants: List[ParticipantSpec] = Field(
        ...,
        min_length=1,
        max_length=LimitsAndConstraints.MAX_PARTICIPANTS,
        description="Portfolios, benchmarks and symbols to compare, in display order",
    )
    range: RangeSpec = Field(
        default_factory=lambda: RangeSpec(timeframe=Timeframes.ONE_MONTH),
        description="Date range of the comparison",
    )
    benchmark: Optional[str] = Field(
        default=None, description="Benchmark used for alpha (defaults to config)"
    )
    since_creation: bool = Field(
        default=False, description="Compare portfolios from their creation date"
    )

    @field_validator("benchmark")
    @classmethod
    def validate_benchmark(cls, v: Optional[str]) -> Optional[str]:
        """
        Validates the benchmark symbol using centralized validation.

        Args:
            v (Optional[str]): The benchmark symbol to validate.

        Returns:
            Optional[str]: The validated benchmark symbol.
        """
        if v is None:
            return v
        return validate_ticker_symbol(v)

    @model_validator(mode="after")
    def validate_unique(self) -> "ComparisonRequest":
        """Rejects participants listed more than once."""
        seen = set()
        duplicates = []
        for participant in self.participants:
            if participant.key in seen:
                duplicates.append(participant.id)
            seen.add(participant.key)
        if duplicates:
            raise ValueError(f"Duplicate participants: {', '.join(duplicates)}")
        return self


# ============================================================================
# DATACLASS MODELS (For Internal Use)
# ============================================================================


class FetchErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    PROVIDER_ERROR = "provider_error"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class AssetQuote:
    """Quote snapshot for a single asset."""

    symbol: str
    name: str
    asset_type: str
    price: float
    previous_close: Optional[float] = None
    change: float = 0.0
    change_percent: float = 0.0
    market_cap: Optional[float] = None
    beta: Optional[float] = None
    pe_ratio: Optional[float] = None
    dividend_yield: Optional[float] = None
    fifty_two_week_high: Optional[float] = None
    fifty_two_week_low: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetQuote":
        return cls(**data)


@dataclass(frozen=True)
class Fundamentals:
    """Extended ratios for a single asset."""

    symbol: str
    pe_ratio: Optional[float] = None
    forward_pe: Optional[float] = None
    eps: Optional[float] = None
    forward_eps: Optional[float] = None
    peg_ratio: Optional[float] = None
    price_to_book: Optional[float] = None
    dividend_yield: Optional[float] = None
    beta: Optional[float] = None
    market_cap: Optional[float] = None
    roe: Optional[float] = None
    roa: Optional[float] = None
    profit_margin: Optional[float] = None
    operating_margin: Optional[float] = None
    gross_margin: Optional[float] = None
    debt_to_equity: Optional[float] = None
    current_ratio: Optional[float] = None
    revenue_growth: Optional[float] = None
    earnings_growth: Optional[float] = None
    sector: Optional[str] = None
    industry: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fundamentals":
        return cls(**data)


@dataclass(frozen=True)
class HistoricalPoint:
    """One trading day of OHLCV data for a symbol."""

    timestamp: int  # epoch seconds
    date: str  # YYYY-MM-DD
    open: float
    high: float
    low: float
    close: float
    volume: int
    adj_close: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoricalPoint":
        return cls(**data)


@dataclass(frozen=True)
class PortfolioHolding:
    """One asset and its allocation percentage within a portfolio."""

    symbol: str
    allocation: float  # percent, expected to sum to 100 across a portfolio


@dataclass
class Portfolio:
    id: str
    name: str
    holdings: List[PortfolioHolding]
    created_at: Optional[str] = None  # ISO timestamp


@dataclass
class PortfolioLookup:
    """Result of a portfolio read: the portfolio or a typed failure."""

    portfolio: Optional[Portfolio] = None
    error_kind: Optional[FetchErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.portfolio is not None and self.error_kind is None


@dataclass
class FetchResult:
    """
    Typed outcome of a market data call.

    `data` holds an AssetQuote, Fundamentals or a list of HistoricalPoint on success.
    """

    symbol: str
    data: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[FetchErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, symbol: str, data: Any) -> "FetchResult":
        return cls(symbol=symbol, data=data)

    @classmethod
    def failure(cls, symbol: str, error_kind: FetchErrorKind, error: str) -> "FetchResult":
        return cls(symbol=symbol, error=error, error_kind=error_kind)


@dataclass(frozen=True)
class NormalizedSeriesPoint:
    date: str
    index_value: float  # base 100 at series start
    return_from_start: float


@dataclass
class AggregateFundamentals:
    """Allocation-weighted fundamentals; None when no holding reports the field."""

    weighted_pe: Optional[float] = None
    weighted_eps: Optional[float] = None
    weighted_roe: Optional[float] = None
    weighted_margin: Optional[float] = None
    weighted_debt_to_equity: Optional[float] = None
    weighted_peg: Optional[float] = None
    weighted_price_to_book: Optional[float] = None
    weighted_dividend_yield: Optional[float] = None
    weighted_beta: Optional[float] = None


@dataclass
class PerformanceMetrics:
    """Risk and return metrics for one normalized series.

    Percent fields are expressed in percentage points (4.0 means 4%).
    Volatility and Sharpe are annualized over 252 trading days.
    """

    total_return_percent: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    alpha: Optional[float] = None
    beta: float = 1.0
    total_value: float = 0.0
    total_return: float = 0.0
    benchmark_return: Optional[float] = None
    data_points: int = 0
    fundamentals: AggregateFundamentals = field(default_factory=AggregateFundamentals)


@dataclass
class ParticipantResult:
    """Series and metrics for one participant of a comparison."""

    participant: ParticipantSpec
    label: str
    series: List[NormalizedSeriesPoint]
    metrics: PerformanceMetrics
    holdings: List[PortfolioHolding] = field(default_factory=list)
    created_at: Optional[str] = None
    simulated_points: int = 0  # points dated before the portfolio existed
    dropped_holdings: Dict[str, str] = field(default_factory=dict)  # symbol -> reason

    @property
    def key(self) -> str:
        return self.participant.key


@dataclass
class SkippedParticipant:
    participant: ParticipantSpec
    reason: str
    error_kind: Optional[FetchErrorKind] = None


@dataclass
class MetricRow:
    """One metric across every participant, with the best column flagged."""

    metric: str
    label: str
    higher_is_better: bool
    values: Dict[str, Optional[float]]
    best: Optional[str] = None

    def is_best(self, participant_key: str) -> bool:
        return self.best is not None and self.best == participant_key


@dataclass
class ComparisonResult:
    """Side-by-side comparison table plus the participants that were left out."""

    range_label: str
    benchmark_symbol: str
    participants: List[ParticipantResult]
    rows: List[MetricRow]
    skipped: List[SkippedParticipant] = field(default_factory=list)
    benchmark_return: Optional[float] = None
    generated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serializes the comparison for JSON output."""
        return {
            "range": self.range_label,
            "benchmark": self.benchmark_symbol,
            "benchmark_return": self.benchmark_return,
            "generated_at": self.generated_at,
            "participants": [
                {
                    "key": result.key,
                    "type": result.participant.type.value,
                    "id": result.participant.id,
                    "label": result.label,
                    "metrics": asdict(result.metrics),
                    "holdings": [asdict(h) for h in result.holdings],
                    "created_at": result.created_at,
                    "simulated_points": result.simulated_points,
                    "dropped_holdings": dict(result.dropped_holdings),
                    "series": [asdict(point) for point in result.series],
                }
                for result in self.participants
            ],
            "rows": [asdict(row) for row in self.rows],
            "skipped": [
                {
                    "key": skipped.participant.key,
                    "reason": skipped.reason,
                    "error_kind": skipped.error_kind.value if skipped.error_kind else None,
                }
                for skipped in self.skipped
            ],
        }


@dataclass
class ChallengeOutcome:
    """Settlement of a challenge between a portfolio and an opponent."""

    start_date: str
    end_date: str
    challenger_return_percent: float
    opponent_return_percent: float
    winner: str  # "challenger", "opponent" or "tie"
    challenger_end_value: float
    opponent_end_value: float
