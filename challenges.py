"""
Challenge settlement: period returns of a portfolio against an opponent.
"""

import logging
from datetime import date, timedelta
from typing import Callable, List, Optional

from constants import Defaults, TimeConstants, Timeframes
from fetcher import CachedDataFetcher
from models import ChallengeOutcome, HistoricalPoint, Portfolio, RangeSpec
from utils import InvalidSymbolError

logger = logging.getLogger(__name__)

SP500_PROXY = "SPY"


def challenge_days(timeframe: str) -> int:
    """Calendar days covered by a challenge timeframe (1W, 2W, 1M, 3M); unknown values mean a week."""
    return Timeframes.CHALLENGE_DAYS.get(timeframe.strip().upper(), 7)


def _simple_return(points: List[HistoricalPoint]) -> Optional[float]:
    if len(points) < TimeConstants.MIN_POINTS_FOR_PERIOD_RETURN:
        return None
    start_price = points[0].close
    end_price = points[-1].close
    if start_price <= 0:
        return None
    return (end_price - start_price) / start_price * 100


class ChallengeEvaluator:
    """Settles challenges from real closing prices. Nothing is persisted."""

    def __init__(
        self,
        fetcher: CachedDataFetcher,
        start_value: float = Defaults.INITIAL_INVESTMENT,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.fetcher = fetcher
        self.start_value = start_value
        self._today = today

    def symbol_return(self, symbol: str, start: date, end: date) -> Optional[float]:
        """Simple return (%) of one symbol over the period, or None with insufficient data."""
        try:
            result = self.fetcher.get_historical(symbol, RangeSpec.between(start, end))
        except InvalidSymbolError as e:
            logger.warning(f"Skipping invalid symbol {symbol}: {e}")
            return None
        if not result.ok:
            logger.warning(f"No historical data for {symbol}: {result.error}")
            return None
        return _simple_return(result.data)

    def portfolio_return(self, portfolio: Portfolio, start: date, end: date) -> float:
        """
        Allocation-weighted average of each holding's simple return over the period.

        Holdings without enough data count as a 0% return but keep their weight.

        Returns:
            float: The portfolio return (%); 0 for an empty or zero-weight portfolio.
        """
        if not portfolio.holdings:
            return 0.0

        symbols = [holding.symbol for holding in portfolio.holdings]
        results = self.fetcher.get_many_historical(symbols, RangeSpec.between(start, end))

        weighted_sum = 0.0
        total_allocation = 0.0
        for holding in portfolio.holdings:
            result = results.get(holding.symbol.strip().upper()) or results.get(holding.symbol)
            holding_return = None
            if result is not None and result.ok:
                holding_return = _simple_return(result.data)
            if holding_return is None:
                logger.debug(f"{holding.symbol}: insufficient data, counted as 0%")
                holding_return = 0.0
            weighted_sum += holding_return * holding.allocation
            total_allocation += holding.allocation

        if total_allocation == 0:
            return 0.0
        return weighted_sum / total_allocation

    def sp500_return(self, start: date, end: date) -> float:
        """S&P 500 return (%) over the period via SPY; 0 when data is insufficient."""
        value = self.symbol_return(SP500_PROXY, start, end)
        return value if value is not None else 0.0

    def evaluate_timeframe(
        self,
        challenger: Portfolio,
        timeframe: str,
        end: Optional[date] = None,
        opponent: Optional[Portfolio] = None,
    ) -> ChallengeOutcome:
        """Settles a challenge of the given timeframe that ends on `end` (default today)."""
        end = end or self._today()
        start = end - timedelta(days=challenge_days(timeframe))
        return self.evaluate(challenger, start, end, opponent=opponent)

    def evaluate(
        self,
        challenger: Portfolio,
        start: date,
        end: date,
        opponent: Optional[Portfolio] = None,
    ) -> ChallengeOutcome:
        """
        Settles a challenge.

        Args:
            challenger: The challenging portfolio.
            start: First day of the challenge.
            end: Last day of the challenge (inclusive).
            opponent: Opposing portfolio; None means the S&P 500.

        Returns:
            ChallengeOutcome: Both returns, end values and the winner.
        """
        challenger_return = self.portfolio_return(challenger, start, end)
        if opponent is None:
            opponent_return = self.sp500_return(start, end)
        else:
            opponent_return = self.portfolio_return(opponent, start, end)

        if challenger_return > opponent_return:
            winner = "challenger"
        elif opponent_return > challenger_return:
            winner = "opponent"
        else:
            winner = "tie"

        outcome = ChallengeOutcome(
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            challenger_return_percent=challenger_return,
            opponent_return_percent=opponent_return,
            winner=winner,
            challenger_end_value=self.start_value * (1 + challenger_return / 100),
            opponent_end_value=self.start_value * (1 + opponent_return / 100),
        )
        logger.info(
            f"Challenge {challenger.id} vs {opponent.id if opponent else 'S&P 500'}: "
            f"{challenger_return:.2f}% vs {opponent_return:.2f}% -> {winner}"
        )
        return outcome
