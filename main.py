"""
CLI entry point for the portfolio comparison engine.
"""

import sys
import json
import logging
import argparse
from typing import List, Optional

from pydantic import ValidationError

from analyzers import PerformanceAnalyzer
from cache import TieredCache
from config import Config
from constants import BENCHMARKS, Timeframes
from fetcher import CachedDataFetcher, YahooFinanceGateway
from models import ComparisonRequest, ComparisonResult, ParticipantType
from orchestrator import ComparisonOrchestrator
from persistence import (
    FileKeyValueStore,
    JsonPortfolioRepository,
    KeyValueStore,
    PortfolioRepository,
    SupabaseKeyValueStore,
    SupabasePortfolioRepository,
    SupabaseRestClient,
    UnconfiguredPortfolioRepository,
)
from utils import normalize_timeframe

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def setup_cli() -> argparse.ArgumentParser:
    """
    Sets up the command-line interface.

    Returns:
        argparse.ArgumentParser: The argument parser.
    """
    parser = argparse.ArgumentParser(
        description="Portfolio performance comparison against benchmarks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        usage="%(prog)s [options]",
        epilog="""
Examples:
  # Two portfolios from a local file against the S&P 500 over 3 months
  %(prog)s --portfolio-file portfolios.json --portfolios growth,income --timeframe 3M

  # Custom symbols over an explicit date range, Nasdaq 100 as benchmark
  %(prog)s --symbols AAPL,TSLA --benchmark QQQ --start 2024-01-02 --end 2024-06-28

  # Portfolios since they were created, as JSON
  %(prog)s --portfolio-file portfolios.json --portfolios growth --since-creation --json
        """,
    )

    parser.add_argument(
        "--portfolio-file",
        "-f",
        type=str,
        help="JSON file with portfolios (defaults to Supabase when SUPABASE_URL/SUPABASE_KEY are set)",
    )
    parser.add_argument(
        "--portfolios",
        "-p",
        type=str,
        help='Comma-separated portfolio ids (e.g., "growth,income")',
    )
    parser.add_argument(
        "--symbols",
        "-s",
        type=str,
        help='Comma-separated ticker symbols to compare (e.g., "AAPL,TSLA")',
    )
    parser.add_argument(
        "--benchmark",
        "-b",
        type=str,
        help=f"Benchmark for alpha, one of {', '.join(BENCHMARKS)} or any symbol (default: config)",
    )
    parser.add_argument(
        "--no-benchmark-column",
        action="store_true",
        help="Do not add the benchmark as a compared participant",
    )
    parser.add_argument(
        "--timeframe",
        "-t",
        type=str,
        default=Timeframes.ONE_MONTH,
        help=f"Named timeframe: {', '.join(Timeframes.VALID)} (default: 1M)",
    )
    parser.add_argument("--start", type=str, help="Explicit start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="Explicit end date, inclusive (YYYY-MM-DD)")
    parser.add_argument(
        "--since-creation",
        action="store_true",
        help="Compare portfolios from their creation date to today",
    )
    parser.add_argument("--json", action="store_true", help="Print the comparison as JSON")
    parser.add_argument(
        "--clear-cache", action="store_true", help="Clear expired cache entries before running"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def build_request(args: argparse.Namespace, config: Config) -> ComparisonRequest:
    """
    Builds and validates the comparison request from CLI arguments.

    Raises:
        ValueError: One line per invalid field.
    """
    participants = [{"type": ParticipantType.PORTFOLIO, "id": pid} for pid in _split(args.portfolios)]
    participants += [{"type": ParticipantType.SYMBOL, "id": symbol} for symbol in _split(args.symbols)]

    benchmark = args.benchmark or config.benchmark_ticker
    if not args.no_benchmark_column:
        participants.append({"type": ParticipantType.BENCHMARK, "id": benchmark})

    if args.start or args.end:
        range_spec = {"start": args.start, "end": args.end}
    else:
        range_spec = {"timeframe": normalize_timeframe(args.timeframe)}

    try:
        return ComparisonRequest(
            participants=participants,
            range=range_spec,
            benchmark=benchmark,
            since_creation=args.since_creation,
        )
    except ValidationError as e:
        # Extract user-friendly error messages from Pydantic
        error_messages = []
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            error_messages.append(f"{field}: {error['msg']}")
        raise ValueError("\n".join(error_messages)) from e


def build_cache_store(config: Config) -> KeyValueStore:
    if config.persistence_configured:
        client = SupabaseRestClient(config.supabase_url, config.supabase_key, timeout=config.request_timeout)
        return SupabaseKeyValueStore(client)
    return FileKeyValueStore(config.cache_dir)


def build_portfolio_repository(config: Config, portfolio_file: Optional[str]) -> PortfolioRepository:
    if portfolio_file:
        return JsonPortfolioRepository(portfolio_file)
    if config.persistence_configured:
        client = SupabaseRestClient(config.supabase_url, config.supabase_key, timeout=config.request_timeout)
        return SupabasePortfolioRepository(client)
    return UnconfiguredPortfolioRepository()


def build_orchestrator(
    config: Config, cache: TieredCache, portfolio_repository: PortfolioRepository
) -> ComparisonOrchestrator:
    """Wires the gateway, cached fetcher and metrics engine together."""
    gateway = YahooFinanceGateway(
        timeout=config.request_timeout,
        max_retries=config.max_retries,
        pool_maxsize=config.max_workers,
    )
    fetcher = CachedDataFetcher(gateway, cache, max_workers=config.max_workers)
    analyzer = PerformanceAnalyzer(
        risk_free_rate=config.risk_free_rate,
        initial_investment=config.initial_investment,
    )
    return ComparisonOrchestrator(
        config, fetcher, portfolio_repository=portfolio_repository, analyzer=analyzer
    )


def _format_value(metric: str, value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    if metric == "total_value":
        return f"${value:,.2f}"
    return f"{value:.2f}"


def format_comparison(result: ComparisonResult) -> str:
    """Renders the comparison table as text. Best values are marked with '*'."""
    labels = [participant.label for participant in result.participants]
    keys = [participant.key for participant in result.participants]
    metric_width = max([len(row.label) for row in result.rows] + [6])
    widths = [max(len(label), 12) for label in labels]

    lines = [
        f"Range: {result.range_label}    Benchmark: {result.benchmark_symbol}",
        " | ".join(["Metric".ljust(metric_width)] + [label.rjust(w) for label, w in zip(labels, widths)]),
        "-+-".join(["-" * metric_width] + ["-" * w for w in widths]),
    ]
    for row in result.rows:
        cells = []
        for key, width in zip(keys, widths):
            text = _format_value(row.metric, row.values.get(key))
            if row.is_best(key):
                text += " *"
            cells.append(text.rjust(width))
        lines.append(" | ".join([row.label.ljust(metric_width)] + cells))

    for participant in result.participants:
        if participant.simulated_points:
            lines.append(
                f"Note: {participant.label} has {participant.simulated_points} points "
                f"from before it was created ({participant.created_at})"
            )

    if result.benchmark_return is not None:
        lines.append(f"\nBenchmark return: {result.benchmark_return:.2f}%")
    partial = [participant for participant in result.participants if participant.dropped_holdings]
    if partial:
        lines.append("\nHoldings left out:")
        for participant in partial:
            for symbol, reason in participant.dropped_holdings.items():
                lines.append(f"  - {participant.label} / {symbol}: {reason}")
    if result.skipped:
        lines.append(f"\nSkipped ({len(result.skipped)}):")
        for skipped in result.skipped:
            lines.append(f"  - {skipped.participant.id}: {skipped.reason}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = setup_cli()
    args = parser.parse_args(argv)

    # Set logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        # Load and validate config
        config = Config.from_env()
        request = build_request(args, config)

        cache = TieredCache(
            store=build_cache_store(config),
            default_ttl_seconds=config.cache_ttl_seconds,
        )

        # Clear cache if requested
        if args.clear_cache:
            cleared = cache.clear_expired()
            print(f"Cleared {cleared} expired cache entries\n")

        orchestrator = build_orchestrator(
            config, cache, build_portfolio_repository(config, args.portfolio_file)
        )
        result = orchestrator.run(request)

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print("=" * 60)
            print("PORTFOLIO COMPARISON")
            print("=" * 60)
            print(format_comparison(result))
            print("=" * 60)

        return 0 if result.participants else 1

    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        return 1

    except Exception as e:  # top-level error handler
        logger.error(f"Fatal error: {e}", exc_info=args.verbose)
        print(f"\nError: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
