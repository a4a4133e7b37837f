"""
Tests for debounced, stale-safe recomputation.
"""

import threading
import pytest
from unittest.mock import Mock

from models import ComparisonRequest, ComparisonResult
from orchestrator import ComparisonOrchestrator
from watcher import ComparisonWatcher


def _request(symbol):
    return ComparisonRequest(participants=[{"type": "symbol", "id": symbol}])


def _result(label, generated_at="t0"):
    return ComparisonResult(
        range_label=label, benchmark_symbol="SPY", participants=[], rows=[], generated_at=generated_at
    )


@pytest.fixture
def orchestrator():
    return Mock(spec=ComparisonOrchestrator)


@pytest.fixture
def listener():
    return Mock()


@pytest.fixture
def watcher(orchestrator, listener):
    return ComparisonWatcher(orchestrator, listener, debounce_seconds=0.05)


class TestDebounce:
    """Test that only the latest submission runs."""

    def test_rapid_submissions_collapse(self, watcher, orchestrator, listener):
        orchestrator.run.side_effect = lambda request: _result(request.participants[0].id)

        first = watcher.submit(_request("AAPL"))
        second = watcher.submit(_request("MSFT"))
        watcher.flush(timeout=2)

        assert second == first + 1
        orchestrator.run.assert_called_once()
        assert orchestrator.run.call_args.args[0].participants[0].id == "MSFT"
        listener.assert_called_once()

    def test_tokens_increase(self, watcher):
        tokens = [watcher.submit(_request("AAPL")) for _ in range(3)]
        watcher.cancel()

        assert tokens == sorted(tokens)
        assert watcher.latest_token > tokens[-1]

    def test_cancel_discards_pending(self, watcher, orchestrator, listener):
        watcher.submit(_request("AAPL"))
        watcher.cancel()
        watcher.flush(timeout=0.2)

        orchestrator.run.assert_not_called()
        listener.assert_not_called()


class TestStaleResults:
    """Test that superseded in-flight results are discarded."""

    def test_in_flight_result_discarded(self, watcher, orchestrator, listener):
        started = threading.Event()
        release = threading.Event()

        def run(request):
            symbol = request.participants[0].id
            if symbol == "AAPL":
                started.set()
                release.wait(timeout=2)
            return _result(symbol)

        orchestrator.run.side_effect = run

        watcher.submit(_request("AAPL"))
        first_timer = watcher._timer
        assert started.wait(timeout=2)

        watcher.submit(_request("MSFT"))
        release.set()
        first_timer.join(timeout=2)
        watcher.flush(timeout=2)

        delivered = [c.args[0].range_label for c in listener.call_args_list]
        assert delivered == ["MSFT"]

    def test_unchanged_result_not_redelivered(self, watcher, orchestrator, listener):
        results = iter([_result("same", "t1"), _result("same", "t2")])
        orchestrator.run.side_effect = lambda request: next(results)

        watcher.submit(_request("AAPL"))
        watcher.flush(timeout=2)
        watcher.submit(_request("AAPL"))
        watcher.flush(timeout=2)

        assert orchestrator.run.call_count == 2
        listener.assert_called_once()


class TestErrors:
    def test_error_listener_receives_failure(self, orchestrator, listener):
        errors = Mock()
        watcher = ComparisonWatcher(orchestrator, listener, debounce_seconds=0.01, error_listener=errors)
        orchestrator.run.side_effect = RuntimeError("provider down")

        watcher.submit(_request("AAPL"))
        watcher.flush(timeout=2)

        listener.assert_not_called()
        assert str(errors.call_args.args[0]) == "provider down"
