"""
Debounced recomputation of comparisons.

A consumer submits comparison requests as its inputs change and is notified
when the derived result changes. Requests superseded by a newer submission
are discarded by comparing the request's generation token with the latest one.
"""

import json
import logging
import threading
from typing import Callable, Optional

from constants import Defaults
from models import ComparisonRequest, ComparisonResult
from orchestrator import ComparisonOrchestrator

logger = logging.getLogger(__name__)


def _result_signature(result: ComparisonResult) -> str:
    payload = result.to_dict()
    payload.pop("generated_at", None)
    return json.dumps(payload, sort_keys=True, default=str)


class ComparisonWatcher:
    """Runs the latest submitted comparison after a debounce delay."""

    def __init__(
        self,
        orchestrator: ComparisonOrchestrator,
        listener: Callable[[ComparisonResult], None],
        debounce_seconds: float = Defaults.DEBOUNCE_SECONDS,
        error_listener: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        """
        Initializes the watcher.

        Args:
            orchestrator: Runs the comparisons.
            listener: Called with each new, changed result of the latest request.
            debounce_seconds: Delay before a submitted request runs.
            error_listener: Called when the latest request fails.
        """
        self.orchestrator = orchestrator
        self.listener = listener
        self.error_listener = error_listener
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._generation = 0
        self._timer: Optional[threading.Timer] = None
        self._last_signature: Optional[str] = None

    @property
    def latest_token(self) -> int:
        with self._lock:
            return self._generation

    def submit(self, request: ComparisonRequest) -> int:
        """
        Schedules a comparison, superseding any pending one.

        Returns:
            int: The generation token of this request.
        """
        with self._lock:
            self._generation += 1
            token = self._generation
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._run, args=(token, request))
            self._timer.daemon = True
            self._timer.start()
        logger.debug(f"Scheduled comparison #{token} in {self.debounce_seconds}s")
        return token

    def cancel(self) -> None:
        """Discards pending and in-flight requests."""
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush(self, timeout: Optional[float] = None) -> None:
        """Waits for the currently scheduled comparison to finish."""
        with self._lock:
            timer = self._timer
        if timer is not None:
            timer.join(timeout)

    def _is_latest(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def _run(self, token: int, request: ComparisonRequest) -> None:
        if not self._is_latest(token):
            logger.debug(f"Comparison #{token} superseded before start")
            return

        try:
            result = self.orchestrator.run(request)
        except Exception as e:
            logger.error(f"Comparison #{token} failed: {e}")
            if self.error_listener is not None and self._is_latest(token):
                self.error_listener(e)
            return

        signature = _result_signature(result)
        with self._lock:
            if token != self._generation:
                logger.debug(f"Discarding stale comparison #{token}")
                return
            if signature == self._last_signature:
                logger.debug(f"Comparison #{token} unchanged, not notifying")
                return
            self._last_signature = signature

        self.listener(result)
