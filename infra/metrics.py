"""Prometheus-backed metrics hooks for the settlement scheduler."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "contest_"


class MetricsRecorder:
    """
    Expose scheduler and settlement stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True
        self._last_handler_status: Dict[str, str] = {}

        if not self._enabled:
            self._handler_counter = None
            self._handler_summary = None
            self._skipped_counter = None
            self._games_gauge = None
            self._payout_counter = None
            self._payout_amount_counter = None
            self._reconcile_counter = None
            return

        self._handler_counter = Counter(  # type: ignore[assignment]
            "contest_handler_runs_total",
            "Scheduler handler runs by outcome",
            labelnames=("handler", "status"),
        )
        self._handler_summary = Summary(  # type: ignore[assignment]
            "contest_handler_duration_seconds",
            "Duration of scheduler handler runs",
            labelnames=("handler",),
        )
        self._skipped_counter = Counter(  # type: ignore[assignment]
            "contest_handler_skipped_total",
            "Ticks skipped because the previous run was still in progress",
            labelnames=("handler",),
        )
        self._games_gauge = Gauge(  # type: ignore[assignment]
            "contest_games",
            "Number of games per lifecycle status",
            labelnames=("status",),
        )
        self._payout_counter = Counter(  # type: ignore[assignment]
            "contest_reward_payouts_total",
            "Winner payouts recorded, by how they were settled",
            labelnames=("kind",),  # kind: "ledger", "system_opponent", "zero_reward", "not_found", "abandoned"
        )
        self._payout_amount_counter = Counter(  # type: ignore[assignment]
            "contest_reward_amount_total",
            "Total reward amount sent to the ledger (base units)",
        )
        self._reconcile_counter = Counter(  # type: ignore[assignment]
            "contest_reconciliations_total",
            "Pending-entry reconciliation outcomes",
            labelnames=("outcome",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
            self._started = True
            logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_handler_run(self, handler: str, status: str, duration: float) -> None:
        self._last_handler_status[handler] = status
        if self._enabled and self._handler_counter and self._handler_summary:
            self._handler_counter.labels(handler=handler, status=status).inc()
            self._handler_summary.labels(handler=handler).observe(max(duration, 0.0))

    def record_handler_skipped(self, handler: str) -> None:
        if self._enabled and self._skipped_counter:
            self._skipped_counter.labels(handler=handler).inc()

    def record_games_by_status(self, counts: Dict[str, int]) -> None:
        if self._enabled and self._games_gauge:
            for status, count in counts.items():
                self._games_gauge.labels(status=status).set(max(count, 0))

    def record_payout(self, kind: str, amount: int = 0) -> None:
        if self._enabled and self._payout_counter:
            self._payout_counter.labels(kind=kind).inc()
            if amount > 0 and self._payout_amount_counter:
                self._payout_amount_counter.inc(amount)

    def record_reconciliation(self, outcome: str) -> None:
        if self._enabled and self._reconcile_counter:
            self._reconcile_counter.labels(outcome=outcome).inc()

    def last_handler_status(self, handler: str) -> Optional[str]:
        return self._last_handler_status.get(handler)


__all__ = ["MetricsRecorder"]
