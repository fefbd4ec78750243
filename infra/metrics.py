"""Prometheus-backed metrics hooks for trading loops and plan execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "loopbot_"


@dataclass
class PlanProgress:
    kind: str
    completed: int
    failed: int
    total: int


class MetricsRecorder:
    """
    Expose tracker statistics and plan progress via Prometheus.

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

        self._last_progress: Optional[PlanProgress] = None
        self._last_statistics: Dict[str, float] = {}

        if not self._enabled:
            self._trades_counter = None
            self._failures_counter = None
            self._volume_counter = None
            self._loops_gauge = None
            self._success_rate_gauge = None
            self._plan_steps_gauge = None
            self._excluded_wallets_gauge = None
            return

        self._trades_counter = Counter(
            "loopbot_trades_total",
            "Completed trades by side",
            labelnames=("side",),
        )
        self._failures_counter = Counter(
            "loopbot_failed_transactions_total",
            "Failed transactions by attempted action",
            labelnames=("action",),
        )
        self._volume_counter = Counter(
            "loopbot_buy_volume_total",
            "Base currency spent on buys",
        )
        self._loops_gauge = Gauge(
            "loopbot_successful_loops",
            "Completed buy/sell loops reported by the tracker",
        )
        self._success_rate_gauge = Gauge(
            "loopbot_success_rate_pct",
            "Tracker success rate (percent)",
        )
        self._plan_steps_gauge = Gauge(
            "loopbot_plan_steps",
            "Execution plan step counts",
            labelnames=("kind", "state"),  # state: "completed", "failed", "total"
        )
        self._excluded_wallets_gauge = Gauge(
            "loopbot_excluded_wallets",
            "Wallets excluded from the current run (no usable credential)",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_trade(self, side: str, volume: float = 0.0) -> None:
        if self._enabled and self._trades_counter:
            self._trades_counter.labels(side=side).inc()
            if side == "buy" and volume > 0 and self._volume_counter:
                self._volume_counter.inc(volume)

    def record_failure(self, action: str) -> None:
        if self._enabled and self._failures_counter:
            self._failures_counter.labels(action=action).inc()

    def record_statistics(self, statistics: Dict[str, float]) -> None:
        """Mirror tracker statistics into gauges."""
        self._last_statistics = dict(statistics)
        if self._enabled and self._loops_gauge and self._success_rate_gauge:
            self._loops_gauge.set(statistics.get("successful_loops", 0))
            self._success_rate_gauge.set(statistics.get("success_rate", 0.0))

    def record_plan_progress(self, progress: PlanProgress) -> None:
        self._last_progress = progress
        if self._enabled and self._plan_steps_gauge:
            self._plan_steps_gauge.labels(kind=progress.kind, state="completed").set(progress.completed)
            self._plan_steps_gauge.labels(kind=progress.kind, state="failed").set(progress.failed)
            self._plan_steps_gauge.labels(kind=progress.kind, state="total").set(progress.total)

    def record_excluded_wallets(self, count: int) -> None:
        if self._enabled and self._excluded_wallets_gauge:
            self._excluded_wallets_gauge.set(max(count, 0))

    def last_plan_progress(self) -> Optional[PlanProgress]:
        return self._last_progress

    def statistics_snapshot(self) -> Dict[str, float]:
        return dict(self._last_statistics)


__all__ = ["MetricsRecorder", "PlanProgress"]
