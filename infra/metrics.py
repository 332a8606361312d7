"""Prometheus-backed metrics hooks for the derivatives cycle and execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "derivatives_"


@dataclass
class CycleStats:
    status: str
    signals: int
    risk_signals: int
    executed: int
    rejected: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose derivatives cycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._rejections: Dict[str, int] = {}
        self._trades: Dict[str, int] = {}

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._cycle_gauge = None
            self._trades_counter = None
            self._rejections_counter = None
            self._portfolio_gauge = None
            self._positions_gauge = None
            self._exposure_gauge = None
            return

        self._cycle_summary = Summary(
            "derivatives_cycle_duration_seconds",
            "Duration of a full derivatives cycle",
        )
        self._cycle_counter = Counter(
            "derivatives_cycle_total",
            "Total derivatives cycles by status",
            labelnames=("status",),
        )
        self._cycle_gauge = Gauge(
            "derivatives_cycle_stage_count",
            "Per-cycle counts (signals, risk signals, executions, rejections)",
            labelnames=("stage",),
        )
        self._trades_counter = Counter(
            "derivatives_trades_total",
            "Executed derivatives actions by action and outcome",
            labelnames=("action", "outcome"),
        )
        self._rejections_counter = Counter(
            "derivatives_validation_rejections_total",
            "Signals rejected by the trade validator, grouped by failing check",
            labelnames=("check",),
        )
        self._portfolio_gauge = Gauge(
            "derivatives_portfolio_usd",
            "Portfolio balances in USD",
            labelnames=("field",),  # available_buying_power, margin_used, unrealized_pnl
        )
        self._positions_gauge = Gauge(
            "derivatives_open_positions",
            "Number of open derivatives positions",
        )
        self._exposure_gauge = Gauge(
            "derivatives_exposure_pct",
            "Margin used as a percentage of total buying power",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        collectors_to_remove = []
        for collector, names in list(REGISTRY._collector_to_names.items()):
            if any(name.startswith(METRIC_PREFIX) for name in names):
                collectors_to_remove.append(collector)

        for collector in collectors_to_remove:
            try:
                REGISTRY.unregister(collector)
            except KeyError:
                pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats = stats
        if not self._enabled:
            return
        assert self._cycle_summary and self._cycle_counter and self._cycle_gauge
        self._cycle_summary.observe(stats.duration_seconds)
        self._cycle_counter.labels(status=stats.status).inc()
        self._cycle_gauge.labels(stage="signals").set(stats.signals)
        self._cycle_gauge.labels(stage="risk_signals").set(stats.risk_signals)
        self._cycle_gauge.labels(stage="executed").set(stats.executed)
        self._cycle_gauge.labels(stage="rejected").set(stats.rejected)

    def record_trade(self, action: str, success: bool) -> None:
        outcome = "success" if success else "failure"
        key = f"{action}:{outcome}"
        self._trades[key] = self._trades.get(key, 0) + 1
        if self._enabled and self._trades_counter:
            self._trades_counter.labels(action=action, outcome=outcome).inc()

    def record_rejection(self, check: Optional[str]) -> None:
        check = check or "other"
        self._rejections[check] = self._rejections.get(check, 0) + 1
        if self._enabled and self._rejections_counter:
            self._rejections_counter.labels(check=check).inc()

    def record_portfolio(self, available_buying_power: float, margin_used: float,
                         unrealized_pnl: float, open_positions: int, exposure_pct: float) -> None:
        if not self._enabled:
            return
        assert self._portfolio_gauge and self._positions_gauge and self._exposure_gauge
        self._portfolio_gauge.labels(field="available_buying_power").set(available_buying_power)
        self._portfolio_gauge.labels(field="margin_used").set(margin_used)
        self._portfolio_gauge.labels(field="unrealized_pnl").set(unrealized_pnl)
        self._positions_gauge.set(max(open_positions, 0))
        self._exposure_gauge.set(exposure_pct)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def rejection_snapshot(self) -> Dict[str, int]:
        return dict(self._rejections)

    def trade_snapshot(self) -> Dict[str, int]:
        return dict(self._trades)


__all__ = ["MetricsRecorder", "CycleStats"]
