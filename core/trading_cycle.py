"""
Derivatives Trading Cycle - Orchestrator

One tick of the derivatives engine:
1. Fetch portfolio state
2. Risk scan of open positions; risk exits execute first (cooldown bypassed)
3. Refresh state
4. Signal scan over every configured product
5. Validate and execute signals by urgency, then confidence

A failure anywhere ends the cycle early; trades already executed are kept.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.cooldowns import CooldownStore
from core.execution import EngineState, ExecutionEngine, TradeAction, TradeLedger, TradeRecord
from core.portfolio import PortfolioState, PortfolioStateAccessor
from core.position_manager import RiskMonitor
from core.risk import TradeValidator, ValidationResult
from core.venue import VenueClient
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import CycleStats, MetricsRecorder
from strategy.signals import URGENCY_RANK, Direction, Signal, SignalGenerator, SignalInputs, SignalSource

logger = logging.getLogger(__name__)

__all__ = ["CyclePhase", "CycleResult", "DerivativesEngine", "EngineState", "Rejection"]


class CyclePhase(str, Enum):
    IDLE = "IDLE"
    FETCH_STATE = "FETCH_STATE"
    RISK_SCAN = "RISK_SCAN"
    EXECUTE_RISK = "EXECUTE_RISK"
    REFRESH_STATE = "REFRESH_STATE"
    SIGNAL_SCAN = "SIGNAL_SCAN"
    VALIDATE_AND_EXECUTE = "VALIDATE_AND_EXECUTE"


@dataclass
class Rejection:
    """Signal blocked by the trade validator"""
    signal: Signal
    reason: str
    check: Optional[str] = None


@dataclass
class CycleResult:
    """Result of a derivatives cycle"""
    trades_executed: List[TradeRecord] = field(default_factory=list)
    portfolio_state: Optional[PortfolioState] = None
    signals_generated: List[Signal] = field(default_factory=list)
    risk_signals: List[Signal] = field(default_factory=list)
    rejections: List[Rejection] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


class DerivativesEngine:
    """
    Owns the engine state (portfolio snapshot, cooldowns, ledger) and wires the
    signal generator, risk monitor, validator and execution engine together.
    """

    def __init__(self,
                 policy: Dict,
                 venue: VenueClient,
                 metrics: Optional[MetricsRecorder] = None,
                 alerts: Optional[AlertService] = None,
                 cooldowns: Optional[CooldownStore] = None):
        """
        Initialize engine with its collaborators.

        Args:
            policy: Derivatives config dict (config/derivatives.yaml)
            venue: Venue client used for state and orders
            metrics: Optional Prometheus recorder
            alerts: Optional webhook alert service
            cooldowns: Optional pre-built cooldown store (tests inject a clock)
        """
        self.policy = policy
        self.venue = venue
        self.metrics = metrics
        self.alerts = alerts

        risk_config = policy.get("risk", {})
        cycle_config = policy.get("cycle", {})
        self.enabled = bool(policy.get("enabled", False))
        self.refresh_trade_limit = int(cycle_config.get("state_refresh_trade_limit", 2))

        self.state = EngineState(
            portfolio=PortfolioStateAccessor(venue),
            cooldowns=cooldowns or CooldownStore(risk_config.get("position_cooldown_minutes", 30)),
            ledger=TradeLedger(int(cycle_config.get("ledger_max_entries", 200))),
        )

        self.signal_generator = SignalGenerator(policy)
        self.risk_monitor = RiskMonitor(policy)
        self.validator = TradeValidator(policy)
        self.executor = ExecutionEngine(policy, venue, self.state)

        self.phase = CyclePhase.IDLE
        self.cycle_count = 0

        logger.info(
            f"DerivativesEngine initialized: enabled={self.enabled}, "
            f"perpetuals={self.signal_generator.perpetuals}, "
            f"commodities={self.signal_generator.commodity_futures}"
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_state(self) -> Optional[PortfolioState]:
        return self.state.portfolio.current

    def get_trade_history(self) -> List[TradeRecord]:
        return self.state.ledger.entries()

    def get_config(self) -> Dict[str, Any]:
        return copy.deepcopy(self.policy)

    def is_enabled(self) -> bool:
        return self.enabled

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, inputs: SignalInputs) -> CycleResult:
        """
        Run one complete derivatives cycle.

        Args:
            inputs: Indicators, regime, macro label, funding, sentiment, AI opinion

        Returns:
            CycleResult with executed trades, final state, signals and rejections
        """
        result = CycleResult()
        if not self.enabled:
            logger.debug("Derivatives engine disabled, skipping cycle")
            return result

        self.cycle_count += 1
        started = time.monotonic()
        logger.info(f"📊 Derivatives cycle #{self.cycle_count} start")

        try:
            self._set_phase(CyclePhase.FETCH_STATE)
            portfolio = self.state.portfolio.refresh()
            logger.info(f"💰 {portfolio.summary()}")

            self._set_phase(CyclePhase.RISK_SCAN)
            result.risk_signals = self.risk_monitor.generate_risk_signals(portfolio, inputs.funding_rates)
            if result.risk_signals:
                logger.warning(f"🚨 {len(result.risk_signals)} risk signal(s) detected, executing first")
                self._set_phase(CyclePhase.EXECUTE_RISK)
                for signal in result.risk_signals:
                    self._execute_risk_signal(signal, inputs, result)

            self._set_phase(CyclePhase.REFRESH_STATE)
            portfolio = self.state.portfolio.refresh()

            self._set_phase(CyclePhase.SIGNAL_SCAN)
            result.signals_generated = self.signal_generator.generate_signals(inputs, portfolio)

            actionable = sorted(
                (s for s in result.signals_generated if s.direction != Direction.HOLD),
                key=lambda s: (URGENCY_RANK[s.urgency], -s.confidence),
            )

            self._set_phase(CyclePhase.VALIDATE_AND_EXECUTE)
            for signal in actionable:
                self._validate_and_execute(signal, inputs, result)

        except Exception as exc:
            result.success = False
            result.error = str(exc)[:200]
            logger.error(f"❌ Derivatives cycle error: {result.error}", exc_info=True)

        result.portfolio_state = self.state.portfolio.current
        self._set_phase(CyclePhase.IDLE)

        duration = time.monotonic() - started
        logger.info(
            f"📊 Derivatives cycle complete: {len(result.trades_executed)} trade(s) executed, "
            f"{len(result.rejections)} rejected ({duration:.2f}s)"
        )
        self._observe(result, duration)
        return result

    def _set_phase(self, phase: CyclePhase) -> None:
        self.phase = phase
        logger.debug(f"Cycle phase: {phase.value}")

    def _execute_risk_signal(self, signal: Signal, inputs: SignalInputs, result: CycleResult) -> None:
        validation = self.validator.validate(
            signal, self.state.portfolio.current, self.state.cooldowns, skip_cooldown=True
        )
        if not validation.approved:
            if signal.source != SignalSource.RISK_MANAGEMENT:
                self._reject(signal, validation, result)
                return
            logger.warning(
                f"⚠️ Force-executing risk exit for {signal.product} despite validation: {validation.reason}"
            )

        record = self.executor.execute(signal, self.signal_generator.context_for(signal.product, inputs))
        self._after_execution(record, result, risk=True)
        self.state.portfolio.refresh()

    def _validate_and_execute(self, signal: Signal, inputs: SignalInputs, result: CycleResult) -> None:
        validation = self.validator.validate(
            signal,
            self.state.portfolio.current,
            self.state.cooldowns,
            skip_cooldown=signal.source == SignalSource.RISK_MANAGEMENT,
        )
        if not validation.approved:
            self._reject(signal, validation, result)
            return

        logger.info(f"✅ Trade approved: {signal.product} {signal.direction.value}")
        record = self.executor.execute(signal, self.signal_generator.context_for(signal.product, inputs))
        if self._after_execution(record, result, risk=False):
            if len(result.trades_executed) <= self.refresh_trade_limit:
                self.state.portfolio.refresh()

    def _reject(self, signal: Signal, validation: ValidationResult, result: CycleResult) -> None:
        logger.info(f"⛔ Trade blocked: {signal.product} {signal.direction.value}, {validation.reason}")
        result.rejections.append(Rejection(signal=signal, reason=validation.reason, check=validation.check))
        if self.metrics:
            self.metrics.record_rejection(validation.check)

    def _after_execution(self, record: TradeRecord, result: CycleResult, risk: bool) -> bool:
        """Track an execution outcome. Returns False for no-op records."""
        if record.noop:
            return False

        result.trades_executed.append(record)
        if self.metrics:
            self.metrics.record_trade(record.action.value, record.success)
        self._alert_for(record, risk)
        return True

    def _alert_for(self, record: TradeRecord, risk: bool) -> None:
        if not self.alerts:
            return

        context = {
            "product": record.product,
            "action": record.action.value,
            "size_usd": round(record.size_usd, 2),
            "order_id": record.order_id,
        }
        if risk and not record.success:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                f"Risk exit failed: {record.product}",
                record.error or "Order failed",
                context,
            )
        elif record.action in (TradeAction.STOP_LOSS, TradeAction.LIQUIDATION_PREVENT):
            self.alerts.notify(
                AlertSeverity.CRITICAL if record.action == TradeAction.LIQUIDATION_PREVENT else AlertSeverity.WARNING,
                f"{record.action.value}: {record.product}",
                record.reasoning,
                context,
            )
        elif not record.success:
            self.alerts.notify(
                AlertSeverity.WARNING,
                f"Derivatives order failed: {record.product}",
                record.error or "Order failed",
                context,
            )

    def _observe(self, result: CycleResult, duration: float) -> None:
        if not self.metrics:
            return

        self.metrics.observe_cycle(CycleStats(
            status="success" if result.success else "error",
            signals=len(result.signals_generated),
            risk_signals=len(result.risk_signals),
            executed=len(result.trades_executed),
            rejected=len(result.rejections),
            duration_seconds=duration,
        ))

        state = result.portfolio_state
        if state is not None:
            self.metrics.record_portfolio(
                available_buying_power=state.available_buying_power,
                margin_used=state.total_margin_used,
                unrealized_pnl=state.total_unrealized_pnl,
                open_positions=state.open_position_count,
                exposure_pct=state.exposure_percent(),
            )
