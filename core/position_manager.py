"""
Position Management: Risk Exits for Open Derivatives Positions

Re-checks every open position each cycle and proposes reducing (FLAT)
signals for stop-loss, take-profit, liquidation proximity and, optionally,
expensive funding.
"""
import logging
from typing import Dict, List, Optional

from core.portfolio import PortfolioState, Position
from strategy.signals import Direction, Signal, SignalSource, Urgency, funding_rate_for

logger = logging.getLogger(__name__)

STOP_LOSS = "STOP_LOSS"
TAKE_PROFIT = "TAKE_PROFIT"
LIQUIDATION_PREVENT = "LIQUIDATION_PREVENT"
FUNDING_EXIT = "FUNDING_EXIT"

RISK_TAGS = (STOP_LOSS, TAKE_PROFIT, LIQUIDATION_PREVENT, FUNDING_EXIT)


class RiskMonitor:
    """
    Generates RISK_MANAGEMENT signals for open positions.

    Exit priority (first match wins):
    1. Stop-loss: full close
    2. Take-profit: half close
    3. Liquidation proximity: 30% reduction
    4. Funding exit (opt-in): half close
    """

    def __init__(self, policy: Dict):
        self.policy = policy
        self.risk_config = policy.get("risk", {})

        self.stop_loss_pct = float(self.risk_config.get("stop_loss_percent", -10))
        self.take_profit_pct = float(self.risk_config.get("take_profit_percent", 15))
        self.liquidation_buffer_pct = float(self.risk_config.get("liquidation_buffer_percent", 20))
        self.max_funding_bps = float(self.risk_config.get("max_funding_rate_bps", 30))
        self.funding_exit_enabled = bool(self.risk_config.get("funding_exit_enabled", False))

        logger.info(
            f"RiskMonitor initialized: stop_loss={self.stop_loss_pct}%, "
            f"take_profit=+{self.take_profit_pct}%, liq_buffer={self.liquidation_buffer_pct}%, "
            f"funding_exit={self.funding_exit_enabled}"
        )

    def generate_risk_signals(self, portfolio: Optional[PortfolioState],
                              funding_rates: Optional[Dict[str, float]] = None) -> List[Signal]:
        """
        Evaluate all open positions.

        Args:
            portfolio: Current portfolio snapshot (None yields no signals)
            funding_rates: Optional per-product funding rates as fractions

        Returns:
            List of FLAT signals with source RISK_MANAGEMENT
        """
        if portfolio is None:
            return []

        signals: List[Signal] = []
        for position in portfolio.positions:
            signal = self._evaluate_position(position, funding_rates or {})
            if signal is not None:
                logger.warning(f"🚨 Risk exit: {signal.reasoning}")
                signals.append(signal)

        return signals

    def _evaluate_position(self, position: Position, funding_rates: Dict[str, float]) -> Optional[Signal]:
        if not position.entry_price or not position.mark_price:
            return None

        pnl_pct = position.pnl_percent()
        notional = position.abs_notional

        if pnl_pct <= self.stop_loss_pct:
            return self._flat(
                position, 100.0, notional, Urgency.HIGH,
                f"{STOP_LOSS}: {position.product_id} at {pnl_pct:.1f}% loss "
                f"(threshold: {self.stop_loss_pct:g}%)",
            )

        if pnl_pct >= self.take_profit_pct:
            return self._flat(
                position, 80.0, notional * 0.5, Urgency.MEDIUM,
                f"{TAKE_PROFIT}: {position.product_id} at +{pnl_pct:.1f}% "
                f"(threshold: +{self.take_profit_pct:g}%)",
            )

        distance = position.liquidation_distance_percent()
        if distance is not None and distance < self.liquidation_buffer_pct:
            return self._flat(
                position, 95.0, notional * 0.3, Urgency.HIGH,
                f"{LIQUIDATION_PREVENT}: {position.product_id} only {distance:.1f}% from "
                f"liquidation price ${position.liquidation_price:.2f}",
            )

        if self.funding_exit_enabled:
            rate = funding_rate_for(position.product_id, funding_rates)
            if rate is not None and abs(rate * 10000) > self.max_funding_bps:
                # Longs pay positive funding, shorts pay negative funding
                paying = (rate > 0 and position.is_long) or (rate < 0 and not position.is_long)
                if paying:
                    return self._flat(
                        position, 70.0, notional * 0.5, Urgency.MEDIUM,
                        f"{FUNDING_EXIT}: {position.product_id} paying {abs(rate) * 10000:.1f}bps funding "
                        f"(threshold: {self.max_funding_bps:g}bps)",
                    )

        return None

    @staticmethod
    def _flat(position: Position, confidence: float, size_usd: float,
              urgency: Urgency, reasoning: str) -> Signal:
        return Signal(
            product=position.product_id,
            direction=Direction.FLAT,
            confidence=confidence,
            leverage=1,
            size_usd=size_usd,
            reasoning=reasoning,
            source=SignalSource.RISK_MANAGEMENT,
            urgency=urgency,
        )
