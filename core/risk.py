"""
Derivatives Core: Trade Validator

Hard exposure/leverage/cooldown envelope every proposal must pass before it
reaches the venue. Checks short-circuit in a fixed order and the first
failure is reported by name so rejections can be counted per check.
"""

from dataclasses import dataclass
from typing import Dict, Optional
import logging

from core.cooldowns import CooldownStore
from core.portfolio import PortfolioState
from strategy.signals import Direction, Signal

logger = logging.getLogger(__name__)

APPROVED_REASON = "All risk checks passed"

CHECK_ORDER = (
    "state_loaded",
    "total_exposure",
    "position_size",
    "max_open_positions",
    "cooldown",
    "min_size",
    "leverage",
    "buying_power",
)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a pre-trade check"""
    approved: bool
    reason: str
    check: Optional[str] = None  # Name of the failing check, None when approved

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(approved=True, reason=APPROVED_REASON)

    @classmethod
    def reject(cls, check: str, reason: str) -> "ValidationResult":
        return cls(approved=False, reason=reason, check=check)


class TradeValidator:
    """
    Pure pre-trade risk checks.

    Order: state loaded, post-trade exposure, position %, max open positions,
    cooldown, minimum size, leverage, buying power. FLAT (reducing) signals
    add no exposure and skip the sizing checks.
    """

    def __init__(self, policy: Dict):
        self.policy = policy
        self.risk_config = policy.get("risk", {})
        self.sizing_config = policy.get("sizing", {})

        self.max_leverage = int(self.risk_config.get("max_leverage", 3))
        self.max_position_pct = float(self.risk_config.get("max_position_percent", 30))
        self.max_total_exposure_pct = float(self.risk_config.get("max_total_exposure_percent", 80))
        self.max_open_positions = int(self.risk_config.get("max_open_positions", 4))
        self.min_position_usd = float(self.sizing_config.get("min_position_usd", 10))

    def validate(self, signal: Signal, portfolio: Optional[PortfolioState],
                 cooldowns: Optional[CooldownStore], skip_cooldown: bool = False) -> ValidationResult:
        """
        Validate a signal against the current portfolio and cooldowns.

        Args:
            signal: Proposed trade
            portfolio: Current snapshot (None means state never loaded)
            cooldowns: Per-product cooldown store
            skip_cooldown: Bypass the cooldown check (risk-management exits)

        Returns:
            ValidationResult with the first failing check, or approved
        """
        if portfolio is None:
            return ValidationResult.reject("state_loaded", "Derivatives state not loaded")

        reducing = signal.direction == Direction.FLAT

        result = (
            self._check_total_exposure(signal, portfolio, reducing)
            or self._check_position_size(signal, portfolio, reducing)
            or self._check_max_open_positions(signal, portfolio, reducing)
            or (None if skip_cooldown else self._check_cooldown(signal, cooldowns))
            or self._check_min_size(signal, reducing)
            or self._check_leverage(signal)
            or self._check_buying_power(signal, portfolio, reducing)
        )
        if result is not None:
            logger.debug(f"Validation rejected {signal.product} [{result.check}]: {result.reason}")
            return result

        return ValidationResult.ok()

    def _check_total_exposure(self, signal: Signal, portfolio: PortfolioState,
                              reducing: bool) -> Optional[ValidationResult]:
        current = portfolio.total_margin_used
        new_exposure = 0.0 if reducing else signal.size_usd
        total_bp = portfolio.total_buying_power

        if total_bp > 0:
            exposure_pct = (current + new_exposure) / total_bp * 100.0
        else:
            exposure_pct = 0.0 if current + new_exposure <= 0 else 100.0

        if exposure_pct > self.max_total_exposure_pct:
            return ValidationResult.reject(
                "total_exposure",
                f"Would exceed max exposure: {exposure_pct:.0f}% > {self.max_total_exposure_pct:g}%",
            )
        return None

    def _check_position_size(self, signal: Signal, portfolio: PortfolioState,
                             reducing: bool) -> Optional[ValidationResult]:
        if reducing:
            return None

        total_bp = portfolio.total_buying_power
        position_pct = signal.size_usd / total_bp * 100.0 if total_bp > 0 else 100.0

        if position_pct > self.max_position_pct:
            return ValidationResult.reject(
                "position_size",
                f"Position too large: {position_pct:.0f}% > {self.max_position_pct:g}%",
            )
        return None

    def _check_max_open_positions(self, signal: Signal, portfolio: PortfolioState,
                                  reducing: bool) -> Optional[ValidationResult]:
        if reducing or portfolio.open_position_count < self.max_open_positions:
            return None
        # Adding to an already-open product does not increase the count
        if portfolio.has_position(signal.product):
            return None
        return ValidationResult.reject(
            "max_open_positions",
            f"Max open positions reached: {portfolio.open_position_count}/{self.max_open_positions}",
        )

    def _check_cooldown(self, signal: Signal, cooldowns: Optional[CooldownStore]) -> Optional[ValidationResult]:
        if cooldowns is None:
            return None
        if not cooldowns.is_active(signal.product):
            return None
        return ValidationResult.reject(
            "cooldown",
            f"Cooldown active: {cooldowns.remaining_minutes(signal.product):.0f} minutes remaining",
        )

    def _check_min_size(self, signal: Signal, reducing: bool) -> Optional[ValidationResult]:
        if reducing or signal.size_usd >= self.min_position_usd:
            return None
        return ValidationResult.reject(
            "min_size",
            f"Below minimum size: ${signal.size_usd:.2f} < ${self.min_position_usd:g}",
        )

    def _check_leverage(self, signal: Signal) -> Optional[ValidationResult]:
        if signal.leverage <= self.max_leverage:
            return None
        return ValidationResult.reject(
            "leverage",
            f"Leverage exceeds max: {signal.leverage}x > {self.max_leverage}x",
        )

    def _check_buying_power(self, signal: Signal, portfolio: PortfolioState,
                            reducing: bool) -> Optional[ValidationResult]:
        if reducing or signal.size_usd <= portfolio.available_buying_power:
            return None
        return ValidationResult.reject(
            "buying_power",
            f"Insufficient buying power: ${portfolio.available_buying_power:.2f} < ${signal.size_usd:.2f}",
        )
