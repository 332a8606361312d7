"""
Derivatives Core: Portfolio State

Read-only snapshot of buying power, margin, unrealized P&L and every open
position across the CFM (US futures) and INTX (perpetuals) sub-venues.

Snapshots are rebuilt from scratch on every refresh and never patched in
place; positions are venue-owned and only change when the venue reports it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class Position:
    """
    Open derivatives position as reported by the venue.

    notional is the USD value of the full position (not the margin posted).
    net_size is in base units for perpetuals and in contracts for futures.
    """
    product_id: str
    side: PositionSide
    entry_price: float
    mark_price: float
    notional: float
    leverage: float = 1.0
    liquidation_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    net_size: float = 0.0
    venue: str = "INTX"

    @property
    def is_long(self) -> bool:
        return self.side == PositionSide.LONG

    @property
    def abs_notional(self) -> float:
        return abs(self.notional)

    def pnl_usd(self) -> float:
        """Unrealized P&L, derived from entry/mark when the venue omitted it."""
        if self.unrealized_pnl is not None:
            return self.unrealized_pnl
        if self.entry_price <= 0:
            return 0.0
        move = (self.mark_price - self.entry_price) / self.entry_price
        if not self.is_long:
            move = -move
        return move * self.abs_notional

    def pnl_percent(self) -> float:
        if self.abs_notional <= 0:
            return 0.0
        return self.pnl_usd() / self.abs_notional * 100.0

    def liquidation_distance_percent(self) -> Optional[float]:
        """Distance from mark to liquidation as % of mark (direction-aware)."""
        if not self.liquidation_price or self.liquidation_price <= 0 or self.mark_price <= 0:
            return None
        if self.is_long:
            return (self.mark_price - self.liquidation_price) / self.mark_price * 100.0
        return (self.liquidation_price - self.mark_price) / self.mark_price * 100.0


@dataclass(frozen=True)
class PortfolioState:
    """
    Aggregate derivatives portfolio snapshot.

    total_buying_power = available_buying_power + total_margin_used, i.e. the
    capital base every exposure percentage is measured against.
    """
    available_buying_power: float
    total_margin_used: float
    total_unrealized_pnl: float
    positions: Tuple[Position, ...] = ()
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    degraded: bool = False

    @classmethod
    def empty(cls, degraded: bool = True) -> "PortfolioState":
        return cls(
            available_buying_power=0.0,
            total_margin_used=0.0,
            total_unrealized_pnl=0.0,
            positions=(),
            degraded=degraded,
        )

    @property
    def open_position_count(self) -> int:
        return len(self.positions)

    @property
    def total_buying_power(self) -> float:
        return max(self.available_buying_power, 0.0) + max(self.total_margin_used, 0.0)

    def find_position(self, product_id: str) -> Optional[Position]:
        for position in self.positions:
            if position.product_id == product_id:
                return position
        return None

    def has_position(self, product_id: str) -> bool:
        return self.find_position(product_id) is not None

    def total_notional(self) -> float:
        return sum(position.abs_notional for position in self.positions)

    def exposure_percent(self) -> float:
        total = self.total_buying_power
        if total <= 0:
            return 0.0
        return self.total_margin_used / total * 100.0

    def summary(self) -> str:
        return (
            f"Buying Power: ${self.available_buying_power:.2f} | "
            f"Margin: ${self.total_margin_used:.2f} | "
            f"Positions: {self.open_position_count} | "
            f"Unrealized P&L: ${self.total_unrealized_pnl:.2f}"
            + (" | DEGRADED" if self.degraded else "")
        )


class PortfolioStateAccessor:
    """
    Fetches PortfolioState from the venue with a fail-soft fallback.

    On a fetch failure the previous snapshot is kept; with no previous snapshot
    a degraded empty one is used so the validator rejects anything it cannot
    verify (zero buying power).
    """

    def __init__(self, venue):
        self.venue = venue
        self._current: Optional[PortfolioState] = None
        self.last_error: Optional[str] = None

    @property
    def current(self) -> Optional[PortfolioState]:
        return self._current

    def refresh(self) -> PortfolioState:
        try:
            state = self.venue.get_portfolio_state()
        except Exception as exc:
            self.last_error = str(exc)[:200]
            if self._current is not None:
                logger.warning(f"Portfolio refresh failed, keeping previous snapshot: {self.last_error}")
                return self._current
            logger.warning(f"Portfolio refresh failed with no previous snapshot, using degraded state: {self.last_error}")
            self._current = PortfolioState.empty(degraded=True)
            return self._current

        self.last_error = None
        self._current = state
        if state.degraded:
            logger.warning(f"Portfolio state is partial: {state.summary()}")
        else:
            logger.debug(f"Portfolio refreshed: {state.summary()}")
        return state

    def replace(self, state: Optional[PortfolioState]) -> None:
        self._current = state
