"""
Venue client abstraction for derivatives order placement.

The strategy/risk core talks to the brokerage only through this interface so
every decision path can be exercised against an in-memory venue in tests.
Retry/backoff lives inside concrete clients, never in the callers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from core.portfolio import PortfolioState


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class OrderResult:
    """Venue response to an order or close request."""
    success: bool
    order_id: Optional[str] = None
    failure_reason: Optional[str] = None


class VenueClient(ABC):
    """Abstract derivatives venue."""

    @abstractmethod
    def get_portfolio_state(self) -> PortfolioState:
        """Return a fresh, fully rebuilt portfolio snapshot."""

    @abstractmethod
    def open_or_add_position(self, product_id: str, side: OrderSide, size: float,
                             leverage: int = 1, contracts: bool = False) -> OrderResult:
        """
        Place a market order that opens or adds to a position.

        Args:
            product_id: e.g. "BTC-PERP-INTX" or "GCJ6-USD"
            side: BUY for long exposure, SELL for short exposure
            size: USD notional, or a contract count when contracts=True
            leverage: Requested leverage (perpetuals only)
            contracts: Interpret size as whole futures contracts
        """

    @abstractmethod
    def close_position(self, product_id: str, size: Optional[float] = None) -> OrderResult:
        """Close a position fully (size=None) or partially (base units / contracts)."""
