"""
Derivatives Core: Execution Engine

Translates approved signals into venue orders: closes (full or partial),
opens/adds for perpetuals (USD notional + leverage) and commodity futures
(whole contracts), and two-leg flips with an observable interim close.

Every executed action produces a TradeRecord in a bounded in-memory ledger.
Venue failures never propagate out of execute(); they become failed records.
"""

import logging
import math
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from core.cooldowns import CooldownStore
from core.portfolio import PortfolioStateAccessor, Position
from core.position_manager import RISK_TAGS
from core.venue import OrderResult, OrderSide, VenueClient
from strategy.signals import Direction, Signal, SignalContext, SignalSource, is_perpetual

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 200
DEFAULT_LEDGER_SIZE = 200


class TradeAction(str, Enum):
    """Ledger action tags. HOLD only marks no-op outcomes, which never reach the ledger."""
    OPEN_LONG = "OPEN_LONG"
    OPEN_SHORT = "OPEN_SHORT"
    CLOSE_LONG = "CLOSE_LONG"
    CLOSE_SHORT = "CLOSE_SHORT"
    ADD_LONG = "ADD_LONG"
    ADD_SHORT = "ADD_SHORT"
    REDUCE = "REDUCE"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    FUNDING_EXIT = "FUNDING_EXIT"
    LIQUIDATION_PREVENT = "LIQUIDATION_PREVENT"
    HOLD = "HOLD"


@dataclass(frozen=True)
class TradeRecord:
    """Outcome of one executed (or attempted) derivatives action"""
    product: str
    action: TradeAction
    size_usd: float
    leverage: int
    success: bool
    reasoning: str = ""
    order_id: Optional[str] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    error: Optional[str] = None
    context: SignalContext = field(default_factory=SignalContext)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    noop: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class TradeLedger:
    """Append-only trade history keeping the most recent entries."""

    def __init__(self, max_entries: int = DEFAULT_LEDGER_SIZE):
        self.max_entries = max_entries
        self._records: Deque[TradeRecord] = deque(maxlen=max_entries)

    def append(self, record: TradeRecord) -> None:
        self._records.append(record)

    def entries(self) -> List[TradeRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)


@dataclass
class EngineState:
    """Mutable engine-owned state handed to the execution engine and orchestrator."""
    portfolio: PortfolioStateAccessor
    cooldowns: CooldownStore
    ledger: TradeLedger


def _truncate(message: str) -> str:
    return (message or "Unknown error")[:MAX_ERROR_LENGTH]


def close_action_for(signal: Signal, position: Position) -> TradeAction:
    """Ledger action for a reducing signal: risk tag, then REDUCE, then plain close."""
    if signal.source == SignalSource.RISK_MANAGEMENT:
        for tag in RISK_TAGS:
            if signal.reasoning.startswith(tag):
                return TradeAction(tag)
        return TradeAction.REDUCE
    return TradeAction.CLOSE_LONG if position.is_long else TradeAction.CLOSE_SHORT


class ExecutionEngine:
    """
    Executes signals against a VenueClient.

    State machine per signal:
    - FLAT: close (partial when size_usd < |notional|) or no-op when flat
    - LONG/SHORT: open or add; an opposite position is closed first (flip)
    - HOLD: no-op
    """

    def __init__(self, policy: Dict, venue: VenueClient, state: EngineState):
        self.policy = policy
        self.venue = venue
        self.state = state
        self.products_config = policy.get("products", {})
        self.cycle_config = policy.get("cycle", {})

        self.contract_unit_usd = float(self.products_config.get("contract_unit_usd", 100))
        self.verify_flip_close = bool(self.cycle_config.get("verify_flip_close", True))

    def execute(self, signal: Signal, context: Optional[SignalContext] = None) -> TradeRecord:
        """
        Execute one signal.

        Args:
            signal: Approved signal
            context: Market snapshot stored on the resulting record

        Returns:
            Final TradeRecord (also appended to the ledger unless it was a no-op)
        """
        context = context or SignalContext()
        portfolio = self.state.portfolio.current
        position = portfolio.find_position(signal.product) if portfolio else None

        if signal.direction == Direction.HOLD:
            return self._noop(signal, TradeAction.HOLD, "HOLD, no derivatives action", context)

        if signal.direction == Direction.FLAT and position is None:
            return self._noop(
                signal, TradeAction.HOLD, "No position to close, already flat", context
            )

        try:
            if signal.direction == Direction.FLAT:
                record = self._close(signal, position, close_action_for(signal, position), context)
            else:
                record = self._open(signal, position, context)
        except Exception as exc:
            logger.error(f"❌ Execution error for {signal.product}: {exc}", exc_info=True)
            action = self._intended_action(signal, position)
            record = self._record(signal, action, success=False, context=context, error=_truncate(str(exc)))

        return self._finish(record)

    # ------------------------------------------------------------------
    # Legs
    # ------------------------------------------------------------------

    def _close(self, signal: Signal, position: Position, action: TradeAction,
               context: SignalContext, full: bool = False) -> TradeRecord:
        size = None if full else self.close_quantity(position, signal.size_usd)
        logger.info(
            f"🔄 Closing {signal.product}: {action.value} "
            f"({'full' if size is None else f'size={size:g}'})"
        )
        result = self.venue.close_position(signal.product, size)

        closed_usd = position.abs_notional
        if size is not None and abs(position.net_size) > 0:
            closed_usd = position.abs_notional * min(1.0, size / abs(position.net_size))
        elif size is not None:
            closed_usd = min(position.abs_notional, signal.size_usd)
        fraction = closed_usd / position.abs_notional if position.abs_notional > 0 else 1.0

        return self._from_result(
            signal, action, result, context,
            size_usd=closed_usd,
            leverage=int(position.leverage) or 1,
            entry_price=position.entry_price,
            exit_price=position.mark_price,
            realized_pnl=position.pnl_usd() * fraction,
        )

    def _open(self, signal: Signal, position: Optional[Position], context: SignalContext) -> TradeRecord:
        going_long = signal.direction == Direction.LONG

        if position is not None and position.is_long != going_long:
            aborted = self._flip_close(signal, position, context)
            if aborted is not None:
                return aborted
            position = None

        if position is None:
            action = TradeAction.OPEN_LONG if going_long else TradeAction.OPEN_SHORT
        else:
            action = TradeAction.ADD_LONG if going_long else TradeAction.ADD_SHORT

        side = OrderSide.BUY if going_long else OrderSide.SELL
        if is_perpetual(signal.product):
            logger.info(f"📈 {action.value} {signal.product}: ${signal.size_usd:.2f} @ {signal.leverage}x")
            result = self.venue.open_or_add_position(
                signal.product, side, signal.size_usd, leverage=signal.leverage
            )
        else:
            contracts = self.contracts_for(signal.size_usd)
            logger.info(f"📈 {action.value} {signal.product}: {contracts} contract(s)")
            result = self.venue.open_or_add_position(
                signal.product, side, contracts, leverage=signal.leverage, contracts=True
            )

        return self._from_result(signal, action, result, context)

    def _flip_close(self, signal: Signal, position: Position,
                    context: SignalContext) -> Optional[TradeRecord]:
        """Close the opposite position; return a failed final record if the open leg must not run."""
        open_action = TradeAction.OPEN_LONG if signal.direction == Direction.LONG else TradeAction.OPEN_SHORT
        close_action = TradeAction.CLOSE_LONG if position.is_long else TradeAction.CLOSE_SHORT
        logger.info(
            f"🔄 Flipping {signal.product}: {position.side.value} → {signal.direction.value}"
        )

        interim = self._close(signal, position, close_action, context, full=True)
        interim = replace(interim, reasoning=f"Flip close leg: {signal.reasoning}")
        self._finish(interim)

        if not interim.success:
            return self._record(
                signal, open_action, success=False, context=context,
                error=_truncate(f"Flip aborted, close leg failed: {interim.error}"),
            )

        if self.verify_flip_close:
            refreshed = self.state.portfolio.refresh()
            if refreshed.has_position(signal.product):
                logger.warning(f"⚠️ {signal.product} still open after flip close, skipping open leg")
                return self._record(
                    signal, open_action, success=False, context=context,
                    error="Flip aborted, position still open after close",
                )

        return None

    # ------------------------------------------------------------------
    # Sizing helpers
    # ------------------------------------------------------------------

    def close_quantity(self, position: Position, size_usd: float) -> Optional[float]:
        """
        Base quantity (or contracts) to close for a USD amount.

        None means a full close: size_usd of 0 or at least the position notional.
        """
        notional = position.abs_notional
        if size_usd <= 0 or notional <= 0 or size_usd >= notional:
            return None

        fraction = size_usd / notional
        net_size = abs(position.net_size)

        if net_size > 0:
            quantity = net_size * fraction
        elif position.mark_price > 0:
            quantity = size_usd / position.mark_price
        else:
            return None

        if not is_perpetual(position.product_id):
            quantity = float(max(1, math.floor(quantity)))
            if net_size > 0 and quantity >= net_size:
                return None

        return quantity

    def contracts_for(self, size_usd: float) -> int:
        return max(1, int(math.floor(size_usd / self.contract_unit_usd)))

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _intended_action(self, signal: Signal, position: Optional[Position]) -> TradeAction:
        if signal.direction == Direction.FLAT and position is not None:
            return close_action_for(signal, position)
        if signal.direction == Direction.LONG:
            return TradeAction.ADD_LONG if position is not None and position.is_long else TradeAction.OPEN_LONG
        return TradeAction.ADD_SHORT if position is not None and not position.is_long else TradeAction.OPEN_SHORT

    def _record(self, signal: Signal, action: TradeAction, success: bool,
                context: SignalContext, **fields) -> TradeRecord:
        fields.setdefault("size_usd", signal.size_usd)
        fields.setdefault("leverage", signal.leverage)
        fields.setdefault("reasoning", signal.reasoning)
        return TradeRecord(
            product=signal.product,
            action=action,
            success=success,
            context=context,
            **fields,
        )

    def _from_result(self, signal: Signal, action: TradeAction, result: OrderResult,
                     context: SignalContext, **fields) -> TradeRecord:
        if result.success:
            logger.info(f"✅ Order {result.order_id} executed ({action.value} {signal.product})")
            return self._record(signal, action, success=True, context=context,
                                order_id=result.order_id, **fields)

        fields.pop("realized_pnl", None)
        error = _truncate(result.failure_reason or "Order failed")
        logger.error(f"❌ Order failed for {signal.product}: {error}")
        return self._record(signal, action, success=False, context=context,
                            order_id=result.order_id, error=error, **fields)

    def _noop(self, signal: Signal, action: TradeAction, reasoning: str,
              context: SignalContext) -> TradeRecord:
        logger.debug(f"{signal.product}: {reasoning}")
        return self._record(signal, action, success=True, context=context,
                            size_usd=0.0, reasoning=reasoning, noop=True)

    def _finish(self, record: TradeRecord) -> TradeRecord:
        if record.success:
            self.state.cooldowns.record_trade(record.product)
        self.state.ledger.append(record)
        return record
