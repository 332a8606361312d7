"""
Tests for turning approved signals into venue orders.

Covers:
- Perpetual opens/adds (USD notional + leverage) and futures contracts
- Full and partial closes with realized P&L bookkeeping
- Two-leg flips with an observable interim close
- No-op handling, failed orders and venue exceptions
"""
import pytest

from core.execution import (
    EngineState,
    ExecutionEngine,
    TradeAction,
    TradeLedger,
    TradeRecord,
    close_action_for,
)
from core.portfolio import PortfolioStateAccessor
from core.venue import OrderResult, OrderSide
from strategy.signals import Direction, Signal, SignalContext, SignalSource, Urgency
from tests.helpers import MockVenue, make_position, make_state


def _signal(product="BTC-PERP-INTX", direction=Direction.LONG, size_usd=100.0, leverage=2,
            reasoning="Strong bullish confluence (+48)", source=SignalSource.TECHNICAL):
    return Signal(product=product, direction=direction, confidence=60.0, leverage=leverage,
                  size_usd=size_usd, reasoning=reasoning, source=source, urgency=Urgency.HIGH)


def _build(policy, cooldowns, *states):
    venue = MockVenue(list(states) or [make_state()])
    state = EngineState(
        portfolio=PortfolioStateAccessor(venue),
        cooldowns=cooldowns,
        ledger=TradeLedger(),
    )
    state.portfolio.refresh()
    return venue, state, ExecutionEngine(policy, venue, state)


class TestOpen:

    def test_open_long_perpetual(self, policy, cooldowns, clock):
        venue, state, engine = _build(policy, cooldowns)

        record = engine.execute(_signal())

        assert venue.open_calls == [{
            "product_id": "BTC-PERP-INTX",
            "side": OrderSide.BUY,
            "size": 100.0,
            "leverage": 2,
            "contracts": False,
        }]
        assert record.action == TradeAction.OPEN_LONG
        assert record.success
        assert not record.noop
        assert record.order_id == "order-1"
        assert record.size_usd == 100.0
        assert record.leverage == 2
        assert state.ledger.entries() == [record]
        assert state.cooldowns.get("BTC-PERP-INTX").last_trade_time == clock()

    def test_open_short_perpetual(self, policy, cooldowns):
        venue, _, engine = _build(policy, cooldowns)

        record = engine.execute(_signal(direction=Direction.SHORT))

        assert venue.open_calls[0]["side"] == OrderSide.SELL
        assert record.action == TradeAction.OPEN_SHORT

    def test_add_to_existing_long(self, policy, cooldowns):
        state = make_state(positions=[make_position(notional=200)])
        _, _, engine = _build(policy, cooldowns, state)

        assert engine.execute(_signal()).action == TradeAction.ADD_LONG

    def test_add_to_existing_short(self, policy, cooldowns):
        state = make_state(positions=[make_position(side="SHORT", notional=200)])
        _, _, engine = _build(policy, cooldowns, state)

        assert engine.execute(_signal(direction=Direction.SHORT)).action == TradeAction.ADD_SHORT

    @pytest.mark.parametrize("size_usd,contracts", [(250.0, 2), (99.0, 1), (40.0, 1)])
    def test_futures_open_in_whole_contracts(self, policy, cooldowns, size_usd, contracts):
        venue, _, engine = _build(policy, cooldowns)

        record = engine.execute(_signal(product="GCJ6-USD", size_usd=size_usd))

        call = venue.open_calls[0]
        assert call["size"] == contracts
        assert call["contracts"] is True
        assert record.action == TradeAction.OPEN_LONG

    def test_context_is_stored(self, policy, cooldowns):
        _, _, engine = _build(policy, cooldowns)
        context = SignalContext(confluence_score=48, regime="TRENDING_UP", funding_rate=0.0001)

        record = engine.execute(_signal(), context)

        assert record.context == context


class TestNoOps:

    def test_hold_does_nothing(self, policy, cooldowns):
        venue, state, engine = _build(policy, cooldowns)

        record = engine.execute(_signal(direction=Direction.HOLD))

        assert record.action == TradeAction.HOLD
        assert record.noop
        assert record.success
        assert record.size_usd == 0.0
        assert venue.open_calls == [] and venue.close_calls == []
        assert len(state.ledger) == 0
        assert len(state.cooldowns) == 0

    def test_flat_without_position(self, policy, cooldowns):
        venue, state, engine = _build(policy, cooldowns)

        record = engine.execute(_signal(direction=Direction.FLAT, size_usd=0.0))

        assert record.action == TradeAction.HOLD
        assert record.noop
        assert record.reasoning == "No position to close, already flat"
        assert venue.close_calls == []
        assert len(state.ledger) == 0


class TestClose:

    def test_full_close(self, policy, cooldowns):
        position = make_position(entry=100, mark=110, notional=1000, leverage=2, net_size=10)
        venue, state, engine = _build(policy, cooldowns, make_state(positions=[position]))

        record = engine.execute(_signal(direction=Direction.FLAT, size_usd=0.0, reasoning="Neutral zone"))

        assert venue.close_calls == [{"product_id": "BTC-PERP-INTX", "size": None}]
        assert record.action == TradeAction.CLOSE_LONG
        assert record.size_usd == pytest.approx(1000)
        assert record.leverage == 2
        assert record.entry_price == 100
        assert record.exit_price == 110
        assert record.realized_pnl == pytest.approx(100)
        assert state.cooldowns.is_active("BTC-PERP-INTX")

    def test_close_short_action(self, policy, cooldowns):
        position = make_position(side="SHORT", notional=500)
        _, _, engine = _build(policy, cooldowns, make_state(positions=[position]))

        record = engine.execute(_signal(direction=Direction.FLAT, size_usd=500))
        assert record.action == TradeAction.CLOSE_SHORT

    def test_partial_close_by_net_size(self, policy, cooldowns):
        position = make_position(entry=100, mark=120, notional=1000, net_size=0.01)
        venue, _, engine = _build(policy, cooldowns, make_state(positions=[position]))
        signal = _signal(direction=Direction.FLAT, size_usd=500, source=SignalSource.RISK_MANAGEMENT,
                         reasoning="TAKE_PROFIT: BTC-PERP-INTX at +20.0% (threshold: +15%)")

        record = engine.execute(signal)

        assert venue.close_calls[0]["size"] == pytest.approx(0.005)
        assert record.action == TradeAction.TAKE_PROFIT
        assert record.size_usd == pytest.approx(500)
        assert record.realized_pnl == pytest.approx(100)

    def test_partial_close_by_mark_price(self, policy, cooldowns):
        position = make_position(entry=50000, mark=50000, notional=1000)
        venue, _, engine = _build(policy, cooldowns, make_state(positions=[position]))
        signal = _signal(direction=Direction.FLAT, size_usd=300, source=SignalSource.RISK_MANAGEMENT,
                         reasoning="LIQUIDATION_PREVENT: close to liquidation")

        record = engine.execute(signal)

        assert venue.close_calls[0]["size"] == pytest.approx(0.006)
        assert record.action == TradeAction.LIQUIDATION_PREVENT
        assert record.size_usd == pytest.approx(300)

    def test_futures_partial_close_rounds_down_to_contracts(self, policy, cooldowns):
        position = make_position(product_id="GCJ6-USD", notional=1000, net_size=5)
        venue, _, engine = _build(policy, cooldowns, make_state(positions=[position]))

        record = engine.execute(_signal(product="GCJ6-USD", direction=Direction.FLAT, size_usd=500))

        assert venue.close_calls[0]["size"] == 2.0
        assert record.size_usd == pytest.approx(400)

    def test_futures_partial_close_of_single_contract_closes_fully(self, policy, cooldowns):
        position = make_position(product_id="GCJ6-USD", notional=1000, net_size=1)
        venue, _, engine = _build(policy, cooldowns, make_state(positions=[position]))

        engine.execute(_signal(product="GCJ6-USD", direction=Direction.FLAT, size_usd=500))

        assert venue.close_calls[0]["size"] is None

    def test_oversized_close_is_full(self, policy, cooldowns):
        position = make_position(notional=400, net_size=2)
        venue, _, engine = _build(policy, cooldowns, make_state(positions=[position]))

        engine.execute(_signal(direction=Direction.FLAT, size_usd=1000))

        assert venue.close_calls[0]["size"] is None

    def test_untagged_risk_signal_is_reduce(self, policy, cooldowns):
        position = make_position(notional=400)
        _, _, engine = _build(policy, cooldowns, make_state(positions=[position]))
        signal = _signal(direction=Direction.FLAT, size_usd=0.0, source=SignalSource.RISK_MANAGEMENT,
                         reasoning="Manual de-risk")

        assert engine.execute(signal).action == TradeAction.REDUCE

    def test_failed_close(self, policy, cooldowns):
        position = make_position(entry=100, mark=110, notional=1000)
        venue, state, engine = _build(policy, cooldowns, make_state(positions=[position]))
        venue.close_results.append(OrderResult(success=False, failure_reason="INSUFFICIENT_FUNDS"))
        signal = _signal(direction=Direction.FLAT, size_usd=1000, source=SignalSource.RISK_MANAGEMENT,
                         reasoning="STOP_LOSS: BTC-PERP-INTX at -15.0% loss (threshold: -10%)")

        record = engine.execute(signal)

        assert not record.success
        assert record.action == TradeAction.STOP_LOSS
        assert record.error == "INSUFFICIENT_FUNDS"
        assert record.realized_pnl is None
        assert state.ledger.entries() == [record]
        assert not state.cooldowns.is_active("BTC-PERP-INTX")


class TestFailures:

    def test_venue_exception_becomes_failed_record(self, policy, cooldowns):
        venue, state, engine = _build(policy, cooldowns)
        venue.open_results.append(RuntimeError("read timeout"))

        record = engine.execute(_signal())

        assert not record.success
        assert record.action == TradeAction.OPEN_LONG
        assert record.error == "read timeout"
        assert len(state.ledger) == 1
        assert len(state.cooldowns) == 0

    def test_failure_reason_truncated(self, policy, cooldowns):
        venue, _, engine = _build(policy, cooldowns)
        venue.open_results.append(OrderResult(success=False, order_id="o-9", failure_reason="x" * 500))

        record = engine.execute(_signal())

        assert len(record.error) == 200
        assert record.order_id == "o-9"


class TestFlip:

    def test_flip_short_to_long(self, policy, cooldowns):
        short = make_state(positions=[make_position(side="SHORT", entry=100, mark=90, notional=500)])
        flat = make_state()
        venue, state, engine = _build(policy, cooldowns, short, flat)

        record = engine.execute(_signal())

        assert venue.close_calls == [{"product_id": "BTC-PERP-INTX", "size": None}]
        assert len(venue.open_calls) == 1
        assert record.action == TradeAction.OPEN_LONG
        assert record.success

        interim, final = state.ledger.entries()
        assert interim.action == TradeAction.CLOSE_SHORT
        assert interim.reasoning == "Flip close leg: Strong bullish confluence (+48)"
        assert interim.realized_pnl == pytest.approx(50)
        assert final is record

    def test_flip_aborts_when_close_fails(self, policy, cooldowns):
        short = make_state(positions=[make_position(side="SHORT", notional=500)])
        venue, state, engine = _build(policy, cooldowns, short)
        venue.close_results.append(OrderResult(success=False, failure_reason="rejected"))

        record = engine.execute(_signal())

        assert venue.open_calls == []
        assert not record.success
        assert record.action == TradeAction.OPEN_LONG
        assert record.error == "Flip aborted, close leg failed: rejected"
        assert len(state.ledger) == 2

    def test_flip_aborts_when_position_still_open(self, policy, cooldowns):
        long_state = make_state(positions=[make_position(side="LONG", notional=500)])
        venue, state, engine = _build(policy, cooldowns, long_state)

        record = engine.execute(_signal(direction=Direction.SHORT))

        assert venue.open_calls == []
        assert record.error == "Flip aborted, position still open after close"
        assert record.action == TradeAction.OPEN_SHORT
        # Close leg went through, so the product is cooling down
        assert state.cooldowns.is_active("BTC-PERP-INTX")

    def test_flip_without_verification(self, policy, cooldowns):
        policy["cycle"]["verify_flip_close"] = False
        long_state = make_state(positions=[make_position(side="LONG", notional=500)])
        venue, _, engine = _build(policy, cooldowns, long_state)

        record = engine.execute(_signal(direction=Direction.SHORT))

        assert venue.state_calls == 1
        assert record.success
        assert record.action == TradeAction.OPEN_SHORT


class TestRecordsAndLedger:

    def test_ledger_keeps_most_recent(self):
        ledger = TradeLedger(max_entries=3)
        for i in range(5):
            ledger.append(TradeRecord(product=f"P{i}", action=TradeAction.OPEN_LONG,
                                      size_usd=10, leverage=1, success=True))

        assert [r.product for r in ledger.entries()] == ["P2", "P3", "P4"]

    def test_to_dict(self):
        record = TradeRecord(product="BTC-PERP-INTX", action=TradeAction.STOP_LOSS,
                             size_usd=10, leverage=1, success=True)
        data = record.to_dict()

        assert data["action"] == "STOP_LOSS"
        assert data["timestamp"] == record.timestamp.isoformat()
        assert data["context"]["regime"] is None

    def test_close_action_for(self):
        long_position = make_position()
        assert close_action_for(_signal(direction=Direction.FLAT), long_position) == TradeAction.CLOSE_LONG
        risk = _signal(direction=Direction.FLAT, source=SignalSource.RISK_MANAGEMENT,
                       reasoning="FUNDING_EXIT: paying funding")
        assert close_action_for(risk, long_position) == TradeAction.FUNDING_EXIT

    def test_contracts_for(self, policy, cooldowns):
        _, _, engine = _build(policy, cooldowns)
        assert engine.contracts_for(99) == 1
        assert engine.contracts_for(350) == 3
