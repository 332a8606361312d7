"""
Tests for risk exits on open derivatives positions.

Exit priority: stop-loss > take-profit > liquidation proximity > funding.
"""
import pytest

from core.position_manager import RiskMonitor
from strategy.signals import Direction, SignalSource, Urgency
from tests.helpers import make_position, make_state


@pytest.fixture
def monitor(policy):
    return RiskMonitor(policy)


def _scan(monitor, *positions, funding_rates=None):
    return monitor.generate_risk_signals(make_state(positions=positions), funding_rates)


def test_stop_loss_closes_full_position(monitor):
    signals = _scan(monitor, make_position(entry=100, mark=85, notional=1000))

    assert len(signals) == 1
    signal = signals[0]
    assert signal.direction == Direction.FLAT
    assert signal.source == SignalSource.RISK_MANAGEMENT
    assert signal.confidence == 100
    assert signal.size_usd == pytest.approx(1000)
    assert signal.urgency == Urgency.HIGH
    assert signal.leverage == 1
    assert signal.reasoning == "STOP_LOSS: BTC-PERP-INTX at -15.0% loss (threshold: -10%)"


def test_stop_loss_at_threshold_triggers(monitor):
    signals = _scan(monitor, make_position(entry=100, mark=90, notional=500))
    assert signals[0].reasoning.startswith("STOP_LOSS")


def test_take_profit_closes_half(monitor):
    signals = _scan(monitor, make_position(entry=100, mark=120, notional=1000))

    signal = signals[0]
    assert signal.reasoning.startswith("TAKE_PROFIT")
    assert signal.confidence == 80
    assert signal.size_usd == pytest.approx(500)
    assert signal.urgency == Urgency.MEDIUM


def test_short_pnl_is_direction_aware(monitor):
    in_profit = make_position(side="SHORT", entry=100, mark=80, notional=1000)
    small_gain = make_position(product_id="ETH-PERP-INTX", side="SHORT", entry=100, mark=90, notional=1000)

    signals = _scan(monitor, in_profit, small_gain)

    assert len(signals) == 1
    assert signals[0].product == "BTC-PERP-INTX"
    assert signals[0].reasoning.startswith("TAKE_PROFIT")


def test_liquidation_proximity_reduces_30_percent(monitor):
    signals = _scan(monitor, make_position(entry=100, mark=100, notional=1000, liquidation=90))

    signal = signals[0]
    assert signal.confidence == 95
    assert signal.size_usd == pytest.approx(300)
    assert signal.urgency == Urgency.HIGH
    assert signal.reasoning == (
        "LIQUIDATION_PREVENT: BTC-PERP-INTX only 10.0% from liquidation price $90.00"
    )


def test_short_liquidation_distance(monitor):
    signals = _scan(monitor, make_position(side="SHORT", entry=100, mark=100, notional=1000, liquidation=110))
    assert signals[0].reasoning.startswith("LIQUIDATION_PREVENT")


def test_stop_loss_takes_priority_over_liquidation(monitor):
    signals = _scan(monitor, make_position(entry=100, mark=85, notional=1000, liquidation=80))

    assert len(signals) == 1
    assert signals[0].reasoning.startswith("STOP_LOSS")


def test_healthy_positions_produce_nothing(monitor):
    signals = _scan(
        monitor,
        make_position(entry=100, mark=105, notional=1000, liquidation=50),
        make_position(product_id="ETH-PERP-INTX", side="SHORT", entry=100, mark=102, notional=400),
    )
    assert signals == []


def test_venue_unrealized_pnl_takes_precedence(monitor):
    signals = _scan(monitor, make_position(entry=100, mark=100, notional=1000, unrealized_pnl=-200))
    assert signals[0].reasoning.startswith("STOP_LOSS")


def test_positions_without_prices_are_skipped(monitor):
    signals = _scan(monitor, make_position(entry=0, mark=100, notional=1000, unrealized_pnl=-500))
    assert signals == []


def test_no_portfolio_yields_no_signals(monitor):
    assert monitor.generate_risk_signals(None) == []


class TestFundingExit:

    def test_disabled_by_default(self, monitor):
        signals = _scan(
            monitor,
            make_position(entry=100, mark=100, notional=1000),
            funding_rates={"BTC-PERP-INTX": 0.005},
        )
        assert signals == []

    def test_long_paying_positive_funding(self, policy):
        policy["risk"]["funding_exit_enabled"] = True
        monitor = RiskMonitor(policy)

        signals = _scan(
            monitor,
            make_position(entry=100, mark=100, notional=1000),
            funding_rates={"BTC-PERP-INTX": 0.005},
        )

        signal = signals[0]
        assert signal.reasoning.startswith("FUNDING_EXIT")
        assert signal.confidence == 70
        assert signal.size_usd == pytest.approx(500)
        assert signal.urgency == Urgency.MEDIUM

    def test_short_receiving_positive_funding_is_kept(self, policy):
        policy["risk"]["funding_exit_enabled"] = True
        monitor = RiskMonitor(policy)

        signals = _scan(
            monitor,
            make_position(side="SHORT", entry=100, mark=100, notional=1000),
            funding_rates={"BTC": 0.005},
        )
        assert signals == []

    def test_short_paying_negative_funding(self, policy):
        policy["risk"]["funding_exit_enabled"] = True
        monitor = RiskMonitor(policy)

        signals = _scan(
            monitor,
            make_position(side="SHORT", entry=100, mark=100, notional=1000),
            funding_rates={"BTC": -0.005},
        )
        assert signals[0].reasoning.startswith("FUNDING_EXIT")
