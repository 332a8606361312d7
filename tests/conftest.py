"""
Pytest configuration and fixtures for the derivatives engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.cooldowns import CooldownStore


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


class FakeClock:
    """Manually advanced UTC clock for cooldown tests."""

    def __init__(self, start=None):
        self.current = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, minutes: float = 0, seconds: float = 0):
        self.current = self.current + timedelta(minutes=minutes, seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cooldowns(clock):
    return CooldownStore(cooldown_minutes=30, clock=clock)


@pytest.fixture
def policy():
    """Derivatives policy mirroring config/derivatives.yaml with the engine enabled."""
    return {
        "enabled": True,
        "products": {
            "perpetuals": ["BTC-PERP-INTX", "ETH-PERP-INTX"],
            "commodity_futures": ["GCJ6-USD", "SIH6-USD"],
            "indicator_aliases": {
                "BTC-PERP-INTX": ["cbBTC", "BTC", "ETH"],
                "ETH-PERP-INTX": ["ETH"],
            },
            "contract_unit_usd": 100,
        },
        "risk": {
            "max_leverage": 3,
            "max_position_percent": 30,
            "max_total_exposure_percent": 80,
            "stop_loss_percent": -10,
            "take_profit_percent": 15,
            "liquidation_buffer_percent": 20,
            "max_funding_rate_bps": 30,
            "position_cooldown_minutes": 30,
            "max_open_positions": 4,
            "funding_exit_enabled": False,
        },
        "signals": {
            "strong_bullish_threshold": 45,
            "bullish_threshold": 30,
            "strong_bearish_threshold": -45,
            "bearish_threshold": -30,
            "neutral_zone": 15,
            "commodity_bullish_threshold": 0.6,
            "commodity_bearish_threshold": -0.6,
        },
        "sizing": {
            "base_position_usd": 50,
            "min_position_usd": 10,
            "max_position_usd": 200,
            "confidence_multiplier": True,
        },
        "cycle": {
            "state_refresh_trade_limit": 2,
            "verify_flip_close": True,
            "ledger_max_entries": 200,
        },
    }
