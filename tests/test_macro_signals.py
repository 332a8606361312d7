"""
Tests for the gold/silver macro composite.
"""
import pytest

from strategy.macro_signals import MacroCommoditySignal, MacroCommoditySignalEngine, MacroInputs


@pytest.fixture
def engine():
    return MacroCommoditySignalEngine()


def test_fully_bullish_gold_backdrop(engine):
    """Weak dollar, negative real yields, panic VIX, S&P sell-off, gold rallying."""
    result = engine.generate_signal(MacroInputs(
        dollar_index=94.0,
        treasury_10y=1.0,
        cpi=3.5,
        vix_level=36.0,
        spx_price=4200.0,
        spx_change_24h=-4.0,
        gold_price=2400.0,
        gold_change_24h=3.0,
        macro_signal="RISK_OFF",
    ))

    assert result.gold_signal == pytest.approx(0.855)
    # Silver follows gold at 85% with a risk-off industrial drag
    assert result.silver_signal == pytest.approx(0.855 * 0.85 - 0.4 * 0.15)
    assert len(result.components) == 5
    assert "Dollar Index (DXY): VERY WEAK (very bullish gold)" in result.reasoning
    assert "VIX: PANIC (very bullish gold)" in result.reasoning


def test_fully_bearish_gold_backdrop(engine):
    result = engine.generate_signal(MacroInputs(
        dollar_index=108.0,
        treasury_10y=4.5,
        cpi=2.0,
        vix_level=12.0,
        spx_change_24h=2.0,
        gold_change_24h=-3.0,
        macro_signal="RISK_ON",
    ))

    assert result.gold_signal == pytest.approx(-0.73)
    assert result.silver_signal == pytest.approx(-0.73 * 0.85 + 0.4 * 0.15)
    assert result.gold_signal >= -1.0


def test_partial_data_uses_present_components_only(engine):
    result = engine.generate_signal(MacroInputs(dollar_index=96.0))

    assert result.gold_signal == pytest.approx(0.15)
    assert result.silver_signal == pytest.approx(0.1275)
    assert result.reasoning == "Dollar Index (DXY): WEAK (bullish gold)"


def test_no_data_is_neutral(engine):
    result = engine.generate_signal(MacroInputs())

    assert result.gold_signal == 0.0
    assert result.silver_signal == 0.0
    assert result.components == []
    assert result.reasoning == "Insufficient macro data for commodity signal"


def test_neutral_components_do_not_appear_in_reasoning(engine):
    result = engine.generate_signal(MacroInputs(dollar_index=101.0, vix_level=22.0))

    assert len(result.components) == 2
    assert result.gold_signal == 0.0
    assert result.reasoning == "Insufficient macro data for commodity signal"


def test_real_yield_needs_both_rate_and_cpi(engine):
    result = engine.generate_signal(MacroInputs(treasury_10y=4.0))
    assert result.components == []


@pytest.mark.parametrize("dxy,expected", [
    (107.5, -0.9),
    (105.0, -0.3),  # bounds are exclusive
    (104.0, -0.3),
    (100.5, 0.0),
    (98.0, 0.3),
    (96.0, 0.6),
    (90.0, 0.9),
])
def test_dollar_index_steps(engine, dxy, expected):
    result = engine.generate_signal(MacroInputs(dollar_index=dxy))
    assert result.components[0].signal == pytest.approx(expected)


@pytest.mark.parametrize("change,expected", [
    (-3.5, 0.8),
    (-2.0, 0.5),
    (-1.0, 0.2),
    (0.0, 0.0),
    (1.0, -0.2),
    (2.5, -0.5),
])
def test_spx_steps(engine, change, expected):
    result = engine.generate_signal(MacroInputs(spx_change_24h=change))
    assert result.components[0].signal == pytest.approx(expected)


def test_silver_industrial_term(engine):
    risk_on = engine.generate_signal(MacroInputs(macro_signal="RISK_ON"))
    assert risk_on.silver_signal == pytest.approx(0.06)

    neutral = engine.generate_signal(MacroInputs(macro_signal="NEUTRAL"))
    assert neutral.silver_signal == 0.0


def test_last_signal_is_kept(engine):
    result = engine.generate_signal(MacroInputs(vix_level=31.0))
    assert engine.last_signal is result
    assert result.scores_by_root() == {"GC": result.gold_signal, "SI": result.silver_signal}


def test_inputs_from_dict_ignores_unknown_keys():
    inputs = MacroInputs.from_dict({"dollar_index": 101.2, "vix_level": 18.0, "unrelated": 1})

    assert inputs.dollar_index == 101.2
    assert inputs.vix_level == 18.0
    assert inputs.cpi is None


def test_signal_from_dict():
    signal = MacroCommoditySignal.from_dict({"gold_signal": "0.4", "reasoning": "DXY weak"})

    assert signal.gold_signal == pytest.approx(0.4)
    assert signal.silver_signal == 0.0
    assert signal.reasoning == "DXY weak"
