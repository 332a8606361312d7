"""
Derivatives Strategy: Macro Commodity Signals

Composite gold/silver scores in [-1, +1] built from macro data the upstream
data layer already collects (FRED rates, dollar index, VIX, S&P, gold proxy).

Gold bullish: weak dollar, falling real yields, rising VIX, falling S&P.
Silver follows gold at 85% plus an industrial-demand term from the macro
risk-on/off label.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

GOLD_WEIGHTS = {
    "dollar_index": 0.25,
    "real_yields": 0.25,
    "vix": 0.20,
    "spx": 0.15,
    "gold_momentum": 0.15,
}

SILVER_GOLD_CORRELATION = 0.85
SILVER_INDUSTRIAL_WEIGHT = 0.15
INDUSTRIAL_DEMAND_SIGNAL = 0.4

# (exclusive lower bound, signal, label) checked top-down; last row is the fallback
_DXY_STEPS = [
    (107.0, -0.9, "VERY STRONG (bearish gold)"),
    (105.0, -0.6, "STRONG (bearish gold)"),
    (103.0, -0.3, "Moderate (slightly bearish gold)"),
    (100.0, 0.0, "Neutral"),
    (97.0, 0.3, "Weakening (slightly bullish gold)"),
    (95.0, 0.6, "WEAK (bullish gold)"),
    (None, 0.9, "VERY WEAK (very bullish gold)"),
]
_REAL_YIELD_STEPS = [
    (2.0, -0.9, "HIGH positive (very bearish gold)"),
    (1.0, -0.5, "Moderate positive (bearish gold)"),
    (0.0, -0.2, "Slightly positive (neutral)"),
    (-1.0, 0.3, "Slightly negative (bullish gold)"),
    (-2.0, 0.6, "Negative (bullish gold)"),
    (None, 0.9, "DEEPLY negative (very bullish gold)"),
]
_VIX_STEPS = [
    (35.0, 0.9, "PANIC (very bullish gold)"),
    (30.0, 0.6, "FEAR (bullish gold)"),
    (25.0, 0.3, "ELEVATED (slightly bullish gold)"),
    (20.0, 0.0, "NORMAL"),
    (15.0, -0.3, "COMPLACENT (slightly bearish gold)"),
    (None, -0.5, "VERY COMPLACENT (bearish gold)"),
]
# S&P steps use upper bounds: change < bound
_SPX_STEPS = [
    (-3.0, 0.8, "SHARP SELL-OFF (very bullish gold)"),
    (-1.5, 0.5, "SELL-OFF (bullish gold)"),
    (-0.5, 0.2, "DOWN (slightly bullish gold)"),
    (0.5, 0.0, "FLAT"),
    (1.5, -0.2, "UP (slightly bearish gold)"),
    (None, -0.5, "STRONG RALLY (bearish gold)"),
]
_GOLD_MOMENTUM_STEPS = [
    (2.0, 0.7),
    (0.5, 0.3),
    (-0.5, 0.0),
    (-2.0, -0.3),
    (None, -0.7),
]


def _step_above(value: float, steps: Sequence[Tuple]) -> Tuple[float, str]:
    for bound, signal, label in steps:
        if bound is None or value > bound:
            return signal, label
    raise ValueError("step table must end with a fallback row")


def _step_below(value: float, steps: Sequence[Tuple]) -> Tuple[float, str]:
    for bound, signal, label in steps:
        if bound is None or value < bound:
            return signal, label
    raise ValueError("step table must end with a fallback row")


@dataclass
class MacroInputs:
    """Macro data consumed from the upstream data layer. Missing fields are skipped."""
    dollar_index: Optional[float] = None
    treasury_10y: Optional[float] = None
    cpi: Optional[float] = None
    vix_level: Optional[float] = None
    spx_price: Optional[float] = None
    spx_change_24h: Optional[float] = None
    gold_price: Optional[float] = None
    gold_change_24h: Optional[float] = None
    macro_signal: Optional[str] = None  # RISK_ON | RISK_OFF | NEUTRAL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MacroInputs":
        known = {name: data.get(name) for name in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class SignalComponent:
    name: str
    key: str
    value: float
    signal: float
    direction: str


@dataclass
class MacroCommoditySignal:
    """Composite commodity scores, each clamped to [-1, +1]."""
    gold_signal: float
    silver_signal: float
    reasoning: str = ""
    components: List[SignalComponent] = field(default_factory=list)

    def scores_by_root(self) -> Dict[str, float]:
        """Map futures product roots to their composite score."""
        return {"GC": self.gold_signal, "SI": self.silver_signal}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MacroCommoditySignal":
        return cls(
            gold_signal=float(data.get("gold_signal", 0.0) or 0.0),
            silver_signal=float(data.get("silver_signal", 0.0) or 0.0),
            reasoning=str(data.get("reasoning", "") or ""),
        )


class MacroCommoditySignalEngine:
    """Turns MacroInputs into a MacroCommoditySignal."""

    def __init__(self):
        self.last_signal: Optional[MacroCommoditySignal] = None

    def generate_signal(self, data: MacroInputs) -> MacroCommoditySignal:
        components: List[SignalComponent] = []

        if data.dollar_index:
            signal, label = _step_above(data.dollar_index, _DXY_STEPS)
            components.append(SignalComponent("Dollar Index (DXY)", "dollar_index", data.dollar_index, signal, label))

        if data.treasury_10y is not None and data.cpi is not None:
            real_yield = data.treasury_10y - data.cpi
            signal, label = _step_above(real_yield, _REAL_YIELD_STEPS)
            components.append(SignalComponent("Real Yields", "real_yields", real_yield, signal, label))

        if data.vix_level:
            signal, label = _step_above(data.vix_level, _VIX_STEPS)
            components.append(SignalComponent("VIX", "vix", data.vix_level, signal, label))

        if data.spx_change_24h is not None:
            signal, label = _step_below(data.spx_change_24h, _SPX_STEPS)
            components.append(SignalComponent("S&P 500", "spx", data.spx_price or 0.0, signal, label))

        if data.gold_change_24h is not None:
            signal = 0.0
            for bound, step_signal in _GOLD_MOMENTUM_STEPS:
                if bound is None or data.gold_change_24h > bound:
                    signal = step_signal
                    break
            label = f"{data.gold_change_24h:+.1f}% 24h"
            components.append(SignalComponent("Gold Momentum", "gold_momentum", data.gold_price or 0.0, signal, label))

        # Weighted sum over present components: partial data yields a weaker score
        gold_signal = sum(comp.signal * GOLD_WEIGHTS[comp.key] for comp in components)

        industrial = 0.0
        if data.macro_signal == "RISK_ON":
            industrial = INDUSTRIAL_DEMAND_SIGNAL
        elif data.macro_signal == "RISK_OFF":
            industrial = -INDUSTRIAL_DEMAND_SIGNAL
        silver_signal = gold_signal * SILVER_GOLD_CORRELATION + industrial * SILVER_INDUSTRIAL_WEIGHT

        gold_signal = max(-1.0, min(1.0, gold_signal))
        silver_signal = max(-1.0, min(1.0, silver_signal))

        active = [comp for comp in components if abs(comp.signal) > 0.1]
        if active:
            reasoning = " | ".join(f"{comp.name}: {comp.direction}" for comp in active)
        else:
            reasoning = "Insufficient macro data for commodity signal"

        result = MacroCommoditySignal(
            gold_signal=gold_signal,
            silver_signal=silver_signal,
            reasoning=reasoning,
            components=components,
        )
        self.last_signal = result

        logger.info(f"Gold signal: {gold_signal:+.3f} | Silver signal: {silver_signal:+.3f}")
        logger.debug(f"Commodity components: {reasoning}")
        return result
