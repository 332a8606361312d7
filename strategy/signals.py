"""
Derivatives Strategy: Signal Generation

Turns per-product indicator confluence plus regime/macro/funding/sentiment
context into directional trade proposals for perpetual swaps, and maps the
macro gold/silver composites onto commodity futures.

Signals are immutable and rebuilt every cycle; nothing here touches the venue.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.portfolio import PortfolioState
from strategy.macro_signals import MacroCommoditySignal

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    FLAT = "FLAT"
    HOLD = "HOLD"


class SignalSource(str, Enum):
    TECHNICAL = "TECHNICAL"
    MACRO = "MACRO"
    AI = "AI"
    RISK_MANAGEMENT = "RISK_MANAGEMENT"


class Urgency(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


URGENCY_RANK = {Urgency.HIGH: 0, Urgency.MEDIUM: 1, Urgency.LOW: 2}

DEFAULT_PERPETUALS = ["BTC-PERP-INTX", "ETH-PERP-INTX"]
DEFAULT_INDICATOR_ALIASES = {
    "BTC-PERP-INTX": ["cbBTC", "BTC", "ETH"],
    "ETH-PERP-INTX": ["ETH"],
}

# Commodity product roots and the composite they follow
COMMODITY_ROOTS = {"GC": "Gold", "SI": "Silver"}


@dataclass(frozen=True)
class Signal:
    """Directional trade proposal for one product."""
    product: str
    direction: Direction
    confidence: float
    leverage: int = 1
    size_usd: float = 0.0
    reasoning: str = ""
    source: SignalSource = SignalSource.TECHNICAL
    urgency: Urgency = Urgency.LOW

    @property
    def is_directional(self) -> bool:
        return self.direction in (Direction.LONG, Direction.SHORT)


@dataclass
class IndicatorSnapshot:
    """Precomputed indicator bundle for one symbol."""
    confluence_score: float
    rsi: Optional[float] = None
    trend: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndicatorSnapshot":
        return cls(
            confluence_score=float(data.get("confluence_score", 0.0) or 0.0),
            rsi=data.get("rsi"),
            trend=data.get("trend"),
        )


@dataclass
class FearGreed:
    value: float
    classification: str = ""


@dataclass
class AIOpinion:
    direction: str
    confidence: float = 0.0
    reasoning: str = ""


@dataclass(frozen=True)
class SignalContext:
    """Market context snapshot stored alongside each trade record."""
    confluence_score: Optional[float] = None
    regime: Optional[str] = None
    macro_signal: Optional[str] = None
    funding_rate: Optional[float] = None
    rsi: Optional[float] = None


@dataclass
class SignalInputs:
    """Everything the generator reads in one cycle."""
    indicators: Dict[str, IndicatorSnapshot] = field(default_factory=dict)
    market_regime: str = "RANGING"
    macro_signal: Optional[str] = None
    funding_rates: Dict[str, float] = field(default_factory=dict)
    fear_greed: Optional[FearGreed] = None
    ai_opinion: Optional[AIOpinion] = None
    commodity_signal: Optional[MacroCommoditySignal] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignalInputs":
        """Build inputs from a plain snapshot (YAML/JSON)."""
        indicators = {
            symbol: IndicatorSnapshot.from_dict(values or {})
            for symbol, values in (data.get("indicators") or {}).items()
        }

        fear_greed = None
        if data.get("fear_greed") is not None:
            raw = data["fear_greed"]
            if isinstance(raw, dict):
                fear_greed = FearGreed(value=float(raw.get("value", 50)), classification=raw.get("classification", ""))
            else:
                fear_greed = FearGreed(value=float(raw))

        ai_opinion = None
        if data.get("ai_opinion"):
            raw = data["ai_opinion"]
            ai_opinion = AIOpinion(
                direction=str(raw.get("direction", "")),
                confidence=float(raw.get("confidence", 0.0) or 0.0),
                reasoning=str(raw.get("reasoning", "") or ""),
            )

        commodity = None
        if data.get("commodity_signal"):
            commodity = MacroCommoditySignal.from_dict(data["commodity_signal"])

        return cls(
            indicators=indicators,
            market_regime=str(data.get("market_regime") or "RANGING"),
            macro_signal=data.get("macro_signal"),
            funding_rates={k: float(v) for k, v in (data.get("funding_rates") or {}).items()},
            fear_greed=fear_greed,
            ai_opinion=ai_opinion,
            commodity_signal=commodity,
        )


def funding_rate_for(product: str, funding_rates: Dict[str, float]) -> Optional[float]:
    """Funding rate by product id, falling back to the base asset ("BTC" for BTC-PERP-INTX)."""
    if not funding_rates:
        return None
    if product in funding_rates:
        return funding_rates[product]
    base = product.split("-")[0]
    return funding_rates.get(base)


def is_perpetual(product: str) -> bool:
    return "PERP" in product or "INTX" in product


class SignalGenerator:
    """
    Confluence-driven signal generator for perpetuals and commodity futures.

    Config is read from the derivatives policy dict (products/signals/sizing/
    risk/adjustments sections); every key has a default.
    """

    def __init__(self, policy: Dict):
        self.policy = policy
        self.products_config = policy.get("products", {})
        self.signals_config = policy.get("signals", {})
        self.sizing_config = policy.get("sizing", {})
        self.risk_config = policy.get("risk", {})
        self.adjustments = policy.get("adjustments", {})

        self.perpetuals: List[str] = list(self.products_config.get("perpetuals", DEFAULT_PERPETUALS))
        self.commodity_futures: List[str] = list(self.products_config.get("commodity_futures", []))
        self.indicator_aliases: Dict[str, List[str]] = dict(
            self.products_config.get("indicator_aliases", DEFAULT_INDICATOR_ALIASES)
        )

        self.strong_bullish = float(self.signals_config.get("strong_bullish_threshold", 45))
        self.bullish = float(self.signals_config.get("bullish_threshold", 30))
        self.strong_bearish = float(self.signals_config.get("strong_bearish_threshold", -45))
        self.bearish = float(self.signals_config.get("bearish_threshold", -30))
        self.neutral_zone = float(self.signals_config.get("neutral_zone", 15))
        self.commodity_bullish = float(self.signals_config.get("commodity_bullish_threshold", 0.6))
        self.commodity_bearish = float(self.signals_config.get("commodity_bearish_threshold", -0.6))

        self.max_leverage = int(self.risk_config.get("max_leverage", 3))
        self.max_position_pct = float(self.risk_config.get("max_position_percent", 30))
        self.max_funding_bps = float(self.risk_config.get("max_funding_rate_bps", 30))

        self.base_position_usd = float(self.sizing_config.get("base_position_usd", 50))
        self.min_position_usd = float(self.sizing_config.get("min_position_usd", 10))
        self.max_position_usd = float(self.sizing_config.get("max_position_usd", 200))
        self.confidence_multiplier = bool(self.sizing_config.get("confidence_multiplier", True))

    def _factor(self, key: str, default: float) -> float:
        return float(self.adjustments.get(key, default))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate_signals(self, inputs: SignalInputs,
                         portfolio: Optional[PortfolioState] = None) -> List[Signal]:
        signals: List[Signal] = []

        for product in self.perpetuals:
            signal = self._perpetual_signal(product, inputs, portfolio)
            if signal is not None:
                signals.append(signal)

        if inputs.commodity_signal is not None and self.commodity_futures:
            signals.extend(self._commodity_signals(inputs.commodity_signal, portfolio))

        logger.info(f"Generated {len(signals)} derivatives signal(s)")
        for signal in signals:
            logger.debug(
                f"  {signal.product} {signal.direction.value} conf={signal.confidence:.0f} "
                f"{signal.leverage}x ${signal.size_usd:.2f} [{signal.urgency.value}] {signal.reasoning}"
            )
        return signals

    def indicator_for(self, product: str, inputs: SignalInputs) -> Optional[IndicatorSnapshot]:
        indicator = inputs.indicators.get(product)
        if indicator is not None:
            return indicator
        for alias in self.indicator_aliases.get(product, []):
            indicator = inputs.indicators.get(alias)
            if indicator is not None:
                return indicator
        return None

    def context_for(self, product: str, inputs: Optional[SignalInputs]) -> SignalContext:
        if inputs is None:
            return SignalContext()
        indicator = self.indicator_for(product, inputs)
        return SignalContext(
            confluence_score=indicator.confluence_score if indicator else None,
            regime=inputs.market_regime,
            macro_signal=inputs.macro_signal,
            funding_rate=funding_rate_for(product, inputs.funding_rates),
            rsi=indicator.rsi if indicator else None,
        )

    # ------------------------------------------------------------------
    # Perpetuals
    # ------------------------------------------------------------------

    def _perpetual_signal(self, product: str, inputs: SignalInputs,
                          portfolio: Optional[PortfolioState]) -> Optional[Signal]:
        indicator = self.indicator_for(product, inputs)
        if indicator is None:
            logger.debug(f"No indicator data for {product}, skipping")
            return None

        score = indicator.confluence_score
        direction = Direction.HOLD
        urgency = Urgency.LOW
        reasons: List[str] = []

        if score >= self.strong_bullish:
            direction, urgency = Direction.LONG, Urgency.HIGH
            reasons.append(f"Strong bullish confluence (+{score:g})")
        elif score >= self.bullish:
            direction, urgency = Direction.LONG, Urgency.MEDIUM
            reasons.append(f"Bullish confluence (+{score:g})")
        elif score <= self.strong_bearish:
            direction, urgency = Direction.SHORT, Urgency.HIGH
            reasons.append(f"Strong bearish confluence ({score:g})")
        elif score <= self.bearish:
            direction, urgency = Direction.SHORT, Urgency.MEDIUM
            reasons.append(f"Bearish confluence ({score:g})")
        elif abs(score) < self.neutral_zone:
            direction, urgency = Direction.FLAT, Urgency.LOW
            reasons.append(f"Neutral zone (confluence {score:g}), flatten")

        if direction == Direction.HOLD:
            return None

        confidence = abs(score)
        regime = (inputs.market_regime or "").upper()

        if regime == "TRENDING_DOWN" and direction == Direction.LONG:
            confidence *= self._factor("regime_opposed", 0.7)
            reasons.append("Downtrend regime reduces long conviction")
        elif regime == "TRENDING_UP" and direction == Direction.SHORT:
            confidence *= self._factor("regime_opposed", 0.7)
            reasons.append("Uptrend regime reduces short conviction")

        if regime == "VOLATILE":
            confidence *= self._factor("volatile_regime", 0.6)
            reasons.append("Volatile regime, reduced sizing")

        macro = (inputs.macro_signal or "").upper()
        if macro == "RISK_OFF" and direction == Direction.LONG:
            confidence *= self._factor("macro_opposed", 0.8)
            reasons.append("RISK_OFF macro reduces long conviction")
        elif macro == "RISK_ON" and direction == Direction.SHORT:
            confidence *= self._factor("macro_opposed", 0.8)
            reasons.append("RISK_ON macro reduces short conviction")
        elif macro == "RISK_OFF" and direction == Direction.SHORT:
            confidence *= self._factor("macro_aligned", 1.15)
            reasons.append("RISK_OFF macro amplifies short conviction")
        elif macro == "RISK_ON" and direction == Direction.LONG:
            confidence *= self._factor("macro_aligned", 1.15)
            reasons.append("RISK_ON macro amplifies long conviction")

        funding_rate = funding_rate_for(product, inputs.funding_rates)
        if funding_rate is not None and abs(funding_rate * 10000) > self.max_funding_bps:
            adverse = (funding_rate > 0 and direction == Direction.LONG) or \
                      (funding_rate < 0 and direction == Direction.SHORT)
            favorable = (funding_rate < 0 and direction == Direction.LONG) or \
                        (funding_rate > 0 and direction == Direction.SHORT)
            if adverse:
                confidence *= self._factor("funding_adverse", 0.5)
                reasons.append(f"High funding rate against position ({funding_rate * 100:.4f}%)")
            elif favorable:
                confidence *= self._factor("funding_favorable", 1.1)
                reasons.append(f"Funding rate favors our direction ({funding_rate * 100:.4f}%)")

        if inputs.fear_greed is not None:
            value = inputs.fear_greed.value
            if value < 25 and direction == Direction.LONG:
                confidence *= self._factor("extreme_sentiment", 1.2)
                reasons.append(f"Extreme fear ({value:g}) amplifies long")
            elif value > 75 and direction == Direction.SHORT:
                confidence *= self._factor("extreme_sentiment", 1.2)
                reasons.append(f"Extreme greed ({value:g}) amplifies short")

        if inputs.ai_opinion is not None and direction != Direction.FLAT:
            ai_direction = (inputs.ai_opinion.direction or "").upper()
            if ai_direction == direction.value:
                confidence *= self._factor("ai_agree", 1.1)
                reasons.append(f"AI concurs with {direction.value.lower()}")
            elif ai_direction in (Direction.LONG.value, Direction.SHORT.value):
                confidence *= self._factor("ai_disagree", 0.7)
                reasons.append(f"AI disagrees (AI says {ai_direction}, signal says {direction.value})")

        confidence = max(0.0, min(confidence, 100.0))

        return Signal(
            product=product,
            direction=direction,
            confidence=confidence,
            leverage=self.calculate_leverage(confidence, regime),
            size_usd=self.calculate_position_size(direction, confidence, portfolio),
            reasoning=" | ".join(reasons),
            source=SignalSource.TECHNICAL,
            urgency=urgency,
        )

    # ------------------------------------------------------------------
    # Commodity futures
    # ------------------------------------------------------------------

    def _commodity_signals(self, commodity: MacroCommoditySignal,
                           portfolio: Optional[PortfolioState]) -> List[Signal]:
        signals: List[Signal] = []
        scores = commodity.scores_by_root()

        for root, label in COMMODITY_ROOTS.items():
            products = [p for p in self.commodity_futures if p.startswith(root)]
            if not products:
                continue

            score = scores[root]
            if score >= self.commodity_bullish:
                direction = Direction.LONG
            elif score <= self.commodity_bearish:
                direction = Direction.SHORT
            else:
                continue

            confidence = max(0.0, min(abs(score) * 100.0, 100.0))
            signals.append(Signal(
                product=products[0],
                direction=direction,
                confidence=confidence,
                leverage=max(1, min(2, self.max_leverage)),
                size_usd=self.calculate_position_size(direction, confidence, portfolio),
                reasoning=f"{label} macro signal: {commodity.reasoning}",
                source=SignalSource.MACRO,
                urgency=Urgency.HIGH if confidence > 70 else Urgency.MEDIUM,
            ))

        return signals

    # ------------------------------------------------------------------
    # Sizing & leverage
    # ------------------------------------------------------------------

    def calculate_position_size(self, direction: Direction, confidence: float,
                                portfolio: Optional[PortfolioState] = None) -> float:
        if direction in (Direction.FLAT, Direction.HOLD):
            return 0.0

        size = self.base_position_usd
        if self.confidence_multiplier:
            size = self.base_position_usd * (0.5 + confidence / 100.0)

        size = max(self.min_position_usd, min(size, self.max_position_usd))

        if portfolio is not None:
            cap = max(portfolio.available_buying_power, 0.0) * self.max_position_pct / 100.0
            size = min(size, cap)

        return size

    def calculate_leverage(self, confidence: float, regime: Optional[str] = None) -> int:
        if confidence >= 80:
            leverage = min(3, self.max_leverage)
        elif confidence >= 60:
            leverage = min(2, self.max_leverage)
        else:
            leverage = 1

        if (regime or "").upper() == "VOLATILE":
            leverage = max(1, leverage - 1)

        return max(1, min(leverage, self.max_leverage))
