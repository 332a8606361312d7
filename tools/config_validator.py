"""
Configuration Validation Module

Validates derivatives.yaml and app.yaml against Pydantic schemas, then runs
cross-field sanity checks. Ensures config files are correct before the
engine is built.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import ConfigError

logger = logging.getLogger(__name__)


# ===== Derivatives Schema =====
class ProductsConfig(BaseModel):
    """Traded products"""
    perpetuals: List[str] = Field(default_factory=lambda: ["BTC-PERP-INTX", "ETH-PERP-INTX"])
    commodity_futures: List[str] = Field(default_factory=list, description="e.g. GCJ6-USD, SIH6-USD")
    indicator_aliases: Dict[str, List[str]] = Field(
        default_factory=lambda: {"BTC-PERP-INTX": ["cbBTC", "BTC", "ETH"], "ETH-PERP-INTX": ["ETH"]},
        description="Fallback indicator symbols per product",
    )
    contract_unit_usd: float = Field(default=100.0, gt=0, description="USD per futures contract for sizing")

    @field_validator('commodity_futures')
    @classmethod
    def validate_commodity_roots(cls, v: List[str]) -> List[str]:
        """Only gold (GC) and silver (SI) contracts have a macro composite"""
        for product in v:
            if not product.startswith(("GC", "SI")):
                raise ValueError(f"Unsupported commodity future {product}: expected GC* or SI*")
        return v


class DerivativesRiskConfig(BaseModel):
    """Risk envelope"""
    max_leverage: int = Field(default=3, ge=1, le=10, description="Max leverage multiple")
    max_position_percent: float = Field(default=30, gt=0, le=100, description="Max single position % of buying power")
    max_total_exposure_percent: float = Field(default=80, gt=0, le=100, description="Max margin used %")
    stop_loss_percent: float = Field(default=-10, lt=0, description="Stop-loss P&L % (negative)")
    take_profit_percent: float = Field(default=15, gt=0, description="Take-profit P&L %")
    liquidation_buffer_percent: float = Field(default=20, gt=0, le=100, description="Min distance to liquidation %")
    max_funding_rate_bps: float = Field(default=30, ge=0, description="Funding rate threshold (bps)")
    position_cooldown_minutes: float = Field(default=30, ge=0, description="Per-product re-trade cooldown")
    max_open_positions: int = Field(default=4, gt=0, description="Max concurrently open products")
    funding_exit_enabled: bool = Field(default=False, description="Reduce positions paying excessive funding")


class DerivativesSignalsConfig(BaseModel):
    """Confluence thresholds"""
    strong_bullish_threshold: float = Field(default=45)
    bullish_threshold: float = Field(default=30)
    strong_bearish_threshold: float = Field(default=-45)
    bearish_threshold: float = Field(default=-30)
    neutral_zone: float = Field(default=15, ge=0)
    commodity_bullish_threshold: float = Field(default=0.6, gt=0, le=1)
    commodity_bearish_threshold: float = Field(default=-0.6, ge=-1, lt=0)


class DerivativesSizingConfig(BaseModel):
    """Position sizing"""
    base_position_usd: float = Field(default=50, gt=0)
    min_position_usd: float = Field(default=10, gt=0)
    max_position_usd: float = Field(default=200, gt=0)
    confidence_multiplier: bool = Field(default=True, description="Scale size by 0.5 + confidence/100")

    @field_validator('max_position_usd')
    @classmethod
    def validate_order_sizes(cls, v: float, info) -> float:
        """Ensure max_position_usd >= min_position_usd"""
        min_size = info.data.get('min_position_usd', 0)
        if v < min_size:
            raise ValueError(f"max_position_usd ({v}) must be >= min_position_usd ({min_size})")
        return v


class AdjustmentsConfig(BaseModel):
    """Multiplicative confidence adjustments"""
    regime_opposed: float = Field(default=0.7, gt=0)
    volatile_regime: float = Field(default=0.6, gt=0)
    macro_opposed: float = Field(default=0.8, gt=0)
    macro_aligned: float = Field(default=1.15, gt=0)
    funding_adverse: float = Field(default=0.5, gt=0)
    funding_favorable: float = Field(default=1.1, gt=0)
    extreme_sentiment: float = Field(default=1.2, gt=0)
    ai_agree: float = Field(default=1.1, gt=0)
    ai_disagree: float = Field(default=0.7, gt=0)


class CycleConfig(BaseModel):
    """Cycle orchestration"""
    state_refresh_trade_limit: int = Field(default=2, ge=0, description="Refresh state after the first N trades")
    verify_flip_close: bool = Field(default=True, description="Re-check position after a flip's close leg")
    ledger_max_entries: int = Field(default=200, gt=0)


class DerivativesSchema(BaseModel):
    """Complete derivatives configuration schema"""
    enabled: bool = False
    products: ProductsConfig = Field(default_factory=ProductsConfig)
    risk: DerivativesRiskConfig = Field(default_factory=DerivativesRiskConfig)
    signals: DerivativesSignalsConfig = Field(default_factory=DerivativesSignalsConfig)
    sizing: DerivativesSizingConfig = Field(default_factory=DerivativesSizingConfig)
    adjustments: AdjustmentsConfig = Field(default_factory=AdjustmentsConfig)
    cycle: CycleConfig = Field(default_factory=CycleConfig)


# ===== App Schema =====
class ExchangeConfig(BaseModel):
    read_only: bool = True
    base_url: str = Field(default="https://api.coinbase.com/api/v3/brokerage", pattern="^https?://")
    timeout_seconds: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=3, ge=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = "logs/derivatives.log"


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=300.0, gt=0)
    inputs_file: str = "data/signal_inputs.yaml"


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$")
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    line = mark.line
    column = mark.column
    problem = getattr(error, "problem", str(error))

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    snippet_lines: List[str] = []
    for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines))):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n" + "\n".join(snippet_lines)
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _schema_errors(label: str, error: ValidationError) -> List[str]:
    errors = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item['loc'])
        errors.append(f"{label}: {field}: {item['msg']}")
    return errors


def derivatives_sanity_checks(config: Dict[str, Any]) -> List[str]:
    """
    Logical consistency checks for a derivatives config dict.

    Detects:
    - Sizing bounds out of order (min <= base <= max)
    - Threshold ordering (strong_bullish >= bullish > 0 > bearish >= strong_bearish)
    - Neutral zone overlapping the directional thresholds
    - Position cap above the total exposure cap
    """
    errors = []
    sizing = config.get("sizing", {}) or {}
    signals = config.get("signals", {}) or {}
    risk = config.get("risk", {}) or {}

    base = sizing.get("base_position_usd", 50)
    min_size = sizing.get("min_position_usd", 10)
    max_size = sizing.get("max_position_usd", 200)
    if not (min_size <= base <= max_size):
        errors.append(
            f"UNSAFE: sizing requires min_position_usd ({min_size}) <= base_position_usd ({base}) "
            f"<= max_position_usd ({max_size})"
        )

    strong_bull = signals.get("strong_bullish_threshold", 45)
    bull = signals.get("bullish_threshold", 30)
    bear = signals.get("bearish_threshold", -30)
    strong_bear = signals.get("strong_bearish_threshold", -45)
    if not (strong_bull >= bull > 0 > bear >= strong_bear):
        errors.append(
            f"CONTRADICTION: signal thresholds must satisfy strong_bullish ({strong_bull}) >= bullish ({bull}) "
            f"> 0 > bearish ({bear}) >= strong_bearish ({strong_bear})"
        )

    neutral = signals.get("neutral_zone", 15)
    if neutral > bull or neutral > abs(bear):
        errors.append(
            f"CONTRADICTION: signals.neutral_zone ({neutral}) overlaps the directional thresholds "
            f"(bullish {bull}, bearish {bear})"
        )

    commodity_bull = signals.get("commodity_bullish_threshold", 0.6)
    commodity_bear = signals.get("commodity_bearish_threshold", -0.6)
    if not (commodity_bull > 0 > commodity_bear):
        errors.append(
            f"CONTRADICTION: commodity thresholds must have opposite signs "
            f"(bullish {commodity_bull}, bearish {commodity_bear})"
        )

    max_position_pct = risk.get("max_position_percent", 30)
    max_exposure_pct = risk.get("max_total_exposure_percent", 80)
    if max_position_pct > max_exposure_pct:
        errors.append(
            f"UNSAFE: risk.max_position_percent ({max_position_pct}%) > max_total_exposure_percent "
            f"({max_exposure_pct}%). Single position would exceed total exposure cap."
        )

    return errors


def validate_derivatives_config(config: Dict[str, Any], label: str = "derivatives.yaml") -> List[str]:
    """Schema plus sanity validation of an in-memory derivatives config."""
    try:
        DerivativesSchema(**(config or {}))
    except ValidationError as e:
        return _schema_errors(label, e)
    return [f"{label}: {error}" for error in derivatives_sanity_checks(config or {})]


def validate_derivatives(config_dir: Path) -> List[str]:
    """
    Validate derivatives.yaml against schema and sanity checks.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        config = load_yaml_file(config_dir / "derivatives.yaml")
        errors.extend(validate_derivatives_config(config))
        if not errors:
            logger.info("✅ derivatives.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"derivatives.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"derivatives.yaml: Invalid YAML - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        config = load_yaml_file(config_dir / "app.yaml")
        AppSchema(**config)
        logger.info("✅ app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        errors.extend(_schema_errors("app.yaml", e))
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_derivatives(config_path))
    all_errors.extend(validate_app(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_configs(config_dir: str = "config") -> Dict[str, Dict[str, Any]]:
    """
    Validate and load both config files.

    Returns:
        {"derivatives": {...}, "app": {...}} with schema defaults filled in

    Raises:
        ConfigError: listing every violation
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ConfigError(errors)

    config_path = Path(config_dir)
    derivatives = DerivativesSchema(**load_yaml_file(config_path / "derivatives.yaml"))
    app = AppSchema(**load_yaml_file(config_path / "app.yaml"))
    return {"derivatives": derivatives.model_dump(), "app": app.model_dump()}


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
