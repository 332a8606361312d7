"""
Derivatives Runner: Main Loop

Drives the derivatives engine on a fixed interval.

Flow per tick:
1. Read the signal inputs snapshot written by the upstream data layer
2. Derive the gold/silver composite when raw macro inputs are supplied
3. Fill funding rates from the venue when the snapshot has none
4. Run one engine cycle (risk exits, signals, validation, execution)
"""

import logging
import signal
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.exceptions import ConfigError
from core.exchange_coinbase import CoinbaseDerivativesClient
from core.trading_cycle import CycleResult, DerivativesEngine
from core.venue import VenueClient
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from strategy.macro_signals import MacroCommoditySignalEngine, MacroInputs
from strategy.signals import SignalInputs
from tools.config_validator import load_configs

logger = logging.getLogger(__name__)


class DerivativesLoop:
    """
    Main derivatives loop.

    Responsibilities:
    - Load and validate config
    - Build venue client, engine, metrics and alerts
    - Run periodic cycles until stopped
    """

    def __init__(self, config_dir: str = "config", venue: Optional[VenueClient] = None,
                 configure_logging: bool = True):
        self.config_dir = Path(config_dir)
        try:
            configs = load_configs(config_dir)
        except ConfigError as e:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(e.errors, start=1):
                logger.error(f"{idx:>2}. {str(error).splitlines()[0]}")
            logger.error("=" * 80)
            raise

        self.app_config: Dict[str, Any] = configs["app"]
        self.policy: Dict[str, Any] = configs["derivatives"]

        self.mode = self.app_config.get("mode", "DRY_RUN").upper()
        exchange_cfg = self.app_config.get("exchange", {}) or {}
        self.read_only = (self.mode != "LIVE") or bool(exchange_cfg.get("read_only", True))

        if configure_logging:
            self._setup_logging(self.app_config.get("logging", {}) or {})

        logger.info(f"Starting derivatives engine in mode={self.mode}, read_only={self.read_only}")

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 300))
        self.inputs_file = Path(loop_cfg.get("inputs_file", "data/signal_inputs.yaml"))

        self.venue = venue or CoinbaseDerivativesClient(
            read_only=self.read_only,
            base_url=exchange_cfg.get("base_url", "https://api.coinbase.com/api/v3/brokerage"),
            timeout=float(exchange_cfg.get("timeout_seconds", 20.0)),
            max_retries=int(exchange_cfg.get("max_retries", 3)),
        )

        metrics_cfg = self.app_config.get("metrics", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )
        self.metrics.start()

        self.alerts = AlertService.from_config(self.app_config.get("alerts", {}))
        self.macro_engine = MacroCommoditySignalEngine()

        self.engine = DerivativesEngine(self.policy, self.venue, metrics=self.metrics, alerts=self.alerts)

        self._startup_checks()

        self._running = True
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized DerivativesLoop in {self.mode} mode")

    @staticmethod
    def _setup_logging(log_cfg: Dict[str, Any]) -> None:
        handlers = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))

        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _startup_checks(self) -> None:
        if not self.engine.is_enabled():
            logger.warning("⚠️ Derivatives engine disabled (derivatives.yaml enabled=false); cycles are no-ops")
            return
        if isinstance(self.venue, CoinbaseDerivativesClient):
            status = self.venue.test_connection()
            log = logger.info if status["success"] else logger.error
            log(f"Venue connectivity: {status['message']}")

    def _handle_stop(self, *_):
        """Stop after the current cycle."""
        logger.warning("Shutdown signal received, stopping after current cycle")
        self._running = False

    def load_inputs(self) -> Optional[SignalInputs]:
        """
        Read the inputs snapshot (YAML or JSON).

        Returns None when the snapshot is missing or unreadable.
        """
        if not self.inputs_file.exists():
            logger.warning(f"Signal inputs snapshot not found: {self.inputs_file}")
            return None

        try:
            with open(self.inputs_file, "r") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to read signal inputs {self.inputs_file}: {e}")
            return None

        inputs = SignalInputs.from_dict(raw)

        if inputs.commodity_signal is None and raw.get("macro_inputs"):
            macro = MacroInputs.from_dict(raw["macro_inputs"])
            if macro.macro_signal is None:
                macro.macro_signal = inputs.macro_signal
            inputs.commodity_signal = self.macro_engine.generate_signal(macro)

        if not inputs.funding_rates and isinstance(self.venue, CoinbaseDerivativesClient):
            inputs.funding_rates = self.venue.get_funding_rates(self.engine.signal_generator.perpetuals)

        return inputs

    def run_cycle(self) -> Optional[CycleResult]:
        if not self.engine.is_enabled():
            return None

        inputs = self.load_inputs()
        if inputs is None:
            logger.warning("Skipping cycle: no signal inputs")
            return None

        result = self.engine.run_cycle(inputs)
        for record in result.trades_executed:
            status = "✅" if record.success else "❌"
            logger.info(
                f"{status} {record.action.value} {record.product} ${record.size_usd:.2f} "
                f"@ {record.leverage}x order={record.order_id or '-'}"
                + (f" error={record.error}" if record.error else "")
            )
        return result

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run the loop continuously, keeping a fixed cadence between cycle starts.

        Args:
            interval_seconds: Seconds between cycle starts
        """
        interval = max(float(interval_seconds or self.loop_interval_seconds), 1.0)
        logger.info(f"Starting continuous loop (interval={interval}s)")

        while self._running:
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start
            sleep_for = max(1.0, interval - elapsed)
            logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            time.sleep(sleep_for)

        logger.info("Derivatives loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Derivatives strategy & risk engine")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    loop = DerivativesLoop(config_dir=args.config_dir)

    if args.once:
        loop.run_cycle()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
