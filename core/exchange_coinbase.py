"""
Derivatives Core: Exchange Connector (Coinbase)

Coinbase Advanced Trade derivatives integration: CFM (US regulated futures)
and INTX (perpetuals) balances, positions and market orders.
Cloud API keys authenticate with a short-lived ES256 JWT per request.
"""

import json
import logging
import os
import random
import secrets
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

import jwt
import requests
from cryptography.hazmat.primitives import serialization

from core.exceptions import VenueOrderError
from core.portfolio import PortfolioState, Position, PositionSide
from core.venue import OrderResult, OrderSide, VenueClient

logger = logging.getLogger(__name__)

CB_BASE = "https://api.coinbase.com/api/v3/brokerage"

COMMODITY_ROOTS = ("GC", "SI")


def _amount(value: Any) -> float:
    """Parse a Coinbase amount: {"value": "1.23", "currency": "USD"}, "1.23" or None."""
    if isinstance(value, dict):
        value = value.get("value")
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _optional_amount(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, dict) and value.get("value") in (None, "")):
        return None
    parsed = _amount(value)
    return parsed if parsed != 0.0 else None


def _format_size(size: float) -> str:
    text = f"{size:.8f}".rstrip("0").rstrip(".")
    return text or "0"


def parse_position(raw: Dict[str, Any], venue: str) -> Optional[Position]:
    """
    Normalize a CFM or INTX position payload.

    INTX reports entry_vwap/mark_price/position_notional as amount objects;
    CFM reports avg_entry_price/current_price/number_of_contracts as strings.
    Returns None for empty (zero size, zero notional) rows.
    """
    product_id = raw.get("product_id") or raw.get("symbol")
    if not product_id:
        return None

    net_size = _amount(raw.get("net_size") or raw.get("number_of_contracts"))
    entry = _amount(raw.get("entry_vwap")) or _amount(raw.get("vwap")) or _amount(raw.get("avg_entry_price"))
    mark = _amount(raw.get("mark_price")) or _amount(raw.get("current_price"))

    notional = abs(_amount(raw.get("position_notional")))
    if notional == 0.0 and mark > 0:
        contract_size = _amount(raw.get("contract_size")) or 1.0
        notional = abs(net_size) * mark * contract_size
    if notional == 0.0 and net_size == 0.0:
        return None

    side_raw = str(raw.get("position_side") or raw.get("side") or "").upper()
    if "LONG" in side_raw:
        side = PositionSide.LONG
    elif "SHORT" in side_raw:
        side = PositionSide.SHORT
    else:
        side = PositionSide.SHORT if net_size < 0 else PositionSide.LONG

    unrealized = raw.get("unrealized_pnl")
    return Position(
        product_id=product_id,
        side=side,
        entry_price=entry,
        mark_price=mark,
        notional=notional,
        leverage=_amount(raw.get("leverage")) or 1.0,
        liquidation_price=_optional_amount(raw.get("liquidation_price")),
        unrealized_pnl=None if unrealized is None else _amount(unrealized),
        net_size=abs(net_size),
        venue=venue,
    )


class CoinbaseDerivativesClient(VenueClient):
    """
    Coinbase Advanced Trade derivatives connector.

    Supports:
    - Merged CFM + INTX portfolio state (partial failures mark the state degraded)
    - Perpetual market orders by USD notional with leverage (CROSS margin)
    - Futures market orders by whole contracts
    - Full and partial position closes
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 read_only: bool = True, base_url: str = CB_BASE, timeout: float = 20.0,
                 max_retries: int = 3):
        secret_file = os.getenv("CB_API_SECRET_FILE")
        if secret_file and os.path.exists(secret_file) and not api_key:
            try:
                with open(secret_file, "r") as f:
                    creds = json.load(f)
                api_key = creds.get("name")
                api_secret = creds.get("privateKey", "")
                logger.info(f"Loaded Coinbase credentials from {secret_file}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load credentials from {secret_file}: {e}")

        self.api_key = api_key or os.getenv("COINBASE_API_KEY", "")
        self.api_secret = (api_secret or os.getenv("COINBASE_API_SECRET", "")).replace("\\n", "\n").strip()
        self.read_only = read_only
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))

        parsed = urlparse(self.base_url)
        self._host = parsed.netloc
        self._base_path = parsed.path.rstrip("/")

        self._perp_portfolio_uuid: Optional[str] = None

        logger.info(f"Initialized CoinbaseDerivativesClient (read_only={read_only})")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_jwt(self, method: str, path: str) -> str:
        """Build JWT token for Cloud API authentication (ES256)"""
        if not self.api_key or not self.api_secret.startswith("-----BEGIN"):
            raise ValueError("API key name and PEM private key required for JWT authentication")

        try:
            private_key = serialization.load_pem_private_key(self.api_secret.encode("utf-8"), password=None)
        except ValueError as e:
            raise ValueError(f"Failed to load private key: {e}")

        now = int(time.time())
        payload = {
            "sub": self.api_key,
            "iss": "cdp",
            "nbf": now,
            "exp": now + 120,
            "uri": f"{method.upper()} {self._host}{path}",
        }
        return jwt.encode(
            payload,
            private_key,
            algorithm="ES256",
            headers={"kid": self.api_key, "nonce": secrets.token_hex()},
        )

    def _headers(self, method: str, path: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._build_jwt(method, path)}",
        }

    def _req(self, method: str, endpoint: str, body: Optional[dict] = None,
             query: Optional[Dict[str, object]] = None) -> dict:
        """
        Make HTTP request to Coinbase API with exponential backoff.

        Retries on 429, 5xx and network errors (timeout, connection).
        Does NOT retry on other 4xx client errors.
        """
        url = self.base_url + endpoint
        if query:
            url = f"{url}?{urlencode(sorted(query.items()), doseq=True)}"
        # JWT uri is signed without the query string
        path_for_auth = self._base_path + endpoint

        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = requests.request(
                    method,
                    url,
                    headers=self._headers(method, path_for_auth),
                    json=body,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0

                if 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug(f"Coinbase API 404: {endpoint}")
                    else:
                        logger.error(f"Coinbase API client error: {status_code} - {e.response.text}")
                    raise

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {endpoint}, attempt {attempt + 1}/{self.max_retries}")
                else:
                    logger.warning(f"Server error ({status_code}) on {endpoint}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {endpoint}")
        raise last_exception

    # ------------------------------------------------------------------
    # Account state
    # ------------------------------------------------------------------

    def get_futures_balance_summary(self) -> dict:
        return self._req("GET", "/cfm/balance_summary").get("balance_summary") or {}

    def list_futures_positions(self) -> List[dict]:
        return self._req("GET", "/cfm/positions").get("positions") or []

    def list_portfolios(self) -> List[dict]:
        return self._req("GET", "/portfolios").get("portfolios") or []

    def find_perpetuals_portfolio(self) -> Optional[str]:
        """UUID of the perpetuals portfolio (type PERPETUALS or a name containing "perp")."""
        if self._perp_portfolio_uuid:
            return self._perp_portfolio_uuid
        for portfolio in self.list_portfolios():
            name = str(portfolio.get("name") or "").lower()
            if portfolio.get("type") == "PERPETUALS" or "perp" in name:
                self._perp_portfolio_uuid = portfolio.get("uuid")
                return self._perp_portfolio_uuid
        return None

    def get_perpetuals_portfolio(self, portfolio_uuid: str) -> dict:
        data = self._req("GET", f"/intx/portfolio/{portfolio_uuid}")
        summary = data.get("summary")
        if summary is None and isinstance(data.get("portfolios"), list) and data["portfolios"]:
            summary = data["portfolios"][0]
        return summary or {}

    def list_perpetuals_positions(self, portfolio_uuid: str) -> List[dict]:
        return self._req("GET", f"/intx/positions/{portfolio_uuid}").get("positions") or []

    def get_portfolio_state(self) -> PortfolioState:
        """
        Merge CFM and INTX balances/positions into one snapshot.

        Each sub-fetch is independent; a failure is logged and marks the
        snapshot degraded instead of aborting the whole fetch.
        """
        available = 0.0
        margin = 0.0
        unrealized = 0.0
        positions: List[Position] = []
        degraded = False

        try:
            summary = self.get_futures_balance_summary()
            available += _amount(summary.get("futures_buying_power"))
            unrealized += _amount(summary.get("unrealized_pnl"))
            margin += _amount(summary.get("initial_margin"))
        except Exception as e:
            logger.warning(f"⚠️ CFM balance fetch failed: {str(e)[:150]}")
            degraded = True

        try:
            for raw in self.list_futures_positions():
                position = parse_position(raw, venue="CFM")
                if position is not None:
                    positions.append(position)
        except Exception as e:
            logger.warning(f"⚠️ CFM positions fetch failed: {str(e)[:150]}")
            degraded = True

        try:
            portfolio_uuid = self.find_perpetuals_portfolio()
        except Exception as e:
            logger.warning(f"⚠️ Portfolio discovery failed: {str(e)[:150]}")
            portfolio_uuid = None
            degraded = True

        if portfolio_uuid:
            try:
                summary = self.get_perpetuals_portfolio(portfolio_uuid)
                available += _amount(summary.get("buying_power"))
                unrealized += _amount(summary.get("unrealized_pnl"))
                margin += _amount(summary.get("portfolio_im_notional"))
            except Exception as e:
                logger.warning(f"⚠️ INTX portfolio fetch failed: {str(e)[:150]}")
                degraded = True

            try:
                for raw in self.list_perpetuals_positions(portfolio_uuid):
                    position = parse_position(raw, venue="INTX")
                    if position is not None:
                        positions.append(position)
            except Exception as e:
                logger.warning(f"⚠️ INTX positions fetch failed: {str(e)[:150]}")
                degraded = True
        else:
            logger.debug("No perpetuals portfolio found; INTX state skipped")

        return PortfolioState(
            available_buying_power=available,
            total_margin_used=margin,
            total_unrealized_pnl=unrealized,
            positions=tuple(positions),
            degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _require_trading(self, product_id: str) -> None:
        if self.read_only:
            raise VenueOrderError(product_id, "Cannot place orders in READ_ONLY mode")

    @staticmethod
    def _order_result(product_id: str, response: Any) -> OrderResult:
        if not isinstance(response, dict):
            raise VenueOrderError(product_id, f"Unexpected order response: {str(response)[:100]}")

        success_response = response.get("success_response") or {}
        error_response = response.get("error_response") or {}
        success = bool(response.get("success"))
        order_id = success_response.get("order_id") or response.get("order_id")

        failure_reason = None
        if not success:
            failure_reason = (
                response.get("failure_reason")
                or error_response.get("preview_failure_reason")
                or error_response.get("message")
                or error_response.get("error")
                or "Order failed"
            )
        return OrderResult(success=success, order_id=order_id, failure_reason=failure_reason)

    def open_or_add_position(self, product_id: str, side: OrderSide, size: float,
                             leverage: int = 1, contracts: bool = False) -> OrderResult:
        self._require_trading(product_id)

        body: Dict[str, Any] = {
            "client_order_id": str(uuid.uuid4()),
            "product_id": product_id,
            "side": OrderSide(side).value,
        }
        if contracts:
            body["order_configuration"] = {"market_market_ioc": {"base_size": str(int(size))}}
        else:
            body["order_configuration"] = {"market_market_ioc": {"quote_size": f"{size:.2f}"}}
            body["leverage"] = str(int(leverage))
            body["margin_type"] = "CROSS"

        logger.info(f"Placing {body['side']} market order for {product_id}: {body['order_configuration']}")
        return self._order_result(product_id, self._req("POST", "/orders", body))

    def close_position(self, product_id: str, size: Optional[float] = None) -> OrderResult:
        self._require_trading(product_id)

        body: Dict[str, Any] = {
            "client_order_id": str(uuid.uuid4()),
            "product_id": product_id,
        }
        if size is not None:
            body["size"] = _format_size(size)

        logger.info(f"Closing {product_id} ({'full' if size is None else body['size']})")
        return self._order_result(product_id, self._req("POST", "/orders/close_position", body))

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def list_commodity_contracts(self) -> Dict[str, List[str]]:
        """
        Discover tradable gold (GC) and silver (SI) futures, nearest expiry first.

        Returns:
            {"GC": [...product ids...], "SI": [...]}
        """
        data = self._req("GET", "/products", query={"product_type": "FUTURE"})
        contracts: Dict[str, List[tuple]] = {root: [] for root in COMMODITY_ROOTS}

        for product in data.get("products") or []:
            product_id = product.get("product_id") or ""
            details = product.get("future_product_details") or {}
            if details.get("contract_expiry_type") == "PERPETUAL":
                continue
            if product.get("trading_disabled") or product.get("is_disabled"):
                continue
            for root in COMMODITY_ROOTS:
                if product_id.startswith(root):
                    contracts[root].append((details.get("contract_expiry") or "", product_id))

        return {root: [pid for _, pid in sorted(items)] for root, items in contracts.items()}

    def get_funding_rates(self, product_ids: List[str]) -> Dict[str, float]:
        """Current funding rate (fraction) per perpetual product; products without one are skipped."""
        rates: Dict[str, float] = {}
        for product_id in product_ids:
            try:
                product = self._req("GET", f"/products/{product_id}")
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.warning(f"Funding rate fetch failed for {product_id}: {e}")
                continue
            details = (product.get("future_product_details") or {}).get("perpetual_details") or {}
            if details.get("funding_rate") not in (None, ""):
                rates[product_id] = _amount(details.get("funding_rate"))
        return rates

    def test_connection(self) -> Dict[str, Any]:
        """Check CFM and INTX availability. Call this on startup."""
        cfm_enabled = False
        intx_enabled = False
        messages: List[str] = []

        try:
            self.get_futures_balance_summary()
            cfm_enabled = True
            messages.append("CFM (US Derivatives) ✅")
        except Exception as e:
            messages.append(f"CFM (US Derivatives) ❌ {str(e)[:80]}")

        try:
            portfolio_uuid = self.find_perpetuals_portfolio()
            if portfolio_uuid:
                self.get_perpetuals_portfolio(portfolio_uuid)
                intx_enabled = True
                messages.append("INTX (Perpetuals) ✅")
            else:
                messages.append("INTX (Perpetuals) ⚠️ No perpetuals portfolio found")
        except Exception as e:
            messages.append(f"INTX (Perpetuals) ❌ {str(e)[:80]}")

        return {
            "success": cfm_enabled or intx_enabled,
            "message": " | ".join(messages),
            "cfm_enabled": cfm_enabled,
            "intx_enabled": intx_enabled,
        }


def get_derivatives_client(read_only: bool = True, base_url: str = CB_BASE) -> CoinbaseDerivativesClient:
    """
    Build the Coinbase derivatives client.

    Args:
        read_only: If True, prevents order placement (safe default)
        base_url: Brokerage API base URL
    """
    return CoinbaseDerivativesClient(read_only=read_only, base_url=base_url)
