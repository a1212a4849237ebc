"""
Exchange client for a Bybit V5 style venue.

Every signed request uses the exchange's own clock, fetched right before
signing, so local clock drift cannot push requests outside the recv-window.
Application-level failures (non-zero `retCode`) are raised as
`ExchangeError` just like transport failures.
"""
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from alert_trader.config import settings
from alert_trader.exceptions import ExchangeError, ReconciliationFailed
from alert_trader.services.signer import Signer, canonical_body, canonical_query

logger = logging.getLogger(__name__)

LEVERAGE_NOT_MODIFIED = 110043


@dataclass
class LotConstraints:
    min_qty: float
    qty_step: float
    decimals: int


@dataclass
class OrderRequest:
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    leverage: Optional[float] = None


@dataclass
class OrderResult:
    order_id: str
    symbol: str
    side: str
    order_type: str
    qty: float
    executed_price: float
    fees: float
    status: str
    simulated_pnl: Optional[float] = None


@dataclass
class ClosedPnlRecord:
    order_id: str
    symbol: str
    side: str
    qty: float
    closed_pnl: float
    avg_entry_price: float
    avg_exit_price: float
    cum_entry_value: float
    cum_exit_value: float
    created_time: int  # ms since epoch
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "ClosedPnlRecord":
        return cls(
            order_id=str(item.get("orderId", "")),
            symbol=item.get("symbol", ""),
            side=item.get("side", ""),
            qty=_to_float(item.get("qty")),
            closed_pnl=_to_float(item.get("closedPnl")),
            avg_entry_price=_to_float(item.get("avgEntryPrice")),
            avg_exit_price=_to_float(item.get("avgExitPrice")),
            cum_entry_value=_to_float(item.get("cumEntryValue")),
            cum_exit_value=_to_float(item.get("cumExitValue")),
            created_time=int(_to_float(item.get("createdTime"))),
            raw=dict(item),
        )


def _to_float(value, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def step_decimals(step: str) -> int:
    return len(step.split(".")[1]) if "." in step else 0


def backoff_delay(attempt: int, base: float, cap: float, jitter: float,
                  rng: Callable[[], float] = random.random) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped, plus jitter."""
    return min(base * (2 ** (attempt - 1)), cap) + rng() * jitter


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


class ExchangeClient:
    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 testnet: bool = False, account_type: str = "main",
                 session=None, settings_obj=None,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Callable[[], float] = random.random):
        self.settings = settings_obj or settings
        self.testnet = testnet
        self.base_url = self.settings.EXCHANGE_TESTNET_URL if testnet else self.settings.EXCHANGE_MAINNET_URL
        self.category = self.settings.EXCHANGE_CATEGORY
        self.account_type = account_type or "main"
        self.session = session or requests.Session()
        self.signer = Signer(api_key, api_secret, self.settings.EXCHANGE_RECV_WINDOW) if api_key and api_secret else None
        self._sleep = sleep
        self._rng = rng

    # ------------------------------------------------------------------ HTTP

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 body: Optional[Dict[str, Any]] = None, signed: bool = False,
                 ok_codes=(0,)) -> Dict[str, Any]:
        query = canonical_query(params or {})
        payload = canonical_body(body) if body is not None else ""
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        headers = {"Content-Type": "application/json"} if body is not None else {}
        if signed:
            if self.signer is None:
                raise ExchangeError(f"{path} requires API credentials")
            timestamp = self.server_time()
            headers.update(self.signer.headers(timestamp, payload if body is not None else query))

        try:
            resp = self.session.request(
                method, url, headers=headers, data=payload or None,
                timeout=self.settings.EXCHANGE_HTTP_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ExchangeError(f"HTTP request to {path} failed: {e}") from e

        if not resp.ok:
            raise ExchangeError(f"HTTP error: {resp.status_code} - {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ExchangeError(f"Invalid JSON from {path}") from e

        ret_code = data.get("retCode")
        if ret_code not in ok_codes:
            raise ExchangeError(
                f"Exchange API error {ret_code}: {data.get('retMsg')}",
                ret_code=ret_code,
            )
        return data

    def server_time(self) -> str:
        data = self._request("GET", "/v5/market/time")
        return str(data["time"])

    # ----------------------------------------------------------- market data

    def fetch_instrument_info(self, symbol: str) -> LotConstraints:
        data = self._request("GET", "/v5/market/instruments-info",
                             params={"category": self.category, "symbol": symbol})
        items = (data.get("result") or {}).get("list") or []
        if not items:
            raise ExchangeError(f"No instrument info returned for {symbol}")

        lot = items[0].get("lotSizeFilter") or {}
        min_qty_str = str(lot.get("minOrderQty") or lot.get("minTrdAmt") or "0")
        step_str = str(lot.get("qtyStep") or lot.get("stepSize") or "0")
        constraints = LotConstraints(
            min_qty=float(min_qty_str),
            qty_step=float(step_str),
            decimals=step_decimals(step_str),
        )
        logger.info("Lot constraints for %s: min=%s step=%s decimals=%d",
                    symbol, min_qty_str, step_str, constraints.decimals)
        return constraints

    def fetch_last_price(self, symbol: str) -> Optional[float]:
        """Best-effort last traded price, None when unavailable."""
        try:
            data = self._request("GET", "/v5/market/tickers",
                                 params={"category": self.category, "symbol": symbol})
        except ExchangeError as e:
            logger.warning("Could not fetch last price for %s: %s", symbol, e)
            return None
        items = (data.get("result") or {}).get("list") or []
        if not items:
            return None
        price = _to_float(items[0].get("lastPrice"), default=0.0)
        return price or None

    # --------------------------------------------------------------- trading

    def set_leverage(self, symbol: str, leverage: float) -> None:
        lev = str(leverage)
        self._request("POST", "/v5/position/set-leverage", signed=True,
                      body={"category": self.category, "symbol": symbol,
                            "buyLeverage": lev, "sellLeverage": lev},
                      ok_codes=(0, LEVERAGE_NOT_MODIFIED))
        logger.info("Leverage for %s set to %sx", symbol, lev)

    def create_order(self, order: OrderRequest) -> OrderResult:
        if order.leverage and order.leverage > 1:
            try:
                self.set_leverage(order.symbol, order.leverage)
            except ExchangeError as e:
                logger.warning("Setting leverage failed, continuing with order: %s", e)

        body = {
            "category": self.category,
            "symbol": order.symbol,
            "side": order.side,
            "orderType": order.order_type,
            "qty": str(order.quantity),
            "timeInForce": "IOC" if order.order_type == "Market" else "PostOnly",
        }
        if order.order_type == "Limit" and order.price is not None:
            body["price"] = str(order.price)
        if order.stop_loss is not None:
            body["stopLoss"] = str(order.stop_loss)
        if order.take_profit is not None:
            body["takeProfit"] = str(order.take_profit)

        logger.info("Submitting %s %s order: %s qty=%s", order.order_type, order.side, order.symbol, body["qty"])
        data = self._request("POST", "/v5/order/create", body=body, signed=True)
        result = data.get("result") or {}
        order_id = result.get("orderId")
        if not order_id:
            raise ExchangeError("Order accepted without an orderId")

        executed_price, fees = self._lookup_fill(order, order_id)
        return OrderResult(
            order_id=order_id,
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            executed_price=executed_price,
            fees=fees,
            status=result.get("orderStatus") or "Created",
        )

    def _lookup_fill(self, order: OrderRequest, order_id: str):
        fallback = order.price or 0.0
        try:
            data = self._request("GET", "/v5/order/history", signed=True,
                                 params={"category": self.category, "symbol": order.symbol,
                                         "orderId": order_id, "limit": 1})
        except ExchangeError as e:
            logger.warning("Fill lookup for order %s failed, using requested price: %s", order_id, e)
            return fallback, 0.0

        items = (data.get("result") or {}).get("list") or []
        if not items:
            return fallback, 0.0
        details = items[0]
        price = _to_float(details.get("avgPrice")) or _to_float(details.get("price")) or fallback
        fees = _to_float(details.get("cumExecFee"))
        logger.info("Order %s filled at %s, fees %s", order_id, price, fees)
        return price, fees

    # ----------------------------------------------------------- settlement

    def closed_pnl_window(self, opened_at: datetime):
        start = opened_at - timedelta(hours=1)
        end = opened_at + timedelta(days=7)
        return to_epoch_ms(start), to_epoch_ms(end)

    def _fetch_closed_pnl_once(self, symbol: str, start_ms: int, end_ms: int) -> List[ClosedPnlRecord]:
        data = self._request("GET", "/v5/position/closed-pnl", signed=True,
                             params={"category": self.category, "symbol": symbol, "limit": 100,
                                     "startTime": start_ms, "endTime": end_ms})
        items = (data.get("result") or {}).get("list") or []
        return [ClosedPnlRecord.from_api(item) for item in items]

    def fetch_closed_pnl(self, symbol: str, opened_at: datetime) -> List[ClosedPnlRecord]:
        """Closed-PnL records around a trade's open time, retried with exponential backoff.

        Raises ReconciliationFailed once RECONCILE_MAX_ATTEMPTS attempts have failed.
        """
        start_ms, end_ms = self.closed_pnl_window(opened_at)

        max_attempts = self.settings.RECONCILE_MAX_ATTEMPTS
        attempt = 0
        while True:
            attempt += 1
            try:
                records = self._fetch_closed_pnl_once(symbol, start_ms, end_ms)
                logger.info("Closed PnL for %s: %d records (attempt %d)", symbol, len(records), attempt)
                return records
            except ExchangeError as e:
                logger.warning("Closed PnL attempt %d/%d failed: %s", attempt, max_attempts, e)
                if attempt >= max_attempts:
                    raise ReconciliationFailed(
                        f"Failed to fetch closed PnL after {attempt} attempts: {e.message}",
                        attempts=attempt,
                    ) from e
                delay = backoff_delay(
                    attempt,
                    self.settings.RECONCILE_BACKOFF_BASE,
                    self.settings.RECONCILE_BACKOFF_CAP,
                    self.settings.RECONCILE_BACKOFF_JITTER,
                    self._rng,
                )
                logger.info("Retrying closed PnL fetch in %.2fs", delay)
                self._sleep(delay)


def client_for(api_key, testnet: bool = False, **kwargs) -> ExchangeClient:
    """Build a client from a stored ApiKey row (or None for public endpoints only)."""
    if api_key is None:
        return ExchangeClient(testnet=testnet, **kwargs)
    return ExchangeClient(
        api_key=api_key.api_key,
        api_secret=api_key.api_secret,
        testnet=testnet,
        account_type=api_key.account_type,
        **kwargs,
    )
