"""
Order execution strategies.

`LiveOrderExecutor` sends orders to the exchange. `SimulatedOrderExecutor`
stands in for a fill when a bot runs in test mode; its RNG and clock are
injectable so tests get deterministic simulated fills.
"""
import logging
from abc import ABC, abstractmethod
import random
import time
from typing import Callable, Optional

from alert_trader.config import settings
from alert_trader.services.exchange import OrderRequest, OrderResult

logger = logging.getLogger(__name__)


class OrderExecutor(ABC):
    @abstractmethod
    def open(self, order: OrderRequest) -> OrderResult: ...

    @abstractmethod
    def close(self, order: OrderRequest, entry_price: float, entry_side: str,
              exit_price: Optional[float] = None) -> OrderResult: ...


class LiveOrderExecutor(OrderExecutor):
    def __init__(self, exchange):
        self.exchange = exchange

    def open(self, order: OrderRequest) -> OrderResult:
        return self.exchange.create_order(order)

    def close(self, order: OrderRequest, entry_price: float, entry_side: str,
              exit_price: Optional[float] = None) -> OrderResult:
        # Realized PnL for live closes comes from the exchange via reconciliation
        return self.exchange.create_order(order)


class SimulatedOrderExecutor(OrderExecutor):
    def __init__(self, rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time,
                 fee_rate: Optional[float] = None):
        self.rng = rng or random.Random()
        self.clock = clock
        self.fee_rate = settings.SIMULATED_FEE_RATE if fee_rate is None else fee_rate

    def _stamp(self) -> int:
        return int(self.clock() * 1000)

    def open(self, order: OrderRequest) -> OrderResult:
        price = order.price or 0.0
        notional = price * order.quantity
        # Simulated move between -2% and +2%, profitable for Buy when positive
        change_pct = self.rng.uniform(-2.0, 2.0)
        pnl = notional * change_pct / 100
        if order.side != "Buy":
            pnl = -pnl
        fees = notional * self.fee_rate
        result = OrderResult(
            order_id=f"test-{self._stamp()}",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            executed_price=price,
            fees=fees,
            status="TEST_ORDER",
            simulated_pnl=pnl - fees,
        )
        logger.info("Simulated %s order %s: pnl=%.2f fees=%.2f", order.side, result.order_id,
                    result.simulated_pnl, fees)
        return result

    def close(self, order: OrderRequest, entry_price: float, entry_side: str,
              exit_price: Optional[float] = None) -> OrderResult:
        price = exit_price or (entry_price or 0.0) * 1.01
        if entry_side == "Buy":
            pnl = (price - entry_price) * order.quantity
        else:
            pnl = (entry_price - price) * order.quantity
        fees = price * order.quantity * self.fee_rate
        return OrderResult(
            order_id=f"close-test-{self._stamp()}",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            executed_price=price,
            fees=fees,
            status="TEST_CLOSE",
            simulated_pnl=pnl - fees,
        )
