import logging
from datetime import datetime
from typing import Callable, Optional

from alert_trader.config import settings
from alert_trader.exceptions import (
    AlertTraderError,
    ExchangeError,
    PersistenceError,
    StaleTradeError,
    TradeNotFound,
    ValidationError,
)
from alert_trader.schemas.trade import ManualCloseRequest, ManualTradeRequest
from alert_trader.services.credentials import resolve_api_key
from alert_trader.services.events import EventEmitter
from alert_trader.services.exchange import OrderRequest, client_for
from alert_trader.services.ledger import TradeSnapshot
from alert_trader.services.order_executor import LiveOrderExecutor, SimulatedOrderExecutor
from alert_trader.services.position_sizing import round_to_lot
from alert_trader.services.reconciler import PnlReconciler, opposite_side
from alert_trader.services.results import Err, Ok
from alert_trader.services.trade_metrics import calculate_trade_metrics

logger = logging.getLogger(__name__)


class ManualTradeService:
    """Direct trade entry: a user-submitted order with no bot or webhook behind it."""

    def __init__(self, ledger, events: Optional[EventEmitter] = None,
                 exchange_factory: Callable = client_for,
                 simulator: Optional[SimulatedOrderExecutor] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.ledger = ledger
        self.events = events or EventEmitter()
        self.exchange_factory = exchange_factory
        self.simulator = simulator or SimulatedOrderExecutor()
        self.clock = clock

    def execute(self, request: ManualTradeRequest):
        events = self.events.bind(user_id=request.user_id)
        events.info("Executing manual trade", {
            "symbol": request.symbol, "side": request.side, "quantity": request.quantity,
            "entryPrice": request.entry_price, "testMode": request.test_mode,
        })

        try:
            api_key = resolve_api_key(self.ledger, request.user_id, request.api_key_id)
        except AlertTraderError as e:
            events.error("API credentials not found", {"error": e.message})
            return Err(e)

        quantity = request.quantity
        order = OrderRequest(
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=quantity,
            price=request.entry_price,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
            leverage=request.leverage,
        )

        try:
            if request.test_mode:
                result = self.simulator.open(order)
            else:
                exchange = self.exchange_factory(api_key, False)
                lot = exchange.fetch_instrument_info(request.symbol)
                quantity = round_to_lot(request.quantity, lot)
                if quantity != request.quantity:
                    events.info("Quantity adjusted to instrument lot size", {
                        "requested": request.quantity, "adjusted": quantity,
                        "minQty": lot.min_qty, "qtyStep": lot.qty_step,
                    })
                order.quantity = quantity
                result = LiveOrderExecutor(exchange).open(order)
        except ExchangeError as e:
            events.error("Failed to execute manual trade", {"error": e.message, "symbol": request.symbol})
            return Err(e)

        values = {
            "user_id": request.user_id,
            "bot_id": None,
            "api_key_id": api_key.id,
            "source": "manual",
            "state": "open",
            "status": result.status,
            "symbol": request.symbol,
            "side": request.side,
            "order_type": request.order_type,
            "quantity": quantity,
            "price": request.entry_price,
            "order_id": result.order_id,
            "stop_loss": request.stop_loss,
            "take_profit": request.take_profit,
            "leverage": request.leverage,
            "test_mode": request.test_mode,
            "risk_amount": request.max_risk,
            "fees": result.fees,
            "notes": request.notes,
            "created_at": self.clock(),
        }
        if not request.test_mode and result.executed_price:
            values["avg_entry_price"] = result.executed_price

        try:
            trade = self.ledger.create_trade(values)
        except PersistenceError as e:
            return _write_failure(events, e, result, live=not request.test_mode)

        events.info("Manual trade saved", {"orderId": result.order_id, "adjustedQuantity": quantity},
                    trade_id=trade.id)
        return Ok({
            "success": True,
            "message": "Trade executed and saved successfully",
            "tradeId": trade.id,
            "orderId": result.order_id,
            "status": result.status,
            "adjustedQuantity": quantity,
            "testMode": request.test_mode,
        })

    def close(self, trade_id: int, request: ManualCloseRequest):
        """Close a direct trade and settle its PnL.

        Test trades are closed against the simulator. Live trades get an
        opposite-side market order (unless `send_order` is false) and are then
        reconciled against the exchange's closed-PnL history; a missing PnL
        record still leaves the trade closed.
        """
        row = self.ledger.get_trade(trade_id)
        if row is None or (request.user_id and row.user_id != request.user_id):
            self.events.error("Failed to update manual trade - trade not found", {"trade_id": trade_id})
            return Err(TradeNotFound("Trade not found"))
        trade = TradeSnapshot.of(row)
        events = self.events.bind(user_id=trade.user_id, trade_id=trade.id)

        if trade.source != "manual":
            e = ValidationError("Trade was not placed as a direct trade", {"trade_id": trade.id})
            events.error(e.message, e.details)
            return Err(e)
        if trade.state == "closed":
            events.warning("Attempted to update an already closed trade", {"trade_id": trade.id})
            return Ok({"success": False, "message": "Trade is already closed", "trade_id": trade.id})

        close_result = None
        if request.send_order:
            order = OrderRequest(
                symbol=trade.symbol,
                side=opposite_side(trade.side),
                order_type="Market",
                quantity=trade.quantity,
                price=request.exit_price,
            )
            try:
                if trade.test_mode:
                    executor = self.simulator
                else:
                    api_key = resolve_api_key(self.ledger, trade.user_id, trade.api_key_id)
                    executor = LiveOrderExecutor(self.exchange_factory(api_key, False))
                close_result = executor.close(order, entry_price=trade.price or 0.0,
                                              entry_side=trade.side, exit_price=request.exit_price)
            except AlertTraderError as e:
                events.error("Failed to execute close order", {"error": e.message, "symbol": trade.symbol})
                return Err(e)
            events.info("Manual close order executed", {
                "orderId": close_result.order_id, "status": close_result.status,
                "price": close_result.executed_price,
            })

        now = self.clock()
        realized_pnl = close_result.simulated_pnl if close_result else None
        exit_price = close_result.executed_price if close_result else request.exit_price
        max_risk = trade.risk_amount or settings.DEFAULT_MAX_RISK
        values = {
            "state": "closed",
            "close_reason": "manual",
            "exit_price": exit_price,
            "risk_amount": max_risk,
            "notes": request.notes or trade.notes,
            "closed_at": now,
            "trade_metrics": calculate_trade_metrics(
                symbol=trade.symbol,
                side=trade.side,
                planned_entry=trade.price or 0.0,
                actual_entry=trade.avg_entry_price or trade.price or 0.0,
                stop_loss=trade.stop_loss or 0.0,
                take_profit=trade.take_profit or 0.0,
                max_risk=max_risk,
                finished_dollar=realized_pnl,
                open_fee=trade.fees or 0.0,
                close_fee=close_result.fees if close_result else 0.0,
                open_time=trade.created_at,
                close_time=now,
            ),
        }
        if trade.test_mode:
            values["realized_pnl"] = realized_pnl

        order_sent = close_result is not None and not trade.test_mode
        try:
            updated = self.ledger.update_trade(trade.id, values, expected_state="open",
                                               expected_quantity=trade.quantity)
        except PersistenceError as e:
            return _write_failure(events, e, close_result, live=order_sent)
        if not updated:
            e = StaleTradeError("Trade was modified by a concurrent request")
            return _write_failure(events, e, close_result, live=order_sent)

        body = {
            "success": True,
            "message": "Trade closed successfully",
            "trade_id": trade.id,
            "orderId": close_result.order_id if close_result else None,
            "exit_price": exit_price,
            "realized_pnl": realized_pnl,
            "test_mode": trade.test_mode,
        }
        if trade.test_mode:
            events.info("Manual trade closed", body)
            return Ok(body)

        reconciled = PnlReconciler(self.ledger, self.exchange_factory, self.events,
                                   clock=self.clock).reconcile(trade.id)
        if not reconciled.ok:
            body.update(message="Trade marked as closed, but no matching PnL data found", pnl_found=False)
            events.warning(body["message"], {"error": reconciled.error.message})
            return Ok(body)

        pnl = reconciled.value
        body.update(
            realized_pnl=pnl["realized_pnl"],
            avg_entry_price=pnl.get("avg_entry_price"),
            avg_exit_price=pnl.get("avg_exit_price"),
            match_type=pnl.get("match_type"),
            finish_r=pnl["realized_pnl"] / max_risk if pnl["realized_pnl"] is not None else None,
            pnl_found=True,
        )
        events.info("Successfully updated manual trade with PnL data from exchange", body)
        return Ok(body)


def _write_failure(events, error: PersistenceError, result, live: bool):
    extra = {"orderId": result.order_id} if result is not None else {}
    if live:
        error.divergence = True
        events.critical("Order executed at exchange but ledger write failed",
                        dict(extra, error=error.message, kind=error.kind))
    else:
        events.error("Failed to save trade to database", {"error": error.message})
    return Err(error, extra)
