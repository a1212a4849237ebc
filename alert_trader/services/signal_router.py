"""
Signal router: turns a webhook alert into an exchange order and a ledger entry.

    alert -> webhook/bot/credentials -> risk gate -> lot constraints -> sizing
          -> order (exchange or simulator) -> trade row -> bot stats
    close -> open trade lookup -> close reason -> closing order when needed
          -> conditional trade update -> background reconciliation

Each step returns or catches so the workflow hands a tagged result (`Ok` /
`Err`) to the HTTP layer; no component exception escapes a workflow.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from pydantic import ValidationError as SchemaError

from alert_trader.config import settings
from alert_trader.exceptions import (
    AlertTraderError,
    ExchangeError,
    NoOpenTrade,
    PersistenceError,
    RiskLimitExceeded,
    SizingError,
    StaleTradeError,
    ValidationError,
    WebhookNotFound,
)
from alert_trader.schemas.alert import AlertPayload, normalize_side
from alert_trader.services.credentials import resolve_api_key
from alert_trader.services.events import EventEmitter
from alert_trader.services.exchange import LotConstraints, OrderRequest, client_for
from alert_trader.services.ledger import TradeSnapshot
from alert_trader.services.order_executor import LiveOrderExecutor, SimulatedOrderExecutor
from alert_trader.services.position_sizing import calculate_position_size, floor_to_step, round_to_lot
from alert_trader.services.reconciler import opposite_side
from alert_trader.services.results import Err, Ok
from alert_trader.services.risk import RiskGovernor
from alert_trader.services.trade_metrics import calculate_trade_metrics

logger = logging.getLogger(__name__)

# Close reasons for which the exchange has not already flattened the position
ORDER_REQUIRED_REASONS = ("signal", "partial_close")


def naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def parse_alert(raw: Union[bytes, str]):
    """Parse a raw alert body into an AlertPayload result."""
    try:
        data = json.loads(raw or b"")
    except (ValueError, UnicodeDecodeError) as e:
        return Err(ValidationError(f"Invalid JSON payload: {e}"))
    if not isinstance(data, dict):
        return Err(ValidationError("Alert payload must be a JSON object"))
    try:
        return Ok(AlertPayload.model_validate(data))
    except SchemaError as e:
        errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
        return Err(ValidationError("Invalid alert payload", {"errors": errors}))


def determine_close_reason(trade, alert: AlertPayload) -> str:
    """Explicit reason, then stop crossed, then take-profit crossed, then liquidation, else signal."""
    if alert.close_reason:
        return alert.close_reason
    price = alert.price
    if price and trade.stop_loss:
        if (trade.side == "Buy" and price <= trade.stop_loss) or (trade.side == "Sell" and price >= trade.stop_loss):
            return "stop_loss_hit"
    if price and trade.take_profit:
        if (trade.side == "Buy" and price >= trade.take_profit) or (trade.side == "Sell" and price <= trade.take_profit):
            return "take_profit_hit"
    if alert.is_liquidation:
        return "liquidation"
    return "signal"


def price_from_percent(reference: Optional[float], percent: Optional[float], side: str, favorable: bool) -> Optional[float]:
    """Price `percent` away from `reference`: above for a Buy target, below for a Buy stop."""
    if not reference or not percent:
        return None
    direction = 1 if (side == "Buy") == favorable else -1
    return reference * (1 + direction * percent / 100)


@dataclass
class AlertContext:
    webhook: object
    bot: object
    api_key: object
    events: EventEmitter


class SignalRouter:
    def __init__(self, ledger, events: Optional[EventEmitter] = None,
                 exchange_factory: Callable = client_for,
                 simulator: Optional[SimulatedOrderExecutor] = None,
                 schedule_reconcile: Optional[Callable[[int], None]] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 settings_obj=None):
        self.ledger = ledger
        self.events = events or EventEmitter()
        self.exchange_factory = exchange_factory
        self.simulator = simulator or SimulatedOrderExecutor()
        self.schedule_reconcile = schedule_reconcile
        self.clock = clock
        self.settings = settings_obj or settings
        self.risk = RiskGovernor(ledger)

    # ------------------------------------------------------------- entry

    def process_alert(self, token: str, raw_body: Union[bytes, str]):
        context = self.load_context(token)
        if not context.ok:
            return context
        ctx = context.value

        parsed = parse_alert(raw_body)
        if not parsed.ok:
            ctx.events.error("Failed to parse alert payload", {"error": parsed.error.message, **parsed.error.details})
            return parsed
        alert = parsed.value
        ctx.events.info("Alert payload parsed successfully", {"payload": alert.model_dump()})

        try:
            ctx.api_key = resolve_api_key(self.ledger, ctx.webhook.user_id, ctx.bot.api_key_id)
        except AlertTraderError as e:
            ctx.events.error("API credentials not found", {"error": e.message})
            return Err(e)

        if alert.state == "close":
            return self.close_trade(ctx, alert)
        return self.open_trade(ctx, alert)

    def load_context(self, token: str):
        webhook = self.ledger.get_webhook_by_token(token)
        now = self.clock()
        if webhook is None or now > naive_utc(webhook.expires_at):
            self.events.error("Invalid or expired webhook", {"webhook_token_prefix": (token or "")[:6]})
            return Err(WebhookNotFound("Invalid or expired webhook"))

        bot = self.ledger.get_bot(webhook.bot_id)
        if bot is None:
            self.events.error("Webhook bot not found", {"bot_id": webhook.bot_id}, webhook_id=webhook.id)
            return Err(WebhookNotFound("Invalid or expired webhook"))

        events = self.events.bind(webhook_id=webhook.id, bot_id=bot.id, user_id=webhook.user_id)
        events.info("Webhook validated successfully")
        return Ok(AlertContext(webhook=webhook, bot=bot, api_key=None, events=events))

    def _exchange(self, ctx: AlertContext):
        return self.exchange_factory(ctx.api_key, bool(ctx.bot.test_mode))

    def _executor(self, ctx: AlertContext, exchange):
        if ctx.bot.test_mode:
            return self.simulator
        return LiveOrderExecutor(exchange)

    # -------------------------------------------------------------- open

    def open_trade(self, ctx: AlertContext, alert: AlertPayload):
        bot, events = ctx.bot, ctx.events
        symbol = (alert.symbol or bot.symbol or "").upper()
        side = alert.side or normalize_side(bot.default_side) or "Buy"
        order_type = alert.order_type or bot.default_order_type or "Market"
        events.info("Processing OPEN trade signal", {"symbol": symbol, "side": side})

        now = self.clock()
        ok, reason = self.risk.validate_open(bot, now)
        if not ok:
            daily_pnl = self.risk.daily_realized_pnl(bot, now)
            details = {"dailyLoss": abs(daily_pnl), "limit": bot.daily_loss_limit}
            events.warning("Trade rejected: Daily loss limit exceeded", dict(details, reason=reason))
            return Err(RiskLimitExceeded("Daily loss limit exceeded", details))

        exchange = self._exchange(ctx)
        try:
            lot = exchange.fetch_instrument_info(symbol)
        except ExchangeError as e:
            events.error("Failed to fetch instrument info", {"error": e.message, "symbol": symbol})
            return Err(e)

        sized = self._open_quantity(ctx, alert, exchange, symbol, side, order_type, lot)
        if not sized.ok:
            return sized
        quantity, reference_price, stop_loss = sized.value
        if not reference_price:
            reference_price = exchange.fetch_last_price(symbol)

        quantity, reduced = self.risk.cap_position(bot, quantity, reference_price, lot)
        if reduced:
            events.warning("Position size reduced to respect maximum allowed", {
                "limit": bot.max_position_size, "adjusted_quantity": quantity, "price": reference_price,
            })
        if quantity < lot.min_qty:
            e = SizingError("Quantity below instrument minimum after applying max position size",
                            {"quantity": quantity, "minQty": lot.min_qty})
            events.error("Position size too small to trade", e.details)
            return Err(e)

        if stop_loss is None and alert.stop_loss is None:
            stop_loss = price_from_percent(reference_price, bot.default_stop_loss, side, favorable=False)
        take_profit = alert.take_profit
        if take_profit is None:
            take_profit = price_from_percent(reference_price, bot.default_take_profit, side, favorable=True)

        order = OrderRequest(
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            # Market orders carry the reference price for simulated fills and fill-price fallback
            price=alert.price if order_type == "Limit" else (alert.price or reference_price),
            stop_loss=stop_loss,
            take_profit=take_profit,
            leverage=bot.leverage,
        )
        events.info("Order parameters prepared", {
            "symbol": symbol, "side": side, "orderType": order_type, "quantity": quantity,
            "price": order.price, "stopLoss": stop_loss, "takeProfit": take_profit, "testMode": bool(bot.test_mode),
        })

        try:
            result = self._executor(ctx, exchange).open(order)
        except ExchangeError as e:
            events.error("Failed to execute order", {"error": e.message, "symbol": symbol, "side": side})
            return Err(ExchangeError(f"Failed to execute order: {e.message}", ret_code=e.ret_code))
        events.info("Simulated test order executed" if bot.test_mode else "Order executed successfully", {
            "orderId": result.order_id, "status": result.status, "price": result.executed_price, "fees": result.fees,
        })

        trade_values = {
            "user_id": ctx.webhook.user_id,
            "bot_id": bot.id,
            "source": "alert",
            "state": "open",
            "status": result.status,
            "symbol": symbol,
            "side": side,
            "order_type": order_type,
            "quantity": result.qty,
            "price": alert.price or result.executed_price,
            "order_id": result.order_id,
            "stop_loss": stop_loss,
            "take_profit": take_profit,
            "leverage": bot.leverage,
            "test_mode": bool(bot.test_mode),
            "risk_amount": bot.risk_per_trade or 0,
            "fees": result.fees,
            "created_at": now,
        }
        if bot.test_mode:
            trade_values["realized_pnl"] = result.simulated_pnl
        elif result.executed_price:
            trade_values["avg_entry_price"] = result.executed_price

        try:
            trade = self.ledger.create_trade(trade_values)
        except PersistenceError as e:
            return self._persistence_failure(ctx, e, result, live=not bot.test_mode)

        pnl = result.simulated_pnl if bot.test_mode else None
        try:
            self.ledger.update_bot_stats(bot.id, trade_count_delta=1, pnl_delta=pnl or 0.0, last_trade_at=now)
        except PersistenceError as e:
            events.error("Failed to update bot statistics", {"error": e.message}, trade_id=trade.id)

        events.info("Trade processing completed successfully", {
            "order_id": result.order_id, "status": result.status, "risk_amount": bot.risk_per_trade or 0,
        }, trade_id=trade.id)
        return Ok({
            "success": True,
            "tradeId": trade.id,
            "orderId": result.order_id,
            "status": result.status,
            "testMode": bool(bot.test_mode),
            "pnl": pnl,
            "fees": result.fees,
            "riskAmount": bot.risk_per_trade or 0,
        })

    def _open_quantity(self, ctx: AlertContext, alert: AlertPayload, exchange, symbol: str,
                       side: str, order_type: str, lot: LotConstraints):
        """Ok((quantity, reference_price, stop_price)); reference/stop may be None."""
        bot, events = ctx.bot, ctx.events
        reference_price = alert.price
        stop_price = alert.stop_loss

        if bot.position_sizing_enabled and (alert.stop_loss or bot.default_stop_loss):
            if not reference_price:
                reference_price = exchange.fetch_last_price(symbol)
            if not stop_price:
                stop_price = price_from_percent(reference_price, bot.default_stop_loss, side, favorable=False)

            if reference_price and stop_price:
                fee_percentage = bot.limit_fee_percentage if order_type == "Limit" else bot.market_fee_percentage
                try:
                    quantity = calculate_position_size(
                        entry_price=reference_price,
                        stop_loss=stop_price,
                        risk_amount=bot.risk_per_trade,
                        side=side,
                        fee_percentage=fee_percentage or 0,
                        min_qty=lot.min_qty,
                        qty_step=lot.qty_step,
                        max_position_size=bot.max_position_size or 0,
                        decimals=lot.decimals,
                    )
                except SizingError as e:
                    events.error("Position sizing calculation failed", {
                        "error": e.message, "entryPrice": reference_price, "stopLoss": stop_price,
                    })
                    return Err(e)
                events.info("Position size calculated based on risk parameters", {
                    "entryPrice": reference_price, "stopLoss": stop_price, "riskAmount": bot.risk_per_trade,
                    "side": side, "feePercentage": fee_percentage, "minQty": lot.min_qty,
                    "qtyStep": lot.qty_step, "calculatedQuantity": quantity,
                })
                return Ok((quantity, reference_price, stop_price))

            events.info("Missing price data for position sizing, using default quantity adjustment")

        raw_qty = alert.quantity if alert.quantity is not None else (bot.default_quantity or 0)
        quantity = round_to_lot(raw_qty, lot)
        return Ok((quantity, reference_price, stop_price))

    # ------------------------------------------------------------- close

    def close_trade(self, ctx: AlertContext, alert: AlertPayload):
        bot, events = ctx.bot, ctx.events
        symbol = (alert.symbol or bot.symbol or "").upper()
        events.info("Processing CLOSE trade signal", {"symbol": symbol})

        row = self.ledger.find_latest_open_trade(bot.id, symbol)
        if row is None:
            events.error("No matching open trade found to close", {"symbol": symbol})
            return Err(NoOpenTrade("No matching open trade found to close"))
        trade = TradeSnapshot.of(row)
        events = events.bind(trade_id=trade.id)

        close_reason = determine_close_reason(trade, alert)
        close_quantity = trade.quantity
        is_partial = False
        exchange = None
        decimals = 8

        if alert.close_quantity is not None:
            if alert.close_quantity <= 0:
                return self._reject(events, ValidationError("close_quantity must be positive"))
            if alert.close_quantity > trade.quantity:
                return self._reject(events, ValidationError(
                    "close_quantity exceeds open quantity",
                    {"closeQuantity": alert.close_quantity, "openQuantity": trade.quantity},
                ))
            if alert.close_quantity < trade.quantity:
                is_partial = True
                close_reason = "partial_close"
                exchange = self._exchange(ctx)
                try:
                    lot = exchange.fetch_instrument_info(symbol)
                except ExchangeError as e:
                    events.error("Failed to fetch instrument info", {"error": e.message, "symbol": symbol})
                    return Err(e)
                decimals = lot.decimals
                close_quantity = round(floor_to_step(alert.close_quantity, lot.qty_step), decimals)
                remaining = round(trade.quantity - close_quantity, decimals)
                if close_quantity <= 0:
                    return self._reject(events, ValidationError(
                        "close_quantity is smaller than the instrument's quantity step",
                        {"closeQuantity": alert.close_quantity, "qtyStep": lot.qty_step},
                    ))
                if 0 < remaining < lot.min_qty:
                    return self._reject(events, ValidationError(
                        "Remaining quantity would fall below the instrument minimum",
                        {"remaining": remaining, "minQty": lot.min_qty},
                    ))

        realized_pnl = alert.realized_pnl
        close_result = None
        order_required = close_reason in ORDER_REQUIRED_REASONS or (not trade.stop_loss and not trade.take_profit)

        if order_required:
            order = OrderRequest(
                symbol=symbol,
                side=opposite_side(trade.side),
                order_type="Market",
                quantity=min(close_quantity, trade.quantity),
            )
            try:
                executor = self._executor(ctx, exchange or self._exchange(ctx))
                close_result = executor.close(order, entry_price=trade.price or 0.0,
                                              entry_side=trade.side, exit_price=alert.price)
            except ExchangeError as e:
                events.error("Failed to execute close order", {"error": e.message, "symbol": symbol})
                return Err(ExchangeError(f"Failed to execute close order: {e.message}", ret_code=e.ret_code))
            if close_result.simulated_pnl is not None:
                realized_pnl = close_result.simulated_pnl
            events.info("Simulated close order executed" if bot.test_mode else "Close order executed", {
                "orderId": close_result.order_id, "status": close_result.status,
                "price": close_result.executed_price, "pnl": realized_pnl,
            })
        else:
            events.info(f"Trade closed by {close_reason}", {"reason": close_reason, "pnl": realized_pnl})

        exit_price = close_result.executed_price if close_result else alert.price
        now = self.clock()

        if is_partial:
            values = {
                "quantity": round(trade.quantity - close_quantity, decimals),
                "exit_price": exit_price,
                "risk_amount": bot.risk_per_trade or 0,
            }
            # Live partial closes without a reported pnl leave the total to reconciliation
            if realized_pnl is not None:
                values["realized_pnl"] = (trade.realized_pnl or 0.0) + realized_pnl
        else:
            metrics = calculate_trade_metrics(
                symbol=trade.symbol,
                side=trade.side,
                planned_entry=trade.price or 0.0,
                actual_entry=trade.avg_entry_price or trade.price or 0.0,
                stop_loss=trade.stop_loss or 0.0,
                take_profit=trade.take_profit or 0.0,
                max_risk=bot.risk_per_trade or self.settings.DEFAULT_MAX_RISK,
                finished_dollar=realized_pnl,
                open_fee=trade.fees or 0.0,
                close_fee=close_result.fees if close_result else 0.0,
                open_time=trade.created_at,
                close_time=now,
            )
            events.info("Trade metrics calculated", {"metrics": metrics})
            values = {
                "state": "closed",
                "close_reason": close_reason,
                "exit_price": exit_price,
                "risk_amount": bot.risk_per_trade or 0,
                "trade_metrics": metrics,
                "closed_at": now,
            }
            if bot.test_mode and realized_pnl is not None:
                values["realized_pnl"] = realized_pnl

        order_sent = close_result is not None and not bot.test_mode
        try:
            updated = self.ledger.update_trade(trade.id, values, expected_state="open",
                                               expected_quantity=trade.quantity)
        except PersistenceError as e:
            return self._persistence_failure(ctx, e, close_result, live=order_sent, trade_id=trade.id)
        if not updated:
            e = StaleTradeError("Trade was modified by a concurrent request", divergence=order_sent)
            return self._persistence_failure(ctx, e, close_result, live=order_sent, trade_id=trade.id)

        if is_partial:
            events.info("Trade partially closed", {
                "closed_quantity": close_quantity, "remaining_quantity": values["quantity"], "partial_pnl": realized_pnl,
            })

        if bot.test_mode and realized_pnl is not None:
            try:
                self.ledger.update_bot_stats(bot.id, pnl_delta=realized_pnl)
            except PersistenceError as e:
                events.error("Failed to update bot profit/loss", {"error": e.message, "pnl": realized_pnl})

        if not bot.test_mode and not is_partial and self.schedule_reconcile is not None:
            try:
                self.schedule_reconcile(trade.id)
            except Exception as e:
                events.error("Failed to update PnL from exchange", {"error": str(e)})

        return Ok({
            "success": True,
            "message": "Trade partially closed" if is_partial else "Trade closed successfully",
            "tradeId": trade.id,
            "orderId": close_result.order_id if close_result else None,
            "status": close_result.status if close_result else close_reason,
            "realizedPnl": realized_pnl,
            "closeReason": close_reason,
            "isPartialClose": is_partial,
            "testMode": bool(bot.test_mode),
        })

    # ----------------------------------------------------------- helpers

    def _reject(self, events: EventEmitter, error: AlertTraderError):
        events.error(error.message, error.details)
        return Err(error)

    def _persistence_failure(self, ctx: AlertContext, error: PersistenceError, result, live: bool,
                             trade_id: Optional[int] = None):
        extra = {"orderId": result.order_id} if result is not None else {}
        if live:
            error.divergence = True
            ctx.events.critical("Order executed at exchange but ledger write failed", dict(
                extra, error=error.message, kind=error.kind), trade_id=trade_id)
        else:
            ctx.events.error("Failed to save trade to database", {"error": error.message}, trade_id=trade_id)
        return Err(error, extra)
