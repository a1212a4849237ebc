"""
PnL reconciliation against the exchange's closed-PnL history.

The exchange settles positions asynchronously and does not always report the
order id we stored, so a closed trade is matched to a closed-PnL record with a
tiered heuristic, strongest evidence first:

1. exact_order_id        record.orderId == trade.order_id
2. quantity_time_match   same symbol, opposite (closing) side, qty within 1%,
                         nearest to the trade's open time
3. time_match            same symbol, opposite side, nearest in time
4. same_side_time_match  same symbol, same side (venues that report the
                         original side), nearest in time

No match is a soft outcome, not an error.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from alert_trader.config import settings
from alert_trader.exceptions import (
    AlertTraderError,
    ReconciliationMismatch,
    TradeNotFound,
    ValidationError,
)
from alert_trader.services.credentials import resolve_api_key
from alert_trader.services.exchange import ClosedPnlRecord, to_epoch_ms
from alert_trader.services.results import Err, Ok
from alert_trader.services.trade_metrics import calculate_trade_metrics

logger = logging.getLogger(__name__)

QTY_TOLERANCE = 0.01


def opposite_side(side: str) -> str:
    return "Sell" if side == "Buy" else "Buy"


def _nearest_in_time(records: List[ClosedPnlRecord], open_ms: int) -> ClosedPnlRecord:
    # sorted() is stable, so equal distances keep the exchange's order
    return sorted(records, key=lambda r: abs(r.created_time - open_ms))[0]


def find_best_matching_pnl(trade, records: List[ClosedPnlRecord]) -> Tuple[Optional[ClosedPnlRecord], str]:
    """Returns (record, match_type); record is None when nothing matches."""
    if trade.order_id:
        for record in records:
            if record.order_id == trade.order_id:
                return record, "exact_order_id"

    symbol_matches = [r for r in records if r.symbol == trade.symbol]
    if not symbol_matches:
        return None, "no_symbol_match"

    open_ms = to_epoch_ms(trade.created_at) if trade.created_at else 0
    closing_side = opposite_side(trade.side)
    side_matches = [r for r in symbol_matches if r.side == closing_side]

    if side_matches:
        if trade.quantity:
            qty_matches = [
                r for r in side_matches
                if abs(r.qty - trade.quantity) / trade.quantity < QTY_TOLERANCE
            ]
            if qty_matches:
                return _nearest_in_time(qty_matches, open_ms), "quantity_time_match"
        return _nearest_in_time(side_matches, open_ms), "time_match"

    same_side = [r for r in symbol_matches if r.side == trade.side]
    if same_side:
        return _nearest_in_time(same_side, open_ms), "same_side_time_match"

    return None, "no_side_match"


class PnlReconciler:
    def __init__(self, ledger, exchange_factory: Callable, events, settings_obj=None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.ledger = ledger
        self.exchange_factory = exchange_factory
        self.events = events
        self.settings = settings_obj or settings
        self.clock = clock

    def reconcile(self, trade_id: int):
        trade = self.ledger.get_trade(trade_id)
        if trade is None:
            self.events.error("Trade not found for PnL update", {"trade_id": trade_id})
            return Err(TradeNotFound("Trade not found"))

        bot = self.ledger.get_bot(trade.bot_id) if trade.bot_id else None
        events = self.events.bind(trade_id=trade.id, bot_id=trade.bot_id, user_id=trade.user_id)

        if trade.test_mode:
            events.info("Using simulated PnL data for test trade", {"realized_pnl": trade.realized_pnl})
            return Ok({"success": True, "message": "Using simulated PnL data for test trade",
                       "trade_id": trade.id, "realized_pnl": trade.realized_pnl, "test_mode": True})

        if trade.pnl_details is not None:
            events.info("Trade already reconciled, skipping update", {"realized_pnl": trade.realized_pnl})
            return Ok({"success": True, "message": "Trade already has PnL data",
                       "trade_id": trade.id, "realized_pnl": trade.realized_pnl})

        if trade.state != "closed":
            events.warning("Trade is still open, nothing to reconcile", {"state": trade.state})
            return Err(ValidationError("Trade is still open", {"trade_id": trade.id}))

        try:
            api_key = resolve_api_key(self.ledger, trade.user_id,
                                      trade.api_key_id or (bot.api_key_id if bot else None))
            exchange = self.exchange_factory(api_key, False)
            records = exchange.fetch_closed_pnl(trade.symbol, trade.created_at)
        except AlertTraderError as e:
            events.error("Failed to fetch closed PnL from exchange", {"error": e.message})
            return Err(e, {"trade_id": trade.id})

        record, match_type = find_best_matching_pnl(trade, records)
        if record is None:
            events.warning("No matching closed PnL found in exchange response", {
                "order_id": trade.order_id, "symbol": trade.symbol, "side": trade.side,
                "candidates": len(records), "match_type": match_type,
            })
            return Err(ReconciliationMismatch("No matching closed PnL found"), {"trade_id": trade.id})

        logger.info("Matched trade %s to closed PnL %s (%s)", trade.id, record.order_id, match_type)
        return self._apply(trade, bot, record, match_type, events)

    def _apply(self, trade, bot, record: ClosedPnlRecord, match_type: str, events):
        fees = record.cum_exit_value * self.settings.RECONCILE_FEE_RATE
        max_risk = (bot.risk_per_trade if bot else None) or trade.risk_amount or self.settings.DEFAULT_MAX_RISK
        metrics = calculate_trade_metrics(
            symbol=trade.symbol,
            side=trade.side,
            planned_entry=trade.price or 0.0,
            actual_entry=record.avg_entry_price or trade.price or 0.0,
            stop_loss=trade.stop_loss or 0.0,
            take_profit=trade.take_profit or 0.0,
            max_risk=max_risk,
            finished_dollar=record.closed_pnl,
            open_fee=trade.fees or 0.0,
            close_fee=fees,
            open_time=trade.created_at,
            close_time=trade.closed_at or self.clock(),
        )

        updated = self.ledger.update_trade(trade.id, {
            "realized_pnl": record.closed_pnl,
            "avg_entry_price": record.avg_entry_price,
            "avg_exit_price": record.avg_exit_price,
            "fees": fees,
            "risk_amount": max_risk,
            "pnl_details": dict(record.raw, pnl_match_type=match_type),
            "trade_metrics": metrics,
        }, only_if_unreconciled=True)

        if not updated:
            # Another reconcile got there first; report what it stored
            current = self.ledger.get_trade(trade.id)
            return Ok({"success": True, "message": "Trade already has PnL data",
                       "trade_id": trade.id, "realized_pnl": current.realized_pnl if current else None})

        if bot is not None:
            try:
                self.ledger.update_bot_stats(bot.id, pnl_delta=record.closed_pnl)
            except AlertTraderError as e:
                events.error("Failed to update bot profit/loss", {"error": e.message})

        body = {
            "success": True,
            "trade_id": trade.id,
            "realized_pnl": record.closed_pnl,
            "avg_entry_price": record.avg_entry_price,
            "avg_exit_price": record.avg_exit_price,
            "match_type": match_type,
            "risk_amount": max_risk,
        }
        events.info("Updated trade with PnL data from exchange", body)
        return Ok(body)
