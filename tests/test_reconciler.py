from datetime import timedelta

from alert_trader.exceptions import ReconciliationFailed
from alert_trader.services.events import EventEmitter
from alert_trader.services.exchange import ClosedPnlRecord, to_epoch_ms
from alert_trader.services.reconciler import PnlReconciler, find_best_matching_pnl

from conftest import NOW, ExchangeFactory, FakeExchange, add_api_key, add_bot, add_trade


class T:
    def __init__(self, **kw):
        self.order_id = kw.get("order_id")
        self.symbol = kw.get("symbol", "BTCUSDT")
        self.side = kw.get("side", "Buy")
        self.quantity = kw.get("quantity", 1.0)
        self.created_at = kw.get("created_at", NOW)


def rec(order_id, side="Sell", qty=1.0, minutes=0, symbol="BTCUSDT", pnl=1.0):
    return ClosedPnlRecord(order_id=order_id, symbol=symbol, side=side, qty=qty, closed_pnl=pnl,
                           avg_entry_price=100.0, avg_exit_price=101.0, cum_entry_value=100.0,
                           cum_exit_value=101.0,
                           created_time=to_epoch_ms(NOW + timedelta(minutes=minutes)))


def test_exact_order_id_wins_regardless_of_position():
    records = [rec("A", minutes=1), rec("B", minutes=2), rec("X123", side="Buy", qty=7, minutes=500)]
    for ordering in (records, list(reversed(records))):
        match, kind = find_best_matching_pnl(T(order_id="X123"), ordering)
        assert match.order_id == "X123"
        assert kind == "exact_order_id"


def test_quantity_match_beats_nearer_time_match():
    records = [rec("near", qty=3.0, minutes=1), rec("qty", qty=1.005, minutes=90)]
    match, kind = find_best_matching_pnl(T(), records)
    assert (match.order_id, kind) == ("qty", "quantity_time_match")


def test_quantity_tolerance_is_strict():
    match, kind = find_best_matching_pnl(T(), [rec("edge", qty=1.01, minutes=1)])
    assert kind == "time_match"


def test_time_match_picks_nearest_closing_side():
    records = [rec("far", qty=5, minutes=300), rec("near", qty=5, minutes=-10), rec("buy", side="Buy", minutes=0)]
    match, kind = find_best_matching_pnl(T(), records)
    assert (match.order_id, kind) == ("near", "time_match")


def test_same_side_fallback():
    match, kind = find_best_matching_pnl(T(), [rec("s", side="Buy", qty=9)])
    assert (match.order_id, kind) == ("s", "same_side_time_match")


def test_no_match_reasons():
    assert find_best_matching_pnl(T(), []) == (None, "no_symbol_match")
    assert find_best_matching_pnl(T(), [rec("e", symbol="ETHUSDT")]) == (None, "no_symbol_match")


def test_ties_keep_exchange_order():
    records = [rec("first", minutes=5), rec("second", minutes=-5)]
    for _ in range(3):
        match, _kind = find_best_matching_pnl(T(quantity=9.0), records)
        assert match.order_id == "first"


def make_reconciler(ledger, exchange):
    return PnlReconciler(ledger, ExchangeFactory(exchange), EventEmitter(), clock=lambda: NOW)


def live_closed_trade(db, **kw):
    add_api_key(db, is_default=True)
    bot = add_bot(db, test_mode=False, risk_per_trade=10.0)
    values = dict(state="closed", closed_at=NOW, stop_loss=95.0, take_profit=110.0, fees=0.05)
    values.update(kw)
    return bot, add_trade(db, bot, **values)


def test_reconcile_applies_matched_pnl(db, ledger):
    bot, trade = live_closed_trade(db, order_id="ord-1")
    exchange = FakeExchange(closed_pnl=[ClosedPnlRecord.from_api({
        "orderId": "ord-1", "symbol": "BTCUSDT", "side": "Sell", "qty": "0.01", "closedPnl": "-4.2",
        "avgEntryPrice": "100.5", "avgExitPrice": "96", "cumExitValue": "100",
        "createdTime": str(to_epoch_ms(NOW)),
    })])

    result = make_reconciler(ledger, exchange).reconcile(trade.id)

    assert result.ok
    assert result.value["match_type"] == "exact_order_id"
    db.refresh(trade)
    db.refresh(bot)
    assert trade.realized_pnl == -4.2
    assert trade.avg_entry_price == 100.5
    assert abs(trade.fees - 0.06) < 1e-9
    assert trade.pnl_details["pnl_match_type"] == "exact_order_id"
    assert trade.trade_metrics["slippage"] == 0.5
    assert bot.profit_loss == -4.2


def test_reconcile_is_idempotent(db, ledger):
    bot, trade = live_closed_trade(db, realized_pnl=3.0, pnl_details={"orderId": "ord-1", "pnl_match_type": "exact_order_id"})
    exchange = FakeExchange()

    result = make_reconciler(ledger, exchange).reconcile(trade.id)

    assert result.ok
    assert result.value["realized_pnl"] == 3.0
    assert exchange.pnl_calls == 0
    db.refresh(bot)
    assert bot.profit_loss == 0.0


def test_second_reconcile_does_not_double_count(db, ledger):
    bot, trade = live_closed_trade(db)
    exchange = FakeExchange(closed_pnl=[rec("ord-1", qty=0.01, pnl=2.0)])
    reconciler = make_reconciler(ledger, exchange)

    assert reconciler.reconcile(trade.id).ok
    assert reconciler.reconcile(trade.id).ok

    db.refresh(bot)
    assert bot.profit_loss == 2.0
    assert exchange.pnl_calls == 1


def test_test_mode_trade_uses_simulated_pnl(db, ledger):
    bot = add_bot(db, test_mode=True)
    trade = add_trade(db, bot, state="closed", realized_pnl=1.25)
    exchange = FakeExchange()

    result = make_reconciler(ledger, exchange).reconcile(trade.id)

    assert result.ok and result.value["test_mode"] is True
    assert exchange.pnl_calls == 0


def test_unknown_trade_is_not_found(ledger):
    result = make_reconciler(ledger, FakeExchange()).reconcile(999)
    assert result.status_code == 404


def test_open_trade_cannot_be_reconciled(db, ledger):
    bot, trade = live_closed_trade(db, state="open")
    result = make_reconciler(ledger, FakeExchange()).reconcile(trade.id)
    assert result.status_code == 400


def test_no_match_is_a_soft_outcome(db, ledger):
    bot, trade = live_closed_trade(db)
    result = make_reconciler(ledger, FakeExchange(closed_pnl=[rec("x", symbol="ETHUSDT")])).reconcile(trade.id)

    assert not result.ok
    assert result.status_code == 200
    assert result.body["kind"] == "reconciliation_mismatch"
    assert result.body["trade_id"] == trade.id
    db.refresh(trade)
    assert trade.realized_pnl is None


def test_fetch_failure_is_reported(db, ledger):
    bot, trade = live_closed_trade(db)
    exchange = FakeExchange(fail_pnl=ReconciliationFailed("Failed after 3 attempts", attempts=3))

    result = make_reconciler(ledger, exchange).reconcile(trade.id)

    assert result.status_code == 502
    assert result.body["kind"] == "reconciliation_failed"


def test_missing_credentials(db, ledger):
    bot = add_bot(db, test_mode=False)
    trade = add_trade(db, bot, state="closed")
    result = make_reconciler(ledger, FakeExchange()).reconcile(trade.id)
    assert result.status_code == 400
