import pytest
from pydantic import ValidationError as SchemaError

from alert_trader.models.trade import Trade
from alert_trader.schemas.trade import ManualCloseRequest, ManualTradeRequest
from alert_trader.services.events import audit_emitter
from alert_trader.services.exchange import ClosedPnlRecord, to_epoch_ms
from alert_trader.services.manual_trade import ManualTradeService

from conftest import NOW, ExchangeFactory, FakeExchange, add_api_key, add_bot, add_trade, log_messages


def request(**kw):
    values = dict(user_id="user-1", symbol="BTCUSDTPERP", side="buy", entry_price=100.0, quantity=0.01234,
                  stop_loss=95.0, take_profit=110.0, max_risk=25.0, leverage=3, notes="breakout")
    values.update(kw)
    return ManualTradeRequest(**values)


def make_service(ledger, exchange, simulator):
    factory = ExchangeFactory(exchange)
    return ManualTradeService(ledger, events=audit_emitter(ledger), exchange_factory=factory,
                              simulator=simulator, clock=lambda: NOW), factory


def test_request_normalization():
    req = request()
    assert req.symbol == "BTCUSDT"
    assert req.side == "Buy"
    assert req.order_type == "Market"
    with pytest.raises(SchemaError):
        request(quantity=0)


def test_live_manual_trade_rounds_to_lot(db, ledger, simulator):
    key = add_api_key(db, is_default=True)
    exchange = FakeExchange(fill_price=100.3)
    service, _ = make_service(ledger, exchange, simulator)

    result = service.execute(request())

    assert result.ok
    assert result.value["adjustedQuantity"] == 0.012
    order = exchange.orders[0]
    assert order.quantity == 0.012
    assert order.leverage == 3

    trade = db.query(Trade).one()
    assert trade.source == "manual"
    assert trade.bot_id is None
    assert trade.risk_amount == 25.0
    assert trade.avg_entry_price == 100.3
    assert trade.notes == "breakout"
    assert trade.api_key_id == key.id


def test_test_mode_manual_trade_is_simulated(db, ledger, simulator):
    add_api_key(db, is_default=True)
    exchange = FakeExchange()
    service, _ = make_service(ledger, exchange, simulator)

    result = service.execute(request(test_mode=True))

    assert result.ok
    assert result.value["status"] == "TEST_ORDER"
    assert result.value["adjustedQuantity"] == 0.01234
    assert exchange.orders == []


def test_quantity_below_minimum_is_raised_to_minimum(db, ledger, simulator):
    add_api_key(db, is_default=True)
    exchange = FakeExchange()
    service, _ = make_service(ledger, exchange, simulator)

    result = service.execute(request(quantity=0.0004))

    assert result.ok
    assert result.value["adjustedQuantity"] == 0.001
    assert exchange.orders[0].quantity == 0.001
    assert "Quantity adjusted to instrument lot size" in log_messages(db)


def test_oldest_key_is_the_last_resort(db, ledger, simulator):
    from datetime import timedelta

    add_api_key(db, name="newer", created_at=NOW)
    oldest = add_api_key(db, name="oldest", created_at=NOW - timedelta(days=365))
    service, factory = make_service(ledger, FakeExchange(), simulator)

    assert service.execute(request(api_key_id=9999)).ok
    assert factory.calls == [(oldest.id, False)]


def test_exchange_rejection(db, ledger, simulator):
    add_api_key(db, is_default=True)
    service, _ = make_service(ledger, FakeExchange(fail_order=True), simulator)

    result = service.execute(request())

    assert result.status_code == 500
    assert db.query(Trade).count() == 0


def closed_pnl(order_id, pnl):
    return ClosedPnlRecord.from_api({
        "orderId": order_id, "symbol": "BTCUSDT", "side": "Sell", "qty": "0.012", "closedPnl": str(pnl),
        "avgEntryPrice": "100.3", "avgExitPrice": "104", "cumExitValue": "1.248",
        "createdTime": str(to_epoch_ms(NOW)),
    })


def test_close_test_mode_trade(db, ledger, simulator):
    add_api_key(db, is_default=True)
    exchange = FakeExchange()
    service, _ = make_service(ledger, exchange, simulator)
    trade_id = service.execute(request(test_mode=True, quantity=2.0)).value["tradeId"]

    result = service.close(trade_id, ManualCloseRequest(exit_price=110.0, notes="target hit"))

    assert result.ok
    body = result.value
    fees = 110.0 * 2.0 * simulator.fee_rate
    assert body["realized_pnl"] == pytest.approx(20.0 - fees)
    assert exchange.orders == []
    trade = db.get(Trade, trade_id)
    assert trade.state == "closed"
    assert trade.close_reason == "manual"
    assert trade.exit_price == 110.0
    assert trade.realized_pnl == pytest.approx(20.0 - fees)
    assert trade.notes == "target hit"
    assert trade.trade_metrics["maxRisk"] == 25.0


def test_close_live_trade_reconciles(db, ledger, simulator):
    key = add_api_key(db, is_default=True)
    exchange = FakeExchange(fill_price=100.3)
    service, factory = make_service(ledger, exchange, simulator)
    trade_id = service.execute(request()).value["tradeId"]
    exchange.closed_pnl = [closed_pnl("live-1", 4.5)]

    result = service.close(trade_id, ManualCloseRequest())

    assert result.ok
    body = result.value
    assert body["pnl_found"] is True
    assert body["match_type"] == "exact_order_id"
    assert body["realized_pnl"] == 4.5
    assert body["finish_r"] == pytest.approx(4.5 / 25.0)
    close_order = exchange.orders[1]
    assert (close_order.side, close_order.order_type, close_order.quantity) == ("Sell", "Market", 0.012)
    assert set(factory.calls) == {(key.id, False)}
    db.expire_all()
    trade = db.get(Trade, trade_id)
    assert trade.state == "closed"
    assert trade.realized_pnl == 4.5
    assert trade.pnl_details["pnl_match_type"] == "exact_order_id"


def test_close_live_trade_without_pnl_record_stays_closed(db, ledger, simulator):
    add_api_key(db, is_default=True)
    exchange = FakeExchange(fill_price=100.3)
    service, _ = make_service(ledger, exchange, simulator)
    trade_id = service.execute(request()).value["tradeId"]

    result = service.close(trade_id, ManualCloseRequest())

    assert result.ok
    assert result.value["pnl_found"] is False
    assert result.value["message"] == "Trade marked as closed, but no matching PnL data found"
    db.expire_all()
    trade = db.get(Trade, trade_id)
    assert trade.state == "closed"
    assert trade.realized_pnl is None


def test_close_without_sending_an_order(db, ledger, simulator):
    add_api_key(db, is_default=True)
    exchange = FakeExchange(fill_price=100.3)
    service, _ = make_service(ledger, exchange, simulator)
    trade_id = service.execute(request()).value["tradeId"]
    exchange.closed_pnl = [closed_pnl("live-1", -2.0)]

    result = service.close(trade_id, ManualCloseRequest(send_order=False, exit_price=98.0))

    assert result.ok
    assert result.value["pnl_found"] is True
    assert len(exchange.orders) == 1
    assert db.get(Trade, trade_id).exit_price == 98.0


def test_close_already_closed_trade(db, ledger, simulator):
    trade = add_trade(db, source="manual", state="closed")
    service, _ = make_service(ledger, FakeExchange(), simulator)

    result = service.close(trade.id, ManualCloseRequest())

    assert result.ok
    assert result.value == {"success": False, "message": "Trade is already closed", "trade_id": trade.id}
    assert "Attempted to update an already closed trade" in log_messages(db)


def test_close_rejects_alert_trades_and_unknown_ids(db, ledger, simulator):
    bot = add_bot(db)
    trade = add_trade(db, bot)
    service, _ = make_service(ledger, FakeExchange(), simulator)

    assert service.close(trade.id, ManualCloseRequest()).status_code == 400
    assert service.close(9999, ManualCloseRequest()).status_code == 404
    assert service.close(trade.id, ManualCloseRequest(user_id="someone-else")).status_code == 404
