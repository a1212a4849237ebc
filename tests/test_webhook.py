from datetime import timedelta

from fastapi.testclient import TestClient

from alert_trader.main import app
from alert_trader.models.trade import Trade
from alert_trader.routes import webhook

from conftest import NOW, ExchangeFactory, FakeExchange, add_api_key, add_bot, add_trade, add_webhook

client = TestClient(app)


def use_db(db):
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[webhook.get_db] = override_get_db


def test_root():
    resp = client.get("/")
    assert resp.status_code == 200
    assert "running" in resp.json()["message"]


def test_alert_opens_test_trade(db, monkeypatch):
    use_db(db)
    add_api_key(db, is_default=True)
    bot = add_bot(db, test_mode=True)
    add_webhook(db, bot, token="tok-route-1", expires_at=NOW + timedelta(days=3650))
    monkeypatch.setattr(webhook, "exchange_factory", ExchangeFactory(FakeExchange()))

    resp = client.post("/alert/tok-route-1", json={"symbol": "BTCUSDT", "side": "Buy", "price": 100, "quantity": 0.01})

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["status"] == "TEST_ORDER"
    assert db.query(Trade).count() == 1

    app.dependency_overrides.clear()


def test_alert_with_expired_token(db):
    use_db(db)
    bot = add_bot(db)
    add_webhook(db, bot, token="tok-old", expires_at=NOW - timedelta(days=3650))

    resp = client.post("/alert/tok-old", json={"side": "Buy"})

    assert resp.status_code == 404
    assert resp.json()["success"] is False

    app.dependency_overrides.clear()


def test_alert_with_malformed_json(db):
    use_db(db)
    bot = add_bot(db)
    add_webhook(db, bot, token="tok-json", expires_at=NOW + timedelta(days=3650))

    resp = client.post("/alert/tok-json", content=b"{not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation_error"

    app.dependency_overrides.clear()


def test_live_close_schedules_reconciliation(db, monkeypatch):
    use_db(db)
    add_api_key(db, is_default=True)
    bot = add_bot(db, test_mode=False)
    add_webhook(db, bot, token="tok-close", expires_at=NOW + timedelta(days=3650))
    trade = add_trade(db, bot, quantity=1.0)
    monkeypatch.setattr(webhook, "exchange_factory", ExchangeFactory(FakeExchange(fill_price=101.0)))
    reconciled = []
    monkeypatch.setattr(webhook, "reconcile_in_background", reconciled.append)

    resp = client.post("/alert/tok-close", json={"state": "close"})

    assert resp.status_code == 200
    assert resp.json()["tradeId"] == trade.id
    assert reconciled == [trade.id]

    app.dependency_overrides.clear()


def test_manual_trade_endpoint(db, monkeypatch):
    use_db(db)
    add_api_key(db, is_default=True)
    monkeypatch.setattr(webhook, "exchange_factory", ExchangeFactory(FakeExchange()))

    resp = client.post("/trade/execute", json={
        "user_id": "user-1", "symbol": "ETHUSDT", "side": "Sell", "entry_price": 2000, "quantity": 0.0567,
    })

    assert resp.status_code == 200
    assert resp.json()["adjustedQuantity"] == 0.056
    assert db.query(Trade).one().source == "manual"

    app.dependency_overrides.clear()


def test_manual_trade_validation(db):
    use_db(db)

    resp = client.post("/trade/execute", json={"user_id": "user-1", "symbol": "ETHUSDT", "side": "Sell",
                                               "entry_price": -1, "quantity": 1})

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["kind"] == "validation_error"
    assert body["errors"][0]["loc"] == ["body", "entry_price"]

    app.dependency_overrides.clear()


def test_reconcile_endpoint(db):
    use_db(db)
    bot = add_bot(db, test_mode=True)
    trade = add_trade(db, bot, state="closed", realized_pnl=1.5)

    resp = client.post(f"/trade/{trade.id}/reconcile")

    assert resp.status_code == 200
    assert resp.json()["realized_pnl"] == 1.5

    missing = client.post("/trade/424242/reconcile")
    assert missing.status_code == 404

    app.dependency_overrides.clear()


def test_manual_close_endpoint(db):
    use_db(db)
    trade = add_trade(db, source="manual", test_mode=True, quantity=1.0, price=100.0)

    resp = client.post(f"/trade/{trade.id}/close", json={"exit_price": 105, "notes": "done"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["test_mode"] is True
    assert body["exit_price"] == 105.0
    db.refresh(trade)
    assert trade.state == "closed"
    assert trade.close_reason == "manual"

    resp = client.post(f"/trade/{trade.id}/close", json={})
    assert resp.json()["message"] == "Trade is already closed"

    app.dependency_overrides.clear()
