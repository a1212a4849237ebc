import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from alert_trader.database import Base
from alert_trader.models.api_key import ApiKey
from alert_trader.models.bot import Bot
from alert_trader.models.log_entry import LogEntry
from alert_trader.models.trade import Trade
from alert_trader.models.webhook import Webhook
from alert_trader.exceptions import ExchangeError
from alert_trader.services.exchange import LotConstraints, OrderResult
from alert_trader.services.ledger import SqlLedger
from alert_trader.services.order_executor import SimulatedOrderExecutor

NOW = datetime(2025, 6, 2, 12, 0, 0)


@pytest.fixture
def db():
    # One shared in-memory connection so worker threads see the same tables
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def ledger(db):
    return SqlLedger(db)


def add_api_key(db, user_id="user-1", **kw):
    values = dict(user_id=user_id, name="main", api_key="KEY123456", api_secret="SECRET",
                  is_default=False, created_at=NOW - timedelta(days=30))
    values.update(kw)
    key = ApiKey(**values)
    db.add(key)
    db.commit()
    return key


def add_bot(db, user_id="user-1", **kw):
    values = dict(user_id=user_id, name="BTC bot", symbol="BTCUSDT", default_quantity=0.01,
                  default_order_type="Market", test_mode=True, risk_per_trade=10.0,
                  market_fee_percentage=0.075, limit_fee_percentage=0.02,
                  trade_count=0, profit_loss=0.0)
    values.update(kw)
    bot = Bot(**values)
    db.add(bot)
    db.commit()
    return bot


def add_webhook(db, bot, token="tok-abcdef123", expires_at=None):
    hook = Webhook(webhook_token=token, user_id=bot.user_id, bot_id=bot.id,
                   expires_at=expires_at or NOW + timedelta(days=30))
    db.add(hook)
    db.commit()
    return hook


def add_trade(db, bot=None, **kw):
    values = dict(user_id=bot.user_id if bot else "user-1", bot_id=bot.id if bot else None,
                  source="alert", state="open", status="Filled", symbol="BTCUSDT", side="Buy",
                  order_type="Market", quantity=0.01, price=100.0, order_id="ord-1",
                  test_mode=bot.test_mode if bot else False, created_at=NOW - timedelta(hours=2))
    values.update(kw)
    trade = Trade(**values)
    db.add(trade)
    db.commit()
    return trade


def log_messages(db):
    return [entry.message for entry in db.query(LogEntry).order_by(LogEntry.id).all()]


class FakeExchange:
    """In-memory stand-in for ExchangeClient; records every order it is given."""

    def __init__(self, lot=None, last_price=None, fill_price=None, fees=0.0,
                 fail_order=False, closed_pnl=None, fail_pnl=None):
        self.lot = lot or LotConstraints(min_qty=0.001, qty_step=0.001, decimals=3)
        self.last_price = last_price
        self.fill_price = fill_price
        self.fees = fees
        self.fail_order = fail_order
        self.closed_pnl = closed_pnl or []
        self.fail_pnl = fail_pnl
        self.orders = []
        self.pnl_calls = 0

    def fetch_instrument_info(self, symbol):
        return self.lot

    def fetch_last_price(self, symbol):
        return self.last_price

    def create_order(self, order):
        self.orders.append(order)
        if self.fail_order:
            raise ExchangeError("Exchange API error 10001: params error", ret_code=10001)
        return OrderResult(
            order_id=f"live-{len(self.orders)}",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            executed_price=self.fill_price or order.price or 0.0,
            fees=self.fees,
            status="Filled",
        )

    def fetch_closed_pnl(self, symbol, opened_at):
        self.pnl_calls += 1
        if self.fail_pnl is not None:
            raise self.fail_pnl
        return self.closed_pnl


class ExchangeFactory:
    """Callable passed as `exchange_factory`; remembers which key/network was asked for."""

    def __init__(self, exchange):
        self.exchange = exchange
        self.calls = []

    def __call__(self, api_key, testnet=False):
        self.calls.append((api_key.id if api_key is not None else None, testnet))
        return self.exchange


@pytest.fixture
def simulator():
    return SimulatedOrderExecutor(rng=random.Random(7), clock=lambda: 1717329600.0)
