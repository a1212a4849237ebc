"""
Ledger: the persistence capability the workflows depend on.

Workflows receive a `Ledger` explicitly instead of reaching for a database
session. `SqlLedger` is the SQLAlchemy implementation; each write is its own
single-row transaction.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from alert_trader.exceptions import PersistenceError
from alert_trader.models.api_key import ApiKey
from alert_trader.models.bot import Bot
from alert_trader.models.log_entry import LogEntry
from alert_trader.models.trade import Trade
from alert_trader.models.webhook import Webhook

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeSnapshot:
    """Values of a trade row as read at one moment.

    Commits expire ORM rows; read-modify-write workflows compute from and
    guard on a snapshot, never on the live row.
    """
    id: int
    user_id: Optional[str]
    bot_id: Optional[int]
    api_key_id: Optional[int]
    source: Optional[str]
    state: str
    symbol: str
    side: str
    quantity: float
    price: Optional[float]
    avg_entry_price: Optional[float]
    order_id: Optional[str]
    stop_loss: Optional[float]
    take_profit: Optional[float]
    realized_pnl: Optional[float]
    fees: Optional[float]
    risk_amount: Optional[float]
    test_mode: bool
    notes: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def of(cls, trade: Trade) -> "TradeSnapshot":
        return cls(**{f.name: getattr(trade, f.name) for f in fields(cls)})


class Ledger(ABC):
    @abstractmethod
    def get_webhook_by_token(self, token: str) -> Optional[Webhook]: ...

    @abstractmethod
    def get_bot(self, bot_id: int) -> Optional[Bot]: ...

    @abstractmethod
    def get_api_key(self, key_id: int, user_id: str) -> Optional[ApiKey]: ...

    @abstractmethod
    def get_default_api_key(self, user_id: str) -> Optional[ApiKey]: ...

    @abstractmethod
    def get_oldest_api_key(self, user_id: str) -> Optional[ApiKey]: ...

    @abstractmethod
    def sum_realized_pnl_since(self, bot_id: int, since: datetime) -> float: ...

    @abstractmethod
    def create_trade(self, values: Dict[str, Any]) -> Trade: ...

    @abstractmethod
    def get_trade(self, trade_id: int) -> Optional[Trade]: ...

    @abstractmethod
    def find_latest_open_trade(self, bot_id: int, symbol: str) -> Optional[Trade]: ...

    @abstractmethod
    def update_trade(self, trade_id: int, values: Dict[str, Any],
                     expected_state: Optional[str] = None,
                     expected_quantity: Optional[float] = None,
                     only_if_unreconciled: bool = False) -> bool:
        """Apply `values`; when expectations are given, only if the row still matches them.

        Returns False when the conditional update matched no row.
        """

    @abstractmethod
    def update_bot_stats(self, bot_id: int, trade_count_delta: int = 0, pnl_delta: float = 0.0,
                         last_trade_at: Optional[datetime] = None) -> None: ...

    @abstractmethod
    def write_log(self, level: str, message: str, details: Optional[Dict[str, Any]] = None,
                  **refs) -> None: ...

    @abstractmethod
    def delete_logs_before(self, threshold: datetime) -> int: ...


class SqlLedger(Ledger):
    def __init__(self, db: Session):
        self.db = db

    def _commit(self, what: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("DB commit failed: %s", what)
            raise PersistenceError(f"Failed to {what}: {e}") from e

    # ----------------------------------------------------------------- reads

    def get_webhook_by_token(self, token: str) -> Optional[Webhook]:
        return self.db.query(Webhook).filter(Webhook.webhook_token == token).first()

    def get_bot(self, bot_id: int) -> Optional[Bot]:
        return self.db.query(Bot).filter(Bot.id == bot_id).first()

    def get_api_key(self, key_id: int, user_id: str) -> Optional[ApiKey]:
        return self.db.query(ApiKey).filter(ApiKey.id == key_id, ApiKey.user_id == user_id).first()

    def get_default_api_key(self, user_id: str) -> Optional[ApiKey]:
        return self.db.query(ApiKey).filter(
            ApiKey.user_id == user_id,
            ApiKey.is_default.is_(True),
        ).order_by(ApiKey.created_at, ApiKey.id).first()

    def get_oldest_api_key(self, user_id: str) -> Optional[ApiKey]:
        return self.db.query(ApiKey).filter(ApiKey.user_id == user_id).order_by(
            ApiKey.created_at, ApiKey.id).first()

    def sum_realized_pnl_since(self, bot_id: int, since: datetime) -> float:
        total = self.db.query(func.coalesce(func.sum(Trade.realized_pnl), 0.0)).filter(
            Trade.bot_id == bot_id,
            Trade.created_at >= since,
        ).scalar()
        return float(total or 0.0)

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        return self.db.query(Trade).filter(Trade.id == trade_id).first()

    def find_latest_open_trade(self, bot_id: int, symbol: str) -> Optional[Trade]:
        return self.db.query(Trade).filter(
            Trade.bot_id == bot_id,
            Trade.symbol == symbol,
            Trade.state == "open",
        ).order_by(Trade.created_at.desc(), Trade.id.desc()).first()

    # ---------------------------------------------------------------- writes

    def create_trade(self, values: Dict[str, Any]) -> Trade:
        trade = Trade(**values)
        self.db.add(trade)
        self._commit("save trade")
        self.db.refresh(trade)
        logger.info("Trade saved (id=%s) %s %s qty=%s", trade.id, trade.side, trade.symbol, trade.quantity)
        return trade

    def update_trade(self, trade_id: int, values: Dict[str, Any],
                     expected_state: Optional[str] = None,
                     expected_quantity: Optional[float] = None,
                     only_if_unreconciled: bool = False) -> bool:
        query = self.db.query(Trade).filter(Trade.id == trade_id)
        if expected_state is not None:
            query = query.filter(Trade.state == expected_state)
        if expected_quantity is not None:
            query = query.filter(Trade.quantity == expected_quantity)
        if only_if_unreconciled:
            query = query.filter(Trade.pnl_details.is_(None))
        values = dict(values, updated_at=datetime.utcnow())
        try:
            matched = query.update(values, synchronize_session=False)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to update trade {trade_id}: {e}") from e
        self._commit(f"update trade {trade_id}")
        return matched == 1

    def update_bot_stats(self, bot_id: int, trade_count_delta: int = 0, pnl_delta: float = 0.0,
                         last_trade_at: Optional[datetime] = None) -> None:
        values = {
            Bot.trade_count: func.coalesce(Bot.trade_count, 0) + trade_count_delta,
            Bot.profit_loss: func.coalesce(Bot.profit_loss, 0.0) + (pnl_delta or 0.0),
        }
        if last_trade_at is not None:
            values[Bot.last_trade_at] = last_trade_at
        try:
            self.db.query(Bot).filter(Bot.id == bot_id).update(values, synchronize_session=False)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to update bot {bot_id}: {e}") from e
        self._commit(f"update bot {bot_id}")

    def write_log(self, level: str, message: str, details: Optional[Dict[str, Any]] = None,
                  **refs) -> None:
        self.db.add(LogEntry(level=level, message=message, details=details, **refs))
        self._commit("write audit log")

    def delete_logs_before(self, threshold: datetime) -> int:
        try:
            deleted = self.db.query(LogEntry).filter(LogEntry.created_at < threshold).delete(
                synchronize_session=False)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to delete old logs: {e}") from e
        self._commit("delete old logs")
        return deleted
