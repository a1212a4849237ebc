from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, JSON, Text, ForeignKey
from datetime import datetime
from alert_trader.database import Base

class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=True, index=True)  # null for direct trades
    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=True)  # credentials a direct trade was placed with
    source = Column(String, default="alert")  # alert or manual
    state = Column(String, default="open", index=True)  # open or closed
    status = Column(String)  # exchange order status, TEST_ORDER in test mode
    symbol = Column(String, index=True)
    side = Column(String)
    order_type = Column(String)
    quantity = Column(Float)
    price = Column(Float)  # Requested/alert price, executed price when known
    order_id = Column(String, index=True)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    leverage = Column(Float, nullable=True)
    test_mode = Column(Boolean, default=False)

    realized_pnl = Column(Float, nullable=True)
    fees = Column(Float, nullable=True)
    avg_entry_price = Column(Float, nullable=True)
    avg_exit_price = Column(Float, nullable=True)
    exit_price = Column(Float, nullable=True)
    close_reason = Column(String, nullable=True)
    trade_metrics = Column(JSON, nullable=True)
    risk_amount = Column(Float, nullable=True)
    pnl_details = Column(JSON(none_as_null=True), nullable=True)  # Matched closed-PnL record; set once reconciled
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
