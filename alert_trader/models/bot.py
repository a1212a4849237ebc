from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from alert_trader.database import Base


class Bot(Base):
    """Alert-driven trading bot configuration and running totals."""
    __tablename__ = "bots"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    symbol = Column(String, nullable=False)

    # Order defaults, used when an alert leaves a field out
    default_quantity = Column(Float, default=0.0)
    default_side = Column(String, nullable=True)
    default_order_type = Column(String, default="Market")
    default_stop_loss = Column(Float, nullable=True, doc="Stop distance in percent of entry")
    default_take_profit = Column(Float, nullable=True)
    leverage = Column(Float, nullable=True)
    test_mode = Column(Boolean, default=True, doc="Simulate fills instead of sending orders")

    # Risk and sizing
    risk_per_trade = Column(Float, default=0.0, doc="Currency amount risked per trade")
    position_sizing_enabled = Column(Boolean, default=False)
    max_position_size = Column(Float, nullable=True, doc="Max notional per position")
    daily_loss_limit = Column(Float, nullable=True, doc="Stop opening trades once today's loss reaches this")
    market_fee_percentage = Column(Float, default=0.075)
    limit_fee_percentage = Column(Float, default=0.02)

    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=True)

    # Aggregates maintained by the signal router
    last_trade_at = Column(DateTime, nullable=True)
    trade_count = Column(Integer, default=0)
    profit_loss = Column(Float, default=0.0)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
