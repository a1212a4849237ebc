from sqlalchemy import Column, Integer, String, DateTime, JSON
from datetime import datetime
from alert_trader.database import Base


class LogEntry(Base):
    """Audit trail of domain events emitted while processing alerts."""
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, index=True)
    level = Column(String, nullable=False)
    message = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    user_id = Column(String, nullable=True, index=True)
    bot_id = Column(Integer, nullable=True, index=True)
    webhook_id = Column(Integer, nullable=True)
    trade_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
