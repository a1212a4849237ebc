from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from alert_trader.database import Base


class Webhook(Base):
    """Opaque alert URL token bound to a bot. Issued elsewhere, read-only here."""
    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, index=True)
    webhook_token = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
