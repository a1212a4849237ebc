from sqlalchemy import Column, Integer, String, DateTime, Boolean
from datetime import datetime
from alert_trader.database import Base


class ApiKey(Base):
    """Exchange credentials for a user."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=True)
    exchange = Column(String, default="bybit")
    api_key = Column(String, nullable=False)
    api_secret = Column(String, nullable=False)
    account_type = Column(String, default="main", doc="main or sub")
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        # Never render the secret
        return f"<ApiKey id={self.id} name={self.name!r} account_type={self.account_type}>"
