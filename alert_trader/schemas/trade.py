from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from alert_trader.schemas.alert import normalize_order_type, normalize_side


class ManualTradeRequest(BaseModel):
    """Direct (non-webhook) trade request."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    symbol: str
    side: str
    entry_price: float = Field(gt=0)
    quantity: float = Field(gt=0)
    api_key_id: Optional[int] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    max_risk: Optional[float] = None
    leverage: Optional[float] = None
    order_type: str = "Market"
    test_mode: bool = False
    notes: Optional[str] = None

    @field_validator("symbol", mode="before")
    @classmethod
    def _symbol(cls, v):
        # Perpetual tickers from the charting tool carry a PERP suffix the exchange does not use
        symbol = str(v).strip().upper()
        return symbol[:-4] if symbol.endswith("PERP") else symbol

    @field_validator("side", mode="before")
    @classmethod
    def _side(cls, v):
        return normalize_side(v)

    @field_validator("order_type", mode="before")
    @classmethod
    def _order_type(cls, v):
        return normalize_order_type(v) or "Market"


class ManualCloseRequest(BaseModel):
    """Close of a direct trade. With send_order false the position is assumed closed at the exchange already."""
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    exit_price: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None
    send_order: bool = True
