from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_side(value):
    if value is None:
        return None
    side = str(value).strip().capitalize()
    if side not in ("Buy", "Sell"):
        raise ValueError("side must be Buy or Sell")
    return side


def normalize_order_type(value):
    if value is None:
        return None
    order_type = str(value).strip().capitalize()
    if order_type not in ("Market", "Limit"):
        raise ValueError("orderType must be Market or Limit")
    return order_type


class AlertPayload(BaseModel):
    """TradingView alert body. Unknown fields are ignored; numbers may arrive as strings."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: str = "open"
    symbol: Optional[str] = None
    side: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    stop_loss: Optional[float] = Field(default=None, alias="stopLoss")
    take_profit: Optional[float] = Field(default=None, alias="takeProfit")
    order_type: Optional[str] = Field(default=None, alias="orderType")
    close_quantity: Optional[float] = None
    close_reason: Optional[str] = None
    is_liquidation: bool = False
    realized_pnl: Optional[float] = None

    @field_validator("state", mode="before")
    @classmethod
    def _state(cls, v):
        state = str(v or "open").strip().lower()
        if state not in ("open", "close"):
            raise ValueError("state must be open or close")
        return state

    @field_validator("symbol", mode="before")
    @classmethod
    def _symbol(cls, v):
        return str(v).strip().upper() if v else None

    @field_validator("side", mode="before")
    @classmethod
    def _side(cls, v):
        return normalize_side(v)

    @field_validator("order_type", mode="before")
    @classmethod
    def _order_type(cls, v):
        return normalize_order_type(v)

    @field_validator("price", "quantity", "stop_loss", "take_profit", "close_quantity", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        # TradingView placeholders that did not resolve come through as ""
        return None if v == "" else v

    @field_validator("is_liquidation", mode="before")
    @classmethod
    def _liquidation(cls, v):
        return bool(v) if v not in ("false", "False", "0") else False
