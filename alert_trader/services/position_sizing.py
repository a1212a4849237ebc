import logging
import math
from typing import Optional

from alert_trader.exceptions import InvalidSizingInput
from alert_trader.services.exchange import LotConstraints

logger = logging.getLogger(__name__)

# Absorbs float noise so exact multiples of the step are not floored one step down
_STEP_EPSILON = 1e-9


def floor_to_step(quantity: float, step: float) -> float:
    if step <= 0:
        return quantity
    return math.floor(quantity / step + _STEP_EPSILON) * step


def round_to_lot(quantity: float, lot: LotConstraints) -> float:
    """Direct lot rounding for a requested quantity: below minimum -> minimum, else floor to step."""
    if quantity < lot.min_qty:
        adjusted = lot.min_qty
    else:
        adjusted = floor_to_step(quantity, lot.qty_step)
    if adjusted < lot.min_qty:
        adjusted = lot.min_qty
    return round(adjusted, lot.decimals)


def cap_to_notional(quantity: float, price: float, max_notional: Optional[float],
                    lot: LotConstraints) -> float:
    """Reduce quantity so quantity * price stays within max_notional. Never increases it."""
    if not max_notional or max_notional <= 0 or not price or price <= 0:
        return quantity
    if quantity * price <= max_notional:
        return quantity
    capped = floor_to_step(max_notional / price, lot.qty_step)
    return max(round(capped, lot.decimals), 0.0)


def realized_risk(quantity: float, entry_price: float, stop_loss: float, fee_percentage: float) -> float:
    """Loss at `quantity` if the stop is hit, including entry and exit fees."""
    fee_rate = (fee_percentage or 0) / 100
    return quantity * abs(entry_price - stop_loss) + quantity * entry_price * fee_rate + quantity * stop_loss * fee_rate


def calculate_position_size(entry_price: float, stop_loss: float, risk_amount: float, side: str,
                            fee_percentage: float, min_qty: float, qty_step: float,
                            max_position_size: float = 0, decimals: int = 8) -> float:
    """Quantity that risks at most `risk_amount` between entry and stop, fees included.

    `fee_percentage` is a percentage (0.075 means 0.075%) charged on both the
    entry and the exit leg. The result is clamped up to `min_qty`, floored to
    `qty_step` (never rounded up), reduced to fit `max_position_size` notional
    when given, and rounded to `decimals`.
    """
    if not entry_price or entry_price <= 0:
        raise InvalidSizingInput("Entry price must be a positive number")
    if not stop_loss or stop_loss <= 0:
        raise InvalidSizingInput("Stop loss must be a positive number")
    if not risk_amount or risk_amount <= 0:
        raise InvalidSizingInput("Risk amount must be a positive number")
    if side not in ("Buy", "Sell"):
        raise InvalidSizingInput('Side must be "Buy" or "Sell"')

    if side == "Buy":
        if entry_price <= stop_loss:
            raise InvalidSizingInput("Stop loss must be below entry price for Buy orders")
        risk_per_unit = entry_price - stop_loss
    else:
        if stop_loss <= entry_price:
            raise InvalidSizingInput("Stop loss must be above entry price for Sell orders")
        risk_per_unit = stop_loss - entry_price

    fee_rate = (fee_percentage or 0) / 100
    fee_cost_factor = entry_price * fee_rate + stop_loss * fee_rate
    effective_risk_per_unit = risk_per_unit + fee_cost_factor
    quantity = risk_amount / effective_risk_per_unit

    logger.debug("Sizing: risk/unit=%s fee factor=%s effective=%s raw qty=%s",
                 risk_per_unit, fee_cost_factor, effective_risk_per_unit, quantity)

    if quantity < min_qty:
        logger.info("Calculated quantity %s is below minimum %s, using minimum", quantity, min_qty)
        quantity = min_qty

    quantity = floor_to_step(quantity, qty_step)

    if max_position_size and max_position_size > 0 and quantity * entry_price > max_position_size:
        quantity = floor_to_step(max_position_size / entry_price, qty_step)
        logger.info("Reduced quantity to respect max position size %s: %s", max_position_size, quantity)

    quantity = max(round(quantity, decimals), 0.0)
    logger.info("Position size %s (actual risk %.2f, target %s)",
                quantity, realized_risk(quantity, entry_price, stop_loss, fee_percentage), risk_amount)
    return quantity
