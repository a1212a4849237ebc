from datetime import datetime
from typing import Any, Dict, Optional, Union

Timestamp = Union[datetime, int, float]


def format_trade_time(seconds: int) -> str:
    """DD:HH:MM when the trade lasted at least a day, else HH:MM."""
    seconds = max(int(seconds), 0)
    days, remainder = divmod(seconds, 86400)
    hours = remainder // 3600
    minutes = (remainder % 3600) // 60
    if days > 0:
        return f"{days:02d}:{hours:02d}:{minutes:02d}"
    return f"{hours:02d}:{minutes:02d}"


def _to_ms(value: Optional[Timestamp]) -> float:
    if value is None:
        return 0.0
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    return float(value)


def calculate_trade_metrics(side: str, planned_entry: float, actual_entry: float,
                            stop_loss: float, take_profit: float, max_risk: float,
                            finished_dollar: Optional[float], open_fee: float = 0.0,
                            close_fee: float = 0.0, open_time: Optional[Timestamp] = None,
                            close_time: Optional[Timestamp] = None,
                            symbol: Optional[str] = None) -> Dict[str, Any]:
    """Post-trade analytics. Pure; times are datetimes or epoch milliseconds."""
    side_upper = (side or "").upper().strip()
    planned_entry = planned_entry or 0.0
    stop_loss = stop_loss or 0.0
    take_profit = take_profit or 0.0
    max_risk = max_risk or 0.0
    finished_dollar = finished_dollar or 0.0

    risk_per_unit = 0.0
    if side_upper.startswith("B"):
        risk_per_unit = planned_entry - stop_loss
    elif side_upper.startswith("S"):
        risk_per_unit = stop_loss - planned_entry

    position_units = max_risk / risk_per_unit if risk_per_unit != 0 else 0.0
    position_notional = planned_entry * position_units

    target_rr = 0.0
    if risk_per_unit != 0:
        if side_upper.startswith("B"):
            target_rr = (take_profit - planned_entry) / risk_per_unit
        elif side_upper.startswith("S"):
            target_rr = (planned_entry - take_profit) / risk_per_unit

    finished_rr = finished_dollar / max_risk if max_risk != 0 else 0.0

    # Only meaningful when the loss overshot the planned risk
    deviation_percent = 0.0
    if finished_dollar < 0 and max_risk > 0:
        deviation_percent = ((abs(finished_dollar) - max_risk) / max_risk) * 100

    slippage = abs((actual_entry or 0.0) - planned_entry)

    total_seconds = int((_to_ms(close_time) - _to_ms(open_time)) // 1000)

    return {
        "symbol": symbol,
        "side": side,
        "wantedEntry": planned_entry,
        "stopLoss": stop_loss,
        "takeProfit": take_profit,
        "maxRisk": max_risk,
        "riskPerUnit": risk_per_unit,
        "positionUnits": position_units,
        "positionNotional": position_notional,
        "targetRR": target_rr,
        "finishedRR": finished_rr,
        "deviationPercentFromMaxRisk": deviation_percent,
        "slippage": slippage,
        "totalTradeTimeSeconds": total_seconds,
        "formattedTradeTime": format_trade_time(total_seconds),
        "totalFees": (open_fee or 0.0) + (close_fee or 0.0),
    }
