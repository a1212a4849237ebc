from typing import Tuple, Optional
from datetime import datetime, timezone
import logging

from alert_trader.services.exchange import LotConstraints
from alert_trader.services.position_sizing import cap_to_notional

logger = logging.getLogger(__name__)


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    """Naive UTC midnight for `now`, matching how trade timestamps are stored."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class RiskGovernor:
    def __init__(self, ledger):
        self.ledger = ledger

    @staticmethod
    def is_configured(bot) -> bool:
        return bool(bot.daily_loss_limit) or bool(bot.max_position_size)

    def daily_realized_pnl(self, bot, now: Optional[datetime] = None) -> float:
        return self.ledger.sum_realized_pnl_since(bot.id, start_of_utc_day(now))

    def check_daily_loss_limit(self, bot, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
        """Reject once today's cumulative loss reaches the bot's daily limit."""
        limit = bot.daily_loss_limit or 0
        if limit <= 0:
            return True, None
        daily_pnl = self.daily_realized_pnl(bot, now)
        if daily_pnl < 0 and abs(daily_pnl) >= limit:
            return False, f"daily_loss_limit_exceeded (loss: {abs(daily_pnl)}, limit: {limit})"
        logger.info("Daily P/L check passed for bot %s: %s / limit %s", bot.id, daily_pnl, limit)
        return True, None

    def validate_open(self, bot, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
        """Pre-trade gate for open signals. Returns (ok, reason)."""
        if not self.is_configured(bot):
            return True, None
        return self.check_daily_loss_limit(bot, now)

    def cap_position(self, bot, quantity: float, price: Optional[float],
                     lot: LotConstraints) -> Tuple[float, bool]:
        """Reduce quantity to the bot's max position notional. Returns (quantity, reduced)."""
        if not bot.max_position_size or bot.max_position_size <= 0 or not price or price <= 0:
            return quantity, False
        capped = cap_to_notional(quantity, price, bot.max_position_size, lot)
        if capped < quantity:
            logger.info("Position size %s exceeds max %s, reduced quantity %s -> %s",
                        quantity * price, bot.max_position_size, quantity, capped)
            return capped, True
        return quantity, False
