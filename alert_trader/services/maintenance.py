"""
Audit log retention.

Run periodically (cron or a scheduler) with:

    python -m alert_trader.services.maintenance [--days N]
"""
import argparse
import logging
from datetime import datetime, timedelta
from typing import Optional

from alert_trader.config import settings

logger = logging.getLogger(__name__)


def purge_old_logs(ledger, days: Optional[int] = None, now: Optional[datetime] = None) -> dict:
    """Delete audit log entries older than `days` days."""
    days = settings.LOG_RETENTION_DAYS if days is None else days
    threshold = (now or datetime.utcnow()) - timedelta(days=days)
    deleted = ledger.delete_logs_before(threshold)
    logger.info("Deleted %s log entries older than %s", deleted, threshold.isoformat())
    return {"deleted_count": deleted, "threshold_date": threshold.isoformat()}


def main(argv=None):
    from alert_trader.database import Base, SessionLocal, engine
    from alert_trader.models import log_entry  # noqa: F401
    from alert_trader.services.ledger import SqlLedger

    parser = argparse.ArgumentParser(description="Delete old audit log entries")
    parser.add_argument("--days", type=int, default=settings.LOG_RETENTION_DAYS,
                        help="retention period in days (default: %(default)s)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = purge_old_logs(SqlLedger(db), days=args.days)
    finally:
        db.close()
    print(f"Deleted {result['deleted_count']} log entries older than {result['threshold_date']}")
    return result


if __name__ == "__main__":
    main()
