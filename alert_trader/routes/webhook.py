# alert_trader/routes/webhook.py
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from concurrent.futures import ThreadPoolExecutor
from sqlalchemy.orm import Session
from alert_trader.config import settings
from alert_trader.database import SessionLocal
from alert_trader.services.events import audit_emitter
from alert_trader.services.exchange import client_for
from alert_trader.services.ledger import SqlLedger
from alert_trader.services.order_executor import SimulatedOrderExecutor
from alert_trader.services.reconciler import PnlReconciler
from alert_trader.services.results import response_of
from alert_trader.services.signal_router import SignalRouter
import asyncio
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Alerts"])

executor = ThreadPoolExecutor(max_workers=settings.WORKER_THREADS)

# Replaced in tests
exchange_factory = client_for
simulator_factory = SimulatedOrderExecutor


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def reconcile_in_background(trade_id: int):
    """Fetch settled PnL for a closed trade on its own session, after the response is sent."""
    db = SessionLocal()
    try:
        ledger = SqlLedger(db)
        reconciler = PnlReconciler(ledger, exchange_factory, audit_emitter(ledger))
        result = reconciler.reconcile(trade_id)
        status, body = response_of(result)
        logger.info("Background reconciliation of trade %s finished with %s: %s", trade_id, status, body)
    except Exception:
        logger.exception("Background reconciliation of trade %s failed", trade_id)
    finally:
        db.close()


@router.post("/alert/{token}")
async def receive_alert(token: str, request: Request, background_tasks: BackgroundTasks,
                        db: Session = Depends(get_db)):
    """
    Receives a charting-platform alert for the bot bound to `token`.

    The body is parsed by the router rather than by FastAPI so malformed JSON
    is reported (and audit-logged) like any other rejected alert.
    """
    raw_body = await request.body()
    ledger = SqlLedger(db)
    signal_router = SignalRouter(
        ledger,
        events=audit_emitter(ledger),
        exchange_factory=exchange_factory,
        simulator=simulator_factory(),
        schedule_reconcile=lambda trade_id: background_tasks.add_task(reconcile_in_background, trade_id),
    )

    # Exchange calls block; keep them off the event loop
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(executor, signal_router.process_alert, token, raw_body)
    status, body = response_of(result)
    if not result.ok:
        logger.warning("Alert for webhook %s... rejected (%s): %s", token[:6], status, body.get("error"))
    return JSONResponse(status_code=status, content=body)
