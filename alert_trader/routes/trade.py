# alert_trader/routes/trade.py
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from alert_trader.routes import webhook
from alert_trader.routes.webhook import get_db
from alert_trader.schemas.trade import ManualCloseRequest, ManualTradeRequest
from alert_trader.services.events import audit_emitter
from alert_trader.services.ledger import SqlLedger
from alert_trader.services.manual_trade import ManualTradeService
from alert_trader.services.reconciler import PnlReconciler
from alert_trader.services.results import response_of
import asyncio

router = APIRouter(prefix="/trade", tags=["Trades"])


@router.post("/execute")
async def execute_trade(trade: ManualTradeRequest, db: Session = Depends(get_db)):
    ledger = SqlLedger(db)
    service = ManualTradeService(
        ledger,
        events=audit_emitter(ledger),
        exchange_factory=webhook.exchange_factory,
        simulator=webhook.simulator_factory(),
    )
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(webhook.executor, service.execute, trade)
    status, body = response_of(result)
    return JSONResponse(status_code=status, content=body)


@router.post("/{trade_id}/reconcile")
async def reconcile_trade(trade_id: int, db: Session = Depends(get_db)):
    """Fetch the exchange's settled PnL for a closed trade and store it."""
    ledger = SqlLedger(db)
    reconciler = PnlReconciler(ledger, webhook.exchange_factory, audit_emitter(ledger))
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(webhook.executor, reconciler.reconcile, trade_id)
    status, body = response_of(result)
    return JSONResponse(status_code=status, content=body)


@router.post("/{trade_id}/close")
async def close_trade(trade_id: int, request: ManualCloseRequest, db: Session = Depends(get_db)):
    ledger = SqlLedger(db)
    service = ManualTradeService(
        ledger,
        events=audit_emitter(ledger),
        exchange_factory=webhook.exchange_factory,
        simulator=webhook.simulator_factory(),
    )
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(webhook.executor, service.close, trade_id, request)
    status, body = response_of(result)
    return JSONResponse(status_code=status, content=body)
