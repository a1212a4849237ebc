import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from alert_trader.database import Base, engine
from alert_trader.routes import trade, webhook
from alert_trader.config import settings
from alert_trader.exceptions import ValidationError
# Import all models to ensure they're registered with SQLAlchemy
from alert_trader.models.api_key import ApiKey
from alert_trader.models.bot import Bot
from alert_trader.models.log_entry import LogEntry
from alert_trader.models.trade import Trade
from alert_trader.models.webhook import Webhook

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.APP_NAME)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    error = ValidationError("Invalid request", {"errors": errors})
    return JSONResponse(status_code=error.http_status, content=error.to_body())


app.include_router(webhook.router)
app.include_router(trade.router)

@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} API is running", "env": settings.ENV}
