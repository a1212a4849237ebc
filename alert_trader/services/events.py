"""Domain event emission for the trading workflows.

Workflows call `emit`; sinks decide what to do with an event (render it to
the application log, persist it to the audit log, ...). A failing sink is
logged and skipped so it can never mask the error being reported.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

SECRET_KEYS = {"api_key", "api_secret", "apiKey", "apiSecret", "secret"}

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def redact(details: Any) -> Any:
    if isinstance(details, dict):
        return {k: ("[REDACTED]" if k in SECRET_KEYS else redact(v)) for k, v in details.items()}
    if isinstance(details, (list, tuple)):
        return [redact(v) for v in details]
    return details


@dataclass
class Event:
    level: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    bot_id: Optional[int] = None
    webhook_id: Optional[int] = None
    trade_id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def refs(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "webhook_id": self.webhook_id,
            "trade_id": self.trade_id,
        }


class LoggingSink:
    def __init__(self, name: str = "alert_trader.events"):
        self.logger = logging.getLogger(name)

    def handle(self, event: Event):
        self.logger.log(LEVELS.get(event.level, logging.INFO), "%s | %s", event.message, event.details)


class AuditLogSink:
    """Persists events to the ledger's audit log."""

    def __init__(self, ledger):
        self.ledger = ledger

    def handle(self, event: Event):
        self.ledger.write_log(event.level, event.message, event.details, **event.refs())


class EventEmitter:
    def __init__(self, sinks: Optional[List] = None, **context):
        self.sinks = list(sinks) if sinks is not None else [LoggingSink()]
        self.context = context

    def bind(self, **context) -> "EventEmitter":
        """Emitter sharing the same sinks with extra default references (bot, webhook, ...)."""
        return EventEmitter(self.sinks, **dict(self.context, **context))

    def emit(self, level: str, message: str, details: Optional[Dict[str, Any]] = None, **refs) -> Event:
        event = Event(level=level, message=message, details=redact(details or {}),
                      **dict(self.context, **refs))
        for sink in self.sinks:
            try:
                sink.handle(event)
            except Exception:
                logger.exception("Event sink %s failed for %r", type(sink).__name__, message)
        return event

    def info(self, message: str, details: Optional[Dict[str, Any]] = None, **refs) -> Event:
        return self.emit("info", message, details, **refs)

    def warning(self, message: str, details: Optional[Dict[str, Any]] = None, **refs) -> Event:
        return self.emit("warning", message, details, **refs)

    def error(self, message: str, details: Optional[Dict[str, Any]] = None, **refs) -> Event:
        return self.emit("error", message, details, **refs)

    def critical(self, message: str, details: Optional[Dict[str, Any]] = None, **refs) -> Event:
        return self.emit("critical", message, details, **refs)


def audit_emitter(ledger, **context) -> EventEmitter:
    """Emitter that writes both to the application log and to the audit log table."""
    return EventEmitter([LoggingSink(), AuditLogSink(ledger)], **context)
