"""
Exception hierarchy for the alert trader.

    AlertTraderError (base)
    ├── ValidationError        400  bad/missing fields, unparseable JSON
    ├── NotFoundError          404
    │   ├── WebhookNotFound
    │   ├── NoOpenTrade
    │   └── TradeNotFound
    ├── CredentialsError       400  no resolvable API key
    ├── RiskLimitExceeded      403
    ├── SizingError            400  no order is sent
    │   └── InvalidSizingInput
    ├── ExchangeError          500  non-zero retCode, HTTP failure
    ├── ReconciliationMismatch 200  soft warning, no matching PnL record
    ├── ReconciliationFailed   502  closed-PnL fetch exhausted its retries
    └── PersistenceError       500
        └── StaleTradeError    409  conditional close update lost the race

Components raise these; the workflows catch them at each step and hand a
tagged result back to the HTTP layer, which renders `to_body()`.
"""
from typing import Any, Dict, Optional


class AlertTraderError(Exception):
    """Base exception for all alert trader errors."""
    http_status = 500
    kind = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_body(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message, "kind": self.kind}
        body.update(self.details)
        return body


class ValidationError(AlertTraderError):
    http_status = 400
    kind = "validation_error"


class NotFoundError(AlertTraderError):
    http_status = 404
    kind = "not_found"


class WebhookNotFound(NotFoundError):
    kind = "webhook_not_found"


class NoOpenTrade(NotFoundError):
    kind = "no_open_trade"


class TradeNotFound(NotFoundError):
    kind = "trade_not_found"


class CredentialsError(AlertTraderError):
    http_status = 400
    kind = "credentials_error"


class RiskLimitExceeded(AlertTraderError):
    http_status = 403
    kind = "risk_limit_exceeded"


class SizingError(AlertTraderError):
    http_status = 400
    kind = "sizing_error"


class InvalidSizingInput(SizingError):
    kind = "invalid_sizing_input"


class ExchangeError(AlertTraderError):
    """The exchange rejected a request or could not be reached."""
    http_status = 500
    kind = "exchange_error"

    def __init__(self, message: str, ret_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.ret_code = ret_code


class ReconciliationMismatch(AlertTraderError):
    http_status = 200
    kind = "reconciliation_mismatch"


class ReconciliationFailed(AlertTraderError):
    http_status = 502
    kind = "reconciliation_failed"

    def __init__(self, message: str, attempts: int = 0, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.attempts = attempts


class PersistenceError(AlertTraderError):
    """Ledger write failed.

    `divergence` is set when the exchange already accepted an order, i.e. the
    venue and the ledger now disagree and someone has to look at it.
    """
    http_status = 500
    kind = "persistence_error"

    def __init__(self, message: str, divergence: bool = False, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.divergence = divergence

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.divergence:
            body["inconsistency"] = True
        return body


class StaleTradeError(PersistenceError):
    http_status = 409
    kind = "stale_trade"
