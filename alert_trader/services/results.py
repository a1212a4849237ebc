"""Tagged results threaded through the workflows instead of raising across them."""
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, TypeVar

from alert_trader.exceptions import AlertTraderError

T = TypeVar("T")


@dataclass
class Ok(Generic[T]):
    value: T
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return True


@dataclass
class Err:
    error: AlertTraderError
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    @property
    def status_code(self) -> int:
        return self.error.http_status

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def body(self) -> Dict[str, Any]:
        body = self.error.to_body()
        body.update(self.extra)
        return body


def response_of(result) -> tuple:
    """(status_code, body) for the HTTP layer."""
    if result.ok:
        return result.status_code, result.value
    return result.status_code, result.body
