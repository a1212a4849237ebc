import hashlib
import hmac
import json
from typing import Any, Dict, Mapping
from urllib.parse import urlencode


class Signer:
    """Builds the authentication headers for signed exchange requests.

    The signed payload is `timestamp + api_key + recv_window + body_or_query`,
    HMAC-SHA256'd with the API secret and hex encoded.
    """

    def __init__(self, api_key: str, api_secret: str, recv_window: str = "5000"):
        self.api_key = api_key
        self._api_secret = api_secret
        self.recv_window = str(recv_window)

    def sign(self, timestamp: str, payload: str) -> str:
        message = f"{timestamp}{self.api_key}{self.recv_window}{payload}"
        return hmac.new(
            self._api_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def headers(self, timestamp: str, payload: str) -> Dict[str, str]:
        return {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-TIMESTAMP": str(timestamp),
            "X-BAPI-RECV-WINDOW": self.recv_window,
            "X-BAPI-SIGN": self.sign(str(timestamp), payload),
        }

    def __repr__(self):
        return f"<Signer api_key={self.api_key[:4]}***>"


def canonical_query(params: Mapping[str, Any]) -> str:
    """Sorted, urlencoded query string; the exact string that gets signed and sent."""
    return urlencode(sorted((k, str(v)) for k, v in params.items() if v is not None))


def canonical_body(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))
