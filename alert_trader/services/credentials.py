import logging
from typing import Optional

from alert_trader.exceptions import CredentialsError
from alert_trader.models.api_key import ApiKey

logger = logging.getLogger(__name__)


def resolve_api_key(ledger, user_id: str, api_key_id: Optional[int] = None) -> ApiKey:
    """Pick the exchange credentials for a user.

    Order: the explicitly bound key, then the user's default key, then the
    user's oldest key. Raises CredentialsError when none exists.
    """
    key = None
    if api_key_id:
        key = ledger.get_api_key(api_key_id, user_id)
        if key is None:
            logger.warning("Bound API key %s not found for user %s, falling back", api_key_id, user_id)
    if key is None:
        key = ledger.get_default_api_key(user_id)
    if key is None:
        key = ledger.get_oldest_api_key(user_id)
        if key is not None:
            logger.info("Using fallback API key %s", key.name or key.id)
    if key is None:
        raise CredentialsError("API credentials not found")
    return key
