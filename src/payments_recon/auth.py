"""Bearer-token authentication and rate limiting for the HTTP surface."""

import logging
import os
import secrets

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Applied to the execute endpoints; keyed by client address
limiter = Limiter(key_func=get_remote_address)

EXECUTE_RATE_LIMIT = os.getenv("RECON_EXECUTE_RATE_LIMIT", "10/minute")


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Check the bearer token against the ``API_KEY`` environment variable.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 if no key is configured, 401 if the key does not match.
    """
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials
