"""Bearer API-key check and rate limiting for the payouts API."""

import os
import hashlib
import secrets
import logging

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer()

# Limit for endpoints that page through the payment processor
PROCESSOR_RATE_LIMIT = os.getenv("PROCESSOR_RATE_LIMIT", "10/minute")


def rate_limit_key(request: Request) -> str:
    """Bucket requests per caller credential, falling back to client address."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        return "key:" + hashlib.sha256(token.encode()).hexdigest()[:16]
    return get_remote_address(request)


limiter = Limiter(key_func=rate_limit_key)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
) -> str:
    """Compare the bearer token with API_KEY.

    Raises:
        HTTPException: 401 for a wrong key, 500 when API_KEY is unset.
    """
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY is not set; refusing payouts API request")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Rejected payouts API request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials
