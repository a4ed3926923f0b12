"""Authentication, caller identity and rate limiting helpers for the API."""

import secrets
import logging

from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .permissions import Role
from .reconciliation.models import Actor

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = get_settings().api_key
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


async def get_actor(
    x_firm_id: str = Header(..., min_length=1, max_length=36),
    x_user_id: str = Header(..., min_length=1, max_length=255),
    x_role: str = Header(...),
) -> Actor:
    """Build the calling actor from the X-Firm-Id, X-User-Id and X-Role headers.

    SYSTEM is reserved for the engine and is rejected here.
    """
    try:
        role = Role(x_role.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_role}")
    if role == Role.SYSTEM:
        raise HTTPException(status_code=403, detail="SYSTEM role is not available to API callers")
    return Actor(firm_id=x_firm_id, user_id=x_user_id, role=role)
