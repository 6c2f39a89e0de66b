import logging
import os

from fastapi import Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from coursepay import config  # noqa: F401  loads .env

logger = logging.getLogger(__name__)


def verify_token(authorization: str = Header(None)):
    """Bearer JWT guard for internal endpoints; returns the token claims."""
    secret = os.getenv("JWT_SECRET")
    if not secret:
        logger.error("JWT_SECRET is not set; rejecting authenticated request")
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (AttributeError, ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
