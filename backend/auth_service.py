"""Authentication Service using JWT"""
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


class TokenData(BaseModel):
    user_id: str
    email: Optional[str] = None
    exp: datetime


def verify_token(token: str, secret: str = None) -> Optional[TokenData]:
    """Verify and decode a Supabase-issued user JWT"""
    secret = secret if secret is not None else config.SUPABASE_JWT_SECRET
    if not secret:
        logger.error("SUPABASE_JWT_SECRET is not configured; rejecting token")
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
        return TokenData(
            user_id=payload["sub"],
            email=payload.get("email"),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except (jwt.InvalidTokenError, KeyError) as e:
        logger.warning(f"Invalid token: {e}")
        return None


def verify_cron_secret(token: str, secret: str = None) -> bool:
    """Constant-time comparison against CRON_SECRET. An unset secret rejects everything."""
    secret = secret if secret is not None else config.CRON_SECRET
    if not secret or not token:
        return False
    return hmac.compare_digest(token.encode(), secret.encode())


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
