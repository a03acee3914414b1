"""
JWT Token Utilities

This module handles JSON Web Token (JWT) creation and verification for wallet sessions.
After a wallet logs in, this module wraps the new session in a signed JWT that the
frontend sends on subsequent authenticated API requests.

Flow:
1. Wallet logs in -> create_access_token() signs the session into a JWT
2. User makes API request with JWT in Authorization header -> verify_token() validates it
3. Protected endpoints use get_current_session() from dependencies.py, which also
   checks the session record so a logout takes effect immediately

The JWT contains:
- wallet_address: The authenticated wallet address
- sid: The session id
- iat: Issued at timestamp
- exp: Expiration timestamp (the session expiry)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, status

from app.core.config import settings


if not settings.ENCODE_KEY:
    raise RuntimeError("ENCODE_KEY is not configured")


def create_access_token(
    wallet_address: str,
    session_id: str,
    expires_at: Optional[int] = None,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Create a JWT access token for a wallet session.

    Args:
        wallet_address: The wallet address that owns the session
        session_id: The session the token stands for
        expires_at: Epoch seconds when the token expires (default: now + ACCESS_TOKEN_EXPIRE_SECONDS)
        extra_claims: Optional additional claims to include in the JWT payload

    Returns:
        A JWT token string that can be used in Authorization: Bearer <token> header

    Raises:
        ValueError: If wallet_address or session_id is empty
    """
    if not wallet_address:
        raise ValueError("wallet_address is required")
    if not session_id:
        raise ValueError("session_id is required")

    now = datetime.now(timezone.utc)
    if expires_at is None:
        expires_at = int((now + timedelta(seconds=settings.ACCESS_TOKEN_EXPIRE_SECONDS)).timestamp())

    payload: Dict[str, Any] = {
        "wallet_address": wallet_address,
        "sid": session_id,
        "iat": int(now.timestamp()),
        "exp": int(expires_at),
    }
    if extra_claims:
        payload.update(extra_claims)

    return jwt.encode(payload, settings.ENCODE_KEY, algorithm=settings.ENCODE_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode a JWT token.

    Checks token signature, expiration, and required payload fields. It does not
    look at the session record; that is the caller's job.

    Args:
        token: The JWT token string from Authorization header

    Returns:
        Decoded JWT payload dictionary containing wallet_address, sid and other claims

    Raises:
        HTTPException 401: If token is missing, expired, invalid, or missing claims
    """
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        payload = jwt.decode(token, settings.ENCODE_KEY, algorithms=[settings.ENCODE_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if "wallet_address" not in payload or "sid" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    return payload
