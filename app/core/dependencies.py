"""
FastAPI Authentication Dependencies
This module provides FastAPI dependency functions that can be injected into route handlers
to build the auth service and to resolve the wallet session behind a request.
Usage in endpoints:
    @router.get("/protected")
    def protected_route(session: AuthSession = Depends(get_current_session)):
        # session is validated against the session store on every request
        return {"user": session.wallet_address}
Flow:
1. Client sends request with Authorization: Bearer <token> header
2. FastAPI calls get_current_session() dependency
3. _extract_token() extracts token from header
4. verify_token() validates the JWT (from jwt_utils.py)
5. SessionManager.validate() checks the session is neither revoked nor expired
6. Returns the session to the route handler
"""

import logging
import secrets
import threading
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import StorageUnavailable, WalletAuthError
from app.core.jwt_utils import verify_token
from app.db.session import get_db
from app.services.activity_log import ActivityLog
from app.services.auth_service import AuthService
from app.services.session_manager import AuthSession

logger = logging.getLogger(__name__)

admin_security = HTTPBasic()

_activity_log: Optional[ActivityLog] = None
_activity_log_lock = threading.Lock()


def get_activity_log() -> ActivityLog:
    """Process-wide activity log, shared so its retry buffer is shared too."""
    global _activity_log
    if _activity_log is None:
        with _activity_log_lock:
            if _activity_log is None:
                _activity_log = ActivityLog()
    return _activity_log


def get_auth_service(
    db: Session = Depends(get_db),
    activity_log: ActivityLog = Depends(get_activity_log),
) -> AuthService:
    return AuthService(db, activity_log)


def _extract_token(authorization: Optional[str]) -> Dict[str, Any]:
    """
    Extract JWT token from Authorization header.
    Supports both "Bearer <token>" and plain token formats.
    Args:
        authorization: The Authorization header value (e.g., "Bearer eyJ...")
    Returns:
        The decoded token payload
    Raises:
        HTTPException 401: If Authorization header is missing or invalid
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
        )

    authorization = authorization.strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    else:
        token = authorization
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header",
        )

    return verify_token(token)


def get_current_session(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    auth: AuthService = Depends(get_auth_service),
) -> AuthSession:
    """
    returning the validated wallet session.
    """
    payload = _extract_token(authorization)
    try:
        session = auth.sessions.validate(payload["sid"])
    except StorageUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session store unavailable",
        )
    except WalletAuthError as exc:
        logger.info("rejected session: %s", exc.kind)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")

    if session.wallet_address != payload["wallet_address"]:
        logger.warning("token wallet does not match session %s", session.wallet_address)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")
    return session


def require_admin(credentials: HTTPBasicCredentials = Depends(admin_security)) -> str:
    """Guard for read-side tooling such as activity queries."""
    password = settings.ADMIN_PASSWORD or ""
    if not password or not secrets.compare_digest(credentials.password, password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username
