import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from app.core.dependencies import get_auth_service, get_current_session
from app.core.exceptions import InvalidWalletAddress, StorageUnavailable, WalletAuthError
from app.core.jwt_utils import create_access_token
import app.schemas.auth as schemas
from app.services.auth_service import AuthService
from app.services.session_manager import AuthSession

logger = logging.getLogger(__name__)

router = APIRouter()
group_tags: List[str] = ["Auth"]

# one message for every login failure, the precise kind only goes to the logs
AUTH_FAILED = "Authentication failed"


def _storage_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Authentication store unavailable",
    )


@router.get(
    "/challenge/{wallet_address}",
    tags=group_tags,
    response_model=schemas.ChallengeResponse,
)
def request_challenge(
    wallet_address: str, auth: AuthService = Depends(get_auth_service)
) -> schemas.ChallengeResponse:
    """
    Issue a sign-in challenge for a wallet address.

    The returned message must be signed by the wallet and sent back to /auth/login
    before expires_at (epoch seconds). Any earlier challenge for the wallet stops working.
    """
    try:
        challenge = auth.request_challenge(wallet_address)
    except InvalidWalletAddress:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid wallet address")
    except StorageUnavailable:
        raise _storage_unavailable()

    return schemas.ChallengeResponse(message=challenge.message, expires_at=challenge.expires_at)


@router.post(
    "/login",
    tags=group_tags,
    response_model=schemas.LoginResponse,
    status_code=status.HTTP_201_CREATED,
)
def login(
    body: schemas.LoginRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> schemas.LoginResponse:
    """Verify a signed challenge and open a session for the wallet."""
    try:
        session = auth.login(
            body.wallet_address,
            body.signature,
            body.message,
            public_key=body.key,
            user_agent=request.headers.get("user-agent"),
            ip_address=request.client.host if request.client else None,
        )
    except InvalidWalletAddress:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid wallet address")
    except StorageUnavailable:
        raise _storage_unavailable()
    except WalletAuthError as exc:
        logger.info(
            "login failed for %s: %s (fresh challenge needed: %s)",
            exc.wallet_address,
            exc.kind,
            exc.retry_with_new_challenge,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=AUTH_FAILED)

    token = create_access_token(session.wallet_address, session.session_id, session.expires_at)
    return schemas.LoginResponse(
        session_id=session.session_id,
        expires_at=session.expires_at,
        wallet_address=session.wallet_address,
        access_token=token,
    )


@router.post(
    "/logout",
    tags=group_tags,
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def logout(body: schemas.LogoutRequest, auth: AuthService = Depends(get_auth_service)) -> Response:
    """Revoke a session. Repeating the call, or passing an unknown session, is not an error."""
    try:
        auth.logout(body.session_id)
    except StorageUnavailable:
        raise _storage_unavailable()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/session",
    tags=group_tags,
    response_model=schemas.SessionResponse,
)
def current_session(session: AuthSession = Depends(get_current_session)) -> schemas.SessionResponse:
    """Return the session behind the bearer token."""
    return schemas.SessionResponse(
        wallet_address=session.wallet_address,
        created_at=session.created_at,
        expires_at=session.expires_at,
    )
