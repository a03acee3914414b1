"""
Wallet login protocol.

    request_challenge(wallet) -> client signs challenge.message off-system
    login(wallet, signature, message) -> verify, consume, create session, log wallet_connect
    logout(session_id) -> revoke, log wallet_disconnect

A wallet is Authenticated while it holds at least one active session; no
per-wallet state is stored beyond challenges and sessions.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core import wallet_auth
from app.core.exceptions import (
    AddressMismatch,
    ChallengeAlreadyConsumed,
    ChallengeExpired,
    ChallengeNotFound,
    ExpiredChallenge,
    InvalidActivityType,
    InvalidSignature,
    MalformedSignature,
    NoChallenge,
    ReplayedChallenge,
    SessionNotFound,
    WalletAuthError,
)
from app.services.activity_log import USAGE_ACTIVITY_TYPES, ActivityLog, ActivityType, parse_activity_type
from app.services.challenge_store import Challenge, ChallengeStore
from app.services.session_manager import AuthSession, SessionManager

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CHALLENGE_ISSUED = "challenge_issued"
    AUTHENTICATED = "authenticated"


def _short(value: str) -> str:
    return f"{value[:10]}..." if value and len(value) > 10 else value


class AuthService:
    def __init__(
        self,
        db: Session,
        activity_log: ActivityLog,
        challenges: Optional[ChallengeStore] = None,
        sessions: Optional[SessionManager] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.activity_log = activity_log
        self.challenges = challenges or ChallengeStore(db, clock=clock)
        self.sessions = sessions or SessionManager(db, clock=clock)

    def request_challenge(self, wallet_address: str) -> Challenge:
        """Issue a challenge for the wallet. Not logged: issuance is unauthenticated."""
        return self.challenges.issue(wallet_auth.canonical_address(wallet_address))

    def login(
        self,
        wallet_address: str,
        signature: str,
        message: str,
        public_key: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthSession:
        """
        Exchange a signed challenge for a session.

        Raises:
            NoChallenge: no challenge for the wallet, or message is not the current one
            InvalidSignature: the signature cannot be decoded or recovered
            AddressMismatch: the signature was made by another wallet
            ReplayedChallenge: the challenge was already used (possibly by a concurrent call)
            ExpiredChallenge: the challenge outlived its TTL
            StorageUnavailable: challenges or sessions cannot be reached
        """
        address = wallet_auth.canonical_address(wallet_address)
        chain = wallet_auth.detect_chain(address)
        request_details = {"chain": chain.value, "user_agent": user_agent, "ip_address": ip_address}

        challenge = self.challenges.current(address)
        if challenge is None or challenge.message != message:
            logger.info("login for %s without a matching challenge", address)
            raise NoChallenge(wallet_address=address)

        try:
            signer = wallet_auth.verify(challenge.message, signature, chain, public_key)
        except MalformedSignature as exc:
            raise self._rejected(
                InvalidSignature(str(exc), wallet_address=address), request_details
            ) from exc

        if signer.identity != wallet_auth.signer_identity(address):
            raise self._rejected(
                AddressMismatch(f"signed by {signer.identity}", wallet_address=address),
                request_details,
            )

        # authoritative replay defence: only one caller flips the flag
        try:
            self.challenges.consume(address, challenge.nonce)
        except ChallengeAlreadyConsumed:
            logger.warning("replayed challenge for %s", address)
            raise ReplayedChallenge(wallet_address=address) from None
        except ChallengeExpired:
            logger.info("expired challenge for %s", address)
            raise ExpiredChallenge(wallet_address=address) from None
        except ChallengeNotFound:
            logger.info("challenge for %s superseded during login", address)
            raise NoChallenge(wallet_address=address) from None

        # the challenge stays consumed if this fails; the wallet requests a new one
        session = self.sessions.create(address, challenge.nonce, user_agent, ip_address)

        self._log(
            ActivityType.WALLET_CONNECT,
            wallet_address=address,
            session_id=session.session_id,
            timestamp=session.created_at,
            details=request_details,
        )
        logger.info("wallet %s authenticated, session %s", address, _short(session.session_id))
        return session

    def logout(self, session_id: str) -> bool:
        """
        Revoke a session. Safe to repeat: unknown or already revoked sessions
        are a no-op. Returns True when this call revoked the session.
        """
        session = self.sessions.find(session_id)
        if session is None:
            logger.info("logout for unknown session %s", _short(session_id))
            return False

        try:
            revoked = self.sessions.revoke(session_id)
        except SessionNotFound:
            return False
        if revoked:
            self._log(
                ActivityType.WALLET_DISCONNECT,
                wallet_address=session.wallet_address,
                session_id=session_id,
            )
        return revoked

    def record_activity(
        self,
        session: AuthSession,
        activity_type: ActivityType | str,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Append a usage event for an already validated session."""
        activity_type = parse_activity_type(activity_type)
        if activity_type not in USAGE_ACTIVITY_TYPES:
            raise InvalidActivityType(f"{activity_type.value} cannot be recorded by clients")
        return self.activity_log.append(
            activity_type,
            user_id=user_id,
            wallet_address=session.wallet_address,
            session_id=session.session_id,
            target_id=target_id,
            details=details,
        )

    def wallet_state(self, wallet_address: str, now: Optional[int] = None) -> AuthState:
        address = wallet_auth.canonical_address(wallet_address)
        now = self.challenges.now() if now is None else now
        if self.sessions.list_active(address, now):
            return AuthState.AUTHENTICATED

        challenge = self.challenges.current(address)
        if challenge is not None and challenge.is_live(now):
            return AuthState.CHALLENGE_ISSUED
        return AuthState.UNAUTHENTICATED

    def _rejected(self, error: WalletAuthError, details: Dict[str, Any]) -> WalletAuthError:
        """Log a signature rejection; these are not from the claimed wallet."""
        logger.warning("login rejected for %s: %s (%s)", error.wallet_address, error.kind, error)
        self._log(
            ActivityType.LOGIN_ATTEMPT,
            wallet_address=error.wallet_address,
            details={**details, "outcome": error.kind},
        )
        return error

    def _log(self, activity_type: ActivityType, **kwargs: Any) -> None:
        # logging must never undo an authentication state change
        try:
            self.activity_log.append(activity_type, **kwargs)
        except Exception:
            logger.exception("could not record %s activity", activity_type.value)
