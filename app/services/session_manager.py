import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    SessionExpired,
    SessionNotFound,
    SessionRevoked,
    StorageUnavailable,
)
from app.models.auth import WalletSession

logger = logging.getLogger(__name__)

SESSION_ID_NUM_BYTES = 32


def _epoch_now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class AuthSession:
    """An authenticated wallet session."""

    session_id: str
    wallet_address: str
    challenge_nonce: str
    created_at: int
    expires_at: int
    revoked: bool = False
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def is_active(self, now: int) -> bool:
        return not self.revoked and not self.is_expired(now)

    @classmethod
    def from_record(cls, record: WalletSession) -> "AuthSession":
        return cls(
            session_id=record.session_id,
            wallet_address=record.wallet_address,
            challenge_nonce=record.challenge_nonce,
            created_at=record.created_at,
            expires_at=record.expires_at,
            revoked=bool(record.revoked),
            user_agent=record.user_agent,
            ip_address=record.ip_address,
        )


class SessionManager:
    """
    Owns wallet session records.

    Sessions are created only after a challenge was consumed; the challenge
    nonce is stored with a unique constraint so one challenge can never back
    two sessions. Expiry is checked against the clock on every validate().
    """

    def __init__(self, db: Session, ttl_seconds: Optional[int] = None, clock: Optional[Callable[[], int]] = None):
        self.db = db
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ACCESS_TOKEN_EXPIRE_SECONDS
        self._clock = clock or _epoch_now

    def create(
        self,
        wallet_address: str,
        challenge_nonce: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthSession:
        now = self._clock()
        session = AuthSession(
            session_id=secrets.token_urlsafe(SESSION_ID_NUM_BYTES),
            wallet_address=wallet_address,
            challenge_nonce=challenge_nonce,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        try:
            self.db.add(
                WalletSession(
                    session_id=session.session_id,
                    wallet_address=session.wallet_address,
                    challenge_nonce=session.challenge_nonce,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    revoked=False,
                    user_agent=user_agent,
                    ip_address=ip_address,
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not create session", wallet_address=wallet_address) from exc
        return session

    def find(self, session_id: str) -> Optional[AuthSession]:
        """Read a session regardless of its state."""
        if not session_id:
            return None
        try:
            record = self.db.get(WalletSession, session_id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not read session") from exc
        return AuthSession.from_record(record) if record else None

    def validate(self, session_id: str) -> AuthSession:
        """
        Return the session if it can authenticate a request.

        Raises:
            SessionNotFound, SessionRevoked, SessionExpired
        """
        session = self.find(session_id)
        if session is None:
            raise SessionNotFound()
        if session.revoked:
            raise SessionRevoked(wallet_address=session.wallet_address)
        if session.is_expired(self._clock()):
            raise SessionExpired(wallet_address=session.wallet_address)
        return session

    def revoke(self, session_id: str) -> bool:
        """
        Revoke a session.

        Returns True when this call revoked it, False when it was already revoked.

        Raises:
            SessionNotFound: no session with this id
        """
        try:
            updated = (
                self.db.query(WalletSession)
                .filter(
                    WalletSession.session_id == session_id,
                    WalletSession.revoked.is_(False),
                )
                .update({WalletSession.revoked: True}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not revoke session") from exc

        if updated == 1:
            return True
        if self.find(session_id) is None:
            raise SessionNotFound()
        return False

    def list_active(self, wallet_address: str, now: Optional[int] = None) -> List[AuthSession]:
        now = self._clock() if now is None else now
        try:
            records = (
                self.db.query(WalletSession)
                .filter(
                    WalletSession.wallet_address == wallet_address,
                    WalletSession.revoked.is_(False),
                    WalletSession.expires_at > now,
                )
                .order_by(WalletSession.created_at.desc())
                .all()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not list sessions", wallet_address=wallet_address) from exc
        return [AuthSession.from_record(record) for record in records]

    def purge_expired(self, now: Optional[int] = None) -> int:
        """Delete sessions past their expiry. Revoked but unexpired sessions are kept."""
        now = self._clock() if now is None else now
        try:
            deleted = (
                self.db.query(WalletSession)
                .filter(WalletSession.expires_at <= now)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not purge sessions") from exc
        if deleted:
            logger.info("purged %d expired sessions", deleted)
        return deleted
