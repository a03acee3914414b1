"""
Single-use wallet authentication challenges.

One challenge row per wallet address: issue() replaces whatever the wallet had
before, so an older nonce can never be consumed once a new one is issued.
consume() is the only place where read-then-write would be unsafe; it is a
single conditional UPDATE guarded by the unconsumed flag and the expiry.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ChallengeAlreadyConsumed,
    ChallengeExpired,
    ChallengeNotFound,
    StorageUnavailable,
)
from app.core.wallet_auth import generate_nonce
from app.models.auth import AuthChallenge

logger = logging.getLogger(__name__)

ISSUE_ATTEMPTS = 3

MESSAGE_TEMPLATE = (
    "Sign this message to verify your wallet ownership: {address}\n"
    "Nonce: {nonce}\n"
    "Expires at: {expires_at}"
)

Clock = Callable[[], int]


def _epoch_now() -> int:
    return int(time.time())


def build_challenge_message(address: str, nonce: str, expires_at: int) -> str:
    expiry = datetime.fromtimestamp(expires_at, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return MESSAGE_TEMPLATE.format(address=address, nonce=nonce, expires_at=expiry)


@dataclass(frozen=True)
class Challenge:
    wallet_address: str
    nonce: str
    message: str
    issued_at: int
    expires_at: int
    consumed: bool = False

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def is_live(self, now: int) -> bool:
        return not self.consumed and not self.is_expired(now)

    @classmethod
    def from_record(cls, record: AuthChallenge) -> "Challenge":
        return cls(
            wallet_address=record.wallet_address,
            nonce=record.nonce,
            message=record.message,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            consumed=bool(record.consumed),
        )


class ChallengeStore:
    """Issues and consumes challenges. Addresses must already be canonical."""

    def __init__(self, db: Session, ttl_seconds: Optional[int] = None, clock: Optional[Clock] = None):
        self.db = db
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.NONCE_EXPIRY_SECONDS
        self._clock = clock or _epoch_now

    def now(self) -> int:
        return self._clock()

    def issue(self, wallet_address: str) -> Challenge:
        """Issue a fresh challenge, superseding any previous one for the wallet."""
        for attempt in range(1, ISSUE_ATTEMPTS + 1):
            now = self._clock()
            nonce = generate_nonce()
            expires_at = now + self.ttl_seconds
            challenge = Challenge(
                wallet_address=wallet_address,
                nonce=nonce,
                message=build_challenge_message(wallet_address, nonce, expires_at),
                issued_at=now,
                expires_at=expires_at,
            )
            try:
                self.db.query(AuthChallenge).filter(
                    AuthChallenge.wallet_address == wallet_address
                ).delete(synchronize_session=False)
                self.db.add(
                    AuthChallenge(
                        nonce=challenge.nonce,
                        wallet_address=challenge.wallet_address,
                        message=challenge.message,
                        issued_at=challenge.issued_at,
                        expires_at=challenge.expires_at,
                        consumed=False,
                    )
                )
                self.db.commit()
                return challenge
            except IntegrityError:
                # another request issued for the same wallet in between
                self.db.rollback()
                logger.info("challenge issue collided for %s (attempt %d)", wallet_address, attempt)
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise StorageUnavailable("Could not store challenge", wallet_address=wallet_address) from exc

        raise StorageUnavailable("Could not store challenge", wallet_address=wallet_address)

    def current(self, wallet_address: str) -> Optional[Challenge]:
        """Return the wallet's challenge in whatever state it is, or None."""
        try:
            record = (
                self.db.query(AuthChallenge)
                .filter(AuthChallenge.wallet_address == wallet_address)
                .first()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not read challenge", wallet_address=wallet_address) from exc
        return Challenge.from_record(record) if record else None

    def consume(self, wallet_address: str, nonce: str) -> Challenge:
        """
        Atomically mark a live challenge as consumed.

        Exactly one of any number of concurrent callers for the same
        (wallet_address, nonce) gets the challenge back; the others see
        ChallengeAlreadyConsumed.

        Raises:
            ChallengeNotFound: no such nonce for this wallet (never issued or superseded)
            ChallengeAlreadyConsumed: the challenge was already used
            ChallengeExpired: the challenge outlived its TTL
            StorageUnavailable: the store could not be reached
        """
        now = self._clock()
        try:
            updated = (
                self.db.query(AuthChallenge)
                .filter(
                    AuthChallenge.nonce == nonce,
                    AuthChallenge.wallet_address == wallet_address,
                    AuthChallenge.consumed.is_(False),
                    AuthChallenge.expires_at > now,
                )
                .update({AuthChallenge.consumed: True}, synchronize_session=False)
            )
            self.db.commit()
            record = self.db.get(AuthChallenge, nonce)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not consume challenge", wallet_address=wallet_address) from exc

        if updated == 1 and record is not None:
            return Challenge.from_record(record)

        if record is None or record.wallet_address != wallet_address:
            raise ChallengeNotFound(wallet_address=wallet_address)
        if record.consumed:
            raise ChallengeAlreadyConsumed(wallet_address=wallet_address)
        raise ChallengeExpired(wallet_address=wallet_address)

    def purge_expired(self, now: Optional[int] = None) -> int:
        """Delete expired challenges. Only reclaims storage; expiry is enforced on read."""
        now = self._clock() if now is None else now
        try:
            deleted = (
                self.db.query(AuthChallenge)
                .filter(AuthChallenge.expires_at <= now)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable("Could not purge challenges") from exc
        if deleted:
            logger.info("purged %d expired challenges", deleted)
        return deleted
