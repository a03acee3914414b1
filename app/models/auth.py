from sqlalchemy import BigInteger, Boolean, Column, String, Text, false

from app.core.config import settings
from app.db.base import Base


class AuthChallenge(Base):
    """Model for single-use wallet authentication challenges.

    At most one row per wallet: issuing a new challenge replaces the old row.
    Example:
    {
        "nonce": "a1b2c3...",
        "wallet_address": "0xabc...",
        "message": "Sign this message to verify your wallet ownership: 0xabc...",
        "issued_at": 1763461800,
        "expires_at": 1763462100,
        "consumed": false
    }
    """

    __tablename__ = "auth_challenge"
    __table_args__ = {"schema": settings.AUTH_SCHEMA}

    nonce = Column(String(128), primary_key=True)
    wallet_address = Column(String(255), nullable=False, unique=True)
    message = Column(Text, nullable=False)
    issued_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, index=True)
    consumed = Column(Boolean, nullable=False, default=False, server_default=false())


class WalletSession(Base):
    """Model for wallet sessions, one per consumed challenge."""

    __tablename__ = "wallet_session"
    __table_args__ = {"schema": settings.AUTH_SCHEMA}

    session_id = Column(String(128), primary_key=True)
    wallet_address = Column(String(255), nullable=False, index=True)
    challenge_nonce = Column(String(128), nullable=False, unique=True)
    created_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, index=True)
    revoked = Column(Boolean, nullable=False, default=False, server_default=false())
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
