from sqlalchemy import JSON, BigInteger, Column, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from app.core.config import settings
from app.db.base import Base


class ActivityLogRecord(Base):
    """Model for the append-only activity log

    Example:
    {
        "id": "550e8400-e29b-41d4-a716-446655440000",
        "activity_type": "card_view",
        "timestamp": 1763461800,
        "user_id": null,
        "wallet_address": "0xabc...",
        "session_id": "Vb0sE...",
        "target_id": "degen_score",
        "details": { "source": "dashboard" }
    }
    """

    __tablename__ = "activity_log"
    __table_args__ = (
        Index("ix_activity_log_wallet_timestamp", "wallet_address", "timestamp"),
        {"schema": settings.AUTH_SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    activity_type = Column(String(64), nullable=False, index=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    wallet_address = Column(String(255), nullable=True)
    session_id = Column(String(128), nullable=True)
    target_id = Column(Text, nullable=True)
    details = Column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True
    )
