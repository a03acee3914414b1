from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.schemas.my_base_model import CustomBaseModel
from app.services.activity_log import ActivityLogEntry


class ActivityRequest(BaseModel):
    """Request model for recording a usage event - input validation"""

    activity_type: str = Field(..., description="page_view, feature_use, card_view, card_calculation, card_refresh or error")
    target_id: Optional[str] = Field(None, description="Page, feature or card the event is about")
    details: Dict[str, Any] = Field(default_factory=dict, description="Free-form diagnostic context")


class ActivityCreated(CustomBaseModel):
    """Response model for a recorded event - output"""

    id: str = ""


class ActivityEntryResponse(CustomBaseModel):
    """Activity log entry"""

    id: str = ""
    activity_type: str = ""
    timestamp: int = 0
    user_id: Optional[str] = None
    wallet_address: Optional[str] = None
    session_id: Optional[str] = None
    target_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: ActivityLogEntry) -> "ActivityEntryResponse":
        return cls(
            id=entry.id,
            activity_type=entry.activity_type.value,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            wallet_address=entry.wallet_address,
            session_id=entry.session_id,
            target_id=entry.target_id,
            details=entry.details,
        )


class ActivityListResponse(CustomBaseModel):
    """Response model for activity queries, newest first"""

    entries: List[ActivityEntryResponse] = Field(default_factory=list)
    total: int = 0
