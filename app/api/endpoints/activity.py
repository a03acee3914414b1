from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core import wallet_auth
from app.core.dependencies import get_activity_log, get_auth_service, get_current_session, require_admin
from app.core.exceptions import InvalidActivityType, InvalidWalletAddress, StorageUnavailable
from app.schemas.activity import (
    ActivityCreated,
    ActivityEntryResponse,
    ActivityListResponse,
    ActivityRequest,
)
from app.services.activity_log import ActivityFilter, ActivityLog, parse_activity_type
from app.services.auth_service import AuthService
from app.services.session_manager import AuthSession

router = APIRouter()
group_tags: List[str] = ["Activity"]


"""
activity audit trail

write (wallet session):
- input: activity_type, target_id(optional), details(optional)
- output: id of the new entry

read (admin, http basic):
- input: wallet_address, type, user_id, since, until (epoch seconds), limit default 100
- output: entries, newest first
"""


@router.post(
    "",
    tags=group_tags,
    response_model=ActivityCreated,
    status_code=status.HTTP_201_CREATED,
)
def record_activity(
    body: ActivityRequest,
    session: AuthSession = Depends(get_current_session),
    auth: AuthService = Depends(get_auth_service),
) -> ActivityCreated:
    """Record a page view, feature use, card event or client error for the current session."""
    try:
        entry_id = auth.record_activity(
            session, body.activity_type, target_id=body.target_id, details=body.details
        )
    except InvalidActivityType as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ActivityCreated(id=entry_id)


@router.get(
    "",
    tags=group_tags,
    response_model=ActivityListResponse,
    status_code=status.HTTP_200_OK,
)
def list_activity(
    wallet_address: Optional[str] = Query(default=None, description="Filter by wallet address"),
    type: Optional[str] = Query(default=None, description="Filter by activity type, e.g. wallet_connect"),
    user_id: Optional[str] = Query(default=None, description="Filter by user id"),
    since: Optional[int] = Query(default=None, ge=0, description="Only entries at or after this epoch second"),
    until: Optional[int] = Query(default=None, ge=0, description="Only entries before this epoch second"),
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum number of entries, default: 100, max: 1000"),
    _admin: str = Depends(require_admin),
    activity_log: ActivityLog = Depends(get_activity_log),
) -> ActivityListResponse:
    """
    Query the activity log.

    Returns:
    - Entries ordered by timestamp DESC
    - Number of entries returned
    """
    try:
        filters = ActivityFilter(
            wallet_address=wallet_auth.canonical_address(wallet_address) if wallet_address else None,
            user_id=user_id,
            activity_type=parse_activity_type(type) if type else None,
            since=since,
            until=until,
            limit=limit,
        )
    except InvalidWalletAddress:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid wallet address")
    except InvalidActivityType as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    try:
        entries = [ActivityEntryResponse.from_entry(entry) for entry in activity_log.query(filters)]
    except StorageUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Activity log unavailable")

    return ActivityListResponse(entries=entries, total=len(entries))


@router.get(
    "/{entry_id}",
    tags=group_tags,
    response_model=ActivityEntryResponse,
)
def get_activity(
    entry_id: str,
    _admin: str = Depends(require_admin),
    activity_log: ActivityLog = Depends(get_activity_log),
) -> ActivityEntryResponse:
    try:
        entry = activity_log.get(entry_id)
    except StorageUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Activity log unavailable")
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity entry not found")
    return ActivityEntryResponse.from_entry(entry)
