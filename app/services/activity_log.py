"""
Append-only activity log.

Every security-relevant and usage action is written here. Writes are
best-effort: when the store is unavailable the entry is kept in a bounded
in-memory buffer and retried with exponential backoff by a background
thread, so a logging failure never fails the caller's operation.

Entry ids are assigned by the writer, which makes a retried insert
idempotent: a duplicate key means the first attempt already landed.
"""

import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import InvalidActivityType, StorageUnavailable
from app.db.session import SessionLocal
from app.models.activity import ActivityLogRecord

logger = logging.getLogger(__name__)


class ActivityType(str, Enum):
    # Authentication events
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_ATTEMPT = "login_attempt"
    SESSION_REFRESH = "session_refresh"
    WALLET_CONNECT = "wallet_connect"
    WALLET_DISCONNECT = "wallet_disconnect"
    WALLET_SIGN = "wallet_sign"
    SIGNUP = "signup"

    # Page navigation events
    PAGE_VIEW = "page_view"

    # Feature usage events
    FEATURE_USE = "feature_use"

    # Card interaction events
    CARD_VIEW = "card_view"
    CARD_CALCULATION = "card_calculation"
    CARD_REFRESH = "card_refresh"

    # Error events
    ERROR = "error"


# types an authenticated client may record itself
USAGE_ACTIVITY_TYPES = frozenset(
    {
        ActivityType.PAGE_VIEW,
        ActivityType.FEATURE_USE,
        ActivityType.CARD_VIEW,
        ActivityType.CARD_CALCULATION,
        ActivityType.CARD_REFRESH,
        ActivityType.ERROR,
    }
)


def parse_activity_type(value: Any) -> ActivityType:
    try:
        return ActivityType(value)
    except ValueError:
        raise InvalidActivityType(f"Unknown activity type: {value!r}")


def _epoch_now() -> int:
    return int(time.time())


def _normalize_wallet(wallet_address: Optional[str]) -> Optional[str]:
    if not wallet_address:
        return None
    return wallet_address.strip().lower()


def _plain_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # detached JSON copy: callers cannot mutate what was logged
    return json.loads(json.dumps(details or {}, default=str))


@dataclass(frozen=True)
class ActivityLogEntry:
    id: str
    activity_type: ActivityType
    timestamp: int
    user_id: Optional[str] = None
    wallet_address: Optional[str] = None
    session_id: Optional[str] = None
    target_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: ActivityLogRecord) -> "ActivityLogEntry":
        return cls(
            id=record.id,
            activity_type=ActivityType(record.activity_type),
            timestamp=record.timestamp,
            user_id=record.user_id,
            wallet_address=record.wallet_address,
            session_id=record.session_id,
            target_id=record.target_id,
            details=_plain_details(record.details),
        )


@dataclass(frozen=True)
class ActivityFilter:
    wallet_address: Optional[str] = None
    user_id: Optional[str] = None
    activity_type: Optional[ActivityType] = None
    since: Optional[int] = None  # inclusive, epoch seconds
    until: Optional[int] = None  # exclusive, epoch seconds
    limit: Optional[int] = 100


class ActivityLog:
    """
    Activity log writer and reader.

    One instance is shared by the whole application (see dependencies.get_activity_log);
    it opens its own database sessions so it never joins the caller's transaction.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        buffer_size: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        flush_interval_seconds: Optional[float] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._session_factory = session_factory
        self._buffer: Deque[Dict[str, Any]] = deque(
            maxlen=buffer_size or settings.ACTIVITY_BUFFER_SIZE
        )
        self._retry_base = retry_base_seconds or settings.ACTIVITY_RETRY_BASE_SECONDS
        self._retry_max = retry_max_seconds or settings.ACTIVITY_RETRY_MAX_SECONDS
        self._flush_interval = flush_interval_seconds or settings.ACTIVITY_FLUSH_INTERVAL_SECONDS
        self._clock = clock or _epoch_now

        # Thread safety
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

        # Backoff state
        self._retry_delay = 0.0
        self._next_retry_at = 0.0

        # Background flush state
        self._running = False
        self._stop_event = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> int:
        """Entries waiting in the local buffer."""
        with self._lock:
            return len(self._buffer)

    def append(
        self,
        activity_type: ActivityType | str,
        *,
        user_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        session_id: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """
        Append an entry and return its id.

        Storage failures are not raised: the entry is buffered and retried.

        Raises:
            InvalidActivityType: activity_type is not an ActivityType value
        """
        activity_type = parse_activity_type(activity_type)
        entry = {
            "id": str(uuid.uuid4()),
            "activity_type": activity_type.value,
            "timestamp": int(timestamp) if timestamp is not None else self._clock(),
            "user_id": user_id,
            "wallet_address": _normalize_wallet(wallet_address),
            "session_id": session_id,
            "target_id": target_id,
            "details": _plain_details(details),
        }

        with self._lock:
            backlog = bool(self._buffer)
        if backlog:
            # store is known to be failing, leave the retry to the flusher
            self._buffer_entry(entry)
            return entry["id"]

        try:
            self._insert(entry)
        except SQLAlchemyError as exc:
            logger.warning(
                "activity log unavailable, buffering %s entry: %s", entry["activity_type"], exc
            )
            self._buffer_entry(entry)
            with self._lock:
                self._schedule_retry()
        return entry["id"]

    def _insert(self, entry: Dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            db.add(ActivityLogRecord(**entry))
            db.commit()
        except IntegrityError:
            # same id already written by an earlier attempt
            db.rollback()
            logger.debug("activity entry %s already stored", entry["id"])
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _buffer_entry(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            if len(self._buffer) == self._buffer.maxlen:
                dropped = self._buffer[0]
                logger.error(
                    "activity buffer full, dropping %s entry %s",
                    dropped["activity_type"],
                    dropped["id"],
                )
            self._buffer.append(entry)

    def _schedule_retry(self) -> None:
        """Double the retry delay. Caller holds self._lock."""
        self._retry_delay = min(max(self._retry_base, self._retry_delay * 2), self._retry_max)
        self._next_retry_at = time.monotonic() + self._retry_delay

    def retry_due(self) -> bool:
        with self._lock:
            return time.monotonic() >= self._next_retry_at

    def flush(self) -> int:
        """
        Write buffered entries oldest first until the buffer is empty or the
        store fails again. Returns the number of entries written.
        """
        written = 0
        with self._flush_lock:
            while True:
                with self._lock:
                    if not self._buffer:
                        self._retry_delay = 0.0
                        self._next_retry_at = 0.0
                        break
                    entry = self._buffer[0]

                try:
                    self._insert(entry)
                except SQLAlchemyError as exc:
                    with self._lock:
                        self._schedule_retry()
                        delay = self._retry_delay
                    logger.warning(
                        "activity flush failed, %d entries pending, retry in %.1fs: %s",
                        self.pending,
                        delay,
                        exc,
                    )
                    break

                with self._lock:
                    # the head may have been pushed out while we were writing
                    if self._buffer and self._buffer[0] is entry:
                        self._buffer.popleft()
                written += 1

        if written:
            logger.info("flushed %d buffered activity entries", written)
        return written

    def _flush_loop(self) -> None:
        while not self._stop_event.wait(self._flush_interval):
            if not self.pending or not self.retry_due():
                continue
            try:
                self.flush()
            except Exception:
                logger.exception("error in activity flush loop")

    def start_background_flush(self) -> None:
        """Start the background retry thread."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            daemon=True,
            name="ActivityLogFlush",
        )
        self._flush_thread.start()

    def stop_background_flush(self) -> None:
        """Stop the background thread and make a last attempt to write the buffer."""
        self._running = False
        self._stop_event.set()
        if self._flush_thread:
            self._flush_thread.join(timeout=5)
            self._flush_thread = None
        if self.pending:
            self.flush()

    def get(self, entry_id: str) -> Optional[ActivityLogEntry]:
        db = self._session_factory()
        try:
            record = db.get(ActivityLogRecord, entry_id)
            return ActivityLogEntry.from_record(record) if record else None
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Could not read activity log") from exc
        finally:
            db.close()

    def query(self, filters: Optional[ActivityFilter] = None) -> Iterator[ActivityLogEntry]:
        """
        Lazily iterate entries matching filters, newest first.

        The database session stays open until the iterator is exhausted or closed.
        """
        filters = filters or ActivityFilter()
        db = self._session_factory()
        try:
            query = db.query(ActivityLogRecord)
            if filters.wallet_address:
                query = query.filter(
                    ActivityLogRecord.wallet_address == _normalize_wallet(filters.wallet_address)
                )
            if filters.user_id:
                query = query.filter(ActivityLogRecord.user_id == filters.user_id)
            if filters.activity_type:
                activity_type = parse_activity_type(filters.activity_type)
                query = query.filter(ActivityLogRecord.activity_type == activity_type.value)
            if filters.since is not None:
                query = query.filter(ActivityLogRecord.timestamp >= filters.since)
            if filters.until is not None:
                query = query.filter(ActivityLogRecord.timestamp < filters.until)

            query = query.order_by(
                ActivityLogRecord.timestamp.desc(), ActivityLogRecord.id.desc()
            )
            if filters.limit:
                query = query.limit(filters.limit)

            for record in query.yield_per(100):
                yield ActivityLogEntry.from_record(record)
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Could not read activity log") from exc
        finally:
            db.close()
