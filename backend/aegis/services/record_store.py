"""
Durable local queue of incident reports.
Reports are captured offline into SQLite and stay Pending until the sync engine
has confirmed the cloud accepted them.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..core.errors import StoreError
from ..models.base import SessionLocal, utcnow
from ..models.report import LocalReport, LocationAccuracy

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"


@dataclass
class IncidentRecord:
    """A field report as the sync pipeline sees it."""
    type: str
    severity: str
    latitude: float
    longitude: float
    timestamp: datetime
    description: Optional[str] = None
    location_accuracy: str = LocationAccuracy.PRECISE
    is_sos: bool = False
    photo_data: Optional[str] = None
    people_affected: int = 0
    resources_needed: List[str] = field(default_factory=list)
    local_id: Optional[int] = None  # Assigned by RecordStore.append
    sync_state: SyncState = SyncState.PENDING
    remote_id: Optional[str] = None

    def with_photo(self, photo_data: Optional[str]) -> "IncidentRecord":
        """Copy of this record carrying ``photo_data`` instead of the raw capture."""
        return replace(self, photo_data=photo_data)

    @classmethod
    def from_row(cls, row: LocalReport) -> "IncidentRecord":
        return cls(
            local_id=row.id,
            type=row.type,
            severity=row.severity,
            description=row.description,
            latitude=row.latitude,
            longitude=row.longitude,
            location_accuracy=row.location_accuracy,
            timestamp=_as_utc(row.timestamp),
            is_sos=bool(row.is_sos),
            photo_data=row.photo_data,
            people_affected=row.people_affected or 0,
            resources_needed=list(row.resources_needed or []),
            sync_state=SyncState(row.sync_state),
            remote_id=row.remote_id,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_column(value: datetime) -> datetime:
    """SQLite keeps naive datetimes; store everything as naive UTC."""
    return _as_utc(value).replace(tzinfo=None)


PendingListener = Callable[[int], None]


class RecordStore:
    """
    SQLAlchemy-backed incident queue.

    Every call opens its own session so reads always reflect committed writes;
    the sync engine treats ``query_pending`` as ground truth before each upload.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal
        self._listeners: List[PendingListener] = []

    # ------------------------------------------------------------------
    # Queue contract
    # ------------------------------------------------------------------

    def append(self, record: IncidentRecord) -> int:
        """Persist a new Pending report and return its local id."""
        row = LocalReport(
            type=record.type,
            severity=record.severity,
            description=record.description,
            latitude=record.latitude,
            longitude=record.longitude,
            location_accuracy=record.location_accuracy,
            timestamp=_to_column(record.timestamp),
            is_sos=record.is_sos,
            photo_data=record.photo_data,
            people_affected=record.people_affected,
            resources_needed=list(record.resources_needed),
            sync_state=SyncState.PENDING.value,
        )
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            local_id = row.id
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError(f"Could not save report: {exc}") from exc
        finally:
            db.close()

        logger.info("Queued %s report %s (severity=%s)", record.type, local_id, record.severity)
        self._notify_listeners()
        return local_id

    def query_pending(self) -> List[IncidentRecord]:
        """All Pending reports, oldest first."""
        db = self._session_factory()
        try:
            rows = (
                db.query(LocalReport)
                .filter(LocalReport.sync_state == SyncState.PENDING.value)
                .order_by(LocalReport.id)
                .all()
            )
            return [IncidentRecord.from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not read pending reports: {exc}") from exc
        finally:
            db.close()

    def mark_synced(self, local_id: int, remote_id: Optional[str] = None) -> bool:
        """
        Flip a report from Pending to Synced.
        Returns False when the report is missing or was already Synced.
        """
        db = self._session_factory()
        try:
            result = db.execute(
                update(LocalReport)
                .where(LocalReport.id == local_id)
                .where(LocalReport.sync_state == SyncState.PENDING.value)
                .values(
                    sync_state=SyncState.SYNCED.value,
                    synced_at=utcnow(),
                    remote_id=remote_id,
                    updated_at=utcnow(),
                )
            )
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError(f"Could not mark report {local_id} synced: {exc}") from exc
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Read helpers for the field client
    # ------------------------------------------------------------------

    def get(self, local_id: int) -> Optional[IncidentRecord]:
        db = self._session_factory()
        try:
            row = db.query(LocalReport).filter(LocalReport.id == local_id).first()
            return IncidentRecord.from_row(row) if row else None
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not read report {local_id}: {exc}") from exc
        finally:
            db.close()

    def list_recent(self, limit: int = 50) -> List[IncidentRecord]:
        """Newest reports first, synced or not."""
        db = self._session_factory()
        try:
            rows = db.query(LocalReport).order_by(LocalReport.id.desc()).limit(limit).all()
            return [IncidentRecord.from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not list reports: {exc}") from exc
        finally:
            db.close()

    def count_pending(self) -> int:
        db = self._session_factory()
        try:
            return (
                db.query(LocalReport)
                .filter(LocalReport.sync_state == SyncState.PENDING.value)
                .count()
            )
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not count pending reports: {exc}") from exc
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Live change push
    # ------------------------------------------------------------------

    def subscribe(self, listener: PendingListener) -> Callable[[], None]:
        """
        Call ``listener(pending_count)`` after every successful append.
        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_listeners(self) -> None:
        if not self._listeners:
            return
        try:
            pending = self.count_pending()
        except StoreError as exc:
            logger.warning("Skipping change notification, pending count unavailable: %s", exc)
            return
        for listener in list(self._listeners):
            try:
                listener(pending)
            except Exception as exc:
                logger.warning("Record store listener failed: %s", exc)


record_store = RecordStore()


def get_record_store() -> RecordStore:
    return record_store
