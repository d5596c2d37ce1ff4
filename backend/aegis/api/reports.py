"""Field report submission and the device's local report history."""
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from ..core.config import settings
from ..core.errors import StoreError
from ..models.report import IncidentType, LocationAccuracy, ResourceType, Severity
from ..services.record_store import IncidentRecord, RecordStore, get_record_store

router = APIRouter(prefix="/reports", tags=["reports"])


# ── Request / Response schemas ──────────────────────────────────────────────

class ReportCreate(BaseModel):
    type: str = IncidentType.FLOOD
    severity: str = Severity.MEDIUM
    description: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    is_sos: bool = False
    photo_data: Optional[str] = Field(None, description="Photo as a data URL or base64")
    people_affected: int = Field(0, ge=0)
    resources_needed: List[str] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in IncidentType.ALL:
            raise ValueError(f"type must be one of {IncidentType.ALL}")
        return value

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, value: str) -> str:
        if value not in Severity.ALL:
            raise ValueError(f"severity must be one of {Severity.ALL}")
        return value

    @field_validator("resources_needed")
    @classmethod
    def _known_resources(cls, value: List[str]) -> List[str]:
        unknown = [r for r in value if r not in ResourceType.ALL]
        if unknown:
            raise ValueError(f"unknown resources {unknown}; allowed: {ResourceType.ALL}")
        return list(dict.fromkeys(value))

    @field_validator("description")
    @classmethod
    def _blank_description(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _both_coordinates(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class ReportResponse(BaseModel):
    local_id: int
    type: str
    severity: str
    description: Optional[str]
    latitude: float
    longitude: float
    location_accuracy: str
    timestamp: datetime
    is_sos: bool
    has_photo: bool
    people_affected: int
    resources_needed: List[str]
    sync_state: str
    remote_id: Optional[str]


def build_incident(report_in: ReportCreate, now: Optional[datetime] = None) -> IncidentRecord:
    """
    Turn a validated submission into a Pending record.
    Missing GPS falls back to the configured default location, tagged ``unknown``.
    """
    lat, lng = report_in.latitude, report_in.longitude
    if lat is None or lng is None:
        lat, lng = settings.FALLBACK_LATITUDE, settings.FALLBACK_LONGITUDE
    is_fallback = lat == settings.FALLBACK_LATITUDE and lng == settings.FALLBACK_LONGITUDE

    return IncidentRecord(
        type=report_in.type,
        severity=report_in.severity,
        description=report_in.description,
        latitude=lat,
        longitude=lng,
        location_accuracy=LocationAccuracy.UNKNOWN if is_fallback else LocationAccuracy.PRECISE,
        timestamp=now or datetime.now(timezone.utc),
        is_sos=report_in.is_sos or report_in.type == IncidentType.EMERGENCY_SOS,
        photo_data=report_in.photo_data or None,
        people_affected=report_in.people_affected,
        resources_needed=list(report_in.resources_needed),
    )


def _to_response(record: IncidentRecord) -> ReportResponse:
    return ReportResponse(
        local_id=record.local_id,
        type=record.type,
        severity=record.severity,
        description=record.description,
        latitude=record.latitude,
        longitude=record.longitude,
        location_accuracy=record.location_accuracy,
        timestamp=record.timestamp,
        is_sos=record.is_sos,
        has_photo=bool(record.photo_data),
        people_affected=record.people_affected,
        resources_needed=record.resources_needed,
        sync_state=record.sync_state.value,
        remote_id=record.remote_id,
    )


# ── Routes ──────────────────────────────────────────────────────────────────

@router.post("/", response_model=ReportResponse, status_code=status.HTTP_201_CREATED)
def submit_report(
    report_in: ReportCreate,
    store: RecordStore = Depends(get_record_store),
):
    """Save a report locally. It is uploaded by the sync engine when online."""
    record = build_incident(report_in)
    try:
        local_id = store.append(record)
        saved = store.get(local_id)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _to_response(saved)


@router.get("/", response_model=List[ReportResponse])
def list_reports(
    limit: int = Query(50, ge=1, le=500),
    store: RecordStore = Depends(get_record_store),
):
    """Most recent local reports, newest first."""
    try:
        return [_to_response(r) for r in store.list_recent(limit)]
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("/pending-count")
def pending_count(store: RecordStore = Depends(get_record_store)):
    try:
        return {"pending": store.count_pending()}
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
