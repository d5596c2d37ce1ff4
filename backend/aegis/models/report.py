from sqlalchemy import Column, String, Float, Text, Boolean, Integer, DateTime, JSON
from .base import Base, TimestampMixin


class IncidentType:
    FLOOD = "Flood"
    FIRE = "Fire"
    LANDSLIDE = "Landslide"
    BLOCKED_ROAD = "Blocked Road"
    EMERGENCY_SOS = "Emergency SOS"

    ALL = [FLOOD, FIRE, LANDSLIDE, BLOCKED_ROAD, EMERGENCY_SOS]


class Severity:
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    ALL = [LOW, MEDIUM, HIGH, CRITICAL]
    ALERTING = {HIGH.lower(), CRITICAL.lower()}


class LocationAccuracy:
    PRECISE = "precise"
    UNKNOWN = "unknown"   # Fallback coordinates, no GPS fix


class ResourceType:
    MEDICAL = "medical"
    FOOD = "food"
    SHELTER = "shelter"
    RESCUE = "rescue"
    EVACUATION = "evacuation"
    EQUIPMENT = "equipment"

    ALL = [MEDICAL, FOOD, SHELTER, RESCUE, EVACUATION, EQUIPMENT]


class IncidentStatus:
    """Remote-side workflow state, set by dashboard operators."""
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"

    ALL = [PENDING, IN_PROGRESS, RESOLVED]


class LocalReport(Base, TimestampMixin):
    """A report captured on the device, queued until the cloud accepts it."""
    __tablename__ = "reports"
    # AUTOINCREMENT keeps SQLite from handing out a rowid twice
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False, index=True)
    description = Column(Text, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_accuracy = Column(String(20), nullable=False, default=LocationAccuracy.PRECISE)
    timestamp = Column(DateTime, nullable=False, index=True)

    # Added in schema v2
    is_sos = Column(Boolean, nullable=False, default=False)
    photo_data = Column(Text, nullable=True)  # Raw capture as a data URL
    people_affected = Column(Integer, nullable=False, default=0)
    resources_needed = Column(JSON, nullable=True)

    sync_state = Column(String(20), nullable=False, default="pending", index=True)
    synced_at = Column(DateTime, nullable=True)
    remote_id = Column(String(200), nullable=True)
