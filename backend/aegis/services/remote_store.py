"""
Remote incident store.
Uploads synced reports to the shared cloud collection the command dashboard
listens on. Firestore is reached over its REST API; an in-memory store stands
in when no project is configured.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.errors import PublishError
from ..models.base import generate_uuid
from ..models.report import IncidentStatus
from .record_store import IncidentRecord

logger = logging.getLogger(__name__)


def build_remote_document(record: IncidentRecord) -> Dict[str, Any]:
    """Cloud shape of a report. Local bookkeeping (id, sync state) never leaves the device."""
    return {
        "type": record.type,
        "severity": record.severity,
        "description": record.description,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "locationAccuracy": record.location_accuracy,
        "timestamp": record.timestamp,
        "isSOS": record.is_sos,
        "photoData": record.photo_data,
        "peopleAffected": record.people_affected,
        "resourcesNeeded": list(record.resources_needed),
        "status": IncidentStatus.PENDING,
        "updatedAt": None,
    }


# ----------------------------
# Firestore value encoding
# ----------------------------

def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def encode_value(value: Any) -> Dict[str, Any]:
    """Encode a Python value as a Firestore REST ``Value``."""
    if value is None:
        return {"nullValue": "NULL_VALUE"}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": _format_timestamp(value)}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        values = [encode_value(v) for v in value]
        return {"arrayValue": {"values": values} if values else {}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot encode {type(value).__name__} for Firestore")


def encode_fields(document: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {key: encode_value(value) for key, value in document.items()}


# ----------------------------
# Publishers
# ----------------------------

class FirestorePublisher:
    """Append-only writer for the Firestore ``reports`` collection."""

    def __init__(
        self,
        project_id: str,
        api_key: Optional[str] = None,
        collection: str = "reports",
        base_url: str = "https://firestore.googleapis.com/v1",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.project_id = project_id
        self.api_key = api_key
        self.collection = collection
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def collection_url(self) -> str:
        return (
            f"{self.base_url}/projects/{self.project_id}"
            f"/databases/(default)/documents/{self.collection}"
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _params(self, extra: Optional[List] = None) -> List:
        params = list(extra or [])
        if self.api_key:
            params.append(("key", self.api_key))
        return params

    async def publish(self, record: IncidentRecord) -> str:
        """Create a new document and return its generated id."""
        body = {"fields": encode_fields(build_remote_document(record))}
        try:
            async with self._client() as client:
                resp = await client.post(self.collection_url, params=self._params(), json=body)
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise PublishError(
                f"Firestore rejected report {record.local_id}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PublishError(f"Firestore unreachable for report {record.local_id}: {exc}") from exc
        except ValueError as exc:
            raise PublishError(f"Unreadable Firestore response for report {record.local_id}") from exc

        name = payload.get("name") if isinstance(payload, dict) else None
        if not name:
            raise PublishError(f"Firestore response for report {record.local_id} has no document name")
        return name.rsplit("/", 1)[-1]

    async def update_status(self, remote_id: str, status: str) -> None:
        """Dashboard operator transition; stamps ``updatedAt``."""
        if status not in IncidentStatus.ALL:
            raise ValueError(f"Unknown incident status: {status}")
        fields = {"status": status, "updatedAt": datetime.now(timezone.utc)}
        mask = [("updateMask.fieldPaths", name) for name in fields]
        try:
            async with self._client() as client:
                resp = await client.patch(
                    f"{self.collection_url}/{remote_id}",
                    params=self._params(mask),
                    json={"fields": encode_fields(fields)},
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PublishError(f"Status update failed for {remote_id}: {exc}") from exc


RemoteListener = Callable[[str, Dict[str, Any]], None]


class InMemoryRemoteStore:
    """
    Process-local remote store for development and tests.
    Keeps documents in insertion order and pushes every change to subscribers,
    the way the dashboard feed receives snapshots.
    """

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[RemoteListener] = []

    async def publish(self, record: IncidentRecord) -> str:
        remote_id = generate_uuid()
        self.documents[remote_id] = build_remote_document(record)
        self._emit(remote_id)
        return remote_id

    async def update_status(self, remote_id: str, status: str) -> None:
        if status not in IncidentStatus.ALL:
            raise ValueError(f"Unknown incident status: {status}")
        doc = self.documents.get(remote_id)
        if doc is None:
            raise PublishError(f"No remote report {remote_id}")
        doc["status"] = status
        doc["updatedAt"] = datetime.now(timezone.utc)
        self._emit(remote_id)

    def subscribe(self, listener: RemoteListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, remote_id: str) -> None:
        snapshot = dict(self.documents[remote_id])
        for listener in list(self._listeners):
            try:
                listener(remote_id, snapshot)
            except Exception as exc:
                logger.warning("Remote store subscriber failed: %s", exc)


def build_publisher():
    """Firestore when a project is configured and mock mode is off, else in-memory."""
    if settings.REMOTE_MOCK_MODE or not settings.FIRESTORE_PROJECT_ID:
        logger.info("Remote store in mock mode; uploads stay in memory")
        return InMemoryRemoteStore()
    return FirestorePublisher(
        project_id=settings.FIRESTORE_PROJECT_ID,
        api_key=settings.FIRESTORE_API_KEY,
        collection=settings.FIRESTORE_COLLECTION,
        base_url=settings.FIRESTORE_BASE_URL,
        timeout=settings.REMOTE_TIMEOUT,
    )
