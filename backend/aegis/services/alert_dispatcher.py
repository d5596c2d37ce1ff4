"""
Webhook alerts for urgent field reports.
Fired right after a report reaches the cloud. Delivery is best-effort: a dead
webhook never holds up or fails a sync.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.errors import NotifyError
from ..models.report import LocationAccuracy, Severity
from .record_store import IncidentRecord

logger = logging.getLogger(__name__)

# Dashboard severity palette as embed colors
SEVERITY_COLORS = {
    "critical": 0xFF3838,
    "high": 0xFFB302,
    "medium": 0xFCE83A,
    "low": 0x56F000,
}
DEFAULT_COLOR = 0x6B7280


# ----------------------------
# Decision helpers
# ----------------------------

def should_alert(record: IncidentRecord) -> bool:
    """SOS always alerts; otherwise only High and Critical do."""
    if record.is_sos:
        return True
    return (record.severity or "").lower() in Severity.ALERTING


# ----------------------------
# Formatters
# ----------------------------

def _location_field(record: IncidentRecord) -> str:
    link = f"https://www.google.com/maps?q={record.latitude},{record.longitude}"
    text = f"[{record.latitude:.5f}, {record.longitude:.5f}]({link})"
    if record.location_accuracy == LocationAccuracy.UNKNOWN:
        text += " (approximate, no GPS fix)"
    return text


def build_alert_payload(record: IncidentRecord, username: str = "Aegis Field Alert") -> Dict[str, Any]:
    """Discord-compatible embed describing the report."""
    title = f"Type: {record.type}"
    if record.is_sos:
        title = f"🆘 SOS | {title}"
        color = SEVERITY_COLORS["critical"]
    else:
        color = SEVERITY_COLORS.get((record.severity or "").lower(), DEFAULT_COLOR)

    fields: List[Dict[str, Any]] = [
        {"name": "Type", "value": record.type, "inline": True},
        {"name": "Severity", "value": record.severity, "inline": True},
        {"name": "Location", "value": _location_field(record), "inline": False},
    ]
    if record.people_affected:
        fields.append({"name": "People Affected", "value": str(record.people_affected), "inline": True})
    if record.resources_needed:
        fields.append({
            "name": "Resources Needed",
            "value": ", ".join(r.capitalize() for r in record.resources_needed),
            "inline": True,
        })
    fields.append({
        "name": "Description",
        "value": record.description or "No description provided",
        "inline": False,
    })
    fields.append({
        "name": "Photo",
        "value": "Attached" if record.photo_data else "None",
        "inline": True,
    })

    return {
        "username": username,
        "embeds": [{
            "title": title,
            "color": color,
            "fields": fields,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }],
    }


# ----------------------------
# Dispatcher
# ----------------------------

class AlertDispatcher:
    """Posts alerts to a webhook. ``notify`` never raises."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        username: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.ALERT_WEBHOOK_URL
        self.username = username or settings.ALERT_USERNAME
        self.timeout = timeout if timeout is not None else settings.ALERT_TIMEOUT
        self._transport = transport

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NotifyError(str(exc)) from exc

    async def notify(self, record: IncidentRecord) -> None:
        if not should_alert(record):
            return
        if not self.webhook_url:
            logger.debug("No alert webhook configured; skipping alert for report %s", record.local_id)
            return
        try:
            await self._post(build_alert_payload(record, self.username))
        except NotifyError as exc:
            logger.error("Alert delivery failed for report %s: %s", record.local_id, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected alert failure for report %s: %s", record.local_id, exc)
            return
        logger.info("Alert sent for %s report %s", record.severity, record.local_id)
