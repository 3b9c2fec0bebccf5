"""Test doubles shared across the test modules."""

import io
import uuid
from datetime import datetime, timedelta, timezone

from PIL import Image

from app.models.database import calculate_distance_meters
from app.models.repository import _parse_uuid


class InMemoryAlertRepository:
    """AlertRepository double; distances use the haversine formula."""

    def __init__(self):
        self.alerts = {}
        self.locked = []

    async def add(self, alert):
        now = datetime.now(timezone.utc) + timedelta(microseconds=len(self.alerts))
        if alert.id is None:
            alert.id = uuid.uuid4()
        alert.created_at = alert.created_at or now
        alert.updated_at = alert.updated_at or now
        self.alerts[alert.id] = alert
        return alert

    async def get(self, alert_id):
        parsed = _parse_uuid(alert_id)
        if parsed is None:
            return None
        return self.alerts.get(parsed)

    async def get_for_update(self, alert_id):
        self.locked.append(str(alert_id))
        return await self.get(alert_id)

    async def list_by_citizen(self, citizen_id, limit=None, offset=0):
        owned = sorted(
            (a for a in self.alerts.values() if a.citizen_id == citizen_id),
            key=lambda a: a.created_at,
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return owned[offset:end]

    async def list_nearby(self, longitude, latitude, max_distance_meters):
        ranked = []
        for alert in self.alerts.values():
            distance = calculate_distance_meters(longitude, latitude, alert.longitude, alert.latitude)
            if distance <= max_distance_meters:
                ranked.append((distance, alert))
        ranked.sort(key=lambda pair: pair[0])
        return [alert for _, alert in ranked]

    async def save(self, alert):
        return alert


class UploadStub:
    """Minimal stand-in for an incoming multipart file."""

    def __init__(self, filename, content_type, content: bytes, size=None):
        self.filename = filename
        self.content_type = content_type
        self.size = size
        self._buffer = io.BytesIO(content)

    async def read(self, size=-1):
        return self._buffer.read(size)


def image_bytes(size=(640, 480), color=(200, 40, 40), format="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=format)
    return buffer.getvalue()
