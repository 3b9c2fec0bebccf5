"""
Alert Service

Business operations over alerts:
- ingestion (coordinate validation, proof source resolution, anonymity)
- owner-scoped and proximity queries
- comments
- status transitions pushed by downstream services
"""

import json
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from app.core.config import settings
from app.core.exceptions import AlertNotFoundError, ValidationError
from app.core.metrics import ALERTS_CREATED, STATUS_UPDATES
from app.models.database import Alert, AlertStatus, create_point_from_coordinates
from app.models.repository import AlertRepository
from app.services.proof_processor import ProofProcessor
from app.services.proof_store import ProofStore

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

COORDINATES_MESSAGE = "Location coordinates are required (format: [longitude, latitude])"
KNOWN_STATUSES = frozenset(s.value for s in AlertStatus)

# =============================================================================
# Input Normalization
# =============================================================================

def parse_coordinates(value: Any) -> Tuple[float, float]:
    """
    Validate a ``[longitude, latitude]`` pair.

    Accepts a two-element list/tuple, its JSON encoding, or a ``"lon,lat"``
    string as multipart clients send it.

    Raises:
        ValidationError: missing, wrong length, non-numeric or out of range
    """
    if isinstance(value, str):
        raw = value.strip()
        try:
            value = json.loads(raw)
        except ValueError:
            value = [part for part in raw.split(",") if part.strip()] if raw else None

    if value is None or not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValidationError(COORDINATES_MESSAGE, field="coordinates")

    numbers = []
    for item in value:
        if isinstance(item, bool):
            raise ValidationError(COORDINATES_MESSAGE, field="coordinates")
        try:
            number = float(item)
        except (TypeError, ValueError):
            raise ValidationError(COORDINATES_MESSAGE, field="coordinates")
        if not math.isfinite(number):
            raise ValidationError(COORDINATES_MESSAGE, field="coordinates")
        numbers.append(number)

    longitude, latitude = numbers
    if not -180 <= longitude <= 180:
        raise ValidationError("Longitude must be between -180 and 180", field="coordinates")
    if not -90 <= latitude <= 90:
        raise ValidationError("Latitude must be between -90 and 90", field="coordinates")

    return longitude, latitude


def parse_distance(value: Any) -> float:
    """Search radius in meters; defaults when absent."""
    if value is None or value == "":
        return float(settings.NEARBY_DEFAULT_DISTANCE_METERS)
    try:
        distance = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Distance must be a number of meters", field="distance")
    if not math.isfinite(distance) or distance <= 0:
        raise ValidationError("Distance must be a positive number of meters", field="distance")
    return distance


def normalize_is_anonymous(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _optional_text(fields: Mapping[str, Any], key: str) -> Optional[str]:
    value = fields.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _inline_proofs(value: Any) -> List[Dict[str, Any]]:
    """Caller-supplied proof metadata, used verbatim when it is a non-empty list."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if isinstance(value, list) and value:
        return list(value)
    return []


def _now() -> datetime:
    return datetime.now(timezone.utc)


def status_metric_label(status: str) -> str:
    """Known statuses keep their own label; anything else is counted as other."""
    if status in KNOWN_STATUSES:
        return status
    return "other"


# =============================================================================
# Alert Service
# =============================================================================

class AlertService:
    """Alert ingestion, queries and status transitions."""

    def __init__(
        self,
        repository: AlertRepository,
        store: ProofStore,
        processor: Optional[ProofProcessor] = None,
    ):
        self.repository = repository
        self.store = store
        self.processor = processor or ProofProcessor(store)

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    async def create_alert(
        self,
        fields: Mapping[str, Any],
        citizen_id: Optional[str],
        files: Sequence[Any] = (),
    ) -> Alert:
        """
        Validate and persist a new alert.

        Uploaded files take precedence over inline ``proofs`` metadata. Any
        failure aborts before persistence and removes files written for this
        request.
        """
        longitude, latitude = parse_coordinates(fields.get("coordinates"))

        if files:
            proofs = await self.process_uploads(files)
            proof_source = "upload"
            if fields.get("proofs"):
                logger.info("Inline proofs ignored in favour of uploaded files", citizen_id=citizen_id)
        else:
            proofs = _inline_proofs(fields.get("proofs"))
            proof_source = "inline" if proofs else "none"

        alert = Alert(
            id=uuid.uuid4(),
            citizen_id=citizen_id,
            service_id=_optional_text(fields, "serviceId"),
            category=_optional_text(fields, "category"),
            title=_optional_text(fields, "title"),
            description=_optional_text(fields, "description"),
            priority=_optional_text(fields, "priority"),
            location=create_point_from_coordinates(longitude, latitude),
            longitude=longitude,
            latitude=latitude,
            address=_optional_text(fields, "address"),
            is_anonymous=normalize_is_anonymous(fields.get("isAnonymous")),
            status=settings.DEFAULT_ALERT_STATUS or AlertStatus.PENDING.value,
            proofs=proofs,
            comments=[],
            status_history=[],
        )

        try:
            alert = await self.repository.add(alert)
        except Exception:
            if proof_source == "upload":
                await self._discard_proofs(proofs)
            raise

        ALERTS_CREATED.labels(proof_source=proof_source).inc()
        logger.info(
            "Alert created",
            alert_id=str(alert.id),
            citizen_id=citizen_id,
            category=alert.category,
            proofs=len(proofs),
            proof_source=proof_source,
        )
        return alert

    async def process_uploads(self, files: Sequence[Any]) -> List[Dict[str, Any]]:
        proofs = await self.processor.process_uploads(files)
        return [proof.to_dict() for proof in proofs]

    async def _discard_proofs(self, proofs: Sequence[Dict[str, Any]]) -> None:
        for proof in proofs:
            url = proof.get("url")
            if not url:
                continue
            try:
                await self.store.delete(url)
            except Exception as e:
                logger.warning("Failed to clean up proof", url=url, error=str(e))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_alerts_by_citizen(
        self,
        citizen_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Alert]:
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive", field="limit")
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")
        return await self.repository.list_by_citizen(citizen_id, limit=limit, offset=offset)

    async def get_alert_by_id(self, alert_id: str, citizen_id: str) -> Alert:
        """
        Owner-scoped lookup.

        Raises:
            AlertNotFoundError: absent, malformed id, or owned by someone else
        """
        alert = await self.repository.get(alert_id)
        if alert is None or alert.citizen_id != citizen_id:
            raise AlertNotFoundError(alert_id)
        return alert

    async def get_alerts_nearby(
        self,
        coordinates: Any,
        max_distance_meters: Any = None,
    ) -> List[Alert]:
        longitude, latitude = parse_coordinates(coordinates)
        distance = parse_distance(max_distance_meters)
        return await self.repository.list_nearby(longitude, latitude, distance)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def add_comment(self, alert_id: str, text: Any, citizen_id: str) -> Alert:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Comment text is required", field="text")

        alert = await self.repository.get_for_update(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)

        now = _now()
        alert.comments = [
            *(alert.comments or []),
            {"citizenId": citizen_id, "text": text.strip(), "timestamp": now.isoformat()},
        ]
        alert.updated_at = now
        alert = await self.repository.save(alert)

        logger.info("Comment added", alert_id=str(alert.id), citizen_id=citizen_id)
        return alert

    async def update_alert_status(
        self,
        alert_id: Any,
        status: Any,
        comment: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Alert:
        """
        Apply a status pushed by a trusted service.

        The caller's service key is verified at the HTTP boundary before this
        runs. Any status string is accepted; no terminal state is enforced.
        """
        if not alert_id or not isinstance(status, str) or not status.strip():
            raise ValidationError("Alert ID and status are required")

        alert = await self.repository.get_for_update(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)

        now = _now()
        previous_status = alert.status
        new_status = status.strip()

        alert.status = new_status
        alert.status_history = [
            *(alert.status_history or []),
            {
                "status": new_status,
                "previousStatus": previous_status,
                "comment": comment,
                "updatedBy": updated_by,
                "timestamp": now.isoformat(),
            },
        ]
        alert.updated_at = now
        alert = await self.repository.save(alert)

        STATUS_UPDATES.labels(status=status_metric_label(new_status)).inc()
        logger.info(
            "Alert status updated",
            alert_id=str(alert.id),
            old_status=previous_status,
            new_status=new_status,
            updated_by=updated_by,
        )
        return alert


__all__ = [
    "AlertService",
    "parse_coordinates",
    "parse_distance",
    "normalize_is_anonymous",
    "status_metric_label",
]
