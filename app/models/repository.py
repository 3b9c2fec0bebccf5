"""
Alert persistence operations.

The service layer only talks to the store through AlertRepository, which keeps
the SQLAlchemy/PostGIS specifics in one place.
"""

import uuid
from typing import List, Optional, Sequence, Union

import structlog
from sqlalchemy import Select, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Alert

logger = structlog.get_logger(__name__)


def _parse_uuid(alert_id: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(alert_id, uuid.UUID):
        return alert_id
    try:
        return uuid.UUID(str(alert_id))
    except (TypeError, ValueError):
        return None


def reference_point(longitude: float, latitude: float):
    """Geography literal for a lon/lat pair."""
    return func.ST_GeogFromText(f"SRID=4326;POINT({float(longitude)} {float(latitude)})")


def build_nearby_query(
    longitude: float,
    latitude: float,
    max_distance_meters: float,
) -> Select:
    """
    Alerts within ``max_distance_meters`` of the point, nearest first.

    ST_DWithin on geography compares in meters and can use the GiST index.
    """
    point = reference_point(longitude, latitude)
    return (
        select(Alert)
        .where(func.ST_DWithin(Alert.location, point, max_distance_meters))
        .order_by(func.ST_Distance(Alert.location, point))
    )


def build_citizen_query(
    citizen_id: str,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Select:
    query = (
        select(Alert)
        .where(Alert.citizen_id == citizen_id)
        .order_by(desc(Alert.created_at))
    )
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return query


def build_locked_alert_query(alert_id: uuid.UUID) -> Select:
    """Single alert, row locked and reloaded over any cached instance."""
    return (
        select(Alert)
        .where(Alert.id == alert_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class AlertRepository:
    """Create/read/update/query operations over the alerts table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, alert: Alert) -> Alert:
        self.session.add(alert)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        await self.session.refresh(alert)
        return alert

    async def get(self, alert_id: Union[str, uuid.UUID]) -> Optional[Alert]:
        parsed = _parse_uuid(alert_id)
        if parsed is None:
            return None
        result = await self.session.execute(select(Alert).where(Alert.id == parsed))
        return result.scalar_one_or_none()

    async def get_for_update(self, alert_id: Union[str, uuid.UUID]) -> Optional[Alert]:
        """
        Load an alert with its row locked until the next commit.

        Comments and status history are rewritten as whole JSON arrays, so
        concurrent appends must be serialized.
        """
        parsed = _parse_uuid(alert_id)
        if parsed is None:
            return None
        result = await self.session.execute(build_locked_alert_query(parsed))
        return result.scalar_one_or_none()

    async def list_by_citizen(
        self,
        citizen_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Alert]:
        result = await self.session.execute(build_citizen_query(citizen_id, limit, offset))
        return list(result.scalars().all())

    async def list_nearby(
        self,
        longitude: float,
        latitude: float,
        max_distance_meters: float,
    ) -> List[Alert]:
        result = await self.session.execute(
            build_nearby_query(longitude, latitude, max_distance_meters)
        )
        alerts: Sequence[Alert] = result.scalars().all()
        logger.debug(
            "Nearby query executed",
            longitude=longitude,
            latitude=latitude,
            max_distance_meters=max_distance_meters,
            results=len(alerts),
        )
        return list(alerts)

    async def save(self, alert: Alert) -> Alert:
        """Flush in-place changes of a loaded alert."""
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        await self.session.refresh(alert)
        return alert
