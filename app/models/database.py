"""
Database Models and ORM Setup

This module contains the database models using SQLAlchemy 2.0 with async
support. The alert location is stored as a PostGIS geography point so that
proximity queries run on a GiST index.
"""

import asyncio
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from geoalchemy2 import Geography
from geoalchemy2.elements import WKTElement
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.core.config import settings

logger = structlog.get_logger(__name__).bind(component="database")

# =============================================================================
# Enums for Type Safety
# =============================================================================

class AlertStatus(str, enum.Enum):
    """
    Statuses known to the core.

    Downstream services may push any other string; the column is not
    constrained to these values.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class ProofType(str, enum.Enum):
    """Proof media categories."""
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"


# =============================================================================
# Base Model with Common Fields
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all database models.

    Provides async support via AsyncAttrs and timezone-aware datetimes.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        dict: JSONB,
        Dict: JSONB,
        list: JSONB,
        List: JSONB,
    }


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False,
        doc="Record creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        doc="Last update timestamp"
    )


class UUIDMixin:
    """Mixin for UUID primary keys."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        doc="Primary key UUID"
    )


# =============================================================================
# Alerts
# =============================================================================

class Alert(Base, UUIDMixin, TimestampMixin):
    """
    Citizen-submitted incident report.

    Proofs, comments and the status history are ordered JSON arrays owned by
    the alert row.
    """

    __tablename__ = "alerts"

    citizen_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        doc="Subject id of the citizen who created the alert"
    )

    service_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        doc="Downstream service handling this category"
    )

    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Geographic information
    location: Mapped[Any] = mapped_column(
        Geography(geometry_type="POINT", srid=4326, spatial_index=False),
        nullable=False,
        doc="Incident location (PostGIS geography point)"
    )

    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)

    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_anonymous: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        doc="Hide the author from other citizens"
    )

    status: Mapped[str] = mapped_column(
        String(50),
        default=AlertStatus.PENDING.value,
        nullable=False,
        doc="Current lifecycle state"
    )

    proofs: Mapped[List[Dict[str, Any]]] = mapped_column(
        MutableList.as_mutable(JSONB),
        default=list,
        nullable=False,
    )

    comments: Mapped[List[Dict[str, Any]]] = mapped_column(
        MutableList.as_mutable(JSONB),
        default=list,
        nullable=False,
    )

    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(
        MutableList.as_mutable(JSONB),
        default=list,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "longitude >= -180 AND longitude <= 180",
            name="check_longitude_range"
        ),
        CheckConstraint(
            "latitude >= -90 AND latitude <= 90",
            name="check_latitude_range"
        ),
        Index("ix_alerts_location", "location", postgresql_using="gist"),
        Index("ix_alerts_citizen_id", "citizen_id"),
        Index("ix_alerts_status", "status"),
        Index("ix_alerts_created_at", "created_at"),
    )

    @property
    def coordinates(self) -> List[float]:
        return [self.longitude, self.latitude]


# =============================================================================
# Database Engine and Session Management
# =============================================================================

engine = create_async_engine(
    str(settings.DATABASE_URL),
    **settings.DATABASE_ENGINE_OPTIONS,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=True,
    autocommit=False,
)


async def get_db_session() -> AsyncSession:
    """
    Get async database session.

    This function provides a database session for dependency injection
    in FastAPI endpoints.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# =============================================================================
# Database Initialization
# =============================================================================

async def create_tables() -> None:
    """Create the PostGIS extension and all tables."""
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
        await conn.run_sync(Base.metadata.create_all)


async def wait_for_database(
    max_attempts: int = 10,
    initial_delay_seconds: float = 0.5,
    max_delay_seconds: float = 5.0,
) -> None:
    """Wait for database to become available with exponential backoff.

    Raises last exception if database is not reachable after all attempts.
    """
    attempt = 0
    delay = float(initial_delay_seconds)
    last_error: Optional[Exception] = None

    while attempt < max_attempts:
        try:
            async with async_session_maker() as session:
                await session.execute(text("SELECT 1"))
            if attempt > 0:
                logger.info("Database became available", attempts=attempt + 1)
            return
        except Exception as exc:  # noqa: BLE001 - we want original error
            last_error = exc
            logger.warning(
                "Database not reachable yet",
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
            delay = min(max_delay_seconds, delay * 2)
            attempt += 1

    logger.error(
        "Database not reachable after retries",
        attempts=max_attempts,
        error=str(last_error) if last_error else None,
    )
    if last_error:
        raise last_error


# =============================================================================
# Database Utilities
# =============================================================================

def create_point_from_coordinates(longitude: float, latitude: float) -> WKTElement:
    """
    Create a PostGIS point element from coordinates.

    WKT uses x y ordering, so longitude comes first.
    """
    return WKTElement(f"POINT({longitude} {latitude})", srid=4326)


def calculate_distance_meters(
    lon1: float, lat1: float, lon2: float, lat2: float
) -> float:
    """
    Calculate distance between two points using the Haversine formula.

    Args:
        lon1, lat1: First point coordinates
        lon2, lat2: Second point coordinates

    Returns:
        Distance in meters
    """
    from math import radians, sin, cos, sqrt, atan2

    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    # Mean Earth radius in meters
    return 6371008.8 * c


# =============================================================================
# Health Check Queries
# =============================================================================

async def check_database_health() -> Dict[str, Any]:
    """Check database connectivity and PostGIS availability."""
    try:
        async with async_session_maker() as session:
            result = await session.execute(text("SELECT 1 as test"))
            test_value = result.scalar()

            postgis = await session.execute(text("SELECT postgis_version()"))
            postgis_version = postgis.scalar()

            alerts_count = await session.execute(text("SELECT COUNT(*) FROM alerts"))

            return {
                "status": "healthy",
                "test_query": test_value == 1,
                "postgis": postgis_version,
                "alerts_total": alerts_count.scalar(),
                "engine_pool_size": engine.pool.size(),
                "engine_pool_checked_out": engine.pool.checkedout(),
            }

    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


__all__ = [
    "Base",
    "Alert",
    "AlertStatus",
    "ProofType",
    "engine",
    "async_session_maker",
    "get_db_session",
    "create_tables",
    "wait_for_database",
    "create_point_from_coordinates",
    "calculate_distance_meters",
    "check_database_health",
]
