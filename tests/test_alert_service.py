import math
import uuid

import pytest
from prometheus_client import REGISTRY

from app.core.exceptions import AlertNotFoundError, ProcessingError, ValidationError
from app.services.alerts import (
    normalize_is_anonymous,
    parse_coordinates,
    parse_distance,
    status_metric_label,
)

from tests.helpers import UploadStub, image_bytes

PARIS = [2.3522, 48.8566]


# =============================================================================
# Input normalization
# =============================================================================

@pytest.mark.parametrize(
    "value, expected",
    [
        ([2.35, 48.85], (2.35, 48.85)),
        ((-180, 90), (-180.0, 90.0)),
        ("[2.35, 48.85]", (2.35, 48.85)),
        ("2.35,48.85", (2.35, 48.85)),
        (["2.35", "48.85"], (2.35, 48.85)),
    ],
)
def test_parse_coordinates_accepts_pairs(value, expected):
    assert parse_coordinates(value) == expected


@pytest.mark.parametrize(
    "value",
    [None, [], [1.0], [1, 2, 3], ["a", "b"], [True, 1], "nowhere", [181, 0], [0, -91], [float("nan"), 0]],
)
def test_parse_coordinates_rejects_bad_input(value):
    with pytest.raises(ValidationError) as exc:
        parse_coordinates(value)
    assert exc.value.status_code == 400
    assert exc.value.field == "coordinates"


def test_parse_distance():
    assert parse_distance(None) == 5000
    assert parse_distance("250") == 250
    for bad in (0, -5, "abc", "inf"):
        with pytest.raises(ValidationError):
            parse_distance(bad)


@pytest.mark.parametrize(
    "value, expected",
    [(True, True), (False, False), ("true", True), ("TRUE", True), ("false", False), ("yes", False), (None, False), (1, False)],
)
def test_normalize_is_anonymous(value, expected):
    assert normalize_is_anonymous(value) is expected


# =============================================================================
# Ingestion
# =============================================================================

@pytest.mark.asyncio
async def test_create_alert_with_inline_proofs(service, repository):
    inline = [{"type": "photo", "url": "https://cdn.example.org/a.jpg", "thumbnail": None, "size": 10}]

    alert = await service.create_alert(
        {
            "coordinates": PARIS,
            "title": "Broken streetlight",
            "category": "infrastructure",
            "isAnonymous": "TRUE",
            "proofs": inline,
        },
        citizen_id="citizen-1",
    )

    assert alert.citizen_id == "citizen-1"
    assert alert.status == "pending"
    assert alert.is_anonymous is True
    assert alert.proofs == inline
    assert alert.coordinates == PARIS
    assert alert.comments == [] and alert.status_history == []
    assert alert.id in repository.alerts


@pytest.mark.asyncio
async def test_create_alert_without_proofs(service):
    alert = await service.create_alert({"coordinates": "[2.35, 48.85]", "proofs": []}, "citizen-1")
    assert alert.proofs == []
    assert alert.is_anonymous is False


@pytest.mark.asyncio
async def test_create_alert_rejects_missing_coordinates(service, repository):
    with pytest.raises(ValidationError):
        await service.create_alert({"title": "No location"}, "citizen-1")
    assert repository.alerts == {}


@pytest.mark.asyncio
async def test_uploaded_files_take_precedence_over_inline_proofs(service, store):
    files = [
        UploadStub("photo.png", "image/png", image_bytes()),
        UploadStub("voice.mp3", "audio/mpeg", b"ID3" + b"\x00" * 5),
    ]

    alert = await service.create_alert(
        {"coordinates": PARIS, "proofs": [{"type": "photo", "url": "ignored"}]},
        "citizen-1",
        files,
    )

    assert [p["type"] for p in alert.proofs] == ["photo", "audio"]
    assert all(p["url"].startswith("/uploads/") for p in alert.proofs)
    assert alert.proofs[1]["thumbnail"] == "/uploads/thumbnails/audio_default.png"


@pytest.mark.asyncio
async def test_video_without_frame_still_creates_alert(service, repository, store):
    alert = await service.create_alert(
        {"coordinates": PARIS, "title": "Illegal dumping"},
        "citizen-1",
        [UploadStub("clip.mp4", "video/mp4", b"\x00" * 64)],
    )

    assert alert.id in repository.alerts
    assert len(alert.proofs) == 1
    assert alert.proofs[0]["type"] == "video"
    assert alert.proofs[0]["url"].startswith("/uploads/videos/")
    assert alert.proofs[0]["thumbnail"] is None
    assert alert.proofs[0]["size"] == 64
    assert len(list(store.folder_path("videos").iterdir())) == 1


@pytest.mark.asyncio
async def test_failed_processing_persists_nothing(service, repository, store):
    files = [
        UploadStub("photo.png", "image/png", image_bytes()),
        UploadStub("broken.png", "image/png", b"broken"),
    ]

    with pytest.raises(ProcessingError):
        await service.create_alert({"coordinates": PARIS}, "citizen-1", files)

    assert repository.alerts == {}
    assert list(store.folder_path("photos").iterdir()) == []


@pytest.mark.asyncio
async def test_persistence_failure_removes_processed_files(service, repository, store, monkeypatch):
    async def failing_add(alert):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(repository, "add", failing_add)

    with pytest.raises(RuntimeError):
        await service.create_alert(
            {"coordinates": PARIS},
            "citizen-1",
            [UploadStub("photo.png", "image/png", image_bytes())],
        )

    assert list(store.folder_path("photos").iterdir()) == []


# =============================================================================
# Queries
# =============================================================================

@pytest.mark.asyncio
async def test_get_alerts_by_citizen_newest_first_with_pagination(service):
    first = await service.create_alert({"coordinates": PARIS, "title": "first"}, "citizen-1")
    second = await service.create_alert({"coordinates": PARIS, "title": "second"}, "citizen-1")
    await service.create_alert({"coordinates": PARIS, "title": "other"}, "citizen-2")

    alerts = await service.get_alerts_by_citizen("citizen-1")
    assert [a.id for a in alerts] == [second.id, first.id]

    page = await service.get_alerts_by_citizen("citizen-1", limit=1, offset=1)
    assert [a.id for a in page] == [first.id]

    with pytest.raises(ValidationError):
        await service.get_alerts_by_citizen("citizen-1", limit=0)


@pytest.mark.asyncio
async def test_get_alert_by_id_is_owner_scoped(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")

    assert (await service.get_alert_by_id(str(alert.id), "citizen-1")).id == alert.id

    with pytest.raises(AlertNotFoundError) as foreign:
        await service.get_alert_by_id(str(alert.id), "citizen-2")
    with pytest.raises(AlertNotFoundError):
        await service.get_alert_by_id(str(uuid.uuid4()), "citizen-1")
    with pytest.raises(AlertNotFoundError):
        await service.get_alert_by_id("not-a-uuid", "citizen-1")

    assert foreign.value.status_code == 404


@pytest.mark.asyncio
async def test_get_alerts_nearby_orders_by_distance(service):
    # Roughly 400 m, 1.1 km and 30 km from the reference point
    near = await service.create_alert({"coordinates": [2.3575, 48.8566]}, "citizen-1")
    middle = await service.create_alert({"coordinates": [2.3522, 48.8666]}, "citizen-2")
    await service.create_alert({"coordinates": [2.76, 48.8566]}, "citizen-3")

    alerts = await service.get_alerts_nearby(PARIS, 2000)
    assert [a.id for a in alerts] == [near.id, middle.id]

    default_radius = await service.get_alerts_nearby(PARIS)
    assert len(default_radius) == 2

    with pytest.raises(ValidationError):
        await service.get_alerts_nearby(PARIS, 0)
    with pytest.raises(ValidationError):
        await service.get_alerts_nearby([200, 0], 100)


def degrees_north(meters):
    """Latitude offset along a meridian for a distance in meters."""
    return math.degrees(meters / 6371008.8)


@pytest.mark.asyncio
async def test_get_alerts_nearby_radius_boundary(service):
    inside = await service.create_alert({"coordinates": [0, degrees_north(999)]}, "citizen-1")
    await service.create_alert({"coordinates": [0, degrees_north(1001)]}, "citizen-2")

    alerts = await service.get_alerts_nearby([0, 0], 1000)

    assert [a.id for a in alerts] == [inside.id]


# =============================================================================
# Comments and status transitions
# =============================================================================

@pytest.mark.asyncio
async def test_add_comment_by_any_citizen(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")

    updated = await service.add_comment(str(alert.id), "  Seen it too  ", "citizen-2")

    assert len(updated.comments) == 1
    comment = updated.comments[0]
    assert comment["citizenId"] == "citizen-2"
    assert comment["text"] == "Seen it too"
    assert comment["timestamp"]


@pytest.mark.asyncio
async def test_add_comment_validation_and_not_found(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")

    with pytest.raises(ValidationError):
        await service.add_comment(str(alert.id), "   ", "citizen-1")
    with pytest.raises(AlertNotFoundError):
        await service.add_comment(str(uuid.uuid4()), "hello", "citizen-1")


@pytest.mark.asyncio
async def test_update_alert_status_appends_history(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")
    created_at = alert.updated_at

    updated = await service.update_alert_status(
        str(alert.id), "in_progress", comment="Crew dispatched", updated_by="roads-service"
    )
    updated = await service.update_alert_status(str(alert.id), "resolved")

    assert updated.status == "resolved"
    assert [h["status"] for h in updated.status_history] == ["in_progress", "resolved"]
    assert updated.status_history[0]["previousStatus"] == "pending"
    assert updated.status_history[0]["comment"] == "Crew dispatched"
    assert updated.status_history[0]["updatedBy"] == "roads-service"
    assert updated.status_history[1]["previousStatus"] == "in_progress"
    assert updated.updated_at >= created_at


@pytest.mark.asyncio
async def test_resolved_alert_can_be_reopened(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")
    await service.update_alert_status(str(alert.id), "resolved")

    reopened = await service.update_alert_status(str(alert.id), "pending")
    assert reopened.status == "pending"


@pytest.mark.asyncio
async def test_update_alert_status_requires_fields(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")

    with pytest.raises(ValidationError):
        await service.update_alert_status(str(alert.id), None)
    with pytest.raises(ValidationError):
        await service.update_alert_status(None, "resolved")
    with pytest.raises(AlertNotFoundError):
        await service.update_alert_status(str(uuid.uuid4()), "resolved")


@pytest.mark.asyncio
async def test_mutations_lock_the_alert_row(service, repository):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")

    await service.add_comment(str(alert.id), "first", "citizen-2")
    await service.update_alert_status(str(alert.id), "in_progress")

    assert repository.locked == [str(alert.id), str(alert.id)]


@pytest.mark.asyncio
async def test_unknown_statuses_share_one_metric_label(service):
    alert = await service.create_alert({"coordinates": PARIS}, "citizen-1")
    before = REGISTRY.get_sample_value("alert_status_updates_total", {"status": "other"}) or 0

    updated = await service.update_alert_status(str(alert.id), "escalated-to-mayor")

    assert updated.status == "escalated-to-mayor"
    assert REGISTRY.get_sample_value("alert_status_updates_total", {"status": "other"}) == before + 1
    assert REGISTRY.get_sample_value("alert_status_updates_total", {"status": "escalated-to-mayor"}) is None


def test_status_metric_label():
    assert status_metric_label("resolved") == "resolved"
    assert status_metric_label("in_progress") == "in_progress"
    assert status_metric_label("waiting-for-parts") == "other"
