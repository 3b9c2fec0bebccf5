"""
Alerts API Endpoints

This module provides the REST endpoints of the citizen alerts backend:
alert submission with proofs, owner and proximity queries, comments,
standalone proof upload/delete, and the status webhook used by downstream
services.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog
from fastapi import APIRouter, Depends, File, Query, Request, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile as StarletteUploadFile

from app.core.config import settings
from app.core.exceptions import ValidationError
from app.core.security import Principal, get_current_citizen, verify_service_key
from app.models.database import Alert, get_db_session
from app.models.repository import AlertRepository
from app.services.alerts import AlertService
from app.services.proof_processor import ProofProcessor
from app.services.proof_store import ProofStore

# =============================================================================
# Logger and Services
# =============================================================================

logger = structlog.get_logger(__name__)
router = APIRouter()

proof_store = ProofStore()
proof_processor = ProofProcessor(proof_store)

# =============================================================================
# Dependencies
# =============================================================================

def get_proof_store() -> ProofStore:
    return proof_store


def get_proof_processor() -> ProofProcessor:
    return proof_processor


async def get_alert_service(
    session: AsyncSession = Depends(get_db_session),
    store: ProofStore = Depends(get_proof_store),
    processor: ProofProcessor = Depends(get_proof_processor),
) -> AlertService:
    return AlertService(AlertRepository(session), store, processor)


# =============================================================================
# Request Models
# =============================================================================

RequestModel = TypeVar("RequestModel", bound=BaseModel)


class AlertCreateRequest(BaseModel):
    """
    Alert submission fields.

    Length limits follow the alerts table columns. Coordinates, anonymity and
    inline proofs arrive in several shapes and are normalized by the service.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    coordinates: Any = None
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    priority: Optional[str] = Field(None, max_length=50)
    service_id: Optional[str] = Field(None, alias="serviceId", max_length=128)
    address: Optional[str] = None
    is_anonymous: Any = Field(None, alias="isAnonymous")
    proofs: Any = None


class CommentCreateRequest(BaseModel):
    """Request model for adding a comment."""
    text: str = Field(..., max_length=2000)


class StatusUpdateRequest(BaseModel):
    """Status push from a downstream service. Required fields are checked by the service."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    alert_id: Optional[str] = Field(None, alias="alertId")
    status: Optional[str] = Field(None, max_length=50)
    comment: Optional[str] = None
    updated_by: Optional[str] = Field(None, alias="updatedBy")


# =============================================================================
# Helper Functions
# =============================================================================

def format_alert_response(alert: Alert, viewer_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Format alert data for API response.

    The owner of an anonymous alert is hidden from everyone but the owner.
    """
    data = {
        "id": str(alert.id),
        "citizenId": alert.citizen_id,
        "serviceId": alert.service_id,
        "category": alert.category,
        "title": alert.title,
        "description": alert.description,
        "priority": alert.priority,
        "location": {
            "type": "Point",
            "coordinates": [alert.longitude, alert.latitude],
        },
        "address": alert.address,
        "isAnonymous": bool(alert.is_anonymous),
        "status": alert.status,
        "proofs": list(alert.proofs or []),
        "comments": list(alert.comments or []),
        "statusHistory": list(alert.status_history or []),
        "createdAt": alert.created_at.isoformat() if alert.created_at else None,
        "updatedAt": alert.updated_at.isoformat() if alert.updated_at else None,
    }

    if alert.is_anonymous and alert.citizen_id != viewer_id:
        data.pop("citizenId")

    return data


async def read_json_body(request: Request) -> Dict[str, Any]:
    """JSON object body; empty body reads as an empty object."""
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


async def read_alert_submission(request: Request):
    """Split a multipart or JSON submission into fields and uploaded files."""
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        return await read_json_body(request), []

    form = await request.form()
    fields: Dict[str, Any] = {}
    files: List[StarletteUploadFile] = []
    for key, value in form.multi_items():
        if isinstance(value, StarletteUploadFile):
            if key == "files" and value.filename:
                files.append(value)
        elif key not in fields:
            # Repeated parts, such as one per coordinate, become a list
            values = [v for v in form.getlist(key) if not isinstance(v, StarletteUploadFile)]
            fields[key] = values if len(values) > 1 else value
    return fields, files


def validate_payload(model: Type[RequestModel], payload: Dict[str, Any]) -> RequestModel:
    """Validate a manually read body, reporting the first failing field."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or None
        raise ValidationError(f"Invalid {field or 'request'}: {error.get('msg')}", field=field)


def check_file_count(files: List[Any]) -> None:
    if len(files) > settings.MAX_FILES_PER_REQUEST:
        raise ValidationError(
            f"At most {settings.MAX_FILES_PER_REQUEST} files can be uploaded at once",
            field="files",
        )


# =============================================================================
# Alert Endpoints
# =============================================================================

@router.post("/", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_alert(
    request: Request,
    service: AlertService = Depends(get_alert_service),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """
    Submit a new alert.

    Accepts multipart (``files`` parts plus form fields) or a JSON body.
    Uploaded files become the alert's proofs; otherwise inline ``proofs``
    metadata is stored as given.
    """
    fields, files = await read_alert_submission(request)
    check_file_count(files)
    submission = validate_payload(AlertCreateRequest, fields)

    logger.info("Creating alert", citizen_id=citizen.sub, files=len(files))
    alert = await service.create_alert(
        submission.model_dump(by_alias=True, exclude_unset=True),
        citizen.sub,
        files,
    )

    return {
        "success": True,
        "message": "Alert created successfully",
        "data": format_alert_response(alert, citizen.sub),
    }


@router.get("/me", response_model=Dict[str, Any])
async def get_my_alerts(
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: AlertService = Depends(get_alert_service),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """Alerts submitted by the authenticated citizen, newest first."""
    alerts = await service.get_alerts_by_citizen(citizen.sub, limit=limit, offset=offset)
    return {
        "success": True,
        "data": [format_alert_response(alert, citizen.sub) for alert in alerts],
    }


@router.get("/nearby", response_model=Dict[str, Any])
async def get_nearby_alerts(
    longitude: Optional[str] = Query(None),
    latitude: Optional[str] = Query(None),
    distance: Optional[str] = Query(None, description="Search radius in meters"),
    service: AlertService = Depends(get_alert_service),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """Alerts within ``distance`` meters of a point, nearest first."""
    if longitude in (None, "") or latitude in (None, ""):
        raise ValidationError("Coordinates (longitude, latitude) are required", field="coordinates")

    alerts = await service.get_alerts_nearby([longitude, latitude], distance)
    return {
        "success": True,
        "data": [format_alert_response(alert, citizen.sub) for alert in alerts],
    }


# =============================================================================
# Standalone Proof Endpoints
# =============================================================================

@router.post("/upload", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    processor: ProofProcessor = Depends(get_proof_processor),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """Store and process a single proof file."""
    proofs = await processor.process_uploads([file])

    logger.info("Proof uploaded", citizen_id=citizen.sub, url=proofs[0].url)
    return {
        "success": True,
        "message": "File uploaded successfully",
        "data": proofs[0].to_dict(),
    }


@router.post("/uploads", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def upload_files(
    files: List[UploadFile] = File(...),
    processor: ProofProcessor = Depends(get_proof_processor),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """Store and process up to MAX_FILES_PER_REQUEST proof files."""
    check_file_count(files)
    proofs = await processor.process_uploads(files)

    logger.info("Proofs uploaded", citizen_id=citizen.sub, count=len(proofs))
    return {
        "success": True,
        "message": f"{len(proofs)} files uploaded successfully",
        "data": [proof.to_dict() for proof in proofs],
    }


@router.delete("/upload", response_model=Dict[str, Any])
async def delete_file(
    request: Request,
    file_url: Optional[str] = Query(None, alias="fileUrl"),
    store: ProofStore = Depends(get_proof_store),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """
    Delete a proof asset and its thumbnail by public URL.

    Alerts referencing the asset are not updated.
    """
    if not file_url:
        file_url = (await read_json_body(request)).get("fileUrl")
    if not file_url or not isinstance(file_url, str):
        raise ValidationError("File URL is required", field="fileUrl")

    deleted = await store.delete(file_url)

    logger.info("Proof delete requested", citizen_id=citizen.sub, file_url=file_url, deleted=deleted)
    return {
        "success": deleted,
        "message": "File deleted successfully" if deleted else "File not found",
    }


# =============================================================================
# Service Webhook
# =============================================================================

@router.post(
    "/webhook/status",
    response_model=Dict[str, Any],
    dependencies=[Depends(verify_service_key)],
)
async def update_status_webhook(
    request: Request,
    service: AlertService = Depends(get_alert_service),
) -> Dict[str, Any]:
    """
    Apply a status transition pushed by a downstream service.

    The service key is verified before the body is read.
    """
    update = validate_payload(StatusUpdateRequest, await read_json_body(request))

    alert = await service.update_alert_status(
        update.alert_id,
        update.status,
        comment=update.comment,
        updated_by=update.updated_by,
    )

    return {
        "success": True,
        "message": "Alert status updated successfully",
        "data": format_alert_response(alert),
    }


# =============================================================================
# Single Alert Endpoints
# =============================================================================

@router.get("/{alert_id}", response_model=Dict[str, Any])
async def get_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """One of the caller's own alerts."""
    alert = await service.get_alert_by_id(alert_id, citizen.sub)
    return {
        "success": True,
        "data": format_alert_response(alert, citizen.sub),
    }


@router.post("/{alert_id}/comments", response_model=Dict[str, Any])
async def add_comment(
    alert_id: str,
    request: CommentCreateRequest,
    service: AlertService = Depends(get_alert_service),
    citizen: Principal = Depends(get_current_citizen),
) -> Dict[str, Any]:
    """Append a comment to any alert."""
    alert = await service.add_comment(alert_id, request.text, citizen.sub)
    return {
        "success": True,
        "message": "Comment added successfully",
        "data": format_alert_response(alert, citizen.sub),
    }
