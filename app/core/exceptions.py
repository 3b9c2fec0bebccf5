"""
Custom exception classes for the Citizen Alerts system.

This module defines all custom exceptions used throughout the application.
Each exception provides specific context for different error scenarios and
maps to the HTTP status rendered by the global exception handler.
"""

from typing import Any, Dict, List, Optional
from fastapi import HTTPException, status


class CitizenAlertsException(Exception):
    """Base exception class for all Citizen Alerts exceptions."""

    def __init__(
        self,
        message: str = "An error occurred in Citizen Alerts",
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


# API/HTTP Exceptions
class APIException(CitizenAlertsException, HTTPException):
    """Base HTTP exception for API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        CitizenAlertsException.__init__(self, message, error_code, details)
        HTTPException.__init__(self, status_code, message, headers)


class ValidationError(APIException):
    """Raised when request data is missing or malformed."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        if field and details is None:
            details = {"field": field}
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="VALIDATION_ERROR",
            details=details
        )
        self.field = field


class NotFoundError(APIException):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        message: Optional[str] = None
    ):
        if message is None:
            message = f"{resource} not found"
            if identifier:
                message += f" (ID: {identifier})"

        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "identifier": identifier}
        )


class AlertNotFoundError(NotFoundError):
    """Raised when an alert is absent or not visible to the caller."""

    def __init__(self, alert_id: Any):
        super().__init__(resource="Alert", identifier=str(alert_id))


class UnauthorizedError(APIException):
    """Raised when a citizen token or service key is missing or invalid."""

    def __init__(self, message: str = "Authentication required", scheme: Optional[str] = "Bearer"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": scheme} if scheme else None
        )


# Proof / Media Exceptions
class ProcessingError(APIException):
    """Raised when encoding the primary asset of a proof fails."""

    def __init__(
        self,
        message: str = "Failed to process uploaded file",
        file_name: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="PROCESSING_ERROR",
            details={"file_name": file_name} if file_name else None
        )


class UnsupportedMediaError(APIException):
    """Raised when an upload's MIME type is not accepted."""

    def __init__(
        self,
        file_type: Optional[str],
        supported_types: Optional[List[str]] = None,
        file_name: Optional[str] = None
    ):
        details: Dict[str, Any] = {"file_type": file_type}
        if supported_types:
            details["supported_types"] = supported_types
        if file_name:
            details["file_name"] = file_name

        super().__init__(
            message=f"Unsupported file type: {file_type}",
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            error_code="UNSUPPORTED_MEDIA_TYPE",
            details=details
        )


class FileSizeExceededError(APIException):
    """Raised when uploaded file exceeds size limit."""

    def __init__(
        self,
        max_size: int,
        file_name: Optional[str] = None
    ):
        details: Dict[str, Any] = {"max_size": max_size}
        if file_name:
            details["file_name"] = file_name

        super().__init__(
            message=f"File exceeds limit of {max_size} bytes",
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            error_code="FILE_TOO_LARGE",
            details=details
        )


class UnrecognizedAssetKindError(APIException):
    """Raised when a file URL does not point into a known proof folder."""

    def __init__(self, file_url: str):
        super().__init__(
            message="Unrecognized file type",
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="UNRECOGNIZED_ASSET_KIND",
            details={"file_url": file_url}
        )


# Utility functions for exception handling
def format_exception_for_logging(exc: Exception) -> Dict[str, Any]:
    """Format exception for structured logging."""
    data = {
        "exception_type": exc.__class__.__name__,
        "message": str(exc)
    }

    if isinstance(exc, CitizenAlertsException):
        data["error_code"] = exc.error_code
        data["details"] = exc.details

    if isinstance(exc, APIException):
        data["status_code"] = exc.status_code
        if exc.headers:
            data["headers"] = exc.headers

    return data
