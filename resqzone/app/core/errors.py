"""
Domain errors and the FastAPI handlers that render them.

Every error the grouping and fanout core raises is a ``ResQZoneError``
subclass. Each class fixes its HTTP status and machine-readable code, so
routes never translate exceptions themselves:

    InvalidInput       400  INVALID_INPUT
    InvalidCoordinate  400  INVALID_COORDINATE
    Forbidden          403  FORBIDDEN
    NotFound           404  NOT_FOUND
    InvalidOperation   409  INVALID_OPERATION
    PartialFailure     207  PARTIAL_FAILURE
    StoreError         503  STORE_ERROR

Responses share one envelope:

    {"error": {"code": "NOT_FOUND", "message": "Group not found",
               "status": 404, "details": {"resource": "Group", "group_id": 42}}}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from resqzone.app.core.config import settings

if TYPE_CHECKING:
    from resqzone.app.alerts.models import FanoutResult

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class ResQZoneError(Exception):
    """Base class; subclasses override ``status_code`` and ``error_code``."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "An unexpected error occurred", **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(ResQZoneError):
    status_code = 400
    error_code = "INVALID_INPUT"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, **details)


class InvalidCoordinate(InvalidInput):
    """Latitude outside [-90, 90] or longitude outside [-180, 180]."""

    error_code = "INVALID_COORDINATE"

    def __init__(self, latitude: Any, longitude: Any, message: str = ""):
        super().__init__(
            message or f"Invalid coordinate ({latitude}, {longitude})",
            latitude=latitude, longitude=longitude,
        )


class Forbidden(ResQZoneError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFound(ResQZoneError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(f"{resource} not found", resource=resource, **identifiers)


class InvalidOperation(ResQZoneError):
    """Well-formed but disallowed, e.g. an owner removing themselves."""

    status_code = 409
    error_code = "INVALID_OPERATION"


class PartialFailure(ResQZoneError):
    """
    Fanout finished but some per-recipient writes failed.

    Raised only after the broadcast and every successful delivery are
    committed, so it is a degraded success: ``result`` holds the full
    outcome, including ``broadcast_id`` and ``delivered_count``.
    """

    status_code = 207
    error_code = "PARTIAL_FAILURE"

    def __init__(self, result: "FanoutResult"):
        self.result = result
        super().__init__(
            f"Delivery failed for {len(result.failed_user_ids)} of "
            f"{result.delivered_count} recipients",
            **result.to_dict(),
        )

    @property
    def failed_user_ids(self) -> List[int]:
        return self.result.failed_user_ids


class StoreError(ResQZoneError):
    status_code = 503
    error_code = "STORE_ERROR"

    def __init__(self, operation: str, message: str = ""):
        super().__init__(f"Store operation '{operation}' failed: {message}", operation=operation)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Handlers
# ═══════════════════════════════════════════════════════════════════════════

def _error_response(request: Request, status_code: int, error: Dict[str, Any]) -> JSONResponse:
    if not settings.is_production:
        error = {**error, "path": request.url.path, "method": request.method}
    return JSONResponse(status_code=status_code, content={"error": error})


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ResQZoneError)
    async def handle_domain_error(request: Request, exc: ResQZoneError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "%s: %s", exc.error_code, exc.message, extra={"endpoint": request.url.path})
        return _error_response(request, exc.status_code, exc.to_dict())

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled %s on %s", type(exc).__name__, request.url.path)
        error = {
            "code": "INTERNAL_ERROR",
            "message": str(exc) if settings.DEBUG else "Internal server error",
            "status": 500,
        }
        return _error_response(request, 500, error)
