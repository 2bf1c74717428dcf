"""
FastAPI routes: emergency broadcasts, directed alerts and read state.

Provides endpoints to:
    POST   /api/v1/alerts/emergency                     — geographic broadcast
    POST   /api/v1/alerts/system                        — alert to explicit users
    GET    /api/v1/alerts/user/{user_id}                — a user's deliveries
    GET    /api/v1/alerts/system                        — active broadcasts (+ read flag)
    PATCH  /api/v1/alerts/{alert_id}/read               — mark delivery / broadcast read
    PATCH  /api/v1/alerts/system/{alert_id}/deactivate  — hide a broadcast
    DELETE /api/v1/alerts/{alert_id}                    — delete a delivery

A fanout where some recipients failed answers 207 with the
PARTIAL_FAILURE error body; everything it did write stays written.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from resqzone.app.alerts.fanout import AlertFanout
from resqzone.app.alerts.models import DirectedAlertRequest, EmergencyAlertRequest
from resqzone.app.api.deps import get_alert_fanout
from resqzone.app.api.schemas import (
    DirectedAlertBody,
    EmergencyAlertBody,
    FanoutResponse,
    MarkReadBody,
)
from resqzone.app.spatial.geo_index import Coordinate

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Fanout
# ---------------------------------------------------------------------------

@router.post(
    "/emergency",
    response_model=FanoutResponse,
    status_code=201,
    summary="Broadcast an emergency alert to everyone within a radius",
)
async def send_emergency(
    body: EmergencyAlertBody,
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> FanoutResponse:
    result = await fanout.send_emergency_alert(
        EmergencyAlertRequest(
            title=body.title,
            message=body.message,
            center=Coordinate(body.latitude, body.longitude),
            radius_km=body.radius_km,
            urgency=body.urgency,
            created_by=body.created_by,
        )
    )
    return FanoutResponse(**result.to_dict())


@router.post(
    "/system",
    response_model=FanoutResponse,
    status_code=201,
    summary="Send an alert to explicit users",
)
async def send_directed(
    body: DirectedAlertBody,
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> FanoutResponse:
    result = await fanout.send_directed_alert(
        DirectedAlertRequest(
            user_ids=body.user_ids,
            title=body.title,
            message=body.message,
            urgency=body.urgency,
            source=body.source,
            alert_type=body.type,
            related_id=body.related_id,
        )
    )
    return FanoutResponse(**result.to_dict())


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@router.get("/user/{user_id}", summary="A user's deliveries, newest first")
async def list_user_alerts(
    user_id: int,
    unread_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> Dict[str, Any]:
    deliveries = await fanout.list_user_deliveries(user_id, unread_only=unread_only, limit=limit)
    return {"success": True, "data": [d.to_dict() for d in deliveries]}


@router.get("/system", summary="Active broadcasts")
async def list_system_alerts(
    user_id: Optional[int] = Query(None, description="Fill is_read for this user"),
    category: Optional[str] = Query(None, examples=["emergency"]),
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> Dict[str, Any]:
    broadcasts = await fanout.list_broadcasts(user_id=user_id, category=category)
    return {"success": True, "data": [b.to_dict() for b in broadcasts]}


# ---------------------------------------------------------------------------
# Read state & maintenance
# ---------------------------------------------------------------------------

@router.patch("/system/{alert_id}/deactivate", summary="Hide a broadcast")
async def deactivate_system_alert(
    alert_id: int,
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> Dict[str, Any]:
    broadcast = await fanout.deactivate_broadcast(alert_id)
    return {"success": True, "data": broadcast.to_dict()}


@router.patch("/{alert_id}/read", summary="Mark a delivery or broadcast as read")
async def mark_alert_read(
    alert_id: int,
    body: MarkReadBody,
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> Dict[str, Any]:
    await fanout.mark_read(alert_id, body.type, user_id=body.user_id)
    return {"success": True, "message": "Alert marked as read"}


@router.delete("/{alert_id}", summary="Delete a delivery")
async def delete_alert(
    alert_id: int,
    user_id: Optional[int] = Query(None, description="Only delete if owned by this user"),
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> Dict[str, Any]:
    await fanout.delete_delivery(alert_id, user_id=user_id)
    return {"success": True, "message": "Alert deleted"}
