"""
Pydantic schemas for the chat and alert APIs.

Separated from the route handlers so they are reusable across the
codebase (SSE handlers, background workers, tests).

Coordinates are accepted as plain floats here; range checks happen in
``Coordinate`` so every entry point reports them the same way (400
INVALID_COORDINATE).
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from resqzone.app.alerts.models import AlertType, ReadScope, Urgency


# ---------------------------------------------------------------------------
# Chat / local groups
# ---------------------------------------------------------------------------

class AddressInput(BaseModel):
    """Reverse-geocoded address from the client."""
    street: Optional[str] = Field(None, examples=["Baker Street"])
    city: Optional[str] = Field(None, examples=["London"])


class JoinLocalGroupRequest(BaseModel):
    """Request body for POST /api/v1/chat/local-groups/join."""
    user_id: int = Field(..., examples=[7])
    latitude: float = Field(..., description="Latitude in decimal degrees", examples=[51.5074])
    longitude: float = Field(..., description="Longitude in decimal degrees", examples=[-0.1278])
    has_address: bool = Field(
        False, description="Name the group from the address instead of coordinates",
    )
    address: Optional[AddressInput] = None


class CreateChatRequest(BaseModel):
    """Request body for POST /api/v1/chat/create."""
    user_id: int = Field(..., description="Creator, becomes the owner", examples=[7])
    participant_ids: List[int] = Field(..., min_length=1, examples=[[8]])
    is_group: bool = False
    group_name: Optional[str] = Field(None, examples=["Baker Street volunteers"])


class AddMembersRequest(BaseModel):
    requested_by: int = Field(..., examples=[7])
    user_ids: List[int] = Field(..., min_length=1, examples=[[8, 9]])


class LeaveGroupRequest(BaseModel):
    user_id: int = Field(..., examples=[8])


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class EmergencyAlertBody(BaseModel):
    """Request body for POST /api/v1/alerts/emergency."""
    title: str = Field(..., examples=["Flash flood warning"])
    message: str = Field(..., examples=["Move to higher ground now."])
    latitude: float = Field(..., examples=[51.5074])
    longitude: float = Field(..., examples=[-0.1278])
    radius_km: float = Field(..., description="Alert radius in kilometers", examples=[10.0])
    urgency: Optional[Urgency] = Field(None, description="Defaults to advisory")
    created_by: Optional[int] = None


class DirectedAlertBody(BaseModel):
    """Request body for POST /api/v1/alerts/system."""
    user_ids: List[int] = Field(..., min_length=1, examples=[[7, 8]])
    title: str = Field(..., examples=["Shelter open"])
    message: str = Field(..., examples=["The community hall is open as a shelter."])
    urgency: Optional[Urgency] = None
    source: str = Field("system", examples=["council"])
    type: AlertType = Field(AlertType.SYSTEM, description="Delivery category")
    related_id: Optional[int] = None


class MarkReadBody(BaseModel):
    """Request body for PATCH /api/v1/alerts/{alert_id}/read."""
    type: ReadScope = Field(
        ReadScope.USER,
        description="'user' marks a delivery, 'system' marks a broadcast for user_id",
    )
    user_id: Optional[int] = None


class FanoutResponse(BaseModel):
    broadcast_id: Optional[int] = None
    delivered_count: int
    failed_user_ids: List[int] = Field(default_factory=list)
