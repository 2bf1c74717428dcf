"""
FastAPI routes: local groups and chat membership.

Provides endpoints to:
    POST   /api/v1/chat/local-groups/join        — join or found the covering local group
    GET    /api/v1/chat/local-groups/nearby      — local groups covering a point
    POST   /api/v1/chat/create                   — start a direct or group chat
    GET    /api/v1/chat/list/{user_id}           — a user's chats
    GET    /api/v1/chat/{chat_id}                — one chat
    GET    /api/v1/chat/{chat_id}/members        — its members
    POST   /api/v1/chat/{chat_id}/add-members    — member adds users
    DELETE /api/v1/chat/{chat_id}/remove-member  — owner removes a member
    POST   /api/v1/chat/{chat_id}/leave          — member leaves
    DELETE /api/v1/chat/{chat_id}                — owner disbands
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Response

from resqzone.app.api.deps import get_group_directory
from resqzone.app.api.schemas import (
    AddMembersRequest,
    CreateChatRequest,
    JoinLocalGroupRequest,
    LeaveGroupRequest,
)
from resqzone.app.groups.directory import GroupDirectory
from resqzone.app.groups.models import AddressHint
from resqzone.app.spatial.geo_index import Coordinate

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])


# ---------------------------------------------------------------------------
# Local groups
# ---------------------------------------------------------------------------

@router.post(
    "/local-groups/join",
    summary="Join the nearest local group, or create one here",
    responses={201: {"description": "A new local group was created"}},
)
async def join_local_group(
    body: JoinLocalGroupRequest,
    response: Response,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    hint = AddressHint(street=body.address.street, city=body.address.city) if body.address else None
    result = await directory.join_or_create_local_group(
        body.user_id,
        Coordinate(body.latitude, body.longitude),
        has_address=body.has_address,
        address_hint=hint,
    )
    response.status_code = 201 if result.created else 200
    return {"success": True, "data": result.to_dict()}


@router.get("/local-groups/nearby", summary="Local groups covering a point")
async def nearby_local_groups(
    latitude: float = Query(..., examples=[51.5074]),
    longitude: float = Query(..., examples=[-0.1278]),
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    found = await directory.find_local_groups(Coordinate(latitude, longitude))
    return {"success": True, "data": [g.to_dict() for g in found]}


# ---------------------------------------------------------------------------
# Plain chats
# ---------------------------------------------------------------------------

@router.post(
    "/create",
    summary="Start a direct or group chat",
    responses={201: {"description": "A new chat was created"}},
)
async def create_chat(
    body: CreateChatRequest,
    response: Response,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    result = await directory.create_chat(
        body.user_id, body.participant_ids, is_group=body.is_group, name=body.group_name,
    )
    response.status_code = 201 if result.created else 200
    return {"success": True, "data": result.to_dict()}


# ---------------------------------------------------------------------------
# Chat lists & lookups
# ---------------------------------------------------------------------------

@router.get("/list/{user_id}", summary="Chats a user belongs to")
async def list_user_chats(
    user_id: int,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    summaries = await directory.list_user_groups(user_id)
    return {"success": True, "data": [s.to_dict() for s in summaries]}


@router.get("/{chat_id}", summary="One chat")
async def get_chat(
    chat_id: int,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    group = await directory.get_group(chat_id)
    return {"success": True, "data": group.to_dict()}


@router.get("/{chat_id}/members", summary="Members of a chat")
async def get_chat_members(
    chat_id: int,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    members = await directory.list_members(chat_id)
    return {"success": True, "data": [m.to_dict() for m in members]}


# ---------------------------------------------------------------------------
# Membership changes
# ---------------------------------------------------------------------------

@router.post("/{chat_id}/add-members", summary="Add users to a chat")
async def add_members(
    chat_id: int,
    body: AddMembersRequest,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    added = await directory.add_members(chat_id, body.requested_by, body.user_ids)
    return {"success": True, "data": {"chat_id": chat_id, "added": added}}


@router.delete("/{chat_id}/remove-member", summary="Owner removes a member")
async def remove_member(
    chat_id: int,
    user_id: int = Query(..., description="Member to remove"),
    requested_by: int = Query(..., description="Acting owner"),
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    change = await directory.remove_member(chat_id, user_id, requested_by)
    return {"success": True, "data": change.to_dict()}


@router.post("/{chat_id}/leave", summary="Leave a chat")
async def leave_chat(
    chat_id: int,
    body: LeaveGroupRequest,
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    change = await directory.leave_group(chat_id, body.user_id)
    return {"success": True, "data": change.to_dict()}


@router.delete("/{chat_id}", summary="Owner disbands a chat")
async def disband_chat(
    chat_id: int,
    requested_by: int = Query(..., description="Acting owner"),
    directory: GroupDirectory = Depends(get_group_directory),
) -> Dict[str, Any]:
    former = await directory.disband_group(chat_id, requested_by)
    return {"success": True, "data": {"chat_id": chat_id, "former_members": former}}
