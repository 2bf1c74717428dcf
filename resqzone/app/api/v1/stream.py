"""
FastAPI routes: Server-Sent Events for realtime pushes.

    GET /api/v1/stream/users/{user_id}  — list updates and new alerts for a user
    GET /api/v1/stream/chats/{chat_id}  — events for one group
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from resqzone.app.realtime.sink import chat_room, user_room
from resqzone.app.realtime.stream import stream_room_events

router = APIRouter(prefix="/api/v1/stream", tags=["realtime"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/users/{user_id}", summary="SSE stream for a user's channel")
async def stream_user(user_id: int) -> StreamingResponse:
    return StreamingResponse(
        stream_room_events(user_room(user_id)),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/chats/{chat_id}", summary="SSE stream for a group's channel")
async def stream_chat(chat_id: int) -> StreamingResponse:
    return StreamingResponse(
        stream_room_events(chat_room(chat_id)),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )
