"""Chat REST API.

Synchronous surface for initial load, reconnection catch-up and clients that
cannot hold a WebSocket. Every route requires a bearer token.

Endpoints:
    GET  /api/chat/rooms                     : rooms of the caller's papers
    GET  /api/chat/rooms/{paperId}           : get or create a paper's room
    PUT  /api/chat/rooms/{paperId}/mark-read : mark the caller's unread as read
    GET  /api/chat/messages/{paperId}        : paginated visible messages
    POST /api/chat/messages                  : send a message
    PUT  /api/chat/messages/{messageId}/read : mark one message read
    GET  /api/chat/unread/{paperId}          : unread count for the caller
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from paperchat.auth import Identity, get_current_identity

from .gateway import gateway
from .schemas import (
    ChatMessage,
    MarkRoomReadResponse,
    MessagePage,
    RoomDetail,
    RoomSummary,
    SendMessageRequest,
    UnreadCountResponse,
)
from .service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.get("/rooms", response_model=List[RoomSummary])
async def list_rooms(
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> List[RoomSummary]:
    return await run_in_threadpool(service.list_rooms, identity.user_id, identity.role.value)


@router.get("/rooms/{paper_id}", response_model=RoomDetail)
async def get_room(
    paper_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> RoomDetail:
    """Return the paper's room, creating it on first access."""
    return await run_in_threadpool(
        service.get_room, paper_id, identity.user_id, identity.role.value
    )


@router.put("/rooms/{paper_id}/mark-read", response_model=MarkRoomReadResponse)
async def mark_room_read(
    paper_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> MarkRoomReadResponse:
    marked = await run_in_threadpool(
        service.mark_room_read, paper_id, identity.user_id, identity.role.value
    )
    return MarkRoomReadResponse(paperId=paper_id, markedCount=marked)


@router.get("/messages/{paper_id}", response_model=MessagePage)
async def list_messages(
    paper_id: str,
    limit: Optional[int] = Query(None, description="Page size, clamped to the configured ceiling"),
    offset: int = Query(0, ge=0, description="Number of visible messages to skip"),
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> MessagePage:
    """Messages the caller may see, oldest first.

    Example:
        GET /api/chat/messages/paper-1?limit=50&offset=0
    """
    return await run_in_threadpool(
        service.list_messages, paper_id, identity.user_id, identity.role.value, limit, offset
    )


@router.post("/messages", response_model=ChatMessage, status_code=201)
async def send_message(
    body: SendMessageRequest,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> ChatMessage:
    """Persist a message and push it to connected room members."""
    message, teacher_id = await run_in_threadpool(
        service.send_message,
        body.paperId,
        identity.user_id,
        identity.role.value,
        body.message,
        body.receiverId,
    )
    logger.info(f"[chat] REST message {message.id} from {identity.user_id} on paper {body.paperId}")
    await gateway.publish_message(message, teacher_id)
    return message


@router.put("/messages/{message_id}/read", response_model=ChatMessage)
async def mark_message_read(
    message_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> ChatMessage:
    return await run_in_threadpool(service.mark_message_read, message_id, identity.user_id)


@router.get("/unread/{paper_id}", response_model=UnreadCountResponse)
async def unread_count(
    paper_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> UnreadCountResponse:
    count = await run_in_threadpool(
        service.unread_count, paper_id, identity.user_id, identity.role.value
    )
    return UnreadCountResponse(paperId=paper_id, unreadCount=count)
