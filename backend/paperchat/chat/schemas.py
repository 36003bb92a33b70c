"""Pydantic models shared by the HTTP and WebSocket surfaces.

Field names are camelCase because they go straight onto the wire.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PaperSummary(BaseModel):
    id: str = Field(..., description="Paper ID")
    title: str = Field(..., description="Paper title")
    description: Optional[str] = Field(default=None, description="Paper description")
    teacherId: str = Field(..., description="User ID of the owning teacher")


class SenderSummary(BaseModel):
    """Display information about a message's sender."""
    id: str
    firstName: str = ""
    lastName: str = ""
    email: Optional[str] = None
    role: Optional[str] = None


class ChatMessage(BaseModel):
    """A stored message as clients see it.

    Attributes:
        id: Message ID.
        roomId: Room the message belongs to.
        paperId: Paper the room is scoped to.
        senderId: Author's user ID.
        receiverId: Addressee, or None for a student question to the teacher
            or a teacher announcement to the whole room.
        message: Message body.
        isRead: Shared read bit.
        createdAt: UTC creation time.
        sender: Author display information, when known.
    """
    id: str
    roomId: str
    paperId: str
    senderId: str
    receiverId: Optional[str] = None
    message: str
    isRead: bool = False
    createdAt: datetime
    sender: Optional[SenderSummary] = None

    def predicate_fields(self) -> "_PredicateView":
        """View exposing the store's column names for predicate evaluation."""
        return _PredicateView(self)


class _PredicateView:
    __slots__ = ("room_id", "sender_id", "receiver_id", "is_read")

    def __init__(self, message: ChatMessage) -> None:
        self.room_id = message.roomId
        self.sender_id = message.senderId
        self.receiver_id = message.receiverId
        self.is_read = message.isRead


class Room(BaseModel):
    id: str
    paperId: str
    createdAt: datetime
    updatedAt: datetime


class RoomDetail(Room):
    paper: PaperSummary


class RoomSummary(Room):
    """Entry of the "my rooms" list."""
    paper: PaperSummary
    lastMessage: Optional[ChatMessage] = None
    messageCount: int = 0
    unreadCount: int = 0


class MessagePage(BaseModel):
    messages: List[ChatMessage]
    totalCount: int
    hasMore: bool
    limit: int
    offset: int


class SendMessageRequest(BaseModel):
    """Body of ``POST /api/chat/messages``.

    ``paperId`` and ``message`` are checked by ChatService so a missing
    field is a 400, the same answer the WebSocket path gives.
    """
    paperId: Optional[str] = Field(default=None, description="Paper whose room receives the message")
    message: Optional[str] = Field(default=None, description="Message body")
    receiverId: Optional[str] = Field(default=None, description="Addressee user ID")


class UnreadCountResponse(BaseModel):
    paperId: str
    unreadCount: int


class MarkRoomReadResponse(BaseModel):
    paperId: str
    markedCount: int


def to_wire(model: BaseModel, **extra: Any) -> Dict[str, Any]:
    """JSON-ready dict of ``model`` merged with ``extra`` fields."""
    return {**model.model_dump(mode="json"), **extra}
