"""ChatService: the one library both delivery paths call.

The HTTP router and the WebSocket gateway are thin adapters; every access
check, validation rule and visibility decision lives here so the two paths
stay consistent. All methods block on DuckDB and are meant to be called from
the worker thread pool by async callers.
"""
import logging
from typing import Dict, List, Optional, Tuple

from paperchat.auth.service import Role
from paperchat.config import ChatSettings, get_config
from paperchat.errors import NotFound, ValidationFailure

from . import unread, visibility
from .access import require_access
from .database import ChatDatabase
from .registry import DuckDBOwnershipRegistry, OwnershipRegistry, PaperInfo
from .rooms import Room as StoredRoom
from .rooms import RoomDirectory
from .schemas import (
    ChatMessage,
    MessagePage,
    PaperSummary,
    RoomDetail,
    RoomSummary,
    SenderSummary,
)
from .store import Message, MessageStore

logger = logging.getLogger(__name__)


class ChatService:
    """Room, message and read-state operations for one authenticated caller."""

    def __init__(
        self,
        db: Optional[ChatDatabase] = None,
        registry: Optional[OwnershipRegistry] = None,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        db = db or ChatDatabase.get_instance()
        self.registry = registry or DuckDBOwnershipRegistry(db)
        self.rooms = RoomDirectory(db)
        self.store = MessageStore(db)
        self.settings = settings or get_config().chat

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def list_rooms(self, user_id: str, role: str) -> List[RoomSummary]:
        """Rooms of the caller's papers, most recently active first.

        Teachers get rooms of papers they own; students get rooms of papers
        they attempted. Papers without a conversation yet are omitted.
        ``lastMessage`` and ``messageCount`` only cover messages the caller
        may see.
        """
        if role == Role.TEACHER:
            papers = self.registry.papers_owned_by(user_id)
        elif role == Role.STUDENT:
            papers = self.registry.papers_attempted_by(user_id)
        else:
            return []

        papers_by_id = {p.id: p for p in papers}
        senders: Dict[str, Optional[SenderSummary]] = {}
        summaries = []
        for room in self.rooms.find_rooms(list(papers_by_id)):
            paper = papers_by_id[room.paper_id]
            predicate = visibility.for_viewer(user_id, role, paper.teacher_id)
            last = self.store.last_message(room.id, predicate)
            summaries.append(RoomSummary(
                id=room.id,
                paperId=room.paper_id,
                createdAt=room.created_at,
                updatedAt=room.updated_at,
                paper=_paper_summary(paper),
                lastMessage=self._to_chat_message(last, paper.id, senders) if last else None,
                messageCount=self.store.count(room.id, predicate),
                unreadCount=self.store.count(room.id, unread.unread_predicate(user_id, role)),
            ))
        return summaries

    def get_room(self, paper_id: str, user_id: str, role: str) -> RoomDetail:
        paper = require_access(self.registry, paper_id, user_id, role)
        room = self.rooms.get_or_create_room(paper_id)
        return _room_detail(room, paper)

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def list_messages(
        self,
        paper_id: str,
        user_id: str,
        role: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> MessagePage:
        """Page of messages the caller may see, oldest first.

        ``limit`` is clamped to ``[1, max_page_size]``; a negative offset is
        treated as 0.

        Raises:
            NotFound: Unknown paper, or no conversation yet.
            AccessDenied: Caller has no access to the paper.
        """
        paper = require_access(self.registry, paper_id, user_id, role)
        room = self.rooms.get_room(paper_id)

        limit = self.clamp_limit(limit)
        offset = max(0, offset or 0)
        predicate = visibility.for_viewer(user_id, role, paper.teacher_id)
        messages, total = self.store.list_by_room(room.id, predicate, limit, offset)

        senders: Dict[str, Optional[SenderSummary]] = {}
        return MessagePage(
            messages=[self._to_chat_message(m, paper_id, senders) for m in messages],
            totalCount=total,
            hasMore=offset + len(messages) < total,
            limit=limit,
            offset=offset,
        )

    def send_message(
        self,
        paper_id: Optional[str],
        sender_id: str,
        role: str,
        body: Optional[str],
        receiver_id: Optional[str] = None,
    ) -> Tuple[ChatMessage, str]:
        """Persist a message from an authorized sender.

        ``paper_id``, ``body`` and ``receiver_id`` may come straight off the
        wire, so their types are checked here for both delivery paths.

        Returns:
            The stored message and the paper's teacher ID, which push
            fan-out needs for visibility decisions.

        Raises:
            ValidationFailure: Missing, malformed, empty or oversized
                fields, or a receiver the sender may not address.
            NotFound: Unknown paper.
            AccessDenied: Sender has no access to the paper.
        """
        if not paper_id or not body:
            raise ValidationFailure("paperId and message are required")
        if not isinstance(paper_id, str) or not isinstance(body, str):
            raise ValidationFailure("paperId and message must be strings")
        if receiver_id is not None and not isinstance(receiver_id, str):
            raise ValidationFailure("receiverId must be a string")

        text = body.strip()
        if not text:
            raise ValidationFailure("Message cannot be empty")
        if len(text) > self.settings.max_message_length:
            raise ValidationFailure(
                f"Message exceeds {self.settings.max_message_length} characters"
            )

        paper = require_access(self.registry, paper_id, sender_id, role)
        receiver_id = receiver_id or None
        self._validate_receiver(paper, role, receiver_id)

        room = self.rooms.get_or_create_room(paper_id)
        stored = self.store.append(room.id, sender_id, receiver_id, text)
        return self._to_chat_message(stored, paper_id, {}), paper.teacher_id

    def _validate_receiver(self, paper: PaperInfo, role: str, receiver_id: Optional[str]) -> None:
        if receiver_id is None:
            return
        if role == Role.STUDENT and receiver_id != paper.teacher_id:
            raise ValidationFailure("Students can only message the paper's teacher")
        if role == Role.TEACHER and not self.registry.has_attempt(paper.id, receiver_id):
            raise ValidationFailure("Receiver has not attempted this paper")

    # -----------------------------------------------------------------------
    # Read state
    # -----------------------------------------------------------------------

    def mark_message_read(self, message_id: str, user_id: str) -> ChatMessage:
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        room = self.rooms.get_room_by_id(message.room_id)
        if room is None:
            raise NotFound("Chat room not found")
        paper = self.registry.get_paper(room.paper_id)
        updated = self.store.mark_read(
            message_id,
            user_id,
            implicit_receiver_id=paper.teacher_id if paper else None,
        )
        return self._to_chat_message(updated, room.paper_id, {})

    def mark_room_read(self, paper_id: str, user_id: str, role: str) -> int:
        """Mark everything counted as unread for the caller as read."""
        require_access(self.registry, paper_id, user_id, role)
        room = self.rooms.get_room(paper_id)
        marked = self.store.mark_matching_read(room.id, unread.unread_predicate(user_id, role))
        logger.info("[chat] %s marked %d messages read in room %s", user_id, marked, room.id)
        return marked

    def unread_count(self, paper_id: str, user_id: str, role: str) -> int:
        """Unread count for the caller; 0 when the paper has no room yet."""
        if self.rooms.find_room(paper_id) is None:
            return 0
        require_access(self.registry, paper_id, user_id, role)
        return unread.unread_count(self.rooms, self.store, paper_id, user_id, role)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def can_view(message: ChatMessage, teacher_id: str, viewer_id: str, viewer_role: str) -> bool:
        predicate = visibility.for_viewer(viewer_id, viewer_role, teacher_id)
        return predicate.matches(message.predicate_fields())

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.default_page_size
        return max(1, min(int(limit), self.settings.max_page_size))

    def _to_chat_message(
        self,
        message: Message,
        paper_id: str,
        senders: Dict[str, Optional[SenderSummary]],
    ) -> ChatMessage:
        if message.sender_id not in senders:
            user = self.registry.get_user(message.sender_id)
            senders[message.sender_id] = SenderSummary(
                id=user.id,
                firstName=user.first_name,
                lastName=user.last_name,
                email=user.email,
                role=user.role,
            ) if user else None
        return ChatMessage(
            id=message.id,
            roomId=message.room_id,
            paperId=paper_id,
            senderId=message.sender_id,
            receiverId=message.receiver_id,
            message=message.message,
            isRead=message.is_read,
            createdAt=message.created_at,
            sender=senders[message.sender_id],
        )


def _paper_summary(paper: PaperInfo) -> PaperSummary:
    return PaperSummary(
        id=paper.id,
        title=paper.title,
        description=paper.description,
        teacherId=paper.teacher_id,
    )


def _room_detail(room: StoredRoom, paper: PaperInfo) -> RoomDetail:
    return RoomDetail(
        id=room.id,
        paperId=room.paper_id,
        createdAt=room.created_at,
        updatedAt=room.updated_at,
        paper=_paper_summary(paper),
    )


def get_chat_service() -> ChatService:
    """Service bound to the process-wide database and settings."""
    config = get_config()
    return ChatService(ChatDatabase.get_instance(config.database.path), settings=config.chat)
