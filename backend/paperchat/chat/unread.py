"""Role-specific unread counts.

The same predicate drives both the count and "mark room read", so reading a
room always brings its count to zero.
"""
from paperchat.auth.service import Role

from .rooms import RoomDirectory
from .store import Condition, MessagePredicate, MessageStore


def unread_predicate(user_id: str, role: str) -> MessagePredicate:
    """Teacher: unread messages they did not send. Student: unread replies to them."""
    unread = Condition("is_read", "=", False)
    if role == Role.TEACHER:
        return MessagePredicate([[Condition("sender_id", "!=", user_id), unread]])
    if role == Role.STUDENT:
        return MessagePredicate([[Condition("receiver_id", "=", user_id), unread]])
    return MessagePredicate.nothing()


def unread_count(
    rooms: RoomDirectory,
    store: MessageStore,
    paper_id: str,
    user_id: str,
    role: str,
) -> int:
    """Unread messages for the viewer; 0 when the paper has no room yet."""
    room = rooms.find_room(paper_id)
    if room is None:
        return 0
    return store.count(room.id, unread_predicate(user_id, role))
