"""Who may see which message in a paper's room.

A teacher sees the whole room. A student sees their own messages, the
teacher's replies addressed to them, and the teacher's announcements (teacher
messages with no receiver). Students never see each other's messages.
"""
from typing import Iterable, List, Optional

from paperchat.auth.service import Role

from .store import Condition, Message, MessagePredicate


def for_viewer(user_id: str, role: str, teacher_id: str) -> MessagePredicate:
    if role == Role.TEACHER:
        return MessagePredicate.everything()
    if role == Role.STUDENT:
        return MessagePredicate([
            [Condition("sender_id", "=", user_id)],
            [Condition("sender_id", "=", teacher_id), Condition("receiver_id", "=", user_id)],
            [Condition("sender_id", "=", teacher_id), Condition("receiver_id", "=", None)],
        ])
    return MessagePredicate.nothing()


def filter(
    messages: Iterable[Message],
    user_id: str,
    role: str,
    teacher_id: str,
    predicate: Optional[MessagePredicate] = None,
) -> List[Message]:
    """Keep only the messages the viewer may see, preserving order."""
    predicate = predicate or for_viewer(user_id, role, teacher_id)
    return [m for m in messages if predicate.matches(m)]
