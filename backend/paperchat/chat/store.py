"""MessageStore: DuckDB-backed messages and the single read bit.

Filtering is expressed once as a :class:`MessagePredicate` and used both as
SQL (sync listing, counts, bulk mark-read) and in Python (push fan-out), so
the two delivery paths cannot disagree on who sees what.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

from paperchat.errors import AccessDenied, NotFound

from .database import ChatDatabase

logger = logging.getLogger(__name__)

_COLUMNS = [
    "id", "seq", "room_id", "sender_id", "receiver_id", "message",
    "is_read", "created_at",
]
_SELECT = ", ".join(_COLUMNS)


@dataclass
class Message:
    id: str
    seq: int
    room_id: str
    sender_id: str
    receiver_id: Optional[str]
    message: str
    is_read: bool
    created_at: datetime


# =============================================================================
# Predicates
# =============================================================================

FILTERABLE_COLUMNS = frozenset({"room_id", "sender_id", "receiver_id", "is_read"})


class Condition(NamedTuple):
    """``column op value`` where NULL compares like Python None."""
    column: str
    op: str
    value: Any

    def to_sql(self) -> str:
        if self.column not in FILTERABLE_COLUMNS:
            raise ValueError(f"Column {self.column!r} cannot be filtered on")
        if self.op == "=":
            return f"{self.column} IS NOT DISTINCT FROM ?"
        if self.op == "!=":
            return f"{self.column} IS DISTINCT FROM ?"
        raise ValueError(f"Unsupported operator {self.op!r}")

    def matches(self, message: Any) -> bool:
        actual = getattr(message, self.column)
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        raise ValueError(f"Unsupported operator {self.op!r}")


class MessagePredicate:
    """Disjunction of conjunctions of :class:`Condition`.

    ``MessagePredicate([[]])`` holds for every message (one empty
    conjunction); ``MessagePredicate([])`` holds for none.
    """

    def __init__(self, clauses: Sequence[Sequence[Condition]]) -> None:
        self.clauses: Tuple[Tuple[Condition, ...], ...] = tuple(tuple(c) for c in clauses)

    @classmethod
    def everything(cls) -> "MessagePredicate":
        return cls([[]])

    @classmethod
    def nothing(cls) -> "MessagePredicate":
        return cls([])

    def to_sql(self) -> Tuple[str, List[Any]]:
        """Render as a parenthesised SQL boolean plus its parameters."""
        if not self.clauses:
            return "(FALSE)", []
        parts: List[str] = []
        params: List[Any] = []
        for conjunction in self.clauses:
            if not conjunction:
                parts.append("TRUE")
                continue
            parts.append("(" + " AND ".join(c.to_sql() for c in conjunction) + ")")
            params.extend(c.value for c in conjunction)
        return "(" + " OR ".join(parts) + ")", params

    def matches(self, message: Any) -> bool:
        """Evaluate against any object exposing the filterable attributes."""
        return any(all(c.matches(message) for c in conjunction) for conjunction in self.clauses)

    def __repr__(self) -> str:
        return f"MessagePredicate({self.clauses!r})"


# =============================================================================
# Store
# =============================================================================


class MessageStore:
    """Append-only message storage scoped by room."""

    def __init__(self, db: Optional[ChatDatabase] = None) -> None:
        self._db = db or ChatDatabase.get_instance()

    def append(
        self,
        room_id: str,
        sender_id: str,
        receiver_id: Optional[str],
        body: str,
    ) -> Message:
        """Insert a message and bump the room's ``updated_at`` atomically."""
        now = datetime.utcnow()
        with self._db.transaction() as cur:
            row = cur.execute(
                f"""
                INSERT INTO chat_messages
                  (id, room_id, sender_id, receiver_id, message, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, FALSE, ?)
                RETURNING {_SELECT}
                """,
                [str(uuid.uuid4()), room_id, sender_id, receiver_id, body, now],
            ).fetchone()
            cur.execute(
                "UPDATE chat_rooms SET updated_at = ? WHERE id = ?", [now, room_id]
            )
        message = Message(*row)
        logger.info(
            "[store] Appended %s to room %s (sender=%s, receiver=%s)",
            message.id, room_id, sender_id, receiver_id,
        )
        return message

    def list_by_room(
        self,
        room_id: str,
        predicate: MessagePredicate,
        limit: int,
        offset: int = 0,
    ) -> Tuple[List[Message], int]:
        """Page through matching messages in creation order.

        Returns:
            The page and the total number of matching messages.
        """
        where, params = predicate.to_sql()
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"SELECT {_SELECT} FROM chat_messages WHERE room_id = ? AND {where} "
                f"ORDER BY seq ASC LIMIT {int(limit)} OFFSET {int(offset)}",
                [room_id, *params],
            ).fetchall()
            total = cur.execute(
                f"SELECT count(*) FROM chat_messages WHERE room_id = ? AND {where}",
                [room_id, *params],
            ).fetchone()[0]
        return [Message(*r) for r in rows], int(total)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {_SELECT} FROM chat_messages WHERE id = ?", [message_id]
            ).fetchone()
        return Message(*row) if row else None

    def last_message(self, room_id: str, predicate: MessagePredicate) -> Optional[Message]:
        where, params = predicate.to_sql()
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {_SELECT} FROM chat_messages WHERE room_id = ? AND {where} "
                "ORDER BY seq DESC LIMIT 1",
                [room_id, *params],
            ).fetchone()
        return Message(*row) if row else None

    def count(self, room_id: str, predicate: MessagePredicate) -> int:
        where, params = predicate.to_sql()
        with self._db.cursor() as cur:
            total = cur.execute(
                f"SELECT count(*) FROM chat_messages WHERE room_id = ? AND {where}",
                [room_id, *params],
            ).fetchone()[0]
        return int(total)

    def mark_read(
        self,
        message_id: str,
        requester_id: str,
        implicit_receiver_id: Optional[str] = None,
    ) -> Message:
        """Flip a message's read bit.

        Only the sender or the receiver may do this. ``implicit_receiver_id``
        stands in as the receiver of a message that names none. Marking an
        already-read message returns it unchanged.

        Raises:
            NotFound: Unknown message.
            AccessDenied: Requester is neither sender nor receiver.
        """
        message = self.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")

        receiver_id = message.receiver_id or implicit_receiver_id
        if requester_id not in (message.sender_id, receiver_id):
            raise AccessDenied("You can only mark your own messages as read")

        if message.is_read:
            return message

        with self._db.writer() as cur:
            cur.execute(
                "UPDATE chat_messages SET is_read = TRUE WHERE id = ? AND is_read = FALSE",
                [message_id],
            )
        message.is_read = True
        logger.debug("[store] Message %s marked read by %s", message_id, requester_id)
        return message

    def mark_matching_read(self, room_id: str, predicate: MessagePredicate) -> int:
        """Mark every unread message in the room matching ``predicate``.

        Returns:
            Number of messages whose read bit flipped.
        """
        where, params = predicate.to_sql()
        with self._db.writer() as cur:
            rows = cur.execute(
                f"UPDATE chat_messages SET is_read = TRUE "
                f"WHERE room_id = ? AND is_read = FALSE AND {where} RETURNING id",
                [room_id, *params],
            ).fetchall()
        return len(rows)
