"""RoomDirectory: exactly one room per paper, created lazily."""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import duckdb

from paperchat.errors import NotFound

from .database import ChatDatabase

logger = logging.getLogger(__name__)

_COLUMNS = "id, paper_id, created_at, updated_at"


@dataclass
class Room:
    id: str
    paper_id: str
    created_at: datetime
    updated_at: datetime


class RoomDirectory:
    """Maps papers to their chat rooms.

    Concurrent first access for the same paper converges on a single row:
    the ``paper_id`` UNIQUE constraint rejects the losing insert and the
    loser re-reads the winner's room.
    """

    def __init__(self, db: Optional[ChatDatabase] = None) -> None:
        self._db = db or ChatDatabase.get_instance()

    def find_room(self, paper_id: str) -> Optional[Room]:
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {_COLUMNS} FROM chat_rooms WHERE paper_id = ?", [paper_id]
            ).fetchone()
        return Room(*row) if row else None

    def get_room(self, paper_id: str) -> Room:
        """Return the paper's room without creating it.

        Raises:
            NotFound: No room exists yet for the paper.
        """
        room = self.find_room(paper_id)
        if room is None:
            raise NotFound("Chat room not found")
        return room

    def get_room_by_id(self, room_id: str) -> Optional[Room]:
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {_COLUMNS} FROM chat_rooms WHERE id = ?", [room_id]
            ).fetchone()
        return Room(*row) if row else None

    def find_rooms(self, paper_ids: List[str]) -> List[Room]:
        """Rooms for the given papers, most recently active first."""
        if not paper_ids:
            return []
        placeholders = ", ".join("?" for _ in paper_ids)
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"SELECT {_COLUMNS} FROM chat_rooms WHERE paper_id IN ({placeholders}) "
                "ORDER BY updated_at DESC, id",
                list(paper_ids),
            ).fetchall()
        return [Room(*r) for r in rows]

    def get_or_create_room(self, paper_id: str) -> Room:
        """Return the paper's room, creating it on first use.

        Callers must have resolved access to the paper first.
        """
        existing = self.find_room(paper_id)
        if existing is not None:
            return existing

        now = datetime.utcnow()
        room = Room(id=str(uuid.uuid4()), paper_id=paper_id, created_at=now, updated_at=now)
        try:
            with self._db.writer() as cur:
                cur.execute(
                    f"INSERT INTO chat_rooms ({_COLUMNS}) VALUES (?, ?, ?, ?)",
                    [room.id, room.paper_id, room.created_at, room.updated_at],
                )
        except duckdb.ConstraintException:
            # Lost the creation race; the winner's row is the room.
            logger.info("[rooms] Room for paper %s created concurrently, re-reading", paper_id)
            return self.get_room(paper_id)

        logger.info("[rooms] Created room %s for paper %s", room.id, paper_id)
        return room

    def touch(self, room_id: str, when: Optional[datetime] = None) -> None:
        with self._db.writer() as cur:
            cur.execute(
                "UPDATE chat_rooms SET updated_at = ? WHERE id = ?",
                [when or datetime.utcnow(), room_id],
            )
