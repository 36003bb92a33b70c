"""DuckDB storage shared by the chat components.

Rooms and messages live in one embedded DuckDB file next to the read-only
ownership tables the platform populates. For a standalone deployment those
tables are bootstrapped empty so the registry queries always resolve.

Database Schema:
    chat_rooms table:
        - id: Room identifier (UUID string)
        - paper_id: Paper the room belongs to (UNIQUE, one room per paper)
        - created_at / updated_at: UTC timestamps; updated_at moves on
          every new message
    chat_messages table:
        - id: Message identifier (UUID string)
        - seq: Monotonic creation-order key (sequence)
        - room_id, sender_id, receiver_id (nullable)
        - message: Message body
        - is_read: Single read bit, only ever flips to TRUE
        - created_at: UTC timestamp
    papers / exam_attempts / users:
        Ownership context, read-only for the chat core.

Thread Safety:
    Blocking calls run in the worker thread pool, so the connection is
    never used directly: each operation takes its own cursor, and writes
    are serialized by ``write_lock``.

Usage:
    db = ChatDatabase.get_instance()
    with db.cursor() as cur:
        cur.execute("SELECT count(*) FROM chat_rooms").fetchone()
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import duckdb

from paperchat.errors import PersistenceFailure

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS chat_rooms (
        id          VARCHAR PRIMARY KEY,
        paper_id    VARCHAR NOT NULL UNIQUE,
        created_at  TIMESTAMP NOT NULL,
        updated_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id          VARCHAR PRIMARY KEY,
        seq         BIGINT NOT NULL DEFAULT nextval('chat_messages_seq'),
        room_id     VARCHAR NOT NULL,
        sender_id   VARCHAR NOT NULL,
        receiver_id VARCHAR,
        message     VARCHAR NOT NULL,
        is_read     BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages(room_id)",
    """
    CREATE TABLE IF NOT EXISTS papers (
        id          VARCHAR PRIMARY KEY,
        title       VARCHAR NOT NULL,
        description VARCHAR,
        teacher_id  VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_attempts (
        paper_id    VARCHAR NOT NULL,
        student_id  VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR PRIMARY KEY,
        first_name  VARCHAR NOT NULL DEFAULT '',
        last_name   VARCHAR NOT NULL DEFAULT '',
        email       VARCHAR,
        role        VARCHAR NOT NULL
    )
    """,
]


class ChatDatabase:
    """Singleton owner of the DuckDB connection.

    Attributes:
        _instance: Singleton instance.
        write_lock: Serializes every write so DuckDB never sees two
            conflicting writers on the same rows.
    """

    _instance: Optional["ChatDatabase"] = None
    _default_db_path: str = "paperchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._cursor_lock = threading.Lock()
        self.write_lock = threading.Lock()
        try:
            self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
            for statement in _SCHEMA:
                self._conn.execute(statement)
        except duckdb.Error as exc:
            logger.error("[ChatDB] Could not open %s: %s", self._db_path, exc)
            raise PersistenceFailure("Chat store unavailable") from exc
        logger.info("[ChatDB] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatDatabase":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and drop the singleton. Used by tests for a clean state."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._cursor_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -----------------------------------------------------------------------
    # Cursors
    # -----------------------------------------------------------------------

    @contextmanager
    def cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a private cursor for one operation.

        Constraint violations propagate unchanged so callers can recover from
        them; every other DuckDB error becomes a PersistenceFailure.
        """
        with self._cursor_lock:
            if self._conn is None:
                raise PersistenceFailure("Chat store unavailable")
            try:
                cur = self._conn.cursor()
            except duckdb.Error as exc:
                raise PersistenceFailure("Chat store unavailable") from exc
        try:
            yield cur
        except duckdb.ConstraintException:
            raise
        except duckdb.Error as exc:
            logger.error("[ChatDB] Query failed: %s", exc)
            raise PersistenceFailure("Chat store unavailable, please retry") from exc
        finally:
            cur.close()

    @contextmanager
    def writer(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Cursor for a single auto-committed write, under the write lock."""
        with self.write_lock, self.cursor() as cur:
            yield cur

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Cursor whose statements commit together or not at all."""
        with self.write_lock, self.cursor() as cur:
            cur.execute("BEGIN TRANSACTION")
            try:
                yield cur
            except Exception:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
