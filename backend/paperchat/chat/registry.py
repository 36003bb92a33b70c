"""Read-only view of the ownership context.

The chat core never writes papers, attempts or users. It only asks who owns a
paper, whether a student attempted it, and how to display a user.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from .database import ChatDatabase


@dataclass(frozen=True)
class PaperInfo:
    id: str
    title: str
    teacher_id: str
    description: Optional[str] = None


@dataclass(frozen=True)
class UserInfo:
    id: str
    first_name: str
    last_name: str
    role: str
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.id


class OwnershipRegistry(ABC):
    """Abstract source of paper ownership and attempt facts."""

    @abstractmethod
    def get_paper(self, paper_id: str) -> Optional[PaperInfo]:
        """Return the paper, or None when it does not exist."""

    @abstractmethod
    def has_attempt(self, paper_id: str, student_id: str) -> bool:
        """True when the student has at least one attempt on the paper."""

    @abstractmethod
    def papers_owned_by(self, teacher_id: str) -> List[PaperInfo]:
        ...

    @abstractmethod
    def papers_attempted_by(self, student_id: str) -> List[PaperInfo]:
        ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserInfo]:
        ...


_PAPER_COLUMNS = "id, title, teacher_id, description"
_USER_COLUMNS = "id, first_name, last_name, role, email"


class DuckDBOwnershipRegistry(OwnershipRegistry):
    """Registry backed by the platform tables in the chat database."""

    def __init__(self, db: Optional[ChatDatabase] = None) -> None:
        self._db = db or ChatDatabase.get_instance()

    def get_paper(self, paper_id: str) -> Optional[PaperInfo]:
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {_PAPER_COLUMNS} FROM papers WHERE id = ?", [paper_id]
            ).fetchone()
        return PaperInfo(*row) if row else None

    def has_attempt(self, paper_id: str, student_id: str) -> bool:
        with self._db.cursor() as cur:
            row = cur.execute(
                "SELECT 1 FROM exam_attempts WHERE paper_id = ? AND student_id = ? LIMIT 1",
                [paper_id, student_id],
            ).fetchone()
        return row is not None

    def papers_owned_by(self, teacher_id: str) -> List[PaperInfo]:
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"SELECT {_PAPER_COLUMNS} FROM papers WHERE teacher_id = ? ORDER BY id",
                [teacher_id],
            ).fetchall()
        return [PaperInfo(*r) for r in rows]

    def papers_attempted_by(self, student_id: str) -> List[PaperInfo]:
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT {_PAPER_COLUMNS} FROM papers
                WHERE id IN (SELECT paper_id FROM exam_attempts WHERE student_id = ?)
                ORDER BY id
                """,
                [student_id],
            ).fetchall()
        return [PaperInfo(*r) for r in rows]

    def get_user(self, user_id: str) -> Optional[UserInfo]:
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id]
            ).fetchone()
        return UserInfo(*row) if row else None
