"""Access policy for paper rooms.

A teacher may use a paper's room iff they own the paper; a student iff they
have attempted it. No other role and no other rule exists.
"""
import logging
from enum import Enum

from paperchat.auth.service import Role
from paperchat.errors import AccessDenied, NotFound

from .registry import OwnershipRegistry, PaperInfo

logger = logging.getLogger(__name__)


class AccessDecision(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


def _decide(registry: OwnershipRegistry, paper: PaperInfo, user_id: str, role: str) -> AccessDecision:
    if role == Role.TEACHER:
        allowed = paper.teacher_id == user_id
    elif role == Role.STUDENT:
        allowed = registry.has_attempt(paper.id, user_id)
    else:
        allowed = False
    return AccessDecision.ALLOWED if allowed else AccessDecision.DENIED


def can_access(registry: OwnershipRegistry, paper_id: str, user_id: str, role: str) -> AccessDecision:
    """Decide whether ``user_id`` acting as ``role`` may use the paper's room.

    An unknown paper is DENIED.
    """
    paper = registry.get_paper(paper_id)
    if paper is None:
        return AccessDecision.DENIED
    return _decide(registry, paper, user_id, role)


def require_access(registry: OwnershipRegistry, paper_id: str, user_id: str, role: str) -> PaperInfo:
    """Raising variant of :func:`can_access`.

    Returns:
        The paper, so callers can reuse its owner without a second lookup.

    Raises:
        NotFound: The paper does not exist.
        AccessDenied: The user is neither its owner nor an attempting student.
    """
    paper = registry.get_paper(paper_id)
    if paper is None:
        raise NotFound("Paper not found")
    if _decide(registry, paper, user_id, role) is AccessDecision.DENIED:
        logger.info("[access] Denied %s %s on paper %s", role, user_id, paper_id)
        if role == Role.TEACHER:
            raise AccessDenied("You can only chat about your own papers")
        raise AccessDenied("You must attempt this paper before chatting about it")
    return paper
