"""WebSocket gateway for real-time paper chat.

This module authenticates persistent connections, tracks which connections
have joined which paper rooms, and fans stored messages out to them.

Key features:
    - Bearer-token handshake (``?token=`` or ``Authorization`` header)
    - Per-paper room membership, many rooms per connection
    - Visibility-filtered fan-out: a student's socket never receives another
      student's message
    - Typing indicators (ephemeral, never persisted)
    - Read-state updates through the shared ChatService
    - Concurrent delivery with asyncio.gather() and dead connection cleanup

Protocol Message Types (client → server):
    - join_room {paperId}
    - leave_room {paperId}
    - send_message {paperId, message, receiverId?}
    - typing {paperId, isTyping}
    - mark_read {messageId}

Thread Safety:
    Membership is only mutated on the event loop by the owning connection.
    Blocking storage calls are pushed to the worker thread pool so one slow
    query never stalls other connections.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from paperchat.auth.service import Identity, extract_bearer, get_token_verifier
from paperchat.config import get_config
from paperchat.errors import ChatError, ValidationFailure

from .schemas import ChatMessage, to_wire
from .service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
POLICY_VIOLATION = 1008

GENERIC_ERROR = "Something went wrong, please try again"


# =============================================================================
# Connections
# =============================================================================


class Connection:
    """One authenticated socket and the paper rooms it has joined."""

    def __init__(self, websocket: WebSocket, identity: Identity) -> None:
        self.websocket = websocket
        self.identity = identity
        self.papers: Set[str] = set()

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def role(self) -> str:
        return self.identity.role.value

    def __repr__(self) -> str:
        return f"Connection(user={self.user_id}, role={self.role})"


# =============================================================================
# Gateway
# =============================================================================


class ConnectionGateway:
    """Room membership and fan-out for all connections of this process.

    Attributes:
        rooms: paper_id -> connections that joined that paper's room.
        service_factory: Builds the ChatService used for every operation.
    """

    def __init__(self, service_factory: Callable[[], ChatService] = get_chat_service) -> None:
        self.rooms: Dict[str, Set[Connection]] = {}
        self.service_factory = service_factory

    def reset(self) -> None:
        self.rooms.clear()

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def join(self, connection: Connection, paper_id: str) -> None:
        self.rooms.setdefault(paper_id, set()).add(connection)
        connection.papers.add(paper_id)

    def leave(self, connection: Connection, paper_id: str) -> None:
        members = self.rooms.get(paper_id)
        if members is not None:
            members.discard(connection)
            if not members:
                del self.rooms[paper_id]
        connection.papers.discard(paper_id)

    def disconnect(self, connection: Connection) -> None:
        for paper_id in list(connection.papers):
            self.leave(connection, paper_id)

    def members(self, paper_id: str) -> List[Connection]:
        return list(self.rooms.get(paper_id, ()))

    def get_room_size(self, paper_id: str) -> int:
        return len(self.rooms.get(paper_id, ()))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _safe_send(self, connection: Connection, payload: dict) -> bool:
        """Send one frame; False when the socket is gone."""
        try:
            await connection.websocket.send_json(payload)
            return True
        except Exception as e:
            logger.debug(f"[Gateway] Failed to send to {connection}: {e}")
            return False

    async def _deliver(self, deliveries: List[Tuple[Connection, dict]]) -> None:
        """Send each (connection, payload) concurrently, dropping dead sockets."""
        if not deliveries:
            return
        results = await asyncio.gather(
            *[self._safe_send(conn, payload) for conn, payload in deliveries],
            return_exceptions=True
        )
        for (conn, _), ok in zip(deliveries, results):
            if ok is not True:
                self.disconnect(conn)

    async def publish_message(
        self,
        message: ChatMessage,
        teacher_id: str,
        exclude: Optional[Connection] = None,
    ) -> None:
        """Fan a stored message out to the paper's room.

        Every member except ``exclude`` that may see the message gets
        ``receive_message``. Every member that may see it, the sender's own
        socket included, also gets a ``message_notification`` unless the
        message is a teacher announcement.
        """
        members = self.members(message.paperId)
        if not members:
            return

        viewers = [
            conn for conn in members
            if ChatService.can_view(message, teacher_id, conn.user_id, conn.role)
        ]
        payload = to_wire(message)
        await self._deliver([
            (conn, {
                "type": "receive_message",
                **payload,
                "isForMe": _is_for(message, conn.user_id),
            })
            for conn in viewers if conn is not exclude
        ])

        is_announcement = message.senderId == teacher_id and message.receiverId is None
        if is_announcement:
            return

        notification = {
            "type": "message_notification",
            "paperId": message.paperId,
            "senderId": message.senderId,
            "receiverId": message.receiverId,
            "senderName": _sender_name(message),
            "message": message.message,
            "timestamp": payload["createdAt"],
        }
        await self._deliver([(conn, notification) for conn in viewers])

    async def broadcast_typing(self, connection: Connection, paper_id: str, is_typing: bool) -> None:
        await self._deliver([
            (conn, {
                "type": "user_typing",
                "paperId": paper_id,
                "userId": connection.user_id,
                "role": connection.role,
                "isTyping": is_typing,
            })
            for conn in self.members(paper_id) if conn is not connection
        ])

    async def send_error(self, connection: Connection, message: str) -> None:
        await self._safe_send(connection, {"type": "error", "message": message})

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def handle_event(self, connection: Connection, data: Dict[str, Any]) -> None:
        """Process one client frame. Failures answer the caller with ``error``."""
        event_type = data.get("type")
        try:
            await self._dispatch(connection, event_type, data)
        except ChatError as exc:
            logger.info(f"[Gateway] {event_type} from {connection} failed: {exc.message}")
            await self.send_error(connection, exc.message)
        except Exception:
            logger.exception(f"[Gateway] Unexpected failure handling {event_type} from {connection}")
            await self.send_error(connection, GENERIC_ERROR)

    async def _dispatch(self, connection: Connection, event_type: Any, data: Dict[str, Any]) -> None:
        user_id, role = connection.user_id, connection.role

        if event_type == "join_room":
            paper_id = _require(data, "paperId")
            room = await run_in_threadpool(self.service_factory().get_room, paper_id, user_id, role)
            self.join(connection, paper_id)
            logger.info(
                f"[Gateway] {connection} joined paper {paper_id}. "
                f"Room now has {self.get_room_size(paper_id)} connections"
            )
            await connection.websocket.send_json({
                "type": "joined_room",
                "paperId": paper_id,
                "roomId": room.id,
            })
            return

        if event_type == "leave_room":
            paper_id = data.get("paperId")
            if paper_id:
                self.leave(connection, paper_id)
                logger.info(f"[Gateway] {connection} left paper {paper_id}")
            return

        if event_type == "send_message":
            # Field types are checked by the service so both paths answer alike
            message, teacher_id = await run_in_threadpool(
                self.service_factory().send_message,
                data.get("paperId"),
                user_id,
                role,
                data.get("message"),
                data.get("receiverId"),
            )
            await connection.websocket.send_json({"type": "message_sent", **to_wire(message)})
            logger.info(
                f"[Gateway] Fan-out of {message.id} to {self.get_room_size(message.paperId)} connections"
            )
            await self.publish_message(message, teacher_id, exclude=connection)
            return

        if event_type == "typing":
            paper_id = data.get("paperId")
            # Typing only reaches rooms this connection is actually in
            if paper_id in connection.papers:
                await self.broadcast_typing(connection, paper_id, bool(data.get("isTyping", True)))
            return

        if event_type == "mark_read":
            message_id = _require(data, "messageId")
            await run_in_threadpool(self.service_factory().mark_message_read, message_id, user_id)
            await connection.websocket.send_json({"type": "marked_read", "messageId": message_id})
            return

        raise ValidationFailure(f"Unknown event type: {event_type}")


def _require(data: Dict[str, Any], field: str) -> str:
    value = data.get(field)
    if not value or not isinstance(value, str):
        raise ValidationFailure(f"{field} is required")
    return value


def _is_for(message: ChatMessage, user_id: str) -> bool:
    if message.senderId == user_id:
        return False
    return message.receiverId is None or message.receiverId == user_id


def _sender_name(message: ChatMessage) -> str:
    if message.sender is not None:
        name = f"{message.sender.firstName} {message.sender.lastName}".strip()
        if name:
            return name
    return message.senderId


gateway = ConnectionGateway()


# =============================================================================
# Endpoint
# =============================================================================


def _handshake_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get(get_config().auth.token_query_param)
    return token or extract_bearer(websocket.headers.get("authorization"))


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time paper chat.

    Protocol Flow:
        1. Client connects with a bearer token → Server verifies it
           → on failure the socket is closed (1008) before accept
           → Server sends: {type: "connected", userId, role}
        2. Client sends: {type: "join_room", paperId}
           → Server sends: {type: "joined_room", paperId, roomId}
        3. Client sends: {type: "send_message", paperId, message, receiverId?}
           → Sender gets: {type: "message_sent", ...message}
           → Room viewers get: {type: "receive_message", ...message, isForMe}
           → Room viewers get: {type: "message_notification", ...}
        4. Client sends: {type: "typing", paperId, isTyping}
           → Others in the room get: {type: "user_typing", ...}
        5. Client sends: {type: "mark_read", messageId}
           → Server sends: {type: "marked_read", messageId}
        6. On disconnect → connection leaves every room it joined.
    """
    try:
        identity = get_token_verifier().verify(_handshake_token(websocket))
    except ChatError as exc:
        logger.warning(f"[Gateway] Rejecting connection: {exc.message}")
        await websocket.close(code=POLICY_VIOLATION, reason=exc.message)
        return

    await websocket.accept()
    connection = Connection(websocket, identity)
    logger.info(f"[Gateway] Connection accepted for {connection}")

    try:
        await websocket.send_json({
            "type": "connected",
            "userId": connection.user_id,
            "role": connection.role,
        })

        # Main message loop; events on one connection run in arrival order
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await gateway.send_error(connection, "Invalid JSON")
                continue
            if not isinstance(data, dict):
                await gateway.send_error(connection, "Event must be a JSON object")
                continue

            logger.debug("[Gateway] %s received: type=%s", connection, data.get("type", "?"))
            await gateway.handle_event(connection, data)

    except WebSocketDisconnect:
        logger.info(f"[Gateway] {connection} disconnected")
    finally:
        gateway.disconnect(connection)
