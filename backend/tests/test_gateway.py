"""Tests for the /ws/chat WebSocket gateway.

Every connection first receives ``connected``. Asserting that a socket got
*nothing* is done by sending it a ``mark_read`` of an unknown message
and checking that the very next frame is that error.
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth_headers, make_token
from paperchat.chat.gateway import Connection, ConnectionGateway, gateway
from paperchat.auth.service import Identity, Role


def connect(client, user_id, role):
    ws = client.websocket_connect(f"/ws/chat?token={make_token(user_id, role)}")
    return ws


def receive_connected(ws, user_id, role):
    """Helper to receive and validate the handshake event."""
    connected = ws.receive_json()
    assert connected == {"type": "connected", "userId": user_id, "role": role}


def join(ws, paper_id="P1"):
    ws.send_json({"type": "join_room", "paperId": paper_id})
    joined = ws.receive_json()
    assert joined["type"] == "joined_room"
    assert joined["paperId"] == paper_id
    return joined


def assert_nothing_pending(ws):
    ws.send_json({"type": "mark_read", "messageId": "no-such-message"})
    assert ws.receive_json() == {"type": "error", "message": "Message not found"}


class TestHandshake:
    def test_query_token(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")

    def test_authorization_header(self, api_client):
        with api_client.websocket_connect("/ws/chat", headers=auth_headers("S1", "STUDENT")) as ws:
            receive_connected(ws, "S1", "STUDENT")

    def test_missing_token_closes_with_policy_violation(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect("/ws/chat"):
                pass
        assert exc_info.value.code == 1008

    def test_bad_token_closes_with_policy_violation(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect("/ws/chat?token=garbage"):
                pass
        assert exc_info.value.code == 1008
        assert gateway.rooms == {}


class TestJoinAndLeave:
    def test_join_returns_room(self, api_client):
        with connect(api_client, "S1", "STUDENT") as ws:
            receive_connected(ws, "S1", "STUDENT")
            joined = join(ws)
            rest = api_client.get("/api/chat/rooms/P1", headers=auth_headers("T1", "TEACHER"))
            assert joined["roomId"] == rest.json()["id"]
            assert gateway.get_room_size("P1") == 1

    @pytest.mark.parametrize("user_id,role", [("S3", "STUDENT"), ("T2", "TEACHER")])
    def test_join_denied(self, api_client, user_id, role):
        with connect(api_client, user_id, role) as ws:
            receive_connected(ws, user_id, role)
            ws.send_json({"type": "join_room", "paperId": "P1"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert gateway.get_room_size("P1") == 0
            # The connection stays usable after a failure
            assert_nothing_pending(ws)

    def test_join_unknown_paper(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            ws.send_json({"type": "join_room", "paperId": "missing"})
            assert ws.receive_json() == {"type": "error", "message": "Paper not found"}

    def test_leave_room_is_silent(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            join(ws)
            ws.send_json({"type": "leave_room", "paperId": "P1"})
            ws.send_json({"type": "leave_room", "paperId": "never-joined"})
            assert_nothing_pending(ws)
            assert gateway.get_room_size("P1") == 0

    def test_disconnect_leaves_all_rooms(self, api_client):
        with connect(api_client, "S1", "STUDENT") as ws:
            receive_connected(ws, "S1", "STUDENT")
            join(ws, "P1")
            join(ws, "P2")
        assert gateway.rooms == {}


class TestMessaging:
    def test_student_question_reaches_teacher_only(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1, \
             connect(api_client, "S1", "STUDENT") as s1, \
             connect(api_client, "S2", "STUDENT") as s2:
            receive_connected(t1, "T1", "TEACHER")
            receive_connected(s1, "S1", "STUDENT")
            receive_connected(s2, "S2", "STUDENT")
            join(t1)
            join(s1)
            join(s2)

            s1.send_json({"type": "send_message", "paperId": "P1", "message": "Is Q3 wrong?"})

            sent = s1.receive_json()
            assert sent["type"] == "message_sent"
            assert sent["message"] == "Is Q3 wrong?"
            assert sent["senderId"] == "S1"
            notification = s1.receive_json()
            assert notification["type"] == "message_notification"

            received = t1.receive_json()
            assert received["type"] == "receive_message"
            assert received["id"] == sent["id"]
            assert received["isForMe"] is True
            notification = t1.receive_json()
            assert notification == {
                "type": "message_notification",
                "paperId": "P1",
                "senderId": "S1",
                "receiverId": None,
                "senderName": "Sam Stone",
                "message": "Is Q3 wrong?",
                "timestamp": sent["createdAt"],
            }

            assert_nothing_pending(s2)

    def test_teacher_reply_reaches_addressee_only(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1, \
             connect(api_client, "S1", "STUDENT") as s1, \
             connect(api_client, "S2", "STUDENT") as s2:
            for ws, (uid, role) in ((t1, ("T1", "TEACHER")), (s1, ("S1", "STUDENT")), (s2, ("S2", "STUDENT"))):
                receive_connected(ws, uid, role)
                join(ws)

            t1.send_json({
                "type": "send_message", "paperId": "P1",
                "message": "No, it's fine", "receiverId": "S1",
            })
            assert t1.receive_json()["type"] == "message_sent"
            assert t1.receive_json()["type"] == "message_notification"

            received = s1.receive_json()
            assert received["type"] == "receive_message"
            assert received["receiverId"] == "S1"
            assert received["isForMe"] is True
            assert s1.receive_json()["type"] == "message_notification"

            assert_nothing_pending(s2)

    def test_teacher_announcement_reaches_every_student(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1, \
             connect(api_client, "S1", "STUDENT") as s1, \
             connect(api_client, "S2", "STUDENT") as s2:
            for ws, (uid, role) in ((t1, ("T1", "TEACHER")), (s1, ("S1", "STUDENT")), (s2, ("S2", "STUDENT"))):
                receive_connected(ws, uid, role)
                join(ws)

            t1.send_json({"type": "send_message", "paperId": "P1", "message": "Exam moved"})
            assert t1.receive_json()["type"] == "message_sent"

            for ws in (s1, s2):
                received = ws.receive_json()
                assert received["type"] == "receive_message"
                assert received["message"] == "Exam moved"
                assert received["isForMe"] is True
                # Announcements carry no notification
                assert_nothing_pending(ws)
            assert_nothing_pending(t1)

    def test_send_failure_goes_to_sender_only(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1, \
             connect(api_client, "S1", "STUDENT") as s1:
            receive_connected(t1, "T1", "TEACHER")
            receive_connected(s1, "S1", "STUDENT")
            join(t1)
            join(s1)

            s1.send_json({"type": "send_message", "paperId": "P1", "message": "   "})
            assert s1.receive_json() == {"type": "error", "message": "Message cannot be empty"}
            assert_nothing_pending(t1)

    def test_send_without_access(self, api_client):
        with connect(api_client, "S3", "STUDENT") as s3:
            receive_connected(s3, "S3", "STUDENT")
            s3.send_json({"type": "send_message", "paperId": "P1", "message": "hi"})
            assert s3.receive_json()["type"] == "error"

    def test_ws_message_visible_over_rest(self, api_client):
        """Both paths read and write the same store."""
        with connect(api_client, "S1", "STUDENT") as s1:
            receive_connected(s1, "S1", "STUDENT")
            s1.send_json({"type": "send_message", "paperId": "P1", "message": "via socket"})
            sent = s1.receive_json()
            assert sent["type"] == "message_sent"

        page = api_client.get("/api/chat/messages/P1", headers=auth_headers("T1", "TEACHER")).json()
        assert [m["id"] for m in page["messages"]] == [sent["id"]]

    def test_rest_message_pushed_to_room(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1:
            receive_connected(t1, "T1", "TEACHER")
            join(t1)

            response = api_client.post(
                "/api/chat/messages",
                json={"paperId": "P1", "message": "via REST"},
                headers=auth_headers("S1", "STUDENT"),
            )
            assert response.status_code == 201

            received = t1.receive_json()
            assert received["type"] == "receive_message"
            assert received["id"] == response.json()["id"]
            assert t1.receive_json()["type"] == "message_notification"


class TestTypingAndReadState:
    def test_typing_reaches_others_in_room(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1, \
             connect(api_client, "S1", "STUDENT") as s1:
            receive_connected(t1, "T1", "TEACHER")
            receive_connected(s1, "S1", "STUDENT")
            join(t1)
            join(s1)

            s1.send_json({"type": "typing", "paperId": "P1", "isTyping": True})
            assert t1.receive_json() == {
                "type": "user_typing",
                "paperId": "P1",
                "userId": "S1",
                "role": "STUDENT",
                "isTyping": True,
            }
            assert_nothing_pending(s1)

    def test_typing_ignored_outside_joined_room(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1, \
             connect(api_client, "S2", "STUDENT") as s2:
            receive_connected(t1, "T1", "TEACHER")
            receive_connected(s2, "S2", "STUDENT")
            join(t1)

            s2.send_json({"type": "typing", "paperId": "P1", "isTyping": True})
            assert_nothing_pending(s2)
            assert_nothing_pending(t1)

    def test_mark_read(self, api_client):
        with connect(api_client, "T1", "TEACHER") as t1:
            receive_connected(t1, "T1", "TEACHER")
            question = api_client.post(
                "/api/chat/messages",
                json={"paperId": "P1", "message": "q"},
                headers=auth_headers("S1", "STUDENT"),
            ).json()

            t1.send_json({"type": "mark_read", "messageId": question["id"]})
            assert t1.receive_json() == {"type": "marked_read", "messageId": question["id"]}

        unread = api_client.get("/api/chat/unread/P1", headers=auth_headers("T1", "TEACHER"))
        assert unread.json()["unreadCount"] == 0

    def test_mark_read_denied(self, api_client):
        with connect(api_client, "S2", "STUDENT") as s2:
            receive_connected(s2, "S2", "STUDENT")
            reply = api_client.post(
                "/api/chat/messages",
                json={"paperId": "P1", "message": "r", "receiverId": "S1"},
                headers=auth_headers("T1", "TEACHER"),
            ).json()
            s2.send_json({"type": "mark_read", "messageId": reply["id"]})
            assert s2.receive_json()["type"] == "error"


class TestMalformedEvents:
    def test_invalid_json(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}
            join(ws)

    def test_non_object_payload(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            ws.send_json(["join_room"])
            assert ws.receive_json()["type"] == "error"

    def test_unknown_event(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            ws.send_json({"type": "dance"})
            assert ws.receive_json() == {"type": "error", "message": "Unknown event type: dance"}

    def test_missing_paper_id(self, api_client):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            ws.send_json({"type": "join_room"})
            assert ws.receive_json() == {"type": "error", "message": "paperId is required"}

    @pytest.mark.parametrize("event, error", [
        (
            {"type": "send_message", "paperId": "P1", "message": "x", "receiverId": 123},
            "receiverId must be a string",
        ),
        (
            {"type": "send_message", "paperId": "P1", "message": 123},
            "paperId and message must be strings",
        ),
        (
            {"type": "send_message", "paperId": ["P1"], "message": "x"},
            "paperId and message must be strings",
        ),
        (
            {"type": "send_message", "message": "x"},
            "paperId and message are required",
        ),
    ])
    def test_send_message_with_bad_fields(self, api_client, event, error):
        with connect(api_client, "T1", "TEACHER") as ws:
            receive_connected(ws, "T1", "TEACHER")
            ws.send_json(event)
            assert ws.receive_json() == {"type": "error", "message": error}

        response = api_client.get("/api/chat/unread/P1", headers=auth_headers("S1", "STUDENT"))
        assert response.json()["unreadCount"] == 0
        assert api_client.get("/api/chat/rooms", headers=auth_headers("T1", "TEACHER")).json() == []


class TestMembership:
    """ConnectionGateway bookkeeping without sockets."""

    def _connection(self, user_id="S1"):
        return Connection(websocket=None, identity=Identity(user_id, Role.STUDENT))

    def test_join_leave(self):
        gw = ConnectionGateway()
        conn = self._connection()
        gw.join(conn, "P1")
        gw.join(conn, "P2")
        assert gw.get_room_size("P1") == 1
        gw.leave(conn, "P1")
        assert gw.get_room_size("P1") == 0
        assert "P1" not in gw.rooms
        assert conn.papers == {"P2"}

    def test_disconnect_removes_everywhere(self):
        gw = ConnectionGateway()
        a, b = self._connection("S1"), self._connection("S2")
        for paper_id in ("P1", "P2"):
            gw.join(a, paper_id)
        gw.join(b, "P1")
        gw.disconnect(a)
        assert gw.members("P1") == [b]
        assert gw.members("P2") == []
