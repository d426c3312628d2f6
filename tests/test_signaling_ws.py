"""
tests.test_signaling_ws
~~~~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 端点集成测试（FastAPI TestClient）。
"""
from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from livecast.main import app


@pytest.fixture()
def client() -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


def send(ws: Any, event: str, data: dict[str, Any] | None = None) -> None:
    ws.send_json({"event": event, "data": data or {}})


def receive_until(ws: Any, event: str, limit: int = 10) -> dict[str, Any]:
    """读取帧直到出现指定事件，返回其载荷。"""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]
    raise AssertionError(f"未收到事件 {event}")


def handshake(ws: Any) -> str:
    connected = ws.receive_json()
    assert connected["event"] == "connected"
    assert ws.receive_json()["event"] == "live-rooms"
    return connected["data"]["participantId"]


class TestSignalingEndpoint:
    """测试信令帧的分发与错误回发。"""

    def test_connect_handshake(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as ws:
            connected = ws.receive_json()
            assert connected["event"] == "connected"
            assert connected["data"]["participantId"]
            assert ws.receive_json() == {"event": "live-rooms", "data": {"rooms": []}}

    def test_create_room_ack_and_broadcast(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as browser:
            handshake(browser)
            with client.websocket_connect("/ws/signaling") as streamer:
                streamer_id = handshake(streamer)
                send(streamer, "create-room", {"roomId": "ws-room-1"})

                assert receive_until(streamer, "ack") == {"for": "create-room", "roomId": "ws-room-1"}
                assert receive_until(browser, "room-created") == {"roomId": "ws-room-1", "streamerId": streamer_id}

    def test_invalid_frame_keeps_connection_open(self, client: TestClient) -> None:
        """无法解析的帧只回发 error，连接仍可继续使用。"""
        with client.websocket_connect("/ws/signaling") as ws:
            handshake(ws)
            ws.send_text("not json")

            error = receive_until(ws, "error")
            assert error["code"] == "InvalidPayload"
            assert error["for"] is None

            send(ws, "leave-room")
            assert receive_until(ws, "ack") == {"for": "leave-room", "roomId": None}

    def test_unknown_event(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as ws:
            handshake(ws)
            send(ws, "dance", {})

            assert receive_until(ws, "error")["for"] == "dance"

    def test_missing_payload_field(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as ws:
            handshake(ws)
            send(ws, "join-room", {"roomId": "   "})

            error = receive_until(ws, "error")
            assert error == {"for": "join-room", "code": "InvalidPayload", "message": error["message"]}

    def test_join_unknown_room(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as ws:
            handshake(ws)
            send(ws, "join-room", {"roomId": "no-such-room"})

            error = receive_until(ws, "error")
            assert error["for"] == "join-room"
            assert error["code"] == "RoomNotFound"

    def test_duplicate_room_id(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as first:
            handshake(first)
            send(first, "create-room", {"roomId": "ws-dup"})
            receive_until(first, "ack")

            with client.websocket_connect("/ws/signaling") as second:
                handshake(second)
                send(second, "create-room", {"roomId": "ws-dup"})
                assert receive_until(second, "error")["code"] == "DuplicateRoomId"

    def test_join_offer_answer_and_stream_end(self, client: TestClient) -> None:
        """观众加入 → offer / answer 转发 → 主播断开后观众收到 stream-ended。"""
        with client.websocket_connect("/ws/signaling") as viewer:
            viewer_id = handshake(viewer)
            with client.websocket_connect("/ws/signaling") as streamer:
                streamer_id = handshake(streamer)
                send(streamer, "create-room", {"roomId": "ws-live"})
                receive_until(streamer, "ack")

                send(viewer, "join-room", {"roomId": "ws-live", "viewerId": viewer_id})
                assert receive_until(viewer, "room-joined") == {
                    "roomId": "ws-live", "streamerId": streamer_id, "totalViewers": 1,
                }
                assert receive_until(streamer, "viewer-joined") == {"viewerId": viewer_id, "totalViewers": 1}

                offer = {"sdp": "v=0 offer", "type": "offer"}
                send(streamer, "send-offer", {"viewerId": viewer_id, "offer": offer, "roomId": "ws-live"})
                assert receive_until(viewer, "receive-offer") == {
                    "offer": offer, "roomId": "ws-live", "streamerId": streamer_id,
                }

                answer = {"sdp": "v=0 answer", "type": "answer"}
                send(viewer, "send-answer", {"roomId": "ws-live", "answer": answer})
                assert receive_until(streamer, "receive-answer") == {
                    "answer": answer, "roomId": "ws-live", "viewerId": viewer_id,
                }

                send(viewer, "send-message", {"roomId": "ws-live", "message": "hello"})
                assert receive_until(streamer, "new-message") == {
                    "roomId": "ws-live", "viewerId": viewer_id, "message": "hello",
                }

            assert receive_until(viewer, "stream-ended") == {"roomId": "ws-live"}

    def test_chat_rate_limited(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signaling") as viewer:
            handshake(viewer)
            with client.websocket_connect("/ws/signaling") as streamer:
                handshake(streamer)
                send(streamer, "create-room", {"roomId": "ws-chat"})
                receive_until(streamer, "ack")
                send(viewer, "join-room", {"roomId": "ws-chat"})
                receive_until(viewer, "room-joined")

                send(viewer, "send-message", {"roomId": "ws-chat", "message": "1"})
                send(viewer, "send-message", {"roomId": "ws-chat", "message": "2"})

                assert receive_until(viewer, "error")["code"] == "RateLimited"
