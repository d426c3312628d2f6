"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures 与测试替身 —— 用内存中的假通道代替 WebSocket，
用假媒体会话代替 aiortc，使单元测试无需网络与音视频设备即可运行。
"""
from __future__ import annotations

import asyncio
import os
from typing import Any
from unittest.mock import MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置


# ── 协调端侧：记录下行事件的假通道 ──────────────────────────────────

class RecordingSink:
    """实现 ``EventSink`` 协议，记录收到的所有事件。"""

    def __init__(self, participant_id: str, accept: bool = True) -> None:
        self.participant_id = participant_id
        self.accept = accept
        self.closed = False
        self.events: list[tuple[str, dict[str, Any]]] = []

    def send(self, event: str, data: dict[str, Any]) -> bool:
        if self.closed or not self.accept:
            return False
        self.events.append((str(event), data))
        return True

    def close(self) -> None:
        self.closed = True

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event]

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def clear(self) -> None:
        self.events.clear()


# ── 客户端侧：假媒体会话与假本地媒体 ────────────────────────────────

def fake_track(kind: str = "video") -> MagicMock:
    track = MagicMock()
    track.kind = kind
    return track


class FakeMediaSession:
    """实现 ``MediaSession`` 协议。

    Args:
        remote_tracks: 应用远端 offer 时触发的远端轨道数量（模拟 aiortc 的 track 事件）。
        fail_on: ``"offer"`` / ``"answer"`` / ``"remote"`` 时对应操作抛出异常。
        offer_gate: 若给定，``create_offer`` 会等待该事件后才返回。
    """

    _counter = 0

    def __init__(
        self,
        remote_tracks: int = 1,
        fail_on: str | None = None,
        offer_gate: asyncio.Event | None = None,
    ) -> None:
        FakeMediaSession._counter += 1
        self.session_no = FakeMediaSession._counter
        self.remote_track_count = remote_tracks
        self.fail_on = fail_on
        self.offer_gate = offer_gate
        self.local_tracks: list[Any] = []
        self.remote_description: dict[str, Any] | None = None
        self.closed = False
        self._track_callbacks: list[Any] = []
        self._state_callbacks: list[Any] = []

    @property
    def has_local_tracks(self) -> bool:
        return bool(self.local_tracks)

    def add_track(self, track: Any) -> None:
        self.local_tracks.append(track)

    def on_track(self, callback: Any) -> None:
        self._track_callbacks.append(callback)

    def on_connection_state(self, callback: Any) -> None:
        self._state_callbacks.append(callback)

    async def create_offer(self) -> dict[str, Any]:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        if self.fail_on == "offer":
            raise RuntimeError("encoder unavailable")
        return {"sdp": f"v=0 offer-{self.session_no}", "type": "offer"}

    async def create_answer(self) -> dict[str, Any]:
        if self.fail_on == "answer":
            raise RuntimeError("decoder unavailable")
        return {"sdp": f"v=0 answer-{self.session_no}", "type": "answer"}

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        if self.fail_on == "remote":
            raise RuntimeError("malformed sdp")
        self.remote_description = description
        if description.get("type") == "offer":
            for _ in range(self.remote_track_count):
                self.emit_track(fake_track())

    async def close(self) -> None:
        self.closed = True

    def emit_track(self, track: Any) -> None:
        for callback in self._track_callbacks:
            callback(track)

    def emit_state(self, state: str) -> None:
        for callback in self._state_callbacks:
            callback(state)


class FakeLocalMedia:
    """替代 ``LocalMedia``：每次订阅返回一份新的假轨道。"""

    def __init__(self, kinds: tuple[str, ...] = ("audio", "video")) -> None:
        self.kinds = kinds
        self.stopped = False

    @property
    def available(self) -> bool:
        return bool(self.kinds)

    def subscribe(self) -> list[Any]:
        return [fake_track(kind) for kind in self.kinds]

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture()
def media_sessions() -> list[FakeMediaSession]:
    """记录由 ``media_factory`` 创建的所有假媒体会话。"""
    return []


@pytest.fixture()
def media_factory(media_sessions: list[FakeMediaSession]):
    def _factory() -> FakeMediaSession:
        session = FakeMediaSession()
        media_sessions.append(session)
        return session

    return _factory
