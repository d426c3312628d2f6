"""
livecast.client.media
~~~~~~~~~~~~~~~~~~~~~

媒体会话与本地媒体 —— 对 aiortc 的薄封装。

``SessionNegotiator`` 只依赖 ``MediaSession`` 协议，真实实现是
``AiortcMediaSession``（一个 ``RTCPeerConnection``）。aiortc 在返回本地
会话描述前已完成 ICE 收集，候选地址随 SDP 一起传递，因此信令层无需单独
转发 ICE candidate。
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay

from livecast.core.errors import MediaUnavailable
from livecast.core.logging import get_logger

logger = get_logger(__name__)

TrackCallback = Callable[[MediaStreamTrack], None]
StateCallback = Callable[[str], None]


class MediaSession(Protocol):
    """点对点媒体会话的最小接口。"""

    @property
    def has_local_tracks(self) -> bool: ...

    def add_track(self, track: MediaStreamTrack) -> None: ...

    def on_track(self, callback: TrackCallback) -> None: ...

    def on_connection_state(self, callback: StateCallback) -> None: ...

    async def create_offer(self) -> dict[str, Any]: ...

    async def create_answer(self) -> dict[str, Any]: ...

    async def set_remote_description(self, description: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


def _to_ice_servers(ice_servers: list[dict] | None) -> list[RTCIceServer]:
    return [
        RTCIceServer(
            urls=server["urls"],
            username=server.get("username"),
            credential=server.get("credential"),
        )
        for server in ice_servers or []
    ]


class AiortcMediaSession:
    """基于 ``RTCPeerConnection`` 的媒体会话。"""

    def __init__(self, ice_servers: list[dict] | None = None) -> None:
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=_to_ice_servers(ice_servers)))
        self._local_tracks: list[MediaStreamTrack] = []
        self._track_callbacks: list[TrackCallback] = []
        self._state_callbacks: list[StateCallback] = []

        @self._pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            logger.debug("收到远端轨道 | kind=%s", track.kind)
            for callback in self._track_callbacks:
                callback(track)

        @self._pc.on("connectionstatechange")
        async def _on_state() -> None:
            state = self._pc.connectionState
            logger.debug("媒体连接状态 -> %s", state)
            for callback in self._state_callbacks:
                callback(state)

    @property
    def has_local_tracks(self) -> bool:
        return bool(self._local_tracks)

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)
        self._local_tracks.append(track)

    def on_track(self, callback: TrackCallback) -> None:
        self._track_callbacks.append(callback)

    def on_connection_state(self, callback: StateCallback) -> None:
        self._state_callbacks.append(callback)

    async def create_offer(self) -> dict[str, Any]:
        await self._pc.setLocalDescription(await self._pc.createOffer())
        return self._local_description()

    async def create_answer(self) -> dict[str, Any]:
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        return self._local_description()

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"]),
        )

    async def close(self) -> None:
        await self._pc.close()

    def _local_description(self) -> dict[str, Any]:
        desc = self._pc.localDescription
        return {"sdp": desc.sdp, "type": desc.type}


class LocalMedia:
    """主播端本地媒体。

    同一路摄像头 / 麦克风轨道要分发给多个观众，每个观众的媒体会话通过
    ``MediaRelay`` 订阅一份独立的轨道副本。
    """

    def __init__(self, tracks: list[MediaStreamTrack], player: MediaPlayer | None = None) -> None:
        self.tracks = tracks
        self._player = player
        self._relay = MediaRelay()

    @property
    def available(self) -> bool:
        return bool(self.tracks)

    def subscribe(self) -> list[MediaStreamTrack]:
        """为一个新的观众会话生成轨道副本。"""
        return [self._relay.subscribe(track) for track in self.tracks]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


def open_local_media(source: str, format: str | None = None, options: dict | None = None) -> LocalMedia:
    """打开本地媒体源（文件、设备或流地址）。

    Args:
        source: ``MediaPlayer`` 可识别的源，例如 ``demo.mp4`` 或 ``/dev/video0``。
        format: ffmpeg 输入格式，例如 ``v4l2``、``avfoundation``。
        options: 传给 ffmpeg 的输入选项。

    Raises:
        MediaUnavailable: 源无法打开，或不含任何音视频轨道。
    """
    try:
        player = MediaPlayer(source, format=format, options=options or {})
    except Exception as e:
        raise MediaUnavailable(f"无法打开媒体源 {source}: {e}") from e

    tracks = [track for track in (player.audio, player.video) if track is not None]
    if not tracks:
        raise MediaUnavailable(f"媒体源 {source} 不包含音视频轨道")
    logger.info("本地媒体已就绪 | source=%s | tracks=%s", source, [t.kind for t in tracks])
    return LocalMedia(tracks, player)
