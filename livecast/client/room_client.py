"""
livecast.client.room_client
~~~~~~~~~~~~~~~~~~~~~~~~~~~

参与者侧的房间状态机：浏览（browsing）、开播（streaming）、观看（viewing）。

- 主播：``go_live()`` 开播；每个 ``viewer-joined`` 启动一个独立的协商任务，
  生成 offer 并经由协调端转发；``receive-answer`` 交给对应观众的协商器。
- 观众：``join()`` 进入房间；收到 ``receive-offer`` 后生成 answer 回传；
  ``stream-ended`` 时清理远端媒体并回到浏览状态。
- 观众数始终以协调端下发的 ``totalViewers`` 为准，且不会为负。
- 信令事件订阅在 ``attach()`` 中登记，退出时全部释放。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from enum import Enum
from typing import Any, Protocol

from aiortc import MediaStreamTrack

from livecast.client.chat import ChatLog
from livecast.client.event_channel import EventHandler, Subscription
from livecast.client.media import LocalMedia, MediaSession
from livecast.client.negotiator import SessionNegotiator
from livecast.core.errors import InvalidPayload, InvalidState, LiveCastError, MediaUnavailable
from livecast.core.idgen import new_room_id
from livecast.core.logging import get_logger
from livecast.core.settings import settings
from livecast.schemas.signaling import SignalEvent

logger = get_logger(__name__)


class EventChannel(Protocol):
    async def emit(self, event: str, data: dict[str, Any] | None = None) -> None: ...

    def subscribe(self, event: str, handler: EventHandler) -> Subscription: ...


class ClientState(str, Enum):
    BROWSING = "browsing"
    STREAMING = "streaming"
    VIEWING = "viewing"

    def __str__(self) -> str:
        return self.value


CLIENT_TRANSITIONS: dict[ClientState, set[ClientState]] = {
    ClientState.BROWSING: {ClientState.STREAMING, ClientState.VIEWING},
    ClientState.STREAMING: {ClientState.BROWSING},
    ClientState.VIEWING: {ClientState.BROWSING},
}


class RoomClient:
    """一个参与者的房间客户端。

    Args:
        channel: 信令通道（``SignalingChannel`` 或测试替身）。
        media_factory: 为每个协商创建一个新的 ``MediaSession``。
        negotiation_timeout: 协商超时秒数，缺省取配置。
        on_remote_track: 观众收到远端轨道时的回调。
        chat: 聊天记录，缺省新建。
    """

    def __init__(
        self,
        channel: EventChannel,
        media_factory: Callable[[], MediaSession],
        negotiation_timeout: float | None = None,
        on_remote_track: Callable[[MediaStreamTrack], None] | None = None,
        chat: ChatLog | None = None,
    ) -> None:
        self.channel = channel
        self.media_factory = media_factory
        self.negotiation_timeout = negotiation_timeout
        self.on_remote_track = on_remote_track
        self.chat = chat or ChatLog()

        self.state = ClientState.BROWSING
        self.participant_id: str | None = None
        self.room_id: str | None = None
        self.streamer_id: str | None = None
        self.total_viewers = 0
        self.viewers: set[str] = set()
        self.live_rooms: dict[str, dict[str, Any]] = {}
        self.notices: list[dict[str, Any]] = []
        self.remote_tracks: list[MediaStreamTrack] = []
        self.local_media: LocalMedia | None = None

        # 主播侧 key 为观众 ID，观众侧 key 为主播 ID
        self.negotiators: dict[str, SessionNegotiator] = {}
        self._tasks: dict[str, set[asyncio.Task]] = {}

    # ── 订阅 ──────────────────────────────────────────────────────────

    @contextmanager
    def attach(self) -> Iterator[RoomClient]:
        """登记全部信令事件处理器，退出时（包括异常路径）释放。"""
        handlers: dict[SignalEvent, EventHandler] = {
            SignalEvent.CONNECTED: self._on_connected,
            SignalEvent.LIVE_ROOMS: self._on_live_rooms,
            SignalEvent.ROOM_CREATED: self._on_room_created,
            SignalEvent.ROOM_JOINED: self._on_room_joined,
            SignalEvent.VIEWER_JOINED: self._on_viewer_joined,
            SignalEvent.VIEWER_LEFT: self._on_viewer_left,
            SignalEvent.RECEIVE_OFFER: self._on_receive_offer,
            SignalEvent.RECEIVE_ANSWER: self._on_receive_answer,
            SignalEvent.NEW_MESSAGE: self._on_new_message,
            SignalEvent.STREAM_ENDED: self._on_stream_ended,
            SignalEvent.ACK: self._on_ack,
            SignalEvent.ERROR: self._on_error,
        }
        with ExitStack() as stack:
            for event, handler in handlers.items():
                stack.enter_context(self.channel.subscribe(str(event), handler))
            yield self

    # ── 用户操作 ──────────────────────────────────────────────────────

    async def go_live(self, local_media: LocalMedia | None, room_id: str | None = None) -> str:
        """开播。未指定房间 ID 时生成一个 9 位 base36 ID。

        Raises:
            MediaUnavailable: 没有可用的本地媒体。
            InvalidState: 当前不在浏览状态。
        """
        if local_media is None or not local_media.available:
            raise MediaUnavailable("开播需要本地摄像头或麦克风")
        self._transition(ClientState.STREAMING)
        self.local_media = local_media
        self.room_id = room_id or new_room_id(settings.ROOM_ID_LENGTH)
        self.streamer_id = self.participant_id
        self.total_viewers = 0
        await self.channel.emit(
            str(SignalEvent.CREATE_ROOM),
            {"roomId": self.room_id, "streamerId": self.participant_id},
        )
        logger.info("开播 | room=%s", self.room_id)
        return self.room_id

    async def join(self, room_id: str) -> None:
        room_id = room_id.strip()
        if not room_id:
            raise InvalidPayload("房间 ID 不能为空")
        self._transition(ClientState.VIEWING)
        self.room_id = room_id
        await self.channel.emit(str(SignalEvent.JOIN_ROOM), {"roomId": room_id, "viewerId": self.participant_id})
        logger.info("加入房间 | room=%s", room_id)

    async def leave(self) -> None:
        """离开当前房间（主播即下播），关闭所有协商器并回到浏览状态。"""
        if self.state is ClientState.BROWSING:
            return
        await self.channel.emit(str(SignalEvent.LEAVE_ROOM), {})
        await self._teardown()
        self._transition(ClientState.BROWSING)

    async def send_message(self, text: str) -> None:
        """发送聊天消息，并在本地回显。"""
        if self.room_id is None or self.state is ClientState.BROWSING:
            raise InvalidState("不在任何房间中，无法发送消息")
        text = text.strip()
        if not text:
            raise InvalidPayload("消息不能为空")
        await self.channel.emit(
            str(SignalEvent.SEND_MESSAGE),
            {"roomId": self.room_id, "viewerId": self.participant_id, "message": text},
        )
        self.chat.append(self.room_id, self.participant_id or "", text, local_echo=True)

    async def wait_negotiations(self) -> None:
        """等待当前所有协商任务结束。"""
        tasks = [task for group in self._tasks.values() for task in group]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── 信令事件 ──────────────────────────────────────────────────────

    async def _on_connected(self, data: dict[str, Any]) -> None:
        self.participant_id = data.get("participantId")

    async def _on_live_rooms(self, data: dict[str, Any]) -> None:
        self.live_rooms = {room["roomId"]: room for room in data.get("rooms", [])}

    async def _on_room_created(self, data: dict[str, Any]) -> None:
        room_id = data["roomId"]
        self.live_rooms[room_id] = {"roomId": room_id, "streamerId": data.get("streamerId"), "totalViewers": 0}

    async def _on_ack(self, data: dict[str, Any]) -> None:
        if data.get("for") == str(SignalEvent.CREATE_ROOM) and self.state is ClientState.STREAMING:
            self.room_id = data.get("roomId") or self.room_id

    async def _on_room_joined(self, data: dict[str, Any]) -> None:
        if self.state is not ClientState.VIEWING or data.get("roomId") != self.room_id:
            return
        self.streamer_id = data.get("streamerId")
        self._set_total(data)

    async def _on_viewer_joined(self, data: dict[str, Any]) -> None:
        if self.state is not ClientState.STREAMING:
            return
        viewer_id = data["viewerId"]
        self.viewers.add(viewer_id)
        self._set_total(data)
        self._spawn(viewer_id, self._offer_to(viewer_id))

    async def _on_viewer_left(self, data: dict[str, Any]) -> None:
        if self.state is not ClientState.STREAMING:
            return
        viewer_id = data["viewerId"]
        self.viewers.discard(viewer_id)
        self._set_total(data)
        await self._drop_negotiation(viewer_id)

    async def _on_receive_offer(self, data: dict[str, Any]) -> None:
        if self.state is not ClientState.VIEWING or data.get("roomId") != self.room_id:
            logger.debug("忽略不属于当前房间的 offer | room=%s", data.get("roomId"))
            return
        streamer_id = data.get("streamerId") or self.streamer_id or ""
        self.streamer_id = streamer_id
        self._spawn(streamer_id, self._answer(streamer_id, data["offer"]))

    async def _on_receive_answer(self, data: dict[str, Any]) -> None:
        if self.state is not ClientState.STREAMING:
            return
        viewer_id = data.get("viewerId", "")
        negotiator = self.negotiators.get(viewer_id)
        if negotiator is None:
            self._notice("InvalidState", f"没有与观众 {viewer_id} 对应的协商", SignalEvent.RECEIVE_ANSWER)
            return
        self._spawn(viewer_id, self._apply_answer(viewer_id, negotiator, data["answer"]), replace=False)

    async def _on_new_message(self, data: dict[str, Any]) -> None:
        if data.get("roomId") != self.room_id:
            return
        self.chat.append(data["roomId"], data.get("viewerId", ""), data.get("message", ""))

    async def _on_stream_ended(self, data: dict[str, Any]) -> None:
        room_id = data.get("roomId")
        self.live_rooms.pop(room_id, None)
        if self.state is ClientState.VIEWING and room_id == self.room_id:
            await self._teardown()
            self._transition(ClientState.BROWSING)
            self._notice("RoomEnded", "直播已结束", SignalEvent.STREAM_ENDED)
            logger.info("直播已结束，返回浏览 | room=%s", room_id)

    async def _on_error(self, data: dict[str, Any]) -> None:
        self.notices.append(data)
        failed = data.get("for")
        logger.warning("协调端返回错误 | for=%s | code=%s | %s", failed, data.get("code"), data.get("message"))
        if (
            (failed == str(SignalEvent.JOIN_ROOM) and self.state is ClientState.VIEWING)
            or (failed == str(SignalEvent.CREATE_ROOM) and self.state is ClientState.STREAMING)
        ):
            await self._teardown()
            self._transition(ClientState.BROWSING)

    # ── 协商任务 ──────────────────────────────────────────────────────

    def _spawn(self, key: str, coro, replace: bool = True) -> None:
        """为对端启动一个协商任务；``replace`` 时先取消该对端尚未结束的任务。"""
        tasks = self._tasks.setdefault(key, set())
        if replace:
            for previous in tasks:
                if not previous.done():
                    previous.cancel()
        task = asyncio.create_task(coro, name=f"negotiation:{key}")
        tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(key, t))

    def _task_done(self, key: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(key)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error("协商任务异常 | peer=%s | err=%s", key, task.exception())

    def _new_negotiator(self, key: str, streamer_id: str, viewer_id: str, media: MediaSession) -> SessionNegotiator:
        return SessionNegotiator(
            media,
            room_id=self.room_id or "",
            streamer_id=streamer_id,
            viewer_id=viewer_id,
            timeout=self.negotiation_timeout,
            on_remote_track=self._on_remote_track,
            on_failed=lambda negotiator, error: self._on_negotiation_failed(key, negotiator, error),
        )

    async def _offer_to(self, viewer_id: str) -> None:
        await self._close_negotiator(viewer_id)
        media = self.media_factory()
        if self.local_media is not None:
            for track in self.local_media.subscribe():
                media.add_track(track)
        negotiator = self._new_negotiator(viewer_id, self.participant_id or "", viewer_id, media)
        self.negotiators[viewer_id] = negotiator
        try:
            offer = await negotiator.create_offer()
            await self.channel.emit(
                str(SignalEvent.SEND_OFFER),
                {"viewerId": viewer_id, "offer": offer, "roomId": self.room_id},
            )
        except LiveCastError as e:
            if negotiator.failure is None:
                self._notice(e.code, e.message, SignalEvent.SEND_OFFER)
            await self._close_negotiator(viewer_id, negotiator)
        except asyncio.CancelledError:
            await self._close_negotiator(viewer_id, negotiator)
            raise

    async def _apply_answer(self, viewer_id: str, negotiator: SessionNegotiator, answer: dict[str, Any]) -> None:
        try:
            await negotiator.set_remote_answer(answer)
        except LiveCastError as e:
            if negotiator.failure is None:
                self._notice(e.code, e.message, SignalEvent.RECEIVE_ANSWER)
            await self._close_negotiator(viewer_id, negotiator)

    async def _answer(self, streamer_id: str, offer: dict[str, Any]) -> None:
        await self._close_negotiator(streamer_id)
        negotiator = self._new_negotiator(streamer_id, streamer_id, self.participant_id or "", self.media_factory())
        self.negotiators[streamer_id] = negotiator
        try:
            await negotiator.set_remote_offer(offer)
            answer = await negotiator.create_answer()
            await self.channel.emit(str(SignalEvent.SEND_ANSWER), {"roomId": self.room_id, "answer": answer})
        except LiveCastError as e:
            if negotiator.failure is None:
                self._notice(e.code, e.message, SignalEvent.SEND_ANSWER)
            await self._close_negotiator(streamer_id, negotiator)
        except asyncio.CancelledError:
            await self._close_negotiator(streamer_id, negotiator)
            raise

    async def _on_negotiation_failed(self, key: str, negotiator: SessionNegotiator, error: LiveCastError) -> None:
        """协商器进入 FAILED（媒体错误、超时或连接失败）：记录提示并移除该对端的协商。"""
        if self.negotiators.get(key) is not negotiator:
            return
        for_event = SignalEvent.SEND_OFFER if self.state is ClientState.STREAMING else SignalEvent.SEND_ANSWER
        self._notice(error.code, error.message, for_event)
        await self._close_negotiator(key, negotiator)
        if self.state is ClientState.STREAMING:
            # 观众数仍以协调端为准
            self.viewers.discard(key)
        else:
            self.remote_tracks = [t for t in self.remote_tracks if t not in negotiator.remote_tracks]
        logger.warning("协商已放弃 | room=%s | peer=%s | %s", self.room_id, key, error.message)

    async def _close_negotiator(self, key: str, negotiator: SessionNegotiator | None = None) -> None:
        current = self.negotiators.get(key)
        if negotiator is None:
            negotiator = current
        if negotiator is None:
            return
        if current is negotiator:
            del self.negotiators[key]
        await negotiator.close()

    async def _drop_negotiation(self, key: str) -> None:
        """取消并关闭单个对端的协商，其他协商不受影响。"""
        tasks = [task for task in self._tasks.pop(key, set()) if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_negotiator(key)

    def _on_remote_track(self, track: MediaStreamTrack) -> None:
        self.remote_tracks.append(track)
        if self.on_remote_track is not None:
            self.on_remote_track(track)

    # ── 内部工具 ──────────────────────────────────────────────────────

    async def _teardown(self) -> None:
        """取消所有协商任务并关闭所有协商器，清空房间状态。"""
        tasks = [task for group in self._tasks.values() for task in group]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for key in list(self.negotiators):
            await self._close_negotiator(key)
        self.viewers.clear()
        self.remote_tracks.clear()
        self.total_viewers = 0
        self.room_id = None
        self.streamer_id = None
        self.local_media = None

    def _transition(self, new: ClientState) -> None:
        if new not in CLIENT_TRANSITIONS[self.state]:
            raise InvalidState(f"非法的客户端状态转换: {self.state} → {new}")
        logger.debug("客户端状态 %s → %s", self.state, new)
        self.state = new

    def _set_total(self, data: dict[str, Any]) -> None:
        total = data.get("totalViewers")
        if total is None:
            total = len(self.viewers)
        self.total_viewers = max(0, int(total))

    def _notice(self, code: str, message: str, for_event: SignalEvent | None = None) -> None:
        self.notices.append({"for": str(for_event) if for_event else None, "code": code, "message": message})
