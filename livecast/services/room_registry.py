"""
livecast.services.room_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间注册表 —— 协调端唯一的权威状态，管理所有直播间的生命周期与信令转发。

- ``connect()`` / ``disconnect()``         → 维护在线参与者连接表
- ``create_room()``                         → 主播开播
- ``join_room()`` / ``leave_room()``        → 观众进出、主播下播
- ``route_offer()`` / ``route_answer()``    → offer / answer 点对点转发（不解析内容）
- ``relay_chat_message()``                  → 房间内聊天扇出
- ``list_rooms()`` / ``get_room()``         → 浏览直播列表

并发模型：房间表由一把表级锁保护插入 / 删除，单个房间的成员变更在
``LiveRoom.lock`` 内串行执行。所有投递都只是入队（见 ``ParticipantChannel``），
因此持锁期间不会等待任何网络 I/O，单个参与者投递失败也不会影响其他人。

在陈旧 / 未知 ID 上的操作只返回错误（或静默 no-op），不会破坏其他房间状态。
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any

from livecast.core.errors import (
    AlreadyInRoom,
    DuplicateRoomId,
    NotRoomMember,
    RoomEnded,
    RoomNotFound,
)
from livecast.core.idgen import new_room_id
from livecast.core.logging import get_logger
from livecast.core.settings import settings
from livecast.schemas.signaling import (
    AckData,
    ConnectedData,
    LiveRoomsData,
    NewMessageData,
    ReceiveAnswerData,
    ReceiveOfferData,
    RoomCreatedData,
    RoomJoinedData,
    RoomSummary,
    SignalEvent,
    StreamEndedData,
    ViewerCountData,
)
from livecast.services.live_room import LiveRoom
from livecast.services.participant_channel import EventSink

logger = get_logger(__name__)

# 记住最近结束的房间 ID，用于区分 RoomEnded 与 RoomNotFound
_ENDED_ROOMS_MEMORY = 256


class RoomRegistry:
    """房间注册表（每个协调端进程一个，挂载于 ``app.state``）。"""

    def __init__(self, room_id_length: int | None = None) -> None:
        self.room_id_length = room_id_length or settings.ROOM_ID_LENGTH
        self._rooms: dict[str, LiveRoom] = {}
        self._channels: dict[str, EventSink] = {}
        # participant_id -> room_id，每个参与者同一时刻只属于一个房间
        self._membership: dict[str, str] = {}
        self._recently_ended: OrderedDict[str, None] = OrderedDict()
        self._table_lock = asyncio.Lock()

    # ── 连接管理 ──────────────────────────────────────────────────────

    async def connect(self, participant_id: str, channel: EventSink) -> None:
        """登记一个新连接，并下发参与者 ID 与当前直播列表快照。"""
        async with self._table_lock:
            self._channels[participant_id] = channel
            snapshot = [room.info() for room in self._rooms.values() if room.is_live]
        self._deliver(participant_id, SignalEvent.CONNECTED, ConnectedData(participant_id=participant_id).to_wire())
        self._deliver(participant_id, SignalEvent.LIVE_ROOMS, LiveRoomsData(rooms=snapshot).to_wire())
        logger.info("参与者已连接 | participant=%s | 在线: %d", participant_id, len(self._channels))

    async def disconnect(self, participant_id: str) -> None:
        """连接断开：先按离开房间处理，再移除连接。"""
        await self.leave_room(participant_id)
        async with self._table_lock:
            channel = self._channels.pop(participant_id, None)
        if channel is not None:
            channel.close()
        logger.info("参与者已断开 | participant=%s | 在线: %d", participant_id, len(self._channels))

    @property
    def online_count(self) -> int:
        return len(self._channels)

    # ── 房间生命周期 ──────────────────────────────────────────────────

    async def create_room(self, streamer_id: str, room_id: str | None = None) -> LiveRoom:
        """主播开播，登记一个新的直播间。

        Args:
            streamer_id: 主播参与者 ID。
            room_id: 调用方指定的房间 ID；为 None 时由协调端生成。

        Raises:
            AlreadyInRoom: 主播已在某个房间中。
            DuplicateRoomId: 指定的房间 ID 已被正在直播的房间占用。
        """
        async with self._table_lock:
            if streamer_id in self._membership:
                raise AlreadyInRoom(f"参与者已在房间 {self._membership[streamer_id]} 中")
            if room_id is None:
                room_id = self._generate_room_id()
            elif room_id in self._rooms:
                raise DuplicateRoomId(f"房间 ID 已存在: {room_id}")

            room = LiveRoom(room_id=room_id, streamer_id=streamer_id)
            self._rooms[room_id] = room
            self._membership[streamer_id] = room_id
            self._recently_ended.pop(room_id, None)

            self._deliver(
                streamer_id,
                SignalEvent.ACK,
                AckData(for_event=str(SignalEvent.CREATE_ROOM), room_id=room_id).to_wire(),
            )
            self._fan_out(
                self._browsing_participants(exclude=streamer_id),
                SignalEvent.ROOM_CREATED,
                RoomCreatedData(room_id=room_id, streamer_id=streamer_id).to_wire(),
            )

        logger.info("直播间已创建 | room_id=%s | streamer=%s", room_id, streamer_id)
        return room

    async def join_room(self, viewer_id: str, room_id: str) -> LiveRoom:
        """观众加入直播间。

        已在该房间内的观众再次加入视为重连：人数不变，但主播会再次收到
        ``viewer-joined``，从而为其重建协商。

        Raises:
            RoomNotFound: 房间不存在。
            RoomEnded: 房间已结束。
            AlreadyInRoom: 观众在其他房间中，或就是本房间主播。
        """
        room = self._require_room(room_id)
        async with room.lock:
            if not room.is_live:
                raise RoomEnded(f"直播已结束: {room_id}")
            if viewer_id == room.streamer_id:
                raise AlreadyInRoom("主播不能以观众身份加入自己的房间")
            current = self._membership.get(viewer_id)
            if current is not None and current != room_id:
                raise AlreadyInRoom(f"参与者已在房间 {current} 中")

            rejoin = viewer_id in room.viewers
            room.viewers.add(viewer_id)
            self._membership[viewer_id] = room_id
            total = room.online_count

            self._deliver(
                room.streamer_id,
                SignalEvent.VIEWER_JOINED,
                ViewerCountData(viewer_id=viewer_id, total_viewers=total).to_wire(),
            )
            self._deliver(
                viewer_id,
                SignalEvent.ROOM_JOINED,
                RoomJoinedData(room_id=room_id, streamer_id=room.streamer_id, total_viewers=total).to_wire(),
            )

        logger.info(
            "观众进入直播间 | room=%s | viewer=%s | rejoin=%s | 在线: %d",
            room_id, viewer_id, rejoin, total,
        )
        return room

    async def leave_room(self, participant_id: str) -> LiveRoom | None:
        """参与者离开房间（主动离开或连接断开）。

        - 主播离开：房间进入 ``ended``，每位观众与浏览中的参与者各收到一次
          ``stream-ended``，随后房间被移除。
        - 观众离开：从观众集合移除，主播收到 ``viewer-left``。
        - 参与者不在任何房间：no-op，返回 None。
        """
        room_id = self._membership.get(participant_id)
        if room_id is None:
            return None
        room = self._rooms.get(room_id)
        if room is None:
            self._membership.pop(participant_id, None)
            return None

        async with room.lock:
            if not room.is_member(participant_id):
                # 等锁期间房间已经结束
                return None

            if participant_id == room.streamer_id:
                viewers = room.end()
                async with self._table_lock:
                    if self._rooms.get(room_id) is room:
                        del self._rooms[room_id]
                    self._remember_ended(room_id)
                    for member in (room.streamer_id, *viewers):
                        if self._membership.get(member) == room_id:
                            del self._membership[member]
                    payload = StreamEndedData(room_id=room_id).to_wire()
                    self._fan_out(viewers, SignalEvent.STREAM_ENDED, payload)
                    self._fan_out(
                        self._browsing_participants(exclude=participant_id, skip=viewers),
                        SignalEvent.STREAM_ENDED,
                        payload,
                    )
                logger.info("直播已结束 | room=%s | 通知观众: %d", room_id, len(viewers))
            else:
                room.viewers.discard(participant_id)
                self._membership.pop(participant_id, None)
                total = room.online_count
                self._deliver(
                    room.streamer_id,
                    SignalEvent.VIEWER_LEFT,
                    ViewerCountData(viewer_id=participant_id, total_viewers=total).to_wire(),
                )
                logger.info("观众退出直播间 | room=%s | viewer=%s | 在线: %d", room_id, participant_id, total)
        return room

    # ── 信令转发 ──────────────────────────────────────────────────────

    async def route_offer(
        self,
        from_streamer_id: str,
        to_viewer_id: str,
        offer: dict[str, Any],
        room_id: str,
    ) -> bool:
        """把主播的 offer 原样转发给指定观众（且仅该观众）。

        Returns:
            是否成功投递。投递失败只记录日志，不视为错误。
        """
        room = self._require_room(room_id)
        async with room.lock:
            self._check_live(room)
            if from_streamer_id != room.streamer_id:
                raise NotRoomMember("只有本房间主播可以发送 offer")
            if to_viewer_id not in room.viewers:
                raise NotRoomMember(f"观众 {to_viewer_id} 不在房间 {room_id} 中")
            return self._deliver(
                to_viewer_id,
                SignalEvent.RECEIVE_OFFER,
                ReceiveOfferData(offer=offer, room_id=room_id, streamer_id=room.streamer_id).to_wire(),
            )

    async def route_answer(self, from_viewer_id: str, room_id: str, answer: dict[str, Any]) -> bool:
        """把观众的 answer 原样转发给本房间主播，并标注来源观众。"""
        room = self._require_room(room_id)
        async with room.lock:
            self._check_live(room)
            if from_viewer_id not in room.viewers:
                raise NotRoomMember(f"参与者 {from_viewer_id} 不是房间 {room_id} 的观众")
            return self._deliver(
                room.streamer_id,
                SignalEvent.RECEIVE_ANSWER,
                ReceiveAnswerData(answer=answer, room_id=room_id, viewer_id=from_viewer_id).to_wire(),
            )

    async def relay_chat_message(self, from_participant_id: str, room_id: str, text: str) -> int:
        """把聊天消息扇出给房间内除发送者外的所有成员。

        Returns:
            成功入队的接收者数量。
        """
        room = self._require_room(room_id)
        async with room.lock:
            self._check_live(room)
            if not room.is_member(from_participant_id):
                raise NotRoomMember(f"参与者 {from_participant_id} 不在房间 {room_id} 中")
            recipients = [pid for pid in room.members() if pid != from_participant_id]
            return self._fan_out(
                recipients,
                SignalEvent.NEW_MESSAGE,
                NewMessageData(room_id=room_id, viewer_id=from_participant_id, message=text).to_wire(),
            )

    # ── 查询 ──────────────────────────────────────────────────────────

    def list_rooms(self) -> list[RoomSummary]:
        """列出所有直播中房间的摘要信息。"""
        return [room.info() for room in self._rooms.values() if room.is_live]

    def get_room(self, room_id: str) -> LiveRoom:
        return self._require_room(room_id)

    def room_of(self, participant_id: str) -> str | None:
        return self._membership.get(participant_id)

    def ensure_member(self, participant_id: str, room_id: str) -> LiveRoom:
        """确认参与者是直播中房间的成员，否则抛出 RoomNotFound / RoomEnded / NotRoomMember。"""
        room = self._require_room(room_id)
        self._check_live(room)
        if not room.is_member(participant_id):
            raise NotRoomMember(f"参与者 {participant_id} 不在房间 {room_id} 中")
        return room

    # ── 内部工具 ──────────────────────────────────────────────────────

    def _require_room(self, room_id: str) -> LiveRoom:
        room = self._rooms.get(room_id)
        if room is None:
            if room_id in self._recently_ended:
                raise RoomEnded(f"直播已结束: {room_id}")
            raise RoomNotFound(f"房间不存在: {room_id}")
        return room

    @staticmethod
    def _check_live(room: LiveRoom) -> None:
        if not room.is_live:
            raise RoomEnded(f"直播已结束: {room.room_id}")

    def _generate_room_id(self) -> str:
        while True:
            room_id = new_room_id(self.room_id_length)
            if room_id not in self._rooms:
                return room_id

    def _remember_ended(self, room_id: str) -> None:
        self._recently_ended[room_id] = None
        self._recently_ended.move_to_end(room_id)
        while len(self._recently_ended) > _ENDED_ROOMS_MEMORY:
            self._recently_ended.popitem(last=False)

    def _browsing_participants(self, exclude: str | None = None, skip: list[str] | None = None) -> list[str]:
        """当前在线、且不在任何房间中的参与者。"""
        skipped = set(skip or ())
        return [
            pid for pid in self._channels
            if pid != exclude and pid not in self._membership and pid not in skipped
        ]

    def _deliver(self, participant_id: str, event: SignalEvent, data: dict[str, Any]) -> bool:
        channel = self._channels.get(participant_id)
        if channel is None or not channel.send(str(event), data):
            logger.warning("DeliveryFailure | participant=%s | event=%s", participant_id, event)
            return False
        return True

    def _fan_out(self, participant_ids: list[str], event: SignalEvent, data: dict[str, Any]) -> int:
        """逐个投递，单个失败不影响其余接收者。"""
        return sum(1 for pid in participant_ids if self._deliver(pid, event, data))
