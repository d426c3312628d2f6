"""
livecast.services.live_room
~~~~~~~~~~~~~~~~~~~~~~~~~~~

直播间领域模型 —— 封装一个房间的成员与生命周期。

每个 ``LiveRoom`` 持有自己的 ``asyncio.Lock``，同一房间的加入 / 离开 /
转发操作在锁内串行执行，不同房间之间互不干扰。
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum

from livecast.schemas.signaling import RoomSummary


class RoomState(str, Enum):
    """房间生命周期：直播中 → 已结束（随后从注册表移除）。"""

    LIVE = "live"
    ENDED = "ended"

    def __str__(self) -> str:
        return self.value


class LiveRoom:
    """一个直播间实体。

    Attributes:
        room_id: 房间唯一标识。
        streamer_id: 主播的参与者 ID，房间存续期间不变。
        viewers: 当前观众 ID 集合。
        state: 生命周期状态。
        lock: 房间级互斥锁。
    """

    def __init__(self, room_id: str, streamer_id: str) -> None:
        self.room_id = room_id
        self.streamer_id = streamer_id
        self.viewers: set[str] = set()
        self.state = RoomState.LIVE
        self.created_at = datetime.now(timezone.utc)
        self.lock = asyncio.Lock()

    @property
    def is_live(self) -> bool:
        return self.state is RoomState.LIVE

    @property
    def online_count(self) -> int:
        """当前观众数。"""
        return len(self.viewers)

    def is_member(self, participant_id: str) -> bool:
        """主播或观众都算房间成员。"""
        return participant_id == self.streamer_id or participant_id in self.viewers

    def members(self) -> list[str]:
        """主播在前，观众按 ID 排序，保证广播顺序稳定。"""
        return [self.streamer_id, *sorted(self.viewers)]

    def end(self) -> list[str]:
        """结束直播并返回结束时仍在房间内的观众。"""
        self.state = RoomState.ENDED
        remaining = sorted(self.viewers)
        self.viewers.clear()
        return remaining

    def info(self) -> RoomSummary:
        """返回房间摘要信息。"""
        return RoomSummary(
            room_id=self.room_id,
            streamer_id=self.streamer_id,
            total_viewers=self.online_count,
        )
