"""
livecast.services.participant_channel
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

单个参与者的下行信令通道 —— 有界发送队列 + 独立写协程。

注册表只负责把事件放进队列（不等待网络 I/O），真正的写 socket 由
``run_writer()`` 在连接自己的协程里完成。因此：

- 同一参与者收到的事件严格按入队顺序送达；
- 某个观众网络卡顿或断开只影响它自己的队列，不会拖慢房间内其他人的广播。
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

from fastapi import WebSocket

from livecast.core.logging import get_logger

logger = get_logger(__name__)


class EventSink(Protocol):
    """注册表向参与者投递事件时依赖的最小接口。"""

    participant_id: str

    def send(self, event: str, data: dict[str, Any]) -> bool:
        """投递一条事件，返回是否成功入队。"""
        ...

    def close(self) -> None:
        ...


class ParticipantChannel:
    """基于 WebSocket 的参与者下行通道。

    Attributes:
        participant_id: 连接级参与者 ID。
        websocket: 已 accept 的 FastAPI WebSocket。
    """

    def __init__(self, participant_id: str, websocket: WebSocket, max_queue: int = 256) -> None:
        self.participant_id = participant_id
        self.websocket = websocket
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: str, data: dict[str, Any]) -> bool:
        """把事件编码后放入发送队列（非阻塞）。

        Returns:
            入队成功返回 True；通道已关闭或队列已满返回 False（投递失败）。
        """
        if self._closed:
            return False
        frame = json.dumps({"event": str(event), "data": data}, ensure_ascii=False)
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "发送队列已满，丢弃事件 | participant=%s | event=%s",
                self.participant_id, event,
            )
            return False
        return True

    def close(self) -> None:
        """停止接收新事件，并让写协程在清空已入队事件后退出。"""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # 队列满时写协程仍会被 cancel 终止
            pass

    async def run_writer(self) -> None:
        """持续把队列中的帧写入 WebSocket，直到收到结束信号或写失败。"""
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                await self.websocket.send_text(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("下行写入失败，关闭通道 | participant=%s | err=%s", self.participant_id, e)
        finally:
            self._closed = True
