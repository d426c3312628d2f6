"""
livecast.client.event_channel
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

客户端信令通道：``emit(event, data)`` 发送，``subscribe(event, handler)``
订阅。订阅返回显式的 ``Subscription`` 句柄，调用方负责在退出时释放。
"""
from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from livecast.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class Subscription:
    """事件订阅句柄，``release()`` 可重复调用。"""

    def __init__(self, registry: dict[str, list[EventHandler]], event: str, handler: EventHandler) -> None:
        self.event = event
        self._registry = registry
        self._handler = handler
        self.active = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        handlers = self._registry.get(self.event, [])
        if self._handler in handlers:
            handlers.remove(self._handler)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class EventBus:
    """按事件名分发到订阅者。处理器异常只记录日志，不影响其他订阅者。"""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> Subscription:
        self._handlers[event].append(handler)
        return Subscription(self._handlers, event, handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def dispatch(self, event: str, data: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("事件处理失败 | event=%s | err=%s", event, e, exc_info=True)


class SignalingChannel:
    """基于 websockets 的信令客户端。

    用法::

        async with SignalingChannel(url) as channel:
            sub = channel.subscribe("live-rooms", on_rooms)
            ...
            sub.release()
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.bus = EventBus()
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task | None = None
        self.closed = asyncio.Event()

    async def open(self) -> None:
        self._ws = await connect(self.url)
        self._reader = asyncio.create_task(self._read_loop(), name="signaling-reader")
        logger.info("信令通道已连接 | url=%s", self.url)

    async def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        if self._ws is None:
            raise RuntimeError("信令通道尚未连接")
        frame = json.dumps({"event": event, "data": data or {}}, ensure_ascii=False)
        await self._ws.send(frame)

    def subscribe(self, event: str, handler: EventHandler) -> Subscription:
        return self.bus.subscribe(event, handler)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self.closed.set()

    async def __aenter__(self) -> SignalingChannel:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                    event, data = frame["event"], frame.get("data") or {}
                except (ValueError, KeyError, TypeError):
                    logger.warning("忽略无法解析的信令帧: %.200s", raw)
                    continue
                await self.bus.dispatch(event, data)
        except ConnectionClosed as e:
            logger.info("信令通道已断开 | code=%s", e.rcvd.code if e.rcvd else None)
        finally:
            self.closed.set()
