"""
livecast.api.signaling_ws
~~~~~~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 接口 —— 每条连接即一个参与者。

提供 ``/ws/signaling`` 端点。连接建立后协调端分配参与者 ID 并下发
``connected`` 与 ``live-rooms``；之后客户端发送的每一帧
``{"event": ..., "data": {...}}`` 都被分发到 ``RoomRegistry`` / ``ChatRelay``。

任何单条消息的处理失败都只会回发一条 ``error`` 事件，连接保持可用；
连接断开时按离开房间处理（主播断开即下播）。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from livecast.core.errors import InvalidPayload, LiveCastError
from livecast.core.idgen import new_participant_id
from livecast.core.logging import get_logger, request_id_ctx_var
from livecast.core.settings import settings
from livecast.schemas.signaling import (
    AckData,
    CreateRoomPayload,
    EventFrame,
    JoinRoomPayload,
    SendAnswerPayload,
    SendMessagePayload,
    SendOfferPayload,
    SignalEvent,
)
from livecast.services.chat_relay import ChatRelay
from livecast.services.participant_channel import EventSink, ParticipantChannel
from livecast.services.room_registry import RoomRegistry

logger = get_logger(__name__)

router: APIRouter = APIRouter()

Handler = Callable[["SignalingContext", dict[str, Any]], Awaitable[None]]


class SignalingContext:
    """单条连接的分发上下文。"""

    def __init__(
        self,
        participant_id: str,
        registry: RoomRegistry,
        chat: ChatRelay,
        reply: EventSink,
    ) -> None:
        self.participant_id = participant_id
        self.registry = registry
        self.chat = chat
        self.reply = reply


async def _on_create_room(ctx: SignalingContext, data: dict[str, Any]) -> None:
    payload = CreateRoomPayload.model_validate(data)
    await ctx.registry.create_room(ctx.participant_id, payload.room_id)


async def _on_join_room(ctx: SignalingContext, data: dict[str, Any]) -> None:
    payload = JoinRoomPayload.model_validate(data)
    await ctx.registry.join_room(ctx.participant_id, payload.room_id)


async def _on_leave_room(ctx: SignalingContext, data: dict[str, Any]) -> None:
    room = await ctx.registry.leave_room(ctx.participant_id)
    ack = AckData(for_event=str(SignalEvent.LEAVE_ROOM), room_id=room.room_id if room else None)
    ctx.reply.send(str(SignalEvent.ACK), ack.to_wire())


async def _on_send_offer(ctx: SignalingContext, data: dict[str, Any]) -> None:
    payload = SendOfferPayload.model_validate(data)
    await ctx.registry.route_offer(ctx.participant_id, payload.viewer_id, payload.offer, payload.room_id)


async def _on_send_answer(ctx: SignalingContext, data: dict[str, Any]) -> None:
    payload = SendAnswerPayload.model_validate(data)
    await ctx.registry.route_answer(ctx.participant_id, payload.room_id, payload.answer)


async def _on_send_message(ctx: SignalingContext, data: dict[str, Any]) -> None:
    payload = SendMessagePayload.model_validate(data)
    await ctx.chat.send(payload.room_id, ctx.participant_id, payload.message)


HANDLERS: dict[str, Handler] = {
    str(SignalEvent.CREATE_ROOM): _on_create_room,
    str(SignalEvent.JOIN_ROOM): _on_join_room,
    str(SignalEvent.LEAVE_ROOM): _on_leave_room,
    str(SignalEvent.SEND_OFFER): _on_send_offer,
    str(SignalEvent.SEND_ANSWER): _on_send_answer,
    str(SignalEvent.SEND_MESSAGE): _on_send_message,
}


async def dispatch_frame(ctx: SignalingContext, raw: str) -> None:
    """解析并处理一帧信令。业务错误转换为 ``error`` 事件回发给发送者。"""
    event: str | None = None
    try:
        try:
            frame = EventFrame.model_validate_json(raw)
        except ValidationError as e:
            raise InvalidPayload(f"无法解析的信令帧: {e.error_count()} 处错误") from e

        event = frame.event
        handler = HANDLERS.get(event)
        if handler is None:
            raise InvalidPayload(f"未知事件: {event}")

        logger.debug("收到信令 | event=%s", event)
        try:
            await handler(ctx, frame.data)
        except ValidationError as e:
            raise InvalidPayload(f"{event} 载荷不合法: {e.errors(include_url=False)}") from e
    except LiveCastError as e:
        logger.info("信令处理失败 | event=%s | code=%s | %s", event, e.code, e.message)
        ctx.reply.send(str(SignalEvent.ERROR), e.to_payload(event))


@router.websocket("/ws/signaling")
async def websocket_signaling_endpoint(websocket: WebSocket) -> None:
    """信令 WebSocket 端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    participant_id = new_participant_id()
    token = request_id_ctx_var.set(f"ws-{participant_id[:8]}")

    try:
        registry: RoomRegistry = websocket.app.state.room_registry
        chat: ChatRelay = websocket.app.state.chat_relay

        await websocket.accept()
        channel = ParticipantChannel(participant_id, websocket, max_queue=settings.OUTBOUND_QUEUE_SIZE)
        writer = asyncio.create_task(channel.run_writer(), name=f"signaling-writer:{participant_id[:8]}")
        await registry.connect(participant_id, channel)
        ctx = SignalingContext(participant_id, registry, chat, channel)

        try:
            while True:
                raw: str = await websocket.receive_text()
                await dispatch_frame(ctx, raw)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 接收异常: %s", e, exc_info=True)
        finally:
            await registry.disconnect(participant_id)
            chat.forget(participant_id)
            if not writer.done():
                writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
    finally:
        request_id_ctx_var.reset(token)
