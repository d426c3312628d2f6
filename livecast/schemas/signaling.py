"""
livecast.schemas.signaling
~~~~~~~~~~~~~~~~~~~~~~~~~~

信令通道上的事件名与载荷模型。

线上格式为 JSON 帧 ``{"event": <事件名>, "data": {...}}``，
载荷字段统一使用 camelCase（``roomId`` / ``viewerId`` / ``totalViewers``）。
offer / answer 会话描述对协调端是不透明的，原样转发。
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SignalEvent(str, Enum):
    """信令事件名。"""

    # 客户端 → 协调端
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SEND_OFFER = "send-offer"
    SEND_ANSWER = "send-answer"
    SEND_MESSAGE = "send-message"

    # 协调端 → 客户端
    CONNECTED = "connected"
    LIVE_ROOMS = "live-rooms"
    ROOM_CREATED = "room-created"
    ROOM_JOINED = "room-joined"
    VIEWER_JOINED = "viewer-joined"
    VIEWER_LEFT = "viewer-left"
    RECEIVE_OFFER = "receive-offer"
    RECEIVE_ANSWER = "receive-answer"
    NEW_MESSAGE = "new-message"
    STREAM_ENDED = "stream-ended"
    ACK = "ack"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class CamelModel(BaseModel):
    """载荷基类：Python 侧 snake_case，线上 camelCase。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _strip_room_id(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("roomId 不能为空")
    return value


RoomId = Annotated[str, Field(max_length=64), AfterValidator(_strip_room_id)]


class EventFrame(BaseModel):
    """一条信令帧。"""

    event: str = Field(..., min_length=1, description="事件名")
    data: dict[str, Any] = Field(default_factory=dict, description="事件载荷")


# ── 客户端 → 协调端 ───────────────────────────────────────────────────

class CreateRoomPayload(CamelModel):
    room_id: RoomId | None = Field(default=None, description="房间 ID，缺省时由协调端生成")
    # 仅为兼容旧客户端，身份以连接为准
    streamer_id: str | None = None


class JoinRoomPayload(CamelModel):
    room_id: RoomId
    viewer_id: str | None = None


class SendOfferPayload(CamelModel):
    viewer_id: str = Field(..., min_length=1)
    offer: dict[str, Any]
    room_id: str = Field(..., min_length=1)


class SendAnswerPayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    answer: dict[str, Any]


class SendMessagePayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    viewer_id: str | None = None
    message: str


# ── 协调端 → 客户端 ───────────────────────────────────────────────────

class ConnectedData(CamelModel):
    participant_id: str


class RoomSummary(CamelModel):
    """房间摘要，用于浏览列表与 REST 接口。"""

    room_id: str = Field(..., description="房间唯一标识")
    streamer_id: str = Field(..., description="主播参与者 ID")
    total_viewers: int = Field(..., ge=0, description="当前观众数")


class LiveRoomsData(CamelModel):
    rooms: list[RoomSummary]


class RoomCreatedData(CamelModel):
    room_id: str
    streamer_id: str


class RoomJoinedData(CamelModel):
    room_id: str
    streamer_id: str
    total_viewers: int


class ViewerCountData(CamelModel):
    """``viewer-joined`` / ``viewer-left`` 共用载荷。"""

    viewer_id: str
    total_viewers: int


class ReceiveOfferData(CamelModel):
    offer: dict[str, Any]
    room_id: str
    streamer_id: str


class ReceiveAnswerData(CamelModel):
    answer: dict[str, Any]
    room_id: str
    viewer_id: str


class NewMessageData(CamelModel):
    room_id: str
    viewer_id: str
    message: str


class StreamEndedData(CamelModel):
    room_id: str


class AckData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    for_event: str = Field(..., alias="for")
    room_id: str | None = Field(default=None, alias="roomId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
