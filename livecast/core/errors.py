"""
livecast.core.errors
~~~~~~~~~~~~~~~~~~~~

信令与协商相关的错误类型。

所有错误都不是全局致命的：协调端在 WebSocket 分发层捕获后回发 ``error`` 事件，
客户端把它们作为非致命提示展示，或仅关闭出错的那一个协商器。
"""
from __future__ import annotations


class LiveCastError(Exception):
    """所有业务错误的基类。

    Attributes:
        code: 稳定的错误码，随 ``error`` 事件下发给客户端。
        message: 人类可读的错误描述。
        status_code: 通过 HTTP 接口暴露时使用的状态码。
    """

    code: str = "InternalError"
    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code
        super().__init__(self.message)

    def to_payload(self, for_event: str | None = None) -> dict:
        """转换为 ``error`` 事件的载荷。"""
        return {"for": for_event, "code": self.code, "message": self.message}


class DuplicateRoomId(LiveCastError):
    code = "DuplicateRoomId"
    status_code = 409


class RoomNotFound(LiveCastError):
    code = "RoomNotFound"
    status_code = 404


class RoomEnded(LiveCastError):
    code = "RoomEnded"
    status_code = 410


class NotRoomMember(LiveCastError):
    code = "NotRoomMember"
    status_code = 403


class AlreadyInRoom(LiveCastError):
    """参与者已经在某个房间中，同一时刻只允许一个角色。"""

    code = "AlreadyInRoom"
    status_code = 409


class InvalidState(LiveCastError):
    """状态机收到了当前状态下不允许的操作。"""

    code = "InvalidState"
    status_code = 409


class NegotiatorClosed(InvalidState):
    """协商器已关闭，不可复用。"""


class MediaUnavailable(LiveCastError):
    code = "MediaUnavailable"
    status_code = 400


class DeliveryFailure(LiveCastError):
    code = "DeliveryFailure"
    status_code = 503


class InvalidPayload(LiveCastError):
    code = "InvalidPayload"
    status_code = 422


class RateLimited(LiveCastError):
    code = "RateLimited"
    status_code = 429


class NegotiationFailed(LiveCastError):
    """媒体会话在协商过程中出错或超时。"""

    code = "NegotiationFailed"
    status_code = 502
