"""
livecast.services.chat_relay
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间聊天中继 —— 对每条消息做校验与限流，扇出完全委托给 ``RoomRegistry``。

中继本身不保存任何消息：聊天记录只存在于各客户端的内存中。
"""
from __future__ import annotations

from livecast.core.errors import InvalidPayload, RateLimited
from livecast.core.logging import get_logger
from livecast.core.rate_limit import WebSocketRateLimiter
from livecast.core.settings import settings
from livecast.services.room_registry import RoomRegistry

logger = get_logger(__name__)


class ChatRelay:
    """聊天中继。

    Attributes:
        registry: 负责成员校验与扇出的房间注册表。
        limiter: 按参与者计的发送间隔限流器。
        max_length: 单条消息最大长度。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        limiter: WebSocketRateLimiter | None = None,
        max_length: int | None = None,
    ) -> None:
        self.registry = registry
        self.limiter = limiter or WebSocketRateLimiter(interval_seconds=settings.CHAT_RATE_LIMIT_INTERVAL)
        self.max_length = max_length or settings.CHAT_MAX_LENGTH

    async def send(self, room_id: str, sender_id: str, text: str) -> int:
        """校验并转发一条聊天消息。

        Returns:
            实际送达（入队）的接收者数量。

        Raises:
            InvalidPayload: 消息为空或超长。
            RateLimited: 发送过快。
            RoomNotFound / RoomEnded / NotRoomMember: 来自注册表的校验。
        """
        text = text.strip()
        if not text:
            raise InvalidPayload("消息不能为空")
        if len(text) > self.max_length:
            raise InvalidPayload(f"消息过长（最多 {self.max_length} 字）")
        # 非成员的消息不占用限流额度
        self.registry.ensure_member(sender_id, room_id)
        if not self.limiter.is_allowed(sender_id):
            raise RateLimited("您发送消息的速度太快啦，请慢一点~")

        delivered = await self.registry.relay_chat_message(sender_id, room_id, text)
        logger.debug("聊天已转发 | room=%s | sender=%s | 接收者: %d", room_id, sender_id, delivered)
        return delivered

    def forget(self, sender_id: str) -> None:
        """连接断开时清理限流记录。"""
        self.limiter.remove_client(sender_id)
