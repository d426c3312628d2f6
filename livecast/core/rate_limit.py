"""
livecast.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 接口与 WebSocket 聊天的限流配置。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流，单进程部署使用内存存储即可
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


# --------- WebSocket 聊天限流器 ---------
class WebSocketRateLimiter:
    """基于内存的简单 WebSocket 聊天限流器。

    记录每个参与者上一次发送聊天消息的时间，过快则拒绝。
    """

    def __init__(self, interval_seconds: float = 0.5) -> None:
        self.interval_seconds = interval_seconds
        self._last_message_time: dict[str, float] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查客户端是否允许发送消息。

        Args:
            client_id: 参与者 ID。

        Returns:
            是否允许发送。如果允许，则同时更新上次发送时间。
        """
        now = time.monotonic()
        last_time = self._last_message_time.get(client_id)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_message_time[client_id] = now
            return True
        return False

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._last_message_time.pop(client_id, None)
