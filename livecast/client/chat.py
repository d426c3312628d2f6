"""
livecast.client.chat
~~~~~~~~~~~~~~~~~~~~

客户端聊天记录 —— 按到达顺序追加，本地回显作为单独的一条记录。
"""
from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ChatEntry:
    room_id: str
    sender_id: str
    message: str
    local_echo: bool = False
    received_at: float = field(default_factory=time.time)


class ChatLog:
    """内存中的有序聊天记录。

    Args:
        max_entries: 最多保留的条数，None 表示不限。
    """

    def __init__(self, max_entries: int | None = None) -> None:
        self._entries: deque[ChatEntry] = deque(maxlen=max_entries)
        self._listeners: list[Callable[[ChatEntry], None]] = []

    def append(self, room_id: str, sender_id: str, message: str, local_echo: bool = False) -> ChatEntry:
        entry = ChatEntry(room_id=room_id, sender_id=sender_id, message=message, local_echo=local_echo)
        self._entries.append(entry)
        for listener in self._listeners:
            listener(entry)
        return entry

    def on_entry(self, listener: Callable[[ChatEntry], None]) -> None:
        self._listeners.append(listener)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def entries(self) -> list[ChatEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChatEntry]:
        return iter(list(self._entries))
