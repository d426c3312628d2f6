"""
livecast.client.negotiator
~~~~~~~~~~~~~~~~~~~~~~~~~~

会话协商器 —— 每对「主播 ↔ 观众」一个，驱动一个 ``MediaSession`` 完成
offer / answer 交换。

协商器是一次性的：重连或重新协商时必须丢弃旧实例、创建新实例。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from aiortc import MediaStreamTrack

from livecast.client.media import MediaSession
from livecast.core.errors import (
    InvalidState,
    LiveCastError,
    MediaUnavailable,
    NegotiationFailed,
    NegotiatorClosed,
)
from livecast.core.logging import get_logger
from livecast.core.settings import settings

logger = get_logger(__name__)

FailureCallback = Callable[["SessionNegotiator", LiveCastError], Awaitable[None] | None]


class NegotiationState(str, Enum):
    """协商状态。

    IDLE → OFFER_CREATED → CONNECTED            （主播侧）
    IDLE → ANSWER_AWAITED → CONNECTED           （观众侧，收到首个远端轨道即视为连通）
    任意非终止状态 → FAILED；任意状态 → CLOSED（终止）
    """

    IDLE = "idle"
    OFFER_CREATED = "offer_created"
    ANSWER_AWAITED = "answer_awaited"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


class NegotiationStateMachine:
    """协商状态转换表。"""

    TRANSITIONS: dict[NegotiationState, set[NegotiationState]] = {
        NegotiationState.IDLE: {
            NegotiationState.OFFER_CREATED,
            NegotiationState.ANSWER_AWAITED,
            NegotiationState.FAILED,
            NegotiationState.CLOSED,
        },
        NegotiationState.OFFER_CREATED: {
            NegotiationState.CONNECTED,
            NegotiationState.FAILED,
            NegotiationState.CLOSED,
        },
        NegotiationState.ANSWER_AWAITED: {
            NegotiationState.CONNECTED,
            NegotiationState.FAILED,
            NegotiationState.CLOSED,
        },
        NegotiationState.CONNECTED: {NegotiationState.FAILED, NegotiationState.CLOSED},
        NegotiationState.FAILED: {NegotiationState.CLOSED},
        NegotiationState.CLOSED: set(),
    }

    # 进入后启动超时看门狗的状态
    PENDING_STATES: set[NegotiationState] = {
        NegotiationState.OFFER_CREATED,
        NegotiationState.ANSWER_AWAITED,
    }

    @classmethod
    def can_transition(cls, current: NegotiationState, new: NegotiationState) -> bool:
        return new in cls.TRANSITIONS.get(current, set())


class SessionNegotiator:
    """单个主播-观众对的协商器。

    Attributes:
        media: 被驱动的媒体会话。
        room_id: 所属房间。
        streamer_id: 主播参与者 ID。
        viewer_id: 观众参与者 ID。
        state: 当前协商状态。
        remote_tracks: 已收到的远端媒体轨道。
        failure: 进入 FAILED 的原因。
    """

    def __init__(
        self,
        media: MediaSession,
        room_id: str,
        streamer_id: str,
        viewer_id: str,
        timeout: float | None = None,
        on_remote_track: Callable[[MediaStreamTrack], None] | None = None,
        on_failed: FailureCallback | None = None,
    ) -> None:
        self.media = media
        self.room_id = room_id
        self.streamer_id = streamer_id
        self.viewer_id = viewer_id
        self.timeout = timeout if timeout is not None else settings.NEGOTIATION_TIMEOUT_SECONDS
        self.state = NegotiationState.IDLE
        self.remote_tracks: list[MediaStreamTrack] = []
        self.failure: LiveCastError | None = None

        self._on_remote_track = on_remote_track
        self._on_failed = on_failed
        self._remote_offer_applied = False
        self._watchdog: asyncio.Task | None = None
        self._failure_task: asyncio.Task | None = None
        self._settled = asyncio.Event()
        self._media_released = False

        media.on_track(self._handle_remote_track)
        media.on_connection_state(self._handle_connection_state)

    @property
    def key(self) -> tuple[str, str]:
        return (self.streamer_id, self.viewer_id)

    @property
    def is_active(self) -> bool:
        return self.state not in (NegotiationState.FAILED, NegotiationState.CLOSED)

    # ── 主播侧 ────────────────────────────────────────────────────────

    async def create_offer(self) -> dict[str, Any]:
        """生成本地 offer。调用方负责经由注册表发送给观众。

        Raises:
            InvalidState: 当前不是 IDLE。
            MediaUnavailable: 没有附加任何本地轨道。
            NegotiationFailed: 媒体会话生成 offer 失败。
        """
        self._require(NegotiationState.IDLE, "create_offer")
        if self._remote_offer_applied:
            raise InvalidState("已应用远端 offer 的协商器不能再创建 offer")
        if not self.media.has_local_tracks:
            error = MediaUnavailable("没有可发送的本地媒体轨道")
            await self._fail(error)
            raise error

        offer = await self._call_media(self.media.create_offer(), "创建 offer")
        self._transition(NegotiationState.OFFER_CREATED)
        return offer

    async def set_remote_answer(self, answer: dict[str, Any]) -> None:
        """应用观众返回的 answer，OFFER_CREATED → CONNECTED。

        Raises:
            InvalidState: 尚未创建 offer，或 answer 已应用过。
        """
        self._require(NegotiationState.OFFER_CREATED, "set_remote_answer")
        await self._call_media(self.media.set_remote_description(answer), "应用 answer")
        self._transition(NegotiationState.CONNECTED)

    # ── 观众侧 ────────────────────────────────────────────────────────

    async def set_remote_offer(self, offer: dict[str, Any]) -> None:
        """应用主播发来的 offer（每个协商器只能应用一次）。"""
        self._require(NegotiationState.IDLE, "set_remote_offer")
        if self._remote_offer_applied:
            raise InvalidState("远端 offer 已应用，请为重新协商创建新的协商器")
        await self._call_media(self.media.set_remote_description(offer), "应用 offer")
        self._remote_offer_applied = True

    async def create_answer(self) -> dict[str, Any]:
        """生成本地 answer，进入 ANSWER_AWAITED。

        没有本地轨道的观众以仅接收方式应答。若远端轨道已先于 answer 到达，
        直接进入 CONNECTED。
        """
        self._require(NegotiationState.IDLE, "create_answer")
        if not self._remote_offer_applied:
            raise InvalidState("必须先应用远端 offer 才能创建 answer")
        answer = await self._call_media(self.media.create_answer(), "创建 answer")
        self._transition(NegotiationState.ANSWER_AWAITED)
        if self.remote_tracks:
            self._transition(NegotiationState.CONNECTED)
        return answer

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def close(self) -> None:
        """任何状态下均可调用：释放媒体会话并进入 CLOSED。"""
        if self.state is NegotiationState.CLOSED:
            return
        self._transition(NegotiationState.CLOSED)
        await self._release_media()

    async def cancel(self) -> None:
        """取消尚未完成的协商（主播下播 / 观众离开时使用）。"""
        if self.state in NegotiationStateMachine.PENDING_STATES | {NegotiationState.IDLE}:
            logger.info("取消协商 | room=%s | viewer=%s | state=%s", self.room_id, self.viewer_id, self.state)
        await self.close()

    async def wait_settled(self, timeout: float | None = None) -> NegotiationState:
        """等待协商进入 CONNECTED / FAILED / CLOSED 之一并返回该状态。"""
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.state

    # ── 内部 ──────────────────────────────────────────────────────────

    def _require(self, expected: NegotiationState, operation: str) -> None:
        if self.state is NegotiationState.CLOSED:
            raise NegotiatorClosed(f"协商器已关闭，无法执行 {operation}")
        if self.state is not expected:
            raise InvalidState(f"{operation} 需要状态 {expected}，当前为 {self.state}")

    async def _call_media(self, coro, action: str) -> Any:
        try:
            result = await coro
        except LiveCastError:
            raise
        except Exception as e:
            error = NegotiationFailed(f"{action}失败: {e}")
            await self._fail(error)
            raise error from e
        if self.state is NegotiationState.CLOSED:
            # 等待媒体栈期间被关闭
            raise NegotiatorClosed(f"{action}期间协商器已关闭")
        if self.state is NegotiationState.FAILED:
            raise self.failure or NegotiationFailed(f"{action}期间协商失败")
        return result

    def _transition(self, new: NegotiationState) -> None:
        if not NegotiationStateMachine.can_transition(self.state, new):
            raise InvalidState(f"非法的协商状态转换: {self.state} → {new}")
        old, self.state = self.state, new
        logger.debug("协商状态 %s → %s | room=%s | viewer=%s", old, new, self.room_id, self.viewer_id)

        if new in NegotiationStateMachine.PENDING_STATES:
            self._start_watchdog()
        else:
            self._stop_watchdog()
        if new in (NegotiationState.CONNECTED, NegotiationState.FAILED, NegotiationState.CLOSED):
            self._settled.set()

    async def _fail(self, error: LiveCastError) -> None:
        if not self.is_active:
            return
        self.failure = error
        self._transition(NegotiationState.FAILED)
        logger.warning("协商失败 | room=%s | viewer=%s | %s", self.room_id, self.viewer_id, error.message)
        await self._release_media()
        if self._on_failed is not None:
            result = self._on_failed(self, error)
            if asyncio.iscoroutine(result):
                await result

    async def _release_media(self) -> None:
        if self._media_released:
            return
        self._media_released = True
        try:
            await self.media.close()
        except Exception as e:
            logger.warning("释放媒体会话失败 | viewer=%s | err=%s", self.viewer_id, e)

    def _start_watchdog(self) -> None:
        self._stop_watchdog()
        self._watchdog = asyncio.create_task(self._watch(self.state), name=f"negotiation-watchdog:{self.viewer_id}")

    def _stop_watchdog(self) -> None:
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None and watchdog is not asyncio.current_task() and not watchdog.done():
            watchdog.cancel()

    async def _watch(self, pending: NegotiationState) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.sleep(self.timeout)
            if self.state is pending:
                await self._fail(NegotiationFailed(f"协商超时（{self.timeout:g}s 内未完成 {pending}）"))

    def _handle_remote_track(self, track: MediaStreamTrack) -> None:
        if not self.is_active:
            return
        self.remote_tracks.append(track)
        if self._on_remote_track is not None:
            self._on_remote_track(track)
        if self.state is NegotiationState.ANSWER_AWAITED:
            self._transition(NegotiationState.CONNECTED)

    def _handle_connection_state(self, state: str) -> None:
        if state == "failed" and self.is_active:
            self._failure_task = asyncio.get_running_loop().create_task(
                self._fail(NegotiationFailed("媒体连接失败")),
                name=f"negotiation-failure:{self.viewer_id}",
            )
