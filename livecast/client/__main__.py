"""
livecast.client.__main__
~~~~~~~~~~~~~~~~~~~~~~~~

命令行客户端::

    python -m livecast.client browse
    python -m livecast.client stream --source demo.mp4
    python -m livecast.client view abc123xyz

开播 / 观看时，标准输入的每一行作为一条聊天消息发送。
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from aiortc.contrib.media import MediaBlackhole

from livecast.client.chat import ChatEntry
from livecast.client.event_channel import SignalingChannel
from livecast.client.media import AiortcMediaSession, open_local_media
from livecast.client.room_client import RoomClient
from livecast.core.errors import LiveCastError
from livecast.core.logging import get_logger, setup_logging
from livecast.core.settings import settings

logger = get_logger(__name__)


def _print_entry(entry: ChatEntry) -> None:
    prefix = "我" if entry.local_echo else entry.sender_id[:8]
    print(f"[{prefix}] {entry.message}", flush=True)


def _print_rooms(client: RoomClient) -> None:
    if not client.live_rooms:
        print("当前没有正在直播的房间", flush=True)
        return
    for room in client.live_rooms.values():
        print(f"{room['roomId']}  主播={room.get('streamerId')}  观众={room.get('totalViewers', 0)}", flush=True)


async def _chat_from_stdin(client: RoomClient) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        try:
            await client.send_message(line)
        except LiveCastError as e:
            print(f"发送失败: {e.message}", flush=True)
            if client.room_id is None:
                return


async def _browse(client: RoomClient, channel: SignalingChannel) -> None:
    # 等待 connected / live-rooms 快照到达
    await asyncio.sleep(0.5)
    _print_rooms(client)
    await channel.close()


async def _stream(client: RoomClient, channel: SignalingChannel, args: argparse.Namespace) -> None:
    local_media = open_local_media(args.source, format=args.format)
    try:
        room_id = await client.go_live(local_media, room_id=args.room_id)
        print(f"开播成功，房间 ID: {room_id}", flush=True)
        await _chat_from_stdin(client)
        await client.leave()
    finally:
        local_media.stop()


async def _view(client: RoomClient, channel: SignalingChannel, args: argparse.Namespace) -> None:
    await client.join(args.room_id)
    print(f"正在观看 {args.room_id}，输入文字发送聊天，Ctrl-D 退出", flush=True)
    stream_ended = asyncio.Event()
    with channel.subscribe("stream-ended", lambda data: stream_ended.set()):
        waiters = {
            asyncio.create_task(_chat_from_stdin(client)),
            asyncio.create_task(channel.closed.wait()),
            asyncio.create_task(stream_ended.wait()),
        }
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
    if stream_ended.is_set():
        print("直播已结束", flush=True)
    await client.leave()


async def main_async(args: argparse.Namespace) -> int:
    sink = MediaBlackhole()

    def on_remote_track(track) -> None:
        logger.info("收到远端轨道 | kind=%s", track.kind)
        sink.addTrack(track)
        # start() 只会消费尚未启动的轨道
        asyncio.ensure_future(sink.start())

    async with SignalingChannel(args.url) as channel:
        client = RoomClient(
            channel,
            media_factory=lambda: AiortcMediaSession(settings.ice_servers()),
            on_remote_track=on_remote_track,
        )
        client.chat.on_entry(_print_entry)
        with client.attach():
            try:
                if args.command == "browse":
                    await _browse(client, channel)
                elif args.command == "stream":
                    await _stream(client, channel, args)
                else:
                    await _view(client, channel, args)
            except LiveCastError as e:
                print(f"错误: [{e.code}] {e.message}", file=sys.stderr, flush=True)
                return 1
            finally:
                await sink.stop()
        for notice in client.notices:
            print(f"提示: [{notice.get('code')}] {notice.get('message')}", flush=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livecast", description="直播房间命令行客户端")
    parser.add_argument("--url", default=settings.SIGNALING_URL, help="信令服务地址")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("browse", help="列出正在直播的房间")

    stream = sub.add_parser("stream", help="开播")
    stream.add_argument("--source", required=True, help="媒体源，例如 demo.mp4 或 /dev/video0")
    stream.add_argument("--format", default=None, help="ffmpeg 输入格式，例如 v4l2")
    stream.add_argument("--room-id", default=None, help="指定房间 ID")

    view = sub.add_parser("view", help="观看直播")
    view.add_argument("room_id", help="房间 ID")
    return parser


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
