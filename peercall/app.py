"""peercall 명령행 클라이언트.

룸에 참가해 상대방과 통화하고, 상대 미디어를 파일로 녹화하거나 버립니다.
Ctrl-C 또는 상대방 퇴장/서버 에러 시 종료합니다.

사용법:
    peercall room1
    peercall room1 --media /dev/video0 --media-format v4l2 --record remote.mp4
    peercall room1 --media sample.mp4 --media-format "" --signaling-url ws://localhost:8080
"""
import argparse
import asyncio
import functools
import logging
import sys
from typing import List, Optional

from .call import CallSession, CallState, Notice
from .config import signaling_config
from .shared.errors import CallError
from .utils.logging_config import setup_logging
from .webrtc import RecorderSink, open_local_media

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="peercall", description="1:1 WebRTC call over a room-based signaling server")
    parser.add_argument("room_id", help="Room ID shared with the other participant")
    parser.add_argument(
        "--signaling-url",
        default=None,
        help=f"Signaling server URL (default: {signaling_config.SIGNALING_URL})",
    )
    parser.add_argument("--media", default=None, help="Local media source: device, file or URL")
    parser.add_argument("--media-format", default=None, help='ffmpeg input format, "" for plain files')
    parser.add_argument(
        "--record",
        default=None,
        help="Record remote media to this file; each renegotiation starts a new segment (NAME-1.EXT, ...)",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    """통화 하나를 실행하고 종료 코드를 반환합니다."""
    session = CallSession(
        signaling_url=args.signaling_url,
        media_source=functools.partial(open_local_media, source=args.media, format=args.media_format),
    )
    sink = RecorderSink(args.record)
    session.media.on_remote(sink)

    def on_notice(notice: Notice) -> None:
        print(f"[{notice.kind}] {notice.message}")

    pending: set = set()

    def on_state_change(old: CallState, new: CallState) -> None:
        print(f"Call state: {old.value} → {new.value}")
        if new == CallState.IN_CALL:
            task = asyncio.ensure_future(sink.start())
            pending.add(task)
            task.add_done_callback(pending.discard)

    session.on_notice(on_notice)
    session.on_state_change(on_state_change)

    try:
        try:
            await session.join(args.room_id)
        except CallError as e:
            logger.error(f"❌ Cannot join room: {e}")
            return 1
        await session.wait_closed()
    finally:
        await session.hang_up()
        await sink.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, call ended")
        return 130


if __name__ == "__main__":
    sys.exit(main())
