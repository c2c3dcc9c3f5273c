"""시그널링 채널 모듈.

룸 단위 시그널링 서버와의 WebSocket 연결을 관리합니다.
재연결은 하지 않으며, 연결이 끊기면 on_close 콜백으로 알리기만 합니다.

주요 기능:
    - WebSocket 연결 수립 (실패 시 SignalingConnectionError)
    - Envelope 송신 (fire-and-forget, 송신 순서 보장)
    - 수신 프레임 디코딩 후 도착 순서대로 on_message 전달
    - 손상된 프레임은 로그만 남기고 폐기

Examples:
    >>> channel = SignalingChannel(on_message=handle_envelope)
    >>> await channel.open("wss://signaling.example.com")
    >>> channel.send(Envelope.join_room("room1"))
    >>> await channel.close()
"""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import SignalingConfig, signaling_config
from ..shared.errors import ProtocolViolation, SignalingConnectionError
from .envelope import Envelope, decode_envelope

logger = logging.getLogger(__name__)


class SignalingChannel:
    """시그널링 서버와의 양방향 메시지 채널.

    Attributes:
        endpoint (Optional[str]): 현재 연결된 서버 URL

    Note:
        - send()는 동기 함수이며 송신 큐에 넣기만 함 (writer 태스크가 순서대로 전송)
        - 열려 있지 않은 채널로의 send()는 경고 로그 후 무시
        - close()는 여러 번 호출해도 안전함
    """

    def __init__(
        self,
        on_message: Callable[[Envelope], None],
        on_close: Optional[Callable[[], None]] = None,
        config: SignalingConfig = signaling_config,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        """SignalingChannel 초기화.

        Args:
            on_message: 디코딩된 Envelope를 받을 콜백
            on_close: 서버 측에서 연결이 끊겼을 때 호출될 콜백
            config: 타임아웃/keepalive 설정
            connect: WebSocket 연결 함수 (테스트에서 교체)
        """
        self._on_message = on_message
        self._on_close = on_close
        self._config = config
        self._connect = connect

        self.endpoint: Optional[str] = None
        self._ws = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        """채널이 열려 있고 close()가 호출되지 않았는지 여부."""
        return self._ws is not None and not self._closing

    async def open(self, endpoint: Optional[str] = None) -> None:
        """시그널링 서버에 연결합니다.

        Args:
            endpoint: 서버 URL. None이면 설정의 SIGNALING_URL 사용

        Raises:
            SignalingConnectionError: 연결을 수립할 수 없는 경우
        """
        if self._ws is not None:
            raise SignalingConnectionError(f"Channel already open to {self.endpoint}")

        endpoint = endpoint or self._config.SIGNALING_URL
        logger.info(f"🔌 Connecting to signaling server {endpoint}")

        try:
            ws = await self._connect(
                endpoint,
                open_timeout=self._config.OPEN_TIMEOUT,
                ping_interval=self._config.PING_INTERVAL,
                ping_timeout=self._config.PING_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"❌ Signaling connection failed: {e}")
            raise SignalingConnectionError(f"Cannot connect to {endpoint}: {e}") from e

        self.endpoint = endpoint
        self._ws = ws
        self._closing = False
        self._outbox = asyncio.Queue()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._writer_task = asyncio.create_task(self._write_loop(ws, self._outbox))
        logger.info("✅ Connected to signaling server")

    def send(self, envelope: Envelope) -> None:
        """Envelope를 전송합니다 (fire-and-forget)."""
        if not self.is_open:
            logger.warning(f"Signaling channel not open, dropping '{envelope.type.value}' message")
            return
        self._outbox.put_nowait(envelope.encode())
        logger.debug(f"→ {envelope.type.value}")

    async def close(self) -> None:
        """채널을 닫습니다. 이미 닫혔거나 열린 적 없는 채널에도 안전합니다."""
        ws = self._ws
        if ws is None or self._closing:
            return
        self._closing = True

        current = asyncio.current_task()
        for task in (self._writer_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"Error while closing signaling socket: {e}")

        self._ws = None
        self._outbox = None
        self._reader_task = None
        self._writer_task = None
        logger.info("Signaling channel closed")

    async def _read_loop(self, ws) -> None:
        """수신 프레임을 도착 순서대로 디코딩해 전달합니다."""
        try:
            async for frame in ws:
                self._deliver(frame)
        except ConnectionClosed as e:
            logger.warning(f"Signaling connection closed: {e}")
        finally:
            if not self._closing:
                logger.warning("⚠️ Signaling server went away")
                self._closing = True
                self._ws = None
                if self._writer_task is not None:
                    self._writer_task.cancel()
                if self._on_close:
                    self._on_close()

    def _deliver(self, frame: Union[str, bytes]) -> None:
        try:
            envelope = decode_envelope(frame)
        except ProtocolViolation as e:
            logger.warning(f"Dropping malformed signaling frame: {e}")
            return

        if envelope is None:
            return

        logger.debug(f"← {envelope.type.value}")
        try:
            self._on_message(envelope)
        except Exception as e:
            logger.error(f"❌ Signaling message handler failed: {e}", exc_info=True)

    async def _write_loop(self, ws, outbox: asyncio.Queue) -> None:
        """송신 큐를 순서대로 전송합니다."""
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed as e:
                logger.warning(f"Signaling send failed, connection closed: {e}")
                return
