"""통화 세션 모듈.

join/hang-up 동작을 제공하는 최상위 오케스트레이터입니다.
로컬 미디어, 시그널링 채널, 협상 상태 머신, 미디어 바인딩의 수명을 관리하며
한 번에 하나의 통화만 허용합니다.

주요 기능:
    - 룸 참가 (로컬 미디어 획득 → 시그널링 연결 → join_room 송신)
    - 수신 메시지를 종류별로 협상 상태 머신에 전달
    - 상대방 퇴장/서버 에러 시 자동 hang-up
    - 멱등 hang-up (미디어 → 피어 연결 → 시그널링 → 룸 ID 순서로 해제)

Architecture:
    - 수신 Envelope와 RTCPeerConnection 콜백은 하나의 asyncio.Queue에 쌓임
    - pump 태스크 하나가 이벤트를 하나씩 끝까지 처리 (락 불필요)
    - hang-up은 진행 중인 단계를 취소하지 않음. 뒤늦게 끝난 단계는
      핸들 확인 후 결과를 버림

State Machine:
    IDLE → AWAITING_MEDIA → CONNECTING → IN_CALL → ENDING → IDLE

Examples:
    >>> session = CallSession()
    >>> session.on_notice(lambda notice: print(notice.message))
    >>> await session.join("room1")
    >>> await session.wait_closed()
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from aiortc import RTCPeerConnection

from ..shared.errors import (
    CallError,
    CallInProgress,
    InvalidInput,
    MediaAccessError,
    NegotiationError,
    ProtocolViolation,
    RemoteSignaled,
    SignalingConnectionError,
)
from ..signaling import Envelope, EnvelopeKind, SignalingChannel
from ..webrtc import (
    EngineEvent,
    LocalMedia,
    MediaBinding,
    NegotiationState,
    NegotiationStateMachine,
    open_local_media,
)

logger = logging.getLogger(__name__)

PEER_LEFT_MESSAGE = "The other user has left the room."
DEFAULT_ERROR_MESSAGE = "Signaling server error"

# Inbox marker for a user-requested renegotiation
_RENEGOTIATE = object()
# Inbox marker that stops the pump
_STOP = object()


def _drain(inbox: asyncio.Queue) -> None:
    """큐에 남은 이벤트를 버립니다."""
    while not inbox.empty():
        inbox.get_nowait()
        inbox.task_done()


class CallState(str, Enum):
    """통화 상태."""

    IDLE = "idle"
    AWAITING_MEDIA = "awaiting_media"
    CONNECTING = "connecting"
    IN_CALL = "in_call"
    ENDING = "ending"


@dataclass
class Notice:
    """호출자에게 전달되는 알림.

    Attributes:
        kind: "peer_left" | "error" | "negotiation_failed" | "connection_failed" | "signaling_lost"
        message: 사람이 읽을 수 있는 메시지
        error: 원인 예외 (있는 경우)
    """

    kind: str
    message: str
    error: Optional[CallError] = None


class CallSession:
    """두 참가자 간 통화 하나를 관리하는 오케스트레이터.

    Attributes:
        state (CallState): 현재 통화 상태
        room_id (Optional[str]): 참가 중인 룸 ID
        local_media (Optional[LocalMedia]): 로컬 미디어 핸들 (세션 소유)
        media (MediaBinding): 출력 계층이 구독하는 미디어 바인딩

    Note:
        - join()은 IDLE 상태에서만 가능 (CallInProgress)
        - hang_up()은 어느 상태에서나 호출 가능하며 멱등
        - 로컬 장애는 자동 재시도하지 않음. renegotiate()로 사용자가 재시도
    """

    def __init__(
        self,
        signaling_url: Optional[str] = None,
        media_source: Callable[[], Awaitable[LocalMedia]] = open_local_media,
        channel_factory: Callable[..., SignalingChannel] = SignalingChannel,
        rtc_configuration=None,
        peer_connection_factory: Callable[..., Any] = RTCPeerConnection,
        media: Optional[MediaBinding] = None,
    ):
        """CallSession 초기화.

        Args:
            signaling_url: 시그널링 서버 URL. None이면 설정값 사용
            media_source: 로컬 미디어를 여는 코루틴 함수
            channel_factory: SignalingChannel 생성 함수 (테스트에서 교체)
            rtc_configuration: RTCConfiguration (ICE 서버)
            peer_connection_factory: RTCPeerConnection 생성 함수 (테스트에서 교체)
            media: 공유할 MediaBinding. None이면 새로 생성
        """
        self._signaling_url = signaling_url
        self._media_source = media_source
        self._channel_factory = channel_factory
        self._rtc_configuration = rtc_configuration
        self._peer_connection_factory = peer_connection_factory

        self.state = CallState.IDLE
        self.room_id: Optional[str] = None
        self.local_media: Optional[LocalMedia] = None
        self.media = media or MediaBinding()

        self._channel: Optional[SignalingChannel] = None
        self._negotiation: Optional[NegotiationStateMachine] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._background: set = set()
        self._ended: Optional[asyncio.Event] = None
        self._generation = 0

        self._state_observers: List[Callable[[CallState, CallState], None]] = []
        self._notice_observers: List[Callable[[Notice], None]] = []

    async def __aenter__(self) -> "CallSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.hang_up()

    @property
    def negotiation(self) -> Optional[NegotiationStateMachine]:
        return self._negotiation

    @property
    def channel(self) -> Optional[SignalingChannel]:
        return self._channel

    def on_state_change(self, callback: Callable[[CallState, CallState], None]) -> None:
        """상태 변경 관찰자를 등록합니다. callback(old, new)."""
        self._state_observers.append(callback)

    def on_notice(self, callback: Callable[[Notice], None]) -> None:
        """알림 관찰자를 등록합니다."""
        self._notice_observers.append(callback)

    # ------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------

    async def join(self, room_id: str) -> None:
        """룸에 참가합니다.

        Args:
            room_id: 룸 ID (앞뒤 공백 제거 후 비어 있으면 안 됨)

        Raises:
            InvalidInput: 룸 ID가 비어 있는 경우 (상태 변화 없음)
            CallInProgress: 이미 통화 중인 경우
            MediaAccessError: 로컬 미디어를 열 수 없는 경우 (IDLE로 복귀)
            SignalingConnectionError: 시그널링 서버 연결 실패 (IDLE로 복귀)
        """
        if not isinstance(room_id, str) or not room_id.strip():
            raise InvalidInput("Please enter a Room ID.")
        room_id = room_id.strip()

        if self.state != CallState.IDLE:
            raise CallInProgress(f"A call is already active (state '{self.state.value}')")

        self._generation += 1
        generation = self._generation
        logger.info(f"▶ join: room={room_id}")
        self._set_state(CallState.AWAITING_MEDIA)

        try:
            local_media = await self._media_source()
        except asyncio.CancelledError:
            if generation == self._generation:
                self._set_state(CallState.IDLE)
            raise
        except MediaAccessError:
            logger.error("❌ Error accessing media devices")
            if generation == self._generation:
                self._set_state(CallState.IDLE)
            raise
        except Exception as e:
            logger.error(f"❌ Error accessing media devices: {e}", exc_info=True)
            if generation == self._generation:
                self._set_state(CallState.IDLE)
            raise MediaAccessError(f"Cannot acquire local media: {e}") from e

        if generation != self._generation:
            logger.info("Join abandoned by hang-up while acquiring media")
            local_media.stop()
            return

        self.local_media = local_media
        self.media.publish_local(local_media)
        self.room_id = room_id

        inbox: asyncio.Queue = asyncio.Queue()
        self._inbox = inbox
        channel = self._channel_factory(
            on_message=self._enqueue,
            on_close=self._on_signaling_closed,
        )
        self._channel = channel

        try:
            await channel.open(self._signaling_url)
        except (SignalingConnectionError, asyncio.CancelledError):
            # media is already held, release it in hang-up order
            if generation == self._generation:
                self._inbox = None
                await self._release_all()
                self._set_state(CallState.IDLE)
            raise

        if generation != self._generation:
            logger.info("Join abandoned by hang-up while connecting to signaling server")
            await channel.close()
            return

        self._negotiation = NegotiationStateMachine(
            room_id,
            local_media,
            channel.send,
            self.media,
            rtc_configuration=self._rtc_configuration,
            peer_connection_factory=self._peer_connection_factory,
            on_engine_event=self._enqueue,
            on_connection_state=self._on_connection_state,
        )
        self._ended = asyncio.Event()
        self._pump_task = self._spawn(self._pump(inbox))

        channel.send(Envelope.join_room(room_id))
        self._set_state(CallState.CONNECTING)

    async def hang_up(self) -> None:
        """통화를 종료하고 모든 리소스를 해제합니다.

        로컬 트랙 중지 → 협상 상태 머신 종료 → 시그널링 채널 종료 → 룸 ID 해제
        순서로 정리하고 IDLE로 돌아갑니다. IDLE 상태이거나 이미 종료 중이면 아무것도 하지 않습니다.
        """
        if self.state in (CallState.IDLE, CallState.ENDING):
            return

        logger.info(f"▶ hang_up: room={self.room_id}")
        self._generation += 1
        self._set_state(CallState.ENDING)

        inbox, self._inbox = self._inbox, None
        await self._release_all()

        if inbox is not None:
            _drain(inbox)
            pump = self._pump_task
            if pump is not None and pump is not asyncio.current_task() and not pump.done():
                # Wake an idle pump so it exits
                inbox.put_nowait(_STOP)

        self._set_state(CallState.IDLE)
        if self._ended is not None:
            self._ended.set()
        logger.info("Call ended")

    async def renegotiate(self) -> None:
        """offer/answer를 다시 수행합니다 (사용자 재시도).

        Raises:
            ProtocolViolation: 연결 중이거나 통화 중이 아닌 경우
        """
        if self.state not in (CallState.CONNECTING, CallState.IN_CALL) or self._inbox is None:
            raise ProtocolViolation(f"Cannot renegotiate in state '{self.state.value}'")
        self._inbox.put_nowait(_RENEGOTIATE)

    async def wait_closed(self) -> None:
        """현재 통화가 끝날 때까지 기다립니다."""
        if self._ended is not None:
            await self._ended.wait()

    async def settle(self) -> None:
        """현재까지 큐에 쌓인 이벤트가 모두 처리될 때까지 기다립니다."""
        inbox = self._inbox
        if inbox is not None:
            await inbox.join()

    # ------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------

    async def dispatch(self, envelope: Envelope) -> None:
        """수신 Envelope 하나를 종류에 따라 처리합니다.

        - peer_joined → start_as_initiator
        - offer / answer / candidate → 협상 상태 머신
        - peer_left → "peer departed" 알림 후 hang-up
        - error → 서버 메시지 알림 후 hang-up
        """
        negotiation = self._negotiation
        if negotiation is None:
            logger.debug(f"No active call, ignoring '{envelope.type.value}'")
            return

        kind = envelope.type
        logger.info(f"Received message: {kind.value}")

        if kind == EnvelopeKind.PEER_JOINED:
            await self._run_step(negotiation, negotiation.start_as_initiator)
        elif kind == EnvelopeKind.OFFER:
            await self._run_step(negotiation, negotiation.handle_remote_offer, envelope, "sdp")
        elif kind == EnvelopeKind.ANSWER:
            await self._run_step(negotiation, negotiation.handle_remote_answer, envelope, "sdp")
        elif kind == EnvelopeKind.CANDIDATE:
            await self._run_step(negotiation, negotiation.handle_remote_candidate, envelope, "candidate")
        elif kind == EnvelopeKind.PEER_LEFT:
            await self._remote_hang_up("peer_left", PEER_LEFT_MESSAGE)
        elif kind == EnvelopeKind.ERROR:
            await self._remote_hang_up("error", envelope.get("message") or DEFAULT_ERROR_MESSAGE)
        else:
            logger.warning(f"Unexpected message from server: {kind.value}")

    async def _run_step(self, negotiation: NegotiationStateMachine, operation, envelope: Optional[Envelope] = None, field: Optional[str] = None) -> None:
        """협상 단계 하나를 실행하고 로컬 장애를 처리합니다."""
        try:
            if envelope is None:
                await operation()
            else:
                await operation(envelope.require(field))
        except ProtocolViolation as e:
            logger.warning(f"⚠️ Protocol violation ignored: {e}")
        except NegotiationError as e:
            if negotiation is not self._negotiation:
                return
            logger.error(f"❌ Negotiation failed: {e}")
            self._notify(Notice("negotiation_failed", str(e), e))
        self._sync_call_state()

    async def _remote_hang_up(self, reason: str, message: str) -> None:
        signal = RemoteSignaled(reason, message)
        logger.info(f"Remote signaled hang-up ({reason}): {message}")
        self._notify(Notice(reason, message, signal))
        await self.hang_up()

    async def _pump(self, inbox: asyncio.Queue) -> None:
        """이벤트 큐를 하나씩 끝까지 처리합니다."""
        while True:
            item = await inbox.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, EngineEvent):
                    await self._handle_engine_event(item)
                elif item is _RENEGOTIATE:
                    negotiation = self._negotiation
                    if negotiation is not None:
                        await self._run_step(negotiation, negotiation.start_as_initiator)
                else:
                    await self.dispatch(item)
            except Exception as e:
                logger.error(f"❌ Error while processing call event: {e}", exc_info=True)
            finally:
                inbox.task_done()

            if self._inbox is not inbox:
                _drain(inbox)
                return

    async def _handle_engine_event(self, event: EngineEvent) -> None:
        negotiation = self._negotiation
        if negotiation is None:
            return
        await negotiation.handle_engine_event(event)
        self._sync_call_state()

    def _enqueue(self, item) -> None:
        if self._inbox is None:
            logger.debug("No active call, dropping event")
            return
        self._inbox.put_nowait(item)

    def _on_connection_state(self, connection_state: str) -> None:
        if connection_state == "connected":
            logger.info("✅ Peer connection established")
        elif connection_state == "failed":
            self._notify(Notice("connection_failed", "Peer connection failed"))

    def _on_signaling_closed(self) -> None:
        if self.state in (CallState.IDLE, CallState.ENDING):
            return
        logger.warning("⚠️ Signaling connection lost")
        self._notify(Notice("signaling_lost", "Signaling server connection lost"))

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    async def _release_all(self) -> None:
        """로컬 미디어 → 피어 연결 → 시그널링 채널 → 룸 ID 순서로 해제합니다."""
        if self.local_media is not None:
            self.local_media.stop()

        negotiation, self._negotiation = self._negotiation, None
        if negotiation is not None:
            await negotiation.close()

        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

        self.room_id = None
        self.local_media = None
        self.media.clear()

    def _sync_call_state(self) -> None:
        negotiation = self._negotiation
        if negotiation is None:
            return
        if negotiation.state == NegotiationState.STABLE and self.state == CallState.CONNECTING:
            self._set_state(CallState.IN_CALL)
        elif negotiation.state == NegotiationState.IDLE and self.state == CallState.IN_CALL:
            self._set_state(CallState.CONNECTING)

    def _set_state(self, new_state: CallState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        logger.info(f"Call state: {old_state.value} → {new_state.value}")
        for callback in list(self._state_observers):
            try:
                callback(old_state, new_state)
            except Exception as e:
                logger.error(f"❌ State observer failed: {e}", exc_info=True)

    def _notify(self, notice: Notice) -> None:
        for callback in list(self._notice_observers):
            try:
                callback(notice)
            except Exception as e:
                logger.error(f"❌ Notice observer failed: {e}", exc_info=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
