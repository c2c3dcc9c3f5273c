"""WebRTC 협상 상태 머신 모듈.

통화 하나에 대한 RTCPeerConnection을 소유하고 offer/answer/candidate 교환
순서를 관리합니다.

주요 기능:
    - offer 생성 (peer_joined 수신 측 = initiator)
    - 원격 offer 처리 및 answer 생성 (renegotiation 포함)
    - 원격 answer 적용 (Offering 상태에서만)
    - 원격 ICE candidate 적용 또는 원격 디스크립션 설정 전까지 큐잉
    - 로컬 ICE candidate 즉시 송신
    - 원격 트랙을 MediaBinding으로 전달

WebRTC Lifecycle:
    1. _create_handle(): 기존 연결을 먼저 닫고 새 RTCPeerConnection 생성
    2. 로컬 트랙 추가
    3. offer/answer 교환
    4. 큐잉된 candidate flush
    5. close(): 연결 종료 및 정리

State Machine:
    IDLE → OFFERING | ANSWERING → STABLE → (RENEGOTIATING → STABLE)* → CLOSED

Note:
    - 피어 연결은 한 번에 하나만 살아 있음 (교체 시 기존 연결을 먼저 닫음)
    - await 이후에는 항상 핸들이 여전히 살아 있는지 확인하고, 아니면 결과를 버림
    - 역할은 메시지 인과관계로만 결정됨 (peer_joined 수신 → offer, offer 수신 → answer)
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..config import build_rtc_configuration
from ..shared.errors import NegotiationError, ProtocolViolation
from ..signaling.envelope import Envelope
from .media import LocalMedia, MediaBinding

logger = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    """협상 상태."""

    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    STABLE = "stable"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


@dataclass
class EngineEvent:
    """RTCPeerConnection 콜백 이벤트.

    Attributes:
        handle: 이벤트를 발생시킨 RTCPeerConnection
        kind: "icecandidate" | "track" | "connectionstatechange"
        data: candidate, track 또는 연결 상태 문자열
    """

    handle: Any
    kind: str
    data: Any = None


class _StaleHandle(Exception):
    """await 도중 핸들이 교체되거나 닫힌 경우."""


def parse_candidate(descriptor: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """wire 형식의 candidate를 RTCIceCandidate로 변환합니다.

    Args:
        descriptor: {"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}

    Returns:
        Optional[RTCIceCandidate]: 변환된 candidate. 빈 candidate(end-of-candidates)면 None

    Raises:
        ValueError: candidate 문자열을 해석할 수 없는 경우
    """
    inner = descriptor.get("candidate", "")
    if isinstance(inner, dict):
        candidate_str = inner.get("candidate", "")
        sdp_mid = inner.get("sdpMid")
        sdp_mline_index = inner.get("sdpMLineIndex")
    else:
        candidate_str = inner
        sdp_mid = descriptor.get("sdpMid")
        sdp_mline_index = descriptor.get("sdpMLineIndex")

    if not isinstance(candidate_str, str):
        raise ValueError(f"candidate must be a string, got {type(candidate_str).__name__}")

    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]

    if not candidate_str.strip():
        return None

    try:
        ice_candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"Unparsable candidate '{candidate_str}': {e}") from e

    ice_candidate.sdpMid = sdp_mid
    ice_candidate.sdpMLineIndex = sdp_mline_index
    return ice_candidate


def serialize_candidate(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """RTCIceCandidate를 wire 형식(RTCIceCandidateInit)으로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class NegotiationStateMachine:
    """통화 하나의 offer/answer/candidate 협상을 관리하는 상태 머신.

    RTCPeerConnection은 이 클래스만 소유하고 변경합니다. 새 협상 사이클마다
    기존 연결을 닫은 뒤 새 연결을 생성합니다.

    Attributes:
        room_id (str): 시그널링 룸 ID (세션 동안 불변)
        state (NegotiationState): 현재 협상 상태
        pending_candidates (List[dict]): 원격 디스크립션 설정 전에 도착한 candidate

    Examples:
        >>> machine = NegotiationStateMachine("room1", local_media, channel.send, binding)
        >>> await machine.start_as_initiator()
        >>> machine.state
        <NegotiationState.OFFERING: 'offering'>
        >>> await machine.handle_remote_answer(answer_sdp)
        >>> machine.state
        <NegotiationState.STABLE: 'stable'>
    """

    def __init__(
        self,
        room_id: str,
        local_media: Optional[LocalMedia],
        send: Callable[[Envelope], None],
        media: MediaBinding,
        rtc_configuration=None,
        peer_connection_factory: Callable[..., Any] = RTCPeerConnection,
        on_engine_event: Optional[Callable[[EngineEvent], None]] = None,
        on_connection_state: Optional[Callable[[str], None]] = None,
    ):
        """NegotiationStateMachine 초기화.

        Args:
            room_id: 시그널링 룸 ID
            local_media: 피어 연결에 붙일 로컬 미디어 (읽기 전용)
            send: 송신 Envelope 콜백 (SignalingChannel.send)
            media: 원격 트랙을 받을 MediaBinding
            rtc_configuration: RTCConfiguration. None이면 설정의 ICE 서버 사용
            peer_connection_factory: RTCPeerConnection 생성 함수 (테스트에서 교체)
            on_engine_event: 엔진 콜백을 이벤트 큐로 넘길 함수.
                None이면 현재 이벤트 루프에서 바로 처리
            on_connection_state: 연결 상태 변경 알림 콜백
        """
        self.room_id = room_id
        self.local_media = local_media
        self._send = send
        self._media = media
        self._rtc_configuration = rtc_configuration or build_rtc_configuration()
        self._factory = peer_connection_factory
        self._on_engine_event = on_engine_event
        self._on_connection_state = on_connection_state

        self.state = NegotiationState.IDLE
        self.pending_candidates: List[Dict[str, Any]] = []
        self._pc = None

    @property
    def peer_connection(self):
        """현재 살아 있는 RTCPeerConnection (없으면 None)."""
        return self._pc

    # ------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------

    async def start_as_initiator(self) -> None:
        """새 연결을 만들고 offer를 생성해 송신합니다.

        peer_joined 수신 시 호출됩니다. STABLE 상태에서 호출하면
        initiator 측 renegotiation입니다.

        Raises:
            ProtocolViolation: 닫혔거나 answer 처리 중인 경우
            NegotiationError: 트랙 추가 또는 offer 생성/설정 실패
        """
        if self.state not in (NegotiationState.IDLE, NegotiationState.OFFERING, NegotiationState.STABLE):
            raise ProtocolViolation(f"Cannot start offer in state '{self.state.value}'")

        logger.info(f"▶ start_as_initiator: room={self.room_id}, from={self.state.value}")
        previous = self._pc
        if previous is not None and previous.localDescription is not None and self.pending_candidates:
            # queued candidates answer the offer being replaced
            logger.info(f"Discarding {len(self.pending_candidates)} candidate(s) of the superseded offer")
            self.pending_candidates = []
        self.state = NegotiationState.OFFERING
        pc = None
        try:
            pc = await self._create_handle()
            offer = await pc.createOffer()
            self._check_live(pc)
            await pc.setLocalDescription(offer)
            self._check_live(pc)
        except _StaleHandle:
            logger.info("Offer discarded, peer connection was replaced or closed")
            return
        except Exception as e:
            if self._superseded(pc):
                logger.info(f"Ignoring failure on replaced peer connection: {e}")
                return
            logger.error(f"❌ Error creating offer: {e}")
            await self._fail(pc)
            raise NegotiationError(f"Cannot create offer: {e}") from e

        self._send(Envelope.offer(self.room_id, pc.localDescription.sdp))
        logger.info("  ✅ Offer sent")

    async def handle_remote_offer(self, sdp: str) -> None:
        """원격 offer를 적용하고 answer를 생성해 송신합니다.

        IDLE 또는 STABLE(renegotiation) 상태에서만 유효합니다.
        원격 디스크립션 설정 직후 큐잉된 candidate를 적용합니다.

        Raises:
            ProtocolViolation: 그 외 상태에서 offer를 받은 경우
            NegotiationError: 디스크립션 적용 또는 answer 생성 실패
        """
        if self.state not in (NegotiationState.IDLE, NegotiationState.STABLE):
            raise ProtocolViolation(f"Unexpected offer in state '{self.state.value}'")

        renegotiating = self.state == NegotiationState.STABLE
        logger.info(f"▶ handle_remote_offer: room={self.room_id}, renegotiation={renegotiating}")
        self.state = NegotiationState.RENEGOTIATING if renegotiating else NegotiationState.ANSWERING
        pc = None
        try:
            pc = await self._create_handle()
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            self._check_live(pc)
            await self._flush_candidates(pc)
            answer = await pc.createAnswer()
            self._check_live(pc)
            await pc.setLocalDescription(answer)
            self._check_live(pc)
        except _StaleHandle:
            logger.info("Answer discarded, peer connection was replaced or closed")
            return
        except Exception as e:
            if self._superseded(pc):
                logger.info(f"Ignoring failure on replaced peer connection: {e}")
                return
            logger.error(f"❌ Error handling offer: {e}")
            await self._fail(pc)
            raise NegotiationError(f"Cannot answer offer: {e}") from e

        self._send(Envelope.answer(self.room_id, pc.localDescription.sdp))
        self.state = NegotiationState.STABLE
        logger.info("  ✅ Answer sent, negotiation stable")

    async def handle_remote_answer(self, sdp: str) -> None:
        """원격 answer를 적용합니다. OFFERING 상태에서만 유효합니다.

        Raises:
            ProtocolViolation: 대기 중인 offer가 없는 경우 (중복/지연 answer)
            NegotiationError: 디스크립션 적용 실패
        """
        if self.state != NegotiationState.OFFERING or self._pc is None:
            raise ProtocolViolation(f"Answer without pending offer (state '{self.state.value}')")

        logger.info(f"▶ handle_remote_answer: room={self.room_id}")
        pc = self._pc
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
            self._check_live(pc)
            await self._flush_candidates(pc)
        except _StaleHandle:
            logger.info("Answer result discarded, peer connection was replaced or closed")
            return
        except Exception as e:
            if self._superseded(pc):
                logger.info(f"Ignoring failure on replaced peer connection: {e}")
                return
            logger.error(f"❌ Error handling answer: {e}")
            await self._fail(pc)
            raise NegotiationError(f"Cannot apply answer: {e}") from e

        self.state = NegotiationState.STABLE
        logger.info("  ✅ Answer applied, negotiation stable")

    async def handle_remote_candidate(self, descriptor: Dict[str, Any]) -> None:
        """원격 ICE candidate를 적용하거나 큐잉합니다.

        원격 디스크립션이 아직 없으면 도착 순서대로 큐에 넣고,
        디스크립션 설정 직후 한 번만 적용합니다. 개별 candidate 실패는 세션을 중단하지 않습니다.

        Raises:
            ProtocolViolation: 상태 머신이 이미 닫힌 경우
        """
        if self.state == NegotiationState.CLOSED:
            raise ProtocolViolation("Candidate received after close")

        pc = self._pc
        if pc is None or pc.remoteDescription is None:
            self.pending_candidates.append(descriptor)
            logger.debug(f"Queued remote candidate ({len(self.pending_candidates)} pending)")
            return

        await self._apply_candidate(pc, descriptor)

    async def close(self) -> None:
        """피어 연결과 candidate 큐를 해제합니다. 여러 번 호출해도 안전합니다."""
        if self.state == NegotiationState.CLOSED:
            return
        self.state = NegotiationState.CLOSED
        self.pending_candidates = []
        await self._release_handle()
        logger.info(f"Negotiation closed for room {self.room_id}")

    # ------------------------------------------------------------
    # Connectivity engine callbacks
    # ------------------------------------------------------------

    async def handle_engine_event(self, event: EngineEvent) -> None:
        """RTCPeerConnection 콜백 이벤트를 처리합니다.

        이미 교체되었거나 닫힌 핸들의 이벤트는 무시합니다.
        """
        if event.handle is not self._pc or self._pc is None:
            logger.debug(f"Ignoring '{event.kind}' from stale peer connection")
            return

        if event.kind == "icecandidate":
            self.on_local_candidate(event.data)
        elif event.kind == "track":
            self.on_remote_track(event.data)
        elif event.kind == "connectionstatechange":
            await self._on_connection_state_change(event.data)
        else:
            logger.warning(f"Unknown engine event: {event.kind}")

    def on_local_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        """로컬에서 발견된 candidate를 즉시 송신합니다."""
        if candidate is None:
            return
        self._send(Envelope.candidate(self.room_id, serialize_candidate(candidate)))
        logger.debug(f"Local candidate sent: {candidate.type}")

    def on_remote_track(self, track) -> None:
        """원격 트랙을 MediaBinding으로 전달합니다."""
        logger.info(f"Received remote {track.kind} track")
        self._media.add_remote_track(track)

    async def _on_connection_state_change(self, connection_state: str) -> None:
        logger.info(f"Peer connection state: {connection_state}")
        if connection_state == "failed":
            logger.warning("⚠️ Peer connection failed, releasing it")
            self.pending_candidates = []
            await self._release_handle()
            self.state = NegotiationState.IDLE
        if self._on_connection_state:
            self._on_connection_state(connection_state)

    # ------------------------------------------------------------
    # Handle management
    # ------------------------------------------------------------

    async def _create_handle(self):
        """기존 연결을 닫은 뒤 새 RTCPeerConnection을 생성하고 로컬 트랙을 추가합니다."""
        await self._release_handle()
        if self.state == NegotiationState.CLOSED:
            raise _StaleHandle()

        pc = self._factory(configuration=self._rtc_configuration)
        self._pc = pc

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            self._post(EngineEvent(pc, "icecandidate", candidate))

        @pc.on("track")
        def on_track(track):
            self._post(EngineEvent(pc, "track", track))

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            self._post(EngineEvent(pc, "connectionstatechange", pc.connectionState))

        if self.local_media is not None:
            for track in self.local_media.tracks:
                pc.addTrack(track)
            logger.debug(f"Attached {len(self.local_media.tracks)} local track(s)")

        logger.info("  🔧 RTCPeerConnection created")
        return pc

    async def _release_handle(self) -> None:
        """현재 RTCPeerConnection을 닫습니다."""
        pc = self._pc
        if pc is None:
            return
        self._pc = None
        await pc.close()
        logger.info("  🔒 RTCPeerConnection released")

    async def _fail(self, pc) -> None:
        """실패한 사이클의 연결을 버리고 IDLE로 돌아갑니다."""
        # pc is None when creation itself failed; self._pc may hold the partial handle
        if pc is None or pc is self._pc:
            await self._release_handle()
        if self.state != NegotiationState.CLOSED:
            self.pending_candidates = []
            self.state = NegotiationState.IDLE

    def _check_live(self, pc) -> None:
        if pc is not self._pc:
            raise _StaleHandle()

    def _superseded(self, pc) -> bool:
        return pc is not None and pc is not self._pc

    def _post(self, event: EngineEvent) -> None:
        if self._on_engine_event is not None:
            self._on_engine_event(event)
        else:
            asyncio.ensure_future(self.handle_engine_event(event))

    async def _flush_candidates(self, pc) -> None:
        """원격 디스크립션 설정 직후 큐잉된 candidate를 도착 순서대로 적용합니다."""
        pending, self.pending_candidates = self.pending_candidates, []
        if pending:
            logger.info(f"  📦 Flushing {len(pending)} queued candidate(s)")
        for descriptor in pending:
            self._check_live(pc)
            await self._apply_candidate(pc, descriptor)
        self._check_live(pc)

    async def _apply_candidate(self, pc, descriptor: Dict[str, Any]) -> None:
        try:
            candidate = parse_candidate(descriptor)
        except (ValueError, AttributeError) as e:
            logger.warning(f"Dropping malformed remote candidate: {e}")
            return

        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            logger.error(f"Error adding received ice candidate: {e}")
            return
        logger.debug("Remote candidate applied")
