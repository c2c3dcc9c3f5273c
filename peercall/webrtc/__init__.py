"""WebRTC 모듈.

피어 연결 협상, 로컬/원격 미디어 바인딩 기능을 제공합니다.

Classes:
    NegotiationStateMachine: offer/answer/candidate 협상 상태 머신
    NegotiationState: 협상 상태
    EngineEvent: RTCPeerConnection 콜백 이벤트
    MediaBinding: 로컬/원격 스트림 관찰자 관리
    LocalMedia: 로컬 캡처 트랙
    RemoteMedia: 원격 트랙 묶음
    RecorderSink: 원격 스트림 출력 sink
"""

from .media import LocalMedia, RemoteMedia, MediaBinding, RecorderSink, open_local_media
from .negotiation import (
    NegotiationStateMachine,
    NegotiationState,
    EngineEvent,
    parse_candidate,
    serialize_candidate,
)

__all__ = [
    # Negotiation
    "NegotiationStateMachine",
    "NegotiationState",
    "EngineEvent",
    "parse_candidate",
    "serialize_candidate",
    # Media
    "LocalMedia",
    "RemoteMedia",
    "MediaBinding",
    "RecorderSink",
    "open_local_media",
]
