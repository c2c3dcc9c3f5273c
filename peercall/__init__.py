"""peercall package.

룸 ID로 상대방을 찾아 1:1 WebRTC 미디어 연결을 수립하는 클라이언트입니다.

Modules:
    signaling: 시그널링 서버 메시지 채널 및 envelope
    webrtc: offer/answer/candidate 협상 상태 머신, 미디어 바인딩
    call: join/hang-up 통화 세션
    shared: 공용 예외
"""

from .shared import (
    CallError,
    InvalidInput,
    CallInProgress,
    MediaAccessError,
    SignalingConnectionError,
    NegotiationError,
    ProtocolViolation,
    RemoteSignaled,
)
from .signaling import SignalingChannel, Envelope, EnvelopeKind
from .webrtc import (
    NegotiationStateMachine,
    NegotiationState,
    MediaBinding,
    LocalMedia,
    RemoteMedia,
    open_local_media,
)
from .call import CallSession, CallState, Notice

__version__ = "0.1.0"

__all__ = [
    # Call
    "CallSession",
    "CallState",
    "Notice",
    # Signaling
    "SignalingChannel",
    "Envelope",
    "EnvelopeKind",
    # WebRTC
    "NegotiationStateMachine",
    "NegotiationState",
    "MediaBinding",
    "LocalMedia",
    "RemoteMedia",
    "open_local_media",
    # Errors
    "CallError",
    "InvalidInput",
    "CallInProgress",
    "MediaAccessError",
    "SignalingConnectionError",
    "NegotiationError",
    "ProtocolViolation",
    "RemoteSignaled",
]
