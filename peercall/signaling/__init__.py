"""시그널링 모듈.

룸 단위 시그널링 서버와의 메시지 교환을 담당합니다.

Classes:
    SignalingChannel: 재연결 없는 WebSocket 메시지 채널
    Envelope: 시그널링 메시지 모델
    EnvelopeKind: 메시지 종류
"""

from .envelope import Envelope, EnvelopeKind, EnvelopePayload, decode_envelope
from .channel import SignalingChannel

__all__ = [
    "SignalingChannel",
    "Envelope",
    "EnvelopeKind",
    "EnvelopePayload",
    "decode_envelope",
]
