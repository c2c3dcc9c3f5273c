"""통화 세션 모듈.

Classes:
    CallSession: join/hang-up 오케스트레이터
    CallState: 통화 상태
    Notice: 호출자 알림
"""

from .session import CallSession, CallState, Notice

__all__ = [
    "CallSession",
    "CallState",
    "Notice",
]
