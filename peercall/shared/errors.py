"""통화 세션 예외 정의.

로컬 장애(잘못된 입력, 미디어 접근 실패, 시그널링 연결 실패, 협상 실패)는
호출자에게 전달되고 자동 재시도하지 않습니다. 원격에서 지시된 종료
(peer_left, 서버 error)는 RemoteSignaled로 표현되며 항상 hang-up으로 이어집니다.

Classes:
    CallError: 모든 통화 예외의 기반 클래스
    InvalidInput: 잘못된 룸 ID
    CallInProgress: 이미 진행 중인 통화가 있음
    MediaAccessError: 카메라/마이크 사용 불가 또는 거부
    SignalingConnectionError: 시그널링 서버 연결 실패
    NegotiationError: SDP 생성/적용 실패
    ProtocolViolation: 순서에 맞지 않거나 손상된 시그널링 메시지
    RemoteSignaled: 상대방 퇴장 또는 서버 에러 통보
"""


class CallError(Exception):
    """통화 관련 예외의 기반 클래스."""


class InvalidInput(CallError, ValueError):
    """룸 ID가 비어 있거나 잘못된 경우."""


class CallInProgress(CallError):
    """이미 활성화된 통화가 있는 상태에서 join을 시도한 경우."""


class MediaAccessError(CallError):
    """로컬 미디어(카메라/마이크)를 열 수 없는 경우.

    사용자가 접근을 거부했거나 장치가 없는 경우 발생합니다.
    """


class SignalingConnectionError(CallError, ConnectionError):
    """시그널링 전송 계층을 연결할 수 없는 경우."""


class NegotiationError(CallError):
    """세션 디스크립션 생성 또는 적용에 실패한 경우.

    현재 피어 연결은 폐기되며 호출자는 다시 시도할 수 있습니다.
    """


class ProtocolViolation(CallError):
    """프로토콜 위반 (대기 중인 offer 없이 answer 수신, 손상된 메시지 등).

    로그만 남기고 무시되며 세션을 종료시키지 않습니다.
    """


class RemoteSignaled(CallError):
    """원격 측에서 종료를 지시한 경우 (peer_left, 서버 error).

    로컬 장애가 아니라 hang-up 지시로 취급됩니다.
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message
