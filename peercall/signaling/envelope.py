"""시그널링 메시지 envelope 모델.

시그널링 서버와 주고받는 JSON 메시지 형식::

    {"type": "offer", "payload": {"id": "room1", "sdp": "v=0..."}}

Client → Server: join_room{id}, offer{id,sdp}, answer{id,sdp}, candidate{id,candidate}
Server → Client: peer_joined{id}, offer, answer, candidate, peer_left, error{message}
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..shared.errors import ProtocolViolation

logger = logging.getLogger(__name__)


class EnvelopeKind(str, Enum):
    """시그널링 메시지 종류 (wire 값)."""

    JOIN_ROOM = "join_room"
    PEER_JOINED = "peer_joined"
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    PEER_LEFT = "peer_left"
    ERROR = "error"


KNOWN_KINDS = {kind.value for kind in EnvelopeKind}


class EnvelopePayload(BaseModel):
    """Envelope payload. 모든 필드는 선택 사항입니다."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(default=None, description="룸 ID")
    sdp: Optional[str] = Field(default=None, description="SDP 텍스트")
    candidate: Optional[Dict[str, Any]] = Field(default=None, description="ICE candidate (RTCIceCandidateInit)")
    message: Optional[str] = Field(default=None, description="사람이 읽을 수 있는 메시지")

    @field_validator("sdp", mode="before")
    @classmethod
    def _unwrap_description(cls, value: Union[str, Dict[str, Any], None]):
        # Browsers may forward pc.localDescription as-is: {"type": ..., "sdp": ...}
        if isinstance(value, dict):
            return value.get("sdp")
        return value


class Envelope(BaseModel):
    """시그널링 메시지 하나."""

    model_config = ConfigDict(extra="ignore")

    type: EnvelopeKind
    payload: Optional[EnvelopePayload] = None

    @classmethod
    def make(cls, kind: EnvelopeKind, **payload: Any) -> "Envelope":
        """payload 필드를 키워드 인자로 받아 Envelope를 생성합니다."""
        if not payload:
            return cls(type=kind)
        return cls(type=kind, payload=EnvelopePayload(**payload))

    @classmethod
    def join_room(cls, room_id: str) -> "Envelope":
        return cls.make(EnvelopeKind.JOIN_ROOM, id=room_id)

    @classmethod
    def offer(cls, room_id: str, sdp: str) -> "Envelope":
        return cls.make(EnvelopeKind.OFFER, id=room_id, sdp=sdp)

    @classmethod
    def answer(cls, room_id: str, sdp: str) -> "Envelope":
        return cls.make(EnvelopeKind.ANSWER, id=room_id, sdp=sdp)

    @classmethod
    def candidate(cls, room_id: str, candidate: Dict[str, Any]) -> "Envelope":
        return cls.make(EnvelopeKind.CANDIDATE, id=room_id, candidate=candidate)

    def get(self, field: str) -> Any:
        """payload 필드 값을 반환합니다. payload가 없으면 None."""
        if self.payload is None:
            return None
        return getattr(self.payload, field)

    def require(self, field: str) -> Any:
        """필수 payload 필드 값을 반환합니다.

        Raises:
            ProtocolViolation: 필드가 없거나 비어 있는 경우
        """
        value = self.get(field)
        if value is None or value == "":
            raise ProtocolViolation(f"'{self.type.value}' message without '{field}'")
        return value

    def encode(self) -> str:
        """wire 형식(JSON 텍스트)으로 직렬화합니다."""
        return self.model_dump_json(exclude_none=True)


def decode_envelope(frame: Union[str, bytes]) -> Optional[Envelope]:
    """수신 프레임 하나를 Envelope로 디코딩합니다.

    Args:
        frame: WebSocket 텍스트 또는 바이너리 프레임

    Returns:
        Optional[Envelope]: 디코딩된 Envelope. 알 수 없는 type이면 None

    Raises:
        ProtocolViolation: JSON이 아니거나 형식이 맞지 않는 경우
    """
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolViolation(f"Frame is not valid UTF-8: {e}") from e

    try:
        data = json.loads(frame)
    except json.JSONDecodeError as e:
        raise ProtocolViolation(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolViolation(f"Frame is not a JSON object: {type(data).__name__}")

    kind = data.get("type")
    if not isinstance(kind, str):
        raise ProtocolViolation("Frame has no 'type'")

    if kind not in KNOWN_KINDS:
        logger.debug(f"Ignoring unknown message type: {kind}")
        return None

    try:
        return Envelope.model_validate(data)
    except ValidationError as e:
        raise ProtocolViolation(f"Malformed '{kind}' message: {e.error_count()} error(s)") from e
