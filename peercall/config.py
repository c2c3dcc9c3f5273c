"""peercall 설정.

시그널링 서버, STUN/TURN 서버, 로컬 미디어 소스 등 환경변수 기반 설정.
프로젝트 루트의 ``config/.env`` 파일이 있으면 import 시점에 로드합니다.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
# 환경변수 로드
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# 시그널링 서버 설정
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 서버 연결 설정."""

    # 룸 단위 메시지 릴레이 서버 (WebSocket)
    SIGNALING_URL: str = os.getenv(
        "SIGNALING_URL", "wss://webrtc-backend-demo.onrender.com"
    )

    # 연결 수립 타임아웃 (초)
    OPEN_TIMEOUT: float = float(os.getenv("SIGNALING_OPEN_TIMEOUT", "10"))

    # WebSocket keepalive
    PING_INTERVAL: float = float(os.getenv("SIGNALING_PING_INTERVAL", "20"))
    PING_TIMEOUT: float = float(os.getenv("SIGNALING_PING_TIMEOUT", "10"))


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def ice_servers(self) -> List[RTCIceServer]:
        """RTCPeerConnection 생성 시 사용할 ICE 서버 목록을 반환합니다.

        커스텀 STUN 서버가 있으면 먼저 넣고, 공개 STUN 서버를 백업으로 추가합니다.
        TURN 서버는 자격 증명이 모두 설정된 경우에만 포함됩니다.
        """
        servers: List[RTCIceServer] = []

        if self.STUN_SERVER_URL:
            servers.append(RTCIceServer(urls=[self.STUN_SERVER_URL]))

        servers.append(RTCIceServer(urls=list(self.DEFAULT_STUN_SERVERS)))

        if self.has_turn_server:
            servers.append(RTCIceServer(
                urls=[self.TURN_SERVER_URL],
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL
            ))

        return servers


def build_rtc_configuration(ice_servers: Optional[List[RTCIceServer]] = None) -> RTCConfiguration:
    """ICE 서버 목록으로 RTCConfiguration을 생성합니다.

    Args:
        ice_servers: 사용할 ICE 서버 목록. None이면 ``ice_config`` 기본값 사용

    Raises:
        ValueError: ICE 서버가 하나도 없는 경우 (NAT 너머 연결 불가)
    """
    if ice_servers is None:
        ice_servers = ice_config.ice_servers()
    if not ice_servers:
        raise ValueError("At least one STUN/TURN server is required")
    return RTCConfiguration(iceServers=list(ice_servers))


# ============================================================
# 로컬 미디어 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """로컬 미디어 캡처 설정.

    LOCAL_MEDIA_SOURCE는 MediaPlayer에 그대로 전달됩니다.
    (카메라 장치 경로, 파일 경로, 스트림 URL)
    """

    LOCAL_MEDIA_SOURCE: str = os.getenv("LOCAL_MEDIA_SOURCE", "/dev/video0")

    # ffmpeg 입력 포맷 (v4l2, avfoundation, dshow ...). 파일이면 비워둠
    LOCAL_MEDIA_FORMAT: Optional[str] = os.getenv("LOCAL_MEDIA_FORMAT", "v4l2") or None

    LOCAL_VIDEO_SIZE: str = os.getenv("LOCAL_VIDEO_SIZE", "640x480")
    LOCAL_FRAMERATE: str = os.getenv("LOCAL_FRAMERATE", "30")

    def player_options(self) -> dict:
        """MediaPlayer options 인자."""
        return {
            "video_size": self.LOCAL_VIDEO_SIZE,
            "framerate": self.LOCAL_FRAMERATE,
        }


# ============================================================
# 싱글톤 인스턴스
# ============================================================

signaling_config = SignalingConfig()
ice_config = ICEServerConfig()
media_config = MediaConfig()


logger.debug(f"[Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.debug(f"[Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
