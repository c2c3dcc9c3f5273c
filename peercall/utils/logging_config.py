"""
===========================================
로깅 설정 모듈
===========================================

이 모듈은 peercall 클라이언트의 로깅 설정을 관리합니다.
- 콘솔 출력 포맷
- 파일 출력 설정
- 로그 레벨 관리

사용 예시:
    from peercall.utils.logging_config import setup_logging

    # 애플리케이션 시작 시 호출
    setup_logging("INFO")
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """
    로깅 설정 초기화

    Args:
        level: 로그 레벨 (기본: LOG_LEVEL 환경변수 또는 INFO)
        log_file: 로그 파일 경로 (기본: LOG_FILE 환경변수, 없으면 파일 출력 안 함)

    Note:
        이 함수는 애플리케이션 시작 시 한 번만 호출해야 합니다.
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    log_file = log_file or os.getenv("LOG_FILE")

    # 로그 레벨 변환
    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(fmt=DEFAULT_FORMAT)

    # 루트 로거 설정
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 기존 핸들러 제거
    root_logger.handlers.clear()

    # -----------------------------------------
    # 콘솔 핸들러
    # -----------------------------------------
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # -----------------------------------------
    # 파일 핸들러 (설정된 경우)
    # -----------------------------------------
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # 5MB마다 새 파일, 최대 3개 백업 유지
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # -----------------------------------------
    # 외부 라이브러리 로그 레벨 조정
    # -----------------------------------------
    # ICE/RTP 패킷 단위 로그 억제
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("aiortc").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("libav").setLevel(logging.ERROR)

    logging.info(f"로깅 설정 완료: level={level}, file={log_file or 'None'}")
