"""미디어 바인딩 모듈.

로컬/원격 미디어 핸들을 피어 연결 및 출력 sink와 연결합니다.
협상 로직은 없으며 이벤트에 반응만 합니다.

Classes:
    LocalMedia: 로컬 캡처 트랙 묶음 (CallSession 소유)
    RemoteMedia: 원격 피어로부터 받은 트랙 묶음 (MediaBinding 소유)
    MediaBinding: 로컬/원격 스트림 관찰자 관리
    RecorderSink: 원격 스트림을 MediaRecorder/MediaBlackhole로 렌더링
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av.error import FFmpegError

from ..config import MediaConfig, media_config
from ..shared.errors import MediaAccessError

logger = logging.getLogger(__name__)


@dataclass
class LocalMedia:
    """로컬 미디어 핸들.

    Attributes:
        audio: 마이크 트랙
        video: 카메라 트랙
        player: 트랙을 생성한 MediaPlayer (없을 수 있음)
    """

    audio: Optional[MediaStreamTrack] = None
    video: Optional[MediaStreamTrack] = None
    player: Optional[Any] = None
    stopped: bool = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        """모든 로컬 트랙을 중지합니다. 여러 번 호출해도 안전합니다."""
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()
        logger.info(f"Local media stopped ({len(self.tracks)} tracks)")


@dataclass
class RemoteMedia:
    """원격 피어의 미디어 스트림. 종류(kind)별로 트랙 하나씩 보관합니다."""

    tracks: Dict[str, MediaStreamTrack] = field(default_factory=dict)

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("audio")

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("video")


async def open_local_media(
    config: MediaConfig = media_config,
    source: Optional[str] = None,
    format: Optional[str] = None,
) -> LocalMedia:
    """로컬 미디어(카메라/마이크 또는 파일)를 엽니다.

    Args:
        config: 기본 소스/포맷/옵션 설정
        source: MediaPlayer 소스 (None이면 LOCAL_MEDIA_SOURCE)
        format: ffmpeg 입력 포맷 (None이면 LOCAL_MEDIA_FORMAT)

    Returns:
        LocalMedia: 열린 로컬 미디어

    Raises:
        MediaAccessError: 장치를 열 수 없거나 오디오/비디오가 모두 없는 경우
    """
    source = source or config.LOCAL_MEDIA_SOURCE
    # "" means "let ffmpeg guess" (plain files)
    format = (config.LOCAL_MEDIA_FORMAT if format is None else format) or None

    try:
        player = MediaPlayer(source, format=format, options=config.player_options())
    except (OSError, FFmpegError) as e:
        logger.error(f"❌ Cannot open local media '{source}': {e}")
        raise MediaAccessError(f"Cannot open local media '{source}': {e}") from e

    if player.audio is None and player.video is None:
        raise MediaAccessError(f"No audio or video device found in '{source}'")

    logger.info(
        f"🎥 Local media opened: source={source}, "
        f"audio={player.audio is not None}, video={player.video is not None}"
    )
    return LocalMedia(audio=player.audio, video=player.video, player=player)


class MediaBinding:
    """로컬/원격 미디어 스트림을 출력 계층에 재게시합니다.

    관찰자는 현재 값으로 즉시 한 번 호출되고, 이후 변경마다 다시 호출됩니다.
    clear() 시에는 None으로 호출됩니다.

    Examples:
        >>> binding = MediaBinding()
        >>> binding.on_remote(lambda remote: print(remote))
        >>> binding.add_remote_track(track)
    """

    def __init__(self):
        self.local: Optional[LocalMedia] = None
        self.remote: Optional[RemoteMedia] = None
        self._local_observers: List[Callable[[Optional[LocalMedia]], None]] = []
        self._remote_observers: List[Callable[[Optional[RemoteMedia]], None]] = []

    def on_local(self, callback: Callable[[Optional[LocalMedia]], None]) -> Callable[[], None]:
        """로컬 스트림 관찰자를 등록합니다. 해제 함수를 반환합니다."""
        self._local_observers.append(callback)
        if self.local is not None:
            self._notify([callback], self.local)
        return lambda: self._local_observers.remove(callback)

    def on_remote(self, callback: Callable[[Optional[RemoteMedia]], None]) -> Callable[[], None]:
        """원격 스트림 관찰자를 등록합니다. 해제 함수를 반환합니다."""
        self._remote_observers.append(callback)
        if self.remote is not None:
            self._notify([callback], self.remote)
        return lambda: self._remote_observers.remove(callback)

    def publish_local(self, media: LocalMedia) -> None:
        self.local = media
        self._notify(self._local_observers, media)

    def add_remote_track(self, track: MediaStreamTrack) -> None:
        """원격 트랙을 세션의 단일 원격 스트림에 추가합니다."""
        if self.remote is None:
            self.remote = RemoteMedia()
            logger.info("Remote stream available")

        if self.remote.tracks.get(track.kind) is track:
            return
        self.remote.tracks[track.kind] = track
        logger.info(f"Remote {track.kind} track bound")

        @track.on("ended")
        async def on_ended():
            logger.info(f"Remote {track.kind} track ended")

        self._notify(self._remote_observers, self.remote)

    def clear(self) -> None:
        """로컬/원격 스트림 참조를 해제합니다."""
        had_media = self.local is not None or self.remote is not None
        self.local = None
        self.remote = None
        if had_media:
            self._notify(self._local_observers, None)
            self._notify(self._remote_observers, None)

    def _notify(self, observers: list, value) -> None:
        for callback in list(observers):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"❌ Media observer failed: {e}", exc_info=True)


def _default_recorder(path: Optional[str]):
    return MediaRecorder(path) if path else MediaBlackhole()


class RecorderSink:
    """원격 스트림을 MediaRecorder(파일) 또는 MediaBlackhole로 소비하는 출력 sink.

    트랙은 도착할 때마다 추가되고, start()는 협상이 끝난 뒤 한 번 호출합니다.
    녹화 중 renegotiation으로 새 트랙이 들어오면 현재 녹화를 닫고
    다음 세그먼트 파일(remote-1.mp4, remote-2.mp4 ...)로 다시 시작합니다.

    Args:
        path: 녹화 파일 경로. None이면 MediaBlackhole 사용
        recorder_factory: path를 받아 recorder를 만드는 함수 (테스트에서 교체)
    """

    def __init__(
        self,
        path: Optional[str] = None,
        recorder_factory: Callable[[Optional[str]], Any] = _default_recorder,
    ):
        self.path = path
        self.segment = 0
        self._factory = recorder_factory
        self.recorder = recorder_factory(path)
        self.started = False
        self._track_ids: set = set()
        self._remote: Optional[RemoteMedia] = None
        self._restart_task: Optional[asyncio.Task] = None

    def __call__(self, remote: Optional[RemoteMedia]) -> None:
        if remote is None:
            return
        self._remote = remote
        if not self._fresh_tracks():
            return

        if self.started:
            if self._restart_task is None or self._restart_task.done():
                self._restart_task = asyncio.ensure_future(self._restart())
            return

        for track in self._fresh_tracks():
            self._track_ids.add(track.id)
            self.recorder.addTrack(track)

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        await self.recorder.start()
        logger.info(f"Recorder started with {len(self._track_ids)} track(s)")

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        if self._restart_task is not None and not self._restart_task.done():
            await self._restart_task
        await self.recorder.stop()
        logger.info("Recorder stopped")

    def segment_path(self, segment: int) -> Optional[str]:
        """세그먼트 번호에 해당하는 파일 경로. 0번은 path 그대로입니다."""
        if not self.path or segment == 0:
            return self.path
        path = Path(self.path)
        return str(path.with_name(f"{path.stem}-{segment}{path.suffix}"))

    def _fresh_tracks(self) -> List[MediaStreamTrack]:
        if self._remote is None:
            return []
        return [track for track in self._remote.tracks.values() if track.id not in self._track_ids]

    async def _restart(self) -> None:
        # tracks of one connection arrive one event at a time, so loop until caught up
        while self.started and self._fresh_tracks():
            await self.recorder.stop()
            self.segment += 1
            self.recorder = self._factory(self.segment_path(self.segment))
            self._track_ids = set()
            for track in self._remote.tracks.values():
                self._track_ids.add(track.id)
                self.recorder.addTrack(track)
            await self.recorder.start()
            logger.info(f"Recorder restarted on segment {self.segment} with {len(self._track_ids)} track(s)")
