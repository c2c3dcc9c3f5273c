"""미디어 바인딩 / 로컬 미디어 / recorder sink 테스트."""

import pytest

from peercall.config import MediaConfig
from peercall.shared.errors import MediaAccessError
from peercall.webrtc import media as media_module
from peercall.webrtc import LocalMedia, MediaBinding, RecorderSink, RemoteMedia, open_local_media

from fakes import FakeTrack, wait_until


class FakePlayer:
    def __init__(self, source, format=None, options=None):
        self.source = source
        self.format = format
        self.options = options
        self.audio = FakeTrack("audio")
        self.video = FakeTrack("video")


class SilentPlayer(FakePlayer):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.audio = None
        self.video = None


class BrokenPlayer:
    def __init__(self, *args, **kwargs):
        raise OSError("No such device")


class FakeRecorder:
    def __init__(self):
        self.tracks = []
        self.started = 0
        self.stopped = 0

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        self.started += 1

    async def stop(self):
        self.stopped += 1


# ------------------------------------------------------------
# open_local_media
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_local_media(monkeypatch):
    monkeypatch.setattr(media_module, "MediaPlayer", FakePlayer)

    local = await open_local_media(MediaConfig(), source="sample.mp4", format="")

    assert local.player.source == "sample.mp4"
    assert local.player.format is None
    assert local.player.options == MediaConfig().player_options()
    assert [t.kind for t in local.tracks] == ["audio", "video"]


@pytest.mark.asyncio
async def test_open_local_media_device_error(monkeypatch):
    monkeypatch.setattr(media_module, "MediaPlayer", BrokenPlayer)

    with pytest.raises(MediaAccessError):
        await open_local_media(MediaConfig(), source="/dev/video9")


@pytest.mark.asyncio
async def test_open_local_media_without_tracks(monkeypatch):
    monkeypatch.setattr(media_module, "MediaPlayer", SilentPlayer)

    with pytest.raises(MediaAccessError):
        await open_local_media(MediaConfig(), source="empty.mp4", format="")


# ------------------------------------------------------------
# LocalMedia
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_local_media_stop_is_idempotent():
    local = LocalMedia(audio=FakeTrack("audio"), video=FakeTrack("video"))

    local.stop()
    local.stop()

    assert local.stopped
    assert all(track.readyState == "ended" for track in local.tracks)


# ------------------------------------------------------------
# MediaBinding
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_remote_tracks_form_single_stream():
    binding = MediaBinding()
    seen = []
    binding.on_remote(seen.append)

    audio, video = FakeTrack("audio"), FakeTrack("video")
    binding.add_remote_track(audio)
    binding.add_remote_track(video)
    binding.add_remote_track(video)

    assert binding.remote.audio is audio
    assert binding.remote.video is video
    assert len(seen) == 2
    assert seen[0] is seen[1]


@pytest.mark.asyncio
async def test_late_observer_receives_current_streams():
    binding = MediaBinding()
    local = LocalMedia(audio=FakeTrack("audio"))
    binding.publish_local(local)
    binding.add_remote_track(FakeTrack("video"))

    locals_seen, remotes_seen = [], []
    binding.on_local(locals_seen.append)
    binding.on_remote(remotes_seen.append)

    assert locals_seen == [local]
    assert isinstance(remotes_seen[0], RemoteMedia)


@pytest.mark.asyncio
async def test_clear_notifies_none():
    binding = MediaBinding()
    locals_seen, remotes_seen = [], []
    binding.on_local(locals_seen.append)
    binding.on_remote(remotes_seen.append)

    binding.publish_local(LocalMedia(video=FakeTrack("video")))
    binding.add_remote_track(FakeTrack("audio"))
    binding.clear()
    binding.clear()

    assert binding.local is None and binding.remote is None
    assert locals_seen[-1] is None
    assert remotes_seen[-1] is None
    assert len(remotes_seen) == 2


@pytest.mark.asyncio
async def test_failing_observer_does_not_block_others():
    binding = MediaBinding()
    seen = []

    def broken(_remote):
        raise RuntimeError("renderer crashed")

    binding.on_remote(broken)
    binding.on_remote(seen.append)
    binding.add_remote_track(FakeTrack("audio"))

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_unsubscribe():
    binding = MediaBinding()
    seen = []
    unsubscribe = binding.on_remote(seen.append)
    unsubscribe()

    binding.add_remote_track(FakeTrack("audio"))
    assert seen == []


# ------------------------------------------------------------
# RecorderSink
# ------------------------------------------------------------

class RecorderFactory:
    def __init__(self):
        self.created = []

    def __call__(self, path):
        recorder = FakeRecorder()
        recorder.path = path
        self.created.append(recorder)
        return recorder


@pytest.mark.asyncio
async def test_recorder_sink_adds_each_track_once():
    factory = RecorderFactory()
    sink = RecorderSink(recorder_factory=factory)
    binding = MediaBinding()
    binding.on_remote(sink)

    audio, video = FakeTrack("audio"), FakeTrack("video")
    binding.add_remote_track(audio)
    binding.add_remote_track(video)
    binding.clear()

    assert factory.created[0].tracks == [audio, video]


@pytest.mark.asyncio
async def test_recorder_sink_start_stop_idempotent():
    factory = RecorderFactory()
    sink = RecorderSink(recorder_factory=factory)
    sink(RemoteMedia(tracks={"audio": FakeTrack("audio")}))

    await sink.stop()
    await sink.start()
    await sink.start()
    await sink.stop()
    await sink.stop()

    recorder = factory.created[0]
    assert recorder.started == 1
    assert recorder.stopped == 1
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_recorder_sink_restarts_on_renegotiated_tracks():
    factory = RecorderFactory()
    sink = RecorderSink("remote.mp4", recorder_factory=factory)
    binding = MediaBinding()
    binding.on_remote(sink)

    old_audio, old_video = FakeTrack("audio"), FakeTrack("video")
    binding.add_remote_track(old_audio)
    binding.add_remote_track(old_video)
    await sink.start()

    # a renegotiated connection delivers new tracks one at a time
    new_audio, new_video = FakeTrack("audio"), FakeTrack("video")
    binding.add_remote_track(new_audio)
    binding.add_remote_track(new_video)
    await wait_until(lambda: new_video in factory.created[-1].tracks and factory.created[-1].started)

    first, latest = factory.created[0], factory.created[-1]
    assert first.path == "remote.mp4"
    assert first.stopped == 1
    assert latest.path.startswith("remote-") and latest.path.endswith(".mp4")
    assert new_audio in latest.tracks
    assert old_audio not in latest.tracks
    assert sink.segment == len(factory.created) - 1

    await sink.stop()
    assert latest.stopped == 1


def test_segment_paths():
    sink = RecorderSink("out/remote.mp4", recorder_factory=RecorderFactory())
    assert sink.segment_path(0) == "out/remote.mp4"
    assert sink.segment_path(2) == "out/remote-2.mp4"
    assert RecorderSink(recorder_factory=RecorderFactory()).segment_path(3) is None
