"""Test doubles for the connectivity engine, signaling transport and media capture."""

import asyncio
from collections import defaultdict
from typing import List, Optional

from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from peercall.shared.errors import SignalingConnectionError
from peercall.webrtc.media import LocalMedia

HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2122260223 192.168.1.2 54321 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}
SRFLX_CANDIDATE = {
    "candidate": "candidate:2 1 udp 1686052607 203.0.113.7 61000 typ srflx raddr 192.168.1.2 rport 54321",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}
REMOTE_OFFER_SDP = "v=0\r\no=- 1 2 IN IP4 127.0.0.1\r\ns=remote-offer\r\n"
REMOTE_ANSWER_SDP = "v=0\r\no=- 3 4 IN IP4 127.0.0.1\r\ns=remote-answer\r\n"


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


class FakePeerConnection:
    """Mimics the parts of aiortc.RTCPeerConnection the state machine uses."""

    _counter = 0

    def __init__(self, configuration=None, fail_on=(), gate: Optional[asyncio.Event] = None):
        FakePeerConnection._counter += 1
        self.number = FakePeerConnection._counter
        self.configuration = configuration
        self.fail_on = set(fail_on)
        self.gate = gate
        self.handlers = defaultdict(list)
        self.tracks: List[MediaStreamTrack] = []
        self.localDescription = None
        self.remoteDescription = None
        self.candidates = []
        self.connectionState = "new"
        self.closed = False

    def on(self, event, f=None):
        def decorator(func):
            self.handlers[event].append(func)
            return func
        return decorator(f) if f is not None else decorator

    def emit(self, event, *args):
        for handler in list(self.handlers[event]):
            handler(*args)

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _check(self, operation: str):
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} failed")

    def addTrack(self, track):
        self._check("addTrack")
        self.tracks.append(track)

    async def createOffer(self):
        if self.gate is not None:
            await self.gate.wait()
        self._check("createOffer")
        return RTCSessionDescription(sdp=f"offer-{self.number}", type="offer")

    async def createAnswer(self):
        self._check("createAnswer")
        assert self.remoteDescription is not None
        return RTCSessionDescription(sdp=f"answer-{self.number}", type="answer")

    async def setLocalDescription(self, description):
        self._check("setLocalDescription")
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self._check("setRemoteDescription")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self._check("addIceCandidate")
        if self.remoteDescription is None:
            raise RuntimeError("addIceCandidate called without remote description")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakePeerConnectionFactory:
    def __init__(self):
        self.created: List[FakePeerConnection] = []
        self.fail_on = set()
        self.gate: Optional[asyncio.Event] = None

    def __call__(self, configuration=None):
        pc = FakePeerConnection(configuration, fail_on=self.fail_on, gate=self.gate)
        self.created.append(pc)
        return pc

    @property
    def live(self) -> List[FakePeerConnection]:
        return [pc for pc in self.created if not pc.closed]

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeWebSocket:
    """websockets client connection stand-in driven by the test."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    def push(self, frame):
        self.incoming.put_nowait(frame)

    def drop(self):
        """Simulate the server closing the connection."""
        self.incoming.put_nowait(None)

    async def send(self, text: str):
        self.sent.append(text)

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


class FakeChannel:
    """SignalingChannel stand-in used by CallSession tests."""

    def __init__(self, on_message, on_close=None, fail_open: bool = False, hang_open: bool = False):
        self.on_message = on_message
        self.on_close = on_close
        self.fail_open = fail_open
        self.hang_open = hang_open
        self.endpoint = None
        self.opened = False
        self.closed = False
        self.sent = []

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self, endpoint=None):
        if self.fail_open:
            raise SignalingConnectionError("Cannot connect")
        if self.hang_open:
            await asyncio.Event().wait()
        self.endpoint = endpoint
        self.opened = True

    def send(self, envelope):
        if self.is_open:
            self.sent.append(envelope)

    async def close(self):
        self.closed = True

    def deliver(self, envelope):
        self.on_message(envelope)

    @property
    def sent_kinds(self) -> List[str]:
        return [envelope.type.value for envelope in self.sent]


class FakeChannelFactory:
    def __init__(self, fail_open: bool = False, hang_open: bool = False):
        self.fail_open = fail_open
        self.hang_open = hang_open
        self.channels: List[FakeChannel] = []

    def __call__(self, on_message, on_close=None):
        channel = FakeChannel(on_message, on_close, fail_open=self.fail_open, hang_open=self.hang_open)
        self.channels.append(channel)
        return channel

    @property
    def last(self) -> FakeChannel:
        return self.channels[-1]


class FakeMediaSource:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.opened: List[LocalMedia] = []

    async def __call__(self) -> LocalMedia:
        if self.error is not None:
            raise self.error
        media = LocalMedia(audio=FakeTrack("audio"), video=FakeTrack("video"))
        self.opened.append(media)
        return media


async def wait_until(predicate, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
