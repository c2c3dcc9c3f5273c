import pytest
from aiortc import RTCConfiguration

from peercall.webrtc import LocalMedia, MediaBinding, NegotiationStateMachine

from fakes import FakePeerConnectionFactory, FakeTrack


class MachineHarness:
    """NegotiationStateMachine과 그 주변 가짜 객체 묶음."""

    def __init__(self, queue_engine_events: bool = True):
        self.factory = FakePeerConnectionFactory()
        self.sent = []
        self.events = []
        self.connection_states = []
        self.binding = MediaBinding()
        self.local = LocalMedia(audio=FakeTrack("audio"), video=FakeTrack("video"))
        self.machine = NegotiationStateMachine(
            "room1",
            self.local,
            self.sent.append,
            self.binding,
            rtc_configuration=RTCConfiguration(),
            peer_connection_factory=self.factory,
            on_engine_event=self.events.append if queue_engine_events else None,
            on_connection_state=self.connection_states.append,
        )

    @property
    def sent_kinds(self):
        return [envelope.type.value for envelope in self.sent]


@pytest.fixture
def harness():
    return MachineHarness()


@pytest.fixture
def direct_harness():
    """엔진 이벤트를 큐 없이 바로 처리하는 harness."""
    return MachineHarness(queue_engine_events=False)
