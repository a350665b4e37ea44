"""
Tests for the monitoring scheduler.

Analysis and speech are replaced by fakes whose completion the test controls,
so every interleaving below is deterministic.
"""

import asyncio
from collections import deque

import pytest

from supersafe.event_store import EventStore
from supersafe.exceptions import FrameSourceError, TransportError
from supersafe.frame_source import FrameSource
from supersafe.models import EncodedImage, MonitoringState, ThreatAnalysis, ThreatLevel, utc_timestamp
from supersafe.scheduler import (
    ANALYSIS_FAILED_MESSAGE,
    CAMERA_NOT_READY_MESSAGE,
    CAPTURE_FAILED_MESSAGE,
    MonitoringScheduler,
)

pytestmark = pytest.mark.asyncio

HIGH = ThreatAnalysis(threat_level="high", summary="Person forcing the door", confidence=0.92,
                      suggested_action="Call the police")
LOW = ThreatAnalysis(threat_level="low", summary="Unknown car parked", confidence=0.5)
NONE = ThreatAnalysis(threat_level="none", summary="All clear", confidence=0.9)

# Long enough that the timer never fires on its own during a test
NEVER = 3600


class FakeSource(FrameSource):

    def __init__(self, ready=True, fail=False):
        self.ready = ready
        self.fail = fail
        self.captures = 0

    @property
    def is_ready(self):
        return self.ready

    async def capture(self):
        self.captures += 1
        if self.fail:
            raise FrameSourceError("no frame")
        return EncodedImage(b"frame-%d" % self.captures)


class GatedAnalysisClient:
    """Each analyze() call waits until the test resolves it."""

    def __init__(self):
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._pending = deque()

    async def analyze(self, image):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        future = asyncio.get_running_loop().create_future()
        self._pending.append(future)
        try:
            return await future
        finally:
            self.in_flight -= 1

    @property
    def waiting(self):
        return len(self._pending)

    def resolve(self, result):
        future = self._pending.popleft()
        if isinstance(result, BaseException):
            future.set_exception(result)
        else:
            future.set_result(result)


class SlowAnalysisClient:
    """Takes a fixed time per call, for runs driven by the real timer."""

    def __init__(self, latency):
        self.latency = latency
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def analyze(self, image):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
            return NONE
        finally:
            self.in_flight -= 1


class FakeSpeech:

    def __init__(self, hold=False, error=None):
        self.announced = []
        self.error = error
        self.gate = asyncio.Event()
        if not hold:
            self.gate.set()

    async def announce(self, analysis):
        self.announced.append(analysis)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return True


async def settle():
    """Let every ready task run to its next suspension point."""
    for _ in range(10):
        await asyncio.sleep(0)


class Recorder:

    def __init__(self):
        self.completed = []
        self.errors = []
        self.states = []
        self.detached_errors = []

    def hooks(self):
        return dict(
            on_analysis_complete=self.completed.append,
            on_transient_error=self.errors.append,
            on_monitoring_state_changed=self.states.append,
            on_detached_error=self.detached_errors.append,
        )


@pytest.fixture
def recorder():
    return Recorder()


def make_scheduler(recorder, source=None, client=None, speech=None, interval=NEVER, **kwargs):
    return MonitoringScheduler(
        source or FakeSource(),
        client or GatedAnalysisClient(),
        EventStore(50),
        speech_client=speech,
        interval=interval,
        speech_min_level=ThreatLevel.MEDIUM,
        **recorder.hooks(),
        **kwargs,
    )


class TestStartStop:

    async def test_start_refused_while_camera_not_ready(self, recorder):
        scheduler = make_scheduler(recorder, source=FakeSource(ready=False))
        assert scheduler.state is MonitoringState.CAMERA_NOT_READY

        assert scheduler.start() is False
        assert recorder.errors == [CAMERA_NOT_READY_MESSAGE]
        assert scheduler.state is MonitoringState.CAMERA_NOT_READY
        assert scheduler.analysis_client.calls == 0

    async def test_camera_ready_moves_to_idle(self, recorder):
        scheduler = make_scheduler(recorder, source=FakeSource(ready=False))
        scheduler.set_camera_ready(True)
        assert scheduler.state is MonitoringState.IDLE
        assert recorder.states == [MonitoringState.IDLE]

    async def test_start_dispatches_immediately(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        assert scheduler.start() is True
        await settle()

        assert client.calls == 1
        assert scheduler.state is MonitoringState.MONITORING_ANALYZING
        await scheduler.aclose()

    async def test_state_sequence(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        client.resolve(NONE)
        await settle()
        scheduler.stop()

        assert recorder.states == [
            MonitoringState.MONITORING_IDLE,
            MonitoringState.MONITORING_ANALYZING,
            MonitoringState.MONITORING_IDLE,
            MonitoringState.IDLE,
        ]

    async def test_stop_when_idle_is_noop(self, recorder):
        scheduler = make_scheduler(recorder)
        scheduler.stop()
        assert recorder.states == []
        assert scheduler.state is MonitoringState.IDLE


class TestCadence:

    async def test_tick_skipped_while_analysis_outstanding(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)
        scheduler.start()
        await settle()

        assert scheduler.tick() is False
        assert scheduler.tick() is False
        await settle()
        assert client.calls == 1
        assert scheduler.stats.ticks_skipped == 2

        client.resolve(NONE)
        await settle()
        assert scheduler.state is MonitoringState.MONITORING_IDLE

        assert scheduler.tick() is True
        await settle()
        assert client.calls == 2
        await scheduler.aclose()

    async def test_at_most_one_in_flight_with_real_timer(self, recorder):
        client = SlowAnalysisClient(latency=0.03)
        scheduler = make_scheduler(recorder, client=client, interval=0.01)

        scheduler.start()
        await asyncio.sleep(0.25)
        await scheduler.aclose()

        assert client.max_in_flight == 1
        assert client.calls >= 2
        assert scheduler.stats.ticks_skipped > 0

    async def test_tick_ignored_when_not_monitoring(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)
        assert scheduler.tick() is False
        await settle()
        assert client.calls == 0


class TestResults:

    async def test_high_threat_recorded_and_spoken(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech()
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        client.resolve(HIGH)
        await settle()
        await scheduler.wait_detached(timeout=1)

        (event,) = scheduler.event_store.list()
        assert event.threat_level is ThreatLevel.HIGH
        assert event.confidence == pytest.approx(0.92)
        assert event.summary == "Person forcing the door"
        assert speech.announced == [HIGH]
        assert recorder.completed == [event]
        await scheduler.aclose()

    async def test_none_is_not_recorded(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech()
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        client.resolve(NONE)
        await settle()

        assert len(scheduler.event_store) == 0
        assert speech.announced == []
        assert recorder.completed == [None]
        await scheduler.aclose()

    async def test_low_recorded_but_not_spoken(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech()
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        client.resolve(LOW)
        await settle()

        assert len(scheduler.event_store) == 1
        assert speech.announced == []
        await scheduler.aclose()

    async def test_timestamp_assigned_at_completion(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        dispatched_at = utc_timestamp()
        await asyncio.sleep(0.02)
        client.resolve(HIGH)
        await settle()

        assert scheduler.event_store.latest().timestamp > dispatched_at
        await scheduler.aclose()

    async def test_newest_first_across_cycles(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)
        scheduler.start()

        for analysis in (LOW, HIGH):
            await settle()
            client.resolve(analysis)
            await settle()
            scheduler.tick()
        await settle()

        levels = [e.threat_level for e in scheduler.event_store]
        assert levels == [ThreatLevel.HIGH, ThreatLevel.LOW]
        await scheduler.aclose()


class TestCancellation:

    async def test_stop_discards_late_result(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech()
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        scheduler.stop()
        assert scheduler.state is MonitoringState.IDLE

        client.resolve(HIGH)
        await settle()

        assert len(scheduler.event_store) == 0
        assert speech.announced == []
        assert recorder.completed == []
        assert scheduler.stats.cycles_discarded == 1
        assert scheduler.state is MonitoringState.IDLE

    async def test_stop_discards_late_error(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        scheduler.stop()
        client.resolve(TransportError("boom", status=500))
        await settle()

        assert recorder.errors == []

    async def test_session_end_discards(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        scheduler.session_ended()
        client.resolve(HIGH)
        await settle()

        assert len(scheduler.event_store) == 0
        assert scheduler.state is MonitoringState.IDLE

    async def test_camera_loss_halts_monitoring(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        scheduler.set_camera_ready(False)
        assert scheduler.state is MonitoringState.CAMERA_NOT_READY
        assert not scheduler.is_monitoring

        client.resolve(HIGH)
        await settle()
        assert len(scheduler.event_store) == 0

    async def test_restart_before_stale_cycle_returns(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        scheduler.stop()
        scheduler.start()
        await settle()

        # the stale cycle still occupies the single in-flight slot
        assert client.calls == 1
        assert scheduler.state is MonitoringState.MONITORING_IDLE

        client.resolve(HIGH)
        await settle()
        assert len(scheduler.event_store) == 0

        assert scheduler.tick() is True
        await settle()
        client.resolve(HIGH)
        await settle()
        assert len(scheduler.event_store) == 1
        await scheduler.aclose()


class TestErrors:

    async def test_transport_error_keeps_monitoring(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        client.resolve(TransportError("Analysis endpoint returned an error", status=500, body="x"))
        await settle()

        assert recorder.errors == [ANALYSIS_FAILED_MESSAGE]
        assert scheduler.state is MonitoringState.MONITORING_IDLE
        assert len(scheduler.event_store) == 0
        assert scheduler.stats.transport_failures == 1

        assert scheduler.tick() is True
        await scheduler.aclose()

    async def test_capture_failure_reported(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, source=FakeSource(fail=True), client=client)

        scheduler.start()
        await settle()

        assert recorder.errors == [CAPTURE_FAILED_MESSAGE]
        assert client.calls == 0
        assert scheduler.is_monitoring
        await scheduler.aclose()

    async def test_unexpected_error_reported(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        client.resolve(RuntimeError("bug"))
        await settle()

        assert recorder.errors == [ANALYSIS_FAILED_MESSAGE]
        assert scheduler.is_monitoring
        await scheduler.aclose()

    async def test_failing_callback_does_not_break_cycle(self):
        def explode(event):
            raise RuntimeError("ui bug")

        client = GatedAnalysisClient()
        scheduler = MonitoringScheduler(FakeSource(), client, EventStore(), interval=NEVER,
                                        on_analysis_complete=explode)
        scheduler.start()
        await settle()
        client.resolve(HIGH)
        await settle()

        assert len(scheduler.event_store) == 1
        assert scheduler.state is MonitoringState.MONITORING_IDLE
        await scheduler.aclose()


class TestDetachedSpeech:

    async def test_slow_speech_does_not_block_next_cycle(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech(hold=True)
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        client.resolve(HIGH)
        await settle()
        assert scheduler.detached_count == 1

        assert scheduler.tick() is True
        await settle()
        assert client.calls == 2

        speech.gate.set()
        await scheduler.wait_detached(timeout=1)
        await settle()
        assert scheduler.detached_count == 0
        await scheduler.aclose()

    async def test_speech_failure_goes_to_detached_channel(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech(error=RuntimeError("tts down"))
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        client.resolve(HIGH)
        await settle()
        await scheduler.wait_detached(timeout=1)
        await settle()

        assert len(recorder.detached_errors) == 1
        assert str(recorder.detached_errors[0]) == "tts down"
        assert recorder.errors == []
        assert scheduler.stats.detached_failures == 1
        assert scheduler.is_monitoring
        await scheduler.aclose()

    async def test_aclose_cancels_hung_speech(self, recorder):
        client = GatedAnalysisClient()
        speech = FakeSpeech(hold=True)
        scheduler = make_scheduler(recorder, client=client, speech=speech)

        scheduler.start()
        await settle()
        client.resolve(HIGH)
        await settle()

        await scheduler.aclose(timeout=0.01)
        assert scheduler.detached_count == 0
        assert recorder.detached_errors == []


class TestShutdown:

    async def test_aclose_cancels_outstanding_cycle(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        await scheduler.aclose()

        assert client.in_flight == 0
        assert scheduler.state is MonitoringState.IDLE
        assert recorder.completed == []

    async def test_invalid_interval(self, recorder):
        with pytest.raises(ValueError):
            make_scheduler(recorder, interval=0)

    async def test_wait_idle(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        waiter = asyncio.ensure_future(scheduler.wait_idle())
        await settle()
        assert not waiter.done()

        client.resolve(LOW)
        await asyncio.wait_for(waiter, timeout=1)
        assert len(scheduler.event_store) == 1
        await scheduler.aclose()

    async def test_stats(self, recorder):
        client = GatedAnalysisClient()
        scheduler = make_scheduler(recorder, client=client)

        scheduler.start()
        await settle()
        scheduler.tick()
        client.resolve(HIGH)
        await settle()
        await scheduler.aclose()

        stats = scheduler.stats.to_dict()
        assert stats["cycles_dispatched"] == 1
        assert stats["ticks_skipped"] == 1
        assert stats["events_recorded"] == 1
        assert stats["started_at"] is not None
