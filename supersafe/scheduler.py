"""
Monitoring Scheduler

Drives the capture cadence and owns the monitoring state machine:

    CAMERA_NOT_READY ──ready──▶ IDLE ──start──▶ MONITORING_IDLE ◀──▶ MONITORING_ANALYZING
                                 ▲                        │ stop / session end
                                 └────────────────────────┘

Rules:
- A cycle runs immediately on start, then on every timer tick.
- At most one analysis is outstanding. A tick that finds one still running
  is skipped, not queued.
- Stopping marks the outstanding cycle cancelled; its result is dropped when
  it arrives and never reaches the event store or the speech client.
- Speech runs as a detached task so a slow synthesis never delays the next
  capture. Failures of detached tasks go to their own error channel.

Everything runs on one asyncio loop, so state is mutated without locks; each
completion re-checks that its cycle is still wanted before applying.

Usage:
    scheduler = MonitoringScheduler(source, analysis_client, EventStore(),
                                    speech_client=speech, interval=5)
    scheduler.set_camera_ready(True)
    scheduler.start()
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .analysis_client import AnalysisClient
from .config import config
from .event_store import EventStore
from .exceptions import FrameSourceError, TransportError
from .frame_source import FrameSource
from .models import MonitoringState, ThreatAnalysis, ThreatEvent, ThreatLevel
from .speech_client import SpeechClient

logger = logging.getLogger(__name__)

CAMERA_NOT_READY_MESSAGE = "Camera is not ready yet. Check permissions and try again."
ANALYSIS_FAILED_MESSAGE = "Unable to analyze frame. Check your API key and network connection."
CAPTURE_FAILED_MESSAGE = "Unable to capture a frame from the camera."


@dataclass
class MonitorConfig:
    """Monitoring configuration."""
    interval: float = 5.0
    event_capacity: int = 50
    speech_min_level: ThreatLevel = ThreatLevel.MEDIUM

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        return cls(
            interval=config.get_float("SS_CAPTURE_INTERVAL", 5.0),
            event_capacity=config.get_int("SS_EVENT_CAPACITY", 50),
            speech_min_level=ThreatLevel.coerce(config.get("SS_SPEECH_MIN_LEVEL", "medium")),
        )


@dataclass
class MonitorStats:
    """Counters for one scheduler lifetime."""
    started_at: Optional[datetime] = None
    ticks: int = 0
    cycles_dispatched: int = 0
    ticks_skipped: int = 0
    cycles_discarded: int = 0
    transport_failures: int = 0
    frame_failures: int = 0
    events_recorded: int = 0
    speech_requests: int = 0
    detached_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        return data


@dataclass(eq=False)
class _Cycle:
    number: int
    cancelled: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class MonitoringScheduler:
    """Capture scheduler with at-most-one analysis in flight."""

    def __init__(
        self,
        frame_source: FrameSource,
        analysis_client: AnalysisClient,
        event_store: Optional[EventStore] = None,
        speech_client: Optional[SpeechClient] = None,
        interval: Optional[float] = None,
        speech_min_level: Optional[ThreatLevel] = None,
        on_analysis_complete: Optional[Callable[[Optional[ThreatEvent]], None]] = None,
        on_transient_error: Optional[Callable[[str], None]] = None,
        on_monitoring_state_changed: Optional[Callable[[MonitoringState], None]] = None,
        on_detached_error: Optional[Callable[[BaseException], None]] = None,
    ):
        defaults = MonitorConfig.from_env()
        self.frame_source = frame_source
        self.analysis_client = analysis_client
        self.event_store = event_store if event_store is not None else EventStore(defaults.event_capacity)
        self.speech_client = speech_client
        self.interval = interval if interval is not None else defaults.interval
        self.speech_min_level = ThreatLevel.coerce(speech_min_level or defaults.speech_min_level)
        if self.interval <= 0:
            raise ValueError(f"interval must be positive, got {self.interval}")

        self.on_analysis_complete = on_analysis_complete
        self.on_transient_error = on_transient_error
        self.on_monitoring_state_changed = on_monitoring_state_changed
        self.on_detached_error = on_detached_error

        self.stats = MonitorStats()

        self._camera_ready = frame_source.is_ready
        self._monitoring = False
        # Cycle whose result is still wanted
        self._current: Optional[_Cycle] = None
        # Cycle whose analysis has not returned yet, cancelled or not
        self._outstanding: Optional[_Cycle] = None
        self._timer: Optional[asyncio.Task] = None
        self._detached: Set[asyncio.Task] = set()
        self._last_state = self.state

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> MonitoringState:
        if not self._camera_ready:
            return MonitoringState.CAMERA_NOT_READY
        if not self._monitoring:
            return MonitoringState.IDLE
        if self._current is not None:
            return MonitoringState.MONITORING_ANALYZING
        return MonitoringState.MONITORING_IDLE

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    @property
    def detached_count(self) -> int:
        return len(self._detached)

    def _emit_state(self) -> None:
        state = self.state
        if state == self._last_state:
            return
        logger.debug(f"State {self._last_state.value} -> {state.value}")
        self._last_state = state
        self._notify(self.on_monitoring_state_changed, state)

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Callback {getattr(callback, '__name__', callback)!r} failed")

    def _report_error(self, message: str) -> None:
        logger.warning(message)
        self._notify(self.on_transient_error, message)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def set_camera_ready(self, ready: bool = True) -> None:
        """Frame source readiness changed (external event)."""
        if ready == self._camera_ready:
            return
        if not ready and self._monitoring:
            self._halt("camera lost")
        self._camera_ready = ready
        self._emit_state()

    def start(self) -> bool:
        """Begin monitoring. Must be called from a running event loop.

        Returns False (and reports a transient error) while the camera is
        not ready.
        """
        if not self._camera_ready:
            self._report_error(CAMERA_NOT_READY_MESSAGE)
            return False
        if self._monitoring:
            return True

        self._monitoring = True
        if self.stats.started_at is None:
            self.stats.started_at = datetime.now()
        logger.info(f"Monitoring started (interval {self.interval}s)")
        self._emit_state()

        self.tick()
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())
        return True

    def stop(self) -> None:
        """Stop monitoring; any outstanding cycle is discarded on arrival."""
        if not self._monitoring:
            return
        self._halt("stopped")
        self._emit_state()

    def session_ended(self) -> None:
        """The underlying capture session was torn down."""
        if not self._monitoring:
            return
        self._halt("session ended")
        self._emit_state()

    def _halt(self, reason: str) -> None:
        self._monitoring = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._current is not None:
            self._current.cancelled = True
            logger.info(f"Cycle {self._current.number} cancelled ({reason})")
            self._current = None
        logger.info(f"Monitoring {reason}")

    # ------------------------------------------------------------------
    # Cadence
    # ------------------------------------------------------------------
    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def tick(self) -> bool:
        """Timer decision: dispatch a cycle unless one is still outstanding.

        Returns True when a new cycle was dispatched.
        """
        if not self._monitoring:
            return False

        self.stats.ticks += 1
        if self._outstanding is not None:
            self.stats.ticks_skipped += 1
            logger.debug(f"Tick skipped, cycle {self._outstanding.number} still outstanding")
            return False

        self.stats.cycles_dispatched += 1
        cycle = _Cycle(number=self.stats.cycles_dispatched)
        self._current = cycle
        self._outstanding = cycle
        cycle.task = asyncio.get_running_loop().create_task(self._run_cycle(cycle))
        logger.debug(f"Cycle {cycle.number} dispatched")
        self._emit_state()
        return True

    async def _run_cycle(self, cycle: _Cycle) -> None:
        try:
            try:
                image = await self.frame_source.capture()
                analysis = await self.analysis_client.analyze(image)
            finally:
                if self._outstanding is cycle:
                    self._outstanding = None
        except FrameSourceError as e:
            if self._settle(cycle):
                self.stats.frame_failures += 1
                logger.debug(f"Frame capture failed: {e}")
                self._report_error(CAPTURE_FAILED_MESSAGE)
            return
        except TransportError as e:
            if self._settle(cycle):
                self.stats.transport_failures += 1
                logger.debug(f"Analysis transport failure: {e}")
                self._report_error(ANALYSIS_FAILED_MESSAGE)
            return
        except Exception:
            if self._settle(cycle):
                logger.exception(f"Cycle {cycle.number} failed unexpectedly")
                self._report_error(ANALYSIS_FAILED_MESSAGE)
            return

        if self._settle(cycle):
            self._apply(analysis)

    def _settle(self, cycle: _Cycle) -> bool:
        """Close out a finished cycle. False when its result must be dropped."""
        if cycle.cancelled or not self._monitoring or self._current is not cycle:
            self.stats.cycles_discarded += 1
            logger.debug(f"Cycle {cycle.number} result discarded")
            return False
        self._current = None
        self._emit_state()
        return True

    def _apply(self, analysis: ThreatAnalysis) -> None:
        event = None
        if analysis.is_qualifying:
            event = ThreatEvent.from_analysis(analysis)
            self.event_store.append(event)
            self.stats.events_recorded += 1
            logger.info(
                f"Threat {event.threat_level.value} ({event.confidence:.0%}): {event.summary}"
            )
            if self.speech_client is not None and analysis.should_announce(self.speech_min_level):
                self.stats.speech_requests += 1
                self.spawn_detached(self.speech_client.announce(analysis), name=f"speech-{event.id}")
        self._notify(self.on_analysis_complete, event)

    # ------------------------------------------------------------------
    # Detached tasks
    # ------------------------------------------------------------------
    def spawn_detached(self, coro: Awaitable, name: str = "detached") -> asyncio.Task:
        """Run a coroutine nobody awaits; failures go to on_detached_error."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._detached.add(task)
        task.add_done_callback(self._detached_done)
        return task

    def _detached_done(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.stats.detached_failures += 1
            logger.error(f"Detached task {task.get_name()} failed: {error!r}")
            self._notify(self.on_detached_error, error)

    # ------------------------------------------------------------------
    # Waiting / shutdown
    # ------------------------------------------------------------------
    async def wait_idle(self) -> None:
        """Wait for the outstanding cycle (if any) to finish."""
        cycle = self._outstanding
        if cycle is not None and cycle.task is not None:
            await asyncio.wait({cycle.task})

    async def wait_detached(self, timeout: Optional[float] = None) -> None:
        """Wait for detached tasks spawned so far."""
        if self._detached:
            await asyncio.wait(set(self._detached), timeout=timeout)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Stop, give detached work a chance to finish, cancel the rest."""
        self.stop()

        cycle = self._outstanding
        if cycle is not None and cycle.task is not None and not cycle.task.done():
            cycle.task.cancel()
            await asyncio.wait({cycle.task})

        await self.wait_detached(timeout=timeout)
        pending = set(self._detached)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
