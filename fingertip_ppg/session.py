"""
Measurement session controller.

Drives one fixed-length measurement:

    IDLE → CALIBRATING (0 – 5 s) → MEASURING (5 – 15 s) → FINISHING → IDLE

Every tick the controller samples the frame, checks liveness and, for a
live fingertip, re-runs conditioning, peak detection, quality scoring,
rate filtering and SpO2 estimation over the accumulated channel buffers.
Non-live ticks withhold numeric updates but the session clock keeps
running.  Finish, cancel, acquisition failure and shutdown all go through
:meth:`SessionController._teardown`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, List, Optional, Protocol

import numpy as np

from fingertip_ppg.errors import AcquisitionError, InsufficientSignal
from fingertip_ppg.insights import (
    InsightsProvider,
    RuleBasedInsights,
    SessionInsights,
    gather_insights,
)
from fingertip_ppg.liveness import LivenessClassifier
from fingertip_ppg.metrics import HealthProfile, HeartRateZone, heart_rate_zone, rmssd
from fingertip_ppg.oxygen import SPO2_DEFAULT, OxygenEstimator
from fingertip_ppg.peak_detector import PeakDetector
from fingertip_ppg.quality import signal_quality
from fingertip_ppg.rate_estimator import RateEstimator, round_half_up
from fingertip_ppg.sampler import FrameSampler, Sample
from fingertip_ppg.signal_conditioner import Sensitivity, SignalConditioner

logger = logging.getLogger(__name__)

MIN_RATE_SAMPLES = 10
FALLBACK_HR_RANGE = (65, 85)      # [low, high)
FALLBACK_O2_RANGE = (96, 99)      # [low, high)
UNKNOWN_O2_READING = 95
AUTO_GENERATED_NOTE = "Auto-generated reading"
GUIDANCE_MESSAGE = (
    "Please place your finger directly on the camera lens for an accurate reading."
)


class SessionState(str, Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    MEASURING = "measuring"
    FINISHING = "finishing"


@dataclass
class SessionConfig:
    """
    Per-session settings.

    Parameters
    ----------
    sensitivity:
        Selects the smoothing window (low 7, medium 5, high 3 samples).
    fps:
        Tick rate; also the sampling rate assumed by the rate estimator.
    calibration_seconds, measurement_seconds:
        Both measured from session start; the session ends at
        ``measurement_seconds``.
    guidance_grace_seconds:
        Time after start before a missing finger triggers guidance.
    history_window:
        Most recent samples kept per channel.
    final_average_count:
        Accepted estimates averaged into the final heart rate.
    synthesize_on_failure:
        Report a synthesised plausible reading instead of raising
        :class:`InsufficientSignal` when the signal was never usable.
    seed:
        Seed for the synthesised-reading generator.
    channel_order:
        Pixel layout of the frames passed to :meth:`SessionController.tick`.
    profile:
        User profile used for the heart-rate zone and insights.
    """

    sensitivity: Sensitivity = Sensitivity.MEDIUM
    fps: float = 30.0
    calibration_seconds: float = 5.0
    measurement_seconds: float = 15.0
    guidance_grace_seconds: float = 3.0
    history_window: int = 450
    final_average_count: int = 5
    synthesize_on_failure: bool = True
    seed: Optional[int] = None
    channel_order: str = "bgr"
    profile: HealthProfile = field(default_factory=HealthProfile)

    def __post_init__(self) -> None:
        self.sensitivity = Sensitivity(self.sensitivity)
        if self.fps <= 0:
            raise ValueError("fps must be positive")
        if not 0 <= self.calibration_seconds <= self.measurement_seconds:
            raise ValueError(
                "calibration_seconds must lie between 0 and measurement_seconds"
            )
        if self.history_window < MIN_RATE_SAMPLES:
            raise ValueError(f"history_window must be >= {MIN_RATE_SAMPLES}")
        if self.final_average_count < 1:
            raise ValueError("final_average_count must be >= 1")


@dataclass(frozen=True)
class TickResult:
    heart_rate: Optional[int]
    oxygen_level: Optional[int]
    confidence_percent: float
    is_live: bool
    zone: Optional[HeartRateZone]
    state: SessionState
    elapsed: float


@dataclass(frozen=True)
class SessionResult:
    final_heart_rate: int
    final_oxygen_level: Optional[int]
    measurements: List[int]
    started_at: datetime
    ended_at: datetime
    synthesized: bool = False
    zone: Optional[HeartRateZone] = None
    hrv_rmssd: float = 0.0


@dataclass(frozen=True)
class SavedReading:
    heart_rate: int
    oxygen_level: int
    date: datetime
    note: str = ""


class FrameSource(Protocol):
    def read_frame(self) -> Optional[np.ndarray]:
        ...


@dataclass
class _Session:
    """Buffers and filter state of one measurement; owned by the controller."""

    generation: int
    started: float
    started_at: datetime
    rate: RateEstimator
    red: Deque[float]
    green: Deque[float]
    blue: Deque[float]
    measurements: List[int] = field(default_factory=list)
    heart_rate: Optional[int] = None
    oxygen_level: Optional[int] = None
    confidence_percent: float = 0.0
    guided: bool = False

    @classmethod
    def create(cls, config: SessionConfig, generation: int, now: float) -> "_Session":
        maxlen = config.history_window
        return cls(
            generation=generation,
            started=now,
            started_at=datetime.now(),
            rate=RateEstimator(fps=config.fps),
            red=deque(maxlen=maxlen),
            green=deque(maxlen=maxlen),
            blue=deque(maxlen=maxlen),
        )

    def append(self, sample: Sample) -> None:
        self.red.append(sample.red)
        self.green.append(sample.green)
        self.blue.append(sample.blue)

    def clear(self) -> None:
        self.red.clear()
        self.green.clear()
        self.blue.clear()
        self.measurements.clear()
        self.rate.reset()


class SessionController:
    """
    Orchestrates sampling, liveness and the signal pipeline over one
    measurement window.

    Parameters
    ----------
    config:
        Session settings; defaults to :class:`SessionConfig()`.
    insights_provider:
        Backend for :meth:`fetch_insights` (default :class:`RuleBasedInsights`).
    on_tick, on_complete, on_guidance, on_reading_saved:
        Optional callbacks for per-tick output, the final result, user
        guidance messages and saved readings.
    clock:
        Monotonic time source in seconds, used when ticks carry no ``now``.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        insights_provider: Optional[InsightsProvider] = None,
        on_tick: Optional[Callable[[TickResult], None]] = None,
        on_complete: Optional[Callable[[SessionResult], None]] = None,
        on_guidance: Optional[Callable[[str], None]] = None,
        on_reading_saved: Optional[Callable[[SavedReading], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SessionConfig()
        self.insights_provider = insights_provider or RuleBasedInsights()
        self.on_tick = on_tick
        self.on_complete = on_complete
        self.on_guidance = on_guidance
        self.on_reading_saved = on_reading_saved
        self._clock = clock

        self.sampler = FrameSampler(channel_order=self.config.channel_order)
        self.liveness = LivenessClassifier()
        self.conditioner = SignalConditioner.for_sensitivity(self.config.sensitivity)
        self.detector = PeakDetector()
        self.oxygen = OxygenEstimator(conditioner=self.conditioner)

        self.state = SessionState.IDLE
        self.readings: List[SavedReading] = []
        self.last_result: Optional[SessionResult] = None

        self._session: Optional[_Session] = None
        self._generation = 0
        self._result_generation = 0
        self._tick_lock = threading.Lock()
        self._running = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._rng = np.random.default_rng(self.config.seed)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def generation(self) -> int:
        """Counter incremented by every :meth:`start`."""
        return self._generation

    def start(self, now: Optional[float] = None) -> None:
        """Begin a new measurement, discarding any session in progress."""
        if self._session is not None:
            self._teardown("restarted")

        self._generation += 1
        now = self._clock() if now is None else now
        self._session = _Session.create(self.config, self._generation, now)
        self.state = SessionState.CALIBRATING
        logger.info(
            "Session %d started (calibration %.0fs, total %.0fs, sensitivity=%s)",
            self._generation,
            self.config.calibration_seconds,
            self.config.measurement_seconds,
            self.config.sensitivity.value,
        )

    def cancel(self, note: str = "") -> Optional[SavedReading]:
        """
        Stop the session early.

        The last computed heart rate, if any, is saved as a reading and
        returned.
        """
        session = self._session
        if session is None:
            return None

        saved = None
        if session.heart_rate:
            saved = self._save_reading(session.heart_rate, session.oxygen_level, note)
        self._teardown("cancelled")
        return saved

    def shutdown(self, wait: bool = False) -> None:
        """
        Tear down any session and stop the insights worker.

        With *wait* the call blocks until a running insights request and
        its callback have finished.
        """
        self._teardown("shutdown")
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)
            self._executor = None

    # ------------------------------------------------------------------
    # Per-tick input
    # ------------------------------------------------------------------

    def tick(self, frame: Optional[np.ndarray], now: Optional[float] = None) -> Optional[TickResult]:
        """
        Process one decoded camera frame.

        A *None* frame is an acquisition failure: the session is torn down
        and :class:`AcquisitionError` raised.  Returns *None* when no
        session is active or a previous tick is still being evaluated.
        """
        if frame is None:
            return self._acquisition_failed()
        return self._guarded(lambda: self.sampler.sample(frame), now)

    def tick_buffer(
        self,
        buffer,
        width: int,
        height: int,
        now: Optional[float] = None,
    ) -> Optional[TickResult]:
        """Process one flat pixel buffer with its declared dimensions."""
        if buffer is None:
            return self._acquisition_failed()
        return self._guarded(
            lambda: self.sampler.sample_buffer(buffer, width, height), now
        )

    def push_sample(self, sample: Sample, now: Optional[float] = None) -> Optional[TickResult]:
        """Process an already-sampled ROI average."""
        return self._guarded(lambda: sample, now)

    def run(
        self,
        source: FrameSource,
        on_frame: Optional[Callable[[np.ndarray, Optional[TickResult]], None]] = None,
    ) -> Optional[SessionResult]:
        """
        Start a session and tick it at ``config.fps`` until it ends.

        *on_frame* is called after every tick with the frame and its
        result (e.g. for a preview window); it may call :meth:`cancel`.
        Returns the result of this session, or *None* if it was cancelled.
        """
        period = 1.0 / self.config.fps
        self.start()
        generation = self._generation
        self._running = True
        next_tick = self._clock()
        try:
            while self._running and self._session is not None:
                frame = source.read_frame()
                result = self.tick(frame)
                if on_frame is not None:
                    on_frame(frame, result)

                next_tick += period
                delay = next_tick - self._clock()
                if delay > 0:
                    time.sleep(delay)
                else:
                    next_tick = self._clock()
        finally:
            self._running = False
            if self._session is not None and self._session.generation == generation:
                self._teardown("aborted")

        if self._result_generation == generation:
            return self.last_result
        return None

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def fetch_insights(
        self,
        callback: Optional[Callable[[SessionInsights], None]] = None,
    ) -> Optional[Future]:
        """
        Request insights for the last finished session without blocking.

        The work runs on a single background worker.  *callback* receives
        the :class:`SessionInsights` unless a new session has been started
        in the meantime, in which case the response is discarded.
        """
        result = self.last_result
        if result is None:
            logger.warning("No finished session to summarise.")
            return None

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="insights")

        generation = self._generation
        history = [reading.heart_rate for reading in self.readings]
        future = self._executor.submit(
            gather_insights,
            self.insights_provider,
            result.final_heart_rate,
            result.final_oxygen_level or SPO2_DEFAULT,
            self.config.profile,
            history,
        )

        def _deliver(done: Future) -> None:
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.warning("Insights request failed: %s", exc)
                return
            if generation != self._generation:
                logger.info("Discarding insights for superseded session %d", generation)
                return
            if callback is not None:
                callback(done.result())

        future.add_done_callback(_deliver)
        return future

    # ------------------------------------------------------------------
    # Private helpers – tick pipeline
    # ------------------------------------------------------------------

    def _guarded(self, acquire: Callable[[], Sample], now: Optional[float]) -> Optional[TickResult]:
        if self._session is None:
            logger.debug("Tick ignored: no active session.")
            return None
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Tick dropped: previous evaluation still in flight.")
            return None
        try:
            return self._process(acquire, now)
        finally:
            self._tick_lock.release()

    def _process(self, acquire: Callable[[], Sample], now: Optional[float]) -> Optional[TickResult]:
        session = self._session
        if session is None:
            return None
        now = self._clock() if now is None else now
        elapsed = max(0.0, now - session.started)

        try:
            sample = acquire()
            live = self.liveness.is_live(sample)
        except Exception as exc:
            logger.warning("Frame sampling failed: %s", exc)
            sample, live = None, False

        if live:
            session.guided = False
            session.append(sample)
            self._update_vitals(session, now)
        else:
            self._maybe_guide(session, elapsed)

        self._advance_state(elapsed)
        result = TickResult(
            heart_rate=session.heart_rate,
            oxygen_level=session.oxygen_level,
            confidence_percent=session.confidence_percent,
            is_live=live,
            zone=heart_rate_zone(session.heart_rate, self.config.profile),
            state=self.state,
            elapsed=elapsed,
        )
        if self.on_tick is not None:
            self.on_tick(result)

        if self.state is SessionState.FINISHING:
            self._finish()
        return result

    def _update_vitals(self, session: _Session, now: float) -> None:
        if len(session.green) > MIN_RATE_SAMPLES:
            try:
                conditioned = self.conditioner.condition(np.asarray(session.green))
                peaks = self.detector.detect(conditioned)
                session.confidence_percent = signal_quality(conditioned, peaks) * 100.0
                estimate = session.rate.update(peaks, session.confidence_percent, timestamp=now)
                if estimate is not None:
                    session.measurements.append(estimate.bpm)
                    session.heart_rate = estimate.bpm
            except Exception as exc:
                logger.warning("Heart-rate update failed: %s", exc)

        try:
            spo2 = self.oxygen.estimate(session.red, session.green, session.blue)
            if spo2 is not None:
                session.oxygen_level = spo2
        except Exception as exc:
            logger.warning("SpO2 estimation failed: %s", exc)

    def _maybe_guide(self, session: _Session, elapsed: float) -> None:
        if session.guided or elapsed <= self.config.guidance_grace_seconds:
            return
        session.guided = True
        logger.info("No finger detected after %.1fs.", elapsed)
        if self.on_guidance is not None:
            self.on_guidance(GUIDANCE_MESSAGE)

    def _advance_state(self, elapsed: float) -> None:
        if elapsed >= self.config.measurement_seconds:
            new_state = SessionState.FINISHING
        elif elapsed >= self.config.calibration_seconds:
            new_state = SessionState.MEASURING
        else:
            new_state = SessionState.CALIBRATING

        if new_state is not self.state:
            logger.info("Session %d: %s → %s at %.1fs",
                        self._generation, self.state.value, new_state.value, elapsed)
            self.state = new_state

    # ------------------------------------------------------------------
    # Private helpers – session end
    # ------------------------------------------------------------------

    def _finish(self) -> None:
        session = self._session
        measurements = list(session.measurements)
        note = ""

        if len(measurements) >= 2:
            recent = measurements[-self.config.final_average_count:]
            final_hr = round_half_up(float(np.mean(recent)))
            oxygen = session.oxygen_level
            if oxygen is None and self.config.synthesize_on_failure:
                oxygen = int(self._rng.integers(*FALLBACK_O2_RANGE))
            synthesized = False
        elif self.config.synthesize_on_failure:
            final_hr = int(self._rng.integers(*FALLBACK_HR_RANGE))
            oxygen = int(self._rng.integers(*FALLBACK_O2_RANGE))
            measurements = [final_hr]
            synthesized = True
            note = AUTO_GENERATED_NOTE
            logger.warning(
                "Only %d valid estimate(s); reporting a synthesised reading.",
                len(session.measurements),
            )
        else:
            accepted = len(measurements)
            self._teardown("insufficient signal")
            raise InsufficientSignal(accepted)

        result = SessionResult(
            final_heart_rate=final_hr,
            final_oxygen_level=oxygen,
            measurements=measurements,
            started_at=session.started_at,
            ended_at=datetime.now(),
            synthesized=synthesized,
            zone=heart_rate_zone(final_hr, self.config.profile),
            hrv_rmssd=rmssd(measurements),
        )
        self.last_result = result
        self._result_generation = session.generation
        self._save_reading(final_hr, oxygen, note)
        logger.info("Session %d complete: %d BPM, SpO2 %s%%%s",
                    session.generation, final_hr, oxygen,
                    " (synthesised)" if synthesized else "")

        self._teardown("finished")
        if self.on_complete is not None:
            self.on_complete(result)

    def _save_reading(self, heart_rate: int, oxygen_level: Optional[int], note: str) -> SavedReading:
        reading = SavedReading(
            heart_rate=heart_rate,
            oxygen_level=oxygen_level or UNKNOWN_O2_READING,
            date=datetime.now(),
            note=note,
        )
        self.readings.append(reading)
        if self.on_reading_saved is not None:
            self.on_reading_saved(reading)
        return reading

    def _acquisition_failed(self) -> None:
        if self._session is None:
            return None
        logger.error("Camera returned no frame – aborting session %d.", self._generation)
        self._teardown("acquisition failure")
        raise AcquisitionError("No frame available from the camera.")

    def _teardown(self, reason: str) -> None:
        session = self._session
        self._running = False
        if session is None:
            return
        session.clear()
        self._session = None
        self.state = SessionState.IDLE
        logger.info("Session %d torn down (%s).", session.generation, reason)
