"""
Tests for SessionController: lifecycle, end-to-end scenarios, fallback and
insights delivery.  Time is driven by passing ``now=`` explicitly.
Run with:  pytest tests/
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from fingertip_ppg.errors import AcquisitionError, InsufficientSignal
from fingertip_ppg.insights import RuleBasedInsights, SessionInsights
from fingertip_ppg.sampler import Sample
from fingertip_ppg.session import (
    AUTO_GENERATED_NOTE,
    GUIDANCE_MESSAGE,
    SessionConfig,
    SessionController,
    SessionState,
)

FPS = 30.0


def sine_samples(n: int) -> list[Sample]:
    """1.2 Hz (72 BPM) sine, DC 100 amplitude 20 on green, live red/blue."""
    t = np.arange(n) / FPS
    wave = np.sin(2 * np.pi * 1.2 * t)
    return [
        Sample(red=200 + 10 * w, green=100 + 20 * w, blue=40 + 4 * w)
        for w in wave
    ]


def pulse_samples(n: int) -> list[Sample]:
    """Narrow systolic pulses at 1.2 Hz (72 BPM) on a flat baseline."""
    t = (np.arange(n) - 12) / FPS
    pulse = ((1 + np.cos(2 * np.pi * 1.2 * t)) / 2) ** 80
    return [
        Sample(red=150 + 5 * p, green=48.75 + 20 * p, blue=20 + 3 * p)
        for p in pulse
    ]


def noise_samples(n: int, seed: int = 3) -> list[Sample]:
    """Grey noise: red == green == blue, never live."""
    values = np.random.default_rng(seed).uniform(0, 255, n)
    return [Sample(v, v, v) for v in values]


def feed(controller: SessionController, samples, first_tick: int = 1):
    results = []
    for i, sample in enumerate(samples, start=first_tick):
        results.append(controller.push_sample(sample, now=i / FPS))
    return results


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestSessionLifecycle:

    def test_idle_ticks_are_ignored(self):
        controller = SessionController()
        assert controller.state is SessionState.IDLE
        assert controller.push_sample(Sample(200, 100, 50), now=0.0) is None
        assert controller.tick(None) is None

    def test_phases(self):
        states = []
        controller = SessionController(
            SessionConfig(seed=1),
            on_tick=lambda r: states.append(r.state),
        )
        controller.start(now=0.0)
        feed(controller, noise_samples(450))
        assert states[0] is SessionState.CALIBRATING
        assert states[149] is SessionState.MEASURING      # t = 5.0 s
        assert states[-1] is SessionState.FINISHING
        assert controller.state is SessionState.IDLE
        assert not controller.is_active

    def test_missing_frame_aborts_session(self):
        controller = SessionController()
        controller.start(now=0.0)
        with pytest.raises(AcquisitionError):
            controller.tick(None, now=0.1)
        assert not controller.is_active

    def test_restart_resets_buffers(self):
        controller = SessionController(SessionConfig(seed=1))
        controller.start(now=0.0)
        feed(controller, pulse_samples(200))
        controller.start(now=100.0)
        assert controller.generation == 2
        result = controller.push_sample(Sample(200, 100, 50), now=100.1)
        assert result.heart_rate is None
        assert result.state is SessionState.CALIBRATING

    def test_cancel_saves_last_reading(self):
        saved = []
        controller = SessionController(on_reading_saved=saved.append)
        controller.start(now=0.0)
        results = feed(controller, pulse_samples(200))
        reading = controller.cancel(note="morning")
        assert reading is not None
        assert reading.heart_rate == results[-1].heart_rate
        assert reading.note == "morning"
        assert saved == [reading]
        assert not controller.is_active

    def test_cancel_without_reading(self):
        controller = SessionController()
        controller.start(now=0.0)
        assert controller.cancel() is None
        assert controller.readings == []

    def test_reentrant_tick_is_dropped(self):
        nested = []

        def on_tick(result):
            nested.append(controller.push_sample(Sample(200, 100, 50), now=result.elapsed))

        controller = SessionController(on_tick=on_tick)
        controller.start(now=0.0)
        assert controller.push_sample(Sample(200, 100, 50), now=0.1) is not None
        assert nested == [None]

    def test_stage_failure_is_contained(self, monkeypatch):
        controller = SessionController()

        def broken(data):
            raise RuntimeError("boom")

        monkeypatch.setattr(controller.conditioner, "condition", broken)
        controller.start(now=0.0)
        results = feed(controller, pulse_samples(60))
        assert all(r is not None and r.is_live for r in results)
        assert results[-1].heart_rate is None
        assert results[-1].oxygen_level is None

    def test_tick_buffer(self):
        controller = SessionController(SessionConfig(channel_order="rgba"))
        controller.start(now=0.0)
        buffer = bytes([200, 100, 50, 255]) * 16
        result = controller.tick_buffer(buffer, 4, 4, now=0.1)
        assert result.is_live

    def test_invalid_frame_counts_as_not_live(self):
        controller = SessionController()
        controller.start(now=0.0)
        result = controller.tick(np.zeros((4, 4), dtype=np.uint8), now=0.1)
        assert result.is_live is False
        assert controller.is_active

    def test_config_validation(self):
        with pytest.raises(ValueError):
            SessionConfig(calibration_seconds=20, measurement_seconds=15)
        with pytest.raises(ValueError):
            SessionConfig(fps=0)
        assert SessionConfig(sensitivity="low").sensitivity.window_size == 7


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

class TestSessionScenarios:

    def test_sine_scenario(self):
        config = SessionConfig(calibration_seconds=2.0, measurement_seconds=5.0, seed=11)
        completed = []
        controller = SessionController(config, on_complete=completed.append)
        controller.start(now=0.0)
        results = feed(controller, sine_samples(150))

        assert all(r.is_live for r in results)
        assert len(completed) == 1
        assert completed[0].synthesized
        assert 65 <= completed[0].final_heart_rate < 85
        assert 85 <= completed[0].final_oxygen_level <= 100

    def test_pulse_train_measures_72_bpm(self):
        completed = []
        controller = SessionController(SessionConfig(seed=5), on_complete=completed.append)
        controller.start(now=0.0)
        results = feed(controller, pulse_samples(450))

        assert all(r.is_live for r in results)
        result = completed[0]
        assert not result.synthesized
        assert abs(result.final_heart_rate - 72) <= 5
        assert len(result.measurements) >= 2
        assert result.zone is not None
        assert controller.readings[-1].heart_rate == result.final_heart_rate
        assert controller.readings[-1].note == ""
        assert results[-1].confidence_percent > 50

    def test_noise_falls_back_to_synthetic_reading(self):
        completed, guidance = [], []
        controller = SessionController(
            SessionConfig(seed=42),
            on_complete=completed.append,
            on_guidance=guidance.append,
        )
        controller.start(now=0.0)
        results = feed(controller, noise_samples(450))

        assert not any(r.is_live for r in results)
        assert all(r.heart_rate is None for r in results)
        assert guidance == [GUIDANCE_MESSAGE]
        result = completed[0]
        assert result.synthesized
        assert 65 <= result.final_heart_rate < 85
        assert 96 <= result.final_oxygen_level < 99
        assert result.measurements == [result.final_heart_rate]
        assert controller.readings[-1].note == AUTO_GENERATED_NOTE

    def test_fallback_is_seeded(self):
        finals = []
        for _ in range(2):
            controller = SessionController(SessionConfig(seed=9))
            controller.start(now=0.0)
            feed(controller, noise_samples(450))
            finals.append(controller.last_result.final_heart_rate)
        assert finals[0] == finals[1]

    def test_strict_mode_raises(self):
        controller = SessionController(SessionConfig(synthesize_on_failure=False))
        controller.start(now=0.0)
        with pytest.raises(InsufficientSignal) as excinfo:
            feed(controller, noise_samples(450))
        assert excinfo.value.accepted == 0
        assert not controller.is_active
        assert controller.readings == []

    def test_guidance_repeats_after_finger_returns(self):
        guidance = []
        controller = SessionController(on_guidance=guidance.append)
        controller.start(now=0.0)
        grey = Sample(100, 100, 100)
        for i in range(1, 121):                    # 0 – 4 s without finger
            controller.push_sample(grey, now=i / FPS)
        controller.push_sample(Sample(200, 100, 50), now=121 / FPS)
        for i in range(122, 130):
            controller.push_sample(grey, now=i / FPS)
        assert len(guidance) == 2

    def test_run_with_frame_source(self):
        clock = {"t": 0.0}

        class Source:
            def read_frame(self):
                clock["t"] += 1 / FPS
                frame = np.zeros((8, 8, 3), dtype=np.uint8)
                frame[:, :] = (40, 100, 200)           # BGR
                return frame

        config = SessionConfig(calibration_seconds=0.5, measurement_seconds=1.0, seed=2)
        controller = SessionController(config, clock=lambda: clock["t"])
        frames = []
        result = controller.run(Source(), on_frame=lambda f, r: frames.append(r))

        assert result is not None
        assert result.synthesized
        assert all(r.is_live for r in frames)
        assert not controller.is_active

    def test_run_cancelled_returns_none(self):
        clock = {"t": 0.0}

        class Source:
            def read_frame(self):
                clock["t"] += 1 / FPS
                return np.full((8, 8, 3), 128, dtype=np.uint8)

        controller = SessionController(clock=lambda: clock["t"])
        result = controller.run(Source(), on_frame=lambda f, r: controller.cancel())
        assert result is None

    def test_run_propagates_acquisition_failure(self):
        class Source:
            def read_frame(self):
                return None

        controller = SessionController()
        with pytest.raises(AcquisitionError):
            controller.run(Source())
        assert not controller.is_active

    def test_run_tears_down_when_source_raises(self):
        class Source:
            def read_frame(self):
                raise AcquisitionError("Camera is not open.")

        controller = SessionController()
        with pytest.raises(AcquisitionError):
            controller.run(Source())
        assert not controller.is_active
        assert controller.state is SessionState.IDLE

    def test_run_tears_down_when_frame_hook_raises(self):
        clock = {"t": 0.0}

        class Source:
            def read_frame(self):
                clock["t"] += 1 / FPS
                return np.full((8, 8, 3), 128, dtype=np.uint8)

        def on_frame(frame, result):
            raise KeyboardInterrupt

        controller = SessionController(clock=lambda: clock["t"])
        with pytest.raises(KeyboardInterrupt):
            controller.run(Source(), on_frame=on_frame)
        assert not controller.is_active


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

class TestSessionInsights:

    def _finished(self, provider=None):
        controller = SessionController(SessionConfig(seed=4), insights_provider=provider)
        controller.start(now=0.0)
        feed(controller, noise_samples(450))
        return controller

    def test_no_result_no_request(self):
        assert SessionController().fetch_insights() is None

    def test_insights_delivered(self):
        controller = self._finished()
        delivered = threading.Event()
        received = []

        def on_insights(insights):
            received.append(insights)
            delivered.set()

        future = controller.fetch_insights(on_insights)
        assert isinstance(future.result(timeout=5), SessionInsights)
        assert delivered.wait(timeout=5)
        assert received[0].insight.score > 0
        assert received[0].patterns is None
        controller.shutdown(wait=True)

    def test_late_insights_discarded_after_restart(self):
        release = threading.Event()

        class SlowInsights(RuleBasedInsights):
            def health_insights(self, heart_rate, oxygen_level, profile=None):
                release.wait(timeout=5)
                return super().health_insights(heart_rate, oxygen_level, profile)

        controller = self._finished(SlowInsights())
        received = []
        future = controller.fetch_insights(received.append)
        controller.start(now=0.0)
        release.set()
        future.result(timeout=5)
        controller.shutdown(wait=True)
        assert received == []
