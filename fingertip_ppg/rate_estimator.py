"""
Heart-rate estimator.

Turns peak positions into beats per minute, rejects physiologically
implausible values, and smooths the accepted ones with a scalar Kalman
filter whose measurement noise tracks the current signal confidence.

Kalman step
-----------
::

    predicted_P = P + process_noise
    R           = 100 - confidence_percent
    K           = predicted_P / (predicted_P + R)
    estimate   += K * (measurement - estimate)
    P           = (1 - K) * predicted_P

High confidence ⇒ small ``R`` ⇒ the filter follows new measurements
closely; low confidence ⇒ it leans on the running estimate.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

MIN_HEARTRATE = 40
MAX_HEARTRATE = 220
DEFAULT_ESTIMATE = 75.0
DEFAULT_ERROR_COVARIANCE = 100.0


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def instantaneous_bpm(peaks, fps: float) -> Optional[float]:
    """
    BPM implied by the mean spacing of *peaks* (sample indices).

    Returns *None* for fewer than two peaks or a non-positive spacing.
    """
    positions = np.asarray(peaks, dtype=np.float64)
    if len(positions) < 2:
        return None
    mean_interval = float(np.mean(np.diff(positions)))
    if mean_interval <= 0:
        return None
    return 60.0 * fps / mean_interval


@dataclass
class FilterState:
    """Running Kalman estimate, owned by one :class:`RateEstimator`."""

    estimate: float = DEFAULT_ESTIMATE
    error_covariance: float = DEFAULT_ERROR_COVARIANCE


@dataclass(frozen=True)
class RateEstimate:
    bpm: int
    confidence: float   # 0 – 1
    timestamp: float


class RateEstimator:
    """
    Peaks → validated, filtered BPM.

    Parameters
    ----------
    fps:
        Sampling rate of the signal the peaks were found in (default 30).
    min_bpm, max_bpm:
        Plausibility gate; measurements outside it never reach the filter.
    process_noise:
        How much the true heart rate is expected to drift per update.
    initial_estimate, initial_error_covariance:
        Filter state at the start of every session.
    """

    def __init__(
        self,
        fps: float = 30.0,
        min_bpm: float = MIN_HEARTRATE,
        max_bpm: float = MAX_HEARTRATE,
        process_noise: float = 1.0,
        initial_estimate: float = DEFAULT_ESTIMATE,
        initial_error_covariance: float = DEFAULT_ERROR_COVARIANCE,
    ) -> None:
        self.fps = fps
        self.min_bpm = min_bpm
        self.max_bpm = max_bpm
        self.process_noise = process_noise
        self.initial_estimate = initial_estimate
        self.initial_error_covariance = initial_error_covariance
        self.state = self._fresh_state()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_plausible(self, bpm: float) -> bool:
        return self.min_bpm <= bpm <= self.max_bpm

    def update(
        self,
        peaks,
        confidence_percent: float,
        timestamp: Optional[float] = None,
    ) -> Optional[RateEstimate]:
        """
        Feed one tick's peaks.

        Returns the filtered estimate, or *None* when there are too few
        peaks or the instantaneous BPM is implausible (the filter state is
        left untouched in both cases).
        """
        raw = instantaneous_bpm(peaks, self.fps)
        if raw is None:
            return None
        measured = round_half_up(raw)
        if not self.is_plausible(measured):
            logger.debug("Discarding implausible measurement %d BPM", measured)
            return None

        filtered = self.filter(measured, confidence_percent)
        bpm = round_half_up(filtered)
        # RateEstimate.bpm always lies inside the plausibility gate
        bpm = int(min(self.max_bpm, max(self.min_bpm, bpm)))
        return RateEstimate(
            bpm=bpm,
            confidence=min(1.0, max(0.0, confidence_percent / 100.0)),
            timestamp=time.time() if timestamp is None else timestamp,
        )

    def filter(self, measurement: float, confidence_percent: float) -> float:
        """One predict/update step; returns the new (unrounded) estimate."""
        state = self.state
        predicted_estimate = state.estimate
        predicted_covariance = state.error_covariance + self.process_noise

        measurement_noise = max(0.0, 100.0 - confidence_percent)
        gain = predicted_covariance / (predicted_covariance + measurement_noise)

        state.estimate = predicted_estimate + gain * (measurement - predicted_estimate)
        state.error_covariance = (1.0 - gain) * predicted_covariance
        return state.estimate

    def reset(self) -> None:
        """Start a fresh filter (new session)."""
        self.state = self._fresh_state()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _fresh_state(self) -> FilterState:
        return FilterState(
            estimate=self.initial_estimate,
            error_covariance=self.initial_error_covariance,
        )
