"""
Blood-oxygen (SpO2) estimator.

A phone camera has no infrared channel, so the classic red/IR ratio of
ratios is approximated with the visible channels:

* pulsatility index per channel: ``PI = (max - min) / mean`` of the
  conditioned signal;
* ``r1 = PI_red / PI_green`` → ``110 - 25 · r1``;
* ``r2 = PI_red / PI_blue``  → ``104 - 17 · r2``;
* the two estimates are blended with weights ``q_red · q_green`` and
  ``q_red · q_blue`` (per-channel signal quality), rounded and clamped
  to [85, 100].

Results are indicative only, not clinical-grade.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from fingertip_ppg.quality import signal_quality
from fingertip_ppg.rate_estimator import round_half_up
from fingertip_ppg.signal_conditioner import SignalConditioner

logger = logging.getLogger(__name__)

MIN_OXYGEN_SAMPLES = 30
OXYGEN_WINDOW = 100
SPO2_MIN = 85
SPO2_MAX = 100
SPO2_DEFAULT = 97


def pulsatility_index(data) -> float:
    """``(max - min) / mean``; 0 for an empty signal or a zero mean."""
    signal = np.asarray(data, dtype=np.float64)
    if len(signal) == 0:
        return 0.0
    mean = float(np.mean(signal))
    if mean == 0:
        return 0.0
    return float(np.ptp(signal)) / mean


def combine_spo2(
    red_pi: float,
    green_pi: float,
    blue_pi: float,
    red_quality: float,
    green_quality: float,
    blue_quality: float,
) -> int:
    """
    Quality-weighted blend of the two ratio-of-ratios estimates.

    A ratio whose denominator index is 0 cannot be formed and gets no
    weight.  With no usable weight the default of 97 % is returned.
    """
    estimates = []
    weights = []

    if green_pi > 0:
        estimates.append(110.0 - 25.0 * (red_pi / green_pi))
        weights.append(red_quality * green_quality)
    if blue_pi > 0:
        estimates.append(104.0 - 17.0 * (red_pi / blue_pi))
        weights.append(red_quality * blue_quality)

    total_weight = float(sum(weights))
    if total_weight <= 0:
        return SPO2_DEFAULT

    blended = float(np.dot(estimates, weights)) / total_weight
    return int(min(SPO2_MAX, max(SPO2_MIN, round_half_up(blended))))


class OxygenEstimator:
    """
    SpO2 from the red, green and blue channel histories.

    Parameters
    ----------
    conditioner:
        Conditioner applied to each channel window.
    window:
        Number of most recent samples used per channel (default 100).
    min_samples:
        Every channel needs at least this many samples (default 30).
    """

    def __init__(
        self,
        conditioner: Optional[SignalConditioner] = None,
        window: int = OXYGEN_WINDOW,
        min_samples: int = MIN_OXYGEN_SAMPLES,
    ) -> None:
        self.conditioner = conditioner or SignalConditioner()
        self.window = window
        self.min_samples = min_samples

    def estimate(
        self,
        red: Sequence[float],
        green: Sequence[float],
        blue: Sequence[float],
    ) -> Optional[int]:
        """
        Return the SpO2 percentage, or *None* while any channel is shorter
        than ``min_samples``.
        """
        if min(len(red), len(green), len(blue)) < self.min_samples:
            return None

        channels = [
            self.conditioner.condition(np.asarray(ch, dtype=np.float64)[-self.window:])
            for ch in (red, green, blue)
        ]
        red_c, green_c, blue_c = channels

        spo2 = combine_spo2(
            pulsatility_index(red_c),
            pulsatility_index(green_c),
            pulsatility_index(blue_c),
            signal_quality(red_c),
            signal_quality(green_c),
            signal_quality(blue_c),
        )
        logger.debug("SpO2 estimate %d%%", spo2)
        return spo2
