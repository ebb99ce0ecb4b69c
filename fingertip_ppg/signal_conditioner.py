"""
PPG signal conditioner.

Algorithm
---------
1. Smooth the raw channel with a distance-weighted local average
   (weight ``1 / (1 + d²)``).  This approximates a Savitzky-Golay fit and
   keeps the systolic peak sharper than a plain moving average would.
2. Remove baseline wander: subtract the mean of two flanking sub-windows
   from every interior sample and re-centre the result at 50.  The
   ``±window/3`` neighbourhood of the sample is excluded so the pulse
   itself does not leak into its own baseline.  Samples within one window
   of either edge are left as they are.
3. Min-max normalise into ``[10, 90]``.

The conditioner is stateless: each call processes the whole window it is
given.
"""

from __future__ import annotations

import math
from enum import Enum

import numpy as np
from scipy.signal import convolve

MIN_CONDITION_SAMPLES = 20
BASELINE_MAX_WINDOW = 50
NORMALIZED_LOW = 10.0
NORMALIZED_HIGH = 90.0
BASELINE_CENTER = 50.0


class Sensitivity(str, Enum):
    """User-facing sensitivity; selects the smoothing window."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def window_size(self) -> int:
        return {"low": 7, "medium": 5, "high": 3}[self.value]


class SignalConditioner:
    """
    Smooth → detrend → normalise a single colour channel.

    Parameters
    ----------
    window_size:
        Smoothing window in samples (odd).  Defaults to 5, the
        ``Sensitivity.MEDIUM`` setting.
    min_samples:
        Inputs shorter than this are returned unchanged (default 20).
    """

    def __init__(
        self,
        window_size: int = Sensitivity.MEDIUM.window_size,
        min_samples: int = MIN_CONDITION_SAMPLES,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self.min_samples = min_samples

        half = window_size // 2
        distance = np.arange(-half, half + 1, dtype=np.float64)
        self._kernel = 1.0 / (1.0 + distance ** 2)

    @classmethod
    def for_sensitivity(cls, sensitivity: Sensitivity | str) -> "SignalConditioner":
        return cls(window_size=Sensitivity(sensitivity).window_size)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def condition(self, data) -> np.ndarray:
        """
        Run the full chain on *data* and return a new array.

        Returns the input (as float64) untouched when it is shorter than
        ``min_samples``.
        """
        signal = np.asarray(data, dtype=np.float64)
        if len(signal) < self.min_samples:
            return signal.copy()

        smoothed = self.smooth(signal)
        detrended = self.remove_baseline(smoothed)
        return self.normalize(detrended)

    def smooth(self, data) -> np.ndarray:
        """Distance-weighted local average; the window is truncated at the edges."""
        signal = np.asarray(data, dtype=np.float64)
        if len(signal) == 0:
            return signal.copy()
        weighted = convolve(signal, self._kernel, mode="same", method="direct")
        weights = convolve(np.ones_like(signal), self._kernel, mode="same", method="direct")
        return weighted / weights

    @staticmethod
    def remove_baseline(data) -> np.ndarray:
        """
        Subtract a flanking-window baseline from interior samples.

        The window is ``min(50, len // 4)``; shorter signals (window < 3)
        are returned unchanged.
        """
        signal = np.asarray(data, dtype=np.float64)
        result = signal.copy()
        n = len(signal)
        window = min(BASELINE_MAX_WINDOW, n // 4)
        if window < 3:
            return result

        # Flanks: [i - w, i - w/3) and [i + w/3, i + w)
        gap = window / 3.0
        inner_left = math.floor(gap) + 1
        inner_right = math.ceil(gap)
        count = (window - inner_left + 1) + (window - inner_right)

        csum = np.concatenate(([0.0], np.cumsum(signal)))
        idx = np.arange(window, n - window)
        left = csum[idx - inner_left + 1] - csum[idx - window]
        right = csum[idx + window] - csum[idx + inner_right]
        baseline = (left + right) / count

        result[idx] = signal[idx] - baseline + BASELINE_CENTER
        return result

    @staticmethod
    def normalize(data) -> np.ndarray:
        """Min-max rescale into [10, 90]; a constant signal maps to 50."""
        signal = np.asarray(data, dtype=np.float64)
        if len(signal) == 0:
            return signal.copy()
        lo, hi = float(signal.min()), float(signal.max())
        if hi == lo:
            return np.full_like(signal, (NORMALIZED_LOW + NORMALIZED_HIGH) / 2.0)
        span = NORMALIZED_HIGH - NORMALIZED_LOW
        return (signal - lo) / (hi - lo) * span + NORMALIZED_LOW
