"""Signal quality score (0 – 1) from beat regularity and amplitude."""

from __future__ import annotations

from typing import Optional

import numpy as np
from scipy.stats import variation

from fingertip_ppg.peak_detector import PeakDetector

MIN_QUALITY_SAMPLES = 20
FEW_PEAKS_QUALITY = 0.2
REGULARITY_WEIGHT = 0.7
AMPLITUDE_WEIGHT = 0.3
FULL_AMPLITUDE = 50.0


def signal_quality(
    data,
    peaks=None,
    detector: Optional[PeakDetector] = None,
) -> float:
    """
    Score a conditioned signal.

    ``0.7 · regularity + 0.3 · amplitude`` where regularity is
    ``1 - CV`` of the inter-peak intervals and amplitude is the
    peak-to-peak range over 50, both clamped to [0, 1].

    Parameters
    ----------
    data:
        Conditioned signal (values ~[10, 90]).
    peaks:
        Peaks already detected in *data*; detected here when omitted.
    detector:
        Detector to use when *peaks* is omitted.
    """
    signal = np.asarray(data, dtype=np.float64)
    if len(signal) < MIN_QUALITY_SAMPLES:
        return 0.0

    if peaks is None:
        peaks = (detector or PeakDetector()).detect(signal)
    peaks = np.asarray(peaks, dtype=np.float64)
    if len(peaks) < 2:
        return FEW_PEAKS_QUALITY

    intervals = np.diff(peaks)
    cv = float(variation(intervals))
    regularity = float(np.clip(1.0 - cv, 0.0, 1.0)) if np.isfinite(cv) else 0.0
    amplitude = float(np.clip(np.ptp(signal) / FULL_AMPLITUDE, 0.0, 1.0))

    return REGULARITY_WEIGHT * regularity + AMPLITUDE_WEIGHT * amplitude
