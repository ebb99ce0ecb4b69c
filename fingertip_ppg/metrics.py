"""
Derived metrics on finished readings: training zone, HRV and a simple
heart-rate / oxygen health score.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

DEFAULT_AGE = 30


@dataclass
class HealthProfile:
    """Per-user context; every field is optional."""

    age: Optional[int] = None
    gender: Optional[str] = None
    activity_level: Optional[str] = None
    health_goals: List[str] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)
    resting_hr: Optional[int] = None
    max_hr: Optional[int] = None
    min_o2: Optional[int] = None

    @property
    def effective_max_hr(self) -> float:
        """Configured maximum heart rate, else ``220 - age``."""
        if self.max_hr:
            return float(self.max_hr)
        return float(220 - (self.age or DEFAULT_AGE))


class HeartRateZone(str, Enum):
    REST = "Rest"
    VERY_LIGHT = "Very Light"
    LIGHT = "Light"
    MODERATE = "Moderate"
    HARD = "Hard"
    MAXIMUM = "Maximum"


# (upper bound in % of max HR, zone); the last zone is open-ended
_ZONE_BOUNDS = (
    (50.0, HeartRateZone.REST),
    (60.0, HeartRateZone.VERY_LIGHT),
    (70.0, HeartRateZone.LIGHT),
    (80.0, HeartRateZone.MODERATE),
    (90.0, HeartRateZone.HARD),
)


def heart_rate_zone(
    heart_rate: Optional[float],
    profile: Optional[HealthProfile] = None,
) -> Optional[HeartRateZone]:
    """Zone of *heart_rate* relative to the profile's maximum; *None* without a rate."""
    if not heart_rate:
        return None
    max_hr = (profile or HealthProfile()).effective_max_hr
    percentage = heart_rate / max_hr * 100.0
    for upper, zone in _ZONE_BOUNDS:
        if percentage < upper:
            return zone
    return HeartRateZone.MAXIMUM


def rmssd(heart_rates: Sequence[float]) -> float:
    """
    Root mean square of successive differences of the beat intervals (ms)
    implied by a series of heart-rate readings.  0 for fewer than two.
    """
    rates = np.asarray(heart_rates, dtype=np.float64)
    if len(rates) < 2:
        return 0.0
    rr_ms = 60000.0 / rates
    return float(np.sqrt(np.mean(np.diff(rr_ms) ** 2)))


def health_score(heart_rate: float, oxygen_level: float) -> int:
    """Crude 0 – 100 score: up to 50 points each for heart rate and SpO2."""
    if 60 <= heart_rate <= 80:
        hr_score = 50
    elif 80 < heart_rate <= 100 or 40 <= heart_rate < 60:
        hr_score = 40
    elif 100 < heart_rate <= 120:
        hr_score = 30
    else:
        hr_score = 20

    if oxygen_level >= 97:
        o2_score = 50
    elif oxygen_level >= 95:
        o2_score = 45
    elif oxygen_level >= 92:
        o2_score = 35
    elif oxygen_level >= 90:
        o2_score = 25
    else:
        o2_score = 15

    return hr_score + o2_score
