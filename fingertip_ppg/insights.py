"""
Post-session health insights.

The session controller asks an :class:`InsightsProvider` for a summary
once a measurement has finished.  Any text-generation backend can be
plugged in by implementing the protocol; :class:`RuleBasedInsights` is the
built-in provider and also what a generative backend should fall back to
when its response cannot be used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

import numpy as np

from fingertip_ppg.metrics import HealthProfile, health_score

logger = logging.getLogger(__name__)

TREND_DEAD_BAND = 5.0     # BPM difference between halves before a trend is called
MIN_PATTERN_READINGS = 3


@dataclass
class HealthInsight:
    insights: List[str]
    recommendations: List[str]
    score: int
    risk_factors: List[str] = field(default_factory=list)


@dataclass
class HealthTip:
    id: int
    category: str
    tip: str
    source: str


@dataclass
class Anomaly:
    type: str
    description: str
    severity: str   # "low" | "medium" | "high"


@dataclass
class Trend:
    metric: str
    direction: str  # "increasing" | "decreasing" | "stable"
    description: str


@dataclass
class PatternAnalysis:
    patterns: List[str]
    anomalies: List[Anomaly] = field(default_factory=list)
    trends: List[Trend] = field(default_factory=list)
    average: Optional[float] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    std_dev: Optional[float] = None


@dataclass
class SessionInsights:
    """Everything :meth:`SessionController.fetch_insights` delivers."""

    insight: HealthInsight
    tips: List[HealthTip]
    patterns: Optional[PatternAnalysis] = None


class InsightsProvider(Protocol):
    def health_insights(
        self,
        heart_rate: int,
        oxygen_level: int,
        profile: Optional[HealthProfile] = None,
    ) -> HealthInsight:
        ...

    def health_tips(self, heart_rate: int, oxygen_level: int) -> List[HealthTip]:
        ...

    def analyze_patterns(self, heart_rates: Sequence[int]) -> PatternAnalysis:
        ...


_DEFAULT_TIPS = (
    HealthTip(
        id=1,
        category="Exercise",
        tip="Aim for 150 minutes of moderate activity or 75 minutes of "
            "vigorous activity weekly.",
        source="World Health Organization",
    ),
    HealthTip(
        id=2,
        category="Nutrition",
        tip="Include foods rich in omega-3 fatty acids for heart health, such "
            "as fatty fish, walnuts, and flaxseeds.",
        source="American Heart Association",
    ),
    HealthTip(
        id=3,
        category="Lifestyle",
        tip="Practice deep breathing exercises daily to reduce stress and "
            "improve heart health.",
        source="Mayo Clinic",
    ),
)


class RuleBasedInsights:
    """Deterministic insights derived from the readings alone."""

    def health_insights(
        self,
        heart_rate: int,
        oxygen_level: int,
        profile: Optional[HealthProfile] = None,
    ) -> HealthInsight:
        insights = [
            self._heart_rate_sentence(heart_rate, profile),
            self._oxygen_sentence(oxygen_level),
            "Regular monitoring helps track cardiovascular health over time.",
        ]
        recommendations = [
            "Consider regular cardiovascular exercise to maintain heart health.",
            "Stay hydrated throughout the day.",
            "Practice relaxation techniques to manage stress.",
        ]
        risk_factors: List[str] = []
        if heart_rate > 100:
            risk_factors.append("Resting heart rate above 100 BPM.")
        if oxygen_level < 92:
            risk_factors.append("Oxygen saturation below 92%.")
        if profile is not None:
            risk_factors.extend(profile.risk_factors)

        return HealthInsight(
            insights=insights,
            recommendations=recommendations,
            score=health_score(heart_rate, oxygen_level),
            risk_factors=risk_factors,
        )

    def health_tips(self, heart_rate: int, oxygen_level: int) -> List[HealthTip]:
        return list(_DEFAULT_TIPS)

    def analyze_patterns(self, heart_rates: Sequence[int]) -> PatternAnalysis:
        """Summary statistics and a first-half vs second-half trend."""
        if len(heart_rates) < MIN_PATTERN_READINGS:
            return PatternAnalysis(
                patterns=[
                    "Regular heart rate pattern detected",
                    "Normal variation between readings",
                ],
                trends=[Trend("Heart Rate", "stable",
                              "Your heart rate readings show stability over time.")],
            )

        rates = np.asarray(heart_rates, dtype=np.float64)
        average = float(rates.mean())
        std_dev = float(rates.std())

        direction = "stable"
        if len(rates) >= 5:
            half = len(rates) // 2
            delta = float(rates[half:].mean() - rates[:half].mean())
            if delta > TREND_DEAD_BAND:
                direction = "increasing"
            elif -delta > TREND_DEAD_BAND:
                direction = "decreasing"

        patterns = [f"Average heart rate {average:.1f} BPM across {len(rates)} readings"]
        if std_dev <= 5:
            patterns.append("Low variation between readings")
        else:
            patterns.append(f"Readings vary by ±{std_dev:.1f} BPM")

        anomalies = [
            Anomaly(
                type="outlier",
                description=f"Reading of {int(r)} BPM is far from the average",
                severity="medium",
            )
            for r in rates
            if std_dev > 0 and abs(r - average) > 2 * std_dev
        ]

        return PatternAnalysis(
            patterns=patterns,
            anomalies=anomalies,
            trends=[Trend("Heart Rate", direction,
                          f"Heart rate trend over recent readings is {direction}.")],
            average=average,
            minimum=float(rates.min()),
            maximum=float(rates.max()),
            std_dev=std_dev,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _heart_rate_sentence(heart_rate: int, profile: Optional[HealthProfile]) -> str:
        resting = profile.resting_hr if profile is not None else None
        if 60 <= heart_rate <= 100:
            text = f"Your heart rate of {heart_rate} BPM is within a normal range."
        elif heart_rate < 60:
            text = f"Your heart rate of {heart_rate} BPM is below the typical resting range."
        else:
            text = f"Your heart rate of {heart_rate} BPM is elevated."
        if resting:
            text += f" Your recorded resting baseline is {resting} BPM."
        return text

    @staticmethod
    def _oxygen_sentence(oxygen_level: int) -> str:
        if oxygen_level >= 95:
            return f"Your oxygen level of {oxygen_level}% indicates good oxygen saturation."
        return f"Your oxygen level of {oxygen_level}% is lower than typical."


def gather_insights(
    provider: InsightsProvider,
    heart_rate: int,
    oxygen_level: int,
    profile: Optional[HealthProfile] = None,
    history: Sequence[int] = (),
    min_history: int = 5,
) -> SessionInsights:
    """Run every provider call for one finished reading."""
    insight = provider.health_insights(heart_rate, oxygen_level, profile)
    tips = provider.health_tips(heart_rate, oxygen_level)
    patterns = None
    if len(history) > min_history:
        logger.debug("Analysing %d saved readings", len(history))
        patterns = provider.analyze_patterns(list(history))
    return SessionInsights(insight=insight, tips=tips, patterns=patterns)
