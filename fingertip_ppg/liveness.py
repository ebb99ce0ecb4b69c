"""
Fingertip liveness check.

A fingertip pressed over the lens and torch glows red: tissue and blood
reflect red strongly, absorb green less and blue most.  A bare lens, a
table top or a sheet of paper does not reproduce that channel ordering,
so this per-sample predicate is the gate in front of all downstream
processing.
"""

from __future__ import annotations

from fingertip_ppg.sampler import Sample


class LivenessClassifier:
    """
    Is this sample consistent with a human fingertip over a light source?

    Parameters
    ----------
    min_red_blue_ratio:
        Minimum ``red / blue`` ratio (default 1.3).  A blue mean of 0 is
        treated as 1.
    """

    def __init__(self, min_red_blue_ratio: float = 1.3) -> None:
        self.min_red_blue_ratio = min_red_blue_ratio

    def is_live(self, sample: Sample) -> bool:
        """Return *True* if *sample* looks like a fingertip."""
        red, green, blue = sample.red, sample.green, sample.blue

        red_dominant   = red > green and red > blue
        green_over_blue = green > blue
        red_blue_ratio = red / (blue or 1.0)

        return bool(
            red_dominant
            and green_over_blue
            and red_blue_ratio > self.min_red_blue_ratio
        )
