"""
Frame sampler.

Reduces one camera frame to a single :class:`Sample`: the mean red, green
and blue intensity over a square region of interest in the frame centre.
With a fingertip on the lens the centre of the frame is the best-lit,
least motion-affected part of the tissue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

# Index of (red, green, blue) inside a pixel for each supported layout.
_CHANNEL_INDEX = {
    "rgb": (0, 1, 2),
    "rgba": (0, 1, 2),
    "bgr": (2, 1, 0),
    "bgra": (2, 1, 0),
}

_CV_DTYPES = (np.uint8, np.uint16, np.float32, np.float64)


@dataclass(frozen=True)
class Sample:
    """One tick's ROI-averaged colour intensities."""

    red: float
    green: float
    blue: float


class FrameSampler:
    """
    Mean colour over a centred square ROI.

    Parameters
    ----------
    channel_order:
        Pixel layout of incoming frames: ``"bgr"`` (OpenCV, default),
        ``"bgra"``, ``"rgb"`` or ``"rgba"`` (browser canvas buffers).
    roi_divisor:
        The ROI half-side is ``min(width, height) // roi_divisor``, so the
        default of 4 samples a square half as wide as the short side.
    """

    def __init__(self, channel_order: str = "bgr", roi_divisor: int = 4) -> None:
        if channel_order not in _CHANNEL_INDEX:
            raise ValueError(
                f"Unsupported channel order {channel_order!r}; "
                f"expected one of {sorted(_CHANNEL_INDEX)}"
            )
        if roi_divisor < 2:
            raise ValueError("roi_divisor must be >= 2")
        self.channel_order = channel_order
        self.roi_divisor = roi_divisor

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def roi(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """Return ``(x, y, w, h)`` of the sampling region for a frame size."""
        half = max(1, min(width, height) // self.roi_divisor)
        cx, cy = width // 2, height // 2
        x0, y0 = max(0, cx - half), max(0, cy - half)
        x1, y1 = min(width, cx + half), min(height, cy + half)
        return x0, y0, x1 - x0, y1 - y0

    def sample(self, frame: np.ndarray) -> Sample:
        """
        Average the ROI of *frame*.

        Parameters
        ----------
        frame:
            H × W × C image array laid out as ``channel_order``.
        """
        if frame.ndim != 3 or frame.shape[2] < 3:
            raise ValueError(
                f"Expected an H x W x C colour frame, got shape {frame.shape}"
            )
        if frame.dtype not in _CV_DTYPES:
            frame = frame.astype(np.float32)

        height, width = frame.shape[:2]
        x, y, w, h = self.roi(width, height)
        patch = frame[y:y + h, x:x + w]
        means = cv2.mean(patch)

        r_idx, g_idx, b_idx = _CHANNEL_INDEX[self.channel_order]
        return Sample(
            red=float(means[r_idx]),
            green=float(means[g_idx]),
            blue=float(means[b_idx]),
        )

    def frame_from_buffer(
        self,
        buffer,
        width: int,
        height: int,
    ) -> np.ndarray:
        """
        View a flat pixel buffer as an ``height × width × channels`` frame.

        The channel count follows from ``channel_order`` (4 for the alpha
        layouts, 3 otherwise).
        """
        channels = len(self.channel_order)
        if isinstance(buffer, (bytes, bytearray, memoryview)):
            data = np.frombuffer(buffer, dtype=np.uint8)
        else:
            data = np.asarray(buffer).reshape(-1)
        if data.dtype.kind not in "uif":
            raise ValueError(f"Pixel buffer must be numeric, got {data.dtype}")
        expected = width * height * channels
        if data.size != expected:
            raise ValueError(
                f"Pixel buffer holds {data.size} values; "
                f"{width}x{height}x{channels} requires {expected}"
            )
        return data.reshape(height, width, channels)

    def sample_buffer(self, buffer, width: int, height: int) -> Sample:
        """Sample a flat pixel buffer with declared dimensions."""
        return self.sample(self.frame_from_buffer(buffer, width, height))
