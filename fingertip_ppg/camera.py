"""
Fingertip camera source.

Wraps OpenCV ``VideoCapture`` and hands out BGR frames for
:meth:`SessionController.tick`.  The fingertip covers the lens, usually
with the torch on, so frames are mostly red; nothing here checks that.
"""

from __future__ import annotations

import logging
from typing import Generator, Tuple

import cv2
import numpy as np

from fingertip_ppg.errors import AcquisitionError

logger = logging.getLogger(__name__)

WARMUP_FRAMES = 5


class FingerCamera:
    """
    Thin wrapper around an OpenCV capture device.

    Parameters
    ----------
    resolution:
        (width, height) requested from the device.
    fps:
        Requested frame rate.  The session ticks at its own rate regardless.
    flip_horizontal:
        Mirror frames left-to-right (only matters for the preview).
    camera_index:
        OpenCV device index.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        flip_horizontal: bool = False,
        camera_index: int = 0,
    ) -> None:
        self.resolution = resolution
        self.fps = fps
        self.flip_horizontal = flip_horizontal
        self.camera_index = camera_index

        self._cap: cv2.VideoCapture | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        """Open the device and let auto-exposure settle."""
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            raise AcquisitionError(
                f"Cannot open video capture device index={self.camera_index}"
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        for _ in range(WARMUP_FRAMES):
            cap.read()
        self._cap = cap
        logger.info(
            "Camera opened – index=%d resolution=%s fps=%d",
            self.camera_index,
            self.resolution,
            self.fps,
        )

    def close(self) -> None:
        """Release the device."""
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Camera closed.")

    def __enter__(self) -> "FingerCamera":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray | None:
        """
        Capture a single frame.

        Returns
        -------
        numpy.ndarray
            BGR image array (H × W × 3, dtype uint8), or *None* on failure.
        """
        if self._cap is None:
            raise AcquisitionError("Camera is not open.  Call open() first.")

        ok, frame = self._cap.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        if self.flip_horizontal:
            frame = cv2.flip(frame, 1)
        return frame

    def frames(self) -> Generator[np.ndarray, None, None]:
        """
        Yield frames until the camera is closed or a read fails.

        Usage::

            with FingerCamera() as cam:
                for frame in cam.frames():
                    controller.tick(frame)
        """
        while self._cap is not None:
            frame = self.read_frame()
            if frame is None:
                logger.error("Camera stopped delivering frames.")
                break
            yield frame
