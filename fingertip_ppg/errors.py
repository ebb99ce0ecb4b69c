"""Exceptions raised by the measurement session."""

from __future__ import annotations


class PPGError(RuntimeError):
    """Base class for session-level failures."""


class AcquisitionError(PPGError):
    """No frame could be obtained from the camera collaborator."""


class InsufficientSignal(PPGError):
    """A session ended without enough valid heart-rate estimates."""

    def __init__(self, accepted: int) -> None:
        super().__init__(
            f"Session ended with {accepted} valid heart-rate estimate(s); "
            "at least 2 are required."
        )
        self.accepted = accepted
