#!/usr/bin/env python3
"""
Fingertip PPG – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Tick rate in frames per second (default: 30)
    --camera-index INT   OpenCV camera index (default: 0)
    --no-flip            Disable horizontal mirror of the preview
    --sensitivity STR    Smoothing: low, medium or high (default: medium)
    --age INT            Age used for the heart-rate zone
    --max-hr INT         Maximum heart rate used for the heart-rate zone
    --no-fallback        Fail instead of synthesising a reading
    --seed INT           Seed for synthesised readings
    --headless           Run without display window (log readings only)

Keyboard shortcuts (when a window is open)
------------------------------------------
    q / ESC  – cancel the measurement
"""

from __future__ import annotations

import argparse
import logging
import sys

# Must be set before cv2 is imported so Qt5 uses X11/XWayland instead of
# looking for a Wayland plugin that is not bundled with pip-installed opencv.
import os
os.environ.setdefault("QT_QPA_PLATFORM", "xcb")

import cv2
import numpy as np

from fingertip_ppg.camera import FingerCamera
from fingertip_ppg.errors import PPGError
from fingertip_ppg.metrics import HealthProfile
from fingertip_ppg.session import SessionConfig, SessionController, TickResult
from fingertip_ppg.signal_conditioner import Sensitivity

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("fingertip_ppg")

WINDOW_NAME = "Fingertip PPG"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Heart rate and SpO2 from a fingertip pressed on the camera",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Tick rate in frames per second")
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    parser.add_argument("--no-flip", action="store_true",
                        help="Disable horizontal image flip")
    parser.add_argument("--sensitivity", choices=[s.value for s in Sensitivity],
                        default=Sensitivity.MEDIUM.value,
                        help="Smoothing strength (low smooths most)")
    parser.add_argument("--age", type=int, default=None,
                        help="Age used for the heart-rate zone")
    parser.add_argument("--max-hr", type=int, default=None,
                        help="Maximum heart rate used for the heart-rate zone")
    parser.add_argument("--no-fallback", action="store_true",
                        help="Fail instead of reporting a synthesised reading")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for synthesised readings")
    parser.add_argument("--headless", action="store_true",
                        help="No display window; log readings to stdout only")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

def draw_preview(
    frame: np.ndarray,
    result: TickResult | None,
    controller: SessionController,
) -> np.ndarray:
    """ROI box plus the current readout."""
    annotated = frame.copy()
    h, w = annotated.shape[:2]
    x, y, side, _ = controller.sampler.roi(w, h)
    colour = (0, 200, 0) if result is not None and result.is_live else (0, 0, 220)
    cv2.rectangle(annotated, (x, y), (x + side, y + side), colour, 2)

    if result is None:
        text = "Waiting..."
    elif not result.is_live:
        text = f"{result.state.value}  place finger on lens"
    else:
        hr = f"{result.heart_rate} BPM" if result.heart_rate else "-- BPM"
        o2 = f"{result.oxygen_level}%" if result.oxygen_level else "--%"
        text = f"{result.state.value}  {hr}  SpO2 {o2}  conf {result.confidence_percent:.0f}%"
    cv2.putText(annotated, text, (10, 30), cv2.FONT_HERSHEY_SIMPLEX,
                0.7, (255, 255, 255), 2, cv2.LINE_AA)
    return annotated


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    try:
        config = SessionConfig(
            sensitivity=Sensitivity(args.sensitivity),
            fps=float(args.fps),
            synthesize_on_failure=not args.no_fallback,
            seed=args.seed,
            profile=HealthProfile(age=args.age, max_hr=args.max_hr),
        )
    except ValueError as exc:
        logger.error("Invalid settings: %s", exc)
        return 1

    camera = FingerCamera(
        resolution=(res_w, res_h),
        fps=args.fps,
        flip_horizontal=not args.no_flip,
        camera_index=args.camera_index,
    )
    controller = SessionController(
        config=config,
        on_guidance=lambda message: logger.info(message),
    )

    last_logged = [-1]

    def on_frame(frame: np.ndarray | None, result: TickResult | None) -> None:
        if result is not None and int(result.elapsed) != last_logged[0]:
            last_logged[0] = int(result.elapsed)
            if result.heart_rate:
                logger.info("%5.1fs  %-11s HR=%d  SpO2=%s%%  conf=%.0f%%  finger=%s",
                            result.elapsed, result.state.value, result.heart_rate,
                            result.oxygen_level, result.confidence_percent, result.is_live)
            else:
                logger.info("%5.1fs  %-11s waiting for signal…  finger=%s",
                            result.elapsed, result.state.value, result.is_live)

        if args.headless or frame is None:
            return
        cv2.imshow(WINDOW_NAME, draw_preview(frame, result, controller))
        key = cv2.waitKey(1) & 0xFF
        if key in (ord("q"), 27):          # q or ESC
            logger.info("Measurement cancelled by user.")
            controller.cancel()

    logger.info("Place your fingertip over the camera.  Press 'q' or ESC to cancel.")
    if not args.headless:
        cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
        cv2.resizeWindow(WINDOW_NAME, res_w, res_h)

    try:
        with camera:
            result = controller.run(camera, on_frame=on_frame)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        controller.cancel()
        return 130
    except PPGError as exc:
        logger.error("Measurement failed: %s", exc)
        return 1
    finally:
        controller.shutdown()
        if not args.headless:
            cv2.destroyAllWindows()

    if result is None:
        return 0

    print(f"Heart rate : {result.final_heart_rate} BPM"
          + ("  (synthesised)" if result.synthesized else ""))
    print(f"SpO2       : {result.final_oxygen_level}%")
    if result.zone is not None:
        print(f"Zone       : {result.zone.value}")
    print(f"HRV RMSSD  : {result.hrv_rmssd:.1f} ms")
    return 0


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
