"""
Fingertip PPG – heart rate and SpO2 from a fingertip pressed on a camera.

Cover the lens (and torch) with a fingertip; the pipeline samples the mean
colour of the frame centre, rejects non-finger input, and turns the green
channel's pulsatile component into a smoothed BPM estimate alongside an
oxygen-saturation estimate and a confidence score.
"""

__version__ = "0.1.0"
__author__ = "fingertip_ppg"
