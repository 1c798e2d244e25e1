"""
Golf Putting Speed Measurement
==============================

A computer vision pipeline that measures the speed of a putted golf ball
from a short burst of still frames taken by a single camera.

Modules:
    - corner_detection: FAST corner extraction from image regions
    - marker_tracking: Reference marker tracking by corner-pattern search
    - object_detection: Decoding of raw detector output (ball, coin)
    - detection_clustering: Merging of overlapping detections
    - speed_calculation: Pixel-to-cm calibration and speed
    - visualization: Overlay detections, markers and measurement info
    - pipeline: End-to-end integrated pipeline
"""

__version__ = "1.0.0"
