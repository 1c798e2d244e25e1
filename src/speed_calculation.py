"""
Module 5: Calibration & Speed
=============================

Converts tracked pixel positions into a physical ball speed.

Calibration:
    ratio [cm / px] = reference physical diameter / reference pixel diameter

The reference is normally a coin of known size lying in the putting
plane (US quarter, 2.4 cm), or two tracked markers a known distance
apart. Until a calibration call succeeds the ratio is a placeholder.

Speed (first and last usable sample only):
    distance_cm = |p_last - p_first| * ratio
    speed_mps   = distance_cm / elapsed_s / 100

Fewer than two usable samples, or a non-positive elapsed time, give a
speed of 0 rather than an error: frame timestamps from the capture side
are not guaranteed to be strictly increasing.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

try:
    from .exceptions import InvalidCalibration
    from .object_detection import Detection
except ImportError:
    from exceptions import InvalidCalibration
    from object_detection import Detection

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_PIXEL_TO_CM_RATIO = 0.1   # placeholder: 1 px = 0.1 cm
COIN_DIAMETER_CM = 2.4            # US quarter
CM_PER_M = 100.0
MS_PER_S = 1000.0


# ============================================================================
# Data Structures
# ============================================================================

@dataclass
class TimestampedPosition:
    """Ball position in one frame; x/y are None when the ball was missed."""
    x: Optional[float]
    y: Optional[float]
    timestamp_ms: float

    @property
    def usable(self) -> bool:
        return self.x is not None and self.y is not None


@dataclass
class SpeedMeasurement:
    """Breakdown of one speed calculation."""
    speed_mps: float
    distance_px: float = 0.0
    distance_cm: float = 0.0
    elapsed_s: float = 0.0
    samples_used: int = 0


def pixel_distance(x1: float, y1: float, x2: float, y2: float) -> float:
    """Euclidean distance in pixels."""
    return math.hypot(x2 - x1, y2 - y1)


# ============================================================================
# Speed Calculator
# ============================================================================

class SpeedCalculator:
    """
    Holds the pixel-to-centimetre ratio and turns ball samples into m/s.

    One instance is shared by the whole measurement session; the ratio
    is only changed by the explicit calibration calls.
    """

    def __init__(
        self,
        default_ratio: float = DEFAULT_PIXEL_TO_CM_RATIO,
        reference_diameter_cm: float = COIN_DIAMETER_CM,
    ):
        if default_ratio <= 0:
            raise InvalidCalibration(
                f"Default ratio must be positive, got {default_ratio}"
            )
        self.default_ratio = default_ratio
        self.reference_diameter_cm = reference_diameter_cm
        self.ratio = default_ratio
        self.calibrated = False

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def set_calibration(
        self,
        reference_pixel_diameter: float,
        reference_physical_diameter: Optional[float] = None,
    ) -> float:
        """
        Set the ratio from a reference object of known size.

        Args:
            reference_pixel_diameter: Measured diameter in pixels
            reference_physical_diameter: True diameter in cm
                (defaults to the configured reference, a US quarter)

        Returns:
            The new ratio in cm per pixel

        Raises:
            InvalidCalibration: if either diameter is not positive
        """
        if reference_physical_diameter is None:
            reference_physical_diameter = self.reference_diameter_cm
        if not reference_pixel_diameter > 0:
            raise InvalidCalibration(
                f"Reference pixel diameter must be greater than zero, "
                f"got {reference_pixel_diameter}"
            )
        if not reference_physical_diameter > 0:
            raise InvalidCalibration(
                f"Reference physical diameter must be greater than zero, "
                f"got {reference_physical_diameter}"
            )

        self.ratio = reference_physical_diameter / reference_pixel_diameter
        self.calibrated = True
        logger.info(
            "Calibration set: 1 pixel = %.4f cm", self.ratio,
            extra={"event": "calibration_set", "ratio": self.ratio,
                   "pixel_diameter": reference_pixel_diameter,
                   "physical_diameter": reference_physical_diameter},
        )
        return self.ratio

    def calibrate_from_detection(
        self,
        detection: Detection,
        physical_diameter: Optional[float] = None,
    ) -> float:
        """Calibrate from a detected round reference (mean of box sides)."""
        pixel_diameter = (detection.bbox.width + detection.bbox.height) / 2.0
        return self.set_calibration(pixel_diameter, physical_diameter)

    def calibrate_from_markers(
        self,
        first: Tuple[float, float],
        second: Tuple[float, float],
        physical_distance: float,
    ) -> float:
        """Calibrate from two markers whose real separation is known (cm)."""
        return self.set_calibration(
            pixel_distance(first[0], first[1], second[0], second[1]),
            physical_distance,
        )

    def reset(self):
        """Back to the placeholder ratio."""
        self.ratio = self.default_ratio
        self.calibrated = False

    # ------------------------------------------------------------------
    # Speed
    # ------------------------------------------------------------------

    def measure(self, samples: Sequence[TimestampedPosition]) -> SpeedMeasurement:
        """Speed with the distance/time breakdown (see calculate_speed)."""
        usable = [s for s in (samples or []) if s.usable]
        if len(usable) < 2:
            logger.warning(
                "Ball not detected in enough frames (%d usable)", len(usable),
                extra={"event": "speed_insufficient_samples",
                       "usable": len(usable)},
            )
            return SpeedMeasurement(speed_mps=0.0, samples_used=len(usable))

        first, last = usable[0], usable[-1]
        distance_px = pixel_distance(first.x, first.y, last.x, last.y)
        distance_cm = distance_px * self.ratio
        elapsed_s = (last.timestamp_ms - first.timestamp_ms) / MS_PER_S

        if elapsed_s <= 0:
            logger.warning(
                "Invalid time difference %.3f s", elapsed_s,
                extra={"event": "speed_invalid_time", "elapsed_s": elapsed_s},
            )
            return SpeedMeasurement(
                speed_mps=0.0, distance_px=distance_px,
                distance_cm=distance_cm, elapsed_s=elapsed_s,
                samples_used=len(usable),
            )

        speed_mps = distance_cm / elapsed_s / CM_PER_M
        logger.info(
            "Speed %.3f m/s over %.1f cm in %.3f s",
            speed_mps, distance_cm, elapsed_s,
            extra={"event": "speed", "speed_mps": speed_mps,
                   "distance_cm": distance_cm, "elapsed_s": elapsed_s},
        )
        return SpeedMeasurement(
            speed_mps=speed_mps,
            distance_px=distance_px,
            distance_cm=distance_cm,
            elapsed_s=elapsed_s,
            samples_used=len(usable),
        )

    def calculate_speed(self, samples: Sequence[TimestampedPosition]) -> float:
        """
        Ball speed in m/s from the first and last usable samples.

        Returns 0.0 for fewer than two usable samples or a non-positive
        elapsed time.
        """
        return self.measure(samples).speed_mps
