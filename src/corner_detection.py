"""
Module 1: Corner Feature Extraction
===================================

FAST-style corner detector used to fingerprint the patch around each
reference marker.

Algorithm (per interior pixel):
    1. Luminance I = 0.299 R + 0.587 G + 0.114 B
    2. Sample 16 points on a Bresenham circle of radius 3
    3. Walk the circle once, counting contiguous points that are
       brighter than I + t or darker than I - t
    4. The pixel is a corner as soon as either run reaches N points
       (default 9 of 16); its strength is the largest intensity delta
       inside that run

The walk does not wrap around the circle, so a run that straddles the
start point is counted as two shorter runs.

The implementation is vectorised: the 16 circle samples are taken as
shifted views of the whole luminance image and the run counters are
updated for every pixel at once.
"""

import logging
from dataclasses import dataclass
from typing import List, Union

import cv2
import numpy as np

try:
    from .exceptions import ExtractionFailure, InvalidInput
except ImportError:
    from exceptions import ExtractionFailure, InvalidInput

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

# (dx, dy) offsets of the radius-3 Bresenham circle, clockwise from the top
FAST_CIRCLE = np.array([
    [0, -3], [1, -3], [2, -2], [3, -1], [3, 0], [3, 1], [2, 2], [1, 3],
    [0, 3], [-1, 3], [-2, 2], [-3, 1], [-3, 0], [-3, -1], [-2, -2], [-1, -3],
], dtype=np.int64)

CIRCLE_RADIUS = 3
MIN_REGION_SIZE = 2 * CIRCLE_RADIUS + 1  # 7x7

DEFAULT_THRESHOLD = 20.0
DEFAULT_CONTIGUOUS = 9
DEFAULT_MAX_CORNERS = 20

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


# ============================================================================
# Data Structures
# ============================================================================

class RasterRegion:
    """
    A rectangular block of pixels in RGB or RGBA channel order.

    The pixel array is copied and marked read-only, so a region captured
    as a marker reference cannot change under the tracker.
    """

    def __init__(self, pixels: np.ndarray):
        """
        Args:
            pixels: (H, W, 3) or (H, W, 4) array, row-major, RGB(A)
        """
        pixels = np.asarray(pixels)
        if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise InvalidInput(
                f"RasterRegion expects (H, W, 3|4) pixels, got {pixels.shape}"
            )
        self.pixels = np.array(pixels, copy=True)
        self.pixels.setflags(write=False)

    @classmethod
    def from_bgr(cls, frame: np.ndarray) -> "RasterRegion":
        """Wrap an OpenCV BGR(A) frame, converting to RGB(A) order."""
        if frame.ndim == 3 and frame.shape[2] == 4:
            return cls(cv2.cvtColor(frame, cv2.COLOR_BGRA2RGBA))
        return cls(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    def luminance(self) -> np.ndarray:
        """(H, W) float32 luminance image."""
        rgb = self.pixels[:, :, :3].astype(np.float32)
        return rgb @ LUMA_WEIGHTS

    def __repr__(self):
        return f"RasterRegion({self.width}x{self.height}x{self.channels})"


@dataclass(frozen=True)
class CornerFeature:
    """A corner position local to its region, with its response strength."""
    x: int
    y: int
    strength: float


def as_raster(frame: Union[RasterRegion, np.ndarray]) -> RasterRegion:
    """Accept either a RasterRegion or an RGB(A) array."""
    if isinstance(frame, RasterRegion):
        return frame
    return RasterRegion(frame)


# ============================================================================
# Region Extraction
# ============================================================================

def _round_half_up(value: float) -> int:
    return int(np.floor(value + 0.5))


def extract_region(
    frame: Union[RasterRegion, np.ndarray],
    center_x: float,
    center_y: float,
    region_size: int,
) -> RasterRegion:
    """
    Cut a square window of ``region_size`` pixels centred on a point.

    The window is clamped to the frame, so near an edge the region is
    smaller than requested.

    Raises:
        ExtractionFailure: if nothing of the window lies inside the frame
    """
    frame = as_raster(frame)
    half = region_size // 2

    start_x = max(0, _round_half_up(center_x - half))
    start_y = max(0, _round_half_up(center_y - half))
    end_x = min(frame.width, _round_half_up(center_x + half))
    end_y = min(frame.height, _round_half_up(center_y + half))

    if end_x <= start_x or end_y <= start_y:
        raise ExtractionFailure(
            f"Region at ({center_x:.1f}, {center_y:.1f}) size {region_size} "
            f"lies outside the {frame.width}x{frame.height} frame"
        )

    return RasterRegion(frame.pixels[start_y:end_y, start_x:end_x])


# ============================================================================
# FAST Corner Detection
# ============================================================================

def detect_corners(
    region: Union[RasterRegion, np.ndarray],
    threshold: float = DEFAULT_THRESHOLD,
    contiguous: int = DEFAULT_CONTIGUOUS,
    max_corners: int = DEFAULT_MAX_CORNERS,
) -> List[CornerFeature]:
    """
    Detect FAST-style corners in a region.

    Args:
        region: Region to analyse (RGB or RGBA)
        threshold: Intensity delta a circle point must exceed
        contiguous: Run length that makes a corner
        max_corners: Cap on the number of corners returned

    Returns:
        Corners sorted by descending strength, at most ``max_corners``.
        Regions smaller than 7x7 give an empty list.
    """
    if region is None:
        return []
    region = as_raster(region)
    height, width = region.height, region.width
    if width < MIN_REGION_SIZE or height < MIN_REGION_SIZE:
        return []

    gray = region.luminance()
    r = CIRCLE_RADIUS
    inner_h, inner_w = height - 2 * r, width - 2 * r
    center = gray[r:height - r, r:width - r]

    # diffs[i] = circle sample i minus centre, for every interior pixel
    diffs = np.empty((len(FAST_CIRCLE), inner_h, inner_w), dtype=np.float32)
    for i, (dx, dy) in enumerate(FAST_CIRCLE):
        diffs[i] = gray[r + dy:r + dy + inner_h, r + dx:r + dx + inner_w] - center

    brighter = diffs > threshold
    darker = -diffs > threshold

    run_bright = np.zeros((inner_h, inner_w), dtype=np.int32)
    run_dark = np.zeros((inner_h, inner_w), dtype=np.int32)
    found = np.zeros((inner_h, inner_w), dtype=bool)
    strength = np.zeros((inner_h, inner_w), dtype=np.float32)

    for i in range(len(FAST_CIRCLE)):
        run_bright = np.where(brighter[i], run_bright + 1, 0)
        run_dark = np.where(darker[i], run_dark + 1, 0)

        if i + 1 < contiguous:
            continue

        window = diffs[i + 1 - contiguous:i + 1]
        new_bright = ~found & (run_bright >= contiguous)
        new_dark = ~found & (run_dark >= contiguous)

        if new_bright.any():
            strength[new_bright] = window.max(axis=0)[new_bright]
        if new_dark.any():
            strength[new_dark] = (-window).max(axis=0)[new_dark]
        found |= new_bright | new_dark

    ys, xs = np.nonzero(found)
    if len(xs) == 0:
        return []

    scores = strength[ys, xs]
    # Stable sort keeps row-major scan order among equal strengths
    order = np.argsort(-scores, kind="stable")[:max_corners]

    return [
        CornerFeature(
            x=int(xs[k]) + r, y=int(ys[k]) + r, strength=float(scores[k])
        )
        for k in order
    ]


class CornerDetector:
    """Bundles the FAST tunables so trackers can share one configuration."""

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        contiguous: int = DEFAULT_CONTIGUOUS,
        max_corners: int = DEFAULT_MAX_CORNERS,
    ):
        if not 1 <= contiguous <= len(FAST_CIRCLE):
            raise InvalidInput(
                f"contiguous must be in 1..{len(FAST_CIRCLE)}, got {contiguous}"
            )
        self.threshold = threshold
        self.contiguous = contiguous
        self.max_corners = max_corners

    def detect(self, region: Union[RasterRegion, np.ndarray]) -> List[CornerFeature]:
        return detect_corners(
            region,
            threshold=self.threshold,
            contiguous=self.contiguous,
            max_corners=self.max_corners,
        )
