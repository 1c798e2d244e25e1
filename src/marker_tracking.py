"""
Module 2: Marker Tracking
=========================

Keeps fixed reference markers located from frame to frame so the
pixel-to-centimetre calibration stays valid when the camera shifts.

At setup, the patch around each marker point is captured and its corner
pattern (see corner_detection) stored as the reference. On every tracked
frame, candidate patches are cut out on a grid of offsets around the last
known position and their corner patterns scored against the reference.

State machine per tracker:
    Uninitialized -> Configured (setup) -> Tracking-OK / Tracking-Degraded
    -> Reset

A marker that is not found keeps its last position and its quality
decays by a factor of 0.8 per frame. A successful match resets quality
to the match score. A marker whose reference has no corners can never
be matched and reports quality 0 until the tracker is reset.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial.distance import cdist

try:
    from .corner_detection import (
        CornerDetector,
        CornerFeature,
        RasterRegion,
        as_raster,
        extract_region,
    )
    from .exceptions import ExtractionFailure, InvalidInput
except ImportError:
    from corner_detection import (
        CornerDetector,
        CornerFeature,
        RasterRegion,
        as_raster,
        extract_region,
    )
    from exceptions import ExtractionFailure, InvalidInput

logger = logging.getLogger(__name__)

MATCH_RADIUS_PX = 5.0
QUALITY_DECAY = 0.8


# ============================================================================
# Data Structures
# ============================================================================

@dataclass
class MarkerState:
    """Reference data and current estimate for one marker."""
    index: int
    reference_region: Optional[RasterRegion]
    reference_corners: List[CornerFeature]
    position: Tuple[float, float]
    setup_position: Tuple[float, float]
    quality: float = 1.0
    is_setup: bool = True

    @property
    def matchable(self) -> bool:
        return len(self.reference_corners) > 0


@dataclass
class TrackResult:
    """Outcome of tracking one marker in one frame."""
    index: int
    found: bool
    x: float
    y: float
    quality: float
    score: float = 0.0


@dataclass
class _Candidate:
    score: float = 0.0
    offset: Tuple[int, int] = (0, 0)
    position: Optional[Tuple[float, float]] = None


# ============================================================================
# Corner Pattern Matching
# ============================================================================

def match_corners(
    reference: Sequence[CornerFeature],
    current: Sequence[CornerFeature],
    max_distance: float = MATCH_RADIUS_PX,
) -> float:
    """
    Score how well a current corner pattern reproduces a reference one.

    For each reference corner the nearest current corner is found; if it
    lies closer than ``max_distance`` it contributes exp(-d / 2). The sum
    is divided by the number of reference corners.

    The score is anchored on the reference: extra corners in the current
    pattern cost nothing, so match_corners(a, b) != match_corners(b, a)
    in general.

    Returns:
        Score in [0, 1]; 0 when either pattern is empty
    """
    if len(reference) == 0 or len(current) == 0:
        return 0.0

    ref_pts = np.array([[c.x, c.y] for c in reference], dtype=np.float64)
    cur_pts = np.array([[c.x, c.y] for c in current], dtype=np.float64)

    nearest = cdist(ref_pts, cur_pts).min(axis=1)
    close = nearest < max_distance
    if not np.any(close):
        return 0.0

    total = float(np.exp(-nearest[close] / 2.0).sum())
    return total / len(reference)


# ============================================================================
# Marker Tracker
# ============================================================================

class MarkerTracker:
    """
    Tracks a fixed set of N reference markers by corner-pattern search.

    The same data path serves the single-marker and four-marker setups;
    only ``marker_count`` differs. With ``search_radius=0`` the tracker
    re-extracts in place and only confirms the marker is still there.

    Callers must serialise calls on one tracker; there is no locking.
    """

    def __init__(
        self,
        marker_count: int = 1,
        region_size: int = 120,
        search_radius: int = 50,
        search_step: int = 10,
        match_threshold: float = 0.4,
        corner_detector: Optional[CornerDetector] = None,
    ):
        """
        Args:
            marker_count: Number of points setup_markers expects (1 or 4)
            region_size: Side of the square patch around each marker (px)
            search_radius: Max offset searched around the last position (px)
            search_step: Grid step of the offset search (px)
            match_threshold: Score a candidate must exceed to count as found
            corner_detector: Corner detector (default FAST settings)
        """
        if marker_count < 1:
            raise InvalidInput(f"marker_count must be positive, got {marker_count}")
        if search_step <= 0:
            raise InvalidInput(f"search_step must be positive, got {search_step}")

        self.marker_count = marker_count
        self.region_size = region_size
        self.search_radius = search_radius
        self.search_step = search_step
        self.match_threshold = match_threshold
        self.corner_detector = corner_detector or CornerDetector()

        self.markers: List[MarkerState] = []
        self.is_setup = False
        self._offsets = self._build_offsets()

    def _build_offsets(self) -> List[Tuple[int, int]]:
        """Grid of search offsets, (0, 0) first so ties favour staying put."""
        steps = range(-self.search_radius, self.search_radius + 1, self.search_step)
        offsets = [(0, 0)]
        for dy in steps:
            for dx in steps:
                if (dx, dy) != (0, 0):
                    offsets.append((dx, dy))
        return offsets

    # ------------------------------------------------------------------
    # Setup / reset
    # ------------------------------------------------------------------

    def setup_markers(
        self,
        points: Sequence[Tuple[float, float]],
        frame: Union[RasterRegion, np.ndarray],
    ) -> List[MarkerState]:
        """
        Capture reference patches for the given marker points.

        Args:
            points: Exactly ``marker_count`` (x, y) full-frame positions
            frame: Frame the points were picked on

        Raises:
            InvalidInput: wrong number of points
        """
        points = [(float(p[0]), float(p[1])) for p in points]
        if len(points) != self.marker_count:
            raise InvalidInput(
                f"Exactly {self.marker_count} marker point(s) required, "
                f"got {len(points)}"
            )

        frame = as_raster(frame)
        markers = []
        for index, (x, y) in enumerate(points):
            try:
                region = extract_region(frame, x, y, self.region_size)
                corners = self.corner_detector.detect(region)
            except ExtractionFailure as exc:
                logger.warning(
                    "Marker %d reference extraction failed: %s", index, exc,
                    extra={"event": "marker_setup_failed", "index": index},
                )
                region, corners = None, []

            markers.append(MarkerState(
                index=index,
                reference_region=region,
                reference_corners=corners,
                position=(x, y),
                setup_position=(x, y),
                quality=1.0,
            ))
            logger.info(
                "Marker %d: found %d corners at (%.1f, %.1f)",
                index, len(corners), x, y,
                extra={"event": "marker_setup", "index": index,
                       "corners": len(corners)},
            )

        self.markers = markers
        self.is_setup = True
        return list(self.markers)

    def reset(self):
        """Drop all marker state; setup_markers must be called again."""
        self.markers = []
        self.is_setup = False
        logger.info("Marker tracking reset", extra={"event": "marker_reset"})

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_markers(
        self, frame: Union[RasterRegion, np.ndarray]
    ) -> List[TrackResult]:
        """
        Re-locate every marker in a new frame.

        Returns one TrackResult per marker (empty list before setup).
        Sensing failures never raise; they lower the marker quality.
        """
        if not self.is_setup:
            logger.warning("track_markers called before setup_markers",
                           extra={"event": "marker_not_setup"})
            return []

        frame = as_raster(frame)
        return [self._track_single(frame, marker) for marker in self.markers]

    def _track_single(self, frame: RasterRegion, marker: MarkerState) -> TrackResult:
        x, y = marker.position

        if not marker.matchable:
            marker.quality = 0.0
            return TrackResult(index=marker.index, found=False, x=x, y=y, quality=0.0)

        best = self._search(frame, marker)

        if best.position is not None and best.score > self.match_threshold:
            marker.position = best.position
            marker.quality = best.score
            found = True
        else:
            marker.quality *= QUALITY_DECAY
            found = False

        logger.debug(
            "Marker %d %s at (%.1f, %.1f), score %.3f, quality %.3f",
            marker.index, "found" if found else "not found",
            marker.position[0], marker.position[1], best.score, marker.quality,
            extra={"event": "marker_tracked", "index": marker.index,
                   "found": found, "score": best.score,
                   "quality": marker.quality, "offset": best.offset},
        )

        return TrackResult(
            index=marker.index,
            found=found,
            x=marker.position[0],
            y=marker.position[1],
            quality=marker.quality,
            score=best.score,
        )

    def _search(self, frame: RasterRegion, marker: MarkerState) -> _Candidate:
        """Score every grid offset; the first best-scoring candidate wins."""
        x, y = marker.position
        best = _Candidate()

        for dx, dy in self._offsets:
            cx, cy = x + dx, y + dy
            try:
                region = extract_region(frame, cx, cy, self.region_size)
            except ExtractionFailure:
                continue
            corners = self.corner_detector.detect(region)
            score = match_corners(marker.reference_corners, corners)
            if best.position is None or score > best.score:
                best = _Candidate(score=score, offset=(dx, dy), position=(cx, cy))

        return best

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_tracking(self) -> bool:
        return self.is_setup

    def current_positions(self) -> List[Tuple[float, float]]:
        return [m.position for m in self.markers]

    def tracking_quality(self) -> List[float]:
        return [m.quality for m in self.markers]

    def displacement(self, min_quality: float = 0.0) -> Tuple[float, float]:
        """
        Mean shift of the markers from their setup positions.

        Only markers with quality above ``min_quality`` take part; with
        none qualifying the shift is (0, 0).
        """
        moved = [
            (m.position[0] - m.setup_position[0], m.position[1] - m.setup_position[1])
            for m in self.markers
            if m.matchable and m.quality > min_quality
        ]
        if not moved:
            return (0.0, 0.0)
        mean = np.mean(np.array(moved, dtype=np.float64), axis=0)
        return (float(mean[0]), float(mean[1]))
