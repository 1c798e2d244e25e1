"""
Tests for corner-pattern matching and the marker tracker.

Run:
    python -m pytest tests/test_marker_tracking.py -v
"""

import math

import pytest

MARKER_POINT = (60, 60)


def _tracker(**kwargs):
    from marker_tracking import MarkerTracker
    params = dict(region_size=40, search_radius=30, search_step=10)
    params.update(kwargs)
    return MarkerTracker(**params)


# ============================================================================
# 1. Pattern Matching
# ============================================================================

class TestMatchCorners:
    """Reference-anchored corner pattern score."""

    def _corners(self, points):
        from corner_detection import CornerFeature
        return [CornerFeature(x, y, 100.0) for x, y in points]

    def test_identical_patterns_score_one(self):
        from marker_tracking import match_corners
        pattern = self._corners([(5, 5), (20, 8), (12, 30)])
        assert match_corners(pattern, pattern) == pytest.approx(1.0)

    def test_empty_patterns_score_zero(self):
        from marker_tracking import match_corners
        pattern = self._corners([(5, 5)])
        assert match_corners([], pattern) == 0.0
        assert match_corners(pattern, []) == 0.0

    def test_distance_weighting(self):
        from marker_tracking import match_corners
        reference = self._corners([(10, 10)])
        current = self._corners([(12, 10)])
        assert match_corners(reference, current) == pytest.approx(math.exp(-1.0))

    def test_far_corners_do_not_count(self):
        from marker_tracking import match_corners
        reference = self._corners([(10, 10)])
        assert match_corners(reference, self._corners([(15, 10)])) == 0.0
        assert match_corners(reference, self._corners([(40, 40)])) == 0.0

    def test_score_in_unit_interval(self):
        from marker_tracking import match_corners
        reference = self._corners([(0, 0), (10, 0), (0, 10)])
        current = self._corners([(1, 0), (10, 3), (30, 30), (0, 10)])
        score = match_corners(reference, current)
        assert 0.0 <= score <= 1.0

    def test_asymmetric(self):
        from marker_tracking import match_corners
        one = self._corners([(10, 10)])
        two = self._corners([(10, 10), (40, 40)])
        assert match_corners(one, two) == pytest.approx(1.0)
        assert match_corners(two, one) == pytest.approx(0.5)


# ============================================================================
# 2. Setup
# ============================================================================

class TestMarkerSetup:

    def test_setup_captures_reference(self, marker_frame):
        tracker = _tracker()
        markers = tracker.setup_markers([MARKER_POINT], marker_frame)
        assert tracker.is_tracking
        assert len(markers) == 1
        assert len(markers[0].reference_corners) == 5
        assert markers[0].quality == 1.0
        assert markers[0].position == (60.0, 60.0)

    def test_wrong_point_count_rejected(self, marker_frame):
        from exceptions import InvalidInput
        tracker = _tracker(marker_count=4)
        with pytest.raises(InvalidInput):
            tracker.setup_markers([MARKER_POINT], marker_frame)
        assert not tracker.is_tracking

    def test_invalid_parameters(self):
        from exceptions import InvalidInput
        with pytest.raises(InvalidInput):
            _tracker(marker_count=0)
        with pytest.raises(InvalidInput):
            _tracker(search_step=0)

    def test_four_marker_setup(self, marker_frame):
        tracker = _tracker(marker_count=4)
        points = [(60, 60), (150, 30), (150, 90), (30, 100)]
        markers = tracker.setup_markers(points, marker_frame)
        assert [m.index for m in markers] == [0, 1, 2, 3]
        assert markers[0].matchable
        assert not markers[1].matchable

    def test_reset(self, marker_frame):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], marker_frame)
        tracker.reset()
        assert not tracker.is_tracking
        assert tracker.current_positions() == []
        assert tracker.track_markers(marker_frame) == []


# ============================================================================
# 3. Tracking
# ============================================================================

class TestMarkerTracking:

    def test_track_before_setup_is_empty(self, marker_frame):
        assert _tracker().track_markers(marker_frame) == []

    def test_static_scene_stays_put(self, marker_frame):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], marker_frame)
        results = tracker.track_markers(marker_frame)
        assert len(results) == 1
        assert results[0].found
        assert (results[0].x, results[0].y) == (60.0, 60.0)
        assert results[0].quality == pytest.approx(1.0)
        assert tracker.displacement() == (0.0, 0.0)

    def test_follows_shifted_pattern(self, marker_frame, shifted_marker_frame):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], marker_frame)
        result = tracker.track_markers(shifted_marker_frame)[0]
        assert result.found
        assert (result.x, result.y) == (80.0, 60.0)
        assert result.quality == pytest.approx(1.0)
        assert tracker.displacement() == pytest.approx((20.0, 0.0))

    def test_lost_marker_keeps_position_and_decays(
        self, marker_frame, blank_frame
    ):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], marker_frame)

        first = tracker.track_markers(blank_frame)[0]
        assert not first.found
        assert (first.x, first.y) == (60.0, 60.0)
        assert first.quality == pytest.approx(0.8)

        second = tracker.track_markers(blank_frame)[0]
        assert second.quality == pytest.approx(0.64)

        recovered = tracker.track_markers(marker_frame)[0]
        assert recovered.found
        assert recovered.quality == pytest.approx(1.0)

    def test_quality_stays_in_unit_interval(self, marker_frame, blank_frame):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], marker_frame)
        for frame in (marker_frame, blank_frame, blank_frame, marker_frame):
            for result in tracker.track_markers(frame):
                assert 0.0 <= result.quality <= 1.0

    def test_marker_without_corners_never_found(self, blank_frame, marker_frame):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], blank_frame)
        result = tracker.track_markers(marker_frame)[0]
        assert not result.found
        assert result.quality == 0.0
        assert tracker.tracking_quality() == [0.0]

    def test_marker_outside_frame(self, marker_frame):
        tracker = _tracker()
        markers = tracker.setup_markers([(-500, -500)], marker_frame)
        assert markers[0].reference_region is None
        result = tracker.track_markers(marker_frame)[0]
        assert not result.found
        assert result.quality == 0.0

    def test_in_place_variant(self, marker_frame, shifted_marker_frame):
        tracker = _tracker(search_radius=0)
        tracker.setup_markers([MARKER_POINT], marker_frame)
        assert tracker.track_markers(marker_frame)[0].found
        result = tracker.track_markers(shifted_marker_frame)[0]
        assert not result.found
        assert (result.x, result.y) == (60.0, 60.0)

    def test_displacement_ignores_low_quality(self, marker_frame, shifted_marker_frame):
        tracker = _tracker()
        tracker.setup_markers([MARKER_POINT], marker_frame)
        tracker.track_markers(shifted_marker_frame)
        assert tracker.displacement(min_quality=0.5) == pytest.approx((20.0, 0.0))
        assert tracker.displacement(min_quality=1.0) == (0.0, 0.0)
