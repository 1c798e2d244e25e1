"""
Tests for IoU and greedy detection clustering.

Run:
    python -m pytest tests/test_detection_clustering.py -v
"""

import pytest


def det(x, y, w, h, conf=0.9, name="ball_golf"):
    from object_detection import BoundingBox, Detection
    return Detection(class_name=name, confidence=conf, bbox=BoundingBox(x, y, w, h))


# ============================================================================
# 1. IoU
# ============================================================================

class TestComputeIoU:

    def test_identical(self):
        from detection_clustering import compute_iou
        a = det(10, 10, 50, 50)
        assert compute_iou(a, a) == pytest.approx(1.0)

    def test_disjoint(self):
        from detection_clustering import compute_iou
        assert compute_iou(det(0, 0, 10, 10), det(20, 20, 10, 10)) == 0.0

    def test_touching_edges(self):
        from detection_clustering import compute_iou
        assert compute_iou(det(0, 0, 10, 10), det(10, 0, 10, 10)) == 0.0

    def test_partial_overlap(self):
        from detection_clustering import compute_iou
        # 50x100 overlap, union 150x100
        assert compute_iou(det(0, 0, 100, 100), det(50, 0, 100, 100)) == pytest.approx(1 / 3)

    def test_symmetric_and_bounded(self):
        from detection_clustering import compute_iou
        boxes = [det(0, 0, 30, 20), det(5, 5, 40, 10), det(-10, 2, 15, 50)]
        for a in boxes:
            for b in boxes:
                iou = compute_iou(a, b)
                assert 0.0 <= iou <= 1.0
                assert iou == pytest.approx(compute_iou(b, a))

    def test_zero_area(self):
        from detection_clustering import compute_iou
        assert compute_iou(det(5, 5, 0, 0), det(5, 5, 0, 0)) == 0.0

    def test_accepts_bounding_boxes(self):
        from detection_clustering import compute_iou
        from object_detection import BoundingBox
        a = BoundingBox(0, 0, 10, 10)
        assert compute_iou(a, BoundingBox(0, 0, 10, 5)) == pytest.approx(0.5)


# ============================================================================
# 2. Clustering
# ============================================================================

class TestClusterDetections:

    def test_empty(self):
        from detection_clustering import cluster_detections
        assert cluster_detections([]) == []

    def test_weighted_merge(self):
        from detection_clustering import cluster_detections
        clusters = cluster_detections([
            det(0, 0, 100, 100, conf=0.9),
            det(0, 0, 100, 50, conf=0.6),
        ])
        assert len(clusters) == 1
        c = clusters[0]
        assert c.members == 2
        assert c.confidence == pytest.approx(0.9)
        assert c.bbox.height == pytest.approx(80.0)
        assert c.bbox.width == pytest.approx(100.0)
        assert c.weight == pytest.approx(1.5)

    def test_threshold_is_strict(self):
        from detection_clustering import cluster_detections
        pair = [det(0, 0, 10, 10), det(0, 0, 10, 5)]  # IoU exactly 0.5
        assert len(cluster_detections(pair, iou_threshold=0.5)) == 2
        assert len(cluster_detections(pair, iou_threshold=0.49)) == 1

    def test_classes_never_merge(self):
        from detection_clustering import cluster_detections
        clusters = cluster_detections([
            det(0, 0, 50, 50, name="ball_golf"),
            det(0, 0, 50, 50, name="coin"),
        ])
        assert [c.class_name for c in clusters] == ["ball_golf", "coin"]

    def test_joins_first_overlapping_cluster(self):
        from detection_clustering import cluster_detections
        a = det(0, 0, 100, 100)
        b = det(60, 0, 100, 100)       # IoU(a, b) = 0.25, separate
        overlap = det(40, 0, 100, 100)  # IoU 0.43 with a, 0.67 with b
        clusters = cluster_detections([a, b, overlap])
        assert len(clusters) == 2
        assert clusters[0].members == 2
        assert clusters[1].members == 1

    def test_order_dependent(self):
        from detection_clustering import cluster_detections
        a = det(0, 0, 100, 100)
        b = det(60, 0, 100, 100)
        overlap = det(40, 0, 100, 100)
        forward = cluster_detections([a, b, overlap])
        reordered = cluster_detections([overlap, a, b])
        assert [c.members for c in forward] != [c.members for c in reordered]

    def test_confidence_never_drops(self):
        from detection_clustering import cluster_detections
        dets = [det(0, 0, 50, 50, conf=0.4), det(2, 2, 50, 50, conf=0.95),
                det(1, 1, 50, 50, conf=0.5)]
        clusters = cluster_detections(dets)
        assert len(clusters) == 1
        assert clusters[0].confidence == pytest.approx(0.95)
        assert clusters[0].members == 3

    def test_inputs_not_modified(self):
        from detection_clustering import cluster_detections
        first = det(0, 0, 100, 100, conf=0.9)
        cluster_detections([first, det(0, 0, 100, 50, conf=0.6)])
        assert first.bbox.height == 100


class TestDecodeAndCluster:
    """Raw rows through the decoder and into clusters."""

    def test_four_rows_two_clusters(self):
        from detection_clustering import cluster_detections
        from object_detection import DetectionDecoder, Letterbox

        def row(x, y, w, h, obj, scores):
            return [x / 640, (y + 80) / 640, w / 640, h / 640, obj] + list(scores)

        rows = [
            row(300, 200, 40, 40, 0.9, (0.9, 0.1)),   # ball
            row(304, 202, 40, 40, 0.8, (0.9, 0.1)),   # same ball, shifted
            row(500, 400, 24, 24, 0.9, (0.1, 0.9)),   # coin
            row(100, 100, 30, 30, 0.2, (0.5, 0.1)),   # below threshold
        ]
        dets = DetectionDecoder().decode(rows, 640, 480, Letterbox.fit(640, 480))
        assert len(dets) == 3

        clusters = cluster_detections(dets)
        assert [c.class_name for c in clusters] == ["ball_golf", "coin"]
        ball = clusters[0]
        assert ball.members == 2
        assert 300 < ball.center[0] < 304
        assert 200 < ball.center[1] < 202

    def test_four_rows_one_cluster(self):
        from detection_clustering import cluster_detections
        from object_detection import DetectionDecoder, Letterbox

        def row(x, y, w, h, obj, scores):
            return [x / 640, (y + 80) / 640, w / 640, h / 640, obj] + list(scores)

        rows = [
            row(300, 200, 40, 40, 0.9, (0.9, 0.1)),   # ball, 0.81
            row(100, 100, 30, 30, 0.1, (0.9, 0.1)),   # 0.09, dropped
            row(306, 204, 40, 40, 0.7, (0.8, 0.2)),   # same ball, 0.56
            row(500, 400, 24, 24, 0.3, (0.5, 0.4)),   # 0.15, dropped
        ]
        dets = DetectionDecoder().decode(rows, 640, 480, Letterbox.fit(640, 480))
        assert len(dets) == 2
        assert {d.class_name for d in dets} == {"ball_golf"}

        clusters = cluster_detections(dets)
        assert len(clusters) == 1
        ball = clusters[0]
        assert ball.members == 2
        assert ball.confidence == pytest.approx(0.81)
        assert 300 < ball.center[0] < 306
        assert 200 < ball.center[1] < 204
