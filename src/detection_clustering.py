"""
Module 4: Detection Clustering
==============================

Merges near-duplicate detections of the same class.

Greedy single pass in input order: each detection is compared with the
existing clusters of its class and merged into the FIRST one whose IoU
exceeds the threshold (not the best-overlapping one). Merging takes the
confidence-weighted average of the box and keeps the higher confidence.
A detection that overlaps no cluster starts a new one.

The result depends on input order; this is not confidence-sorted
non-maximum suppression.

Confidence filtering happens in the decoder; clustering only looks at
overlap.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

try:
    from .object_detection import BoundingBox, Detection
except ImportError:
    from object_detection import BoundingBox, Detection

logger = logging.getLogger(__name__)

DEFAULT_IOU_THRESHOLD = 0.3


@dataclass
class Cluster:
    """One or more merged detections of the same class."""
    class_name: str
    confidence: float
    bbox: BoundingBox
    class_id: int = -1
    members: int = 1
    weight: float = 0.0

    @property
    def center(self) -> Tuple[float, float]:
        return self.bbox.center

    @classmethod
    def from_detection(cls, detection: Detection) -> "Cluster":
        b = detection.bbox
        return cls(
            class_name=detection.class_name,
            confidence=detection.confidence,
            bbox=BoundingBox(b.x, b.y, b.width, b.height),
            class_id=detection.class_id,
            members=1,
            weight=detection.confidence,
        )

    def merge(self, detection: Detection):
        """Fold a detection into the cluster (confidence-weighted box)."""
        w_old, w_new = self.weight, detection.confidence
        total = w_old + w_new
        a, b = self.bbox, detection.bbox
        if total > 0:
            self.bbox = BoundingBox(
                x=(a.x * w_old + b.x * w_new) / total,
                y=(a.y * w_old + b.y * w_new) / total,
                width=(a.width * w_old + b.width * w_new) / total,
                height=(a.height * w_old + b.height * w_new) / total,
            )
        self.confidence = max(self.confidence, detection.confidence)
        self.weight = total
        self.members += 1


Boxed = Union[Detection, Cluster, BoundingBox]


def _box(item: Boxed) -> BoundingBox:
    return item if isinstance(item, BoundingBox) else item.bbox


def compute_iou(a: Boxed, b: Boxed) -> float:
    """Intersection over Union of two axis-aligned boxes."""
    box1, box2 = _box(a), _box(b)
    x1 = max(box1.x, box2.x)
    y1 = max(box1.y, box2.y)
    x2 = min(box1.x + box1.width, box2.x + box2.width)
    y2 = min(box1.y + box1.height, box2.y + box2.height)

    intersection = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    union = box1.area + box2.area - intersection

    if union <= 0:
        return 0.0
    return intersection / union


def cluster_detections(
    detections: Sequence[Detection],
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
) -> List[Cluster]:
    """
    Greedy, order-dependent clustering of same-class detections.

    Args:
        detections: Decoded detections (already above the confidence gate)
        iou_threshold: Overlap a detection must exceed to join a cluster

    Returns:
        Clusters in the order they were seeded
    """
    clusters: List[Cluster] = []

    for det in detections:
        target = None
        for cluster in clusters:
            if cluster.class_name != det.class_name:
                continue
            if compute_iou(cluster, det) > iou_threshold:
                target = cluster
                break

        if target is None:
            clusters.append(Cluster.from_detection(det))
        else:
            target.merge(det)

    logger.debug(
        "Clustered %d detections into %d groups",
        len(detections), len(clusters),
        extra={"event": "cluster", "detections": len(detections),
               "clusters": len(clusters)},
    )
    return clusters
