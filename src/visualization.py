"""
Visualization Module
====================

Drawing helpers for inspecting a measurement:

1. Detections: ball / coin boxes with confidence labels
2. Markers: tracked reference markers with a quality bar
3. Ball path: positions collected so far
4. Info overlay: speed, calibration and frame information
"""

from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

try:
    from .detection_clustering import Cluster
    from .marker_tracking import TrackResult
except ImportError:
    from detection_clustering import Cluster
    from marker_tracking import TrackResult


# ============================================================================
# Color Palette
# ============================================================================

COLORS = {
    "ball_golf": (0, 255, 255),     # Yellow (BGR)
    "coin": (255, 200, 0),          # Light blue
    "marker": (255, 0, 255),        # Magenta
    "path": (0, 165, 255),          # Orange
    "quality_good": (0, 255, 0),    # Green
    "quality_fair": (0, 255, 255),  # Yellow
    "quality_poor": (0, 0, 255),    # Red
    "text": (255, 255, 255),        # White
    "text_bg": (0, 0, 0),           # Black
}

QUALITY_GOOD = 0.7
QUALITY_FAIR = 0.3


def quality_color(quality: float) -> Tuple[int, int, int]:
    """Green above 0.7, yellow above 0.3, red otherwise."""
    if quality > QUALITY_GOOD:
        return COLORS["quality_good"]
    if quality > QUALITY_FAIR:
        return COLORS["quality_fair"]
    return COLORS["quality_poor"]


# ============================================================================
# Frame Overlay Drawing
# ============================================================================

class FrameAnnotator:
    """
    Draws annotations on captured frames. Every method returns a new
    image and leaves the input untouched.
    """

    def __init__(self, line_thickness: int = 2, font_scale: float = 0.6):
        self.line_thickness = line_thickness
        self.font_scale = font_scale
        self.font = cv2.FONT_HERSHEY_SIMPLEX

    def draw_detections(
        self,
        frame: np.ndarray,
        detections: Sequence,
        draw_labels: bool = True,
    ) -> np.ndarray:
        """Draw bounding boxes and labels for detections or clusters."""
        annotated = frame.copy()

        for det in detections:
            color = COLORS.get(det.class_name, (128, 128, 128))
            x1, y1, x2, y2 = (int(round(v)) for v in det.bbox.to_xyxy())

            # Bounding box
            cv2.rectangle(
                annotated, (x1, y1), (x2, y2), color, self.line_thickness
            )

            # Center dot
            cx, cy = int(det.center[0]), int(det.center[1])
            cv2.circle(annotated, (cx, cy), 3, color, -1)

            if draw_labels:
                label = f"{det.class_name} {det.confidence * 100:.0f}%"
                if isinstance(det, Cluster) and det.members > 1:
                    label += f" x{det.members}"
                self._draw_label(annotated, label, (x1, max(y1 - 5, 12)), color)

        return annotated

    def draw_markers(
        self,
        frame: np.ndarray,
        markers: List[TrackResult],
        radius: int = 12,
    ) -> np.ndarray:
        """Draw each marker as a ring with its index and a quality bar."""
        annotated = frame.copy()

        for marker in markers:
            x, y = int(round(marker.x)), int(round(marker.y))
            color = quality_color(marker.quality)

            cv2.circle(annotated, (x, y), radius, COLORS["marker"], self.line_thickness)
            if not marker.found:
                cv2.circle(annotated, (x, y), radius + 4, COLORS["quality_poor"], 1)

            self._draw_label(
                annotated, str(marker.index + 1), (x + radius + 4, y), COLORS["marker"]
            )

            # Quality bar under the ring
            bar_w = 2 * radius
            bar_x, bar_y = x - radius, y + radius + 6
            cv2.rectangle(
                annotated, (bar_x, bar_y), (bar_x + bar_w, bar_y + 4),
                COLORS["text_bg"], -1,
            )
            filled = int(bar_w * min(max(marker.quality, 0.0), 1.0))
            if filled > 0:
                cv2.rectangle(
                    annotated, (bar_x, bar_y), (bar_x + filled, bar_y + 4),
                    color, -1,
                )

        return annotated

    def draw_ball_path(
        self,
        frame: np.ndarray,
        positions: Sequence[Optional[Tuple[float, float]]],
    ) -> np.ndarray:
        """Connect the ball positions collected so far; gaps are skipped."""
        annotated = frame.copy()
        points = [
            (int(round(p[0])), int(round(p[1])))
            for p in positions if p is not None
        ]

        for pt1, pt2 in zip(points, points[1:]):
            cv2.line(annotated, pt1, pt2, COLORS["path"], self.line_thickness)

        # Current position: bright dot
        if points:
            cv2.circle(annotated, points[-1], 5, COLORS["ball_golf"], -1)

        return annotated

    def draw_info_overlay(
        self,
        frame: np.ndarray,
        info: Dict[str, str],
        position: str = "top_left",
    ) -> np.ndarray:
        """Draw information text overlay on frame."""
        annotated = frame.copy()
        y_offset = 30

        for key, value in info.items():
            text = f"{key}: {value}"
            text_size = cv2.getTextSize(text, self.font, self.font_scale, 1)[0]

            if position == "top_right":
                x = frame.shape[1] - text_size[0] - 10
            else:
                x = 10

            # Background rectangle
            cv2.rectangle(
                annotated,
                (x - 2, y_offset - text_size[1] - 5),
                (x + text_size[0] + 2, y_offset + 5),
                COLORS["text_bg"],
                -1,
            )
            cv2.putText(
                annotated,
                text,
                (x, y_offset),
                self.font,
                self.font_scale,
                COLORS["text"],
                1,
            )
            y_offset += text_size[1] + 15

        return annotated

    def _draw_label(
        self,
        frame: np.ndarray,
        text: str,
        position: Tuple[int, int],
        color: Tuple[int, int, int],
    ):
        """Draw a text label with background."""
        text_size = cv2.getTextSize(text, self.font, self.font_scale, 1)[0]
        x, y = position
        cv2.rectangle(
            frame,
            (x, y - text_size[1] - 4),
            (x + text_size[0], y + 2),
            COLORS["text_bg"],
            -1,
        )
        cv2.putText(
            frame, text, (x, y), self.font, self.font_scale, color, 1
        )
