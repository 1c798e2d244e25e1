"""
Module 3: Object Detection (Ball & Coin)
========================================

Turns the raw output of a YOLO-style detector into bounding boxes in
original-image pixels. The network itself runs elsewhere; this module
only prepares its input geometry and decodes what it returns.

Raw row layout (normalised to the model's square input):
    [cx, cy, w, h, obj_conf, class_conf_0, class_conf_1, ...]

Decoding steps per row:
1. class_conf, class_id = max / argmax of the class scores
2. combined confidence = obj_conf * class_conf, rows below the
   threshold are dropped
3. centre/size -> model-input pixels -> minus letterbox offset
   -> scaled by original_dim / render_dim
4. boxes lying wholly in the padding are dropped
5. output is top-left anchored with x, y clamped to >= 0

Class indices beyond the label table are kept as ``unknown_<idx>`` so
the per-class totals stay auditable.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

try:
    from .exceptions import DecodeFormatError, InvalidInput
except ImportError:
    from exceptions import DecodeFormatError, InvalidInput

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

MODEL_INPUT_SIZE = 640
DEFAULT_CLASS_NAMES = ("ball_golf", "coin")
DEFAULT_CONFIDENCE_THRESHOLD = 0.2
LETTERBOX_PAD_VALUE = 114

# cx, cy, w, h, obj_conf and at least one class score
MIN_ROW_LENGTH = 6


# ============================================================================
# Data Structures
# ============================================================================

@dataclass
class BoundingBox:
    """Axis-aligned box, top-left anchored, in original-image pixels."""
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def to_xyxy(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass
class Detection:
    """A single decoded detection."""
    class_name: str
    confidence: float
    bbox: BoundingBox
    class_id: int = -1

    @property
    def center(self) -> Tuple[float, float]:
        return self.bbox.center

    def __repr__(self):
        return (
            f"Detection({self.class_name}, conf={self.confidence:.2f}, "
            f"bbox=({self.bbox.x:.1f}, {self.bbox.y:.1f}, "
            f"{self.bbox.width:.1f}, {self.bbox.height:.1f}))"
        )


@dataclass
class Letterbox:
    """
    Placement of the original image inside the square model input.

    ``offset_x``/``offset_y`` are the padding before the image and
    ``render_width``/``render_height`` the size the image was resized to,
    all in model-input pixels.
    """
    offset_x: float
    offset_y: float
    render_width: float
    render_height: float
    input_size: int = MODEL_INPUT_SIZE

    @classmethod
    def fit(
        cls, image_width: int, image_height: int,
        input_size: int = MODEL_INPUT_SIZE,
    ) -> "Letterbox":
        """Aspect-preserving fit of an image into the square input."""
        if image_width <= 0 or image_height <= 0:
            raise InvalidInput(
                f"Image size must be positive, got {image_width}x{image_height}"
            )
        scale = min(input_size / image_width, input_size / image_height)
        render_w = max(1, int(round(image_width * scale)))
        render_h = max(1, int(round(image_height * scale)))
        return cls(
            offset_x=(input_size - render_w) // 2,
            offset_y=(input_size - render_h) // 2,
            render_width=render_w,
            render_height=render_h,
            input_size=input_size,
        )

    @classmethod
    def stretched(cls, input_size: int = MODEL_INPUT_SIZE) -> "Letterbox":
        """Plain resize to the square input, no padding."""
        return cls(0, 0, input_size, input_size, input_size)


def letterbox_image(
    image: np.ndarray,
    input_size: int = MODEL_INPUT_SIZE,
    pad_value: int = LETTERBOX_PAD_VALUE,
) -> Tuple[np.ndarray, Letterbox]:
    """
    Resize an image into a padded square model input.

    Returns:
        (padded image of shape (input_size, input_size, C), Letterbox)
    """
    h, w = image.shape[:2]
    box = Letterbox.fit(w, h, input_size)
    resized = cv2.resize(
        image, (int(box.render_width), int(box.render_height)),
        interpolation=cv2.INTER_LINEAR,
    )
    top = int(box.offset_y)
    left = int(box.offset_x)
    bottom = input_size - top - int(box.render_height)
    right = input_size - left - int(box.render_width)
    channels = 1 if image.ndim == 2 else image.shape[2]
    padded = cv2.copyMakeBorder(
        resized, top, bottom, left, right,
        cv2.BORDER_CONSTANT, value=(pad_value,) * channels,
    )
    return padded, box


# ============================================================================
# Raw Output Normalisation
# ============================================================================

def normalize_raw_output(
    raw,
    input_size: int = MODEL_INPUT_SIZE,
    row_length: Optional[int] = None,
) -> np.ndarray:
    """
    Bring raw detector output into (N, 5 + num_classes) normalised rows.

    Accepted layouts:
        (N, C)       one row per candidate box
        (1, N, C)    batched rows
        (1, C, N)    transposed export, one column per box

    A batch is read as transposed when its second axis has the known
    ``row_length`` (5 + number of classes) and its third does not. Without
    a known row length it is transposed only when the third axis is too
    short to hold a row.
    Coordinates given in input pixels (any centre > 1) are divided by
    ``input_size``; objectness given as a percentage (> 1) is divided
    by 100.

    Raises:
        DecodeFormatError: on any other shape or non-numeric content
    """
    try:
        arr = np.asarray(raw, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise DecodeFormatError(f"Raw output is not numeric: {exc}") from exc

    if arr.ndim == 3:
        if arr.shape[0] != 1:
            raise DecodeFormatError(
                f"Expected a batch of one, got shape {arr.shape}"
            )
        arr = arr[0]
        if row_length is not None and arr.shape[1] != row_length:
            if arr.shape[0] == row_length:
                arr = arr.T
        elif arr.shape[1] < MIN_ROW_LENGTH <= arr.shape[0]:
            arr = arr.T
    elif arr.ndim == 1 and arr.size == 0:
        return np.empty((0, MIN_ROW_LENGTH))
    elif arr.ndim != 2:
        raise DecodeFormatError(f"Unrecognised raw output shape {arr.shape}")

    if arr.shape[0] == 0:
        return np.empty((0, max(arr.shape[1], MIN_ROW_LENGTH)))
    if arr.shape[1] < MIN_ROW_LENGTH:
        raise DecodeFormatError(
            f"Rows need at least {MIN_ROW_LENGTH} values, got {arr.shape[1]}"
        )
    if not np.all(np.isfinite(arr)):
        raise DecodeFormatError("Raw output contains NaN or infinite values")

    rows = arr.copy()
    if rows[:, 0].max() > 1.0 or rows[:, 1].max() > 1.0:
        logger.debug(
            "Coordinates look absolute, normalising by %d", input_size,
            extra={"event": "raw_output_rescaled"},
        )
        rows[:, :4] /= float(input_size)

    pct = rows[:, 4] > 1.0
    if np.any(pct):
        rows[pct, 4] /= 100.0

    return rows


# ============================================================================
# Decoder
# ============================================================================

class DetectionDecoder:
    """
    Decodes raw detector rows into Detection objects.

    Stateless apart from its configuration, so one decoder can serve
    frames concurrently.
    """

    def __init__(
        self,
        class_names: Sequence[str] = DEFAULT_CLASS_NAMES,
        input_size: int = MODEL_INPUT_SIZE,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        """
        Args:
            class_names: Label for each class score column
            input_size: Side of the square model input (px)
            confidence_threshold: Minimum obj_conf * class_conf
        """
        self.class_names = list(class_names)
        self.input_size = input_size
        self.confidence_threshold = confidence_threshold

    def class_name(self, class_id: int) -> str:
        if 0 <= class_id < len(self.class_names):
            return self.class_names[class_id]
        return f"unknown_{class_id}"

    def decode(
        self,
        raw_rows,
        image_width: int,
        image_height: int,
        letterbox: Optional[Letterbox] = None,
        confidence_threshold: Optional[float] = None,
    ) -> List[Detection]:
        """
        Decode one frame's raw output.

        Args:
            raw_rows: Raw detector output (see normalize_raw_output)
            image_width: Original image width (px)
            image_height: Original image height (px)
            letterbox: How the image was placed in the model input;
                None means it was stretched to fill it
            confidence_threshold: Overrides the decoder's threshold

        Returns:
            Detections in original-image pixels, in row order
        """
        threshold = (
            self.confidence_threshold
            if confidence_threshold is None else confidence_threshold
        )
        if letterbox is None:
            letterbox = Letterbox.stretched(self.input_size)
        if letterbox.render_width <= 0 or letterbox.render_height <= 0:
            raise InvalidInput(f"Letterbox render size must be positive: {letterbox}")
        if image_width <= 0 or image_height <= 0:
            raise InvalidInput(
                f"Image size must be positive, got {image_width}x{image_height}"
            )

        rows = normalize_raw_output(
            raw_rows, self.input_size, row_length=5 + len(self.class_names)
        )
        if len(rows) == 0:
            return []

        size = float(self.input_size)
        scale_x = image_width / letterbox.render_width
        scale_y = image_height / letterbox.render_height
        valid_x0, valid_y0 = letterbox.offset_x, letterbox.offset_y
        valid_x1 = valid_x0 + letterbox.render_width
        valid_y1 = valid_y0 + letterbox.render_height

        detections = []
        stats: Dict[str, Dict[str, float]] = {}

        for row in rows:
            class_scores = row[5:]
            class_id = int(np.argmax(class_scores))
            confidence = float(row[4] * class_scores[class_id])
            name = self.class_name(class_id)

            entry = stats.setdefault(name, {"count": 0, "best_confidence": 0.0})
            entry["count"] += 1
            entry["best_confidence"] = max(entry["best_confidence"], confidence)

            if confidence < threshold:
                continue

            cx, cy = row[0] * size, row[1] * size
            half_w, half_h = row[2] * size / 2, row[3] * size / 2

            if (cx + half_w <= valid_x0 or cx - half_w >= valid_x1
                    or cy + half_h <= valid_y0 or cy - half_h >= valid_y1):
                continue

            left = (cx - half_w - letterbox.offset_x) * scale_x
            top = (cy - half_h - letterbox.offset_y) * scale_y

            detections.append(Detection(
                class_name=name,
                confidence=confidence,
                bbox=BoundingBox(
                    x=max(0.0, float(left)),
                    y=max(0.0, float(top)),
                    width=float(2 * half_w * scale_x),
                    height=float(2 * half_h * scale_y),
                ),
                class_id=class_id,
            ))

        for name, entry in stats.items():
            logger.debug(
                "%s: %d candidates, best confidence %.1f%%",
                name, entry["count"], entry["best_confidence"] * 100,
                extra={"event": "decode_class_stats", "class_name": name,
                       "count": entry["count"],
                       "best_confidence": entry["best_confidence"]},
            )
        logger.debug(
            "Decoded %d of %d rows above threshold %.2f",
            len(detections), len(rows), threshold,
            extra={"event": "decode", "rows": len(rows),
                   "detections": len(detections)},
        )

        return detections


def decode_detections(
    raw_rows,
    image_width: int,
    image_height: int,
    letterbox: Optional[Letterbox] = None,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    class_names: Sequence[str] = DEFAULT_CLASS_NAMES,
    input_size: int = MODEL_INPUT_SIZE,
) -> List[Detection]:
    """Functional form of DetectionDecoder.decode."""
    decoder = DetectionDecoder(class_names, input_size, confidence_threshold)
    return decoder.decode(raw_rows, image_width, image_height, letterbox)
