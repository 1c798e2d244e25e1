"""
Pipeline: End-to-End Measurement
================================

Integrates all modules into the putting speed measurement:

1. Marker setup -> reference corner patterns (Modules 1, 2)
2. Per frame: marker tracking -> camera shift estimate (Module 2)
3. Per frame: raw detector output -> detections -> clusters (Modules 3, 4)
4. Coin cluster -> calibration ratio (Module 5)
5. Ball cluster centres over time -> speed (Module 5)

The detector network runs outside this package; each frame is handed in
together with the raw output the network produced for it.

Usage:
    pipeline = PuttSpeedPipeline(PipelineConfig("configs/pipeline_config.yaml"))
    pipeline.setup_markers(first_frame, [(412, 310)])
    for frame, ts, raw in zip(frames, timestamps, raw_outputs):
        pipeline.process_frame(frame, ts, raw)
    print(pipeline.measure_speed().speed_mps)
"""

import logging
import os
import time
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import yaml
from tqdm import tqdm

# Module imports
try:
    from .corner_detection import CornerDetector, RasterRegion
    from .detection_clustering import Cluster, cluster_detections
    from .exceptions import (
        ConfigError,
        DecodeFormatError,
        InvalidCalibration,
        InvalidInput,
    )
    from .logging_config import setup_logging
    from .marker_tracking import MarkerTracker
    from .object_detection import DetectionDecoder, Letterbox
    from .speed_calculation import (
        SpeedCalculator,
        SpeedMeasurement,
        TimestampedPosition,
    )
    from .visualization import FrameAnnotator
except ImportError:
    from corner_detection import CornerDetector, RasterRegion
    from detection_clustering import Cluster, cluster_detections
    from exceptions import (
        ConfigError,
        DecodeFormatError,
        InvalidCalibration,
        InvalidInput,
    )
    from logging_config import setup_logging
    from marker_tracking import MarkerTracker
    from object_detection import DetectionDecoder, Letterbox
    from speed_calculation import (
        SpeedCalculator,
        SpeedMeasurement,
        TimestampedPosition,
    )
    from visualization import FrameAnnotator

logger = logging.getLogger(__name__)


class PipelineConfig:
    """Configuration container for the pipeline."""

    def __init__(self, config_path: Optional[str] = None):
        self.config = {}
        if config_path and os.path.exists(config_path):
            with open(config_path, "r") as f:
                self.config = yaml.safe_load(f) or {}
        elif config_path:
            raise ConfigError(f"Config file not found: {config_path}")

        # Corner detection (FAST)
        self.corner_threshold = self.config.get("corner_threshold", 20.0)
        self.corner_contiguous = self.config.get("corner_contiguous", 9)
        self.max_corners = self.config.get("max_corners", 20)

        # Marker tracking: 1 marker, or 4 for the four-marker layout
        self.marker_count = self.config.get("marker_count", 1)
        self.region_size = self.config.get("region_size", 120)
        self.search_radius = self.config.get("search_radius", 50)
        self.search_step = self.config.get("search_step", 10)
        self.match_threshold = self.config.get("match_threshold", 0.4)

        # Detection decoding / clustering
        self.input_size = self.config.get("input_size", 640)
        self.letterbox = self.config.get("letterbox", True)
        self.confidence_threshold = self.config.get("confidence_threshold", 0.2)
        self.iou_threshold = self.config.get("iou_threshold", 0.3)
        self.class_names = list(self.config.get("class_names", ["ball_golf", "coin"]))
        self.ball_class = self.config.get("ball_class", "ball_golf")
        self.calibration_class = self.config.get("calibration_class", "coin")

        # Calibration
        self.default_ratio = self.config.get("default_ratio", 0.1)
        self.reference_diameter_cm = self.config.get("reference_diameter_cm", 2.4)
        self.marker_spacing_cm = self.config.get("marker_spacing_cm", None)
        self.auto_calibrate = self.config.get("auto_calibrate", True)

        # Subtract the tracked marker shift from ball positions
        self.stabilize_with_markers = self.config.get("stabilize_with_markers", True)

    def validate(self):
        """Reject settings the measurement modules cannot work with."""
        positive = {
            "corner_contiguous": self.corner_contiguous,
            "max_corners": self.max_corners,
            "marker_count": self.marker_count,
            "region_size": self.region_size,
            "search_step": self.search_step,
            "input_size": self.input_size,
            "default_ratio": self.default_ratio,
            "reference_diameter_cm": self.reference_diameter_cm,
        }
        for key, value in positive.items():
            if value is None or value <= 0:
                raise ConfigError(f"{key} must be positive, got {value}")

        unit = {
            "match_threshold": self.match_threshold,
            "confidence_threshold": self.confidence_threshold,
            "iou_threshold": self.iou_threshold,
        }
        for key, value in unit.items():
            if value is None or not 0.0 <= value <= 1.0:
                raise ConfigError(f"{key} must be within [0, 1], got {value}")

        if self.search_radius is None or self.search_radius < 0:
            raise ConfigError(
                f"search_radius must not be negative, got {self.search_radius}"
            )
        if self.corner_contiguous > 16:
            raise ConfigError(
                f"corner_contiguous must be at most 16, got {self.corner_contiguous}"
            )
        if self.marker_spacing_cm is not None and self.marker_spacing_cm <= 0:
            raise ConfigError(
                f"marker_spacing_cm must be positive, got {self.marker_spacing_cm}"
            )
        if not self.class_names:
            raise ConfigError("class_names must not be empty")


class PuttSpeedPipeline:
    """
    Complete measurement pipeline over a short sequence of still frames.

    Holds the session state: marker references, the calibration ratio
    and the collected ball samples. Not thread-safe; drive one pipeline
    from one thread.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.config.validate()
        self._initialize_modules()
        self.samples: List[TimestampedPosition] = []
        self.frame_count = 0

    def _initialize_modules(self):
        """Initialize all pipeline modules based on configuration."""
        cfg = self.config

        # Modules 1 + 2: corner detection and marker tracking
        self.corner_detector = CornerDetector(
            threshold=cfg.corner_threshold,
            contiguous=cfg.corner_contiguous,
            max_corners=cfg.max_corners,
        )
        self.marker_tracker = MarkerTracker(
            marker_count=cfg.marker_count,
            region_size=cfg.region_size,
            search_radius=cfg.search_radius,
            search_step=cfg.search_step,
            match_threshold=cfg.match_threshold,
            corner_detector=self.corner_detector,
        )

        # Modules 3 + 4: decoding (clustering is a plain function)
        self.decoder = DetectionDecoder(
            class_names=cfg.class_names,
            input_size=cfg.input_size,
            confidence_threshold=cfg.confidence_threshold,
        )

        # Module 5: calibration and speed
        self.speed_calculator = SpeedCalculator(
            default_ratio=cfg.default_ratio,
            reference_diameter_cm=cfg.reference_diameter_cm,
        )

    @staticmethod
    def _to_raster(frame: Union[RasterRegion, np.ndarray]) -> RasterRegion:
        """OpenCV frames arrive as BGR arrays."""
        if isinstance(frame, RasterRegion):
            return frame
        frame = np.asarray(frame)
        if frame.ndim != 3 or frame.shape[2] not in (3, 4):
            raise InvalidInput(
                f"Expected a BGR(A) frame of shape (H, W, 3|4), got {frame.shape}"
            )
        return RasterRegion.from_bgr(frame)

    # ------------------------------------------------------------------
    # Markers and calibration
    # ------------------------------------------------------------------

    def setup_markers(
        self,
        frame: Union[RasterRegion, np.ndarray],
        points: Sequence[Tuple[float, float]],
    ):
        """Capture marker references; calibrates from them if spacing is known."""
        markers = self.marker_tracker.setup_markers(points, self._to_raster(frame))

        spacing = self.config.marker_spacing_cm
        if spacing and len(markers) >= 2:
            self.speed_calculator.calibrate_from_markers(
                markers[0].position, markers[1].position, spacing
            )
        return markers

    def calibrate(
        self, pixel_diameter: float, physical_diameter: Optional[float] = None
    ) -> float:
        """Explicit calibration from a measured reference diameter."""
        return self.speed_calculator.set_calibration(pixel_diameter, physical_diameter)

    # ------------------------------------------------------------------
    # Per-frame processing
    # ------------------------------------------------------------------

    def process_frame(
        self,
        frame: Union[RasterRegion, np.ndarray],
        timestamp_ms: float,
        raw_output=None,
    ) -> Dict:
        """
        Process a single captured frame.

        Args:
            frame: BGR image (or an RGB RasterRegion)
            timestamp_ms: Capture time of the frame (ms, monotonic)
            raw_output: Raw detector output for this frame, or None

        Returns:
            Dictionary with all intermediate and final results

        Raises:
            DecodeFormatError: raw_output has an unrecognised shape; no
                state is changed for this frame
        """
        raster = self._to_raster(frame)
        h, w = raster.height, raster.width
        result = {
            "frame_idx": self.frame_count,
            "timestamp_ms": timestamp_ms,
            "markers": [],
            "detections": [],
            "clusters": [],
            "ball_detected": False,
            "ball_position": None,
            "stabilized_position": None,
            "calibration_detected": False,
        }

        # ---- Modules 3 + 4: decode and cluster (before any state change) ----
        clusters: List[Cluster] = []
        if raw_output is not None:
            letterbox = (
                Letterbox.fit(w, h, self.config.input_size)
                if self.config.letterbox else None
            )
            detections = self.decoder.decode(raw_output, w, h, letterbox)
            clusters = cluster_detections(detections, self.config.iou_threshold)
            result["detections"] = detections
            result["clusters"] = clusters

        # ---- Module 2: marker tracking ----
        if self.marker_tracker.is_tracking:
            result["markers"] = self.marker_tracker.track_markers(raster)

        # ---- Module 5: calibration from the reference coin ----
        coin = self._best_cluster(clusters, self.config.calibration_class)
        if coin is not None:
            result["calibration_detected"] = True
            if self.config.auto_calibrate and not self.speed_calculator.calibrated:
                try:
                    self.speed_calculator.calibrate_from_detection(coin)
                except InvalidCalibration as exc:
                    logger.warning(
                        "Skipping calibration from %s: %s",
                        self.config.calibration_class, exc,
                        extra={"event": "calibration_skipped",
                               "frame_idx": self.frame_count},
                    )

        # ---- Ball position ----
        ball = self._best_cluster(clusters, self.config.ball_class)
        sample = TimestampedPosition(None, None, timestamp_ms)
        if ball is not None:
            bx, by = ball.center
            result["ball_detected"] = True
            result["ball_position"] = (bx, by)

            if self.config.stabilize_with_markers and self.marker_tracker.is_tracking:
                dx, dy = self.marker_tracker.displacement()
                bx, by = bx - dx, by - dy
            result["stabilized_position"] = (bx, by)
            sample = TimestampedPosition(bx, by, timestamp_ms)

        self.samples.append(sample)
        self.frame_count += 1
        return result

    @staticmethod
    def _best_cluster(clusters: Sequence[Cluster], class_name: str) -> Optional[Cluster]:
        """Highest-confidence cluster of a class (first one on ties)."""
        best = None
        for cluster in clusters:
            if cluster.class_name != class_name:
                continue
            if best is None or cluster.confidence > best.confidence:
                best = cluster
        return best

    def measure_speed(self) -> SpeedMeasurement:
        """Speed from the collected ball samples."""
        return self.speed_calculator.measure(self.samples)

    def reset(self):
        """Forget markers, samples and calibration."""
        self.marker_tracker.reset()
        self.speed_calculator.reset()
        self.samples = []
        self.frame_count = 0

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def process_sequence(
        self,
        frames: Sequence[np.ndarray],
        timestamps_ms: Sequence[float],
        raw_outputs: Sequence,
        output_dir: Optional[str] = None,
        show_progress: bool = True,
    ) -> Dict:
        """
        Process a captured burst of frames and measure the ball speed.

        A frame whose raw output cannot be decoded is logged and skipped;
        the rest of the burst is still measured.

        Returns:
            Stats dictionary (frames, detections, decode errors, speed)
        """
        if not (len(frames) == len(timestamps_ms) == len(raw_outputs)):
            raise ConfigError(
                "frames, timestamps and raw outputs must have the same length "
                f"({len(frames)}, {len(timestamps_ms)}, {len(raw_outputs)})"
            )

        annotator = None
        path: List[Optional[Tuple[float, float]]] = []
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
            annotator = FrameAnnotator()

        stats = {
            "total_frames": len(frames),
            "ball_detections": 0,
            "decode_errors": 0,
            "marker_quality": [],
        }
        start_time = time.time()

        progress = tqdm(
            zip(frames, timestamps_ms, raw_outputs),
            total=len(frames), desc="Processing frames",
            disable=not show_progress,
        )
        for idx, (frame, ts, raw) in enumerate(progress):
            try:
                result = self.process_frame(frame, ts, raw)
            except DecodeFormatError as exc:
                logger.error(
                    "Frame %d: %s", idx, exc,
                    extra={"event": "decode_failed", "frame_idx": idx},
                )
                stats["decode_errors"] += 1
                result = self.process_frame(frame, ts, None)

            if result["ball_detected"]:
                stats["ball_detections"] += 1

            if annotator is not None:
                path.append(result["ball_position"])
                annotated = annotator.draw_detections(frame, result["clusters"])
                annotated = annotator.draw_markers(annotated, result["markers"])
                annotated = annotator.draw_ball_path(annotated, path)
                annotated = annotator.draw_info_overlay(annotated, {
                    "Frame": str(idx),
                    "Time": f"{ts:.0f} ms",
                    "Scale": f"{self.speed_calculator.ratio:.4f} cm/px",
                })
                cv2.imwrite(
                    os.path.join(output_dir, f"frame_{idx:04d}.jpg"), annotated
                )

        stats["marker_quality"] = self.marker_tracker.tracking_quality()
        measurement = self.measure_speed()
        stats["speed_mps"] = measurement.speed_mps
        stats["distance_cm"] = measurement.distance_cm
        stats["elapsed_s"] = measurement.elapsed_s
        stats["calibrated"] = self.speed_calculator.calibrated
        stats["cm_per_pixel"] = self.speed_calculator.ratio
        stats["processing_time"] = time.time() - start_time
        return stats


# ============================================================================
# Command line
# ============================================================================

def _parse_point(text: str) -> Tuple[float, float]:
    x, y = text.split(",")
    return float(x), float(y)


def load_raw_outputs(path: str, num_frames: int) -> Tuple[List, Optional[List[float]]]:
    """
    Load raw detector outputs saved as ``frame_<i>`` arrays in an .npz file.

    Frames without an entry get None. An optional ``timestamps`` array
    holds the capture times in ms.
    """
    with np.load(path) as data:
        raw = [
            data[f"frame_{i}"] if f"frame_{i}" in data.files else None
            for i in range(num_frames)
        ]
        timestamps = (
            [float(t) for t in data["timestamps"]]
            if "timestamps" in data.files else None
        )
    return raw, timestamps


def main():
    """Main entry point for running the pipeline from command line."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Golf Putting Speed Measurement Pipeline"
    )
    parser.add_argument(
        "frames", nargs="+", help="Captured frame images, in capture order"
    )
    parser.add_argument(
        "-d", "--detections", type=str, required=True,
        help="Raw detector outputs (.npz with frame_<i> arrays)"
    )
    parser.add_argument(
        "-c", "--config", type=str, default=None,
        help="Path to pipeline config YAML"
    )
    parser.add_argument(
        "-m", "--marker", action="append", default=[], type=_parse_point,
        help="Marker point X,Y on the first frame (repeat for each marker)"
    )
    parser.add_argument(
        "--fps", type=float, default=30.0,
        help="Frame rate used when the .npz has no timestamps"
    )
    parser.add_argument(
        "--calibrate-px", type=float, default=None,
        help="Measured reference diameter in pixels (skips auto-calibration)"
    )
    parser.add_argument(
        "-o", "--output-dir", type=str, default=None,
        help="Write annotated frames here"
    )
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument(
        "--json-logs", action="store_true", help="Log one JSON object per line"
    )

    args = parser.parse_args()
    setup_logging(args.log_level, structured=args.json_logs)

    config = PipelineConfig(args.config)
    if args.marker:
        config.marker_count = len(args.marker)
    pipeline = PuttSpeedPipeline(config)

    frames = []
    for path in args.frames:
        frame = cv2.imread(path)
        if frame is None:
            raise FileNotFoundError(f"Cannot read frame: {path}")
        frames.append(frame)

    raw_outputs, timestamps = load_raw_outputs(args.detections, len(frames))
    if timestamps is None:
        timestamps = [i * 1000.0 / args.fps for i in range(len(frames))]

    if args.calibrate_px is not None:
        pipeline.calibrate(args.calibrate_px)
    if args.marker:
        pipeline.setup_markers(frames[0], args.marker)

    stats = pipeline.process_sequence(
        frames, timestamps, raw_outputs, output_dir=args.output_dir
    )

    # Print summary
    print("\n" + "=" * 60)
    print("Measurement Complete")
    print("=" * 60)
    print(f"Total frames: {stats['total_frames']}")
    print(f"Ball detections: {stats['ball_detections']}")
    print(f"Decode errors: {stats['decode_errors']}")
    print(f"Calibrated: {stats['calibrated']} "
          f"(1 px = {stats['cm_per_pixel']:.4f} cm)")
    if stats["marker_quality"]:
        quality = ", ".join(f"{q:.2f}" for q in stats["marker_quality"])
        print(f"Marker quality: {quality}")
    print(f"Distance: {stats['distance_cm']:.1f} cm in {stats['elapsed_s']:.3f} s")
    print(f"Speed: {stats['speed_mps']:.2f} m/s")
    if args.output_dir:
        print(f"Output: {args.output_dir}")


if __name__ == "__main__":
    main()
