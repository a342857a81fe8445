# -*- coding: utf-8 -*-
"""
批处理引擎：收集图像 → 并行检测 → 初始标定 → 鲁棒剔除 → 热力图 → 报告。
"""
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from ..utils import images
from ..utils.report import write_report
from ..viz.debug_images import cleanup_debug_artifacts
from ..viz.heatmaps import build_heatmaps
from .calibration import MSG_ABORTED, calibrate, filter_and_recalibrate
from .config import DetectionConfig
from .detector import BoardDetector
from .types import CalibrationOutput, CalibrationSettings, DetectionResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ProgressCallback = Callable[[int, int], None]

MSG_NO_IMAGES = "No images found in directory"
MSG_COMPLETE = "Calibration complete"
MSG_READ_FAILED = "Failed to read image"
MSG_SKIPPED = "Skipped: calibration aborted"


class CalibrationEngine:
    """Runs one calibration batch. ``request_abort`` may be called from any thread."""

    def __init__(self, settings: Optional[CalibrationSettings] = None,
                 config: Optional[DetectionConfig] = None):
        self.settings = settings or CalibrationSettings()
        self.detector = BoardDetector(config, keep_debug_images=self.settings.keep_debug_images)
        self._abort = threading.Event()

    # ---- cancellation ----
    def request_abort(self) -> None:
        self._abort.set()

    def should_abort(self) -> bool:
        return self._abort.is_set()

    # ---- detection ----
    @staticmethod
    def collect_image_paths(directory: PathLike) -> List[Path]:
        return images.collect_image_paths(directory)

    def detect_board(self, path: PathLike) -> DetectionResult:
        fp = Path(path)
        name = fp.stem
        t0 = time.perf_counter()
        gray = images.read_image_robust(fp)
        if gray is None:
            result = DetectionResult(name=name, message=MSG_READ_FAILED)
        else:
            result = self.detector.detect(gray, self.settings.board_spec, name)
        result.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if result.success:
            logger.info("[OK] %s completed in %.1f ms (small circles=%d, large circles=%d)",
                        name, result.elapsed_ms, len(result.image_points), result.big_circle_count)
        else:
            logger.warning("[FAIL] %s: %s", name, result.message)
        return result

    def detect_all(self, paths: Sequence[PathLike],
                   progress: Optional[ProgressCallback] = None) -> List[DetectionResult]:
        """Detect every image on a thread pool; results keep the order of ``paths``."""
        total = len(paths)
        results: List[Optional[DetectionResult]] = [None] * total
        if total == 0:
            return []
        workers = self.settings.workers or os.cpu_count() or 1

        def task(i: int) -> DetectionResult:
            if self.should_abort():
                return DetectionResult(name=Path(paths[i]).stem, message=MSG_SKIPPED)
            return self.detect_board(paths[i])

        done = 0
        with ThreadPoolExecutor(max_workers=max(1, int(workers))) as pool:
            futures = {pool.submit(task, i): i for i in range(total)}
            for fut in as_completed(futures):
                results[futures[fut]] = fut.result()
                done += 1
                if progress is not None:
                    progress(done, total)
        return [r for r in results if r is not None]

    # ---- batch ----
    def _log_detection_summary(self, detections: Sequence[DetectionResult]) -> None:
        total = len(detections)
        ok = [d for d in detections if d.success]
        failed = [d for d in detections if not d.success]
        rate = 100.0 * len(ok) / total if total else 0.0
        logger.info("=== Detection summary ===")
        logger.info("Processed images: %d | success: %d | failure: %d | success rate: %.2f%%",
                    total, len(ok), len(failed), rate)
        if ok:
            small = sum(len(d.image_points) for d in ok)
            big = sum(d.big_circle_count for d in ok)
            logger.info("Small circle detections: total %d | mean %.2f", small, small / len(ok))
            logger.info("Big circle detections: total %d | mean %.2f", big, big / len(ok))
        durations = [d.elapsed_ms for d in detections if d.elapsed_ms > 0.0]
        if durations:
            logger.info("Timing (ms): mean=%.2f | fastest=%.2f | slowest=%.2f | samples=%d",
                        float(np.mean(durations)), min(durations), max(durations), len(durations))
        if failed:
            logger.warning("Failed detections:")
            for d in failed:
                logger.warning(" - %s: %s", d.name, d.message)

    def _aborted(self, output: CalibrationOutput) -> CalibrationOutput:
        logger.warning("[WARN] Calibration aborted on request.")
        output.success = False
        output.aborted = True
        output.message = MSG_ABORTED
        return output

    def run(self, image_dir: PathLike, output_dir: Optional[PathLike] = None,
            progress: Optional[ProgressCallback] = None) -> CalibrationOutput:
        output = CalibrationOutput()
        spec = self.settings.board_spec
        try:
            if self.should_abort():
                return self._aborted(output)
            logger.info("=== Calibration task started ===")
            logger.info("Input directory: %s", image_dir)
            logger.info("Board specification: %s, expected circles=%d",
                        spec.description(), spec.expected_circle_count())
            logger.info("Outlier settings: mean threshold=%.2f px | point threshold=%.2f px | "
                        "min samples=%d | max iterations=%d",
                        self.settings.max_mean_error_px, self.settings.max_point_error_px,
                        self.settings.min_samples, self.settings.max_iterations)

            paths = self.collect_image_paths(image_dir)
            if not paths:
                output.message = MSG_NO_IMAGES
                return output
            logger.info("Collected %d images, starting detection...", len(paths))

            detections = self.detect_all(paths, progress)
            if self.should_abort():
                output.all_detections = detections
                return self._aborted(output)
            self._log_detection_summary(detections)

            output = calibrate(detections, self.should_abort)
            if output.aborted or self.should_abort():
                return self._aborted(output)
            if not output.success:
                return output

            output = filter_and_recalibrate(output, self.settings, self.should_abort)
            if output.aborted or self.should_abort():
                return self._aborted(output)
            if not output.success:
                return output
            self._log_translation_spread(output)

            output.heatmaps = build_heatmaps(output)
            if self.should_abort():
                return self._aborted(output)

            output.message = MSG_COMPLETE
            if output_dir is not None:
                write_report(output, output_dir, spec)
            return output
        except FileNotFoundError as exc:
            output.success = False
            output.message = str(exc)
            return output
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Calibration pipeline failed")
            output.success = False
            output.message = str(exc)
            return output

    @staticmethod
    def _log_translation_spread(output: CalibrationOutput) -> None:
        m = output.metrics
        depth = m.translation_mean_mm[2]
        if output.camera_matrix is None:
            return
        fx = float(output.camera_matrix[0, 0])
        if abs(depth) > 1e-3 and fx > 1e-6:
            px_per_mm = fx / abs(depth)
            sx, sy, sz = m.translation_std_mm
            logger.info("Translation std ~ (%.2f, %.2f, %.2f) mm | depth ~ %.1f mm | ~ (%.3f, %.3f, %.3f) px",
                        sx, sy, sz, depth, sx * px_per_mm, sy * px_per_mm, sz * px_per_mm)

    def cleanup_debug_images(self, output: CalibrationOutput) -> None:
        for det in output.all_detections:
            cleanup_debug_artifacts(det)


__all__ = [
    "CalibrationEngine",
    "MSG_COMPLETE",
    "MSG_NO_IMAGES",
    "MSG_READ_FAILED",
]
