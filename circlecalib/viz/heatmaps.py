# circlecalib/viz/heatmaps.py
# -*- coding: utf-8 -*-
"""
标定热力图：板覆盖度、像素重投影误差、畸变位移。
Each builder returns ``(colour_image, min_value, max_value)``; the colour image
is TURBO-mapped BGR uint8 or ``None`` when there is nothing to draw.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from ..core.types import CalibrationOutput, DetectionResult, HeatmapBundle

logger = logging.getLogger(__name__)

HISTOGRAM_BIN_PX = 140
MIN_BINS = 12
HISTOGRAM_BLUR_SIGMA = 5.5

HeatmapResult = Tuple[Optional[np.ndarray], float, float]


def colorize(scalar: np.ndarray) -> np.ndarray:
    norm = cv2.normalize(scalar.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return cv2.applyColorMap(norm, cv2.COLORMAP_TURBO)


def build_board_coverage(detections: Sequence[DetectionResult], image_size: Tuple[int, int]) -> HeatmapResult:
    """How many board hulls cover each pixel."""
    w, h = image_size
    if w <= 0 or h <= 0:
        return None, 0.0, 0.0
    coverage = np.zeros((h, w), np.float32)
    mask = np.zeros((h, w), np.uint8)
    for det in detections:
        if not det.success or len(det.image_points) < 4:
            continue
        pts = np.asarray(det.image_points, np.float64).astype(np.int32).reshape(-1, 1, 2)
        hull = cv2.convexHull(pts)
        mask[:] = 0
        cv2.fillConvexPoly(mask, hull, 255)
        coverage += mask.astype(np.float32) / 255.0
    return colorize(coverage), float(coverage.min()), float(coverage.max())


def build_pixel_error_heatmap(detections: Sequence[DetectionResult], image_size: Tuple[int, int]) -> HeatmapResult:
    """Mean residual per coarse image bin, upsampled and blurred to full size."""
    w, h = image_size
    if w <= 0 or h <= 0:
        return None, 0.0, 0.0
    bins_x = max(MIN_BINS, w // HISTOGRAM_BIN_PX)
    bins_y = max(MIN_BINS, h // HISTOGRAM_BIN_PX)
    total = np.zeros((bins_y, bins_x), np.float32)
    count = np.zeros((bins_y, bins_x), np.float32)

    for det in detections:
        if not det.success or not det.residuals_px:
            continue
        n = min(len(det.image_points), len(det.residuals_px))
        if n == 0:
            continue
        pts = np.asarray(det.image_points, np.float64)[:n]
        err = np.asarray(det.residuals_px[:n], np.float32)
        xb = np.clip((pts[:, 0] / w * bins_x).astype(np.int64), 0, bins_x - 1)
        yb = np.clip((pts[:, 1] / h * bins_y).astype(np.int64), 0, bins_y - 1)
        np.add.at(total, (yb, xb), err)
        np.add.at(count, (yb, xb), 1.0)

    filled = count > 0
    avg = np.zeros_like(total)
    avg[filled] = total[filled] / count[filled]
    lo = float(avg[filled].min()) if filled.any() else 0.0
    hi = float(avg[filled].max()) if filled.any() else 0.0

    upscaled = cv2.resize(avg, (w, h), interpolation=cv2.INTER_CUBIC)
    blurred = cv2.GaussianBlur(upscaled, (0, 0), HISTOGRAM_BLUR_SIGMA)
    return colorize(blurred), lo, hi


def build_distortion_heatmap(camera_matrix: Optional[np.ndarray], dist_coeffs: Optional[np.ndarray],
                             image_size: Tuple[int, int]) -> HeatmapResult:
    """Pixel shift magnitude of the undistortion map."""
    w, h = image_size
    if camera_matrix is None or w <= 0 or h <= 0:
        return None, 0.0, 0.0
    K = np.asarray(camera_matrix, np.float64)
    D = np.zeros((1, 5), np.float64) if dist_coeffs is None or np.size(dist_coeffs) == 0 \
        else np.asarray(dist_coeffs, np.float64)
    map_xy, _ = cv2.initUndistortRectifyMap(K, D, None, K, (w, h), cv2.CV_32FC2)
    gx, gy = np.meshgrid(np.arange(w, dtype=np.float32), np.arange(h, dtype=np.float32))
    magnitude = np.hypot(map_xy[..., 0] - gx, map_xy[..., 1] - gy)
    return colorize(magnitude), float(magnitude.min()), float(magnitude.max())


def build_heatmaps(output: CalibrationOutput) -> HeatmapBundle:
    bundle = HeatmapBundle()
    if output.image_size is None:
        return bundle
    size = tuple(int(v) for v in output.image_size)
    kept = output.kept_detections
    bundle.board_coverage, bundle.board_coverage_min, bundle.board_coverage_max = build_board_coverage(kept, size)
    bundle.pixel_error, bundle.pixel_error_min, bundle.pixel_error_max = build_pixel_error_heatmap(kept, size)
    bundle.distortion, bundle.distortion_min, bundle.distortion_max = build_distortion_heatmap(
        output.camera_matrix, output.dist_coeffs, size)
    logger.info("热力图生成完成: coverage max=%.0f, pixel error max=%.3f px, distortion max=%.3f px",
                bundle.board_coverage_max, bundle.pixel_error_max, bundle.distortion_max)
    return bundle


__all__ = [
    "build_board_coverage",
    "build_distortion_heatmap",
    "build_heatmaps",
    "build_pixel_error_heatmap",
    "colorize",
]
