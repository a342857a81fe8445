# -*- coding: utf-8 -*-
"""
标定与鲁棒剔除：cv2.calibrateCamera（rational + thin prism + tilted），
逐图残差（像素 / 相机系 mm / 百分比），按中位数 + MAD 的自适应阈值剔除离群图。
"""
from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .geometry import median, median_abs_deviation
from .types import CalibrationMetrics, CalibrationOutput, CalibrationSettings, DetectionResult

logger = logging.getLogger(__name__)

CALIB_FLAGS = cv2.CALIB_RATIONAL_MODEL | cv2.CALIB_THIN_PRISM_MODEL | cv2.CALIB_TILTED_MODEL
CALIB_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 100, 1e-6)
DIST_COEFF_COUNT = 14
INITIAL_FOCAL_PX = 2000.0
MIN_CALIBRATION_IMAGES = 3
MAD_SCALE = 3.5
MAD_FLOOR = 1e-3
PERCENT_FLOOR_MM = 5.0

MSG_INITIAL = "Initial calibration complete"
MSG_ROBUST = "Robust calibration complete"
MSG_ABORTED = "Calibration aborted"

AbortCheck = Callable[[], bool]


def _never() -> bool:
    return False


def initial_camera_matrix(image_size: Tuple[int, int]) -> np.ndarray:
    w, h = image_size
    K = np.eye(3, dtype=np.float64)
    K[0, 0] = K[1, 1] = INITIAL_FOCAL_PX
    K[0, 2] = w * 0.5
    K[1, 2] = h * 0.5
    return K


def rotation_matrix_to_euler(R: np.ndarray) -> Tuple[float, float, float]:
    sy = math.sqrt(R[0, 0] ** 2 + R[1, 0] ** 2)
    singular = sy < 1e-6
    if not singular:
        x = math.degrees(math.atan2(R[2, 1], R[2, 2]))
        y = math.degrees(math.atan2(-R[2, 0], sy))
        z = math.degrees(math.atan2(R[1, 0], R[0, 0]))
    else:
        x = math.degrees(math.atan2(-R[1, 2], R[1, 1]))
        y = math.degrees(math.atan2(-R[2, 0], sy))
        z = 0.0
    return (x, y, z)


def _vec3(a) -> Tuple[float, float, float]:
    a = np.asarray(a, np.float64).reshape(-1)
    return (float(a[0]), float(a[1]), float(a[2]))


# ---------------------------------------------------------------------------
# 残差
# ---------------------------------------------------------------------------
def compute_residuals(det: DetectionResult, camera_matrix: np.ndarray, dist_coeffs: np.ndarray,
                      rvec: np.ndarray, tvec: np.ndarray) -> None:
    """Fill the post-calibration fields of ``det`` in place.

    Pixel residuals are observed minus projected. Camera-space residuals
    intersect the undistorted viewing ray of each observation with the fitted
    board plane and compare against the expected camera-frame point; the
    percent variant divides each axis by ``max(5 mm, |expected|)``.
    """
    obj = np.asarray(det.object_points, np.float64).reshape(-1, 3)
    img = np.asarray(det.image_points, np.float64).reshape(-1, 2)
    rvec = np.asarray(rvec, np.float64).reshape(3, 1)
    tvec = np.asarray(tvec, np.float64).reshape(3, 1)

    projected, _ = cv2.projectPoints(obj, rvec, tvec, camera_matrix, dist_coeffs)
    delta = img - projected.reshape(-1, 2)
    det.residual_vectors = delta.astype(np.float32)
    det.residuals_px = [float(v) for v in np.linalg.norm(delta, axis=1)]

    R, _ = cv2.Rodrigues(rvec)
    t = tvec.reshape(3)
    n = len(img)
    delta_cam = np.zeros((n, 3), np.float64)
    percent = np.zeros((n, 3), np.float64)
    if n:
        und = cv2.undistortPoints(img.reshape(-1, 1, 2), camera_matrix, dist_coeffs).reshape(-1, 2)
        dirs = np.column_stack([und, np.ones(n)])
        normal = R @ np.array([0.0, 0.0, 1.0])
        offset = float(normal @ t)
        expected = obj @ R.T + t[None, :]
        denom = dirs @ normal
        ok = np.abs(denom) > 1e-9
        lam = np.zeros(n)
        lam[ok] = offset / denom[ok]
        delta_cam[ok] = dirs[ok] * lam[ok, None] - expected[ok]
        percent[ok] = delta_cam[ok] / np.maximum(PERCENT_FLOOR_MM, np.abs(expected[ok])) * 100.0
        det.mean_residual_camera_mm = _vec3(np.mean(np.abs(delta_cam), axis=0))
        det.mean_residual_camera_percent = _vec3(np.mean(np.abs(percent), axis=0))
    else:
        det.mean_residual_camera_mm = (0.0, 0.0, 0.0)
        det.mean_residual_camera_percent = (0.0, 0.0, 0.0)
    det.residual_camera_mm = delta_cam.astype(np.float32)
    det.residual_camera_percent = percent.astype(np.float32)

    det.translation_mm = _vec3(t)
    det.rotation_matrix = R
    det.rotation_vector = rvec.reshape(3).copy()
    det.rotation_deg = rotation_matrix_to_euler(R)


def summarize(detections: Sequence[DetectionResult], rms: float = 0.0) -> CalibrationMetrics:
    """Pooled statistics over every residual of every detection."""
    metrics = CalibrationMetrics(rms=float(rms))
    residuals: List[float] = []
    translations = []
    mm_parts, pct_parts = [], []
    for det in detections:
        if not det.success or not det.residuals_px:
            continue
        residuals.extend(det.residuals_px)
        translations.append(det.translation_mm)
        if len(det.residual_camera_mm):
            mm_parts.append(np.asarray(det.residual_camera_mm, np.float64).reshape(-1, 3))
        if len(det.residual_camera_percent):
            pct_parts.append(np.asarray(det.residual_camera_percent, np.float64).reshape(-1, 3))

    if residuals:
        arr = np.asarray(residuals, np.float64)
        ordered = np.sort(arr)
        n = len(ordered)
        metrics.mean_error_px = float(arr.mean())
        metrics.median_error_px = median(ordered)
        metrics.max_error_px = float(ordered[-1])
        metrics.std_error_px = float(arr.std())
        p95 = int(math.ceil(0.95 * max(n - 1, 0)))
        metrics.p95_error_px = float(ordered[min(p95, n - 1)])

    if translations:
        T = np.asarray(translations, np.float64)
        metrics.translation_mean_mm = _vec3(T.mean(axis=0))
        metrics.translation_std_mm = _vec3(T.std(axis=0))

    if mm_parts:
        mm = np.vstack(mm_parts)
        metrics.mean_residual_mm = _vec3(np.mean(np.abs(mm), axis=0))
        metrics.rms_residual_mm = _vec3(np.sqrt(np.mean(mm ** 2, axis=0)))
    if pct_parts:
        pct = np.vstack(pct_parts)
        metrics.mean_residual_percent = _vec3(np.mean(np.abs(pct), axis=0))
        metrics.rms_residual_percent = _vec3(np.sqrt(np.mean(pct ** 2, axis=0)))
    return metrics


# ---------------------------------------------------------------------------
# 标定
# ---------------------------------------------------------------------------
def _solve(detections: Sequence[DetectionResult], image_size: Tuple[int, int],
           camera_matrix: np.ndarray, dist_coeffs: np.ndarray, flags: int):
    obj_list = [np.asarray(d.object_points, np.float32).reshape(-1, 1, 3) for d in detections]
    img_list = [np.asarray(d.image_points, np.float32).reshape(-1, 1, 2) for d in detections]
    return cv2.calibrateCamera(
        objectPoints=obj_list,
        imagePoints=img_list,
        imageSize=tuple(int(v) for v in image_size),
        cameraMatrix=camera_matrix.copy(),
        distCoeffs=dist_coeffs.copy(),
        flags=flags,
        criteria=CALIB_CRITERIA,
    )


def _apply_solution(output: CalibrationOutput, detections: List[DetectionResult],
                    rms: float, K: np.ndarray, dist: np.ndarray, rvecs, tvecs) -> None:
    output.camera_matrix = np.asarray(K, np.float64)
    output.dist_coeffs = np.asarray(dist, np.float64).reshape(-1, 1)
    for det, r, t in zip(detections, rvecs, tvecs):
        compute_residuals(det, output.camera_matrix, output.dist_coeffs, r, t)
    output.kept_detections = list(detections)
    output.metrics = summarize(detections, rms)


def calibrate(detections: Sequence[DetectionResult],
              should_abort: Optional[AbortCheck] = None) -> CalibrationOutput:
    """Initial calibration over every usable detection."""
    should_abort = should_abort or _never
    output = CalibrationOutput(all_detections=list(detections))

    usable: List[DetectionResult] = []
    image_size: Optional[Tuple[int, int]] = None
    for det in detections:
        if not det.usable or det.resolution is None:
            continue
        if image_size is None:
            image_size = tuple(det.resolution)
        elif tuple(det.resolution) != image_size:
            logger.warning("[WARN] %s: resolution %s differs from %s, skipped",
                           det.name, det.resolution, image_size)
            continue
        usable.append(det)

    if len(usable) < MIN_CALIBRATION_IMAGES:
        output.message = f"Not enough valid detections ({len(usable)})"
        logger.error(output.message)
        return output
    if should_abort():
        output.aborted = True
        output.message = MSG_ABORTED
        return output

    output.image_size = image_size
    K0 = initial_camera_matrix(image_size)
    D0 = np.zeros((DIST_COEFF_COUNT, 1), np.float64)
    logger.info("开始标定，使用 %d 张图像，分辨率 %dx%d", len(usable), image_size[0], image_size[1])
    try:
        rms, K, dist, rvecs, tvecs = _solve(usable, image_size, K0, D0, CALIB_FLAGS)
    except cv2.error as exc:
        output.message = f"Calibration failed: {exc}"
        logger.error(output.message)
        return output
    if should_abort():
        output.aborted = True
        output.message = MSG_ABORTED
        return output

    _apply_solution(output, usable, rms, K, dist, rvecs, tvecs)
    output.success = True
    output.message = MSG_INITIAL
    logger.info("[OK] %s: RMS=%.4f px, fx=%.2f fy=%.2f cx=%.2f cy=%.2f", MSG_INITIAL, rms,
                K[0, 0], K[1, 1], K[0, 2], K[1, 2])
    return output


# ---------------------------------------------------------------------------
# 离群剔除
# ---------------------------------------------------------------------------
def outlier_threshold(kept: Sequence[DetectionResult], max_mean_error_px: float) -> float:
    """Adaptive per-image mean-error limit, never above ``max_mean_error_px``."""
    means = [d.mean_error_px for d in kept]
    if not means:
        return float(max_mean_error_px)
    med = median(means)
    mad = max(median_abs_deviation(means), MAD_FLOOR)
    return min(float(max_mean_error_px), med + MAD_SCALE * mad)


def split_outliers(kept: Sequence[DetectionResult], mean_limit: float,
                   point_limit: float) -> Tuple[List[DetectionResult], List[DetectionResult]]:
    survivors, flagged = [], []
    for det in kept:
        if det.mean_error_px > mean_limit or det.max_error_px > point_limit:
            flagged.append(det)
        else:
            survivors.append(det)
    return survivors, flagged


def filter_and_recalibrate(output: CalibrationOutput, settings: CalibrationSettings,
                           should_abort: Optional[AbortCheck] = None) -> CalibrationOutput:
    """Iteratively drop outlier images and recalibrate from the previous solution.

    Stops when nothing is flagged, when removal would leave fewer than
    ``settings.min_samples`` images, or after ``settings.max_iterations``
    rounds. Removed detections carry the round number in
    ``iteration_removed``.
    """
    should_abort = should_abort or _never
    if not output.success:
        return output

    min_samples = max(MIN_CALIBRATION_IMAGES, int(settings.min_samples))
    for iteration in range(max(0, int(settings.max_iterations))):
        if should_abort():
            output.aborted = True
            output.success = False
            output.message = MSG_ABORTED
            return output

        kept = list(output.kept_detections)
        if len(kept) < min_samples:
            break
        mean_limit = outlier_threshold(kept, settings.max_mean_error_px)
        survivors, flagged = split_outliers(kept, mean_limit, settings.max_point_error_px)
        logger.info("第 %d 轮: 阈值 mean=%.3f px point=%.3f px, 标记 %d / %d",
                    iteration + 1, mean_limit, settings.max_point_error_px, len(flagged), len(kept))
        if not flagged:
            break
        if len(survivors) < min_samples:
            logger.warning("[WARN] 剔除 %d 个样本后将低于最小保留数量 %d，停止剔除",
                           len(flagged), min_samples)
            break

        if should_abort():
            output.aborted = True
            output.success = False
            output.message = MSG_ABORTED
            return output
        try:
            rms, K, dist, rvecs, tvecs = _solve(survivors, output.image_size, output.camera_matrix,
                                                output.dist_coeffs,
                                                CALIB_FLAGS | cv2.CALIB_USE_INTRINSIC_GUESS)
        except cv2.error as exc:
            output.success = False
            output.message = f"Calibration failed: {exc}"
            logger.error(output.message)
            return output
        if should_abort():
            output.aborted = True
            output.success = False
            output.message = MSG_ABORTED
            return output
        # 重新标定成功后才标记剔除，kept / removed 保持互斥
        for det in flagged:
            det.iteration_removed = iteration + 1
            logger.info("剔除 %s: mean=%.3f px max=%.3f px", det.name, det.mean_error_px, det.max_error_px)
        output.removed_detections.extend(flagged)
        _apply_solution(output, survivors, rms, K, dist, rvecs, tvecs)
        logger.info("第 %d 轮重新标定: RMS=%.4f px, 剩余 %d", iteration + 1, rms, len(survivors))

    output.message = MSG_ROBUST
    logger.info("[OK] %s: %d kept, %d removed, RMS=%.4f px", MSG_ROBUST,
                len(output.kept_detections), len(output.removed_detections), output.metrics.rms)
    return output


__all__ = [
    "CALIB_FLAGS",
    "calibrate",
    "compute_residuals",
    "filter_and_recalibrate",
    "initial_camera_matrix",
    "outlier_threshold",
    "rotation_matrix_to_euler",
    "split_outliers",
    "summarize",
]
