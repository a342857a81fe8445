# -*- coding: utf-8 -*-
"""Calibration report export: JSON summary, OpenCV-style YAML and heatmap PNGs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import yaml

from ..core.board_spec import BoardSpec
from ..core.types import CalibrationOutput, DetectionResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

REPORT_FILENAME = "calibration_report.json"
CAMERA_YAML_FILENAME = "camera.yaml"
HEATMAP_FILENAMES = {
    "board_coverage": "board_coverage_heatmap.png",
    "pixel_error": "reprojection_error_heatmap_pixels.png",
    "distortion": "distortion_heatmap.png",
}


def ensure_dir(path: PathLike) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def _floats(values) -> List[float]:
    return [float(v) for v in values]


def _matrix(mat: Optional[np.ndarray]) -> List[List[float]]:
    if mat is None:
        return []
    arr = np.asarray(mat, np.float64)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    return arr.tolist()


def _sample_entry(det: DetectionResult) -> Dict[str, object]:
    return {
        "name": det.name,
        "mean_error_px": float(det.mean_error_px),
        "max_error_px": float(det.max_error_px),
        "translation_mm": _floats(det.translation_mm),
        "rotation_deg": _floats(det.rotation_deg),
    }


def build_report_payload(output: CalibrationOutput,
                         board_spec: Optional[BoardSpec] = None) -> Dict[str, object]:
    m = output.metrics
    payload: Dict[str, object] = {
        "success": bool(output.success),
        "message": output.message,
        "num_samples": len(output.kept_detections),
        "num_removed": len(output.removed_detections),
        "num_images": len(output.all_detections),
        "rms": float(m.rms),
        "mean_reprojection_px": float(m.mean_error_px),
        "median_reprojection_px": float(m.median_error_px),
        "max_reprojection_px": float(m.max_error_px),
        "std_reprojection_px": float(m.std_error_px),
        "p95_reprojection_px": float(m.p95_error_px),
        "distortion_max_shift_px": float(output.heatmaps.distortion_max),
        "translation_stats": {
            "mean_x_mm": float(m.translation_mean_mm[0]),
            "mean_y_mm": float(m.translation_mean_mm[1]),
            "mean_z_mm": float(m.translation_mean_mm[2]),
            "std_x_mm": float(m.translation_std_mm[0]),
            "std_y_mm": float(m.translation_std_mm[1]),
            "std_z_mm": float(m.translation_std_mm[2]),
        },
    }
    if output.image_size is not None:
        payload["image_size"] = [int(v) for v in output.image_size]
    if board_spec is not None:
        payload["board_spec"] = board_spec.to_dict()

    K = output.camera_matrix
    if K is not None and np.asarray(K).shape[0] >= 3 and np.asarray(K).shape[1] >= 3:
        fx = float(K[0, 0])
        depth = float(m.translation_mean_mm[2])
        if fx > 1e-6 and abs(depth) > 1e-3:
            payload["approx_mm_per_pixel"] = abs(depth) / fx

    payload["camera_matrix"] = _matrix(K)
    payload["distortion_coefficients"] = _matrix(output.dist_coeffs)
    payload["mean_residual_mm"] = _floats(m.mean_residual_mm)
    payload["rms_residual_mm"] = _floats(m.rms_residual_mm)
    payload["mean_residual_percent"] = _floats(m.mean_residual_percent)
    payload["rms_residual_percent"] = _floats(m.rms_residual_percent)

    payload["kept_samples"] = [_sample_entry(d) for d in output.kept_detections]
    removed = []
    for det in output.removed_detections:
        entry = _sample_entry(det)
        entry["iteration"] = int(det.iteration_removed)
        removed.append(entry)
    payload["removed_samples"] = removed
    payload["failed_samples"] = [{"name": d.name, "message": d.message}
                                 for d in output.all_detections if not d.success]
    return payload


def save_yaml(path: PathLike, K: np.ndarray, dist: np.ndarray, image_size: Tuple[int, int]) -> None:
    K = np.asarray(K, np.float64)
    dist = np.asarray(dist, np.float64)
    data = {
        "image_width": int(image_size[0]),
        "image_height": int(image_size[1]),
        "camera_matrix": {"rows": 3, "cols": 3, "data": K.reshape(-1).tolist()},
        "distortion_coefficients": {"rows": 1, "cols": len(dist.reshape(-1)), "data": dist.reshape(-1).tolist()},
        "distortion_model": "rational_polynomial",
    }
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)


def write_heatmaps(output: CalibrationOutput, out_dir: PathLike) -> List[Path]:
    written: List[Path] = []
    for attr, filename in HEATMAP_FILENAMES.items():
        image = getattr(output.heatmaps, attr)
        if image is None or image.size == 0:
            continue
        path = Path(out_dir) / filename
        if cv2.imwrite(str(path), image):
            written.append(path)
        else:
            logger.warning("[WARN] failed to write heatmap %s", path)
    return written


def write_report(output: CalibrationOutput, out_dir: PathLike,
                 board_spec: Optional[BoardSpec] = None) -> Path:
    """Write the JSON report, camera YAML (when calibrated) and heatmaps into ``out_dir``."""
    out = Path(out_dir)
    ensure_dir(out)
    report_path = out / REPORT_FILENAME
    payload = build_report_payload(output, board_spec)
    report_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    if output.camera_matrix is not None and output.dist_coeffs is not None and output.image_size is not None:
        save_yaml(out / CAMERA_YAML_FILENAME, output.camera_matrix, output.dist_coeffs, output.image_size)
    write_heatmaps(output, out)
    logger.info("标定报告已保存到: %s", report_path)
    return report_path


__all__ = [
    "CAMERA_YAML_FILENAME",
    "HEATMAP_FILENAMES",
    "REPORT_FILENAME",
    "build_report_payload",
    "save_yaml",
    "write_heatmaps",
    "write_report",
]
