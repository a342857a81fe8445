# circlecalib/core/types.py
# -*- coding: utf-8 -*-

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Tuple, Optional

import numpy as np

from .board_spec import BoardSpec, DEFAULT_BOARD_SPEC

Pt = Tuple[float, float]


def _empty(cols: int) -> np.ndarray:
    return np.zeros((0, cols), np.float32)


@dataclass
class DebugImage:
    label: str
    file_path: str


@dataclass
class DetectionResult:
    """Per-image detection outcome, enriched in place after calibration."""

    # ==== 检测输出 ====
    name: str
    success: bool = False
    message: str = ""
    elapsed_ms: float = 0.0
    resolution: Optional[Tuple[int, int]] = None       # (width, height)
    image_points: np.ndarray = field(default_factory=lambda: _empty(2))
    object_points: np.ndarray = field(default_factory=lambda: _empty(3))
    big_circle_points: np.ndarray = field(default_factory=lambda: _empty(2))
    circle_radii_px: List[float] = field(default_factory=list)
    big_circle_radii_px: List[float] = field(default_factory=list)
    logical_indices: List[Tuple[int, int]] = field(default_factory=list)
    quad: Optional[np.ndarray] = None
    warp_homography: Optional[np.ndarray] = None
    warp_homography_inv: Optional[np.ndarray] = None
    white_region_mask: Optional[np.ndarray] = None
    debug_images: List[DebugImage] = field(default_factory=list)
    debug_directory: Optional[str] = None

    # ==== 标定后填充 ====
    residuals_px: List[float] = field(default_factory=list)
    residual_vectors: np.ndarray = field(default_factory=lambda: _empty(2))
    residual_camera_mm: np.ndarray = field(default_factory=lambda: _empty(3))
    residual_camera_percent: np.ndarray = field(default_factory=lambda: _empty(3))
    mean_residual_camera_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    mean_residual_camera_percent: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    translation_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rotation_deg: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rotation_matrix: Optional[np.ndarray] = None
    rotation_vector: Optional[np.ndarray] = None
    iteration_removed: int = 0

    @property
    def big_circle_count(self) -> int:
        return int(len(self.big_circle_points))

    @property
    def mean_error_px(self) -> float:
        return float(np.mean(self.residuals_px)) if len(self.residuals_px) else 0.0

    @property
    def max_error_px(self) -> float:
        return float(np.max(self.residuals_px)) if len(self.residuals_px) else 0.0

    @property
    def usable(self) -> bool:
        return bool(self.success) and len(self.image_points) > 0 \
            and len(self.image_points) == len(self.object_points)


@dataclass
class CalibrationMetrics:
    rms: float = 0.0
    mean_error_px: float = 0.0
    median_error_px: float = 0.0
    max_error_px: float = 0.0
    std_error_px: float = 0.0
    p95_error_px: float = 0.0
    translation_mean_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    translation_std_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    mean_residual_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rms_residual_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    mean_residual_percent: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rms_residual_percent: Tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass
class HeatmapBundle:
    board_coverage: Optional[np.ndarray] = None
    pixel_error: Optional[np.ndarray] = None
    distortion: Optional[np.ndarray] = None
    board_coverage_min: float = 0.0
    board_coverage_max: float = 0.0
    pixel_error_min: float = 0.0
    pixel_error_max: float = 0.0
    distortion_min: float = 0.0
    distortion_max: float = 0.0


@dataclass
class CalibrationOutput:
    success: bool = False
    message: str = ""
    aborted: bool = False
    camera_matrix: Optional[np.ndarray] = None
    dist_coeffs: Optional[np.ndarray] = None
    image_size: Optional[Tuple[int, int]] = None
    all_detections: List[DetectionResult] = field(default_factory=list)
    kept_detections: List[DetectionResult] = field(default_factory=list)
    removed_detections: List[DetectionResult] = field(default_factory=list)
    metrics: CalibrationMetrics = field(default_factory=CalibrationMetrics)
    heatmaps: HeatmapBundle = field(default_factory=HeatmapBundle)


@dataclass
class CalibrationSettings:
    board_spec: BoardSpec = DEFAULT_BOARD_SPEC
    max_mean_error_px: float = 3.0
    max_point_error_px: float = 12.0
    max_iterations: int = 3
    min_samples: int = 12
    workers: Optional[int] = None               # None -> os.cpu_count()
    keep_debug_images: bool = False


__all__ = [
    "CalibrationMetrics",
    "CalibrationOutput",
    "CalibrationSettings",
    "DebugImage",
    "DetectionResult",
    "HeatmapBundle",
    "Pt",
]
