# -*- coding: utf-8 -*-
"""Detection tunables, presets and sanitisation."""

from __future__ import annotations

import ast
import logging
import math
from dataclasses import dataclass, asdict, fields, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import yaml

logger = logging.getLogger(__name__)


@dataclass
class DetectionConfig:
    # Quad/warp parameters
    quad_expand_scale: float = 1.03
    quad_expand_offset: float = 12.0
    warp_min_short: int = 1400
    warp_min_dim: int = 400
    warp_interp: int = cv2.INTER_CUBIC

    # Hough search parameters
    hough_gaussian_sigma: float = 1.0
    hough_canny_low_ratio: float = 0.66
    hough_canny_low_min: int = 10
    hough_canny_high_ratio: float = 2.0
    hough_dilate_kernel: int = 3
    hough_dilate_iterations: int = 1
    hough_votes_ratio: float = 0.006
    hough_min_line_ratio: float = 0.30
    hough_max_gap_ratio: float = 0.03
    hough_orientation_tol: float = 5.0
    hough_orthogonality_tol: float = 10.0
    hough_rho_nms_ratio: float = 0.02
    hough_kmeans_max_iter: int = 200
    hough_kmeans_eps: float = 1e-4
    hough_kmeans_attempts: int = 4

    # Quadrilateral scoring
    quad_margin: float = 0.005
    quad_area_min_ratio: float = 0.002
    quad_area_max_ratio: float = 0.80
    quad_aspect_min: float = 0.90
    quad_aspect_max: float = 1.60
    quad_edge_half: int = 6
    quad_edge_samples: int = 48
    quad_edge_min_contrast: float = 0.5
    quad_area_bonus: float = 300.0

    # White-region strategy
    white_gaussian_sigma: float = 1.2
    white_morph_kernel: int = 11
    white_morph_iterations: int = 1
    white_approx_eps_ratio: float = 0.0125
    white_approx_expand: float = 1.3
    white_approx_shrink: float = 0.7

    # CLAHE & rect preprocessing
    clahe_clip_limit: float = 2.0
    clahe_tile_grid: Tuple[int, int] = (8, 8)
    rect_blur_kernel: Tuple[int, int] = (3, 3)

    # Blob detector
    blob_min_area: float = 450.0
    blob_max_area: float = 26000.0
    blob_dark: bool = True
    blob_min_circularity: float = 0.45
    blob_min_convexity: float = 0.45
    blob_min_inertia: float = 0.04
    blob_min_threshold: float = 5.0
    blob_max_threshold: float = 220.0
    blob_threshold_step: float = 5.0
    blob_min_dist: float = 10.0

    # Refinement
    refine_gate: float = 0.6
    refine_win_scale: float = 3.0
    refine_win_min: float = 30.0
    refine_win_max: float = 220.0
    refine_segment_ksize: int = 3
    refine_open_kernel: Tuple[int, int] = (3, 3)

    # Area selection
    area_relax_default: float = 0.12
    area_relax_small: float = 0.14
    area_relax_big: float = 0.14
    area_relax_reassign_big: float = 0.20
    area_iterations: int = 8


def create_detection_config(**overrides) -> DetectionConfig:
    """Create a DetectionConfig with selective overrides for convenient tuning."""
    cfg = DetectionConfig()
    for key, value in overrides.items():
        if not hasattr(cfg, key):
            raise AttributeError(f"Unknown detection config field: {key}")
        setattr(cfg, key, value)
    return cfg


DEFAULT_CONFIG = DetectionConfig()

HIGH_RECALL_CONFIG = create_detection_config(
    quad_expand_scale=1.05,
    quad_expand_offset=16.0,
    warp_min_short=1600,
    hough_votes_ratio=0.0045,
    hough_min_line_ratio=0.25,
    hough_max_gap_ratio=0.05,
    hough_orientation_tol=7.5,
    hough_orthogonality_tol=14.0,
    white_morph_kernel=13,
    white_approx_shrink=0.6,
    blob_min_area=320.0,
    blob_max_area=32000.0,
    area_relax_small=0.18,
    area_relax_big=0.18,
    area_relax_reassign_big=0.26,
)

PRESETS: Dict[str, DetectionConfig] = {
    "default": DEFAULT_CONFIG,
    "high_recall": HIGH_RECALL_CONFIG,
}

# --------------------- Sanitisation ---------------------
_SIGMA_FALLBACKS = {
    "hough_gaussian_sigma": 1.0,
    "white_gaussian_sigma": 1.2,
}

_POSITIVE_INT_FALLBACKS = {
    "hough_dilate_kernel": 3,
    "hough_dilate_iterations": 1,
    "white_morph_kernel": 11,
    "white_morph_iterations": 1,
    "quad_edge_samples": 48,
    "quad_edge_half": 6,
    "refine_segment_ksize": 3,
}

_SIZE_FALLBACKS = {
    "clahe_tile_grid": (8, 8),
    "rect_blur_kernel": (3, 3),
    "refine_open_kernel": (3, 3),
}

_ODD_INT_FIELDS = ("hough_dilate_kernel", "white_morph_kernel", "refine_segment_ksize")
_ODD_SIZE_FIELDS = ("rect_blur_kernel", "refine_open_kernel")


def _is_finite_number(value) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def _make_odd(value: int) -> int:
    value = max(1, int(value))
    return value if value % 2 == 1 else value + 1


def sanitize_config(cfg: DetectionConfig) -> Tuple[DetectionConfig, List[str]]:
    """Return a corrected copy of ``cfg`` and the list of warnings raised.

    Non-finite numbers fall back to their field default, kernels and
    iteration counts must be positive, kernel sizes are forced odd and the
    blob threshold range must be non-empty. ``cfg`` itself is not modified.
    """

    out = replace(cfg)
    warnings: List[str] = []
    defaults = DetectionConfig()

    def fallback(name: str, value, replacement) -> None:
        msg = f"Detection config {name}={value!r} is invalid, falling back to {replacement!r}"
        warnings.append(msg)
        logger.warning("[WARN] %s", msg)
        setattr(out, name, replacement)

    for f in fields(DetectionConfig):
        default = getattr(defaults, f.name)
        value = getattr(out, f.name)
        if isinstance(default, float) and not _is_finite_number(value):
            fallback(f.name, value, default)

    for name, fb in _SIGMA_FALLBACKS.items():
        value = getattr(out, name)
        if not _is_finite_number(value) or float(value) <= 0.0:
            fallback(name, value, fb)

    for name, fb in _POSITIVE_INT_FALLBACKS.items():
        value = getattr(out, name)
        if not _is_finite_number(value) or int(value) <= 0:
            fallback(name, value, fb)

    for name, fb in _SIZE_FALLBACKS.items():
        value = getattr(out, name)
        try:
            w, h = (int(v) for v in value)
        except (TypeError, ValueError):
            fallback(name, value, fb)
            continue
        if w <= 0 or h <= 0:
            fallback(name, value, fb)
        else:
            setattr(out, name, (w, h))

    for name in _ODD_INT_FIELDS:
        setattr(out, name, _make_odd(getattr(out, name)))
    for name in _ODD_SIZE_FIELDS:
        w, h = getattr(out, name)
        setattr(out, name, (_make_odd(w), _make_odd(h)))

    out.blob_threshold_step = max(float(out.blob_threshold_step), 1e-3)
    if float(out.blob_max_threshold) <= float(out.blob_min_threshold):
        fallback("blob_max_threshold", out.blob_max_threshold, float(out.blob_min_threshold) + 1.0)

    return out, warnings


# --------------------- Presets & overrides ---------------------
def parse_override(expr: str) -> Tuple[str, object]:
    """Parse ``KEY=VALUE`` into a field name and a Python literal."""
    if "=" not in expr:
        raise ValueError(f"Override '{expr}' is missing the '=' separator")
    key, raw = expr.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError(f"Override '{expr}' has an empty key")
    raw = raw.strip()
    if not raw:
        value: object = None
    else:
        try:
            value = ast.literal_eval(raw)
        except (ValueError, SyntaxError):
            lower = raw.lower()
            if lower in {"true", "false"}:
                value = lower == "true"
            else:
                value = raw
    return key, value


def load_config_overrides(path: Union[str, Path]) -> Dict[str, object]:
    """Read a YAML mapping of detection overrides (``{field: value}``)."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    detection = data.get("detection", data)
    if not isinstance(detection, dict):
        raise ValueError(f"'detection' section of {path} must be a mapping")
    # YAML 没有 tuple，这里统一转回来
    return {k: tuple(v) if isinstance(v, list) else v for k, v in detection.items()}


def build_detection_config(preset: str = "default",
                           overrides: Sequence[str] = (),
                           extra: Optional[Dict[str, object]] = None) -> Tuple[DetectionConfig, Dict[str, object]]:
    if preset not in PRESETS:
        raise ValueError(f"Unknown detection preset '{preset}' (choose from {sorted(PRESETS)})")
    base = create_detection_config(**asdict(PRESETS[preset]))
    override_map: Dict[str, object] = {}
    items = list((extra or {}).items()) + [parse_override(expr) for expr in overrides]
    for key, value in items:
        if not hasattr(base, key):
            raise AttributeError(f"Unknown detection config field: {key}")
        setattr(base, key, value)
        override_map[key] = value
    return base, override_map


__all__ = [
    "DEFAULT_CONFIG",
    "DetectionConfig",
    "HIGH_RECALL_CONFIG",
    "PRESETS",
    "build_detection_config",
    "create_detection_config",
    "load_config_overrides",
    "parse_override",
    "sanitize_config",
]
