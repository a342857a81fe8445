# circlecalib/viz/debug_images.py
# -*- coding: utf-8 -*-
"""
检测调试图：只做"可视化与落盘"，不参与检测结果。
Stage images are written below ``<tmp>/calib_debug/<name>_<id>`` and listed
on the DetectionResult so that callers can show or delete them.
"""

from __future__ import annotations

import itertools
import logging
import re
import shutil
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..core.types import DebugImage, DetectionResult

logger = logging.getLogger(__name__)

__all__ = [
    "DebugImageWriter",
    "annotate_text",
    "cleanup_debug_artifacts",
    "downscale_for_display",
    "draw_detection_overlay",
    "draw_mask_overlay",
    "draw_numbered_grid",
    "draw_quad_overlay",
    "draw_selection",
    "ensure_color_8u",
    "sanitize_filename",
]

DEBUG_MAX_DIM = 1600

_debug_counter = itertools.count()
_debug_lock = threading.Lock()

# 行彩虹调色板 (BGR)
ROW_PALETTE = [
    (255, 206, 86),
    (129, 212, 250),
    (186, 104, 200),
    (255, 167, 112),
    (144, 238, 144),
    (173, 190, 255),
    (255, 221, 153),
]


# ---------- small helpers ----------
def sanitize_filename(name: str) -> str:
    out = re.sub(r"[^0-9A-Za-z_-]", "_", name or "")
    return out or "image"


def next_debug_id() -> int:
    with _debug_lock:
        return next(_debug_counter)


def ensure_color_8u(img: np.ndarray) -> np.ndarray:
    if img is None or img.size == 0:
        return np.zeros((0, 0, 3), np.uint8)
    out = img
    if out.dtype != np.uint8:
        out = cv2.normalize(out.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    if out.ndim == 2:
        return cv2.cvtColor(out, cv2.COLOR_GRAY2BGR)
    if out.shape[2] == 4:
        return cv2.cvtColor(out, cv2.COLOR_BGRA2BGR)
    return out.copy()


def downscale_for_display(img: np.ndarray, max_dim: int = DEBUG_MAX_DIM) -> np.ndarray:
    h, w = img.shape[:2]
    largest = max(h, w)
    if largest <= max_dim:
        return img
    s = float(max_dim) / largest
    return cv2.resize(img, (max(1, int(round(w * s))), max(1, int(round(h * s)))), interpolation=cv2.INTER_AREA)


def annotate_text(img, text, xy, color=(245, 245, 245), font_scale=0.42, thick=1):
    x, y = int(round(xy[0])), int(round(xy[1]))
    cv2.putText(img, str(text), (x, y), cv2.FONT_HERSHEY_SIMPLEX, font_scale, (20, 20, 20), thick + 1, cv2.LINE_AA)
    cv2.putText(img, str(text), (x, y), cv2.FONT_HERSHEY_SIMPLEX, font_scale, color, thick, cv2.LINE_AA)


def _ipt(p) -> Tuple[int, int]:
    return (int(round(float(p[0]))), int(round(float(p[1]))))


# ---------- overlays ----------
def draw_mask_overlay(original_bgr: np.ndarray, mask: np.ndarray) -> np.ndarray:
    colored = cv2.applyColorMap(mask, cv2.COLORMAP_JET)
    return cv2.addWeighted(colored, 0.65, original_bgr, 0.35, 0.0)


def draw_quad_overlay(original_bgr: np.ndarray, quad, color=(0, 210, 255), thickness: int = 3) -> np.ndarray:
    canvas = original_bgr.copy()
    poly = np.round(np.asarray(quad, np.float64)).astype(np.int32).reshape(-1, 1, 2)
    cv2.polylines(canvas, [poly], True, color, thickness, cv2.LINE_AA)
    return canvas


def draw_selection(rect_bgr: np.ndarray, smalls: Sequence, bigs: Sequence) -> np.ndarray:
    canvas = rect_bgr.copy()
    for b in smalls:
        cv2.circle(canvas, _ipt(b.center), max(2, int(round(b.radius))), (80, 220, 120), 2, cv2.LINE_AA)
    for b in bigs:
        cv2.circle(canvas, _ipt(b.center), max(3, int(round(b.radius * 1.2))), (40, 90, 240), 3, cv2.LINE_AA)
    return canvas


def draw_numbered_grid(rect_bgr: np.ndarray, points: np.ndarray, logical: Sequence[Tuple[int, int]],
                       bigs: Sequence, axes=None) -> np.ndarray:
    canvas = rect_bgr.copy()
    for p, (r, c) in zip(points, logical):
        color = ROW_PALETTE[min(max(r, 0), len(ROW_PALETTE) - 1)]
        center = _ipt(p)
        cv2.circle(canvas, center, 6, color, -1, cv2.LINE_AA)
        cv2.circle(canvas, center, 10, color, 2, cv2.LINE_AA)
        annotate_text(canvas, f"{r}:{c}", (center[0] - 18, center[1] - 10))
    if axes is not None:
        origin = _ipt(axes.origin)
        arrow = max(40, min(canvas.shape[:2]) // 8)
        x_end = _ipt(axes.origin + axes.x_hat * arrow)
        y_end = _ipt(axes.origin + axes.y_hat * arrow)
        cv2.arrowedLine(canvas, origin, x_end, (64, 200, 255), 2, cv2.LINE_AA, 0, 0.2)
        cv2.arrowedLine(canvas, origin, y_end, (255, 140, 90), 2, cv2.LINE_AA, 0, 0.2)
        annotate_text(canvas, "X", (x_end[0] + 4, x_end[1] - 4), (220, 245, 255), 0.5)
        annotate_text(canvas, "Y", (y_end[0] + 4, y_end[1] - 4), (255, 230, 210), 0.5)
    for b in bigs:
        cv2.circle(canvas, _ipt(b.center), max(5, int(round(b.radius * 1.5))), (40, 90, 240), 3, cv2.LINE_AA)
    return canvas


def draw_detection_overlay(original_bgr: np.ndarray, result: DetectionResult) -> np.ndarray:
    """Source image with the quad, numbered small dots and big dots."""
    canvas = original_bgr.copy()
    if result.quad is not None:
        canvas = draw_quad_overlay(canvas, result.quad, (0, 210, 255), 2)
    rows: List[List[Tuple[int, int]]] = [[] for _ in ROW_PALETTE]
    for i, (p, (r, c)) in enumerate(zip(result.image_points, result.logical_indices)):
        color = ROW_PALETTE[min(max(r, 0), len(ROW_PALETTE) - 1)]
        radius = result.circle_radii_px[i] if i < len(result.circle_radii_px) else 4.0
        cv2.circle(canvas, _ipt(p), max(3, int(round(radius))), color, 2, cv2.LINE_AA)
        annotate_text(canvas, str(i), (p[0] + 5, p[1] - 6))
        rows[min(max(r, 0), len(rows) - 1)].append(_ipt(p))
    for r, pts in enumerate(rows):
        if len(pts) >= 2:
            cv2.polylines(canvas, [np.array(pts, np.int32).reshape(-1, 1, 2)], False, ROW_PALETTE[r], 1, cv2.LINE_AA)
    for i, p in enumerate(result.big_circle_points):
        radius = result.big_circle_radii_px[i] if i < len(result.big_circle_radii_px) else 8.0
        cv2.circle(canvas, _ipt(p), max(5, int(round(radius * 1.3))), (40, 90, 240), 3, cv2.LINE_AA)
    return canvas


# ---------- writer ----------
class DebugImageWriter:
    """Writes downscaled stage images for one detection and records them on the result."""

    def __init__(self, result: DetectionResult, root: Optional[Path] = None, enabled: bool = True):
        self.result = result
        self.directory: Optional[Path] = None
        if not enabled:
            return
        base = Path(root) if root is not None else Path(tempfile.gettempdir()) / "calib_debug"
        target = base / f"{sanitize_filename(result.name)}_{next_debug_id()}"
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("[WARN] cannot create debug directory %s: %s", target, exc)
            return
        self.directory = target
        result.debug_directory = str(target)

    @property
    def enabled(self) -> bool:
        return self.directory is not None

    def add(self, label: str, image: Optional[np.ndarray]) -> None:
        if self.directory is None or image is None or image.size == 0:
            return
        display = downscale_for_display(image)
        path = self.directory / f"{sanitize_filename(label)}_{len(self.result.debug_images)}.png"
        if not cv2.imwrite(str(path), display):
            logger.warning("[WARN] failed to write debug image %s", path)
            return
        self.result.debug_images.append(DebugImage(label=label, file_path=str(path)))


def cleanup_debug_artifacts(result: DetectionResult) -> None:
    """Delete the debug directory of ``result`` and forget its images."""
    if result.debug_directory:
        shutil.rmtree(result.debug_directory, ignore_errors=True)
    result.debug_directory = None
    result.debug_images.clear()
