# -*- coding: utf-8 -*-
"""
几何/数值小工具：四边形排序、直线法式、双线性采样、1D k-means。
Pure helpers shared by the quad search, blob selection and numbering stages.
"""
from __future__ import annotations

import logging
from typing import NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class Line(NamedTuple):
    """Line in normal form ``nx * x + ny * y + c = 0`` with unit normal."""
    nx: float
    ny: float
    c: float
    theta: float
    rho: float


# --------------------- Quads ---------------------
def order_quad(pts4) -> np.ndarray:
    """Order four points as top-left, top-right, bottom-right, bottom-left."""
    pts4 = np.asarray(pts4, np.float32).reshape(4, 2)
    s = pts4.sum(1); d = pts4[:, 0] - pts4[:, 1]
    tl = pts4[np.argmin(s)]; br = pts4[np.argmax(s)]
    tr = pts4[np.argmax(d)]; bl = pts4[np.argmin(d)]
    return np.array([tl, tr, br, bl], np.float32)


def polygon_area(pts) -> float:
    return float(abs(cv2.contourArea(np.asarray(pts, np.float32).reshape(-1, 1, 2))))


# --------------------- Lines ---------------------
def segment_to_line(x1, y1, x2, y2) -> Line:
    vx, vy = float(x2) - float(x1), float(y2) - float(y1)
    L = np.hypot(vx, vy) + 1e-9
    nx, ny = -vy / L, vx / L
    c = -(nx * float(x1) + ny * float(y1))
    theta = float((np.arctan2(ny, nx) + np.pi) % np.pi)
    return Line(float(nx), float(ny), float(c), theta, float(-c))


def line_angle_deg(line: Line) -> float:
    """Direction of the line in degrees, in [0, 180)."""
    return float((np.degrees(line.theta) - 90.0) % 180.0)


def deg_diff(a: float, b: float) -> float:
    """Smallest difference between two undirected angles, in [0, 90]."""
    return float(abs((a - b + 90.0) % 180.0 - 90.0))


def intersect_lines(a: Line, b: Line) -> Optional[np.ndarray]:
    det = a.nx * b.ny - b.nx * a.ny
    if abs(det) < 1e-8:
        return None
    x = (a.ny * b.c - b.ny * a.c) / det
    y = (b.nx * a.c - a.nx * b.c) / det
    if not (np.isfinite(x) and np.isfinite(y)):
        return None
    return np.array([x, y], np.float32)


# --------------------- Sampling & robust stats ---------------------
def bilinear_sample(im: np.ndarray, xy: np.ndarray) -> np.ndarray:
    """Bilinear intensities at ``xy`` (N, 2), coordinates clamped to the image."""
    h, w = im.shape[:2]
    xy = np.asarray(xy, np.float64).reshape(-1, 2)
    x = np.clip(xy[:, 0], 0.0, w - 1.0)
    y = np.clip(xy[:, 1], 0.0, h - 1.0)
    x0 = np.clip(np.floor(x).astype(np.int32), 0, max(w - 2, 0))
    y0 = np.clip(np.floor(y).astype(np.int32), 0, max(h - 2, 0))
    x1 = np.minimum(x0 + 1, w - 1); y1 = np.minimum(y0 + 1, h - 1)
    dx = x - x0; dy = y - y0
    img = im.astype(np.float64)
    return ((1 - dx) * (1 - dy) * img[y0, x0] + dx * (1 - dy) * img[y0, x1]
            + (1 - dx) * dy * img[y1, x0] + dx * dy * img[y1, x1])


def median_intensity(gray: np.ndarray) -> float:
    """Upper median of the pixel values (element ``n // 2`` after partition)."""
    flat = np.asarray(gray).reshape(-1)
    if flat.size == 0:
        return 0.0
    k = flat.size // 2
    return float(np.partition(flat, k)[k])


def median(values: Sequence[float]) -> float:
    arr = np.asarray(values, np.float64)
    if arr.size == 0:
        return 0.0
    return float(np.median(arr))


def median_abs_deviation(values: Sequence[float], center: Optional[float] = None) -> float:
    arr = np.asarray(values, np.float64)
    if arr.size == 0:
        return 0.0
    if center is None:
        center = float(np.median(arr))
    return float(np.median(np.abs(arr - center)))


# --------------------- 1D k-means ---------------------
def lloyd_1d(values: Sequence[float], k: int, max_iter: int = 32, tol: float = 1e-4) -> Tuple[np.ndarray, np.ndarray]:
    """Deterministic Lloyd iterations seeded with evenly spaced centres."""
    v = np.asarray(values, np.float64).reshape(-1)
    lo, hi = float(v.min()), float(v.max())
    if hi - lo < 1e-6:
        centers = np.full(k, lo, np.float64)
    else:
        centers = np.linspace(lo, hi, k, dtype=np.float64)
    labels = np.argmin(np.abs(v[:, None] - centers[None, :]), axis=1)
    for _ in range(max_iter):
        labels = np.argmin(np.abs(v[:, None] - centers[None, :]), axis=1)
        new_c = centers.copy()
        for j in range(k):
            members = v[labels == j]
            if members.size:
                new_c[j] = members.mean()
        shift = float(np.max(np.abs(new_c - centers)))
        centers = new_c
        if shift < tol:
            break
    labels = np.argmin(np.abs(v[:, None] - centers[None, :]), axis=1)
    return labels.astype(np.int32), centers


def kmeans_1d(values: Sequence[float], k: int) -> Tuple[np.ndarray, np.ndarray]:
    """k-means++ on scalars via OpenCV, Lloyd fallback when it fails or collapses.

    Returns ``(labels, centers)`` with labels indexing into ``centers``.
    """
    v = np.asarray(values, np.float32).reshape(-1, 1)
    if v.shape[0] < k:
        raise ValueError(f"kmeans_1d needs at least {k} values, got {v.shape[0]}")
    crit = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 200, 1e-4)
    try:
        _, labels, centers = cv2.kmeans(v, k, None, crit, 10, cv2.KMEANS_PP_CENTERS)
    except cv2.error as exc:
        logger.debug("cv2.kmeans failed (%s), using Lloyd fallback", exc)
        return lloyd_1d(v.ravel(), k)
    centers = np.asarray(centers, np.float64).reshape(-1)
    if centers.size < k or np.unique(np.round(centers, 4)).size < k:
        return lloyd_1d(v.ravel(), k)
    return labels.ravel().astype(np.int32), centers


__all__ = [
    "Line",
    "bilinear_sample",
    "deg_diff",
    "intersect_lines",
    "kmeans_1d",
    "line_angle_deg",
    "lloyd_1d",
    "median",
    "median_abs_deviation",
    "median_intensity",
    "order_quad",
    "polygon_area",
    "segment_to_line",
]
