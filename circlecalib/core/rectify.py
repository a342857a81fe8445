# -*- coding: utf-8 -*-
"""Perspective rectification of the board quad and rectified-image preprocessing."""

from __future__ import annotations

from typing import NamedTuple, Optional

import cv2
import numpy as np

from .config import DetectionConfig, DEFAULT_CONFIG
from .geometry import order_quad


class WarpResult(NamedTuple):
    image: np.ndarray
    homography: np.ndarray        # source -> rectified (3x3, float64)
    homography_inv: np.ndarray    # rectified -> source


def expand_quad(quad, scale: Optional[float] = None, offset: Optional[float] = None,
                cfg: DetectionConfig = DEFAULT_CONFIG) -> Optional[np.ndarray]:
    """沿着中心方向外扩四边形，避免透视下裁剪到边缘

    Each vertex moves to ``center + dir * (len * scale + offset)``. Returns
    ``None`` when a vertex coincides with the centroid.
    """
    q = np.asarray(quad, np.float64).reshape(4, 2)
    if scale is None:
        scale = cfg.quad_expand_scale
    if offset is None:
        offset = cfg.quad_expand_offset
    center = q.mean(axis=0)
    vec = q - center
    lengths = np.linalg.norm(vec, axis=1)
    if np.any(lengths < 1e-6):
        return None
    dirs = vec / lengths[:, None]
    new_len = lengths * float(scale) + float(offset)
    return (center + dirs * new_len[:, None]).astype(np.float32)


def warp_quad(gray: np.ndarray, quad, cfg: DetectionConfig = DEFAULT_CONFIG) -> Optional[WarpResult]:
    q = order_quad(quad)
    W = int(round(max(np.linalg.norm(q[1] - q[0]), np.linalg.norm(q[2] - q[3]), float(cfg.warp_min_dim))))
    H = int(round(max(np.linalg.norm(q[3] - q[0]), np.linalg.norm(q[2] - q[1]), float(cfg.warp_min_dim))))
    if W <= 1 or H <= 1:
        return None
    dst = np.array([[0, 0], [W - 1, 0], [W - 1, H - 1], [0, H - 1]], np.float32)
    Hm = cv2.getPerspectiveTransform(q, dst).astype(np.float64)
    rect = cv2.warpPerspective(gray, Hm, (W, H), flags=int(cfg.warp_interp))
    short = min(W, H)
    if 0 < short < cfg.warp_min_short:
        s = float(cfg.warp_min_short) / short
        rect = cv2.resize(rect, None, fx=s, fy=s, interpolation=cv2.INTER_CUBIC)
        Hm = np.array([[s, 0, 0], [0, s, 0], [0, 0, 1]], np.float64) @ Hm
    try:
        H_inv = np.linalg.inv(Hm)
    except np.linalg.LinAlgError:
        return None
    if not np.all(np.isfinite(H_inv)):
        return None
    return WarpResult(rect, Hm, H_inv)


def preprocess_rect(rect: np.ndarray, cfg: DetectionConfig = DEFAULT_CONFIG) -> np.ndarray:
    """CLAHE followed by a small Gaussian blur."""
    tile_grid = tuple(max(1, int(round(v))) for v in cfg.clahe_tile_grid)
    clahe = cv2.createCLAHE(clipLimit=max(float(cfg.clahe_clip_limit), 0.1), tileGridSize=tile_grid)
    rect_eq = clahe.apply(rect)
    kx, ky = (int(v) for v in cfg.rect_blur_kernel)
    if kx % 2 == 0: kx += 1
    if ky % 2 == 0: ky += 1
    return cv2.GaussianBlur(rect_eq, (max(1, kx), max(1, ky)), 0)


__all__ = ["WarpResult", "expand_quad", "preprocess_rect", "warp_quad"]
