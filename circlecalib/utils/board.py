# -*- coding: utf-8 -*-
"""Mapping rectified-board measurements back into the source image."""

from __future__ import annotations

from typing import Sequence

import cv2
import numpy as np

__all__ = ["back_project_points", "project_radius"]


def back_project_points(points: Sequence[Sequence[float]], H_inv: np.ndarray) -> np.ndarray:
    """Map rectified coordinates through ``H_inv`` (rectified -> source).

    Parameters
    ----------
    points:
        (N, 2) rectified pixel coordinates.
    H_inv:
        3x3 inverse of the source -> rectified homography.

    Returns
    -------
    np.ndarray
        (N, 2) float32 source-image coordinates.
    """

    pts = np.asarray(points, np.float64).reshape(-1, 1, 2)
    if pts.shape[0] == 0:
        return np.zeros((0, 2), np.float32)
    return cv2.perspectiveTransform(pts, np.asarray(H_inv, np.float64)).reshape(-1, 2).astype(np.float32)


def project_radius(center: Sequence[float], radius: float, H_inv: np.ndarray) -> float:
    """Source-image radius of a rectified circle: mean distance of four offset samples."""
    if radius <= 0.0:
        return 0.0
    cx, cy = float(center[0]), float(center[1])
    samples = np.array([[cx, cy], [cx + radius, cy], [cx - radius, cy],
                        [cx, cy + radius], [cx, cy - radius]], np.float64)
    mapped = back_project_points(samples, H_inv).astype(np.float64)
    return float(np.mean(np.linalg.norm(mapped[1:] - mapped[0], axis=1)))
