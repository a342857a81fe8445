from __future__ import annotations

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from circlecalib.core.config import DEFAULT_CONFIG
from circlecalib.core.geometry import (deg_diff, intersect_lines, kmeans_1d, median_abs_deviation,
                                       median_intensity, order_quad, segment_to_line)
from circlecalib.core.rectify import expand_quad, preprocess_rect, warp_quad


def test_order_quad_from_shuffled_corners() -> None:
    pts = np.array([[100, 90], [10, 5], [12, 95], [98, 8]], np.float32)
    q = order_quad(pts)
    assert np.allclose(q, [[10, 5], [98, 8], [100, 90], [12, 95]])


def test_intersect_lines_and_parallel() -> None:
    horiz = segment_to_line(0, 10, 100, 10)
    vert = segment_to_line(30, 0, 30, 100)
    p = intersect_lines(horiz, vert)
    assert p is not None
    assert np.allclose(p, [30.0, 10.0], atol=1e-4)
    assert intersect_lines(horiz, segment_to_line(0, 50, 100, 50)) is None


def test_deg_diff_wraps() -> None:
    assert deg_diff(179.0, 1.0) == pytest.approx(2.0)
    assert deg_diff(0.0, 90.0) == pytest.approx(90.0)


def test_robust_stats() -> None:
    assert median_intensity(np.array([[1, 2], [3, 4]], np.uint8)) == 3.0
    assert median_abs_deviation([1.0, 2.0, 3.0, 4.0, 100.0]) == pytest.approx(1.0)


def test_kmeans_1d_separates_rows() -> None:
    values = np.concatenate([np.full(6, float(r * 100)) + np.linspace(-2, 2, 6) for r in range(7)])
    labels, centers = kmeans_1d(values, 7)
    assert len(centers) == 7
    for r in range(7):
        assert len(set(labels[r * 6:(r + 1) * 6].tolist())) == 1
    assert len(set(labels.tolist())) == 7
    with pytest.raises(ValueError):
        kmeans_1d([1.0, 2.0], 3)


def test_expand_quad_moves_vertices_outward() -> None:
    quad = np.array([[0, 0], [100, 0], [100, 100], [0, 100]], np.float32)
    out = expand_quad(quad, scale=1.0, offset=10.0)
    d = np.linalg.norm(out - 50.0, axis=1)
    assert np.allclose(d, np.hypot(50, 50) + 10.0, atol=1e-3)
    assert expand_quad(np.zeros((4, 2), np.float32)) is None


def test_warp_roundtrip_maps_quad_to_rectangle() -> None:
    gray = np.full((600, 800), 60, np.uint8)
    quad = np.array([[120, 90], [650, 110], [630, 520], [140, 500]], np.float32)
    cv2.fillConvexPoly(gray, quad.astype(np.int32), 230)
    warp = warp_quad(gray, quad, DEFAULT_CONFIG)
    assert warp is not None
    h, w = warp.image.shape[:2]
    assert min(h, w) >= DEFAULT_CONFIG.warp_min_short - 1

    src = cv2.perspectiveTransform(quad.reshape(-1, 1, 2).astype(np.float64), warp.homography).reshape(-1, 2)
    # 放大后的矩形：左上角在原点、边与坐标轴平行
    assert np.allclose(src[0], [0, 0], atol=1e-3)
    assert abs(src[1][1]) < 1e-3 and abs(src[3][0]) < 1e-3
    assert np.allclose(src[2], [src[1][0], src[3][1]], atol=1e-3)
    assert w - 6 <= src[1][0] <= w and h - 6 <= src[3][1] <= h
    back = cv2.perspectiveTransform(src.reshape(-1, 1, 2), warp.homography_inv).reshape(-1, 2)
    assert np.allclose(back, quad, atol=1e-3)

    pre = preprocess_rect(warp.image, DEFAULT_CONFIG)
    assert pre.shape == warp.image.shape and pre.dtype == np.uint8
