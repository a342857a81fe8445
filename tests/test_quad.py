from __future__ import annotations

import sys
from pathlib import Path

import cv2
import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from circlecalib.core.config import DEFAULT_CONFIG, create_detection_config
from circlecalib.core.geometry import order_quad
from circlecalib.core.quad import (HARD_FAIL_SCORE, detect_by_hough_search, detect_by_white_region, detect_quad,
                                   detect_quads_from_segments, quad_score, quad_within_image,
                                   refine_quad_local)

from synthetic_board import BOARD_EXTENT_MM, apply_affine, board_affine, render_board


def _square(left: float, top: float = 100.0, size: float = 200.0) -> np.ndarray:
    return np.array([[left, top], [left + size, top], [left + size, top + size], [left, top + size]],
                    np.float32)


def test_quad_score_margin_bands() -> None:
    gray = np.full((400, 400), 128, np.uint8)
    cfg = create_detection_config(quad_edge_min_contrast=0.0, quad_area_bonus=0.0)

    near = quad_score(gray, _square(-5.0), cfg)
    far = quad_score(gray, _square(-12.0), cfg)
    assert near > HARD_FAIL_SCORE and far > HARD_FAIL_SCORE
    assert near > far
    assert quad_score(gray, _square(-30.0), cfg) == HARD_FAIL_SCORE
    assert quad_score(gray, _square(100.0), cfg) == 0.0


def test_quad_score_prefers_contrasting_edges() -> None:
    gray = np.full((400, 400), 30, np.uint8)
    quad = _square(100.0)
    cv2.fillConvexPoly(gray, quad.astype(np.int32), 220)
    on_edge = quad_score(gray, quad, DEFAULT_CONFIG)
    off_edge = quad_score(gray, _square(140.0, 140.0, 120.0), DEFAULT_CONFIG)
    assert on_edge > 0
    assert on_edge > off_edge


def test_quad_score_rejects_extreme_aspect() -> None:
    gray = np.full((400, 400), 128, np.uint8)
    cfg = create_detection_config(quad_edge_min_contrast=0.0)
    thin = np.array([[50, 150], [350, 150], [350, 200], [50, 200]], np.float32)
    assert quad_score(gray, thin, cfg) == HARD_FAIL_SCORE


def test_quad_within_image() -> None:
    q = _square(50.0)
    assert quad_within_image(q, 400, 400, 0.005)
    assert not quad_within_image(_square(-1.0), 400, 400, 0.005)


def test_detect_quad_finds_bright_board() -> None:
    gray = np.full((600, 800), 40, np.uint8)
    board = np.array([[180, 110], [610, 140], [590, 500], [200, 470]], np.float32)
    cv2.fillConvexPoly(gray, board.astype(np.int32), 240)

    quad, mask = detect_by_white_region(gray, DEFAULT_CONFIG)
    assert quad is not None and mask is not None
    assert mask.shape == gray.shape

    best, _ = detect_quad(gray, DEFAULT_CONFIG)
    assert best is not None
    assert np.max(np.linalg.norm(best.corners - board, axis=1)) < 8.0


def test_detect_quad_rejects_uniform_images() -> None:
    for value in (0, 255):
        gray = np.full((480, 640), value, np.uint8)
        best, _ = detect_quad(gray, DEFAULT_CONFIG)
        assert best is None


def _board_corners(A: np.ndarray) -> np.ndarray:
    (x0, x1), (y0, y1) = BOARD_EXTENT_MM
    return order_quad(apply_affine(A, [(x0, y0), (x1, y0), (x1, y1), (x0, y1)]))


def _grown(quad: np.ndarray, px: float) -> np.ndarray:
    q = np.asarray(quad, np.float32).reshape(4, 2)
    centre = q.mean(axis=0)
    out = q - centre
    return (centre + out * (1.0 + px / np.linalg.norm(out, axis=1, keepdims=True))).astype(np.float32)


def test_detect_quads_from_segments_pairs_rectangle_edges() -> None:
    gray = np.full((600, 800), 30, np.uint8)
    rect = np.array([[200, 150], [600, 150], [600, 450], [200, 450]], np.float32)
    cv2.fillConvexPoly(gray, rect.astype(np.int32), 220)
    segments = [
        (150.0, 150.0, 650.0, 150.0),
        (150.0, 450.0, 650.0, 450.0),
        (200.0, 100.0, 200.0, 500.0),
        (600.0, 100.0, 600.0, 500.0),
    ]

    quads = detect_quads_from_segments(gray, segments, DEFAULT_CONFIG)
    assert quads
    assert np.max(np.abs(quads[0].corners - rect)) < 1.0
    assert abs(quads[0].area - 400.0 * 300.0) < 1.0
    assert [q.score for q in quads] == sorted((q.score for q in quads), reverse=True)
    assert detect_quads_from_segments(gray, segments[:3], DEFAULT_CONFIG) == []


def test_detect_by_hough_search_on_rendered_board() -> None:
    A = board_affine(angle_deg=10.0)
    gray, _ = render_board(A)
    quad = detect_by_hough_search(gray, DEFAULT_CONFIG)
    assert quad is not None
    assert np.max(np.linalg.norm(quad - _board_corners(A), axis=1)) < 8.0


def test_detect_by_hough_search_needs_segments() -> None:
    assert detect_by_hough_search(np.full((480, 640), 90, np.uint8), DEFAULT_CONFIG) is None


def test_refine_quad_local_snaps_to_board_edges() -> None:
    A = board_affine(angle_deg=-7.0)
    gray, _ = render_board(A)
    truth = _board_corners(A)
    refined = refine_quad_local(gray, _grown(truth, 10.0), DEFAULT_CONFIG)
    assert refined is not None
    assert np.max(np.linalg.norm(refined - truth, axis=1)) < 8.0
    assert refine_quad_local(gray, None, DEFAULT_CONFIG) is None


def test_refine_quad_local_rejects_far_drift() -> None:
    gray = np.full((800, 800), 30, np.uint8)
    square = _square(120.0, 120.0, 240.0)
    cv2.fillConvexPoly(gray, square.astype(np.int32), 230)

    assert refine_quad_local(gray, _grown(square, 10.0), DEFAULT_CONFIG) is not None
    # 只有左上角的小方块有边缘，中心偏移远超 max(1.5 * pad, 40)
    loose = np.array([[100, 100], [700, 100], [700, 700], [100, 700]], np.float32)
    assert refine_quad_local(gray, loose, DEFAULT_CONFIG) is None
