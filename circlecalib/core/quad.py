# -*- coding: utf-8 -*-
"""
找板：在原图上定位标定板外框四边形。
Two independent strategies (Hough line pairing and largest white region) each
propose a quadrilateral, both are optionally snapped to nearby edges by a
local refinement, and every proposal is scored by ``quad_score``. The best
score wins.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import DetectionConfig, DEFAULT_CONFIG
from .geometry import (Line, bilinear_sample, deg_diff, intersect_lines, line_angle_deg,
                       median_intensity, order_quad, polygon_area, segment_to_line)

logger = logging.getLogger(__name__)

HARD_FAIL_SCORE = -1e9
SCORE_FLOOR = -1e8


@dataclass
class QuadCandidate:
    corners: np.ndarray     # (4, 2) float32, tl/tr/br/bl
    score: float
    area: float


def describe_image(gray: np.ndarray) -> str:
    h, w = gray.shape[:2]
    ch = 1 if gray.ndim == 2 else gray.shape[2]
    return f"type={gray.dtype}C{ch} | size={w}x{h}"


# --------------------- Scoring ---------------------
def edge_contrast(gray: np.ndarray, quad, cfg: DetectionConfig = DEFAULT_CONFIG) -> float:
    """Mean absolute inside/outside intensity difference across the four edges.

    Samples whose inner or outer sample point falls within one pixel of the image
    border are ignored; edges without valid samples do not contribute.
    """
    h, w = gray.shape[:2]
    q = order_quad(quad).astype(np.float64)
    ns = max(1, int(cfg.quad_edge_samples))
    half = float(max(1, int(cfg.quad_edge_half)))
    t = (np.arange(ns, dtype=np.float64) + 0.5) / ns

    def inside(p: np.ndarray) -> np.ndarray:
        return (p[:, 0] >= 1.0) & (p[:, 1] >= 1.0) & (p[:, 0] < w - 2) & (p[:, 1] < h - 2)

    diffs = []
    for i in range(4):
        a, b = q[i], q[(i + 1) % 4]
        vec = b - a
        length = float(np.hypot(vec[0], vec[1]))
        if length < 1e-6:
            continue
        unit = vec / length
        normal = np.array([-unit[1], unit[0]])
        pts = a[None, :] + t[:, None] * vec[None, :]
        p_in = pts - normal * half
        p_out = pts + normal * half
        valid = inside(p_in) & inside(p_out)
        if not np.any(valid):
            continue
        d = np.abs(bilinear_sample(gray, p_in[valid]) - bilinear_sample(gray, p_out[valid]))
        diffs.append(float(d.mean()))
    return float(np.mean(diffs)) if diffs else 0.0


def quad_score(gray: np.ndarray, quad, cfg: DetectionConfig = DEFAULT_CONFIG) -> float:
    """Plausibility score of a board quadrilateral; ``-1e9`` on hard failure.

    Soft violations of the margin, area, aspect and contrast bands subtract
    a penalty proportional to how far into the relaxed band the value is.
    Anything outside a relaxed band is a hard failure. Finite scores are
    floored at ``-1e8``.
    """
    h, w = gray.shape[:2]
    q = order_quad(quad)
    contrast = edge_contrast(gray, q, cfg)
    area = polygon_area(q)
    total_area = float(h * w)
    margin_x = cfg.quad_margin * w
    margin_y = cfg.quad_margin * h
    relaxed_x = margin_x * 3.0 + 12.0
    relaxed_y = margin_y * 3.0 + 12.0

    penalty = 0.0
    for x, y in q.astype(np.float64):
        ox = margin_x - x if x < margin_x else (x - (w - margin_x) if x > w - margin_x else 0.0)
        oy = margin_y - y if y < margin_y else (y - (h - margin_y) if y > h - margin_y else 0.0)
        if ox > 0.0 or oy > 0.0:
            if ox > relaxed_x or oy > relaxed_y:
                logger.debug("quad_score: vertex outside margin (%.2f,%.2f) | margin=(%.2f,%.2f) | size=%dx%d",
                             x, y, margin_x, margin_y, w, h)
                return HARD_FAIL_SCORE
            penalty += (ox / max(relaxed_x, 1.0) + oy / max(relaxed_y, 1.0)) * 500.0

    min_area = cfg.quad_area_min_ratio * total_area
    max_area = cfg.quad_area_max_ratio * total_area
    relaxed_min_area = min_area * 0.15
    relaxed_max_area = max_area * 1.6
    if area < min_area:
        if area < relaxed_min_area:
            logger.debug("quad_score: area ratio=%.4f below minimum=%.3f (hard fail)",
                         area / total_area, cfg.quad_area_min_ratio)
            return HARD_FAIL_SCORE
        penalty += (min_area - area) / max(min_area - relaxed_min_area, 1.0) * 1200.0
    elif area > max_area:
        if area > relaxed_max_area:
            logger.debug("quad_score: area ratio=%.4f above maximum=%.3f (hard fail)",
                         area / total_area, cfg.quad_area_max_ratio)
            return HARD_FAIL_SCORE
        penalty += (area - max_area) / max(relaxed_max_area - max_area, 1.0) * 1000.0

    wlen = 0.5 * (np.linalg.norm(q[1] - q[0]) + np.linalg.norm(q[2] - q[3]))
    hlen = 0.5 * (np.linalg.norm(q[3] - q[0]) + np.linalg.norm(q[2] - q[1]))
    ratio = float(max(wlen, hlen) / max(1.0, min(wlen, hlen)))
    relaxed_aspect_min = cfg.quad_aspect_min * 0.7
    relaxed_aspect_max = cfg.quad_aspect_max * 1.5
    if ratio < cfg.quad_aspect_min:
        if ratio < relaxed_aspect_min:
            return HARD_FAIL_SCORE
        penalty += (cfg.quad_aspect_min - ratio) / max(cfg.quad_aspect_min - relaxed_aspect_min, 1e-3) * 600.0
    elif ratio > cfg.quad_aspect_max:
        if ratio > relaxed_aspect_max:
            logger.debug("quad_score: aspect ratio=%.3f above [%.2f,%.2f] (hard fail)",
                         ratio, cfg.quad_aspect_min, cfg.quad_aspect_max)
            return HARD_FAIL_SCORE
        penalty += (ratio - cfg.quad_aspect_max) / max(relaxed_aspect_max - cfg.quad_aspect_max, 1e-3) * 600.0

    if contrast < cfg.quad_edge_min_contrast:
        relaxed_contrast = cfg.quad_edge_min_contrast * 0.45
        if contrast < relaxed_contrast:
            logger.debug("quad_score: edge contrast=%.3f below threshold=%.2f (hard fail)",
                         contrast, cfg.quad_edge_min_contrast)
            return HARD_FAIL_SCORE
        span = max(cfg.quad_edge_min_contrast - relaxed_contrast, 1e-3)
        penalty += (cfg.quad_edge_min_contrast - contrast) / span * 800.0

    score = contrast * 2000.0 + cfg.quad_area_bonus * np.sqrt(max(0.0, area)) - penalty
    return float(max(score, SCORE_FLOOR))


def quad_within_image(quad, rows: int, cols: int, margin_ratio: float) -> bool:
    """All vertices inside ``[m, cols - m) x [m, rows - m)``, m = ratio * max(rows, cols)."""
    margin = margin_ratio * max(rows, cols)
    q = np.asarray(quad, np.float64).reshape(-1, 2)
    return bool(np.all((q[:, 0] >= margin) & (q[:, 0] < cols - margin)
                       & (q[:, 1] >= margin) & (q[:, 1] < rows - margin)))


def _evaluate(gray: np.ndarray, quad, cfg: DetectionConfig) -> Optional[QuadCandidate]:
    ordered = order_quad(quad)
    score = quad_score(gray, ordered, cfg)
    if score <= SCORE_FLOOR:
        return None
    return QuadCandidate(corners=ordered, score=score, area=polygon_area(ordered))


# --------------------- Hough 搜索 ---------------------
def _canny_edges(gray: np.ndarray, cfg: DetectionConfig, dilate_iterations: int) -> np.ndarray:
    g = cv2.GaussianBlur(gray, (0, 0), cfg.hough_gaussian_sigma) if cfg.hough_gaussian_sigma > 0 else gray.copy()
    med = median_intensity(g)
    lo = max(cfg.hough_canny_low_ratio * med, float(cfg.hough_canny_low_min))
    hi = min(max(lo * cfg.hough_canny_high_ratio, lo + 1.0), 255.0)
    edges = cv2.Canny(g, lo, hi)
    if cfg.hough_dilate_kernel > 0 and dilate_iterations > 0:
        k = cv2.getStructuringElement(cv2.MORPH_RECT, (cfg.hough_dilate_kernel, cfg.hough_dilate_kernel))
        edges = cv2.dilate(edges, k, iterations=dilate_iterations)
    return edges


def detect_segments(edges: np.ndarray, cfg: DetectionConfig = DEFAULT_CONFIG) -> np.ndarray:
    """Probabilistic Hough segments as an (N, 4) float32 array."""
    dim = float(min(edges.shape[:2]))
    votes = int(round(max(cfg.hough_votes_ratio * dim, 10.0)))
    lines = cv2.HoughLinesP(edges, 1.0, np.pi / 180.0, votes,
                            minLineLength=cfg.hough_min_line_ratio * dim,
                            maxLineGap=cfg.hough_max_gap_ratio * dim)
    if lines is None:
        return np.zeros((0, 4), np.float32)
    return lines.reshape(-1, 4).astype(np.float32)


def _nms_rho(lines: List[Line], rho_thr: float) -> List[Line]:
    kept: List[Line] = []
    for L in sorted(lines, key=lambda t: t.rho):
        if all(abs(L.rho - K.rho) > rho_thr for K in kept):
            kept.append(L)
    return kept


def detect_quads_from_segments(gray: np.ndarray, segments: Sequence[Sequence[float]],
                               cfg: DetectionConfig = DEFAULT_CONFIG) -> List[QuadCandidate]:
    """Pair two near-parallel lines from each orientation cluster into quads.

    Returns every candidate that survives scoring, best first.
    """
    if len(segments) < 4:
        return []
    h, w = gray.shape[:2]
    lines = [segment_to_line(*seg) for seg in segments]

    feats = np.array([[np.cos(2 * L.theta), np.sin(2 * L.theta)] for L in lines], np.float32)
    crit = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, int(cfg.hough_kmeans_max_iter), float(cfg.hough_kmeans_eps))
    _, labels, _ = cv2.kmeans(feats, 2, None, crit, int(cfg.hough_kmeans_attempts), cv2.KMEANS_PP_CENTERS)
    groups: List[List[Line]] = [[], []]
    for L, lb in zip(lines, labels.ravel()):
        groups[int(lb) if lb in (0, 1) else 0].append(L)

    rho_thr = cfg.hough_rho_nms_ratio * max(h, w)
    groups = [_nms_rho(g, rho_thr) for g in groups]
    if len(groups[0]) < 2 or len(groups[1]) < 2:
        return []

    candidates: List[QuadCandidate] = []

    def try_pairs(g0: List[Line], g1: List[Line]) -> None:
        for i in range(len(g0)):
            for j in range(i + 1, len(g0)):
                if deg_diff(line_angle_deg(g0[i]), line_angle_deg(g0[j])) > cfg.hough_orientation_tol:
                    continue
                for k in range(len(g1)):
                    for l in range(k + 1, len(g1)):
                        if deg_diff(line_angle_deg(g1[k]), line_angle_deg(g1[l])) > cfg.hough_orientation_tol:
                            continue
                        if abs(deg_diff(line_angle_deg(g0[i]), line_angle_deg(g1[k])) - 90.0) > cfg.hough_orthogonality_tol:
                            continue
                        pts = [intersect_lines(g0[i], g1[k]), intersect_lines(g0[j], g1[k]),
                               intersect_lines(g0[j], g1[l]), intersect_lines(g0[i], g1[l])]
                        if any(p is None for p in pts):
                            continue
                        quad = order_quad(np.stack(pts, 0))
                        area = polygon_area(quad)
                        if area < 50.0:
                            continue
                        score = quad_score(gray, quad, cfg)
                        if score <= SCORE_FLOOR:
                            continue
                        candidates.append(QuadCandidate(corners=quad, score=score, area=area))

    try_pairs(groups[0], groups[1])
    try_pairs(groups[1], groups[0])
    candidates.sort(key=lambda c: c.score, reverse=True)
    return candidates


def detect_by_hough_search(gray: np.ndarray, cfg: DetectionConfig = DEFAULT_CONFIG) -> Optional[np.ndarray]:
    stage = "canny"
    try:
        edges = _canny_edges(gray, cfg, cfg.hough_dilate_iterations)
        stage = "detect_segments"
        segments = detect_segments(edges, cfg)
        if len(segments) < 4:
            logger.debug("detect_by_hough_search: segments=%d (<4) | edges=%d",
                         len(segments), int(cv2.countNonZero(edges)))
            return None
        stage = "detect_quads"
        quads = detect_quads_from_segments(gray, segments, cfg)
        if not quads:
            logger.debug("detect_by_hough_search: segments=%d but quads=0", len(segments))
            return None
        return quads[0].corners
    except (cv2.error, ValueError) as exc:
        logger.warning("[WARN] detect_by_hough_search exception[%s]: %s | %s", stage, exc, describe_image(gray))
        return None


# --------------------- 白色区域 ---------------------
def detect_by_white_region(gray: np.ndarray,
                           cfg: DetectionConfig = DEFAULT_CONFIG) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
    """Quad from the best bright connected region. Returns ``(quad, mask)``."""
    stage = "threshold"
    try:
        g = cv2.GaussianBlur(gray, (0, 0), cfg.white_gaussian_sigma) if cfg.white_gaussian_sigma > 0 else gray.copy()
        _, th = cv2.threshold(g, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        if cfg.white_morph_kernel > 0:
            stage = "morphology"
            k = max(1, int(cfg.white_morph_kernel))
            th = cv2.morphologyEx(th, cv2.MORPH_CLOSE,
                                  cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k)),
                                  iterations=max(1, int(cfg.white_morph_iterations)))

        stage = "connected_components"
        num, lab, stats, _ = cv2.connectedComponentsWithStats(th, connectivity=8)
        if num <= 1:
            logger.debug("detect_by_white_region: no foreground regions (num=%d)", num)
            return None, None

        H, W = th.shape
        total_area = float(H * W)
        border_margin = max(3, int(0.01 * min(H, W)))
        candidates = []     # (score, touch_count, label)
        for idx in range(1, num):
            x = stats[idx, cv2.CC_STAT_LEFT]
            y = stats[idx, cv2.CC_STAT_TOP]
            w = stats[idx, cv2.CC_STAT_WIDTH]
            h = stats[idx, cv2.CC_STAT_HEIGHT]
            area = float(stats[idx, cv2.CC_STAT_AREA])
            if w < 8 or h < 8:
                continue
            fill_ratio = area / max(1.0, float(w * h))
            touch_count = (int(x <= border_margin) + int(y <= border_margin)
                           + int(x + w >= W - border_margin) + int(y + h >= H - border_margin))
            frame_ratio = area / max(1.0, total_area)
            fill_factor = 0.2 + 0.8 * float(np.clip(fill_ratio, 0.0, 1.0))
            border_factor = 1.0 / (1.0 + 0.6 * touch_count)
            global_penalty = max(0.2, 1.0 - max(0.0, frame_ratio - 0.55) * 0.8)
            candidates.append((area * fill_factor * border_factor * global_penalty, touch_count, idx))

        if not candidates:
            idx = 1 + int(np.argmax(stats[1:, cv2.CC_STAT_AREA]))
            candidates.append((float(stats[idx, cv2.CC_STAT_AREA]), 0, idx))
        primary = [c for c in candidates if c[1] <= 2]
        pool = primary if primary else candidates
        best_label = max(pool, key=lambda c: c[0])[2]

        stage = "find_contours"
        mask = np.where(lab == best_label, 255, 0).astype(np.uint8)
        cnts, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not cnts:
            return None, mask
        hull = cv2.convexHull(max(cnts, key=cv2.contourArea))
        eps = cfg.white_approx_eps_ratio * cv2.arcLength(hull, True)

        stage = "approx_poly"
        quad = None
        for _ in range(max(1, int(cfg.area_iterations))):
            approx = cv2.approxPolyDP(hull, eps, True)
            if len(approx) == 4:
                quad = approx.reshape(-1, 2).astype(np.float32)
                break
            eps *= cfg.white_approx_expand if len(approx) > 4 else cfg.white_approx_shrink
        if quad is None:
            quad = cv2.boxPoints(cv2.minAreaRect(hull)).astype(np.float32)

        quad = order_quad(quad)
        quad[:, 0] = np.clip(quad[:, 0], 0, gray.shape[1] - 1)
        quad[:, 1] = np.clip(quad[:, 1], 0, gray.shape[0] - 1)
        return quad, mask
    except (cv2.error, ValueError) as exc:
        logger.warning("[WARN] detect_by_white_region exception[%s]: %s | %s", stage, exc, describe_image(gray))
        return None, None


# --------------------- 局部细化 ---------------------
def refine_quad_local(gray: np.ndarray, quad, cfg: DetectionConfig = DEFAULT_CONFIG) -> Optional[np.ndarray]:
    """Snap ``quad`` to the strongest edge contour in a padded neighbourhood.

    Returns ``None`` when nothing plausible is found, when the refined centre
    drifts more than ``max(1.5 * pad, 40)`` pixels, or when the result fails
    ``quad_score``.
    """
    if quad is None:
        return None
    q = np.asarray(quad, np.float32).reshape(4, 2)
    h, w = gray.shape[:2]
    pad = max(cfg.quad_expand_offset * 1.5, 20.0)
    x1 = max(0, int(np.floor(q[:, 0].min() - pad)))
    y1 = max(0, int(np.floor(q[:, 1].min() - pad)))
    x2 = min(w, int(np.ceil(q[:, 0].max() + pad)))
    y2 = min(h, int(np.ceil(q[:, 1].max() + pad)))
    if x2 - x1 < 20 or y2 - y1 < 20:
        return None

    roi = gray[y1:y2, x1:x2]
    edges = _canny_edges(roi, cfg, cfg.hough_dilate_iterations + 1)
    mask = np.zeros_like(edges)
    local_quad = np.round(q - np.array([x1, y1], np.float32)).astype(np.int32)
    cv2.fillConvexPoly(mask, local_quad, 255)
    edges = cv2.bitwise_and(edges, mask)

    cnts, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not cnts:
        return None
    cnt = max(cnts, key=cv2.contourArea)
    if cv2.contourArea(cnt) < 50.0:
        return None
    peri = cv2.arcLength(cnt, True)
    eps = 0.01 * peri
    approx = cv2.approxPolyDP(cnt, eps, True)
    tries = 0
    while len(approx) > 4 and tries < 6:
        eps *= 1.5
        approx = cv2.approxPolyDP(cnt, eps, True)
        tries += 1
    if len(approx) < 4:
        approx = cv2.approxPolyDP(cnt, 0.03 * peri, True)
    if len(approx) == 4:
        local = approx.reshape(-1, 2).astype(np.float32)
    else:
        local = cv2.boxPoints(cv2.minAreaRect(cnt)).astype(np.float32)

    refined = order_quad(local + np.array([x1, y1], np.float32))
    drift = float(np.linalg.norm(refined.mean(axis=0) - q.mean(axis=0)))
    if drift > max(pad * 1.5, 40.0):
        return None
    if quad_score(gray, refined, cfg) <= SCORE_FLOOR:
        return None
    return refined


def detect_quad(gray: np.ndarray,
                cfg: DetectionConfig = DEFAULT_CONFIG) -> Tuple[Optional[QuadCandidate], Optional[np.ndarray]]:
    """Best board quad across both strategies, raw and refined.

    Returns ``(candidate, white_region_mask)``; the mask is kept for debug
    output even when no quad survives.
    """
    best: Optional[QuadCandidate] = None

    def consider(quad: np.ndarray) -> None:
        nonlocal best
        for option in (quad, refine_quad_local(gray, quad, cfg)):
            if option is None:
                continue
            cand = _evaluate(gray, option, cfg)
            if cand is not None and (best is None or cand.score > best.score):
                best = cand

    white, mask = detect_by_white_region(gray, cfg)
    if white is not None:
        consider(white)
    hough = detect_by_hough_search(gray, cfg)
    if hough is not None:
        consider(hough)
    return best, mask


__all__ = [
    "HARD_FAIL_SCORE",
    "QuadCandidate",
    "detect_by_hough_search",
    "detect_by_white_region",
    "detect_quad",
    "detect_quads_from_segments",
    "detect_segments",
    "edge_contrast",
    "quad_score",
    "quad_within_image",
    "refine_quad_local",
]
