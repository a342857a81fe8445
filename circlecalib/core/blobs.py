# -*- coding: utf-8 -*-
"""
圆点检测：SimpleBlobDetector 候选、局部 Otsu 细化、大小圆分类与按面积选取。
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import cv2
import numpy as np

from .config import DetectionConfig, DEFAULT_CONFIG
from .geometry import median

logger = logging.getLogger(__name__)


@dataclass
class BlobCandidate:
    x: float
    y: float
    size: float     # keypoint diameter
    index: int


@dataclass
class RefinedBlob:
    x: float
    y: float
    radius: float
    area: float
    score: float
    source_index: int

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x, self.y)


def blob_area(blob: RefinedBlob) -> float:
    return blob.area if blob.area > 0.0 else float(np.pi * blob.radius * blob.radius)


# --------------------- Detection ---------------------
def make_blob_detector(cfg: DetectionConfig = DEFAULT_CONFIG):
    p = cv2.SimpleBlobDetector_Params()
    p.minThreshold = float(cfg.blob_min_threshold)
    p.maxThreshold = float(cfg.blob_max_threshold)
    p.thresholdStep = float(cfg.blob_threshold_step)
    p.filterByArea = True; p.minArea = float(cfg.blob_min_area); p.maxArea = float(cfg.blob_max_area)
    p.filterByCircularity = True; p.minCircularity = float(cfg.blob_min_circularity)
    p.filterByInertia = True; p.minInertiaRatio = float(cfg.blob_min_inertia)
    p.filterByConvexity = True; p.minConvexity = float(cfg.blob_min_convexity)
    p.filterByColor = bool(cfg.blob_dark); p.blobColor = 0 if cfg.blob_dark else 255
    p.minDistBetweenBlobs = float(cfg.blob_min_dist)
    return cv2.SimpleBlobDetector_create(p)


def detect_blobs(rect: np.ndarray, cfg: DetectionConfig = DEFAULT_CONFIG) -> List[BlobCandidate]:
    kps = make_blob_detector(cfg).detect(rect)
    return [BlobCandidate(float(kp.pt[0]), float(kp.pt[1]), float(kp.size), i) for i, kp in enumerate(kps)]


def segment_patch(patch: np.ndarray, cfg: DetectionConfig = DEFAULT_CONFIG) -> np.ndarray:
    """Dark-on-light binary mask: blur, inverse Otsu, median 3, then an elliptical opening."""
    ksize = max(1, int(cfg.refine_segment_ksize))
    if ksize % 2 == 0:
        ksize += 1
    g = cv2.GaussianBlur(patch, (ksize, ksize), 0)
    _, th = cv2.threshold(g, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    th = cv2.medianBlur(th, 3)
    kernel_size = tuple(int(max(1, k)) for k in cfg.refine_open_kernel)
    kernel_size = tuple(k + (k % 2 == 0) for k in kernel_size)
    return cv2.morphologyEx(th, cv2.MORPH_OPEN, cv2.getStructuringElement(cv2.MORPH_ELLIPSE, kernel_size),
                            iterations=1)


def refine_blob(gray: np.ndarray, blob: BlobCandidate, cfg: DetectionConfig = DEFAULT_CONFIG) -> RefinedBlob:
    """Re-centre a keypoint on the moment centroid of its local Otsu blob.

    The refined centre is accepted (score 1.0) when it moved at most
    ``r * max(1, refine_gate)``; otherwise the seed is kept with score 0.4.
    Windows too small to segment give 0.2, empty segmentations 0.3.
    """
    seed_r = max(1.0, blob.size * 0.5)

    def default(score: float) -> RefinedBlob:
        return RefinedBlob(blob.x, blob.y, seed_r, float(np.pi * seed_r * seed_r), score, blob.index)

    h, w = gray.shape[:2]
    win = float(np.clip(seed_r * cfg.refine_win_scale, cfg.refine_win_min, cfg.refine_win_max))
    x0 = int(round(blob.x - win * 0.5)); y0 = int(round(blob.y - win * 0.5))
    size = int(round(win))
    x1, y1 = max(0, x0), max(0, y0)
    x2, y2 = min(w, x0 + size), min(h, y0 + size)
    if x2 - x1 <= 6 or y2 - y1 <= 6:
        return default(0.2)

    th = segment_patch(gray[y1:y2, x1:x2], cfg)
    cnts, _ = cv2.findContours(th, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not cnts:
        return default(0.3)
    cnt = max(cnts, key=cv2.contourArea)
    area = max(0.0, float(cv2.contourArea(cnt)))
    m = cv2.moments(cnt)
    if area < 5.0 or abs(m["m00"]) < 1e-6:
        return default(0.3)

    cx = m["m10"] / m["m00"] + x1
    cy = m["m01"] / m["m00"] + y1
    if np.hypot(cx - blob.x, cy - blob.y) <= seed_r * max(1.0, cfg.refine_gate):
        return RefinedBlob(float(cx), float(cy), float(np.sqrt(max(area / np.pi, 1.0))),
                           max(area, 1.0), 1.0, blob.index)
    return default(0.4)


def refine_blobs(gray: np.ndarray, blobs: Sequence[BlobCandidate],
                 cfg: DetectionConfig = DEFAULT_CONFIG) -> List[RefinedBlob]:
    return [refine_blob(gray, b, cfg) for b in blobs]


# --------------------- 大小分类 ---------------------
def classify_blob_sizes(blobs: Sequence[BlobCandidate]) -> Tuple[np.ndarray, int, int]:
    """Two-cluster k-means on keypoint size.

    Returns ``(labels, small_label, big_label)``. The more populated cluster
    is the small one; with fewer than two blobs (or a k-means failure) every
    blob is labelled small.
    """
    labels = np.zeros(len(blobs), np.int32)
    if len(blobs) < 2:
        return labels, 0, 1
    samples = np.array([[b.size] for b in blobs], np.float32)
    crit = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 200, 1e-4)
    try:
        _, lab, _ = cv2.kmeans(samples, 2, None, crit, 8, cv2.KMEANS_PP_CENTERS)
    except cv2.error as exc:
        logger.debug("classify_blob_sizes: kmeans failed (%s)", exc)
        return labels, 0, 1
    labels = np.where(np.isin(lab.ravel(), (0, 1)), lab.ravel(), 0).astype(np.int32)
    counts = np.bincount(labels, minlength=2)
    if counts[0] >= counts[1]:
        return labels, 0, 1
    return labels, 1, 0


# --------------------- 面积筛选（强制 41/4） ---------------------
def _closeness_order(indices: Sequence[int], areas: Sequence[float], center: float) -> List[int]:
    def cmp(a: int, b: int) -> int:
        da, db = abs(areas[a] - center), abs(areas[b] - center)
        if abs(da - db) > 1e-6:
            return -1 if da < db else 1
        if areas[a] != areas[b]:
            return -1 if areas[a] > areas[b] else 1
        return 0
    return sorted(indices, key=functools.cmp_to_key(cmp))


def select_by_area(items: Sequence[RefinedBlob], target: int, relax: float,
                   cfg: DetectionConfig = DEFAULT_CONFIG) -> List[RefinedBlob]:
    """Pick ``target`` blobs whose areas agree with the population median.

    Starts from ``median +- 2.5 * MAD`` and widens the window by
    ``width * relax / 2`` per side up to ``area_iterations`` times. Ties in
    closeness prefer the larger blob. Inputs no larger than ``target`` are
    returned unchanged.
    """
    if target <= 0 or not items:
        return []
    if len(items) <= target:
        return list(items)

    areas = [blob_area(it) for it in items]
    med = median(areas)
    mad = median([abs(a - med) for a in areas]) + 1e-6
    lo, hi = med - 2.5 * mad, med + 2.5 * mad
    relax_factor = relax if relax > 0.0 else cfg.area_relax_default

    for _ in range(int(cfg.area_iterations)):
        picked = [i for i, a in enumerate(areas) if lo <= a <= hi]
        if len(picked) >= target:
            picked_med = median([areas[i] for i in picked])
            order = _closeness_order(picked, areas, picked_med)
            return [items[i] for i in order[:target]]
        width = hi - lo
        lo -= width * relax_factor * 0.5
        hi += width * relax_factor * 0.5

    order = _closeness_order(range(len(items)), areas, med)
    return [items[i] for i in order[:target]]


def split_small_big(blobs: Sequence[BlobCandidate], refined: Sequence[RefinedBlob],
                    cfg: DetectionConfig = DEFAULT_CONFIG) -> Tuple[List[RefinedBlob], List[RefinedBlob]]:
    """Partition refined blobs into small/big candidate pools.

    When clustering produced an implausible split (at least 8 blobs but fewer
    than 30 small or fewer than 2 big) the six largest blobs are re-examined
    and four of them, chosen by area agreement, become the big pool.
    """
    labels, _, big_label = classify_blob_sizes(blobs)
    small: List[RefinedBlob] = []
    big: List[RefinedBlob] = []
    for blob, label in zip(refined, labels):
        (big if label == big_label else small).append(blob)

    everything = list(refined)
    if len(everything) >= 8 and (len(small) < 30 or len(big) < 2):
        by_area = sorted(everything, key=blob_area, reverse=True)
        big = select_by_area(by_area[:6], 4, cfg.area_relax_reassign_big, cfg)
        big_ids = {b.source_index for b in big}
        small = [b for b in everything if b.source_index not in big_ids]
        logger.debug("split_small_big: reassigned big pool -> small=%d, big=%d", len(small), len(big))
    return small, big


__all__ = [
    "BlobCandidate",
    "RefinedBlob",
    "blob_area",
    "classify_blob_sizes",
    "detect_blobs",
    "make_blob_detector",
    "refine_blob",
    "refine_blobs",
    "segment_patch",
    "select_by_area",
    "split_small_big",
]
