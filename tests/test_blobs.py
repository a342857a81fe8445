from __future__ import annotations

import sys
from pathlib import Path

import cv2
import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from circlecalib.core.blobs import (BlobCandidate, RefinedBlob, classify_blob_sizes, detect_blobs,
                                    refine_blob, segment_patch, select_by_area, split_small_big)
from circlecalib.core.config import DEFAULT_CONFIG, create_detection_config


def _blob(area: float, idx: int) -> RefinedBlob:
    r = float(np.sqrt(area / np.pi))
    return RefinedBlob(float(idx * 10), 0.0, r, area, 1.0, idx)


def test_select_by_area_drops_outliers() -> None:
    areas = [1000.0 + i for i in range(10)] + [5000.0, 20.0]
    items = [_blob(a, i) for i, a in enumerate(areas)]
    picked = select_by_area(items, 10, 0.14, DEFAULT_CONFIG)
    assert len(picked) == 10
    assert {b.source_index for b in picked} == set(range(10))


def test_select_by_area_small_inputs() -> None:
    items = [_blob(100.0, i) for i in range(3)]
    assert select_by_area(items, 5, 0.14) == items
    assert select_by_area(items, 0, 0.14) == []
    assert select_by_area([], 4, 0.14) == []


def test_select_by_area_monotone_in_target() -> None:
    rng = np.random.default_rng(3)
    items = [_blob(float(a), i) for i, a in enumerate(rng.normal(900.0, 40.0, 50))]
    small = {b.source_index for b in select_by_area(items, 20, 0.14)}
    large = {b.source_index for b in select_by_area(items, 30, 0.14)}
    assert len(small) == 20 and len(large) == 30


def test_classify_blob_sizes_majority_is_small() -> None:
    blobs = [BlobCandidate(0, 0, 20.0 + 0.1 * i, i) for i in range(41)]
    blobs += [BlobCandidate(0, 0, 45.0 + 0.1 * i, 41 + i) for i in range(4)]
    labels, small_label, big_label = classify_blob_sizes(blobs)
    assert small_label != big_label
    assert int(np.sum(labels == big_label)) == 4
    assert classify_blob_sizes(blobs[:1])[0].tolist() == [0]


def test_detect_and_refine_dark_dots() -> None:
    img = np.full((400, 600), 235, np.uint8)
    centres = [(100.5, 120.25), (300.0, 200.0), (480.75, 300.5)]
    for cx, cy in centres:
        cv2.circle(img, (int(round(cx * 16)), int(round(cy * 16))), 20 * 16, 15, -1, cv2.LINE_AA, 4)

    blobs = detect_blobs(img, DEFAULT_CONFIG)
    assert len(blobs) == 3
    for blob in blobs:
        refined = refine_blob(img, blob, DEFAULT_CONFIG)
        dist = min(np.hypot(refined.x - cx, refined.y - cy) for cx, cy in centres)
        assert dist < 0.5
        assert refined.score == 1.0
        assert abs(refined.radius - 20.0) < 1.5


def test_split_small_big_separates_pools() -> None:
    blobs, refined = [], []
    for i in range(41):
        blobs.append(BlobCandidate(float(i), 0.0, 30.0, i))
        refined.append(_blob(700.0, i))
    for i in range(41, 45):
        blobs.append(BlobCandidate(float(i), 0.0, 60.0, i))
        refined.append(_blob(2800.0, i))
    small, big = split_small_big(blobs, refined, DEFAULT_CONFIG)
    assert len(small) == 41
    assert sorted(b.source_index for b in big) == [41, 42, 43, 44]


def test_segment_patch_opening_removes_thin_strokes() -> None:
    patch = np.full((80, 80), 235, np.uint8)
    cv2.circle(patch, (25, 40), 10, 0, -1)
    patch[10:12, 45:76] = 0     # 2 像素宽的划痕

    mask = segment_patch(patch, DEFAULT_CONFIG)
    assert mask[40, 25] == 255
    assert mask[10:12, 50:70].max() == 0

    no_open = create_detection_config(refine_open_kernel=(1, 1))
    mask = segment_patch(patch, no_open)
    assert mask[40, 25] == 255
    assert mask[10:12, 50:70].min() == 255
