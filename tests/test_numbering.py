from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from circlecalib.core.blobs import RefinedBlob
from circlecalib.core.board_spec import DEFAULT_BOARD_SPEC, EXPECTED_ROW_SIZES, MISSING_CELL
from circlecalib.core import numbering
from circlecalib.core.numbering import axes_from_big4, number_circles

SPACING = DEFAULT_BOARD_SPEC.center_spacing_mm
BIGS_RECT = [(900.0, 900.0), (900.0, 100.0), (100.0, 900.0), (50.0, 50.0)]


def _rect(obj_xy) -> np.ndarray:
    obj = np.asarray(obj_xy, np.float64).reshape(-1, 2)
    return 200.0 + 100.0 * obj / SPACING


def _smalls(points) -> list:
    return [RefinedBlob(float(x), float(y), 10.0, 314.0, 1.0, i) for i, (x, y) in enumerate(points)]


def _bigs() -> list:
    return [RefinedBlob(x, y, 20.0, 1256.0, 1.0, 100 + i) for i, (x, y) in enumerate(BIGS_RECT)]


def test_axes_from_big4_picks_right_angle_origin() -> None:
    axes = axes_from_big4(BIGS_RECT)
    assert axes is not None
    assert np.allclose(axes.origin, [900.0, 900.0])
    assert np.allclose(axes.x_hat, [-1.0, 0.0])
    assert np.allclose(axes.y_hat, [0.0, -1.0])
    assert axes_from_big4(BIGS_RECT[:3]) is None


def test_number_circles_matches_object_point_order() -> None:
    obj = DEFAULT_BOARD_SPEC.build_object_points(41)
    truth = _rect(obj[:, :2])
    rng = np.random.default_rng(11)
    shuffled = rng.permutation(len(truth))
    smalls = _smalls(truth[shuffled])

    result = number_circles(smalls, _bigs(), (1000, 1000), DEFAULT_BOARD_SPEC)
    assert result.success, result.message
    assert result.points.shape == (41, 2)
    assert np.allclose(result.points, truth, atol=1e-3)
    assert result.logical_indices == sorted(result.logical_indices)
    assert MISSING_CELL not in result.logical_indices
    rows = [r for r, _ in result.logical_indices]
    assert [rows.count(r) for r in range(7)] == list(EXPECTED_ROW_SIZES)
    # source_indices 指回输入
    for p, src in zip(result.points, result.source_indices):
        assert np.allclose(p, smalls[src].center)


def test_number_circles_tolerates_jitter() -> None:
    obj = DEFAULT_BOARD_SPEC.build_object_points(41)
    truth = _rect(obj[:, :2])
    rng = np.random.default_rng(5)
    noisy = truth + rng.uniform(-12.0, 12.0, truth.shape)
    result = number_circles(_smalls(noisy), _bigs(), (1000, 1000))
    assert result.success, result.message
    assert np.allclose(result.points, noisy, atol=1e-3)


def test_number_circles_rejects_wrong_count() -> None:
    obj = DEFAULT_BOARD_SPEC.build_object_points(41)
    truth = _rect(obj[:, :2])
    result = number_circles(_smalls(truth[:40]), _bigs(), (1000, 1000))
    assert not result.success
    assert result.points.shape == (0, 2)


def _dot_pulled_toward_center_row():
    obj = DEFAULT_BOARD_SPEC.build_object_points(41)
    points = _rect(obj[:, :2])
    # y=600 行的一个点偏到 y=540，k-means 会把它分进中间行
    idx = int(np.flatnonzero(np.isclose(points[:, 1], 600.0))[0])
    points[idx, 1] = 540.0
    return points, idx


def test_quota_correction_moves_dot_back_to_its_row() -> None:
    points, idx = _dot_pulled_toward_center_row()
    result = number_circles(_smalls(points), _bigs(), (1000, 1000))
    assert result.success, result.message
    assert np.allclose(result.points, points, atol=1e-3)
    clean = _rect(DEFAULT_BOARD_SPEC.build_object_points(41)[:, :2])
    baseline = number_circles(_smalls(clean), _bigs(), (1000, 1000))
    assert result.logical_indices[idx] == baseline.logical_indices[idx]
    rows = [r for r, _ in result.logical_indices]
    assert [rows.count(r) for r in range(7)] == list(EXPECTED_ROW_SIZES)


def test_row_size_mismatch_without_quota_correction(monkeypatch) -> None:
    points, _ = _dot_pulled_toward_center_row()
    monkeypatch.setattr(numbering, "QUOTA_PASSES", 0)
    result = number_circles(_smalls(points), _bigs(), (1000, 1000))
    assert not result.success
    assert result.message == "row_size_mismatch"
    assert result.logical_indices == []


def test_kmeans_failure_is_reported(monkeypatch) -> None:
    obj = DEFAULT_BOARD_SPEC.build_object_points(41)

    def failing_kmeans(values, k):
        raise ValueError("degenerate")

    monkeypatch.setattr(numbering, "kmeans_1d", failing_kmeans)
    result = number_circles(_smalls(_rect(obj[:, :2])), _bigs(), (1000, 1000))
    assert not result.success
    assert result.message == "kmeans_failed"


@pytest.mark.parametrize("bigs", [[], "three"])
def test_missing_big_dots_fall_back_to_image_axes(bigs) -> None:
    obj = DEFAULT_BOARD_SPEC.build_object_points(41)
    truth = _rect(obj[:, :2])
    big_dots = _bigs()[:3] if bigs == "three" else []
    result = number_circles(_smalls(truth), big_dots, (1000, 1000))
    assert result.success, result.message
    assert len(result.logical_indices) == 41
