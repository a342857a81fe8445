from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
import sys

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from circlecalib.core.board_spec import DEFAULT_BOARD_SPEC, BoardSpec, MISSING_CELL
from circlecalib.utils.board import back_project_points, project_radius
from circlecalib.utils.images import collect_image_paths, read_image_robust, to_gray_u8


def test_build_object_points_basic() -> None:
    count = 41
    points = DEFAULT_BOARD_SPEC.build_object_points(count)

    assert points.shape == (count, 3)
    assert points.dtype == np.float32
    assert np.allclose(points[:, 2], 0.0)

    spacing = DEFAULT_BOARD_SPEC.center_spacing_mm
    xs = points[:, 0]
    ys = points[:, 1]

    assert np.isclose(xs.max() - xs.min(), spacing * 5, atol=1e-4)
    assert np.isclose(ys.max() - ys.min(), spacing * 6, atol=1e-4)
    # 第一个点是 (r=6, c=5)，中心空位不出现
    assert np.allclose(points[0], [5 * spacing, 6 * spacing, 0.0])
    missing = [MISSING_CELL[1] * spacing, MISSING_CELL[0] * spacing, 0.0]
    assert not np.any(np.all(np.isclose(points, missing), axis=1))


def test_build_object_points_truncates_and_scales() -> None:
    spec = BoardSpec(small_diameter_mm=4.0, center_spacing_mm=30.0)
    assert spec.build_object_points(0).shape == (0, 3)
    assert spec.build_object_points(-3).shape == (0, 3)
    assert spec.build_object_points(100).shape == (41, 3)
    head = spec.build_object_points(3)
    assert np.allclose(head[:, 0], [150.0, 120.0, 90.0])
    assert spec.small_radius_mm == 2.0
    assert spec.with_spacing(20.0).center_spacing_mm == 20.0
    assert spec.to_dict()["small_radius_mm"] == 2.0


def test_read_image_robust_roundtrip(tmp_path: Path) -> None:
    img = np.random.randint(0, 255, size=(32, 24), dtype=np.uint8)
    target = tmp_path / "sample.png"
    assert cv2.imwrite(str(target), img)

    loaded = read_image_robust(target)
    assert loaded is not None
    assert loaded.shape == img.shape
    assert np.array_equal(loaded, img)


def test_read_image_robust_missing_returns_none(tmp_path: Path) -> None:
    assert read_image_robust(tmp_path / "nope.png") is None


def test_collect_image_paths_sorted_case_insensitive(tmp_path: Path) -> None:
    img = np.zeros((4, 4), np.uint8)
    for name in ("b.PNG", "a.jpg", "c.tif"):
        cv2.imwrite(str(tmp_path / name), img)
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")

    paths = collect_image_paths(tmp_path)
    assert [p.name for p in paths] == ["a.jpg", "b.PNG", "c.tif"]


def test_collect_image_paths_missing_dir(tmp_path: Path) -> None:
    import pytest

    with pytest.raises(FileNotFoundError):
        collect_image_paths(tmp_path / "missing")


def test_to_gray_u8_converts_color_and_depth() -> None:
    bgr = np.zeros((5, 6, 3), np.uint8)
    bgr[..., 2] = 200
    gray = to_gray_u8(bgr)
    assert gray.shape == (5, 6) and gray.dtype == np.uint8

    wide = np.linspace(0, 4095, 30, dtype=np.float64).reshape(5, 6).astype(np.uint16)
    out = to_gray_u8(wide)
    assert out.dtype == np.uint8
    assert out.min() == 0 and out.max() == 255


def test_back_project_points_identity_and_radius() -> None:
    H_inv = np.array([[2.0, 0.0, 10.0], [0.0, 2.0, -4.0], [0.0, 0.0, 1.0]])
    pts = back_project_points([[1.0, 1.0], [5.0, 3.0]], H_inv)
    assert pts.dtype == np.float32
    assert np.allclose(pts, [[12.0, -2.0], [20.0, 2.0]])
    assert back_project_points([], H_inv).shape == (0, 2)
    assert np.isclose(project_radius((3.0, 3.0), 4.0, H_inv), 8.0)
    assert project_radius((3.0, 3.0), 0.0, H_inv) == 0.0
