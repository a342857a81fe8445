from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import cv2
import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from circlecalib.core.pipeline import MSG_COMPLETE, MSG_NO_IMAGES, MSG_READ_FAILED, CalibrationEngine
from circlecalib.core.types import CalibrationSettings
from circlecalib.utils.report import CAMERA_YAML_FILENAME, HEATMAP_FILENAMES, REPORT_FILENAME

from synthetic_board import board_affine, corrupt, render_board, synthetic_views


class _StubDetector:
    """Returns prepared detections by image name instead of looking at pixels."""

    def __init__(self, views, delay_s: float = 0.0):
        self.views = {v.name: v for v in views}
        self.delay_s = delay_s

    def detect(self, image, spec, name):
        if self.delay_s:
            time.sleep(self.delay_s)
        return self.views[name]


def _write_placeholders(directory: Path, names) -> None:
    for name in names:
        cv2.imwrite(str(directory / f"{name}.png"), np.zeros((8, 8), np.uint8))


def test_run_reports_missing_and_empty_directories(tmp_path: Path) -> None:
    engine = CalibrationEngine()
    out = engine.run(tmp_path / "missing")
    assert not out.success
    assert "not found" in out.message

    out = engine.run(tmp_path)
    assert not out.success
    assert out.message == MSG_NO_IMAGES


def test_detect_all_keeps_sorted_order_and_reports_progress(tmp_path: Path) -> None:
    for i, angle in enumerate((4.0, -6.0, 12.0)):
        img, _ = render_board(board_affine(angle))
        cv2.imwrite(str(tmp_path / f"board_{i}.png"), img)
    (tmp_path / "broken.jpg").write_bytes(b"not an image")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    engine = CalibrationEngine(CalibrationSettings(workers=3))
    paths = engine.collect_image_paths(tmp_path)
    assert [p.name for p in paths] == ["board_0.png", "board_1.png", "board_2.png", "broken.jpg"]

    calls = []
    results = engine.detect_all(paths, progress=lambda done, total: calls.append((done, total)))
    assert [r.name for r in results] == ["board_0", "board_1", "board_2", "broken"]
    assert all(r.success for r in results[:3]), [r.message for r in results]
    assert results[3].message == MSG_READ_FAILED
    assert calls[-1] == (4, 4)
    assert sorted(d for d, _ in calls) == [1, 2, 3, 4]


def test_run_end_to_end_writes_report(tmp_path: Path) -> None:
    views = synthetic_views(13, noise_px=0.1)
    corrupt(views[6])
    image_dir = tmp_path / "images"
    image_dir.mkdir()
    _write_placeholders(image_dir, [v.name for v in views])

    engine = CalibrationEngine(CalibrationSettings(min_samples=6, workers=2))
    engine.detector = _StubDetector(views)
    out_dir = tmp_path / "out"
    out = engine.run(image_dir, out_dir)

    assert out.success, out.message
    assert out.message == MSG_COMPLETE
    assert views[6].name in {d.name for d in out.removed_detections}
    assert out.heatmaps.pixel_error is not None
    assert out.heatmaps.board_coverage.shape == (960, 1280, 3)

    report = json.loads((out_dir / REPORT_FILENAME).read_text(encoding="utf-8"))
    assert report["success"] is True
    assert report["num_samples"] == len(out.kept_detections)
    assert report["num_images"] == 13
    assert (out_dir / CAMERA_YAML_FILENAME).is_file()
    for filename in HEATMAP_FILENAMES.values():
        assert (out_dir / filename).is_file()


def test_run_fails_with_too_few_detections(tmp_path: Path) -> None:
    views = synthetic_views(2)
    _write_placeholders(tmp_path, [v.name for v in views])
    engine = CalibrationEngine(CalibrationSettings(workers=1))
    engine.detector = _StubDetector(views)
    out = engine.run(tmp_path)
    assert not out.success
    assert out.message == "Not enough valid detections (2)"


def test_abort_before_run(tmp_path: Path) -> None:
    views = synthetic_views(4)
    _write_placeholders(tmp_path, [v.name for v in views])
    engine = CalibrationEngine()
    engine.detector = _StubDetector(views)
    engine.request_abort()
    assert engine.should_abort()
    out = engine.run(tmp_path, tmp_path / "out")
    assert out.aborted and not out.success
    assert out.message == "Calibration aborted"
    assert not (tmp_path / "out").exists()


def test_abort_during_detection_skips_remaining(tmp_path: Path) -> None:
    views = synthetic_views(6)
    _write_placeholders(tmp_path, [v.name for v in views])
    engine = CalibrationEngine(CalibrationSettings(workers=1))
    engine.detector = _StubDetector(views, delay_s=0.05)

    def progress(done: int, total: int) -> None:
        if done == 2:
            engine.request_abort()

    out = engine.run(tmp_path, progress=progress)
    assert out.aborted and not out.success
    assert len(out.all_detections) == 6
    assert sum(1 for d in out.all_detections if d.success) < 6
