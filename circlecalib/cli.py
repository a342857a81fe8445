# -*- coding: utf-8 -*-
"""
命令行入口：circlecalib-run --images DIR --output DIR

Exit codes: 0 success, 1 invalid arguments, 2 calibration failure or abort.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from tqdm import tqdm

from .core.board_spec import DEFAULT_BOARD_SPEC, BoardSpec
from .core.config import PRESETS, build_detection_config, load_config_overrides
from .core.pipeline import CalibrationEngine
from .core.types import CalibrationSettings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILED = 2


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        print(f"[FAIL] {message}", file=sys.stderr)
        raise SystemExit(EXIT_USAGE)


def build_parser() -> argparse.ArgumentParser:
    ap = _ArgumentParser(prog="circlecalib-run", description="圆点标定板相机内参标定")
    ap.add_argument("--images", required=True, help="输入图像文件夹")
    ap.add_argument("--output", required=True, help="输出结果文件夹")
    ap.add_argument("--small-diameter", type=float, default=DEFAULT_BOARD_SPEC.small_diameter_mm,
                    help="小圆直径(mm)")
    ap.add_argument("--circle-spacing", type=float, default=DEFAULT_BOARD_SPEC.center_spacing_mm,
                    help="圆心间距离(mm)")
    ap.add_argument("--max-mean-error", type=float, default=CalibrationSettings.max_mean_error_px,
                    help="单图平均重投影误差上限 (px)")
    ap.add_argument("--max-point-error", type=float, default=CalibrationSettings.max_point_error_px,
                    help="单点重投影误差上限 (px)")
    ap.add_argument("--max-filter-iterations", type=int, default=CalibrationSettings.max_iterations,
                    help="自动剔除异常样本的迭代次数")
    ap.add_argument("--min-samples", type=int, default=CalibrationSettings.min_samples,
                    help="剔除后保留的最少样本数")
    ap.add_argument("--workers", type=int, default=None, help="检测线程数，默认 CPU 核数")
    ap.add_argument("--det-preset", choices=sorted(PRESETS), default="default",
                    help="检测参数预设，可选 default/high_recall")
    ap.add_argument("--det-override", action="append", default=[], metavar="KEY=VALUE",
                    help="覆写检测配置字段，可多次使用，例如 blob_min_area=320.0")
    ap.add_argument("--config", default=None, help="YAML 检测参数覆写文件")
    ap.add_argument("--keep-debug", action="store_true", help="保留检测调试图像")
    return ap


def _fail(message: str, code: int) -> int:
    print(f"[FAIL] {message}", file=sys.stderr)
    return code


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(message)s", level=logging.INFO)
    args = build_parser().parse_args(argv)

    image_dir = Path(args.images)
    if not image_dir.is_dir():
        return _fail(f"Image directory not found: {image_dir}", EXIT_USAGE)
    if args.small_diameter <= 0 or args.circle_spacing <= 0:
        return _fail("Board dimensions must be positive", EXIT_USAGE)
    if args.workers is not None and args.workers <= 0:
        return _fail("--workers must be positive", EXIT_USAGE)

    try:
        extra = load_config_overrides(args.config) if args.config else None
        det_config, override_map = build_detection_config(args.det_preset, args.det_override, extra)
    except (AttributeError, ValueError, OSError) as exc:
        return _fail(f"Invalid detection configuration: {exc}", EXIT_USAGE)
    logger.info("检测参数 preset=%s overrides=%s", args.det_preset, override_map if override_map else "<无>")

    settings = CalibrationSettings(
        board_spec=BoardSpec(small_diameter_mm=float(args.small_diameter),
                             center_spacing_mm=float(args.circle_spacing)),
        max_mean_error_px=float(args.max_mean_error),
        max_point_error_px=float(args.max_point_error),
        max_iterations=int(args.max_filter_iterations),
        min_samples=int(args.min_samples),
        workers=args.workers,
        keep_debug_images=bool(args.keep_debug),
    )
    engine = CalibrationEngine(settings, det_config)

    bar: List[tqdm] = []

    def progress(done: int, total: int) -> None:
        if not bar:
            bar.append(tqdm(total=total, desc="[Calib]"))
        bar[0].update(done - bar[0].n)

    try:
        output = engine.run(image_dir, args.output, progress)
    except KeyboardInterrupt:
        engine.request_abort()
        return _fail("Calibration aborted", EXIT_FAILED)
    finally:
        if bar:
            bar[0].close()

    if not output.success:
        return _fail(output.message, EXIT_FAILED)
    print(f"[OK] {output.message}: RMS={output.metrics.rms:.4f} px, "
          f"{len(output.kept_detections)} kept, {len(output.removed_detections)} removed, "
          f"结果已写入 {args.output}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
