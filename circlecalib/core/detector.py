# -*- coding: utf-8 -*-
"""
BoardDetector：输入灰度图，输出 DetectionResult（41 个小圆的原图坐标与板坐标、4 个大圆、H 等）。
Stateless apart from the sanitised configuration, so one instance can be
shared between worker threads.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import numpy as np

from ..utils.board import back_project_points, project_radius
from ..utils.images import to_gray_u8
from ..viz.debug_images import (DebugImageWriter, draw_detection_overlay, draw_mask_overlay,
                                draw_numbered_grid, draw_quad_overlay, draw_selection, ensure_color_8u)
from .blobs import detect_blobs, refine_blobs, select_by_area, split_small_big
from .board_spec import BoardSpec, DEFAULT_BOARD_SPEC, EXPECTED_BIG_COUNT
from .config import DetectionConfig, sanitize_config
from .numbering import axes_from_big4, number_circles
from .quad import describe_image, detect_quad, quad_within_image
from .rectify import expand_quad, preprocess_rect, warp_quad
from .types import DetectionResult

logger = logging.getLogger(__name__)

MSG_SUCCESS = "Detection succeeded"
MSG_EMPTY = "Input image is empty"
MSG_NO_QUAD = "Failed to locate chessboard quadrilateral"
MSG_QUAD_OUTSIDE = "Chessboard quadrilateral is outside image bounds"
MSG_EXPAND_FAILED = "Quad expansion failed"
MSG_WARP_FAILED = "Perspective warp failed"
MSG_COUNT_MISMATCH = "Detected circle count mismatch"


class BoardDetector:
    def __init__(self, config: Optional[DetectionConfig] = None,
                 debug_root: Optional[Path] = None, keep_debug_images: bool = False):
        self.config, self.config_warnings = sanitize_config(config or DetectionConfig())
        self.debug_root = debug_root
        self.keep_debug_images = bool(keep_debug_images)

    def detect(self, image: np.ndarray, spec: BoardSpec = DEFAULT_BOARD_SPEC,
               name: str = "image") -> DetectionResult:
        """Run the full pipeline on one image. Never raises for image content.

        Unexpected library errors are reported as
        ``native_detection_exception[<stage>]: <error>`` on the result.
        """
        result = DetectionResult(name=name)
        t0 = time.perf_counter()
        stage = "initialize"
        try:
            if image is None or np.asarray(image).size == 0:
                result.message = MSG_EMPTY
                return result
            stage = "ensure_gray"
            gray = to_gray_u8(image)
            stage = "detect"
            self._run(gray, spec, result)
        except Exception as exc:  # pylint: disable=broad-except
            shape = describe_image(np.asarray(image)) if image is not None else "type=None"
            logger.error("%s: detection exception[%s]: %s | %s", name, stage, exc, shape)
            result.success = False
            result.message = f"native_detection_exception[{getattr(exc, 'stage', stage)}]: {exc}"
        finally:
            result.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        return result

    # ------------------------------------------------------------------
    def _run(self, gray: np.ndarray, spec: BoardSpec, result: DetectionResult) -> None:
        cfg = self.config
        h, w = gray.shape[:2]
        result.resolution = (int(w), int(h))
        debug = DebugImageWriter(result, self.debug_root, enabled=self.keep_debug_images)
        original = ensure_color_8u(gray) if debug.enabled else None
        debug.add("Input", original)

        with _stage("detect_quad"):
            best, white_mask = detect_quad(gray, cfg)
        result.white_region_mask = white_mask
        if debug.enabled and white_mask is not None:
            debug.add("White-region mask", draw_mask_overlay(original, white_mask))
        if best is None:
            result.message = MSG_NO_QUAD
            return
        result.quad = best.corners
        if debug.enabled:
            debug.add("Quad outline", draw_quad_overlay(original, best.corners))

        if not quad_within_image(best.corners, h, w, cfg.quad_margin):
            result.message = MSG_QUAD_OUTSIDE
            return

        expanded = expand_quad(best.corners, cfg=cfg)
        if expanded is None:
            result.message = MSG_EXPAND_FAILED
            return
        with _stage("warp_quad"):
            warp = warp_quad(gray, expanded, cfg)
        if warp is None:
            result.message = MSG_WARP_FAILED
            return
        result.warp_homography = warp.homography
        result.warp_homography_inv = warp.homography_inv
        debug.add("Rectified board", ensure_color_8u(warp.image) if debug.enabled else None)

        with _stage("preprocess_rect"):
            rect_pre = preprocess_rect(warp.image, cfg)
        rect_pre_bgr = ensure_color_8u(rect_pre) if debug.enabled else None
        debug.add("Preprocessed", rect_pre_bgr)

        with _stage("detect_blobs"):
            blobs = detect_blobs(rect_pre, cfg)
            refined = refine_blobs(rect_pre, blobs, cfg)
        logger.debug("%s: initial circle candidates = %d", result.name, len(blobs))

        with _stage("select_by_area"):
            small_pool, big_pool = split_small_big(blobs, refined, cfg)
            expected_small = spec.expected_circle_count()
            smalls = select_by_area(small_pool, expected_small, cfg.area_relax_small, cfg)
            bigs = select_by_area(big_pool, EXPECTED_BIG_COUNT, cfg.area_relax_big, cfg)
        if debug.enabled:
            debug.add("Selected circles (rectified)", draw_selection(rect_pre_bgr, smalls, bigs))
        logger.debug("%s: selected small=%d, large=%d", result.name, len(smalls), len(bigs))

        if len(smalls) != expected_small:
            logger.warning("%s: insufficient small circles (expected %d, got %d)",
                           result.name, expected_small, len(smalls))
            result.message = MSG_COUNT_MISMATCH
            return

        rect_h, rect_w = warp.image.shape[:2]
        with _stage("number_circles"):
            numbering = number_circles(smalls, bigs, (rect_w, rect_h), spec)
        if not numbering.success:
            logger.warning("%s: numbering failed: %s", result.name, numbering.message)
            result.message = numbering.message
            return

        with _stage("back_project_points"):
            H_inv = warp.homography_inv
            result.image_points = back_project_points(numbering.points, H_inv)
            result.big_circle_points = back_project_points([b.center for b in bigs], H_inv)
            result.big_circle_radii_px = [project_radius(b.center, b.radius, H_inv) for b in bigs]
            result.circle_radii_px = [project_radius(smalls[i].center, smalls[i].radius, H_inv)
                                      for i in numbering.source_indices]
        result.logical_indices = list(numbering.logical_indices)
        result.object_points = spec.build_object_points(len(result.image_points))

        if debug.enabled:
            rect_bgr = ensure_color_8u(warp.image)
            axes = axes_from_big4([b.center for b in bigs]) if len(bigs) >= 4 else None
            debug.add("Numbered grid", draw_numbered_grid(rect_bgr, numbering.points,
                                                          numbering.logical_indices, bigs, axes))
            debug.add("Detection overlay", draw_detection_overlay(original, result))

        result.success = True
        result.message = MSG_SUCCESS


class _stage:
    """Tags exceptions escaping a pipeline stage with the stage name."""

    def __init__(self, name: str):
        self.name = name

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None and not hasattr(exc, "stage"):
            try:
                exc.stage = self.name
            except AttributeError:
                pass
        return False


__all__ = [
    "BoardDetector",
    "MSG_COUNT_MISMATCH",
    "MSG_EMPTY",
    "MSG_NO_QUAD",
    "MSG_QUAD_OUTSIDE",
    "MSG_SUCCESS",
]
