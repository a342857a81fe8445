# -*- coding: utf-8 -*-
"""Utility helpers shared by the detector, the engine and the CLI."""

from .images import IMAGE_EXTENSIONS, collect_image_paths, read_image_robust, to_gray_u8
from .board import back_project_points, project_radius

__all__ = [
    "IMAGE_EXTENSIONS",
    "back_project_points",
    "collect_image_paths",
    "project_radius",
    "read_image_robust",
    "to_gray_u8",
]
