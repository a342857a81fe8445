# -*- coding: utf-8 -*-
"""Image discovery and I/O helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".dng")


def collect_image_paths(image_dir: PathLike, extensions: Sequence[str] = IMAGE_EXTENSIONS) -> List[Path]:
    """Sorted list of image files directly inside ``image_dir``.

    Extension matching is case-insensitive. A missing directory raises
    ``FileNotFoundError``.
    """
    root = Path(image_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"Image directory not found: {root}")
    exts = {e.lower() if e.startswith(".") else "." + e.lower() for e in extensions}
    return sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() in exts)


def read_image_robust(path: PathLike) -> Optional[np.ndarray]:
    """Read a grayscale image from disk with graceful fallbacks.

    Parameters
    ----------
    path:
        Input filepath. DNG files are preferentially decoded with Pillow to
        avoid OpenCV failures. For other formats we try OpenCV first, then fall
        back to Pillow.

    Returns
    -------
    Optional[np.ndarray]
        Grayscale uint8 image on success, otherwise ``None``.
    """

    fp = Path(path)

    if fp.suffix.lower() == ".dng":
        try:
            with Image.open(fp) as im:
                return np.array(im.convert("L"))
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[WARN] Pillow failed to read DNG %s: %s", fp, exc)

    try:
        img = cv2.imread(str(fp), cv2.IMREAD_GRAYSCALE)
        if img is not None:
            return img
    except cv2.error as exc:
        logger.warning("[WARN] OpenCV failed to read %s: %s", fp, exc)

    # Pillow 兜底：OpenCV 未编译的格式
    try:
        with Image.open(fp) as im:
            return np.array(im.convert("L"))
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("[WARN] Pillow fallback failed %s: %s", fp, exc)

    return None


def to_gray_u8(image: np.ndarray) -> np.ndarray:
    """Single-channel uint8 view of ``image``; other depths are min/max normalised."""
    img = np.asarray(image)
    if img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    elif img.ndim == 3 and img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    elif img.ndim == 3:
        img = img[:, :, 0]
    if img.dtype != np.uint8:
        img = cv2.normalize(img.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return np.ascontiguousarray(img)


__all__ = ["IMAGE_EXTENSIONS", "collect_image_paths", "read_image_robust", "to_gray_u8"]
