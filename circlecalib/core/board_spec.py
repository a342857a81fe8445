# -*- coding: utf-8 -*-
"""Physical specification and topology of the circle-dot calibration board."""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Dict, Tuple

import numpy as np

# 7 行 x 6 列，中心 (3, 3) 空位
GRID_ROWS = 7
GRID_COLS = 6
MISSING_CELL: Tuple[int, int] = (3, 3)
EXPECTED_ROW_SIZES: Tuple[int, ...] = (6, 6, 6, 5, 6, 6, 6)
EXPECTED_SMALL_COUNT = GRID_ROWS * GRID_COLS - 1
EXPECTED_BIG_COUNT = 4


@dataclass(frozen=True)
class BoardSpec:
    """Calibration board geometry expressed in millimeters."""

    small_diameter_mm: float = 5.0
    center_spacing_mm: float = 25.0

    def with_spacing(self, spacing_mm: float) -> "BoardSpec":
        """Return a copy with updated circle spacing."""
        return BoardSpec(small_diameter_mm=self.small_diameter_mm, center_spacing_mm=float(spacing_mm))

    @property
    def small_radius_mm(self) -> float:
        return self.small_diameter_mm * 0.5

    def expected_circle_count(self) -> int:
        return EXPECTED_SMALL_COUNT

    def build_object_points(self, count: int) -> np.ndarray:
        """Board-plane coordinates (z = 0) in canonical emission order.

        Rows run from 6 down to 0 and columns from 5 down to 0, skipping the
        missing centre cell. At most ``count`` points are returned.
        """
        spacing = float(self.center_spacing_mm)
        coords = []
        if count <= 0:
            return np.zeros((0, 3), np.float32)
        for r in range(GRID_ROWS - 1, -1, -1):
            for c in range(GRID_COLS - 1, -1, -1):
                if (r, c) == MISSING_CELL:
                    continue
                coords.append([c * spacing, r * spacing, 0.0])
                if len(coords) >= count:
                    return np.array(coords, dtype=np.float32)
        return np.array(coords, dtype=np.float32)

    def description(self) -> str:
        return (f"{GRID_ROWS}x{GRID_COLS} asymmetric circles (center missing) -- "
                f"d={self.small_diameter_mm:.2f}mm, spacing={self.center_spacing_mm:.2f}mm")

    def to_dict(self) -> Dict[str, float]:
        data = asdict(self)
        data["small_radius_mm"] = self.small_radius_mm
        return data


DEFAULT_BOARD_SPEC = BoardSpec(small_diameter_mm=5.0, center_spacing_mm=25.0)

__all__ = [
    "BoardSpec",
    "DEFAULT_BOARD_SPEC",
    "EXPECTED_BIG_COUNT",
    "EXPECTED_ROW_SIZES",
    "EXPECTED_SMALL_COUNT",
    "GRID_COLS",
    "GRID_ROWS",
    "MISSING_CELL",
]
