# -*- coding: utf-8 -*-
"""
小圆编号：由 4 个大圆确定板坐标轴，按行聚类并做配额修正，输出 (row, col)。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .blobs import RefinedBlob
from .board_spec import BoardSpec, DEFAULT_BOARD_SPEC, EXPECTED_ROW_SIZES, GRID_ROWS, MISSING_CELL
from .geometry import kmeans_1d

logger = logging.getLogger(__name__)

QUOTA_PASSES = 8


@dataclass
class Axes:
    origin: np.ndarray
    x_hat: np.ndarray
    y_hat: np.ndarray
    valid: bool = True


@dataclass
class NumberingResult:
    success: bool
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), np.float32))
    logical_indices: List[Tuple[int, int]] = field(default_factory=list)
    source_indices: List[int] = field(default_factory=list)
    message: str = ""


# --------------------- 方向估计（由 4 个大圆） ---------------------
def axes_from_big4(points) -> Optional[Axes]:
    """Board axes from the four big dots; ``None`` with fewer than four.

    The dot with the largest distance sum is the far anchor; of the remaining
    three, the one whose angle to the other two is closest to 90 degrees is
    the origin. The frame is made right-handed in image coordinates.
    """
    P = np.asarray(points, np.float64).reshape(-1, 2)
    if len(P) < 4:
        return None
    P = P[:4]
    D = np.linalg.norm(P[:, None, :] - P[None, :, :], axis=2)
    i_tl = int(np.argmax(D.sum(1)))
    others = [i for i in range(4) if i != i_tl]

    def angle_at(i: int, j: int, k: int) -> float:
        v1 = P[j] - P[i]; v2 = P[k] - P[i]
        v1 = v1 / max(np.linalg.norm(v1), 1e-6); v2 = v2 / max(np.linalg.norm(v2), 1e-6)
        return float(np.degrees(np.arccos(np.clip(np.dot(v1, v2), -1.0, 1.0))))

    scored = []
    for i in others:
        j, k = [x for x in others if x != i]
        scored.append((abs(angle_at(i, j, k) - 90.0), i))
    # 近似相等时按索引
    best = scored[0]
    for cand in scored[1:]:
        if cand[0] < best[0] - 1e-6 or (abs(cand[0] - best[0]) <= 1e-6 and cand[1] < best[1]):
            best = cand
    i_br = best[1]
    i_tr, i_bl = [x for x in others if x != i_br]

    BR = P[i_br]
    x_vec = P[i_tr] - BR
    x_hat = x_vec / max(np.linalg.norm(x_vec), 1e-6)
    y_vec = P[i_bl] - BR
    y_vec = y_vec - x_hat * np.dot(y_vec, x_hat)
    y_hat = y_vec / max(np.linalg.norm(y_vec), 1e-6)
    if x_hat[0] * y_hat[1] - x_hat[1] * y_hat[0] < 0:
        x_hat, y_hat = y_hat, x_hat
    return Axes(origin=BR, x_hat=x_hat, y_hat=y_hat)


def default_axes(rect_size: Tuple[int, int]) -> Axes:
    w, h = rect_size
    return Axes(origin=np.array([w * 0.5, h * 0.5]), x_hat=np.array([1.0, 0.0]),
                y_hat=np.array([0.0, 1.0]), valid=False)


def project_to_axes(points, axes: Axes) -> Tuple[np.ndarray, np.ndarray]:
    rel = np.asarray(points, np.float64).reshape(-1, 2) - axes.origin[None, :]
    return rel @ axes.x_hat, rel @ axes.y_hat


# --------------------- 小圆编号（按轴） ---------------------
def _column_for(row: int, order_index: int) -> int:
    if row == MISSING_CELL[0] and order_index >= MISSING_CELL[1]:
        return order_index + 1
    return order_index


def number_circles(smalls: Sequence[RefinedBlob], bigs: Sequence[RefinedBlob],
                   rect_size: Tuple[int, int], spec: BoardSpec = DEFAULT_BOARD_SPEC) -> NumberingResult:
    """Assign every small dot a logical ``(row, col)`` cell.

    ``rect_size`` is ``(width, height)`` of the rectified image, used for the
    fallback axes when the big dots are missing. Output is sorted by
    ``(row, col)``; ``source_indices`` index into ``smalls``.
    """
    expected = spec.expected_circle_count()
    if len(smalls) != expected:
        return NumberingResult(False, message="circle count mismatch")

    axes = axes_from_big4([b.center for b in bigs]) if len(bigs) >= 4 else None
    if axes is None:
        axes = default_axes(rect_size)
    u, v = project_to_axes([s.center for s in smalls], axes)

    try:
        labels, centers = kmeans_1d(v, GRID_ROWS)
    except ValueError as exc:
        logger.warning("number_circles: kmeans failed, unable to cluster rows (%s)", exc)
        return NumberingResult(False, message="kmeans_failed")
    if len(centers) < GRID_ROWS:
        return NumberingResult(False, message="kmeans_failed")

    order = np.argsort(centers, kind="stable")
    rank = np.empty(GRID_ROWS, np.int64)
    rank[order] = np.arange(GRID_ROWS)
    rows: List[List[int]] = [[] for _ in range(GRID_ROWS)]
    row_centers = [float(centers[order[r]]) for r in range(GRID_ROWS)]
    for i, raw in enumerate(labels):
        if raw < 0 or raw >= GRID_ROWS:
            logger.warning("number_circles: row label out of range %d", raw)
            return NumberingResult(False, message="invalid_row_label")
        rows[int(rank[raw])].append(i)

    def sort_row(r: int) -> None:
        rows[r].sort(key=lambda idx: u[idx])

    def recompute_centers() -> None:
        for r in range(GRID_ROWS):
            if rows[r]:
                row_centers[r] = float(np.mean([v[i] for i in rows[r]]))

    def best_move(donor: int, target: int) -> Tuple[Optional[int], float]:
        best_pos, best_cost = None, float("inf")
        for pos, idx in enumerate(rows[donor]):
            cost = abs(donor - target) * 1000.0 + abs(v[idx] - row_centers[target])
            if best_pos is None or cost < best_cost:
                best_pos, best_cost = pos, cost
        return best_pos, best_cost

    def move(donor: int, target: int, pos: int) -> None:
        rows[target].append(rows[donor].pop(pos))
        sort_row(target); sort_row(donor)

    for r in range(GRID_ROWS):
        sort_row(r)
    recompute_centers()

    # 配额修正：先补缺，再分流
    for _ in range(QUOTA_PASSES):
        moved = False
        for target in range(GRID_ROWS):
            while len(rows[target]) < EXPECTED_ROW_SIZES[target]:
                best = None     # (cost, donor, pos)
                for donor in range(GRID_ROWS):
                    if donor == target or len(rows[donor]) <= EXPECTED_ROW_SIZES[donor]:
                        continue
                    pos, cost = best_move(donor, target)
                    if pos is not None and (best is None or cost < best[0]):
                        best = (cost, donor, pos)
                if best is None:
                    break
                move(best[1], target, best[2])
                moved = True
        for donor in range(GRID_ROWS):
            while len(rows[donor]) > EXPECTED_ROW_SIZES[donor]:
                best = None
                for target in range(GRID_ROWS):
                    if target == donor or len(rows[target]) >= EXPECTED_ROW_SIZES[target]:
                        continue
                    pos, cost = best_move(donor, target)
                    if pos is not None and (best is None or cost < best[0]):
                        best = (cost, target, pos)
                if best is None:
                    break
                move(donor, best[1], best[2])
                moved = True
        if not moved:
            break
        recompute_centers()

    sizes = ",".join(str(len(r)) for r in rows)
    ordered: List[Tuple[float, float]] = []
    logical: List[Tuple[int, int]] = []
    source: List[int] = []
    rows_with_five = 0
    for r in range(GRID_ROWS):
        expected_count = EXPECTED_ROW_SIZES[r]
        if r == MISSING_CELL[0] and len(rows[r]) == expected_count:
            rows_with_five += 1
        if len(rows[r]) != expected_count:
            logger.warning("number_circles: row %d count=%d expected=%d | rows=%s",
                           r, len(rows[r]), expected_count, sizes)
            return NumberingResult(False, message="row_size_mismatch")
        for k, idx in enumerate(rows[r]):
            ordered.append(smalls[idx].center)
            logical.append((r, _column_for(r, k)))
            source.append(idx)

    if rows_with_five != 1:
        logger.warning("number_circles: center row count anomaly %s", sizes)
        return NumberingResult(False, message="missing_center_row_not_unique")
    if len(ordered) != expected:
        logger.warning("number_circles: ordered count mismatch result=%d expected=%d | rows=%s",
                       len(ordered), expected, sizes)
        return NumberingResult(False, message="ordered_size_mismatch")

    perm = sorted(range(len(ordered)), key=lambda i: logical[i])
    return NumberingResult(
        success=True,
        points=np.array([ordered[i] for i in perm], np.float32),
        logical_indices=[logical[i] for i in perm],
        source_indices=[source[i] for i in perm],
        message="",
    )


__all__ = [
    "Axes",
    "NumberingResult",
    "axes_from_big4",
    "default_axes",
    "number_circles",
    "project_to_axes",
]
