"""
grid.py - Grid approximation of point sets

Snaps points to the centres of a regular partitions x partitions grid
over the window and merges, per cell, all points of the same type into
one point carrying their summed weight. Distances between aggregates
are cheaper to handle than between the original points, at the cost of
positional precision (up to half a cell diagonal) and of the
within-cell point counts, which are discarded.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Dict, Tuple

import numpy as np

from ..data.config import validate_partitions
from ..data.core import PointSet


def cell_indices(points: PointSet, partitions: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Grid cell (column, row) of every point.

    Points on the upper window edge belong to the last cell.
    """
    partitions = validate_partitions(partitions)
    window = points.window
    cx = np.floor((points.x - window.xmin) / window.width * partitions).astype(np.int64)
    cy = np.floor((points.y - window.ymin) / window.height * partitions).astype(np.int64)
    return np.clip(cx, 0, partitions - 1), np.clip(cy, 0, partitions - 1)


def grid_approximation(points: PointSet, partitions: int, verbose: bool = False) -> PointSet:
    """
    Aggregate a PointSet on a regular grid.

    Parameters
    ----------
    points : PointSet
        Points to approximate.
    partitions : int
        Number of grid cells along each axis.
    verbose : bool
        Print a status line.

    Returns
    -------
    PointSet
        One point per populated (type, cell) pair, located at the cell
        centre, weighted by the summed weight of the merged points. Its
        window is the input window's bounding rectangle. Total weight per
        type is conserved.

    Raises
    ------
    InvalidPartitions
        If `partitions` is not a positive integer.
    """
    partitions = validate_partitions(partitions)
    window = points.window
    cx, cy = cell_indices(points, partitions)

    # (type, column, row) -> summed weight, in order of first appearance
    sums: Dict[tuple, float] = defaultdict(float)
    for t, i, j, w in zip(points.types.tolist(), cx.tolist(), cy.tolist(), points.weights.tolist()):
        sums[(t, i, j)] += w

    keys = list(sums)
    cell_w = window.width / partitions
    cell_h = window.height / partitions
    x = np.array([window.xmin + (i + 0.5) * cell_w for _, i, _ in keys], dtype=np.float64)
    y = np.array([window.ymin + (j + 0.5) * cell_h for _, _, j in keys], dtype=np.float64)
    types = np.array([t for t, _, _ in keys], dtype=object)
    weights = np.array([sums[k] for k in keys], dtype=np.float64)

    result = PointSet(x, y, types, weights, window.bounding_rectangle())

    if verbose:
        print(f"  ✓ Grid approximation: {partitions}x{partitions} cells, "
              f"{points.n_points} → {result.n_points} points")
    return result


class GridApproximator:
    """
    Reusable grid approximation with a fixed number of partitions.

    Parameters
    ----------
    partitions : int
        Number of grid cells along each axis.
    """

    def __init__(self, partitions: int):
        self.partitions = validate_partitions(partitions)

    def max_points(self, n_types: int = 2) -> int:
        """Upper bound on the output size for `n_types` types."""
        return n_types * self.partitions ** 2

    def apply(self, points: PointSet, verbose: bool = False) -> PointSet:
        return grid_approximation(points, self.partitions, verbose=verbose)

    __call__ = apply

    def __repr__(self) -> str:
        return f"GridApproximator(partitions={self.partitions})"
