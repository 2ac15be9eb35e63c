"""
distance.py - Distance providers

A DistanceProvider answers "how far apart are points i and j" and
"which points lie within r of point i" for one fixed point ordering.
Two interchangeable variants:

CoordinateDistances
    Euclidean distances computed from coordinates on demand. Radius
    queries go through a scikit-learn neighbor index so that only pairs
    within the largest radius are ever visited.

TableDistances
    Lookups in a precomputed DistanceTable (O(n^2) memory, any metric).

Both variants return neighborhoods sorted by (distance, index), with
distances computed the same way, so estimators give identical results
on either one.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import List, Tuple, Union

import numpy as np
from sklearn.neighbors import NearestNeighbors

from ..data.config import BACKENDS, ValidationError
from ..data.core import DistanceTable, PointSet

Neighborhood = Tuple[np.ndarray, np.ndarray]

# Relative slack for the index query; results are re-filtered exactly
_QUERY_SLACK = 1e-9


class DistanceProvider(ABC):
    """Distance queries over a fixed, ordered set of points."""

    backend: str = ''

    @property
    @abstractmethod
    def n_points(self) -> int:
        ...

    @abstractmethod
    def distance(self, i: int, j: int) -> float:
        """Distance between points i and j."""

    @abstractmethod
    def neighborhood(self, i: int, r_max: float) -> Neighborhood:
        """
        Points j != i with distance(i, j) <= r_max.

        Returns
        -------
        indices : np.ndarray of int
        distances : np.ndarray of float
            Both sorted by (distance, index).
        """

    def neighborhoods(self, indices, r_max: float) -> List[Neighborhood]:
        """Neighborhoods of several points."""
        return [self.neighborhood(int(i), r_max) for i in indices]

    def _check_index(self, i: int) -> None:
        if not 0 <= i < self.n_points:
            raise IndexError(f"Point index {i} out of range for {self.n_points} points")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.n_points} points)"


def _sorted_neighborhood(i: int, idx: np.ndarray, d: np.ndarray, r_max: float) -> Neighborhood:
    keep = (d <= r_max) & (idx != i)
    idx, d = idx[keep], d[keep]
    order = np.lexsort((idx, d))
    return idx[order].astype(np.intp, copy=False), d[order]


class CoordinateDistances(DistanceProvider):
    """
    Euclidean distances from PointSet coordinates.

    The neighbor index is built on the first radius query.
    """

    backend = 'coordinates'

    def __init__(self, points: PointSet):
        self._coords = points.coords
        self._nn = None
        self._lock = threading.Lock()

    @property
    def n_points(self) -> int:
        return len(self._coords)

    def _index(self) -> NearestNeighbors:
        with self._lock:
            if self._nn is None:
                self._nn = NearestNeighbors(metric='euclidean').fit(self._coords)
            return self._nn

    def _euclidean(self, i: int, idx: np.ndarray) -> np.ndarray:
        # Same arithmetic as scipy's pdist, so both backends agree bit for bit
        diff = self._coords[idx] - self._coords[i]
        return np.sqrt(diff[:, 0] * diff[:, 0] + diff[:, 1] * diff[:, 1])

    def distance(self, i: int, j: int) -> float:
        self._check_index(i)
        self._check_index(j)
        return float(self._euclidean(i, np.array([j]))[0])

    def neighborhood(self, i: int, r_max: float) -> Neighborhood:
        return self.neighborhoods([i], r_max)[0]

    def neighborhoods(self, indices, r_max: float) -> List[Neighborhood]:
        indices = np.asarray(indices, dtype=np.intp)
        if len(indices) == 0:
            return []
        for i in (indices.min(), indices.max()):
            self._check_index(int(i))

        r_query = r_max * (1 + _QUERY_SLACK) + _QUERY_SLACK
        candidates = self._index().radius_neighbors(
            self._coords[indices], radius=r_query, return_distance=False
        )
        result = []
        for i, idx in zip(indices, candidates):
            idx = np.asarray(idx, dtype=np.intp)
            result.append(_sorted_neighborhood(int(i), idx, self._euclidean(int(i), idx), r_max))
        return result


class TableDistances(DistanceProvider):
    """Lookups in a precomputed DistanceTable."""

    backend = 'table'

    def __init__(self, table: DistanceTable):
        self._d = table.distances

    @property
    def n_points(self) -> int:
        return self._d.shape[0]

    def distance(self, i: int, j: int) -> float:
        self._check_index(i)
        self._check_index(j)
        return float(self._d[i, j])

    def neighborhood(self, i: int, r_max: float) -> Neighborhood:
        self._check_index(i)
        row = self._d[i]
        idx = np.flatnonzero(row <= r_max)
        return _sorted_neighborhood(i, idx, row[idx], r_max)


def make_distance_provider(
    source: Union[PointSet, DistanceTable],
    backend: str = 'coordinates',
) -> DistanceProvider:
    """
    Build the distance provider for a point source.

    Parameters
    ----------
    source : PointSet or DistanceTable
        Points to measure.
    backend : str
        'coordinates' computes Euclidean distances from the PointSet;
        'table' looks distances up in a DistanceTable (built from the
        PointSet first if needed).

    Returns
    -------
    DistanceProvider
    """
    if backend not in BACKENDS:
        raise ValidationError(f"backend must be one of {BACKENDS}, got '{backend}'")

    if isinstance(source, DistanceTable):
        if backend != 'table':
            raise ValidationError("A DistanceTable has no coordinates; use backend='table'")
        return TableDistances(source)

    if isinstance(source, PointSet):
        if backend == 'table':
            return TableDistances(DistanceTable.from_pointset(source))
        return CoordinateDistances(source)

    raise TypeError(f"Expected PointSet or DistanceTable, got {type(source).__name__}")
