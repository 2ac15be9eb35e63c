"""
core.py - Point set data structures for spatialm

Window, PointSet and DistanceTable are immutable once constructed.
All validation (window containment, weight positivity, table symmetry)
happens here, once, so the estimators can trust their inputs.

Point order is the identifier space shared by distance providers,
estimators and random relabeling.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import shapely
from scipy.spatial.distance import pdist, squareform

from .config import (
    MConfig,
    InvalidWindow,
    InvalidWeight,
    InconsistentRepresentations,
    MissingType,
    ValidationError,
)

if TYPE_CHECKING:
    from shapely.geometry import Polygon


# Relative tolerance for window containment and table symmetry checks
_TOL = 1e-9


@dataclass(frozen=True)
class Window:
    """
    Observation window containing all points.

    A rectangle given by its bounds, optionally refined by a convex
    polygon. The rectangle is always the polygon's bounding box.

    Attributes
    ----------
    xmin, xmax, ymin, ymax : float
        Rectangle bounds.
    polygon : shapely.geometry.Polygon, optional
        Convex window shape.
    """
    xmin: float
    xmax: float
    ymin: float
    ymax: float
    polygon: Optional['Polygon'] = None

    def __post_init__(self):
        bounds = (self.xmin, self.xmax, self.ymin, self.ymax)
        if not all(np.isfinite(b) for b in bounds):
            raise InvalidWindow(f"Window bounds must be finite, got {bounds}")
        if not (self.xmin < self.xmax and self.ymin < self.ymax):
            raise InvalidWindow(f"Degenerate window: x=[{self.xmin}, {self.xmax}], y=[{self.ymin}, {self.ymax}]")

    @classmethod
    def from_points(cls, x, y) -> 'Window':
        """Bounding box of the points, padded when degenerate."""
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if x.size == 0:
            raise InvalidWindow("Cannot derive a window from zero points")
        xmin, xmax = float(x.min()), float(x.max())
        ymin, ymax = float(y.min()), float(y.max())
        if xmax - xmin <= 0:
            xmin, xmax = xmin - 0.5, xmax + 0.5
        if ymax - ymin <= 0:
            ymin, ymax = ymin - 0.5, ymax + 0.5
        return cls(xmin, xmax, ymin, ymax)

    @classmethod
    def from_polygon(cls, polygon: 'Polygon') -> 'Window':
        """Window bounded by a convex shapely polygon."""
        if not isinstance(polygon, shapely.Polygon) or polygon.is_empty:
            raise InvalidWindow("Window shape must be a non-empty shapely Polygon")
        if not polygon.is_valid:
            raise InvalidWindow("Window polygon is not valid")
        if polygon.convex_hull.area - polygon.area > _TOL * max(polygon.area, 1.0):
            raise InvalidWindow("Window polygon must be convex")
        xmin, ymin, xmax, ymax = polygon.bounds
        return cls(xmin, xmax, ymin, ymax, polygon=polygon)

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def min_side(self) -> float:
        return min(self.width, self.height)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(xmin, ymin, xmax, ymax), the shapely convention."""
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    @property
    def area(self) -> float:
        if self.polygon is not None:
            return float(self.polygon.area)
        return self.width * self.height

    @property
    def is_rectangle(self) -> bool:
        return self.polygon is None

    def bounding_rectangle(self) -> 'Window':
        """The rectangular window with the same bounds."""
        return Window(self.xmin, self.xmax, self.ymin, self.ymax)

    def contains(self, x, y) -> np.ndarray:
        """
        Test which points lie in the window (boundary included).

        Parameters
        ----------
        x, y : array-like
            Point coordinates.

        Returns
        -------
        np.ndarray of bool
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        tol = _TOL * max(self.width, self.height)
        inside = (
            (x >= self.xmin - tol) & (x <= self.xmax + tol)
            & (y >= self.ymin - tol) & (y <= self.ymax + tol)
        )
        if self.polygon is not None and inside.any():
            # contains_xy excludes the boundary; buffering by tol keeps it
            shape = self.polygon.buffer(tol) if tol > 0 else self.polygon
            inside &= shapely.contains_xy(shape, x, y)
        return inside

    def __repr__(self) -> str:
        kind = "rectangle" if self.polygon is None else "polygon"
        return (f"Window({kind}, x=[{self.xmin:g}, {self.xmax:g}], "
                f"y=[{self.ymin:g}, {self.ymax:g}])")


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def _validate_weights(weights: np.ndarray) -> None:
    bad = ~np.isfinite(weights) | (weights <= 0)
    if bad.any():
        first = int(np.flatnonzero(bad)[0])
        raise InvalidWeight(
            f"{int(bad.sum())} weights are not strictly positive "
            f"(first at index {first}: {weights[first]})"
        )


def _type_domain(types: np.ndarray) -> list:
    # Unique labels in order of first appearance
    return list(pd.unique(types))


class _MarkedMixin:
    """Type/weight queries shared by PointSet and DistanceTable."""

    types: np.ndarray
    weights: np.ndarray

    @property
    def n_points(self) -> int:
        return len(self.weights)

    def __len__(self) -> int:
        return self.n_points

    @property
    def type_domain(self) -> list:
        """Distinct type labels, in order of first appearance."""
        return _type_domain(self.types)

    def has_type(self, point_type) -> bool:
        return bool(np.any(self.types == point_type))

    def require_types(self, *point_types) -> None:
        """Raise MissingType if any of `point_types` has no point."""
        for t in point_types:
            if not self.has_type(t):
                raise MissingType(t, self.type_domain)

    def total_weight(self, point_type=None) -> float:
        """Total weight, optionally restricted to one type."""
        if point_type is None:
            return float(self.weights.sum())
        return float(self.weights[self.types == point_type].sum())

    def weights_by_type(self) -> Dict[str, float]:
        return {t: self.total_weight(t) for t in self.type_domain}

    def _check_relabel(self, types) -> np.ndarray:
        types = np.asarray(types, dtype=object)
        if types.shape != (self.n_points,):
            raise ValidationError(
                f"Expected {self.n_points} type labels, got shape {types.shape}"
            )
        return types


class PointSet(_MarkedMixin):
    """
    Typed, weighted points inside one window.

    Parameters
    ----------
    x, y : array-like
        Coordinates.
    types : array-like
        Type label of each point (e.g., 'Case' / 'Control').
    weights : array-like, optional
        Strictly positive weights. Defaults to 1 for every point.
    window : Window, optional
        Observation window. Defaults to the bounding box of the points.

    Raises
    ------
    ValidationError
        If array lengths differ or coordinates are not finite.
    InvalidWindow
        If a point lies outside the window.
    InvalidWeight
        If a weight is not strictly positive.
    """

    def __init__(self,
                 x: Sequence[float],
                 y: Sequence[float],
                 types: Sequence,
                 weights: Optional[Sequence[float]] = None,
                 window: Optional[Window] = None):
        x = np.asarray(x, dtype=np.float64).ravel()
        y = np.asarray(y, dtype=np.float64).ravel()
        types = np.asarray(types, dtype=object).ravel()
        if weights is None:
            weights = np.ones(len(x))
        weights = np.asarray(weights, dtype=np.float64).ravel()

        lengths = [len(x), len(y), len(types), len(weights)]
        if len(set(lengths)) != 1:
            raise ValidationError(f"x, y, types and weights have different lengths: {lengths}")
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
            raise ValidationError("Coordinates must be finite")

        _validate_weights(weights)

        if window is None:
            window = Window.from_points(x, y)
        inside = window.contains(x, y)
        if not inside.all():
            first = int(np.flatnonzero(~inside)[0])
            raise InvalidWindow(
                f"{int((~inside).sum())} points lie outside {window} "
                f"(first at index {first}: ({x[first]}, {y[first]}))"
            )

        self._x = _frozen(x)
        self._y = _frozen(y)
        self._types = _frozen(types)
        self._weights = _frozen(weights)
        self._window = window

    # ========== Properties ==========

    @property
    def x(self) -> np.ndarray:
        return self._x

    @property
    def y(self) -> np.ndarray:
        return self._y

    @property
    def types(self) -> np.ndarray:
        return self._types

    @property
    def weights(self) -> np.ndarray:
        return self._weights

    @property
    def window(self) -> Window:
        return self._window

    @property
    def coords(self) -> np.ndarray:
        """(n_points, 2) coordinate array."""
        return np.column_stack([self._x, self._y])

    # ========== Derived point sets ==========

    def relabel(self, types) -> 'PointSet':
        """Same locations and weights with new type labels."""
        return PointSet(self._x, self._y, self._check_relabel(types), self._weights, self._window)

    def subset(self, indices) -> 'PointSet':
        """Points at the given integer indices (or boolean mask), same window."""
        idx = np.asarray(indices)
        return PointSet(self._x[idx], self._y[idx], self._types[idx], self._weights[idx], self._window)

    # ========== Conversion ==========

    @classmethod
    def from_dataframe(cls,
                       df: pd.DataFrame,
                       config: Optional[MConfig] = None,
                       window: Optional[Window] = None,
                       x_col: str = 'x',
                       y_col: str = 'y',
                       type_col: str = 'type',
                       weight_col: Optional[str] = 'weight') -> 'PointSet':
        """
        Build a PointSet from a DataFrame.

        Column names come from `config` when given, otherwise from the
        keyword arguments. A missing weight column means unit weights.
        """
        if config is not None:
            x_col, y_col, type_col, weight_col = config.get_columns()

        for col in (x_col, y_col, type_col):
            if col not in df.columns:
                raise ValidationError(f"Column '{col}' not found in DataFrame")

        weights = None
        if weight_col is not None and weight_col in df.columns:
            weights = df[weight_col].to_numpy(dtype=np.float64)

        return cls(
            x=df[x_col].to_numpy(dtype=np.float64),
            y=df[y_col].to_numpy(dtype=np.float64),
            types=df[type_col].to_numpy(dtype=object),
            weights=weights,
            window=window,
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            'x': self._x,
            'y': self._y,
            'type': self._types,
            'weight': self._weights,
        })

    def summary(self) -> dict:
        return {
            'n_points': self.n_points,
            'types': self.type_domain,
            'weights_by_type': self.weights_by_type(),
            'window': repr(self._window),
        }

    def __repr__(self) -> str:
        counts = pd.Series(self._types).value_counts(sort=False)
        parts = ", ".join(f"{t}={n}" for t, n in counts.items())
        return f"PointSet({self.n_points} points: {parts})"


class DistanceTable(_MarkedMixin):
    """
    Precomputed pairwise distances with a parallel (type, weight) list.

    No coordinates are required. Row/column i refers to the point with
    types[i] and weights[i].

    Parameters
    ----------
    distances : array-like (n, n)
        Symmetric, non-negative matrix with zero diagonal.
    types : array-like (n,)
        Type label of each point.
    weights : array-like (n,), optional
        Strictly positive weights. Defaults to 1.

    Raises
    ------
    InconsistentRepresentations
        If the matrix is not square, does not match the type/weight list,
        or is not a valid distance matrix.
    InvalidWeight
        If a weight is not strictly positive.
    """

    def __init__(self, distances, types, weights=None):
        d = np.asarray(distances, dtype=np.float64)
        types = np.asarray(types, dtype=object).ravel()
        if weights is None:
            weights = np.ones(len(types))
        weights = np.asarray(weights, dtype=np.float64).ravel()

        if d.ndim != 2 or d.shape[0] != d.shape[1]:
            raise InconsistentRepresentations(f"Distance table must be square, got shape {d.shape}")
        n = d.shape[0]
        if len(types) != n or len(weights) != n:
            raise InconsistentRepresentations(
                f"Distance table has {n} rows but {len(types)} types and {len(weights)} weights"
            )
        if not np.all(np.isfinite(d)):
            raise InconsistentRepresentations("Distance table contains non-finite values")
        if np.any(d < 0):
            raise InconsistentRepresentations("Distance table contains negative distances")
        if np.any(np.diag(d) != 0):
            raise InconsistentRepresentations("Distance table diagonal must be zero")
        scale = max(float(d.max()), 1.0) if n else 1.0
        if not np.allclose(d, d.T, rtol=0, atol=_TOL * scale):
            raise InconsistentRepresentations("Distance table is not symmetric")

        _validate_weights(weights)

        self._distances = _frozen(d)
        self._types = _frozen(types)
        self._weights = _frozen(weights)

    @classmethod
    def from_pointset(cls, points: PointSet) -> 'DistanceTable':
        """Euclidean distance table of a PointSet (O(n^2) memory)."""
        d = squareform(pdist(points.coords, metric='euclidean'))
        return cls(d, points.types, points.weights)

    @property
    def distances(self) -> np.ndarray:
        return self._distances

    @property
    def types(self) -> np.ndarray:
        return self._types

    @property
    def weights(self) -> np.ndarray:
        return self._weights

    def relabel(self, types) -> 'DistanceTable':
        """Same distances and weights with new type labels."""
        table = object.__new__(DistanceTable)
        table._distances = self._distances
        table._types = _frozen(self._check_relabel(types))
        table._weights = self._weights
        return table

    def __repr__(self) -> str:
        return f"DistanceTable({self.n_points} points, types={self.type_domain})"
