"""
generators.py - Random point patterns for testing and benchmarking

Uniform (complete spatial randomness) and Matérn cluster patterns with
typed, weighted points. Every generator takes an explicit
numpy Generator (or seed) instead of touching global random state.
"""
from __future__ import annotations

from typing import Callable, Optional, Sequence, Union

import numpy as np

from .config import InvalidWeight, ValidationError
from .core import PointSet, Window

SeedLike = Union[None, int, np.random.Generator, np.random.SeedSequence]
WeightSpec = Union[float, Callable[[np.random.Generator, int], np.ndarray]]


def _rng(seed: SeedLike) -> np.random.Generator:
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def _draw_weights(weights: WeightSpec, rng: np.random.Generator, n: int) -> np.ndarray:
    if callable(weights):
        w = np.asarray(weights(rng, n), dtype=np.float64)
        if w.shape != (n,):
            raise InvalidWeight(f"Weight sampler returned shape {w.shape}, expected ({n},)")
        return w
    return np.full(n, float(weights))


def _draw_types(types: Sequence, probabilities: Optional[Sequence[float]],
                rng: np.random.Generator, n: int) -> np.ndarray:
    types = np.asarray(types, dtype=object)
    if types.size == 0:
        raise ValidationError("At least one type label is required")
    return rng.choice(types, size=n, p=probabilities)


def uniform_in_window(window: Window, n: int, rng: SeedLike = None) -> np.ndarray:
    """
    Draw n uniform locations in the window.

    Polygon windows use rejection sampling from the bounding box.

    Returns
    -------
    np.ndarray (n, 2)
    """
    rng = _rng(rng)
    if n < 0:
        raise ValidationError(f"n must be non-negative, got {n}")

    if window.is_rectangle:
        return np.column_stack([
            rng.uniform(window.xmin, window.xmax, n),
            rng.uniform(window.ymin, window.ymax, n),
        ])

    accepted = np.empty((0, 2))
    # Oversample by the inverse acceptance rate
    ratio = (window.width * window.height) / window.area
    while len(accepted) < n:
        m = int(np.ceil((n - len(accepted)) * ratio * 1.2)) + 1
        cand = np.column_stack([
            rng.uniform(window.xmin, window.xmax, m),
            rng.uniform(window.ymin, window.ymax, m),
        ])
        accepted = np.vstack([accepted, cand[window.contains(cand[:, 0], cand[:, 1])]])
    return accepted[:n]


def uniform_pointset(
    n: int,
    window: Optional[Window] = None,
    types: Sequence = ("Case", "Control"),
    probabilities: Optional[Sequence[float]] = None,
    weights: WeightSpec = 1.0,
    rng: SeedLike = None,
) -> PointSet:
    """
    Generate a completely random pattern (CSR) with random labels.

    Parameters
    ----------
    n : int
        Number of points.
    window : Window, optional
        Defaults to the unit square.
    types : sequence
        Type labels to draw from.
    probabilities : sequence of float, optional
        Label probabilities (uniform if None).
    weights : float or callable
        Constant weight, or `f(rng, n) -> array` for random weights.
    rng : int, Generator or None
        Random source.

    Returns
    -------
    PointSet
    """
    rng = _rng(rng)
    window = window or Window(0.0, 1.0, 0.0, 1.0)
    xy = uniform_in_window(window, n, rng)
    labels = _draw_types(types, probabilities, rng, n)
    w = _draw_weights(weights, rng, n)
    return PointSet(xy[:, 0], xy[:, 1], labels, w, window)


def matern_pointset(
    n_parents: int,
    cluster_radius: float,
    mean_children: float,
    window: Optional[Window] = None,
    cluster_type: str = "Case",
    background: Optional[PointSet] = None,
    weights: WeightSpec = 1.0,
    rng: SeedLike = None,
) -> PointSet:
    """
    Generate a Matérn cluster pattern.

    Parent centres are uniform in the window; each parent gets a
    Poisson(mean_children) number of children placed uniformly in a disc
    of radius `cluster_radius`. Children falling outside the window are
    discarded. All children get `cluster_type`; an optional `background`
    pattern (same window) is appended, which gives the usual
    "clustered cases among uniform controls" scenario.

    Returns
    -------
    PointSet
    """
    rng = _rng(rng)
    window = window or (background.window if background is not None else Window(0.0, 1.0, 0.0, 1.0))
    if cluster_radius <= 0:
        raise ValidationError(f"cluster_radius must be positive, got {cluster_radius}")
    if mean_children < 0:
        raise ValidationError(f"mean_children must be non-negative, got {mean_children}")

    parents = uniform_in_window(window, n_parents, rng)
    n_children = rng.poisson(mean_children, size=n_parents)
    centres = np.repeat(parents, n_children, axis=0)
    m = len(centres)

    # Uniform in a disc: radius ~ R*sqrt(U)
    rho = cluster_radius * np.sqrt(rng.uniform(0, 1, m))
    theta = rng.uniform(0, 2 * np.pi, m)
    xy = centres + np.column_stack([rho * np.cos(theta), rho * np.sin(theta)])
    xy = xy[window.contains(xy[:, 0], xy[:, 1])]

    x, y = xy[:, 0], xy[:, 1]
    labels = np.full(len(xy), cluster_type, dtype=object)
    w = _draw_weights(weights, rng, len(xy))

    if background is not None:
        x = np.concatenate([x, background.x])
        y = np.concatenate([y, background.y])
        labels = np.concatenate([labels, background.types])
        w = np.concatenate([w, background.weights])

    return PointSet(x, y, labels, w, window)


def random_labeling(
    points: PointSet,
    types: Sequence = ("Case", "Control"),
    probabilities: Optional[Sequence[float]] = None,
    rng: SeedLike = None,
) -> PointSet:
    """Assign labels independently of location to a fixed configuration."""
    rng = _rng(rng)
    return points.relabel(_draw_types(types, probabilities, rng, points.n_points))


def gamma_weights(shape: float = 2.0, scale: float = 1.0) -> Callable[[np.random.Generator, int], np.ndarray]:
    """Weight sampler drawing Gamma(shape, scale) weights (always positive)."""
    def sample(rng: np.random.Generator, n: int) -> np.ndarray:
        # Gamma draws can underflow to exactly zero for tiny shapes
        return np.maximum(rng.gamma(shape, scale, n), np.finfo(float).tiny)
    return sample
