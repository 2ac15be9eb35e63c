"""
benchmark.py - Performance and accuracy measurements

scaling_benchmark
    Wall-clock time of a full M computation on random patterns of
    increasing size, with a fitted power law t = t0 * (n / n0) ** p.
compare_grid_approximation
    Error of M computed on grid-approximated points against the exact
    computation, with the time each one takes.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from ..data.core import PointSet, Window
from ..data.generators import uniform_pointset
from .grid import grid_approximation
from .mfunction import m_function


@dataclass
class ScalingResult:
    """
    Timings of M computations and their power-law fit.

    Attributes
    ----------
    table : pd.DataFrame
        Columns 'n' and 'seconds'.
    exponent : float
        Fitted p in t = t0 * (n / n0) ** p.
    prefactor : float
        Fitted t0 (seconds at n = n0).
    n0 : int
        Reference size (smallest n).
    """
    table: pd.DataFrame
    exponent: float
    prefactor: float
    n0: int

    def predict(self, n) -> np.ndarray:
        return self.prefactor * (np.asarray(n, dtype=float) / self.n0) ** self.exponent

    def __repr__(self) -> str:
        return (f"ScalingResult(p={self.exponent:.2f}, t0={self.prefactor:.3g}s, "
                f"n={self.table['n'].tolist()})")


def fit_power_law(n: Sequence[float], seconds: Sequence[float]) -> tuple:
    """
    Least-squares fit of log(t) = log(t0) + p log(n / n0).

    Returns
    -------
    (p, t0, n0)
    """
    n = np.asarray(n, dtype=float)
    t = np.asarray(seconds, dtype=float)
    if len(n) < 2:
        raise ValueError("Need at least two sizes to fit a power law")
    if np.any(t <= 0):
        raise ValueError("Timings must be positive")
    n0 = float(n.min())
    p, log_t0 = np.polyfit(np.log(n / n0), np.log(t), 1)
    return float(p), float(np.exp(log_t0)), int(n0)


def scaling_benchmark(
    sizes: Sequence[int] = (1000, 5000, 10000, 50000, 100000),
    radii=None,
    window: Optional[Window] = None,
    reference_type: str = 'Case',
    neighbor_type: str = 'Control',
    backend: str = 'coordinates',
    n_jobs: int = 1,
    repeats: int = 1,
    seed: Optional[int] = 0,
    verbose: bool = True,
) -> ScalingResult:
    """
    Time M on random two-type patterns of increasing size.

    Parameters
    ----------
    sizes : sequence of int
        Pattern sizes.
    radii : array-like, optional
        Defaults to 20 radii up to 5% of the window's shortest side.
    window : Window, optional
        Defaults to the unit square.
    reference_type, neighbor_type : str
        Labels drawn with equal probability.
    backend : str
        Distance backend.
    n_jobs : int
        Threads per M computation.
    repeats : int
        Timings per size; the fastest is kept.
    seed : int, optional
        Seed of the pattern generator.
    verbose : bool
        Print one line per size.

    Returns
    -------
    ScalingResult
    """
    window = window or Window(0.0, 1.0, 0.0, 1.0)
    if radii is None:
        radii = np.linspace(0, 0.05 * window.min_side, 21)[1:]
    rng = np.random.default_rng(seed)

    rows = []
    for n in sizes:
        pts = uniform_pointset(int(n), window, types=(reference_type, neighbor_type), rng=rng)
        best = np.inf
        for _ in range(max(int(repeats), 1)):
            start = time.perf_counter()
            m_function(pts, radii, reference_type, neighbor_type,
                       backend=backend, n_jobs=n_jobs, verbose=False)
            best = min(best, time.perf_counter() - start)
        rows.append({'n': int(n), 'seconds': best})
        if verbose:
            print(f"  → n={int(n):>7d}: {best:.3f}s")

    table = pd.DataFrame(rows)
    p, t0, n0 = fit_power_law(table['n'], table['seconds'])
    if verbose:
        print(f"  ✓ Scaling: t ≈ {t0:.3g}s · (n/{n0})^{p:.2f}")
    return ScalingResult(table=table, exponent=p, prefactor=t0, n0=n0)


def compare_grid_approximation(
    points: PointSet,
    partitions_list: Sequence[int],
    radii,
    reference_type,
    neighbor_type,
    normalization: str = 'pattern',
    backend: str = 'coordinates',
    n_jobs: int = 1,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Accuracy and cost of the grid approximation.

    Parameters
    ----------
    points : PointSet
        Exact points.
    partitions_list : sequence of int
        Grid sizes to evaluate.
    radii : array-like
        Radius sequence.
    reference_type, neighbor_type : str
        Types to relate.
    normalization, backend, n_jobs
        As in `m_function`.
    verbose : bool
        Print a summary line per grid size.

    Returns
    -------
    pd.DataFrame
        One row per grid size with columns 'partitions', 'n_points',
        'seconds', 'max_abs_error', 'rmse', 'n_compared'. The exact
        computation's size and time are in `df.attrs`.
    """
    kwargs = dict(backend=backend, normalization=normalization, n_jobs=n_jobs, verbose=False)

    start = time.perf_counter()
    exact = m_function(points, radii, reference_type, neighbor_type, **kwargs)
    exact_seconds = time.perf_counter() - start

    rows = []
    for partitions in partitions_list:
        start = time.perf_counter()
        approx_points = grid_approximation(points, partitions)
        approx = m_function(approx_points, radii, reference_type, neighbor_type, **kwargs)
        seconds = time.perf_counter() - start

        both = exact.defined & approx.defined
        err = approx.statistic[both] - exact.statistic[both]
        rows.append({
            'partitions': int(partitions),
            'n_points': approx_points.n_points,
            'seconds': seconds,
            'max_abs_error': float(np.abs(err).max()) if err.size else np.nan,
            'rmse': float(np.sqrt(np.mean(err ** 2))) if err.size else np.nan,
            'n_compared': int(both.sum()),
        })
        if verbose:
            r = rows[-1]
            print(f"  → {r['partitions']}x{r['partitions']}: {r['n_points']} points, "
                  f"{r['seconds']:.3f}s, max |ΔM|={r['max_abs_error']:.4f}")

    df = pd.DataFrame(rows)
    df.attrs['exact_n_points'] = points.n_points
    df.attrs['exact_seconds'] = exact_seconds
    if verbose:
        print(f"  ✓ Grid comparison: exact {points.n_points} points in {exact_seconds:.3f}s")
    return df
