"""
mfunction.py - Weighted mark-correlation M function

M(r) compares the share of Neighbor-type weight found within distance r
of Reference-type points with the share of Neighbor-type weight in the
whole pattern. M = 1 without spatial structure, M > 1 means the Neighbor
type concentrates around the Reference type at scale r, M < 1 means
it avoids it.

For a reference point i, with j ranging over the other points:

    p(i, r) = sum(w_j : j Neighbor, d_ij <= r) / sum(w_j : d_ij <= r)
    M(r)    = sum_i w_i p(i, r) / sum_i w_i P_i

where both sums run over reference points whose neighborhood at r is
not empty, and P_i is the global Neighbor share seen from i (see
`normalization`). Distances are computed once per pair: each reference
point's neighborhood is sorted once and all radii are binned in a
single `searchsorted` pass over cumulative weights.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from ..data.config import (
    NORMALIZATIONS,
    EmptyNeighborhoodWarning,
    MissingType,
    ValidationError,
    validate_radii,
)
from ..data.core import DistanceTable, PointSet, _type_domain
from .distance import DistanceProvider, make_distance_provider
from .parallel import chunk_indices, ordered_map

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 2048


@dataclass
class MResult:
    """
    M function values at a sequence of radii.

    Attributes
    ----------
    r : np.ndarray
        Radii where M was evaluated.
    statistic : np.ndarray
        M(r); NaN where undefined. Use `defined`, `value_at` or
        `to_dataframe` rather than reading NaNs directly.
    defined : np.ndarray of bool
        False where no reference point had a non-empty neighborhood.
    reference_type : str
        Reference point type.
    neighbor_type : str
        Neighbor point type.
    normalization : str
        Global-share convention used for P_i.
    backend : str
        Distance backend ('coordinates' or 'table').
    n_reference : int
        Number of reference points.
    n_valid : np.ndarray of int
        Reference points with a non-empty neighborhood, per radius.
    """

    r: np.ndarray
    statistic: np.ndarray
    defined: np.ndarray
    reference_type: str
    neighbor_type: str
    normalization: str = 'pattern'
    backend: str = ''
    n_reference: int = 0
    n_valid: np.ndarray = field(default=None, repr=False)

    def __len__(self) -> int:
        return len(self.r)

    def __getitem__(self, k: int) -> Optional[float]:
        """M at the k-th radius, or None if undefined."""
        return float(self.statistic[k]) if self.defined[k] else None

    def index_of(self, r: float) -> int:
        matches = np.flatnonzero(np.isclose(self.r, r, rtol=1e-12, atol=0))
        if len(matches) == 0:
            raise KeyError(f"Radius {r} was not evaluated")
        return int(matches[0])

    def value_at(self, r: float) -> Optional[float]:
        """M at radius r, or None if undefined."""
        return self[self.index_of(r)]

    @property
    def all_defined(self) -> bool:
        return bool(self.defined.all())

    def to_records(self) -> List[tuple]:
        """[(r, M or None), ...] in radius order."""
        return [(float(r), self[k]) for k, r in enumerate(self.r)]

    def to_dataframe(self) -> pd.DataFrame:
        """Columns 'r' and 'M'; undefined values are pd.NA."""
        values = pd.array(
            [v if d else None for v, d in zip(self.statistic.tolist(), self.defined)],
            dtype='Float64',
        )
        return pd.DataFrame({'r': self.r, 'M': values})

    def summary(self) -> dict:
        defined_values = self.statistic[self.defined]
        return {
            'function': 'M',
            'label': f"{self.reference_type}→{self.neighbor_type}",
            'normalization': self.normalization,
            'backend': self.backend,
            'n_reference': self.n_reference,
            'n_radii': len(self.r),
            'n_undefined': int((~self.defined).sum()),
            'max_r': float(self.r.max()),
            'max_M': float(defined_values.max()) if defined_values.size else None,
            'min_M': float(defined_values.min()) if defined_values.size else None,
        }

    def __repr__(self) -> str:
        s = self.summary()
        max_m = 'undefined' if s['max_M'] is None else f"{s['max_M']:.3f}"
        return (
            f"MResult({s['label']}, {s['n_radii']} radii, "
            f"max_r={s['max_r']:.3g}, max_M={max_m}, "
            f"undefined={s['n_undefined']})"
        )


def global_shares(weights: np.ndarray,
                  is_neighbor: np.ndarray,
                  reference_idx: np.ndarray,
                  normalization: str = 'pattern') -> np.ndarray:
    """
    Global Neighbor weight share P_i seen from each reference point.

    Parameters
    ----------
    weights : np.ndarray
        Weights of all points.
    is_neighbor : np.ndarray of bool
        Neighbor-type mask over all points.
    reference_idx : np.ndarray of int
        Indices of the reference points.
    normalization : str
        'global'
            P_i = W_N / W for every point.
        'pattern'
            Point i's own weight is removed only when i is itself a
            Neighbor point: P_i = (W_N - d_i w_i) / (W - d_i w_i).
        'exclude_self'
            Point i's own weight is always removed from the total:
            P_i = (W_N - d_i w_i) / (W - w_i).

    Returns
    -------
    np.ndarray
        P_i per reference point; NaN when the denominator is zero.
    """
    if normalization not in NORMALIZATIONS:
        raise ValidationError(f"normalization must be one of {NORMALIZATIONS}, got '{normalization}'")

    total = weights.sum()
    total_nb = weights[is_neighbor].sum()
    w_ref = weights[reference_idx]
    own_nb = np.where(is_neighbor[reference_idx], w_ref, 0.0)

    if normalization == 'global':
        num = np.full(len(reference_idx), total_nb)
        den = np.full(len(reference_idx), total)
    elif normalization == 'pattern':
        num = total_nb - own_nb
        den = total - own_nb
    else:
        num = total_nb - own_nb
        den = total - w_ref

    with np.errstate(divide='ignore', invalid='ignore'):
        shares = np.where(den > 0, num / den, np.nan)
    return shares


class MEstimator:
    """
    Computes M(r) for one fixed configuration of locations and weights.

    The estimator is label-agnostic: `estimate` takes the type labels,
    so the same instance (and its cached neighborhoods) serves the
    observed pattern and every random relabeling.

    Parameters
    ----------
    provider : DistanceProvider
        Distances between the points.
    weights : array-like
        Point weights, in provider order.
    radii : array-like
        Radius sequence (non-negative, strictly increasing).
    normalization : str
        'pattern' (default), 'exclude_self' or 'global'. See
        `global_shares`.
    n_jobs : int
        Threads used across reference-point chunks.
    chunk_size : int
        Reference points per task.
    """

    def __init__(self,
                 provider: DistanceProvider,
                 weights,
                 radii,
                 normalization: str = 'pattern',
                 n_jobs: int = 1,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.provider = provider
        self.weights = np.asarray(weights, dtype=np.float64)
        self.radii = validate_radii(radii)
        if normalization not in NORMALIZATIONS:
            raise ValidationError(f"normalization must be one of {NORMALIZATIONS}, got '{normalization}'")
        self.normalization = normalization
        self.n_jobs = n_jobs
        self.chunk_size = chunk_size

        if len(self.weights) != provider.n_points:
            raise ValidationError(
                f"{len(self.weights)} weights for {provider.n_points} points"
            )

        self._cache: Optional[List[tuple]] = None

    @property
    def r_max(self) -> float:
        return float(self.radii[-1])

    @property
    def is_prepared(self) -> bool:
        return self._cache is not None

    def prepare(self) -> 'MEstimator':
        """
        Cache the sorted neighborhood of every point.

        Needed once before repeated estimates on relabeled points; the
        cache is read-only afterwards.
        """
        if self._cache is None:
            chunks = chunk_indices(np.arange(self.provider.n_points), self.chunk_size)
            parts = ordered_map(
                lambda c: self.provider.neighborhoods(c, self.r_max), chunks, self.n_jobs
            )
            self._cache = [nb for part in parts for nb in part]
            logger.debug("Cached %d neighborhoods (r_max=%g)", len(self._cache), self.r_max)
        return self

    def _neighborhoods(self, indices: np.ndarray) -> list:
        if self._cache is not None:
            return [self._cache[i] for i in indices]
        return self.provider.neighborhoods(indices, self.r_max)

    def _accumulate(self, ref_chunk: np.ndarray, shares: np.ndarray, is_neighbor: np.ndarray):
        """Partial sums of w_i p(i, r), w_i P_i and valid counts for a chunk."""
        n_r = len(self.radii)
        num = np.zeros(n_r)
        den = np.zeros(n_r)
        count = np.zeros(n_r, dtype=np.int64)
        weights = self.weights

        for i, share, (idx, d) in zip(ref_chunk, shares, self._neighborhoods(ref_chunk)):
            if len(idx) == 0 or np.isnan(share):
                continue
            w = weights[idx]
            cum_all = np.cumsum(w)
            cum_nb = np.cumsum(np.where(is_neighbor[idx], w, 0.0))

            # k = number of neighbors within each radius
            k = np.searchsorted(d, self.radii, side='right')
            valid = k > 0
            last = k[valid] - 1
            p = cum_nb[last] / cum_all[last]

            num[valid] += weights[i] * p
            den[valid] += weights[i] * share
            count[valid] += 1

        return num, den, count

    def estimate(self, types, reference_type, neighbor_type, n_jobs: Optional[int] = None) -> MResult:
        """
        Compute M(r) for the given labels.

        Parameters
        ----------
        types : array-like
            Type label of every point, in provider order.
        reference_type, neighbor_type : str
            Types to relate. May be equal.
        n_jobs : int, optional
            Overrides the estimator's thread count for this call.

        Returns
        -------
        MResult

        Raises
        ------
        MissingType
            If either type labels no point.
        """
        types = np.asarray(types, dtype=object)
        if types.shape != self.weights.shape:
            raise ValidationError(f"{len(types)} type labels for {len(self.weights)} points")

        is_reference = types == reference_type
        is_neighbor = types == neighbor_type
        for t, mask in ((reference_type, is_reference), (neighbor_type, is_neighbor)):
            if not mask.any():
                raise MissingType(t, _type_domain(types))

        reference_idx = np.flatnonzero(is_reference)
        shares = global_shares(self.weights, is_neighbor, reference_idx, self.normalization)

        chunks = chunk_indices(np.arange(len(reference_idx)), self.chunk_size)
        parts = ordered_map(
            lambda c: self._accumulate(reference_idx[c], shares[c], is_neighbor),
            chunks,
            self.n_jobs if n_jobs is None else n_jobs,
        )

        n_r = len(self.radii)
        num, den = np.zeros(n_r), np.zeros(n_r)
        n_valid = np.zeros(n_r, dtype=np.int64)
        for part_num, part_den, part_count in parts:
            num += part_num
            den += part_den
            n_valid += part_count

        defined = den > 0
        statistic = np.full(n_r, np.nan)
        statistic[defined] = num[defined] / den[defined]

        return MResult(
            r=self.radii,
            statistic=statistic,
            defined=defined,
            reference_type=reference_type,
            neighbor_type=neighbor_type,
            normalization=self.normalization,
            backend=self.provider.backend,
            n_reference=len(reference_idx),
            n_valid=n_valid,
        )


def m_function(
    source: Union[PointSet, DistanceTable],
    radii,
    reference_type,
    neighbor_type,
    backend: str = 'coordinates',
    normalization: str = 'pattern',
    n_jobs: int = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    verbose: bool = True,
) -> MResult:
    """
    Compute the M function of a point pattern.

    Parameters
    ----------
    source : PointSet or DistanceTable
        Typed, weighted points (or their distance table).
    radii : array-like
        Non-negative, strictly increasing radii.
    reference_type : str
        Type of the points around which neighbors are counted.
    neighbor_type : str
        Type whose local concentration is measured.
    backend : str
        'coordinates' or 'table'. A DistanceTable source requires 'table'.
    normalization : str
        'pattern', 'exclude_self' or 'global'.
    n_jobs : int
        Threads across reference-point chunks.
    chunk_size : int
        Reference points per task.
    verbose : bool
        Print a status line.

    Returns
    -------
    MResult
        Radii with no valid reference neighborhood are undefined and
        trigger an EmptyNeighborhoodWarning.

    Examples
    --------
    >>> pts = PointSet([0, 1], [0, 0], ['Case', 'Control'], [2, 3])
    >>> m_function(pts, [0.5, 1.0], 'Case', 'Control', verbose=False).to_records()
    [(0.5, None), (1.0, 1.6666666666666667)]
    """
    radii = validate_radii(radii)
    source.require_types(reference_type, neighbor_type)

    provider = make_distance_provider(source, backend)
    estimator = MEstimator(provider, source.weights, radii,
                           normalization=normalization, n_jobs=n_jobs, chunk_size=chunk_size)
    result = estimator.estimate(source.types, reference_type, neighbor_type)

    if not result.all_defined:
        undefined = result.r[~result.defined]
        warnings.warn(
            f"M is undefined at {len(undefined)} radii (no reference point has a "
            f"neighbor within r; smallest affected r={undefined.min():g})",
            EmptyNeighborhoodWarning,
            stacklevel=2,
        )

    if verbose:
        print(f"  ✓ M function ({reference_type}→{neighbor_type}): "
              f"n={provider.n_points}, n_ref={result.n_reference}, "
              f"max_r={result.r.max():.3g}, backend={provider.backend}")

    return result
