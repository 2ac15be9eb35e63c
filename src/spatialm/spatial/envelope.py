"""
envelope.py - Random-labeling confidence envelopes for M

Under the null hypothesis, type labels are unrelated to location.
Each simulation draws a uniform permutation of the labels over the
fixed locations and weights, and recomputes M. The simulated curves
give either

pointwise bounds
    empirical percentiles of M(r) at each radius separately, or
global bounds
    1 +/- d*, where d* is the `confidence` quantile of
    max_r |M_sim(r) - 1|; a single band that controls the error rate
    over the whole radius range. d* is raised when needed so the band
    contains the pointwise bounds at every radius.

Replicate k draws from its own random stream spawned from the root
seed, so results are identical for any number of threads.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from ..data.config import (
    EmptyNeighborhoodWarning,
    PartialEnvelopeWarning,
    SimulationError,
    ValidationError,
)
from ..data.core import DistanceTable, PointSet
from .distance import make_distance_provider
from .mfunction import DEFAULT_CHUNK_SIZE, MEstimator, MResult
from .parallel import chunk_indices, ordered_map, resolve_n_jobs, spawn_generators

logger = logging.getLogger(__name__)

ENVELOPE_KINDS = ('pointwise', 'global')


def _nullable(values: np.ndarray) -> pd.arrays.FloatingArray:
    return pd.array([None if np.isnan(v) else v for v in values.tolist()], dtype='Float64')


def _optional(v: float) -> Optional[float]:
    return None if np.isnan(v) else float(v)


@dataclass
class Envelope:
    """
    Observed M with simulation bounds.

    Attributes
    ----------
    r : np.ndarray
        Radii.
    observed : MResult
        M of the observed labels.
    lower, upper : np.ndarray
        Envelope bounds per radius (NaN where no simulation was defined).
    mode : str
        'pointwise' or 'global'.
    confidence : float
        Confidence level of the bounds.
    n_simulations : int
        Simulations the bounds are built from.
    n_requested : int
        Simulations requested. Larger than n_simulations when the run
        was cancelled early.
    critical_deviation : float, optional
        d* for global envelopes.
    simulations : np.ndarray, optional
        (n_simulations, n_radii) simulated M values, if kept.
    """

    r: np.ndarray
    observed: MResult
    lower: np.ndarray
    upper: np.ndarray
    mode: str
    confidence: float
    n_simulations: int
    n_requested: int
    critical_deviation: Optional[float] = None
    simulations: Optional[np.ndarray] = None

    @property
    def partial(self) -> bool:
        """True when built from fewer simulations than requested."""
        return self.n_simulations < self.n_requested

    @property
    def width(self) -> np.ndarray:
        return self.upper - self.lower

    def outside(self) -> dict:
        """Boolean masks of radii where the observed M leaves the envelope."""
        obs = self.observed.statistic
        ok = self.observed.defined & ~np.isnan(self.lower) & ~np.isnan(self.upper)
        above = np.zeros(len(self.r), dtype=bool)
        below = np.zeros(len(self.r), dtype=bool)
        above[ok] = obs[ok] > self.upper[ok]
        below[ok] = obs[ok] < self.lower[ok]
        return {'above': above, 'below': below}

    def to_records(self) -> List[tuple]:
        """[(r, observed, lower, upper), ...]; undefined values are None."""
        return [
            (float(r), self.observed[k], _optional(self.lower[k]), _optional(self.upper[k]))
            for k, r in enumerate(self.r)
        ]

    def to_dataframe(self) -> pd.DataFrame:
        """Columns r, observed, lower, upper; undefined values are pd.NA."""
        return pd.DataFrame({
            'r': self.r,
            'observed': self.observed.to_dataframe()['M'],
            'lower': _nullable(self.lower),
            'upper': _nullable(self.upper),
        })

    def summary(self) -> dict:
        out = self.outside()
        return {
            'mode': self.mode,
            'confidence': self.confidence,
            'n_simulations': self.n_simulations,
            'n_requested': self.n_requested,
            'partial': self.partial,
            'critical_deviation': self.critical_deviation,
            'n_above': int(out['above'].sum()),
            'n_below': int(out['below'].sum()),
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"Envelope({s['mode']}, {s['confidence']:.0%}, "
            f"{s['n_simulations']}/{s['n_requested']} simulations, "
            f"above={s['n_above']}, below={s['n_below']})"
        )


def envelope_bounds(simulations: np.ndarray, mode: str, confidence: float):
    """
    Envelope bounds from a matrix of simulated M values.

    Parameters
    ----------
    simulations : np.ndarray (n_simulations, n_radii)
        Simulated M; NaN marks undefined values.
    mode : str
        'pointwise' or 'global'.
    confidence : float
        Confidence level in (0, 1).

    Returns
    -------
    lower, upper : np.ndarray
    critical_deviation : float or None
        d* for global bounds.
    """
    if mode not in ENVELOPE_KINDS:
        raise ValidationError(f"mode must be one of {ENVELOPE_KINDS}, got '{mode}'")
    if not 0 < confidence < 1:
        raise ValidationError(f"confidence must be in (0, 1), got {confidence}")

    sims = np.atleast_2d(np.asarray(simulations, dtype=np.float64))

    # All-NaN columns/rows are expected (undefined radii) and stay NaN
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        alpha = 1 - confidence
        lower = np.nanpercentile(sims, 100 * alpha / 2, axis=0)
        upper = np.nanpercentile(sims, 100 * (1 - alpha / 2), axis=0)
        if mode == 'pointwise':
            return lower, upper, None

        max_dev = np.nanmax(np.abs(sims - 1.0), axis=1)
        if np.all(np.isnan(max_dev)):
            d_star = np.nan
        else:
            # The band covers every pointwise band: its half-width is at
            # least the largest pointwise distance from 1
            quantile = float(np.nanquantile(max_dev, confidence))
            extent = float(np.nanmax(np.maximum(upper - 1.0, 1.0 - lower)))
            d_star = max(quantile, extent)

    n_r = sims.shape[1]
    return np.full(n_r, 1.0 - d_star), np.full(n_r, 1.0 + d_star), d_star


class EnvelopeSimulator:
    """
    Monte-Carlo envelope of M under random labeling.

    Parameters
    ----------
    estimator : MEstimator
        Estimator over the fixed locations and weights. Its neighborhoods
        are cached before the simulations start.
    types : array-like
        Observed type labels (permuted in each simulation).
    reference_type, neighbor_type : str
        Types to relate.
    n_simulations : int
        Number of random relabelings.
    mode : str
        'pointwise' or 'global'.
    confidence : float
        Envelope confidence level.
    seed : int or np.random.SeedSequence, optional
        Root of the per-replicate random streams.
    n_jobs : int
        Threads across replicates.
    batch_size : int, optional
        Replicates between cancellation checks. Defaults to
        4 per thread (at least 8).
    keep_simulations : bool
        Attach the simulated matrix to the Envelope.
    verbose : bool
        Print progress lines.
    """

    def __init__(self,
                 estimator: MEstimator,
                 types,
                 reference_type,
                 neighbor_type,
                 n_simulations: int = 99,
                 mode: str = 'pointwise',
                 confidence: float = 0.95,
                 seed=None,
                 n_jobs: int = 1,
                 batch_size: Optional[int] = None,
                 keep_simulations: bool = False,
                 verbose: bool = True):
        if isinstance(n_simulations, bool) or int(n_simulations) != n_simulations or n_simulations < 1:
            raise ValidationError(f"n_simulations must be a positive integer, got {n_simulations}")
        if mode not in ENVELOPE_KINDS:
            raise ValidationError(f"mode must be one of {ENVELOPE_KINDS}, got '{mode}'")
        if not 0 < confidence < 1:
            raise ValidationError(f"confidence must be in (0, 1), got {confidence}")

        self.estimator = estimator
        self.types = np.asarray(types, dtype=object)
        self.reference_type = reference_type
        self.neighbor_type = neighbor_type
        self.n_simulations = int(n_simulations)
        self.mode = mode
        self.confidence = confidence
        self.seed = seed
        self.n_jobs = n_jobs
        self.batch_size = batch_size or max(4 * resolve_n_jobs(n_jobs), 8)
        self.keep_simulations = keep_simulations
        self.verbose = verbose

        self.simulations: Optional[np.ndarray] = None

    def _replicate(self, k: int, rng: np.random.Generator) -> np.ndarray:
        try:
            shuffled = rng.permutation(self.types)
            result = self.estimator.estimate(
                shuffled, self.reference_type, self.neighbor_type, n_jobs=1
            )
        except Exception as exc:
            raise SimulationError(f"Simulation {k} failed: {exc}") from exc
        return result.statistic

    def simulate(self, cancel=None) -> np.ndarray:
        """
        Run the simulations.

        Parameters
        ----------
        cancel : threading.Event, optional
            When set, no further batch is started and the replicates
            completed so far are returned.

        Returns
        -------
        np.ndarray (n_completed, n_radii)

        Raises
        ------
        SimulationError
            If a replicate fails (the whole call is aborted) or the run is
            cancelled before any replicate completes.
        """
        self.estimator.prepare()
        rngs = spawn_generators(self.seed, self.n_simulations)
        batches = chunk_indices(np.arange(self.n_simulations), self.batch_size)

        if self.verbose:
            print(f"  Running {self.n_simulations} simulations for envelope...")

        rows: List[np.ndarray] = []
        for b, batch in enumerate(batches):
            if cancel is not None and cancel.is_set():
                logger.info("Envelope cancelled after %d of %d simulations", len(rows), self.n_simulations)
                break
            rows.extend(ordered_map(lambda k: self._replicate(int(k), rngs[k]), batch, self.n_jobs))
            logger.debug("Batch %d/%d done (%d simulations)", b + 1, len(batches), len(rows))

        if not rows:
            raise SimulationError("Envelope cancelled before any simulation completed")

        self.simulations = np.vstack(rows)
        return self.simulations

    def observed(self) -> MResult:
        """M of the observed labels."""
        self.estimator.prepare()
        return self.estimator.estimate(self.types, self.reference_type, self.neighbor_type)

    def envelope(self, observed: MResult, simulations: Optional[np.ndarray] = None,
                 mode: Optional[str] = None) -> Envelope:
        """Build an Envelope from simulations (default: the last run)."""
        sims = self.simulations if simulations is None else simulations
        if sims is None:
            raise SimulationError("No simulations available; call simulate() first")
        mode = mode or self.mode
        lower, upper, d_star = envelope_bounds(sims, mode, self.confidence)

        envelope = Envelope(
            r=observed.r,
            observed=observed,
            lower=lower,
            upper=upper,
            mode=mode,
            confidence=self.confidence,
            n_simulations=len(sims),
            n_requested=self.n_simulations,
            critical_deviation=d_star,
            simulations=sims if self.keep_simulations else None,
        )

        if envelope.partial:
            warnings.warn(
                f"Envelope built from {envelope.n_simulations} of "
                f"{envelope.n_requested} requested simulations",
                PartialEnvelopeWarning,
                stacklevel=2,
            )

        if self.verbose:
            s = envelope.summary()
            n_inside = len(envelope.r) - s['n_above'] - s['n_below']
            print(f"  ✓ Envelope ({mode}, {self.confidence:.0%}): "
                  f"{s['n_above']} distances above, {s['n_below']} below, "
                  f"{n_inside} inside")
        return envelope

    def run(self, observed: Optional[MResult] = None, cancel=None) -> Envelope:
        """Simulate and build the envelope around `observed`."""
        if observed is None:
            observed = self.observed()
        self.simulate(cancel=cancel)
        return self.envelope(observed)


def m_envelope(
    source: Union[PointSet, DistanceTable],
    radii,
    reference_type,
    neighbor_type,
    mode: str = 'pointwise',
    n_simulations: int = 99,
    confidence: float = 0.95,
    seed=None,
    backend: str = 'coordinates',
    normalization: str = 'pattern',
    n_jobs: int = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    keep_simulations: bool = False,
    cancel=None,
    verbose: bool = True,
) -> Envelope:
    """
    Compute M with a random-labeling confidence envelope.

    Parameters
    ----------
    source : PointSet or DistanceTable
        Typed, weighted points.
    radii : array-like
        Non-negative, strictly increasing radii.
    reference_type, neighbor_type : str
        Types to relate.
    mode : str
        'pointwise' or 'global'.
    n_simulations : int
        Number of random relabelings.
    confidence : float
        Envelope confidence level.
    seed : int, optional
        Random seed.
    backend, normalization, n_jobs, chunk_size
        As in `m_function`.
    keep_simulations : bool
        Attach the simulated matrix to the result.
    cancel : threading.Event, optional
        Stops the simulations early; a partial envelope is returned.
    verbose : bool
        Print progress lines.

    Returns
    -------
    Envelope
    """
    source.require_types(reference_type, neighbor_type)
    provider = make_distance_provider(source, backend)
    estimator = MEstimator(provider, source.weights, radii,
                           normalization=normalization, n_jobs=n_jobs, chunk_size=chunk_size)

    simulator = EnvelopeSimulator(
        estimator, source.types, reference_type, neighbor_type,
        n_simulations=n_simulations, mode=mode, confidence=confidence,
        seed=seed, n_jobs=n_jobs, keep_simulations=keep_simulations, verbose=verbose,
    )
    observed = simulator.observed()
    if not observed.all_defined:
        warnings.warn(
            f"Observed M is undefined at {int((~observed.defined).sum())} radii",
            EmptyNeighborhoodWarning,
            stacklevel=2,
        )
    if verbose:
        print(f"  ✓ M function ({reference_type}→{neighbor_type}): "
              f"n={provider.n_points}, n_ref={observed.n_reference}")

    return simulator.run(observed=observed, cancel=cancel)
