"""
test_envelope.py - Tests for random-labeling envelopes, the pipeline and benchmarks

How to run:
    pytest tests/test_envelope.py -v
    pytest tests/test_envelope.py -v -m "not slow"

Monte-Carlo tests use fixed seeds; the slow ones draw enough replicates
for their tolerances to hold comfortably.
"""

import threading

import numpy as np
import pandas as pd
import pytest

from spatialm import MConfig, run_m_analysis
from spatialm.data.config import (
    InvalidPartitions,
    InvalidRadiusSequence,
    MissingType,
    PartialEnvelopeWarning,
    SimulationError,
    ValidationError,
)
from spatialm.data.core import DistanceTable, Window
from spatialm.data.generators import uniform_pointset
from spatialm.spatial.benchmark import fit_power_law, scaling_benchmark
from spatialm.spatial.distance import CoordinateDistances
from spatialm.spatial.envelope import (
    Envelope,
    EnvelopeSimulator,
    envelope_bounds,
    m_envelope,
)
from spatialm.spatial.mfunction import MEstimator, MResult, m_function

RADII = [0.05, 0.1, 0.2]


class CancelAfter:
    """Cancellation token that trips after `n` checks."""

    def __init__(self, n):
        self.n = n
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.n


def make_simulator(points, radii=RADII, **kwargs):
    estimator = MEstimator(CoordinateDistances(points), points.weights, radii)
    kwargs.setdefault('verbose', False)
    return EnvelopeSimulator(estimator, points.types, 'Case', 'Control', **kwargs)


# ===========================================================================
# SECTION 1 — Envelope bounds from a simulation matrix
# ===========================================================================


class TestEnvelopeBounds:

    SIMS = np.array([
        [1.0, 0.5, np.nan],
        [1.2, 0.8, np.nan],
        [0.9, 1.5, np.nan],
    ])

    def test_pointwise_percentiles(self):
        """Pointwise bounds are per-radius percentiles."""
        lower, upper, d_star = envelope_bounds(self.SIMS, 'pointwise', 0.5)
        assert d_star is None
        assert lower[0] == pytest.approx(0.95)
        assert upper[0] == pytest.approx(1.1)
        assert lower[1] == pytest.approx(0.65)
        assert upper[1] == pytest.approx(1.15)

    def test_undefined_radius_stays_undefined(self):
        """A radius undefined in every simulation has no bounds."""
        lower, upper, _ = envelope_bounds(self.SIMS, 'pointwise', 0.9)
        assert np.isnan(lower[2]) and np.isnan(upper[2])

    def test_global_band(self):
        """Max deviations per row: 0.5, 0.2, 0.5 → median 0.5."""
        lower, upper, d_star = envelope_bounds(self.SIMS, 'global', 0.5)
        assert d_star == pytest.approx(0.5)
        np.testing.assert_allclose(lower, 0.5)
        np.testing.assert_allclose(upper, 1.5)

    def test_global_band_covers_skewed_pointwise_band(self):
        """Median max deviation is 0, but the band still reaches the 75th percentile."""
        sims = np.array([[1.0], [1.0], [1.0], [2.0]])
        lo_p, up_p, _ = envelope_bounds(sims, 'pointwise', 0.5)
        lo_g, up_g, d_star = envelope_bounds(sims, 'global', 0.5)
        assert up_p[0] == pytest.approx(1.25)
        assert d_star == pytest.approx(0.25)
        assert lo_g[0] <= lo_p[0] and up_g[0] >= up_p[0]

    @pytest.mark.parametrize('radii', [[0.05, 0.1, 0.2], [0.05]])
    @pytest.mark.parametrize('seed', [0, 1, 2, 3, 5])
    def test_global_contains_pointwise_on_simulated_m(self, random_points, radii, seed):
        """On real relabelings the global band contains the pointwise one at every radius."""
        simulator = make_simulator(random_points, radii=radii, n_simulations=99, seed=seed)
        sims = simulator.simulate()
        lo_p, up_p, _ = envelope_bounds(sims, 'pointwise', 0.95)
        lo_g, up_g, d_star = envelope_bounds(sims, 'global', 0.95)
        tol = 1e-12
        assert np.all(up_g - lo_g >= up_p - lo_p - tol)
        assert np.all(lo_g <= lo_p + tol) and np.all(up_g >= up_p - tol)

        # Never narrower than the plain max-deviation quantile
        max_dev = np.nanmax(np.abs(sims - 1.0), axis=1)
        assert d_star >= np.nanquantile(max_dev, 0.95)

    @pytest.mark.parametrize('mode, confidence', [('band', 0.95), ('global', 1.0), ('pointwise', 0.0)])
    def test_invalid_arguments(self, mode, confidence):
        """Unknown modes and confidence outside (0, 1) are rejected."""
        with pytest.raises(ValidationError):
            envelope_bounds(self.SIMS, mode, confidence)


# ===========================================================================
# SECTION 2 — Simulation: reproducibility, modes, outcomes
# ===========================================================================


class TestEnvelopeSimulation:

    def test_same_seed_same_simulations(self, random_points):
        """The same seed reproduces every simulated curve."""
        a = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=20,
                       seed=11, keep_simulations=True, verbose=False)
        b = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=20,
                       seed=11, keep_simulations=True, verbose=False)
        np.testing.assert_array_equal(a.simulations, b.simulations)
        np.testing.assert_array_equal(a.lower, b.lower)

    def test_threads_do_not_change_simulations(self, random_points):
        """Replicate k uses stream k whatever thread runs it."""
        single = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=24,
                            seed=3, n_jobs=1, keep_simulations=True, verbose=False)
        multi = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=24,
                           seed=3, n_jobs=3, keep_simulations=True, verbose=False)
        np.testing.assert_array_equal(single.simulations, multi.simulations)

    def test_different_seed_differs(self, random_points):
        """Different seeds give different simulations."""
        a = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=10,
                       seed=1, keep_simulations=True, verbose=False)
        b = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=10,
                       seed=2, keep_simulations=True, verbose=False)
        assert not np.allclose(a.simulations, b.simulations)

    def test_envelope_fields(self, random_points):
        """Envelope carries the observed M, bounds and run counts."""
        env = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=19,
                         seed=0, verbose=False)
        assert isinstance(env, Envelope)
        assert isinstance(env.observed, MResult)
        assert env.mode == 'pointwise'
        assert env.n_simulations == env.n_requested == 19
        assert not env.partial
        assert env.simulations is None
        assert np.all(env.lower <= env.upper)

        df = env.to_dataframe()
        assert list(df.columns) == ['r', 'observed', 'lower', 'upper']
        assert len(env.to_records()) == len(RADII)
        assert 'Envelope(pointwise' in repr(env)

    def test_observed_matches_m_function(self, random_points):
        """The observed curve equals a plain M computation."""
        env = m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=5,
                         seed=0, verbose=False)
        direct = m_function(random_points, RADII, 'Case', 'Control', verbose=False)
        np.testing.assert_allclose(env.observed.statistic, direct.statistic, rtol=1e-12)

    def test_global_band_is_flat_and_symmetric(self, random_points):
        """Global bounds are 1 +/- d* at every radius."""
        env = m_envelope(random_points, RADII, 'Case', 'Control', mode='global',
                         n_simulations=39, seed=4, verbose=False)
        d = env.critical_deviation
        assert d > 0
        np.testing.assert_allclose(env.lower, 1.0 - d)
        np.testing.assert_allclose(env.upper, 1.0 + d)

    def test_both_modes_from_shared_simulations(self, random_points):
        """One simulation run serves both envelope modes."""
        simulator = make_simulator(random_points, n_simulations=30, seed=8)
        observed = simulator.observed()
        simulator.simulate()
        pointwise = simulator.envelope(observed, mode='pointwise')
        global_ = simulator.envelope(observed, mode='global')
        assert pointwise.mode == 'pointwise' and global_.mode == 'global'
        assert pointwise.n_simulations == global_.n_simulations == 30

    def test_clustered_cases_leave_envelope(self, clustered_points):
        """Clustered Cases rise above the random-labeling envelope."""
        env = m_envelope(clustered_points, [0.02, 0.04], 'Case', 'Case',
                         n_simulations=39, seed=0, verbose=False)
        assert env.outside()['above'].all()
        assert env.summary()['n_above'] == 2

    def test_missing_type(self, random_points):
        """An absent type fails before simulating."""
        with pytest.raises(MissingType):
            m_envelope(random_points, RADII, 'Case', 'Shop', n_simulations=5, verbose=False)

    def test_invalid_simulation_count(self, random_points):
        """At least one simulation is required."""
        with pytest.raises(ValidationError):
            make_simulator(random_points, n_simulations=0)


# ===========================================================================
# SECTION 3 — Cancellation and failures
#
# Cancelling keeps the replicates finished so far; a failing replicate
# aborts the whole call.
# ===========================================================================


class TestCancellationAndFailure:

    def test_cancel_before_start_raises(self, random_points):
        """Cancelling before any replicate leaves nothing to build on."""
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SimulationError):
            m_envelope(random_points, RADII, 'Case', 'Control', n_simulations=10,
                       seed=0, cancel=cancel, verbose=False)

    def test_cancel_midway_gives_partial_envelope(self, random_points):
        """Completed batches still give a flagged envelope."""
        simulator = make_simulator(random_points, n_simulations=20, seed=0, batch_size=5)
        with pytest.warns(PartialEnvelopeWarning):
            env = simulator.run(cancel=CancelAfter(2))
        assert env.n_simulations == 10
        assert env.n_requested == 20
        assert env.partial
        assert env.summary()['partial'] is True

    def test_partial_run_matches_full_run_prefix(self, random_points):
        """Completed replicates are the same ones a full run produces."""
        partial = make_simulator(random_points, n_simulations=20, seed=6, batch_size=5)
        full = make_simulator(random_points, n_simulations=20, seed=6, batch_size=5)
        sims_partial = partial.simulate(cancel=CancelAfter(1))
        sims_full = full.simulate()
        np.testing.assert_array_equal(sims_partial, sims_full[:5])

    @pytest.mark.parametrize('n_jobs', [1, 2])
    def test_failing_replicate_aborts(self, random_points, monkeypatch, n_jobs):
        """A failing replicate aborts the run, keeping the original error as cause."""
        simulator = make_simulator(random_points, n_simulations=6, seed=0, n_jobs=n_jobs)

        def broken(*args, **kwargs):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(simulator.estimator, 'estimate', broken)
        with pytest.raises(SimulationError) as excinfo:
            simulator.simulate()
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert simulator.simulations is None

    def test_envelope_without_simulations(self, random_points):
        """Building an envelope before simulating fails."""
        simulator = make_simulator(random_points, n_simulations=5)
        with pytest.raises(SimulationError):
            simulator.envelope(simulator.observed())


# ===========================================================================
# SECTION 4 — Null model
# ===========================================================================


class TestNullModel:

    @pytest.mark.slow
    def test_random_labeling_mean_is_one(self):
        """Averaged over relabelings, M is 1 at every radius."""
        pts = uniform_pointset(1000, Window(0.0, 1.0, 0.0, 1.0), rng=np.random.default_rng(123))
        env = m_envelope(pts, RADII, 'Case', 'Control', n_simulations=500,
                         seed=9, n_jobs=2, keep_simulations=True, verbose=False)
        mean = np.nanmean(env.simulations, axis=0)
        np.testing.assert_allclose(mean, 1.0, atol=0.05)


# ===========================================================================
# SECTION 5 — Config-driven pipeline
# ===========================================================================


class TestPipeline:

    def test_dataframe_input(self, random_points):
        """A DataFrame source gives the same M as its PointSet."""
        config = MConfig(radii=RADII, reference_type='Case', neighbor_type='Control', verbose=False)
        result = run_m_analysis(random_points.to_dataframe(), config)
        direct = m_function(random_points, RADII, 'Case', 'Control', verbose=False)
        assert isinstance(result, MResult)
        np.testing.assert_allclose(result.statistic, direct.statistic, rtol=1e-12)

    def test_custom_columns(self, random_points):
        """Column names come from the config."""
        df = random_points.to_dataframe().rename(columns={'x': 'cx', 'type': 'label', 'weight': 'w'})
        config = MConfig(radii=RADII, reference_type='Case', neighbor_type='Control',
                         x_col='cx', type_col='label', weight_col='w', verbose=False)
        result = run_m_analysis(df, config)
        assert result.n_reference == int((random_points.types == 'Case').sum())

    def test_partitions(self, random_points):
        """With partitions set, M runs on the grid aggregates."""
        config = MConfig(radii=RADII, reference_type='Case', neighbor_type='Control',
                         partitions=5, verbose=False)
        result = run_m_analysis(random_points, config)
        assert result.n_reference <= 25

    def test_envelope_mode(self, random_points):
        """An envelope mode returns an Envelope."""
        config = MConfig(radii=RADII, reference_type='Case', neighbor_type='Control',
                         envelope_mode='global', n_simulations=9, seed=0, verbose=False)
        env = run_m_analysis(random_points, config)
        assert isinstance(env, Envelope)
        assert env.mode == 'global'
        assert env.n_simulations == 9

    def test_distance_table_source(self, random_points):
        """A DistanceTable source uses the table backend."""
        config = MConfig(radii=RADII, reference_type='Case', neighbor_type='Control', verbose=False)
        result = run_m_analysis(DistanceTable.from_pointset(random_points), config)
        assert result.backend == 'table'

    def test_distance_table_cannot_be_gridded(self, random_points):
        """Grid approximation needs coordinates."""
        config = MConfig(radii=RADII, reference_type='Case', neighbor_type='Control',
                         partitions=4, verbose=False)
        with pytest.raises(ValidationError):
            run_m_analysis(DistanceTable.from_pointset(random_points), config)

    @pytest.mark.parametrize('overrides, error', [
        ({'envelope_mode': 'band'}, ValidationError),
        ({'normalization': 'median'}, ValidationError),
        ({'backend': 'gpu'}, ValidationError),
        ({'confidence': 1.5}, ValidationError),
        ({'n_jobs': 0}, ValidationError),
        ({'envelope_mode': 'pointwise', 'n_simulations': 0}, ValidationError),
        ({'partitions': 0}, InvalidPartitions),
        ({'radii': [0.2, 0.1]}, InvalidRadiusSequence),
    ])
    def test_invalid_config(self, overrides, error):
        """Bad config values fail at construction."""
        kwargs = dict(radii=RADII, reference_type='Case', neighbor_type='Control')
        kwargs.update(overrides)
        with pytest.raises(error):
            MConfig(**kwargs)


# ===========================================================================
# SECTION 6 — Benchmarks
# ===========================================================================


class TestBenchmark:

    def test_fit_power_law(self):
        """The fit recovers a known exponent and prefactor."""
        n = np.array([1000, 2000, 4000, 8000])
        seconds = 0.01 * (n / 1000) ** 1.5
        p, t0, n0 = fit_power_law(n, seconds)
        assert p == pytest.approx(1.5)
        assert t0 == pytest.approx(0.01)
        assert n0 == 1000

    def test_fit_power_law_needs_two_sizes(self):
        """One size cannot define a slope."""
        with pytest.raises(ValueError):
            fit_power_law([1000], [0.1])

    @pytest.mark.slow
    def test_scaling_is_subquadratic(self):
        """Runtime grows slower than n^2."""
        result = scaling_benchmark(sizes=(2000, 4000, 8000), repeats=2, verbose=False)
        assert list(result.table.columns) == ['n', 'seconds']
        assert 0 < result.exponent < 2
        assert result.predict(2000) == pytest.approx(result.prefactor)
        assert isinstance(result.table, pd.DataFrame)
