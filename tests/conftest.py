"""
conftest.py - Shared test fixtures for spatialm

pytest reads this file before running any test. Every fixture defined
here is available to all test files by name:

    @pytest.fixture
    def my_fixture():
        return something_useful

    def test_something(my_fixture):   ← pytest injects it automatically
        assert my_fixture == expected

All random fixtures use explicit numpy Generators with fixed seeds, so
every run sees the same points.
"""

import numpy as np
import pytest

from spatialm.data.core import PointSet, Window
from spatialm.data.generators import gamma_weights, matern_pointset, uniform_pointset

# ===========================================================================
# Constants
# ===========================================================================

N_RANDOM = 300          # points in the random two-type pattern
UNIT = Window(0.0, 1.0, 0.0, 1.0)


# ===========================================================================
# Fixture 1: the two-point worked example
# ===========================================================================


@pytest.fixture
def two_points():
    """
    Reference ('Case') weight 2 at (0, 0), Neighbor ('Control') weight 3
    at (1, 0), in the window [0, 1] x [-1, 1].

    Hand-computed values (pattern normalization):
      r = 1   → p = 3/3 = 1, P = 3/5, M = 1/0.6
      r = 0.5 → no neighbor within r → M undefined
    """
    return PointSet(
        x=[0.0, 1.0],
        y=[0.0, 0.0],
        types=['Case', 'Control'],
        weights=[2.0, 3.0],
        window=Window(0.0, 1.0, -1.0, 1.0),
    )


# ===========================================================================
# Fixture 2: random two-type pattern with random weights
# ===========================================================================


@pytest.fixture
def random_points():
    """
    300 uniform points in the unit square, labels 'Case'/'Control' with
    equal probability, Gamma(2, 1) weights.
    """
    return uniform_pointset(
        N_RANDOM,
        UNIT,
        types=('Case', 'Control'),
        weights=gamma_weights(2.0, 1.0),
        rng=np.random.default_rng(42),
    )


@pytest.fixture
def radii():
    """Radii from small (sparse neighborhoods) to a fifth of the window."""
    return np.array([0.02, 0.05, 0.08, 0.1, 0.15, 0.2])


# ===========================================================================
# Fixture 3: clustered cases among uniform controls
# ===========================================================================


@pytest.fixture
def clustered_points():
    """
    Matérn clusters of 'Case' points (10 parents, radius 0.03, about 20
    children each) on top of 200 uniform 'Control' points.

    'Case' points strongly attract each other at small distances.
    """
    rng = np.random.default_rng(7)
    controls = uniform_pointset(200, UNIT, types=('Control',), rng=rng)
    return matern_pointset(
        n_parents=10,
        cluster_radius=0.03,
        mean_children=20,
        cluster_type='Case',
        background=controls,
        rng=rng,
    )
