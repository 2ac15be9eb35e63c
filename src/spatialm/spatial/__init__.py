"""
spatial - M function computation engine

Modules
-------
- distance: Distance providers (coordinates or precomputed table)
- mfunction: M function estimator and result container
- envelope: Random-labeling confidence envelopes
- grid: Grid approximation of point sets
- parallel: Thread map and per-replicate random streams
- benchmark: Scaling and grid-accuracy measurements

Quick Start
-----------
>>> import spatialm as sm
>>> pts = sm.data.uniform_pointset(2000, rng=1)
>>> m = sm.spatial.m_function(pts, [0.02, 0.05, 0.1], 'Case', 'Control')
>>> env = sm.spatial.m_envelope(pts, [0.02, 0.05, 0.1], 'Case', 'Control',
...                             mode='global', n_simulations=99, seed=1)
"""

from .distance import (
    DistanceProvider,
    CoordinateDistances,
    TableDistances,
    make_distance_provider,
)

from .mfunction import (
    MResult,
    MEstimator,
    global_shares,
    m_function,
)

from .envelope import (
    Envelope,
    EnvelopeSimulator,
    envelope_bounds,
    m_envelope,
)

from .grid import (
    GridApproximator,
    grid_approximation,
    cell_indices,
)

from .benchmark import (
    ScalingResult,
    fit_power_law,
    scaling_benchmark,
    compare_grid_approximation,
)

__all__ = [
    # Distances
    'DistanceProvider',
    'CoordinateDistances',
    'TableDistances',
    'make_distance_provider',

    # M function
    'MResult',
    'MEstimator',
    'global_shares',
    'm_function',

    # Envelopes
    'Envelope',
    'EnvelopeSimulator',
    'envelope_bounds',
    'm_envelope',

    # Grid approximation
    'GridApproximator',
    'grid_approximation',
    'cell_indices',

    # Benchmarks
    'ScalingResult',
    'fit_power_law',
    'scaling_benchmark',
    'compare_grid_approximation',
]
