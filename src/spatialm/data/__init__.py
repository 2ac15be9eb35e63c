"""
data - Point set data structures, configuration and generators

This module contains the immutable point representations (PointSet,
DistanceTable, Window), the analysis configuration, the exception
hierarchy and random pattern generators for tests and benchmarks.
"""

from .config import (
    MConfig,
    validate_radii,
    default_radii,
    validate_partitions,
    SpatialMError,
    ValidationError,
    InvalidWindow,
    InvalidWeight,
    InvalidRadiusSequence,
    MissingType,
    InvalidPartitions,
    InconsistentRepresentations,
    SimulationError,
    EmptyNeighborhoodWarning,
    PartialEnvelopeWarning,
)

from .core import Window, PointSet, DistanceTable
from .generators import (
    uniform_in_window,
    uniform_pointset,
    matern_pointset,
    random_labeling,
    gamma_weights,
)
from .utils import load_pointset_csv, export_result_csv

__all__ = [
    # Core classes
    'Window',
    'PointSet',
    'DistanceTable',

    # Configuration
    'MConfig',
    'validate_radii',
    'default_radii',
    'validate_partitions',

    # Generators
    'uniform_in_window',
    'uniform_pointset',
    'matern_pointset',
    'random_labeling',
    'gamma_weights',

    # Utilities
    'load_pointset_csv',
    'export_result_csv',

    # Exceptions
    'SpatialMError',
    'ValidationError',
    'InvalidWindow',
    'InvalidWeight',
    'InvalidRadiusSequence',
    'MissingType',
    'InvalidPartitions',
    'InconsistentRepresentations',
    'SimulationError',
    'EmptyNeighborhoodWarning',
    'PartialEnvelopeWarning',
]
