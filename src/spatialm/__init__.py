# src/spatialm/__init__.py

"""
spatialm - Weighted mark-correlation M function for typed point patterns
"""

# Core data structures
from .data.core import Window, PointSet, DistanceTable
from .data.config import MConfig

# Main entry points
from .spatial.mfunction import MResult, MEstimator, m_function
from .spatial.envelope import Envelope, EnvelopeSimulator, m_envelope
from .spatial.grid import GridApproximator, grid_approximation
from .analysis import run_m_analysis

# Import submodules
from . import data
from . import spatial

__version__ = '0.1.0'

__all__ = [
    # Core classes
    'Window',
    'PointSet',
    'DistanceTable',
    'MConfig',

    # Computation
    'MResult',
    'MEstimator',
    'm_function',
    'Envelope',
    'EnvelopeSimulator',
    'm_envelope',
    'GridApproximator',
    'grid_approximation',
    'run_m_analysis',

    # Submodules
    'data',
    'spatial',
]
