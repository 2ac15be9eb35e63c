"""
config.py - Configuration and exceptions for spatialm

Contains:
- MConfig: Options recognized by the M function pipeline
- SpatialMError and its subclasses: Validation and simulation errors
- Warning classes for recoverable conditions
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass

import numpy as np

ENVELOPE_MODES = ("none", "pointwise", "global")
NORMALIZATIONS = ("pattern", "exclude_self", "global")
BACKENDS = ("coordinates", "table")


class SpatialMError(Exception):
    """Base exception for spatialm errors."""

    pass


class ValidationError(SpatialMError, ValueError):
    """Raised when input validation fails."""

    pass


class InvalidWindow(ValidationError):
    """Raised when the window is degenerate or a point lies outside it."""

    pass


class InvalidWeight(ValidationError):
    """Raised when a weight is not strictly positive and finite."""

    pass


class InvalidRadiusSequence(ValidationError):
    """Raised when radii are negative, empty or not strictly increasing."""

    pass


class MissingType(ValidationError):
    """Raised when a requested point type is absent from the point set."""

    def __init__(self, point_type, available):
        self.point_type = point_type
        self.available = list(available)
        super().__init__(f"Type '{point_type}' not found. Available types: {self.available}")


class InvalidPartitions(ValidationError):
    """Raised when the grid size is not a positive integer."""

    pass


class InconsistentRepresentations(ValidationError):
    """Raised when a distance table disagrees with its type/weight list."""

    pass


class SimulationError(SpatialMError, RuntimeError):
    """Raised when an envelope simulation cannot produce a result."""

    pass


class EmptyNeighborhoodWarning(UserWarning):
    """Some radii have no reference point with a non-empty neighborhood."""

    pass


class PartialEnvelopeWarning(UserWarning):
    """An envelope was built from fewer simulations than requested."""

    pass


def validate_radii(radii) -> np.ndarray:
    """
    Validate a radius sequence.

    Parameters
    ----------
    radii : array-like
        Candidate radii.

    Returns
    -------
    np.ndarray
        1-D float64 copy of the radii.

    Raises
    ------
    InvalidRadiusSequence
        If the sequence is empty, not 1-D, non-finite, negative or not
        strictly increasing.
    """
    r = np.asarray(radii, dtype=np.float64)
    if r.ndim != 1 or r.size == 0:
        raise InvalidRadiusSequence(f"Radii must be a non-empty 1-D sequence, got shape {r.shape}")
    if not np.all(np.isfinite(r)):
        raise InvalidRadiusSequence("Radii must be finite")
    if np.any(r < 0):
        raise InvalidRadiusSequence(f"Radii must be non-negative, got min={r.min()}")
    if np.any(np.diff(r) <= 0):
        raise InvalidRadiusSequence("Radii must be strictly increasing")
    r.setflags(write=False)
    return r


def default_radii(window, n_steps: int = 20) -> np.ndarray:
    """
    Evenly spaced radii up to a quarter of the window's shortest side.

    Zero is left out, so every radius can hold a neighbor.
    """
    if n_steps < 1:
        raise InvalidRadiusSequence(f"n_steps must be positive, got {n_steps}")
    return validate_radii(np.linspace(0.0, window.min_side / 4, n_steps + 1)[1:])


def _check_choice(name: str, value: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ValidationError(f"{name} must be one of {choices}, got '{value}'")


@dataclass
class MConfig:
    """
    Options for an M function analysis.

    Attributes
    ----------
    radii : array-like
        Distances at which M is evaluated (non-negative, strictly increasing).
    reference_type : str
        Type of the points around which neighbors are counted.
    neighbor_type : str
        Type whose local concentration is measured. May equal reference_type.
    envelope_mode : str
        'none', 'pointwise' or 'global'.
    n_simulations : int
        Number of random relabelings for the envelope.
    seed : int, optional
        Root seed of the per-replicate random streams.
    partitions : int, optional
        Grid size for the approximation. None computes M on exact locations.
    confidence : float
        Envelope confidence level (e.g., 0.95).
    normalization : str
        'pattern', 'exclude_self' or 'global'; how the global neighbor share is
        computed for each reference point.
    backend : str
        'coordinates' (Euclidean on the fly) or 'table' (precomputed).
    n_jobs : int
        Worker threads. -1 uses all CPUs.
    verbose : bool
        Print progress lines.
    """

    radii: np.ndarray
    reference_type: str
    neighbor_type: str
    envelope_mode: str = "none"
    n_simulations: int = 99
    seed: int | None = None
    partitions: int | None = None
    confidence: float = 0.95
    normalization: str = "pattern"
    backend: str = "coordinates"
    n_jobs: int = 1
    verbose: bool = True

    # Column names for tabular input
    x_col: str = "x"
    y_col: str = "y"
    type_col: str = "type"
    weight_col: str = "weight"

    def __post_init__(self):
        self.radii = validate_radii(self.radii)
        _check_choice("envelope_mode", self.envelope_mode, ENVELOPE_MODES)
        _check_choice("normalization", self.normalization, NORMALIZATIONS)
        _check_choice("backend", self.backend, BACKENDS)

        if self.envelope_mode != "none" and (int(self.n_simulations) != self.n_simulations or self.n_simulations < 1):
            raise ValidationError(f"n_simulations must be a positive integer, got {self.n_simulations}")
        if not 0 < self.confidence < 1:
            raise ValidationError(f"confidence must be in (0, 1), got {self.confidence}")
        if self.partitions is not None:
            validate_partitions(self.partitions)
        if self.n_jobs == 0:
            raise ValidationError("n_jobs must be a positive integer or -1")

    def get_columns(self) -> tuple[str, str, str, str]:
        """(x, y, type, weight) column names for DataFrame input."""
        return self.x_col, self.y_col, self.type_col, self.weight_col


def validate_partitions(partitions) -> int:
    """Return `partitions` as int, or raise InvalidPartitions."""
    if isinstance(partitions, bool) or not isinstance(partitions, numbers.Integral) or partitions <= 0:
        raise InvalidPartitions(f"partitions must be a positive integer, got {partitions}")
    return int(partitions)
