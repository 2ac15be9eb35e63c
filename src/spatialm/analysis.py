"""
analysis.py - End-to-end M function analysis driven by MConfig

points → (grid approximation) → distance provider → M → (envelope)
"""
from __future__ import annotations

from typing import Union

import pandas as pd

from .data.config import MConfig, ValidationError
from .data.core import DistanceTable, PointSet
from .spatial.envelope import Envelope, m_envelope
from .spatial.grid import grid_approximation
from .spatial.mfunction import MResult, m_function


def run_m_analysis(
    source: Union[PointSet, DistanceTable, pd.DataFrame],
    config: MConfig,
    cancel=None,
) -> Union[MResult, Envelope]:
    """
    Run the M function pipeline described by `config`.

    Parameters
    ----------
    source : PointSet, DistanceTable or DataFrame
        Input points. DataFrames are read with the config's column names.
    config : MConfig
        Analysis options.
    cancel : threading.Event, optional
        Stops envelope simulations early (partial envelope).

    Returns
    -------
    MResult
        When `config.envelope_mode` is 'none'.
    Envelope
        Otherwise.
    """
    if isinstance(source, pd.DataFrame):
        source = PointSet.from_dataframe(source, config=config)

    if config.partitions is not None:
        if not isinstance(source, PointSet):
            raise ValidationError("Grid approximation needs point coordinates, not a DistanceTable")
        source = grid_approximation(source, config.partitions, verbose=config.verbose)

    backend = 'table' if isinstance(source, DistanceTable) else config.backend

    if config.envelope_mode == 'none':
        return m_function(
            source,
            config.radii,
            config.reference_type,
            config.neighbor_type,
            backend=backend,
            normalization=config.normalization,
            n_jobs=config.n_jobs,
            verbose=config.verbose,
        )

    return m_envelope(
        source,
        config.radii,
        config.reference_type,
        config.neighbor_type,
        mode=config.envelope_mode,
        n_simulations=config.n_simulations,
        confidence=config.confidence,
        seed=config.seed,
        backend=backend,
        normalization=config.normalization,
        n_jobs=config.n_jobs,
        cancel=cancel,
        verbose=config.verbose,
    )
