"""
utils.py - Import/export helpers for point sets and results

Reporting and plotting live outside this package; results leave it as
plain CSV tables of (r, value[, lower, upper]) records.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

import pandas as pd

from .config import MConfig
from .core import PointSet, Window


def load_pointset_csv(path: Union[str, Path],
                      config: Optional[MConfig] = None,
                      window: Optional[Window] = None,
                      **read_csv_kwargs) -> PointSet:
    """
    Read a PointSet from a CSV file.

    Parameters
    ----------
    path : str or Path
        CSV file with x, y, type and (optionally) weight columns.
    config : MConfig, optional
        Supplies the column names. Defaults: 'x', 'y', 'type', 'weight'.
    window : Window, optional
        Observation window. Defaults to the bounding box of the points.
    **read_csv_kwargs
        Passed to pandas.read_csv.

    Returns
    -------
    PointSet
    """
    df = pd.read_csv(path, **read_csv_kwargs)
    pts = PointSet.from_dataframe(df, config=config, window=window)
    print(f"  ✓ Loaded {pts.n_points} points from {Path(path).name}")
    return pts


def export_result_csv(result, path: Union[str, Path]) -> Path:
    """
    Write an MResult or Envelope to CSV.

    Undefined values are written as empty fields.

    Returns
    -------
    Path
        The written file.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    result.to_dataframe().to_csv(output_path, index=False)
    print(f"  → Exported {len(result.r)} radii to {output_path}")
    return output_path
