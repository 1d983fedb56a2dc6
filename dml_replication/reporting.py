"""
Tables and persisted outputs for simulation results.

Simulation outputs are stored as wide CSV tables: one column per
configuration label (e.g. 'p=1', 'p=10', 'p=100'), one row per replicate,
padded with NaN where a configuration has fewer estimates. One file is
written per estimation strategy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Mapping, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dml_replication.simulation import EstimateDistribution


def summary_table(distributions: Iterable[EstimateDistribution]) -> pd.DataFrame:
    """
    Monte Carlo summary of each distribution.

    Parameters
    ----------
    distributions : iterable of EstimateDistribution

    Returns
    -------
    table : pd.DataFrame
        Columns: label, strategy, theta0, n_requested, n_estimates,
        n_skipped, cancelled, mean, std, bias, rmse.
    """
    records = [dist.summary() for dist in distributions]
    columns = [
        'label', 'strategy', 'theta0', 'n_requested', 'n_estimates',
        'n_skipped', 'cancelled', 'mean', 'std', 'bias', 'rmse',
    ]
    return pd.DataFrame.from_records(records, columns=columns)


def distributions_to_frame(
    distributions: Union[Iterable[EstimateDistribution], Mapping[str, NDArray]],
) -> pd.DataFrame:
    """
    Wide table with one column per configuration label.

    Raises
    ------
    ValueError
        If two distributions share a label.
    """
    if isinstance(distributions, Mapping):
        columns = {label: np.asarray(values, dtype=float) for label, values in distributions.items()}
    else:
        columns = {}
        for dist in distributions:
            if dist.label in columns:
                raise ValueError(
                    f"duplicate label '{dist.label}'; save one strategy per file"
                )
            columns[dist.label] = dist.estimates
    return pd.DataFrame({label: pd.Series(values) for label, values in columns.items()})


def save_distributions(
    distributions: Union[Iterable[EstimateDistribution], Mapping[str, NDArray]],
    path: Union[str, Path],
) -> Path:
    """
    Write distributions to a CSV keyed by configuration label.

    Parameters
    ----------
    distributions : iterable of EstimateDistribution or mapping label -> array
    path : str or Path
        Output file; parent directories are created.

    Returns
    -------
    path : Path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    distributions_to_frame(distributions).to_csv(path, index=False)
    return path


def load_distributions(path: Union[str, Path]) -> Dict[str, NDArray]:
    """
    Read a CSV written by save_distributions.

    Returns
    -------
    distributions : dict
        Label -> array of estimates, in column order, NaN padding dropped.
    """
    df = pd.read_csv(path)
    return {label: df[label].dropna().to_numpy(dtype=float) for label in df.columns}
