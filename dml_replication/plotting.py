"""
Density plots of simulated θ̂ distributions.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
from numpy.typing import NDArray

from dml_replication.simulation import EstimateDistribution


def _as_mapping(
    distributions: Union[Iterable[EstimateDistribution], Mapping[str, NDArray]],
) -> Mapping[str, NDArray]:
    if isinstance(distributions, Mapping):
        return {label: np.asarray(values, dtype=float) for label, values in distributions.items()}
    return {dist.label: dist.estimates for dist in distributions}


def plot_estimate_densities(
    distributions: Union[Iterable[EstimateDistribution], Mapping[str, NDArray]],
    theta0: float,
    ax: Optional[Any] = None,
    title: Optional[str] = None,
    figsize: Tuple[float, float] = (8, 5),
    palette: Union[str, Sequence[str]] = "husl",
) -> Any:
    """
    Overlay kernel densities of θ̂ with a reference line at the true θ₀.

    Parameters
    ----------
    distributions : iterable of EstimateDistribution or mapping label -> array
        One curve per label.
    theta0 : float
        True treatment effect.
    ax : matplotlib Axes, optional
        Axes to plot on. If None, creates new figure.
    title : str or None
        Axes title.
    figsize : tuple, default (8, 5)
        Figure size if creating new figure.
    palette : str or sequence
        Seaborn palette.

    Returns
    -------
    matplotlib Axes
    """
    series = _as_mapping(distributions)
    if ax is None:
        _, ax = plt.subplots(figsize=figsize)

    colors = sns.color_palette(palette, n_colors=max(len(series), 1))
    for color, (label, values) in zip(colors, series.items()):
        values = values[np.isfinite(values)]
        if len(values) == 0:
            continue
        if len(values) < 2 or np.ptp(values) == 0:
            # A KDE needs spread; mark degenerate samples by their location
            ax.axvline(values[0], color=color, linewidth=1.5, label=label)
            continue
        sns.kdeplot(x=values, ax=ax, color=color, linewidth=2, label=label)

    ax.axvline(x=theta0, color='gray', linestyle='--', linewidth=1.5,
               label=f'θ₀ = {theta0:g}')
    ax.set_xlabel(r'$\hat{\theta}$')
    ax.set_ylabel('Density')
    if title is not None:
        ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)
    return ax


def save_figure(fig: Any, path: Union[str, Path], dpi: int = 300) -> Path:
    """Save a figure, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, bbox_inches='tight')
    return path
