"""
Monte Carlo Simulation Harness for the DML Replication Study.

Each replicate draws a fresh dataset and a fresh sample split from its own
random stream, runs one estimation strategy and returns a single θ̂. The
replicates are independent, so they are dispatched in batches to a joblib
worker pool; results are stored in replicate order.

Seeding:
    Per-replicate streams are spawned from np.random.SeedSequence(config.seed),
    or built from an explicit list of per-replicate seeds. Replicate i sees
    the same dataset under every strategy, so strategies can be compared on
    identical data.

Failures:
    A replicate raising DegenerateMoment or FitFailure is skipped and
    recorded with enough context (label, replicate index, seed) to rerun it.
    Invalid configurations raise InvalidConfiguration before any replicate
    starts.

Cancellation:
    run_simulation checks an optional threading.Event between batches.
    stop_on_interrupt routes SIGINT to that event while a run is in
    progress.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import effective_n_jobs
from numpy.typing import NDArray
from scipy.stats import gaussian_kde
from sklearn.utils.parallel import Parallel, delayed
from tqdm import tqdm

from dml_replication.dgp import (
    N_DEFAULT,
    NUISANCE_SPECS,
    P_DEFAULT,
    S_DEFAULT,
    SIGMA_EPS,
    SIGMA_V,
    THETA0,
    PartialLinearDGP,
)
from dml_replication.dml import EPSILON, STRATEGIES, DMLEstimator, draw_split
from dml_replication.exceptions import (
    DegenerateMoment,
    FitFailure,
    InvalidConfiguration,
)
from dml_replication.learners import NuisanceFitter


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

N_SIM_DEFAULT: int = 1000        # Monte Carlo replications
DEFAULT_SEED: int = 20241216     # Root seed


# =============================================================================
# SIMULATION CONFIGURATION
# =============================================================================

@dataclass
class SimulationConfig:
    """
    One simulation configuration.

    Parameters
    ----------
    n : int, default 250
        Sample size of each replicate.
    p : int, default 100
        Covariate dimension.
    theta0 : float, default 0.5
        True treatment effect.
    s : float, default 0.5
        Toeplitz correlation decay, in (0, 1).
    nuisance : str, default 'trig_sigmoid'
        Name of the nuisance pair in NUISANCE_SPECS.
    n_sim : int, default 1000
        Number of replicates.
    seed : int, default 20241216
        Root seed from which per-replicate seeds are spawned.
    label : str or None
        Configuration label used as key in persisted outputs. Defaults to
        'p=<p>'.
    sigma_eps, sigma_v : float, default 1.0
        Noise scales of the outcome and treatment equations.
    """
    n: int = N_DEFAULT
    p: int = P_DEFAULT
    theta0: float = THETA0
    s: float = S_DEFAULT
    nuisance: str = "trig_sigmoid"
    n_sim: int = N_SIM_DEFAULT
    seed: int = DEFAULT_SEED
    label: Optional[str] = None
    sigma_eps: float = SIGMA_EPS
    sigma_v: float = SIGMA_V

    def __post_init__(self) -> None:
        if self.label is None:
            self.label = f"p={self.p}"

    def validate(self) -> None:
        """Raise InvalidConfiguration if any parameter is out of range."""
        if self.n < 2:
            raise InvalidConfiguration(
                f"[{self.label}] n must be at least 2, got {self.n}"
            )
        if self.p <= 0:
            raise InvalidConfiguration(f"[{self.label}] p must be positive, got {self.p}")
        if self.n_sim <= 0:
            raise InvalidConfiguration(
                f"[{self.label}] n_sim must be positive, got {self.n_sim}"
            )
        if not 0 < self.s < 1:
            raise InvalidConfiguration(f"[{self.label}] s must be in (0, 1), got {self.s}")
        if self.nuisance not in NUISANCE_SPECS:
            raise InvalidConfiguration(
                f"[{self.label}] unknown nuisance pair '{self.nuisance}'. "
                f"Choose from: {', '.join(NUISANCE_SPECS)}"
            )
        if self.sigma_eps < 0 or self.sigma_v < 0:
            raise InvalidConfiguration(f"[{self.label}] noise scales must be non-negative")

    def make_dgp(self) -> PartialLinearDGP:
        return PartialLinearDGP(
            p=self.p,
            s=self.s,
            theta0=self.theta0,
            nuisance=self.nuisance,
            sigma_eps=self.sigma_eps,
            sigma_v=self.sigma_v,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# RESULT CONTAINERS
# =============================================================================

@dataclass(frozen=True)
class ReplicationFailure:
    """
    A skipped replicate.

    Rerunning the replicate with np.random.default_rng(
    np.random.SeedSequence(seed_entropy, spawn_key=spawn_key)) reproduces it.
    """
    replication: int
    label: str
    strategy: str
    error_type: str
    message: str
    seed_entropy: int
    spawn_key: Tuple[int, ...] = ()

    def __str__(self) -> str:
        return (
            f"[{self.label}/{self.strategy}] replicate {self.replication} "
            f"(entropy={self.seed_entropy}, spawn_key={self.spawn_key}) "
            f"{self.error_type}: {self.message}"
        )


@dataclass
class EstimateDistribution:
    """
    Empirical sampling distribution of θ̂ for one configuration and strategy.

    Attributes
    ----------
    label : str
        Configuration label, e.g. 'p=10'.
    strategy : str
        Estimation strategy.
    theta0 : float
        True treatment effect.
    estimates : ndarray of shape (n_estimates,)
        θ̂ of every successful replicate, in replicate order.
    replications : ndarray of int
        Replicate index of each estimate.
    failures : list of ReplicationFailure
        Skipped replicates.
    n_requested : int
        Number of replicates requested.
    cancelled : bool
        True if the run was stopped before all replicates were executed.
    """
    label: str
    strategy: str
    theta0: float
    estimates: NDArray
    replications: NDArray
    failures: List[ReplicationFailure] = field(default_factory=list)
    n_requested: int = 0
    cancelled: bool = False

    @property
    def n_estimates(self) -> int:
        return len(self.estimates)

    @property
    def n_skipped(self) -> int:
        return len(self.failures)

    @property
    def mean(self) -> float:
        return float(np.mean(self.estimates)) if self.n_estimates else np.nan

    @property
    def std(self) -> float:
        """Monte Carlo standard deviation (ddof=1)."""
        return float(np.std(self.estimates, ddof=1)) if self.n_estimates > 1 else np.nan

    @property
    def bias(self) -> float:
        return self.mean - self.theta0

    @property
    def rmse(self) -> float:
        if not self.n_estimates:
            return np.nan
        return float(np.sqrt(np.mean((self.estimates - self.theta0) ** 2)))

    def density(
        self,
        grid: Optional[NDArray] = None,
        n_points: int = 200,
    ) -> Tuple[NDArray, NDArray]:
        """
        Gaussian kernel density estimate of the distribution.

        Parameters
        ----------
        grid : ndarray or None
            Evaluation points. Defaults to n_points equally spaced points
            spanning the estimates plus three bandwidths on each side.
        n_points : int, default 200
            Grid size when grid is None.

        Returns
        -------
        grid, density : ndarray, ndarray
        """
        if self.n_estimates < 2 or np.ptp(self.estimates) == 0:
            raise ValueError(
                f"[{self.label}/{self.strategy}] density needs at least two "
                f"distinct estimates"
            )
        kde = gaussian_kde(self.estimates)
        if grid is None:
            pad = 3 * np.sqrt(kde.covariance[0, 0])
            grid = np.linspace(self.estimates.min() - pad, self.estimates.max() + pad, n_points)
        return grid, kde(grid)

    def to_series(self) -> pd.Series:
        return pd.Series(self.estimates, index=self.replications, name=self.label)

    def summary(self) -> Dict[str, Any]:
        """Summary statistics over the full sequence of estimates."""
        return {
            'label': self.label,
            'strategy': self.strategy,
            'theta0': self.theta0,
            'n_requested': self.n_requested,
            'n_estimates': self.n_estimates,
            'n_skipped': self.n_skipped,
            'cancelled': self.cancelled,
            'mean': self.mean,
            'std': self.std,
            'bias': self.bias,
            'rmse': self.rmse,
        }


# =============================================================================
# SINGLE REPLICATION
# =============================================================================

def run_single_replication(
    config: SimulationConfig,
    strategy: str,
    fitter: NuisanceFitter,
    replication: int,
    seed_seq: np.random.SeedSequence,
    epsilon: float = EPSILON,
) -> Tuple[int, Optional[float], Optional[ReplicationFailure]]:
    """
    Run one Monte Carlo replicate.

    The replicate's generator draws the dataset first and the split second,
    so every strategy sees the same data for the same seed.

    Returns
    -------
    replication : int
    theta_hat : float or None
        None if the replicate was skipped.
    failure : ReplicationFailure or None
    """
    rng = np.random.default_rng(seed_seq)
    dataset = config.make_dgp().generate(config.n, random_state=rng)
    split = draw_split(config.n, random_state=rng)

    estimator = DMLEstimator(fitter=fitter, strategy=strategy, epsilon=epsilon)
    try:
        result = estimator.fit(dataset, split=split)
    except (DegenerateMoment, FitFailure) as exc:
        failure = ReplicationFailure(
            replication=replication,
            label=config.label,
            strategy=strategy,
            error_type=type(exc).__name__,
            message=str(exc),
            seed_entropy=seed_seq.entropy,
            spawn_key=tuple(seed_seq.spawn_key),
        )
        return replication, None, failure
    return replication, result.theta_hat, None


def _replicate_seeds(
    config: SimulationConfig,
    seeds: Optional[Sequence[int]],
) -> List[np.random.SeedSequence]:
    if seeds is None:
        return np.random.SeedSequence(config.seed).spawn(config.n_sim)
    if len(seeds) != config.n_sim:
        raise InvalidConfiguration(
            f"[{config.label}] got {len(seeds)} seeds for n_sim={config.n_sim}"
        )
    return [np.random.SeedSequence(int(seed)) for seed in seeds]


# =============================================================================
# SIMULATION ENGINE
# =============================================================================

def run_simulation(
    config: SimulationConfig,
    strategy: str,
    fitter: NuisanceFitter,
    n_jobs: int = 1,
    batch_size: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
    seeds: Optional[Sequence[int]] = None,
    show_progress: bool = False,
    epsilon: float = EPSILON,
) -> EstimateDistribution:
    """
    Build the sampling distribution of θ̂ for one configuration and strategy.

    Parameters
    ----------
    config : SimulationConfig
        DGP and replicate settings.
    strategy : str
        One of 'naive', 'dml_no_split', 'dml_split', 'dml_cross_fit'.
    fitter : NuisanceFitter
        Nuisance learners. Cloned inside every fit, never shared.
    n_jobs : int, default 1
        Worker count for joblib (-1 = all cores).
    batch_size : int or None
        Replicates dispatched between two checks of stop_event. Defaults to
        the effective number of workers.
    stop_event : threading.Event or None
        Cooperative cancellation flag checked between batches. Replicates
        completed before it was set are kept.
    seeds : sequence of int or None
        Explicit per-replicate seeds (length n_sim). If None, seeds are
        spawned from config.seed.
    show_progress : bool, default False
        Show a tqdm progress bar.
    epsilon : float, default 1e-12
        Degeneracy threshold of the moment denominators.

    Returns
    -------
    distribution : EstimateDistribution

    Raises
    ------
    InvalidConfiguration
        Before any replicate runs, if config or strategy is invalid.
    """
    config.validate()
    if strategy not in STRATEGIES:
        raise InvalidConfiguration(
            f"[{config.label}] unknown strategy '{strategy}'. "
            f"Choose from: {', '.join(STRATEGIES)}"
        )
    seed_seqs = _replicate_seeds(config, seeds)
    if batch_size is None:
        batch_size = effective_n_jobs(n_jobs)
    if batch_size <= 0:
        raise InvalidConfiguration(f"batch_size must be positive, got {batch_size}")

    logger.info(
        "Running %d replicates of %s for %s (n=%d, p=%d, nuisance=%s)",
        config.n_sim, strategy, config.label, config.n, config.p, config.nuisance,
    )

    outcomes = []
    cancelled = False
    with Parallel(n_jobs=n_jobs) as parallel, tqdm(
        total=config.n_sim,
        desc=f"{strategy} [{config.label}]",
        disable=not show_progress,
    ) as progress:
        for start in range(0, config.n_sim, batch_size):
            if stop_event is not None and stop_event.is_set():
                cancelled = True
                logger.info(
                    "Simulation %s/%s cancelled after %d of %d replicates",
                    config.label, strategy, start, config.n_sim,
                )
                break
            stop = min(start + batch_size, config.n_sim)
            batch = parallel(
                delayed(run_single_replication)(
                    config, strategy, fitter, rep, seed_seqs[rep], epsilon
                )
                for rep in range(start, stop)
            )
            outcomes.extend(batch)
            progress.update(stop - start)

    outcomes.sort(key=lambda outcome: outcome[0])
    estimates = [theta for _, theta, failure in outcomes if failure is None]
    replications = [rep for rep, _, failure in outcomes if failure is None]
    failures = [failure for _, _, failure in outcomes if failure is not None]

    for failure in failures:
        logger.warning("Skipped %s", failure)
    if failures:
        logger.warning(
            "%s/%s: %d of %d replicates skipped",
            config.label, strategy, len(failures), len(outcomes),
        )

    return EstimateDistribution(
        label=config.label,
        strategy=strategy,
        theta0=config.theta0,
        estimates=np.asarray(estimates, dtype=float),
        replications=np.asarray(replications, dtype=int),
        failures=failures,
        n_requested=config.n_sim,
        cancelled=cancelled,
    )


def run_simulation_grid(
    configs: Iterable[SimulationConfig],
    strategies: Iterable[str],
    fitter: NuisanceFitter,
    **kwargs: Any,
) -> List[EstimateDistribution]:
    """
    Run every (configuration, strategy) pair.

    All configurations and strategies are validated before the first
    replicate runs. Keyword arguments are passed to run_simulation; a
    stop_event set during the grid also skips the remaining pairs.

    Returns
    -------
    distributions : list of EstimateDistribution
        In configuration-major order.
    """
    configs = list(configs)
    strategies = list(strategies)
    for config in configs:
        config.validate()
    unknown = [strategy for strategy in strategies if strategy not in STRATEGIES]
    if unknown:
        raise InvalidConfiguration(
            f"unknown strategies {unknown}. Choose from: {', '.join(STRATEGIES)}"
        )

    stop_event = kwargs.get("stop_event")
    distributions = []
    for config in configs:
        for strategy in strategies:
            if stop_event is not None and stop_event.is_set():
                return distributions
            distributions.append(run_simulation(config, strategy, fitter, **kwargs))
    return distributions


# =============================================================================
# CANCELLATION
# =============================================================================

@contextmanager
def stop_on_interrupt(stop_event: threading.Event) -> Iterator[threading.Event]:
    """
    Route SIGINT to stop_event for the duration of the block.

    Ctrl+C (or a Jupyter kernel interrupt) then sets the flag instead of
    raising KeyboardInterrupt, so run_simulation finishes its current batch
    and returns the completed replicates flagged as cancelled. The previous
    handler is restored on exit. Must be entered from the main thread.
    """
    previous = signal.signal(signal.SIGINT, lambda *_: stop_event.set())
    try:
        yield stop_event
    finally:
        signal.signal(signal.SIGINT, previous)
