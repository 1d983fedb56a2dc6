"""
DML Estimators for the Replication Study.

This module implements the four estimation strategies compared in the study:

    naive          Fit ĝ on S1 (Y on X) and solve the non-orthogonal moment
                   θ̂ = mean_{S2}(D·(Y - ĝ(X))) / mean_{S2}(D²).
    dml_split      Fit m̂ (D on X) and ℓ̂ (Y on X) on S1, evaluate the
                   orthogonal moment on S2.
    dml_no_split   Same moment, fitted and evaluated on the full sample.
    dml_cross_fit  dml_split in both directions, combined by the
                   size-weighted average of the two estimates.

Theoretical Foundation:
    With residualized treatment V̂ = D - m̂(X) the orthogonal moment is
        θ̂ = mean(V̂ · (Y - ĝ(X))) / mean(V̂ · D)
    where ĝ = ℓ̂ - θ̃·m̂ and θ̃ is the partialling-out estimate
    mean(V̂·(Y - ℓ̂)) / mean(V̂²). Using ℓ̂ = Ê[Y|X] directly as ĝ would leave
    θ·V̂ inside Y - ĝ and the moment would not be orthogonal.
    The three DML strategies share one implementation of it and differ only
    in the (train, eval) index sets they pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from dml_replication.dgp import Dataset, RandomSource, as_generator
from dml_replication.exceptions import DegenerateMoment, InvalidConfiguration
from dml_replication.learners import NuisanceFitter


# =============================================================================
# CONSTANTS
# =============================================================================

EPSILON: float = 1e-12       # Smallest admissible |denominator|

STRATEGY_NAMES = Literal["naive", "dml_no_split", "dml_split", "dml_cross_fit"]
STRATEGIES: Tuple[str, ...] = ("naive", "dml_no_split", "dml_split", "dml_cross_fit")
SPLIT_STRATEGIES: Tuple[str, ...] = ("naive", "dml_split", "dml_cross_fit")


# =============================================================================
# SAMPLE SPLIT
# =============================================================================

@dataclass(frozen=True)
class Split:
    """
    Partition of the observation indices into two disjoint halves.

    Attributes
    ----------
    S1 : ndarray of int
        First index set (training set of the naive and dml_split strategies).
    S2 : ndarray of int
        Second index set.
    """
    S1: NDArray
    S2: NDArray

    @property
    def n(self) -> int:
        return len(self.S1) + len(self.S2)

    def validate(self, n: Optional[int] = None) -> None:
        """Check that S1 and S2 are disjoint and cover 0..n-1."""
        n = self.n if n is None else n
        both = np.concatenate([self.S1, self.S2])
        if len(both) != n or not np.array_equal(np.sort(both), np.arange(n)):
            raise InvalidConfiguration(
                f"split of sizes ({len(self.S1)}, {len(self.S2)}) is not a "
                f"partition of {n} observations"
            )
        if len(self.S1) == 0 or len(self.S2) == 0:
            raise InvalidConfiguration("both halves of a split must be non-empty")


def draw_split(n: int, random_state: RandomSource = None) -> Split:
    """
    Draw a uniform random split of n indices into halves of size
    n // 2 and n - n // 2.

    Parameters
    ----------
    n : int
        Number of observations, at least 2.
    random_state : int, SeedSequence, Generator or None
        Random source.

    Returns
    -------
    split : Split
    """
    if n < 2:
        raise InvalidConfiguration(f"need at least 2 observations to split, got {n}")
    rng = as_generator(random_state)
    perm = rng.permutation(n)
    half = n // 2
    return Split(S1=np.sort(perm[:half]), S2=np.sort(perm[half:]))


# =============================================================================
# MOMENT EQUATIONS
# =============================================================================

def _check_treatment_variation(D: NDArray, epsilon: float, context: str) -> None:
    if np.var(D) <= epsilon:
        raise DegenerateMoment(
            f"{context}: treatment has no variation on the evaluation sample "
            f"(Var(D) = {np.var(D):.3g})"
        )


def _solve(numerator: float, denominator: float, epsilon: float, context: str) -> float:
    if not np.isfinite(denominator) or abs(denominator) <= epsilon:
        raise DegenerateMoment(
            f"{context}: moment denominator {denominator:.3g} is within "
            f"{epsilon:g} of zero"
        )
    theta_hat = numerator / denominator
    if not np.isfinite(theta_hat):
        raise DegenerateMoment(f"{context}: non-finite estimate {theta_hat}")
    return float(theta_hat)


def _dml_moment(
    dataset: Dataset,
    fitter: NuisanceFitter,
    train_idx: NDArray,
    eval_idx: NDArray,
    epsilon: float = EPSILON,
    context: str = "dml",
) -> float:
    """
    Orthogonal DML moment for one (train, eval) pair.

    Fits m̂ (target D) and the reduced form ℓ̂ (target Y) on train_idx. On
    eval_idx, with V̂ = D - m̂(X) and Û = Y - ℓ̂(X):

        θ̃ = mean(V̂ · Û) / mean(V̂²)              (partialling out)
        ĝ = ℓ̂ - θ̃ · m̂
        θ̂ = mean(V̂ · (Y - ĝ(X))) / mean(V̂ · D)

    The two ratios agree whenever both denominators are non-zero, so errors
    in m̂ and ℓ̂ enter θ̂ only through their product.
    """
    X_eval = dataset.X[eval_idx]
    D_eval = dataset.D[eval_idx]
    Y_eval = dataset.Y[eval_idx]
    _check_treatment_variation(D_eval, epsilon, context)

    m_fit = fitter.fit(dataset, "D", train_idx)
    l_fit = fitter.fit(dataset, "Y", train_idx)

    m_hat = fitter.predict(m_fit, X_eval)
    l_hat = fitter.predict(l_fit, X_eval)
    V_hat = D_eval - m_hat
    U_hat = Y_eval - l_hat

    theta_init = _solve(np.mean(V_hat * U_hat), np.mean(V_hat ** 2), epsilon, context)
    g_hat = l_hat - theta_init * m_hat

    return _solve(
        np.mean(V_hat * (Y_eval - g_hat)), np.mean(V_hat * D_eval), epsilon, context
    )


def _naive_moment(
    dataset: Dataset,
    fitter: NuisanceFitter,
    train_idx: NDArray,
    eval_idx: NDArray,
    epsilon: float = EPSILON,
    context: str = "naive",
) -> float:
    """
    Non-orthogonal moment: θ̂ = mean_{eval}(D·(Y - ĝ(X))) / mean_{eval}(D²).
    """
    X_eval = dataset.X[eval_idx]
    D_eval = dataset.D[eval_idx]
    Y_eval = dataset.Y[eval_idx]
    _check_treatment_variation(D_eval, epsilon, context)

    g_fit = fitter.fit(dataset, "Y", train_idx)
    U_hat = Y_eval - fitter.predict(g_fit, X_eval)

    return _solve(np.mean(D_eval * U_hat), np.mean(D_eval ** 2), epsilon, context)


# =============================================================================
# DML RESULT CONTAINER
# =============================================================================

@dataclass
class DMLResult:
    """
    Container for one treatment-effect estimate.

    Attributes
    ----------
    theta_hat : float
        Estimated treatment effect.
    strategy : str
        Estimation strategy that produced it.
    n : int
        Sample size.
    n_train : int
        Rows used to fit the nuisance functions (per direction).
    n_eval : int
        Rows used to evaluate the moment (per direction).
    theta_folds : tuple of float
        Per-direction estimates (θ̂⁽¹⁾, θ̂⁽²⁾) for dml_cross_fit; a single
        element otherwise.
    fold_sizes : tuple of int
        Weights matching theta_folds. For dml_cross_fit these are (|S1|, |S2|),
        the halves each direction was trained on; otherwise the evaluation size.
    """
    theta_hat: float
    strategy: str
    n: int
    n_train: int
    n_eval: int
    theta_folds: Tuple[float, ...] = field(default_factory=tuple)
    fold_sizes: Tuple[int, ...] = field(default_factory=tuple)

    def bias(self, theta0: float) -> float:
        """θ̂ - θ₀."""
        return self.theta_hat - theta0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'theta_hat': self.theta_hat,
            'strategy': self.strategy,
            'n': self.n,
            'n_train': self.n_train,
            'n_eval': self.n_eval,
            'theta_folds': list(self.theta_folds),
            'fold_sizes': list(self.fold_sizes),
        }


# =============================================================================
# DML ESTIMATOR CLASS
# =============================================================================

class DMLEstimator:
    """
    Treatment-effect estimator for the partially linear model.

    Parameters
    ----------
    fitter : NuisanceFitter
        Fit/predict capability for the nuisance functions.
    strategy : str, default 'dml_cross_fit'
        One of 'naive', 'dml_no_split', 'dml_split', 'dml_cross_fit'.
    epsilon : float, default 1e-12
        Denominators with absolute value at most epsilon raise
        DegenerateMoment.

    Attributes
    ----------
    result_ : DMLResult or None
        Estimation result after calling fit().
    """

    def __init__(
        self,
        fitter: NuisanceFitter,
        strategy: STRATEGY_NAMES = "dml_cross_fit",
        epsilon: float = EPSILON,
    ) -> None:
        if strategy not in STRATEGIES:
            raise InvalidConfiguration(
                f"Unknown strategy: '{strategy}'. Choose from: {', '.join(STRATEGIES)}"
            )
        self.fitter = fitter
        self.strategy = strategy
        self.epsilon = epsilon
        self.result_: Optional[DMLResult] = None

    @property
    def needs_split(self) -> bool:
        return self.strategy in SPLIT_STRATEGIES

    def fit(
        self,
        dataset: Dataset,
        split: Optional[Split] = None,
        random_state: RandomSource = None,
    ) -> DMLResult:
        """
        Estimate θ on one dataset.

        Parameters
        ----------
        dataset : Dataset
            Sample (Y, D, X).
        split : Split or None
            Sample split for naive / dml_split / dml_cross_fit. If None, one
            is drawn from random_state. Ignored by dml_no_split.
        random_state : int, SeedSequence, Generator or None
            Random source for drawing the split.

        Returns
        -------
        result : DMLResult

        Raises
        ------
        DegenerateMoment
            If a moment denominator is numerically zero.
        FitFailure
            If the learner fails.
        """
        n = dataset.n
        if self.needs_split:
            if split is None:
                split = draw_split(n, random_state)
            split.validate(n)

        if self.strategy == "naive":
            theta_hat = _naive_moment(
                dataset, self.fitter, split.S1, split.S2, self.epsilon, "naive"
            )
            result = DMLResult(
                theta_hat=theta_hat, strategy=self.strategy, n=n,
                n_train=len(split.S1), n_eval=len(split.S2),
                theta_folds=(theta_hat,), fold_sizes=(len(split.S2),),
            )

        elif self.strategy == "dml_split":
            theta_hat = _dml_moment(
                dataset, self.fitter, split.S1, split.S2, self.epsilon, "dml_split"
            )
            result = DMLResult(
                theta_hat=theta_hat, strategy=self.strategy, n=n,
                n_train=len(split.S1), n_eval=len(split.S2),
                theta_folds=(theta_hat,), fold_sizes=(len(split.S2),),
            )

        elif self.strategy == "dml_no_split":
            full = np.arange(n)
            theta_hat = _dml_moment(
                dataset, self.fitter, full, full, self.epsilon, "dml_no_split"
            )
            result = DMLResult(
                theta_hat=theta_hat, strategy=self.strategy, n=n,
                n_train=n, n_eval=n,
                theta_folds=(theta_hat,), fold_sizes=(n,),
            )

        else:
            # Cross-fitting: train on S1 / eval on S2, then the reverse
            theta_1 = _dml_moment(
                dataset, self.fitter, split.S1, split.S2, self.epsilon,
                "dml_cross_fit (S1 -> S2)"
            )
            theta_2 = _dml_moment(
                dataset, self.fitter, split.S2, split.S1, self.epsilon,
                "dml_cross_fit (S2 -> S1)"
            )
            theta_hat = cross_fit_average(
                (theta_1, theta_2), (len(split.S1), len(split.S2))
            )
            result = DMLResult(
                theta_hat=theta_hat, strategy=self.strategy, n=n,
                n_train=len(split.S1), n_eval=len(split.S2),
                theta_folds=(theta_1, theta_2),
                fold_sizes=(len(split.S1), len(split.S2)),
            )

        self.result_ = result
        return result


def cross_fit_average(thetas: Tuple[float, ...], sizes: Tuple[int, ...]) -> float:
    """
    Size-weighted average Σ |I_k|·θ̂_k / Σ |I_k| of per-direction estimates.

    Parameters
    ----------
    thetas : tuple of float
        Per-direction estimates.
    sizes : tuple of int
        Weight of each estimate; the cross-fit uses (|S1|, |S2|) for
        (θ̂⁽¹⁾, θ̂⁽²⁾).
    """
    weights = np.asarray(sizes, dtype=float)
    return float(np.sum(weights * np.asarray(thetas, dtype=float)) / np.sum(weights))


# =============================================================================
# CONVENIENCE FUNCTION
# =============================================================================

def estimate_theta(
    dataset: Dataset,
    fitter: NuisanceFitter,
    strategy: STRATEGY_NAMES = "dml_cross_fit",
    split: Optional[Split] = None,
    random_state: RandomSource = None,
    epsilon: float = EPSILON,
) -> float:
    """
    Convenience function returning only θ̂.

    Parameters
    ----------
    dataset : Dataset
        Sample (Y, D, X).
    fitter : NuisanceFitter
        Nuisance learners.
    strategy : str, default 'dml_cross_fit'
        Estimation strategy.
    split : Split or None
        Sample split (drawn from random_state if needed and None).
    random_state : int, SeedSequence, Generator or None
        Random source for the split.
    epsilon : float, default 1e-12
        Degeneracy threshold.

    Returns
    -------
    theta_hat : float
    """
    estimator = DMLEstimator(fitter=fitter, strategy=strategy, epsilon=epsilon)
    return estimator.fit(dataset, split=split, random_state=random_state).theta_hat
