"""
Nuisance Learners for the DML Replication Study.

The estimation core never depends on a particular regression algorithm. It
talks to a NuisanceFitter, which clones a scikit-learn compatible regressor,
fits it on a training index set for one target column ('Y' or 'D') and
predicts on arbitrary covariate rows. Any estimator implementing fit/predict
can be substituted without touching the estimators in dml.py.

Besides the learner factory (OLS, Lasso, Ridge, RF, GBM) the module provides
two diagnostic learners:
    - OracleLearner returns the true nuisance values (perfect fit).
    - MemorizingLearner pulls in-sample predictions toward the training
      targets, reproducing the overfitting that biases DML without sample
      splitting.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional, Union

import numpy as np
from numpy.typing import NDArray
from sklearn.base import BaseEstimator, RegressorMixin, clone
from sklearn.ensemble import HistGradientBoostingRegressor, RandomForestRegressor
from sklearn.linear_model import LassoCV, LinearRegression, RidgeCV

from dml_replication.dgp import THETA0, Dataset, NuisanceSpec, get_nuisance_spec
from dml_replication.exceptions import FitFailure, InvalidConfiguration


# =============================================================================
# CONSTANTS
# =============================================================================

LEARNER_NAMES = Literal["OLS", "Lasso", "Ridge", "RF", "RF_Tuned", "GBM"]

TargetColumn = Literal["Y", "D"]

RF_PARAM_GRID: Dict[str, Any] = {
    'max_depth': [None, 5, 10, 20],
    'min_samples_leaf': [1, 5, 10],
    'max_features': ['sqrt', 0.3, None],
}


# =============================================================================
# ORACLE LEARNER
# =============================================================================

class OracleLearner(BaseEstimator, RegressorMixin):
    """
    Oracle learner that returns true nuisance function values.

    fit() ignores the targets; predict() evaluates the true function on the
    query rows. Paired with noiseless outcomes this makes the DML moment
    recover θ₀ exactly, which is what the estimator tests rely on.

    Parameters
    ----------
    function : callable
        True nuisance function, ndarray (n, p) -> ndarray (n,).
    """

    def __init__(self, function: Optional[Callable[[NDArray], NDArray]] = None) -> None:
        self.function = function

    def fit(self, X: NDArray, y: NDArray, **kwargs) -> "OracleLearner":
        if self.function is None:
            raise ValueError("function must be provided for Oracle learner")
        self.n_features_in_ = X.shape[1]
        return self

    def predict(self, X: NDArray) -> NDArray:
        if self.function is None:
            raise ValueError("function must be provided for Oracle learner")
        return np.asarray(self.function(X), dtype=float)


# =============================================================================
# MEMORIZING LEARNER
# =============================================================================

class MemorizingLearner(BaseEstimator, RegressorMixin):
    """
    Overfitting learner that memorizes its training targets.

    Rows seen during fit() are predicted as

        memorization · y_train + (1 - memorization) · base(x)

    and unseen rows as base(x). With memorization = 1 the in-sample
    residuals are exactly zero. Used as the outcome learner while the
    treatment learner stays honest, the in-sample Y - ℓ̂ shrinks by
    (1 - memorization) when the same rows are used to fit and to evaluate
    (DML without sample splitting), pulling θ̂ toward θ·(1 - memorization).

    Parameters
    ----------
    base_estimator : BaseEstimator or None, default None
        Regressor used for unseen rows. Defaults to LinearRegression.
    memorization : float, default 0.5
        Weight on the memorized target, in [0, 1].
    """

    def __init__(
        self,
        base_estimator: Optional[BaseEstimator] = None,
        memorization: float = 0.5,
    ) -> None:
        self.base_estimator = base_estimator
        self.memorization = memorization

    def fit(self, X: NDArray, y: NDArray, **kwargs) -> "MemorizingLearner":
        if not 0 <= self.memorization <= 1:
            raise ValueError(f"memorization must be in [0, 1], got {self.memorization}")
        X = np.ascontiguousarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        base = self.base_estimator if self.base_estimator is not None else LinearRegression()
        self.base_ = clone(base).fit(X, y)
        self.memory_ = {row.tobytes(): target for row, target in zip(X, y)}
        self.n_features_in_ = X.shape[1]
        return self

    def predict(self, X: NDArray) -> NDArray:
        X = np.ascontiguousarray(X, dtype=float)
        predictions = np.asarray(self.base_.predict(X), dtype=float)
        for i, row in enumerate(X):
            target = self.memory_.get(row.tobytes())
            if target is not None:
                predictions[i] = (
                    self.memorization * target
                    + (1 - self.memorization) * predictions[i]
                )
        return predictions


# =============================================================================
# NUISANCE FITTER
# =============================================================================

@dataclass
class FittedNuisance:
    """
    A learner fitted on one training index set for one target column.

    Attributes
    ----------
    model : BaseEstimator
        Fitted clone of the learner.
    target : str
        'Y' (reduced form ℓ̂ = Ê[Y|X]) or 'D' (treatment nuisance m̂).
    indices : ndarray of int
        Training rows of the dataset the model was fitted on.
    """
    model: BaseEstimator
    target: str
    indices: NDArray

    @property
    def n_train(self) -> int:
        return len(self.indices)


class NuisanceFitter:
    """
    Fit/predict capability used by every estimation strategy.

    Parameters
    ----------
    learner_y : BaseEstimator
        Learner for the outcome nuisance (target 'Y').
    learner_d : BaseEstimator or None, default None
        Learner for the treatment nuisance (target 'D'). Defaults to
        learner_y.

    Notes
    -----
    Learners are cloned on every fit() so a FittedNuisance is never shared
    between calls or replicates. Any exception raised by the learner is
    re-raised as FitFailure with the original exception chained.
    """

    def __init__(
        self,
        learner_y: BaseEstimator,
        learner_d: Optional[BaseEstimator] = None,
    ) -> None:
        self.learner_y = learner_y
        self.learner_d = learner_d if learner_d is not None else learner_y

    def __repr__(self) -> str:
        return f"NuisanceFitter(learner_y={self.learner_y!r}, learner_d={self.learner_d!r})"

    def _learner(self, target: str) -> BaseEstimator:
        if target == "Y":
            return self.learner_y
        if target == "D":
            return self.learner_d
        raise InvalidConfiguration(f"target column must be 'Y' or 'D', got '{target}'")

    def fit(
        self,
        dataset: Dataset,
        target: TargetColumn,
        indices: Optional[NDArray] = None,
    ) -> FittedNuisance:
        """
        Fit the learner for `target` on the rows `indices` of `dataset`.

        Parameters
        ----------
        dataset : Dataset
            Sample to train on.
        target : {'Y', 'D'}
            Column to predict from X.
        indices : ndarray of int or None
            Training rows; all rows if None.

        Returns
        -------
        fitted : FittedNuisance
        """
        learner = self._learner(target)
        rows = np.arange(dataset.n) if indices is None else np.asarray(indices, dtype=int)
        X_train = dataset.X[rows]
        y_train = dataset.target(target)[rows]

        model = clone(learner)
        try:
            model.fit(X_train, y_train)
        except Exception as exc:
            raise FitFailure(
                f"fitting {type(learner).__name__} for target '{target}' on "
                f"{len(y_train)} rows failed: {exc}"
            ) from exc
        return FittedNuisance(model=model, target=target, indices=rows)

    def predict(self, fitted: FittedNuisance, X: NDArray) -> NDArray:
        """Predict the fitted nuisance on covariate rows X."""
        try:
            predictions = fitted.model.predict(X)
        except Exception as exc:
            raise FitFailure(
                f"predicting with {type(fitted.model).__name__} for target "
                f"'{fitted.target}' failed: {exc}"
            ) from exc
        return np.asarray(predictions, dtype=float).ravel()


def oracle_fitter(nuisance: Union[str, NuisanceSpec], theta0: float = THETA0) -> NuisanceFitter:
    """
    Build a NuisanceFitter returning the true nuisance values.

    The outcome learner is fitted on Y, so its oracle is the reduced form
    ℓ₀(X) = E[Y|X] = θ₀·m₀(X) + g₀(X); the treatment oracle is m₀(X).

    Parameters
    ----------
    nuisance : str or NuisanceSpec
        Nuisance pair of the DGP.
    theta0 : float, default THETA0
        Treatment effect of the DGP the oracle describes.

    Returns
    -------
    fitter : NuisanceFitter
    """
    spec = get_nuisance_spec(nuisance)

    def outcome(X: NDArray) -> NDArray:
        return spec.ell(X, theta0)

    return NuisanceFitter(
        learner_y=OracleLearner(function=outcome),
        learner_d=OracleLearner(function=spec.m),
    )


# =============================================================================
# LEARNER FACTORY
# =============================================================================

def get_learner(
    name: LEARNER_NAMES,
    random_state: int = 42,
    n_jobs: int = 1,
    params: Optional[Dict[str, Any]] = None,
) -> BaseEstimator:
    """
    Factory function to create nuisance regression models.

    Parameters
    ----------
    name : str
        Learner name: 'OLS', 'Lasso', 'Ridge', 'RF', 'RF_Tuned', 'GBM'.
    random_state : int, default 42
        Random state for reproducibility.
    n_jobs : int, default 1
        Number of parallel jobs inside the learner. Kept at 1 by default
        because the simulation harness parallelizes over replicates.
    params : dict or None, default None
        Extra hyperparameters. Required for 'RF_Tuned' (see
        tuning.tune_rf_hyperparameters); for 'RF' and 'GBM' they override
        the defaults.

    Returns
    -------
    model : sklearn estimator

    Raises
    ------
    InvalidConfiguration
        If the learner name is unknown or RF_Tuned has no params.
    """
    name_upper = name.upper()
    params = dict(params or {})

    if name_upper == 'OLS':
        return LinearRegression()

    elif name_upper == 'LASSO':
        return LassoCV(
            cv=5,
            max_iter=10000,
            random_state=random_state,
            n_jobs=n_jobs,
        )

    elif name_upper == 'RIDGE':
        return RidgeCV(alphas=np.logspace(-3, 3, 13))

    elif name_upper == 'RF':
        # Random forest as used in the original report
        defaults = dict(
            n_estimators=200,
            min_samples_leaf=5,
            max_features='sqrt',
        )
        defaults.update(params)
        return RandomForestRegressor(
            random_state=random_state,
            n_jobs=n_jobs,
            **defaults,
        )

    elif name_upper == 'RF_TUNED':
        if not params:
            raise InvalidConfiguration(
                "RF_Tuned requires pre-tuned params; "
                "run tuning.tune_rf_hyperparameters first"
            )
        return RandomForestRegressor(
            n_estimators=200,
            random_state=random_state,
            n_jobs=n_jobs,
            **params,
        )

    elif name_upper == 'GBM':
        defaults = dict(
            max_iter=100,
            max_depth=4,
            learning_rate=0.1,
        )
        defaults.update(params)
        return HistGradientBoostingRegressor(random_state=random_state, **defaults)

    else:
        raise InvalidConfiguration(
            f"Unknown learner: '{name}'. "
            f"Choose from: {', '.join(AVAILABLE_LEARNERS)}"
        )


# =============================================================================
# AVAILABLE LEARNERS
# =============================================================================

AVAILABLE_LEARNERS = ['OLS', 'Lasso', 'Ridge', 'RF', 'RF_Tuned', 'GBM']

__all__ = [
    'OracleLearner',
    'MemorizingLearner',
    'FittedNuisance',
    'NuisanceFitter',
    'oracle_fitter',
    'get_learner',
    'AVAILABLE_LEARNERS',
    'LEARNER_NAMES',
    'RF_PARAM_GRID',
]
