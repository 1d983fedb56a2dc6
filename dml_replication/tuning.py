"""
Hyperparameter Pre-Tuning for the DML Replication Study.

Random forest hyperparameters are tuned ONCE per simulation configuration on
a separate validation sample and then held fixed across all Monte Carlo
replicates (get_learner('RF_Tuned', params=...)). Running RandomizedSearchCV
inside every replicate would multiply the cost of the study by the size of
the search.
"""

from __future__ import annotations

from typing import Any, Dict

import numpy as np
from sklearn.ensemble import RandomForestRegressor
from sklearn.model_selection import RandomizedSearchCV

from dml_replication.learners import RF_PARAM_GRID, TargetColumn
from dml_replication.simulation import SimulationConfig


def tune_rf_for_data(
    X: np.ndarray,
    y: np.ndarray,
    random_state: int = 42,
    n_iter: int = 10,
    cv: int = 3,
    n_jobs: int = -1,
    n_estimators: int = 100,
) -> Dict[str, Any]:
    """
    Tune Random Forest hyperparameters on a given sample.

    Parameters
    ----------
    X : ndarray of shape (n, p)
        Covariate matrix.
    y : ndarray of shape (n,)
        Target variable (treatment or outcome).
    random_state : int, default 42
        Random seed for reproducibility.
    n_iter : int, default 10
        Number of parameter settings sampled.
    cv : int, default 3
        Number of cross-validation folds.
    n_jobs : int, default -1
        Number of parallel jobs.
    n_estimators : int, default 100
        Trees per forest during the search.

    Returns
    -------
    best_params : dict
        Keys among 'max_depth', 'min_samples_leaf', 'max_features'.
    """
    base_rf = RandomForestRegressor(
        n_estimators=n_estimators,
        random_state=random_state,
        n_jobs=1,  # RandomizedSearchCV handles parallelism
    )

    search = RandomizedSearchCV(
        estimator=base_rf,
        param_distributions=RF_PARAM_GRID,
        n_iter=n_iter,
        cv=cv,
        scoring='neg_mean_squared_error',
        random_state=random_state,
        n_jobs=n_jobs,
    )

    search.fit(X, y)

    return search.best_params_


def tune_rf_hyperparameters(
    config: SimulationConfig,
    target: TargetColumn = "D",
    random_state: int = 42,
    n_iter: int = 10,
    cv: int = 3,
    n_jobs: int = -1,
    n_estimators: int = 100,
) -> Dict[str, Any]:
    """
    Pre-tune Random Forest hyperparameters for one simulation configuration.

    A validation sample of size config.n is drawn from the configuration's
    DGP with its own seed (random_state), independent of the replicate seeds.

    Parameters
    ----------
    config : SimulationConfig
        Configuration to tune for.
    target : {'D', 'Y'}, default 'D'
        Nuisance to tune on. The treatment regression is the default since
        its residual enters both numerator and denominator of the moment.
    random_state : int, default 42
        Seed of the validation sample and of the search.
    n_iter, cv, n_jobs, n_estimators
        See tune_rf_for_data.

    Returns
    -------
    best_params : dict
    """
    config.validate()
    dataset = config.make_dgp().generate(config.n, random_state=random_state)

    return tune_rf_for_data(
        dataset.X,
        dataset.target(target),
        random_state=random_state,
        n_iter=n_iter,
        cv=cv,
        n_jobs=n_jobs,
        n_estimators=n_estimators,
    )


__all__ = [
    'tune_rf_hyperparameters',
    'tune_rf_for_data',
]
