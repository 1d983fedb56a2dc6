import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from sklearn.linear_model import LinearRegression

from dml_replication import NuisanceFitter, SimulationConfig


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
def ols_fitter():
    return NuisanceFitter(learner_y=LinearRegression())


@pytest.fixture
def small_config():
    """Cheap linear configuration for harness tests."""
    return SimulationConfig(
        n=100, p=5, theta0=0.5, s=0.5, nuisance="linear", n_sim=8, seed=7,
    )
