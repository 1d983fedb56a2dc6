from sklearn.ensemble import RandomForestRegressor

from dml_replication import SimulationConfig, get_learner
from dml_replication.learners import RF_PARAM_GRID
from dml_replication.tuning import tune_rf_hyperparameters


class TestTuning:
    def test_best_params_come_from_grid(self):
        config = SimulationConfig(n=120, p=5, nuisance="sigmoid", n_sim=1)
        params = tune_rf_hyperparameters(
            config, target="D", n_iter=3, cv=2, n_jobs=1, n_estimators=10
        )
        assert set(params) <= set(RF_PARAM_GRID)
        for key, value in params.items():
            assert value in RF_PARAM_GRID[key]

        model = get_learner("RF_Tuned", params=params)
        assert isinstance(model, RandomForestRegressor)

    def test_tuning_is_reproducible(self):
        config = SimulationConfig(n=100, p=3, nuisance="linear", n_sim=1)
        a = tune_rf_hyperparameters(config, target="Y", n_iter=2, cv=2, n_jobs=1, n_estimators=5)
        b = tune_rf_hyperparameters(config, target="Y", n_iter=2, cv=2, n_jobs=1, n_estimators=5)
        assert a == b
