import numpy as np
import pytest
from sklearn.linear_model import LinearRegression

from dml_replication import (
    STRATEGIES,
    Dataset,
    DegenerateMoment,
    DMLEstimator,
    InvalidConfiguration,
    MemorizingLearner,
    NuisanceFitter,
    OracleLearner,
    Split,
    draw_split,
    estimate_theta,
    generate_plr_data,
    oracle_fitter,
)
from dml_replication.dgp import NUISANCE_SPECS
from dml_replication.dml import cross_fit_average


class TestSplit:
    @pytest.mark.parametrize("n", [2, 3, 7, 250, 251])
    def test_partition_invariants(self, n):
        split = draw_split(n, random_state=0)
        assert len(np.intersect1d(split.S1, split.S2)) == 0
        np.testing.assert_array_equal(
            np.sort(np.concatenate([split.S1, split.S2])), np.arange(n)
        )
        assert len(split.S1) + len(split.S2) == n
        assert len(split.S1) == n // 2
        assert abs(len(split.S1) - len(split.S2)) <= 1
        split.validate(n)

    def test_same_seed_same_split(self):
        a = draw_split(100, random_state=9)
        b = draw_split(100, random_state=9)
        np.testing.assert_array_equal(a.S1, b.S1)
        np.testing.assert_array_equal(a.S2, b.S2)

    def test_too_small_raises(self):
        with pytest.raises(InvalidConfiguration):
            draw_split(1, random_state=0)

    def test_validate_detects_overlap(self):
        split = Split(S1=np.array([0, 1]), S2=np.array([1, 2]))
        with pytest.raises(InvalidConfiguration, match="partition"):
            split.validate(3)

    def test_validate_detects_wrong_size(self):
        split = draw_split(10, random_state=0)
        with pytest.raises(InvalidConfiguration):
            split.validate(12)


class TestPerfectNuisanceRecovery:
    """With true nuisances and a noiseless outcome the orthogonal moment is exact."""

    @pytest.mark.parametrize("p", [1, 5, 50])
    @pytest.mark.parametrize("strategy", ["dml_split", "dml_cross_fit", "dml_no_split"])
    def test_recovers_theta_exactly(self, p, strategy):
        data = generate_plr_data(
            n=200, p=p, theta0=0.5, s=0.5, nuisance="trig_sigmoid",
            random_state=p, sigma_eps=0.0,
        )
        fitter = oracle_fitter("trig_sigmoid")
        theta_hat = estimate_theta(data, fitter, strategy=strategy, random_state=1)
        assert theta_hat == pytest.approx(0.5, abs=1e-10)

    def test_naive_is_biased_even_with_true_reduced_form(self):
        # Y - ℓ₀(X) = θ·V, so the naive ratio is θ·mean(D·V) / mean(D²)
        data = generate_plr_data(
            n=200, p=5, theta0=0.5, nuisance="trig_sigmoid", random_state=3, sigma_eps=0.0,
        )
        split = draw_split(200, random_state=1)
        theta_hat = estimate_theta(data, oracle_fitter("trig_sigmoid"), "naive", split=split)

        D = data.D[split.S2]
        V = D - data.m0_X[split.S2]
        assert theta_hat == pytest.approx(0.5 * np.mean(D * V) / np.mean(D ** 2), abs=1e-10)
        assert abs(theta_hat - 0.5) > 0.15


class TestOrthogonalMoment:
    def test_equals_partialling_out_ratio(self, ols_fitter):
        data = generate_plr_data(n=300, p=5, nuisance="trig_sigmoid", random_state=8)
        split = draw_split(300, random_state=2)
        theta_hat = estimate_theta(data, ols_fitter, "dml_split", split=split)

        train, test = split.S1, split.S2
        m_hat = LinearRegression().fit(data.X[train], data.D[train]).predict(data.X[test])
        l_hat = LinearRegression().fit(data.X[train], data.Y[train]).predict(data.X[test])
        V_hat = data.D[test] - m_hat
        U_hat = data.Y[test] - l_hat
        assert theta_hat == pytest.approx(np.mean(V_hat * U_hat) / np.mean(V_hat ** 2), rel=1e-9)

    def test_outcome_error_enters_only_through_treatment_residual(self):
        # m̂ exact, ℓ̂ off by a constant: θ̂ moves by -3·mean(V) / mean(V²)
        data = generate_plr_data(
            n=200, p=3, theta0=0.5, nuisance="sigmoid", random_state=4, sigma_eps=0.0,
        )
        spec = NUISANCE_SPECS["sigmoid"]
        split = draw_split(200, random_state=0)
        V = data.D[split.S2] - data.m0_X[split.S2]

        def shifted_ell(X):
            return spec.ell(X, 0.5) + 3.0

        fitter = NuisanceFitter(
            learner_y=OracleLearner(shifted_ell), learner_d=OracleLearner(spec.m)
        )
        theta_hat = estimate_theta(data, fitter, "dml_split", split=split)
        assert theta_hat == pytest.approx(0.5 - 3.0 * np.mean(V) / np.mean(V ** 2), abs=1e-10)


class TestCrossFitting:
    def _data(self, n):
        return generate_plr_data(n=n, p=5, theta0=0.5, nuisance="linear", random_state=21)

    def test_equal_halves_give_simple_average(self, ols_fitter):
        data = self._data(200)
        split = draw_split(200, random_state=3)
        result = DMLEstimator(ols_fitter, strategy="dml_cross_fit").fit(data, split)
        theta_1, theta_2 = result.theta_folds
        assert result.theta_hat == pytest.approx((theta_1 + theta_2) / 2, abs=1e-12)

    def test_directions_match_split_estimates(self, ols_fitter):
        data = self._data(200)
        split = draw_split(200, random_state=3)
        result = DMLEstimator(ols_fitter, strategy="dml_cross_fit").fit(data, split)
        forward = estimate_theta(data, ols_fitter, "dml_split", split=split)
        backward = estimate_theta(
            data, ols_fitter, "dml_split", split=Split(S1=split.S2, S2=split.S1)
        )
        assert result.theta_folds == pytest.approx((forward, backward))

    def test_odd_sample_uses_size_weights(self, ols_fitter):
        data = self._data(201)
        split = draw_split(201, random_state=4)
        result = DMLEstimator(ols_fitter, strategy="dml_cross_fit").fit(data, split)
        theta_1, theta_2 = result.theta_folds
        expected = (len(split.S1) * theta_1 + len(split.S2) * theta_2) / 201
        assert result.fold_sizes == (100, 101)
        assert result.theta_hat == pytest.approx(expected, abs=1e-12)

    def test_cross_fit_average(self):
        assert cross_fit_average((1.0, 2.0), (1, 3)) == pytest.approx(1.75)
        assert cross_fit_average((0.4, 0.6), (50, 50)) == pytest.approx(0.5)


class TestOverfittingBias:
    def test_no_split_is_biased_with_memorizing_learner(self):
        fitter = NuisanceFitter(
            learner_y=MemorizingLearner(LinearRegression(), memorization=0.5),
            learner_d=LinearRegression(),
        )
        no_split, split = [], []
        for seed in range(20):
            data = generate_plr_data(
                n=400, p=5, theta0=0.5, nuisance="linear", random_state=seed
            )
            no_split.append(estimate_theta(data, fitter, "dml_no_split"))
            split.append(estimate_theta(data, fitter, "dml_split", random_state=seed))

        # Memorizing Y halves the in-sample outcome residual
        assert np.mean(no_split) == pytest.approx(0.25, abs=0.06)
        assert abs(np.mean(split) - 0.5) < 0.06
        assert abs(np.mean(no_split) - 0.5) > 0.15

    def test_zero_in_sample_residual_collapses_no_split_estimate(self):
        fitter = NuisanceFitter(
            learner_y=MemorizingLearner(LinearRegression(), memorization=1.0),
            learner_d=LinearRegression(),
        )
        data = generate_plr_data(n=200, p=5, theta0=0.5, nuisance="linear", random_state=0)
        assert estimate_theta(data, fitter, "dml_no_split") == pytest.approx(0.0, abs=1e-10)

    def test_no_split_uses_full_sample(self, ols_fitter):
        data = generate_plr_data(n=60, p=3, nuisance="linear", random_state=0)
        result = DMLEstimator(ols_fitter, strategy="dml_no_split").fit(data)
        assert result.n_train == result.n_eval == 60


class TestDegenerateMoments:
    def _constant_treatment(self, value, n=100):
        rng = np.random.default_rng(0)
        X = rng.normal(size=(n, 3))
        return Dataset(Y=X[:, 0] + rng.normal(size=n), D=np.full(n, value), X=X)

    @pytest.mark.parametrize("strategy", STRATEGIES)
    @pytest.mark.parametrize("value", [0.0, 1.0])
    def test_constant_treatment_raises(self, strategy, value, ols_fitter):
        data = self._constant_treatment(value)
        with pytest.raises(DegenerateMoment, match="no variation"):
            estimate_theta(data, ols_fitter, strategy, random_state=0)

    def test_zero_residual_treatment_raises(self):
        # D = m₀(X) exactly and the oracle predicts it, so V̂ ≡ 0
        data = generate_plr_data(n=100, p=3, random_state=0, sigma_v=0.0)
        with pytest.raises(DegenerateMoment, match="denominator"):
            estimate_theta(data, oracle_fitter("trig_sigmoid"), "dml_split", random_state=0)


class TestDMLEstimator:
    def test_unknown_strategy_raises(self, ols_fitter):
        with pytest.raises(InvalidConfiguration, match="Unknown strategy"):
            DMLEstimator(ols_fitter, strategy="dml_bootstrap")

    def test_split_of_wrong_size_raises(self, ols_fitter):
        data = generate_plr_data(n=50, p=3, random_state=0)
        with pytest.raises(InvalidConfiguration):
            DMLEstimator(ols_fitter, "dml_split").fit(data, draw_split(40, random_state=0))

    def test_split_drawn_from_random_state(self, ols_fitter):
        data = generate_plr_data(n=120, p=3, nuisance="linear", random_state=0)
        a = estimate_theta(data, ols_fitter, "dml_split", random_state=5)
        b = estimate_theta(data, ols_fitter, "dml_split", random_state=5)
        assert a == b

    def test_result_is_stored(self, ols_fitter):
        data = generate_plr_data(n=120, p=3, nuisance="linear", random_state=0)
        estimator = DMLEstimator(ols_fitter, "naive")
        result = estimator.fit(data, random_state=0)
        assert estimator.result_ is result
        assert result.to_dict()["strategy"] == "naive"
        assert result.n_train == 60 and result.n_eval == 60

    def test_split_estimate_close_to_truth_with_ols(self, ols_fitter):
        estimates = [
            estimate_theta(
                generate_plr_data(n=500, p=5, theta0=0.5, nuisance="linear", random_state=seed),
                ols_fitter, "dml_cross_fit", random_state=seed,
            )
            for seed in range(10)
        ]
        assert abs(np.mean(estimates) - 0.5) < 0.05
