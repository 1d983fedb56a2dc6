import numpy as np
import pytest

from dml_replication import (
    NUISANCE_SPECS,
    Dataset,
    InvalidConfiguration,
    PartialLinearDGP,
    generate_plr_data,
    make_toeplitz_cov,
)


class TestToeplitzCovariance:
    @pytest.mark.parametrize("p", [1, 2, 10, 100])
    @pytest.mark.parametrize("s", [0.05, 0.5, 0.95])
    def test_symmetric_unit_diagonal_psd(self, p, s):
        Sigma = make_toeplitz_cov(p, s)
        assert Sigma.shape == (p, p)
        np.testing.assert_array_equal(Sigma, Sigma.T)
        np.testing.assert_array_equal(np.diag(Sigma), np.ones(p))
        assert np.linalg.eigvalsh(Sigma).min() > -1e-10

    def test_entries_decay_with_distance(self):
        Sigma = make_toeplitz_cov(4, 0.5)
        assert Sigma[0, 1] == 0.5
        assert Sigma[0, 3] == 0.125
        assert Sigma[3, 1] == 0.25

    @pytest.mark.parametrize("s", [0.0, 1.0, -0.3, 1.5])
    def test_s_out_of_range_raises(self, s):
        with pytest.raises(InvalidConfiguration, match="s must be in"):
            make_toeplitz_cov(5, s)

    def test_non_positive_p_raises(self):
        with pytest.raises(InvalidConfiguration, match="p must be positive"):
            make_toeplitz_cov(0, 0.5)


class TestPartialLinearDGP:
    def test_shapes(self):
        data = generate_plr_data(n=50, p=7, random_state=0)
        assert data.X.shape == (50, 7)
        assert data.Y.shape == (50,)
        assert data.D.shape == (50,)
        assert data.n == 50 and data.p == 7

    def test_same_seed_is_bit_identical(self):
        a = generate_plr_data(n=80, p=10, random_state=42)
        b = generate_plr_data(n=80, p=10, random_state=42)
        np.testing.assert_array_equal(a.X, b.X)
        np.testing.assert_array_equal(a.D, b.D)
        np.testing.assert_array_equal(a.Y, b.Y)

    def test_different_seeds_differ(self):
        a = generate_plr_data(n=80, p=10, random_state=1)
        b = generate_plr_data(n=80, p=10, random_state=2)
        assert not np.array_equal(a.Y, b.Y)

    def test_generator_is_advanced_in_place(self):
        rng = np.random.default_rng(3)
        dgp = PartialLinearDGP(p=3, nuisance="linear")
        first = dgp.generate(20, random_state=rng)
        second = dgp.generate(20, random_state=rng)
        assert not np.array_equal(first.X, second.X)

    @pytest.mark.parametrize("nuisance", sorted(NUISANCE_SPECS))
    def test_structural_equations_hold(self, nuisance):
        dgp = PartialLinearDGP(p=4, s=0.3, theta0=0.7, nuisance=nuisance, sigma_eps=0.0)
        data = dgp.generate(200, random_state=11)
        np.testing.assert_allclose(data.m0_X, dgp.m0(data.X))
        np.testing.assert_allclose(data.g0_X, dgp.g0(data.X))
        np.testing.assert_allclose(data.Y, 0.7 * data.D + data.g0_X)
        # Treatment noise is standard normal
        tau = data.D - data.m0_X
        assert abs(np.std(tau) - 1.0) < 0.15

    def test_covariates_follow_toeplitz_covariance(self):
        data = generate_plr_data(n=20000, p=3, s=0.6, random_state=5)
        np.testing.assert_allclose(np.cov(data.X.T), make_toeplitz_cov(3, 0.6), atol=0.05)

    @pytest.mark.parametrize("nuisance", sorted(NUISANCE_SPECS))
    def test_nuisance_pairs_work_for_single_covariate(self, nuisance):
        data = generate_plr_data(n=30, p=1, nuisance=nuisance, random_state=0)
        assert np.all(np.isfinite(data.Y))
        assert np.all(np.isfinite(data.D))

    @pytest.mark.parametrize("n", [0, -5])
    def test_non_positive_n_raises(self, n):
        with pytest.raises(InvalidConfiguration, match="n must be positive"):
            generate_plr_data(n=n, p=5, random_state=0)

    def test_non_positive_p_raises(self):
        with pytest.raises(InvalidConfiguration):
            generate_plr_data(n=10, p=0, random_state=0)

    def test_unknown_nuisance_raises(self):
        with pytest.raises(InvalidConfiguration, match="Unknown nuisance pair"):
            PartialLinearDGP(p=3, nuisance="quadratic")

    def test_negative_noise_scale_raises(self):
        with pytest.raises(InvalidConfiguration, match="non-negative"):
            PartialLinearDGP(p=3, sigma_v=-1.0)


class TestDataset:
    def test_one_dimensional_X_is_reshaped(self):
        data = Dataset(Y=np.zeros(4), D=np.arange(4.0), X=np.arange(4.0))
        assert data.X.shape == (4, 1)

    def test_mismatched_lengths_raise(self):
        with pytest.raises(InvalidConfiguration):
            Dataset(Y=np.zeros(3), D=np.zeros(4), X=np.zeros((4, 2)))

    def test_target_lookup(self):
        data = Dataset(Y=np.ones(3), D=np.zeros(3), X=np.zeros((3, 2)))
        np.testing.assert_array_equal(data.target("Y"), np.ones(3))
        np.testing.assert_array_equal(data.target("D"), np.zeros(3))
        with pytest.raises(InvalidConfiguration):
            data.target("X")
