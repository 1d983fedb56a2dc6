"""
Partially Linear Data Generating Process for the DML Replication Study.

This module generates synthetic data from the partially linear model used by
Chernozhukov et al. (2018) to motivate Double Machine Learning:

    Y = θ₀D + g₀(X) + ε,     ε ~ N(0, σ_ε²)
    D = m₀(X) + V,           V ~ N(0, σ_V²)

with covariates X ~ N(0, Σ) drawn from a Toeplitz covariance Σ_{jk} = s^{|j-k|}.

The nuisance pair (g₀, m₀) is selected by name from NUISANCE_SPECS. Every
pair acts on the single index z = X'b with b_j = 1/j, so the same pair is
defined for any covariate dimension p ≥ 1.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Union

import numpy as np
from numpy.typing import NDArray

from dml_replication.exceptions import InvalidConfiguration


# =============================================================================
# CONSTANTS
# =============================================================================

THETA0: float = 0.5          # True treatment effect
N_DEFAULT: int = 250         # Sample size
P_DEFAULT: int = 100         # Covariate dimension
S_DEFAULT: float = 0.5       # Toeplitz correlation decay
SIGMA_EPS: float = 1.0       # Outcome noise std
SIGMA_V: float = 1.0         # Treatment noise std

RandomSource = Union[None, int, np.random.SeedSequence, np.random.Generator]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def sigmoid(x: NDArray) -> NDArray:
    """Numerically stable sigmoid function."""
    return np.where(
        x >= 0,
        1 / (1 + np.exp(-np.abs(x))),
        np.exp(-np.abs(x)) / (1 + np.exp(-np.abs(x)))
    )


def make_toeplitz_cov(p: int, s: float) -> NDArray:
    """
    Construct Toeplitz covariance matrix Σ(s) with Σ_{jk} = s^{|j-k|}.

    Parameters
    ----------
    p : int
        Dimension of the covariance matrix.
    s : float
        Correlation decay parameter, must be in (0, 1).

    Returns
    -------
    Sigma : ndarray of shape (p, p)
        Symmetric positive-definite matrix with unit diagonal.
    """
    if p <= 0:
        raise InvalidConfiguration(f"p must be positive, got {p}")
    if not 0 < s < 1:
        raise InvalidConfiguration(f"s must be in (0, 1), got {s}")
    idx = np.arange(p)
    return s ** np.abs(idx[:, None] - idx[None, :])


def index_weights(p: int) -> NDArray:
    """Weights b_j = 1/j of the single index z = X'b."""
    return 1.0 / np.arange(1, p + 1)


def as_generator(random_state: RandomSource = None) -> np.random.Generator:
    """Turn a seed, SeedSequence or Generator into a numpy Generator."""
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


# =============================================================================
# NUISANCE FUNCTIONS
# =============================================================================

def _z(X: NDArray) -> NDArray:
    return X @ index_weights(X.shape[1])


def g_linear(X: NDArray) -> NDArray:
    """g₀(X) = X'b."""
    return _z(X)


def m_linear(X: NDArray) -> NDArray:
    """m₀(X) = X'b."""
    return _z(X)


def g_sigmoid(X: NDArray) -> NDArray:
    """g₀(X) = sigmoid(X'b)."""
    return sigmoid(_z(X))


def m_sigmoid(X: NDArray) -> NDArray:
    """m₀(X) = sigmoid(X'b)."""
    return sigmoid(_z(X))


def g_trig_sigmoid(X: NDArray) -> NDArray:
    """g₀(X) = cos²(X'b) + sigmoid(X'b)."""
    z = _z(X)
    return np.cos(z) ** 2 + sigmoid(z)


def m_trig_sigmoid(X: NDArray) -> NDArray:
    """m₀(X) = sin(X'b) + cos(X'b) + sigmoid(X'b)."""
    z = _z(X)
    return np.sin(z) + np.cos(z) + sigmoid(z)


@dataclass(frozen=True)
class NuisanceSpec:
    """
    Pair of nuisance functions (g₀, m₀) mapping covariates to scalars.

    Attributes
    ----------
    name : str
        Registry name of the pair.
    g : callable
        Outcome nuisance g₀, ndarray (n, p) -> ndarray (n,).
    m : callable
        Treatment nuisance m₀ = E[D|X], ndarray (n, p) -> ndarray (n,).
    description : str
        Human readable formula.
    """
    name: str
    g: Callable[[NDArray], NDArray]
    m: Callable[[NDArray], NDArray]
    description: str = ""

    def ell(self, X: NDArray, theta: float) -> NDArray:
        """Reduced-form ℓ₀(X) = E[Y|X] = θ₀·m₀(X) + g₀(X)."""
        return theta * self.m(X) + self.g(X)


NUISANCE_SPECS: Dict[str, NuisanceSpec] = {
    "linear": NuisanceSpec(
        name="linear",
        g=g_linear,
        m=m_linear,
        description="g(x) = x'b, m(x) = x'b",
    ),
    "sigmoid": NuisanceSpec(
        name="sigmoid",
        g=g_sigmoid,
        m=m_sigmoid,
        description="g(x) = sigmoid(x'b), m(x) = sigmoid(x'b)",
    ),
    "trig_sigmoid": NuisanceSpec(
        name="trig_sigmoid",
        g=g_trig_sigmoid,
        m=m_trig_sigmoid,
        description="g(x) = cos²(x'b) + sigmoid(x'b), "
                    "m(x) = sin(x'b) + cos(x'b) + sigmoid(x'b)",
    ),
}


def get_nuisance_spec(nuisance: Union[str, NuisanceSpec]) -> NuisanceSpec:
    """Look up a nuisance pair by name; NuisanceSpec instances pass through."""
    if isinstance(nuisance, NuisanceSpec):
        return nuisance
    try:
        return NUISANCE_SPECS[nuisance]
    except KeyError:
        raise InvalidConfiguration(
            f"Unknown nuisance pair: '{nuisance}'. "
            f"Choose from: {', '.join(NUISANCE_SPECS)}"
        ) from None


# =============================================================================
# DATASET CONTAINER
# =============================================================================

@dataclass
class Dataset:
    """
    One synthetic sample (Y, D, X) plus the true nuisance values.

    Attributes
    ----------
    Y : ndarray of shape (n,)
        Outcome variable.
    D : ndarray of shape (n,)
        Treatment variable.
    X : ndarray of shape (n, p)
        Covariate matrix.
    g0_X : ndarray of shape (n,) or None
        True g₀(X), when known.
    m0_X : ndarray of shape (n,) or None
        True m₀(X), when known.
    """
    Y: NDArray
    D: NDArray
    X: NDArray
    g0_X: Optional[NDArray] = field(default=None, repr=False)
    m0_X: Optional[NDArray] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.Y = np.asarray(self.Y, dtype=float)
        self.D = np.asarray(self.D, dtype=float)
        self.X = np.asarray(self.X, dtype=float)
        if self.X.ndim == 1:
            self.X = self.X.reshape(-1, 1)
        if self.X.ndim != 2 or self.X.shape[0] == 0 or self.X.shape[1] == 0:
            raise InvalidConfiguration(
                f"X must be a non-empty (n, p) matrix, got shape {self.X.shape}"
            )
        n = self.X.shape[0]
        if self.Y.shape != (n,) or self.D.shape != (n,):
            raise InvalidConfiguration(
                f"Y and D must have shape ({n},), got {self.Y.shape} and {self.D.shape}"
            )

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]

    def target(self, column: str) -> NDArray:
        """Return the outcome ('Y') or treatment ('D') column."""
        if column == "Y":
            return self.Y
        if column == "D":
            return self.D
        raise InvalidConfiguration(f"target column must be 'Y' or 'D', got '{column}'")


# =============================================================================
# PARTIALLY LINEAR DGP CLASS
# =============================================================================

@dataclass
class PartialLinearDGP:
    """
    Partially Linear Data Generating Process.

    Generates data (Y, D, X) where:
        - X ~ N(0, Σ) with Σ_{jk} = s^{|j-k|}
        - D = m₀(X) + V
        - Y = θ₀D + g₀(X) + ε

    Parameters
    ----------
    p : int, default 100
        Covariate dimension.
    s : float, default 0.5
        Toeplitz correlation decay, in (0, 1).
    theta0 : float, default 0.5
        True treatment effect.
    nuisance : str or NuisanceSpec, default 'trig_sigmoid'
        Nuisance pair (g₀, m₀).
    sigma_eps : float, default 1.0
        Standard deviation of outcome noise ε.
    sigma_v : float, default 1.0
        Standard deviation of treatment noise V.
    """
    p: int = P_DEFAULT
    s: float = S_DEFAULT
    theta0: float = THETA0
    nuisance: Union[str, NuisanceSpec] = "trig_sigmoid"
    sigma_eps: float = SIGMA_EPS
    sigma_v: float = SIGMA_V

    _Sigma: NDArray = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate parameters and build the covariance matrix."""
        self.nuisance = get_nuisance_spec(self.nuisance)
        if self.sigma_eps < 0 or self.sigma_v < 0:
            raise InvalidConfiguration(
                f"noise scales must be non-negative, got sigma_eps={self.sigma_eps}, "
                f"sigma_v={self.sigma_v}"
            )
        self._Sigma = make_toeplitz_cov(self.p, self.s)

    @property
    def Sigma(self) -> NDArray:
        return self._Sigma

    def g0(self, X: NDArray) -> NDArray:
        return self.nuisance.g(X)

    def m0(self, X: NDArray) -> NDArray:
        return self.nuisance.m(X)

    def ell0(self, X: NDArray) -> NDArray:
        """Reduced-form outcome function ℓ₀(X) = E[Y|X]."""
        return self.nuisance.ell(X, self.theta0)

    def generate(self, n: int, random_state: RandomSource = None) -> Dataset:
        """
        Generate one sample from the DGP.

        Parameters
        ----------
        n : int
            Sample size.
        random_state : int, SeedSequence, Generator or None
            Random source. Passing a Generator advances it in place, so the
            caller can keep drawing (e.g. a sample split) from the same stream.

        Returns
        -------
        dataset : Dataset
        """
        if n <= 0:
            raise InvalidConfiguration(f"n must be positive, got {n}")
        rng = as_generator(random_state)

        # Generate covariates X ~ N(0, Σ)
        X = rng.multivariate_normal(np.zeros(self.p), self._Sigma, size=n)

        # Treatment equation: D = m₀(X) + V
        m0_X = self.m0(X)
        V = rng.normal(0, 1, size=n) * self.sigma_v
        D = m0_X + V

        # Outcome equation: Y = θ₀D + g₀(X) + ε
        g0_X = self.g0(X)
        eps = rng.normal(0, 1, size=n) * self.sigma_eps
        Y = self.theta0 * D + g0_X + eps

        return Dataset(Y=Y, D=D, X=X, g0_X=g0_X, m0_X=m0_X)


# =============================================================================
# CONVENIENCE FUNCTION
# =============================================================================

def generate_plr_data(
    n: int,
    p: int = P_DEFAULT,
    theta0: float = THETA0,
    s: float = S_DEFAULT,
    nuisance: Union[str, NuisanceSpec] = "trig_sigmoid",
    random_state: RandomSource = None,
    sigma_eps: float = SIGMA_EPS,
    sigma_v: float = SIGMA_V,
) -> Dataset:
    """
    Convenience function to generate data from the partially linear DGP.

    Parameters
    ----------
    n : int
        Sample size.
    p : int, default 100
        Covariate dimension.
    theta0 : float, default 0.5
        True treatment effect.
    s : float, default 0.5
        Toeplitz correlation decay.
    nuisance : str or NuisanceSpec, default 'trig_sigmoid'
        Nuisance pair.
    random_state : int, SeedSequence, Generator or None
        Random source.

    Returns
    -------
    dataset : Dataset
    """
    dgp = PartialLinearDGP(
        p=p,
        s=s,
        theta0=theta0,
        nuisance=nuisance,
        sigma_eps=sigma_eps,
        sigma_v=sigma_v,
    )
    return dgp.generate(n, random_state=random_state)
