"""
Synthetic data for p-PCA experiments.

- simulate_ppca: draws X from the generative model with known parameters
- simulate_ard: only a few latent dimensions carry signal
- simulate_grouped_blocks: two groups of rows, each shifted on its own
  block of features (e.g. two cell types expressing different genes)
"""

from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray

from inference.posterior import PosteriorSummarizer


class TrueParameters:
    """
    Parameters that generated a synthetic dataset.

    Attributes
    ----------
    W : NDArray[np.float64]
        Loadings, shape (D, K)
    Z : NDArray[np.float64]
        Latent coordinates, shape (K, N)
    mu : NDArray[np.float64]
        Offset, shape (D,)
    noise_sd : float
        Observation noise standard deviation
    """

    def __init__(
        self,
        W: NDArray[np.float64],
        Z: NDArray[np.float64],
        mu: NDArray[np.float64],
        noise_sd: float,
    ) -> None:
        self.W = W
        self.Z = Z
        self.mu = mu
        self.noise_sd = noise_sd

    def reconstruct(self) -> NDArray[np.float64]:
        """Noise-free observation matrix, shape (N, D)."""
        return PosteriorSummarizer.reconstruct(self.W, self.Z, self.mu)

    def __repr__(self) -> str:
        return (
            f"TrueParameters(W={self.W.shape}, Z={self.Z.shape}, "
            f"noise_sd={self.noise_sd})"
        )


def _check_positive(**dims: int) -> None:
    bad = {name: value for name, value in dims.items() if value <= 0}
    if bad:
        raise ValueError(f"All dimensions must be positive. Got {bad}")


def simulate_ppca(
    n_obs: int,
    n_features: int,
    n_components: int,
    noise_sd: float = 1.0,
    seed: Optional[int] = None,
) -> Tuple[NDArray[np.float64], TrueParameters]:
    """
    Draw X from the fixed-rank generative model.

    Parameters
    ----------
    n_obs : int
        Number of rows N
    n_features : int
        Number of columns D
    n_components : int
        Latent dimension K (<= D)
    noise_sd : float
        Observation noise standard deviation. Default 1.0.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    X : NDArray[np.float64]
        Observations, shape (N, D)
    params : TrueParameters
        W ~ N(0, 1), Z ~ N(0, 1), mu ~ N(0, I)
    """
    _check_positive(n_obs=n_obs, n_features=n_features, n_components=n_components)
    if n_components > n_features:
        raise ValueError(
            f"n_components must be <= n_features. Got {n_components} > {n_features}"
        )
    if noise_sd < 0:
        raise ValueError(f"noise_sd must be non-negative. Got {noise_sd}")

    rng = np.random.default_rng(seed)
    Z = rng.standard_normal((n_components, n_obs))
    W = rng.standard_normal((n_features, n_components))
    mu = rng.standard_normal(n_features)
    params = TrueParameters(W, Z, mu, noise_sd)

    X = params.reconstruct() + noise_sd * rng.standard_normal((n_obs, n_features))
    return X, params


def simulate_ard(
    n_obs: int,
    n_features: int,
    n_informative: int = 2,
    signal_scale: float = 5.0,
    noise_sd: float = 0.5,
    seed: Optional[int] = None,
) -> Tuple[NDArray[np.float64], TrueParameters]:
    """
    Data with a known number of informative latent dimensions.

    W is D x D; only its first ``n_informative`` columns are non-zero (entries
    ~ N(0, signal_scale^2)), the rest are exactly zero. Observations are the
    reconstruction plus isotropic noise.

    Returns
    -------
    X : NDArray[np.float64]
        Observations, shape (N, D)
    params : TrueParameters
        Generating parameters (K = D)
    """
    _check_positive(n_obs=n_obs, n_features=n_features, n_informative=n_informative)
    if n_informative > n_features:
        raise ValueError(
            f"n_informative must be <= n_features. Got {n_informative} > {n_features}"
        )

    rng = np.random.default_rng(seed)
    Z = rng.standard_normal((n_features, n_obs))
    W = np.zeros((n_features, n_features))
    W[:, :n_informative] = signal_scale * rng.standard_normal((n_features, n_informative))
    mu = rng.standard_normal(n_features)
    params = TrueParameters(W, Z, mu, noise_sd)

    X = params.reconstruct() + noise_sd * rng.standard_normal((n_obs, n_features))
    return X, params


def simulate_grouped_blocks(
    n_per_group: int = 30,
    n_features: int = 9,
    block_size: int = 3,
    shift: float = 10.0,
    seed: Optional[int] = None,
) -> Tuple[NDArray[np.float64], NDArray[np.int64]]:
    """
    Two groups of rows with distinct signal blocks on unit-variance noise.

    Group 0 is shifted by ``shift`` on features [0, block_size), group 1 on
    features [block_size, 2 * block_size). The remaining features are noise.

    Returns
    -------
    X : NDArray[np.float64]
        Observations, shape (2 * n_per_group, n_features)
    labels : NDArray[np.int64]
        Group of each row, shape (2 * n_per_group,)
    """
    _check_positive(n_per_group=n_per_group, n_features=n_features, block_size=block_size)
    if 2 * block_size > n_features:
        raise ValueError(
            f"Two blocks of {block_size} features do not fit in {n_features} features"
        )

    rng = np.random.default_rng(seed)
    n_obs = 2 * n_per_group
    X = rng.standard_normal((n_obs, n_features))
    labels = np.repeat([0, 1], n_per_group)

    X[:n_per_group, :block_size] += shift
    X[n_per_group:, block_size:2 * block_size] += shift
    return X, labels
