"""Shared test helpers (non-fixtures).

For fixtures, see conftest.py.
"""

import numpy as np

from ppca.layout import BlockLayout
from inference.sampler import Chain


class GaussianTarget:
    """Independent normal log-density over a flat vector."""

    def __init__(self, mean, sd):
        self.mean = np.atleast_1d(np.asarray(mean, dtype=np.float64))
        self.sd = np.broadcast_to(np.asarray(sd, dtype=np.float64), self.mean.shape)
        self.layout = BlockLayout.from_shapes([("x", self.mean.shape)])

    def __call__(self, x):
        z = (x - self.mean) / self.sd
        return float(-0.5 * np.sum(z ** 2)), -z / self.sd

    def log_density(self, x):
        return self(x)

    def initial_point(self, seed=None):
        rng = np.random.default_rng(seed)
        return rng.uniform(-1.0, 1.0, size=self.mean.shape)


class NaNRegionTarget(GaussianTarget):
    """Gaussian target whose log-density is NaN above ``cutoff``."""

    def __init__(self, mean, sd, cutoff):
        super().__init__(mean, sd)
        self.cutoff = cutoff

    def __call__(self, x):
        if np.any(x > self.cutoff):
            return float("nan"), np.full(self.mean.shape, np.nan)
        return super().__call__(x)


def make_chain(draws, chain_id=0, n_warmup=0, diverging=None):
    """Chain built directly from an array of draws (no sampling)."""
    draws = np.asarray(draws, dtype=np.float64)
    if draws.ndim == 1:
        draws = draws[:, None]
    n_total = n_warmup + draws.shape[0]
    warmup = np.zeros((n_warmup, draws.shape[1]))
    if diverging is None:
        diverging = np.zeros(n_total, dtype=bool)
    return Chain(
        chain_id=chain_id,
        draws=draws,
        warmup_draws=warmup,
        log_density=np.zeros(n_total),
        accept_prob=np.full(n_total, 0.8),
        accepted=np.ones(n_total, dtype=bool),
        diverging=diverging,
        step_size=np.full(n_total, 0.1),
    )
