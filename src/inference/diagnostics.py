"""
Convergence diagnostics over a ChainStore.

Key diagnostics:
- Rhat (potential scale reduction): < 1.01 indicates convergence
- ESS (effective sample size): > 400 in total recommended
- Divergences: non-finite proposals, reported as a count and a rate

All functions are read-only reductions; the store is never modified.
"""

from typing import Dict, List, Optional
import logging
import numpy as np
from numpy.typing import NDArray
from scipy import fft
import arviz as az

from ppca.exceptions import DiagnosticsUnavailable
from inference.chains import ChainStore

logger = logging.getLogger(__name__)


class DiagnosticsReport:
    """
    Per-parameter convergence statistics of one ChainStore.

    Attributes
    ----------
    names : List[str]
        Parameter labels (constrained scale), e.g. ``W[2,0]``
    rhat : NDArray[np.float64]
        Potential scale reduction per parameter; NaN when not applicable
    ess : NDArray[np.float64]
        Effective sample size per parameter, summed over chains
    rhat_available : bool
        False when fewer than two equal-length chains were supplied
    divergence_count : int
        Non-finite proposals over all chains, adaptation included
    acceptance_rate : float
        Post-adaptation acceptance rate over all chains
    n_chains : int
    n_draws : int
        Total post-adaptation draws over all chains
    """

    def __init__(
        self,
        names: List[str],
        rhat: NDArray[np.float64],
        ess: NDArray[np.float64],
        rhat_available: bool,
        divergence_count: int,
        acceptance_rate: float,
        n_chains: int,
        n_draws: int,
    ) -> None:
        self.names = names
        self.rhat = rhat
        self.ess = ess
        self.rhat_available = rhat_available
        self.divergence_count = divergence_count
        self.acceptance_rate = acceptance_rate
        self.n_chains = n_chains
        self.n_draws = n_draws

    @property
    def max_rhat(self) -> float:
        return float(np.nanmax(self.rhat)) if self.rhat_available else float("nan")

    @property
    def min_ess(self) -> float:
        return float(np.min(self.ess))

    @property
    def divergence_rate(self) -> float:
        return self.divergence_count / self.n_draws if self.n_draws else 0.0

    def converged(self, threshold: float = 1.01) -> Optional[bool]:
        """True if every r-hat is below ``threshold``; None when not applicable."""
        if not self.rhat_available:
            return None
        return bool(np.all(self.rhat < threshold))

    def as_dict(self) -> Dict[str, Dict[str, float]]:
        """``{name: {"rhat": ..., "ess": ...}}`` for reporting."""
        return {
            name: {"rhat": float(r), "ess": float(e)}
            for name, r, e in zip(self.names, self.rhat, self.ess)
        }

    def __repr__(self) -> str:
        return (
            f"DiagnosticsReport(params={len(self.names)}, chains={self.n_chains}, "
            f"max_rhat={self.max_rhat:.4f}, min_ess={self.min_ess:.1f}, "
            f"divergences={self.divergence_count})"
        )


class DiagnosticsComputer:
    """
    Compute convergence diagnostics from posterior samples.

    Includes: Rhat, ESS, divergence rates, arviz summary tables.
    """

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64]) -> float:
        """
        Compute Rhat (potential scale reduction factor).

        Rhat measures whether multiple chains have converged to the same
        posterior distribution. Rhat < 1.01 indicates convergence.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Posterior samples from multiple chains, shape (chains, draws).

        Returns
        -------
        rhat : float
            Potential scale reduction factor. <1.01 is good.

        Raises
        ------
        DiagnosticsUnavailable
            If fewer than 2 chains or fewer than 2 draws are given.
        """
        posterior_samples = np.asarray(posterior_samples, dtype=np.float64)
        if posterior_samples.ndim != 2 or posterior_samples.shape[0] < 2:
            raise DiagnosticsUnavailable("Need at least 2 chains for Rhat")
        n_chains, n_draws = posterior_samples.shape
        if n_draws < 2:
            raise DiagnosticsUnavailable("Need at least 2 draws per chain for Rhat")

        # Between-chain variance
        chain_means = np.mean(posterior_samples, axis=1)  # (chains,)
        B = n_draws * np.var(chain_means, ddof=1)

        # Within-chain variance
        chain_vars = np.var(posterior_samples, axis=1, ddof=1)  # (chains,)
        W = np.mean(chain_vars)

        # Estimated posterior variance
        var_hat = ((n_draws - 1) / n_draws) * W + (1 / n_draws) * B

        if W > 0:
            return float(np.sqrt(var_hat / W))
        # Constant chains: converged only if they sit at the same value
        return 1.0 if B == 0 else float("inf")

    @staticmethod
    def ess(posterior_samples: NDArray[np.float64]) -> float:
        """
        Compute effective sample size (ESS).

        ESS accounts for autocorrelation in MCMC samples. The integrated
        autocorrelation time is summed up to the first negative
        autocorrelation estimate; per-chain ESS values are added up.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Samples from one chain, shape (draws,), or several chains,
            shape (chains, draws).

        Returns
        -------
        ess : float
            Effective sample size.
        """
        samples = np.atleast_2d(np.asarray(posterior_samples, dtype=np.float64))
        return float(sum(_chain_ess(chain) for chain in samples))

    @staticmethod
    def divergence_rate(idata, by_chain: bool = False):
        """
        Fraction of post-adaptation draws whose trajectory diverged.

        Parameters
        ----------
        idata : arviz.InferenceData
            Output of ``ChainStore.to_inference_data``
        by_chain : bool
            Return one rate per chain instead of the pooled rate

        Returns
        -------
        div_rate : float or NDArray[np.float64]
            Rate(s) in [0, 1]; chains without draws count as 0.
        """
        diverging = np.asarray(idata.sample_stats["diverging"].values, dtype=np.float64)
        if by_chain:
            return diverging.mean(axis=1) if diverging.shape[1] else np.zeros(diverging.shape[0])
        return float(diverging.mean()) if diverging.size else 0.0

    @classmethod
    def compute(cls, store: ChainStore) -> DiagnosticsReport:
        """
        R-hat and ESS for every scalar parameter of a ChainStore.

        With a single chain (or chains of unequal length) r-hat is reported
        as not applicable (NaN) while ESS is still computed per chain.
        """
        names = store.layout.parameter_names()
        per_chain = [
            _constrained_draws(store, chain.draws) for chain in store.chains
        ]

        rhat_available = store.n_chains >= 2 and store.equal_length
        rhat = np.full(len(names), np.nan)
        if rhat_available:
            stacked = np.stack(per_chain)  # (chains, draws, dim)
            try:
                rhat = np.array([cls.rhat(stacked[:, :, j]) for j in range(len(names))])
            except DiagnosticsUnavailable as err:
                logger.warning("Rhat not applicable: %s", err)
                rhat_available = False
                rhat = np.full(len(names), np.nan)
        else:
            logger.info(
                "Rhat not applicable: %d chain(s) with lengths %s",
                store.n_chains, [c.n_draws for c in store.chains],
            )

        ess = np.array([
            sum(_chain_ess(draws[:, j]) for draws in per_chain)
            for j in range(len(names))
        ])

        report = DiagnosticsReport(
            names=names,
            rhat=rhat,
            ess=ess,
            rhat_available=rhat_available,
            divergence_count=store.divergence_count,
            acceptance_rate=store.acceptance_rate,
            n_chains=store.n_chains,
            n_draws=store.total_draws,
        )
        if rhat_available and not report.converged():
            worst = int(np.nanargmax(rhat))
            logger.warning(
                "Chains have not converged: max Rhat %.4f at %s", rhat[worst], names[worst]
            )
        return report

    @staticmethod
    def summary_stats(
        store: ChainStore,
        var_names: Optional[List[str]] = None,
        hdi_prob: float = 0.95,
    ) -> Dict[str, Dict[str, float]]:
        """
        arviz summary table, keyed like ``BlockLayout.parameter_names()``.

        Parameters
        ----------
        store : ChainStore
            Sampled chains
        var_names : list of str, optional
            Blocks to summarize, raw ("log_alpha") or constrained ("alpha")
            names. If None, every block.
        hdi_prob : float
            Mass of the highest-density interval (default: 0.95)

        Returns
        -------
        stats : Dict
            ``{"W[1,0]": {"mean", "std", "hdi_low", "hdi_high", "rhat",
            "ess_bulk", "ess_tail"}, ...}``; precisions on their natural scale
        """
        if not 0.0 < hdi_prob < 1.0:
            raise ValueError(f"hdi_prob must be in (0, 1). Got {hdi_prob}")
        if var_names is not None:
            var_names = [store.layout[name].constrained_name for name in var_names]

        table = az.summary(store.to_inference_data(), var_names=var_names, hdi_prob=hdi_prob)
        hdi_low, hdi_high = [column for column in table.columns if column.startswith("hdi_")]

        stats = {}
        for label, row in table.iterrows():
            # arviz writes "W[1, 0]"; parameter_names() writes "W[1,0]"
            stats[label.replace(" ", "")] = {
                "mean": float(row["mean"]),
                "std": float(row["sd"]),
                "hdi_low": float(row[hdi_low]),
                "hdi_high": float(row[hdi_high]),
                "rhat": float(row["r_hat"]),
                "ess_bulk": float(row["ess_bulk"]),
                "ess_tail": float(row["ess_tail"]),
            }
        return stats


def _constrained_draws(store: ChainStore, draws: NDArray[np.float64]) -> NDArray[np.float64]:
    """Flat draws with log-space blocks mapped back to their natural scale."""
    out = np.array(draws, dtype=np.float64)
    for block in store.layout:
        if block.log_transformed:
            out[:, block.slice] = block.constrain(out[:, block.slice])
    return out


def _chain_ess(x: NDArray[np.float64]) -> float:
    """ESS of a single chain via FFT autocorrelation."""
    n = len(x)
    if n < 2:
        return float(n)
    centered = x - np.mean(x)
    c0 = np.dot(centered, centered) / n
    if c0 < 1e-12:
        return float(n)  # No variation → ESS = n

    spectrum = fft.rfft(centered, n=2 * n)
    acov = fft.irfft(spectrum * np.conj(spectrum), n=2 * n)[:n] / n
    rho = acov / acov[0]

    tau = 1.0
    for lag in range(1, n):
        if rho[lag] < 0:
            break
        tau += 2.0 * rho[lag]
    return float(max(1.0, n / tau))
