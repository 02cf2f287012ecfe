"""
End-to-end inference run: model -> chains -> diagnostics -> summaries.
"""

from typing import Optional
import logging
import time
import numpy as np
from numpy.typing import NDArray

from ppca.model_spec import ModelSpec, PriorSpec
from inference.chains import ChainStore
from inference.diagnostics import DiagnosticsComputer, DiagnosticsReport
from inference.posterior import ARDSelector, PosteriorSummarizer, PosteriorSummary
from inference.sampler import SamplerConfig, sample_chains

logger = logging.getLogger(__name__)


class InferenceSummary:
    """Results of one inference run."""

    def __init__(
        self,
        model: ModelSpec,
        store: ChainStore,
        diagnostics: DiagnosticsReport,
        posterior: PosteriorSummary,
        reconstruction: NDArray[np.float64],
        n_draws: int,
        n_tune: int,
        n_chains: int,
        sampling_time: float,
        selected: Optional[NDArray[np.int64]] = None,
        reduced_reconstruction: Optional[NDArray[np.float64]] = None,
    ) -> None:
        """
        Initialize inference summary.

        Parameters
        ----------
        model : ModelSpec
            Model that was sampled
        store : ChainStore
            All chains
        diagnostics : DiagnosticsReport
            Per-parameter r-hat / ESS
        posterior : PosteriorSummary
            Posterior means per block
        reconstruction : NDArray[np.float64]
            X_hat from the posterior means, shape (N, D)
        n_draws : int
            Number of post-adaptation draws per chain
        n_tune : int
            Number of adaptation iterations per chain
        n_chains : int
            Number of chains
        sampling_time : float
            Wall-clock time of sampling (seconds)
        selected : NDArray[np.int64], optional
            ARD: indices of the kept latent dimensions
        reduced_reconstruction : NDArray[np.float64], optional
            ARD: (W_mean[:, S] Z_mean[S, :])^T from the kept dimensions S,
            without the offset mu, shape (N, D)
        """
        self.model = model
        self.store = store
        self.diagnostics = diagnostics
        self.posterior = posterior
        self.reconstruction = reconstruction
        self.n_draws = n_draws
        self.n_tune = n_tune
        self.n_chains = n_chains
        self.sampling_time = sampling_time
        self.total_samples = n_draws * n_chains
        self.selected = selected
        self.reduced_reconstruction = reduced_reconstruction

    def __repr__(self) -> str:
        return (
            f"InferenceSummary(draws={self.n_draws}, tune={self.n_tune}, "
            f"chains={self.n_chains}, time={self.sampling_time:.1f}s)"
        )


def run_inference(
    X: NDArray[np.float64],
    n_components: Optional[int] = None,
    ard: bool = False,
    draws: int = 1000,
    tune: int = 500,
    chains: int = 2,
    cores: int = 1,
    step_count: int = 16,
    target_accept: float = 0.8,
    seed: Optional[int] = None,
    k: Optional[int] = None,
    threshold: Optional[float] = None,
    prior_spec: Optional[PriorSpec] = None,
    max_divergence_rate: Optional[float] = None,
) -> InferenceSummary:
    """
    Fit a p-PCA (or ARD p-PCA) model by HMC and summarize the posterior.

    Parameters
    ----------
    X : NDArray[np.float64]
        Observations, shape (N, D)
    n_components : int, optional
        Rank K of the fixed-rank model. Ignored when ``ard`` is True.
    ard : bool
        Fit the ARD model and select dimensions. Default False.
    draws : int
        Post-adaptation draws per chain. Default 1000.
    tune : int
        Adaptation window per chain. Default 500.
    chains : int
        Number of independent chains. Default 2.
    cores : int
        Chains run concurrently when > 1. Default 1.
    step_count : int
        Leapfrog steps per proposal. Default 16.
    target_accept : float
        Acceptance rate targeted during adaptation. Default 0.8.
    seed : int, optional
        Base seed; chain i uses ``seed + i``.
    k, threshold : optional
        ARD selection rule, see ``ARDSelector``.
    prior_spec : PriorSpec, optional
        Gamma hyperparameters for the ARD model.
    max_divergence_rate : float, optional
        Abort a chain once this fraction of its iterations diverged.

    Returns
    -------
    summary : InferenceSummary
    """
    model = ModelSpec(
        X,
        n_components=None if ard else n_components,
        ard=ard,
        prior_spec=prior_spec,
    )
    config = SamplerConfig(
        target_accept=target_accept,
        step_count=step_count,
        adaptation_window=tune,
        seed=seed,
        max_divergence_rate=max_divergence_rate,
    )
    logger.info("Fitting %r with %r", model, config)

    start_time = time.time()
    store = sample_chains(model, draws, config=config, chains=chains, cores=cores)
    sampling_time = time.time() - start_time

    diagnostics = DiagnosticsComputer.compute(store)
    posterior = PosteriorSummarizer.summarize(store)
    reconstruction = PosteriorSummarizer.reconstruct(posterior.W, posterior.Z, posterior.mu)

    selected = None
    reduced = None
    if ard:
        selector = ARDSelector(k=k, threshold=threshold)
        selected = selector.select(posterior.alpha)
        reduced = selector.reconstruct(posterior.W, posterior.Z, selected)

    logger.info(
        "Sampling took %.1fs; max Rhat %.4f, min ESS %.1f, %d divergences",
        sampling_time, diagnostics.max_rhat, diagnostics.min_ess,
        diagnostics.divergence_count,
    )
    return InferenceSummary(
        model=model,
        store=store,
        diagnostics=diagnostics,
        posterior=posterior,
        reconstruction=reconstruction,
        n_draws=draws,
        n_tune=tune,
        n_chains=chains,
        sampling_time=sampling_time,
        selected=selected,
        reduced_reconstruction=reduced,
    )
