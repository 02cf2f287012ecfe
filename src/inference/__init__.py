"""
Bayesian inference module for probabilistic PCA.

This module provides the sampling and post-processing pipeline:
1. HMCSampler: Hamiltonian Monte Carlo with dual-averaging step size
2. ChainStore: named-block access to the draws of all chains
3. DiagnosticsComputer: Rhat, ESS, divergence counts
4. PosteriorSummarizer / ARDSelector: point estimates, reconstruction,
   dimension selection
5. run_inference: all of the above in one call

**Usage:**
```python
from ppca.model_spec import ModelSpec
from inference.sampler import SamplerConfig, sample_chains
from inference.diagnostics import DiagnosticsComputer
from inference.posterior import PosteriorSummarizer

# 1. Define the model
model = ModelSpec(X, n_components=2)

# 2. Sample with HMC
store = sample_chains(model, 2000, SamplerConfig(seed=1), chains=2)

# 3. Check convergence and summarize
report = DiagnosticsComputer.compute(store)
post = PosteriorSummarizer.summarize(store)
X_hat = PosteriorSummarizer.reconstruct(post.W, post.Z, post.mu)
```

**Key Classes:**
- SamplerConfig: Sampler settings (target acceptance, leapfrog steps, adaptation)
- HMCSampler: One chain of HMC
- Chain / ChainStore: Sampler output
- DiagnosticsComputer / DiagnosticsReport: Convergence statistics
- PosteriorSummarizer / PosteriorSummary: Posterior means and reconstructions
- LatentAligner: Common latent frame for draws before averaging
- ARDSelector: Relevance-based latent dimension selection
- PosteriorPredictiveCheck: Replicated data and p-values
- InferenceSummary: Results of ``run_inference``
"""

from inference.sampler import Chain, HMCSampler, SamplerConfig, sample_chains
from inference.chains import ChainStore
from inference.diagnostics import DiagnosticsComputer, DiagnosticsReport
from inference.posterior import (
    ARDSelector,
    LatentAligner,
    PosteriorPredictiveCheck,
    PosteriorSummarizer,
    PosteriorSummary,
)
from inference.pipeline import InferenceSummary, run_inference

__all__ = [
    "Chain",
    "HMCSampler",
    "SamplerConfig",
    "sample_chains",
    "ChainStore",
    "DiagnosticsComputer",
    "DiagnosticsReport",
    "ARDSelector",
    "LatentAligner",
    "PosteriorPredictiveCheck",
    "PosteriorSummarizer",
    "PosteriorSummary",
    "InferenceSummary",
    "run_inference",
]
