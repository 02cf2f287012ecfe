"""
End-to-end tests: data -> model -> chains -> diagnostics -> reconstruction.

The sampling scenarios are marked slow; deselect them with ``-m "not slow"``.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose
from scipy.linalg import subspace_angles

from ppca.exceptions import InvalidShape
from ppca.model_spec import ModelSpec
from inference.pipeline import InferenceSummary, run_inference
from inference.posterior import ARDSelector, PosteriorSummarizer
from simulation.synthetic import simulate_ard, simulate_grouped_blocks


class TestRunInference:
    """Short runs checking the wiring of the pipeline."""

    def test_fixed_rank_summary(self, small_data) -> None:
        summary = run_inference(
            small_data, n_components=2, draws=50, tune=50, chains=2, step_count=5, seed=3
        )
        assert isinstance(summary, InferenceSummary)
        assert isinstance(summary.model, ModelSpec)
        assert summary.n_chains == 2
        assert summary.total_samples == 100
        assert summary.store.n_draws == 50
        assert summary.reconstruction.shape == small_data.shape
        assert summary.posterior.W.shape == (4, 2)
        assert summary.posterior.alpha is None
        assert summary.selected is None
        assert summary.diagnostics.rhat_available
        assert "InferenceSummary" in repr(summary)

    def test_reconstruction_uses_aligned_means(self, small_data) -> None:
        summary = run_inference(
            small_data, n_components=2, draws=40, tune=40, chains=2, step_count=5, seed=8
        )
        posterior = PosteriorSummarizer.summarize(summary.store)
        assert_allclose(summary.posterior.W, posterior.W)
        assert_allclose(
            summary.reconstruction,
            PosteriorSummarizer.reconstruct(posterior.W, posterior.Z, posterior.mu),
        )

    def test_ard_summary(self, small_data) -> None:
        summary = run_inference(
            small_data, ard=True, draws=50, tune=50, chains=1, step_count=5, seed=3, k=2
        )
        assert summary.posterior.alpha.shape == (4,)
        assert summary.posterior.tau > 0
        assert summary.selected.shape == (2,)
        assert summary.reduced_reconstruction.shape == small_data.shape
        assert not summary.diagnostics.rhat_available

    def test_reduced_reconstruction_has_no_offset(self, small_data) -> None:
        summary = run_inference(
            small_data, ard=True, draws=30, tune=30, chains=1, step_count=4, seed=5, k=2
        )
        posterior = summary.posterior
        selected = summary.selected
        expected = (posterior.W[:, selected] @ posterior.Z[selected, :]).T
        assert_allclose(summary.reduced_reconstruction, expected)
        assert_allclose(
            summary.reduced_reconstruction,
            ARDSelector.reconstruct(posterior.W, posterior.Z, selected),
        )

    def test_seeded_runs_are_reproducible(self, small_data) -> None:
        kwargs = dict(n_components=1, draws=30, tune=30, chains=2, step_count=4, seed=10)
        first = run_inference(small_data, **kwargs)
        second = run_inference(small_data, **kwargs)
        np.testing.assert_array_equal(first.store.draws_array(), second.store.draws_array())

    def test_invalid_rank_raises_before_sampling(self, small_data) -> None:
        with pytest.raises(InvalidShape):
            run_inference(small_data, n_components=9, draws=10, tune=10)


@pytest.mark.slow
class TestScenarios:
    """Long sampling runs on synthetic data with known structure."""

    def test_grouped_blocks_recovered(self) -> None:
        """Two 30-row groups with shifted 3-feature blocks, K=2."""
        X, labels = simulate_grouped_blocks(
            n_per_group=30, n_features=9, block_size=3, shift=10.0, seed=0
        )
        summary = run_inference(
            X, n_components=2, draws=2000, tune=500, chains=2, seed=1
        )
        X_hat = summary.reconstruction
        diff = X_hat[labels == 0].mean(axis=0) - X_hat[labels == 1].mean(axis=0)
        observed = X[labels == 0].mean(axis=0) - X[labels == 1].mean(axis=0)

        assert abs(diff[:3].mean() - 10.0) < 0.5
        assert abs(diff[3:6].mean() + 10.0) < 0.5
        assert abs(diff[6:].mean()) < 0.5
        assert np.all(np.abs(diff - observed) < 1.0)

    def test_ard_keeps_informative_subspace(self) -> None:
        """Pruning to the 2 smallest-alpha dimensions keeps the signal."""
        X, params = simulate_ard(
            n_obs=50, n_features=5, n_informative=2, signal_scale=5.0, noise_sd=0.5, seed=2
        )
        summary = run_inference(X, ard=True, draws=2000, tune=500, chains=1, seed=4, k=2)
        selected = summary.selected

        alpha = summary.posterior.alpha
        rest = np.setdiff1d(np.arange(alpha.size), selected)
        assert alpha[selected].max() * 5 < alpha[rest].min()

        # kept loading columns span the informative columns of the truth
        angles = subspace_angles(summary.posterior.W[:, selected], params.W[:, :2])
        assert angles.max() < 0.3

        # compared after centering: mu and the mean of Z share the offset
        truth = (params.W[:, :2] @ params.Z[:2, :]).T
        reduced = summary.reduced_reconstruction
        error = (reduced - reduced.mean(axis=0)) - (truth - truth.mean(axis=0))
        assert np.mean(np.abs(error)) < 0.5
