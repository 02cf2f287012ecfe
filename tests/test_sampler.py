"""
Unit tests for the HMC sampler.

Tests cover:
- Configuration validation
- Reproducibility under a fixed seed
- Moments of a 1-D Gaussian target
- Adaptation window bookkeeping
- Divergence handling and abort thresholds
- Multi-chain runs (seeding, thread pool)
"""

import pytest
import numpy as np
from numpy.testing import assert_array_equal

from ppca.exceptions import DivergentChain, PPCAError
from inference.sampler import HMCSampler, SamplerConfig, sample_chains
from inference.diagnostics import DiagnosticsComputer
from tests.helpers import NaNRegionTarget


class TestSamplerConfig:
    """Tests for configuration validation."""

    def test_defaults(self) -> None:
        config = SamplerConfig()
        assert config.target_accept == 0.8
        assert config.step_count == 16
        assert config.adaptation_window == 500
        assert config.max_divergence_rate is None

    @pytest.mark.parametrize("kwargs,match", [
        ({"target_accept": 0.0}, "target_accept"),
        ({"target_accept": 1.0}, "target_accept"),
        ({"step_count": 0}, "step_count"),
        ({"adaptation_window": -1}, "adaptation_window"),
        ({"initial_step_size": 0.0}, "initial_step_size"),
        ({"max_divergence_rate": 0.0}, "max_divergence_rate"),
        ({"max_rejection_rate": 1.5}, "max_rejection_rate"),
        ({"step_jitter": 1.0}, "step_jitter"),
    ])
    def test_invalid_values_raise(self, kwargs, match) -> None:
        with pytest.raises(ValueError, match=match):
            SamplerConfig(**kwargs)

    def test_replace_keeps_other_fields(self) -> None:
        config = SamplerConfig(target_accept=0.9, step_count=5, seed=1)
        changed = config.replace(seed=7)
        assert changed.seed == 7
        assert changed.target_accept == 0.9
        assert changed.step_count == 5
        assert config.seed == 1


class TestHMCSampler:
    """Tests for single-chain runs."""

    def test_same_seed_same_chain(self, gaussian_target) -> None:
        """Two runs with equal configuration produce identical draws."""
        config = SamplerConfig(step_count=3, adaptation_window=50, seed=123)
        first = HMCSampler(config).run(gaussian_target, np.zeros(1), 200)
        second = HMCSampler(config).run(gaussian_target, np.zeros(1), 200)
        assert_array_equal(first.draws, second.draws)
        assert_array_equal(first.step_size, second.step_size)

    def test_different_seeds_differ(self, gaussian_target) -> None:
        first = HMCSampler(SamplerConfig(step_count=3, adaptation_window=50, seed=1))
        second = HMCSampler(SamplerConfig(step_count=3, adaptation_window=50, seed=2))
        a = first.run(gaussian_target, np.zeros(1), 100)
        b = second.run(gaussian_target, np.zeros(1), 100)
        assert not np.array_equal(a.draws, b.draws)

    def test_gaussian_moments(self, gaussian_target) -> None:
        """Mean within 3 standard errors, variance within 15%."""
        config = SamplerConfig(step_count=3, adaptation_window=500, seed=2024)
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 6000)
        x = chain.draws[:, 0]

        ess = DiagnosticsComputer.ess(x)
        standard_error = 1.5 / np.sqrt(ess)
        assert abs(x.mean() - 2.0) < 3 * standard_error
        assert np.var(x) == pytest.approx(1.5 ** 2, rel=0.15)

    def test_warmup_kept_apart(self, gaussian_target) -> None:
        """Adaptation draws are stored separately from posterior draws."""
        config = SamplerConfig(step_count=3, adaptation_window=40, seed=0)
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 60, chain_id=3)
        assert chain.chain_id == 3
        assert chain.n_warmup == 40
        assert chain.n_draws == 60
        assert chain.dim == 1
        assert chain.log_density.shape == (100,)
        assert chain.accepted.shape == (100,)

    def test_step_size_frozen_after_adaptation(self, gaussian_target) -> None:
        config = SamplerConfig(step_count=3, adaptation_window=100, seed=5, step_jitter=0.0)
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 200)
        post = chain.step_size[chain.n_warmup:]
        assert np.all(post == post[0])
        assert chain.final_step_size == post[0]

    def test_step_jitter_bounds(self, gaussian_target) -> None:
        config = SamplerConfig(step_count=3, adaptation_window=100, seed=5, step_jitter=0.2)
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 300)
        frozen = chain.step_size[chain.n_warmup:]
        ratio = frozen / np.median(frozen)
        assert np.all(ratio > 0.75)
        assert np.all(ratio < 1.25)
        assert np.unique(frozen).size > 1

    def test_adaptation_reaches_target(self, gaussian_target) -> None:
        """Acceptance after adaptation is near the target."""
        config = SamplerConfig(target_accept=0.8, step_count=3, adaptation_window=500, seed=9)
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 2000)
        assert 0.6 < chain.acceptance_rate < 0.98

    def test_fixed_initial_step_size(self, gaussian_target) -> None:
        config = SamplerConfig(
            step_count=3, adaptation_window=0, initial_step_size=0.3, step_jitter=0.0, seed=1
        )
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 50)
        assert np.all(chain.step_size == 0.3)

    def test_chain_arrays_read_only(self, gaussian_target) -> None:
        config = SamplerConfig(step_count=3, adaptation_window=10, seed=0)
        chain = HMCSampler(config).run(gaussian_target, np.zeros(1), 10)
        with pytest.raises(ValueError):
            chain.draws[0, 0] = 1.0

    def test_invalid_arguments(self, gaussian_target) -> None:
        sampler = HMCSampler(SamplerConfig(seed=0))
        with pytest.raises(ValueError, match="num_samples"):
            sampler.run(gaussian_target, np.zeros(1), 0)
        with pytest.raises(ValueError, match="1-D"):
            sampler.run(gaussian_target, np.zeros((1, 1)), 10)


class TestDivergences:
    """Tests for non-finite proposals."""

    def test_divergences_are_not_fatal_by_default(self) -> None:
        """NaN proposals are rejected and the chain keeps going."""
        target = NaNRegionTarget(mean=2.0, sd=1.5, cutoff=3.0)
        config = SamplerConfig(step_count=3, adaptation_window=100, seed=4)
        chain = HMCSampler(config).run(target, np.zeros(1), 500, layout=target.layout)

        assert chain.n_draws == 500
        assert chain.divergence_count > 0
        assert np.all(chain.draws <= 3.0)
        assert np.all(np.isfinite(chain.log_density))
        assert set(chain.divergent_blocks) == {"x"}

    def test_divergent_iteration_repeats_point(self) -> None:
        target = NaNRegionTarget(mean=2.0, sd=1.5, cutoff=3.0)
        config = SamplerConfig(step_count=3, adaptation_window=0, seed=4)
        chain = HMCSampler(config).run(target, np.zeros(1), 500)

        idx = np.flatnonzero(chain.diverging)
        idx = idx[idx > 0]
        assert idx.size > 0
        assert_array_equal(chain.draws[idx], chain.draws[idx - 1])
        assert not np.any(chain.accepted[chain.diverging])
        assert np.all(chain.accept_prob[chain.diverging] == 0.0)

    def test_max_divergence_rate_aborts(self) -> None:
        target = NaNRegionTarget(mean=2.0, sd=1.5, cutoff=3.0)
        config = SamplerConfig(
            step_count=3, adaptation_window=100, seed=4, max_divergence_rate=0.01
        )
        with pytest.raises(DivergentChain) as excinfo:
            HMCSampler(config).run(target, np.zeros(1), 500, layout=target.layout)

        err = excinfo.value
        assert err.block == "x"
        partial = err.partial_chain
        assert partial.log_density.shape[0] == err.iteration + 1
        assert partial.diverging[-1]
        # Threshold is 1% of 600 iterations
        assert partial.divergence_count == 7

    def test_divergent_chain_is_package_error(self) -> None:
        assert issubclass(DivergentChain, PPCAError)
        assert issubclass(DivergentChain, RuntimeError)

    def test_non_finite_initial_point(self) -> None:
        target = NaNRegionTarget(mean=2.0, sd=1.5, cutoff=3.0)
        config = SamplerConfig(step_count=3, adaptation_window=10, seed=0)
        with pytest.raises(DivergentChain, match="initial point") as excinfo:
            HMCSampler(config).run(target, np.array([5.0]), 10, layout=target.layout)
        assert excinfo.value.iteration == 0
        assert excinfo.value.block == "x"
        assert excinfo.value.partial_chain.n_draws == 0

    def test_block_unknown_without_layout(self) -> None:
        target = NaNRegionTarget(mean=2.0, sd=1.5, cutoff=3.0)
        config = SamplerConfig(step_count=3, adaptation_window=10, seed=0)
        with pytest.raises(DivergentChain) as excinfo:
            HMCSampler(config).run(target, np.array([5.0]), 10)
        assert excinfo.value.block is None

    def test_max_rejection_rate_aborts(self, gaussian_target) -> None:
        """A step size far too large for the target rejects almost everything."""
        config = SamplerConfig(
            step_count=3,
            adaptation_window=0,
            initial_step_size=50.0,
            step_jitter=0.0,
            seed=0,
            max_rejection_rate=0.5,
        )
        with pytest.raises(DivergentChain, match="rejection rate") as excinfo:
            HMCSampler(config).run(gaussian_target, np.zeros(1), 200)
        assert excinfo.value.partial_chain.n_draws == 200
        assert excinfo.value.partial_chain.rejection_rate > 0.5


class TestSampleChains:
    """Tests for multi-chain runs."""

    def test_chain_i_uses_seed_plus_i(self, gaussian_target) -> None:
        config = SamplerConfig(step_count=3, adaptation_window=20, seed=100)
        store = sample_chains(gaussian_target, 50, config=config, chains=3)

        assert store.n_chains == 3
        assert [c.chain_id for c in store.chains] == [0, 1, 2]
        expected = HMCSampler(config.replace(seed=102)).run(
            gaussian_target, gaussian_target.initial_point(102), 50, chain_id=2
        )
        assert_array_equal(store.chains[2].draws, expected.draws)

    def test_thread_pool_matches_sequential(self, gaussian_target) -> None:
        config = SamplerConfig(step_count=3, adaptation_window=20, seed=8)
        sequential = sample_chains(gaussian_target, 50, config=config, chains=3, cores=1)
        pooled = sample_chains(gaussian_target, 50, config=config, chains=3, cores=3)
        assert_array_equal(sequential.draws_array(), pooled.draws_array())

    def test_explicit_initial_points(self, gaussian_target) -> None:
        config = SamplerConfig(
            step_count=3, adaptation_window=0, initial_step_size=0.01, seed=8
        )
        starts = [np.array([-20.0]), np.array([20.0])]
        store = sample_chains(
            gaussian_target, 5, config=config, chains=2, initial_points=starts
        )
        assert store.chains[0].draws[0, 0] < 0
        assert store.chains[1].draws[0, 0] > 0

    def test_invalid_arguments(self, gaussian_target) -> None:
        with pytest.raises(ValueError, match="chains"):
            sample_chains(gaussian_target, 10, chains=0)
        with pytest.raises(ValueError, match="cores"):
            sample_chains(gaussian_target, 10, cores=0)
        with pytest.raises(ValueError, match="initial point"):
            sample_chains(gaussian_target, 10, chains=2, initial_points=[np.zeros(1)])
