"""
Hamiltonian Monte Carlo sampler with dual-averaging step-size adaptation.

The sampler only needs a log-density oracle ``f(x) -> (logp, grad)`` over a
flat unconstrained vector; ``ppca.model_spec.ModelSpec`` is one such oracle.

Per iteration:
1. Draw momentum p ~ N(0, I)
2. Integrate ``step_count`` leapfrog steps with the current step size
   (randomly jittered once adaptation is over)
3. Accept with probability min(1, exp(H_current - H_proposed))
4. Emit the new point, or repeat the current one on rejection
5. During the adaptation window, update the step size by dual averaging
   (Hoffman & Gelman 2014, Alg. 5); afterwards it is frozen

A non-finite log-density or gradient anywhere on the trajectory rejects the
proposal (a divergence). Divergences only abort the run when a
``max_divergence_rate`` is configured.
"""

from typing import Callable, List, Optional, Sequence, Tuple
from concurrent.futures import ThreadPoolExecutor
import logging
import time
import numpy as np
from numpy.typing import NDArray

from ppca.exceptions import DivergentChain, NumericalRejection
from ppca.layout import BlockLayout

logger = logging.getLogger(__name__)

LogDensityFn = Callable[[NDArray[np.float64]], Tuple[float, NDArray[np.float64]]]


class SamplerConfig:
    """Run parameters of one HMC chain."""

    def __init__(
        self,
        target_accept: float = 0.8,
        step_count: int = 16,
        adaptation_window: int = 500,
        seed: Optional[int] = None,
        initial_step_size: Optional[float] = None,
        max_divergence_rate: Optional[float] = None,
        max_rejection_rate: Optional[float] = None,
        step_jitter: float = 0.15,
    ) -> None:
        """
        Initialize sampler configuration.

        Parameters
        ----------
        target_accept : float
            Mean acceptance probability targeted during adaptation, in (0, 1).
            Default 0.8.
        step_count : int
            Leapfrog steps per proposal. Default 16.
        adaptation_window : int
            Number of initial iterations during which the step size is tuned.
            These draws are kept apart from the posterior draws. Default 500.
        seed : int, optional
            Seed of the chain's random generator.
        initial_step_size : float, optional
            Starting step size. If None, found by a doubling/halving search.
        max_divergence_rate : float, optional
            Abort with DivergentChain once non-finite proposals exceed this
            fraction of all iterations. Default None (never abort).
        max_rejection_rate : float, optional
            Abort with DivergentChain if the post-adaptation rejection rate
            exceeds this fraction. Default None (never abort).
        step_jitter : float
            After adaptation each trajectory uses the frozen step size scaled
            by uniform(1 - step_jitter, 1 + step_jitter), which breaks
            periodic trajectories. Default 0.15.
        """
        if not (0.0 < target_accept < 1.0):
            raise ValueError(f"target_accept must be in (0, 1). Got {target_accept}")
        if step_count < 1:
            raise ValueError(f"step_count must be >= 1. Got {step_count}")
        if adaptation_window < 0:
            raise ValueError(f"adaptation_window must be >= 0. Got {adaptation_window}")
        if initial_step_size is not None and not initial_step_size > 0:
            raise ValueError(f"initial_step_size must be positive. Got {initial_step_size}")
        for name, rate in (
            ("max_divergence_rate", max_divergence_rate),
            ("max_rejection_rate", max_rejection_rate),
        ):
            if rate is not None and not (0.0 < rate <= 1.0):
                raise ValueError(f"{name} must be in (0, 1]. Got {rate}")
        if not (0.0 <= step_jitter < 1.0):
            raise ValueError(f"step_jitter must be in [0, 1). Got {step_jitter}")

        self.target_accept = target_accept
        self.step_count = int(step_count)
        self.adaptation_window = int(adaptation_window)
        self.seed = seed
        self.initial_step_size = initial_step_size
        self.max_divergence_rate = max_divergence_rate
        self.max_rejection_rate = max_rejection_rate
        self.step_jitter = step_jitter

    def replace(self, **changes) -> "SamplerConfig":
        """Copy of this configuration with some fields changed."""
        fields = dict(
            target_accept=self.target_accept,
            step_count=self.step_count,
            adaptation_window=self.adaptation_window,
            seed=self.seed,
            initial_step_size=self.initial_step_size,
            max_divergence_rate=self.max_divergence_rate,
            max_rejection_rate=self.max_rejection_rate,
            step_jitter=self.step_jitter,
        )
        fields.update(changes)
        return SamplerConfig(**fields)

    def __repr__(self) -> str:
        return (
            f"SamplerConfig(target_accept={self.target_accept}, "
            f"step_count={self.step_count}, "
            f"adaptation_window={self.adaptation_window}, seed={self.seed})"
        )


class Chain:
    """
    Draws and per-iteration statistics of one finished sampler run.

    Arrays are read-only. Per-iteration statistics cover the adaptation
    window followed by the posterior draws.

    Attributes
    ----------
    chain_id : int
        Index of the chain within its ChainStore
    draws : NDArray[np.float64]
        Post-adaptation draws, shape (n_draws, dim)
    warmup_draws : NDArray[np.float64]
        Draws emitted during adaptation, shape (n_warmup, dim)
    log_density : NDArray[np.float64]
        Log-density of the emitted point, shape (n_iterations,)
    accept_prob : NDArray[np.float64]
        Metropolis acceptance probability, shape (n_iterations,)
    accepted : NDArray[np.bool_]
        Whether the proposal was accepted, shape (n_iterations,)
    diverging : NDArray[np.bool_]
        Whether the trajectory hit a non-finite evaluation, shape (n_iterations,)
    step_size : NDArray[np.float64]
        Step size used by each iteration, shape (n_iterations,)
    divergent_blocks : List[Optional[str]]
        Block name (when known) for each divergent iteration, in order
    """

    def __init__(
        self,
        chain_id: int,
        draws: NDArray[np.float64],
        warmup_draws: NDArray[np.float64],
        log_density: NDArray[np.float64],
        accept_prob: NDArray[np.float64],
        accepted: NDArray[np.bool_],
        diverging: NDArray[np.bool_],
        step_size: NDArray[np.float64],
        divergent_blocks: Optional[List[Optional[str]]] = None,
    ) -> None:
        self.chain_id = chain_id
        self.draws = _frozen(draws, np.float64)
        self.warmup_draws = _frozen(warmup_draws, np.float64)
        self.log_density = _frozen(log_density, np.float64)
        self.accept_prob = _frozen(accept_prob, np.float64)
        self.accepted = _frozen(accepted, np.bool_)
        self.diverging = _frozen(diverging, np.bool_)
        self.step_size = _frozen(step_size, np.float64)
        self.divergent_blocks = list(divergent_blocks or [])

    @property
    def n_draws(self) -> int:
        return self.draws.shape[0]

    @property
    def n_warmup(self) -> int:
        return self.warmup_draws.shape[0]

    @property
    def dim(self) -> int:
        return self.draws.shape[1]

    @property
    def acceptance_rate(self) -> float:
        """Fraction of accepted proposals after adaptation."""
        accepted = self.accepted[self.n_warmup:]
        return float(accepted.mean()) if accepted.size else float("nan")

    @property
    def rejection_rate(self) -> float:
        return 1.0 - self.acceptance_rate

    @property
    def divergence_count(self) -> int:
        """Non-finite proposals over the whole run, adaptation included."""
        return int(self.diverging.sum())

    @property
    def final_step_size(self) -> float:
        return float(self.step_size[-1]) if self.step_size.size else float("nan")

    def __repr__(self) -> str:
        return (
            f"Chain(id={self.chain_id}, draws={self.n_draws}, warmup={self.n_warmup}, "
            f"accept={self.acceptance_rate:.3f}, divergences={self.divergence_count})"
        )


def _frozen(values, dtype) -> np.ndarray:
    array = np.array(values, dtype=dtype)
    array.setflags(write=False)
    return array


class _DualAveraging:
    """Nesterov dual-averaging state for the log step size."""

    def __init__(
        self,
        initial_step_size: float,
        target_accept: float,
        gamma: float = 0.05,
        t0: float = 10.0,
        kappa: float = 0.75,
    ) -> None:
        self.mu = np.log(10.0 * initial_step_size)
        self.target_accept = target_accept
        self.gamma = gamma
        self.t0 = t0
        self.kappa = kappa
        self.h_bar = 0.0
        self.log_step = np.log(initial_step_size)
        self.log_step_bar = 0.0
        self.m = 0

    def update(self, accept_prob: float) -> float:
        """Feed one acceptance probability, return the next step size."""
        self.m += 1
        eta = 1.0 / (self.m + self.t0)
        self.h_bar = (1.0 - eta) * self.h_bar + eta * (self.target_accept - accept_prob)
        self.log_step = self.mu - np.sqrt(self.m) / self.gamma * self.h_bar
        weight = self.m ** (-self.kappa)
        self.log_step_bar = weight * self.log_step + (1.0 - weight) * self.log_step_bar
        return float(np.exp(self.log_step))

    @property
    def final_step_size(self) -> float:
        if self.m == 0:
            return float(np.exp(self.log_step))
        return float(np.exp(self.log_step_bar))


class HMCSampler:
    """
    Hamiltonian Monte Carlo with a unit mass matrix.

    Holds only the configuration; all numerical state (position, step size,
    adaptation, random generator) lives inside ``run`` so one sampler can be
    reused and independent runs never share mutable state.
    """

    def __init__(self, config: Optional[SamplerConfig] = None) -> None:
        self.config = config or SamplerConfig()

    def run(
        self,
        log_density: LogDensityFn,
        initial_point: NDArray[np.float64],
        num_samples: int,
        chain_id: int = 0,
        layout: Optional[BlockLayout] = None,
    ) -> Chain:
        """
        Draw one chain of posterior samples.

        Parameters
        ----------
        log_density : callable
            ``f(x) -> (logp, grad)`` over the flat parameter vector
        initial_point : NDArray[np.float64]
            Starting position, shape (dim,)
        num_samples : int
            Number of post-adaptation draws
        chain_id : int
            Identifier stored on the returned chain. Default 0.
        layout : BlockLayout, optional
            Used to name the block behind non-finite gradients.

        Returns
        -------
        chain : Chain
            ``adaptation_window`` warmup draws followed by ``num_samples``
            draws, one per iteration.

        Raises
        ------
        DivergentChain
            If the initial point is not finite, or a configured divergence or
            rejection threshold is exceeded.
        """
        if num_samples < 1:
            raise ValueError(f"num_samples must be >= 1. Got {num_samples}")

        config = self.config
        rng = np.random.default_rng(config.seed)
        position = np.array(initial_point, dtype=np.float64)
        if position.ndim != 1:
            raise ValueError(f"initial_point must be 1-D. Got shape {position.shape}")
        dim = position.shape[0]

        n_warmup = config.adaptation_window
        n_total = n_warmup + num_samples
        max_divergences = (
            None if config.max_divergence_rate is None
            else config.max_divergence_rate * n_total
        )

        samples = np.empty((n_total, dim))
        log_densities = np.empty(n_total)
        accept_probs = np.empty(n_total)
        accepted_flags = np.zeros(n_total, dtype=bool)
        diverging_flags = np.zeros(n_total, dtype=bool)
        step_sizes = np.empty(n_total)
        divergent_blocks: List[Optional[str]] = []

        def partial(upto: int) -> Chain:
            n_warm = min(upto, n_warmup)
            return Chain(
                chain_id=chain_id,
                draws=samples[n_warm:upto].reshape(-1, dim),
                warmup_draws=samples[:n_warm].reshape(-1, dim),
                log_density=log_densities[:upto],
                accept_prob=accept_probs[:upto],
                accepted=accepted_flags[:upto],
                diverging=diverging_flags[:upto],
                step_size=step_sizes[:upto],
                divergent_blocks=divergent_blocks,
            )

        try:
            logp, grad = self._evaluate(log_density, position, 0, layout)
        except NumericalRejection as err:
            raise DivergentChain(
                f"Chain {chain_id}: initial point has non-finite log-density "
                f"(block={err.block})",
                partial_chain=partial(0),
                iteration=0,
                block=err.block,
            ) from err

        if config.initial_step_size is not None:
            step_size = float(config.initial_step_size)
        else:
            step_size = self._find_reasonable_step_size(
                log_density, position, logp, grad, rng, layout
            )
        adaptation = _DualAveraging(step_size, config.target_accept)

        logger.info(
            "Chain %d: %d warmup + %d draws, dim=%d, step_count=%d, initial step_size=%.4g",
            chain_id, n_warmup, num_samples, dim, config.step_count, step_size,
        )
        start_time = time.time()

        for iteration in range(n_total):
            momentum = rng.standard_normal(dim)
            trajectory_step = step_size
            if iteration >= n_warmup and config.step_jitter > 0:
                trajectory_step *= rng.uniform(1.0 - config.step_jitter, 1.0 + config.step_jitter)
            current_h = -logp + 0.5 * momentum @ momentum
            diverged = False
            try:
                new_position, new_momentum, new_logp, new_grad = self._trajectory(
                    log_density, position, momentum, grad, trajectory_step, iteration, layout
                )
                proposed_h = -new_logp + 0.5 * new_momentum @ new_momentum
                log_accept = current_h - proposed_h
                accept_prob = float(np.exp(min(0.0, log_accept))) if np.isfinite(log_accept) else 0.0
            except NumericalRejection as err:
                diverged = True
                accept_prob = 0.0
                divergent_blocks.append(err.block)
                logger.debug(
                    "Chain %d iteration %d: non-finite evaluation in block %s",
                    chain_id, iteration, err.block,
                )

            # One uniform per iteration, diverged or not
            u = rng.uniform()
            accepted = not diverged and u < accept_prob
            if accepted:
                position, logp, grad = new_position, new_logp, new_grad

            samples[iteration] = position
            log_densities[iteration] = logp
            accept_probs[iteration] = accept_prob
            accepted_flags[iteration] = accepted
            diverging_flags[iteration] = diverged
            step_sizes[iteration] = trajectory_step

            if diverged and max_divergences is not None:
                n_divergent = int(diverging_flags[: iteration + 1].sum())
                if n_divergent > max_divergences:
                    raise DivergentChain(
                        f"Chain {chain_id}: {n_divergent} non-finite proposals by "
                        f"iteration {iteration} exceed max_divergence_rate="
                        f"{config.max_divergence_rate} of {n_total} iterations "
                        f"(last block: {divergent_blocks[-1]})",
                        partial_chain=partial(iteration + 1),
                        iteration=iteration,
                        block=divergent_blocks[-1],
                    )

            if iteration < n_warmup:
                step_size = adaptation.update(accept_prob)
                if iteration == n_warmup - 1:
                    step_size = adaptation.final_step_size
                    logger.debug(
                        "Chain %d: adaptation finished, step_size frozen at %.4g",
                        chain_id, step_size,
                    )

        chain = partial(n_total)
        logger.info(
            "Chain %d done in %.1fs: accept_rate=%.3f, divergences=%d, step_size=%.4g",
            chain_id, time.time() - start_time, chain.acceptance_rate,
            chain.divergence_count, step_size,
        )

        if (
            config.max_rejection_rate is not None
            and chain.rejection_rate > config.max_rejection_rate
        ):
            raise DivergentChain(
                f"Chain {chain_id}: rejection rate {chain.rejection_rate:.1%} exceeds "
                f"max_rejection_rate={config.max_rejection_rate:.1%}",
                partial_chain=chain,
                iteration=n_total - 1,
                block=divergent_blocks[-1] if divergent_blocks else None,
            )
        return chain

    @staticmethod
    def _evaluate(
        log_density: LogDensityFn,
        position: NDArray[np.float64],
        iteration: int,
        layout: Optional[BlockLayout],
    ) -> Tuple[float, NDArray[np.float64]]:
        """Call the oracle; raise NumericalRejection on non-finite output."""
        logp, grad = log_density(position)
        grad = np.asarray(grad, dtype=np.float64)
        if np.isfinite(logp) and np.all(np.isfinite(grad)):
            return float(logp), grad

        block = None
        bad = np.flatnonzero(~np.isfinite(grad))
        if layout is not None and bad.size:
            block = layout.block_of(int(bad[0])).name
        elif layout is not None:
            block = "log_density"
        raise NumericalRejection(
            f"Non-finite log-density ({logp}) or gradient at iteration {iteration}",
            block=block,
            iteration=iteration,
        )

    def _trajectory(
        self,
        log_density: LogDensityFn,
        position: NDArray[np.float64],
        momentum: NDArray[np.float64],
        grad: NDArray[np.float64],
        step_size: float,
        iteration: int,
        layout: Optional[BlockLayout],
        step_count: Optional[int] = None,
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64], float, NDArray[np.float64]]:
        """Leapfrog integration; grad is the gradient at the start position."""
        n_steps = self.config.step_count if step_count is None else step_count
        position = position.copy()
        momentum = momentum + 0.5 * step_size * grad
        logp = -np.inf
        for step in range(n_steps):
            position = position + step_size * momentum
            logp, grad = self._evaluate(log_density, position, iteration, layout)
            if step < n_steps - 1:
                momentum = momentum + step_size * grad
        momentum = momentum + 0.5 * step_size * grad
        return position, momentum, logp, grad

    def _find_reasonable_step_size(
        self,
        log_density: LogDensityFn,
        position: NDArray[np.float64],
        logp: float,
        grad: NDArray[np.float64],
        rng: np.random.Generator,
        layout: Optional[BlockLayout],
        max_rounds: int = 100,
    ) -> float:
        """Double or halve a unit step until one leapfrog step crosses 50% acceptance."""
        step_size = 1.0
        momentum = rng.standard_normal(position.shape[0])
        current_h = -logp + 0.5 * momentum @ momentum

        def log_ratio(eps: float) -> float:
            try:
                _, new_momentum, new_logp, _ = self._trajectory(
                    log_density, position, momentum, grad, eps, -1, layout, step_count=1
                )
            except NumericalRejection:
                return -np.inf
            value = current_h - (-new_logp + 0.5 * new_momentum @ new_momentum)
            return value if np.isfinite(value) else -np.inf

        direction = 1.0 if log_ratio(step_size) > np.log(0.5) else -1.0
        for _ in range(max_rounds):
            ratio = log_ratio(step_size)
            if direction * ratio <= -direction * np.log(2.0):
                break
            step_size *= 2.0 ** direction
        return step_size


def sample_chains(
    model,
    num_samples: int,
    config: Optional[SamplerConfig] = None,
    chains: int = 2,
    cores: int = 1,
    initial_points: Optional[Sequence[NDArray[np.float64]]] = None,
):
    """
    Run independent chains on one model and collect them in a ChainStore.

    Parameters
    ----------
    model : ModelSpec
        Anything with ``log_density``, ``initial_point`` and ``layout``
    num_samples : int
        Post-adaptation draws per chain
    config : SamplerConfig, optional
        Shared configuration; chain i runs with seed ``config.seed + i``.
        If the seed is None, a random base seed is drawn.
    chains : int
        Number of chains. Default 2.
    cores : int
        Chains run concurrently in a thread pool when > 1. Default 1.
    initial_points : sequence of NDArray, optional
        One starting point per chain. If None, ``model.initial_point(seed)``.

    Returns
    -------
    store : ChainStore
        Built after every chain has finished.
    """
    from inference.chains import ChainStore

    if chains < 1:
        raise ValueError(f"chains must be >= 1. Got {chains}")
    if cores < 1:
        raise ValueError(f"cores must be >= 1. Got {cores}")
    if initial_points is not None and len(initial_points) != chains:
        raise ValueError(
            f"Need one initial point per chain ({chains}). Got {len(initial_points)}"
        )

    config = config or SamplerConfig()
    base_seed = config.seed
    if base_seed is None:
        base_seed = int(np.random.default_rng().integers(2**31 - 1))

    def run_one(chain_id: int) -> Chain:
        seed = base_seed + chain_id
        start = (
            initial_points[chain_id] if initial_points is not None
            else model.initial_point(seed)
        )
        sampler = HMCSampler(config.replace(seed=seed))
        return sampler.run(
            model.log_density, start, num_samples, chain_id=chain_id, layout=model.layout
        )

    logger.info(
        "Sampling %d chain(s) x %d draws on %d core(s), base seed %d",
        chains, num_samples, cores, base_seed,
    )
    if cores == 1 or chains == 1:
        results = [run_one(i) for i in range(chains)]
    else:
        with ThreadPoolExecutor(max_workers=min(cores, chains)) as pool:
            futures = [pool.submit(run_one, i) for i in range(chains)]
            results = [future.result() for future in futures]

    return ChainStore(model.layout, results)
