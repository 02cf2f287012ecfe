"""
Container for the chains of one inference run.

A ChainStore is built once all chains have finished and is read-only from
then on. It turns raw flat draws back into named parameter blocks using the
model's BlockLayout, so downstream code never depends on iteration order or
on positional indexing into the flat vector.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import numpy as np
from numpy.typing import NDArray
import arviz as az

from ppca.exceptions import InvalidShape
from ppca.layout import BlockLayout
from inference.sampler import Chain

# Named dimensions of the p-PCA blocks, used for InferenceData export
BLOCK_DIMS: Dict[str, Tuple[str, ...]] = {
    "Z": ("latent", "obs"),
    "W": ("feature", "latent"),
    "mu": ("feature",),
    "tau": (),
    "alpha": ("latent",),
}


class ChainStore:
    """
    Read-only collection of chains sharing one parameter layout.

    Attributes
    ----------
    layout : BlockLayout
        Offset table of the sampled vector
    chains : Tuple[Chain, ...]
        Chains ordered by chain id
    """

    def __init__(self, layout: BlockLayout, chains: Sequence[Chain]) -> None:
        """
        Initialize chain store.

        Parameters
        ----------
        layout : BlockLayout
            Layout the chains were sampled with
        chains : sequence of Chain
            At least one finished chain

        Raises
        ------
        InvalidShape
            If no chain is given or a chain's dimension disagrees with the layout.
        """
        if len(chains) == 0:
            raise InvalidShape("ChainStore needs at least one chain")
        for chain in chains:
            if chain.dim != layout.size:
                raise InvalidShape(
                    f"Chain {chain.chain_id} has dimension {chain.dim}, "
                    f"layout expects {layout.size}"
                )
        self.layout = layout
        self.chains: Tuple[Chain, ...] = tuple(sorted(chains, key=lambda c: c.chain_id))

    @property
    def n_chains(self) -> int:
        return len(self.chains)

    @property
    def equal_length(self) -> bool:
        return len({chain.n_draws for chain in self.chains}) == 1

    def _require_equal_length(self) -> None:
        if not self.equal_length:
            raise InvalidShape(
                f"Chains have unequal lengths: {[c.n_draws for c in self.chains]}"
            )

    @property
    def n_draws(self) -> int:
        """Draws per chain; chains must have equal length."""
        self._require_equal_length()
        return self.chains[0].n_draws

    @property
    def total_draws(self) -> int:
        return sum(chain.n_draws for chain in self.chains)

    @property
    def divergence_count(self) -> int:
        return sum(chain.divergence_count for chain in self.chains)

    @property
    def acceptance_rate(self) -> float:
        """Post-adaptation acceptance rate over all chains."""
        accepted = np.concatenate([c.accepted[c.n_warmup:] for c in self.chains])
        return float(accepted.mean()) if accepted.size else float("nan")

    def draws_array(self) -> NDArray[np.float64]:
        """Raw draws, shape (n_chains, n_draws, dim)."""
        self._require_equal_length()
        return np.stack([chain.draws for chain in self.chains])

    def samples_for(self, name: str) -> NDArray[np.float64]:
        """
        All draws of one block, chains concatenated in chain-id order.

        Parameters
        ----------
        name : str
            Block name, raw ("log_alpha") or constrained ("alpha")

        Returns
        -------
        samples : NDArray[np.float64]
            Shape (total_draws, *block.shape), on the scale implied by ``name``
        """
        constrained = not name.startswith("log_")
        flat = np.concatenate([chain.draws for chain in self.chains], axis=0)
        return self.layout.extract(flat, name, constrained=constrained)

    def chain_array(self, name: str) -> NDArray[np.float64]:
        """One block per chain, shape (n_chains, n_draws, *block.shape)."""
        constrained = not name.startswith("log_")
        return self.layout.extract(self.draws_array(), name, constrained=constrained)

    def reshape_mean(
        self,
        name: str,
        shape: Optional[Tuple[int, ...]] = None,
    ) -> NDArray[np.float64]:
        """
        Posterior mean of a block over all draws of all chains.

        Parameters
        ----------
        name : str
            Block name
        shape : Tuple[int, ...], optional
            Target shape. If None, the block's natural shape.

        Returns
        -------
        mean : NDArray[np.float64]

        Raises
        ------
        InvalidShape
            If ``shape`` does not hold exactly the block's number of elements.
        """
        block = self.layout[name]
        mean = self.samples_for(name).mean(axis=0)
        if shape is None:
            return mean
        shape = tuple(shape)
        if int(np.prod(shape, dtype=np.int64)) != block.size:
            raise InvalidShape(
                f"Cannot reshape block {name!r} of size {block.size} into {shape}"
            )
        return mean.reshape(shape)

    def flatten(self) -> Dict[str, NDArray[np.float64]]:
        """Draws keyed by element label, e.g. ``{"W[0,1]": (total_draws,)}``."""
        flat = np.concatenate([chain.draws for chain in self.chains], axis=0)
        out: Dict[str, NDArray[np.float64]] = {}
        for block in self.layout:
            values = block.constrain(flat[:, block.slice])
            for j, label in enumerate(block.element_names()):
                out[label] = values[:, j]
        return out

    def to_inference_data(self) -> az.InferenceData:
        """
        Export to arviz InferenceData.

        Posterior variables use constrained names (alpha, tau); sample_stats
        carry diverging, acceptance_rate, step_size and lp for the
        post-adaptation draws.
        """
        posterior = {}
        dims = {}
        coords: Dict[str, NDArray[np.int64]] = {}
        for block in self.layout:
            name = block.constrained_name
            posterior[name] = self.chain_array(name)
            block_dims = BLOCK_DIMS.get(name)
            if block_dims is not None and len(block_dims) == len(block.shape):
                dims[name] = list(block_dims)
                for dim, size in zip(block_dims, block.shape):
                    coords.setdefault(dim, np.arange(size))

        def stat(attribute: str) -> NDArray:
            return np.stack([
                getattr(chain, attribute)[chain.n_warmup:] for chain in self.chains
            ])

        sample_stats = {
            "diverging": stat("diverging"),
            "acceptance_rate": stat("accept_prob"),
            "step_size": stat("step_size"),
            "lp": stat("log_density"),
        }
        return az.from_dict(
            posterior=posterior,
            sample_stats=sample_stats,
            coords=coords,
            dims=dims,
        )

    def __repr__(self) -> str:
        lengths: List[int] = [chain.n_draws for chain in self.chains]
        return (
            f"ChainStore(chains={self.n_chains}, draws={lengths}, "
            f"blocks={self.layout.names})"
        )
