"""
Block-offset table for the flat p-PCA parameter vector.

The sampler works on one unconstrained vector. This module fixes how that
vector is cut into named blocks:

    [ Z (K x N) | W (D x K) | mu (D) | log_tau (1) | log_alpha (K) ]
                                       `------ ARD model only ------'

Matrices are stored row-major (C order). Positive parameters (tau, alpha) are
kept in log-space; asking for them by their constrained name ("tau",
"alpha") returns exp-transformed values.
"""

from typing import Dict, Iterable, List, Optional, Tuple
import numpy as np
from numpy.typing import NDArray

from ppca.exceptions import InvalidShape


class Block:
    """
    One named, contiguous slice of the parameter vector.

    Attributes
    ----------
    name : str
        Raw (unconstrained) block name, e.g. "log_alpha"
    shape : Tuple[int, ...]
        Natural shape of the block ((): scalar)
    offset : int
        Index of the first element in the flat vector
    log_transformed : bool
        True if the stored values are logs of a positive parameter
    """

    def __init__(
        self,
        name: str,
        shape: Tuple[int, ...],
        offset: int,
        log_transformed: bool = False,
    ) -> None:
        self.name = name
        self.shape = tuple(int(s) for s in shape)
        self.offset = int(offset)
        self.log_transformed = log_transformed

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def stop(self) -> int:
        return self.offset + self.size

    @property
    def slice(self) -> slice:
        return slice(self.offset, self.stop)

    @property
    def constrained_name(self) -> str:
        """Name of the block on its natural scale ("log_alpha" -> "alpha")."""
        if self.log_transformed and self.name.startswith("log_"):
            return self.name[len("log_"):]
        return self.name

    def constrain(self, values: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map stored values to the natural scale."""
        return np.exp(values) if self.log_transformed else values

    def element_names(self, constrained: bool = True) -> List[str]:
        """Per-element labels such as ``W[3,1]``, in storage order."""
        name = self.constrained_name if constrained else self.name
        if self.shape == ():
            return [name]
        return [
            f"{name}[{','.join(str(i) for i in idx)}]"
            for idx in np.ndindex(*self.shape)
        ]

    def __repr__(self) -> str:
        return (
            f"Block(name={self.name!r}, shape={self.shape}, "
            f"offset={self.offset}, log_transformed={self.log_transformed})"
        )


class ARDColumn:
    """A loading-matrix column together with the precision that governs it."""

    def __init__(self, index: int, precision: float, loading: NDArray[np.float64]) -> None:
        self.index = index
        self.precision = float(precision)
        self.loading = loading

    @property
    def scale(self) -> float:
        """Prior standard deviation of each entry of the column."""
        return 1.0 / np.sqrt(self.precision)

    def __repr__(self) -> str:
        return (
            f"ARDColumn(index={self.index}, precision={self.precision:.4g}, "
            f"norm={np.linalg.norm(self.loading):.4g})"
        )


class BlockLayout:
    """
    Ordered offset table mapping block names to index ranges.

    Shared by the model (to slice the symbolic vector), the sampler (to name
    the block behind a non-finite gradient) and the chain store (to reshape
    draws).
    """

    def __init__(self, blocks: Iterable[Block]) -> None:
        self.blocks: List[Block] = list(blocks)
        self._by_name: Dict[str, Block] = {}

        expected_offset = 0
        for block in self.blocks:
            if block.offset != expected_offset:
                raise InvalidShape(
                    f"Block {block.name!r} starts at {block.offset}, "
                    f"expected {expected_offset}"
                )
            if block.name in self._by_name:
                raise InvalidShape(f"Duplicate block name {block.name!r}")
            self._by_name[block.name] = block
            expected_offset = block.stop

        self.size = expected_offset

    @classmethod
    def from_shapes(
        cls,
        shapes: Iterable[Tuple[str, Tuple[int, ...]]],
        log_transformed: Iterable[str] = (),
    ) -> "BlockLayout":
        """Build a layout by packing the given (name, shape) pairs in order."""
        log_names = set(log_transformed)
        blocks = []
        offset = 0
        for name, shape in shapes:
            block = Block(name, shape, offset, log_transformed=name in log_names)
            blocks.append(block)
            offset = block.stop
        return cls(blocks)

    @classmethod
    def fixed_rank(cls, n_obs: int, n_features: int, n_components: int) -> "BlockLayout":
        """Layout of the fixed-rank model: Z, W, mu."""
        return cls.from_shapes([
            ("Z", (n_components, n_obs)),
            ("W", (n_features, n_components)),
            ("mu", (n_features,)),
        ])

    @classmethod
    def ard(cls, n_obs: int, n_features: int) -> "BlockLayout":
        """Layout of the ARD model: Z, W, mu, log_tau, log_alpha with K = D."""
        return cls.from_shapes(
            [
                ("Z", (n_features, n_obs)),
                ("W", (n_features, n_features)),
                ("mu", (n_features,)),
                ("log_tau", ()),
                ("log_alpha", (n_features,)),
            ],
            log_transformed=("log_tau", "log_alpha"),
        )

    @property
    def names(self) -> List[str]:
        """Raw block names in storage order."""
        return [block.name for block in self.blocks]

    def __contains__(self, name: str) -> bool:
        return self._lookup(name) is not None

    def __getitem__(self, name: str) -> Block:
        block = self._lookup(name)
        if block is None:
            raise KeyError(f"Unknown block {name!r}. Known blocks: {self.names}")
        return block

    def __iter__(self):
        return iter(self.blocks)

    def _lookup(self, name: str) -> Optional[Block]:
        if name in self._by_name:
            return self._by_name[name]
        # Constrained alias ("alpha" -> "log_alpha")
        return self._by_name.get(f"log_{name}")

    def extract(
        self,
        vector: NDArray[np.float64],
        name: str,
        constrained: bool = True,
    ) -> NDArray[np.float64]:
        """
        Cut one block out of a flat vector (or a stack of vectors).

        Parameters
        ----------
        vector : NDArray[np.float64]
            Shape (size,) or (..., size)
        name : str
            Raw or constrained block name
        constrained : bool
            Apply the block's transform. Default True.

        Returns
        -------
        values : NDArray[np.float64]
            Shape (*leading, *block.shape)
        """
        vector = np.asarray(vector)
        if vector.shape[-1] != self.size:
            raise InvalidShape(
                f"Parameter vector has length {vector.shape[-1]}, layout expects {self.size}"
            )
        block = self[name]
        values = vector[..., block.slice].reshape(vector.shape[:-1] + block.shape)
        if constrained:
            values = block.constrain(values)
        return values

    def pack(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        """
        Assemble a flat vector from raw (unconstrained) block values.

        Every block must be given; shapes must match exactly.
        """
        vector = np.empty(self.size, dtype=np.float64)
        for block in self.blocks:
            if block.name not in values:
                raise InvalidShape(f"Missing value for block {block.name!r}")
            value = np.asarray(values[block.name], dtype=np.float64)
            if value.shape != block.shape:
                raise InvalidShape(
                    f"Block {block.name!r} must have shape {block.shape}. Got {value.shape}"
                )
            vector[block.slice] = value.ravel()
        return vector

    def block_of(self, index: int) -> Block:
        """Block containing the given flat index."""
        if not (0 <= index < self.size):
            raise IndexError(f"Index {index} outside parameter vector of size {self.size}")
        for block in self.blocks:
            if index < block.stop:
                return block
        raise IndexError(index)  # unreachable for a consistent layout

    def parameter_names(self, constrained: bool = True) -> List[str]:
        """Labels for every entry of the flat vector, in storage order."""
        names: List[str] = []
        for block in self.blocks:
            names.extend(block.element_names(constrained=constrained))
        return names

    def ard_columns(self, vector: NDArray[np.float64]) -> List[ARDColumn]:
        """Pair each column of W with its precision (ARD layouts only)."""
        if "alpha" not in self:
            raise InvalidShape("Layout has no 'alpha' block; not an ARD model")
        W = self.extract(vector, "W")
        alpha = self.extract(vector, "alpha")
        return [ARDColumn(j, alpha[j], W[:, j]) for j in range(W.shape[1])]

    def __repr__(self) -> str:
        parts = ", ".join(f"{b.name}{list(b.shape)}@{b.offset}" for b in self.blocks)
        return f"BlockLayout({parts}; size={self.size})"
