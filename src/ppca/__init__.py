"""
Probabilistic PCA model definition.

This module defines the generative model whose posterior the inference
package samples:
1. BlockLayout: offset table of the flat parameter vector (Z, W, mu, tau, alpha)
2. ModelSpec: log-joint density and gradient, fixed-rank or ARD
3. Exceptions shared by the whole engine

**Usage:**
```python
from ppca.model_spec import ModelSpec

model = ModelSpec(X, n_components=2)        # or ModelSpec(X, ard=True)
logp, grad = model.log_density(model.initial_point(seed=0))
```
"""

from ppca.exceptions import (
    PPCAError,
    InvalidShape,
    NumericalRejection,
    DivergentChain,
    DiagnosticsUnavailable,
)
from ppca.layout import ARDColumn, Block, BlockLayout
from ppca.model_spec import ModelSpec, PriorSpec

__all__ = [
    "PPCAError",
    "InvalidShape",
    "NumericalRejection",
    "DivergentChain",
    "DiagnosticsUnavailable",
    "ARDColumn",
    "Block",
    "BlockLayout",
    "ModelSpec",
    "PriorSpec",
]
