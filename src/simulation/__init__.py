"""
Synthetic data generation for probabilistic PCA.

**Usage:**
```python
from simulation.synthetic import simulate_ppca, simulate_grouped_blocks

X, true_params = simulate_ppca(n_obs=200, n_features=5, n_components=2, seed=0)
X, labels = simulate_grouped_blocks(n_per_group=30, n_features=9, seed=0)
```
"""

from simulation.synthetic import (
    TrueParameters,
    simulate_ard,
    simulate_grouped_blocks,
    simulate_ppca,
)

__all__ = [
    "TrueParameters",
    "simulate_ard",
    "simulate_grouped_blocks",
    "simulate_ppca",
]
