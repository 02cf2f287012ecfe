"""Shared fixtures for the p-PCA test suite.

For non-fixture helpers (GaussianTarget, NaNRegionTarget, make_chain),
see helpers.py.
"""

import numpy as np
import pytest

from tests.helpers import GaussianTarget


@pytest.fixture
def gaussian_target():
    """1-D normal target with mean 2 and sd 1.5."""
    return GaussianTarget(mean=2.0, sd=1.5)


@pytest.fixture
def small_data():
    """Small observation matrix, shape (12, 4)."""
    rng = np.random.default_rng(7)
    return rng.normal(size=(12, 4))
