# tests/conftest.py
import numpy as np
import pandas as pd
import pytest

from lpa_engine._data import Dataset


def make_spherical_clusters(means, n_per_cluster, sd=1.0, seed=0):
    """Rows drawn from spherical Gaussians; returns (X, labels) with labels in the order of `means`."""
    rng = np.random.default_rng(seed)
    means = np.asarray(means, dtype=np.float64)
    X = np.concatenate([m + sd * rng.standard_normal((n_per_cluster, means.shape[1])) for m in means])
    labels = np.repeat(np.arange(len(means)), n_per_cluster)
    return X, labels


@pytest.fixture
def two_profile_frame():
    """1000 rows, 2 indicators, two unit-variance profiles centred at 65 and 85, weights .5/.5."""
    rng = np.random.default_rng(2019)
    n = 1000
    membership = rng.random(n) < 0.5
    centre = np.where(membership, 65.0, 85.0)
    X = centre[:, None] + rng.standard_normal((n, 2))
    return pd.DataFrame(X, columns=["x", "y"])


@pytest.fixture
def pisa_like_frame():
    """PISA-style attitudes: three indicators on a 1-4 scale from three latent groups."""
    rng = np.random.default_rng(15)
    centres = np.array([
        [1.6, 1.8, 2.0],
        [2.6, 2.7, 2.5],
        [3.5, 3.6, 3.3],
    ])
    sizes = [150, 250, 200]
    blocks = [c + 0.35 * rng.standard_normal((n, 3)) for c, n in zip(centres, sizes)]
    X = np.concatenate(blocks)
    order = rng.permutation(len(X))
    return pd.DataFrame(X[order], columns=["broad_interest", "enjoyment", "self_efficacy"])


@pytest.fixture
def pisa_like(pisa_like_frame):
    return Dataset.from_frame(pisa_like_frame)


@pytest.fixture
def two_profile(two_profile_frame):
    return Dataset.from_frame(two_profile_frame)
