import numpy as np
import pytest

import adjacency
from model import CountData
from settings import RunConfig


@pytest.fixture
def ring4():
    return adjacency.ring(4)


@pytest.fixture
def counts4():
    return CountData.from_arrays([5, 3, 4, 6], [4.0, 4.0, 4.0, 4.0], names=["flu"])


@pytest.fixture
def counts4x3():
    observed = np.array([[5, 2, 7],
                         [3, 4, 5],
                         [4, 1, 6],
                         [6, 3, 8]])
    expected = np.array([[4.0, 2.5, 6.0],
                         [4.0, 2.5, 6.0],
                         [4.0, 2.5, 6.0],
                         [4.0, 2.5, 6.0]])
    return CountData.from_arrays(observed, expected, names=["a", "b", "c"])


@pytest.fixture
def quick():
    # 2 chains x 1000 draws
    return RunConfig(n_iter=1200, n_burnin=200, n_chains=2, n_thin=1, seed=7, backend="serial")


@pytest.fixture
def tiny():
    return RunConfig(n_iter=60, n_burnin=20, n_chains=2, n_thin=2, seed=11, backend="serial")
