import matplotlib
import numpyro
import pytest

from mlnfit.simulate import simulate_mdataset

matplotlib.use("Agg")
numpyro.enable_x64()


@pytest.fixture
def mdataset():
    return simulate_mdataset(N=8, D=3, Q=2, seed=1, mean_depth=200)
