import numpy as np
import pytest

from mlnfit.simulate import MDataset, default_priors, simulate_mdataset


def test_simulated_shapes():
    m = simulate_mdataset(N=12, D=5, Q=3, seed=0)
    assert (m.N, m.D, m.Q) == (12, 5, 3)
    assert m.Y.shape == (5, 12)
    assert m.X.shape == (3, 12)
    assert m.Lambda_true.shape == (4, 3)
    assert m.Sigma_true.shape == (4, 4)
    np.testing.assert_array_equal(m.X[0], 1.0)
    assert np.all(m.Y >= 0)
    assert np.all(m.Y.sum(axis=0) > 0)


def test_simulation_is_seeded():
    a = simulate_mdataset(N=5, D=3, Q=2, seed=7)
    b = simulate_mdataset(N=5, D=3, Q=2, seed=7)
    np.testing.assert_array_equal(a.Y, b.Y)


def test_default_priors():
    upsilon, Theta, Gamma, Xi = default_priors(D=4, Q=2)
    assert upsilon == 14
    assert Theta.shape == (3, 2)
    np.testing.assert_array_equal(Gamma, np.eye(2))
    np.testing.assert_allclose(np.diag(Xi), 10.0)
    np.testing.assert_allclose(Xi[0, 1], 4.0)


def test_model_kwargs(mdataset):
    kwargs = mdataset.model_kwargs()
    assert set(kwargs) == {"Y", "X", "upsilon", "Theta", "Gamma", "Xi"}
    assert kwargs["Y"].shape == (mdataset.D, mdataset.N)


def test_mismatched_samples_rejected():
    with pytest.raises(ValueError, match="samples"):
        MDataset(
            Y=np.ones((3, 4)), X=np.ones((2, 5)), upsilon=5,
            Theta=np.zeros((2, 2)), Gamma=np.eye(2), Xi=np.eye(2),
        )


def test_invalid_dimensions_rejected():
    with pytest.raises(ValueError):
        simulate_mdataset(D=1)
