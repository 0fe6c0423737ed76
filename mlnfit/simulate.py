"""Datasets for the multinomial logistic-normal regression model.

`MDataset` bundles the observed counts, covariates and prior hyperparameters
that make up the model payload. `simulate_mdataset` draws a synthetic dataset
from the generative model so fits can be scored against known parameters.
"""

from dataclasses import dataclass

import jax.numpy as jnp
import numpy as np


@dataclass
class MDataset:
    """Counts, covariates and priors for one fit.

    Y is (D, N) counts, X is (Q, N) covariates, Theta is (D-1, Q),
    Gamma is (Q, Q) and Xi is (D-1, D-1). Lambda_true and Sigma_true hold
    the generating parameters when the data were simulated.
    """

    Y: np.ndarray
    X: np.ndarray
    upsilon: float
    Theta: np.ndarray
    Gamma: np.ndarray
    Xi: np.ndarray
    Lambda_true: np.ndarray = None
    Sigma_true: np.ndarray = None

    def __post_init__(self):
        self.Y = np.asarray(self.Y)
        self.X = np.asarray(self.X, dtype=float)
        if self.Y.ndim != 2 or self.X.ndim != 2:
            raise ValueError("Y and X must be 2-d arrays (D x N and Q x N)")
        if self.Y.shape[1] != self.X.shape[1]:
            raise ValueError(
                f"Y has {self.Y.shape[1]} samples but X has {self.X.shape[1]}"
            )

    @property
    def N(self):
        return self.Y.shape[1]

    @property
    def D(self):
        return self.Y.shape[0]

    @property
    def Q(self):
        return self.X.shape[0]

    def model_kwargs(self):
        """Keyword arguments passed to the model functions."""
        return {
            "Y": jnp.asarray(self.Y),
            "X": jnp.asarray(self.X),
            "upsilon": float(self.upsilon),
            "Theta": jnp.asarray(self.Theta, dtype=float),
            "Gamma": jnp.asarray(self.Gamma, dtype=float),
            "Xi": jnp.asarray(self.Xi, dtype=float),
        }


def default_priors(D, Q):
    """Weakly informative priors used for simulated datasets.

    Returns upsilon, Theta, Gamma, Xi.
    """
    upsilon = D + 10
    Theta = np.zeros((D - 1, Q))
    Gamma = np.eye(Q)
    # Shared reference category induces positive correlation between ALR coords
    Xi = np.full((D - 1, D - 1), 0.4)
    np.fill_diagonal(Xi, 1.0)
    Xi = Xi * (upsilon - D)
    return upsilon, Theta, Gamma, Xi


def simulate_mdataset(N=50, D=10, Q=2, seed=0, mean_depth=5000):
    """Simulate counts from the generative model.

    Parameters
    ----------
    N : int
        Number of samples.
    D : int
        Number of multinomial categories.
    Q : int
        Number of covariates, including the intercept row.
    seed : int
        Seed for numpy's default_rng.
    mean_depth : float
        Mean of the Poisson-distributed total count per sample.

    Returns
    -------
    MDataset with Lambda_true and Sigma_true filled in.
    """
    if D < 2 or Q < 1 or N < 1:
        raise ValueError("need D >= 2, Q >= 1 and N >= 1")
    rng = np.random.default_rng(seed)
    P = D - 1

    X = np.vstack([np.ones((1, N)), rng.normal(size=(Q - 1, N))])

    # True covariance: random correlation-ish structure on the ALR scale
    U = rng.normal(size=(P, P))
    Sigma_true = 0.5 * (U @ U.T) / P + 0.5 * np.eye(P)
    L_Sigma = np.linalg.cholesky(Sigma_true)

    upsilon, Theta, Gamma, Xi = default_priors(D, Q)
    Lambda_true = Theta + L_Sigma @ rng.normal(size=(P, Q)) @ np.linalg.cholesky(Gamma).T
    eta = Lambda_true @ X + L_Sigma @ rng.normal(size=(P, N))

    # Inverse ALR with the last category as reference
    logits = np.vstack([eta, np.zeros((1, N))])
    pi = np.exp(logits - logits.max(axis=0))
    pi = pi / pi.sum(axis=0)

    depth = np.maximum(rng.poisson(mean_depth, size=N), 1)
    Y = np.column_stack([rng.multinomial(depth[j], pi[:, j]) for j in range(N)])

    return MDataset(
        Y=Y,
        X=X,
        upsilon=upsilon,
        Theta=Theta,
        Gamma=Gamma,
        Xi=Xi,
        Lambda_true=Lambda_true,
        Sigma_true=Sigma_true,
    )
