"""NumPyro model specifications for multinomial logistic-normal regression.

Counts are modelled in ALR coordinates with the last category as reference:

    Y_j   ~ Multinomial(n_j, alr_inv(eta_j))
    eta   ~ MN(B X, Sigma, I_N)
    B     ~ MN(Theta, Sigma, Gamma)
    Sigma ~ InvWishart(upsilon, Xi)

Two parameterizations are provided. The uncollapsed model samples eta, B and
Sigma jointly. The collapsed model integrates B and Sigma out analytically so
NUTS only explores eta; B and Sigma are then drawn from their conjugate
conditional posterior afterwards (see `collapsed_generated_quantities`).
"""

import jax.numpy as jnp
import numpy as np
import numpyro
import numpyro.distributions as dist
from jax.scipy.linalg import solve_triangular
from jax.scipy.special import multigammaln
from numpyro.distributions import constraints
from scipy import stats


def alr_inv_logits(eta):
    """Append the reference category to (D-1, N) log-ratios.

    Returns (N, D) logits, one row per sample.
    """
    return jnp.concatenate([eta, jnp.zeros((1, eta.shape[1]))], axis=0).T


def _logdet_chol(L):
    return 2.0 * jnp.sum(jnp.log(jnp.diagonal(L)))


def matrix_normal_logpdf(value, mean, row_cov, col_cov):
    """Log density of MN(mean, row_cov, col_cov) evaluated at `value`."""
    n, p = value.shape
    L_row = jnp.linalg.cholesky(row_cov)
    L_col = jnp.linalg.cholesky(col_cov)
    z = solve_triangular(L_row, value - mean, lower=True)
    z = solve_triangular(L_col, z.T, lower=True)
    return -0.5 * (
        n * p * jnp.log(2 * jnp.pi)
        + p * _logdet_chol(L_row)
        + n * _logdet_chol(L_col)
        + jnp.sum(z**2)
    )


def inv_wishart_logpdf(value, df, scale):
    """Log density of InvWishart(df, scale) evaluated at `value`."""
    p = value.shape[-1]
    L = jnp.linalg.cholesky(value)
    L_scale = jnp.linalg.cholesky(scale)
    # tr(scale value^-1)
    trace = jnp.sum(solve_triangular(L, L_scale, lower=True) ** 2)
    return (
        0.5 * df * _logdet_chol(L_scale)
        - 0.5 * df * p * jnp.log(2.0)
        - multigammaln(0.5 * df, p)
        - 0.5 * (df + p + 1) * _logdet_chol(L)
        - 0.5 * trace
    )


def matrix_t_logpdf(value, mean, row_scale, col_cov, df):
    """Log density of the matrix-t obtained by integrating Sigma out of

    value | Sigma ~ MN(mean, Sigma, col_cov),  Sigma ~ InvWishart(df, row_scale).
    """
    p, n = value.shape
    resid = value - mean
    L_col = jnp.linalg.cholesky(col_cov)
    z = solve_triangular(L_col, resid.T, lower=True)
    L_post = jnp.linalg.cholesky(row_scale + z.T @ z)
    return (
        multigammaln(0.5 * (df + n), p)
        - multigammaln(0.5 * df, p)
        - 0.5 * p * n * jnp.log(jnp.pi)
        - 0.5 * p * _logdet_chol(L_col)
        + 0.5 * df * _logdet_chol(jnp.linalg.cholesky(row_scale))
        - 0.5 * (df + n) * _logdet_chol(L_post)
    )


def _likelihood(Y, eta):
    with numpyro.plate("samples", Y.shape[1]):
        numpyro.sample(
            "Y",
            dist.Multinomial(total_count=Y.sum(axis=0), logits=alr_inv_logits(eta)),
            obs=Y.T,
        )


def uncollapsed_model(Y, X, upsilon, Theta, Gamma, Xi):
    """Joint model over eta, B and Sigma.

    Parameters
    ----------
    Y : jnp.ndarray
        (D, N) counts.
    X : jnp.ndarray
        (Q, N) covariates.
    upsilon : float
        Inverse Wishart degrees of freedom.
    Theta : jnp.ndarray
        (D-1, Q) prior mean of B.
    Gamma : jnp.ndarray
        (Q, Q) prior column covariance of B.
    Xi : jnp.ndarray
        (D-1, D-1) inverse Wishart scale.
    """
    P = Y.shape[0] - 1
    N = Y.shape[1]
    Q = X.shape[0]

    # Sigma is sampled through its Cholesky factor
    L_Sigma = numpyro.sample(
        "L_Sigma",
        dist.ImproperUniform(constraints.lower_cholesky, (), event_shape=(P, P)),
    )
    Sigma = numpyro.deterministic("Sigma", L_Sigma @ L_Sigma.T)
    # log |d Sigma / d L_Sigma|
    log_jac = P * jnp.log(2.0) + jnp.sum(
        (P - jnp.arange(P)) * jnp.log(jnp.diagonal(L_Sigma))
    )
    numpyro.factor("Sigma_prior", inv_wishart_logpdf(Sigma, upsilon, Xi) + log_jac)

    B = numpyro.sample(
        "B", dist.ImproperUniform(constraints.real, (), event_shape=(P, Q))
    )
    numpyro.factor("B_prior", matrix_normal_logpdf(B, Theta, Sigma, Gamma))

    eta = numpyro.sample(
        "eta", dist.ImproperUniform(constraints.real, (), event_shape=(P, N))
    )
    numpyro.factor("eta_prior", matrix_normal_logpdf(eta, B @ X, Sigma, jnp.eye(N)))

    _likelihood(Y, eta)


def collapsed_model(Y, X, upsilon, Theta, Gamma, Xi):
    """Model over eta alone, with B and Sigma marginalised.

    Takes the same arguments as `uncollapsed_model`.
    """
    P = Y.shape[0] - 1
    N = Y.shape[1]

    eta = numpyro.sample(
        "eta", dist.ImproperUniform(constraints.real, (), event_shape=(P, N))
    )
    K = jnp.eye(N) + X.T @ Gamma @ X
    numpyro.factor("eta_prior", matrix_t_logpdf(eta, Theta @ X, Xi, K, upsilon))

    _likelihood(Y, eta)


def collapsed_generated_quantities(eta, X, upsilon, Theta, Gamma, Xi, rng=None):
    """Draw B and Sigma from p(B, Sigma | eta) for each draw of eta.

    Parameters
    ----------
    eta : np.ndarray
        (n_draws, D-1, N) draws of eta.
    rng : np.random.Generator, int or None

    Returns
    -------
    dict with "B" (n_draws, D-1, Q) and "Sigma" (n_draws, D-1, D-1).
    """
    rng = np.random.default_rng(rng)
    eta = np.asarray(eta, dtype=float)
    X = np.asarray(X, dtype=float)
    Theta = np.asarray(Theta, dtype=float)
    Xi = np.asarray(Xi, dtype=float)
    Gamma_inv = np.linalg.inv(np.asarray(Gamma, dtype=float))

    n_draws, P, N = eta.shape
    Q = X.shape[0]

    # Conditional posterior quantities shared by every draw
    A = np.linalg.inv(X @ X.T + Gamma_inv)
    A = 0.5 * (A + A.T)
    L_A = np.linalg.cholesky(A)
    upsilon_n = upsilon + N

    B = np.empty((n_draws, P, Q))
    Sigma = np.empty((n_draws, P, P))
    for d in range(n_draws):
        B_n = (eta[d] @ X.T + Theta @ Gamma_inv) @ A
        resid = eta[d] - B_n @ X
        shift = B_n - Theta
        Xi_n = Xi + resid @ resid.T + shift @ Gamma_inv @ shift.T
        Xi_n = 0.5 * (Xi_n + Xi_n.T)

        S = stats.invwishart.rvs(df=upsilon_n, scale=Xi_n, random_state=rng)
        Sigma[d] = np.reshape(S, (P, P))
        Z = rng.standard_normal((P, Q))
        B[d] = B_n + np.linalg.cholesky(Sigma[d]) @ Z @ L_A.T

    return {"B": B, "Sigma": Sigma}


MODELS = {
    "collapsed": collapsed_model,
    "uncollapsed": uncollapsed_model,
}


def get_model(parameterization):
    """Look up a model function by parameterization name."""
    try:
        return MODELS[parameterization]
    except KeyError:
        raise ValueError(
            f"Unknown parameterization {parameterization!r}; "
            f"expected one of {sorted(MODELS)}"
        ) from None
