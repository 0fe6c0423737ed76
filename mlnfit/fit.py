"""Fit the multinomial logistic-normal model with NumPyro.

Three backends are available:
- `fit_mstan`: NUTS (Hamiltonian Monte Carlo) with multiple chains
- `fit_mstan_vb`: variational inference, meanfield or fullrank
- `fit_mstan_optim`: MAP optimization with a Laplace approximation

Each prepares initial values, runs the engine and reshapes the draws into
an `MFit`. Parameters B, Sigma and eta come back draw-first.
"""

import time
from pathlib import Path

import jax
import jax.numpy as jnp
import jax.random as random
import matplotlib.pyplot as plt
import numpy as np
import numpyro
from numpyro.infer import MCMC, NUTS, SVI, Predictive, Trace_ELBO, autoguide, init_to_value
from numpyro.infer.util import unconstrain_fn

from .draws import clean_draws, flatten_draws
from .model import collapsed_generated_quantities, get_model
from .results import MFit, make_metadata, mean_ess
from .simulate import simulate_mdataset

DEFAULT_PARS = ("B", "Sigma", "eta")

# Added to every count before the ALR transform of the starting values
PSEUDOCOUNT = 0.65

VB_GUIDES = {
    "meanfield": autoguide.AutoNormal,
    "fullrank": autoguide.AutoMultivariateNormal,
}


def _resolve_seed(seed):
    if seed is None:
        seed = int(np.random.default_rng().integers(2**31 - 1))
    return seed


def random_init(Y, rng=None):
    """Random starting value for eta given (D, N) counts.

    ALR transform of the pseudo-counted data plus standard normal jitter.
    """
    rng = np.random.default_rng(rng)
    Y = np.asarray(Y, dtype=float) + PSEUDOCOUNT
    eta = np.log(Y[:-1] / Y[-1])
    return eta + rng.normal(size=eta.shape)


def make_inits(mdataset, chains=1, parameterization="collapsed", rng=None):
    """Initial values, one dict per chain.

    The uncollapsed model also starts Sigma at the identity (through its
    Cholesky factor) and B at its prior mean.
    """
    get_model(parameterization)
    rng = np.random.default_rng(rng)
    inits = []
    for _ in range(chains):
        init = {"eta": random_init(mdataset.Y, rng)}
        if parameterization == "uncollapsed":
            init["L_Sigma"] = np.eye(mdataset.D - 1)
            init["B"] = np.array(mdataset.Theta, dtype=float)
        inits.append(init)
    return inits


def _as_jax(values):
    return {k: jnp.asarray(v) for k, v in values.items()}


def _unconstrained_inits(model, model_kwargs, inits):
    """Map per-chain initial values onto the sampler's unconstrained space."""
    flat = [
        unconstrain_fn(model, (), model_kwargs, _as_jax(init))
        for init in inits
    ]
    if len(flat) == 1:
        return flat[0]
    return jax.tree_util.tree_map(lambda *xs: jnp.stack(xs), *flat)


def _return_sites(parameterization, return_all):
    if parameterization == "collapsed":
        return ["eta"]
    sites = list(DEFAULT_PARS)
    if return_all:
        sites.append("L_Sigma")
    return sites


def _add_generated_quantities(samples, mdataset, parameterization, rng):
    """Fill in B and Sigma for the collapsed model from its eta draws."""
    samples = {k: np.asarray(v) for k, v in samples.items()}
    if parameterization == "collapsed":
        samples.update(
            collapsed_generated_quantities(
                samples["eta"],
                mdataset.X,
                mdataset.upsilon,
                mdataset.Theta,
                mdataset.Gamma,
                mdataset.Xi,
                rng=rng,
            )
        )
    return samples


def _build_mfit(pars, mdataset, metadata, return_all=False, hessian=None):
    extra = None
    if return_all:
        extra = {k: v for k, v in pars.items() if k not in DEFAULT_PARS}
    return MFit(
        N=mdataset.N,
        D=mdataset.D,
        Q=mdataset.Q,
        iter=pars["B"].shape[0],
        Lambda=pars["B"],
        Sigma=pars["Sigma"],
        mdataset=mdataset,
        Eta=pars["eta"],
        metadata=metadata,
        hessian=hessian,
        extra=extra,
    )


def fit_mstan(
    mdataset,
    chains=4,
    iter=2000,
    parameterization="collapsed",
    return_raw=False,
    return_all=False,
    seed=None,
    progress_bar=False,
    **kwargs,
):
    """Fit the model with NUTS.

    Parameters
    ----------
    mdataset : MDataset
    chains : int
        Number of chains.
    iter : int
        Iterations per chain including warmup; the first half is warmup.
    parameterization : str
        "collapsed" (default) or "uncollapsed".
    return_raw : bool
        Return the numpyro MCMC object instead of an MFit.
    return_all : bool
        Keep every sampled site, not just B, Sigma and eta.
    seed : int or None
        Seeds both the sampler and the initial values. Random when None.
    **kwargs
        Passed on to NUTS (e.g. target_accept_prob, max_tree_depth).

    Returns
    -------
    MFit (or MCMC when return_raw=True)
    """
    model = get_model(parameterization)
    if iter < 2:
        raise ValueError("iter must be at least 2 (half is warmup)")
    seed = _resolve_seed(seed)
    rng = np.random.default_rng(seed)
    model_kwargs = mdataset.model_kwargs()

    inits = make_inits(mdataset, chains, parameterization, rng)
    init_params = _unconstrained_inits(model, model_kwargs, inits)

    num_warmup = iter // 2
    kernel = NUTS(model, **kwargs)
    mcmc = MCMC(
        kernel,
        num_warmup=num_warmup,
        num_samples=iter - num_warmup,
        num_chains=chains,
        progress_bar=progress_bar,
    )

    start = time.time()
    mcmc.warmup(random.PRNGKey(seed), init_params=init_params, **model_kwargs)
    warmup_time = time.time() - start

    start = time.time()
    mcmc.run(mcmc.post_warmup_state.rng_key, **model_kwargs)
    sample_time = time.time() - start

    if return_raw:
        return mcmc

    samples = {k: np.asarray(v) for k, v in mcmc.get_samples(group_by_chain=True).items()}
    n_chains, n_draws = samples["eta"].shape[:2]
    merged = {k: v.reshape((n_chains * n_draws,) + v.shape[2:]) for k, v in samples.items()}
    merged = _add_generated_quantities(merged, mdataset, parameterization, rng)
    if not return_all:
        merged = {k: merged[k] for k in DEFAULT_PARS}

    B_by_chain = merged["B"].reshape((n_chains, n_draws) + merged["B"].shape[1:])
    ess = mean_ess(B_by_chain)

    print(
        f"NUTS ({parameterization}): {n_chains} chains x {n_draws} draws, "
        f"warmup {warmup_time:.1f}s, sampling {sample_time:.1f}s, "
        f"mean ESS(B) {ess:.0f}"
    )

    metadata = make_metadata(
        warmup_time, sample_time, ess, mdataset.Lambda_true, merged["B"]
    )
    return _build_mfit(merged, mdataset, metadata, return_all=return_all)


def fit_mstan_vb(
    mdataset,
    iter=2000,
    parameterization="collapsed",
    return_raw=False,
    return_all=False,
    algorithm="meanfield",
    num_steps=10000,
    step_size=0.005,
    seed=None,
    progress_bar=False,
):
    """Fit the model with stochastic variational inference.

    Parameters
    ----------
    iter : int
        Number of draws taken from the fitted approximation.
    algorithm : str
        "meanfield" (AutoNormal, default) or "fullrank"
        (AutoMultivariateNormal).
    num_steps, step_size : int, float
        Adam optimizer settings.

    Other parameters are as in `fit_mstan`. With return_raw=True a dict with
    the guide, the SVI result and the raw draws is returned.
    """
    model = get_model(parameterization)
    try:
        guide_cls = VB_GUIDES[algorithm]
    except KeyError:
        raise ValueError(
            f"Unknown algorithm {algorithm!r}; expected one of {sorted(VB_GUIDES)}"
        ) from None
    seed = _resolve_seed(seed)
    rng = np.random.default_rng(seed)
    model_kwargs = mdataset.model_kwargs()

    init = make_inits(mdataset, 1, parameterization, rng)[0]
    guide = guide_cls(model, init_loc_fn=init_to_value(values=_as_jax(init)))
    svi = SVI(model, guide, numpyro.optim.Adam(step_size=step_size), loss=Trace_ELBO())

    run_key, sample_key, predict_key = random.split(random.PRNGKey(seed), 3)
    start = time.time()
    svi_result = svi.run(run_key, num_steps, progress_bar=progress_bar, **model_kwargs)
    latent = guide.sample_posterior(sample_key, svi_result.params, sample_shape=(iter,))
    predictive = Predictive(
        model,
        posterior_samples=latent,
        return_sites=_return_sites(parameterization, return_all),
    )
    samples = predictive(predict_key, **model_kwargs)
    total_time = time.time() - start

    if return_raw:
        return {"guide": guide, "svi_result": svi_result, "samples": samples}

    pars = _add_generated_quantities(samples, mdataset, parameterization, rng)

    print(
        f"VB ({algorithm}, {parameterization}): {num_steps} steps, "
        f"final loss {float(svi_result.losses[-1]):.2f}, {total_time:.1f}s"
    )

    # Draws from the approximation are independent
    metadata = make_metadata(0.0, total_time, float(iter), mdataset.Lambda_true, pars["B"])
    return _build_mfit(pars, mdataset, metadata, return_all=return_all)


def fit_mstan_optim(
    mdataset,
    iter=2000,
    parameterization="collapsed",
    return_raw=False,
    hessian=False,
    num_steps=5000,
    step_size=0.01,
    seed=None,
    progress_bar=False,
):
    """Fit the model by MAP optimization and a Laplace approximation.

    Parameters
    ----------
    iter : int
        Number of draws from the Laplace approximation. With 0 only the
        mode is returned (a single draw).
    hessian : bool
        Also return the Hessian of the log density at the mode, on the
        unconstrained scale.

    Other parameters are as in `fit_mstan_vb`. With return_raw=True a dict
    is returned with the mode ("par"), the reshaped draws ("theta_tilde"),
    the log density at the mode ("value"), the Hessian and the SVI result.
    """
    model = get_model(parameterization)
    seed = _resolve_seed(seed)
    rng = np.random.default_rng(seed)
    model_kwargs = mdataset.model_kwargs()

    init = make_inits(mdataset, 1, parameterization, rng)[0]
    guide = autoguide.AutoLaplaceApproximation(
        model, init_loc_fn=init_to_value(values=_as_jax(init))
    )
    svi = SVI(model, guide, numpyro.optim.Adam(step_size=step_size), loss=Trace_ELBO())

    run_key, sample_key, predict_key = random.split(random.PRNGKey(seed), 3)
    start = time.time()
    svi_result = svi.run(run_key, num_steps, progress_bar=progress_bar, **model_kwargs)
    mode = guide.median(svi_result.params)
    if iter > 0:
        latent = guide.sample_posterior(sample_key, svi_result.params, sample_shape=(iter,))
    else:
        latent = {k: v[jnp.newaxis] for k, v in mode.items()}
    predictive = Predictive(
        model,
        posterior_samples=latent,
        return_sites=_return_sites(parameterization, return_all=True),
    )
    samples = _add_generated_quantities(
        predictive(predict_key, **model_kwargs), mdataset, parameterization, rng
    )
    total_time = time.time() - start

    # Draws leave the optimizer as a flat table, one column per scalar
    theta_tilde = clean_draws(flatten_draws(samples))

    H = None
    if hessian:
        scale_tril = np.asarray(guide.get_transform(svi_result.params).scale_tril)
        H = -np.linalg.inv(scale_tril @ scale_tril.T)

    if return_raw:
        return {
            "par": {k: np.asarray(v) for k, v in mode.items()},
            "theta_tilde": theta_tilde,
            "value": -float(svi_result.losses[-1]),
            "hessian": H,
            "svi_result": svi_result,
        }

    print(
        f"MAP ({parameterization}): {num_steps} steps, "
        f"log density {-float(svi_result.losses[-1]):.2f}, {total_time:.1f}s"
    )

    pars = {k: theta_tilde[k] for k in DEFAULT_PARS}
    n_draws = pars["B"].shape[0]
    metadata = make_metadata(0.0, total_time, float(n_draws), mdataset.Lambda_true, pars["B"])
    return _build_mfit(pars, mdataset, metadata, hessian=H)


def plot_lambda_recovery(mfit, out_path=None):
    """Plot posterior mean and 95% interval of Lambda against the truth."""
    Lambda_true = mfit.mdataset.Lambda_true
    if Lambda_true is None:
        raise ValueError("Dataset has no Lambda_true to compare against")

    summary = mfit.summary()
    truth = np.asarray(Lambda_true).ravel()
    mean = summary["mean"].ravel()
    lower = summary["lower"].ravel()
    upper = summary["upper"].ravel()

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.errorbar(
        truth, mean, yerr=[mean - lower, upper - mean],
        fmt="o", color="steelblue", ecolor="lightsteelblue", alpha=0.8,
        label="Posterior mean, 95% interval",
    )
    lims = [min(truth.min(), lower.min()), max(truth.max(), upper.max())]
    ax.plot(lims, lims, color="coral", linestyle="--", label="y = x")
    ax.set_xlabel("True Lambda")
    ax.set_ylabel("Estimated Lambda")
    ax.set_title(f"Lambda recovery (N={mfit.N}, D={mfit.D}, Q={mfit.Q})")
    ax.legend()

    plt.tight_layout()
    if out_path is None:
        out_path = Path.cwd() / "lambda_recovery.png"
    plt.savefig(out_path, dpi=150)
    plt.close(fig)
    print(f"Saved {out_path}")
    return out_path


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(
        description="Simulate a dataset and fit the multinomial logistic-normal model"
    )
    parser.add_argument(
        "--method", choices=["hmc", "vb", "optim"], default="hmc",
        help="Inference backend",
    )
    parser.add_argument(
        "--parameterization", choices=["collapsed", "uncollapsed"], default="collapsed",
    )
    parser.add_argument("--N", type=int, default=50, help="Number of samples")
    parser.add_argument("--D", type=int, default=10, help="Number of categories")
    parser.add_argument("--Q", type=int, default=2, help="Number of covariates")
    parser.add_argument("--chains", type=int, default=4, help="NUTS chains")
    parser.add_argument("--iter", type=int, default=2000, help="Iterations / draws")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument(
        "--plot", type=Path, default=None,
        help="Save a Lambda recovery plot to this path",
    )
    args = parser.parse_args(argv)

    mdataset = simulate_mdataset(N=args.N, D=args.D, Q=args.Q, seed=args.seed)
    print(f"Simulated dataset: N={mdataset.N}, D={mdataset.D}, Q={mdataset.Q}")

    if args.method == "hmc":
        mfit = fit_mstan(
            mdataset, chains=args.chains, iter=args.iter,
            parameterization=args.parameterization, seed=args.seed, progress_bar=True,
        )
    elif args.method == "vb":
        mfit = fit_mstan_vb(
            mdataset, iter=args.iter, parameterization=args.parameterization,
            seed=args.seed, progress_bar=True,
        )
    else:
        mfit = fit_mstan_optim(
            mdataset, iter=args.iter, parameterization=args.parameterization,
            seed=args.seed, progress_bar=True,
        )

    meta = mfit.metadata
    print("\n=== Fit metadata ===")
    print(f"  Warmup time:      {meta.warmup_time:.2f}s")
    print(f"  Sampling time:    {meta.sample_time:.2f}s")
    print(f"  Mean ESS (B):     {meta.mean_ess:.0f}")
    print(f"  Lambda RMSE:      {meta.lambda_rmse:.4f}")
    print(f"  Outside 95% CI:   {meta.outside_percent:.1f}%")

    if args.plot is not None:
        plot_lambda_recovery(mfit, args.plot)

    return mfit
