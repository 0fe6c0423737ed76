import numpy as np
import pytest
from numpyro.infer import MCMC

from mlnfit.fit import (
    fit_mstan,
    fit_mstan_optim,
    fit_mstan_vb,
    main,
    make_inits,
    plot_lambda_recovery,
    random_init,
)
from mlnfit.results import MFit


def check_mfit(mfit, mdataset, n_draws):
    P = mdataset.D - 1
    assert isinstance(mfit, MFit)
    assert mfit.iter == n_draws
    assert mfit.Lambda.shape == (n_draws, P, mdataset.Q)
    assert mfit.Sigma.shape == (n_draws, P, P)
    assert mfit.Eta.shape == (n_draws, P, mdataset.N)
    assert mfit.mdataset is mdataset
    assert mfit.metadata.lambda_rmse is not None
    assert 0.0 <= mfit.metadata.outside_percent <= 100.0


def test_random_init(mdataset):
    eta = random_init(mdataset.Y, rng=0)
    assert eta.shape == (mdataset.D - 1, mdataset.N)
    assert np.all(np.isfinite(eta))
    assert not np.allclose(eta, random_init(mdataset.Y, rng=1))


def test_random_init_handles_zero_counts():
    Y = np.array([[0, 5], [3, 0], [0, 0]])
    assert np.all(np.isfinite(random_init(Y, rng=0)))


def test_make_inits(mdataset):
    inits = make_inits(mdataset, chains=3, parameterization="collapsed", rng=0)
    assert len(inits) == 3
    assert set(inits[0]) == {"eta"}
    assert not np.allclose(inits[0]["eta"], inits[1]["eta"])

    inits = make_inits(mdataset, chains=1, parameterization="uncollapsed", rng=0)
    np.testing.assert_array_equal(inits[0]["L_Sigma"], np.eye(mdataset.D - 1))
    np.testing.assert_array_equal(inits[0]["B"], mdataset.Theta)


def test_unknown_parameterization(mdataset):
    with pytest.raises(ValueError, match="parameterization"):
        make_inits(mdataset, parameterization="centered")
    with pytest.raises(ValueError, match="parameterization"):
        fit_mstan(mdataset, parameterization="centered")


def test_unknown_vb_algorithm(mdataset):
    with pytest.raises(ValueError, match="algorithm"):
        fit_mstan_vb(mdataset, algorithm="normalizing-flow")


@pytest.mark.parametrize("parameterization", ["collapsed", "uncollapsed"])
def test_fit_mstan(mdataset, parameterization):
    mfit = fit_mstan(
        mdataset, chains=2, iter=20, parameterization=parameterization, seed=0
    )
    check_mfit(mfit, mdataset, n_draws=20)
    assert mfit.metadata.warmup_time > 0
    assert isinstance(mfit.metadata.mean_ess, float)


def test_fit_mstan_return_raw(mdataset):
    mcmc = fit_mstan(mdataset, chains=1, iter=10, return_raw=True, seed=0)
    assert isinstance(mcmc, MCMC)
    assert mcmc.get_samples()["eta"].shape == (5, mdataset.D - 1, mdataset.N)


def test_fit_mstan_return_all(mdataset):
    mfit = fit_mstan(
        mdataset, chains=1, iter=10, parameterization="uncollapsed",
        return_all=True, seed=0,
    )
    assert set(mfit.extra) == {"L_Sigma"}
    np.testing.assert_allclose(np.triu(mfit.extra["L_Sigma"][0], k=1), 0.0)


@pytest.mark.parametrize("algorithm", ["meanfield", "fullrank"])
@pytest.mark.parametrize("parameterization", ["collapsed", "uncollapsed"])
def test_fit_mstan_vb(mdataset, algorithm, parameterization):
    mfit = fit_mstan_vb(
        mdataset, iter=15, parameterization=parameterization,
        algorithm=algorithm, num_steps=50, seed=0,
    )
    check_mfit(mfit, mdataset, n_draws=15)
    assert mfit.metadata.mean_ess == 15.0


def test_fit_mstan_vb_return_raw(mdataset):
    raw = fit_mstan_vb(mdataset, iter=4, num_steps=10, return_raw=True, seed=0)
    assert set(raw) == {"guide", "svi_result", "samples"}
    assert raw["samples"]["eta"].shape == (4, mdataset.D - 1, mdataset.N)


@pytest.mark.parametrize("parameterization", ["collapsed", "uncollapsed"])
def test_fit_mstan_optim(mdataset, parameterization):
    mfit = fit_mstan_optim(
        mdataset, iter=10, parameterization=parameterization, num_steps=200, seed=0
    )
    check_mfit(mfit, mdataset, n_draws=10)
    assert mfit.hessian is None


def test_fit_mstan_optim_mode_only(mdataset):
    mfit = fit_mstan_optim(mdataset, iter=0, num_steps=100, seed=0)
    check_mfit(mfit, mdataset, n_draws=1)


def test_fit_mstan_optim_hessian(mdataset):
    n_latent = (mdataset.D - 1) * mdataset.N
    mfit = fit_mstan_optim(mdataset, iter=5, num_steps=200, hessian=True, seed=0)
    assert mfit.hessian.shape == (n_latent, n_latent)
    np.testing.assert_allclose(mfit.hessian, mfit.hessian.T, atol=1e-6)


def test_fit_mstan_optim_return_raw(mdataset):
    raw = fit_mstan_optim(
        mdataset, iter=3, parameterization="uncollapsed", num_steps=50,
        return_raw=True, seed=0,
    )
    assert raw["par"]["eta"].shape == (mdataset.D - 1, mdataset.N)
    assert set(raw["theta_tilde"]) == {"B", "Sigma", "eta", "L_Sigma"}
    assert raw["theta_tilde"]["B"].shape == (3, mdataset.D - 1, mdataset.Q)
    assert np.isfinite(raw["value"])
    assert raw["hessian"] is None


def test_plot_lambda_recovery(mdataset, tmp_path):
    mfit = fit_mstan_optim(mdataset, iter=20, num_steps=100, seed=0)
    out = plot_lambda_recovery(mfit, tmp_path / "recovery.png")
    assert out.exists()


def test_plot_requires_ground_truth(mdataset):
    mfit = fit_mstan_optim(mdataset, iter=2, num_steps=10, seed=0)
    mdataset.Lambda_true = None
    with pytest.raises(ValueError, match="Lambda_true"):
        plot_lambda_recovery(mfit)


def test_main(capsys):
    mfit = main(["--method", "optim", "--N", "6", "--D", "3", "--iter", "5", "--seed", "2"])
    assert mfit.Lambda.shape == (5, 2, 2)
    out = capsys.readouterr().out
    assert "Fit metadata" in out
    assert "Lambda RMSE" in out


def test_fit_mstan_vb_return_all(mdataset):
    mfit = fit_mstan_vb(
        mdataset, iter=6, parameterization="uncollapsed", num_steps=20,
        return_all=True, seed=0,
    )
    assert set(mfit.extra) == {"L_Sigma"}
    P = mdataset.D - 1
    assert mfit.extra["L_Sigma"].shape == (6, P, P)
    np.testing.assert_allclose(np.triu(mfit.extra["L_Sigma"][0], k=1), 0.0)
