"""Fit results and the metrics used to score them against ground truth."""

from dataclasses import dataclass

import arviz as az
import numpy as np

from .simulate import MDataset


@dataclass
class Metadata:
    """Run timings (seconds), mean ESS of B and ground-truth error metrics."""

    warmup_time: float
    sample_time: float
    mean_ess: float
    lambda_rmse: float = None
    outside_percent: float = None


@dataclass
class MFit:
    """Reshaped draws of one fit.

    Lambda is (iter, D-1, Q), Sigma is (iter, D-1, D-1) and Eta is
    (iter, D-1, N); axis 0 indexes the draw. `extra` holds any other
    sampled sites when a fit is run with return_all=True.
    """

    N: int
    D: int
    Q: int
    iter: int
    Lambda: np.ndarray
    Sigma: np.ndarray
    mdataset: MDataset
    Eta: np.ndarray = None
    metadata: Metadata = None
    hessian: np.ndarray = None
    extra: dict = None

    def summary(self):
        """Posterior mean and 95% interval of each entry of Lambda."""
        lo, hi = np.quantile(self.Lambda, [0.025, 0.975], axis=0)
        return {"mean": self.Lambda.mean(axis=0), "lower": lo, "upper": hi}


def lambda_rmse(Lambda_true, Lambda):
    """Root mean squared error of every draw of Lambda against the truth."""
    if Lambda_true is None:
        return None
    err = np.asarray(Lambda) - np.asarray(Lambda_true)[np.newaxis]
    return float(np.sqrt(np.mean(err**2)))


def percent_outside_95ci(Lambda_true, Lambda):
    """Percentage of true Lambda entries outside their central 95% interval."""
    if Lambda_true is None:
        return None
    lo, hi = np.quantile(np.asarray(Lambda), [0.025, 0.975], axis=0)
    outside = (Lambda_true < lo) | (Lambda_true > hi)
    return float(100.0 * np.mean(outside))


def mean_ess(draws_by_chain):
    """Mean bulk effective sample size over all entries of a parameter.

    `draws_by_chain` has shape (chains, draws, ...).
    """
    ds = az.convert_to_dataset({"x": np.asarray(draws_by_chain)})
    return float(az.ess(ds)["x"].values.mean())


def make_metadata(warmup_time, sample_time, ess, Lambda_true, Lambda):
    return Metadata(
        warmup_time=warmup_time,
        sample_time=sample_time,
        mean_ess=ess,
        lambda_rmse=lambda_rmse(Lambda_true, Lambda),
        outside_percent=percent_outside_95ci(Lambda_true, Lambda),
    )
