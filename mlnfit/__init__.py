"""Multinomial logistic-normal regression fits with NumPyro."""

from .draws import clean_draws, flatten_draws
from .fit import fit_mstan, fit_mstan_optim, fit_mstan_vb, make_inits, random_init
from .model import collapsed_model, get_model, uncollapsed_model
from .results import Metadata, MFit
from .simulate import MDataset, simulate_mdataset
