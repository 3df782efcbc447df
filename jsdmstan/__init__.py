# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
jsdmstan: Joint Species Distribution Models fit with Stan.

jsdmstan is a Python package for simulating community data for, fitting, diagnosing
and visualizing Joint Species Distribution Models (JSDMs). Two formulations of the
species association structure are supported: the Multivariate Generalised Linear
Mixed Model (MGLMM), which estimates a full species covariance matrix, and the
Generalised Linear Latent Variable Model (GLLVM), which approximates that covariance
with a low-rank matrix of latent-variable loadings. All model fitting is delegated
to Stan's Hamiltonian Monte Carlo sampler through CmdStanPy.

Key Features:
    - Simulation of community matrices from MGLMM and GLLVM generative models
    - Formula-based construction of design matrices
    - Automatic assembly of the Stan program for a given family and method
    - Posterior summaries and convergence diagnostics via ArviZ
    - Posterior linear predictors and posterior predictive draws
    - Ordination, environmental-effect, correlation and predictive-check plots

Global Variables:
    RNG: Global random number generator for reproducible computations
    __version__: Package version string

Example:
    >>> import jsdmstan as jsdm
    >>> jsdm.manual_seed(42)
    >>> sim = jsdm.gllvm_sim_data(N=100, S=8, D=2, K=2, family="bernoulli")
    >>> fit = jsdm.stan_gllvm(Y=sim.Y, X=sim.X, D=2, family="bernoulli")
    >>> fit.summary()
"""

from typing import Optional, TYPE_CHECKING

from typeguard import install_import_hook

import numpy as np

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("jsdmstan")

# Define the global random number generator
RNG: np.random.Generator
"""Global random number generator for jsdmstan.

This generator is used throughout the package (data simulation, posterior
prediction, sampler seeds) whenever no explicit seed is given. It can be seeded
using the manual_seed() function to ensure consistent results across runs.

:type: np.random.Generator
"""

# Get custom types if TYPE_CHECKING is True
if TYPE_CHECKING:
    from jsdmstan import custom_types


def manual_seed(seed: Optional["custom_types.Integer"] = None):
    """Set the seed for the global random number generator.

    :param seed: Seed value for random number generation. If None, uses
                system entropy to generate a random seed.
    :type seed: Union[custom_types.Integer, None]

    Example:
        >>> import jsdmstan as jsdm
        >>> jsdm.manual_seed(42)
        >>> sim = jsdm.mglmm_sim_data(N=50, S=5, K=1, family="poisson")

    Note:
        This function modifies global state and should typically be called
        once at the beginning of a script or analysis for reproducibility.
    """
    global RNG  # pylint: disable=global-statement
    RNG = np.random.default_rng(seed)


manual_seed()  # Set the seed for the global random number generator

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from jsdmstan import utils

from jsdmstan.design import build_design_matrix, jsdm_data
from jsdmstan.families import get_family
from jsdmstan.priors import JSDMPrior
from jsdmstan.simulation import gllvm_sim_data, jsdm_sim_data, mglmm_sim_data
from jsdmstan.model.stancode import jsdm_stancode
from jsdmstan.model.fitting import stan_gllvm, stan_jsdm, stan_mglmm

# Lazy imports for performance
results = utils.lazy_import("jsdmstan.model.results")
plotting = utils.lazy_import("jsdmstan.plotting")
