# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for jsdmstan package components.

This module centralizes default values used across various components of the
jsdmstan package, including sampler settings, Stan model configuration options,
model-structure options, prior specifications and diagnostic thresholds.

The module is organized into logical groups covering:
    - Model-structure options (families, methods, site intercepts, ...)
    - Default priors for every model parameter
    - Stan model compilation and sampling settings
    - Diagnostic thresholds for model validation
    - Posterior prediction settings

Default values cannot be programmatically altered. Every default can instead be
overridden on a per-call basis through the keyword arguments of the functions
that consume it.
"""

from typing import Any

# Model-structure options
FAMILIES: tuple[str, ...] = (
    "gaussian",
    "bernoulli",
    "binomial",
    "poisson",
    "neg_binomial",
    "zi_poisson",
    "zi_neg_binomial",
)
"""Response families understood by the simulator and the Stan code generator.

:type: tuple[str, ...]
"""

METHODS: tuple[str, ...] = ("mglmm", "gllvm")
"""Formulations of the species association structure.

``"mglmm"`` estimates a full species covariance matrix; ``"gllvm"`` estimates a
low-rank matrix of latent-variable loadings.

:type: tuple[str, ...]
"""

SITE_INTERCEPTS: tuple[str, ...] = ("none", "ungrouped", "grouped")
"""Options for site-level random intercepts.

:type: tuple[str, ...]
"""

BETA_PARAMS: tuple[str, ...] = ("cor", "unstruct")
"""Options for the covariate effects: correlated across predictors or unstructured.

:type: tuple[str, ...]
"""

ZI_PARAMS: tuple[str, ...] = ("constant", "covariate")
"""Options for the zero-inflation probability: one per species or a regression.

:type: tuple[str, ...]
"""

# Default priors
DEFAULT_PRIORS: dict[str, str] = {
    "sigmas_preds": "student_t(3,0,1)",
    "z_preds": "std_normal()",
    "cor_preds": "lkj_corr_cholesky(1)",
    "betas": "student_t(3,0,1)",
    "a": "std_normal()",
    "a_bar": "normal(0,1)",
    "sigma_a": "student_t(3,0,1)",
    "sigmas_species": "student_t(3,0,1)",
    "z_species": "std_normal()",
    "cor_species": "lkj_corr_cholesky(1)",
    "LV": "std_normal()",
    "L": "student_t(3,0,1)",
    "sigma_L": "student_t(3,0,1)",
    "sigma": "student_t(3,0,1)",
    "kappa": "student_t(3,0,1)",
    "zi": "beta(1,1)",
    "zi_betas": "std_normal()",
}
"""Default prior statements, written in Stan syntax, for every model parameter.

Scale parameters (``sigmas_preds``, ``sigma_a``, ``sigmas_species``,
``sigma_L``, ``sigma``, ``kappa``) are declared with a lower bound of zero, so
their priors act as half-distributions.

:type: dict[str, str]
"""

POSITIVE_PARAMS: frozenset[str] = frozenset(
    ("sigmas_preds", "sigma_a", "sigmas_species", "sigma_L", "sigma", "kappa")
)
"""Parameters constrained to be positive.

:type: frozenset[str]
"""

# Defaults for the Stan model
DEFAULT_FORCE_COMPILE: bool = False
"""Default setting for forcing Stan model recompilation.

When False, uses cached compiled models when available. When True,
forces recompilation even if a cached version exists.

:type: bool
"""

DEFAULT_STANC_OPTIONS: dict[str, Any] = {"O1": True}
"""Default options passed to the Stan compiler (stanc).

:type: dict[str, bool]
"""

DEFAULT_CPP_OPTIONS: dict[str, Any] = {"STAN_THREADS": True}
"""Default C++ compilation options for Stan models.

Enables threading support so that chains can be run in parallel.

:type: dict[str, bool]
"""

DEFAULT_MODEL_NAME: str = "jsdm"
"""Default name for generated Stan models.

:type: str
"""

# Sampling defaults
DEFAULT_CHAINS: int = 4
"""Default number of Markov chains.

:type: int
"""

DEFAULT_ITER_WARMUP: int = 1000
"""Default number of warmup iterations per chain.

:type: int
"""

DEFAULT_ITER_SAMPLING: int = 1000
"""Default number of post-warmup draws per chain.

:type: int
"""

# Defaults for Stan diagnostics
DEFAULT_EBFMI_THRESH: float = 0.2
"""Default threshold for Energy Bayesian Fraction of Missing Information (E-BFMI).

Values below this threshold may indicate inefficient sampling and
potential bias in MCMC results.

:type: float
"""

DEFAULT_ESS_THRESH: int = 100  # Per chain
"""Default threshold for Effective Sample Size (ESS) per chain.

:type: int
"""

DEFAULT_RHAT_THRESH: float = 1.01
"""Default threshold for R-hat convergence diagnostic.

:type: float
"""

# Prediction and plotting defaults
DEFAULT_NDRAWS: int = 50
"""Default number of posterior predictive draws shown in predictive checks.

:type: int
"""

DEFAULT_SUMMARY_PROB: float = 0.95
"""Default width of the central posterior interval reported by
``JSDMStanFit.summary``.

:type: float
"""
