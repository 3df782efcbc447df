# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Simulation of community data from Joint Species Distribution Models.

The simulators generate synthetic community matrices from the same generative
models that :py:func:`jsdmstan.stan_jsdm` fits, which makes them useful both for
tutorials and for checking that a model recovers known parameters. Simulation is a
single pass through the generative model:

    1. Build the covariate matrix (standard normal covariates unless provided)
    2. Draw the covariate effects ``betas`` (unstructured or correlated across
       predictors)
    3. Draw site-level intercepts (none, one per site, or one per site group)
    4. Draw the species association structure:

        - MGLMM: species random effects ``u ~ MVN(0, diag(s) R diag(s))`` per site
        - GLLVM: latent variables ``LV ~ N(0, 1)`` and lower-triangular loadings
          ``Lambda`` with a positive diagonal, ``u = LV' Lambda``

    5. Form the linear predictor and draw responses from the family

All parameters are drawn from the priors in a :py:class:`~jsdmstan.priors.JSDMPrior`,
using the non-centred parametrizations of the fitted Stan programs.

Example:
    >>> sim = gllvm_sim_data(N=100, S=10, D=2, K=3, family="neg_binomial")
    >>> sim.Y.shape
    (100, 10)
    >>> sim.pars["Lambda"].shape
    (2, 10)
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

import jsdmstan

from jsdmstan import utils
from jsdmstan.defaults import (
    BETA_PARAMS,
    METHODS,
    SITE_INTERCEPTS,
    ZI_PARAMS,
)
from jsdmstan.exceptions import DimensionMismatchError
from jsdmstan.families import check_ntrials, get_family
from jsdmstan.priors import JSDMPrior

if TYPE_CHECKING:
    from jsdmstan import custom_types


class SimulatedData:
    """Container for a simulated community dataset and its true parameters.

    :param Y: Simulated community matrix, ``(N, S)``
    :type Y: npt.NDArray
    :param X: Simulated covariates excluding any intercept column, ``(N, K)``
    :type X: npt.NDArray
    :param pars: True parameter values keyed by name
    :type pars: dict[str, npt.NDArray]
    :param options: Model options used to simulate the data

    :ivar Y: Community matrix
    :ivar X: Covariate matrix (no intercept column)
    :ivar pars: True parameter values
    :ivar options: Model options (family, method, D, species_intercept, ...)
    """

    def __init__(
        self,
        Y: npt.NDArray,
        X: npt.NDArray,
        pars: dict[str, Any],
        **options: Any,
    ):
        self.Y = Y
        self.X = X
        self.pars = pars
        self.options = options

    def __repr__(self) -> str:
        return (
            f"SimulatedData(method='{self.method}', family='{self.family}', "
            f"N={self.N}, S={self.S}, K={self.K}, D={self.options['D']})"
        )

    @property
    def N(self) -> int:
        """Number of sites."""
        return self.Y.shape[0]

    @property
    def S(self) -> int:
        """Number of species."""
        return self.Y.shape[1]

    @property
    def K(self) -> int:
        """Number of covariates, excluding any intercept."""
        return self.X.shape[1]

    @property
    def family(self) -> str:
        return self.options["family"]

    @property
    def method(self) -> str:
        return self.options["method"]

    @property
    def species_names(self) -> list[str]:
        return utils.default_labels("sp", self.S)

    @property
    def site_names(self) -> list[str]:
        return utils.default_labels("site", self.N)

    @property
    def predictor_names(self) -> list[str]:
        """Names of the covariates, excluding any intercept."""
        return utils.default_labels("V", self.K)

    def to_dataframes(self) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Return the community and covariate matrices as labelled DataFrames."""
        return (
            pd.DataFrame(self.Y, index=self.site_names, columns=self.species_names),
            pd.DataFrame(self.X, index=self.site_names, columns=self.predictor_names),
        )

    def fit_kwargs(self) -> dict[str, Any]:
        """Keyword arguments reproducing this simulation's model in
        :py:func:`jsdmstan.stan_jsdm`.

        Example:
            >>> fit = jsdmstan.stan_jsdm(**sim.fit_kwargs(), chains=2)
        """
        kwargs = {
            "Y": self.Y,
            "X": self.X if self.K > 0 else None,
            "method": self.method,
            "family": self.family,
            "D": self.options["D"],
            "species_intercept": self.options["species_intercept"],
            "site_intercept": self.options["site_intercept"],
            "beta_param": self.options["beta_param"],
            "zi_param": self.options["zi_param"],
            "prior": self.options["prior"],
        }
        if self.options["site_intercept"] == "grouped":
            kwargs["site_groups"] = self.options["grps"]
        if self.options["Ntrials"] is not None:
            kwargs["Ntrials"] = self.options["Ntrials"]
        if self.options["zi_X"] is not None:
            kwargs["zi_X"] = self.options["zi_X"]
        return kwargs


def _check_option(value: str, options: tuple[str, ...], argname: str) -> None:
    if value not in options:
        raise ValueError(
            f"Invalid `{argname}`: '{value}'. Options are: {', '.join(options)}."
        )


def _simulate_betas(
    K: "custom_types.Integer",
    S: "custom_types.Integer",
    beta_param: str,
    prior: JSDMPrior,
    rng: np.random.Generator,
) -> dict[str, npt.NDArray]:
    """Draw covariate effects, either unstructured or correlated across predictors."""
    if beta_param == "unstruct":
        return {"betas": prior.draw("betas", (K, S), rng)}

    # Correlated effects: betas = diag(sigmas) * chol(R) * z
    sigmas_preds = prior.draw("sigmas_preds", K, rng)
    cor_preds = prior.draw("cor_preds", K, rng)
    z_preds = prior.draw("z_preds", (K, S), rng)
    betas = np.diag(sigmas_preds) @ np.linalg.cholesky(cor_preds) @ z_preds
    return {"betas": betas, "sigmas_preds": sigmas_preds, "cor_preds": cor_preds}


def _simulate_site_intercepts(
    N: "custom_types.Integer",
    site_intercept: str,
    ngrp: Optional["custom_types.Integer"],
    prior: JSDMPrior,
    rng: np.random.Generator,
) -> tuple[dict[str, npt.NDArray], npt.NDArray[np.floating], Optional[npt.NDArray]]:
    """Draw site-level intercepts, returning the parameters, the per-site effect
    and the group memberships (if grouped)."""
    if site_intercept == "none":
        return {}, np.zeros(N), None

    # Hyperparameters
    a_bar = prior.draw("a_bar", 1, rng)[0]
    sigma_a = prior.draw("sigma_a", 1, rng)[0]

    # One intercept per site
    if site_intercept == "ungrouped":
        a = prior.draw("a", N, rng)
        return (
            {"a": a, "a_bar": a_bar, "sigma_a": sigma_a},
            a_bar + sigma_a * a,
            None,
        )

    # One intercept per group. Sites are spread as evenly as possible over groups.
    if ngrp is None or ngrp < 1 or ngrp > N:
        raise ValueError(
            "`ngrp` must be provided and lie between 1 and N for grouped site "
            "intercepts."
        )
    grps = rng.permutation(np.arange(N) % ngrp)
    a = prior.draw("a", ngrp, rng)
    return (
        {"a": a, "a_bar": a_bar, "sigma_a": sigma_a},
        a_bar + sigma_a * a[grps],
        grps,
    )


def _simulate_mglmm_effects(
    N: "custom_types.Integer",
    S: "custom_types.Integer",
    prior: JSDMPrior,
    rng: np.random.Generator,
) -> tuple[dict[str, npt.NDArray], npt.NDArray[np.floating]]:
    """Draw correlated species random effects for each site."""
    sigmas_species = prior.draw("sigmas_species", S, rng)
    cor_species = prior.draw("cor_species", S, rng)
    z_species = prior.draw("z_species", (S, N), rng)
    u = (np.diag(sigmas_species) @ np.linalg.cholesky(cor_species) @ z_species).T
    return (
        {"sigmas_species": sigmas_species, "cor_species": cor_species, "u": u},
        u,
    )


def _simulate_gllvm_effects(
    N: "custom_types.Integer",
    S: "custom_types.Integer",
    D: "custom_types.Integer",
    prior: JSDMPrior,
    rng: np.random.Generator,
) -> tuple[dict[str, npt.NDArray], npt.NDArray[np.floating]]:
    """Draw latent variables and constrained loadings."""
    LV = prior.draw("LV", (D, N), rng)
    sigma_L = prior.draw("sigma_L", 1, rng)[0]

    # Loadings are zero above the diagonal (in the species x latent view) and
    # positive on it
    L = np.triu(prior.draw("L", (D, S), rng))
    L[np.arange(D), np.arange(D)] = np.abs(L[np.arange(D), np.arange(D)])
    Lambda = sigma_L * L

    return {"LV": LV, "Lambda": Lambda, "sigma_L": sigma_L}, LV.T @ Lambda


def jsdm_sim_data(
    N: "custom_types.Integer",
    S: "custom_types.Integer",
    D: Optional["custom_types.Integer"] = None,
    K: "custom_types.Integer" = 0,
    family: str = "gaussian",
    method: str = "gllvm",
    species_intercept: bool = True,
    site_intercept: str = "none",
    ngrp: Optional["custom_types.Integer"] = None,
    beta_param: str = "unstruct",
    zi_param: str = "constant",
    zi_k: Optional["custom_types.Integer"] = None,
    Ntrials: Union[npt.NDArray, "custom_types.Integer", None] = None,
    prior: Optional[JSDMPrior] = None,
    X: Optional["custom_types.MatrixLike"] = None,
    zi_X: Optional["custom_types.MatrixLike"] = None,
    seed: Optional["custom_types.Integer"] = None,
) -> SimulatedData:
    """Simulate a community matrix from a Joint Species Distribution Model.

    :param N: Number of sites
    :type N: custom_types.Integer
    :param S: Number of species
    :type S: custom_types.Integer
    :param D: Number of latent variables. Required (and only used) for GLLVMs.
    :type D: Optional[custom_types.Integer]
    :param K: Number of covariates to simulate, excluding the intercept. Ignored if
        ``X`` is provided. Defaults to 0.
    :type K: custom_types.Integer
    :param family: Response family. Defaults to "gaussian".
    :type family: str
    :param method: Either "gllvm" or "mglmm". Defaults to "gllvm".
    :type method: str
    :param species_intercept: Whether each species has its own intercept. Defaults
        to True.
    :type species_intercept: bool
    :param site_intercept: "none", "ungrouped" or "grouped". Defaults to "none".
    :type site_intercept: str
    :param ngrp: Number of site groups for grouped site intercepts.
    :type ngrp: Optional[custom_types.Integer]
    :param beta_param: "unstruct" for independent covariate effects, "cor" for
        effects correlated across predictors. Defaults to "unstruct".
    :type beta_param: str
    :param zi_param: "constant" for one zero-inflation probability per species,
        "covariate" for a logistic regression on ``zi_X``. Zero-inflated families
        only. Defaults to "constant".
    :type zi_param: str
    :param zi_k: Number of zero-inflation covariates to simulate when
        ``zi_param="covariate"`` and ``zi_X`` is not given.
    :type zi_k: Optional[custom_types.Integer]
    :param Ntrials: Number of trials per site (scalar or length ``N``). Binomial only.
    :type Ntrials: Union[npt.NDArray, custom_types.Integer, None]
    :param prior: Priors from which to draw the parameters. Defaults to None
        (``JSDMPrior()``).
    :type prior: Optional[JSDMPrior]
    :param X: Covariates to use instead of simulated ones, ``(N, K)``, excluding
        the intercept.
    :type X: Optional[custom_types.MatrixLike]
    :param zi_X: Zero-inflation covariates to use instead of simulated ones,
        excluding the intercept.
    :type zi_X: Optional[custom_types.MatrixLike]
    :param seed: Seed for this simulation. Defaults to None (global jsdmstan RNG).
    :type seed: Optional[custom_types.Integer]

    :returns: The simulated dataset and the true parameters
    :rtype: SimulatedData

    :raises ValueError: If options are invalid or inconsistent
    :raises DimensionMismatchError: If ``X`` or ``zi_X`` does not have ``N`` rows

    Example:
        >>> sim = jsdm_sim_data(
        ...     N=50, S=6, K=2, family="bernoulli", method="mglmm", seed=1
        ... )
    """
    # Check options
    _check_option(method, METHODS, "method")
    _check_option(site_intercept, SITE_INTERCEPTS, "site_intercept")
    _check_option(beta_param, BETA_PARAMS, "beta_param")
    _check_option(zi_param, ZI_PARAMS, "zi_param")
    fam = get_family(family)
    prior = JSDMPrior() if prior is None else prior
    rng = jsdmstan.RNG if seed is None else np.random.default_rng(seed)

    # Check dimensions
    if N < 1 or S < 2:
        raise ValueError("`N` must be at least 1 and `S` at least 2.")
    if method == "gllvm":
        if D is None or D < 1 or D >= S:
            raise ValueError(
                "GLLVMs require a number of latent variables `D` with 1 <= D < S."
            )
    else:
        D = None
    if fam.needs_ntrials and Ntrials is None:
        raise ValueError(f"The {fam.name} family requires `Ntrials`.")
    Ntrials = check_ntrials(Ntrials, N) if fam.needs_ntrials else None

    # Build the covariates
    if X is None:
        if K < 0:
            raise ValueError("`K` must be non-negative.")
        X = rng.normal(size=(N, K))
    else:
        X = utils.to_labelled_matrix(X, "V", dtype=float)[0]
        if X.shape[0] != N:
            raise DimensionMismatchError(
                f"`X` has {X.shape[0]} rows but there are {N} sites."
            )
    design = np.hstack([np.ones((N, 1)), X]) if species_intercept else X
    if design.shape[1] == 0:
        raise ValueError(
            "The model needs at least one covariate or a species intercept."
        )

    # Simulate all parameters and build up the linear predictor
    pars = {}
    eta = np.zeros((N, S))
    pars.update(_simulate_betas(design.shape[1], S, beta_param, prior, rng))
    eta += design @ pars["betas"]

    site_pars, site_effect, grps = _simulate_site_intercepts(
        N, site_intercept, ngrp, prior, rng
    )
    pars.update(site_pars)
    eta += site_effect[:, None]

    if method == "mglmm":
        assoc_pars, u = _simulate_mglmm_effects(N, S, prior, rng)
    else:
        assoc_pars, u = _simulate_gllvm_effects(N, S, D, prior, rng)
    pars.update(assoc_pars)
    eta += u

    # Family-specific parameters
    aux = {}
    if "sigma" in fam.aux_params:
        aux["sigma"] = pars["sigma"] = prior.draw("sigma", S, rng)
    if "kappa" in fam.aux_params:
        aux["kappa"] = pars["kappa"] = prior.draw("kappa", S, rng)
    if fam.zero_inflated:
        if zi_param == "constant":
            zi_X = None
            aux["zi"] = pars["zi"] = prior.draw("zi", S, rng)
        else:
            if zi_X is None:
                if zi_k is None or zi_k < 0:
                    raise ValueError(
                        "`zi_k` or `zi_X` is required when `zi_param` is 'covariate'."
                    )
                zi_X = rng.normal(size=(N, zi_k))
            else:
                zi_X = utils.to_labelled_matrix(zi_X, "zi_V", dtype=float)[0]
                if zi_X.shape[0] != N:
                    raise DimensionMismatchError(
                        f"`zi_X` has {zi_X.shape[0]} rows but there are {N} sites."
                    )
            zi_design = np.hstack([np.ones((N, 1)), zi_X])
            pars["zi_betas"] = prior.draw("zi_betas", (zi_design.shape[1], S), rng)
            aux["zi"] = utils.stable_sigmoid(zi_design @ pars["zi_betas"])
    else:
        zi_X = None

    # Draw the responses
    pars["eta"] = eta
    Y = fam.draw(eta, rng, Ntrials=Ntrials, **aux)

    return SimulatedData(
        Y=Y,
        X=X,
        pars=pars,
        family=fam.name,
        method=method,
        D=D,
        species_intercept=species_intercept,
        site_intercept=site_intercept,
        grps=grps,
        beta_param=beta_param,
        zi_param=zi_param,
        zi_X=zi_X,
        Ntrials=Ntrials,
        prior=prior,
    )


def mglmm_sim_data(
    N: "custom_types.Integer",
    S: "custom_types.Integer",
    **kwargs,
) -> SimulatedData:
    """Simulate data from a Multivariate Generalised Linear Mixed Model.

    Equivalent to ``jsdm_sim_data(N, S, method="mglmm", **kwargs)``; see
    :py:func:`jsdm_sim_data` for the available options.
    """
    if "method" in kwargs:
        raise TypeError("`method` cannot be set for `mglmm_sim_data`.")
    return jsdm_sim_data(N, S, method="mglmm", **kwargs)


def gllvm_sim_data(
    N: "custom_types.Integer",
    S: "custom_types.Integer",
    D: "custom_types.Integer",
    **kwargs,
) -> SimulatedData:
    """Simulate data from a Generalised Linear Latent Variable Model with ``D``
    latent variables.

    Equivalent to ``jsdm_sim_data(N, S, D=D, method="gllvm", **kwargs)``; see
    :py:func:`jsdm_sim_data` for the available options.
    """
    if "method" in kwargs:
        raise TypeError("`method` cannot be set for `gllvm_sim_data`.")
    return jsdm_sim_data(N, S, D=D, method="gllvm", **kwargs)
