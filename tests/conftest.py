"""Shared fixtures for the jsdmstan tests.

Fitted models are built directly from synthetic posterior draws with
``arviz.from_dict`` so that the analysis and plotting code can be tested without
compiling or running Stan.
"""

from __future__ import annotations

from typing import Optional

import arviz as az
import cmdstanpy
import numpy as np
import pandas as pd
import pytest

from jsdmstan.model.results import JSDMStanFit, _get_coords, _get_dims
from jsdmstan.priors import rlkj

CHAINS = 2
DRAWS = 50
N_SITES = 8
N_SPECIES = 4


def _sample_stats(rng: np.random.Generator) -> dict[str, np.ndarray]:
    return {
        "diverging": np.zeros((CHAINS, DRAWS), dtype=bool),
        "tree_depth": np.full((CHAINS, DRAWS), 3),
        "energy": 10 + rng.normal(size=(CHAINS, DRAWS)),
        "lp": rng.normal(size=(CHAINS, DRAWS)),
    }


def _coords(predictors: list[str], **extra: list[str]) -> dict[str, list[str]]:
    return _get_coords(
        {
            "site": [f"site{i + 1}" for i in range(N_SITES)],
            "species": [f"sp{j + 1}" for j in range(N_SPECIES)],
            "predictor": predictors,
            **extra,
        }
    )


def _build_fit(
    posterior: dict[str, np.ndarray],
    Y: np.ndarray,
    X: np.ndarray,
    coords: dict[str, list[str]],
    options: dict,
    rng: np.random.Generator,
    save_data: bool = True,
    constant_data: Optional[dict[str, np.ndarray]] = None,
    formula_data: Optional[pd.DataFrame] = None,
) -> JSDMStanFit:
    inference_obj = az.from_dict(
        posterior=posterior,
        sample_stats=_sample_stats(rng),
        log_likelihood={
            "log_lik": -np.abs(rng.normal(size=(CHAINS, DRAWS, N_SITES, N_SPECIES)))
        },
        observed_data={"Y": Y} if save_data else None,
        constant_data={"X": X, **(constant_data or {})},
        coords=coords,
        dims=_get_dims(options),
    )
    return JSDMStanFit(inference_obj, options=options, formula_data=formula_data)


GLLVM_OPTIONS = {
    "method": "gllvm",
    "family": "poisson",
    "D": 2,
    "species_intercept": True,
    "site_intercept": "none",
    "beta_param": "unstruct",
    "zi_param": None,
    "formula": None,
    "parameter_names": ["betas", "LV", "Lambda", "sigma_L"],
    "chains": CHAINS,
    "iter_warmup": DRAWS,
    "iter_sampling": DRAWS,
    "max_depth": 10,
}

MGLMM_OPTIONS = {
    "method": "mglmm",
    "family": "gaussian",
    "D": None,
    "species_intercept": True,
    "site_intercept": "ungrouped",
    "beta_param": "cor",
    "zi_param": None,
    "formula": None,
    "parameter_names": [
        "betas",
        "sigmas_preds",
        "cor_preds",
        "a_bar",
        "sigma_a",
        "a",
        "a_site",
        "sigmas_species",
        "cor_species",
        "u",
        "sigma",
    ],
    "chains": CHAINS,
    "iter_warmup": DRAWS,
    "iter_sampling": DRAWS,
    "max_depth": 10,
}


def _gllvm_posterior(rng: np.random.Generator, K: int) -> dict[str, np.ndarray]:
    D = GLLVM_OPTIONS["D"]

    # Loadings are zero below the diagonal and positive on it
    Lambda = np.triu(rng.normal(size=(CHAINS, DRAWS, D, N_SPECIES)))
    Lambda[..., np.arange(D), np.arange(D)] = np.abs(
        Lambda[..., np.arange(D), np.arange(D)]
    )

    return {
        "betas": rng.normal(scale=0.5, size=(CHAINS, DRAWS, K, N_SPECIES)),
        "LV": rng.normal(size=(CHAINS, DRAWS, D, N_SITES)),
        "Lambda": Lambda,
        "sigma_L": np.abs(rng.normal(size=(CHAINS, DRAWS))),
    }


def make_gllvm_fit(seed: int = 0, save_data: bool = True) -> JSDMStanFit:
    """A Poisson GLLVM with two latent variables and one covariate."""
    rng = np.random.default_rng(seed)
    posterior = _gllvm_posterior(rng, 2)
    X = np.column_stack([np.ones(N_SITES), rng.normal(size=N_SITES)])
    Y = rng.poisson(2.0, size=(N_SITES, N_SPECIES))

    return _build_fit(
        posterior=posterior,
        Y=Y,
        X=X,
        coords=_coords(["Intercept", "V1"], latent=["LV1", "LV2"]),
        options=dict(GLLVM_OPTIONS),
        rng=rng,
        save_data=save_data,
    )


def make_gllvm_variant(
    seed: int = 0,
    X: Optional[np.ndarray] = None,
    predictors: Optional[list[str]] = None,
    extra_posterior: Optional[dict[str, np.ndarray]] = None,
    constant_data: Optional[dict[str, np.ndarray]] = None,
    extra_coords: Optional[dict[str, list[str]]] = None,
    formula_data: Optional[pd.DataFrame] = None,
    **options,
) -> JSDMStanFit:
    """A GLLVM like :py:func:`make_gllvm_fit` with other options or
    parameters. Options given as keywords replace those of ``GLLVM_OPTIONS`` and
    ``extra_posterior`` adds (or replaces) posterior variables.
    """
    rng = np.random.default_rng(seed)
    if X is None:
        X = np.column_stack([np.ones(N_SITES), rng.normal(size=N_SITES)])
        predictors = ["Intercept", "V1"]
    posterior = {**_gllvm_posterior(rng, X.shape[1]), **(extra_posterior or {})}
    Y = rng.poisson(2.0, size=(N_SITES, N_SPECIES))

    return _build_fit(
        posterior=posterior,
        Y=Y,
        X=X,
        coords=_coords(predictors, latent=["LV1", "LV2"], **(extra_coords or {})),
        options={**GLLVM_OPTIONS, **options, "parameter_names": list(posterior)},
        rng=rng,
        constant_data=constant_data,
        formula_data=formula_data,
    )


def make_mglmm_fit(seed: int = 1) -> JSDMStanFit:
    """A Gaussian MGLMM with site intercepts and correlated covariate effects."""
    rng = np.random.default_rng(seed)

    def correlations(dim):
        return np.stack(
            [
                np.stack([rlkj(dim, 2.0, rng) for _ in range(DRAWS)])
                for _ in range(CHAINS)
            ]
        )

    a_bar = rng.normal(size=(CHAINS, DRAWS))
    sigma_a = np.abs(rng.normal(size=(CHAINS, DRAWS)))
    a = rng.normal(size=(CHAINS, DRAWS, N_SITES))
    posterior = {
        "betas": rng.normal(size=(CHAINS, DRAWS, 2, N_SPECIES)),
        "sigmas_preds": np.abs(rng.normal(size=(CHAINS, DRAWS, 2))),
        "cor_preds": correlations(2),
        "a_bar": a_bar,
        "sigma_a": sigma_a,
        "a": a,
        "a_site": a_bar[..., None] + sigma_a[..., None] * a,
        "sigmas_species": np.abs(rng.normal(size=(CHAINS, DRAWS, N_SPECIES))),
        "cor_species": correlations(N_SPECIES),
        "u": rng.normal(size=(CHAINS, DRAWS, N_SITES, N_SPECIES)),
        "sigma": np.abs(rng.normal(size=(CHAINS, DRAWS, N_SPECIES))) + 0.1,
    }
    X = np.column_stack([np.ones(N_SITES), rng.normal(size=N_SITES)])
    Y = rng.normal(size=(N_SITES, N_SPECIES))

    return _build_fit(
        posterior=posterior,
        Y=Y,
        X=X,
        coords=_coords(["Intercept", "V1"]),
        options=dict(MGLMM_OPTIONS),
        rng=rng,
    )


@pytest.fixture
def gllvm_fit():
    return make_gllvm_fit()


@pytest.fixture
def mglmm_fit():
    return make_mglmm_fit()


def _cmdstan_available() -> bool:
    try:
        cmdstanpy.cmdstan_path()
    except ValueError:
        return False
    return True


requires_cmdstan = pytest.mark.skipif(
    not _cmdstan_available(), reason="CmdStan is not installed"
)
