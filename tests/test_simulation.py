"""Tests for the community data simulators."""

from __future__ import annotations

import numpy as np
import pytest

from jsdmstan import gllvm_sim_data, jsdm_sim_data, mglmm_sim_data
from jsdmstan.design import jsdm_data
from jsdmstan.exceptions import DimensionMismatchError
from jsdmstan.priors import JSDMPrior


def test_gllvm_structure():
    sim = gllvm_sim_data(N=30, S=6, D=2, K=2, family="bernoulli", seed=1)
    assert sim.Y.shape == (30, 6)
    assert sim.X.shape == (30, 2)
    assert set(np.unique(sim.Y)) <= {0, 1}
    assert sim.method == "gllvm"
    assert sim.options["D"] == 2

    # Intercept plus two covariates
    assert sim.pars["betas"].shape == (3, 6)
    assert sim.pars["LV"].shape == (2, 30)

    # Loadings are zero below the diagonal and positive on it
    Lambda = sim.pars["Lambda"]
    assert Lambda.shape == (2, 6)
    assert Lambda[1, 0] == 0
    assert np.all(np.diag(Lambda[:, :2]) > 0)

    # The linear predictor is assembled from the parameters
    design = np.column_stack([np.ones(30), sim.X])
    np.testing.assert_allclose(
        sim.pars["eta"], design @ sim.pars["betas"] + sim.pars["LV"].T @ Lambda
    )


def test_mglmm_structure():
    sim = mglmm_sim_data(
        N=25, S=4, K=1, family="gaussian", beta_param="cor", species_intercept=False
    )
    assert sim.options["D"] is None
    assert sim.pars["betas"].shape == (1, 4)
    assert sim.pars["u"].shape == (25, 4)
    np.testing.assert_allclose(np.diag(sim.pars["cor_species"]), 1.0)
    assert sim.pars["sigma"].shape == (4,)
    assert "cor_preds" in sim.pars


def test_seed_reproducibility():
    first = jsdm_sim_data(N=10, S=3, D=1, K=1, family="poisson", seed=42)
    second = jsdm_sim_data(N=10, S=3, D=1, K=1, family="poisson", seed=42)
    np.testing.assert_array_equal(first.Y, second.Y)
    np.testing.assert_array_equal(first.X, second.X)


def test_site_intercepts():
    sim = mglmm_sim_data(N=12, S=3, site_intercept="ungrouped", family="gaussian")
    assert sim.pars["a"].shape == (12,)

    sim = mglmm_sim_data(
        N=12, S=3, site_intercept="grouped", ngrp=3, family="gaussian", seed=0
    )
    assert sim.pars["a"].shape == (3,)
    np.testing.assert_array_equal(np.bincount(sim.options["grps"]), [4, 4, 4])

    with pytest.raises(ValueError, match="ngrp"):
        mglmm_sim_data(N=12, S=3, site_intercept="grouped", family="gaussian")


def test_binomial_needs_trials():
    with pytest.raises(ValueError, match="Ntrials"):
        mglmm_sim_data(N=10, S=3, family="binomial")

    sim = mglmm_sim_data(N=10, S=3, family="binomial", Ntrials=5, seed=3)
    assert np.all(sim.Y <= 5)
    np.testing.assert_array_equal(sim.options["Ntrials"], np.full(10, 5))


def test_zero_inflation():
    sim = gllvm_sim_data(
        N=40, S=5, D=1, family="zi_neg_binomial", zi_param="covariate", zi_k=2, seed=5
    )
    assert sim.pars["zi_betas"].shape == (3, 5)
    assert sim.options["zi_X"].shape == (40, 2)
    assert sim.pars["kappa"].shape == (5,)

    sim = gllvm_sim_data(N=40, S=5, D=1, family="zi_poisson", seed=5)
    assert sim.pars["zi"].shape == (5,)
    assert sim.options["zi_X"] is None

    with pytest.raises(ValueError, match="zi_k"):
        gllvm_sim_data(N=40, S=5, D=1, family="zi_poisson", zi_param="covariate")


def test_custom_priors_and_covariates():
    X = np.linspace(-1, 1, 20)[:, None]
    prior = JSDMPrior(betas="normal(0,0.001)")
    sim = mglmm_sim_data(N=20, S=3, X=X, prior=prior, family="gaussian", seed=0)
    np.testing.assert_array_equal(sim.X, X)
    assert np.all(np.abs(sim.pars["betas"]) < 0.1)

    with pytest.raises(DimensionMismatchError):
        mglmm_sim_data(N=21, S=3, X=X, family="gaussian")


def test_invalid_options():
    with pytest.raises(ValueError, match="latent"):
        gllvm_sim_data(N=10, S=3, D=3)
    with pytest.raises(ValueError, match="method"):
        jsdm_sim_data(N=10, S=3, method="hmsc")
    with pytest.raises(TypeError):
        mglmm_sim_data(N=10, S=3, method="gllvm")
    with pytest.raises(TypeError):
        gllvm_sim_data(N=10, S=3, D=1, method="mglmm")


def test_dataframes_and_fit_kwargs():
    sim = gllvm_sim_data(N=8, S=3, D=1, K=2, family="binomial", Ntrials=3, seed=0)
    Y, X = sim.to_dataframes()
    assert list(Y.columns) == ["sp1", "sp2", "sp3"]
    assert list(X.columns) == ["V1", "V2"]
    assert list(Y.index) == [f"site{i + 1}" for i in range(8)]

    kwargs = sim.fit_kwargs()
    assert kwargs["method"] == "gllvm"
    assert kwargs["D"] == 1
    assert kwargs["family"] == "binomial"
    np.testing.assert_array_equal(kwargs["Ntrials"], np.full(8, 3))
    assert "site_groups" not in kwargs


def test_sizes_match_what_can_be_fit():
    with pytest.raises(ValueError, match="`S` at least 2"):
        mglmm_sim_data(N=10, S=1, family="gaussian")
    with pytest.raises(ValueError, match="`N` must be at least 1"):
        mglmm_sim_data(N=0, S=3, family="gaussian")
    with pytest.raises(ValueError, match="species intercept"):
        mglmm_sim_data(N=10, S=3, K=0, species_intercept=False, family="gaussian")

    # The smallest allowed simulation is accepted for fitting
    sim = gllvm_sim_data(N=5, S=2, D=1, family="poisson", seed=0)
    kwargs = sim.fit_kwargs()
    del kwargs["prior"]
    data = jsdm_data(**kwargs)
    assert data.stan_data["S"] == 2
    assert data.coords["predictor"] == ["Intercept"]
