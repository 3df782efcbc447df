"""Tests for the analysis of fitted models."""

from __future__ import annotations

import arviz as az
import numpy as np
import pandas as pd
import pytest

from conftest import (
    CHAINS,
    DRAWS,
    N_SITES,
    N_SPECIES,
    make_gllvm_fit,
    make_gllvm_variant,
)

from jsdmstan.design import build_design_matrix
from jsdmstan.exceptions import DimensionMismatchError, MissingGroupError
from jsdmstan.model.results import JSDMStanFit, has_intercept

N_DRAWS = CHAINS * DRAWS


def test_options_are_required(gllvm_fit):
    inference_obj = gllvm_fit.inference_obj
    del inference_obj.attrs["jsdm_options"]
    with pytest.raises(ValueError, match="No model options"):
        JSDMStanFit(inference_obj)


def test_missing_groups_are_reported():
    inference_obj = az.from_dict(posterior={"betas": np.zeros((2, 10, 1, 2))})
    with pytest.raises(MissingGroupError, match="constant_data"):
        JSDMStanFit(inference_obj, options={"method": "mglmm"})


def test_basic_properties(gllvm_fit):
    assert gllvm_fit.method == "gllvm"
    assert gllvm_fit.family.name == "poisson"
    assert gllvm_fit.n_sites == N_SITES
    assert gllvm_fit.n_species == N_SPECIES
    assert gllvm_fit.n_draws == N_DRAWS
    assert gllvm_fit.coords["latent"] == ["LV1", "LV2"]
    assert gllvm_fit.coords["predictor"] == ["Intercept", "V1"]
    assert has_intercept(gllvm_fit)


def test_str_describes_model(gllvm_fit, mglmm_fit):
    text = str(gllvm_fit)
    assert "Family: poisson" in text
    assert "GLLVM with 2 latent variable(s)" in text
    assert f"Number of sites: {N_SITES}" in text
    assert "Divergent transitions: 0" in text
    assert "Maximum R-hat" in text

    assert "Model type: MGLMM" in str(mglmm_fit)


def test_parnames_follow_options(gllvm_fit, mglmm_fit):
    assert gllvm_fit.get_parnames() == ["betas", "LV", "Lambda", "sigma_L"]
    assert "cor_species" in mglmm_fit.get_parnames()
    with pytest.raises(KeyError, match="not_a_variable"):
        gllvm_fit.resolve_var_names(["betas", "not_a_variable"])


def test_summary_reports_quantiles_and_diagnostics(gllvm_fit):
    summary = gllvm_fit.summary(var_names="betas")
    assert len(summary) == 2 * N_SPECIES
    for column in ("mean", "sd", "q2.5%", "q50%", "q97.5%", "ess_bulk", "r_hat"):
        assert column in summary.columns
    assert not any(column.startswith("hdi_") for column in summary.columns)

    # Quantiles are ordered
    assert (summary["q2.5%"] <= summary["q50%"]).all()
    assert (summary["q50%"] <= summary["q97.5%"]).all()

    # Narrower intervals on request
    narrow = gllvm_fit.summary(var_names="sigma_L", kind="stats", prob=0.5)
    assert list(narrow.filter(like="q").columns) == ["q25%", "q50%", "q75%"]


def test_summary_rejects_bad_probability(gllvm_fit):
    with pytest.raises(ValueError, match="prob"):
        gllvm_fit.summary(prob=1.5)


def test_summary_with_dask(gllvm_fit):
    in_memory = gllvm_fit.summary(var_names=["betas", "sigma_L"])

    gllvm_fit.use_dask = True
    out_of_core = gllvm_fit.summary(var_names=["betas", "sigma_L"])
    assert set(out_of_core.index) == set(in_memory.index)
    out_of_core = out_of_core.loc[in_memory.index]
    for column in ("mean", "sd", "q2.5%", "q50%", "q97.5%", "ess_bulk", "r_hat"):
        np.testing.assert_allclose(
            out_of_core[column], in_memory[column], rtol=1e-6, err_msg=column
        )

    # Only the requested kind of columns
    stats = gllvm_fit.summary(var_names="sigma_L", kind="stats", prob=0.5)
    assert list(stats.columns) == ["mean", "sd", "q25%", "q50%", "q75%"]
    diagnostics = gllvm_fit.summary(var_names="betas", kind="diagnostics", round_to=2)
    assert "mean" not in diagnostics.columns
    assert len(diagnostics) == 2 * N_SPECIES


def test_evaluate_sample_stats(gllvm_fit):
    gllvm_fit.inference_obj.sample_stats["diverging"].values[0, :3] = True
    tests = gllvm_fit.evaluate_sample_stats()
    assert int(tests["diverged"].sum()) == 3
    assert not tests["max_tree_depth_reached"].any()

    # A lower maximum depth flags every transition
    tests = gllvm_fit.evaluate_sample_stats(max_tree_depth=3)
    assert bool(tests["max_tree_depth_reached"].all())


def test_sample_tests_are_stored_and_replaced(gllvm_fit):
    assert not hasattr(gllvm_fit.inference_obj, "sample_diagnostic_tests")
    gllvm_fit.evaluate_sample_stats()
    stored = gllvm_fit.inference_obj.sample_diagnostic_tests
    assert int(stored["diverged"].sum()) == 0

    # Evaluating again overwrites the earlier results
    gllvm_fit.inference_obj.sample_stats["diverging"].values[1, :2] = True
    gllvm_fit.evaluate_sample_stats()
    stored = gllvm_fit.inference_obj.sample_diagnostic_tests
    assert int(stored["diverged"].sum()) == 2


def test_variable_tests_need_diagnostics(gllvm_fit):
    with pytest.raises(MissingGroupError):
        gllvm_fit.evaluate_variable_diagnostic_stats()


def test_diagnose_flags_low_ess(gllvm_fit):
    # 100 draws can never reach an ESS of 100 per chain
    with pytest.warns(UserWarning, match="ess_bulk"):
        sample_failures, variable_failures = gllvm_fit.diagnose(silent=True)

    assert len(sample_failures["diverged"][0]) == 0
    assert set(variable_failures) == {"r_hat", "ess_bulk", "ess_tail"}
    assert len(variable_failures["ess_bulk"]["betas"][0]) == 2 * N_SPECIES
    assert hasattr(gllvm_fit.inference_obj, "variable_diagnostic_stats")
    assert hasattr(gllvm_fit.inference_obj, "sample_diagnostic_tests")


def test_extract(gllvm_fit):
    draws = gllvm_fit.extract(["betas", "sigma_L"])
    assert draws["betas"].shape == (N_DRAWS, 2, N_SPECIES)
    assert draws["sigma_L"].shape == (N_DRAWS,)

    unpermuted = gllvm_fit.extract("LV", permuted=False)
    assert unpermuted["LV"].shape == (CHAINS, DRAWS, 2, N_SITES)

    # Chains are stacked in order
    np.testing.assert_array_equal(
        draws["betas"][DRAWS], gllvm_fit.extract("betas", permuted=False)["betas"][1, 0]
    )


def test_nuts_params(gllvm_fit):
    nuts = gllvm_fit.nuts_params()
    assert list(nuts.columns) == ["chain", "draw", "parameter", "value"]
    assert {"diverging", "tree_depth", "energy"} <= set(nuts["parameter"])
    assert len(nuts) == N_DRAWS * nuts["parameter"].nunique()


def test_log_lik_and_loo(gllvm_fit):
    assert gllvm_fit.log_lik().shape == (N_DRAWS, N_SITES, N_SPECIES)

    loo = gllvm_fit.loo()
    assert "elpd_loo" in loo.index


def test_species_correlation(gllvm_fit, mglmm_fit):
    correlation = gllvm_fit.species_correlation()
    assert correlation.dims == ("chain", "draw", "species", "species2")
    diagonal = np.diagonal(correlation.to_numpy(), axis1=2, axis2=3)
    np.testing.assert_allclose(diagonal, 1.0)
    np.testing.assert_allclose(
        correlation.to_numpy(), np.swapaxes(correlation.to_numpy(), 2, 3)
    )

    assert mglmm_fit.species_correlation().name == "cor_species"


def test_linpred_for_fitted_sites(gllvm_fit):
    draw_ids = [0, 5, 60]
    eta = gllvm_fit.posterior_linpred(draw_ids=draw_ids)
    assert eta.shape == (3, N_SITES, N_SPECIES)

    # Matches the linear predictor built by hand
    X = gllvm_fit.inference_obj.constant_data["X"].to_numpy()
    draws = gllvm_fit.extract(["betas", "LV", "Lambda"])
    expected = X @ draws["betas"][5] + draws["LV"][5].T @ draws["Lambda"][5]
    np.testing.assert_allclose(eta[1], expected)

    # Without the latent variables only the covariates contribute
    fixed = gllvm_fit.posterior_linpred(draw_ids=draw_ids, include_latent=False)
    np.testing.assert_allclose(fixed[2], X @ draws["betas"][60])

    # The inverse link is applied on request
    mu = gllvm_fit.posterior_linpred(draw_ids=draw_ids, transform=True)
    np.testing.assert_allclose(mu, np.exp(eta))


def test_linpred_random_draws(gllvm_fit):
    eta = gllvm_fit.posterior_linpred(ndraws=10, seed=3)
    assert eta.shape == (10, N_SITES, N_SPECIES)
    np.testing.assert_array_equal(eta, gllvm_fit.posterior_linpred(ndraws=10, seed=3))

    with pytest.raises(ValueError, match="ndraws"):
        gllvm_fit.posterior_linpred(ndraws=N_DRAWS + 1)


def test_linpred_for_new_sites(gllvm_fit, mglmm_fit):
    newdata = np.array([[0.0], [1.0], [-1.0]])

    # Fixed part only
    fixed = gllvm_fit.posterior_linpred(
        newdata=newdata, draw_ids=[4], include_latent=False
    )
    betas = gllvm_fit.extract("betas")["betas"][4]
    np.testing.assert_allclose(fixed[0], np.column_stack([np.ones(3), newdata]) @ betas)

    # New latent variables vary between draws of the same posterior sample
    latent = gllvm_fit.posterior_linpred(newdata=newdata, draw_ids=[4, 4], seed=2)
    assert latent.shape == (2, 3, N_SPECIES)
    assert not np.allclose(latent[0], latent[1])

    # Site intercepts are set to their mean when latent effects are excluded
    mglmm_fixed = mglmm_fit.posterior_linpred(
        newdata=newdata, draw_ids=[7], include_latent=False
    )
    draws = mglmm_fit.extract(["betas", "a_bar"])
    np.testing.assert_allclose(
        mglmm_fixed[0],
        np.column_stack([np.ones(3), newdata]) @ draws["betas"][7] + draws["a_bar"][7],
    )

    # Correlated species effects are drawn for new sites
    mglmm_latent = mglmm_fit.posterior_linpred(newdata=newdata, ndraws=5, seed=1)
    assert mglmm_latent.shape == (5, 3, N_SPECIES)


def test_newdata_must_match_predictors(gllvm_fit):
    with pytest.raises(DimensionMismatchError):
        gllvm_fit.posterior_linpred(newdata=np.ones((3, 2)))


def test_posterior_predict(gllvm_fit, mglmm_fit):
    yrep = gllvm_fit.posterior_predict(ndraws=20, seed=0)
    assert yrep.shape == (20, N_SITES, N_SPECIES)
    assert np.all(yrep >= 0)
    np.testing.assert_array_equal(yrep, np.round(yrep))

    # Same seed, same draws
    np.testing.assert_array_equal(yrep, gllvm_fit.posterior_predict(ndraws=20, seed=0))

    # Gaussian draws for new sites
    yrep = mglmm_fit.posterior_predict(newdata=np.zeros((2, 1)), ndraws=4, seed=0)
    assert yrep.shape == (4, 2, N_SPECIES)
    assert np.all(np.isfinite(yrep))


def test_predict_with_constant_zero_inflation():
    # The first species is always a structural zero, the others never are
    zi = np.zeros((CHAINS, DRAWS, N_SPECIES))
    zi[..., 0] = 1.0
    fit = make_gllvm_variant(
        family="zi_poisson", zi_param="constant", extra_posterior={"zi": zi}
    )

    yrep = fit.posterior_predict(ndraws=20, seed=0)
    assert yrep.shape == (20, N_SITES, N_SPECIES)
    assert np.all(yrep[..., 0] == 0)

    # The Poisson part alone
    counts = fit.posterior_predict(ndraws=20, include_zi=False, seed=0)
    assert np.any(counts[..., 0] > 0)

    # New sites share the species probabilities
    new = fit.posterior_predict(newdata=np.zeros((3, 1)), ndraws=5, seed=0)
    assert new.shape == (5, 3, N_SPECIES)
    assert np.all(new[..., 0] == 0)


def test_predict_with_covariate_zero_inflation():
    rng = np.random.default_rng(4)
    zi_X = np.column_stack([np.ones(N_SITES), np.linspace(-1.0, 1.0, N_SITES)])

    # Intercepts push the first species to certain zero inflation, the rest to none
    zi_betas = np.zeros((CHAINS, DRAWS, 2, N_SPECIES))
    zi_betas[:, :, 0, :] = -50.0
    zi_betas[:, :, 0, 0] = 50.0
    fit = make_gllvm_variant(
        family="zi_neg_binomial",
        zi_param="covariate",
        extra_posterior={
            "kappa": 1 + np.abs(rng.normal(size=(CHAINS, DRAWS, N_SPECIES))),
            "zi_betas": zi_betas,
        },
        constant_data={"zi_X": zi_X},
        extra_coords={"zi_predictor": ["Intercept", "zi_V1"]},
    )

    # Fitted sites use the stored covariates
    yrep = fit.posterior_predict(ndraws=20, seed=0)
    assert np.all(yrep[..., 0] == 0)
    assert np.any(yrep[..., 1:] > 0)

    # New sites need their own covariates, without the intercept column
    new = fit.posterior_predict(
        newdata=np.zeros((3, 1)), zi_newdata=np.ones((3, 1)), ndraws=5, seed=0
    )
    assert new.shape == (5, 3, N_SPECIES)
    assert np.all(new[..., 0] == 0)

    with pytest.raises(ValueError, match="zi_newdata"):
        fit.posterior_predict(newdata=np.zeros((3, 1)), ndraws=5)
    with pytest.raises(DimensionMismatchError):
        fit.posterior_predict(
            newdata=np.zeros((3, 1)), zi_newdata=np.ones((2, 1)), ndraws=5
        )


def test_binomial_predictions_respect_trials():
    fit = make_gllvm_variant(
        family="binomial", constant_data={"Ntrials": np.full(N_SITES, 5)}
    )

    yrep = fit.posterior_predict(ndraws=20, seed=0)
    assert yrep.min() >= 0
    assert yrep.max() <= 5

    # One number of trials for all new sites, or one per site
    new = fit.posterior_predict(newdata=np.zeros((3, 1)), Ntrials=2, ndraws=20, seed=0)
    assert new.shape == (20, 3, N_SPECIES)
    assert new.max() <= 2
    per_site = fit.posterior_predict(
        newdata=np.zeros((3, 1)), Ntrials=np.array([1, 1, 4]), ndraws=20, seed=0
    )
    assert per_site[:, :2].max() <= 1

    with pytest.raises(ValueError, match="Ntrials"):
        fit.posterior_predict(newdata=np.zeros((3, 1)), ndraws=5)


def test_linpred_with_grouped_site_intercepts():
    rng = np.random.default_rng(5)
    grps = np.tile([1, 2], N_SITES // 2)
    a_bar = rng.normal(size=(CHAINS, DRAWS))
    sigma_a = np.abs(rng.normal(size=(CHAINS, DRAWS)))
    a = rng.normal(size=(CHAINS, DRAWS, 2))
    fit = make_gllvm_variant(
        site_intercept="grouped",
        extra_posterior={
            "a_bar": a_bar,
            "sigma_a": sigma_a,
            "a": a,
            "a_site": a_bar[..., None] + sigma_a[..., None] * a[..., grps - 1],
        },
        constant_data={"grps": grps},
        extra_coords={"group": ["g1", "g2"]},
    )
    assert fit.coords["group"] == ["g1", "g2"]

    # Fitted sites get the intercept of their group
    eta = fit.posterior_linpred(draw_ids=[3, 70])
    X = fit.inference_obj.constant_data["X"].to_numpy()
    draws = fit.extract(["betas", "LV", "Lambda", "a_site", "a_bar"])
    expected = (
        X @ draws["betas"][70]
        + draws["a_site"][70][:, None]
        + draws["LV"][70].T @ draws["Lambda"][70]
    )
    np.testing.assert_allclose(eta[1], expected)
    np.testing.assert_allclose(draws["a_site"][70][::2], draws["a_site"][70][0])

    # New sites get the mean intercept when latent effects are excluded
    fixed = fit.posterior_linpred(
        newdata=np.zeros((2, 1)), draw_ids=[70], include_latent=False
    )
    np.testing.assert_allclose(
        fixed[0],
        np.tile(draws["betas"][70][0] + draws["a_bar"][70], (2, 1)),
    )


def test_formula_predictions_reuse_fitted_transforms(tmp_path):
    env = pd.DataFrame(
        {"temp": np.linspace(5.0, 25.0, N_SITES)},
        index=[f"site{i + 1}" for i in range(N_SITES)],
    )
    design = build_design_matrix("~ scale(temp)", env)
    fit = make_gllvm_variant(
        X=design.to_numpy(),
        predictors=list(design.columns),
        formula="~ scale(temp)",
        formula_data=env,
    )

    # Two of the fitted sites, passed as new data, are scaled as in the fit
    draw_ids = [2, 40]
    fitted = fit.posterior_linpred(draw_ids=draw_ids, include_latent=False)
    new = fit.posterior_linpred(
        newdata=env.iloc[:2], draw_ids=draw_ids, include_latent=False
    )
    np.testing.assert_allclose(new, fitted[:, :2])

    # The fitted data survive a NetCDF round trip
    path = str(tmp_path / "formula_fit.nc")
    fit.save_netcdf(path)
    loaded = JSDMStanFit.from_disk(path, skip_fit=True)
    assert list(loaded.formula_data.index) == list(env.index)
    np.testing.assert_allclose(loaded.formula_data["temp"], env["temp"])
    np.testing.assert_allclose(
        loaded.posterior_linpred(
            newdata=env.iloc[:2], draw_ids=draw_ids, include_latent=False
        ),
        fitted[:, :2],
    )


def test_statsummaries(gllvm_fit):
    per_site = gllvm_fit.jsdm_statsummary(ndraws=15, seed=0)
    assert per_site.shape == (15, N_SITES)

    per_species = gllvm_fit.jsdm_statsummary(
        summary_stat="mean", calc_over="species", post_type="linpred", ndraws=15
    )
    assert per_species.shape == (15, N_SPECIES)
    assert np.all(per_species > 0)

    Y = gllvm_fit.inference_obj.observed_data["Y"].to_numpy()
    np.testing.assert_array_equal(gllvm_fit.observed_statsummary(), Y.sum(axis=1))
    np.testing.assert_allclose(
        gllvm_fit.observed_statsummary(np.var, calc_over="species"), Y.var(axis=0)
    )


def test_observed_data_is_optional():
    fit = make_gllvm_fit(save_data=False)
    assert fit.posterior_predict(ndraws=2).shape == (2, N_SITES, N_SPECIES)
    with pytest.raises(MissingGroupError, match="save_data"):
        fit.observed_statsummary()


def test_netcdf_round_trip(gllvm_fit, tmp_path):
    path = str(tmp_path / "gllvm_fit.nc")
    gllvm_fit.save_netcdf(path)

    loaded = JSDMStanFit.from_disk(path, skip_fit=True)
    assert loaded.fit is None
    assert loaded.options == gllvm_fit.options
    np.testing.assert_allclose(
        loaded.extract("Lambda")["Lambda"], gllvm_fit.extract("Lambda")["Lambda"]
    )

    with pytest.raises(FileNotFoundError):
        JSDMStanFit.from_disk(str(tmp_path / "missing.nc"))
