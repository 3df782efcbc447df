"""Tests for the plotting functions."""

from __future__ import annotations

import inspect

import holoviews as hv
import numpy as np
import panel as pn
import pytest
from typeguard import TypeCheckError

from conftest import CHAINS, DRAWS, N_SPECIES

from jsdmstan.defaults import DEFAULT_NDRAWS

from jsdmstan.plotting import (
    corrplot,
    envplot,
    mcmc_plot,
    ordiplot,
    posterior_dataframe,
    pp_check,
)
from jsdmstan.plotting.plotting import nan_separated_traces


def test_posterior_dataframe_labels(gllvm_fit):
    df = posterior_dataframe(gllvm_fit, ["betas", "sigma_L"])
    assert list(df.columns) == ["chain", "draw", "parameter", "value"]
    assert "betas[V1, sp2]" in set(df["parameter"])
    assert "sigma_L" in set(df["parameter"])
    assert len(df) == CHAINS * DRAWS * (2 * N_SPECIES + 1)


def test_nan_separated_traces():
    df = nan_separated_traces(
        [np.arange(3), np.arange(2)], [np.ones(3), np.zeros(2)], "x", "y"
    )
    assert len(df) == 7
    assert df["x"].isna().sum() == 2


def test_mcmc_plot_trace_and_density(gllvm_fit):
    layout = mcmc_plot(gllvm_fit, var_names="sigma_L")
    assert isinstance(layout, hv.Layout)
    assert len(layout) == 2

    layout = mcmc_plot(gllvm_fit, var_names="betas", plotfun="trace")
    assert len(layout) == 2 * N_SPECIES


def test_mcmc_plot_skips_constant_parameters(gllvm_fit):
    # The loading of the first species on the second latent variable is fixed at 0
    layout = mcmc_plot(gllvm_fit, var_names="Lambda", plotfun="dens")
    assert len(layout) == 2 * N_SPECIES - 1


def test_mcmc_plot_limits_parameters(gllvm_fit):
    with pytest.warns(UserWarning, match="first 3"):
        layout = mcmc_plot(gllvm_fit, var_names="betas", plotfun="dens", max_parameters=3)
    assert len(layout) == 3


def test_mcmc_plot_diagnostics(gllvm_fit):
    assert isinstance(mcmc_plot(gllvm_fit, var_names="betas", plotfun="rhat"), hv.Bars)
    assert isinstance(mcmc_plot(gllvm_fit, var_names="betas", plotfun="neff"), hv.Bars)


def test_mcmc_plot_diagnostics_with_dask(gllvm_fit):
    expected = mcmc_plot(gllvm_fit, var_names="betas", plotfun="rhat").data

    gllvm_fit.use_dask = True
    bars = mcmc_plot(gllvm_fit, var_names="betas", plotfun="rhat")
    assert isinstance(bars, hv.Bars)
    assert len(bars.data) == 2 * N_SPECIES
    np.testing.assert_allclose(
        bars.data.iloc[:, -1].to_numpy(), expected.iloc[:, -1].to_numpy(), rtol=1e-6
    )
    assert isinstance(mcmc_plot(gllvm_fit, var_names="betas", plotfun="neff"), hv.Bars)


def test_mcmc_plot_interactive(gllvm_fit):
    panel = mcmc_plot(gllvm_fit, var_names="betas", interactive=True)
    assert isinstance(panel, pn.Column)


def test_ordiplot(gllvm_fit, mglmm_fit):
    assert isinstance(ordiplot(gllvm_fit), hv.Overlay)
    assert isinstance(
        ordiplot(gllvm_fit, type="sites", ndraws=5, errorbar_range=0.5, seed=0),
        hv.Overlay,
    )

    with pytest.raises(ValueError, match="choices"):
        ordiplot(gllvm_fit, choices=(0, 2))
    with pytest.raises(ValueError, match="GLLVM"):
        ordiplot(mglmm_fit)


def test_envplot(mglmm_fit):
    layout = envplot(mglmm_fit)
    assert isinstance(layout, hv.Layout)
    assert len(layout) == 1

    assert len(envplot(mglmm_fit, include_intercept=True)) == 2

    with pytest.raises(ValueError, match="Unknown predictors"):
        envplot(mglmm_fit, preds="V7")


def test_corrplot(gllvm_fit, mglmm_fit):
    assert isinstance(corrplot(mglmm_fit), hv.HeatMap)
    heatmap = corrplot(gllvm_fit, species=["sp1", "sp3"])
    assert len(heatmap.data) == 4


@pytest.mark.parametrize("plotfun", ["dens_overlay", "ecdf_overlay", "stat", "scatter_avg"])
def test_pp_check(gllvm_fit, plotfun):
    plot = pp_check(gllvm_fit, plotfun=plotfun, ndraws=10, seed=0)
    assert isinstance(plot, hv.Overlay)


def test_pp_check_over_species(gllvm_fit):
    plot = gllvm_fit.pp_check(
        plotfun="scatter_avg", summary_stat="mean", calc_over="species", ndraws=5
    )
    assert isinstance(plot, hv.Overlay)


def test_pp_check_defaults():
    assert inspect.signature(pp_check).parameters["ndraws"].default == DEFAULT_NDRAWS


def test_pp_check_rejects_unknown_plot_before_predicting(gllvm_fit, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("Predictions drawn for an invalid plot")

    monkeypatch.setattr(gllvm_fit, "jsdm_statsummary", fail)
    monkeypatch.setattr(gllvm_fit, "observed_statsummary", fail)
    with pytest.raises((ValueError, TypeCheckError)):
        pp_check(gllvm_fit, plotfun="violin")
