"""Core plotting functions for jsdmstan.

All functions take a fitted :py:class:`~jsdmstan.model.results.JSDMStanFit` and
return HoloViews objects built with hvplot, so they render in notebooks and can
be saved with ``hv.save``. Available plots are:

    - MCMC diagnostics (traces, densities, R-hat and effective sample size ratios)
    - Ordination plots of GLLVM latent variables and loadings
    - Covariate effects per species with credible intervals
    - Species correlation heatmaps
    - Posterior predictive checks of per-site or per-species summary statistics
"""

from __future__ import annotations

import warnings

from typing import Callable, Literal, Optional, Sequence, TYPE_CHECKING, Union

import holoviews as hv
import hvplot.pandas  # pylint: disable=unused-import
import numpy as np
import numpy.typing as npt
import pandas as pd
import panel as pn
import panel.widgets as pnw

import jsdmstan

from jsdmstan.defaults import DEFAULT_NDRAWS, DEFAULT_RHAT_THRESH

if TYPE_CHECKING:
    from jsdmstan import custom_types
    from jsdmstan.model.results import JSDMStanFit

# Types
HVType = Union[hv.Element, hv.Overlay, hv.NdOverlay, hv.Layout]


def combine_plots(plots: list[HVType], ncols: "custom_types.Integer" = 1) -> hv.Layout:
    """Combine a list of plots into a layout with ``ncols`` columns."""
    return hv.Layout(list(plots)).cols(ncols)


def posterior_dataframe(
    fit: "JSDMStanFit", var_names: Union[str, Sequence[str], None] = None
) -> pd.DataFrame:
    """Posterior draws in long format.

    :param fit: Fitted model
    :type fit: JSDMStanFit
    :param var_names: Variables to include. Defaults to None (all model
        parameters).
    :type var_names: Optional[Union[str, Sequence[str]]]

    :returns: Columns ``chain``, ``draw``, ``parameter`` and ``value``, where
        ``parameter`` is labelled by the coordinates, e.g. ``betas[V1, sp2]``
    :rtype: pd.DataFrame
    """
    frames = []
    for name in fit.resolve_var_names(var_names):
        dataarray = fit.inference_obj.posterior[name]
        other_dims = [dim for dim in dataarray.dims if dim not in ("chain", "draw")]
        df = dataarray.to_dataframe(name="value").reset_index()
        if other_dims:
            labels = df[other_dims].astype(str).agg(", ".join, axis=1)
            df["parameter"] = name + "[" + labels + "]"
        else:
            df["parameter"] = name
        frames.append(df[["chain", "draw", "parameter", "value"]])

    return pd.concat(frames, ignore_index=True)


def nan_separated_traces(
    xs: Sequence[npt.NDArray], ys: Sequence[npt.NDArray], xname: str, yname: str
) -> pd.DataFrame:
    """Stack traces into one DataFrame, separating each with a row of NaNs so that
    they can be drawn as a single line element."""
    sub_dfs = []
    for x, y in zip(xs, ys):
        sub_dfs.append(pd.DataFrame({xname: x, yname: y}))
        sub_dfs.append(pd.DataFrame({xname: [np.nan], yname: [np.nan]}))
    return pd.concat(sub_dfs, ignore_index=True)


def _parameter_plot(
    df: pd.DataFrame, parameter: str, plotfun: Literal["trace", "dens", "combo"]
) -> list[HVType]:
    """Trace and/or density plots for one parameter."""
    param_df = df.loc[df["parameter"] == parameter].assign(
        chain=lambda x: x["chain"].astype(str)
    )
    plots = []
    if plotfun in {"dens", "combo"}:
        plots.append(
            param_df.hvplot.kde(
                y="value", by="chain", title=parameter, width=400, height=250, cut=0
            )
        )
    if plotfun in {"trace", "combo"}:
        plots.append(
            param_df.hvplot.line(
                x="draw", y="value", by="chain", title=parameter, width=400, height=250
            )
        )
    return plots


def mcmc_plot(
    fit: "JSDMStanFit",
    var_names: Union[str, Sequence[str], None] = None,
    plotfun: Literal["trace", "dens", "combo", "rhat", "neff"] = "combo",
    max_parameters: "custom_types.Integer" = 20,
    interactive: bool = False,
) -> Union[HVType, pn.Column]:
    """Plot MCMC draws or convergence diagnostics.

    :param fit: Fitted model
    :type fit: JSDMStanFit
    :param var_names: Variables to plot. Defaults to None (all model parameters).
    :type var_names: Optional[Union[str, Sequence[str]]]
    :param plotfun: "trace" (draws by iteration), "dens" (density by chain),
        "combo" (both), "rhat" (R-hat per parameter) or "neff" (ratio of bulk
        effective sample size to the number of draws). Defaults to "combo".
    :type plotfun: Literal["trace", "dens", "combo", "rhat", "neff"]
    :param max_parameters: Maximum number of parameters shown in static trace and
        density plots. Defaults to 20.
    :type max_parameters: custom_types.Integer
    :param interactive: Whether to return a panel with a parameter selector in
        place of a static layout. Trace, density and combo plots only. Defaults
        to False.
    :type interactive: bool

    :returns: The plot
    :rtype: Union[HVType, pn.Column]

    :raises ValueError: If ``plotfun`` is unknown
    """
    # Diagnostic plots are bar charts over the summary table
    if plotfun in {"rhat", "neff"}:
        diagnostics = fit.summary(var_names=var_names, kind="diagnostics")
        if plotfun == "rhat":
            metric, title = "r_hat", f"R-hat (threshold {DEFAULT_RHAT_THRESH})"
            values = diagnostics["r_hat"]
        else:
            metric, title = "neff_ratio", "Bulk ESS / number of draws"
            values = diagnostics["ess_bulk"] / fit.n_draws
        plotting_df = (
            values.dropna()
            .sort_values()
            .rename(metric)
            .rename_axis("parameter")
            .reset_index()
        )
        return plotting_df.hvplot.barh(
            x="parameter",
            y=metric,
            title=title,
            width=600,
            height=max(250, 15 * len(plotting_df)),
        )

    if plotfun not in {"trace", "dens", "combo"}:
        raise ValueError(
            f"Unknown `plotfun`: '{plotfun}'. Options are: trace, dens, combo, rhat, "
            "neff."
        )

    # Constant entries (e.g., fixed zero loadings) cannot be plotted as densities
    df = posterior_dataframe(fit, var_names)
    varying = df.groupby("parameter", sort=False)["value"].std() > 0
    parameters = varying.index[varying].tolist()

    # Interactive plots choose one parameter at a time
    if interactive:
        selector = pnw.Select(name="Parameter", options=parameters)
        return pn.Column(
            selector,
            pn.bind(
                lambda parameter: combine_plots(
                    _parameter_plot(df, parameter, plotfun), ncols=2
                ),
                selector,
            ),
        )

    if len(parameters) > max_parameters:
        warnings.warn(
            f"Plotting the first {max_parameters} of {len(parameters)} parameters. "
            "Select variables with `var_names` or increase `max_parameters`."
        )
        parameters = parameters[:max_parameters]

    plots = []
    for parameter in parameters:
        plots.extend(_parameter_plot(df, parameter, plotfun))
    return combine_plots(plots, ncols=2 if plotfun == "combo" else 1)


def ordiplot(
    fit: "JSDMStanFit",
    choices: tuple["custom_types.Integer", "custom_types.Integer"] = (0, 1),
    type: Literal["species", "sites"] = "species",  # pylint: disable=redefined-builtin
    ndraws: "custom_types.Integer" = 0,
    errorbar_range: Optional["custom_types.Float"] = None,
    seed: Optional["custom_types.Integer"] = None,
) -> HVType:
    """Ordination plot of a GLLVM.

    Species are placed by their loadings and sites by their latent variable
    scores, at the posterior median.

    :param fit: Fitted GLLVM
    :type fit: JSDMStanFit
    :param choices: Zero-based indices of the two latent variables to plot.
        Defaults to (0, 1).
    :type choices: tuple[custom_types.Integer, custom_types.Integer]
    :param type: Plot "species" loadings or "sites" scores. Defaults to "species".
    :type type: Literal["species", "sites"]
    :param ndraws: Number of individual posterior draws to plot behind the
        medians. Defaults to 0.
    :type ndraws: custom_types.Integer
    :param errorbar_range: Width of the central interval drawn as error bars
        along both axes (e.g. 0.5). Defaults to None (no error bars).
    :type errorbar_range: Optional[custom_types.Float]
    :param seed: Seed for choosing the draws.
    :type seed: Optional[custom_types.Integer]

    :returns: Scatter plot with labelled points
    :rtype: HVType

    :raises ValueError: If the model is not a GLLVM or ``choices`` are invalid
    """
    if fit.method != "gllvm":
        raise ValueError("Ordination plots are only available for GLLVMs.")
    D = len(fit.coords["latent"])
    if len(choices) != 2 or choices[0] == choices[1] or not all(
        0 <= choice < D for choice in choices
    ):
        raise ValueError(
            f"`choices` must be two different latent variable indices in [0, {D})."
        )

    # Draws of the (D, n) positions
    if type == "species":
        draws, labels = fit.extract("Lambda")["Lambda"], fit.coords["species"]
    elif type == "sites":
        draws, labels = fit.extract("LV")["LV"], fit.coords["site"]
    else:
        raise ValueError("`type` must be 'species' or 'sites'.")
    draws = draws[:, list(choices), :]
    xname, yname = (fit.coords["latent"][choice] for choice in choices)

    # Posterior medians
    median = np.median(draws, axis=0)
    median_df = pd.DataFrame({xname: median[0], yname: median[1], "label": labels})
    plot = median_df.hvplot.scatter(
        x=xname,
        y=yname,
        hover_cols=["label"],
        color="black",
        title=f"Ordination ({type})",
        width=500,
        height=500,
    ) * hv.Labels(median_df, kdims=[xname, yname], vdims="label")

    # Individual draws
    if ndraws > 0:
        rng = jsdmstan.RNG if seed is None else np.random.default_rng(seed)
        chosen = draws[rng.choice(len(draws), size=min(ndraws, len(draws)), replace=False)]
        draw_df = pd.DataFrame(
            {
                xname: chosen[:, 0].ravel(),
                yname: chosen[:, 1].ravel(),
                "label": np.tile(labels, len(chosen)),
            }
        )
        plot = (
            draw_df.hvplot.scatter(
                x=xname, y=yname, by="label", alpha=0.3, size=10, legend=False
            )
            * plot
        )

    # Error bars along both axes
    if errorbar_range is not None:
        lower, upper = np.quantile(
            draws, [(1 - errorbar_range) / 2, (1 + errorbar_range) / 2], axis=0
        )
        plot = (
            hv.Segments(
                (lower[0], median[1], upper[0], median[1]),
                kdims=["x0", "y0", "x1", "y1"],
            )
            * hv.Segments(
                (median[0], lower[1], median[0], upper[1]),
                kdims=["x0", "y0", "x1", "y1"],
            )
            * plot
        )

    return plot


def envplot(
    fit: "JSDMStanFit",
    preds: Union[str, Sequence[str], None] = None,
    include_intercept: bool = False,
    prob: "custom_types.Float" = 0.9,
) -> hv.Layout:
    """Covariate effects on each species with central credible intervals.

    :param fit: Fitted model
    :type fit: JSDMStanFit
    :param preds: Predictors to plot. Defaults to None (all predictors).
    :type preds: Optional[Union[str, Sequence[str]]]
    :param include_intercept: Whether to include the species intercepts when
        ``preds`` is None. Defaults to False.
    :type include_intercept: bool
    :param prob: Width of the credible interval. Defaults to 0.9.
    :type prob: custom_types.Float

    :returns: One panel per predictor
    :rtype: hv.Layout

    :raises ValueError: If no predictors are left to plot or a name is unknown
    """
    # pylint: disable=import-outside-toplevel
    from jsdmstan.model.results import has_intercept

    predictor_names = fit.coords["predictor"]
    if preds is None:
        preds = [
            name
            for i, name in enumerate(predictor_names)
            if include_intercept or not (i == 0 and has_intercept(fit))
        ]
    elif isinstance(preds, str):
        preds = [preds]
    if unknown := set(preds) - set(predictor_names):
        raise ValueError(f"Unknown predictors: {', '.join(sorted(unknown))}")
    if len(preds) == 0:
        raise ValueError("No predictors to plot.")

    # Quantiles of the (draws, K, S) effects
    betas = fit.extract("betas")["betas"]
    lower, median, upper = np.quantile(
        betas, [(1 - prob) / 2, 0.5, (1 + prob) / 2], axis=0
    )

    plots = []
    for pred in preds:
        k = predictor_names.index(pred)
        plotting_df = pd.DataFrame(
            {
                "species": fit.coords["species"],
                "effect": median[k],
                "neg": median[k] - lower[k],
                "pos": upper[k] - median[k],
            }
        )
        plots.append(
            (
                hv.HLine(0).opts(color="gray", line_dash="dashed")
                * hv.ErrorBars(
                    plotting_df, kdims="species", vdims=["effect", "neg", "pos"]
                )
                * plotting_df.hvplot.scatter(x="species", y="effect", color="black")
            ).opts(title=pred, width=600, height=300)
        )

    return combine_plots(plots)


def corrplot(
    fit: "JSDMStanFit", species: Union[str, Sequence[str], None] = None
) -> HVType:
    """Heatmap of the posterior mean species correlation matrix.

    :param fit: Fitted model
    :type fit: JSDMStanFit
    :param species: Species to include. Defaults to None (all species).
    :type species: Optional[Union[str, Sequence[str]]]

    :returns: Heatmap
    :rtype: HVType
    """
    correlation = fit.species_correlation().mean(dim=("chain", "draw"))
    if species is not None:
        species = [species] if isinstance(species, str) else list(species)
        correlation = correlation.sel(species=species, species2=species)

    plotting_df = correlation.to_dataframe(name="correlation").reset_index()
    return plotting_df.hvplot.heatmap(
        x="species",
        y="species2",
        C="correlation",
        cmap="RdBu_r",
        clim=(-1, 1),
        title="Species correlation",
        xlabel="",
        ylabel="",
        rot=90,
        width=550,
        height=500,
    )


def pp_check(
    fit: "JSDMStanFit",
    plotfun: Literal["dens_overlay", "ecdf_overlay", "stat", "scatter_avg"] = (
        "dens_overlay"
    ),
    summary_stat: Union[str, Callable] = "sum",
    calc_over: Literal["site", "species"] = "site",
    ndraws: "custom_types.Integer" = DEFAULT_NDRAWS,
    stat: str = "mean",
    seed: Optional["custom_types.Integer"] = None,
    **kwargs,
) -> HVType:
    """Posterior predictive check of a summary statistic of the community.

    The statistic (species richness or total abundance per site for the defaults)
    is computed on the observed data and on ``ndraws`` posterior predictive
    replicates, then compared.

    :param fit: Fitted model
    :type fit: JSDMStanFit
    :param plotfun: "dens_overlay" (density of the statistic, observed against
        each replicate), "ecdf_overlay" (the same with ECDFs), "stat" (histogram of
        ``stat`` of the replicated statistics with the observed value) or
        "scatter_avg" (observed against the average replicated statistic).
        Defaults to "dens_overlay".
    :type plotfun: Literal["dens_overlay", "ecdf_overlay", "stat", "scatter_avg"]
    :param summary_stat: See :py:meth:`JSDMStanFit.jsdm_statsummary`. Defaults to
        "sum".
    :type summary_stat: Union[str, Callable]
    :param calc_over: See :py:meth:`JSDMStanFit.jsdm_statsummary`. Defaults to
        "site".
    :type calc_over: Literal["site", "species"]
    :param ndraws: Number of posterior predictive replicates. Defaults to 50.
    :type ndraws: custom_types.Integer
    :param stat: NumPy reduction applied to each replicate for ``plotfun="stat"``.
        Defaults to "mean".
    :type stat: str
    :param seed: Seed for the posterior predictive draws.
    :type seed: Optional[custom_types.Integer]
    :param kwargs: Passed to :py:meth:`JSDMStanFit.jsdm_statsummary`.

    :returns: The plot
    :rtype: HVType

    :raises ValueError: If ``plotfun`` is unknown
    """
    if plotfun not in {"dens_overlay", "ecdf_overlay", "stat", "scatter_avg"}:
        raise ValueError(
            f"Unknown `plotfun`: '{plotfun}'. Options are: dens_overlay, "
            "ecdf_overlay, stat, scatter_avg."
        )

    y = fit.observed_statsummary(summary_stat=summary_stat, calc_over=calc_over)
    yrep = fit.jsdm_statsummary(
        summary_stat=summary_stat,
        calc_over=calc_over,
        ndraws=min(ndraws, fit.n_draws),
        seed=seed,
        **kwargs,
    )
    label = summary_stat if isinstance(summary_stat, str) else summary_stat.__name__

    if plotfun == "dens_overlay":
        # Shared bins so that all densities are comparable
        bins = np.histogram_bin_edges(np.concatenate([y, yrep.ravel()]), bins="auto")
        centers = (bins[:-1] + bins[1:]) / 2
        rep_df = nan_separated_traces(
            [centers] * len(yrep),
            [np.histogram(row, bins=bins, density=True)[0] for row in yrep],
            label,
            "Density",
        )
        obs_df = pd.DataFrame(
            {label: centers, "Density": np.histogram(y, bins=bins, density=True)[0]}
        )
        return (
            rep_df.hvplot.line(
                x=label, y="Density", color="lightblue", alpha=0.5, label="yrep"
            )
            * obs_df.hvplot.line(x=label, y="Density", color="black", label="y")
        ).opts(title=f"Posterior predictive check: {label} per {calc_over}")

    if plotfun == "ecdf_overlay":
        ecdf_y = np.arange(1, len(y) + 1) / len(y)
        rep_df = nan_separated_traces(
            [np.sort(row) for row in yrep],
            [ecdf_y] * len(yrep),
            label,
            "Cumulative Probability",
        )
        obs_df = pd.DataFrame({label: np.sort(y), "Cumulative Probability": ecdf_y})
        return (
            rep_df.hvplot.step(
                x=label,
                y="Cumulative Probability",
                color="lightblue",
                alpha=0.5,
                label="yrep",
            )
            * obs_df.hvplot.step(
                x=label, y="Cumulative Probability", color="black", label="y"
            )
        ).opts(title=f"Posterior predictive check: {label} per {calc_over}")

    if plotfun == "stat":
        stat_func = getattr(np, stat)
        rep_df = pd.DataFrame({f"{stat}({label})": stat_func(yrep, axis=1)})
        return (
            rep_df.hvplot.hist(y=f"{stat}({label})", color="lightblue")
            * hv.VLine(float(stat_func(y))).opts(color="black")
        ).opts(title=f"Posterior predictive check: {stat} of {label} per {calc_over}")

    # Scatter of the average replicate against the observed statistic
    plotting_df = pd.DataFrame({"Average replicate": yrep.mean(axis=0), "Observed": y})
    return (
        plotting_df.hvplot.scatter(x="Average replicate", y="Observed")
        * hv.Slope(1, 0).opts(color="gray", line_dash="dashed")
    ).opts(title=f"Posterior predictive check: {label} per {calc_over}")
