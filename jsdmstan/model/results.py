# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Analysis of fitted Joint Species Distribution Models.

This module centers around :py:class:`JSDMStanFit`, which wraps the ArviZ
``InferenceData`` object built from a CmdStan run together with the structural
options of the fitted model. It provides:

    - Posterior summaries and convergence diagnostics (R-hat, bulk and tail ESS,
      divergences, tree depth saturation, E-BFMI) computed by ArviZ
    - Access to posterior draws, sampler (NUTS) parameters and the pointwise
      log-likelihood
    - Posterior linear predictors and posterior predictive draws, both for the
      fitted sites and for new sites
    - Summary statistics of posterior predictions for predictive checks
    - Persistent storage in NetCDF format

Performance Considerations:
    - Posterior summaries can be computed out-of-core with Dask for large models
    - NetCDF files are read lazily when Dask is enabled

Example:
    >>> fit = jsdmstan.stan_gllvm(Y=Y, X=X, D=2, family="poisson")
    >>> print(fit)
    >>> fit.summary(var_names=["betas"])
    >>> sample_fails, var_fails = fit.diagnose()
    >>> yrep = fit.posterior_predict(ndraws=100)
"""

from __future__ import annotations

import io
import json
import os.path
import warnings

from glob import glob
from typing import (
    Any,
    Callable,
    Literal,
    Optional,
    Sequence,
    TYPE_CHECKING,
    Union,
)

import arviz as az
import dask
import h5netcdf  # pylint: disable=unused-import
import numpy as np
import numpy.typing as npt
import pandas as pd
import xarray as xr

from arviz.labels import BaseLabeller
from arviz.sel_utils import xarray_var_iter
from cmdstanpy import CmdStanMCMC, from_csv
from tqdm import tqdm

import jsdmstan

from jsdmstan import utils
from jsdmstan.defaults import (
    DEFAULT_EBFMI_THRESH,
    DEFAULT_ESS_THRESH,
    DEFAULT_RHAT_THRESH,
    DEFAULT_SUMMARY_PROB,
)
from jsdmstan.design import INTERCEPT_NAME, JSDMData, build_design_matrix
from jsdmstan.exceptions import DimensionMismatchError, MissingGroupError
from jsdmstan.families import Family, check_ntrials, get_family

if TYPE_CHECKING:
    from jsdmstan import custom_types
    from jsdmstan.model.stancode import JSDMStanProgram

# Named dimensions of every variable that the Stan programs can report
VARIABLE_DIMS: dict[str, list[str]] = {
    "betas": ["predictor", "species"],
    "z_preds": ["predictor", "species"],
    "sigmas_preds": ["predictor"],
    "L_Rho_preds": ["predictor", "predictor2"],
    "cor_preds": ["predictor", "predictor2"],
    "a_site": ["site"],
    "sigmas_species": ["species"],
    "z_species": ["species", "site"],
    "L_Rho_species": ["species", "species2"],
    "cor_species": ["species", "species2"],
    "u": ["site", "species"],
    "LV": ["latent", "site"],
    "L_d": ["latent"],
    "Lambda": ["latent", "species"],
    "sigma": ["species"],
    "kappa": ["species"],
    "zi": ["species"],
    "zi_betas": ["zi_predictor", "species"],
    "log_lik": ["site", "species"],
    "Y": ["site", "species"],
    "X": ["site", "predictor"],
    "Ntrials": ["site"],
    "grps": ["site"],
    "zi_X": ["site", "zi_predictor"],
}
"""Names of the dimensions of each model variable, excluding chain and draw."""


def _get_dims(options: dict[str, Any]) -> dict[str, list[str]]:
    """Dimension names for the variables of a model with the given options."""
    dims = dict(VARIABLE_DIMS)
    if options["site_intercept"] == "grouped":
        dims["a"] = ["group"]
    elif options["site_intercept"] == "ungrouped":
        dims["a"] = ["site"]
    return dims


def _get_coords(coords: dict[str, list[str]]) -> dict[str, list[str]]:
    """Add the duplicated coordinates needed for square matrices."""
    return {
        **coords,
        "predictor2": coords["predictor"],
        "species2": coords["species"],
    }


def dask_enabled_summary_stats(inference_obj: az.InferenceData) -> xr.Dataset:
    """Compute summary statistics using Dask for memory efficiency.

    :param inference_obj: ArviZ InferenceData object containing posterior samples
    :type inference_obj: az.InferenceData

    :returns: Dataset containing the mean, standard deviation and 94% highest
        density interval of each variable
    :rtype: xr.Dataset
    """
    # Queue up the delayed computations
    with utils.az_dask():
        delayed_summaries = [
            inference_obj.posterior.mean(dim=("chain", "draw")),
            inference_obj.posterior.std(dim=("chain", "draw")),
            az.hdi(
                inference_obj,
                hdi_prob=0.94,
                dask_gufunc_kwargs={"output_sizes": {"hdi": 2}},
            ),
        ]

        # Compute the results
        mean, std, hdi = dask.compute(*delayed_summaries)

    # Concatenate the results
    return xr.concat(
        [
            mean.assign_coords(metric=["mean"]),
            std.assign_coords(metric=["sd"]),
            hdi.assign_coords(hdi=["hdi_3%", "hdi_97%"]).rename(hdi="metric"),
        ],
        dim="metric",
    )


def dask_enabled_diagnostics(inference_obj: az.InferenceData) -> xr.Dataset:
    """Compute MCMC diagnostics using Dask for memory efficiency.

    :param inference_obj: ArviZ InferenceData object containing posterior samples
    :type inference_obj: az.InferenceData

    :returns: Dataset containing Monte Carlo standard errors, bulk and tail ESS and
        R-hat for each variable
    :rtype: xr.Dataset
    """
    with utils.az_dask():
        diagnostics = dask.compute(
            az.mcse(inference_obj.posterior, method="mean"),
            az.mcse(inference_obj.posterior, method="sd"),
            az.ess(inference_obj.posterior, method="bulk"),
            az.ess(inference_obj.posterior, method="tail"),
            az.rhat(inference_obj.posterior),
        )

    return xr.concat(
        [
            dset.assign_coords(metric=[metric])
            for metric, dset in zip(
                ["mcse_mean", "mcse_sd", "ess_bulk", "ess_tail", "r_hat"], diagnostics
            )
        ],
        dim="metric",
    )


class JSDMStanFit:
    """A fitted Joint Species Distribution Model.

    Users will not typically instantiate this class directly. Instead, it is returned
    by :py:func:`jsdmstan.stan_jsdm` (and friends) or loaded from disk with
    :py:meth:`from_disk`.

    :param inference_obj: ArviZ InferenceData object or path to a NetCDF file. It
        must contain ``posterior``, ``sample_stats`` and ``constant_data`` groups.
        The ``observed_data`` group is needed only for comparisons with the
        observed community.
    :type inference_obj: Union[az.InferenceData, str]
    :param fit: The CmdStanMCMC object that produced the draws, if available.
    :type fit: Optional[CmdStanMCMC]
    :param options: Structural options of the model. Read from the attributes of
        the InferenceData object if not provided.
    :type options: Optional[dict[str, Any]]
    :param use_dask: Whether to use Dask for summaries and lazy loading. Defaults to
        False.
    :type use_dask: bool
    :param formula_data: Table a formula-based model was fit to. Stored in the
        attributes of the InferenceData object so that new sites can be encoded
        with the same formula state.
    :type formula_data: Optional[pd.DataFrame]

    :ivar inference_obj: ArviZ InferenceData object with all results
    :ivar fit: CmdStanMCMC object (None when loaded without CSV files)
    :ivar options: Model options (method, family, D, site_intercept, ...)
    :ivar use_dask: Flag controlling Dask usage for computation

    :raises MissingGroupError: If required groups are missing
    :raises ValueError: If no model options can be found
    """

    def __init__(
        self,
        inference_obj: Union[az.InferenceData, str],
        fit: Optional[CmdStanMCMC] = None,
        options: Optional[dict[str, Any]] = None,
        use_dask: bool = False,
        formula_data: Optional[pd.DataFrame] = None,
    ):
        self.fit = fit
        self.use_dask = use_dask

        # Load from disk if needed. Ignore warnings about chunking.
        if isinstance(inference_obj, str):
            with warnings.catch_warnings():
                warnings.filterwarnings(
                    "ignore",
                    category=UserWarning,
                    message="The specified chunks separate the stored chunks along dimension",
                )
                inference_obj = az.from_netcdf(
                    filename=inference_obj,
                    engine="h5netcdf",
                    group_kwargs={
                        k: {"chunks": "auto" if use_dask else None}
                        for k in ("posterior", "sample_stats", "log_likelihood")
                    },
                )
        elif not isinstance(inference_obj, az.InferenceData):
            raise ValueError(
                "inference_obj must be either a string or an InferenceData object"
            )
        self.inference_obj = inference_obj

        # Check the groups
        if missing_groups := (
            {"posterior", "sample_stats", "constant_data"}
            - set(self.inference_obj.groups())
        ):
            raise MissingGroupError(
                f"ArviZ object is missing the following groups: "
                f"{', '.join(sorted(missing_groups))}"
            )

        # Record the options in the attributes so that they persist on disk
        if options is not None:
            self.inference_obj.attrs["jsdm_options"] = json.dumps(options)
        elif "jsdm_options" not in self.inference_obj.attrs:
            raise ValueError("No model options found in the InferenceData attributes.")
        self.options = json.loads(self.inference_obj.attrs["jsdm_options"])

        # The formula data are kept as JSON alongside the options
        if formula_data is not None:
            self.inference_obj.attrs["jsdm_formula_data"] = formula_data.to_json(
                orient="split", double_precision=15
            )
        self._formula_data = formula_data

    @classmethod
    def from_cmdstanpy(
        cls,
        fit: CmdStanMCMC,
        data: JSDMData,
        program: "JSDMStanProgram",
        save_data: bool = True,
        use_dask: bool = False,
    ) -> "JSDMStanFit":
        """Build the results object from a CmdStan run.

        :param fit: The completed sampler run
        :type fit: CmdStanMCMC
        :param data: The data the model was fit to
        :type data: JSDMData
        :param program: The Stan program that was run
        :type program: JSDMStanProgram
        :param save_data: Whether to store the observed community matrix. Defaults
            to True.
        :type save_data: bool
        :param use_dask: Whether to use Dask for summaries. Defaults to False.
        :type use_dask: bool

        :returns: The fitted model
        :rtype: JSDMStanFit
        """
        # Constant data are everything but the response and the dimensions
        constant_data = {
            name: data.stan_data[name]
            for name in ("X", "Ntrials", "grps", "zi_X")
            if name in data.stan_data
        }

        # Build the inference object
        inference_obj = az.from_cmdstanpy(
            posterior=fit,
            log_likelihood="log_lik",
            observed_data={"Y": data.Y} if save_data else None,
            constant_data=constant_data,
            coords=_get_coords(data.coords),
            dims=_get_dims(data.options),
        )

        # Record the sampler settings alongside the model options
        options = {
            **data.options,
            "parameter_names": list(program.parameter_names),
            "chains": fit.chains,
            "iter_warmup": fit.num_draws_warmup,
            "iter_sampling": fit.num_draws_sampling,
            "max_depth": int(fit.metadata.cmdstan_config.get("max_depth", 10)),
        }

        return cls(
            inference_obj,
            fit=fit,
            options=options,
            use_dask=use_dask,
            formula_data=data.formula_data,
        )

    @classmethod
    def from_disk(
        cls,
        path: str,
        csv_files: Union[list[str], str, None] = None,
        skip_fit: bool = False,
        use_dask: bool = False,
    ) -> "JSDMStanFit":
        """Load a fitted model from a NetCDF file written by :py:meth:`save_netcdf`.

        :param path: Path to the NetCDF file
        :type path: str
        :param csv_files: Paths to the CmdStan CSV files or a glob pattern. Defaults
            to None, in which case files named ``<path without .nc>*.csv`` are used.
        :type csv_files: Optional[Union[list[str], str]]
        :param skip_fit: Whether to skip loading the CSV files. Defaults to False.
        :type skip_fit: bool
        :param use_dask: Whether to enable Dask. Defaults to False.
        :type use_dask: bool

        :returns: The fitted model
        :rtype: JSDMStanFit

        :raises FileNotFoundError: If the NetCDF file doesn't exist
        """
        if not os.path.exists(path):
            raise FileNotFoundError(
                f"The file {path} does not exist. Please provide a valid path."
            )

        # Find the CSV files if needed
        if skip_fit:
            csv_files = None
        elif csv_files is None:
            if path.endswith(".nc"):
                csv_files = sorted(glob(path.removesuffix(".nc") + "*.csv")) or None
            if csv_files is None:
                warnings.warn(
                    "Could not identify csv files automatically. Loading without. "
                    "To be auto-detected, csv files must be named according to the "
                    "following pattern: <extensionless_netcdf_filename>*.csv"
                )

        return cls(
            inference_obj=path,
            fit=None if csv_files is None else from_csv(csv_files, method="sample"),
            use_dask=use_dask,
        )

    def save_netcdf(self, filename: str) -> None:
        """Save the results to NetCDF format.

        :param filename: Path where to save the NetCDF file
        :type filename: str

        Example:
            >>> fit.save_netcdf("gllvm_fit.nc")
            >>> fit = JSDMStanFit.from_disk("gllvm_fit.nc", skip_fit=True)
        """
        self.inference_obj.to_netcdf(filename, engine="h5netcdf")

    def _update_group(
        self, attrname: str, new_group: xr.Dataset, force_del: bool = False
    ) -> None:
        """Update or add a group to the ArviZ InferenceData object."""
        if hasattr(self.inference_obj, attrname) and not force_del:
            getattr(self.inference_obj, attrname).update(new_group)
            return

        if force_del and hasattr(self.inference_obj, attrname):
            delattr(self.inference_obj, attrname)
        self.inference_obj.add_groups({attrname: new_group})

    # Basic properties of the fit
    @property
    def family(self) -> Family:
        return get_family(self.options["family"])

    @property
    def method(self) -> str:
        return self.options["method"]

    @property
    def coords(self) -> dict[str, list[str]]:
        """Labels of the sites, species, predictors and (GLLVM) latent variables."""
        posterior = self.inference_obj.posterior
        return {
            name: [str(v) for v in posterior.coords[name].values]
            for name in ("site", "species", "predictor", "latent", "group")
            if name in posterior.coords
        }

    @property
    def n_sites(self) -> int:
        return self.inference_obj.constant_data["X"].shape[0]

    @property
    def n_species(self) -> int:
        return self.inference_obj.posterior.sizes["species"]

    @property
    def n_draws(self) -> int:
        """Total number of posterior draws over all chains."""
        sizes = self.inference_obj.posterior.sizes
        return sizes["chain"] * sizes["draw"]

    @property
    def formula_data(self) -> Optional[pd.DataFrame]:
        """The table a formula-based model was fit to, or None."""
        stored = self.inference_obj.attrs.get("jsdm_formula_data")
        if self._formula_data is None and stored is not None:
            self._formula_data = pd.read_json(
                io.StringIO(stored),
                orient="split",
                convert_dates=False,
            )
        return self._formula_data

    def __str__(self) -> str:
        # Model description
        assoc = (
            f"GLLVM with {self.options['D']} latent variable(s)"
            if self.method == "gllvm"
            else "MGLMM"
        )
        lines = [
            f"Family: {self.family.name}",
            f"Model type: {assoc}",
            f"Number of species: {self.n_species}",
            f"Number of sites: {self.n_sites}",
            "Number of predictors: "
            f"{self.inference_obj.constant_data['X'].shape[1]}",
            f"Site intercept: {self.options['site_intercept']}",
            f"Covariate effects: {self.options['beta_param']}",
        ]
        if self.options.get("zi_param"):
            lines.append(f"Zero-inflation: {self.options['zi_param']}")

        # Sampler description
        sizes = self.inference_obj.posterior.sizes
        lines.append(
            f"Sampling: {sizes['chain']} chain(s), each with "
            f"{self.options.get('iter_warmup', 'unknown')} warmup and "
            f"{sizes['draw']} sampling iterations"
        )
        n_divergent = int(self.inference_obj.sample_stats["diverging"].sum())
        lines.append(f"Divergent transitions: {n_divergent}")

        # Worst diagnostics over the model parameters
        if sizes["chain"] > 1:
            diagnostics = self.summary(kind="diagnostics")
            lines.extend(
                [
                    f"Maximum R-hat: {diagnostics['r_hat'].max():.3f} "
                    f"({diagnostics['r_hat'].idxmax()})",
                    f"Minimum bulk ESS: {diagnostics['ess_bulk'].min():.0f} "
                    f"({diagnostics['ess_bulk'].idxmin()})",
                    f"Minimum tail ESS: {diagnostics['ess_tail'].min():.0f} "
                    f"({diagnostics['ess_tail'].idxmin()})",
                ]
            )

        return "\n".join(lines)

    def get_parnames(self) -> list[str]:
        """Names of the model parameters, excluding the raw non-centred variables
        and the log-likelihood.

        :returns: Parameter names present in the posterior
        :rtype: list[str]
        """
        return [
            name
            for name in self.options["parameter_names"]
            if name in self.inference_obj.posterior
        ]

    def resolve_var_names(
        self, var_names: Union[str, Sequence[str], None]
    ) -> list[str]:
        if var_names is None:
            return self.get_parnames()
        if isinstance(var_names, str):
            var_names = [var_names]
        if missing := set(var_names) - set(self.inference_obj.posterior.data_vars):
            raise KeyError(f"Unknown variables: {', '.join(sorted(missing))}")
        return list(var_names)

    def summary(
        self,
        var_names: Union[str, Sequence[str], None] = None,
        kind: Literal["all", "stats", "diagnostics"] = "all",
        prob: "custom_types.Float" = DEFAULT_SUMMARY_PROB,
        round_to: Union["custom_types.Integer", Literal["none"]] = "none",
    ) -> pd.DataFrame:
        """Posterior summary and convergence diagnostics for each parameter.

        :param var_names: Variables to summarize. Defaults to None (all model
            parameters from :py:meth:`get_parnames`).
        :type var_names: Optional[Union[str, Sequence[str]]]
        :param kind: "all", "stats" (mean, sd and quantiles) or "diagnostics"
            (Monte Carlo standard errors, bulk and tail ESS, R-hat). Defaults to
            "all".
        :type kind: Literal["all", "stats", "diagnostics"]
        :param prob: Width of the central interval. The interval bounds and the
            median are reported. Defaults to 0.95.
        :type prob: custom_types.Float
        :param round_to: Number of decimals, or "none". Defaults to "none".
        :type round_to: Union[custom_types.Integer, Literal["none"]]

        :returns: One row per scalar parameter
        :rtype: pd.DataFrame

        :raises ValueError: If diagnostics are requested for a single chain
        """
        if not 0 < prob < 1:
            raise ValueError("`prob` must lie strictly between 0 and 1.")
        probs = ((1 - prob) / 2, 0.5, (1 + prob) / 2)
        var_names = self.resolve_var_names(var_names)
        if kind != "stats" and self.inference_obj.posterior.sizes["chain"] <= 1:
            raise ValueError(
                "Cannot run diagnostics on a dataset run using a single chain"
            )

        # Out-of-core computation
        if self.use_dask:
            summaries = self._dask_summary(var_names, kind, probs)
            return summaries if round_to == "none" else summaries.round(round_to)

        # Quantiles replace the default highest density intervals
        stat_funcs = {
            f"q{100 * p:g}%": (lambda x, p=p: np.quantile(x, p)) for p in probs
        }
        summaries = az.summary(
            self.inference_obj,
            var_names=var_names,
            kind=kind,
            fmt="wide",
            round_to=round_to,
            stat_funcs=stat_funcs if kind != "diagnostics" else None,
            extend=True,
        )

        # Drop the HDI columns, which duplicate the quantiles
        return summaries.drop(
            columns=[col for col in summaries.columns if col.startswith("hdi_")]
        )

    def _dask_summary(
        self,
        var_names: list[str],
        kind: Literal["all", "stats", "diagnostics"],
        probs: tuple[float, ...],
    ) -> pd.DataFrame:
        """The table of :py:meth:`summary`, computed out-of-core with Dask."""
        # Chains and draws are core dimensions and must each be a single chunk
        posterior = self.inference_obj.posterior[var_names].chunk(
            {"chain": -1, "draw": -1}
        )

        metrics = []
        if kind != "diagnostics":
            mean, sd, quantiles = dask.compute(
                posterior.mean(dim=("chain", "draw")),
                posterior.std(dim=("chain", "draw"), ddof=1),
                posterior.quantile(list(probs), dim=("chain", "draw")),
            )
            metrics.extend(
                [
                    mean.expand_dims(metric=["mean"]),
                    sd.expand_dims(metric=["sd"]),
                    quantiles.rename(quantile="metric").assign_coords(
                        metric=[f"q{100 * p:g}%" for p in probs]
                    ),
                ]
            )
        if kind != "stats":
            metrics.append(
                dask_enabled_diagnostics(az.InferenceData(posterior=posterior))
            )
        joined = xr.concat(metrics, dim="metric")

        # One row per scalar parameter, labelled as by `az.summary`
        labeller = BaseLabeller()
        rows, labels = [], []
        for var_name, sel, isel, values in xarray_var_iter(
            joined, skip_dims={"metric"}
        ):
            rows.append(values)
            labels.append(labeller.make_label_flat(var_name, sel, isel))
        return pd.DataFrame(rows, index=labels, columns=joined.metric.values.tolist())

    def calculate_summaries(
        self,
        var_names: Union[Sequence[str], None] = None,
        kind: Literal["all", "stats", "diagnostics"] = "all",
        hdi_prob: "custom_types.Float" = 0.94,
        diagnostic_varnames: Sequence[str] = (
            "mcse_mean",
            "mcse_sd",
            "ess_bulk",
            "ess_tail",
            "r_hat",
        ),
    ) -> xr.Dataset:
        """Compute summary statistics and diagnostics, storing them in the
        ``variable_summary_stats`` and ``variable_diagnostic_stats`` groups of the
        InferenceData object.

        When the results were built with ``use_dask=True``, computations are run
        out-of-core with Dask (over all variables, with a 94% HDI).

        :param var_names: Variables to include. Defaults to None (all model
            parameters).
        :type var_names: Optional[Sequence[str]]
        :param kind: Type of computations to perform. Defaults to "all".
        :type kind: Literal["all", "stats", "diagnostics"]
        :param hdi_prob: Probability for the highest density interval. Defaults to
            0.94.
        :type hdi_prob: custom_types.Float
        :param diagnostic_varnames: Names of diagnostic metrics.
        :type diagnostic_varnames: Sequence[str]

        :returns: Combined dataset with all computed metrics
        :rtype: xr.Dataset
        """
        if self.use_dask:
            summary_stats = dask_enabled_summary_stats(self.inference_obj)
            diagnostics = dask_enabled_diagnostics(self.inference_obj)
            if kind == "all":
                summaries = xr.concat([summary_stats, diagnostics], dim="metric")
            elif kind == "stats":
                summaries = summary_stats
            else:
                summaries = diagnostics

        else:
            summaries = az.summary(
                data=self.inference_obj,
                var_names=self.resolve_var_names(var_names),
                fmt="xarray",
                kind=kind,
                hdi_prob=hdi_prob,
                round_to="none",
            )

            # Identify the diagnostic and summary statistics
            noted_diagnostics = set(diagnostic_varnames)
            calculated_metrics = set(summaries.metric.values.tolist())
            summary_stats = summaries.sel(
                metric=sorted(calculated_metrics - noted_diagnostics)
            )
            diagnostics = summaries.sel(
                metric=sorted(noted_diagnostics & calculated_metrics)
            )

        # Update the groups
        if kind in {"all", "diagnostics"}:
            self._update_group("variable_diagnostic_stats", diagnostics)
        if kind in {"all", "stats"}:
            self._update_group("variable_summary_stats", summary_stats)
        return summaries

    def evaluate_sample_stats(
        self,
        max_tree_depth: Optional["custom_types.Integer"] = None,
        ebfmi_thresh: "custom_types.Float" = DEFAULT_EBFMI_THRESH,
    ) -> xr.Dataset:
        """Flag sampler transitions and chains with problems.

        Failure Conditions:
        - **diverged**: The transition diverged during Hamiltonian dynamics
        - **max_tree_depth_reached**: The transition saturated the tree depth
        - **low_ebfmi**: The chain's E-BFMI fell below ``ebfmi_thresh``

        :param max_tree_depth: Maximum tree depth threshold. Uses the sampler's
            setting if None.
        :type max_tree_depth: Optional[custom_types.Integer]
        :param ebfmi_thresh: E-BFMI threshold. Defaults to 0.2.
        :type ebfmi_thresh: custom_types.Float

        :returns: Boolean arrays indicating failures, stored in the
            ``sample_diagnostic_tests`` group
        :rtype: xr.Dataset
        """
        if max_tree_depth is None:
            max_tree_depth = self.options.get("max_depth", 10)

        sample_stats = self.inference_obj.sample_stats
        sample_tests = xr.Dataset(
            {
                "diverged": sample_stats["diverging"].astype(bool),
                "max_tree_depth_reached": sample_stats["tree_depth"]
                >= max_tree_depth,
                "low_ebfmi": xr.DataArray(
                    az.bfmi(self.inference_obj) < ebfmi_thresh, dims=["chain"]
                ),
            }
        )
        self._update_group("sample_diagnostic_tests", sample_tests, force_del=True)

        return sample_tests

    def evaluate_variable_diagnostic_stats(
        self,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
    ) -> xr.Dataset:
        """Flag parameters with poor convergence.

        Failure Conditions:
        - **r_hat**: R-hat >= threshold
        - **ess_bulk**: Bulk ESS <= threshold x number of chains
        - **ess_tail**: Tail ESS <= threshold x number of chains

        :param r_hat_thresh: R-hat threshold. Defaults to 1.01.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: custom_types.Float

        :returns: Boolean arrays indicating failures, stored in the
            ``variable_diagnostic_tests`` group
        :rtype: xr.Dataset

        :raises MissingGroupError: If ``calculate_diagnostics`` has not been run
        """
        if not hasattr(self.inference_obj, "variable_diagnostic_stats"):
            raise MissingGroupError(
                "The `variable_diagnostic_stats` group does not exist. Please run "
                "`calculate_diagnostics` first."
            )
        stats = self.inference_obj.variable_diagnostic_stats

        # Update the ess threshold based on the number of chains
        ess_thresh *= self.inference_obj.posterior.sizes["chain"]

        variable_tests = xr.concat(
            [
                stats.sel(metric="r_hat") >= r_hat_thresh,
                stats.sel(metric="ess_bulk") <= ess_thresh,
                stats.sel(metric="ess_tail") <= ess_thresh,
            ],
            dim="metric",
        )
        self._update_group("variable_diagnostic_tests", variable_tests, force_del=True)

        return variable_tests

    def calculate_diagnostics(self) -> xr.Dataset:
        """Compute only the diagnostic metrics. See :py:meth:`calculate_summaries`."""
        return self.calculate_summaries(kind="diagnostics")

    def identify_failed_diagnostics(self, silent: bool = False) -> tuple[
        "custom_types.StrippedTestRes",
        dict[str, "custom_types.StrippedTestRes"],
    ]:
        """Report the diagnostic tests that failed.

        Requires :py:meth:`evaluate_sample_stats` and
        :py:meth:`evaluate_variable_diagnostic_stats` to have been run.

        :param silent: Whether to suppress printed output. Defaults to False.
        :type silent: bool

        :returns: Indices of failed samples per sample-level test, and indices of
            failed variables per metric and variable
        :rtype: tuple[custom_types.StrippedTestRes, dict[str, custom_types.StrippedTestRes]]
        """

        def process_test_results(
            test_res_dataarray: xr.Dataset,
        ) -> "custom_types.ProcessedTestRes":
            return {
                varname: (np.atleast_1d(tests.values).nonzero(), tests.values.size)
                for varname, tests in test_res_dataarray.items()
            }

        def strip_totals(
            processed_test_results: "custom_types.ProcessedTestRes",
        ) -> "custom_types.StrippedTestRes":
            return {k: v[0] for k, v in processed_test_results.items()}

        def report_test_summary(
            processed_test_results: "custom_types.ProcessedTestRes",
            type_: str,
            prepend_newline: bool = True,
        ) -> None:
            if prepend_newline:
                print()
            header = f"{type_.capitalize()} diagnostic tests results' summaries:"
            print(header)
            print("-" * len(header))
            for varname, (failed_indices, total_tests) in processed_test_results.items():
                n_failures = len(failed_indices[0])
                unit, message = message_map.get(
                    varname, (f"{type_}s", f"tests failed for {varname}")
                )
                print(
                    f"{n_failures} of {total_tests} ({n_failures / total_tests:.2%}) "
                    f"{unit} {message}."
                )

        # Different messages for different test types
        message_map = {
            "low_ebfmi": ("chains", "had a low E-BFMI"),
            "max_tree_depth_reached": ("samples", "reached the maximum tree depth"),
            "diverged": ("samples", "diverged"),
        }

        # pylint: disable=no-member
        sample_test_failures = process_test_results(
            self.inference_obj.sample_diagnostic_tests
        )
        variable_test_failures = {
            metric.item(): process_test_results(
                self.inference_obj.variable_diagnostic_tests.sel(metric=metric.item())
            )
            for metric in self.inference_obj.variable_diagnostic_tests.metric
        }
        # pylint: enable=no-member

        res = (
            strip_totals(sample_test_failures),
            {
                metric: strip_totals(failures)
                for metric, failures in variable_test_failures.items()
            },
        )
        if silent:
            return res

        report_test_summary(sample_test_failures, "sample", prepend_newline=False)
        for metric, failures in variable_test_failures.items():
            report_test_summary(failures, metric)

        return res

    def diagnose(
        self,
        max_tree_depth: Optional["custom_types.Integer"] = None,
        ebfmi_thresh: "custom_types.Float" = DEFAULT_EBFMI_THRESH,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
        silent: bool = False,
    ) -> tuple[
        "custom_types.StrippedTestRes", dict[str, "custom_types.StrippedTestRes"]
    ]:
        """Run the complete diagnostic pipeline.

        Pipeline Steps:
        1. **calculate_diagnostics**: Compute all diagnostic metrics
        2. **evaluate_sample_stats**: Assess sample-level diagnostic failures
        3. **evaluate_variable_diagnostic_stats**: Assess variable-level failures
        4. **identify_failed_diagnostics**: Summarize and report all failures

        A warning is raised if any test fails.

        :returns: Tuple of (sample_failures, variable_failures) as returned by
            :py:meth:`identify_failed_diagnostics`
        :rtype: tuple[custom_types.StrippedTestRes, dict[str, custom_types.StrippedTestRes]]

        Example:
            >>> sample_fails, var_fails = fit.diagnose()
            >>> diverged_samples = sample_fails["diverged"]
            >>> poor_rhat_betas = var_fails["r_hat"]["betas"]
        """
        self.calculate_diagnostics()
        self.evaluate_sample_stats(
            max_tree_depth=max_tree_depth, ebfmi_thresh=ebfmi_thresh
        )
        self.evaluate_variable_diagnostic_stats(
            r_hat_thresh=r_hat_thresh, ess_thresh=ess_thresh
        )
        sample_failures, variable_failures = self.identify_failed_diagnostics(
            silent=silent
        )

        # Warn if anything failed
        failed = [
            name for name, idx in sample_failures.items() if len(idx[0]) > 0
        ] + [
            metric
            for metric, failures in variable_failures.items()
            if any(len(idx[0]) > 0 for idx in failures.values())
        ]
        if failed:
            warnings.warn(
                f"Sampler diagnostics failed: {', '.join(failed)}. Inspect the "
                "results before drawing conclusions."
            )

        return sample_failures, variable_failures

    def extract(
        self,
        var_names: Union[str, Sequence[str], None] = None,
        permuted: bool = True,
    ) -> dict[str, npt.NDArray]:
        """Extract posterior draws as NumPy arrays.

        :param var_names: Variables to extract. Defaults to None (all model
            parameters).
        :type var_names: Optional[Union[str, Sequence[str]]]
        :param permuted: If True, chains are merged and the first dimension indexes
            draws (ordered by chain, then draw). If False, the first two dimensions
            are chain and draw. Defaults to True.
        :type permuted: bool

        :returns: Draws keyed by variable name
        :rtype: dict[str, npt.NDArray]
        """
        posterior = self.inference_obj.posterior
        if permuted:
            return {
                name: self._stacked(name) for name in self.resolve_var_names(var_names)
            }
        return {
            name: posterior[name].to_numpy()
            for name in self.resolve_var_names(var_names)
        }

    def _stacked(
        self, varname: str, draw_ids: Optional[npt.NDArray] = None
    ) -> npt.NDArray:
        """Draws of a posterior variable with chains merged into the first axis."""
        values = (
            self.inference_obj.posterior[varname]
            .stack(sample=("chain", "draw"))
            .transpose("sample", ...)
            .to_numpy()
        )
        return values if draw_ids is None else values[draw_ids]

    def nuts_params(self) -> pd.DataFrame:
        """Sampler parameters of each transition in long format.

        :returns: Columns ``chain``, ``draw``, ``parameter`` and ``value``
        :rtype: pd.DataFrame
        """
        return (
            self.inference_obj.sample_stats.to_dataframe()
            .reset_index()
            .melt(id_vars=["chain", "draw"], var_name="parameter", value_name="value")
        )

    def log_lik(self) -> npt.NDArray[np.floating]:
        """Pointwise log-likelihood of each draw, shape ``(draws, N, S)``."""
        if not hasattr(self.inference_obj, "log_likelihood"):
            raise MissingGroupError("The results do not contain a log-likelihood.")
        return (
            self.inference_obj.log_likelihood["log_lik"]
            .stack(sample=("chain", "draw"))
            .transpose("sample", ...)
            .to_numpy()
        )

    def loo(self, pointwise: bool = False) -> az.ELPDData:
        """Pareto-smoothed importance sampling leave-one-out cross-validation,
        treating each site-species observation as a data point."""
        return az.loo(self.inference_obj, pointwise=pointwise, var_name="log_lik")

    def species_correlation(self) -> xr.DataArray:
        """Posterior of the species correlation matrix.

        For MGLMMs this is the estimated ``cor_species``. For GLLVMs it is the
        correlation implied by the loadings, ``cov2cor(Lambda' Lambda)``.

        :returns: Correlations with dims ``chain``, ``draw``, ``species``,
            ``species2``
        :rtype: xr.DataArray
        """
        posterior = self.inference_obj.posterior
        if self.method == "mglmm":
            return posterior["cor_species"]

        # Covariance from the loadings, then scale to a correlation
        lam = posterior["Lambda"]
        cov = (lam * lam.rename(species="species2")).sum("latent")
        sds = np.sqrt((lam**2).sum("latent"))
        return cov / (sds * sds.rename(species="species2"))

    def _prepare_newdata(
        self, newdata: "custom_types.MatrixLike"
    ) -> npt.NDArray[np.floating]:
        """Build the design matrix for new sites."""
        predictor_names = self.coords["predictor"]
        species_intercept = self.options["species_intercept"]

        # Use the formula if there was one
        if self.options.get("formula"):
            if not isinstance(newdata, pd.DataFrame):
                raise ValueError(
                    "`newdata` must be a DataFrame for models fit with a formula."
                )
            design = build_design_matrix(
                self.options["formula"],
                newdata,
                species_intercept,
                reference_data=self.formula_data,
            )
            if list(design.columns) != predictor_names:
                raise DimensionMismatchError(
                    f"`newdata` produced the predictors {list(design.columns)}, "
                    f"expected {predictor_names}."
                )
            return design.to_numpy()

        # Otherwise, add the intercept if needed
        values = utils.to_labelled_matrix(newdata, "V", dtype=float)[0]
        if species_intercept:
            values = np.hstack([np.ones((values.shape[0], 1)), values])
        if values.shape[1] != len(predictor_names):
            raise DimensionMismatchError(
                f"`newdata` has {values.shape[1]} predictors (including any "
                f"intercept) but the model has {len(predictor_names)}."
            )
        return values

    def _new_site_effects(
        self,
        n_new: "custom_types.Integer",
        draw_ids: npt.NDArray,
        rng: np.random.Generator,
    ) -> npt.NDArray[np.floating]:
        """Draw site intercepts and species associations for new sites from their
        hierarchical distributions, shape ``(draws, n_new, S)``."""
        n_draws, S = len(draw_ids), self.n_species
        effects = np.zeros((n_draws, n_new, S))

        # Site intercepts
        if self.options["site_intercept"] != "none":
            a_bar = self._stacked("a_bar", draw_ids)
            sigma_a = self._stacked("sigma_a", draw_ids)
            effects += (
                a_bar[:, None] + sigma_a[:, None] * rng.normal(size=(n_draws, n_new))
            )[..., None]

        # Species associations
        if self.method == "gllvm":
            Lambda = self._stacked("Lambda", draw_ids)
            LV = rng.normal(size=(n_draws, Lambda.shape[1], n_new))
            effects += np.einsum("dln,dls->dns", LV, Lambda)
        else:
            sigmas = self._stacked("sigmas_species", draw_ids)
            cor = self._stacked("cor_species", draw_ids)
            for i in tqdm(range(n_draws), desc="Drawing new site effects", leave=False):
                cov = sigmas[i][:, None] * cor[i] * sigmas[i][None, :]
                effects[i] += rng.multivariate_normal(np.zeros(S), cov, size=n_new)

        return effects

    def posterior_linpred(
        self,
        newdata: Optional["custom_types.MatrixLike"] = None,
        transform: bool = False,
        ndraws: Optional["custom_types.Integer"] = None,
        draw_ids: Optional[Union[Sequence["custom_types.Integer"], npt.NDArray]] = None,
        include_latent: bool = True,
        seed: Optional["custom_types.Integer"] = None,
    ) -> npt.NDArray[np.floating]:
        """Posterior draws of the linear predictor.

        For the fitted sites, the linear predictor is the sum of the covariate
        effects, any site intercepts and the species associations (``u`` for
        MGLMMs, ``LV' Lambda`` for GLLVMs). For new sites, the site-level effects
        are unknown: with ``include_latent=True`` they are drawn from their
        hierarchical distributions, otherwise they are set to their mean.

        :param newdata: Predictors for new sites, in the same form used to fit the
            model (a DataFrame for formula-based fits, otherwise a matrix without the
            intercept column). Defaults to None (the fitted sites).
        :type newdata: Optional[custom_types.MatrixLike]
        :param transform: Whether to apply the inverse link. Defaults to False.
        :type transform: bool
        :param ndraws: Number of randomly chosen draws. Defaults to None (all).
        :type ndraws: Optional[custom_types.Integer]
        :param draw_ids: Indices of the draws to use (overrides ``ndraws``).
        :type draw_ids: Optional[Sequence[custom_types.Integer]]
        :param include_latent: Whether to include site intercepts and species
            associations. Defaults to True.
        :type include_latent: bool
        :param seed: Seed for choosing draws and drawing new-site effects.
        :type seed: Optional[custom_types.Integer]

        :returns: Linear predictor (or mean response), shape ``(draws, N, S)``
        :rtype: npt.NDArray[np.floating]
        """
        rng = jsdmstan.RNG if seed is None else np.random.default_rng(seed)
        draw_ids = utils.select_draw_ids(self.n_draws, ndraws, draw_ids, rng)

        # Covariate effects
        X = (
            self.inference_obj.constant_data["X"].to_numpy()
            if newdata is None
            else self._prepare_newdata(newdata)
        )
        eta = np.einsum("nk,dks->dns", X, self._stacked("betas", draw_ids))

        # Site intercepts and species associations
        if include_latent:
            if newdata is not None:
                eta += self._new_site_effects(X.shape[0], draw_ids, rng)
            else:
                if self.options["site_intercept"] != "none":
                    eta += self._stacked("a_site", draw_ids)[..., None]
                if self.method == "mglmm":
                    eta += self._stacked("u", draw_ids)
                else:
                    eta += np.einsum(
                        "dln,dls->dns",
                        self._stacked("LV", draw_ids),
                        self._stacked("Lambda", draw_ids),
                    )
        elif newdata is not None and self.options["site_intercept"] != "none":
            eta += self._stacked("a_bar", draw_ids)[:, None, None]

        return self.family.inverse_link(eta) if transform else eta

    def posterior_predict(
        self,
        newdata: Optional["custom_types.MatrixLike"] = None,
        ndraws: Optional["custom_types.Integer"] = None,
        draw_ids: Optional[Union[Sequence["custom_types.Integer"], npt.NDArray]] = None,
        include_latent: bool = True,
        include_zi: bool = True,
        Ntrials: Union[npt.NDArray, "custom_types.Integer", None] = None,
        zi_newdata: Optional["custom_types.MatrixLike"] = None,
        seed: Optional["custom_types.Integer"] = None,
    ) -> npt.NDArray:
        """Posterior predictive draws of the community matrix.

        :param newdata: Predictors for new sites. See :py:meth:`posterior_linpred`.
        :type newdata: Optional[custom_types.MatrixLike]
        :param ndraws: Number of randomly chosen draws. Defaults to None (all).
        :type ndraws: Optional[custom_types.Integer]
        :param draw_ids: Indices of the draws to use (overrides ``ndraws``).
        :type draw_ids: Optional[Sequence[custom_types.Integer]]
        :param include_latent: Whether to include site intercepts and species
            associations. Defaults to True.
        :type include_latent: bool
        :param include_zi: Whether to apply zero-inflation. Defaults to True.
        :type include_zi: bool
        :param Ntrials: Number of trials per new site. Binomial family with
            ``newdata`` only.
        :type Ntrials: Union[npt.NDArray, custom_types.Integer, None]
        :param zi_newdata: Zero-inflation covariates for new sites, when zero-inflation
            depends on covariates.
        :type zi_newdata: Optional[custom_types.MatrixLike]
        :param seed: Seed for the random draws.
        :type seed: Optional[custom_types.Integer]

        :returns: Random responses, shape ``(draws, N, S)``
        :rtype: npt.NDArray

        :raises ValueError: If inputs required for new sites are missing
        """
        rng = jsdmstan.RNG if seed is None else np.random.default_rng(seed)
        draw_ids = utils.select_draw_ids(self.n_draws, ndraws, draw_ids, rng)
        eta = self.posterior_linpred(
            newdata=newdata,
            draw_ids=draw_ids,
            include_latent=include_latent,
            seed=int(rng.integers(0, 2**32 - 1)),
        )
        n_sites = eta.shape[1]
        family = self.family
        constant_data = self.inference_obj.constant_data

        # Species-level auxiliary parameters
        aux = {
            name: self._stacked(name, draw_ids)[:, None, :]
            for name in family.aux_params
            if name != "zi"
        }

        # Zero inflation
        if family.zero_inflated:
            if not include_zi:
                aux["zi"] = np.zeros(1)
            elif self.options["zi_param"] == "constant":
                aux["zi"] = self._stacked("zi", draw_ids)[:, None, :]
            else:
                if newdata is None:
                    zi_X = constant_data["zi_X"].to_numpy()
                elif zi_newdata is None:
                    raise ValueError(
                        "`zi_newdata` is required for new sites when zero-inflation "
                        "depends on covariates."
                    )
                else:
                    zi_X = utils.to_labelled_matrix(zi_newdata, "zi_V", dtype=float)[0]
                    zi_X = np.hstack([np.ones((zi_X.shape[0], 1)), zi_X])
                if zi_X.shape[0] != n_sites:
                    raise DimensionMismatchError(
                        "`zi_newdata` and `newdata` have different numbers of sites."
                    )
                aux["zi"] = utils.stable_sigmoid(
                    np.einsum("nk,dks->dns", zi_X, self._stacked("zi_betas", draw_ids))
                )

        # Trials for the binomial family
        if family.needs_ntrials:
            if newdata is None:
                Ntrials = constant_data["Ntrials"].to_numpy()
            elif Ntrials is None:
                raise ValueError("`Ntrials` is required for new sites.")
            Ntrials = check_ntrials(Ntrials, n_sites)

        return family.draw(eta, rng, Ntrials=Ntrials, **aux)

    def jsdm_statsummary(
        self,
        summary_stat: Union[str, Callable] = "sum",
        calc_over: Literal["site", "species"] = "site",
        post_type: Literal["predict", "linpred"] = "predict",
        **kwargs,
    ) -> npt.NDArray[np.floating]:
        """Summary statistic of posterior predictions for each site or species.

        :param summary_stat: Name of a NumPy reduction (e.g. "sum", "mean", "var")
            or a function taking an array and an ``axis`` keyword. Defaults to "sum"
            (species richness or abundance for ``calc_over="site"``).
        :type summary_stat: Union[str, Callable]
        :param calc_over: Compute the statistic for each "site" (over species) or for
            each "species" (over sites). Defaults to "site".
        :type calc_over: Literal["site", "species"]
        :param post_type: Use posterior predictive draws ("predict") or the mean
            response ("linpred" with the inverse link applied). Defaults to
            "predict".
        :type post_type: Literal["predict", "linpred"]
        :param kwargs: Passed to :py:meth:`posterior_predict` or
            :py:meth:`posterior_linpred`.

        :returns: Statistic per draw, shape ``(draws, N)`` or ``(draws, S)``
        :rtype: npt.NDArray[np.floating]
        """
        stat = getattr(np, summary_stat) if isinstance(summary_stat, str) else summary_stat
        if calc_over not in {"site", "species"}:
            raise ValueError("`calc_over` must be 'site' or 'species'.")

        if post_type == "predict":
            draws = self.posterior_predict(**kwargs)
        elif post_type == "linpred":
            draws = self.posterior_linpred(transform=True, **kwargs)
        else:
            raise ValueError("`post_type` must be 'predict' or 'linpred'.")

        return np.asarray(stat(draws, axis=2 if calc_over == "site" else 1))

    def observed_statsummary(
        self,
        summary_stat: Union[str, Callable] = "sum",
        calc_over: Literal["site", "species"] = "site",
    ) -> npt.NDArray[np.floating]:
        """The same statistic as :py:meth:`jsdm_statsummary`, computed on the
        observed community matrix."""
        if not hasattr(self.inference_obj, "observed_data"):
            raise MissingGroupError(
                "The observed data were not saved with this fit. Refit with "
                "`save_data=True`."
            )
        stat = getattr(np, summary_stat) if isinstance(summary_stat, str) else summary_stat
        Y = self.inference_obj.observed_data["Y"].to_numpy()
        return np.asarray(stat(Y, axis=1 if calc_over == "site" else 0))

    # Plotting shortcuts
    def plot(self, *args, **kwargs):
        """Trace and density plots. See :py:func:`jsdmstan.plotting.mcmc_plot`."""
        return jsdmstan.plotting.mcmc_plot(self, *args, **kwargs)

    def pp_check(self, *args, **kwargs):
        """Posterior predictive check. See :py:func:`jsdmstan.plotting.pp_check`."""
        return jsdmstan.plotting.pp_check(self, *args, **kwargs)

    def ordiplot(self, *args, **kwargs):
        """Ordination plot. See :py:func:`jsdmstan.plotting.ordiplot`."""
        return jsdmstan.plotting.ordiplot(self, *args, **kwargs)

    def envplot(self, *args, **kwargs):
        """Covariate effects plot. See :py:func:`jsdmstan.plotting.envplot`."""
        return jsdmstan.plotting.envplot(self, *args, **kwargs)

    def corrplot(self, *args, **kwargs):
        """Species correlation plot. See :py:func:`jsdmstan.plotting.corrplot`."""
        return jsdmstan.plotting.corrplot(self, *args, **kwargs)


def has_intercept(fit: JSDMStanFit) -> bool:
    """Whether the fitted model includes species intercepts."""
    return INTERCEPT_NAME in fit.coords["predictor"]
