# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""User-facing entry points for fitting Joint Species Distribution Models.

:py:func:`stan_jsdm` validates the data, assembles the Stan program, compiles it
and samples from the posterior in one call. :py:func:`stan_mglmm` and
:py:func:`stan_gllvm` fix the method. Sampling can also be delayed: the compiled
model, data and sampler arguments are pickled so that the run can be launched
later (for example on a batch system) with :py:func:`run_delayed_fit`.
"""

from __future__ import annotations

import os.path
import pickle

from typing import Any, Optional, Sequence, TYPE_CHECKING, Union

import numpy.typing as npt
import pandas as pd

from jsdmstan import utils
from jsdmstan.defaults import DEFAULT_FORCE_COMPILE, DEFAULT_MODEL_NAME
from jsdmstan.design import jsdm_data
from jsdmstan.model.stan_model import JSDMStanModel
from jsdmstan.model.stancode import JSDMStanProgram
from jsdmstan.priors import JSDMPrior

results = utils.lazy_import("jsdmstan.model.results")

if TYPE_CHECKING:
    from jsdmstan import custom_types


def run_delayed_fit(filepath: str) -> "results.JSDMStanFit":
    """Execute a delayed fit from a pickled configuration file.

    :param filepath: Path to the file written by ``stan_jsdm(delay_run=...)``
    :type filepath: str

    :returns: The fitted model
    :rtype: results.JSDMStanFit

    Example:
        >>> stan_gllvm(Y, X, D=2, output_dir=".", delay_run=True, chains=4)
        >>> # Later, possibly in another process
        >>> fit = run_delayed_fit("./jsdm_gllvm_gaussian_<hash>-delay.pkl")
    """
    # Load the pickled object
    with open(filepath, "rb") as f:
        obj = pickle.load(f)

    # We will be printing to the console
    obj["sample_kwargs"]["show_console"] = True

    # Run sampling and return the results
    return obj["stan_model"].sample(data=obj["data"], **obj["sample_kwargs"])


def stan_jsdm(
    Y: "custom_types.MatrixLike",
    X: Optional["custom_types.MatrixLike"] = None,
    formula: Optional[str] = None,
    data: Optional[pd.DataFrame] = None,
    method: "custom_types.MethodName" = "mglmm",
    family: str = "gaussian",
    D: Optional["custom_types.Integer"] = None,
    species_intercept: bool = True,
    site_intercept: "custom_types.SiteIntercept" = "none",
    site_groups: Optional[Union[Sequence, npt.NDArray]] = None,
    beta_param: str = "cor",
    zi_param: str = "constant",
    zi_X: Optional["custom_types.MatrixLike"] = None,
    Ntrials: Union[npt.NDArray, "custom_types.Integer", None] = None,
    prior: Optional[JSDMPrior] = None,
    save_data: bool = True,
    output_dir: Optional[str] = None,
    force_compile: bool = DEFAULT_FORCE_COMPILE,
    stanc_options: Optional[dict[str, Any]] = None,
    cpp_options: Optional[dict[str, Any]] = None,
    user_header: Optional[str] = None,
    model_name: str = DEFAULT_MODEL_NAME,
    delay_run: Union[bool, str] = False,
    use_dask: bool = False,
    **sample_kwargs,
) -> Union["results.JSDMStanFit", None]:
    """Fit a Joint Species Distribution Model with Stan.

    :param Y: Community matrix with sites as rows and species as columns
    :type Y: custom_types.MatrixLike
    :param X: Site-level predictors without an intercept column. Ignored if
        ``formula`` is given. Defaults to None (intercept only).
    :type X: Optional[custom_types.MatrixLike]
    :param formula: Right-hand-side formula (e.g. ``"~ temp + poly(rain, 2)"``)
        evaluated against ``data``. Defaults to None.
    :type formula: Optional[str]
    :param data: Site-level data for ``formula``. Defaults to None.
    :type data: Optional[pd.DataFrame]
    :param method: "mglmm" or "gllvm". Defaults to "mglmm".
    :type method: custom_types.MethodName
    :param family: Response family. Defaults to "gaussian".
    :type family: str
    :param D: Number of latent variables. Required for GLLVMs.
    :type D: Optional[custom_types.Integer]
    :param species_intercept: Whether to include species intercepts. Defaults to
        True.
    :type species_intercept: bool
    :param site_intercept: "none", "ungrouped" or "grouped". Defaults to "none".
    :type site_intercept: custom_types.SiteIntercept
    :param site_groups: Group of each site for grouped site intercepts.
    :type site_groups: Optional[Union[Sequence, npt.NDArray]]
    :param beta_param: "cor" (correlated covariate effects) or "unstruct".
        Defaults to "cor".
    :type beta_param: str
    :param zi_param: "constant" or "covariate" zero-inflation. Zero-inflated
        families only. Defaults to "constant".
    :type zi_param: str
    :param zi_X: Zero-inflation covariates for ``zi_param="covariate"``.
    :type zi_X: Optional[custom_types.MatrixLike]
    :param Ntrials: Number of trials per site. Binomial family only.
    :type Ntrials: Union[npt.NDArray, custom_types.Integer, None]
    :param prior: Prior overrides. Defaults to None (default priors).
    :type prior: Optional[JSDMPrior]
    :param save_data: Whether to store the observed community matrix in the results.
        Defaults to True.
    :type save_data: bool
    :param output_dir: Directory for the Stan program, executable and outputs.
        Required if ``delay_run`` is set. Defaults to None (temporary directory).
    :type output_dir: Optional[str]
    :param force_compile: Whether to force recompilation. Defaults to False.
    :type force_compile: bool
    :param stanc_options: Options for the Stan compiler.
    :type stanc_options: Optional[dict[str, Any]]
    :param cpp_options: Options for C++ compilation.
    :type cpp_options: Optional[dict[str, Any]]
    :param user_header: Custom C++ header code.
    :type user_header: Optional[str]
    :param model_name: Base name of the compiled executable. Defaults to "jsdm".
    :type model_name: str
    :param delay_run: If True, the configuration is pickled to
        ``<executable>-delay.pkl`` instead of sampling. A string gives an
        alternative path for the pickle. Defaults to False.
    :type delay_run: Union[bool, str]
    :param use_dask: Whether the results should use Dask for summaries. Defaults
        to False.
    :type use_dask: bool
    :param sample_kwargs: Passed to ``cmdstanpy.CmdStanModel.sample`` (e.g.
        ``chains``, ``iter_warmup``, ``iter_sampling``, ``seed``,
        ``adapt_delta``).

    :returns: The fitted model, or None if the run was delayed
    :rtype: Union[results.JSDMStanFit, None]

    :raises ValueError: If ``delay_run`` is set without an ``output_dir``
    """
    # An output directory must be provided if we are delaying the run
    if delay_run and output_dir is None:
        raise ValueError("An output directory must be provided if `delay_run` is set.")

    # Validate the data
    jdata = jsdm_data(
        Y=Y,
        X=X,
        formula=formula,
        data=data,
        method=method,
        family=family,
        D=D,
        species_intercept=species_intercept,
        site_intercept=site_intercept,
        site_groups=site_groups,
        beta_param=beta_param,
        zi_param=zi_param,
        zi_X=zi_X,
        Ntrials=Ntrials,
    )

    # Build and compile the program
    program = JSDMStanProgram(
        method=jdata.options["method"],
        family=jdata.options["family"],
        site_intercept=jdata.options["site_intercept"],
        beta_param=jdata.options["beta_param"],
        zi_param=jdata.options["zi_param"],
        prior=prior,
    )
    model = JSDMStanModel(
        program,
        output_dir=output_dir,
        force_compile=force_compile,
        stanc_options=stanc_options,
        cpp_options=cpp_options,
        user_header=user_header,
        model_name=model_name,
    )

    # Sampler outputs go alongside the executable
    sample_kwargs["output_dir"] = os.path.abspath(model.output_dir)
    sample_kwargs["save_data"] = save_data
    sample_kwargs["use_dask"] = use_dask

    # If delaying, then we save the data needed for sampling and return
    if delay_run:
        with open(
            (
                delay_run
                if isinstance(delay_run, str)
                else f"{model.stan_executable_path}-delay.pkl"
            ),
            "wb",
        ) as f:
            pickle.dump(
                {"stan_model": model, "sample_kwargs": sample_kwargs, "data": jdata}, f
            )
        return None

    return model.sample(data=jdata, **sample_kwargs)


def stan_mglmm(Y: "custom_types.MatrixLike", **kwargs) -> Union["results.JSDMStanFit", None]:
    """Fit a multivariate generalized linear mixed model, estimating the full
    species covariance matrix. See :py:func:`stan_jsdm` for the arguments."""
    if "method" in kwargs:
        raise TypeError("`stan_mglmm` does not accept a `method` argument.")
    return stan_jsdm(Y, method="mglmm", **kwargs)


def stan_gllvm(
    Y: "custom_types.MatrixLike", D: "custom_types.Integer", **kwargs
) -> Union["results.JSDMStanFit", None]:
    """Fit a generalized linear latent variable model with ``D`` latent variables.
    See :py:func:`stan_jsdm` for the other arguments."""
    if "method" in kwargs:
        raise TypeError("`stan_gllvm` does not accept a `method` argument.")
    return stan_jsdm(Y, method="gllvm", D=D, **kwargs)
