# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Assembly of model matrices and Stan data for Joint Species Distribution Models.

This module is the glue between user-facing inputs (community matrices,
covariate tables and formulas) and the numeric inputs expected by the Stan
programs produced by :py:mod:`jsdmstan.model.stancode`. It performs:

    - Formula-based construction of design matrices (via ``formulaic``)
    - Optional centring and scaling of predictors
    - Validation of dimensions and of the response against the family
    - Assembly of the Stan data dictionary along with the coordinate labels used
      to name the dimensions of the posterior draws

Example:
    >>> X = build_design_matrix("~ elevation + precip", env_df)
    >>> jdata = jsdm_data(Y, X=env_df, formula="~ elevation + precip",
    ...                   method="gllvm", family="poisson", D=2)
    >>> jdata.stan_data["K"]
    3
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

from formulaic import model_matrix

from jsdmstan import utils
from jsdmstan.defaults import BETA_PARAMS, METHODS, SITE_INTERCEPTS, ZI_PARAMS
from jsdmstan.exceptions import DimensionMismatchError
from jsdmstan.families import check_ntrials, get_family

if TYPE_CHECKING:
    from jsdmstan import custom_types

INTERCEPT_NAME = "Intercept"
"""Name given to the intercept column of design matrices."""


def build_design_matrix(
    formula: str,
    data: pd.DataFrame,
    species_intercept: bool = True,
    reference_data: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Build a numeric design matrix from a one-sided formula and a data table.

    Factors are expanded to treatment contrasts and interactions are supported, as
    per ``formulaic``. Any left-hand side of the formula is ignored (the response
    is always the community matrix). The intercept column is kept if and only if
    ``species_intercept`` is True, regardless of whether the formula removes it.

    Stateful transforms (``scale``, ``center``, ``poly``, factor levels) learn
    their state from ``reference_data`` when it is given, so that predictors for
    new sites are encoded exactly as the sites a model was fit to.

    :param formula: Formula describing the predictors, e.g. ``"~ x1 + x2"``
    :type formula: str
    :param data: Table containing the variables named in the formula, one row per
        site
    :type data: pd.DataFrame
    :param species_intercept: Whether to include an intercept column. Defaults to
        True.
    :type species_intercept: bool
    :param reference_data: Table the transform state is learned from. Defaults to
        None (``data`` itself).
    :type reference_data: Optional[pd.DataFrame]

    :returns: Design matrix with one row per site and named columns
    :rtype: pd.DataFrame

    :raises ValueError: If the data contain missing values in the variables used

    Example:
        >>> build_design_matrix("~ temp + I(temp ** 2)", env)
    """
    # Only the right-hand side is of interest
    rhs = formula.split("~", 1)[-1].strip() or "1"

    # Build the model matrix, reusing the state learned on the reference data
    if reference_data is None:
        matrix = model_matrix(rhs, data, na_action="raise")
    else:
        model_spec = model_matrix(rhs, reference_data, na_action="raise").model_spec
        matrix = model_matrix(model_spec, data)
    matrix = pd.DataFrame(matrix)
    matrix.index = data.index

    # Add or remove the intercept
    has_intercept = INTERCEPT_NAME in matrix.columns
    if species_intercept and not has_intercept:
        matrix.insert(0, INTERCEPT_NAME, 1.0)
    elif not species_intercept and has_intercept:
        matrix = matrix.drop(columns=INTERCEPT_NAME)

    return matrix.astype(float)


def scale_predictors(
    X: "custom_types.MatrixLike",
) -> "custom_types.MatrixLike":
    """Centre and scale every predictor to zero mean and unit standard deviation.

    Intercept (constant) columns are left unchanged.

    :param X: Predictor matrix
    :type X: custom_types.MatrixLike

    :returns: The scaled predictors, in the same container type as the input
    :rtype: custom_types.MatrixLike
    """
    values = np.asarray(X, dtype=float)
    sds = values.std(axis=0, ddof=1) if values.shape[0] > 1 else np.zeros(values.shape[1])
    constant = sds == 0
    scaled = np.where(
        constant, values, (values - values.mean(axis=0)) / np.where(constant, 1, sds)
    )

    if isinstance(X, pd.DataFrame):
        return pd.DataFrame(scaled, index=X.index, columns=X.columns)
    return scaled


class JSDMData:
    """Validated inputs for a JSDM fit.

    :ivar stan_data: Data dictionary passed to the Stan sampler
    :ivar coords: Labels for each named dimension of the posterior (``site``,
        ``species``, ``predictor`` and, where relevant, ``latent``, ``group``
        and ``zi_predictor``)
    :ivar options: Model options (method, family, site intercept, ...)
    :ivar formula_data: Table the formula was evaluated on, if a formula was used
    """

    def __init__(
        self,
        stan_data: dict[str, Any],
        coords: dict[str, list[str]],
        options: dict[str, Any],
        formula_data: Optional[pd.DataFrame] = None,
    ):
        self.stan_data = stan_data
        self.coords = coords
        self.options = options
        self.formula_data = formula_data

    def __repr__(self) -> str:
        return (
            f"JSDMData(method='{self.options['method']}', "
            f"family='{self.options['family']}', N={self.stan_data['N']}, "
            f"S={self.stan_data['S']}, K={self.stan_data['K']})"
        )

    @property
    def Y(self) -> npt.NDArray:
        return self.stan_data["Y"]

    @property
    def X(self) -> npt.NDArray[np.floating]:
        return self.stan_data["X"]


def _prepare_predictors(
    N: "custom_types.Integer",
    X: Optional["custom_types.MatrixLike"],
    formula: Optional[str],
    data: Optional[pd.DataFrame],
    species_intercept: bool,
) -> tuple[npt.NDArray[np.floating], list[str], Optional[pd.DataFrame]]:
    """Build the full design matrix (including any intercept), its column names and
    the table any formula was evaluated on."""
    # From a formula
    if formula is not None:
        if data is None:
            if not isinstance(X, pd.DataFrame):
                raise ValueError(
                    "A DataFrame must be provided via `data` or `X` when using a "
                    "formula."
                )
            data = X
        design = build_design_matrix(formula, data, species_intercept)
        values, names = design.to_numpy(), list(design.columns)

    # From a matrix
    elif X is not None:
        values, _, names = utils.to_labelled_matrix(X, "V", dtype=float)
        if species_intercept:
            values = np.hstack([np.ones((values.shape[0], 1)), values])
            names = [INTERCEPT_NAME, *names]

    # Intercept only
    else:
        values = np.ones((N, 1)) if species_intercept else np.zeros((N, 0))
        names = [INTERCEPT_NAME] if species_intercept else []

    # Check dimensions
    if values.shape[0] != N:
        raise DimensionMismatchError(
            f"The predictors have {values.shape[0]} rows but Y has {N} sites."
        )
    if values.shape[1] == 0:
        raise ValueError(
            "The model needs at least one predictor or a species intercept."
        )
    if not np.all(np.isfinite(values)):
        raise ValueError("Predictors must be finite.")

    return values, names, data if formula is not None else None


def jsdm_data(
    Y: "custom_types.MatrixLike",
    X: Optional["custom_types.MatrixLike"] = None,
    formula: Optional[str] = None,
    data: Optional[pd.DataFrame] = None,
    method: str = "mglmm",
    family: str = "gaussian",
    D: Optional["custom_types.Integer"] = None,
    species_intercept: bool = True,
    site_intercept: str = "none",
    site_groups: Optional[Union[Sequence, npt.NDArray, pd.Series]] = None,
    beta_param: str = "cor",
    zi_param: str = "constant",
    zi_X: Optional["custom_types.MatrixLike"] = None,
    Ntrials: Union[npt.NDArray, "custom_types.Integer", None] = None,
) -> JSDMData:
    """Validate inputs and assemble the data for a JSDM fit.

    :param Y: Community matrix, sites x species. DataFrame labels are kept.
    :type Y: custom_types.MatrixLike
    :param X: Covariates, sites x predictors (excluding any intercept), or a table
        of variables referenced by ``formula``.
    :type X: Optional[custom_types.MatrixLike]
    :param formula: Formula for the predictors. Requires ``data`` or a DataFrame
        ``X``.
    :type formula: Optional[str]
    :param data: Table of variables referenced by ``formula``.
    :type data: Optional[pd.DataFrame]
    :param method: "mglmm" or "gllvm". Defaults to "mglmm".
    :type method: str
    :param family: Response family. Defaults to "gaussian".
    :type family: str
    :param D: Number of latent variables. Required for GLLVMs.
    :type D: Optional[custom_types.Integer]
    :param species_intercept: Whether to include species intercepts. Defaults to
        True.
    :type species_intercept: bool
    :param site_intercept: "none", "ungrouped" or "grouped". Defaults to "none".
    :type site_intercept: str
    :param site_groups: Group membership of each site, required for grouped site
        intercepts. Any hashable labels are accepted.
    :type site_groups: Optional[Union[Sequence, npt.NDArray, pd.Series]]
    :param beta_param: "cor" or "unstruct". Defaults to "cor".
    :type beta_param: str
    :param zi_param: "constant" or "covariate". Zero-inflated families only.
    :type zi_param: str
    :param zi_X: Covariates for the zero-inflation probability (no intercept).
        Required when ``zi_param="covariate"``.
    :type zi_X: Optional[custom_types.MatrixLike]
    :param Ntrials: Number of trials per site. Binomial only.
    :type Ntrials: Union[npt.NDArray, custom_types.Integer, None]

    :returns: The validated data, coordinates and options
    :rtype: JSDMData

    :raises ValueError: If options are invalid or required inputs are missing
    :raises DimensionMismatchError: If the inputs do not all describe the same sites
    :raises UnsupportedFamilyError: If ``Y`` is incompatible with the family
    """
    # Check options
    for value, options, argname in (
        (method, METHODS, "method"),
        (site_intercept, SITE_INTERCEPTS, "site_intercept"),
        (beta_param, BETA_PARAMS, "beta_param"),
        (zi_param, ZI_PARAMS, "zi_param"),
    ):
        if value not in options:
            raise ValueError(
                f"Invalid `{argname}`: '{value}'. Options are: {', '.join(options)}."
            )
    fam = get_family(family)

    # Process the community matrix
    Y_values, site_names, species_names = utils.to_labelled_matrix(Y, "sp")
    N, S = Y_values.shape
    if N < 1 or S < 2:
        raise DimensionMismatchError(
            "Y must have at least one site and at least two species."
        )
    Ntrials = check_ntrials(Ntrials, N) if fam.needs_ntrials else None
    fam.check_response(Y_values, Ntrials)
    Y_values = Y_values.astype(float if not fam.discrete else np.int64)

    # Process the predictors
    X_values, predictor_names, formula_data = _prepare_predictors(
        N, X, formula, data, species_intercept
    )
    stan_data = {
        "N": N,
        "S": S,
        "K": X_values.shape[1],
        "X": X_values,
        "Y": Y_values,
    }
    coords = {
        "site": site_names,
        "species": species_names,
        "predictor": predictor_names,
    }

    # Latent variables
    if method == "gllvm":
        if D is None or D < 1 or D >= S:
            raise ValueError(
                "GLLVMs require a number of latent variables `D` with 1 <= D < S."
            )
        stan_data["D"] = int(D)
        coords["latent"] = utils.default_labels("LV", D)
    else:
        D = None

    # Binomial trials
    if fam.needs_ntrials:
        stan_data["Ntrials"] = Ntrials

    # Grouped site intercepts
    if site_intercept == "grouped":
        if site_groups is None:
            raise ValueError("`site_groups` is required for grouped site intercepts.")
        codes, uniques = pd.factorize(np.asarray(site_groups), sort=True)
        if codes.shape != (N,):
            raise DimensionMismatchError(
                f"`site_groups` has {codes.size} entries but Y has {N} sites."
            )
        stan_data["ngrp"] = len(uniques)
        stan_data["grps"] = codes + 1  # Stan is 1-indexed
        coords["group"] = [str(u) for u in uniques]

    # Covariate-dependent zero-inflation
    if fam.zero_inflated and zi_param == "covariate":
        if zi_X is None:
            raise ValueError("`zi_X` is required when `zi_param` is 'covariate'.")
        zi_values, _, zi_names = utils.to_labelled_matrix(zi_X, "zi_V", dtype=float)
        if zi_values.shape[0] != N:
            raise DimensionMismatchError(
                f"`zi_X` has {zi_values.shape[0]} rows but Y has {N} sites."
            )
        stan_data["zi_X"] = np.hstack([np.ones((N, 1)), zi_values])
        stan_data["zi_k"] = stan_data["zi_X"].shape[1]
        coords["zi_predictor"] = [INTERCEPT_NAME, *zi_names]
    zi_option = zi_param if fam.zero_inflated else None

    return JSDMData(
        stan_data=stan_data,
        coords=coords,
        options={
            "method": method,
            "family": fam.name,
            "D": D,
            "species_intercept": species_intercept,
            "site_intercept": site_intercept,
            "beta_param": beta_param,
            "zi_param": zi_option,
            "formula": formula,
        },
        formula_data=formula_data,
    )
