# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Assembly of Stan programs for Joint Species Distribution Models.

This module builds the complete Stan program for a JSDM from its structural
options: the association method, the response family, the site-intercept
structure, the covariate-effect parametrization, the zero-inflation structure and
the priors. Programs are built block by block by :py:class:`JSDMStanProgram`,
whose properties mirror the blocks of a Stan program.

Parametrization:
    - All hierarchical effects are non-centred.
    - Correlated covariate effects: ``betas = diag(sigmas_preds) * L_Rho_preds *
      z_preds`` with an LKJ prior on the Cholesky factor ``L_Rho_preds``.
    - MGLMM: ``u = (diag(sigmas_species) * L_Rho_species * z_species)'`` with an
      LKJ prior on ``L_Rho_species``.
    - GLLVM: ``u = LV' * Lambda`` where ``Lambda`` (latent x species) is zero
      below the diagonal, positive on it and scaled by ``sigma_L``. This fixes the
      rotation and sign of the latent variables.

Every program reports the pointwise log-likelihood ``log_lik[N, S]`` and the
implied correlation matrices ``cor_preds`` and ``cor_species`` (MGLMM) as
generated quantities.

Users will not normally need this module directly. The program used for a fit is
available from :py:func:`jsdm_stancode` for inspection.
"""

from __future__ import annotations

from typing import Optional, Union

from jsdmstan.defaults import BETA_PARAMS, METHODS, SITE_INTERCEPTS, ZI_PARAMS
from jsdmstan.families import Family, get_family
from jsdmstan.priors import JSDMPrior

# Number of spaces per indentation level
DEFAULT_INDENTATION = 4

# Stan functions needed by the zero-inflated families
_ZI_FUNCTIONS = {
    "zi_poisson": [
        "real zi_poisson_log_lpmf(int y, real mu, real zi) {",
        "if (y == 0) {",
        "return log_sum_exp(log(zi), log1m(zi) + poisson_log_lpmf(0 | mu));",
        "}",
        "return log1m(zi) + poisson_log_lpmf(y | mu);",
        "}",
    ],
    "zi_neg_binomial": [
        "real zi_neg_binomial_2_log_lpmf(int y, real mu, real kappa, real zi) {",
        "if (y == 0) {",
        "return log_sum_exp(log(zi), "
        "log1m(zi) + neg_binomial_2_log_lpmf(0 | mu, kappa));",
        "}",
        "return log1m(zi) + neg_binomial_2_log_lpmf(y | mu, kappa);",
        "}",
    ],
}


def combine_lines(lines: list[str], indentation: int = DEFAULT_INDENTATION) -> str:
    """Join lines of Stan code, indenting according to the braces they open and
    close.

    :param lines: Unindented lines of code
    :type lines: list[str]
    :param indentation: Number of spaces per level. Defaults to 4.
    :type indentation: int

    :returns: The indented code
    :rtype: str
    """
    depth = 0
    indented = []
    for line in lines:
        line = line.strip()
        if line.startswith("}"):
            depth -= 1
        indented.append(" " * (indentation * depth) + line if line else "")
        if line.endswith("{"):
            depth += 1
    assert depth == 0, "Unbalanced braces in Stan code"
    return "\n".join(indented)


class JSDMStanProgram:
    """Stan program for a Joint Species Distribution Model.

    :param method: "mglmm" or "gllvm"
    :type method: str
    :param family: Response family name or instance
    :type family: Union[str, Family]
    :param site_intercept: "none", "ungrouped" or "grouped". Defaults to "none".
    :type site_intercept: str
    :param beta_param: "cor" or "unstruct". Defaults to "cor".
    :type beta_param: str
    :param zi_param: "constant" or "covariate". Only used for zero-inflated
        families. Defaults to "constant".
    :type zi_param: Optional[str]
    :param prior: Priors for all parameters. Defaults to None (``JSDMPrior()``).
    :type prior: Optional[JSDMPrior]

    :raises ValueError: If any option is invalid

    Example:
        >>> program = JSDMStanProgram("gllvm", "poisson")
        >>> print(program.code)
    """

    def __init__(
        self,
        method: str,
        family: Union[str, Family],
        site_intercept: str = "none",
        beta_param: str = "cor",
        zi_param: Optional[str] = "constant",
        prior: Optional[JSDMPrior] = None,
    ):
        # Check options
        for value, options, argname in (
            (method, METHODS, "method"),
            (site_intercept, SITE_INTERCEPTS, "site_intercept"),
            (beta_param, BETA_PARAMS, "beta_param"),
        ):
            if value not in options:
                raise ValueError(
                    f"Invalid `{argname}`: '{value}'. Options are: "
                    f"{', '.join(options)}."
                )

        self.method = method
        self.family = get_family(family)
        self.site_intercept = site_intercept
        self.beta_param = beta_param
        self.prior = JSDMPrior() if prior is None else prior

        # Zero-inflation options only apply to zero-inflated families
        if self.family.zero_inflated:
            if zi_param not in ZI_PARAMS:
                raise ValueError(
                    f"Invalid `zi_param`: '{zi_param}'. Options are: "
                    f"{', '.join(ZI_PARAMS)}."
                )
            self.zi_param = zi_param
        else:
            self.zi_param = None

    @property
    def has_site_intercept(self) -> bool:
        return self.site_intercept != "none"

    @property
    def zi_expression(self) -> str:
        """Stan expression for the zero-inflation probability of site i, species j."""
        return "zi[j]" if self.zi_param == "constant" else "zi_prob[i, j]"

    @property
    def linear_predictor(self) -> str:
        """Stan expression for the (N x S) linear predictor matrix."""
        terms = ["X * betas"]
        if self.method == "mglmm":
            terms.append("u")
        else:
            terms.append("LV' * Lambda")
        if self.has_site_intercept:
            terms.append("rep_matrix(a_site, S)")
        return " + ".join(terms)

    def _predictor_lines(self) -> list[str]:
        """Local variable definitions shared by the model and generated quantities
        blocks."""
        lines = [f"matrix[N, S] mu = {self.linear_predictor};"]
        if self.zi_param == "covariate":
            lines.append("matrix[N, S] zi_prob = inv_logit(zi_X * zi_betas);")
        return lines

    def _elementwise_lines(self, target: str) -> list[str]:
        """Loop over every site and species, applying ``target`` to the pointwise
        log-likelihood."""
        lpmf = self.family.stan_lpmf("Y[i, j]", "mu[i, j]", "j", self.zi_expression)
        return [
            "for (i in 1:N) {",
            "for (j in 1:S) {",
            target.format(lpmf=lpmf),
            "}",
            "}",
        ]

    @property
    def functions_block(self) -> str:
        lines = _ZI_FUNCTIONS.get(self.family.name, [])
        if not lines:
            return ""
        return combine_lines(["functions {", *lines, "}"])

    @property
    def data_block(self) -> str:
        lines = [
            "data {",
            "int<lower=1> N; // Number of sites",
            "int<lower=1> S; // Number of species",
            "int<lower=1> K; // Number of predictors",
        ]
        if self.method == "gllvm":
            lines.append("int<lower=1> D; // Number of latent variables")
        lines.extend(
            [
                "matrix[N, K] X; // Predictor matrix",
                self.family.stan_y_declaration,
            ]
        )
        if self.family.needs_ntrials:
            lines.append("array[N] int<lower=1> Ntrials; // Number of trials")
        if self.site_intercept == "grouped":
            lines.extend(
                [
                    "int<lower=1> ngrp; // Number of site groups",
                    "array[N] int<lower=1, upper=ngrp> grps; // Group of each site",
                ]
            )
        if self.zi_param == "covariate":
            lines.extend(
                [
                    "int<lower=1> zi_k; // Number of zero-inflation predictors",
                    "matrix[N, zi_k] zi_X; // Zero-inflation predictor matrix",
                ]
            )
        lines.append("}")
        return combine_lines(lines)

    @property
    def transformed_data_block(self) -> str:
        if self.method != "gllvm":
            return ""
        return combine_lines(
            [
                "transformed data {",
                "// Number of free loadings below the diagonal",
                "int<lower=1> M = D * (S - D) + (D * (D - 1)) %/% 2;",
                "}",
            ]
        )

    @property
    def parameters_block(self) -> str:
        lines = ["parameters {", "// Covariate effects"]
        if self.beta_param == "cor":
            lines.extend(
                [
                    "vector<lower=0>[K] sigmas_preds;",
                    "matrix[K, S] z_preds;",
                    "cholesky_factor_corr[K] L_Rho_preds;",
                ]
            )
        else:
            lines.append("matrix[K, S] betas;")

        if self.has_site_intercept:
            n_intercepts = "ngrp" if self.site_intercept == "grouped" else "N"
            lines.extend(
                [
                    "// Site intercepts",
                    "real a_bar;",
                    "real<lower=0> sigma_a;",
                    f"vector[{n_intercepts}] a;",
                ]
            )

        if self.method == "mglmm":
            lines.extend(
                [
                    "// Species covariance",
                    "vector<lower=0>[S] sigmas_species;",
                    "matrix[S, N] z_species;",
                    "cholesky_factor_corr[S] L_Rho_species;",
                ]
            )
        else:
            lines.extend(
                [
                    "// Latent variables and loadings",
                    "matrix[D, N] LV;",
                    "vector[M] L_l;",
                    "vector<lower=0>[D] L_d;",
                    "real<lower=0> sigma_L;",
                ]
            )

        if aux := self.family.stan_aux_parameters():
            lines.extend(["// Family parameters", *aux])
        if self.zi_param == "constant":
            lines.append("vector<lower=0, upper=1>[S] zi; // Zero-inflation")
        elif self.zi_param == "covariate":
            lines.append("matrix[zi_k, S] zi_betas; // Zero-inflation effects")

        lines.append("}")
        return combine_lines(lines)

    @property
    def transformed_parameters_block(self) -> str:
        lines = ["transformed parameters {"]
        if self.beta_param == "cor":
            lines.append(
                "matrix[K, S] betas = diag_pre_multiply(sigmas_preds, L_Rho_preds)"
                " * z_preds;"
            )
        if self.site_intercept == "ungrouped":
            lines.append("vector[N] a_site = a_bar + sigma_a * a;")
        elif self.site_intercept == "grouped":
            lines.append("vector[N] a_site = a_bar + sigma_a * a[grps];")

        if self.method == "mglmm":
            lines.append(
                "matrix[N, S] u = (diag_pre_multiply(sigmas_species, L_Rho_species)"
                " * z_species)';"
            )
        else:
            lines.extend(
                [
                    "matrix[D, S] Lambda;",
                    "{",
                    "int idx = 1;",
                    "for (d in 1:D) {",
                    "for (j in 1:S) {",
                    "if (j < d) {",
                    "Lambda[d, j] = 0;",
                    "} else if (j == d) {",
                    "Lambda[d, j] = sigma_L * L_d[d];",
                    "} else {",
                    "Lambda[d, j] = sigma_L * L_l[idx];",
                    "idx += 1;",
                    "}",
                    "}",
                    "}",
                    "}",
                ]
            )

        lines.append("}")
        return combine_lines(lines)

    def _prior_lines(self) -> list[str]:
        statement = self.prior.stan_statement
        lines = ["// Priors"]
        if self.beta_param == "cor":
            lines.extend(
                [
                    statement("sigmas_preds", "sigmas_preds"),
                    statement("z_preds", "to_vector(z_preds)"),
                    statement("cor_preds", "L_Rho_preds"),
                ]
            )
        else:
            lines.append(statement("betas", "to_vector(betas)"))

        if self.has_site_intercept:
            lines.extend(
                [
                    statement("a_bar", "a_bar"),
                    statement("sigma_a", "sigma_a"),
                    statement("a", "a"),
                ]
            )

        if self.method == "mglmm":
            lines.extend(
                [
                    statement("sigmas_species", "sigmas_species"),
                    statement("z_species", "to_vector(z_species)"),
                    statement("cor_species", "L_Rho_species"),
                ]
            )
        else:
            lines.extend(
                [
                    statement("LV", "to_vector(LV)"),
                    statement("L", "L_l"),
                    statement("L", "L_d"),
                    statement("sigma_L", "sigma_L"),
                ]
            )

        for aux in self.family.aux_params:
            if aux != "zi":
                lines.append(statement(aux, aux))
        if self.zi_param == "constant":
            lines.append(statement("zi", "zi"))
        elif self.zi_param == "covariate":
            lines.append(statement("zi_betas", "to_vector(zi_betas)"))

        return lines

    @property
    def model_block(self) -> str:
        lines = ["model {", *self._predictor_lines(), *self._prior_lines()]

        # Vectorized likelihood where available, element-wise otherwise
        lines.append("// Likelihood")
        if (vectorized := self.family.stan_vectorized_likelihood()) is not None:
            lines.extend(vectorized)
        else:
            lines.extend(self._elementwise_lines("target += {lpmf};"))

        lines.append("}")
        return combine_lines(lines)

    @property
    def generated_quantities_block(self) -> str:
        lines = ["generated quantities {", "matrix[N, S] log_lik;"]
        if self.beta_param == "cor":
            lines.append(
                "matrix[K, K] cor_preds = multiply_lower_tri_self_transpose(L_Rho_preds);"
            )
        if self.method == "mglmm":
            lines.append(
                "matrix[S, S] cor_species = "
                "multiply_lower_tri_self_transpose(L_Rho_species);"
            )
        lines.extend(
            [
                "{",
                *self._predictor_lines(),
                *self._elementwise_lines("log_lik[i, j] = {lpmf};"),
                "}",
                "}",
            ]
        )
        return combine_lines(lines)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        """Names of the parameters reported by the sampler, excluding ``log_lik``,
        ``lp__`` and the raw non-centred variables."""
        names = ["betas"]
        if self.beta_param == "cor":
            names.extend(["sigmas_preds", "cor_preds"])
        if self.has_site_intercept:
            names.extend(["a_bar", "sigma_a", "a", "a_site"])
        if self.method == "mglmm":
            names.extend(["sigmas_species", "cor_species", "u"])
        else:
            names.extend(["LV", "Lambda", "sigma_L"])
        names.extend(aux for aux in self.family.aux_params if aux != "zi")
        if self.zi_param == "constant":
            names.append("zi")
        elif self.zi_param == "covariate":
            names.append("zi_betas")
        return tuple(names)

    @property
    def code(self) -> str:
        """The complete Stan program."""
        return "\n\n".join(
            val
            for val in (
                self.functions_block,
                self.data_block,
                self.transformed_data_block,
                self.parameters_block,
                self.transformed_parameters_block,
                self.model_block,
                self.generated_quantities_block,
            )
            if len(val.strip()) > 0
        )


def jsdm_stancode(
    method: str,
    family: Union[str, Family],
    site_intercept: str = "none",
    beta_param: str = "cor",
    zi_param: Optional[str] = "constant",
    prior: Optional[JSDMPrior] = None,
) -> str:
    """Return the Stan program for a JSDM with the given structure.

    See :py:class:`JSDMStanProgram` for a description of the arguments.

    Example:
        >>> print(jsdm_stancode("mglmm", "bernoulli", site_intercept="ungrouped"))
    """
    return JSDMStanProgram(
        method=method,
        family=family,
        site_intercept=site_intercept,
        beta_param=beta_param,
        zi_param=zi_param,
        prior=prior,
    ).code
