"""Tests for the generated Stan programs."""

from __future__ import annotations

import itertools

import pytest

from jsdmstan.defaults import FAMILIES, METHODS
from jsdmstan.model.stancode import JSDMStanProgram, combine_lines, jsdm_stancode
from jsdmstan.priors import JSDMPrior


def test_combine_lines_indents_blocks():
    code = combine_lines(["model {", "for (i in 1:N) {", "x += 1;", "}", "}"])
    assert code.splitlines() == [
        "model {",
        "    for (i in 1:N) {",
        "        x += 1;",
        "    }",
        "}",
    ]


@pytest.mark.parametrize("method, family", itertools.product(METHODS, FAMILIES))
def test_every_combination_has_all_blocks(method, family):
    code = jsdm_stancode(method, family)
    for block in (
        "data {",
        "parameters {",
        "transformed parameters {",
        "model {",
        "generated quantities {",
    ):
        assert block in code
    assert "matrix[N, S] log_lik;" in code
    assert code.count("{") == code.count("}")


def test_gllvm_program():
    program = JSDMStanProgram("gllvm", "poisson", beta_param="unstruct")
    code = program.code
    assert "int<lower=1> D;" in code
    assert "int<lower=1> M = D * (S - D) + (D * (D - 1)) %/% 2;" in code
    assert "matrix[N, S] mu = X * betas + LV' * Lambda;" in code
    assert "Lambda[d, j] = sigma_L * L_d[d];" in code
    assert "matrix[K, S] betas;" in code
    assert "cor_species" not in code
    assert "Y[i] ~ poisson_log(mu[i]);" in code
    assert "functions {" not in code
    assert program.parameter_names == ("betas", "LV", "Lambda", "sigma_L")


def test_mglmm_program():
    program = JSDMStanProgram("mglmm", "gaussian", site_intercept="ungrouped")
    code = program.code
    assert "transformed data" not in code
    assert "cholesky_factor_corr[S] L_Rho_species;" in code
    assert "cholesky_factor_corr[K] L_Rho_preds;" in code
    assert "vector[N] a_site = a_bar + sigma_a * a;" in code
    assert "rep_matrix(a_site, S)" in code
    assert "matrix[S, S] cor_species" in code
    assert "vector<lower=0>[S] sigma;" in code
    assert program.parameter_names == (
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
    )


def test_grouped_intercepts_and_trials():
    code = jsdm_stancode("mglmm", "binomial", site_intercept="grouped")
    assert "array[N] int<lower=1, upper=ngrp> grps;" in code
    assert "vector[ngrp] a;" in code
    assert "a_bar + sigma_a * a[grps]" in code
    assert "array[N] int<lower=1> Ntrials;" in code
    assert "binomial_logit(Ntrials[i], mu[i])" in code


def test_zero_inflation_options():
    constant = JSDMStanProgram("gllvm", "zi_poisson")
    assert "functions {" in constant.code
    assert "vector<lower=0, upper=1>[S] zi;" in constant.code
    assert "zi_poisson_log_lpmf(Y[i, j] | mu[i, j], zi[j])" in constant.code
    assert constant.parameter_names[-1] == "zi"

    covariate = JSDMStanProgram("gllvm", "zi_neg_binomial", zi_param="covariate")
    assert "matrix[N, zi_k] zi_X;" in covariate.code
    assert "matrix[N, S] zi_prob = inv_logit(zi_X * zi_betas);" in covariate.code
    assert covariate.parameter_names[-2:] == ("kappa", "zi_betas")

    # Zero-inflation options are dropped for other families
    assert JSDMStanProgram("mglmm", "poisson", zi_param="covariate").zi_param is None


def test_priors_are_inserted():
    prior = JSDMPrior(betas="normal(0,5)", sigma_L="exponential(2)")
    code = jsdm_stancode("gllvm", "bernoulli", beta_param="unstruct", prior=prior)
    assert "to_vector(betas) ~ normal(0,5);" in code
    assert "sigma_L ~ exponential(2);" in code


def test_invalid_options():
    with pytest.raises(ValueError, match="method"):
        JSDMStanProgram("hmsc", "poisson")
    with pytest.raises(ValueError, match="site_intercept"):
        JSDMStanProgram("mglmm", "poisson", site_intercept="nested")
    with pytest.raises(ValueError, match="zi_param"):
        JSDMStanProgram("mglmm", "zi_poisson", zi_param="varying")
