# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model construction, fitting and analysis for jsdmstan.

This subpackage turns validated community data into fitted Joint Species
Distribution Models. It is organized in four layers:

    - :py:mod:`~jsdmstan.model.stancode` assembles the Stan program for a given
      model structure (method, family, site intercepts, covariate effects and
      zero-inflation).
    - :py:mod:`~jsdmstan.model.stan_model` compiles the program with CmdStanPy,
      reusing cached executables, and runs the sampler.
    - :py:mod:`~jsdmstan.model.fitting` provides the user-facing entry points
      :py:func:`~jsdmstan.model.fitting.stan_jsdm`,
      :py:func:`~jsdmstan.model.fitting.stan_mglmm` and
      :py:func:`~jsdmstan.model.fitting.stan_gllvm`.
    - :py:mod:`~jsdmstan.model.results` wraps the sampler output in
      :py:class:`~jsdmstan.model.results.JSDMStanFit` for summaries, diagnostics
      and prediction.
"""
