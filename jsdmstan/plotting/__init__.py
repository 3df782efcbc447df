# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Plotting utilities for jsdmstan.

The plots are built on top of holoviews and hvplot, providing interactive
visualizations of fitted Joint Species Distribution Models. They can be called
directly or through the matching methods of
:py:class:`~jsdmstan.model.results.JSDMStanFit` (``fit.plot``, ``fit.ordiplot``,
``fit.envplot``, ``fit.corrplot`` and ``fit.pp_check``).

Key Functionality:

    - MCMC traces, densities and convergence diagnostics
    - Ordination of sites and species along GLLVM latent variables
    - Species responses to the environment
    - Residual species correlations
    - Posterior predictive checks of community summary statistics
"""

from .plotting import (
    corrplot,
    envplot,
    mcmc_plot,
    ordiplot,
    posterior_dataframe,
    pp_check,
)
