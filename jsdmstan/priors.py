# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Prior specification for jsdmstan models.

Priors are written as Stan sampling statements without the left-hand side, e.g.
``"normal(0,1)"`` or ``"lkj_corr_cholesky(2)"``. The same specification is used in
two places:

    1. By the Stan code generator, which inserts the statement verbatim into the
       model block.
    2. By the data simulators, which parse the statement and draw the true
       parameter values from the corresponding distribution using SciPy.

Parameters declared with a lower bound of zero in Stan (the scale parameters) are
drawn from the half-distribution in simulation, mirroring the truncation Stan
applies implicitly.

Example:
    >>> prior = JSDMPrior(betas="normal(0,2)", cor_species="lkj_corr_cholesky(2)")
    >>> prior["betas"]
    'normal(0,2)'
    >>> prior.draw("sigma_a", 1, rng)
"""

from __future__ import annotations

import re

from collections.abc import Mapping
from typing import Iterator, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from scipy import stats

from jsdmstan.defaults import DEFAULT_PRIORS, POSITIVE_PARAMS
from jsdmstan.exceptions import PriorSpecificationError

if TYPE_CHECKING:
    from jsdmstan import custom_types

# Pattern for `distribution(arg1, arg2, ...)`
_PRIOR_PATTERN = re.compile(r"^\s*([a-z_]+)\s*\(\s*(.*?)\s*\)\s*$")

# Number of arguments accepted by each supported distribution, along with a
# function building the equivalent frozen SciPy distribution
_SCIPY_BUILDERS = {
    "normal": (2, lambda mu, sigma: stats.norm(loc=mu, scale=sigma)),
    "std_normal": (0, lambda: stats.norm(loc=0, scale=1)),
    "student_t": (3, lambda nu, mu, sigma: stats.t(df=nu, loc=mu, scale=sigma)),
    "cauchy": (2, lambda mu, sigma: stats.cauchy(loc=mu, scale=sigma)),
    "gamma": (2, lambda alpha, beta: stats.gamma(a=alpha, scale=1 / beta)),
    "inv_gamma": (2, lambda alpha, beta: stats.invgamma(a=alpha, scale=beta)),
    "lognormal": (2, lambda mu, sigma: stats.lognorm(s=sigma, scale=np.exp(mu))),
    "exponential": (1, lambda beta: stats.expon(scale=1 / beta)),
    "beta": (2, lambda a, b: stats.beta(a=a, b=b)),
    "uniform": (2, lambda lower, upper: stats.uniform(loc=lower, scale=upper - lower)),
}

# Distributions over correlation matrices (via their Cholesky factor)
_CORR_DISTRIBUTIONS = {"lkj_corr_cholesky": 1}

# Parameters that are correlation matrices
CORRELATION_PARAMS = frozenset(("cor_preds", "cor_species"))


def parse_prior(text: str) -> tuple[str, tuple[float, ...]]:
    """Parse a Stan prior statement into its distribution name and arguments.

    :param text: The prior, e.g. ``"normal(0, 1)"``
    :type text: str

    :returns: Distribution name and numeric arguments
    :rtype: tuple[str, tuple[float, ...]]

    :raises PriorSpecificationError: If the statement cannot be parsed, names an
        unsupported distribution or has the wrong number of arguments

    Example:
        >>> parse_prior("student_t(3, 0, 2.5)")
        ('student_t', (3.0, 0.0, 2.5))
    """
    # Split into name and arguments
    if (match := _PRIOR_PATTERN.match(text)) is None:
        raise PriorSpecificationError(f"Could not parse prior: '{text}'")
    name, argstring = match.groups()

    # Arguments must all be numeric
    try:
        args = tuple(float(arg) for arg in argstring.split(",")) if argstring else ()
    except ValueError as err:
        raise PriorSpecificationError(
            f"Prior arguments must be numeric: '{text}'"
        ) from err

    # Check the number of arguments
    n_expected = {
        **{k: v[0] for k, v in _SCIPY_BUILDERS.items()},
        **_CORR_DISTRIBUTIONS,
    }.get(name)
    if n_expected is None:
        raise PriorSpecificationError(
            f"Unsupported prior distribution '{name}'. Options are: "
            f"{', '.join([*_SCIPY_BUILDERS, *_CORR_DISTRIBUTIONS])}."
        )
    if len(args) != n_expected:
        raise PriorSpecificationError(
            f"Distribution '{name}' takes {n_expected} arguments, got {len(args)}."
        )

    return name, args


def rlkj(
    dim: "custom_types.Integer", eta: "custom_types.Float", rng: np.random.Generator
) -> npt.NDArray[np.floating]:
    """Draw a random correlation matrix from the LKJ distribution.

    Uses the onion method of Lewandowski, Kurowicka and Joe (2009): the matrix is
    grown one row at a time, with each new row built from a Beta-distributed radius
    and a uniformly distributed direction.

    :param dim: Dimension of the correlation matrix
    :type dim: custom_types.Integer
    :param eta: LKJ shape parameter; 1 is uniform over correlation matrices, larger
        values concentrate mass around the identity
    :type eta: custom_types.Float
    :param rng: Random number generator
    :type rng: np.random.Generator

    :returns: A ``(dim, dim)`` correlation matrix
    :rtype: npt.NDArray[np.floating]

    :raises ValueError: If ``dim < 1`` or ``eta <= 0``
    """
    if dim < 1:
        raise ValueError("`dim` must be at least 1.")
    if eta <= 0:
        raise ValueError("`eta` must be positive.")
    if dim == 1:
        return np.ones((1, 1))

    # Start with the 2 x 2 case
    beta = eta + (dim - 2) / 2
    r12 = 2 * rng.beta(beta, beta) - 1
    corr = np.array([[1.0, r12], [r12, 1.0]])

    # Extend one row and column at a time
    for m in range(2, dim):
        beta -= 0.5
        radius = rng.beta(m / 2, beta)
        direction = rng.normal(size=m)
        direction /= np.linalg.norm(direction)
        new_col = np.linalg.cholesky(corr) @ (np.sqrt(radius) * direction)
        corr = np.block([[corr, new_col[:, None]], [new_col[None, :], np.ones((1, 1))]])

    return corr


class JSDMPrior(Mapping):
    """Collection of priors for all parameters of a JSDM.

    Any parameter not given explicitly takes its value from
    :py:data:`jsdmstan.defaults.DEFAULT_PRIORS`.

    :param priors: Prior statements keyed by parameter name

    :raises PriorSpecificationError: If an unknown parameter is named or a prior
        cannot be parsed, or if a correlation parameter is not given an LKJ prior

    Example:
        >>> prior = JSDMPrior(sigmas_species="normal(0,0.5)")
        >>> print(prior)
    """

    def __init__(self, **priors: str):
        # No unknown parameters allowed
        if unknown := set(priors) - set(DEFAULT_PRIORS):
            raise PriorSpecificationError(
                f"Unknown parameters in prior: {', '.join(sorted(unknown))}"
            )

        # Combine with the defaults and validate everything
        self._priors = {**DEFAULT_PRIORS, **priors}
        self._parsed = {}
        for name, text in self._priors.items():
            dist_name, args = parse_prior(text)
            if (name in CORRELATION_PARAMS) != (dist_name in _CORR_DISTRIBUTIONS):
                raise PriorSpecificationError(
                    f"Parameter '{name}' has an incompatible prior: '{text}'"
                )
            self._parsed[name] = (dist_name, args)

    def __getitem__(self, name: str) -> str:
        return self._priors[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._priors)

    def __len__(self) -> int:
        return len(self._priors)

    def __repr__(self) -> str:
        width = max(len(name) for name in self._priors)
        return "\n".join(
            f"{name.ljust(width)} ~ {text}" for name, text in self._priors.items()
        )

    def update(self, **priors: str) -> "JSDMPrior":
        """Return a new prior with some statements replaced."""
        return JSDMPrior(**{**self._priors, **priors})

    def stan_statement(self, name: str, target: str) -> str:
        """Build the Stan sampling statement placing this prior on ``target``.

        :param name: Parameter whose prior to use
        :type name: str
        :param target: Stan expression receiving the prior
        :type target: str

        :returns: Stan sampling statement, e.g. ``"to_vector(betas) ~ normal(0,1);"``
        :rtype: str
        """
        return f"{target} ~ {self._priors[name]};"

    def draw(
        self,
        name: str,
        size: Union["custom_types.Integer", tuple["custom_types.Integer", ...]],
        rng: np.random.Generator,
    ) -> npt.NDArray[np.floating]:
        """Draw random values of a parameter from its prior.

        Positive parameters are drawn from the half-distribution (absolute values).
        Correlation parameters return a correlation matrix of dimension ``size``.

        :param name: Name of the parameter
        :type name: str
        :param size: Shape of the draw, or the dimension for correlation matrices
        :type size: Union[custom_types.Integer, tuple[custom_types.Integer, ...]]
        :param rng: Random number generator
        :type rng: np.random.Generator

        :returns: Drawn values
        :rtype: npt.NDArray[np.floating]
        """
        dist_name, args = self._parsed[name]

        # Correlation matrices are handled separately
        if dist_name in _CORR_DISTRIBUTIONS:
            return rlkj(size, args[0], rng)

        # Draw from the scipy distribution
        draws = np.asarray(
            _SCIPY_BUILDERS[dist_name][1](*args).rvs(size=size, random_state=rng),
            dtype=float,
        )
        if name in POSITIVE_PARAMS:
            draws = np.abs(draws)

        return draws
