# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Response families for Joint Species Distribution Models.

Each family couples three pieces of information about how species responses are
generated from the linear predictor:

    1. The inverse link function mapping the linear predictor to the mean
       (identity, inverse-logit or exponential).
    2. The auxiliary parameters that the family carries (residual scale for
       ``gaussian``, overdispersion ``kappa`` for the negative binomial and the
       zero-inflation probability ``zi`` for zero-inflated families).
    3. How responses are represented in Stan (data declaration and likelihood
       statements) and how they are drawn at random in NumPy (used both by the
       data simulators and by posterior prediction).

Families are stateless singletons and are retrieved by name with
:py:func:`get_family`.

Example:
    >>> fam = get_family("neg_binomial")
    >>> fam.aux_params
    ('kappa',)
    >>> y = fam.draw(eta, rng, kappa=np.full(eta.shape[-1], 2.0))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from jsdmstan import utils
from jsdmstan.exceptions import UnsupportedFamilyError

if TYPE_CHECKING:
    from jsdmstan import custom_types


class Family(ABC):
    """Abstract base class for all response families.

    :cvar name: Name of the family as used throughout jsdmstan
    :cvar link: Name of the link function
    :cvar aux_params: Names of the species-level auxiliary parameters
    :cvar discrete: Whether responses are integer-valued
    :cvar needs_ntrials: Whether the number of trials per site must be supplied
    :cvar zero_inflated: Whether the family carries a zero-inflation probability
    """

    name: str
    link: str
    aux_params: tuple[str, ...] = ()
    discrete: bool = True
    needs_ntrials: bool = False
    zero_inflated: bool = False

    def __repr__(self) -> str:
        return f"Family('{self.name}', link='{self.link}')"

    def inverse_link(self, eta: npt.NDArray) -> npt.NDArray[np.floating]:
        """Map the linear predictor to the expected response.

        :param eta: Linear predictor
        :type eta: npt.NDArray

        :returns: Expected value of the (non-inflated) response
        :rtype: npt.NDArray[np.floating]
        """
        if self.link == "identity":
            return np.asarray(eta, dtype=float)
        elif self.link == "logit":
            return utils.stable_sigmoid(eta)
        elif self.link == "log":
            return np.exp(eta)
        raise AssertionError(f"Unknown link: {self.link}")

    def check_response(
        self, Y: npt.NDArray, Ntrials: Optional[npt.NDArray] = None
    ) -> None:
        """Check that a community matrix is a valid response for this family.

        :param Y: Community matrix (sites x species)
        :type Y: npt.NDArray
        :param Ntrials: Number of trials per site, binomial only. Defaults to None.
        :type Ntrials: Optional[npt.NDArray]

        :raises UnsupportedFamilyError: If ``Y`` contains values the family cannot
            generate
        """
        if np.isnan(np.asarray(Y, dtype=float)).any():
            raise UnsupportedFamilyError("Missing values are not supported in Y.")

        # Discrete families need non-negative integers
        if self.discrete:
            if np.any(Y < 0) or not np.all(np.mod(Y, 1) == 0):
                raise UnsupportedFamilyError(
                    f"The {self.name} family requires Y to contain non-negative integers."
                )

    def draw(
        self,
        eta: npt.NDArray,
        rng: np.random.Generator,
        Ntrials: Optional[npt.NDArray] = None,
        **aux: npt.NDArray,
    ) -> npt.NDArray:
        """Draw random responses given the linear predictor.

        :param eta: Linear predictor, shape ``(..., N, S)``
        :type eta: npt.NDArray
        :param rng: Random number generator
        :type rng: np.random.Generator
        :param Ntrials: Number of trials per site, shape ``(N,)``. Binomial only.
        :type Ntrials: Optional[npt.NDArray]
        :param aux: Auxiliary parameters named in ``aux_params``, each broadcastable
            against ``eta`` (species-level values have shape ``(..., 1, S)`` or
            ``(S,)``).

        :returns: Random responses with the same shape as ``eta``
        :rtype: npt.NDArray

        :raises ValueError: If required auxiliary parameters are missing
        """
        # Make sure we have what we need
        if missing := set(self.aux_params) - set(aux):
            raise ValueError(
                f"Missing auxiliary parameters for the {self.name} family: "
                f"{', '.join(sorted(missing))}"
            )
        if self.needs_ntrials and Ntrials is None:
            raise ValueError(f"The {self.name} family requires `Ntrials`.")

        # Draw and apply zero-inflation if needed
        draws = self._draw(np.asarray(eta, dtype=float), rng, Ntrials=Ntrials, **aux)
        if self.zero_inflated:
            draws = np.where(
                rng.random(draws.shape) < np.broadcast_to(aux["zi"], draws.shape),
                0,
                draws,
            )

        return draws

    @abstractmethod
    def _draw(
        self,
        eta: npt.NDArray[np.floating],
        rng: np.random.Generator,
        Ntrials: Optional[npt.NDArray] = None,
        **aux: npt.NDArray,
    ) -> npt.NDArray:
        """Family-specific random draw ignoring any zero-inflation."""

    # Stan code pieces
    @property
    def stan_y_declaration(self) -> str:
        """Declaration of the community matrix in the Stan data block."""
        return "array[N, S] int<lower=0> Y; // Species matrix"

    def stan_aux_parameters(self) -> list[str]:
        """Declarations of the auxiliary parameters for the Stan parameters block.

        Zero-inflation parameters are declared by the code generator because their
        form depends on whether zero inflation is constant or covariate-dependent.
        """
        return []

    @abstractmethod
    def stan_lpmf(self, y: str, mu: str, j: str, zi: str) -> str:
        """Stan expression for the log-likelihood of one observation.

        :param y: Stan expression for the observation
        :param mu: Stan expression for its linear predictor
        :param j: Stan expression for the species index
        :param zi: Stan expression for the zero-inflation probability
        """

    def stan_vectorized_likelihood(self) -> Union[list[str], None]:
        """Row-wise sampling statements for the model block, if the family has one.

        Families without a vectorized form (the zero-inflated families) return None,
        in which case the likelihood is accumulated element-wise.
        """
        return None


class Gaussian(Family):
    """Normal response with identity link and species-specific residual scale."""

    name = "gaussian"
    link = "identity"
    aux_params = ("sigma",)
    discrete = False

    def _draw(self, eta, rng, Ntrials=None, **aux):
        return rng.normal(eta, aux["sigma"])

    @property
    def stan_y_declaration(self) -> str:
        return "matrix[N, S] Y; // Species matrix"

    def stan_aux_parameters(self) -> list[str]:
        return ["vector<lower=0>[S] sigma; // Residual scale"]

    def stan_lpmf(self, y, mu, j, zi):
        return f"normal_lpdf({y} | {mu}, sigma[{j}])"

    def stan_vectorized_likelihood(self):
        return [
            "for (i in 1:N) {",
            "Y[i] ~ normal(mu[i], sigma');",
            "}",
        ]


class Bernoulli(Family):
    """Presence/absence response with logit link."""

    name = "bernoulli"
    link = "logit"

    def check_response(self, Y, Ntrials=None):
        super().check_response(Y, Ntrials)
        if np.any(Y > 1):
            raise UnsupportedFamilyError(
                "The bernoulli family requires Y to contain only 0s and 1s."
            )

    def _draw(self, eta, rng, Ntrials=None, **aux):
        return rng.binomial(1, self.inverse_link(eta))

    @property
    def stan_y_declaration(self) -> str:
        return "array[N, S] int<lower=0, upper=1> Y; // Species matrix"

    def stan_lpmf(self, y, mu, j, zi):
        return f"bernoulli_logit_lpmf({y} | {mu})"

    def stan_vectorized_likelihood(self):
        return ["for (i in 1:N) {", "Y[i] ~ bernoulli_logit(mu[i]);", "}"]


class Binomial(Family):
    """Counts of successes out of a known number of trials per site, logit link."""

    name = "binomial"
    link = "logit"
    needs_ntrials = True

    def check_response(self, Y, Ntrials=None):
        super().check_response(Y, Ntrials)
        if Ntrials is None:
            raise UnsupportedFamilyError("The binomial family requires `Ntrials`.")
        if np.any(Y > np.asarray(Ntrials)[:, None]):
            raise UnsupportedFamilyError(
                "Y cannot contain more successes than the number of trials."
            )

    def _draw(self, eta, rng, Ntrials=None, **aux):
        return rng.binomial(np.asarray(Ntrials)[:, None], self.inverse_link(eta))

    def stan_lpmf(self, y, mu, j, zi):
        # Relies on the site index being called `i`
        return f"binomial_logit_lpmf({y} | Ntrials[i], {mu})"

    def stan_vectorized_likelihood(self):
        return ["for (i in 1:N) {", "Y[i] ~ binomial_logit(Ntrials[i], mu[i]);", "}"]


class Poisson(Family):
    """Count response with log link."""

    name = "poisson"
    link = "log"

    def _draw(self, eta, rng, Ntrials=None, **aux):
        return rng.poisson(self.inverse_link(eta))

    def stan_lpmf(self, y, mu, j, zi):
        return f"poisson_log_lpmf({y} | {mu})"

    def stan_vectorized_likelihood(self):
        return ["for (i in 1:N) {", "Y[i] ~ poisson_log(mu[i]);", "}"]


class NegBinomial(Family):
    """Overdispersed count response with log link, parametrized by the mean and the
    species-specific precision ``kappa`` (variance ``mu + mu^2 / kappa``).
    """

    name = "neg_binomial"
    link = "log"
    aux_params = ("kappa",)

    def _draw(self, eta, rng, Ntrials=None, **aux):
        mu = self.inverse_link(eta)
        kappa = np.broadcast_to(aux["kappa"], mu.shape)
        return rng.negative_binomial(kappa, kappa / (kappa + mu))

    def stan_aux_parameters(self) -> list[str]:
        return ["vector<lower=0>[S] kappa; // Negative binomial precision"]

    def stan_lpmf(self, y, mu, j, zi):
        return f"neg_binomial_2_log_lpmf({y} | {mu}, kappa[{j}])"

    def stan_vectorized_likelihood(self):
        return ["for (i in 1:N) {", "Y[i] ~ neg_binomial_2_log(mu[i], kappa');", "}"]


class ZIPoisson(Poisson):
    """Zero-inflated Poisson response."""

    name = "zi_poisson"
    aux_params = ("zi",)
    zero_inflated = True

    def stan_lpmf(self, y, mu, j, zi):
        return f"zi_poisson_log_lpmf({y} | {mu}, {zi})"

    def stan_vectorized_likelihood(self):
        return None


class ZINegBinomial(NegBinomial):
    """Zero-inflated negative binomial response."""

    name = "zi_neg_binomial"
    aux_params = ("kappa", "zi")
    zero_inflated = True

    def stan_lpmf(self, y, mu, j, zi):
        return f"zi_neg_binomial_2_log_lpmf({y} | {mu}, kappa[{j}], {zi})"

    def stan_vectorized_likelihood(self):
        return None


FAMILIES: dict[str, Family] = {
    fam.name: fam
    for fam in (
        Gaussian(),
        Bernoulli(),
        Binomial(),
        Poisson(),
        NegBinomial(),
        ZIPoisson(),
        ZINegBinomial(),
    )
}
"""Registry of family instances keyed by name."""


def get_family(family: Union[str, Family]) -> Family:
    """Retrieve a family by name.

    :param family: Family name or an existing family instance
    :type family: Union[str, Family]

    :returns: The family instance
    :rtype: Family

    :raises UnsupportedFamilyError: If the family name is not recognized

    Example:
        >>> get_family("poisson").link
        'log'
    """
    if isinstance(family, Family):
        return family
    try:
        return FAMILIES[family]
    except KeyError as err:
        raise UnsupportedFamilyError(
            f"Unsupported family: '{family}'. Options are: {', '.join(FAMILIES)}."
        ) from err


def check_ntrials(
    Ntrials: Union[npt.NDArray, "custom_types.Integer", None],
    N: "custom_types.Integer",
) -> Union[npt.NDArray[np.int64], None]:
    """Broadcast the number of binomial trials to one value per site."""
    if Ntrials is None:
        return None
    Ntrials = np.broadcast_to(np.asarray(Ntrials, dtype=np.int64), (N,)).copy()
    if np.any(Ntrials < 1):
        raise ValueError("`Ntrials` must be positive.")
    return Ntrials
