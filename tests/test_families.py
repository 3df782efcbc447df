"""Tests for the response families."""

from __future__ import annotations

import numpy as np
import pytest

from jsdmstan.defaults import FAMILIES
from jsdmstan.exceptions import UnsupportedFamilyError
from jsdmstan.families import check_ntrials, get_family


def test_all_families_are_registered():
    for name in FAMILIES:
        assert get_family(name).name == name
    family = get_family("poisson")
    assert get_family(family) is family

    with pytest.raises(UnsupportedFamilyError, match="Unsupported family"):
        get_family("gamma")


def test_inverse_links():
    eta = np.array([-1.0, 0.0, 2.0])
    np.testing.assert_allclose(get_family("gaussian").inverse_link(eta), eta)
    np.testing.assert_allclose(get_family("poisson").inverse_link(eta), np.exp(eta))
    np.testing.assert_allclose(
        get_family("bernoulli").inverse_link(eta), 1 / (1 + np.exp(-eta))
    )


def test_response_checks():
    Y = np.array([[0, 1], [1, 0]])
    get_family("bernoulli").check_response(Y)

    with pytest.raises(UnsupportedFamilyError, match="0s and 1s"):
        get_family("bernoulli").check_response(Y * 2)
    with pytest.raises(UnsupportedFamilyError, match="non-negative integers"):
        get_family("poisson").check_response(np.array([[0.5, 1.0]]))
    with pytest.raises(UnsupportedFamilyError, match="non-negative integers"):
        get_family("neg_binomial").check_response(np.array([[-1, 1]]))
    with pytest.raises(UnsupportedFamilyError, match="Missing values"):
        get_family("gaussian").check_response(np.array([[np.nan, 1.0]]))

    # Successes cannot exceed trials
    binomial = get_family("binomial")
    binomial.check_response(np.array([[3, 2]]), np.array([3]))
    with pytest.raises(UnsupportedFamilyError, match="trials"):
        binomial.check_response(np.array([[4, 2]]), np.array([3]))
    with pytest.raises(UnsupportedFamilyError, match="Ntrials"):
        binomial.check_response(np.array([[1, 2]]))


def test_draws_have_expected_support():
    rng = np.random.default_rng(0)
    eta = rng.normal(size=(50, 3))

    presence = get_family("bernoulli").draw(eta, rng)
    assert set(np.unique(presence)) <= {0, 1}

    successes = get_family("binomial").draw(eta, rng, Ntrials=np.full(50, 4))
    assert np.all((successes >= 0) & (successes <= 4))

    counts = get_family("neg_binomial").draw(eta, rng, kappa=np.full(3, 2.0))
    assert counts.shape == (50, 3)
    assert np.all(counts >= 0)

    values = get_family("gaussian").draw(eta, rng, sigma=np.full(3, 1e-8))
    np.testing.assert_allclose(values, eta, atol=1e-6)


def test_zero_inflation():
    rng = np.random.default_rng(1)
    eta = np.full((40, 2), 3.0)
    family = get_family("zi_poisson")

    # Full inflation gives only zeros
    assert np.all(family.draw(eta, rng, zi=np.ones(2)) == 0)

    # Inflation can differ between species
    draws = family.draw(eta, rng, zi=np.array([1.0, 0.0]))
    assert np.all(draws[:, 0] == 0)
    assert np.all(draws[:, 1] > 0)


def test_missing_auxiliary_parameters():
    rng = np.random.default_rng(0)
    with pytest.raises(ValueError, match="kappa"):
        get_family("zi_neg_binomial").draw(np.zeros((2, 2)), rng, zi=np.zeros(2))
    with pytest.raises(ValueError, match="Ntrials"):
        get_family("binomial").draw(np.zeros((2, 2)), rng)


def test_check_ntrials():
    np.testing.assert_array_equal(check_ntrials(5, 3), [5, 5, 5])
    np.testing.assert_array_equal(check_ntrials(np.array([1, 2]), 2), [1, 2])
    assert check_ntrials(None, 3) is None
    with pytest.raises(ValueError, match="positive"):
        check_ntrials(0, 3)


def test_stan_pieces():
    assert get_family("gaussian").stan_y_declaration.startswith("matrix[N, S] Y")
    assert get_family("neg_binomial").stan_aux_parameters() == [
        "vector<lower=0>[S] kappa; // Negative binomial precision"
    ]
    assert get_family("zi_poisson").stan_vectorized_likelihood() is None
    assert get_family("zi_poisson").stan_lpmf("y", "mu", "j", "zi[j]") == (
        "zi_poisson_log_lpmf(y | mu, zi[j])"
    )
