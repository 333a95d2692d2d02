import math

import numpy as np
import pytest

from diagnostics import cpo, deviance, dic, log_cpo, total_cpo
from errors import ConfigurationError, NumericInstability


def logpois(o, lam):
    return o * math.log(lam) - lam - math.lgamma(o + 1)


def test_dic_by_hand():
    lam = np.array([[1.0, 2.0],
                    [3.0, 4.0]])
    observed = np.array([1, 2])

    d = [-2 * (logpois(1, a) + logpois(2, b)) for a, b in lam]
    dbar = sum(d) / 2
    dhat = -2 * (logpois(1, 2.0) + logpois(2, 3.0))

    result = dic(lam, observed)

    assert result.dbar == pytest.approx(dbar)
    assert result.dhat == pytest.approx(dhat)
    assert result.pd == pytest.approx(dbar - dhat)
    assert result.pd >= 0
    assert result.dic == pytest.approx(dbar + (dbar - dhat))
    assert deviance(lam.mean(axis=0), observed) == pytest.approx(dhat)


def test_constant_draws_give_zero_pd_and_pmf_cpo():
    lam = np.tile([2.0, 5.0], (10, 1))
    observed = np.array([1, 4])

    assert dic(lam, observed).pd == pytest.approx(0.0)
    assert cpo(lam, observed) == pytest.approx([math.exp(logpois(1, 2.0)), math.exp(logpois(4, 5.0))])


def test_cpo_is_a_harmonic_mean():
    lam = np.array([[1.0], [2.0], [4.0]])
    observed = np.array([2])
    p = np.array([math.exp(logpois(2, v)) for v in lam[:, 0]])

    assert cpo(lam, observed)[0] == pytest.approx(1 / np.mean(1 / p))
    assert total_cpo(lam, observed) == pytest.approx(math.log(1 / np.mean(1 / p)))


def test_cpo_is_idempotent():
    rng = np.random.default_rng(0)
    lam = rng.gamma(5.0, 1.0, size=(200, 6))
    observed = np.array([3, 5, 4, 8, 2, 6])

    first = log_cpo(lam, observed)
    second = log_cpo(lam, observed)

    assert np.array_equal(first, second)
    assert np.all(first < 0)


def test_total_cpo_per_disease():
    lam = np.full((5, 3, 2), 2.0)
    observed = np.ones((3, 2), dtype=int)
    assert total_cpo(lam, observed).shape == (2,)


def test_zero_rate_with_cases_is_unstable():
    lam = np.array([[0.0, 1.0], [0.0, 2.0]])
    observed = np.array([3, 1])

    with pytest.raises(NumericInstability) as info:
        dic(lam, observed, disease="flu")
    assert info.value.disease == "flu"
    assert info.value.areas == (0,)

    with pytest.raises(NumericInstability):
        cpo(lam, observed)


def test_shape_mismatch():
    with pytest.raises(ConfigurationError):
        dic(np.ones((4, 3)), np.ones(2, dtype=int))
