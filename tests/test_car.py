import math

import numpy as np
import pytest

import adjacency
import car


@pytest.fixture
def triangle():
    return adjacency.ring(3)


def test_car_conditional_is_neighbour_average(triangle):
    x = np.array([1.0, 2.0, 4.0])
    mean, precision = car.car_conditional(x, 0, triangle)
    assert mean == pytest.approx(3.0)
    assert precision == pytest.approx(2.0)


def test_weighted_car_conditional(triangle):
    x = np.array([1.0, 2.0, 4.0])
    w = car.edge_weights([1.0, 4.0, 1.0], triangle)
    mean, precision = car.car_conditional(x, 0, triangle, w)
    assert mean == pytest.approx(8.0 / 3.0)
    assert precision == pytest.approx(3.0)


def test_edge_weights_are_symmetric(triangle):
    w = car.edge_weights([0.5, 2.0, 3.0], triangle)
    W = triangle.matrix(w)
    assert np.allclose(W, W.T)
    assert W[0, 1] == pytest.approx(1.0)


def test_leroux_conditional(triangle):
    x = np.array([1.0, 2.0, 4.0])
    mean, precision = car.leroux_conditional(x, 0, triangle, rho=0.5)
    assert mean == pytest.approx(2.0)
    assert precision == pytest.approx(1.5)

    # rho = 1 is the intrinsic CAR
    assert car.leroux_conditional(x, 0, triangle, rho=1.0) == pytest.approx(car.car_conditional(x, 0, triangle))


def test_penalised_conditional():
    mean, precision = car.penalised_conditional(3.0, 2.0, rest_sum=6.0, penalty=10.0)
    assert mean == pytest.approx(-4.5)
    assert precision == pytest.approx(12.0)


def test_penalised_conditional_matches_joint_density(triangle):
    # the joint log density is quadratic in x_0 with the conditional's moments
    x = np.array([0.3, -0.2, 0.5])
    Q = car.car_precision(triangle)
    m, p = car.penalised_conditional(*car.car_conditional(x, 0, triangle), rest_sum=x[1:].sum())

    def f(v):
        y = x.copy()
        y[0] = v
        return car.log_density(y, Q, logdet=0.0)

    h = 0.25
    assert f(m + h) == pytest.approx(f(m - h))
    assert f(m - h) - 2 * f(m) + f(m + h) == pytest.approx(-p * h * h)


def test_precisions(triangle):
    L = car.car_precision(triangle)
    assert np.allclose(L.sum(axis=1), 0.0)
    assert np.allclose(car.leroux_precision(triangle, 0.0), np.eye(3))
    assert np.allclose(car.leroux_precision(triangle, 1.0), L)


def test_logdet_with_sum_to_zero(triangle):
    # spectrum of the triangle's D - W is {0, 3, 3}; the penalty lifts 0 to 3 * 10
    L = car.car_precision(triangle)
    logdet = car.logdet_plus(L + 10.0 * np.ones((3, 3)))
    assert logdet == pytest.approx(math.log(30.0) + 2 * math.log(3.0))
    assert car.logdet_plus(L) == pytest.approx(2 * math.log(3.0))
