import numpy as np
import pandas as pd
import pytest

import adjacency
import car
from errors import ConfigurationError
from model import (MODEL_TYPES, CountData, check_scale, get_model, initial_values, jags_code,
                   jags_data, jags_varnames)


def test_counts_must_be_non_negative_integers():
    with pytest.raises(ConfigurationError):
        CountData.from_arrays([1, -1, 2], [1.0, 1.0, 1.0])
    with pytest.raises(ConfigurationError):
        CountData.from_arrays([1, 1.5, 2], [1.0, 1.0, 1.0])


def test_expected_must_be_positive():
    with pytest.raises(ConfigurationError):
        CountData.from_arrays([1, 1, 2], [1.0, 0.0, 1.0])


def test_disease_names_are_unique():
    with pytest.raises(ConfigurationError):
        CountData.from_arrays(np.ones((3, 2), dtype=int), np.ones((3, 2)), names=["x", "x"])


def test_drop_and_select(counts4x3):
    rest = counts4x3.drop("b")
    assert rest.names == ("a", "c")
    assert np.array_equal(rest.observed, counts4x3.observed[:, [0, 2]])

    one = counts4x3.column("c")
    assert one.n_diseases == 1
    assert one.diseases[0].id == 3

    with pytest.raises(ConfigurationError):
        counts4x3.drop("z")


def test_from_tensor_sums_years():
    observed = np.arange(2 * 2 * 3 * 2).reshape(2, 2, 3, 2)
    expected = observed + 1.0

    data = CountData.from_tensor(observed, expected, sex=1, diseases=[1])

    assert data.n_areas == 3
    assert data.names == ("disease2",)
    assert np.array_equal(data.observed[:, 0], observed[:, 1, :, 1].sum(axis=0))


def test_from_frame_follows_area_order():
    df = pd.DataFrame({
        "area": ["b", "a", "b", "a", "a"],
        "disease": ["x", "x", "y", "y", "y"],
        "observed": [1, 2, 3, 4, 1],
        "expected": [1.0, 2.0, 3.0, 4.0, 1.0],
    })

    data = CountData.from_frame(df, areas=["b", "a"])

    assert data.names == ("x", "y")
    assert data.observed.tolist() == [[1, 3], [2, 5]]
    assert data.expected[1, 1] == pytest.approx(5.0)


def test_from_frame_rejects_missing_columns():
    with pytest.raises(ConfigurationError):
        CountData.from_frame(pd.DataFrame({"area": ["a"], "observed": [1]}))


def test_registry():
    assert set(MODEL_TYPES) == {"bym", "leroux", "mbym", "mleroux"}
    assert get_model("mleroux").parameters() == ("mu", "eta", "sigma_eta", "rho", "c", "sigma_c")
    assert get_model("bym").parameters() == ("mu", "phi", "theta", "sigma_phi", "sigma_theta")
    with pytest.raises(ConfigurationError):
        get_model("car")


def test_check_scale(ring4):
    assert np.array_equal(check_scale(get_model("bym"), ring4), np.ones(8))
    assert np.array_equal(check_scale(get_model("leroux"), ring4), np.ones(4))

    with pytest.raises(ConfigurationError):
        check_scale(get_model("bym"), ring4, scale=np.ones(4))
    with pytest.raises(ConfigurationError):
        check_scale(get_model("leroux"), ring4, weights=np.ones(8))
    with pytest.raises(ConfigurationError):
        check_scale(get_model("mbym"), ring4, scale=np.ones(4))
    with pytest.raises(ConfigurationError):
        check_scale(get_model("leroux"), ring4, scale=[1.0, 1.0, -1.0, 1.0])


def test_initial_values(counts4x3):
    rng = np.random.default_rng(0)
    state = initial_values(get_model("mbym"), counts4x3, rng)

    assert state["mu"].shape == (3,)
    assert state["phi"].shape == (4, 3)
    assert np.allclose(state["phi"].sum(axis=0), 0.0)
    assert np.all((state["sigma_theta"] > 0) & (state["sigma_theta"] < 5))
    assert np.array_equal(state["c"], np.ones(4))
    assert state["sigma_c"].shape == ()


def test_initial_values_override(counts4):
    state = initial_values(get_model("leroux"), counts4, np.random.default_rng(0), inits={"rho": 0.9})
    assert state["rho"].tolist() == [0.9]
    with pytest.raises(ConfigurationError):
        initial_values(get_model("leroux"), counts4, np.random.default_rng(0), inits={"phi": 0.0})


@pytest.mark.parametrize("key", sorted(MODEL_TYPES))
def test_jags_code(key):
    code = jags_code(key)
    assert "dmnorm" in code
    assert "dpois" in code
    assert "SIGMA" not in code and "CLOW" not in code
    assert ("T(0.001,)" in code) == get_model(key).multivariate


def test_jags_varnames():
    assert jags_varnames("mleroux") == ["mu", "eta", "sigma.eta", "rho", "lambda", "smr", "c", "sigma.c"]


def test_jags_data(ring4, counts4):
    w = car.edge_weights([1.0, 2.0, 1.0, 2.0], ring4)
    bvars = jags_data("bym", counts4, ring4, weights=w)
    assert np.allclose(bvars["Lw"].sum(axis=1), 0.0)
    assert bvars["kappa"] == 10.0
    assert bvars["O"].shape == (4, 1)

    bvars = jags_data("leroux", counts4, ring4, scale=[1.0, 2.0, 1.0, 2.0])
    assert bvars["A"].shape == (4, 4)
    assert bvars["c"].tolist() == [1.0, 2.0, 1.0, 2.0]

    with pytest.raises(ConfigurationError):
        jags_data("bym", counts4, adjacency.ring(5))
