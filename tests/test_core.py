import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from core import (ChainDraws, ModelRunResult, collect_chains, load_result, merge_chains, sample, save_result,
                  summary)
from diagnostics import compare, dic
from errors import ChainTimeout, ConfigurationError, DegenerateSample, RunCancelled


@pytest.fixture
def bym_run(ring4, counts4, quick):
    return sample("bym", counts4, ring4, quick)


def test_end_to_end_univariate(bym_run, counts4):
    assert bym_run.n_draws == 2000
    assert bym_run.lambda_draws.shape == (2000, 4)
    assert bym_run.weights == "uniform"
    assert bym_run.diseases == ("flu",)

    lam = bym_run.means["lambda"]
    assert np.all((lam >= 2.0) & (lam <= 10.0))
    assert abs(float(bym_run.means["spatial_sum"])) < 0.5
    assert np.isfinite(dic(bym_run.lambda_draws, counts4.observed[:, 0]).dic)


def test_fixed_seed_reproduces_dic(bym_run, ring4, counts4, quick):
    again = sample("bym", counts4, ring4, quick)
    observed = counts4.observed[:, 0]
    assert dic(again.lambda_draws, observed).dic == dic(bym_run.lambda_draws, observed).dic


def test_fixed_seed_reproduces(ring4, counts4, tiny):
    first = sample("leroux", counts4, ring4, tiny)
    second = sample("leroux", counts4, ring4, tiny)
    threaded = sample("leroux", counts4, ring4, tiny.with_options(backend="thread"))

    assert np.array_equal(first.lambda_draws, second.lambda_draws)
    assert np.array_equal(first.lambda_draws, threaded.lambda_draws)
    assert not np.array_equal(first.chain(0), first.chain(1))


def test_multivariate_run(ring4, counts4x3, tiny):
    result = sample("mbym", counts4x3, ring4, tiny)

    assert result.multivariate
    assert result.weights == "adaptive"
    assert result.means["c"].shape == (4,)
    assert np.all(result.means["c"] >= 0.001)
    assert result.lambda_draws.shape == (tiny.n_draws, 4, 3)

    row = compare(result, disease="b")
    assert row["disease"] == "b"
    assert np.isfinite(row["dic"])
    with pytest.raises(ConfigurationError):
        compare(result)


def test_merge_concatenates_in_chain_order():
    chains = [
        ChainDraws(chain=k, n_draws=3, sums={"mu": np.full(1, 3.0 * k)},
                   draws={"mu": np.full((3, 1), float(k))})
        for k in range(3)
    ]

    means, draws, n = merge_chains(chains)

    assert n == 3
    assert draws["mu"][:, 0].tolist() == [0, 0, 0, 1, 1, 1, 2, 2, 2]
    assert means["mu"][0] == pytest.approx(1.0)


def test_merge_rejects_uneven_chains():
    chains = [ChainDraws(0, 2, {}, {}), ChainDraws(1, 3, {}, {})]
    with pytest.raises(ConfigurationError):
        merge_chains(chains)


def test_failing_chain_fails_the_run(ring4, counts4, tiny):
    with pytest.raises(DegenerateSample):
        sample("bym", counts4, ring4, tiny.with_options(backend="thread"), inits={"mu": np.nan})


def test_failing_process_chain_fails_the_run(ring4, counts4, tiny):
    with pytest.raises(DegenerateSample):
        sample("bym", counts4, ring4, tiny.with_options(backend="process"), inits={"mu": np.nan})


def test_failure_stops_sibling_chains():
    stop = threading.Event()

    def failing():
        raise DegenerateSample(0, 1, "mu")

    def healthy():
        deadline = time.monotonic() + 30
        while not stop.is_set() and time.monotonic() < deadline:
            time.sleep(0.01)
        return stop.is_set()

    executor = ThreadPoolExecutor(max_workers=2)
    futures = [executor.submit(failing), executor.submit(healthy)]

    tic = time.monotonic()
    with pytest.raises(DegenerateSample):
        collect_chains(executor, futures, stop)

    assert time.monotonic() - tic < 10
    assert stop.is_set()
    assert futures[1].result(timeout=10) is True


def test_progress_is_logged_during_burn_in(ring4, counts4, tiny, caplog):
    caplog.set_level(logging.DEBUG, logger="core")
    sample("bym", counts4, ring4, tiny.with_options(n_chains=1))
    assert "chain 0: sweep 6/60" in caplog.text


def test_cancelled_run(ring4, counts4, tiny):
    event = threading.Event()
    event.set()
    with pytest.raises(RunCancelled):
        sample("bym", counts4, ring4, tiny, cancel_event=event)


def test_chain_timeout(ring4, counts4, tiny):
    with pytest.raises(ChainTimeout):
        sample("bym", counts4, ring4, tiny.with_options(chain_timeout=1e-9))


def test_unknown_engine(ring4, counts4, tiny):
    with pytest.raises(ConfigurationError):
        sample("bym", counts4, ring4, tiny, engine="stan")


def test_result_is_read_only(ring4, counts4, tiny):
    result = sample("bym", counts4, ring4, tiny)
    with pytest.raises(ValueError):
        result.lambda_draws[0, 0] = 1.0


def test_persistence_round_trip(ring4, counts4, tiny, tmp_path):
    result = sample("leroux", counts4, ring4, tiny, excluded="other")
    path = tmp_path / "runs" / "leroux.pkl"

    save_result(result, path)
    loaded = load_result(path)

    assert isinstance(loaded, ModelRunResult)
    assert loaded.excluded == "other"
    assert loaded.config == tiny
    assert np.array_equal(loaded.lambda_draws, result.lambda_draws)
    with pytest.raises(ValueError):
        loaded.lambda_draws[0, 0] = 1.0
    with pytest.raises(ValueError):
        loaded.means["lambda"][0] = 1.0
    assert compare(loaded) == compare(result)


def test_load_rejects_other_pickles(tmp_path):
    import pickle
    path = tmp_path / "other.pkl"
    path.write_bytes(pickle.dumps({"lambda": 1}))
    with pytest.raises(ConfigurationError):
        load_result(path)


def test_summary(ring4, counts4, tiny):
    result = sample("bym", counts4, ring4, tiny)
    table = summary(result, "lambda")
    assert len(table) == 4
    assert np.all(table["2.5%"] <= table["mean"])
    assert np.all(table["mean"] <= table["97.5%"])
    with pytest.raises(ConfigurationError):
        summary(result, "theta")
