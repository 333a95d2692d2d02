"""
# Header ------------------------------------------------------------------

Chain execution, merging and the run result record.
"""
import logging
import multiprocessing
import pickle
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from errors import ChainTimeout, ConfigurationError, DegenerateSample, RunCancelled
from gibbs import GibbsSampler
from model import declarative_model, get_model
from settings import RunConfig

logger = logging.getLogger(__name__)

# quantities whose draws are kept unless asked otherwise; every monitored
# quantity gets a posterior mean
TRAJECTORIES = ("lambda", "mu", "sigma_phi", "sigma_theta", "sigma_eta", "rho", "sigma_c", "spatial_sum")

# quantities without a disease axis
SHARED = ("c", "sigma_c")


# Chains -------------------------------------------------------------------

@dataclass
class ChainDraws:
    chain: int
    n_draws: int
    sums: Dict[str, np.ndarray]
    draws: Dict[str, np.ndarray]
    elapsed: float = 0.0


def sample_chain(spec, data, adjacency, config, chain, seed, scale=None, weights=None,
                 inits=None, keep=TRAJECTORIES, cancel_event=None) -> ChainDraws:
    """
    Run one chain: n_iter sweeps, discard n_burnin, keep every n_thin-th.

    The chain owns its state, random stream and draw buffers; nothing is
    returned unless every sweep completes.
    """
    sampler = GibbsSampler(spec, data, adjacency, scale=scale, weights=weights)
    rng = np.random.default_rng(seed)
    state = sampler.initial_state(rng, inits=inits)

    n_keep = config.draws_per_chain
    sums = {}
    draws = {}
    kept = 0
    tic = time.monotonic()
    report = max(config.n_iter // 10, 1)

    for sweep in range(1, config.n_iter + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled(chain, sweep)
        if config.chain_timeout is not None and time.monotonic() - tic > config.chain_timeout:
            raise ChainTimeout(chain, sweep, config.chain_timeout)

        sampler.sweep(state, rng)

        if sweep % report == 0:
            logger.debug("chain %d: sweep %d/%d", chain, sweep, config.n_iter)

        since = sweep - config.n_burnin
        if since <= 0 or since % config.n_thin or kept >= n_keep:
            bad = sampler.check(state)
            if bad is not None:
                raise DegenerateSample(chain, sweep, bad)
            continue

        values = sampler.monitored(state)
        bad = sampler.check(values)
        if bad is not None:
            raise DegenerateSample(chain, sweep, bad)

        for name, value in values.items():
            if name not in sums:
                sums[name] = np.zeros_like(value)
                if name in keep:
                    draws[name] = np.empty((n_keep,) + value.shape)
            sums[name] += value
            if name in draws:
                draws[name][kept] = value
        kept += 1

    elapsed = time.monotonic() - tic
    logger.info("chain %d finished %d sweeps in %.1fs (%d draws)", chain, config.n_iter, elapsed, kept)
    return ChainDraws(chain=chain, n_draws=kept, sums=sums, draws=draws, elapsed=elapsed)


def run_chains(spec, data, adjacency, config, scale=None, weights=None, inits=None,
               keep=TRAJECTORIES, cancel_event=None):
    """
    Run config.n_chains independent chains and return them in chain order.

    Each chain gets its own stream spawned from SeedSequence(config.seed), so
    the draws do not depend on the backend or the number of workers. A failing
    chain fails the run; chains still pending are cancelled.

    ``cancel_event`` is checked between sweeps. With the process backend it
    must be shareable across processes (e.g. ``multiprocessing.Manager().Event()``).
    """
    spec = get_model(spec)
    data.check_areas(adjacency)
    # fail on bad input before any worker starts
    GibbsSampler(spec, data, adjacency, scale=scale, weights=weights)

    seeds = np.random.SeedSequence(config.seed).spawn(config.n_chains)
    # lambda draws feed the diagnostics
    keep = tuple(dict.fromkeys(("lambda",) + tuple(keep)))

    def task(k, event):
        return (sample_chain, spec, data, adjacency, config, k, seeds[k],
                scale, weights, inits, keep, event)

    if config.backend == "serial":
        return [sample_chain(*task(k, cancel_event)[1:]) for k in range(config.n_chains)]

    manager = None
    if config.backend == "thread":
        Executor = ThreadPoolExecutor
        event = cancel_event if cancel_event is not None else threading.Event()
    else:
        Executor = ProcessPoolExecutor
        event = cancel_event
        if event is None:
            manager = multiprocessing.Manager()
            event = manager.Event()

    try:
        executor = Executor(max_workers=config.max_workers or config.n_chains)
        futures = [executor.submit(*task(k, event)) for k in range(config.n_chains)]
        return collect_chains(executor, futures, event if cancel_event is None else None)
    finally:
        if manager is not None:
            manager.shutdown()


def collect_chains(executor, futures, stop=None):
    """
    Results of ``futures`` in submission order, or the first failure.

    On failure ``stop`` (an event the running chains poll) is set and the
    executor is shut down without waiting, so sibling chains end at their
    next sweep instead of running to completion.
    """
    done, _ = wait(futures, return_when=FIRST_EXCEPTION)

    failed = [f for f in futures if f in done and f.exception() is not None]
    if failed:
        if stop is not None:
            stop.set()
        executor.shutdown(wait=False, cancel_futures=True)
        logger.error("run failed: %s", failed[0].exception())
        raise failed[0].exception()

    executor.shutdown(wait=True)
    return [f.result() for f in futures]


def merge_chains(chains) -> Tuple[Dict[str, np.ndarray], Dict[str, np.ndarray], int]:
    """
    Posterior means and chain-order concatenated draws.

    Returns (means, draws, draws_per_chain); K chains of D draws give K*D
    draws with chain k at [k*D, (k+1)*D).
    """
    if not chains:
        raise ConfigurationError("no chains to merge")
    counts = {c.n_draws for c in chains}
    if len(counts) != 1:
        raise ConfigurationError("chains retained different numbers of draws: " + str(sorted(counts)))
    n = counts.pop()
    total = n * len(chains)

    means = {name: sum(c.sums[name] for c in chains) / total for name in chains[0].sums}
    draws = {name: np.concatenate([c.draws[name] for c in chains], axis=0) for name in chains[0].draws}
    return means, draws, n


# Results ------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ModelRunResult:
    model: str
    weights: str
    diseases: Tuple[str, ...]
    config: RunConfig
    n_chains: int
    draws_per_chain: int
    means: Dict[str, np.ndarray]
    draws: Dict[str, np.ndarray]
    observed: np.ndarray
    expected: np.ndarray
    excluded: Optional[str] = None
    elapsed: Tuple[float, ...] = field(default=())

    def __post_init__(self):
        for store in (self.means, self.draws):
            for value in store.values():
                if isinstance(value, np.ndarray):
                    value.setflags(write=False)
        self.observed.setflags(write=False)
        self.expected.setflags(write=False)

    def __setstate__(self, state):
        # unpickled arrays come back writeable
        self.__dict__.update(state)
        self.__post_init__()

    @property
    def n_draws(self) -> int:
        return self.n_chains * self.draws_per_chain

    @property
    def multivariate(self) -> bool:
        return get_model(self.model).multivariate

    @property
    def lambda_draws(self) -> np.ndarray:
        return self.draws["lambda"]

    def chain(self, k, name="lambda") -> np.ndarray:
        d = self.draws_per_chain
        return self.draws[name][k * d:(k + 1) * d]

    def disease_index(self, name) -> int:
        try:
            return self.diseases.index(name)
        except ValueError:
            raise ConfigurationError("disease " + repr(name) + " not in this run") from None


def _drop_disease_axis(store):
    return {name: (v if name in SHARED else v[..., 0]) for name, v in store.items()}


def build_result(spec, data, config, chains, weights_label, excluded=None) -> ModelRunResult:
    means, draws, n = merge_chains(chains)

    observed = np.array(data.observed)
    expected = np.array(data.expected)
    if not spec.multivariate:
        means = _drop_disease_axis(means)
        draws = _drop_disease_axis(draws)
        observed = observed[:, 0]
        expected = expected[:, 0]

    return ModelRunResult(
        model=spec.key, weights=weights_label, diseases=data.names, config=config,
        n_chains=len(chains), draws_per_chain=n, means=means, draws=draws,
        observed=observed, expected=expected, excluded=excluded,
        elapsed=tuple(c.elapsed for c in chains),
    )


def sample(model, data, adjacency, config=None, scale=None, weights=None, weights_label=None,
           inits=None, keep=TRAJECTORIES, engine="gibbs", excluded=None, cancel_event=None) -> ModelRunResult:
    """Fit one model to one disease subset and return the merged posterior."""
    spec = get_model(model)
    config = config or RunConfig()

    if weights_label is None:
        weights_label = "adaptive" if (spec.multivariate or scale is not None or weights is not None) else "uniform"

    logger.info("%s [%s] on %s: %d chains x %d sweeps", spec.name, weights_label,
                ", ".join(data.names), config.n_chains, config.n_iter)

    if engine == "gibbs":
        chains = run_chains(spec, data, adjacency, config, scale=scale, weights=weights,
                            inits=inits, keep=keep, cancel_event=cancel_event)
    elif engine == "jags":
        chains = sample_jags(spec, data, adjacency, config, scale=scale, weights=weights, keep=keep)
    else:
        raise ConfigurationError("unknown engine " + repr(engine))

    return build_result(spec, data, config, chains, weights_label, excluded=excluded)


# Jags code ---------------------------------------------------------------

# Cross-check engine: the same models in BUGS, sampled by JAGS (pyjags extra).

def sample_jags(spec, data, adjacency, config, scale=None, weights=None, keep=TRAJECTORIES):
    import pyjags

    spec = get_model(spec)
    code, varnames, bvars = declarative_model(spec, data, adjacency, scale=scale, weights=weights)

    # one RNG seed per chain
    init = [{".RNG.name": "base::Mersenne-Twister", ".RNG.seed": int(config.seed) + k}
            for k in range(config.n_chains)]

    tic = time.monotonic()
    model = pyjags.Model(code, data=bvars, init=init, chains=config.n_chains, progress_bar=False)
    model.sample(config.n_burnin, vars=[])
    samples = model.sample(config.n_iter - config.n_burnin, vars=varnames, thin=config.n_thin)
    elapsed = time.monotonic() - tic

    chains = []
    for k in range(config.n_chains):
        values = {}
        for varname in varnames:
            # pyjags: (*dims, iterations, chains)
            arr = np.moveaxis(np.asarray(samples[varname])[..., k], -1, 0)
            name = varname.replace(".", "_")
            if name == "sigma_c":
                arr = arr.reshape(arr.shape[0])
            values[name] = arr
        values["spatial_sum"] = values[spec.spatial].sum(axis=1)

        n = values["lambda"].shape[0]
        chains.append(ChainDraws(
            chain=k, n_draws=n,
            sums={name: v.sum(axis=0) for name, v in values.items()},
            draws={name: v for name, v in values.items() if name in keep or name == "lambda"},
            elapsed=elapsed,
        ))
    return chains


# Summaries ----------------------------------------------------------------

def summary(result, varname, p=95):
    """Posterior mean and central p% interval of a kept quantity, one row per element."""
    if varname not in result.draws:
        raise ConfigurationError("no draws kept for " + repr(varname))
    values = result.draws[varname].reshape(result.n_draws, -1)
    lo, hi = np.percentile(values, [(100 - p) / 2, 100 - (100 - p) / 2], axis=0)
    return pd.DataFrame({
        "mean": values.mean(axis=0),
        "sd": values.std(axis=0, ddof=1) if result.n_draws > 1 else np.nan,
        str((100 - p) / 2) + "%": lo,
        str(100 - (100 - p) / 2) + "%": hi,
    })


def save_result(result, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(result, f)


def load_result(path) -> ModelRunResult:
    with open(path, "rb") as f:
        result = pickle.load(f)
    if not isinstance(result, ModelRunResult):
        raise ConfigurationError(str(path) + " does not hold a model run result")
    return result
