"""
# Header ------------------------------------------------------------------

Leave-one-out analysis over a menu of diseases and the model comparison table.

    python run.py --counts counts.csv --neighbours neighbours.txt \
                  --config config.yaml --out results/
"""
import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pandas as pd

import adjacency as adjacency_builder
import car
from core import TRAJECTORIES, sample, save_result
from diagnostics import compare
from errors import ConfigurationError
from model import CountData, get_model
from settings import RunConfig, load_config

logger = logging.getLogger(__name__)


# Runs -----------------------------------------------------------------------

def run_model(model, data, adjacency, config, scale=None, keep=TRAJECTORIES, engine="gibbs", excluded=None):
    """
    Fit one model. ``scale`` is the adaptive per-area c of a completed
    multivariate run; univariate BYM turns it into edge weights, univariate
    Leroux takes it as is.
    """
    spec = get_model(model)
    if spec.multivariate or scale is None:
        return sample(spec, data, adjacency, config, keep=keep, engine=engine, excluded=excluded)
    if spec.family == "bym":
        return sample(spec, data, adjacency, config, weights=car.edge_weights(scale, adjacency),
                      weights_label="adaptive", keep=keep, engine=engine, excluded=excluded)
    return sample(spec, data, adjacency, config, scale=scale, weights_label="adaptive",
                  keep=keep, engine=engine, excluded=excluded)


def run_leave_one_out(data, adjacency, model, config, scales=None, keep=TRAJECTORIES,
                      engine="gibbs", max_runs=1):
    """
    One run per disease of ``data``, in disease order.

    Multivariate models are fit to every disease but the k-th. Univariate
    models are fit to the k-th disease alone, with ``scales[name]`` (the c
    learned without it) when given and uniform weights otherwise. Runs are
    independent and execute ``max_runs`` at a time.
    """
    spec = get_model(model)

    if spec.multivariate and data.n_diseases < 3:
        raise ConfigurationError("leave-one-out over a multivariate model needs at least 3 diseases")
    if scales is not None:
        missing = [n for n in data.names if n not in scales]
        if missing:
            raise ConfigurationError("no adaptive scale for " + ", ".join(missing))

    def one(name):
        if spec.multivariate:
            return run_model(spec, data.drop(name), adjacency, config, keep=keep, engine=engine, excluded=name)
        scale = None if scales is None else scales[name]
        return run_model(spec, data.column(name), adjacency, config, scale=scale, keep=keep, engine=engine)

    if max_runs <= 1:
        return [one(name) for name in data.names]

    with ThreadPoolExecutor(max_workers=max_runs) as executor:
        return list(executor.map(one, data.names))


def adaptive_scales(results):
    """Posterior mean of c from each leave-one-out run, keyed by the excluded disease."""
    scales = {}
    for r in results:
        if r.excluded is None or "c" not in r.means:
            raise ConfigurationError("adaptive scales come from multivariate leave-one-out runs")
        scales[r.excluded] = np.array(r.means["c"])
    return scales


# Comparison -----------------------------------------------------------------

def comparison_table(results):
    """
    DIC and total CPO keyed by disease, one column pair per (model, weights).

    Takes univariate runs, as a list or as {(model, weights): [runs]};
    multivariate runs in the mapping are skipped. Flagged diseases show NaN
    and their message in the ``flag`` column.
    """
    if isinstance(results, dict):
        results = [r for rs in results.values() for r in rs if not r.multivariate]

    rows = []
    for r in results:
        if len(r.diseases) != 1:
            raise ConfigurationError("comparison table takes univariate runs")
        rows.append(compare(r))

    if not rows:
        raise ConfigurationError("no runs to compare")

    df = pd.DataFrame(rows)
    table = df.pivot_table(index="disease", columns=["model", "weights"],
                           values=["dic", "total_cpo"], aggfunc="first", dropna=False, sort=False)
    table = table.reorder_levels([1, 2, 0], axis=1).sort_index(axis=1)
    table.columns = [m + "/" + w + " " + ("DIC" if v == "dic" else "CPO") for m, w, v in table.columns]

    flags = df.groupby("disease", sort=False)["flag"].agg(lambda s: "; ".join(f for f in s if f))
    table["flag"] = flags.reindex(table.index).fillna("")

    order = list(dict.fromkeys(df["disease"]))
    return table.reindex(order)


def analyse(data, adjacency, config, models=("bym", "leroux"), keep=TRAJECTORIES, engine="gibbs", max_runs=1):
    """
    Full comparison: for each univariate family, the multivariate adaptive
    leave-one-out runs, then the univariate runs with uniform and adaptive
    weights. Returns (table, {(model, weights): [results]}).
    """
    runs = {}
    for model in models:
        spec = get_model(model)
        if spec.multivariate:
            raise ConfigurationError("analyse takes univariate models; " + spec.key + " is multivariate")
        logger.info("%s: leave-one-out over %d diseases", spec.name, data.n_diseases)

        adaptive = run_leave_one_out(data, adjacency, "m" + spec.key, config, keep=keep,
                                     engine=engine, max_runs=max_runs)
        runs[("m" + spec.key, "adaptive")] = adaptive
        scales = adaptive_scales(adaptive)

        runs[(spec.key, "uniform")] = run_leave_one_out(
            data, adjacency, spec, config, keep=keep, engine=engine, max_runs=max_runs)
        runs[(spec.key, "adaptive")] = run_leave_one_out(
            data, adjacency, spec, config, scales=scales, keep=keep, engine=engine, max_runs=max_runs)

    return comparison_table(runs), runs


# Command line ---------------------------------------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(description="Adaptive CAR disease mapping with leave-one-out comparison")
    parser.add_argument("--counts", required=True,
                        help="CSV with columns area, disease, observed, expected")
    parser.add_argument("--neighbours", required=True,
                        help="neighbour list, one line per area: CODE N1 N2 ...")
    parser.add_argument("--config", default=None, help="YAML run configuration")
    parser.add_argument("--models", nargs="+", default=None, help="univariate models (bym, leroux)")
    parser.add_argument("--engine", default="gibbs", choices=["gibbs", "jags"])
    parser.add_argument("--max-runs", type=int, default=1)
    parser.add_argument("--out", default="results")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if args.config:
        settings = load_config(args.config)
    else:
        settings = {"sampler": RunConfig(), "models": []}
    models = args.models or settings["models"] or ["bym", "leroux"]

    adjacency = adjacency_builder.read_neighbour_file(args.neighbours)
    data = CountData.from_frame(pd.read_csv(args.counts), areas=adjacency.names)

    table, runs = analyse(data, adjacency, settings["sampler"], models=models,
                          engine=args.engine, max_runs=args.max_runs)

    out = Path(args.out)
    for (model, weights), results in runs.items():
        for r in results:
            tag = r.excluded if r.excluded is not None else r.diseases[0]
            save_result(r, out / (model + "_" + weights + "_" + str(tag) + ".pkl"))
    table.to_csv(out / "comparison.csv")

    print("######################")
    print(table.to_string())
    print("######################")
    return 0


if __name__ == "__main__":
    sys.exit(main())
