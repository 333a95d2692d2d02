"""
# Diagnostics ----------------------------------------------------------------

DIC and CPO from the retained draws of the Poisson means lambda. Both are pure
reductions over the draw axis (axis 0); no sampling happens here.

    D(lambda) = -2 sum log Poisson(O; lambda)
    pD        = mean_s D(lambda_s) - D(mean_s lambda_s)
    DIC       = mean_s D(lambda_s) + pD

    CPO_i     = 1 / mean_s [1 / Poisson(O_i; lambda_s,i)]
"""
import logging
from dataclasses import dataclass

import numpy as np
from scipy.special import logsumexp
from scipy.stats import poisson

from errors import ConfigurationError, NumericInstability

logger = logging.getLogger(__name__)

# a single draw carrying more than this share of the harmonic mean is flagged
CPO_DOMINANCE = 0.5


@dataclass(frozen=True)
class DICResult:
    dbar: float
    dhat: float
    pd: float
    dic: float


def _check(lam, observed):
    lam = np.asarray(lam, dtype=float)
    observed = np.asarray(observed)
    if lam.shape[1:] != observed.shape:
        raise ConfigurationError(
            "draws of shape " + str(lam.shape) + " do not match observed " + str(observed.shape))
    if lam.shape[0] < 1:
        raise ConfigurationError("no draws")
    return lam, observed


def log_likelihood(lam, observed):
    """Pointwise Poisson log densities, broadcast over leading draw axes."""
    with np.errstate(divide="ignore"):
        return poisson.logpmf(observed, lam)


def deviance(lam, observed):
    return -2 * np.sum(log_likelihood(lam, observed))


def estimate_pd(deviance_draws, deviance_at_mean):
    return np.mean(deviance_draws) - deviance_at_mean


def estimate_dic(pd, deviance_at_mean):
    return deviance_at_mean + 2 * pd


def dic(lam_draws, observed, disease=None) -> DICResult:
    lam, observed = _check(lam_draws, observed)

    ll = log_likelihood(lam, observed).reshape(lam.shape[0], -1)
    deviance_draws = -2 * np.sum(ll, axis=1)
    dhat = deviance(lam.mean(axis=0), observed)

    pd = estimate_pd(deviance_draws, dhat)
    result = DICResult(dbar=float(np.mean(deviance_draws)), dhat=float(dhat),
                       pd=float(pd), dic=float(estimate_dic(pd, dhat)))

    if not all(np.isfinite([result.dbar, result.dhat, result.dic])):
        bad = np.nonzero(~np.all(np.isfinite(log_likelihood(lam, observed)), axis=0).ravel())[0]
        raise NumericInstability(
            "non-finite deviance" + (" for " + str(disease) if disease else ""),
            disease=disease, areas=bad.tolist())
    return result


def log_cpo(lam_draws, observed, disease=None):
    """Log CPO per observation, as log S - logsumexp(-log p_s)."""
    lam, observed = _check(lam_draws, observed)
    ll = log_likelihood(lam, observed)
    n = lam.shape[0]

    with np.errstate(over="ignore", invalid="ignore"):
        lse = logsumexp(-ll, axis=0)
        out = np.log(n) - lse

    bad = ~np.isfinite(out)
    if np.any(bad):
        raise NumericInstability(
            "harmonic-mean CPO is not finite" + (" for " + str(disease) if disease else ""),
            disease=disease, areas=np.nonzero(bad.ravel())[0].tolist())

    share = np.exp(np.max(-ll, axis=0) - lse)
    if np.any(share > CPO_DOMINANCE):
        logger.warning("CPO%s dominated by single draws at %d observations",
                       " for " + str(disease) if disease else "", int(np.sum(share > CPO_DOMINANCE)))
    return out


def cpo(lam_draws, observed, disease=None):
    return np.exp(log_cpo(lam_draws, observed, disease=disease))


def total_cpo(lam_draws, observed, disease=None):
    """sum_i log CPO_i: a scalar for (draws, areas), one per disease for (draws, areas, diseases)."""
    return np.sum(log_cpo(lam_draws, observed, disease=disease), axis=0)


# Per-run comparison ---------------------------------------------------------

def compare(result, disease=None):
    """
    DIC and total CPO of one run for one disease.

    Numeric failures are reported in ``flag`` with NaN values rather than
    raised, so one unstable disease does not abort a comparison table.
    """
    lam = result.lambda_draws
    observed = result.observed

    if result.multivariate:
        if disease is None:
            raise ConfigurationError("name the disease to compare in a multivariate run")
        k = result.disease_index(disease)
        lam = lam[..., k]
        observed = observed[:, k]
    elif disease is None:
        disease = result.diseases[0]
    elif disease not in result.diseases:
        raise ConfigurationError("disease " + repr(disease) + " not in this run")

    row = {"disease": disease, "model": result.model, "weights": result.weights,
           "dic": np.nan, "pd": np.nan, "total_cpo": np.nan, "flag": ""}
    try:
        d = dic(lam, observed, disease=disease)
        row.update(dic=d.dic, pd=d.pd)
        row["total_cpo"] = float(total_cpo(lam, observed, disease=disease))
    except NumericInstability as e:
        logger.warning("%s [%s]: %s", result.model, result.weights, e)
        row["flag"] = str(e)
    return row
