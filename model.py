"""
# Models ---------------------------------------------------------------------

Count data, the four hierarchical model specifications, starting values and
the declarative (BUGS) rendition of each model for the JAGS engine.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import car
from errors import ConfigurationError
from settings import C_LOWER, SIGMA_UPPER, SUM_TO_ZERO_PRECISION


# Count data ---------------------------------------------------------------

@dataclass(frozen=True)
class Disease:
    id: int
    name: str


@dataclass(frozen=True, eq=False)
class CountData:
    """Observed and expected counts, shape (areas, diseases)."""

    observed: np.ndarray
    expected: np.ndarray
    diseases: Tuple[Disease, ...]

    def __post_init__(self):
        observed = np.asarray(self.observed)
        expected = np.asarray(self.expected, dtype=float)
        if observed.ndim == 1:
            observed = observed[:, None]
        if expected.ndim == 1:
            expected = expected[:, None]

        if observed.shape != expected.shape:
            raise ConfigurationError(
                "observed " + str(observed.shape) + " and expected " + str(expected.shape) + " differ")
        if observed.shape[1] != len(self.diseases):
            raise ConfigurationError(
                str(observed.shape[1]) + " disease columns for " + str(len(self.diseases)) + " diseases")
        if not np.all(np.isfinite(observed)) or np.any(observed < 0) or np.any(observed != np.round(observed)):
            raise ConfigurationError("observed counts must be non-negative integers")
        if not np.all(np.isfinite(expected)) or np.any(expected <= 0):
            raise ConfigurationError("expected counts must be strictly positive")
        names = [d.name for d in self.diseases]
        if len(set(names)) != len(names):
            raise ConfigurationError("disease names must be unique")

        observed = observed.astype(np.int64)
        observed.setflags(write=False)
        expected.setflags(write=False)
        object.__setattr__(self, "observed", observed)
        object.__setattr__(self, "expected", expected)
        object.__setattr__(self, "diseases", tuple(self.diseases))

    @property
    def n_areas(self) -> int:
        return self.observed.shape[0]

    @property
    def n_diseases(self) -> int:
        return self.observed.shape[1]

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.diseases)

    def position(self, name) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise ConfigurationError("unknown disease " + repr(name)) from None

    def select(self, names) -> "CountData":
        cols = [self.position(n) for n in names]
        if not cols:
            raise ConfigurationError("no diseases selected")
        return CountData(
            observed=self.observed[:, cols],
            expected=self.expected[:, cols],
            diseases=tuple(self.diseases[k] for k in cols),
        )

    def drop(self, name) -> "CountData":
        self.position(name)
        return self.select([n for n in self.names if n != name])

    def column(self, name) -> "CountData":
        return self.select([name])

    def check_areas(self, adjacency):
        if adjacency.n_areas != self.n_areas:
            raise ConfigurationError(
                "data has " + str(self.n_areas) + " areas but the adjacency has " + str(adjacency.n_areas))

    @classmethod
    def from_arrays(cls, observed, expected, names=None) -> "CountData":
        observed = np.asarray(observed)
        n_dis = 1 if observed.ndim == 1 else observed.shape[1]
        names = names or ["disease" + str(k + 1) for k in range(n_dis)]
        return cls(observed, expected, tuple(Disease(k + 1, str(n)) for k, n in enumerate(names)))

    @classmethod
    def from_frame(cls, df, area="area", disease="disease", observed="observed",
                   expected="expected", areas=None) -> "CountData":
        """
        Pivot a long frame (one row per area and disease, repeated rows summed).

        Areas follow ``areas`` when given (e.g. the adjacency names), otherwise
        their sorted category order.
        """
        missing = [c for c in (area, disease, observed, expected) if c not in df.columns]
        if missing:
            raise ConfigurationError("count table lacks columns: " + ", ".join(missing))

        df = df.copy()
        df[area] = df[area].astype(str)
        df[disease] = pd.Categorical(df[disease])

        o = df.pivot_table(index=area, columns=disease, values=observed, aggfunc="sum", observed=False)
        e = df.pivot_table(index=area, columns=disease, values=expected, aggfunc="sum", observed=False)

        if areas is not None:
            areas = [str(a) for a in areas]
            unknown = set(o.index) - set(areas)
            if unknown or len(areas) != len(o.index):
                raise ConfigurationError("count table areas do not match the map areas")
            o = o.reindex(areas)
            e = e.reindex(areas)

        names = [str(c) for c in o.columns]
        return cls.from_arrays(o.values, e[o.columns].values, names)

    @classmethod
    def from_tensor(cls, observed, expected, sex, diseases=None, names=None) -> "CountData":
        """Slice (year, sex, area, disease) arrays at ``sex`` and sum over years."""
        observed = np.asarray(observed)
        expected = np.asarray(expected, dtype=float)
        if observed.ndim != 4 or observed.shape != expected.shape:
            raise ConfigurationError("count tensors must both have shape (year, sex, area, disease)")

        o = observed[:, sex].sum(axis=0)
        e = expected[:, sex].sum(axis=0)

        if diseases is not None:
            o = o[:, list(diseases)]
            e = e[:, list(diseases)]
            if names is None:
                names = ["disease" + str(k + 1) for k in diseases]
        return cls.from_arrays(o, e, names)


# Model specifications -----------------------------------------------------

@dataclass(frozen=True)
class ModelSpec:
    key: str
    name: str
    family: str
    multivariate: bool

    @property
    def latent(self) -> Tuple[str, ...]:
        return ("phi", "theta") if self.family == "bym" else ("eta",)

    @property
    def spatial(self) -> str:
        return self.latent[0]

    @property
    def sigmas(self) -> Tuple[str, ...]:
        return tuple("sigma_" + v for v in self.latent)

    @property
    def hyper(self) -> Tuple[str, ...]:
        return self.sigmas + (("rho",) if self.family == "leroux" else ())

    def parameters(self) -> Tuple[str, ...]:
        """Names of the unknowns, in sweep order."""
        names = ("mu",) + self.latent + self.hyper
        if self.multivariate:
            names += ("c", "sigma_c")
        return names


MODEL_TYPES = {
    "bym": ModelSpec("bym", "Univariate BYM", "bym", False),
    "leroux": ModelSpec("leroux", "Univariate Leroux", "leroux", False),
    "mbym": ModelSpec("mbym", "Multivariate adaptive BYM", "bym", True),
    "mleroux": ModelSpec("mleroux", "Multivariate adaptive Leroux", "leroux", True),
}


def get_model(model) -> ModelSpec:
    if isinstance(model, ModelSpec):
        return model
    try:
        return MODEL_TYPES[model]
    except KeyError:
        raise ConfigurationError(
            "unknown model " + repr(model) + ", expected one of " + ", ".join(MODEL_TYPES)) from None


def check_scale(spec, adjacency, scale=None, weights=None):
    """
    Validate the fixed weighting input of a univariate model.

    BYM takes per-edge ``weights`` (aligned with adj), Leroux takes the per-area
    ``scale`` c. Multivariate models estimate c and accept neither.
    """
    if spec.multivariate:
        if scale is not None or weights is not None:
            raise ConfigurationError(spec.name + " estimates its own weights")
        return None

    if spec.family == "bym":
        if scale is not None:
            raise ConfigurationError("BYM takes per-edge weights; use car.edge_weights(scale, adjacency)")
        if weights is None:
            return car.uniform_weights(adjacency)
        weights = np.asarray(weights, dtype=float)
        if weights.shape != adjacency.adj.shape or np.any(~np.isfinite(weights)) or np.any(weights <= 0):
            raise ConfigurationError("edge weights must be positive, one per entry of adj")
        W = adjacency.matrix(weights)
        if not np.allclose(W, W.T):
            raise ConfigurationError("edge weights must be symmetric")
        return weights

    if weights is not None:
        raise ConfigurationError("Leroux takes a per-area scale, not edge weights")
    if scale is None:
        return np.ones(adjacency.n_areas)
    scale = np.asarray(scale, dtype=float)
    if scale.shape != (adjacency.n_areas,) or np.any(~np.isfinite(scale)) or np.any(scale <= 0):
        raise ConfigurationError("scale must be positive, one value per area")
    return scale


# Starting values ----------------------------------------------------------

def initial_values(spec, data, rng, inits=None) -> Dict[str, np.ndarray]:
    N, J = data.n_areas, data.n_diseases

    rate = (data.observed.sum(axis=0) + 0.5) / data.expected.sum(axis=0)
    state = {"mu": np.log(rate) + rng.normal(0, 0.1, J)}

    for v in spec.latent:
        x = rng.normal(0, 0.1, (N, J))
        state[v] = x - x.mean(axis=0)
    for v in spec.sigmas:
        state[v] = rng.uniform(0.1, 1.0, J)
    if spec.family == "leroux":
        state["rho"] = rng.uniform(0.2, 0.8, J)
    if spec.multivariate:
        state["c"] = np.ones(N)
        state["sigma_c"] = np.array(rng.uniform(0.5, 1.5))

    for name, value in (inits or {}).items():
        if name not in state:
            raise ConfigurationError("initial value for unknown parameter " + repr(name))
        value = np.array(value, dtype=float)
        if value.shape != state[name].shape:
            value = np.broadcast_to(value, state[name].shape).copy()
        state[name] = value

    return state


# Declarative models -------------------------------------------------------

# JAGS code for the four models. The CAR field is written as a multivariate
# normal with precision Q + kappa 11', i.e. the CAR prior times the sum-to-zero
# pseudo-observation. JAGS has no flat prior; mu gets a vague normal.

_LIKELIHOOD = {
    "bym": '''
            O[i,j] ~ dpois(lambda[i,j])
            lp[i,j] <- mu[j] + sigma.phi[j]*phi[i,j] + sigma.theta[j]*theta[i,j]
            lambda[i,j] <- E[i,j] * exp(lp[i,j])
            smr[i,j] <- exp(lp[i,j])
            theta[i,j] ~ dnorm(0, 1)''',
    "leroux": '''
            O[i,j] ~ dpois(lambda[i,j])
            lp[i,j] <- mu[j] + sigma.eta[j]*eta[i,j]
            lambda[i,j] <- E[i,j] * exp(lp[i,j])
            smr[i,j] <- exp(lp[i,j])''',
}

_FIELD = {
    "bym": '''
        phi[1:N,j] ~ dmnorm(zero[], Q[,])
        mu[j] ~ dnorm(0, 1.0E-6)
        sigma.phi[j] ~ dunif(0, SIGMA)
        sigma.theta[j] ~ dunif(0, SIGMA)''',
    "leroux": '''
        for (i in 1:N) {
            for (k in 1:N) {
                Q[i,k,j] <- rho[j]*L[i,k] + (1 - rho[j])*equals(i,k) + kappa
            }
        }
        eta[1:N,j] ~ dmnorm(zero[], Q[,,j])
        mu[j] ~ dnorm(0, 1.0E-6)
        sigma.eta[j] ~ dunif(0, SIGMA)
        rho[j] ~ dunif(0, 1)''',
}

_WEIGHTS = {
    # BYM: data Lw = D_w - W from the fixed edge weights
    ("bym", False): '''
    for (i in 1:N) {
        for (k in 1:N) { Q[i,k] <- Lw[i,k] + kappa }
    }''',
    # Leroux: W from the fixed area scale c
    ("leroux", False): '''
    for (i in 1:N) {
        for (k in 1:N) { W[i,k] <- A[i,k] * sqrt(c[i]) * sqrt(c[k]) }
        wsum[i] <- sum(W[i,])
    }
    for (i in 1:N) {
        for (k in 1:N) { L[i,k] <- equals(i,k)*wsum[i] - W[i,k] }
    }''',
}

_ADAPTIVE = '''
    sigma.c ~ dunif(0, SIGMA)
    tau.c <- pow(sigma.c, -2)
    for (i in 1:N) { c[i] ~ dgamma(tau.c, tau.c) T(CLOW,) }
    for (i in 1:N) {
        for (k in 1:N) { W[i,k] <- A[i,k] * sqrt(c[i]) * sqrt(c[k]) }
        wsum[i] <- sum(W[i,])
    }
    for (i in 1:N) {
        for (k in 1:N) { L[i,k] <- equals(i,k)*wsum[i] - W[i,k] }
    }'''

_ADAPTIVE_BYM = '''
    for (i in 1:N) {
        for (k in 1:N) { Q[i,k] <- L[i,k] + kappa }
    }'''


def jags_code(spec) -> str:
    spec = get_model(spec)

    if spec.multivariate:
        weights = _ADAPTIVE + (_ADAPTIVE_BYM if spec.family == "bym" else "")
    else:
        weights = _WEIGHTS[(spec.family, False)]

    modelcode = '''
    model
    {
        #### Likelihood

        for (j in 1:J) {
            for (i in 1:N) {''' + _LIKELIHOOD[spec.family] + '''
            }
        }

        #### Priors

        for (j in 1:J) {''' + _FIELD[spec.family] + '''
        }

        #### Weights
        ''' + weights + '''
    }
    '''
    return (modelcode
            .replace("SIGMA", repr(SIGMA_UPPER))
            .replace("CLOW", repr(C_LOWER)))


def jags_varnames(spec):
    spec = get_model(spec)
    varnames = ["mu"] + [v.replace("_", ".") for v in spec.latent + spec.hyper] + ["lambda", "smr"]
    if spec.multivariate:
        varnames += ["c", "sigma.c"]
    return varnames


def jags_data(spec, data, adjacency, scale=None, weights=None) -> Dict[str, object]:
    spec = get_model(spec)
    data.check_areas(adjacency)
    fixed = check_scale(spec, adjacency, scale=scale, weights=weights)

    N = data.n_areas
    bvars = dict(
        N=N, J=data.n_diseases,
        O=np.asarray(data.observed, dtype=float), E=np.asarray(data.expected),
        zero=np.zeros(N), kappa=SUM_TO_ZERO_PRECISION,
    )

    if spec.multivariate:
        bvars["A"] = adjacency.matrix()
    elif spec.family == "bym":
        bvars["Lw"] = car.car_precision(adjacency, fixed)
    else:
        bvars["A"] = adjacency.matrix()
        bvars["c"] = fixed

    return bvars


def declarative_model(spec, data, adjacency, scale=None, weights=None):
    """(modelcode, varnames, bvars) for the JAGS engine."""
    return (jags_code(spec), jags_varnames(spec),
            jags_data(spec, data, adjacency, scale=scale, weights=weights))
