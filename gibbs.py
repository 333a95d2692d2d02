"""
# Gibbs sampler --------------------------------------------------------------

One sweep updates every unknown of a model exactly once, in a fixed order:

    for each disease j:
        mu[j]                    exact (log-gamma full conditional)
        spatial field [., j]     area by area, slice sampling
        theta[., j]              (BYM) area by area, slice sampling
        sigma_*[j]               slice sampling on (0, SIGMA_UPPER)
        rho[j]                   (Leroux) slice sampling on (0, 1)
    c[.]                         (multivariate) area by area, slice sampling
    sigma_c                      (multivariate) slice sampling on (0, SIGMA_UPPER)

The Normal part of every latent conditional comes from the CAR prior engine
with the sum-to-zero pseudo-observation folded in; the Poisson likelihood is
handled by the slice sampler.
"""
import math

import numpy as np
from scipy.special import gammaincc, gammaln

import car
from errors import NonIdentifiableModel
from model import check_scale, get_model, initial_values
from settings import C_LOWER, SIGMA_UPPER, SUM_TO_ZERO_PRECISION


# Slice sampling -------------------------------------------------------------

def slice_sample(logp, x0, rng, width=1.0, lower=-np.inf, upper=np.inf, max_steps=50, max_shrink=200):
    """
    Univariate slice sampler with stepping out and shrinkage (Neal, 2003).

    ``logp`` is the log full conditional up to a constant; it is only ever
    evaluated inside [lower, upper].
    """
    y = logp(x0) - rng.exponential()

    left = x0 - width * rng.uniform()
    right = left + width
    j = int(max_steps * rng.uniform())
    k = max_steps - 1 - j

    while j > 0 and left > lower and logp(left) > y:
        left -= width
        j -= 1
    while k > 0 and right < upper and logp(right) > y:
        right += width
        k -= 1

    left = max(left, lower)
    right = min(right, upper)

    for _ in range(max_shrink):
        x1 = rng.uniform(left, right)
        if logp(x1) > y:
            return x1
        if x1 < x0:
            left = x1
        else:
            right = x1

    # interval collapsed onto x0
    return x0


def _poisson_normal(o, rest, s, m, p):
    """log[ Pois(o; exp(rest + s x)) N(x; m, 1/p) ] as a function of x; rest includes log E."""

    def logp(x):
        z = rest + s * x
        try:
            return o * z - math.exp(z) - 0.5 * p * (x - m) ** 2
        except OverflowError:
            return -math.inf

    return logp


# Sampler --------------------------------------------------------------------

class GibbsSampler:

    def __init__(self, spec, data, adjacency, scale=None, weights=None, penalty=SUM_TO_ZERO_PRECISION):
        self.spec = get_model(spec)
        data.check_areas(adjacency)

        self.data = data
        self.adjacency = adjacency
        self.penalty = penalty
        self.fixed = check_scale(self.spec, adjacency, scale=scale, weights=weights)

        empty = [d.name for d, total in zip(data.diseases, data.observed.sum(axis=0)) if total == 0]
        if empty:
            raise NonIdentifiableModel(
                "no observed cases for " + ", ".join(empty) + "; the flat prior on mu is improper")

        self.N = data.n_areas
        self.J = data.n_diseases
        self.O = data.observed.astype(float)
        self.E = np.asarray(data.expected, dtype=float)
        self.logE = np.log(self.E)
        self.O_total = self.O.sum(axis=0)

        self.edges = adjacency.edges()
        self.n_components = adjacency.n_components()
        self._refresh(self.fixed if not self.spec.multivariate else np.ones(self.N))

    # Weights ----------------------------------------------------------------

    def _laplacian(self, w):
        """D_w - W from one weight per unordered edge."""
        a, b = self.edges[:, 0], self.edges[:, 1]
        L = np.zeros((self.N, self.N))
        L[a, b] = -w
        L[b, a] = -w
        np.add.at(L, (a, a), w)
        np.add.at(L, (b, b), w)
        return L

    def _refresh(self, fixed):
        """Cache the per-slot weights, per-edge weights and spectrum of D_w - W."""
        if self.spec.family == "bym" and not self.spec.multivariate:
            self.slot_weights = fixed
            W = self.adjacency.matrix(fixed)
            self.edge_w = W[self.edges[:, 0], self.edges[:, 1]]
            self.scale = None
        else:
            self.scale = fixed
            self.slot_weights = car.edge_weights(fixed, self.adjacency)
            self.edge_w = np.sqrt(fixed[self.edges[:, 0]] * fixed[self.edges[:, 1]])
        self.spectrum = np.clip(np.linalg.eigvalsh(self._laplacian(self.edge_w)), 0.0, None)

    # State ------------------------------------------------------------------

    def initial_state(self, rng, inits=None):
        state = initial_values(self.spec, self.data, rng, inits=inits)
        if self.spec.multivariate:
            self._refresh(state["c"])
        return state

    def linear_predictor(self, state):
        """mu + random effects, shape (N, J), without the log E offset."""
        lp = np.broadcast_to(state["mu"], (self.N, self.J)).copy()
        for v in self.spec.latent:
            lp += state["sigma_" + v] * state[v]
        return lp

    def monitored(self, state):
        lp = self.linear_predictor(state)
        out = {name: np.array(state[name], dtype=float) for name in self.spec.parameters()}
        with np.errstate(over="ignore"):
            out["smr"] = np.exp(lp)
            out["lambda"] = self.E * out["smr"]
        out["spatial_sum"] = state[self.spec.spatial].sum(axis=0)
        return out

    # Updates ----------------------------------------------------------------

    def _next_mu(self, state, lp, j, rng):
        mu = state["mu"][j]
        rest = lp[:, j] - mu
        with np.errstate(over="ignore"):
            K = float(np.sum(self.E[:, j] * np.exp(rest)))
        # flat prior: exp(mu) | rest ~ Gamma(sum O, sum E exp(rest))
        new = math.log(rng.gamma(self.O_total[j], 1.0 / K)) if 0 < K < np.inf else math.nan
        state["mu"][j] = new
        lp[:, j] = rest + new

    def _next_field(self, state, lp, j, v, rng):
        x = state[v][:, j]
        s = state["sigma_" + v][j]
        spatial = v == self.spec.spatial
        total = float(np.sum(x))

        for i in range(self.N):
            if not spatial:
                m, p = 0.0, 1.0
            else:
                if self.spec.family == "bym":
                    m, p = car.car_conditional(x, i, self.adjacency, self.slot_weights)
                else:
                    m, p = car.leroux_conditional(x, i, self.adjacency, state["rho"][j], self.scale)
                m, p = car.penalised_conditional(m, p, total - x[i], self.penalty)

            rest = lp[i, j] - s * x[i]
            logp = _poisson_normal(self.O[i, j], self.logE[i, j] + rest, s, m, p)
            new = slice_sample(logp, x[i], rng, width=2.0 / math.sqrt(p))

            total += new - x[i]
            x[i] = new
            lp[i, j] = rest + s * new

    def _next_sigma(self, state, lp, j, v, rng):
        x = state[v][:, j]
        s0 = state["sigma_" + v][j]
        rest = lp[:, j] - s0 * x + self.logE[:, j]
        o = self.O[:, j]

        def logp(s):
            if not 0.0 <= s <= SIGMA_UPPER:
                return -np.inf
            z = rest + s * x
            with np.errstate(over="ignore"):
                return float(np.sum(o * z - np.exp(z)))

        new = slice_sample(logp, s0, rng, width=0.5, lower=0.0, upper=SIGMA_UPPER)
        state["sigma_" + v][j] = new
        lp[:, j] += (new - s0) * x

    def _next_rho(self, state, j, rng):
        x = state["eta"][:, j]
        a, b = self.edges[:, 0], self.edges[:, 1]
        quad = float(np.sum(self.edge_w * (x[a] - x[b]) ** 2))
        xx = float(x @ x)
        # the sum-to-zero direction 1/sqrt(N) is a null vector of D_w - W
        ev = self.spectrum[1:]
        top = self.penalty * self.N

        def logp(r):
            if not 0.0 <= r <= 1.0:
                return -np.inf
            logdet = math.log(1.0 - r + top) + float(np.sum(np.log(r * ev + 1.0 - r)))
            return 0.5 * logdet - 0.5 * (r * quad + (1.0 - r) * xx)

        state["rho"][j] = slice_sample(logp, state["rho"][j], rng, width=0.5, lower=0.0, upper=1.0)

    def _field_log_density(self, c, X, D, rho):
        """Sum over diseases of log p(field_j | c) up to terms free of c."""
        w = np.sqrt(c[self.edges[:, 0]] * c[self.edges[:, 1]])
        ev = np.clip(np.linalg.eigvalsh(self._laplacian(w)), 0.0, None)
        quad = w @ D

        if self.spec.family == "bym":
            logdet = self.J * float(np.sum(np.log(ev[self.n_components:])))
            return 0.5 * logdet - 0.5 * float(np.sum(quad))

        ev = ev[1:]
        logdet = sum(float(np.sum(np.log(r * ev + 1.0 - r))) for r in rho)
        return 0.5 * logdet - 0.5 * float(np.sum(rho * quad))

    def _next_c(self, state, rng):
        c = state["c"]
        tau = state["sigma_c"] ** -2
        X = state[self.spec.spatial]
        D = (X[self.edges[:, 0]] - X[self.edges[:, 1]]) ** 2
        rho = state.get("rho")

        for i in range(self.N):

            def logp(ci):
                if ci < C_LOWER:
                    return -np.inf
                trial = c.copy()
                trial[i] = ci
                return (tau - 1.0) * math.log(ci) - tau * ci + self._field_log_density(trial, X, D, rho)

            c[i] = slice_sample(logp, c[i], rng, width=1.0, lower=C_LOWER)

        self._refresh(c)

    def _next_sigma_c(self, state, rng):
        c = state["c"]
        log_c = float(np.sum(np.log(c)))
        sum_c = float(np.sum(c))

        def logp(s):
            if not 0.0 < s <= SIGMA_UPPER:
                return -np.inf
            tau = s ** -2
            tail = gammaincc(tau, tau * C_LOWER)
            if not tail > 0:
                return -np.inf
            return (self.N * (tau * math.log(tau) - gammaln(tau) - math.log(tail))
                    + (tau - 1.0) * log_c - tau * sum_c)

        state["sigma_c"] = np.array(
            slice_sample(logp, float(state["sigma_c"]), rng, width=0.5, lower=0.0, upper=SIGMA_UPPER))

    # Sweep ------------------------------------------------------------------

    def sweep(self, state, rng):
        lp = self.linear_predictor(state)

        for j in range(self.J):
            self._next_mu(state, lp, j, rng)
            for v in self.spec.latent:
                self._next_field(state, lp, j, v, rng)
            for v in self.spec.latent:
                self._next_sigma(state, lp, j, v, rng)
            if self.spec.family == "leroux":
                self._next_rho(state, j, rng)

        if self.spec.multivariate:
            self._next_c(state, rng)
            self._next_sigma_c(state, rng)

        return state

    def check(self, values):
        """Name of the first non-finite monitored quantity, or None."""
        for name, value in values.items():
            if not np.all(np.isfinite(value)):
                return name
        return None
