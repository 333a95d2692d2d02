"""
# CAR priors -----------------------------------------------------------------

The two latent-field priors shared by every model:

    fixed CAR       x_i | x_-i ~ N( sum_j w_ij x_j / w_i+ , 1 / (tau w_i+) )
    adaptive Leroux x_i | x_-i ~ N( rho sum_j w_ij x_j / (rho w_i+ + 1 - rho),
                                    1 / (tau (rho w_i+ + 1 - rho)) )
                    with w_ij = sqrt(c_i) sqrt(c_j)

Both carry a soft sum-to-zero constraint: a pseudo-observation
0 ~ N(sum_i x_i, 1 / SUM_TO_ZERO_PRECISION).
"""
import numpy as np

from settings import SUM_TO_ZERO_PRECISION


# Weighting strategies -----------------------------------------------------

def uniform_weights(adjacency):
    return np.ones(adjacency.adj.shape[0])


def edge_weights(scale, adjacency):
    """Per-edge weights sqrt(c_i) sqrt(c_j), aligned with adjacency.adj."""
    s = np.sqrt(np.asarray(scale, dtype=float))
    return s[adjacency.owner()] * s[adjacency.adj]


# Conditionals -------------------------------------------------------------

def car_conditional(x, i, adjacency, weights=None, tau=1.0):
    nb = adjacency.neighbours(i)
    if weights is None:
        w_sum = float(nb.shape[0])
        mean = float(np.sum(x[nb])) / w_sum
    else:
        w = weights[adjacency.index[i]:adjacency.index[i + 1]]
        w_sum = float(np.sum(w))
        mean = float(np.dot(w, x[nb])) / w_sum
    return mean, tau * w_sum


def leroux_conditional(x, i, adjacency, rho, scale=None, tau=1.0):
    nb = adjacency.neighbours(i)
    if scale is None:
        w = np.ones(nb.shape[0])
    else:
        w = np.sqrt(scale[i]) * np.sqrt(scale[nb])
    w_sum = float(np.sum(w))
    denom = rho * w_sum + 1.0 - rho
    mean = rho * float(np.dot(w, x[nb])) / denom
    return mean, tau * denom


def penalised_conditional(mean, precision, rest_sum, penalty=SUM_TO_ZERO_PRECISION):
    """Fold the sum-to-zero pseudo-observation into a Normal conditional."""
    total = precision + penalty
    return (precision * mean - penalty * rest_sum) / total, total


# Joint forms --------------------------------------------------------------

def car_precision(adjacency, weights=None, tau=1.0):
    W = adjacency.matrix(weights)
    return tau * (np.diag(W.sum(axis=1)) - W)


def leroux_precision(adjacency, rho, scale=None, tau=1.0):
    weights = None if scale is None else edge_weights(scale, adjacency)
    L = car_precision(adjacency, weights)
    return tau * (rho * L + (1.0 - rho) * np.eye(adjacency.n_areas))


def logdet_plus(P, rtol=1e-10):
    """Log pseudo-determinant: sum of log eigenvalues above rtol * max."""
    ev = np.linalg.eigvalsh(P)
    top = ev.max()
    if not top > 0:
        return -np.inf
    return float(np.sum(np.log(ev[ev > rtol * top])))


def log_density(x, Q, penalty=SUM_TO_ZERO_PRECISION, logdet=None):
    """
    Log density of x under precision Q and the sum-to-zero pseudo-observation.

    The normalising term is the pseudo-determinant of Q + penalty 11', so an
    intrinsic Q contributes its non-null spectrum. Pass ``logdet`` to reuse a
    value computed for several fields sharing Q.
    """
    if logdet is None:
        n = Q.shape[0]
        logdet = logdet_plus(Q + penalty * np.ones((n, n)))
    s = float(np.sum(x))
    return 0.5 * logdet - 0.5 * float(x @ Q @ x) - 0.5 * penalty * s * s
