"""
# Adjacency ------------------------------------------------------------------

Neighbour structure of the map in the flattened (adj, num, index) form used by
CAR priors: area i's neighbours are adj[index[i]:index[i+1]].
"""
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from errors import ConfigurationError, NonIdentifiableModel


@dataclass(frozen=True, eq=False)
class Adjacency:
    adj: np.ndarray
    num: np.ndarray
    index: np.ndarray
    names: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        for name in ("adj", "num", "index"):
            arr = np.array(getattr(self, name), dtype=np.int64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        if self.names is not None:
            object.__setattr__(self, "names", tuple(str(n) for n in self.names))
        self._check()

    @property
    def n_areas(self) -> int:
        return self.num.shape[0]

    @property
    def n_edges(self) -> int:
        return self.adj.shape[0] // 2

    def neighbours(self, i) -> np.ndarray:
        return self.adj[self.index[i]:self.index[i + 1]]

    def owner(self) -> np.ndarray:
        """Area owning each slot of adj."""
        return np.repeat(np.arange(self.n_areas), self.num)

    def matrix(self, weights=None) -> np.ndarray:
        W = np.zeros((self.n_areas, self.n_areas))
        W[self.owner(), self.adj] = 1.0 if weights is None else weights
        return W

    def edges(self) -> np.ndarray:
        """Unordered neighbour pairs (i < j), one row per edge."""
        owner = self.owner()
        keep = owner < self.adj
        return np.stack([owner[keep], self.adj[keep]], axis=1)

    def n_components(self) -> int:
        n, _ = connected_components(csr_matrix(self.matrix()), directed=False)
        return int(n)

    def _check(self):
        n = self.n_areas

        if self.index.shape != (n + 1,) or np.any(self.index != np.concatenate([[0], np.cumsum(self.num)])):
            raise ConfigurationError("index must be the cumulative sum of num with a leading zero")
        if int(np.sum(self.num)) != self.adj.shape[0]:
            raise ConfigurationError("sum(num) does not match the length of adj")
        if self.names is not None and len(self.names) != n:
            raise ConfigurationError("got " + str(len(self.names)) + " names for " + str(n) + " areas")
        if self.adj.size and (self.adj.min() < 0 or self.adj.max() >= n):
            raise ConfigurationError("adj refers to areas outside 0.." + str(n - 1))

        iso = np.where(self.num == 0)[0]
        if iso.size:
            labels = [self.names[i] if self.names else str(i + 1) for i in iso]
            raise NonIdentifiableModel(
                "areas without neighbours: " + ", ".join(labels), areas=iso.tolist())

        owner = self.owner()
        if np.any(owner == self.adj):
            raise ConfigurationError("an area cannot neighbour itself")

        pairs = set(zip(owner.tolist(), self.adj.tolist()))
        if len(pairs) != self.adj.shape[0]:
            raise ConfigurationError("duplicate neighbours in adj")
        if any((j, i) not in pairs for i, j in pairs):
            raise ConfigurationError("neighbour relation is not symmetric")


# Builders -----------------------------------------------------------------

def from_matrix(W, names=None) -> Adjacency:
    W = np.asarray(W)
    if W.ndim != 2 or W.shape[0] != W.shape[1]:
        raise ConfigurationError("adjacency matrix must be square")
    if not np.array_equal(W != 0, (W != 0).T):
        raise ConfigurationError("adjacency matrix is not symmetric")

    nb = [np.nonzero(W[i])[0] for i in range(W.shape[0])]
    num = np.array([len(v) for v in nb], dtype=np.int64)
    adj = np.concatenate(nb) if nb else np.zeros(0, dtype=np.int64)
    index = np.concatenate([[0], np.cumsum(num)])
    return Adjacency(adj=adj, num=num, index=index, names=names)


def from_neighbours(neighbours, names=None) -> Adjacency:
    """
    Build from {area: [neighbours]} (or a list of lists) of 0-based indices.

    A pair listed from one side only is linked both ways.
    """
    if isinstance(neighbours, dict):
        n = len(names) if names is not None else (max(
            [k for k in neighbours] + [j for v in neighbours.values() for j in v] + [-1]) + 1)
        items = neighbours.items()
    else:
        n = len(neighbours)
        items = enumerate(neighbours)

    W = np.zeros((n, n))

    for i, v in items:
        for j in v:
            if not (0 <= i < n and 0 <= j < n):
                raise ConfigurationError("neighbour pair (" + str(i) + ", " + str(j) + ") out of range")
            if i == j:
                raise ConfigurationError("area " + str(i) + " lists itself as a neighbour")
            W[i, j] = 1
            W[j, i] = 1

    return from_matrix(W, names=names)


def from_polygons(polygons, touches=None, names=None) -> Adjacency:
    """
    Two polygons are neighbours iff they share a boundary.

    The boundary test is delegated to ``touches(a, b)``; by default the
    geometries' own ``touches`` method is used (shapely-like objects).
    """
    if touches is None:
        touches = lambda a, b: a.touches(b)

    polygons = list(polygons)
    n = len(polygons)
    W = np.zeros((n, n))

    for i in range(n):
        for j in range(i + 1, n):
            if touches(polygons[i], polygons[j]):
                W[i, j] = 1
                W[j, i] = 1

    return from_matrix(W, names=names)


def read_neighbour_file(path) -> Adjacency:
    """
    Read a neighbour list: one line per area, ``CODE N1 N2 ...``.

    Areas are ordered by code; a neighbour code that never heads a line is an
    error.
    """
    graph = {}
    with open(path, "r") as f:
        for line in f:
            chain = line.split()
            if not chain:
                continue
            head, tail = chain[0], chain[1:]
            if head in graph:
                raise ConfigurationError("area " + head + " listed twice in " + str(path))
            graph[head] = tail

    codes = sorted(graph)
    code = {c: i for i, c in enumerate(codes)}

    neighbours = {}
    for a, tail in graph.items():
        for b in tail:
            if b not in code:
                raise ConfigurationError("unknown neighbour " + b + " of area " + a)
        neighbours[code[a]] = [code[b] for b in tail]

    return from_neighbours(neighbours, names=codes)


def ring(n) -> Adjacency:
    """Area i neighbours i-1 and i+1 (mod n)."""
    if n < 3:
        raise ConfigurationError("a ring needs at least 3 areas")
    return from_neighbours([[(i - 1) % n, (i + 1) % n] for i in range(n)])
