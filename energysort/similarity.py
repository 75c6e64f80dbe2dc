"""Interface energy: pairwise minicluster similarity for aggregation.

The energy between two clusters sums an exponentially decaying function of
every pairwise distance between their members. Within a cluster the zero
distance of each point to itself is left out, so a singleton has no defined
energy. Normalized by the number of contributing pairs (``Na * Nb`` off the
diagonal, ``Na * (Na - 1) / 2`` on it) an entry estimates local density.

The stored matrix is *not* normalized because the raw form can be updated
when clusters are aggregated without recomputing distances:

    E(AB, AB) = E(A, A) + E(B, B) + E(A, B)
    E(AB, C)  = E(A, C) + E(B, C)

Reference: Fee MS et al (1996). J. Neurosci. Methods 69: 175-88.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import numpy as np

from energysort.errors import MissingInputError, NumericDegeneracyError

logger = logging.getLogger("energysort")

# Rows of the first cluster handled per distance block
_BLOCK_ROWS = 2048


def energy_scale(W: np.ndarray) -> float:
    """Heuristic distance scale sqrt(trace(W)) / 10; results are not very sensitive to it."""
    trace = float(np.trace(np.atleast_2d(W)))
    if not trace > 0:
        raise NumericDegeneracyError(
            f"Within-cluster covariance has trace {trace}; cannot derive an energy distance scale"
        )
    return np.sqrt(trace) / 10.0


def pair_energy(X: np.ndarray, Y: np.ndarray, scale: float, same: bool = False) -> float:
    """Sum of exp(-|x - y| / scale) over all x in X, y in Y.

    With ``same=True`` (X is Y) self-pairs are excluded and each unordered
    pair is counted once.
    """
    yy = np.einsum('ij,ij->i', Y, Y)
    total = 0.0
    for start in range(0, len(X), _BLOCK_ROWS):
        Xb = X[start:start + _BLOCK_ROWS]
        xx = np.einsum('ij,ij->i', Xb, Xb)
        # round-off can make this slightly negative, hence abs
        dists = np.abs(xx[:, None] + yy[None, :] - 2.0 * (Xb @ Y.T))
        if same:
            dists[np.arange(len(Xb)), start + np.arange(len(Xb))] = 0.0
        total += float(np.sum(np.exp(-np.sqrt(dists) / scale)))
    if same:
        total = (total - len(X)) / 2.0
    return total


class InterfaceEnergy:
    """Upper-triangular interface energy matrix over miniclusters 1..K.

    Also carries per-cluster sizes, centroids and the event labels, which
    are kept consistent by :meth:`merge` and :meth:`relabel`.
    """

    def __init__(
        self,
        energy: np.ndarray,
        sizes: np.ndarray,
        labels: np.ndarray,
        centroids: np.ndarray,
        scale: float,
    ):
        upper = np.triu(np.array(energy, dtype=float))
        self._energy = upper + np.triu(upper, 1).T           # symmetric; rows past K are spare
        self.sizes = np.array(sizes, dtype=np.int64)
        self.labels = np.array(labels, dtype=np.int64)
        self.centroids = np.array(centroids, dtype=float)
        self.scale = scale

    @classmethod
    def from_clusters(
        cls,
        features: np.ndarray,
        labels: np.ndarray,
        W: Optional[np.ndarray] = None,
        centroids: Optional[np.ndarray] = None,
        scale: Optional[float] = None,
        n_jobs: int = 1,
    ) -> "InterfaceEnergy":
        """Compute the energy matrix of the clusters given by dense labels 1..K.

        Either ``W`` (within-cluster covariance) or an explicit ``scale``
        must be supplied.

        Raises:
            MissingInputError: no features, or a cluster with fewer than two members.
        """
        X = np.asarray(features, dtype=float)
        if X.ndim == 1:
            X = X[:, None]
        labels = np.asarray(labels, dtype=np.int64)
        if len(X) == 0:
            raise MissingInputError("No feature vectors supplied for the energy computation")
        if len(labels) != len(X):
            raise ValueError(f"{len(labels)} labels given for {len(X)} feature vectors")
        if labels.min() < 1:
            raise ValueError(f"Cluster labels must be 1..K, got {labels.min()}")

        n_clusters = int(labels.max())
        sizes = np.bincount(labels, minlength=n_clusters + 1)[1:]
        for k, n in enumerate(sizes):
            if n < 2:
                raise MissingInputError(
                    f"Cluster {k + 1} has {n} member(s); its intra-cluster energy is undefined"
                )

        if scale is None:
            if W is None:
                raise ValueError("Either W or scale is required")
            scale = energy_scale(W)

        groups = [X[labels == k] for k in range(1, n_clusters + 1)]
        if centroids is None:
            centroids = np.stack([g.mean(axis=0) for g in groups])

        pairs = [(i, j) for i in range(n_clusters) for j in range(i, n_clusters)]

        def compute(pair):
            i, j = pair
            return pair_energy(groups[i], groups[j], scale, same=(i == j))

        logger.info(f"Computing interface energies for {len(pairs)} cluster pairs (scale={scale:.4g})")
        if n_jobs > 1:
            with ThreadPoolExecutor(max_workers=n_jobs) as executor:
                values = list(executor.map(compute, pairs))
        else:
            values = [compute(p) for p in pairs]

        energy = np.zeros((n_clusters, n_clusters))
        for (i, j), value in zip(pairs, values):
            energy[i, j] = value

        return cls(energy, sizes, labels, centroids, scale)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def n_clusters(self) -> int:
        return len(self.sizes)

    @property
    def energy(self) -> np.ndarray:
        """Upper-triangular K x K energy matrix (a copy)."""
        return np.triu(self.full())

    def full(self) -> np.ndarray:
        """Symmetric K x K energy matrix (a copy)."""
        k = self.n_clusters
        return self._energy[:k, :k].copy()

    def pair(self, a: int, b: int) -> float:
        """Energy between clusters a and b (1-based ids)."""
        i, j = sorted((self._index(a), self._index(b)))
        return float(self._energy[i, j])

    def normalized(self) -> np.ndarray:
        """Energy per contributing pair, upper-triangular. Does not modify the stored matrix."""
        normalize = np.outer(self.sizes, self.sizes).astype(float)
        np.fill_diagonal(normalize, self.sizes * (self.sizes - 1) / 2.0)
        return np.triu(self.energy / normalize)

    def connection_strength(self) -> np.ndarray:
        """Symmetric 2 * norm(a, b) / (norm(a, a) + norm(b, b)); zero on the diagonal."""
        norm = self.normalized()
        norm = norm + np.triu(norm, 1).T
        self_energy = np.diag(norm)
        denominator = self_energy[:, None] + self_energy[None, :]
        strength = np.divide(2.0 * norm, denominator, out=np.zeros_like(norm), where=denominator > 0)
        np.fill_diagonal(strength, 0.0)
        return strength

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def merge(self, a: int, b: int) -> int:
        """Aggregate clusters a and b in place; returns the id of the merged cluster.

        Only the merged row and column are updated, so the cost is linear
        in the number of clusters (plus one pass over the labels). The
        merged cluster takes the lower of the two ids and the highest id
        takes over the one that was absorbed, so labels stay dense.
        """
        i, j = sorted((self._index(a), self._index(b)))
        if i == j:
            raise ValueError(f"Cannot merge cluster {a} with itself")
        last = self.n_clusters - 1
        E = self._energy

        merged = E[i, :last + 1] + E[j, :last + 1]          # E(AB, C) = E(A, C) + E(B, C)
        merged[i] = E[i, i] + E[j, j] + E[i, j]             # E(AB, AB)
        E[i, :last + 1] = merged
        E[:last + 1, i] = merged

        n_i, n_j = self.sizes[i], self.sizes[j]
        self.centroids[i] = (n_i * self.centroids[i] + n_j * self.centroids[j]) / (n_i + n_j)
        self.sizes[i] = n_i + n_j

        if j != last:
            moved = E[last, :last + 1].copy()
            moved[j] = E[last, last]
            E[j, :last + 1] = moved
            E[:last + 1, j] = moved
            self.sizes[j] = self.sizes[last]
            self.centroids[j] = self.centroids[last]
        self.sizes = self.sizes[:last]
        self.centroids = self.centroids[:last]

        self.labels[self.labels == j + 1] = i + 1
        if j != last:
            self.labels[self.labels == last + 1] = j + 1

        logger.debug(f"Merged cluster {j + 1} into {i + 1}; {self.n_clusters} clusters remain")
        return i + 1

    def relabel(self) -> List[int]:
        """Renumber clusters 1..K by greedy chaining through connection strengths.

        Starts at the higher-numbered cluster of the strongest pair (the
        first in row-major order on ties). From the current cluster the
        strongest unvisited partner with a lower id is compared with the
        strongest unvisited partner with a higher id; the lower-id side wins
        ties, as does the lowest id within a side. Matrix, sizes, centroids
        and labels are permuted in place.

        Returns:
            the old ids in their new order.
        """
        n = self.n_clusters
        strength = self.connection_strength()

        if n > 1:
            rows, cols = np.triu_indices(n, 1)
            start = int(cols[np.argmax(strength[rows, cols])])
        else:
            start = 0

        visited = np.zeros(n, dtype=bool)
        visited[start] = True
        order = [start]
        for _ in range(n - 1):
            current = order[-1]
            lower = np.flatnonzero(~visited[:current])
            higher = current + 1 + np.flatnonzero(~visited[current + 1:])
            col_pos = _strongest(strength[current], lower)
            row_pos = _strongest(strength[current], higher)
            if row_pos is None or (col_pos is not None and strength[current, col_pos] >= strength[current, row_pos]):
                nxt = col_pos
            else:
                nxt = row_pos
            visited[nxt] = True
            order.append(nxt)

        perm = np.asarray(order, dtype=np.int64)
        self._energy = self.full()[np.ix_(perm, perm)]
        self.sizes = self.sizes[perm]
        self.centroids = self.centroids[perm]
        new_ids = np.empty(n, dtype=np.int64)
        new_ids[perm] = np.arange(1, n + 1)
        self.labels = new_ids[self.labels - 1]

        return [int(p) + 1 for p in perm]

    def _index(self, cluster_id: int) -> int:
        if not 1 <= cluster_id <= self.n_clusters:
            raise ValueError(f"Cluster id {cluster_id} out of range 1..{self.n_clusters}")
        return cluster_id - 1


def _strongest(row: np.ndarray, candidates: np.ndarray) -> Optional[int]:
    if len(candidates) == 0:
        return None
    return int(candidates[np.argmax(row[candidates])])
