"""Divisive k-means: overcluster feature vectors into miniclusters."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import List, Optional, Tuple

import numpy as np
from scipy.spatial.distance import pdist

from energysort.config import ClusteringConfig
from energysort.errors import MissingInputError
from energysort.types import Minicluster

logger = logging.getLogger("energysort")


@dataclass
class ClusteringResult:
    """Output of :func:`divisive_kmeans`."""
    labels: np.ndarray                 # dense 1..K, largest cluster first
    centroids: np.ndarray              # Shape: (K, n_features), row k is cluster k + 1
    mse: float                         # mean squared distance to the assigned centroid
    iteration_counts: np.ndarray       # E/M iterations per division step
    T: np.ndarray                      # total covariance
    B: np.ndarray                      # between-cluster covariance
    W: np.ndarray                      # within-cluster covariance, T - B

    @property
    def n_clusters(self) -> int:
        return len(self.centroids)

    @property
    def sizes(self) -> np.ndarray:
        return np.bincount(self.labels, minlength=self.n_clusters + 1)[1:]

    def miniclusters(self) -> List[Minicluster]:
        return [
            Minicluster(cluster_id=k + 1,
                        indices=np.flatnonzero(self.labels == k + 1),
                        centroid=self.centroids[k])
            for k in range(self.n_clusters)
        ]

    def restrict(self, features: np.ndarray, keep: np.ndarray) -> "ClusteringResult":
        """The same clusters over a subset of the vectors.

        ``features`` are the vectors that were clustered and ``keep`` selects
        the survivors; centroids, mse and T/B/W are recomputed on them. Every
        cluster must keep at least one member.
        """
        X = np.asarray(features, dtype=float)
        if X.ndim == 1:
            X = X[:, None]
        X = X[keep]
        labels = self.labels[keep]
        emptied = np.setdiff1d(np.arange(1, self.n_clusters + 1), labels)
        if len(emptied):
            raise ValueError(f"Cluster {emptied[0]} has no members left in the subset")

        result = _summarize(X, labels, 0.0, self.iteration_counts.copy())
        result.mse = float(np.mean(np.sum((X - result.centroids[labels - 1]) ** 2, axis=1)))
        return result


def divisive_kmeans(
    features: np.ndarray,
    config: Optional[ClusteringConfig] = None,
    duration: Optional[float] = None,
    random_state=None,
    n_jobs: int = 1,
) -> ClusteringResult:
    """Cluster feature vectors by repeatedly doubling and refining k-means centroids.

    The solution for 2 means seeds 4 means (each centroid duplicated and
    slightly jittered), and so on for ``divisions`` steps, so that up to
    ``2 ** divisions`` clusters are found. Clusters of size one are not
    allowed: their member is moved to its next-best centroid, so fewer
    clusters may be returned.

    Args:
        features: (n_vectors, n_features) array.
        config: clustering parameters (defaults if None).
        duration: total recording time in seconds, used with
            ``config.target_cluster_density`` to choose the number of divisions.
        random_state: seed for the centroid jitter.
        n_jobs: threads used to run independent repetitions.

    Raises:
        MissingInputError: if fewer than two vectors are supplied.
    """
    config = config or ClusteringConfig()
    X = np.asarray(features, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    if X.shape[0] == 0:
        raise MissingInputError("No feature vectors supplied for clustering")
    if X.shape[0] < 2:
        raise MissingInputError(f"Need at least two feature vectors to cluster, got {X.shape[0]}")

    M, N = X.shape
    divisions = config.resolve_divisions(M, duration)

    seeds = np.random.SeedSequence(random_state).spawn(config.reps + 1)
    jitter = mean_distance_estimate(X, np.random.default_rng(seeds[0])) / 100 / N  # heuristic
    rngs = [np.random.default_rng(s) for s in seeds[1:]]

    logger.info(f"Clustering {M} vectors in {N} dimensions into up to {2 ** divisions} miniclusters")
    run = partial(_kmeans_run, X, divisions, jitter, config)
    if n_jobs > 1 and config.reps > 1:
        with ThreadPoolExecutor(max_workers=min(n_jobs, config.reps)) as executor:
            runs = list(executor.map(run, rngs))
    else:
        runs = [run(rng) for rng in rngs]

    # Lowest MSE over repetitions
    assigns, mse, iteration_counts = min(runs, key=lambda r: r[1])
    labels = sort_assignments(assigns)

    logger.info(f"Found {int(labels.max())} miniclusters (mse={mse:.4g}, reps={config.reps})")
    return _summarize(X, labels, mse, iteration_counts)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _summarize(X: np.ndarray, labels: np.ndarray, mse: float, iteration_counts: np.ndarray) -> ClusteringResult:
    n_clusters = int(labels.max())
    centroids = np.stack([X[labels == k].mean(axis=0) for k in range(1, n_clusters + 1)])

    # T & B are direct to compute, W follows from T = W + B
    T = np.atleast_2d(np.cov(X, rowvar=False))
    B = np.atleast_2d(np.cov(centroids[labels - 1], rowvar=False))
    W = T - B

    return ClusteringResult(
        labels=labels,
        centroids=centroids,
        mse=float(mse),
        iteration_counts=iteration_counts,
        T=T,
        B=B,
        W=W,
    )


def _kmeans_run(
    X: np.ndarray,
    divisions: int,
    jitter: float,
    config: ClusteringConfig,
    rng: np.random.Generator,
) -> Tuple[np.ndarray, float, np.ndarray]:
    """One full divisive solution. Returns (assigns, mse, iteration_counts)."""
    M, N = X.shape
    rows = np.arange(M)
    sq_norms = np.einsum('ij,ij->i', X, X)
    centroids = X.mean(axis=0, keepdims=True)  # always start here
    assigns = np.zeros(M, dtype=np.int64)
    mse = np.inf
    iteration_counts = np.zeros(divisions, dtype=np.int64)

    for step in range(1, divisions + 1):
        criterion = config.reassign_criterion(step, divisions, M)
        centroids = np.vstack([centroids, centroids])
        centroids = centroids + jitter * rng.standard_normal(centroids.shape)  # split & jitter

        old_mse = np.inf
        old_assigns = np.full(M, -1, dtype=np.int64)

        while True:
            n_clusters = len(centroids)

            # E step: |x - y|^2 = x'x + y'y - 2x'y for all vectors at once
            dist_sq = sq_norms[:, None] + np.einsum('ij,ij->i', centroids, centroids)[None, :] \
                - 2.0 * (X @ centroids.T)
            assigns = np.argmin(dist_sq, axis=1)
            best = dist_sq[rows, assigns]
            sizes = np.bincount(assigns, minlength=n_clusters)
            _eliminate_singletons(dist_sq, assigns, best, sizes)

            changed = int(np.count_nonzero(assigns != old_assigns))

            # M step: means of the current members, empty centroids dropped
            sums = np.zeros((n_clusters, N))
            np.add.at(sums, assigns, X)
            occupied = sizes > 0
            centroids = sums[occupied] / sizes[occupied, None]
            assigns = (np.cumsum(occupied) - 1)[assigns]

            mse = float(np.mean(np.maximum(best, 0.0)))
            if np.isinf(old_mse):
                mse_change = np.inf
            elif old_mse > 0:
                mse_change = 1.0 - mse / old_mse
            else:
                mse_change = 0.0
            old_mse = mse
            old_assigns = assigns

            iteration_counts[step - 1] += 1
            if changed <= criterion or mse_change <= config.mse_converge:
                break
            if iteration_counts[step - 1] >= config.max_iterations:
                logger.warning(
                    f"Division {step} stopped after {config.max_iterations} iterations "
                    f"with {changed} vectors still being reassigned"
                )
                break

        logger.debug(f"Division {step}: {len(centroids)} means after {iteration_counts[step - 1]} iterations")

    return assigns, mse, iteration_counts


def _eliminate_singletons(
    dist_sq: np.ndarray,
    assigns: np.ndarray,
    best: np.ndarray,
    sizes: np.ndarray,
) -> None:
    """Move the lone member of every size-1 cluster to its next-best centroid, in place."""
    singletons = np.flatnonzero(sizes == 1)
    while len(singletons):
        cluster = singletons[0]
        member = np.flatnonzero(assigns == cluster)[0]
        dist_sq[member, cluster] = np.inf
        target = int(np.argmin(dist_sq[member]))
        assigns[member] = target
        best[member] = dist_sq[member, target]
        sizes[cluster] = 0
        sizes[target] += 1
        singletons = np.flatnonzero(sizes == 1)


def mean_distance_estimate(X: np.ndarray, rng: np.random.Generator, max_points: int = 1000) -> float:
    """Mean pairwise Euclidean distance, estimated on a random subsample."""
    if len(X) > max_points:
        X = X[rng.choice(len(X), size=max_points, replace=False)]
    return float(np.mean(pdist(X)))


def sort_assignments(assigns: np.ndarray) -> np.ndarray:
    """Renumber labels 1..K by descending cluster size (ties by first appearance)."""
    uniq, first, counts = np.unique(assigns, return_index=True, return_counts=True)
    order = np.lexsort((first, -counts))
    new_ids = np.empty(len(uniq), dtype=np.int64)
    new_ids[order] = np.arange(1, len(uniq) + 1)
    return new_ids[np.searchsorted(uniq, assigns)]
