"""Curation: refractory period violation removal and artifact burst detection."""

from __future__ import annotations

import logging
from typing import Dict, Tuple

import numpy as np

from energysort.types import SpikeEvents

logger = logging.getLogger("energysort")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def filter_refractory_violations(
    events: SpikeEvents,
    labels: np.ndarray,
    features: np.ndarray,
    ref_period: float = 1.5,
    min_spikes: int = 10,
) -> Tuple[np.ndarray, Dict[int, float]]:
    """Resolve refractory period violations (RPVs) within each cluster.

    Algorithm:
        1. Walk each cluster's events in unwrapped-time order.
        2. When an event falls within ``ref_period`` ms of the previous
           surviving event, keep whichever of the two lies closer to the
           cluster in Mahalanobis distance and drop the other.
        3. Clusters with ``min_spikes`` events or fewer are left alone.

    Returns:
        (keep, fractions): boolean mask over events, and per-cluster
        fraction of events removed.
    """
    labels = np.asarray(labels)
    features = np.asarray(features, dtype=float)
    times = events.unwrapped_times
    ref_s = 0.001 * ref_period

    keep = np.ones(len(events), dtype=bool)
    fractions: Dict[int, float] = {}

    for cluster in np.unique(labels):
        members = np.flatnonzero(labels == cluster)
        n_spikes = len(members)
        fractions[int(cluster)] = 0.0
        if n_spikes <= min_spikes:
            continue

        order = members[np.argsort(times[members], kind='stable')]
        distance = dict(zip(order, _mahalanobis_sq(features[order], features[members])))

        removed = []
        survivors = [order[0]]
        for event in order[1:]:
            if times[event] - times[survivors[-1]] <= ref_s:
                if distance[event] > distance[survivors[-1]]:
                    removed.append(event)
                else:
                    removed.append(survivors[-1])
                    survivors[-1] = event
            else:
                survivors.append(event)

        if len(survivors) < 2:
            logger.warning(f"Cluster {cluster}: RPV removal would leave {len(survivors)} event(s); skipped")
            continue

        keep[removed] = False
        fractions[int(cluster)] = len(removed) / n_spikes
        if removed:
            logger.info(f"Cluster {cluster}: removed {len(removed)} of {n_spikes} events violating {ref_period} ms")

    return keep, fractions


def find_artifacts(
    spike_times: np.ndarray,
    window: float,
    criterion: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Find bursts of events too dense to be neural.

    A burst starts at an event and holds every later event within
    ``window`` seconds of it; it is an artifact when more than ``criterion``
    events follow the first. Scanning resumes at the first event after the
    burst.

    Returns:
        (artifact_times, in_artifact): burst midpoints (s), and a boolean
        mask over ``spike_times`` marking events inside an artifact burst.
    """
    spike_times = np.asarray(spike_times, dtype=float)
    order = np.argsort(spike_times, kind='stable')
    t = spike_times[order]
    n = len(t)

    in_artifact = np.zeros(n, dtype=bool)
    artifact_times = []
    i = 0
    while i < n - 1:
        j = int(np.searchsorted(t, t[i] + window, side='right'))
        if j - i - 1 > criterion:
            artifact_times.append(0.5 * (t[i] + t[j - 1]))
            in_artifact[order[i:j]] = True
            i = j
        else:
            i += 1

    if artifact_times:
        logger.info(f"Found {len(artifact_times)} artifact bursts covering {int(in_artifact.sum())} events")
    return np.asarray(artifact_times), in_artifact


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _mahalanobis_sq(points: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Squared Mahalanobis distance of each point to the reference sample."""
    mean = reference.mean(axis=0)
    cov = np.atleast_2d(np.cov(reference, rowvar=False))
    cov_inv = np.linalg.pinv(cov)
    diff = points - mean
    return np.sum(diff @ cov_inv * diff, axis=1)
