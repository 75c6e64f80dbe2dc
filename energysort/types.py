"""Data containers: SpikeEvent, SpikeEvents, Minicluster and SortingResults."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from energysort.config import SortingConfiguration

if TYPE_CHECKING:
    from energysort.clustering import ClusteringResult
    from energysort.detection import DetectionSession
    from energysort.features import WaveformPCA
    from energysort.similarity import InterfaceEnergy

logger = logging.getLogger("energysort")


@dataclass(frozen=True)
class SpikeEvent:
    """A single detected event."""
    spike_time: float                # s, within its trial
    trial: int                       # trial id within the session (0-based)
    waveform: np.ndarray             # Shape: (n_samples, n_channels)
    unwrapped_time: float            # s, on the session-wide timeline
    event_channel: int               # channel with the largest normalized excursion
    n_crossing_channels: int = 1     # channels that crossed at the detection sample


@dataclass
class SpikeEvents:
    """Column-oriented collection of events for one session."""
    spike_times: np.ndarray              # Shape: (n_events,)
    trials: np.ndarray                   # Shape: (n_events,)
    waveforms: np.ndarray                # Shape: (n_events, n_samples, n_channels)
    unwrapped_times: np.ndarray          # Shape: (n_events,)
    event_channels: np.ndarray           # Shape: (n_events,)
    n_crossing_channels: np.ndarray      # Shape: (n_events,)

    @classmethod
    def empty(cls, n_samples: int, n_channels: int, dtype=np.float64) -> "SpikeEvents":
        return cls(
            spike_times=np.zeros(0),
            trials=np.zeros(0, dtype=np.int64),
            waveforms=np.zeros((0, n_samples, n_channels), dtype=dtype),
            unwrapped_times=np.zeros(0),
            event_channels=np.zeros(0, dtype=np.int64),
            n_crossing_channels=np.zeros(0, dtype=np.int64),
        )

    @classmethod
    def concatenate(cls, parts: Sequence["SpikeEvents"]) -> "SpikeEvents":
        """Join event collections in order (e.g. trials, or successive append calls)."""
        if not parts:
            raise ValueError("Need at least one SpikeEvents to concatenate")
        return cls(
            spike_times=np.concatenate([p.spike_times for p in parts]),
            trials=np.concatenate([p.trials for p in parts]),
            waveforms=np.concatenate([p.waveforms for p in parts], axis=0),
            unwrapped_times=np.concatenate([p.unwrapped_times for p in parts]),
            event_channels=np.concatenate([p.event_channels for p in parts]),
            n_crossing_channels=np.concatenate([p.n_crossing_channels for p in parts]),
        )

    def __len__(self) -> int:
        return len(self.spike_times)

    def __getitem__(self, idx: int) -> SpikeEvent:
        return SpikeEvent(
            spike_time=float(self.spike_times[idx]),
            trial=int(self.trials[idx]),
            waveform=self.waveforms[idx],
            unwrapped_time=float(self.unwrapped_times[idx]),
            event_channel=int(self.event_channels[idx]),
            n_crossing_channels=int(self.n_crossing_channels[idx]),
        )

    def __iter__(self) -> Iterator[SpikeEvent]:
        for i in range(len(self)):
            yield self[i]

    @property
    def n_channels(self) -> int:
        return self.waveforms.shape[2]

    def select(self, mask_or_indices) -> "SpikeEvents":
        """Return a new collection holding only the selected events."""
        return SpikeEvents(
            spike_times=self.spike_times[mask_or_indices],
            trials=self.trials[mask_or_indices],
            waveforms=self.waveforms[mask_or_indices],
            unwrapped_times=self.unwrapped_times[mask_or_indices],
            event_channels=self.event_channels[mask_or_indices],
            n_crossing_channels=self.n_crossing_channels[mask_or_indices],
        )

    def to_dataframe(self, labels: Optional[np.ndarray] = None) -> pd.DataFrame:
        """Event table, one row per event."""
        data = {
            'trial': self.trials,
            'spike_time': self.spike_times,
            'unwrapped_time': self.unwrapped_times,
            'event_channel': self.event_channels,
            'n_crossing_channels': self.n_crossing_channels,
        }
        if labels is not None:
            data['cluster'] = labels
        return pd.DataFrame(data)


@dataclass
class Minicluster:
    """Fine-grained cluster from the divisive k-means."""
    cluster_id: int
    indices: np.ndarray                      # event indices
    centroid: np.ndarray

    @property
    def size(self) -> int:
        return len(self.indices)


@dataclass
class SortingResults:
    """Complete results from a sorting run."""
    events: SpikeEvents
    features: np.ndarray
    clustering: "ClusteringResult"
    energy: "InterfaceEnergy"
    session: "DetectionSession"
    config: SortingConfiguration
    execution_time: float
    pca: Optional["WaveformPCA"] = None
    rpv_fractions: Dict[int, float] = field(default_factory=dict)

    @property
    def labels(self) -> np.ndarray:
        return self.energy.labels

    @property
    def n_clusters(self) -> int:
        return self.energy.n_clusters

    # ------------------------------------------------------------------
    # Convenience views
    # ------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        """Event table with the final minicluster of each event."""
        return self.events.to_dataframe(labels=self.labels)

    def miniclusters(self) -> List[Minicluster]:
        return [
            Minicluster(cluster_id=k + 1,
                        indices=np.flatnonzero(self.labels == k + 1),
                        centroid=self.energy.centroids[k])
            for k in range(self.n_clusters)
        ]

    def summary(self) -> Dict[str, Any]:
        """Generate a summary of the results."""
        duration = float(np.sum(self.session.durations)) if self.session.durations else 0.0
        return {
            'total_trials': self.session.n_trials,
            'total_events': len(self.events),
            'event_rate': len(self.events) / duration if duration > 0 else 0.0,
            'feature_dims': self.features.shape[1] if self.features.ndim == 2 else 0,
            'total_clusters': self.n_clusters,
            'cluster_sizes': {k + 1: int(n) for k, n in enumerate(self.energy.sizes)},
            'mse': self.clustering.mse,
            'execution_time': self.execution_time,
        }
