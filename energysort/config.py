"""Enums and configuration dataclasses for the sorting pipeline."""

from __future__ import annotations

import logging
import multiprocessing as mp
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np

from energysort.errors import ConfigurationError

logger = logging.getLogger("energysort")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DetectionMethod(str, Enum):
    """How ``DetectionConfig.thresh`` is interpreted."""
    AUTO = 'auto'        # thresh = number of standard deviations below zero
    MANUAL = 'manual'    # thresh = actual voltage, scalar or one per channel
    MAD = 'mad'          # thresh = number of scaled median absolute deviations


# ---------------------------------------------------------------------------
# Option overriding
# ---------------------------------------------------------------------------

class _FromOptions:
    """Mixin: build a dataclass from name-keyed overrides, rejecting unknown names."""

    @classmethod
    def from_options(cls, **options: Any):
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown {cls.__name__} option(s): {', '.join(unknown)}; "
                f"valid options are {', '.join(sorted(known))}"
            )
        return cls(**options)


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------

@dataclass
class DetectionConfig(_FromOptions):
    """Threshold-crossing detection parameters."""
    sampling_rate: float = 30000.0                   # Hz
    method: DetectionMethod = DetectionMethod.AUTO
    thresh: Union[float, Sequence[float]] = 4.0      # per-channel values allowed in manual mode
    window_size: float = 1.5                         # ms of data saved per event
    cross_time: float = 0.6                          # ms before the crossing in each window
    shadow: float = 0.75                             # ms minimum spacing between events
    max_jitter: float = 0.6                          # ms searched for the origin channel
    trial_spacing: float = 0.5                       # s inserted between trials when unwrapping
    max_noise_samples: int = 10000                   # windows drawn for the noise covariance

    def __post_init__(self):
        try:
            self.method = DetectionMethod(self.method)
        except ValueError:
            raise ConfigurationError(
                f"Unknown spike detection method: {self.method!r} "
                f"(expected one of {[m.value for m in DetectionMethod]})"
            ) from None

        if self.sampling_rate is None or self.sampling_rate <= 0:
            raise ConfigurationError(f"sampling_rate must be positive, got {self.sampling_rate}")
        for name in ('window_size', 'cross_time', 'shadow', 'max_jitter', 'trial_spacing'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.window_samples < 1:
            raise ConfigurationError(
                f"window_size={self.window_size} ms is shorter than one sample at {self.sampling_rate} Hz"
            )
        if self.samples_before >= self.window_samples:
            raise ConfigurationError(
                f"cross_time={self.cross_time} ms must fall inside window_size={self.window_size} ms"
            )
        if self.max_noise_samples < 2:
            raise ConfigurationError(f"max_noise_samples must be at least 2, got {self.max_noise_samples}")

        thresh = np.asarray(self.thresh, dtype=float)
        if self.method != DetectionMethod.MANUAL and thresh.ndim != 0:
            raise ConfigurationError(
                f"thresh must be a single number in {self.method.value} mode, got {self.thresh!r}"
            )
        if thresh.ndim > 1 or not np.all(np.isfinite(thresh)):
            raise ConfigurationError(f"thresh must be finite, got {self.thresh!r}")

    # Derived sample counts

    def _samples(self, ms: float) -> int:
        return int(round(self.sampling_rate * ms / 1000.0))

    @property
    def window_samples(self) -> int:
        return self._samples(self.window_size)

    @property
    def shadow_samples(self) -> int:
        return self._samples(self.shadow)

    @property
    def samples_before(self) -> int:
        return self._samples(self.cross_time)

    @property
    def jitter_samples(self) -> int:
        return self._samples(self.max_jitter)

    @property
    def samples_after(self) -> int:
        return self.jitter_samples + self.window_samples - (1 + self.samples_before)


@dataclass
class ClusteringConfig(_FromOptions):
    """Divisive k-means parameters."""
    divisions: Optional[int] = None          # log2 of the number of clusters; auto if None
    reps: int = 1                            # independent runs; lowest MSE wins
    reassign_converge: int = 0               # reassignment threshold of the final division
    reassign_rough: float = 0.005            # fraction of vectors, threshold of earlier divisions
    mse_converge: float = 0.0                # fractional MSE change threshold
    target_cluster_density: float = 1.0      # events per second of recording per minicluster
    target_cluster_size: int = 400           # used when the recording duration is unknown
    max_iterations: int = 1000               # E/M iterations per division before giving up

    def __post_init__(self):
        if self.divisions is not None and self.divisions < 1:
            raise ConfigurationError(f"divisions must be at least 1, got {self.divisions}")
        if self.reps < 1:
            raise ConfigurationError(f"reps must be at least 1, got {self.reps}")
        if self.reassign_converge < 0:
            raise ConfigurationError(f"reassign_converge must be non-negative, got {self.reassign_converge}")
        if not 0 <= self.reassign_rough < 1:
            raise ConfigurationError(f"reassign_rough must be in [0, 1), got {self.reassign_rough}")
        if self.mse_converge < 0:
            raise ConfigurationError(f"mse_converge must be non-negative, got {self.mse_converge}")
        if self.target_cluster_density <= 0 or self.target_cluster_size <= 0:
            raise ConfigurationError("target cluster density and size must be positive")
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be at least 1, got {self.max_iterations}")

    def resolve_divisions(self, n_vectors: int, duration: Optional[float] = None) -> int:
        """Number of doublings: power of 2 closest to the target size, clamped to [4, 7]."""
        if self.divisions is not None:
            return self.divisions
        if duration is not None and duration > 0:
            target = duration * self.target_cluster_density
        else:
            target = self.target_cluster_size
        divisions = int(round(np.log2(max(n_vectors, 1) / target)))
        return max(min(divisions, 7), 4)

    def reassign_criterion(self, step: int, n_divisions: int, n_vectors: int) -> int:
        """Reassignment threshold for a division step (1-based).

        Intermediate steps only need a rough solution; the last step uses
        ``reassign_converge``.
        """
        if step < n_divisions:
            return int(round(self.reassign_rough * n_vectors))
        return self.reassign_converge


@dataclass
class SortingConfiguration(_FromOptions):
    """Complete configuration for a sorting session."""
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    n_jobs: int = max(1, mp.cpu_count() - 1)  # Default to all but one core
    random_state: Optional[int] = None

    # Curation
    reject_artifacts: bool = False            # Drop dense bursts of events before clustering
    artifact_window: float = 0.5              # ms
    artifact_criterion: int = 5               # more events than this within the window is a burst
    filter_rpv: bool = False                  # Remove refractory period violations
    ref_period: float = 1.5                   # ms
    min_spikes: int = 10                      # clusters this small are left alone

    def __post_init__(self):
        if isinstance(self.detection, dict):
            self.detection = DetectionConfig.from_options(**self.detection)
        if isinstance(self.clustering, dict):
            self.clustering = ClusteringConfig.from_options(**self.clustering)
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be at least 1, got {self.n_jobs}")
        if self.artifact_window <= 0 or self.artifact_criterion < 1:
            raise ConfigurationError("artifact_window must be positive and artifact_criterion at least 1")
        if self.ref_period < 0 or self.min_spikes < 0:
            raise ConfigurationError("ref_period and min_spikes must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
