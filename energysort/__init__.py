"""
energysort: threshold detection, divisive k-means and interface-energy
aggregation for multi-channel extracellular recordings.

Public API:
    EnergySort              pipeline class
    SortingConfiguration    all tunable parameters
    detect_spikes           threshold crossing over a session of trials
    WaveformPCA             variance-ranked waveform projection
    divisive_kmeans         minicluster overclustering
    InterfaceEnergy         cluster similarity with incremental merges
"""

from energysort.errors import (
    SortingError,
    ConfigurationError,
    MissingInputError,
    NumericDegeneracyError,
)
from energysort.config import (
    DetectionMethod,
    DetectionConfig,
    ClusteringConfig,
    SortingConfiguration,
)
from energysort.types import SpikeEvent, SpikeEvents, Minicluster, SortingResults
from energysort.detection import DetectionSession, detect_spikes
from energysort.features import WaveformPCA
from energysort.clustering import ClusteringResult, divisive_kmeans
from energysort.similarity import InterfaceEnergy
from energysort.curation import filter_refractory_violations, find_artifacts
from energysort.core import EnergySort

__all__ = [
    "EnergySort",
    "SortingConfiguration",
    "DetectionConfig",
    "ClusteringConfig",
    "DetectionMethod",
    "DetectionSession",
    "detect_spikes",
    "SpikeEvent",
    "SpikeEvents",
    "Minicluster",
    "SortingResults",
    "WaveformPCA",
    "ClusteringResult",
    "divisive_kmeans",
    "InterfaceEnergy",
    "filter_refractory_violations",
    "find_artifacts",
    "SortingError",
    "ConfigurationError",
    "MissingInputError",
    "NumericDegeneracyError",
]
