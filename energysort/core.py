"""EnergySort: thin pipeline orchestrator that calls the individual modules."""

from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

from energysort.config import SortingConfiguration
from energysort.types import SortingResults, SpikeEvents

# Import pipeline steps
from energysort.detection import DetectionSession, TrialData, detect_spikes
from energysort.features import WaveformPCA
from energysort.clustering import divisive_kmeans
from energysort.similarity import InterfaceEnergy
from energysort.curation import filter_refractory_violations, find_artifacts
from energysort.errors import MissingInputError

logger = logging.getLogger("energysort")


class EnergySort:
    """Runs the sorting pipeline:
    detect → (artifact rejection) → PCA → divisive k-means
    → interface energy → relabel → (RPV filtering).

    Trials can be added in several calls; the detection threshold is fixed
    by the first call and every :meth:`sort` refits PCA and clustering on
    all events detected so far.
    """

    def __init__(self, config: Optional[SortingConfiguration] = None):
        """Initialize with a SortingConfiguration (uses defaults if None)."""
        self.config = config or SortingConfiguration()
        self.session = DetectionSession()
        self.events: Optional[SpikeEvents] = None
        self.results: Optional[SortingResults] = None

    @property
    def duration(self) -> float:
        """Total recorded time in seconds, excluding trial spacing."""
        return float(np.sum(self.session.durations)) if self.session.durations else 0.0

    def add_trials(self, trials: TrialData) -> SpikeEvents:
        """Detect events in more trials and append them to the session. Returns the new events."""
        new_events, self.session = detect_spikes(
            trials, self.config.detection, self.session, random_state=self.config.random_state
        )
        if self.events is None:
            self.events = new_events
        else:
            self.events = SpikeEvents.concatenate([self.events, new_events])
        return new_events

    def run(self, trials: TrialData) -> SortingResults:
        """Detect events in the trials and sort everything detected so far."""
        logger.info("Detecting spikes...")
        self.add_trials(trials)
        return self.sort()

    # ------------------------------------------------------------------
    # Main pipeline
    # ------------------------------------------------------------------

    def sort(self) -> SortingResults:
        """Reduce, cluster and aggregate all events of the session."""
        start = time.time()
        config = self.config

        if self.events is None or len(self.events) == 0:
            raise MissingInputError("No events detected in this session; nothing to sort")
        events = self.events

        # Step 1: Artifact rejection
        if config.reject_artifacts:
            logger.info("Rejecting artifact bursts...")
            _, in_artifact = find_artifacts(
                events.unwrapped_times, config.artifact_window / 1000.0, config.artifact_criterion
            )
            events = events.select(~in_artifact)

        # Step 2: Features
        logger.info("Computing features...")
        pca = WaveformPCA()
        features = pca.fit_transform(events.waveforms)

        # Step 3: Overcluster
        logger.info("Clustering spikes...")
        clustering = divisive_kmeans(
            features,
            config.clustering,
            duration=self.duration,
            random_state=config.random_state,
            n_jobs=config.n_jobs,
        )

        # Step 4: Interface energy and relabeling
        logger.info("Computing interface energy...")
        energy = InterfaceEnergy.from_clusters(
            features, clustering.labels, W=clustering.W, centroids=clustering.centroids, n_jobs=config.n_jobs
        )
        energy.relabel()

        # Step 5: Refractory period violations
        rpv_fractions = {}
        if config.filter_rpv:
            logger.info("Filtering refractory period violations...")
            keep, rpv_fractions = filter_refractory_violations(
                events, energy.labels, features, config.ref_period, config.min_spikes
            )
            if not keep.all():
                events = events.select(keep)
                clustering = clustering.restrict(features, keep)
                features = features[keep]
                energy = InterfaceEnergy.from_clusters(
                    features, energy.labels[keep], scale=energy.scale, n_jobs=config.n_jobs,
                )

        execution_time = time.time() - start
        self.results = SortingResults(
            events=events,
            features=features,
            clustering=clustering,
            energy=energy,
            session=self.session,
            config=config,
            execution_time=execution_time,
            pca=pca,
            rpv_fractions=rpv_fractions,
        )

        logger.info(f"Sorting completed in {execution_time:.2f} seconds")
        logger.info(f"Found {energy.n_clusters} miniclusters with {len(events)} events")
        return self.results
