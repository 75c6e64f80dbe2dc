"""Feature extraction: variance-ranked PCA projection of event waveforms."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import sklearn.decomposition

from energysort.errors import MissingInputError, NumericDegeneracyError

logger = logging.getLogger("energysort")


def flatten_waveforms(waveforms: np.ndarray) -> np.ndarray:
    """Reshape (n_events, n_samples, n_channels) to (n_events, n_samples * n_channels)."""
    waveforms = np.asarray(waveforms, dtype=float)
    if waveforms.ndim == 2:
        return waveforms
    if waveforms.ndim != 3:
        raise ValueError(f"Waveforms must be 2- or 3-D, got shape {waveforms.shape}")
    return waveforms.reshape(waveforms.shape[0], -1)


def select_rank(singular_values: np.ndarray, variance_cutoff: float = 0.95) -> int:
    """Smallest r whose cumulative squared singular value fraction exceeds the cutoff."""
    power = np.asarray(singular_values, dtype=float) ** 2
    total = power.sum()
    if not total > 0:
        raise NumericDegeneracyError("Waveforms have zero variance; no principal components to rank")
    cumulative = np.cumsum(power) / total
    rank = int(np.searchsorted(cumulative, variance_cutoff, side='right')) + 1
    return min(rank, len(power))


class WaveformPCA:
    """Orthogonal decomposition of the full waveform set.

    The basis is fitted once on all waveforms and must be refitted, not
    updated, whenever events are added.
    """

    def __init__(self, variance_cutoff: float = 0.95):
        self.variance_cutoff = variance_cutoff
        self.rank: Optional[int] = None
        self._pca: Optional[sklearn.decomposition.PCA] = None
        self._scores: Optional[np.ndarray] = None

    @property
    def is_fitted(self) -> bool:
        return self._pca is not None

    def _check_fitted(self) -> sklearn.decomposition.PCA:
        if self._pca is None:
            raise MissingInputError("WaveformPCA has not been fitted")
        return self._pca

    def fit(self, waveforms: np.ndarray) -> "WaveformPCA":
        X = flatten_waveforms(waveforms)
        if X.shape[0] < 2:
            raise MissingInputError(f"Need at least two waveforms for PCA, got {X.shape[0]}")

        self._pca = sklearn.decomposition.PCA(svd_solver='full')
        self._scores = self._pca.fit_transform(X)
        self.rank = select_rank(self._pca.singular_values_, self.variance_cutoff)
        captured = float(np.sum(self._pca.explained_variance_ratio_[:self.rank]))
        logger.info(
            f"PCA captured {captured:.3f} of variance with {self.rank} of {X.shape[1]} dimensions"
        )
        return self

    def transform(self, waveforms: np.ndarray, n_components: Optional[int] = None) -> np.ndarray:
        """Project raw waveforms onto the first ``n_components`` basis vectors (default: rank)."""
        pca = self._check_fitted()
        n = self.rank if n_components is None else n_components
        X = flatten_waveforms(waveforms)
        return (X - pca.mean_) @ pca.components_[:n].T

    def fit_transform(self, waveforms: np.ndarray) -> np.ndarray:
        self.fit(waveforms)
        return self._scores[:, :self.rank]

    def inverse_transform(self, features: np.ndarray) -> np.ndarray:
        """Flattened waveforms from features in the first ``features.shape[1]`` dimensions."""
        pca = self._check_fitted()
        features = np.atleast_2d(features)
        return features @ pca.components_[:features.shape[1]] + pca.mean_

    # Decomposition parts

    @property
    def scores(self) -> np.ndarray:
        self._check_fitted()
        return self._scores

    @property
    def singular_values(self) -> np.ndarray:
        return self._check_fitted().singular_values_

    @property
    def components(self) -> np.ndarray:
        """Basis vectors as rows, ordered by decreasing variance."""
        return self._check_fitted().components_

    @property
    def n_basis(self) -> int:
        return self.components.shape[0]

    @property
    def mean(self) -> np.ndarray:
        return self._check_fitted().mean_
