# -*- coding: utf-8 -*-
import numpy as np
import pytest

from energysort.errors import MissingInputError, NumericDegeneracyError
from energysort.features import WaveformPCA, flatten_waveforms, select_rank


def low_rank_waveforms(rng, n_events=500, n_samples=10, n_channels=2):
    """Waveforms spanned by three strong directions plus a little noise."""
    basis, _ = np.linalg.qr(rng.normal(size=(n_samples * n_channels, 3)))
    latent = rng.normal(size=(n_events, 3)) * [10.0, 8.0, 6.0]
    flat = latent @ basis.T + 0.01 * rng.normal(size=(n_events, n_samples * n_channels))
    return flat.reshape(n_events, n_samples, n_channels)


def test_select_rank():
    # squared fractions: 9/14, 13/14, 14/14
    assert select_rank(np.array([3.0, 2.0, 1.0]), 0.95) == 3
    assert select_rank(np.array([3.0, 2.0, 1.0]), 0.9) == 2
    assert select_rank(np.array([1.0, 0.0, 0.0]), 0.95) == 1


def test_select_rank_zero_variance():
    with pytest.raises(NumericDegeneracyError):
        select_rank(np.zeros(4))


def test_rank_follows_variance():
    rng = np.random.default_rng(0)
    waveforms = low_rank_waveforms(rng)
    pca = WaveformPCA()
    features = pca.fit_transform(waveforms)
    assert pca.rank == 3
    assert features.shape == (500, 3)
    assert pca.n_basis == 20


def test_full_basis_round_trip():
    rng = np.random.default_rng(1)
    waveforms = rng.normal(size=(200, 10, 2))
    pca = WaveformPCA().fit(waveforms)

    features = pca.transform(waveforms, n_components=pca.n_basis)
    reconstructed = pca.inverse_transform(features)

    assert np.allclose(reconstructed, flatten_waveforms(waveforms), atol=1e-8)


def test_transform_matches_fitted_scores():
    rng = np.random.default_rng(2)
    waveforms = low_rank_waveforms(rng, n_events=100)
    pca = WaveformPCA()
    features = pca.fit_transform(waveforms)
    assert np.allclose(pca.transform(waveforms), features)
    assert np.allclose(pca.scores[:, :pca.rank], features)


def test_components_are_orthonormal():
    rng = np.random.default_rng(3)
    pca = WaveformPCA().fit(rng.normal(size=(50, 6, 3)))
    gram = pca.components @ pca.components.T
    assert np.allclose(gram, np.eye(pca.n_basis))
    assert np.all(np.diff(pca.singular_values) <= 0)


def test_needs_two_waveforms():
    with pytest.raises(MissingInputError):
        WaveformPCA().fit(np.zeros((1, 10, 2)))


def test_unfitted():
    pca = WaveformPCA()
    assert not pca.is_fitted
    with pytest.raises(MissingInputError):
        pca.transform(np.zeros((3, 10, 2)))
