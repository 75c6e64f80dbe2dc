# -*- coding: utf-8 -*-
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from energysort.config import DetectionConfig
from energysort.detection import (
    MAD_SCALE,
    DetectionSession,
    apply_shadow,
    detect_spikes,
    event_channels,
    find_crossings,
)
from energysort.errors import ConfigurationError, MissingInputError, NumericDegeneracyError

FS = 10000.0


def pulse_trial(rng, n_samples=2000, pulses=(100, 500, 900, 1300, 1700), amplitude=-50.0, n_channels=1):
    data = rng.normal(0.0, 1.0, size=(n_samples, n_channels))
    data[list(pulses), 0] = amplitude
    return data


def test_five_pulses_detected():
    rng = np.random.default_rng(0)
    pulses = np.array([100, 500, 900, 1300, 1700])
    data = pulse_trial(rng, pulses=pulses)
    config = DetectionConfig(sampling_rate=FS, method='auto', thresh=4.0)

    events, session = detect_spikes(data, config, random_state=0)

    assert len(events) == 5
    samples = np.round(events.spike_times * FS)
    assert np.all(np.abs(samples - pulses) <= 1)
    assert np.all(events.trials == 0)
    assert session.thresholds[0] == pytest.approx(-4.0 * np.std(data[:, 0], ddof=1))


def test_waveform_window_is_centred_on_crossing():
    rng = np.random.default_rng(1)
    data = pulse_trial(rng)
    config = DetectionConfig(sampling_rate=FS)
    events, _ = detect_spikes(data, config)

    n_samples = config.samples_before + 1 + config.samples_after
    assert events.waveforms.shape == (5, n_samples, 1)
    # the crossing is the sample just before the pulse
    assert np.all(events.waveforms[:, config.samples_before + 1, 0] == -50.0)


@pytest.mark.parametrize("shadow_ms", [0.0, 0.3, 0.75, 2.0, 5.0])
def test_shadow_spacing(shadow_ms):
    rng = np.random.default_rng(int(shadow_ms * 10))
    trials = rng.normal(size=(3, 5000, 2))
    config = DetectionConfig(sampling_rate=FS, thresh=0.5, shadow=shadow_ms)

    events, _ = detect_spikes(trials, config)

    assert len(events) > 0
    for trial in range(3):
        samples = np.round(events.spike_times[events.trials == trial] * FS).astype(int)
        assert np.all(np.diff(samples) > config.shadow_samples)


def test_apply_shadow_keeps_relative_to_last_kept():
    candidates = np.array([10, 13, 15, 19, 30])
    # 13 and 15 fall within 5 of 10; 19 is 4 after 15 but 9 after the kept 10
    assert list(apply_shadow(candidates, 5)) == [10, 19, 30]
    assert list(apply_shadow(np.array([], dtype=int), 5)) == []


def test_find_crossings_counts_channels():
    data = np.array([
        [1.0, 1.0],
        [-5.0, 1.0],
        [1.0, 1.0],
        [-5.0, -5.0],
    ])
    candidates, counts = find_crossings(data, np.array([-2.0, -2.0]))
    assert list(candidates) == [0, 2]
    assert counts[0] == 1
    assert counts[2] == 2


def test_append_reuses_first_threshold():
    rng = np.random.default_rng(2)
    trial = pulse_trial(rng, n_channels=2)
    config = DetectionConfig(sampling_rate=FS)

    first, session = detect_spikes([trial], config)
    frozen = session.thresholds.copy()
    frozen_id = id(session.thresholds)

    second, session = detect_spikes([trial], config, session)

    assert np.array_equal(session.thresholds, frozen)
    assert id(session.thresholds) == frozen_id
    assert len(second) == len(first)
    assert np.all(second.trials == 1)
    assert np.array_equal(second.spike_times, first.spike_times)


def test_append_does_not_recompute_from_louder_data():
    rng = np.random.default_rng(3)
    config = DetectionConfig(sampling_rate=FS)
    _, session = detect_spikes(pulse_trial(rng), config)
    frozen = session.thresholds.copy()

    loud = rng.normal(0.0, 10.0, size=(2000, 1))
    events, session = detect_spikes(loud, config, session)

    assert np.array_equal(session.thresholds, frozen)
    # the old, much lower threshold now catches plenty of noise
    assert len(events) > 5


def test_unwrapped_times_continue_across_trials():
    rng = np.random.default_rng(4)
    config = DetectionConfig(sampling_rate=FS, trial_spacing=0.5)
    trials = [pulse_trial(rng), pulse_trial(rng)]
    events, session = detect_spikes(trials, config)

    duration = 2000 / FS
    assert session.durations == [duration, duration]
    second = events.trials == 1
    assert np.allclose(events.unwrapped_times[second], events.spike_times[second] + duration + 0.5)
    assert np.allclose(events.unwrapped_times[~second], events.spike_times[~second])

    more, session = detect_spikes([pulse_trial(rng)], config, session)
    assert np.all(more.trials == 2)
    assert np.allclose(more.unwrapped_times, more.spike_times + 2 * duration + 1.0)


def test_event_channel_is_largest_normalized_excursion():
    rng = np.random.default_rng(5)
    data = rng.normal(size=(3000, 2))
    for s in (500, 1500, 2500):
        data[s:s + 3, 0] = -20.0
        data[s:s + 3, 1] = -60.0
    config = DetectionConfig(sampling_rate=FS)

    events, _ = detect_spikes(data, config)

    assert len(events) == 3
    assert np.all(events.event_channels == 1)
    assert np.all(events.n_crossing_channels == 2)


@pytest.mark.parametrize("before, lead", [(3, 1), (0, 0)])
def test_event_channel_window_starts_before_crossing(before, lead):
    waveforms = np.zeros((1, 10, 2))
    # channel 0 peaks at the first sample of the window, channel 1 right after it
    waveforms[0, before - lead, 0] = -10.0
    waveforms[0, before - lead + 1, 1] = -5.0
    assert list(event_channels(waveforms, np.array([-1.0, -1.0]), before, 2)) == [0]

    # a peak just past the window is not seen
    waveforms[0, before - lead + 2, 1] = -50.0
    assert list(event_channels(waveforms, np.array([-1.0, -1.0]), before, 2)) == [0]


def test_threads_share_one_session():
    rng = np.random.default_rng(14)
    trials = [pulse_trial(rng, n_samples=2000 + 100 * k) for k in range(4)]
    config = DetectionConfig(sampling_rate=FS)
    session = DetectionSession()

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(lambda t: detect_spikes([t], config, session)[0], trials))

    assert session.n_trials == 4
    ids = [np.unique(events.trials) for events in results]
    assert all(len(i) == 1 for i in ids)
    assert sorted(int(i[0]) for i in ids) == [0, 1, 2, 3]

    offsets = session.trial_offsets(config.trial_spacing)
    for trial, events in zip(trials, results):
        assert len(events) == 5
        assert np.allclose(events.unwrapped_times - events.spike_times, offsets[events.trials])
        # each call appended the duration of its own trial
        assert session.durations[events.trials[0]] == pytest.approx(trial.shape[0] / FS)


def test_mad_threshold():
    rng = np.random.default_rng(6)
    data = rng.normal(size=(4000, 2))
    config = DetectionConfig(sampling_rate=FS, method='mad', thresh=5.0)
    _, session = detect_spikes(data, config)
    expected = -5.0 * np.median(np.abs(data), axis=0) / MAD_SCALE
    assert np.allclose(session.thresholds, expected)


def test_manual_threshold_per_channel():
    rng = np.random.default_rng(7)
    data = rng.normal(size=(4000, 2))
    config = DetectionConfig(sampling_rate=FS, method='manual', thresh=[-3.0, -100.0])
    events, session = detect_spikes(data, config)
    assert np.array_equal(session.thresholds, [-3.0, -100.0])
    assert np.all(events.event_channels == 0)


def test_manual_threshold_channel_mismatch():
    config = DetectionConfig(sampling_rate=FS, method='manual', thresh=[-3.0, -3.0, -3.0])
    with pytest.raises(ConfigurationError, match="3 values"):
        detect_spikes(np.ones((100, 2)), config)


def test_zero_variance_trial_is_degenerate():
    rng = np.random.default_rng(8)
    data = rng.normal(size=(1000, 2))
    data[:, 1] = 0.0
    with pytest.raises(NumericDegeneracyError, match="channel 1"):
        detect_spikes(data, DetectionConfig(sampling_rate=FS))


def test_short_trial_yields_no_events():
    rng = np.random.default_rng(9)
    config = DetectionConfig(sampling_rate=FS)
    trials = [pulse_trial(rng), rng.normal(size=(10, 1))]
    events, session = detect_spikes(trials, config)
    assert session.n_trials == 2
    assert len(events) == 5
    assert not np.any(events.trials == 1)


def test_zero_event_trial_is_valid():
    rng = np.random.default_rng(10)
    config = DetectionConfig(sampling_rate=FS)
    _, session = detect_spikes(pulse_trial(rng), config)
    quiet = np.zeros((2000, 1))
    events, session = detect_spikes(quiet, config, session)
    assert len(events) == 0
    assert events.waveforms.shape[1:] == (config.samples_before + 1 + config.samples_after, 1)


def test_no_trials_on_first_call():
    with pytest.raises(MissingInputError):
        detect_spikes([], DetectionConfig(sampling_rate=FS))


def test_noise_covariance_shape():
    rng = np.random.default_rng(11)
    config = DetectionConfig(sampling_rate=FS, max_noise_samples=2000)
    _, session = detect_spikes(rng.normal(size=(2, 3000, 2)), config, random_state=0)
    size = config.window_samples * 2
    assert session.noise_cov.shape == (size, size)
    assert np.allclose(session.noise_cov, session.noise_cov.T)
    # unit-variance white noise
    assert np.allclose(np.diag(session.noise_cov), 1.0, atol=0.2)


def test_session_starts_unfrozen():
    session = DetectionSession()
    assert not session.is_frozen
    assert session.n_trials == 0
    assert session.n_channels is None
