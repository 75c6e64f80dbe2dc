# -*- coding: utf-8 -*-
"""Synthetic two-unit recordings shared by the pipeline tests."""
import numpy as np

FS = 10000.0
N_SAMPLES = 20000
SLOTS = np.arange(100, 19900, 250)
TEMPLATE = np.array([0.0, -0.3, -1.0, -0.6, 0.2, 0.35, 0.2, 0.1, 0.0, 0.0])
# scale of the template for each unit on each channel
UNITS = np.array([
    [40.0, 10.0],
    [10.0, 40.0],
])


def make_recording(n_trials=3, seed=0):
    """Two units on two channels in unit-variance noise.

    Returns (trials, units): trials is [trials x samples x channels] and
    units[t, k] is the unit fired in slot k of trial t.
    """
    rng = np.random.default_rng(seed)
    trials = rng.normal(size=(n_trials, N_SAMPLES, 2))
    units = rng.integers(2, size=(n_trials, len(SLOTS)))
    for t in range(n_trials):
        for start, unit in zip(SLOTS, units[t]):
            trials[t, start:start + len(TEMPLATE)] += TEMPLATE[:, None] * UNITS[unit][None, :]
    return trials, units


def unit_of_events(events, units):
    """Ground-truth unit of each detected event, from its slot."""
    samples = np.round(events.spike_times * FS).astype(int)
    slot = (samples - SLOTS[0] + 125) // 250
    return units[events.trials, slot]
