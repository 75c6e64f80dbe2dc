"""Spike detection: multi-channel threshold crossing over a session of trials."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from energysort.config import DetectionConfig, DetectionMethod
from energysort.errors import ConfigurationError, MissingInputError, NumericDegeneracyError
from energysort.types import SpikeEvents

logger = logging.getLogger("energysort")

# Scales the median absolute deviation to a standard deviation for Gaussian noise
MAD_SCALE = 0.6745

TrialData = Union[np.ndarray, Sequence[np.ndarray]]


@dataclass
class DetectionSession:
    """State shared by successive detection calls on one recording session.

    The threshold is computed from the first call and frozen; later calls
    append trials and reuse it unchanged.
    """
    thresholds: Optional[np.ndarray] = None       # Shape: (n_channels,)
    noise_levels: Optional[np.ndarray] = None     # mean per-channel std or scaled MAD
    noise_cov: Optional[np.ndarray] = None        # covariance of flattened background windows
    durations: List[float] = field(default_factory=list)   # s, one per trial seen
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_frozen(self) -> bool:
        return self.thresholds is not None

    @property
    def n_trials(self) -> int:
        return len(self.durations)

    @property
    def n_channels(self) -> Optional[int]:
        return None if self.thresholds is None else len(self.thresholds)

    def trial_offsets(self, trial_spacing: float) -> np.ndarray:
        """Start of each trial on the unwrapped timeline (s)."""
        durations = np.asarray(self.durations, dtype=float)
        starts = np.concatenate(([0.0], np.cumsum(durations)[:-1])) if len(durations) else durations
        return starts + trial_spacing * np.arange(len(durations))


def detect_spikes(
    trials: TrialData,
    config: DetectionConfig,
    session: Optional[DetectionSession] = None,
    random_state=None,
) -> Tuple[SpikeEvents, DetectionSession]:
    """Detect threshold crossings in every trial and cut their waveforms.

    Args:
        trials: ``[trials x samples x channels]`` array, a single
            ``[samples x channels]`` matrix, or a sequence of such matrices.
        config: detection parameters.
        session: state of previous calls. Pass the session returned by an
            earlier call to append trials; its threshold is reused verbatim.
        random_state: seed or Generator for the noise covariance sampling.

    Returns:
        (events, session): the events found in *these* trials, with trial ids
        and unwrapped times continuing from earlier calls, and the session.
    """
    trial_list = _as_trial_list(trials)
    session = session if session is not None else DetectionSession()

    with session._lock:
        n_channels = trial_list[0].shape[1] if trial_list else session.n_channels
        for j, data in enumerate(trial_list):
            if data.shape[1] != n_channels:
                raise ValueError(
                    f"Trial {session.n_trials + j} has {data.shape[1]} channels, expected {n_channels}"
                )

        if not session.is_frozen:
            if not trial_list:
                raise MissingInputError("No trials supplied; cannot compute a detection threshold")
            rng = np.random.default_rng(random_state)
            session.thresholds, session.noise_levels = compute_thresholds(trial_list, config)
            session.noise_cov = noise_covariance(
                trial_list, config.window_samples, config.max_noise_samples, rng
            )
            logger.info(
                f"Detection threshold ({config.method.value}) frozen at "
                f"{np.array2string(session.thresholds, precision=3)}"
            )
        elif n_channels is not None and n_channels != session.n_channels:
            raise ValueError(
                f"Appended trials have {n_channels} channels, session has {session.n_channels}"
            )

        first_trial = session.n_trials
        for data in trial_list:
            session.durations.append(data.shape[0] / config.sampling_rate)
        offsets = session.trial_offsets(config.trial_spacing)

        parts = []
        for j, data in enumerate(trial_list):
            trial_id = first_trial + j
            crossings, counts = find_crossings(data, session.thresholds)
            crossings = apply_shadow(crossings, config.shadow_samples)

            # Ensure we're not too close to edges for waveform extraction
            crossings = crossings[
                (crossings >= config.samples_before)
                & (crossings + config.samples_after < data.shape[0])
            ]

            waveforms = extract_waveforms(data, crossings, config.samples_before, config.samples_after)
            spike_times = crossings / config.sampling_rate
            parts.append(SpikeEvents(
                spike_times=spike_times,
                trials=np.full(len(crossings), trial_id, dtype=np.int64),
                waveforms=waveforms,
                unwrapped_times=spike_times + offsets[trial_id],
                event_channels=event_channels(
                    waveforms, session.thresholds, config.samples_before, config.jitter_samples
                ),
                n_crossing_channels=counts[crossings].astype(np.int64),
            ))

        if parts:
            events = SpikeEvents.concatenate(parts)
        else:
            events = SpikeEvents.empty(
                config.samples_before + 1 + config.samples_after, session.n_channels
            )

    duration = sum(session.durations[first_trial:])
    if duration > 0:
        logger.info(
            f"Detected {len(events)} events in {len(trial_list)} trials; "
            f"on average {len(events) / duration:.2f} events per second of data"
        )
    return events, session


# ---------------------------------------------------------------------------
# Threshold and noise estimates
# ---------------------------------------------------------------------------

def compute_thresholds(trials: Sequence[np.ndarray], config: DetectionConfig) -> Tuple[np.ndarray, np.ndarray]:
    """Per-channel threshold and noise level, averaged over trials."""
    method = config.method
    n_channels = trials[0].shape[1]
    thresh_list = []
    noise_list = []

    if method == DetectionMethod.MANUAL:
        manual = np.asarray(config.thresh, dtype=float)
        if manual.ndim == 1 and len(manual) != n_channels:
            raise ConfigurationError(
                f"Manual thresh has {len(manual)} values but the data has {n_channels} channels"
            )
        if np.any(manual == 0):
            raise ConfigurationError(f"Manual thresh must be non-zero on every channel, got {config.thresh!r}")
        manual = np.broadcast_to(manual, (n_channels,))

    for j, data in enumerate(trials):
        if data.shape[0] < 2:
            logger.warning(f"Trial {j} has {data.shape[0]} samples; ignored for the threshold estimate")
            continue

        if method == DetectionMethod.MAD:
            noise = np.median(np.abs(data), axis=0) / MAD_SCALE
        else:
            noise = np.std(data, axis=0, ddof=1)

        if method == DetectionMethod.MANUAL:
            thresh = manual
        else:
            bad = np.flatnonzero(~(noise > 0) | ~np.isfinite(noise))
            if len(bad):
                raise NumericDegeneracyError(
                    f"Trial {j} channel {bad[0]} has a noise estimate of {noise[bad[0]]}; "
                    f"cannot set a '{method.value}' threshold of {config.thresh} noise units"
                )
            thresh = -float(config.thresh) * noise

        thresh_list.append(np.array(thresh, dtype=float))
        noise_list.append(noise)

    if not thresh_list:
        raise MissingInputError("All trials are too short to estimate a detection threshold")

    return np.mean(thresh_list, axis=0), np.mean(noise_list, axis=0)


def noise_covariance(
    trials: Sequence[np.ndarray],
    window_samples: int,
    max_samples: int,
    rng: np.random.Generator,
) -> Optional[np.ndarray]:
    """Covariance of randomly placed background windows, flattened (samples, channels)."""
    eligible = [data for data in trials if data.shape[0] >= window_samples]
    if not eligible:
        logger.warning(f"No trial holds a {window_samples}-sample window; noise covariance not computed")
        return None

    lengths = np.array([data.shape[0] for data in eligible])
    trial_index = rng.integers(len(eligible), size=max_samples)
    starts = (rng.random(max_samples) * (lengths[trial_index] - window_samples + 1)).astype(np.int64)

    waves = np.stack([
        eligible[k][s:s + window_samples].ravel() for k, s in zip(trial_index, starts)
    ])
    return np.atleast_2d(np.cov(waves, rowvar=False))


# ---------------------------------------------------------------------------
# Crossing detection and waveform cutting
# ---------------------------------------------------------------------------

def find_crossings(data: np.ndarray, thresholds: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Downward crossings on any channel.

    Returns (candidates, counts): sorted sample indices where at least one
    channel goes from above to at/below its threshold, and the per-sample
    number of crossing channels.
    """
    if data.shape[0] < 2:
        return np.zeros(0, dtype=np.int64), np.zeros(data.shape[0], dtype=np.int64)
    crossing = (data[:-1] > thresholds) & (data[1:] <= thresholds)
    counts = np.concatenate((crossing.sum(axis=1), [0]))
    return np.flatnonzero(counts), counts


def apply_shadow(candidates: np.ndarray, shadow: int) -> np.ndarray:
    """Drop candidates within ``shadow`` samples of the previously kept one."""
    if len(candidates) == 0:
        return candidates.astype(np.int64)
    candidates = np.sort(candidates)
    kept = [candidates[0]]
    for c in candidates[1:]:
        if c - kept[-1] > shadow:
            kept.append(c)
    return np.asarray(kept, dtype=np.int64)


def extract_waveforms(data: np.ndarray, crossings: np.ndarray, samples_before: int, samples_after: int) -> np.ndarray:
    """Cut ``[i - samples_before, i + samples_after]`` on all channels. Returns (n, samples, channels)."""
    offsets = np.arange(-samples_before, samples_after + 1)
    if len(crossings) == 0:
        return np.zeros((0, len(offsets), data.shape[1]), dtype=data.dtype)
    return data[crossings[:, None] + offsets[None, :], :]


def event_channels(
    waveforms: np.ndarray,
    thresholds: np.ndarray,
    samples_before: int,
    jitter_samples: int,
) -> np.ndarray:
    """Channel with the largest threshold-normalized negative excursion around the crossing.

    The window holds ``jitter_samples`` samples (at least one) starting one
    sample before the crossing.
    """
    if len(waveforms) == 0:
        return np.zeros(0, dtype=np.int64)
    start = max(0, samples_before - 1)
    window = waveforms[:, start:start + max(1, jitter_samples), :]
    excursion = window.min(axis=1) / thresholds[None, :]
    return np.argmax(excursion, axis=1).astype(np.int64)


def _as_trial_list(trials: TrialData) -> List[np.ndarray]:
    if isinstance(trials, np.ndarray):
        if trials.ndim == 3:
            return [np.asarray(t, dtype=float) for t in trials]
        if trials.ndim in (1, 2):
            trials = [trials]
        else:
            raise ValueError(f"Trial array must be 1-, 2- or 3-D, got shape {trials.shape}")

    trial_list = []
    for j, t in enumerate(trials):
        t = np.asarray(t, dtype=float)
        if t.ndim == 1:
            t = t[:, None]
        if t.ndim != 2:
            raise ValueError(f"Trial {j} must be a [samples x channels] matrix, got shape {t.shape}")
        trial_list.append(t)
    return trial_list
