"""
Chroma extraction by autocorrelation pitch detection.

The signal is scanned in short windows. Each window's Hann-weighted power
spectrum is peeled one partial at a time: the strongest in-band peak and
the bins down to its neighbouring minima are isolated, the period of that
partial is read off its autocorrelation (the inverse transform of its
isolated power, divided by the window's own autocorrelation), and the
partial's bins are zeroed before the next search. Each partial casts an
energy-weighted vote for its pitch class, so a sustained chord contributes
every one of its notes.
"""

import functools
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from tempokey.analyze.models import ChromaVector
from tempokey.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

# Windows quieter than this mean-square level are skipped
ENERGY_THRESHOLD = 1e-5
# A partial must hold at least this share of the remaining power to count as pitched
MIN_TONAL_SHARE = 0.1
# Stop peeling pitches once the residual drops below this share of the window power
RESIDUAL_FLOOR = 0.1
# Lag search around the spectral period estimate
_LAG_SEARCH = (0.8, 1.25)


@dataclass(frozen=True)
class Partial:
    frequency: float
    correlation: float
    lag: int
    power: float
    left: int
    right: int


def frequency_to_pitch_class(frequency: float) -> int:
    """Pitch class (0-11, C=0) of a frequency in Hz."""
    if frequency <= 0:
        return 0
    midi_note = 12 * math.log2(frequency / 440.0) + 69
    return int(round(midi_note)) % 12


@functools.lru_cache(maxsize=8)
def _window_autocorrelation(n: int, nfft: int) -> np.ndarray:
    """Normalized autocorrelation of an n-point Hann window."""
    spectrum = np.fft.rfft(np.hanning(n), nfft)
    acf = np.fft.irfft(np.abs(spectrum) ** 2, nfft)[:n]
    acf = acf / acf[0]
    acf.flags.writeable = False
    return acf


def _power_spectrum(window: np.ndarray) -> Optional[Tuple[np.ndarray, int]]:
    n = len(window)
    if n < 200:
        return None
    centred = np.asarray(window, dtype=np.float64) - float(np.mean(window))
    nfft = 1 << int(math.ceil(math.log2(2 * n)))
    power = np.abs(np.fft.rfft(centred * np.hanning(n), nfft)) ** 2
    if float(power.sum()) <= 0:
        return None
    return power, nfft


def _peak_region(power: np.ndarray, k: int) -> Tuple[int, int]:
    """Bins around peak k out to the neighbouring local minima (inclusive)."""
    left = k
    while left > 0 and power[left - 1] < power[left]:
        left -= 1
    right = k
    while right < len(power) - 1 and power[right + 1] < power[right]:
        right += 1
    return left, right


def _strongest_partial(
    power: np.ndarray,
    n: int,
    nfft: int,
    sample_rate: int,
    min_hz: float,
    max_hz: float,
) -> Optional[Partial]:
    """Isolate the strongest in-band partial and measure its period; None when unpitched."""
    bin_hz = sample_rate / nfft
    lo_bin = max(1, int(math.ceil(min_hz / bin_hz)))
    hi_bin = min(len(power) - 2, int(max_hz / bin_hz))
    if hi_bin <= lo_bin:
        return None

    # Only true local maxima count, so the band edges cannot pose as peaks
    band = power[lo_bin:hi_bin + 1]
    is_peak = (band >= power[lo_bin - 1:hi_bin]) & (band > power[lo_bin + 1:hi_bin + 2]) & (band > 0)
    candidates = np.nonzero(is_peak)[0]
    if len(candidates) == 0:
        return None
    k = lo_bin + int(candidates[np.argmax(band[candidates])])

    left, right = _peak_region(power, k)
    partial_power = float(power[left:right + 1].sum())
    if partial_power < MIN_TONAL_SHARE * float(power.sum()):
        return None

    # Spectral estimate (parabolic on log power) picks the lag search range
    a, b, c = np.log(power[k - 1:k + 2] + 1e-30)
    denom = a - 2 * b + c
    delta = 0.5 * (a - c) / denom if denom < 0 else 0.0
    guess_hz = (k + float(np.clip(delta, -0.5, 0.5))) * bin_hz
    expected_lag = sample_rate / guess_hz

    min_lag = max(2, int(sample_rate // max_hz))
    max_lag = min(int(math.ceil(sample_rate / min_hz)), n // 2)
    lo = max(min_lag, int(expected_lag * _LAG_SEARCH[0]))
    hi = min(max_lag, int(math.ceil(expected_lag * _LAG_SEARCH[1])))
    if hi - lo < 2:
        return None

    isolated = np.zeros_like(power)
    isolated[left:right + 1] = power[left:right + 1]
    acf = np.fft.irfft(isolated, nfft)[:n]
    if acf[0] <= 0:
        return None
    r = acf / acf[0] / np.maximum(_window_autocorrelation(n, nfft), 1e-3)

    lag = lo + int(np.argmax(r[lo:hi + 1]))
    refined = float(lag)
    if lo < lag < hi:
        left_r, centre, right_r = r[lag - 1], r[lag], r[lag + 1]
        curvature = left_r - 2 * centre + right_r
        if curvature < 0:
            refined = lag + float(np.clip(0.5 * (left_r - right_r) / curvature, -0.5, 0.5))

    frequency = sample_rate / refined
    if not min_hz <= frequency <= max_hz:
        return None
    return Partial(
        frequency=frequency,
        correlation=float(np.clip(r[lag], 0.0, 1.0)),
        lag=lag,
        power=partial_power,
        left=left,
        right=right,
    )


def estimate_pitch(
    window: np.ndarray,
    sample_rate: int,
    min_hz: float = 80.0,
    max_hz: float = 2000.0,
) -> Tuple[float, float, int]:
    """
    Estimate the dominant pitch of a window.

    Args:
        window: Mono samples
        sample_rate: Samples per second
        min_hz: Lowest pitch considered
        max_hz: Highest pitch considered

    Returns:
        (frequency_hz, correlation, lag_samples); (0.0, 0.0, 0) when unpitched
    """
    prepared = _power_spectrum(window)
    if prepared is None:
        return 0.0, 0.0, 0
    power, nfft = prepared
    partial = _strongest_partial(power, len(window), nfft, sample_rate, min_hz, max_hz)
    if partial is None:
        return 0.0, 0.0, 0
    return partial.frequency, partial.correlation, partial.lag


def window_pitches(
    window: np.ndarray,
    sample_rate: int,
    min_hz: float = 80.0,
    max_hz: float = 2000.0,
    max_pitches: int = 3,
) -> List[Tuple[float, float]]:
    """
    Peel up to max_pitches partials from a window, strongest first.

    Returns:
        List of (frequency_hz, vote_weight); weights are shares of the
        window's mean-square energy
    """
    prepared = _power_spectrum(window)
    if prepared is None:
        return []
    power, nfft = prepared
    start_power = float(power.sum())
    energy = float(np.var(window))

    found = []
    for _ in range(max_pitches):
        if float(power.sum()) < RESIDUAL_FLOOR * start_power:
            break
        partial = _strongest_partial(power, len(window), nfft, sample_rate, min_hz, max_hz)
        if partial is None:
            break
        found.append((partial.frequency, partial.correlation * energy * partial.power / start_power))
        power[partial.left:partial.right + 1] = 0.0

    return found


def extract_chroma(
    signal: np.ndarray,
    sample_rate: int,
    window_size: int = 2048,
    min_hz: float = 80.0,
    max_hz: float = 2000.0,
    max_windows: int = 600,
    pitches_per_window: int = 3,
    cancel_token: Optional[CancellationToken] = None,
) -> ChromaVector:
    """
    Build a 12-bin chroma vector from a mono signal.

    Args:
        signal: Mono samples (callers bound the length, e.g. to 30 s)
        sample_rate: Samples per second
        window_size: Analysis window length in samples
        min_hz: Lowest pitch considered
        max_hz: Highest pitch considered
        max_windows: Upper bound on analyzed windows
        pitches_per_window: Pitches peeled per window
        cancel_token: Checked periodically while scanning

    Returns:
        ChromaVector; bins sum to 1 when anything pitched was found
    """
    signal = np.asarray(signal, dtype=np.float64)
    if len(signal) < window_size:
        return ChromaVector.empty()

    span = len(signal) - window_size
    step = max(window_size // 2, int(math.ceil(span / max(1, max_windows - 1))) if span else window_size)
    starts = range(0, span + 1, step)

    bins = np.zeros(12)
    total_weight = 0.0
    voting_windows = 0

    for index, start in enumerate(starts):
        if index % 50 == 0:
            check_cancelled(cancel_token, "chroma_extraction")
        window = signal[start:start + window_size]
        if float(np.mean(window ** 2)) < ENERGY_THRESHOLD:
            continue

        pitches = window_pitches(window, sample_rate, min_hz, max_hz, pitches_per_window)
        if not pitches:
            continue
        voting_windows += 1
        for frequency, weight in pitches:
            bins[frequency_to_pitch_class(frequency)] += weight
            total_weight += weight

    if total_weight <= 0:
        logger.debug("No pitched content found for chroma extraction")
        return ChromaVector.empty()

    bins /= total_weight
    confidence = min(1.0, voting_windows / 100.0) if voting_windows > 10 else 0.0
    logger.debug(f"Chroma from {voting_windows} windows: {np.round(bins, 3).tolist()}")
    return ChromaVector(bins=tuple(float(b) for b in bins), confidence=confidence)
