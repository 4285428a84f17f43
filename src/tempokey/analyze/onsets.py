"""
Onset detection by spectral-flux peak picking.

Algorithm:
1. Frame the mono signal (Hann window) and take magnitude spectra
2. Spectral flux = sum of positive bin-wise magnitude increases per frame
3. Keep local maxima above a moving-average threshold
4. Enforce a minimum spacing between onsets (keep the stronger one)
"""

import logging
from typing import List, Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from tempokey.analyze.models import OnsetEvent
from tempokey.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

# Frames transformed per FFT batch (bounds peak memory on long buffers)
_BLOCK_FRAMES = 2048


def spectral_flux(
    signal: np.ndarray,
    frame_size: int = 1024,
    hop_size: int = 512,
    cancel_token: Optional[CancellationToken] = None,
) -> np.ndarray:
    """
    Compute the positive spectral flux of a mono signal.

    Args:
        signal: Mono samples
        frame_size: FFT frame length in samples
        hop_size: Hop between frames in samples
        cancel_token: Checked between FFT batches

    Returns:
        Flux per frame (first frame is 0); empty for empty input
    """
    signal = np.asarray(signal, dtype=np.float64)
    if len(signal) == 0:
        return np.zeros(0)
    if len(signal) < frame_size:
        signal = np.pad(signal, (0, frame_size - len(signal)))

    frames = sliding_window_view(signal, frame_size)[::hop_size]
    window = np.hanning(frame_size)
    flux = np.zeros(len(frames))
    previous = None

    for start in range(0, len(frames), _BLOCK_FRAMES):
        check_cancelled(cancel_token, "onset_detection")
        block = frames[start:start + _BLOCK_FRAMES] * window
        magnitudes = np.abs(np.fft.rfft(block, axis=1))
        if previous is None:
            previous = magnitudes[0]
        stacked = np.vstack([previous[np.newaxis, :], magnitudes])
        diff = np.diff(stacked, axis=0)
        flux[start:start + len(magnitudes)] = np.sum(np.maximum(diff, 0.0), axis=1)
        previous = magnitudes[-1]

    return flux


def _moving_average(values: np.ndarray, width: int) -> np.ndarray:
    # np.convolve(mode="same") returns max(M, N) samples, so keep the kernel shorter
    width = max(1, min(width, len(values)))
    if width % 2 == 0:
        width -= 1
    kernel = np.ones(width) / width
    return np.convolve(values, kernel, mode="same")


def pick_peaks(
    flux: np.ndarray,
    frame_rate: float,
    min_spacing_ms: float = 50.0,
    delta: float = 0.1,
    average_window_seconds: float = 0.25,
) -> List[OnsetEvent]:
    """
    Pick onset peaks from a flux curve.

    Args:
        flux: Spectral flux per frame
        frame_rate: Frames per second (sample_rate / hop_size)
        min_spacing_ms: Minimum distance between kept onsets
        delta: Threshold offset above the local mean (flux normalized to max 1)
        average_window_seconds: Width of the moving-average threshold

    Returns:
        Time-ascending onset events; strength is normalized flux
    """
    if len(flux) < 3:
        return []
    peak = float(np.max(flux))
    if peak <= 0:
        return []

    norm = flux / peak
    threshold = _moving_average(norm, int(average_window_seconds * frame_rate)) + delta

    interior = norm[1:-1]
    is_peak = (
        (interior > 0)
        & (interior >= norm[:-2])
        & (interior > norm[2:])
        & (interior > threshold[1:-1])
    )
    peak_frames = np.nonzero(is_peak)[0] + 1

    min_spacing = min_spacing_ms / 1000.0
    kept: List[OnsetEvent] = []
    for frame in peak_frames:
        event = OnsetEvent(time_seconds=frame / frame_rate, strength=float(norm[frame]))
        if kept and event.time_seconds - kept[-1].time_seconds < min_spacing:
            if event.strength > kept[-1].strength:
                kept[-1] = event
            continue
        kept.append(event)

    return kept


def detect_onsets(
    signal: np.ndarray,
    sample_rate: int,
    frame_size: int = 1024,
    hop_size: int = 512,
    min_spacing_ms: float = 50.0,
    cancel_token: Optional[CancellationToken] = None,
) -> List[OnsetEvent]:
    """
    Detect onsets in a mono signal.

    Returns:
        Time-ascending list of OnsetEvent
    """
    flux = spectral_flux(signal, frame_size, hop_size, cancel_token)
    onsets = pick_peaks(flux, sample_rate / hop_size, min_spacing_ms=min_spacing_ms)
    logger.debug(f"Detected {len(onsets)} onsets in {len(signal) / sample_rate:.1f}s")
    return onsets


def inter_onset_intervals(onsets: List[OnsetEvent]) -> np.ndarray:
    """Seconds between consecutive onsets."""
    if len(onsets) < 2:
        return np.zeros(0)
    times = np.array([o.time_seconds for o in onsets])
    return np.diff(times)
