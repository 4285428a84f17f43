"""
Confidence calibration and validation metrics.

Raw estimator confidence comes from signal statistics alone. Calibration
adds genre priors (typical hip-hop tempos, common keys, minor mode) and
audio-quality factors (duration, loudness, clipping, spectral balance)
without changing the estimate itself.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

import numpy as np

from tempokey.analyze.models import Mode, SampleBuffer, clamp_unit, is_valid_note, pitch_class

logger = logging.getLogger(__name__)

# Roots common in hip-hop, as pitch classes so sharp and flat spellings agree
COMMON_KEY_PITCH_CLASSES = frozenset(pitch_class(note) for note in ("A", "C", "D", "F", "G", "Bb", "F#"))

TYPICAL_BPM_BAND = (80, 160)
EXTREME_BPM_LIMITS = (70, 180)

QUIET_AMPLITUDE = 0.01
LOUD_AMPLITUDE = 0.8
# Samples at or above this magnitude count as pinned to full scale
CLIP_LEVEL = 0.999
CLIP_RATIO_LIMIT = 0.01

CENTROID_WINDOW = 1024
CENTROID_MAX_WINDOWS = 200
CENTROID_BAND = (2000.0, 8000.0)
DEFAULT_CENTROID = 1000.0

BPM_TOLERANCE = 2
BPM_HIGH_CONFIDENCE = 0.7
KEY_HIGH_CONFIDENCE = 0.6


@dataclass(frozen=True)
class AudioFeatures:
    duration: float
    average_amplitude: float
    rms: float
    clip_ratio: float
    spectral_centroid: float

    @property
    def is_quiet(self) -> bool:
        return self.average_amplitude < QUIET_AMPLITUDE

    @property
    def is_clipped(self) -> bool:
        return self.average_amplitude > LOUD_AMPLITUDE or self.clip_ratio > CLIP_RATIO_LIMIT


@dataclass(frozen=True)
class CalibrationMetrics:
    accuracy: float
    precision: float
    recall: float
    f1_score: float


def spectral_centroid(signal: np.ndarray, sample_rate: int) -> float:
    """
    Mean magnitude-weighted frequency over evenly spaced windows.

    Args:
        signal: Mono samples
        sample_rate: Samples per second

    Returns:
        Centroid in Hz (DEFAULT_CENTROID when nothing is audible)
    """
    n_windows = len(signal) // CENTROID_WINDOW
    if n_windows == 0:
        return DEFAULT_CENTROID

    picks = np.linspace(0, n_windows - 1, min(n_windows, CENTROID_MAX_WINDOWS)).astype(int)
    frames = np.stack([signal[i * CENTROID_WINDOW:(i + 1) * CENTROID_WINDOW] for i in picks])
    magnitudes = np.abs(np.fft.rfft(frames, axis=1))
    freqs = np.fft.rfftfreq(CENTROID_WINDOW, d=1.0 / sample_rate)

    totals = magnitudes.sum(axis=1)
    audible = totals > 0
    if not np.any(audible):
        return DEFAULT_CENTROID
    centroids = (magnitudes[audible] @ freqs) / totals[audible]
    return float(np.mean(centroids))


def extract_audio_features(buffer: SampleBuffer) -> AudioFeatures:
    """Compute the audio-quality features used for calibration."""
    signal = buffer.mono()
    magnitude = np.abs(signal)
    return AudioFeatures(
        duration=buffer.duration,
        average_amplitude=float(np.mean(magnitude)),
        rms=float(np.sqrt(np.mean(signal ** 2))),
        clip_ratio=float(np.mean(magnitude >= CLIP_LEVEL)),
        spectral_centroid=spectral_centroid(signal, buffer.sample_rate),
    )


def _finish(raw: float, calibrated: float) -> float:
    # A zero raw score (silence, nothing detected) is never lifted by priors
    if raw is None or not raw > 0:
        return 0.0
    return clamp_unit(calibrated)


def calibrate_bpm_confidence(
    raw_confidence: float,
    bpm: float,
    buffer: SampleBuffer,
    features: Optional[AudioFeatures] = None,
) -> float:
    """
    Calibrate a tempo confidence with genre and audio-quality priors.

    Args:
        raw_confidence: Estimator confidence
        bpm: Detected tempo
        buffer: Analyzed audio
        features: Precomputed features for buffer (computed when None)

    Returns:
        Calibrated confidence in [0, 1]
    """
    features = features or extract_audio_features(buffer)
    confidence = raw_confidence

    if TYPICAL_BPM_BAND[0] <= bpm <= TYPICAL_BPM_BAND[1]:
        confidence += 0.1
    elif bpm < EXTREME_BPM_LIMITS[0] or bpm > EXTREME_BPM_LIMITS[1]:
        confidence -= 0.15

    if features.duration >= 8:
        confidence += 0.1
    elif features.duration < 3:
        confidence -= 0.1

    if features.is_quiet:
        confidence -= 0.2
    elif features.is_clipped:
        confidence -= 0.1

    if CENTROID_BAND[0] < features.spectral_centroid < CENTROID_BAND[1]:
        confidence += 0.05

    calibrated = _finish(raw_confidence, confidence)
    logger.debug(f"BPM confidence calibrated: {raw_confidence:.2f} -> {calibrated:.2f}")
    return calibrated


def calibrate_key_confidence(
    raw_confidence: float,
    note: str,
    mode: Mode,
    buffer: SampleBuffer,
    features: Optional[AudioFeatures] = None,
) -> float:
    """
    Calibrate a key confidence with genre and audio-quality priors.

    Args:
        raw_confidence: Estimator confidence
        note: Detected root note
        mode: Detected mode
        buffer: Analyzed audio
        features: Precomputed features for buffer (computed when None)

    Returns:
        Calibrated confidence in [0, 1]
    """
    features = features or extract_audio_features(buffer)
    confidence = raw_confidence

    if is_valid_note(note) and pitch_class(note) in COMMON_KEY_PITCH_CLASSES:
        confidence += 0.05
    if Mode(mode) == Mode.MINOR:
        confidence += 0.1

    if features.duration >= 10:
        confidence += 0.15
    elif features.duration >= 5:
        confidence += 0.05
    elif features.duration < 3:
        confidence -= 0.2

    if features.is_quiet:
        confidence -= 0.25
    elif features.is_clipped:
        confidence -= 0.15

    calibrated = _finish(raw_confidence, confidence)
    logger.debug(f"Key confidence calibrated: {raw_confidence:.2f} -> {calibrated:.2f}")
    return calibrated


def _metrics(outcomes: Iterable[Tuple[bool, bool]]) -> CalibrationMetrics:
    """Metrics from (correct, high_confidence) pairs."""
    total = true_pos = false_pos = false_neg = 0
    for correct, confident in outcomes:
        total += 1
        if correct and confident:
            true_pos += 1
        elif confident:
            false_pos += 1
        elif correct:
            false_neg += 1

    precision = true_pos / (true_pos + false_pos) if true_pos + false_pos else 0.0
    recall = true_pos / (true_pos + false_neg) if true_pos + false_neg else 0.0
    accuracy = true_pos / total if total else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
    return CalibrationMetrics(accuracy=accuracy, precision=precision, recall=recall, f1_score=f1)


def bpm_validation_metrics(results: Iterable[Dict], tolerance: float = BPM_TOLERANCE) -> CalibrationMetrics:
    """
    Score labelled tempo results.

    Args:
        results: Dicts with "detected", "expected" and "confidence"
        tolerance: Max BPM error counted as correct

    Returns:
        CalibrationMetrics (a confident wrong answer is a false positive)
    """
    return _metrics(
        (abs(r["detected"] - r["expected"]) <= tolerance, r["confidence"] > BPM_HIGH_CONFIDENCE)
        for r in results
    )


def key_validation_metrics(results: Iterable[Dict]) -> CalibrationMetrics:
    """
    Score labelled key results.

    Args:
        results: Dicts with "detected_key", "detected_mode", "expected_key",
            "expected_mode" and "confidence"
    """
    return _metrics(
        (
            r["detected_key"] == r["expected_key"] and r["detected_mode"] == r["expected_mode"],
            r["confidence"] > KEY_HIGH_CONFIDENCE,
        )
        for r in results
    )
