"""
Key Detection: native key extractor (primary) with chroma fallback.

Strategy:
1. Silent input short-circuits to a zero-confidence "C Major"
2. Primary: backend key extraction over the full signal and its middle half;
   agreeing results reinforce each other, disagreeing ones are penalized
3. Fallback: autocorrelation chroma correlated against 24 rotated
   Krumhansl-Schmuckler profiles (Pearson); best rotation wins

The estimator never raises for algorithmic failure: anything unexpected
degrades to a low-confidence default. Only cancellation propagates.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from tempokey.analyze.backends import KeyExtract, KeyExtractPrimitive
from tempokey.analyze.chroma import extract_chroma
from tempokey.analyze.models import (
    NOTE_NAMES,
    ChromaVector,
    KeyResult,
    Mode,
    SampleBuffer,
    clamp_unit,
    is_valid_note,
)
from tempokey.cancellation import CancellationToken, check_cancelled
from tempokey.errors import AnalysisCancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[float], None]]

# Krumhansl-Schmuckler key profiles, tonic first
MAJOR_PROFILE = np.array([6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88])
_MINOR_BASE = np.array([6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17])
# Minor third and minor seventh emphasized for better minor detection
MINOR_PROFILE = _MINOR_BASE * np.array([1, 1, 1, 1.2, 1, 1, 1, 1, 1, 1, 1.1, 1])
MINOR_PREFERENCE = 1.05
MIN_CORRELATION = 0.1

# Primary consensus weights (full signal vs middle half)
_FULL_WEIGHT = 1.0
_MIDDLE_WEIGHT = 0.8
_AGREEMENT_BOOST = 1.2
_DISAGREEMENT_PENALTY = 0.8


class KeyStrategy(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    SILENT = "silent"
    DEFAULT = "default"


@dataclass(frozen=True)
class KeyProfileMatch:
    root: str
    mode: Mode
    correlation: float


def pearson_correlation(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson correlation; 0 when either input is constant."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if len(x) != len(y) or len(x) == 0:
        return 0.0
    xd = x - x.mean()
    yd = y - y.mean()
    denom = float(np.sqrt(np.sum(xd * xd) * np.sum(yd * yd)))
    if denom == 0:
        return 0.0
    return float(np.sum(xd * yd) / denom)


def rank_key_profiles(chroma: ChromaVector) -> List[KeyProfileMatch]:
    """
    Correlate a chroma vector with all 24 major/minor key profiles.

    Returns:
        Matches sorted by correlation, best first
    """
    values = chroma.as_array()
    matches = []
    for root_index, root in enumerate(NOTE_NAMES):
        # Profile value for pitch class p when the tonic is root_index
        major = np.roll(MAJOR_PROFILE, root_index)
        minor = np.roll(MINOR_PROFILE, root_index)
        matches.append(KeyProfileMatch(root, Mode.MAJOR, pearson_correlation(values, major)))
        matches.append(
            KeyProfileMatch(root, Mode.MINOR, pearson_correlation(values, minor) * MINOR_PREFERENCE)
        )
    matches.sort(key=lambda m: m.correlation, reverse=True)
    return matches


def match_key_profile(chroma: ChromaVector) -> KeyResult:
    """Pick the best-correlated key for a chroma vector."""
    if chroma.confidence <= 0 and sum(chroma.bins) <= 0:
        return KeyResult.default(confidence=0.0)

    best = rank_key_profiles(chroma)[0]
    if best.correlation < MIN_CORRELATION:
        logger.debug("No strong key profile correlation; using C Major")
        return KeyResult.default(confidence=MIN_CORRELATION)
    return KeyResult.from_root(best.root, best.mode, clamp_unit(best.correlation))


class KeyEstimator:
    """
    Musical key estimator.

    Args:
        key_extractor: Primary backend (None = fallback only)
        config: key_detection config section
        silence_threshold: Mean absolute amplitude under which input is silent
    """

    def __init__(
        self,
        key_extractor: Optional[KeyExtractPrimitive] = None,
        config: Optional[dict] = None,
        silence_threshold: float = 0.001,
    ):
        config = config or {}
        self.key_extractor = key_extractor
        self.window_size = config.get("window_size", 2048)
        self.min_pitch_hz = config.get("min_pitch_hz", 80)
        self.max_pitch_hz = config.get("max_pitch_hz", 2000)
        self.max_analysis_seconds = config.get("max_analysis_seconds", 30)
        self.max_windows = config.get("max_windows", 600)
        self.pitches_per_window = config.get("pitches_per_window", 3)
        self.silence_threshold = silence_threshold

    def estimate(
        self,
        buffer: SampleBuffer,
        on_progress: ProgressCallback = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> KeyResult:
        """
        Estimate the key of a buffer. Never raises except on cancellation.

        Args:
            buffer: Decoded audio
            on_progress: Receives 0-100 for this estimator
            cancel_token: Cooperative cancellation

        Returns:
            KeyResult (always well-formed)
        """
        report = on_progress or (lambda _p: None)
        try:
            result, strategy = self._estimate(buffer, report, cancel_token)
        except AnalysisCancelledError:
            raise
        except Exception as e:
            logger.error(f"Key estimation failed unexpectedly: {e}", exc_info=True)
            result, strategy = KeyResult.default(confidence=0.0), KeyStrategy.DEFAULT

        report(100)
        logger.info(
            f"✅ Key detected: {result.key_name} "
            f"(method: {strategy.value}, confidence: {result.confidence:.2f})"
        )
        return result

    def _estimate(
        self,
        buffer: SampleBuffer,
        report: Callable[[float], None],
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[KeyResult, KeyStrategy]:
        check_cancelled(cancel_token, "key_detection")
        report(10)

        signal = buffer.mono()
        if float(np.mean(np.abs(signal))) < self.silence_threshold:
            logger.debug("Silent input; skipping key detection")
            return KeyResult.default(confidence=0.0), KeyStrategy.SILENT

        if self.key_extractor is not None:
            result = self._primary(signal, buffer.sample_rate, report, cancel_token)
            if result is not None:
                return result, KeyStrategy.PRIMARY

        return self._fallback(buffer, report, cancel_token), KeyStrategy.FALLBACK

    def _primary(
        self,
        signal: np.ndarray,
        sample_rate: int,
        report: Callable[[float], None],
        cancel_token: Optional[CancellationToken],
    ) -> Optional[KeyResult]:
        """Full-signal and middle-half extraction with consensus; None on failure."""
        peak = float(np.max(np.abs(signal)))
        if peak > 0:
            signal = signal / peak

        segments = [(signal, _FULL_WEIGHT)]
        quarter = len(signal) // 4
        if quarter > 0:
            segments.append((signal[quarter:len(signal) - quarter], _MIDDLE_WEIGHT))

        results: List[Tuple[KeyExtract, float]] = []
        for progress, (segment, weight) in zip((50, 70), segments):
            check_cancelled(cancel_token, "key_detection")
            try:
                extract = self.key_extractor.extract_key(segment, sample_rate)
            except Exception as e:
                logger.warning(f"Primary key extraction failed: {e}")
                continue
            if not is_valid_note(extract.note):
                logger.warning(f"Primary key extractor returned unknown note {extract.note!r}")
                continue
            results.append((extract, weight))
            report(progress)

        if not results:
            return None
        return self._consensus(results)

    @staticmethod
    def _consensus(results: List[Tuple[KeyExtract, float]]) -> KeyResult:
        first = results[0][0]
        if len(results) == 1:
            return KeyResult.from_root(first.note, Mode.parse(first.scale), clamp_unit(first.strength))

        agree = all(
            r.note == first.note and Mode.parse(r.scale) == Mode.parse(first.scale)
            for r, _ in results
        )
        if agree:
            weighted = sum(r.strength * w for r, w in results) / sum(w for _, w in results)
            return KeyResult.from_root(
                first.note, Mode.parse(first.scale), clamp_unit(weighted * _AGREEMENT_BOOST)
            )

        best, _ = max(results, key=lambda item: item[0].strength)
        return KeyResult.from_root(
            best.note, Mode.parse(best.scale), clamp_unit(best.strength * _DISAGREEMENT_PENALTY)
        )

    def _fallback(
        self,
        buffer: SampleBuffer,
        report: Callable[[float], None],
        cancel_token: Optional[CancellationToken],
    ) -> KeyResult:
        excerpt = buffer.excerpt(self.max_analysis_seconds)
        chroma = extract_chroma(
            excerpt.mono(),
            excerpt.sample_rate,
            window_size=self.window_size,
            min_hz=self.min_pitch_hz,
            max_hz=self.max_pitch_hz,
            max_windows=self.max_windows,
            pitches_per_window=self.pitches_per_window,
            cancel_token=cancel_token,
        )
        report(60)
        check_cancelled(cancel_token, "key_detection")
        result = match_key_profile(chroma)
        report(90)
        return result
