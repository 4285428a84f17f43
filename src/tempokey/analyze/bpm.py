"""
BPM Detection: native beat tracker (primary) with onset autocorrelation fallback.

Strategy:
1. Silent input returns the default tempo with zero confidence
2. Primary: backend beat tracking; tempo from the median beat interval
3. Fallback (primary missing, failing, <2 beats or low confidence):
   spectral-flux onsets -> autocorrelation of the onset train and
   modal inter-onset interval (plus half/double/1.5x variants)
4. Paths that agree within a tolerance are averaged and reinforced;
   disagreeing paths keep the stronger one with a penalty
5. Half/double-time correction toward a plausible band, then snapping to
   common tempos

The estimator never raises for algorithmic failure. Only cancellation
propagates.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from tempokey.analyze.backends import BeatTrackPrimitive
from tempokey.analyze.models import BPMResult, OnsetEvent, SampleBuffer, TempoCandidate, clamp_unit
from tempokey.analyze.onsets import detect_onsets, inter_onset_intervals
from tempokey.cancellation import CancellationToken, check_cancelled
from tempokey.errors import AnalysisCancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[float], None]]

# Tempos that hand-played and programmed material gravitates to
COMMON_TEMPOS = [70, 75, 80, 85, 90, 95, 100, 105, 110, 115, 120, 125, 130, 135, 140, 145, 150]
# Genre-typical band used to break near-ties between candidates
TYPICAL_BAND = (80.0, 160.0)
NEAR_TIE = 0.1

# Interval-histogram resolution (seconds)
INTERVAL_RESOLUTION = 0.01
# Intervals within this fraction of the modal interval count as consistent
INTERVAL_TOLERANCE = 0.05
# Alias variants of the modal interval tempo and their confidence weights
INTERVAL_VARIANTS = ((1.0, 1.0), (0.5, 0.6), (2.0, 0.6), (1.5, 0.5))

AGREEMENT_BOOST = 1.2
DISAGREEMENT_PENALTY = 0.8
DEFAULT_PRIMARY_CONFIDENCE = 0.5

SHORT_BUFFER_SECONDS = 1.0
MIN_ONSETS = 4
SHORT_INPUT_CONFIDENCE_CAP = 0.2
NO_BEATS_CONFIDENCE = 0.1


class TempoStrategy(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    COMBINED = "combined"
    SILENT = "silent"
    DEFAULT = "default"


@dataclass(frozen=True)
class TempoPath:
    """One independent tempo estimate."""

    bpm: float
    confidence: float
    beats: int
    source: str
    intervals: Tuple[float, ...] = ()


def interval_variance(intervals: Sequence[float]) -> float:
    """Variance of intervals relative to their squared mean, capped at 1."""
    values = np.asarray(intervals, dtype=np.float64)
    if len(values) < 2:
        return 1.0
    mean = float(np.mean(values))
    if mean <= 0:
        return 1.0
    return float(min(1.0, np.var(values) / (mean * mean)))


def folded_deviations(intervals: Sequence[float], period: float) -> np.ndarray:
    """Relative deviation of each interval from the nearest multiple of period."""
    values = np.asarray(intervals, dtype=np.float64)
    if len(values) == 0 or period <= 0:
        return np.zeros(0)
    multiples = np.maximum(1.0, np.round(values / period))
    return (values / multiples - period) / period


def autocorrelation_candidates(
    onsets: List[OnsetEvent],
    frame_rate: float,
    bpm_range: Tuple[float, float],
) -> List[TempoCandidate]:
    """
    Tempo candidates from local maxima of the onset-train autocorrelation.

    Args:
        onsets: Detected onsets
        frame_rate: Resolution of the onset train (frames per second)
        bpm_range: (min_bpm, max_bpm); only lags inside it are considered

    Returns:
        One candidate per autocorrelation peak inside the range
    """
    if len(onsets) < 2:
        return []

    min_bpm, max_bpm = bpm_range
    length = int(math.ceil(onsets[-1].time_seconds * frame_rate)) + 3
    train = np.zeros(length)
    for onset in onsets:
        train[int(round(onset.time_seconds * frame_rate))] += onset.strength
    # Spread each impulse over neighbouring frames to absorb one-frame jitter
    train = np.convolve(train, [0.5, 1.0, 0.5], mode="same")

    min_lag = max(1, int(math.floor(60.0 * frame_rate / max_bpm)))
    max_lag = int(math.ceil(60.0 * frame_rate / min_bpm))

    nfft = 1 << int(math.ceil(math.log2(2 * length)))
    spectrum = np.fft.rfft(train, nfft)
    acf = np.fft.irfft(spectrum * np.conj(spectrum), nfft)[:length]
    if acf[0] <= 0:
        return []
    norm = acf / acf[0]

    candidates = []
    for lag in range(min_lag, min(max_lag, length - 2) + 1):
        if not (norm[lag] > norm[lag - 1] and norm[lag] >= norm[lag + 1]):
            continue
        left, centre, right = norm[lag - 1], norm[lag], norm[lag + 1]
        denom = left - 2 * centre + right
        offset = 0.5 * (left - right) / denom if denom != 0 else 0.0
        refined = lag + float(np.clip(offset, -0.5, 0.5))
        bpm = 60.0 * frame_rate / refined
        if min_bpm <= bpm <= max_bpm:
            candidates.append(
                TempoCandidate(bpm=bpm, confidence=clamp_unit(centre), score=float(centre))
            )

    return candidates


def interval_candidates(
    intervals: Sequence[float],
    bpm_range: Tuple[float, float],
) -> List[TempoCandidate]:
    """
    Tempo candidates from the modal inter-onset interval and its variants.

    The modal interval is refined to the mean of all intervals within 5% of
    it; confidence is the share of intervals that agree with it.
    """
    values = np.asarray(intervals, dtype=np.float64)
    values = values[values > 0]
    if len(values) == 0:
        return []

    rounded = np.round(values / INTERVAL_RESOLUTION).astype(int)
    buckets, counts = np.unique(rounded, return_counts=True)
    modal = buckets[int(np.argmax(counts))] * INTERVAL_RESOLUTION
    if modal <= 0:
        return []

    near = values[np.abs(values - modal) <= INTERVAL_TOLERANCE * modal]
    period = float(np.mean(near)) if len(near) else modal
    consistency = len(near) / len(values)

    min_bpm, max_bpm = bpm_range
    candidates = []
    for factor, weight in INTERVAL_VARIANTS:
        bpm = 60.0 / period * factor
        if min_bpm <= bpm <= max_bpm:
            candidates.append(
                TempoCandidate(
                    bpm=bpm,
                    confidence=clamp_unit(consistency * weight),
                    score=consistency,
                    source="interval",
                )
            )
    return candidates


def band_distance(bpm: float, band: Tuple[float, float] = TYPICAL_BAND) -> float:
    low, high = band
    if bpm < low:
        return low - bpm
    if bpm > high:
        return bpm - high
    return 0.0


def select_candidate(
    candidates: List[TempoCandidate],
    band: Tuple[float, float] = TYPICAL_BAND,
) -> Optional[TempoCandidate]:
    """Highest confidence wins; near-ties go to the candidate closest to the band."""
    if not candidates:
        return None
    best = max(candidates, key=lambda c: c.confidence)
    contenders = [c for c in candidates if best.confidence - c.confidence <= NEAR_TIE]
    return min(contenders, key=lambda c: (band_distance(c.bpm, band), -c.confidence))


def merge_paths(paths: List[TempoPath], tolerance: float = 5.0) -> Optional[TempoPath]:
    """
    Combine independent tempo estimates.

    All within tolerance of the strongest: confidence-weighted mean tempo,
    reinforced confidence. Otherwise the strongest path wins, penalized.
    """
    paths = [p for p in paths if p is not None]
    if not paths:
        return None
    if len(paths) == 1:
        return paths[0]

    best = max(paths, key=lambda p: p.confidence)
    if all(abs(p.bpm - best.bpm) <= tolerance for p in paths):
        total = sum(p.confidence for p in paths)
        if total > 0:
            bpm = sum(p.bpm * p.confidence for p in paths) / total
            confidence = sum(p.confidence ** 2 for p in paths) / total
        else:
            bpm = sum(p.bpm for p in paths) / len(paths)
            confidence = 0.0
        return TempoPath(
            bpm=bpm,
            confidence=clamp_unit(confidence * AGREEMENT_BOOST),
            beats=best.beats,
            source="+".join(p.source for p in paths),
            intervals=best.intervals,
        )

    logger.debug(
        "Tempo paths disagree: "
        + ", ".join(f"{p.source}={p.bpm:.1f} ({p.confidence:.2f})" for p in paths)
    )
    return TempoPath(
        bpm=best.bpm,
        confidence=clamp_unit(best.confidence * DISAGREEMENT_PENALTY),
        beats=best.beats,
        source=best.source,
        intervals=best.intervals,
    )


class TempoEstimator:
    """
    Tempo (BPM) estimator.

    Args:
        beat_tracker: Primary backend (None = fallback only)
        config: analysis config section
    """

    def __init__(self, beat_tracker: Optional[BeatTrackPrimitive] = None, config: Optional[dict] = None):
        config = config or {}
        self.beat_tracker = beat_tracker
        self.bpm_range = tuple(float(v) for v in config.get("bpm_range", [60, 200]))
        self.plausible_range = tuple(float(v) for v in config.get("plausible_bpm_range", [70, 180]))
        self.silence_threshold = config.get("silence_threshold", 0.001)
        self.snap_tolerance = config.get("snap_tolerance_bpm", 2.0)
        self.agreement_tolerance = config.get("agreement_tolerance_bpm", 5.0)
        self.min_onset_spacing_ms = config.get("min_onset_spacing_ms", 50)
        self.frame_size = config.get("frame_size", 1024)
        self.hop_size = config.get("hop_size", 512)
        self.max_analysis_seconds = config.get("max_analysis_seconds", 120)
        self.primary_confidence_threshold = config.get("primary_confidence_threshold", 0.2)

    @property
    def default_bpm(self) -> int:
        low, high = self.bpm_range
        return int(round(min(max(120.0, low), high)))

    def estimate(
        self,
        buffer: SampleBuffer,
        on_progress: ProgressCallback = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BPMResult:
        """
        Estimate the tempo of a buffer. Never raises except on cancellation.

        Args:
            buffer: Decoded audio
            on_progress: Receives 0-100 for this estimator
            cancel_token: Cooperative cancellation

        Returns:
            BPMResult with bpm inside the configured range
        """
        report = on_progress or (lambda _p: None)
        try:
            result, strategy = self._estimate(buffer, report, cancel_token)
        except AnalysisCancelledError:
            raise
        except Exception as e:
            logger.error(f"BPM estimation failed unexpectedly: {e}", exc_info=True)
            result = BPMResult.default(confidence=NO_BEATS_CONFIDENCE, bpm=self.default_bpm)
            strategy = TempoStrategy.DEFAULT

        report(100)
        logger.info(
            f"✅ BPM detected: {result.bpm} "
            f"(method: {strategy.value}, confidence: {result.confidence:.2f}, beats: {result.detected_beats})"
        )
        return result

    def _estimate(
        self,
        buffer: SampleBuffer,
        report: Callable[[float], None],
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[BPMResult, TempoStrategy]:
        check_cancelled(cancel_token, "bpm_detection")
        report(10)

        excerpt = buffer.excerpt(self.max_analysis_seconds)
        signal = excerpt.mono()
        if float(np.mean(np.abs(signal))) < self.silence_threshold:
            logger.debug("Silent input; returning default tempo")
            return BPMResult.default(confidence=0.0, bpm=self.default_bpm), TempoStrategy.SILENT

        primary = None
        if self.beat_tracker is not None:
            primary = self._primary(signal, excerpt.sample_rate)
        report(40)

        fallback = None
        onset_count = None
        if primary is None or primary.confidence < self.primary_confidence_threshold:
            check_cancelled(cancel_token, "bpm_detection")
            fallback, onset_count = self._fallback(signal, excerpt.sample_rate, cancel_token)
        report(80)

        check_cancelled(cancel_token, "bpm_detection")
        path = merge_paths([primary, fallback], self.agreement_tolerance)
        if path is None:
            logger.warning("No tempo evidence found; using default tempo")
            return (
                BPMResult.default(confidence=NO_BEATS_CONFIDENCE, bpm=self.default_bpm),
                TempoStrategy.DEFAULT,
            )

        if primary is not None and fallback is not None:
            strategy = TempoStrategy.COMBINED
        elif primary is not None:
            strategy = TempoStrategy.PRIMARY
        else:
            strategy = TempoStrategy.FALLBACK

        bpm = self.adjust_bpm(path.bpm)
        confidence = self._consistency_confidence(path, bpm)

        if excerpt.duration < SHORT_BUFFER_SECONDS or (
            onset_count is not None and primary is None and onset_count < MIN_ONSETS
        ):
            confidence = min(confidence, SHORT_INPUT_CONFIDENCE_CAP)

        low, high = self.bpm_range
        bpm_int = int(min(max(round(bpm), math.ceil(low)), math.floor(high)))
        return BPMResult(bpm=bpm_int, confidence=clamp_unit(confidence), detected_beats=path.beats), strategy

    def _primary(self, signal: np.ndarray, sample_rate: int) -> Optional[TempoPath]:
        """Tempo from backend beat positions; None when unusable."""
        try:
            track = self.beat_tracker.beat_track(signal, sample_rate)
        except Exception as e:
            logger.warning(f"Primary beat tracking failed: {e}")
            return None

        positions = sorted(track.positions)
        if len(positions) < 2:
            logger.debug(f"Primary beat tracker found {len(positions)} beats; falling back")
            return None

        intervals = np.diff(positions)
        intervals = intervals[intervals > 0]
        if len(intervals) == 0:
            return None
        median = float(np.median(intervals))
        raw_confidence = track.confidence if track.confidence is not None else DEFAULT_PRIMARY_CONFIDENCE
        confidence = clamp_unit(raw_confidence * (1.0 - interval_variance(intervals)))
        logger.debug(f"Primary raw BPM: {60.0 / median:.1f}, confidence: {confidence:.2f}")
        return TempoPath(
            bpm=60.0 / median,
            confidence=confidence,
            beats=len(positions),
            source="primary",
            intervals=tuple(float(i) for i in intervals),
        )

    def _fallback(
        self,
        signal: np.ndarray,
        sample_rate: int,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Optional[TempoPath], int]:
        """Onset-based estimate; returns (path or None, onset count)."""
        onsets = detect_onsets(
            signal,
            sample_rate,
            frame_size=self.frame_size,
            hop_size=self.hop_size,
            min_spacing_ms=self.min_onset_spacing_ms,
            cancel_token=cancel_token,
        )
        if len(onsets) < 2:
            return None, len(onsets)

        check_cancelled(cancel_token, "bpm_detection")
        intervals = inter_onset_intervals(onsets)
        frame_rate = sample_rate / self.hop_size
        by_autocorrelation = autocorrelation_candidates(onsets, frame_rate, self.bpm_range)
        by_interval = interval_candidates(intervals, self.bpm_range)

        chosen = select_candidate(by_autocorrelation + by_interval)
        if chosen is None:
            return None, len(onsets)

        independent = by_interval if chosen.source == "autocorrelation" else by_autocorrelation
        paths = [TempoPath(chosen.bpm, chosen.confidence, len(onsets), chosen.source)]
        corroborating = [c for c in independent if abs(c.bpm - chosen.bpm) <= self.agreement_tolerance]
        if corroborating:
            support = max(corroborating, key=lambda c: c.confidence)
            paths.append(TempoPath(support.bpm, support.confidence, len(onsets), support.source))
        elif independent:
            # The other method points elsewhere; keep the choice but count it as disagreement
            other = max(independent, key=lambda c: c.confidence)
            paths.append(TempoPath(other.bpm, other.confidence, len(onsets), other.source))

        merged = merge_paths(paths, self.agreement_tolerance)
        logger.debug(
            f"Fallback tempo: {merged.bpm:.1f} BPM from {len(onsets)} onsets "
            f"({len(by_autocorrelation)} autocorrelation, {len(by_interval)} interval candidates)"
        )
        return (
            TempoPath(merged.bpm, merged.confidence, merged.beats, merged.source, tuple(intervals)),
            len(onsets),
        )

    def _consistency_confidence(self, path: TempoPath, bpm: float) -> float:
        """Reduce by interval scatter around the chosen period; reward many consistent beats."""
        confidence = path.confidence
        if not path.intervals or bpm <= 0:
            return confidence

        deviations = folded_deviations(path.intervals, 60.0 / bpm)
        if len(deviations) >= 2:
            scatter = float(min(1.0, np.mean(deviations ** 2)))
            confidence *= (1.0 - scatter)

        consistent = int(np.sum(np.abs(deviations) <= 0.1))
        if consistent >= 16:
            confidence += 0.1
        elif consistent >= 8:
            confidence += 0.05
        return confidence

    def adjust_bpm(self, bpm: float) -> float:
        """
        Clamp, correct half/double/1.5x-time toward the plausible band, snap.

        Args:
            bpm: Raw tempo

        Returns:
            Adjusted tempo inside the valid range
        """
        low, high = self.bpm_range
        bpm = min(max(bpm, low), high)

        plausible_low, plausible_high = self.plausible_range
        if bpm < plausible_low:
            factors = (2.0, 1.5)
        elif bpm > plausible_high:
            factors = (0.5, 1.0 / 1.5)
        else:
            factors = ()
        for factor in factors:
            scaled = bpm * factor
            if plausible_low <= scaled <= plausible_high and low <= scaled <= high:
                logger.debug(f"Tempo-octave correction: {bpm:.1f} -> {scaled:.1f}")
                bpm = scaled
                break

        nearest = min(COMMON_TEMPOS, key=lambda t: abs(t - bpm))
        if abs(nearest - bpm) <= self.snap_tolerance and low <= nearest <= high:
            bpm = float(nearest)
        return bpm
