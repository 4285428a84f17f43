"""
Primary DSP backends: native beat tracking and key extraction.

The estimators depend only on the two small protocols below. Concrete
backends wrap essentia (beat tracking + key extraction) or aubio (beat
tracking only). Both libraries are optional; when neither can be loaded
the estimators run their fallback algorithms.

References:
- https://essentia.upf.edu/reference/std_BeatTrackerMultiFeature.html
- https://essentia.upf.edu/reference/std_KeyExtractor.html
- https://aubio.org/manual/latest/py_temporal.html
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Union, runtime_checkable

import numpy as np

from tempokey.errors import BackendError, BackendUnavailableError

logger = logging.getLogger(__name__)

# BeatTrackerMultiFeature reports confidence on a 0-5.32 scale
ESSENTIA_MAX_BEAT_CONFIDENCE = 5.32


@dataclass(frozen=True)
class BeatTrack:
    positions: List[float] = field(default_factory=list)
    confidence: Optional[float] = None


@dataclass(frozen=True)
class KeyExtract:
    note: str
    scale: str
    strength: float


@runtime_checkable
class BeatTrackPrimitive(Protocol):
    def beat_track(self, signal: np.ndarray, sample_rate: int) -> BeatTrack:
        ...


@runtime_checkable
class KeyExtractPrimitive(Protocol):
    def extract_key(self, signal: np.ndarray, sample_rate: int) -> KeyExtract:
        ...


class EssentiaBackend:
    """Beat tracking and key extraction via essentia.standard."""

    name = "essentia"

    def __init__(self, min_bpm: float = 60.0, max_bpm: float = 200.0):
        self.min_bpm = min_bpm
        self.max_bpm = max_bpm
        self._es = None

    def init(self) -> None:
        try:
            import essentia.standard as es
        except ImportError as e:
            raise BackendUnavailableError(f"essentia not available: {e}")
        self._es = es
        logger.debug("Essentia backend initialized")

    def shutdown(self) -> None:
        self._es = None

    def _require(self):
        if self._es is None:
            raise BackendError("Essentia backend used before init()")
        return self._es

    def beat_track(self, signal: np.ndarray, sample_rate: int) -> BeatTrack:
        es = self._require()
        # Essentia's rhythm algorithms assume 44.1 kHz input
        if sample_rate != 44100:
            raise BackendError(f"BeatTrackerMultiFeature requires 44100 Hz, got {sample_rate}")
        try:
            tracker = es.BeatTrackerMultiFeature(
                maxTempo=int(self.max_bpm), minTempo=int(self.min_bpm)
            )
            ticks, confidence = tracker(np.ascontiguousarray(signal, dtype=np.float32))
        except Exception as e:
            raise BackendError(f"Essentia beat tracking failed: {e}") from e

        return BeatTrack(
            positions=[float(t) for t in ticks],
            confidence=float(confidence) / ESSENTIA_MAX_BEAT_CONFIDENCE,
        )

    def extract_key(self, signal: np.ndarray, sample_rate: int) -> KeyExtract:
        es = self._require()
        try:
            extractor = es.KeyExtractor(sampleRate=float(sample_rate))
            key, scale, strength = extractor(np.ascontiguousarray(signal, dtype=np.float32))
        except Exception as e:
            raise BackendError(f"Essentia key extraction failed: {e}") from e
        return KeyExtract(note=str(key), scale=str(scale), strength=float(strength))


class AubioBackend:
    """Beat tracking via aubio.tempo (aubio has no key extractor)."""

    name = "aubio"

    def __init__(self, buf_size: int = 1024, hop_size: int = 512):
        self.buf_size = buf_size
        self.hop_size = hop_size
        self._aubio = None

    def init(self) -> None:
        try:
            import aubio
        except ImportError as e:
            raise BackendUnavailableError(f"aubio not available: {e}")
        self._aubio = aubio
        logger.debug("Aubio backend initialized")

    def shutdown(self) -> None:
        self._aubio = None

    def beat_track(self, signal: np.ndarray, sample_rate: int) -> BeatTrack:
        if self._aubio is None:
            raise BackendError("Aubio backend used before init()")
        try:
            tempo = self._aubio.tempo("default", self.buf_size, self.hop_size, int(sample_rate))
            samples = np.ascontiguousarray(signal, dtype=np.float32)
            positions = []
            for start in range(0, len(samples) - self.hop_size + 1, self.hop_size):
                if tempo(samples[start:start + self.hop_size])[0]:
                    positions.append(float(tempo.get_last_s()))
            confidence = float(tempo.get_confidence())
        except Exception as e:
            raise BackendError(f"Aubio beat tracking failed: {e}") from e
        return BeatTrack(positions=positions, confidence=confidence)


Backend = Union[EssentiaBackend, AubioBackend]


def create_backend(name: str = "auto", min_bpm: float = 60.0, max_bpm: float = 200.0) -> Optional[Backend]:
    """
    Resolve and initialize a primary backend.

    Args:
        name: "auto" (essentia, then aubio), "essentia", "aubio" or "none"
        min_bpm: Lower tempo bound handed to the beat tracker
        max_bpm: Upper tempo bound handed to the beat tracker

    Returns:
        Initialized backend, or None when nothing is available (fallback-only mode)
    """
    if name == "none":
        logger.info("Primary DSP backend disabled; using fallback algorithms only")
        return None

    if name == "auto":
        candidates = ["essentia", "aubio"]
    elif name in ("essentia", "aubio"):
        candidates = [name]
    else:
        raise ValueError(f"Unknown backend: {name}")

    for candidate in candidates:
        backend: Backend
        if candidate == "essentia":
            backend = EssentiaBackend(min_bpm=min_bpm, max_bpm=max_bpm)
        else:
            backend = AubioBackend()
        try:
            backend.init()
        except BackendUnavailableError as e:
            logger.debug(str(e))
            continue
        logger.info(f"Using {candidate} as primary DSP backend")
        return backend

    logger.warning(f"No primary DSP backend available for {name!r}; using fallback algorithms")
    return None
