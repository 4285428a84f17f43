"""
Data model for tempo and key analysis.

SampleBuffer is the decoded input (read-only once built); the result
containers are frozen dataclasses so a finished AnalysisResult can be
shared between threads and cached without copying.
"""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Sequence, Tuple

import numpy as np

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

# Flat spellings some backends report, mapped to their pitch class
_FLAT_PITCH_CLASSES = {"Db": 1, "Eb": 3, "Gb": 6, "Ab": 8, "Bb": 10, "Cb": 11, "Fb": 4}

KEY_SIGNATURE_PATTERN = re.compile(r"^[A-G][#b]?m?$")
_NOTE_PATTERN = re.compile(r"^[A-G][#b]?$")


class Mode(str, Enum):
    MAJOR = "major"
    MINOR = "minor"

    @classmethod
    def parse(cls, value: str) -> "Mode":
        """Map a backend scale string ("major", "Minor", ...) to a Mode."""
        return cls.MINOR if str(value).strip().lower() == "minor" else cls.MAJOR


def pitch_class(note: str) -> int:
    """Pitch class (0-11, C=0) of a note name such as "F#" or "Bb"."""
    if note in _FLAT_PITCH_CLASSES:
        return _FLAT_PITCH_CLASSES[note]
    return NOTE_NAMES.index(note)


def is_valid_note(note: str) -> bool:
    return bool(_NOTE_PATTERN.match(note or ""))


@dataclass(frozen=True)
class SampleBuffer:
    """
    Decoded PCM audio.

    Attributes:
        channels: One float32 array per channel, all of frame_count samples
        sample_rate: Samples per second
    """

    channels: Tuple[np.ndarray, ...]
    sample_rate: int

    def __post_init__(self):
        if self.sample_rate is None or int(self.sample_rate) <= 0:
            raise ValueError(f"SampleBuffer has invalid sample rate: {self.sample_rate}")
        if len(self.channels) == 0:
            raise ValueError("SampleBuffer has no channels")

        frozen = []
        for data in self.channels:
            arr = np.asarray(data, dtype=np.float32)
            if arr.ndim != 1:
                raise ValueError("SampleBuffer channels must be one-dimensional")
            view = arr.view()
            view.flags.writeable = False
            frozen.append(view)

        lengths = {len(ch) for ch in frozen}
        if len(lengths) != 1:
            raise ValueError(f"SampleBuffer channels have different lengths: {sorted(lengths)}")
        if lengths.pop() == 0:
            raise ValueError("SampleBuffer is empty")

        object.__setattr__(self, "channels", tuple(frozen))
        object.__setattr__(self, "sample_rate", int(self.sample_rate))

    @classmethod
    def from_array(cls, samples: np.ndarray, sample_rate: int) -> "SampleBuffer":
        """
        Build a buffer from a (frames,) or (frames, channels) array.

        Args:
            samples: Decoded samples, frame-major as returned by soundfile
            sample_rate: Samples per second

        Returns:
            SampleBuffer with one array per channel
        """
        arr = np.asarray(samples, dtype=np.float32)
        if arr.ndim == 1:
            return cls(channels=(arr,), sample_rate=sample_rate)
        if arr.ndim != 2:
            raise ValueError("Decoded audio must be a 1D or 2D array")
        return cls(channels=tuple(arr[:, i] for i in range(arr.shape[1])), sample_rate=sample_rate)

    @property
    def frame_count(self) -> int:
        return len(self.channels[0])

    @property
    def channel_count(self) -> int:
        return len(self.channels)

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate

    @property
    def nbytes(self) -> int:
        return sum(ch.nbytes for ch in self.channels)

    def mono(self) -> np.ndarray:
        """Average all channels into one float64 signal (NaN/inf scrubbed)."""
        if self.channel_count == 1:
            mixed = self.channels[0].astype(np.float64)
        else:
            mixed = np.mean(np.vstack(self.channels), axis=0, dtype=np.float64)
        return np.nan_to_num(mixed, nan=0.0, posinf=0.0, neginf=0.0)

    def normalized(self, peak_target: float = 0.95) -> "SampleBuffer":
        """
        Attenuate so the loudest sample sits at peak_target.

        Quiet material is never amplified, so silence stays silent.
        """
        peak = max(float(np.max(np.abs(np.nan_to_num(ch)))) for ch in self.channels)
        if peak <= 0 or peak <= peak_target:
            return self
        ratio = peak_target / peak
        return SampleBuffer(
            channels=tuple(np.nan_to_num(ch) * ratio for ch in self.channels),
            sample_rate=self.sample_rate,
        )

    def excerpt(self, max_seconds: float) -> "SampleBuffer":
        """
        Middle portion of at most max_seconds (intros/outros are often atypical).
        """
        max_frames = int(max_seconds * self.sample_rate)
        if max_frames <= 0 or self.frame_count <= max_frames:
            return self
        start = (self.frame_count - max_frames) // 2
        return SampleBuffer(
            channels=tuple(ch[start:start + max_frames] for ch in self.channels),
            sample_rate=self.sample_rate,
        )


@dataclass(frozen=True)
class OnsetEvent:
    time_seconds: float
    strength: float


@dataclass(frozen=True)
class ChromaVector:
    """12-bin pitch-class energy histogram (C=0)."""

    bins: Tuple[float, ...]
    confidence: float

    def __post_init__(self):
        if len(self.bins) != 12:
            raise ValueError(f"ChromaVector needs 12 bins, got {len(self.bins)}")
        if any(b < 0 for b in self.bins):
            raise ValueError("ChromaVector bins must be non-negative")

    @classmethod
    def empty(cls) -> "ChromaVector":
        return cls(bins=(0.0,) * 12, confidence=0.0)

    def as_array(self) -> np.ndarray:
        return np.asarray(self.bins, dtype=np.float64)


@dataclass(frozen=True)
class TempoCandidate:
    bpm: float
    confidence: float
    score: float
    source: str = "autocorrelation"


@dataclass(frozen=True)
class BPMResult:
    bpm: int
    confidence: float
    detected_beats: int

    @classmethod
    def default(cls, confidence: float = 0.0, detected_beats: int = 0, bpm: int = 120) -> "BPMResult":
        return cls(bpm=bpm, confidence=confidence, detected_beats=detected_beats)


@dataclass(frozen=True)
class KeyResult:
    key_name: str
    key_signature: str
    confidence: float
    mode: Mode

    def __post_init__(self):
        if not KEY_SIGNATURE_PATTERN.match(self.key_signature):
            raise ValueError(f"Malformed key signature: {self.key_signature!r}")
        is_minor_signature = self.key_signature.endswith("m")
        if is_minor_signature != (self.mode == Mode.MINOR):
            raise ValueError(
                f"Key signature {self.key_signature!r} inconsistent with mode {self.mode.value}"
            )

    @classmethod
    def from_root(cls, note: str, mode: Mode, confidence: float) -> "KeyResult":
        """Build a consistent result: "A Minor" / "Am", "C Major" / "C"."""
        if not is_valid_note(note):
            raise ValueError(f"Unknown note name: {note!r}")
        mode = Mode(mode)
        suffix = "Minor" if mode == Mode.MINOR else "Major"
        signature = f"{note}m" if mode == Mode.MINOR else note
        return cls(
            key_name=f"{note} {suffix}",
            key_signature=signature,
            confidence=float(min(1.0, max(0.0, confidence))),
            mode=mode,
        )

    @classmethod
    def default(cls, confidence: float = 0.0) -> "KeyResult":
        return cls.from_root("C", Mode.MAJOR, confidence)

    @property
    def root(self) -> str:
        return self.key_name.split(" ")[0]


@dataclass(frozen=True)
class ConfidenceScores:
    key: float
    bpm: float
    overall: float

    @classmethod
    def combine(cls, key: float, bpm: float) -> "ConfidenceScores":
        return cls(key=key, bpm=bpm, overall=(key + bpm) / 2.0)


@dataclass(frozen=True)
class AnalysisResult:
    key: KeyResult
    bpm: BPMResult
    confidence: ConfidenceScores
    processing_time_ms: float = field(default=0.0, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation."""
        return {
            "key": {
                "key_name": self.key.key_name,
                "key_signature": self.key.key_signature,
                "confidence": self.key.confidence,
                "mode": self.key.mode.value,
            },
            "bpm": {
                "bpm": self.bpm.bpm,
                "confidence": self.bpm.confidence,
                "detected_beats": self.bpm.detected_beats,
            },
            "confidence": {
                "key": self.confidence.key,
                "bpm": self.confidence.bpm,
                "overall": self.confidence.overall,
            },
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        key = data["key"]
        return cls(
            key=KeyResult(
                key_name=key["key_name"],
                key_signature=key["key_signature"],
                confidence=float(key["confidence"]),
                mode=Mode(key["mode"]),
            ),
            bpm=BPMResult(**data["bpm"]),
            confidence=ConfidenceScores(**data["confidence"]),
            processing_time_ms=float(data.get("processing_time_ms", 0.0)),
        )


def clamp_unit(value: float) -> float:
    """Clamp to [0, 1]; NaN maps to 0."""
    if value is None or math.isnan(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))


def channels_from_sequences(data: Sequence[Sequence[float]]) -> Tuple[np.ndarray, ...]:
    return tuple(np.asarray(ch, dtype=np.float32) for ch in data)
