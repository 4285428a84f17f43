"""
Shared fixtures: synthetic signals with known tempo and harmony.
"""

import numpy as np
import pytest

from tempokey.analyze.models import (
    AnalysisResult,
    BPMResult,
    ConfidenceScores,
    KeyResult,
    Mode,
    SampleBuffer,
)
from tempokey.config import Config
from tempokey.memory import MemoryGuard

SR = 44100

C_MINOR_TRIAD = (261.63, 311.13, 392.00)
C_MAJOR_TRIAD = (261.63, 329.63, 392.00)


def drum_signal(bpm, seconds, sample_rate=SR, amplitude=0.6, offset=0.1, seed=0):
    """Decaying noise bursts on every beat (percussive envelope)."""
    rng = np.random.default_rng(seed)
    n = int(seconds * sample_rate)
    out = np.zeros(n)
    burst_len = int(0.04 * sample_rate)
    envelope = np.exp(-np.arange(burst_len) / (0.015 * sample_rate))
    period = 60.0 / bpm
    t = offset
    while t < seconds:
        start = int(t * sample_rate)
        stop = min(n, start + burst_len)
        out[start:stop] += amplitude * rng.standard_normal(stop - start) * envelope[:stop - start]
        t += period
    return out


def tone_signal(frequencies, seconds, sample_rate=SR, amplitude=0.2):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return sum(amplitude * np.sin(2 * np.pi * f * t) for f in frequencies)


def make_buffer(signal, sample_rate=SR):
    return SampleBuffer(channels=(np.asarray(signal, dtype=np.float32),), sample_rate=sample_rate)


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def plenty_of_memory():
    return MemoryGuard(available_memory=lambda: 1 << 40)


@pytest.fixture
def silent_buffer():
    return make_buffer(np.zeros(SR))


@pytest.fixture
def drums_90():
    return make_buffer(drum_signal(90, 10))


@pytest.fixture
def c_minor_buffer():
    return make_buffer(tone_signal(C_MINOR_TRIAD, 10))


@pytest.fixture
def drums_and_c_minor():
    return make_buffer(drum_signal(90, 10) + tone_signal(C_MINOR_TRIAD, 10))


@pytest.fixture
def sample_result():
    return AnalysisResult(
        key=KeyResult.from_root("A", Mode.MINOR, 0.8),
        bpm=BPMResult(bpm=92, confidence=0.7, detected_beats=30),
        confidence=ConfidenceScores.combine(0.8, 0.7),
        processing_time_ms=123.0,
    )
