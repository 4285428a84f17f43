"""
Unit tests for key detection (primary consensus and chroma fallback).
"""

from unittest import mock

import numpy as np
import pytest

from conftest import C_MAJOR_TRIAD, SR, make_buffer, tone_signal
from tempokey.analyze.backends import KeyExtract
from tempokey.analyze.key import (
    MAJOR_PROFILE,
    MINOR_PROFILE,
    KeyEstimator,
    match_key_profile,
    pearson_correlation,
    rank_key_profiles,
)
from tempokey.analyze.models import KEY_SIGNATURE_PATTERN, NOTE_NAMES, ChromaVector, Mode
from tempokey.cancellation import CancellationToken
from tempokey.errors import AnalysisCancelledError


def chroma_from(values):
    return ChromaVector(bins=tuple(float(v) for v in values), confidence=1.0)


class TestProfileMatching:
    """Test Krumhansl-Schmuckler profile correlation."""

    def test_pearson_identity(self):
        """A vector correlates perfectly with itself."""
        assert pearson_correlation(MAJOR_PROFILE, MAJOR_PROFILE) == pytest.approx(1.0)

    def test_pearson_constant(self):
        """Constant input has zero correlation."""
        assert pearson_correlation(np.ones(12), MAJOR_PROFILE) == 0.0

    def test_rotated_major_profile(self):
        """A major profile rotated to D is D Major."""
        result = match_key_profile(chroma_from(np.roll(MAJOR_PROFILE, 2)))
        assert result.key_name == "D Major"
        assert result.key_signature == "D"

    def test_rotated_minor_profile(self):
        """A minor profile rotated to A is A Minor."""
        result = match_key_profile(chroma_from(np.roll(MINOR_PROFILE, 9)))
        assert result.key_name == "A Minor"
        assert result.key_signature == "Am"
        assert result.mode == Mode.MINOR

    def test_all_24_keys_ranked(self):
        """Every root/mode pair is scored."""
        matches = rank_key_profiles(chroma_from(MAJOR_PROFILE))
        assert len(matches) == 24
        assert matches[0].correlation >= matches[-1].correlation

    def test_empty_chroma_default(self):
        """Nothing pitched resolves to C Major with zero confidence."""
        result = match_key_profile(ChromaVector.empty())
        assert result.key_name == "C Major"
        assert result.confidence == 0.0

    def test_flat_chroma_low_confidence(self):
        """A chroma with no tonal shape resolves to C Major at 0.1."""
        result = match_key_profile(chroma_from(np.ones(12)))
        assert result.key_name == "C Major"
        assert result.confidence == pytest.approx(0.1)


class TestKeyEstimatorPrimary:
    """Test the primary key-extraction path."""

    def test_agreeing_segments_boosted(self):
        """Full and middle segments agreeing boost confidence."""
        extractor = mock.Mock()
        extractor.extract_key.return_value = KeyExtract(note="A", scale="minor", strength=0.5)
        result = KeyEstimator(key_extractor=extractor).estimate(make_buffer(tone_signal([440.0], 2)))
        assert result.key_name == "A Minor"
        assert result.confidence == pytest.approx(0.6)
        assert extractor.extract_key.call_count == 2

    def test_disagreeing_segments_penalized(self):
        """Disagreement keeps the stronger result with a penalty."""
        extractor = mock.Mock()
        extractor.extract_key.side_effect = [
            KeyExtract(note="G", scale="major", strength=0.5),
            KeyExtract(note="E", scale="minor", strength=0.9),
        ]
        result = KeyEstimator(key_extractor=extractor).estimate(make_buffer(tone_signal([440.0], 2)))
        assert result.key_signature == "Em"
        assert result.confidence == pytest.approx(0.72)

    def test_failing_primary_uses_fallback(self, c_minor_buffer):
        """A raising backend falls back to chroma matching."""
        extractor = mock.Mock()
        extractor.extract_key.side_effect = RuntimeError("backend exploded")
        result = KeyEstimator(key_extractor=extractor).estimate(c_minor_buffer)
        assert result.key_signature == "Cm"

    def test_unknown_note_uses_fallback(self, c_minor_buffer):
        """An unparseable note from the backend is ignored."""
        extractor = mock.Mock()
        extractor.extract_key.return_value = KeyExtract(note="?", scale="major", strength=0.9)
        result = KeyEstimator(key_extractor=extractor).estimate(c_minor_buffer)
        assert result.key_signature == "Cm"

    def test_progress_reaches_100(self):
        """Progress ends at exactly 100."""
        extractor = mock.Mock()
        extractor.extract_key.return_value = KeyExtract(note="C", scale="major", strength=0.5)
        seen = []
        KeyEstimator(key_extractor=extractor).estimate(make_buffer(tone_signal([440.0], 1)), on_progress=seen.append)
        assert seen[-1] == 100
        assert seen == sorted(seen)


class TestKeyEstimatorFallback:
    """Test the chroma fallback path."""

    def test_c_minor_triad(self, c_minor_buffer):
        """A sustained C-minor triad is detected as C minor."""
        result = KeyEstimator().estimate(c_minor_buffer)
        assert result.mode == Mode.MINOR
        assert result.key_signature == "Cm"
        assert 0.0 < result.confidence <= 1.0

    def test_major_triad_well_formed(self):
        """A bare major triad reads as its root major or the mediant minor."""
        result = KeyEstimator().estimate(make_buffer(tone_signal(C_MAJOR_TRIAD, 5)))
        assert KEY_SIGNATURE_PATTERN.match(result.key_signature)
        assert result.key_signature.endswith("m") == (result.mode == Mode.MINOR)
        assert result.key_signature in ("C", "Em")

    def test_triads_in_all_keys(self):
        """Minor triads name their key; at least half of all 24 modes are right."""
        estimator = KeyEstimator()
        correct_modes = 0
        for root in range(12):
            for mode, third in ((Mode.MAJOR, 4), (Mode.MINOR, 3)):
                base = 261.63 * 2 ** (root / 12)
                triad = [base, base * 2 ** (third / 12), base * 2 ** (7 / 12)]
                result = estimator.estimate(make_buffer(tone_signal(triad, 2)))
                correct_modes += result.mode == mode
                if mode == Mode.MINOR:
                    assert result.key_signature == NOTE_NAMES[root] + "m"
        assert correct_modes >= 12

    def test_silence(self, silent_buffer):
        """Silence gives C Major with zero confidence."""
        result = KeyEstimator().estimate(silent_buffer)
        assert result.key_name == "C Major"
        assert result.confidence == 0.0

    def test_very_short_buffer(self):
        """A buffer shorter than one window still returns a key."""
        result = KeyEstimator().estimate(make_buffer(tone_signal([440.0], 0.01)))
        assert KEY_SIGNATURE_PATTERN.match(result.key_signature)
        assert result.confidence <= 0.1

    def test_internal_error_degrades(self, c_minor_buffer):
        """Unexpected failures return the default key."""
        with mock.patch("tempokey.analyze.key.extract_chroma", side_effect=MemoryError("boom")):
            result = KeyEstimator().estimate(c_minor_buffer)
        assert result.key_name == "C Major"
        assert result.confidence == 0.0

    def test_cancellation_propagates(self, c_minor_buffer):
        """Cancellation is the only error that escapes."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelledError):
            KeyEstimator().estimate(c_minor_buffer, cancel_token=token)

    def test_deterministic(self, c_minor_buffer):
        """Same input, same key."""
        estimator = KeyEstimator()
        assert estimator.estimate(c_minor_buffer) == estimator.estimate(c_minor_buffer)
