"""
Unit tests for autocorrelation chroma extraction.
"""

import numpy as np
import pytest

from conftest import C_MAJOR_TRIAD, C_MINOR_TRIAD, SR, tone_signal
from tempokey.analyze.chroma import (
    estimate_pitch,
    extract_chroma,
    frequency_to_pitch_class,
    window_pitches,
)
from tempokey.cancellation import CancellationToken
from tempokey.errors import AnalysisCancelledError


class TestPitchClass:
    """Test frequency to pitch-class mapping."""

    def test_reference_pitches(self):
        """A4 is 9, middle C is 0."""
        assert frequency_to_pitch_class(440.0) == 9
        assert frequency_to_pitch_class(261.63) == 0
        assert frequency_to_pitch_class(311.13) == 3

    def test_octave_invariant(self):
        """Octaves share a pitch class."""
        assert frequency_to_pitch_class(110.0) == frequency_to_pitch_class(880.0)

    def test_non_positive(self):
        """Non-positive frequencies map to 0."""
        assert frequency_to_pitch_class(0.0) == 0


class TestEstimatePitch:
    """Test single-window pitch estimation."""

    def test_pure_tone(self):
        """A sine's period is found."""
        window = tone_signal([220.0], 2048 / SR)[:2048]
        frequency, correlation, _ = estimate_pitch(window, SR)
        assert frequency == pytest.approx(220.0, rel=0.02)
        assert correlation > 0.9

    def test_noise_unpitched_or_weak(self):
        """White noise has no strong period."""
        window = np.random.default_rng(1).standard_normal(2048)
        frequency, correlation, _ = estimate_pitch(window, SR)
        assert frequency == 0.0 or correlation < 0.5

    def test_too_short(self):
        """Tiny windows are unpitched."""
        assert estimate_pitch(np.ones(50), SR) == (0.0, 0.0, 0)

    def test_silence(self):
        """Silence is unpitched."""
        assert estimate_pitch(np.zeros(2048), SR)[0] == 0.0


class TestWindowPitches:
    """Test multi-pitch peeling."""

    def test_single_tone_one_pitch_class(self):
        """A single tone votes for its own pitch class."""
        window = tone_signal([440.0], 2048 / SR)[:2048]
        pitches = window_pitches(window, SR)
        assert pitches
        assert frequency_to_pitch_class(pitches[0][0]) == 9

    def test_silence(self):
        """Silence yields nothing."""
        assert window_pitches(np.zeros(2048), SR) == []

    def test_triad_peels_each_note(self):
        """Each note of a triad is peeled as its own pitch."""
        window = tone_signal(C_MINOR_TRIAD, 0.1)[:2048]
        pitches = window_pitches(window, SR)
        assert {frequency_to_pitch_class(f) for f, _ in pitches} == {0, 3, 7}
        weights = [w for _, w in pitches]
        assert max(weights) < 1.5 * min(weights)

    def test_major_triad_notes(self):
        """A C-major triad yields C, E and G."""
        window = tone_signal(C_MAJOR_TRIAD, 0.1)[:2048]
        assert {frequency_to_pitch_class(f) for f, _ in window_pitches(window, SR)} == {0, 4, 7}

    def test_below_floor_not_reported(self):
        """A tone under min_hz is not reported at the floor."""
        window = tone_signal([60.0], 0.1)[:2048]
        assert window_pitches(window, SR, min_hz=80.0) == []


class TestExtractChroma:
    """Test chroma vectors over whole signals."""

    def test_triad_notes_dominate(self):
        """A C-minor triad puts its weight on C, Eb and G."""
        chroma = extract_chroma(tone_signal(C_MINOR_TRIAD, 3), SR)
        bins = chroma.as_array()
        assert bins.sum() == pytest.approx(1.0)
        assert bins[0] + bins[3] + bins[7] > 0.5
        assert chroma.confidence > 0

    def test_short_signal_empty(self):
        """Signals shorter than one window give an empty chroma."""
        chroma = extract_chroma(np.ones(100), SR)
        assert chroma.confidence == 0.0
        assert sum(chroma.bins) == 0.0

    def test_silence_empty(self):
        """Silence gives an empty chroma."""
        chroma = extract_chroma(np.zeros(SR), SR)
        assert sum(chroma.bins) == 0.0

    def test_window_budget(self):
        """Long signals are subsampled to max_windows."""
        chroma = extract_chroma(tone_signal([440.0], 5), SR, max_windows=20)
        assert chroma.confidence <= 0.2

    def test_cancelled(self):
        """A fired token stops the scan."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelledError):
            extract_chroma(tone_signal([440.0], 1), SR, cancel_token=token)
