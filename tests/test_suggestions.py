"""
Unit tests for tempo suggestions.
"""

from tempokey.analyze.suggestions import (
    confidence_label,
    educational_tip,
    generate_tempo_suggestions,
    is_typical_bpm,
    simple_suggestion_message,
)


class TestGenerateSuggestions:
    """Test alternative tempo readings."""

    def test_double_time_detection_suggests_half(self):
        """A fast tempo gets a high-confidence half-time suggestion."""
        result = generate_tempo_suggestions(180, 0.6)
        by_label = {s.label: s for s in result.suggestions}
        assert by_label["Half-time"].bpm == 90
        assert by_label["Half-time"].confidence == "high"
        assert by_label["Triplet-based"].bpm == 120
        assert result.suggestions[0].label == "Half-time"

    def test_slow_tempo_suggests_double(self):
        """A slow tempo gets a double-time suggestion."""
        result = generate_tempo_suggestions(75, 0.9)
        labels = [s.label for s in result.suggestions]
        assert labels == ["Detected", "Double-time"]
        assert result.suggestions[1].bpm == 150

    def test_mid_tempo_only_detected(self):
        """Mid tempos have no octave alternatives."""
        result = generate_tempo_suggestions(110, 0.7)
        assert [s.label for s in result.suggestions] == ["Detected"]
        assert result.primary == 110

    def test_tips_limited(self):
        """At most three tips are returned."""
        result = generate_tempo_suggestions(160, 0.3)
        assert 1 <= len(result.tips) <= 3

    def test_no_duplicate_bpms(self):
        """Each tempo appears once."""
        result = generate_tempo_suggestions(150, 0.5)
        bpms = [s.bpm for s in result.suggestions]
        assert len(bpms) == len(set(bpms))

    def test_genre_tip(self):
        """Tempos in a genre band mention it."""
        result = generate_tempo_suggestions(85, 0.7)
        assert any("boom-bap" in tip for tip in result.tips)

    def test_to_dict(self):
        """Serializable summary, ordered by confidence label."""
        data = generate_tempo_suggestions(90, 0.5).to_dict()
        assert data["primary"] == 90
        assert [s["label"] for s in data["suggestions"]][:2] == ["Double-time", "Detected"]
        assert [s["bpm"] for s in data["suggestions"]][:2] == [180, 90]


class TestHelpers:
    """Test the small suggestion helpers."""

    def test_confidence_labels(self):
        """Thresholds at 0.8 and 0.5."""
        assert confidence_label(0.9) == "high"
        assert confidence_label(0.6) == "medium"
        assert confidence_label(0.5) == "low"

    def test_simple_message(self):
        """Hints only for uncertain octave-prone tempos."""
        assert simple_suggestion_message(160, 0.9) is None
        assert "80 BPM" in simple_suggestion_message(160, 0.5)
        assert "140 BPM" in simple_suggestion_message(70, 0.5)
        assert simple_suggestion_message(110, 0.5) is None

    def test_typical_bpm(self):
        """Typical hip-hop bands."""
        assert is_typical_bpm(90)
        assert is_typical_bpm(140)
        assert not is_typical_bpm(110)

    def test_educational_tip(self):
        """Tips depend on confidence and tempo."""
        assert "challenging" in educational_tip(100, 0.3)
        assert "hi-hat" in educational_tip(170, 0.8)
        assert "underlying pulse" in educational_tip(70, 0.8)
