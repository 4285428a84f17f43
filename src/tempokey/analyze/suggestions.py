"""
Tempo suggestions for display.

Detectors frequently lock onto hi-hats (double-time), the underlying pulse
(half-time) or triplet grids (1.5x). Given a detected tempo these helpers
propose the usual alternatives with a rough confidence label and short tips.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional

GENRE_CONTEXT = (
    "Hip-hop tracks often have complex rhythmic patterns that can confuse BPM detection algorithms."
)
MAX_TIPS = 3

_LABEL_ORDER = {"high": 3, "medium": 2, "low": 1}


@dataclass(frozen=True)
class TempoSuggestion:
    bpm: int
    label: str
    description: str
    confidence: str
    reason: str


@dataclass
class TempoSuggestions:
    primary: int
    suggestions: List[TempoSuggestion] = field(default_factory=list)
    tips: List[str] = field(default_factory=list)
    genre_context: str = GENRE_CONTEXT

    def to_dict(self) -> dict:
        return {
            "primary": self.primary,
            "suggestions": [s.__dict__.copy() for s in self.suggestions],
            "tips": list(self.tips),
            "genre_context": self.genre_context,
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def confidence_label(confidence: float) -> str:
    if confidence > 0.8:
        return "high"
    if confidence > 0.5:
        return "medium"
    return "low"


def genre_for_bpm(bpm: float) -> Optional[str]:
    if 70 <= bpm <= 90:
        return "classic boom-bap and lo-fi hip-hop"
    if 120 <= bpm <= 140:
        return "modern trap and contemporary hip-hop"
    if 140 <= bpm <= 180:
        return "drill, UK drill, or uptempo hip-hop"
    return None


def generate_tempo_suggestions(bpm: int, confidence: float) -> TempoSuggestions:
    """
    Build alternative tempo readings for a detected BPM.

    Args:
        bpm: Detected tempo
        confidence: Detection confidence in [0, 1]

    Returns:
        TempoSuggestions with the detected tempo first among equals,
        alternatives sorted by confidence label and at most 3 tips
    """
    half_time = _round_half_up(bpm / 2)
    double_time = _round_half_up(bpm * 2)
    two_thirds = _round_half_up(bpm * 2 / 3)

    suggestions = [
        TempoSuggestion(
            bpm=bpm,
            label="Detected",
            description="Primary tempo detected by the algorithm",
            confidence=confidence_label(confidence),
            reason=f"Algorithm confidence: {_round_half_up(confidence * 100)}%",
        )
    ]
    tips = []

    if 140 <= bpm <= 200 and 70 <= half_time <= 100:
        suggestions.append(
            TempoSuggestion(
                bpm=half_time,
                label="Half-time",
                description="Common hip-hop tempo (detected at double-time)",
                confidence="high",
                reason="Hip-hop tracks often get detected at double their actual tempo",
            )
        )
        tips.append(
            "Hip-hop beats are often detected at double-time due to prominent hi-hats and snare patterns."
        )

    if 60 <= bpm <= 90 and 120 <= double_time <= 180:
        suggestions.append(
            TempoSuggestion(
                bpm=double_time,
                label="Double-time",
                description="Faster tempo interpretation",
                confidence="medium",
                reason="Algorithm may have detected the slower underlying pulse",
            )
        )
        tips.append(
            "Some hip-hop tracks have a slower underlying pulse that can be interpreted as half-time."
        )

    if 150 <= bpm <= 240 and 80 <= two_thirds <= 160:
        suggestions.append(
            TempoSuggestion(
                bpm=two_thirds,
                label="Triplet-based",
                description="Adjusted for triplet rhythm patterns",
                confidence="medium",
                reason="Triplet-heavy tracks can cause 1.5x tempo detection",
            )
        )

    if confidence < 0.6:
        tips.append("Low confidence detection - the track may have irregular timing or complex rhythms.")
    if confidence > 0.9:
        tips.append("High confidence detection - the tempo is likely accurate.")

    genre_tip = _genre_tip(bpm, half_time, double_time)
    if genre_tip:
        tips.append(genre_tip)

    unique = []
    seen = set()
    for suggestion in suggestions:
        if suggestion.bpm not in seen:
            seen.add(suggestion.bpm)
            unique.append(suggestion)
    # Stable sort keeps insertion order among equal labels
    unique.sort(key=lambda s: _LABEL_ORDER[s.confidence], reverse=True)

    return TempoSuggestions(primary=bpm, suggestions=unique, tips=tips[:MAX_TIPS])


def _genre_tip(bpm: int, half_time: int, double_time: int) -> Optional[str]:
    original = genre_for_bpm(bpm)
    half_genre = genre_for_bpm(half_time) if 60 <= half_time <= 200 else None
    double_genre = genre_for_bpm(double_time) if 60 <= double_time <= 200 else None

    if original and (half_genre or double_genre):
        alternatives = []
        if half_genre:
            alternatives.append(f"half-time ({half_time} BPM) is in the {half_genre} range")
        if double_genre:
            alternatives.append(f"double-time ({double_time} BPM) is in the {double_genre} range")
        return (
            f"The original detected tempo ({bpm} BPM) is in the {original} range, "
            f"while the {' and '.join(alternatives)}."
        )
    if original:
        return f"The detected tempo ({bpm} BPM) is in the {original} range."
    if half_genre:
        return f"The half-time suggestion ({half_time} BPM) falls into the {half_genre} range."
    if double_genre:
        return f"The double-time suggestion ({double_time} BPM) is in the {double_genre} range."
    return None


def simple_suggestion_message(bpm: int, confidence: float) -> Optional[str]:
    """One-line hint for low/medium-confidence tempos; None when confident."""
    if confidence > 0.8:
        return None

    half_time = _round_half_up(bpm / 2)
    double_time = _round_half_up(bpm * 2)
    if 140 <= bpm <= 200 and 70 <= half_time <= 100:
        return f"Consider {half_time} BPM (half-time) - common for hip-hop tracks"
    if 60 <= bpm <= 90 and 120 <= double_time <= 180:
        return f"Consider {double_time} BPM (double-time) - may be the intended tempo"
    return None


def is_typical_bpm(bpm: float) -> bool:
    return 70 <= bpm <= 100 or 120 <= bpm <= 180


def educational_tip(bpm: int, confidence: float) -> str:
    if confidence < 0.5:
        return "BPM detection can be challenging with complex rhythms, syncopation, or irregular timing."
    if bpm > 160:
        return "High BPM values often indicate detection of hi-hat patterns rather than the main beat."
    if bpm < 80:
        return "Low BPM values might indicate detection of the underlying pulse rather than the perceived beat."
    return "BPM detection algorithms analyze rhythmic patterns to estimate tempo."
