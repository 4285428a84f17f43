"""
MIR Analysis Module: Estimate tempo and musical key from decoded audio.

- Primary path: native DSP backend (essentia / aubio) when available
- Fallback path: onset autocorrelation (tempo), chroma + key profiles (key)
- Estimators never raise for algorithmic failure; they degrade instead
"""

__all__ = [
    "models",
    "backends",
    "onsets",
    "chroma",
    "bpm",
    "key",
    "calibration",
    "suggestions",
]
