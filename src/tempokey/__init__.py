# TempoKey: Offline tempo and key estimation for decoded audio
# Package: src.tempokey

__version__ = "1.0.0-dev"
__author__ = "TempoKey Contributors"
__description__ = "Tempo (BPM) and musical key estimation with calibrated confidence"

# Module structure:
#   - tempokey.analyze    : MIR analysis (onsets, chroma, BPM, key, calibration)
#   - tempokey.cache      : Content-addressed in-memory result cache
#   - tempokey.processor  : Analysis orchestrator (parallel, timeout, cancel)
#   - tempokey.workers    : Background task boundary (request/response)
#   - tempokey.memory     : Memory admission control
#   - tempokey.config     : Configuration management
#   - tempokey.cli        : Command-line interface
