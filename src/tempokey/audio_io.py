"""
Decoding boundary: audio files -> SampleBuffer.

The analysis core never parses containers itself; the CLI decodes with
soundfile (libsndfile) and hands over a SampleBuffer.
"""

import logging
from pathlib import Path

import soundfile as sf

from tempokey.analyze.models import SampleBuffer

logger = logging.getLogger(__name__)

# Containers libsndfile reads
AUDIO_FORMATS = {".wav", ".flac", ".ogg", ".aif", ".aiff", ".mp3"}


class AudioDecodeError(Exception):
    """Raised when an audio file cannot be decoded."""
    pass


def load_audio(file_path: str) -> SampleBuffer:
    """
    Decode an audio file into a SampleBuffer.

    Args:
        file_path: Path to the audio file

    Returns:
        SampleBuffer with one float32 array per channel

    Raises:
        AudioDecodeError: If the file is missing, unsupported or empty
    """
    path = Path(file_path)
    if not path.is_file():
        raise AudioDecodeError(f"Audio file not found: {file_path}")
    if path.suffix.lower() not in AUDIO_FORMATS:
        logger.warning(f"Unrecognized audio extension {path.suffix!r}; trying anyway")

    try:
        data, sample_rate = sf.read(str(path), always_2d=True, dtype="float32")
    except (RuntimeError, sf.LibsndfileError) as e:
        raise AudioDecodeError(f"Cannot decode {path.name}: {e}") from e

    try:
        buffer = SampleBuffer.from_array(data, sample_rate)
    except ValueError as e:
        raise AudioDecodeError(f"Invalid audio in {path.name}: {e}") from e

    logger.debug(
        f"Decoded {path.name}: {buffer.duration:.1f}s, {buffer.channel_count} ch @ {buffer.sample_rate} Hz"
    )
    return buffer
