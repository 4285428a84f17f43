"""
Memory admission control.

Before starting the estimators the orchestrator checks that the machine
has enough free memory for the buffer and the working copies the analysis
makes (mono mix, spectra, autocorrelation). If not, it asks the garbage
collector to free what it can and checks once more.
"""

import gc
import logging
from typing import Callable, Optional

import psutil

from tempokey.analyze.models import SampleBuffer
from tempokey.errors import ResourceExhaustedError

logger = logging.getLogger(__name__)

# float32 input plus float64 mono mix and spectral working set, per frame
_WORKING_BYTES_PER_FRAME = 8 * 3


def available_memory_bytes() -> int:
    return int(psutil.virtual_memory().available)


class MemoryGuard:
    """
    Admission check for an analysis run.

    Args:
        safety_margin: Required headroom as a multiple of the estimate
        available_memory: Callable returning free bytes (psutil by default)
    """

    def __init__(
        self,
        safety_margin: float = 1.5,
        available_memory: Optional[Callable[[], int]] = None,
    ):
        self.safety_margin = safety_margin
        self.available_memory = available_memory or available_memory_bytes

    @staticmethod
    def estimate_analysis_memory(buffer: SampleBuffer) -> int:
        """Bytes the analysis of buffer is expected to need."""
        raw = buffer.channel_count * buffer.frame_count * 4
        return raw + buffer.frame_count * _WORKING_BYTES_PER_FRAME

    def has_headroom(self, required: int) -> bool:
        return self.available_memory() > required * self.safety_margin

    def ensure_headroom(self, buffer: SampleBuffer, stage: str = "admission", elapsed_ms: float = 0.0) -> None:
        """
        Raise unless there is room to analyze buffer.

        Raises:
            ResourceExhaustedError: If headroom is still short after gc.collect()
        """
        required = self.estimate_analysis_memory(buffer)
        if self.has_headroom(required):
            return

        logger.warning(
            f"Low memory for analysis (need ~{required / 1e6:.1f} MB x {self.safety_margin}); "
            f"collecting garbage"
        )
        gc.collect()
        if self.has_headroom(required):
            return

        available = self.available_memory()
        raise ResourceExhaustedError(
            f"Insufficient memory for analysis: need {required * self.safety_margin / 1e6:.1f} MB, "
            f"{available / 1e6:.1f} MB available",
            stage=stage,
            elapsed_ms=elapsed_ms,
        )
