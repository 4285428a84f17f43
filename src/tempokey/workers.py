"""
Background execution boundary for the estimators.

Each estimator call crosses this boundary as an AnalysisRequest and comes
back as an AnalysisResponse. Only buffer data and results cross it;
TaskRunner decides where the call runs (a thread pool here).
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

import numpy as np

from tempokey.analyze.bpm import TempoEstimator
from tempokey.analyze.key import KeyEstimator
from tempokey.analyze.models import SampleBuffer, channels_from_sequences
from tempokey.cancellation import CancellationToken
from tempokey.errors import AnalysisCancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[float], None]]


class TaskKind(Enum):
    DETECT_BPM = "detect_bpm"
    DETECT_KEY = "detect_key"


class ResponseKind(Enum):
    RESULT = "result"
    ERROR = "error"


@dataclass(frozen=True)
class AnalysisRequest:
    kind: TaskKind
    sample_rate: int
    frame_count: int
    channel_count: int
    channel_data: Tuple[np.ndarray, ...]

    @classmethod
    def from_buffer(cls, kind: TaskKind, buffer: SampleBuffer) -> "AnalysisRequest":
        return cls(
            kind=kind,
            sample_rate=buffer.sample_rate,
            frame_count=buffer.frame_count,
            channel_count=buffer.channel_count,
            channel_data=buffer.channels,
        )

    @classmethod
    def from_sequences(
        cls, kind: TaskKind, sample_rate: int, channel_data: Sequence[Sequence[float]]
    ) -> "AnalysisRequest":
        """Build a request from plain per-channel sample lists."""
        channels = channels_from_sequences(channel_data)
        return cls(
            kind=kind,
            sample_rate=sample_rate,
            frame_count=len(channels[0]) if channels else 0,
            channel_count=len(channels),
            channel_data=channels,
        )

    def to_buffer(self) -> SampleBuffer:
        """
        Rebuild the SampleBuffer carried by this request.

        Raises:
            ValueError: If the declared shape does not match the channel data.
        """
        if len(self.channel_data) != self.channel_count:
            raise ValueError(
                f"Request declares {self.channel_count} channels but carries {len(self.channel_data)}"
            )
        buffer = SampleBuffer(channels=tuple(self.channel_data), sample_rate=self.sample_rate)
        if buffer.frame_count != self.frame_count:
            raise ValueError(
                f"Request declares {self.frame_count} frames but carries {buffer.frame_count}"
            )
        return buffer


@dataclass(frozen=True)
class AnalysisResponse:
    kind: ResponseKind
    payload: Any = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == ResponseKind.RESULT


def handle_request(
    request: AnalysisRequest,
    tempo_estimator: TempoEstimator,
    key_estimator: KeyEstimator,
    on_progress: ProgressCallback = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AnalysisResponse:
    """
    Worker entry point: run one estimator for a request.

    Cancellation propagates; every other failure becomes an ERROR response.
    """
    try:
        buffer = request.to_buffer()
        if request.kind == TaskKind.DETECT_BPM:
            payload = tempo_estimator.estimate(buffer, on_progress=on_progress, cancel_token=cancel_token)
        elif request.kind == TaskKind.DETECT_KEY:
            payload = key_estimator.estimate(buffer, on_progress=on_progress, cancel_token=cancel_token)
        else:
            raise ValueError(f"Unknown task kind: {request.kind}")
    except AnalysisCancelledError:
        raise
    except Exception as e:
        logger.error(f"Worker failed on {request.kind}: {e}", exc_info=True)
        return AnalysisResponse(kind=ResponseKind.ERROR, error_message=str(e) or e.__class__.__name__)

    return AnalysisResponse(kind=ResponseKind.RESULT, payload=payload)


class TaskRunner:
    """
    Dispatches estimator requests to a thread pool.

    A native call in flight cannot be interrupted, so work abandoned after a
    timeout or cancellation may keep a pool thread busy. abandon() retires
    such a pool (its threads finish in the background and exit) and later
    submissions go to a fresh one.

    Args:
        tempo_estimator: Handles DETECT_BPM
        key_estimator: Handles DETECT_KEY
        max_workers: Pool size
    """

    def __init__(self, tempo_estimator: TempoEstimator, key_estimator: KeyEstimator, max_workers: int = 4):
        self.tempo_estimator = tempo_estimator
        self.key_estimator = key_estimator
        self.max_workers = max_workers
        self.retired_pools = 0
        self._lock = threading.Lock()
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="tempokey-worker")

    def submit(
        self,
        request: AnalysisRequest,
        on_progress: ProgressCallback = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> "Future[AnalysisResponse]":
        with self._lock:
            return self._executor.submit(
                handle_request,
                request,
                self.tempo_estimator,
                self.key_estimator,
                on_progress,
                cancel_token,
            )

    def abandon(self, futures: Iterable["Future[AnalysisResponse]"]) -> int:
        """
        Give up on futures; their results will be discarded.

        Queued futures are cancelled. If any is already running, the pool
        holding it is retired so it cannot delay later submissions.

        Returns:
            Number of abandoned futures still running
        """
        stuck = [f for f in futures if not f.cancel() and not f.done()]
        if not stuck:
            return 0

        with self._lock:
            retired = self._executor
            self._executor = self._new_executor()
            self.retired_pools += 1
        retired.shutdown(wait=False)
        logger.warning(f"Retired worker pool with {len(stuck)} abandoned tasks still running")
        return len(stuck)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._executor.shutdown(wait=wait, cancel_futures=True)
