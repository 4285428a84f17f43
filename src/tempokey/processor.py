"""
Analysis orchestrator: cache lookup, admission, parallel estimation.

Flow per analyze() call:
    IDLE -> CACHE_CHECK -> RUNNING -> COMPLETE | CANCELLED | TIMED_OUT | FAILED

Progress (0-100, non-decreasing):
    10        admitted, estimators starting
    20-60     key estimator
    60-90     tempo estimator
    95        calibrated
    100       done (also reported immediately on a cache hit)

Only timeout, cancellation and resource exhaustion reach the caller; the
estimators absorb their own failures.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from enum import Enum
from typing import Callable, Optional, Set

from tempokey.analyze.backends import create_backend
from tempokey.analyze.bpm import TempoEstimator
from tempokey.analyze.calibration import (
    calibrate_bpm_confidence,
    calibrate_key_confidence,
    extract_audio_features,
)
from tempokey.analyze.key import KeyEstimator
from tempokey.analyze.models import (
    AnalysisResult,
    BPMResult,
    ConfidenceScores,
    KeyResult,
    SampleBuffer,
)
from tempokey.cache import FileIdentity, ResultCache
from tempokey.cancellation import CancellationToken
from tempokey.config import Config
from tempokey.errors import AnalysisCancelledError, AnalysisTimeoutError, ResourceExhaustedError
from tempokey.memory import MemoryGuard
from tempokey.workers import AnalysisRequest, AnalysisResponse, TaskKind, TaskRunner

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[float], None]]

# How often the wait loop re-checks cancellation and the deadline (seconds)
_POLL_INTERVAL = 0.05

_KEY_PROGRESS = (20.0, 60.0)
_TEMPO_PROGRESS = (60.0, 90.0)


class AnalysisState(Enum):
    IDLE = "idle"
    CACHE_CHECK = "cache_check"
    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class ProgressMerger:
    """Merges progress from concurrent estimators into one non-decreasing stream."""

    def __init__(self, callback: ProgressCallback):
        self._callback = callback
        self._last = 0.0
        self._closed = False
        self._lock = threading.Lock()

    def report(self, value: float) -> None:
        with self._lock:
            if self._closed or value <= self._last:
                return
            self._last = min(100.0, value)
            if self._callback is None:
                return
            try:
                self._callback(self._last)
            except Exception as e:
                logger.warning(f"Progress callback raised: {e}")

    def sub_range(self, low: float, high: float) -> Callable[[float], None]:
        """Callback mapping an estimator's own 0-100 onto [low, high]."""
        def report(progress: float) -> None:
            fraction = min(max(progress, 0.0), 100.0) / 100.0
            self.report(low + (high - low) * fraction)
        return report

    def close(self) -> None:
        """Drop any later reports (late estimator threads after timeout/cancel)."""
        with self._lock:
            self._closed = True

    @property
    def last(self) -> float:
        return self._last


class AnalysisOrchestrator:
    """
    Runs tempo and key estimation for a buffer.

    Args:
        config: Loaded Config (defaults when None)
        beat_tracker: Primary beat-tracking backend (None = fallback only)
        key_extractor: Primary key-extraction backend (None = fallback only)
        cache: Result cache (None = caching disabled)
        memory_guard: Admission check (defaults to psutil-backed MemoryGuard)
        runner: Task runner (built from the estimators when None)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        beat_tracker=None,
        key_extractor=None,
        cache: Optional[ResultCache] = None,
        memory_guard: Optional[MemoryGuard] = None,
        runner: Optional[TaskRunner] = None,
    ):
        self.config = config or Config()
        processing = self.config["processing"]

        self.cache = cache
        self.memory_guard = memory_guard or MemoryGuard(
            safety_margin=processing.get("memory_safety_margin", 1.5)
        )
        self.default_timeout_ms = processing.get("timeout_seconds", 30) * 1000.0

        if runner is None:
            analysis = self.config["analysis"]
            tempo_estimator = TempoEstimator(beat_tracker=beat_tracker, config=analysis)
            key_estimator = KeyEstimator(
                key_extractor=key_extractor,
                config=self.config["key_detection"],
                silence_threshold=analysis.get("silence_threshold", 0.001),
            )
            runner = TaskRunner(tempo_estimator, key_estimator, max_workers=processing.get("max_workers", 4))
        self.runner = runner

        self._backends = []
        self._calls = threading.local()
        self._active: Set[CancellationToken] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[Config] = None, backend_name: Optional[str] = None) -> "AnalysisOrchestrator":
        """
        Build an orchestrator that owns its backend and cache.

        Args:
            config: Loaded Config (defaults when None)
            backend_name: Overrides processing.backend

        Returns:
            AnalysisOrchestrator; call shutdown() when done
        """
        config = config or Config()
        min_bpm, max_bpm = config.get("analysis", "bpm_range", [60, 200])
        backend = create_backend(backend_name or config.get("processing", "backend", "auto"), min_bpm, max_bpm)

        cache = None
        if config.get("cache", "enabled", True):
            cache = ResultCache.from_config(config["cache"])
            cache.start_sweeper()

        orchestrator = cls(
            config=config,
            beat_tracker=backend,
            key_extractor=backend if hasattr(backend, "extract_key") else None,
            cache=cache,
        )
        if backend is not None:
            orchestrator._backends.append(backend)
        return orchestrator

    @property
    def state(self) -> AnalysisState:
        """State of the latest analyze() call made from the calling thread."""
        return getattr(self._calls, "state", AnalysisState.IDLE)

    def _set_state(self, state: AnalysisState) -> None:
        self._calls.state = state
        logger.debug(f"Analysis state -> {state.value}")

    def analyze(
        self,
        buffer: SampleBuffer,
        timeout_ms: Optional[float] = None,
        on_progress: ProgressCallback = None,
        file_identity: Optional[FileIdentity] = None,
    ) -> AnalysisResult:
        """
        Analyze tempo and key of a buffer.

        Args:
            buffer: Decoded audio
            timeout_ms: Time budget (processing.timeout_seconds when None)
            on_progress: Receives non-decreasing 0-100 progress
            file_identity: Source file, enables the result cache

        Returns:
            AnalysisResult with calibrated confidences

        Raises:
            AnalysisTimeoutError: If the budget ran out first
            AnalysisCancelledError: If cancel() was called first
            ResourceExhaustedError: If there is not enough memory to start
        """
        start = time.monotonic()
        timeout_s = (timeout_ms if timeout_ms is not None else self.default_timeout_ms) / 1000.0
        progress = ProgressMerger(on_progress)
        token = CancellationToken()

        def elapsed_ms() -> float:
            return (time.monotonic() - start) * 1000.0

        with self._lock:
            self._active.add(token)
        try:
            self._set_state(AnalysisState.CACHE_CHECK)
            if file_identity is not None and self.cache is not None:
                cached = self.cache.get(file_identity)
                if cached is not None:
                    progress.report(100)
                    self._set_state(AnalysisState.COMPLETE)
                    logger.info(f"✅ Cache hit for {file_identity.name}")
                    return cached

            self._set_state(AnalysisState.RUNNING)
            try:
                self.memory_guard.ensure_headroom(buffer, stage="admission", elapsed_ms=elapsed_ms())
            except ResourceExhaustedError:
                self._set_state(AnalysisState.FAILED)
                raise
            token.raise_if_cancelled("admission")
            progress.report(10)

            prepared = buffer.normalized()
            key_future = self.runner.submit(
                AnalysisRequest.from_buffer(TaskKind.DETECT_KEY, prepared),
                on_progress=progress.sub_range(*_KEY_PROGRESS),
                cancel_token=token,
            )
            tempo_future = self.runner.submit(
                AnalysisRequest.from_buffer(TaskKind.DETECT_BPM, prepared),
                on_progress=progress.sub_range(*_TEMPO_PROGRESS),
                cancel_token=token,
            )

            self._await(
                [key_future, tempo_future], token, start + timeout_s, elapsed_ms, progress
            )

            key_result = self._key_from(key_future, elapsed_ms)
            bpm_result = self._bpm_from(tempo_future, elapsed_ms)

            features = extract_audio_features(buffer)
            key_confidence = calibrate_key_confidence(
                key_result.confidence, key_result.root, key_result.mode, buffer, features
            )
            bpm_confidence = calibrate_bpm_confidence(
                bpm_result.confidence, bpm_result.bpm, buffer, features
            )
            progress.report(95)

            result = AnalysisResult(
                key=dataclasses.replace(key_result, confidence=key_confidence),
                bpm=dataclasses.replace(bpm_result, confidence=bpm_confidence),
                confidence=ConfidenceScores.combine(key_confidence, bpm_confidence),
                processing_time_ms=elapsed_ms(),
            )

            if file_identity is not None and self.cache is not None:
                try:
                    self.cache.put(file_identity, result)
                except Exception as e:
                    logger.warning(f"Cache write failed for {file_identity.name}: {e}")

            progress.report(100)
            self._set_state(AnalysisState.COMPLETE)
            logger.info(
                f"✅ Analysis complete: {result.key.key_name}, {result.bpm.bpm} BPM "
                f"(overall confidence {result.confidence.overall:.2f}, {result.processing_time_ms:.0f}ms)"
            )
            return result

        except AnalysisCancelledError:
            progress.close()
            if self.state != AnalysisState.TIMED_OUT:
                self._set_state(AnalysisState.CANCELLED)
            raise
        finally:
            with self._lock:
                self._active.discard(token)

    def _await(
        self,
        futures,
        token: CancellationToken,
        deadline: float,
        elapsed_ms: Callable[[], float],
        progress: ProgressMerger,
    ) -> None:
        """Three-way race: both futures done, the deadline, or cancellation."""
        pending = set(futures)
        while True:
            if token.cancelled:
                self.runner.abandon(futures)
                raise AnalysisCancelledError(
                    f"Analysis {token.reason or 'cancelled'}", stage="estimation", elapsed_ms=elapsed_ms()
                )

            pending = {f for f in pending if not f.done()}
            if not pending:
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                token.cancel("timed out")
                progress.close()
                self.runner.abandon(futures)
                self._set_state(AnalysisState.TIMED_OUT)
                raise AnalysisTimeoutError(
                    f"Audio processing timed out after {elapsed_ms() / 1000.0:.1f} seconds",
                    stage="estimation",
                    elapsed_ms=elapsed_ms(),
                )

            wait(pending, timeout=min(_POLL_INTERVAL, remaining), return_when=FIRST_COMPLETED)

    @staticmethod
    def _response(future: "Future[AnalysisResponse]", what: str, elapsed_ms: Callable[[], float]) -> Optional[AnalysisResponse]:
        try:
            return future.result()
        except AnalysisCancelledError as e:
            raise AnalysisCancelledError(e.message, stage=e.stage, elapsed_ms=elapsed_ms())
        except Exception as e:
            logger.warning(f"{what} task failed: {e}")
            return None

    def _key_from(self, future, elapsed_ms) -> KeyResult:
        response = self._response(future, "Key detection", elapsed_ms)
        if response is None or not response.ok:
            if response is not None:
                logger.warning(f"Key detection worker error: {response.error_message}")
            return KeyResult.default(confidence=0.0)
        return response.payload

    def _bpm_from(self, future, elapsed_ms) -> BPMResult:
        response = self._response(future, "BPM detection", elapsed_ms)
        if response is None or not response.ok:
            if response is not None:
                logger.warning(f"BPM detection worker error: {response.error_message}")
            return BPMResult.default(confidence=0.0, bpm=self.runner.tempo_estimator.default_bpm)
        return response.payload

    def cancel(self) -> None:
        """Cancel every analysis currently running on this orchestrator."""
        with self._lock:
            tokens = list(self._active)
        for token in tokens:
            token.cancel("cancelled")
        if tokens:
            logger.info(f"Cancelling {len(tokens)} running analyses")

    def shutdown(self) -> None:
        """Stop the cache sweeper, the worker pool and owned backends."""
        if self.cache is not None:
            self.cache.stop_sweeper()
        self.runner.shutdown(wait=False)
        for backend in self._backends:
            backend.shutdown()
        self._backends = []
