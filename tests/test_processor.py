"""
Integration tests for the analysis orchestrator.
"""

import threading
import time
from unittest import mock

import numpy as np
import pytest

from conftest import drum_signal, make_buffer, tone_signal
from tempokey.analyze.backends import BeatTrack
from tempokey.analyze.models import Mode
from tempokey.cache import FileIdentity, ResultCache
from tempokey.errors import (
    AnalysisCancelledError,
    AnalysisTimeoutError,
    ResourceExhaustedError,
    describe_error,
)
from tempokey.memory import MemoryGuard
from tempokey.processor import AnalysisOrchestrator, AnalysisState, ProgressMerger


@pytest.fixture
def orchestrator(config, plenty_of_memory):
    orch = AnalysisOrchestrator(config=config, memory_guard=plenty_of_memory)
    yield orch
    orch.shutdown()


@pytest.fixture
def short_buffer():
    return make_buffer(drum_signal(120, 2) + tone_signal([440.0], 2))


class TestAnalyze:
    """Test end-to-end analysis."""

    def test_drums_and_minor_triad(self, orchestrator, drums_and_c_minor):
        """90 BPM drums over a C-minor triad."""
        result = orchestrator.analyze(drums_and_c_minor)
        assert result.bpm.bpm in set(range(88, 93)) | set(range(178, 183))
        assert result.key.mode == Mode.MINOR
        assert result.confidence.overall == pytest.approx((result.key.confidence + result.bpm.confidence) / 2)
        assert result.processing_time_ms > 0
        assert orchestrator.state == AnalysisState.COMPLETE

    def test_silent_buffer(self, orchestrator, silent_buffer):
        """Silence yields the default tempo and a near-zero key confidence."""
        result = orchestrator.analyze(silent_buffer)
        assert (result.bpm.bpm, result.bpm.confidence, result.bpm.detected_beats) == (120, 0.0, 0)
        assert result.key.confidence <= 0.1

    def test_idempotent_without_cache(self, orchestrator, short_buffer):
        """Two runs on the same buffer agree on tempo and mode."""
        first = orchestrator.analyze(short_buffer)
        second = orchestrator.analyze(short_buffer)
        assert first.bpm.bpm == second.bpm.bpm
        assert first.key.mode == second.key.mode

    def test_progress_monotonic_to_100(self, orchestrator, short_buffer):
        """Progress never goes backwards and ends at exactly 100."""
        seen = []
        orchestrator.analyze(short_buffer, on_progress=seen.append)
        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert seen[0] == 10

    def test_worker_error_degrades(self, orchestrator, short_buffer):
        """A crashing estimator yields its default result, not an error."""
        with mock.patch.object(orchestrator.runner.tempo_estimator, "estimate", side_effect=RuntimeError("boom")):
            result = orchestrator.analyze(short_buffer)
        assert result.bpm.bpm == 120
        assert result.bpm.confidence == 0.0


    def test_worker_error_uses_configured_default(self, config, plenty_of_memory, short_buffer):
        """The degraded tempo respects the configured BPM range."""
        config["analysis"]["bpm_range"] = [130, 200]
        orch = AnalysisOrchestrator(config=config, memory_guard=plenty_of_memory)
        try:
            with mock.patch.object(orch.runner.tempo_estimator, "estimate", side_effect=RuntimeError("boom")):
                result = orch.analyze(short_buffer)
        finally:
            orch.shutdown()
        assert result.bpm.bpm == 130

    def test_state_is_per_thread(self, config, plenty_of_memory, short_buffer):
        """Each thread sees the state of its own latest call."""
        tracker = mock.Mock()
        tracker.beat_track.side_effect = lambda signal, sr: time.sleep(0.5) or BeatTrack(positions=[])
        orch = AnalysisOrchestrator(config=config, memory_guard=plenty_of_memory)
        other_done = threading.Event()
        main_done = threading.Event()
        seen = {}

        def other_thread():
            orch.analyze(short_buffer)
            other_done.set()
            main_done.wait(10)
            seen["state"] = orch.state

        worker = threading.Thread(target=other_thread)
        try:
            worker.start()
            assert other_done.wait(30)
            orch.runner.tempo_estimator.beat_tracker = tracker
            with pytest.raises(AnalysisTimeoutError):
                orch.analyze(short_buffer, timeout_ms=1)
            main_done.set()
            worker.join(10)
        finally:
            main_done.set()
            orch.shutdown()
        assert orch.state == AnalysisState.TIMED_OUT
        assert seen["state"] == AnalysisState.COMPLETE


class TestCaching:
    """Test cache integration."""

    def test_second_call_hits_cache(self, config, plenty_of_memory, short_buffer, tmp_path):
        """A repeat analysis of the same file skips the estimators."""
        cache = ResultCache()
        orch = AnalysisOrchestrator(config=config, cache=cache, memory_guard=plenty_of_memory)
        path = tmp_path / "clip.wav"
        path.write_bytes(b"fake audio bytes" * 100)
        identity = FileIdentity.from_path(str(path))
        try:
            with mock.patch.object(orch.runner, "submit", wraps=orch.runner.submit) as submit:
                first = orch.analyze(short_buffer, file_identity=identity)
                assert submit.call_count == 2

                seen = []
                second = orch.analyze(short_buffer, file_identity=identity, on_progress=seen.append)
                assert submit.call_count == 2
        finally:
            orch.shutdown()

        assert second == first
        assert seen == [100]
        assert cache.stats().hits == 1

    def test_no_identity_bypasses_cache(self, config, plenty_of_memory, short_buffer):
        """Without a file identity nothing is cached."""
        cache = ResultCache()
        orch = AnalysisOrchestrator(config=config, cache=cache, memory_guard=plenty_of_memory)
        try:
            orch.analyze(short_buffer)
        finally:
            orch.shutdown()
        assert cache.stats().total_entries == 0

    def test_cache_write_failure_not_fatal(self, config, plenty_of_memory, short_buffer, tmp_path):
        """A failing cache write still returns the result."""
        cache = mock.Mock()
        cache.get.return_value = None
        cache.put.side_effect = RuntimeError("disk on fire")
        orch = AnalysisOrchestrator(config=config, cache=cache, memory_guard=plenty_of_memory)
        identity = FileIdentity(name="x.wav", size=1, modified_at=0.0)
        try:
            result = orch.analyze(short_buffer, file_identity=identity)
        finally:
            orch.shutdown()
        assert 60 <= result.bpm.bpm <= 200


class TestFailures:
    """Test timeout, cancellation and resource exhaustion."""

    def test_timeout(self, config, plenty_of_memory, short_buffer):
        """A slow estimator with a 1 ms budget times out."""
        tracker = mock.Mock()
        tracker.beat_track.side_effect = lambda signal, sr: time.sleep(0.5) or BeatTrack(positions=[])
        orch = AnalysisOrchestrator(config=config, beat_tracker=tracker, memory_guard=plenty_of_memory)
        try:
            with pytest.raises(AnalysisTimeoutError) as excinfo:
                orch.analyze(short_buffer, timeout_ms=1)
        finally:
            orch.shutdown()
        assert orch.state == AnalysisState.TIMED_OUT
        assert excinfo.value.can_retry
        assert describe_error(excinfo.value)["type"] == "timeout"

    def test_timeouts_do_not_starve_later_calls(self, config, plenty_of_memory, short_buffer):
        """Stuck calls abandoned by timeouts do not hold up a healthy analysis."""
        release = threading.Event()

        def stuck_track(signal, sr):
            release.wait(30)
            return BeatTrack(positions=[])

        tracker = mock.Mock()
        tracker.beat_track.side_effect = stuck_track
        orch = AnalysisOrchestrator(config=config, beat_tracker=tracker, memory_guard=plenty_of_memory)
        try:
            for _ in range(orch.runner.max_workers):
                with pytest.raises(AnalysisTimeoutError):
                    orch.analyze(short_buffer, timeout_ms=20)

            orch.runner.tempo_estimator.beat_tracker = None
            result = orch.analyze(short_buffer, timeout_ms=10000)
        finally:
            release.set()
            orch.shutdown()
        assert 60 <= result.bpm.bpm <= 200
        assert orch.runner.retired_pools >= 1

    def test_cancel(self, config, plenty_of_memory, short_buffer):
        """cancel() during estimation surfaces a cancellation error."""
        orch = AnalysisOrchestrator(config=config, memory_guard=plenty_of_memory)

        def slow_track(signal, sr):
            orch.cancel()
            time.sleep(0.3)
            return BeatTrack(positions=[])

        tracker = mock.Mock()
        tracker.beat_track.side_effect = slow_track
        orch.runner.tempo_estimator.beat_tracker = tracker
        try:
            with pytest.raises(AnalysisCancelledError) as excinfo:
                orch.analyze(short_buffer)
        finally:
            orch.shutdown()
        assert orch.state == AnalysisState.CANCELLED
        assert excinfo.value.stage in ("estimation", "bpm_detection", "key_detection")

    def test_resource_exhausted(self, config, short_buffer):
        """No memory headroom fails fast after one collection attempt."""
        guard = MemoryGuard(available_memory=lambda: 0)
        orch = AnalysisOrchestrator(config=config, memory_guard=guard)
        try:
            with mock.patch("tempokey.memory.gc.collect") as collect:
                with pytest.raises(ResourceExhaustedError) as excinfo:
                    orch.analyze(short_buffer)
        finally:
            orch.shutdown()
        collect.assert_called_once()
        assert orch.state == AnalysisState.FAILED
        assert describe_error(excinfo.value)["type"] == "resource_exhausted"
        assert not excinfo.value.can_retry

    def test_memory_recovered_after_collect(self, short_buffer):
        """Headroom regained after gc.collect admits the analysis."""
        readings = iter([0, 1 << 40])
        guard = MemoryGuard(available_memory=lambda: next(readings))
        guard.ensure_headroom(short_buffer)


class TestProgressMerger:
    """Test progress merging."""

    def test_sub_ranges_rescale(self):
        """Estimator progress maps into its sub-range."""
        seen = []
        merger = ProgressMerger(seen.append)
        merger.sub_range(20, 60)(50)
        assert seen == [40]

    def test_drops_regressions_and_late_reports(self):
        """Lower values and reports after close are ignored."""
        seen = []
        merger = ProgressMerger(seen.append)
        merger.report(70)
        merger.report(30)
        merger.close()
        merger.report(90)
        assert seen == [70]

    def test_callback_errors_swallowed(self):
        """A failing callback does not break analysis."""
        merger = ProgressMerger(mock.Mock(side_effect=RuntimeError("ui gone")))
        merger.report(50)
        assert merger.last == 50
