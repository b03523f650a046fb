"""
Unit tests for navigation batch preprocessing.

Tests grouping, completion, the grace period, bounded memory and the
guarantee that each batch reaches the trimming hook once.
"""

import asyncio
import logging

import pytest

from regrets_reporter.config.loader import PipelineConfig
from regrets_reporter.core.batching import (
    NavigationBatch,
    NavigationBatchPreprocessor,
    TrimmedNavigationBatch,
)
from regrets_reporter.core.dwell_time import ActiveTabDwellTimeMonitor
from regrets_reporter.core.events import EventType
from regrets_reporter.core.summarizer import ReportSummarizer

ENDED = {"phase": "ended"}


class RecordingTrimmer:
    """Trimming hook that records calls and can fail or block on demand."""

    def __init__(self):
        self.summarizer = ReportSummarizer()
        self.calls = []
        self.trimmed_events = []
        self.failures_left = 0
        self.entered = asyncio.Event()
        self.release = None

    async def trim_batch(self, batch):
        self.calls.append(batch.navigation_uuid)
        self.entered.set()
        if self.release is not None:
            await self.release.wait()
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("hook failed")
        return self.summarizer.trim_navigation_batch(batch)

    def trim_event(self, event):
        self.trimmed_events.append(event)
        return self.summarizer.trim_event(event)


class TestGrouping:
    """Test events are grouped by navigation in arrival order."""

    def setup_method(self):
        self.trimmer = RecordingTrimmer()

    @pytest.mark.asyncio
    async def test_events_grouped_by_navigation_uuid(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        a1 = make_event("nav-a", payload={"url": "https://www.youtube.com/"})
        b1 = make_event("nav-b", tab_id=2)
        a2 = make_event("nav-a", event_type=EventType.HTTP)
        for event in (a1, b1, a2):
            preprocessor.enqueue(event)

        assert preprocessor.pending_event_count == 3
        await preprocessor.process_queue()

        batches = preprocessor.navigation_batches_by_navigation_uuid
        assert set(batches) == {"nav-a", "nav-b"}
        assert batches["nav-a"].events == [a1, a2]
        assert batches["nav-a"].url == "https://www.youtube.com/"
        assert batches["nav-b"].events == [b1]
        assert preprocessor.pending_event_count == 0
        assert self.trimmer.calls == []

    @pytest.mark.asyncio
    async def test_arrival_order_kept_for_out_of_order_timestamps(self, clock, make_event):
        """Test events keep arrival order while the batch reports the earliest time."""
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        later = make_event(seconds=10)
        earlier = make_event(event_type=EventType.HTTP, seconds=1)
        preprocessor.enqueue(later)
        preprocessor.enqueue(earlier)

        await preprocessor.process_queue()

        batch = preprocessor.navigation_batches_by_navigation_uuid["nav-a"]
        assert batch.events == [later, earlier]
        assert batch.timestamp == earlier.timestamp

    @pytest.mark.asyncio
    async def test_referrer_is_previous_navigation_on_tab(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event("nav-a", tab_id=1))
        preprocessor.enqueue(make_event("nav-b", tab_id=1))
        preprocessor.enqueue(make_event("nav-c", tab_id=2))
        preprocessor.enqueue(make_event("nav-d", tab_id=2, payload={"referrer_navigation_uuid": "nav-a"}))

        await preprocessor.process_queue()

        batches = preprocessor.navigation_batches_by_navigation_uuid
        assert batches["nav-a"].referrer_navigation_uuid is None
        assert batches["nav-b"].referrer_navigation_uuid == "nav-a"
        assert batches["nav-c"].referrer_navigation_uuid is None
        assert batches["nav-d"].referrer_navigation_uuid == "nav-a"

    @pytest.mark.asyncio
    async def test_stray_events_do_not_move_tab_referrer(self, clock, make_event):
        """Test only a navigation start becomes the tab's next referrer."""
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event("nav-a", tab_id=1))
        preprocessor.enqueue(make_event("nav-old", tab_id=1, event_type=EventType.HTTP))
        preprocessor.enqueue(make_event("nav-older", tab_id=1, payload=ENDED))
        preprocessor.enqueue(make_event("nav-a", tab_id=1, payload={"phase": "committed"}))
        preprocessor.enqueue(make_event("nav-b", tab_id=1))

        await preprocessor.process_queue()

        assert preprocessor.navigation_batches_by_navigation_uuid["nav-b"].referrer_navigation_uuid == "nav-a"

    @pytest.mark.asyncio
    async def test_navigation_start_after_http_event_moves_tab_referrer(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event("nav-a", tab_id=1))
        preprocessor.enqueue(make_event("nav-b", tab_id=1, event_type=EventType.HTTP))
        preprocessor.enqueue(make_event("nav-b", tab_id=1))
        preprocessor.enqueue(make_event("nav-c", tab_id=1))

        await preprocessor.process_queue()

        batches = preprocessor.navigation_batches_by_navigation_uuid
        assert batches["nav-b"].referrer_navigation_uuid == "nav-a"
        assert batches["nav-c"].referrer_navigation_uuid == "nav-b"


class TestCompletion:
    """Test completion detection and the single hook invocation."""

    def setup_method(self):
        self.trimmer = RecordingTrimmer()

    @pytest.mark.asyncio
    async def test_quiescent_batch_trimmed_once(self, clock, make_event):
        """Test a batch completed by quiescence reaches the hook exactly once."""
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event())
        preprocessor.enqueue(make_event(event_type=EventType.HTTP))
        await preprocessor.process_queue()

        clock.advance(5)
        await preprocessor.process_queue()
        await preprocessor.process_queue()

        assert self.trimmer.calls == ["nav-a"]
        trimmed = preprocessor.navigation_batches_by_navigation_uuid["nav-a"]
        assert isinstance(trimmed, TrimmedNavigationBatch)
        assert len(trimmed.events) == 2
        assert trimmed.completed_at == clock.now

    @pytest.mark.asyncio
    async def test_not_complete_before_quiescence(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event())
        await preprocessor.process_queue()

        clock.advance(4.9)
        await preprocessor.process_queue()

        assert self.trimmer.calls == []
        assert not isinstance(preprocessor.navigation_batches_by_navigation_uuid["nav-a"], TrimmedNavigationBatch)

    @pytest.mark.asyncio
    async def test_new_event_restarts_quiescence(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event())
        clock.advance(4)
        preprocessor.enqueue(make_event(event_type=EventType.HTTP))
        clock.advance(4)

        await preprocessor.process_queue()

        assert self.trimmer.calls == []

    @pytest.mark.asyncio
    async def test_terminal_event_completes_immediately(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event(payload={"url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"}))
        preprocessor.enqueue(make_event(payload=ENDED))

        await preprocessor.process_queue()

        assert self.trimmer.calls == ["nav-a"]
        assert preprocessor.navigation_batches_by_navigation_uuid["nav-a"].ended

    @pytest.mark.asyncio
    async def test_hook_failure_retried_on_next_drain(self, clock, make_event):
        """Test a failing hook leaves the batch open for the next drain."""
        self.trimmer.failures_left = 1
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event(payload=ENDED))

        await preprocessor.process_queue()
        batch = preprocessor.navigation_batches_by_navigation_uuid["nav-a"]
        assert not isinstance(batch, TrimmedNavigationBatch)

        await preprocessor.process_queue()

        assert self.trimmer.calls == ["nav-a", "nav-a"]
        assert isinstance(preprocessor.navigation_batches_by_navigation_uuid["nav-a"], TrimmedNavigationBatch)

    @pytest.mark.asyncio
    async def test_events_arriving_during_hook_are_merged(self, clock, make_event):
        """Test concurrent drains never hand a batch to the hook twice."""
        self.trimmer.release = asyncio.Event()
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event(payload=ENDED))

        first_drain = asyncio.create_task(preprocessor.process_queue())
        await self.trimmer.entered.wait()

        late = make_event(event_type=EventType.HTTP, payload={"url": "https://www.youtube.com/"})
        preprocessor.enqueue(late)
        await preprocessor.process_queue()
        assert self.trimmer.calls == ["nav-a"]

        self.trimmer.release.set()
        await first_drain

        trimmed = preprocessor.navigation_batches_by_navigation_uuid["nav-a"]
        assert isinstance(trimmed, TrimmedNavigationBatch)
        assert trimmed.events[-1] == late
        assert self.trimmer.calls == ["nav-a"]
        assert self.trimmer.trimmed_events[-1] == late


class TestGracePeriod:
    """Test late events after completion."""

    def setup_method(self):
        self.trimmer = RecordingTrimmer()

    async def _completed(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(self.trimmer, clock=clock)
        preprocessor.enqueue(make_event(payload=ENDED))
        await preprocessor.process_queue()
        return preprocessor

    @pytest.mark.asyncio
    async def test_late_event_within_grace_is_merged_trimmed(self, clock, make_event):
        preprocessor = await self._completed(clock, make_event)
        clock.advance(10)
        preprocessor.enqueue(make_event(
            event_type=EventType.HTTP,
            payload={"url": "https://www.youtube.com/", "response_body": "<html></html>"},
        ))

        await preprocessor.process_queue()

        trimmed = preprocessor.navigation_batches_by_navigation_uuid["nav-a"]
        assert isinstance(trimmed, TrimmedNavigationBatch)
        assert len(trimmed.events) == 2
        assert "response_body" not in trimmed.events[-1].payload
        assert self.trimmer.calls == ["nav-a"]
        assert preprocessor.dropped_late_events == 0

    @pytest.mark.asyncio
    async def test_late_event_after_grace_is_dropped(self, clock, make_event):
        """Test events past the grace period are counted and never recreate a batch."""
        preprocessor = await self._completed(clock, make_event)
        clock.advance(30)
        preprocessor.enqueue(make_event(event_type=EventType.HTTP))

        await preprocessor.process_queue()

        trimmed = preprocessor.navigation_batches_by_navigation_uuid["nav-a"]
        assert len(trimmed.events) == 1
        assert preprocessor.dropped_late_events == 1
        assert self.trimmer.calls == ["nav-a"]


class TestBoundedMemory:
    """Test intake backlog and retention bounds."""

    def setup_method(self):
        self.trimmer = RecordingTrimmer()

    @pytest.mark.asyncio
    async def test_backlog_drops_oldest(self, clock, make_event, caplog):
        preprocessor = NavigationBatchPreprocessor(
            self.trimmer, config=PipelineConfig(max_queue_size=3), clock=clock
        )
        events = [make_event(f"nav-{n}", tab_id=n) for n in range(5)]

        with caplog.at_level(logging.WARNING):
            for event in events:
                preprocessor.enqueue(event)

        assert preprocessor.dropped_backlog_events == 2
        assert preprocessor.pending_event_count == 3
        assert len([r for r in caplog.records if "backlog" in r.getMessage()]) == 1

        await preprocessor.process_queue()
        assert set(preprocessor.navigation_batches_by_navigation_uuid) == {"nav-2", "nav-3", "nav-4"}

    @pytest.mark.asyncio
    async def test_retention_limit_evicts_oldest_trimmed(self, clock, make_event):
        """Test evicted navigations stay closed to late events."""
        preprocessor = NavigationBatchPreprocessor(
            self.trimmer, config=PipelineConfig(retained_batch_limit=2), clock=clock
        )
        for n in range(3):
            preprocessor.enqueue(make_event(f"nav-{n}", tab_id=n, payload=ENDED))
            await preprocessor.process_queue()
            clock.advance(1)

        assert set(preprocessor.navigation_batches_by_navigation_uuid) == {"nav-1", "nav-2"}

        preprocessor.enqueue(make_event("nav-0", tab_id=0))
        await preprocessor.process_queue()

        assert "nav-0" not in preprocessor.navigation_batches_by_navigation_uuid
        assert preprocessor.dropped_late_events == 1


class TestLifecycle:
    """Test periodic draining and cleanup."""

    @pytest.mark.asyncio
    async def test_run_drains_periodically(self, clock, make_event):
        trimmer = RecordingTrimmer()
        preprocessor = NavigationBatchPreprocessor(
            trimmer, config=PipelineConfig(drain_interval_seconds=0.01), clock=clock
        )
        preprocessor.run()
        try:
            assert preprocessor.is_running
            preprocessor.run()
            preprocessor.enqueue(make_event(payload=ENDED))
            for _ in range(50):
                if trimmer.calls:
                    break
                await asyncio.sleep(0.01)
            assert trimmer.calls == ["nav-a"]
        finally:
            preprocessor.stop()
        assert not preprocessor.is_running

    @pytest.mark.asyncio
    async def test_cleanup_discards_everything(self, clock, make_event):
        preprocessor = NavigationBatchPreprocessor(RecordingTrimmer(), clock=clock)
        preprocessor.enqueue(make_event("nav-a"))
        await preprocessor.process_queue()
        preprocessor.enqueue(make_event("nav-b"))
        preprocessor.run()

        preprocessor.cleanup()
        preprocessor.cleanup()

        assert not preprocessor.is_running
        assert preprocessor.pending_event_count == 0
        assert preprocessor.navigation_batches_by_navigation_uuid == {}

    @pytest.mark.asyncio
    async def test_batch_discarded_by_cleanup_during_hook_not_restored(self, clock, make_event):
        trimmer = RecordingTrimmer()
        trimmer.release = asyncio.Event()
        preprocessor = NavigationBatchPreprocessor(trimmer, clock=clock)
        preprocessor.enqueue(make_event(payload=ENDED))

        drain = asyncio.create_task(preprocessor.process_queue())
        await trimmer.entered.wait()
        preprocessor.cleanup()
        trimmer.release.set()
        await drain

        assert preprocessor.navigation_batches_by_navigation_uuid == {}


class TestDwellTime:
    """Test active tab dwell time attribution."""

    @pytest.mark.asyncio
    async def test_dwell_time_counted_from_batch_creation(self, clock, make_event):
        monitor = ActiveTabDwellTimeMonitor(interval_seconds=1.0)
        monitor.set_active_tab(1)
        monitor.tick()
        monitor.tick()
        preprocessor = NavigationBatchPreprocessor(RecordingTrimmer(), dwell_time_monitor=monitor, clock=clock)
        preprocessor.enqueue(make_event(tab_id=1))
        await preprocessor.process_queue()

        for _ in range(3):
            monitor.tick()
        clock.advance(5)
        await preprocessor.process_queue()

        assert preprocessor.navigation_batches_by_navigation_uuid["nav-a"].tab_active_dwell_time_ms == 3000

    def test_inactive_tab_not_credited(self):
        monitor = ActiveTabDwellTimeMonitor(interval_seconds=0.5)
        monitor.set_active_tab(2)
        monitor.tick()
        monitor.set_active_tab(None)
        monitor.tick()

        assert monitor.tab_active_dwell_time_ms(2) == 500
        assert monitor.tab_active_dwell_time_ms(1) == 0

        monitor.tab_removed(2)
        assert monitor.tab_active_dwell_time_ms(2) == 0


def test_navigation_batch_append_tracks_url_and_end(make_event):
    batch = NavigationBatch(navigation_uuid="nav-a", tab_id=1)
    batch.append(make_event(payload={"url": "https://www.youtube.com/results?search_query=x"}))
    batch.append(make_event(payload={"url": "https://example.com/", "phase": "ended"}))

    assert batch.url == "https://www.youtube.com/results?search_query=x"
    assert batch.ended
