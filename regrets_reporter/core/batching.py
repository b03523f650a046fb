"""
Navigation batch preprocessing.

Groups the unordered stream of raw events into one batch per navigation,
decides when a navigation is complete and hands completed batches to a
trimming hook.

Lifecycle of a navigation UUID:
1. Open - events are appended to a NavigationBatch in arrival order
2. Complete - a terminal event was seen, or no event arrived for the
   quiescence window; the batch is replaced by the hook's trimmed result
3. Grace - late events are still trimmed and merged into the result
4. Closed - late events are dropped and counted, never recreating a batch
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple

from regrets_reporter.config.loader import PipelineConfig

from .dwell_time import ActiveTabDwellTimeMonitor
from .events import EventType, RawEvent

logger = logging.getLogger(__name__)

# How many evicted navigation UUIDs are remembered as closed
CLOSED_NAVIGATION_MEMORY = 10000


@dataclass
class NavigationBatch:
    """All events observed so far for one navigation.

    first_event_at and last_event_at are intake clock readings, not event
    timestamps, so completion never depends on the sender's clock.
    """
    navigation_uuid: str
    tab_id: int
    referrer_navigation_uuid: Optional[str] = None
    url: Optional[str] = None
    events: List[RawEvent] = field(default_factory=list)
    first_event_at: float = 0.0
    last_event_at: float = 0.0
    tab_active_dwell_time_ms: int = 0
    ended: bool = False

    @property
    def timestamp(self) -> Optional[datetime]:
        """Event time of the earliest event in the batch."""
        if not self.events:
            return None
        return min(event.timestamp for event in self.events)

    @property
    def navigation_events(self) -> List[RawEvent]:
        return [e for e in self.events if e.event_type is EventType.NAVIGATION]

    def append(self, event: RawEvent) -> None:
        self.events.append(event)
        if event.event_type is EventType.NAVIGATION:
            if self.url is None and event.payload.get("url"):
                self.url = event.payload["url"]
            referrer = event.payload.get("referrer_navigation_uuid")
            if referrer and referrer != self.navigation_uuid:
                self.referrer_navigation_uuid = referrer
        if event.is_terminal:
            self.ended = True


@dataclass
class TrimmedNavigationBatch(NavigationBatch):
    """Completed batch reduced to what summarization needs."""
    completed_at: float = 0.0

    def merge(self, trimmed_event: RawEvent) -> None:
        """Append an event that has already been trimmed."""
        self.append(trimmed_event)


class BatchTrimmer(Protocol):
    """Trimming strategy injected into the preprocessor."""

    async def trim_batch(self, batch: NavigationBatch) -> TrimmedNavigationBatch:
        ...

    def trim_event(self, event: RawEvent) -> RawEvent:
        ...


class NavigationBatchPreprocessor:
    """Owns the intake queue and the map of batches by navigation UUID.

    All mutation of the batch map happens in synchronous steps, so
    concurrent process_queue calls on the same event loop never see a
    half-updated map. A batch whose trimming hook is in flight is never
    handed to the hook a second time.
    """

    def __init__(
        self,
        trimmer: BatchTrimmer,
        config: Optional[PipelineConfig] = None,
        dwell_time_monitor: Optional[ActiveTabDwellTimeMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.trimmer = trimmer
        self.config = config or PipelineConfig()
        self.dwell_time_monitor = dwell_time_monitor
        self._clock = clock

        self.navigation_batches_by_navigation_uuid: Dict[str, NavigationBatch] = {}
        self._intake: Deque[Tuple[float, RawEvent]] = deque()
        self._trimming: Set[str] = set()
        self._closed_navigation_uuids: "OrderedDict[str, None]" = OrderedDict()
        self._last_navigation_uuid_by_tab_id: Dict[int, str] = {}
        self._dwell_time_baseline_ms: Dict[str, int] = {}
        self._overflowing = False
        self._task: Optional[asyncio.Task] = None

        self.dropped_backlog_events = 0
        self.dropped_late_events = 0

    @property
    def pending_event_count(self) -> int:
        return len(self._intake)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, event: RawEvent) -> None:
        """Queue an event for the next drain. Never blocks, never raises.

        When the backlog is full the oldest queued event is dropped.
        """
        if len(self._intake) >= self.config.max_queue_size:
            self._intake.popleft()
            self.dropped_backlog_events += 1
            if not self._overflowing:
                self._overflowing = True
                logger.warning(
                    "Event intake backlog reached %d events, dropping oldest",
                    self.config.max_queue_size,
                )
        self._intake.append((self._clock(), event))

    async def process_queue(self) -> None:
        """Drain the intake, group events and trim completed batches."""
        self._group_queued_events()

        now = self._clock()
        completed = []
        for uuid, batch in self.navigation_batches_by_navigation_uuid.items():
            if isinstance(batch, TrimmedNavigationBatch) or uuid in self._trimming:
                continue
            self._update_dwell_time(batch)
            if self._is_complete(batch, now):
                completed.append(batch)

        # Claim every completed batch before the first await
        for batch in completed:
            self._trimming.add(batch.navigation_uuid)

        for batch in completed:
            await self._trim(batch)

    def _group_queued_events(self) -> None:
        grouped = 0
        while self._intake:
            arrived_at, event = self._intake.popleft()
            self._group_event(event, arrived_at)
            grouped += 1
        self._overflowing = False
        if grouped:
            logger.debug("Grouped %d queued events", grouped)

    def _group_event(self, event: RawEvent, arrived_at: float) -> None:
        uuid = event.navigation_uuid
        batch = self.navigation_batches_by_navigation_uuid.get(uuid)

        if uuid in self._closed_navigation_uuids or (
            isinstance(batch, TrimmedNavigationBatch) and self._grace_period_over(batch, arrived_at)
        ):
            self.dropped_late_events += 1
            logger.debug("Dropping late %s event for closed navigation %s", event.event_type.value, uuid)
            return

        if batch is None:
            batch = self._create_batch(event, arrived_at)
        elif isinstance(batch, TrimmedNavigationBatch):
            batch.merge(self.trimmer.trim_event(event))
            batch.last_event_at = arrived_at
            return

        batch.append(event)
        batch.last_event_at = arrived_at
        self._note_tab_navigation(batch, event)
        self._update_dwell_time(batch)

    def _create_batch(self, event: RawEvent, arrived_at: float) -> NavigationBatch:
        previous_on_tab = self._last_navigation_uuid_by_tab_id.get(event.tab_id)
        batch = NavigationBatch(
            navigation_uuid=event.navigation_uuid,
            tab_id=event.tab_id,
            referrer_navigation_uuid=previous_on_tab if previous_on_tab != event.navigation_uuid else None,
            first_event_at=arrived_at,
            last_event_at=arrived_at,
        )
        self.navigation_batches_by_navigation_uuid[event.navigation_uuid] = batch
        if self.dwell_time_monitor is not None:
            self._dwell_time_baseline_ms[event.navigation_uuid] = (
                self.dwell_time_monitor.tab_active_dwell_time_ms(event.tab_id)
            )
        return batch

    def _note_tab_navigation(self, batch: NavigationBatch, event: RawEvent) -> None:
        # Only the first navigation start of a batch moves the tab on
        if event.event_type is not EventType.NAVIGATION or event.is_terminal:
            return
        starts = [e for e in batch.events if e.event_type is EventType.NAVIGATION and not e.is_terminal]
        if starts[0] is event:
            self._last_navigation_uuid_by_tab_id[event.tab_id] = event.navigation_uuid

    def _update_dwell_time(self, batch: NavigationBatch) -> None:
        if self.dwell_time_monitor is None:
            return
        baseline = self._dwell_time_baseline_ms.get(batch.navigation_uuid, 0)
        current = self.dwell_time_monitor.tab_active_dwell_time_ms(batch.tab_id)
        batch.tab_active_dwell_time_ms = max(0, current - baseline)

    def _is_complete(self, batch: NavigationBatch, now: float) -> bool:
        return batch.ended or now - batch.last_event_at >= self.config.quiescence_seconds

    def _grace_period_over(self, batch: TrimmedNavigationBatch, now: float) -> bool:
        return now - batch.completed_at >= self.config.grace_period_seconds

    async def _trim(self, batch: NavigationBatch) -> None:
        uuid = batch.navigation_uuid
        seen_event_count = len(batch.events)
        # The hook sees the events as of now; later arrivals are merged below
        snapshot = replace(batch, events=list(batch.events))
        try:
            trimmed = await self.trimmer.trim_batch(snapshot)
        except Exception:
            logger.exception("Trimming navigation batch %s failed, retrying on next drain", uuid)
            return
        finally:
            self._trimming.discard(uuid)

        if self.navigation_batches_by_navigation_uuid.get(uuid) is not batch:
            # Discarded by cleanup while the hook was running
            return

        for late_event in batch.events[seen_event_count:]:
            trimmed.merge(self.trimmer.trim_event(late_event))
        trimmed.completed_at = self._clock()
        self.navigation_batches_by_navigation_uuid[uuid] = trimmed
        self._dwell_time_baseline_ms.pop(uuid, None)
        self._enforce_retention_limit()

    def _enforce_retention_limit(self) -> None:
        trimmed = [
            b for b in self.navigation_batches_by_navigation_uuid.values()
            if isinstance(b, TrimmedNavigationBatch)
        ]
        excess = len(trimmed) - self.config.retained_batch_limit
        if excess <= 0:
            return
        trimmed.sort(key=lambda b: b.completed_at)
        for batch in trimmed[:excess]:
            del self.navigation_batches_by_navigation_uuid[batch.navigation_uuid]
            self._remember_closed(batch.navigation_uuid)
        logger.debug("Evicted %d retained navigation batches", excess)

    def _remember_closed(self, uuid: str) -> None:
        self._closed_navigation_uuids[uuid] = None
        while len(self._closed_navigation_uuids) > CLOSED_NAVIGATION_MEMORY:
            self._closed_navigation_uuids.popitem(last=False)

    def run(self) -> None:
        """Start draining the intake on a fixed interval.

        Each tick awaits its drain before sleeping again, so periodic
        drains never overlap. Calling run while running is a no-op.
        """
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._drain_periodically())
        logger.info("Navigation batch preprocessing started")

    def stop(self) -> None:
        """Stop periodic draining, keeping all batches. Idempotent."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Navigation batch preprocessing stopped")

    def cleanup(self) -> None:
        """Stop draining and discard queued events and retained batches."""
        self.stop()
        self._intake.clear()
        self.navigation_batches_by_navigation_uuid.clear()
        self._trimming.clear()
        self._closed_navigation_uuids.clear()
        self._last_navigation_uuid_by_tab_id.clear()
        self._dwell_time_baseline_ms.clear()
        self._overflowing = False

    async def _drain_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.config.drain_interval_seconds)
            try:
                await self.process_queue()
            except Exception:
                logger.exception("Periodic navigation batch processing failed")
