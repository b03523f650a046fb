"""
YouTube usage statistics.

Accumulates aggregate counters from observed navigation batches and
periodically hands a snapshot to the data sharer.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from .batching import NavigationBatch
from .youtube import PageType, classify_page_type

if TYPE_CHECKING:
    from regrets_reporter.storage.store import Store
    from regrets_reporter.sharing.data_sharer import DataSharer

logger = logging.getLogger(__name__)

DEFAULT_SUBMISSION_INTERVAL_SECONDS = 86400.0


@dataclass(frozen=True)
class UsageStatisticsSnapshot:
    """Counters covering one reporting interval."""
    interval_start: datetime
    interval_end: datetime
    navigation_batch_count: int = 0
    page_type_counts: Dict[str, int] = field(default_factory=dict)
    total_tab_active_dwell_time_ms: int = 0
    watch_page_tab_active_dwell_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_start": self.interval_start.isoformat(),
            "interval_end": self.interval_end.isoformat(),
            "navigation_batch_count": self.navigation_batch_count,
            "page_type_counts": dict(self.page_type_counts),
            "total_tab_active_dwell_time_ms": self.total_tab_active_dwell_time_ms,
            "watch_page_tab_active_dwell_time_ms": self.watch_page_tab_active_dwell_time_ms,
        }


class YouTubeUsageStatistics:
    """Single owner of the usage counters.

    seen_navigation_batch and snapshot_and_reset are synchronous, so on a
    single event loop no count can fall between a snapshot and its reset.
    """

    def __init__(
        self,
        store: Optional["Store"] = None,
        submission_interval_seconds: float = DEFAULT_SUBMISSION_INTERVAL_SECONDS,
    ):
        if submission_interval_seconds <= 0:
            raise ValueError("submission_interval_seconds must be > 0")
        self.store = store
        self.submission_interval_seconds = submission_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._reset(datetime.now(timezone.utc))

    def _reset(self, interval_start: datetime) -> None:
        self._interval_start = interval_start
        self._navigation_batch_count = 0
        self._page_type_counts: Counter = Counter()
        self._total_dwell_time_ms = 0
        self._watch_page_dwell_time_ms = 0

    @property
    def navigation_batch_count(self) -> int:
        return self._navigation_batch_count

    def seen_navigation_batch(self, batch: NavigationBatch) -> None:
        """Count a batch that reached the trimming hook. Reads only."""
        page_type = classify_page_type(batch.url)
        self._navigation_batch_count += 1
        self._page_type_counts[page_type.value] += 1
        self._total_dwell_time_ms += batch.tab_active_dwell_time_ms
        if page_type is PageType.WATCH_PAGE:
            self._watch_page_dwell_time_ms += batch.tab_active_dwell_time_ms

    def snapshot(self) -> UsageStatisticsSnapshot:
        return UsageStatisticsSnapshot(
            interval_start=self._interval_start,
            interval_end=datetime.now(timezone.utc),
            navigation_batch_count=self._navigation_batch_count,
            page_type_counts=dict(self._page_type_counts),
            total_tab_active_dwell_time_ms=self._total_dwell_time_ms,
            watch_page_tab_active_dwell_time_ms=self._watch_page_dwell_time_ms,
        )

    def snapshot_and_reset(self) -> UsageStatisticsSnapshot:
        """Read the counters and start a new interval in one step."""
        snapshot = self.snapshot()
        self._reset(snapshot.interval_end)
        return snapshot

    async def submit(self, data_sharer: "DataSharer") -> UsageStatisticsSnapshot:
        snapshot = self.snapshot_and_reset()
        await data_sharer.share({"usage_statistics": snapshot.to_dict()})
        logger.info("Submitted usage statistics for %d navigations", snapshot.navigation_batch_count)
        return snapshot

    def run(self, data_sharer: "DataSharer") -> None:
        """Start periodic submission. Calling run while running is a no-op."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._submit_periodically(data_sharer))

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def cleanup(self) -> None:
        """Stop the periodic timer. Safe to call repeatedly."""
        self.stop()

    async def _submit_periodically(self, data_sharer: "DataSharer") -> None:
        while True:
            await asyncio.sleep(self.submission_interval_seconds)
            try:
                await self.submit(data_sharer)
            except Exception:
                logger.exception("Usage statistics submission failed")

    async def persist(self) -> None:
        """Move the live counters into the store so they survive a restart.

        The counters are taken and reset before the first await, then added
        to whatever an earlier persist left behind.
        """
        if self.store is None:
            return
        snapshot = self.snapshot_and_reset()
        if snapshot.navigation_batch_count == 0 and not snapshot.total_tab_active_dwell_time_ms:
            return
        previous = _parse_state(await self.store.get_usage_statistics_state())
        if previous is not None:
            snapshot = _combine(previous, snapshot)
        await self.store.set_usage_statistics_state(snapshot.to_dict())

    async def restore(self) -> None:
        """Move persisted counters back into the live ones."""
        if self.store is None:
            return
        previous = _parse_state(await self.store.get_usage_statistics_state())
        if previous is None:
            return
        self._interval_start = min(self._interval_start, previous.interval_start)
        self._navigation_batch_count += previous.navigation_batch_count
        self._page_type_counts.update(previous.page_type_counts)
        self._total_dwell_time_ms += previous.total_tab_active_dwell_time_ms
        self._watch_page_dwell_time_ms += previous.watch_page_tab_active_dwell_time_ms
        await self.store.set_usage_statistics_state({})


def _parse_state(state: Optional[Dict[str, Any]]) -> Optional[UsageStatisticsSnapshot]:
    if not state:
        return None
    try:
        return UsageStatisticsSnapshot(
            interval_start=datetime.fromisoformat(state["interval_start"]),
            interval_end=datetime.fromisoformat(state["interval_end"]),
            navigation_batch_count=int(state.get("navigation_batch_count", 0)),
            page_type_counts={k: int(v) for k, v in state.get("page_type_counts", {}).items()},
            total_tab_active_dwell_time_ms=int(state.get("total_tab_active_dwell_time_ms", 0)),
            watch_page_tab_active_dwell_time_ms=int(state.get("watch_page_tab_active_dwell_time_ms", 0)),
        )
    except (KeyError, TypeError, ValueError, AttributeError):
        logger.warning("Ignoring unreadable persisted usage statistics", exc_info=True)
        return None


def _combine(older: UsageStatisticsSnapshot, newer: UsageStatisticsSnapshot) -> UsageStatisticsSnapshot:
    page_type_counts = Counter(older.page_type_counts)
    page_type_counts.update(newer.page_type_counts)
    return UsageStatisticsSnapshot(
        interval_start=min(older.interval_start, newer.interval_start),
        interval_end=max(older.interval_end, newer.interval_end),
        navigation_batch_count=older.navigation_batch_count + newer.navigation_batch_count,
        page_type_counts=dict(page_type_counts),
        total_tab_active_dwell_time_ms=older.total_tab_active_dwell_time_ms + newer.total_tab_active_dwell_time_ms,
        watch_page_tab_active_dwell_time_ms=(
            older.watch_page_tab_active_dwell_time_ms + newer.watch_page_tab_active_dwell_time_ms
        ),
    )
