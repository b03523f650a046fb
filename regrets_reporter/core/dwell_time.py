"""
Active tab dwell time tracking.

Accumulates how long each tab has been the active, focused tab by
ticking on a fixed interval.
"""

import asyncio
from collections import defaultdict
from typing import Dict, Optional


class ActiveTabDwellTimeMonitor:
    """Cumulative active time per tab, in milliseconds."""

    def __init__(self, interval_seconds: float = 1.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = interval_seconds
        self._active_tab_id: Optional[int] = None
        self._dwell_time_ms_by_tab_id: Dict[int, int] = defaultdict(int)
        self._task: Optional[asyncio.Task] = None

    @property
    def active_tab_id(self) -> Optional[int]:
        return self._active_tab_id

    def set_active_tab(self, tab_id: Optional[int]) -> None:
        """Record the focused tab. None means no browser window has focus."""
        self._active_tab_id = tab_id

    def tab_removed(self, tab_id: int) -> None:
        self._dwell_time_ms_by_tab_id.pop(tab_id, None)
        if self._active_tab_id == tab_id:
            self._active_tab_id = None

    def tab_active_dwell_time_ms(self, tab_id: int) -> int:
        return self._dwell_time_ms_by_tab_id.get(tab_id, 0)

    def tick(self) -> None:
        """Credit one interval to the active tab."""
        if self._active_tab_id is None:
            return
        self._dwell_time_ms_by_tab_id[self._active_tab_id] += int(self.interval_seconds * 1000)

    def run(self) -> None:
        """Start ticking. Calling run while already running is a no-op."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._tick_forever())

    def cleanup(self) -> None:
        """Stop ticking. Safe to call repeatedly."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _tick_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.tick()
