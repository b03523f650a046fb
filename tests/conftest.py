"""
Shared fixtures for the test suite.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from regrets_reporter.core.events import EventType, RawEvent

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    """Sink that records sends and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.failing_categories = set()
        self.closed = False

    async def send(self, category, payload):
        from regrets_reporter.sharing.sink import TransmissionError
        if category in self.failing_categories:
            raise TransmissionError(f"{category} endpoint unavailable")
        self.sent.append((category, payload))

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "test.db")
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def make_event():
    """Factory for RawEvents with sensible defaults."""
    counter = {"n": 0}

    def _make(
        navigation_uuid="nav-a",
        event_type=EventType.NAVIGATION,
        tab_id=1,
        payload=None,
        seconds=None,
    ):
        counter["n"] += 1
        offset = counter["n"] if seconds is None else seconds
        return RawEvent(
            event_type=event_type,
            navigation_uuid=navigation_uuid,
            tab_id=tab_id,
            timestamp=BASE_TIME + timedelta(seconds=offset),
            payload=payload or {},
        )

    return _make


WATCH_PAGE_HTML = """
<html>
<head>
<meta property="og:title" content="Meta Title">
<meta itemprop="videoId" content="dQw4w9WgXcQ">
</head>
<body>
<script>var ytInitialPlayerResponse = {"videoDetails": {"videoId": "dQw4w9WgXcQ", "title": "Never Gonna Give You Up", "author": "Rick Astley", "channelId": "UCuAXFkgsw1L7xaCfnd5JJOw", "viewCount": "1234567", "lengthSeconds": "213"}, "other": {"nested": [1, 2, {"x": "}"}]}};</script>
</body>
</html>
"""


@pytest.fixture
def watch_page_html():
    return WATCH_PAGE_HTML
