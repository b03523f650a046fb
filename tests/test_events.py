"""
Unit tests for raw event parsing.
"""

from datetime import datetime, timezone

import pytest

from regrets_reporter.core.events import EventType, MalformedEventError, RawEvent, parse_timestamp


class TestRawEventParsing:
    """Test parsing of intake records."""

    def test_parses_wire_shape(self):
        """Test the camelCase wire shape produces a RawEvent."""
        event = RawEvent.from_dict({
            "type": "http",
            "navigationUuid": "nav-1",
            "tabId": 7,
            "timestamp": "2024-01-01T12:00:00Z",
            "payload": {"url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"},
        })

        assert event.event_type == EventType.HTTP
        assert event.navigation_uuid == "nav-1"
        assert event.tab_id == 7
        assert event.timestamp == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert event.payload["url"].endswith("dQw4w9WgXcQ")

    def test_parses_snake_case_and_epoch_millis(self):
        """Test snake_case keys and epoch millisecond timestamps."""
        event = RawEvent.from_dict({
            "event_type": "navigation",
            "navigation_uuid": "nav-2",
            "tab_id": 3,
            "timestamp": 1704110400000,
        })

        assert event.event_type == EventType.NAVIGATION
        assert event.timestamp == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert event.payload == {}

    def test_round_trips_through_to_dict(self):
        """Test to_dict output is accepted by from_dict."""
        original = RawEvent.from_dict({
            "type": "cookie",
            "navigationUuid": "nav-3",
            "tabId": 1,
            "timestamp": "2024-01-01T12:00:00+00:00",
            "payload": {"name": "VISITOR_INFO1_LIVE"},
        })

        assert RawEvent.from_dict(original.to_dict()) == original

    @pytest.mark.parametrize("record, message", [
        ({"type": "video", "navigationUuid": "n", "tabId": 1, "timestamp": 0}, "Unknown event type"),
        ({"type": "http", "tabId": 1, "timestamp": 0}, "navigationUuid"),
        ({"type": "http", "navigationUuid": "", "tabId": 1, "timestamp": 0}, "navigationUuid"),
        ({"type": "http", "navigationUuid": "n", "tabId": "1", "timestamp": 0}, "tabId"),
        ({"type": "http", "navigationUuid": "n", "tabId": True, "timestamp": 0}, "tabId"),
        ({"type": "http", "navigationUuid": "n", "tabId": 1, "timestamp": "yesterday"}, "timestamp"),
        ({"type": "http", "navigationUuid": "n", "tabId": 1}, "timestamp"),
        ({"type": "http", "navigationUuid": "n", "tabId": 1, "timestamp": 0, "payload": [1]}, "payload"),
    ])
    def test_malformed_records_rejected(self, record, message):
        """Test malformed records raise MalformedEventError."""
        with pytest.raises(MalformedEventError, match=message):
            RawEvent.from_dict(record)

    def test_non_mapping_rejected(self):
        """Test a non-mapping record is rejected."""
        with pytest.raises(MalformedEventError):
            RawEvent.from_dict(["http"])

    def test_malformed_error_is_value_error(self):
        """Test callers can catch malformed events as ValueError."""
        assert issubclass(MalformedEventError, ValueError)


class TestTerminalEvents:
    """Test detection of the navigation ended signal."""

    def test_navigation_ended_is_terminal(self, make_event):
        event = make_event(payload={"phase": "ended"})
        assert event.is_terminal

    def test_navigation_committed_is_not_terminal(self, make_event):
        event = make_event(payload={"phase": "committed"})
        assert not event.is_terminal

    def test_http_event_never_terminal(self, make_event):
        event = make_event(event_type=EventType.HTTP, payload={"phase": "ended"})
        assert not event.is_terminal


def test_naive_iso_timestamp_assumed_utc():
    """Test naive ISO timestamps are treated as UTC."""
    assert parse_timestamp("2024-01-01T12:00:00").tzinfo == timezone.utc
