"""
Raw instrumentation events.

Defines the immutable record handed over by the instrumentation sources
and the parsing of its wire shape.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EventType(Enum):
    """Kinds of instrumentation events."""
    NAVIGATION = "navigation"
    HTTP = "http"
    COOKIE = "cookie"
    SCRIPT = "script"


class MalformedEventError(ValueError):
    """Raised when an intake record can't be turned into a RawEvent."""


@dataclass(frozen=True)
class RawEvent:
    """Instrumentation record correlated to one navigation.

    Immutable once received. Payload content depends on the event type.
    """
    event_type: EventType
    navigation_uuid: str
    tab_id: int
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """True for the explicit "navigation ended" signal."""
        return (
            self.event_type is EventType.NAVIGATION
            and self.payload.get("phase") == "ended"
        )

    def with_payload(self, payload: Dict[str, Any]) -> "RawEvent":
        return replace(self, payload=payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "navigationUuid": self.navigation_uuid,
            "tabId": self.tab_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawEvent":
        """Parse an intake record.

        Accepts the camelCase wire keys and their snake_case equivalents.

        Raises:
            MalformedEventError: If a field is missing or has the wrong type
        """
        if not isinstance(data, Mapping):
            raise MalformedEventError(f"Event must be a mapping, got {type(data).__name__}")

        raw_type = _first_present(data, "type", "event_type")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise MalformedEventError(f"Unknown event type: {raw_type!r}")

        navigation_uuid = _first_present(data, "navigationUuid", "navigation_uuid")
        if not isinstance(navigation_uuid, str) or not navigation_uuid:
            raise MalformedEventError("Event is missing navigationUuid")

        tab_id = _first_present(data, "tabId", "tab_id")
        if isinstance(tab_id, bool) or not isinstance(tab_id, int):
            raise MalformedEventError(f"Event tabId must be an integer, got {tab_id!r}")

        payload = data.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise MalformedEventError("Event payload must be a mapping")

        return cls(
            event_type=event_type,
            navigation_uuid=navigation_uuid,
            tab_id=tab_id,
            timestamp=parse_timestamp(data.get("timestamp")),
            payload=dict(payload),
        )


def _first_present(data: Mapping[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        if key in data:
            return data[key]
    return None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime.

    Raises:
        MalformedEventError: If the value is missing or unparseable
    """
    if isinstance(value, bool) or value is None:
        raise MalformedEventError(f"Invalid event timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedEventError(f"Event timestamp out of range: {value!r}")
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedEventError(f"Invalid event timestamp: {value!r}")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise MalformedEventError(f"Invalid event timestamp: {value!r}")
