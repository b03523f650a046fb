"""
Data models for storage layer.

Defines persisted records and the shared data ledger entry.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ConsentStatus(Enum):
    """Data sharing consent as last recorded by the consent form."""
    UNSET = "unset"
    GIVEN = "given"
    WITHDRAWN = "withdrawn"

    @classmethod
    def from_stored(cls, value: Optional[str]) -> "ConsentStatus":
        """Map a stored value (None for never asked) to a status."""
        if value is None:
            return cls.UNSET
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown consent status: {value!r}")

    def to_stored(self) -> Optional[str]:
        return None if self is ConsentStatus.UNSET else self.value


class DataCategory(Enum):
    """Server-side schema discriminator for shared data points."""
    REGRET_REPORT = "regret_report"
    USAGE_STATISTICS = "usage_statistics"
    CONSENT_UPDATE = "data_sharing_consent_update"


@dataclass(frozen=True)
class ExtensionPreferences:
    """User preferences, merged over defaults on read."""
    enable_error_reporting: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UserSuppliedDemographics:
    """Optional demographics supplied alongside consent."""
    dem_age: str = ""
    dem_gender: str = ""
    dem_gender_descr: str = ""
    last_updated: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class SharedDataPoint:
    """Entry in the local ledger of shared data.

    Rows are appended once and only ever gain a transmission timestamp.
    """
    category: DataCategory
    payload: Dict[str, Any]
    created_at: datetime
    id: Optional[int] = None
    transmitted_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.transmitted_at is None
