"""
Typed access to the persisted extension state.

Wraps a LocalStorage area with the keys the reporter reads and writes.
Storage failures propagate to the awaiting caller.
"""

import asyncio
import uuid
from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .local_storage import Keys, LocalStorage
from .models import ConsentStatus, ExtensionPreferences, UserSuppliedDemographics

CONSENT_STATUS_KEY = "consentStatus"
CONSENT_STATUS_TIMESTAMP_KEY = "consentStatusTimestamp"
EXTENSION_INSTALLATION_UUID_KEY = "extensionInstallationUuid"
EXTENSION_PREFERENCES_KEY = "extensionPreferences"
USER_SUPPLIED_DEMOGRAPHICS_KEY = "userSuppliedDemographics"
USAGE_STATISTICS_KEY = "youTubeUsageStatistics"


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class Store:
    """Persistent keyed store for consent, identity and preferences."""

    def __init__(self, local_storage: LocalStorage):
        self.local_storage = local_storage
        # Consent reads and writes never overlap
        self._consent_lock = asyncio.Lock()

    async def get(self, keys: Keys = None) -> Dict[str, Any]:
        return await self.local_storage.get(keys)

    async def set(self, items: Dict[str, Any]) -> None:
        await self.local_storage.set(items)

    async def extension_installation_uuid(self) -> str:
        """Return the persistent identifier of this installation.

        Sent with each shared data point. Generated and stored on first use.
        """
        stored = await self.get(EXTENSION_INSTALLATION_UUID_KEY)
        existing = stored.get(EXTENSION_INSTALLATION_UUID_KEY)
        if existing:
            return existing
        generated = str(uuid.uuid4())
        await self.set({EXTENSION_INSTALLATION_UUID_KEY: generated})
        return generated

    async def get_consent_status(self) -> ConsentStatus:
        async with self._consent_lock:
            stored = await self.get(CONSENT_STATUS_KEY)
        return ConsentStatus.from_stored(stored.get(CONSENT_STATUS_KEY))

    async def get_consent_status_timestamp(self) -> Optional[str]:
        stored = await self.get(CONSENT_STATUS_TIMESTAMP_KEY)
        return stored.get(CONSENT_STATUS_TIMESTAMP_KEY)

    async def set_consent_status(self, status: ConsentStatus) -> None:
        """Persist a consent decision together with the time it was made."""
        async with self._consent_lock:
            await self.set({
                CONSENT_STATUS_KEY: status.to_stored(),
                CONSENT_STATUS_TIMESTAMP_KEY: datetime.now(timezone.utc).isoformat(),
            })

    async def get_extension_preferences(self) -> ExtensionPreferences:
        stored = await self.get(EXTENSION_PREFERENCES_KEY)
        overrides = stored.get(EXTENSION_PREFERENCES_KEY) or {}
        merged = {**ExtensionPreferences().to_dict(), **_known_fields(ExtensionPreferences, overrides)}
        return ExtensionPreferences(**merged)

    async def set_extension_preferences(self, preferences: ExtensionPreferences) -> None:
        await self.set({EXTENSION_PREFERENCES_KEY: preferences.to_dict()})

    async def get_user_supplied_demographics(self) -> UserSuppliedDemographics:
        stored = await self.get(USER_SUPPLIED_DEMOGRAPHICS_KEY)
        demographics = stored.get(USER_SUPPLIED_DEMOGRAPHICS_KEY)
        if not demographics:
            return UserSuppliedDemographics()
        return UserSuppliedDemographics(**_known_fields(UserSuppliedDemographics, demographics))

    async def set_user_supplied_demographics(self, demographics: UserSuppliedDemographics) -> None:
        await self.set({USER_SUPPLIED_DEMOGRAPHICS_KEY: demographics.to_dict()})

    async def get_usage_statistics_state(self) -> Optional[Dict[str, Any]]:
        stored = await self.get(USAGE_STATISTICS_KEY)
        return stored.get(USAGE_STATISTICS_KEY)

    async def set_usage_statistics_state(self, state: Dict[str, Any]) -> None:
        await self.set({USAGE_STATISTICS_KEY: state})
