"""
Consent-gated data sharing.

Every shared data point is first written to the local ledger, then
transmitted to the sink in submission order per category. A point that
fails to transmit stays pending and is retried; it is never dropped.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from regrets_reporter import __version__
from regrets_reporter.storage.models import ConsentStatus, DataCategory, SharedDataPoint
from regrets_reporter.storage.repository import SharedDataRepository
from regrets_reporter.storage.store import Store

from .sink import DataSink, TransmissionError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SECONDS = 300.0


def category_of(data_point: Mapping[str, Any]) -> DataCategory:
    """Return the category a data point is tagged with.

    Raises:
        ValueError: If the point doesn't carry exactly one known category key
    """
    known = {category.value: category for category in DataCategory}
    keys = [key for key in data_point if key in known]
    if len(keys) != 1:
        raise ValueError(
            f"Data point must carry exactly one of {sorted(known)}, got {sorted(data_point)}"
        )
    return known[keys[0]]


class DataSharer:
    """Queues data points for the sink, only while consent is given."""

    def __init__(
        self,
        store: Store,
        repository: SharedDataRepository,
        sink: Optional[DataSink] = None,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ):
        if retry_interval_seconds <= 0:
            raise ValueError("retry_interval_seconds must be > 0")
        self.store = store
        self.repository = repository
        self.sink = sink
        self.retry_interval_seconds = retry_interval_seconds
        self._flushing: Set[DataCategory] = set()
        self._task: Optional[asyncio.Task] = None

    async def _consent_given(self) -> bool:
        return await self.store.get_consent_status() is ConsentStatus.GIVEN

    async def share(self, data_point: Mapping[str, Any]) -> Optional[SharedDataPoint]:
        """Record a data point and try to transmit it.

        Args:
            data_point: Mapping with exactly one category key, e.g.
                {"regret_report": {...}}

        Returns:
            The recorded point, or None when consent isn't given

        Raises:
            ValueError: If the data point isn't tagged with one category
        """
        category = category_of(data_point)
        if not await self._consent_given():
            logger.info("Consent not given, not sharing %s data point", category.value)
            return None

        event_metadata = await self._event_metadata()
        # Consent may have been withdrawn during the store reads above; no
        # await may sit between this check and the insert.
        if not await self._consent_given():
            logger.info("Consent withdrawn, not sharing %s data point", category.value)
            return None
        payload = {
            category.value: data_point[category.value],
            "event_metadata": event_metadata,
        }
        recorded = self.repository.insert_data_point(SharedDataPoint(
            category=category,
            payload=payload,
            created_at=datetime.now(timezone.utc),
        ))
        logger.debug("Recorded %s data point %s", category.value, recorded.id)
        await self.flush(category)
        return recorded

    async def _event_metadata(self) -> Dict[str, Any]:
        return {
            "client_timestamp": datetime.now(timezone.utc).isoformat(),
            "extension_installation_uuid": await self.store.extension_installation_uuid(),
            "event_uuid": str(uuid.uuid4()),
            "extension_version": __version__,
        }

    async def flush(self, category: DataCategory) -> int:
        """Transmit pending points of one category, oldest first.

        Stops at the first failure so later points never overtake it. Only
        one flush per category runs at a time; a concurrent call returns
        immediately and the running flush picks up the new points.

        Returns:
            Number of points transmitted by this call
        """
        if self.sink is None or category in self._flushing:
            return 0
        self._flushing.add(category)
        transmitted = 0
        try:
            while await self._consent_given():
                point = self.repository.fetch_next_pending(category)
                if point is None:
                    break
                try:
                    await self.sink.send(category.value, point.payload)
                except TransmissionError as e:
                    logger.warning("Transmission of %s data point %s failed, will retry: %s", category.value, point.id, e)
                    break
                except Exception:
                    logger.exception("Unexpected sink error for %s data point %s, will retry", category.value, point.id)
                    break
                self.repository.mark_transmitted(point.id)
                transmitted += 1
        finally:
            self._flushing.discard(category)
        return transmitted

    async def flush_all(self) -> int:
        """Retry every category independently."""
        total = 0
        for category in DataCategory:
            total += await self.flush(category)
        return total

    def export(self) -> List[Dict[str, Any]]:
        """Return the full local history of shared data points.

        Allowed regardless of the current consent status, since the data
        already exists on the device.
        """
        return [
            {
                "id": point.id,
                "category": point.category.value,
                "created_at": point.created_at.isoformat(),
                "transmitted_at": point.transmitted_at.isoformat() if point.transmitted_at else None,
                "payload": point.payload,
            }
            for point in self.repository.fetch_data_points()
        ]

    def run(self) -> None:
        """Start retrying pending points on an interval."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._retry_periodically())

    def stop(self) -> None:
        """Stop the retry timer without waiting for in-flight sends."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def close(self) -> None:
        self.stop()
        if self.sink is not None:
            await self.sink.close()

    async def _retry_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.retry_interval_seconds)
            try:
                transmitted = await self.flush_all()
            except Exception:
                logger.exception("Retrying pending data points failed")
                continue
            if transmitted:
                logger.info("Transmitted %d pending data points", transmitted)
