"""
Extension lifecycle and consent state machine.

States:
- UNINITIALIZED - nothing registered or running
- AWAITING_CONSENT - only the consent form channel is listened to
- ACTIVE - the pipeline runs and report requests are served
- PAUSED - timers are stopped, retained state is kept

Consent gates sharing, not observation of already collected state: a
withdrawal stops all future transmission through the data sharer while
the glue stays in its current state.
"""

import asyncio
import functools
import inspect
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from regrets_reporter.config.loader import ReporterConfig
from regrets_reporter.core.batching import NavigationBatch, NavigationBatchPreprocessor, TrimmedNavigationBatch
from regrets_reporter.core.dwell_time import ActiveTabDwellTimeMonitor
from regrets_reporter.core.events import MalformedEventError, RawEvent
from regrets_reporter.core.summarizer import RegretReportData, ReportSummarizer
from regrets_reporter.core.usage_statistics import YouTubeUsageStatistics
from regrets_reporter.sharing.data_sharer import DataSharer
from regrets_reporter.sharing.export import build_export_document, export_file_name, write_export_file
from regrets_reporter.sharing.sink import DataSink, HttpDataSink
from regrets_reporter.storage.local_storage import LocalStorage, SqliteLocalStorage
from regrets_reporter.storage.models import ConsentStatus, UserSuppliedDemographics
from regrets_reporter.storage.repository import SharedDataRepository, initialize_schema
from regrets_reporter.storage.store import Store

from .channels import Message, MessageRouter

logger = logging.getLogger(__name__)

CONSENT_FORM_CHANNEL = "port-from-consent-form"
REPORT_REGRET_FORM_CHANNEL = "port-from-report-regret-form"

DownloadTrigger = Callable[[Dict[str, Any], str], Any]


class ExtensionState(Enum):
    """Lifecycle states of the extension."""
    UNINITIALIZED = "uninitialized"
    AWAITING_CONSENT = "awaiting_consent"
    ACTIVE = "active"
    PAUSED = "paused"


class PipelineTrimmer:
    """Trimming hook: trims the batch, then counts it for usage statistics."""

    def __init__(self, summarizer: ReportSummarizer, usage_statistics: YouTubeUsageStatistics):
        self.summarizer = summarizer
        self.usage_statistics = usage_statistics

    async def trim_batch(self, batch: NavigationBatch) -> TrimmedNavigationBatch:
        trimmed = self.summarizer.trim_navigation_batch(batch)
        self.usage_statistics.seen_navigation_batch(batch)
        return trimmed

    def trim_event(self, event: RawEvent) -> RawEvent:
        return self.summarizer.trim_event(event)


class ExtensionGlue:
    """Wires the pipeline to the UI channels and gates it on consent."""

    def __init__(
        self,
        store: Store,
        preprocessor: NavigationBatchPreprocessor,
        summarizer: ReportSummarizer,
        usage_statistics: YouTubeUsageStatistics,
        data_sharer: DataSharer,
        router: Optional[MessageRouter] = None,
        dwell_time_monitor: Optional[ActiveTabDwellTimeMonitor] = None,
        download: Optional[DownloadTrigger] = None,
        ask_for_consent: Optional[Callable[[], Union[None, Awaitable[None]]]] = None,
    ):
        self.store = store
        self.preprocessor = preprocessor
        self.summarizer = summarizer
        self.usage_statistics = usage_statistics
        self.data_sharer = data_sharer
        self.router = router or MessageRouter()
        self.dwell_time_monitor = dwell_time_monitor
        self.download = download or functools.partial(write_export_file, output_dir=".")
        self._ask_for_consent = ask_for_consent
        self._state = ExtensionState.UNINITIALIZED
        self._background_tasks: Set[asyncio.Task] = set()

        self.malformed_events = 0
        self.dropped_inactive_events = 0

    @property
    def state(self) -> ExtensionState:
        return self._state

    async def init(self) -> None:
        """Listen for consent messages and start if consent was given earlier."""
        if self._state is not ExtensionState.UNINITIALIZED:
            return
        self.router.register(CONSENT_FORM_CHANNEL, self._on_consent_form_message)
        self.router.run()
        if await self.store.get_consent_status() is ConsentStatus.GIVEN:
            await self.start()
        else:
            self._state = ExtensionState.AWAITING_CONSENT
            logger.info("Awaiting data sharing consent")
            await self.ask_for_consent()

    async def ask_for_consent(self) -> None:
        if self._ask_for_consent is None:
            return
        result = self._ask_for_consent()
        if inspect.isawaitable(result):
            await result

    async def start(self) -> None:
        """Start the pipeline and serve report requests."""
        if self._state in (ExtensionState.ACTIVE, ExtensionState.PAUSED):
            return
        if not self.router.is_registered(REPORT_REGRET_FORM_CHANNEL):
            self.router.register(REPORT_REGRET_FORM_CHANNEL, self._on_report_regret_form_message)
        self._run_timers()
        self._state = ExtensionState.ACTIVE
        logger.info("Enrolled, pipeline started")
        await self.usage_statistics.restore()

    def _run_timers(self) -> None:
        if self.dwell_time_monitor is not None:
            self.dwell_time_monitor.run()
        self.preprocessor.run()
        self.usage_statistics.run(self.data_sharer)
        self.data_sharer.run()

    def _stop_timers(self) -> None:
        if self.dwell_time_monitor is not None:
            self.dwell_time_monitor.cleanup()
        self.preprocessor.stop()
        self.usage_statistics.stop()
        self.data_sharer.stop()

    def pause(self) -> None:
        """Stop periodic work, keeping retained batches and counters."""
        if self._state is not ExtensionState.ACTIVE:
            return
        self._stop_timers()
        self._state = ExtensionState.PAUSED
        logger.info("Pipeline paused")

    def resume(self) -> None:
        if self._state is not ExtensionState.PAUSED:
            return
        self._run_timers()
        self._state = ExtensionState.ACTIVE
        logger.info("Pipeline resumed")

    async def cleanup(self) -> None:
        """Tear everything down. Safe to call repeatedly.

        In-flight transmissions are not awaited; points that don't make it
        stay pending in the ledger.
        """
        self.router.deregister(CONSENT_FORM_CHANNEL)
        self.router.deregister(REPORT_REGRET_FORM_CHANNEL)
        self.router.stop()
        self._stop_timers()
        self.preprocessor.cleanup()
        self.usage_statistics.cleanup()
        self._state = ExtensionState.UNINITIALIZED
        await self.usage_statistics.persist()
        await self.data_sharer.close()

    def set_active_tab(self, tab_id: Optional[int]) -> None:
        if self.dwell_time_monitor is not None:
            self.dwell_time_monitor.set_active_tab(tab_id)

    def enqueue_raw_event(self, event: Union[RawEvent, Mapping[str, Any]]) -> bool:
        """Hand an instrumentation event to the pipeline.

        Returns:
            True if the event was queued, False if it was dropped
        """
        if self._state is not ExtensionState.ACTIVE:
            self.dropped_inactive_events += 1
            return False
        if not isinstance(event, RawEvent):
            try:
                event = RawEvent.from_dict(event)
            except MalformedEventError as e:
                self.malformed_events += 1
                logger.warning("Dropping malformed event: %s", e)
                return False
        self.preprocessor.enqueue(event)
        return True

    async def _on_consent_form_message(self, message: Message) -> Optional[Message]:
        reply = None
        if message.get("requestConsentStatus"):
            reply = {
                "consentStatus": (await self.store.get_consent_status()).to_stored(),
                "consentStatusTimestamp": await self.store.get_consent_status_timestamp(),
            }
        if message.get("updatedConsentStatus"):
            try:
                status = ConsentStatus(message["updatedConsentStatus"])
            except ValueError:
                return {"errorMessage": f"Unknown consent status: {message['updatedConsentStatus']!r}"}
            await self._update_consent(status, message)
        return reply

    async def _update_consent(self, status: ConsentStatus, message: Message) -> None:
        await self.store.set_consent_status(status)
        await self.store.set_user_supplied_demographics(UserSuppliedDemographics(
            dem_age=str(message.get("dem_age") or ""),
            dem_gender=str(message.get("dem_gender") or ""),
            dem_gender_descr=str(message.get("dem_gender_descr") or ""),
            last_updated=datetime.now(timezone.utc).isoformat(),
        ))
        if status is not ConsentStatus.GIVEN:
            logger.info("Consent status set to %s, sharing stopped", status.value)
            return
        await self.data_sharer.share({
            "data_sharing_consent_update": {
                "consent_status": status.value,
                "consent_status_timestamp": await self.store.get_consent_status_timestamp(),
            },
        })
        await self.start()

    async def _on_report_regret_form_message(self, message: Message) -> Optional[Message]:
        if message.get("regretReport"):
            self._spawn(self._share_regret_report(message["regretReport"]))
        if message.get("requestRegretReportData"):
            try:
                data = await self.regret_report_data(message.get("navigationUuid"))
            except Exception as e:
                logger.exception("Error encountered during regret report data processing")
                return {"errorMessage": str(e)}
            return {"regretReportData": data.to_dict()}
        return None

    async def regret_report_data(self, reported_navigation_uuid: Optional[str] = None) -> RegretReportData:
        """Drain pending events and summarize everything retained so far."""
        await self.preprocessor.process_queue()
        navigations = self.summarizer.navigation_batches_by_uuid_to_youtube_navigations(
            self.preprocessor.navigation_batches_by_navigation_uuid
        )
        return self.summarizer.regret_report_data_from_youtube_navigations(
            navigations, reported_navigation_uuid
        )

    async def _share_regret_report(self, regret_report: Any) -> None:
        try:
            await self.data_sharer.share({"regret_report": regret_report})
        except Exception:
            logger.exception("Sharing regret report failed")
            return
        logger.info("Reported regret shared")

    def _spawn(self, coroutine: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def export_shared_data(self) -> Any:
        """Hand the full local history of shared data to the download trigger."""
        installation_uuid = await self.store.extension_installation_uuid()
        document = build_export_document(installation_uuid, self.data_sharer.export())
        result = self.download(document, export_file_name(installation_uuid))
        if inspect.isawaitable(result):
            result = await result
        logger.info("Exported %d shared data points", len(document["shared_data"]))
        return result


def build_extension(
    config: ReporterConfig,
    local_storage: Optional[LocalStorage] = None,
    sink: Optional[DataSink] = None,
    download: Optional[DownloadTrigger] = None,
    ask_for_consent: Optional[Callable[[], Union[None, Awaitable[None]]]] = None,
    clock: Optional[Callable[[], float]] = None,
) -> ExtensionGlue:
    """Construct every component and wire them together.

    Args:
        config: Reporter configuration
        local_storage: Storage area; defaults to SQLite at config.storage.db_path
        sink: Outbound sink; defaults to HTTP when an endpoint is configured
        download: Export download trigger; defaults to writing a file
        ask_for_consent: Called when consent hasn't been given yet
        clock: Monotonic clock for batch completion

    Returns:
        An uninitialized ExtensionGlue
    """
    db_path = config.storage.db_path
    initialize_schema(db_path)
    store = Store(local_storage or SqliteLocalStorage(db_path))
    if sink is None and config.sharing.endpoint_url:
        sink = HttpDataSink(config.sharing.endpoint_url, timeout=config.sharing.timeout_seconds)

    summarizer = ReportSummarizer(max_parent_chain_length=config.report.max_parent_chain_length)
    usage_statistics = YouTubeUsageStatistics(
        store,
        submission_interval_seconds=config.usage_statistics.submission_interval_seconds,
    )
    dwell_time_monitor = ActiveTabDwellTimeMonitor()
    preprocessor_kwargs = {"clock": clock} if clock is not None else {}
    preprocessor = NavigationBatchPreprocessor(
        PipelineTrimmer(summarizer, usage_statistics),
        config=config.pipeline,
        dwell_time_monitor=dwell_time_monitor,
        **preprocessor_kwargs,
    )
    data_sharer = DataSharer(
        store,
        SharedDataRepository(db_path),
        sink=sink,
        retry_interval_seconds=config.sharing.retry_interval_seconds,
    )
    return ExtensionGlue(
        store=store,
        preprocessor=preprocessor,
        summarizer=summarizer,
        usage_statistics=usage_statistics,
        data_sharer=data_sharer,
        dwell_time_monitor=dwell_time_monitor,
        download=download,
        ask_for_consent=ask_for_consent,
    )
