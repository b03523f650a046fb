"""
Report summarization.

Trims navigation batches to their durable form, derives a YouTubeNavigation
summary per batch and composes regret report data from those summaries.

Summarization never fails as a whole: a batch whose fields can't be
derived degrades to UNKNOWN values while the rest are summarized normally.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .batching import NavigationBatch, TrimmedNavigationBatch
from .events import EventType, RawEvent
from .youtube import (
    UNKNOWN,
    PageType,
    VideoMetadata,
    classify_page_type,
    extract_page_metadata,
    search_query_from_url,
    video_id_from_url,
)

logger = logging.getLogger(__name__)

PAGE_METADATA_KEY = "youtube_page_metadata"
BODY_KEYS = ("response_body", "content")
RAW_PAYLOAD_KEYS = ("request_body", "response_body", "content", "request_headers", "response_headers")
DIRECT_TRANSITION_TYPES = {"typed", "auto_bookmark", "generated", "keyword", "start_page"}
DEFAULT_MAX_PARENT_CHAIN_LENGTH = 5


class NavigationVia(Enum):
    """How the user arrived at a page."""
    DIRECT = "direct"
    SEARCH_RESULTS_PAGE = "search_results_page"
    WATCH_PAGE_RECOMMENDATION = "watch_page_recommendation"
    AUTOPLAY = "autoplay"
    YOUTUBE_MAIN_PAGE_RECOMMENDATION = "youtube_main_page_recommendation"
    OTHER = "other"
    UNKNOWN = UNKNOWN


@dataclass(frozen=True)
class YouTubeNavigation:
    """Read-only summary of one navigation batch."""
    navigation_uuid: str
    tab_id: Union[int, str] = UNKNOWN
    url: str = UNKNOWN
    page_type: PageType = PageType.UNKNOWN
    video_id: str = UNKNOWN
    video_metadata: VideoMetadata = field(default_factory=VideoMetadata)
    via: NavigationVia = NavigationVia.UNKNOWN
    search_query: str = UNKNOWN
    referrer_navigation_uuid: Optional[str] = None
    timestamp: Optional[datetime] = None
    tab_active_dwell_time_ms: int = 0

    @property
    def is_watch_page(self) -> bool:
        return self.page_type is PageType.WATCH_PAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "navigation_uuid": self.navigation_uuid,
            "tab_id": self.tab_id,
            "url": self.url,
            "page_type": self.page_type.value,
            "video_id": self.video_id,
            "video_metadata": self.video_metadata.to_dict(),
            "via": self.via.value,
            "search_query": self.search_query,
            "referrer_navigation_uuid": self.referrer_navigation_uuid,
            "timestamp": self.timestamp.isoformat() if self.timestamp else UNKNOWN,
            "tab_active_dwell_time_ms": self.tab_active_dwell_time_ms,
        }


@dataclass(frozen=True)
class RegretReportData:
    """Reported navigation followed by its preceding watch pages.

    navigations[0] is the reported navigation; the rest are ordered most
    recent first.
    """
    navigations: Tuple[YouTubeNavigation, ...] = ()
    user_supplied_report: Optional[str] = None

    @property
    def reported_navigation(self) -> Optional[YouTubeNavigation]:
        return self.navigations[0] if self.navigations else None

    @property
    def parent_navigations(self) -> Tuple[YouTubeNavigation, ...]:
        return self.navigations[1:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "navigations": [n.to_dict() for n in self.navigations],
            "user_supplied_report": self.user_supplied_report,
        }


class ReportSummarizer:
    """Turns navigation batches into YouTube navigations and report data."""

    def __init__(self, max_parent_chain_length: int = DEFAULT_MAX_PARENT_CHAIN_LENGTH):
        if max_parent_chain_length < 0:
            raise ValueError("max_parent_chain_length cannot be negative")
        self.max_parent_chain_length = max_parent_chain_length

    def trim_event(self, event: RawEvent) -> RawEvent:
        """Strip raw bodies and headers, keeping extracted page metadata.

        Pure and idempotent: an already trimmed event comes back equal.
        """
        if not any(key in event.payload for key in RAW_PAYLOAD_KEYS):
            return event

        payload = {k: v for k, v in event.payload.items() if k not in RAW_PAYLOAD_KEYS}
        if event.event_type is EventType.HTTP and PAGE_METADATA_KEY not in payload:
            for key in BODY_KEYS:
                if key not in event.payload:
                    continue
                try:
                    metadata = extract_page_metadata(event.payload[key])
                except Exception:
                    logger.warning(
                        "Could not extract page metadata for navigation %s",
                        event.navigation_uuid, exc_info=True,
                    )
                    metadata = None
                if metadata:
                    payload[PAGE_METADATA_KEY] = metadata
                    break
        return event.with_payload(payload)

    def trim_navigation_batch(self, batch: NavigationBatch) -> TrimmedNavigationBatch:
        """Reduce a batch to the fields summarization needs."""
        if isinstance(batch, TrimmedNavigationBatch):
            return batch
        return TrimmedNavigationBatch(
            navigation_uuid=batch.navigation_uuid,
            tab_id=batch.tab_id,
            referrer_navigation_uuid=batch.referrer_navigation_uuid,
            url=batch.url,
            events=[self.trim_event(event) for event in batch.events],
            first_event_at=batch.first_event_at,
            last_event_at=batch.last_event_at,
            tab_active_dwell_time_ms=batch.tab_active_dwell_time_ms,
            ended=batch.ended,
        )

    def navigation_batches_by_uuid_to_youtube_navigations(
        self,
        batches_by_uuid: Mapping[str, NavigationBatch]
    ) -> Dict[str, YouTubeNavigation]:
        """Summarize every batch, keyed by navigation UUID.

        Args:
            batches_by_uuid: Open or trimmed batches by navigation UUID

        Returns:
            YouTubeNavigation per navigation UUID, in the input order
        """
        navigations: Dict[str, YouTubeNavigation] = {}
        for uuid, batch in batches_by_uuid.items():
            try:
                navigations[uuid] = self._summarize(batch, batches_by_uuid)
            except Exception:
                logger.warning("Could not summarize navigation %s", uuid, exc_info=True)
                navigations[uuid] = YouTubeNavigation(navigation_uuid=uuid)
        return navigations

    def _summarize(
        self,
        batch: NavigationBatch,
        batches_by_uuid: Mapping[str, NavigationBatch]
    ) -> YouTubeNavigation:
        page_type = classify_page_type(batch.url)
        metadata = self._video_metadata(batch)
        video_id = video_id_from_url(batch.url) or metadata.video_id
        if video_id != UNKNOWN and metadata.video_id == UNKNOWN:
            metadata = metadata.filled_from(VideoMetadata(video_id=video_id))

        return YouTubeNavigation(
            navigation_uuid=batch.navigation_uuid,
            tab_id=batch.tab_id,
            url=batch.url or UNKNOWN,
            page_type=page_type,
            video_id=video_id if page_type is PageType.WATCH_PAGE else UNKNOWN,
            video_metadata=metadata if page_type is PageType.WATCH_PAGE else VideoMetadata(),
            via=self._classify_via(batch, batches_by_uuid),
            search_query=search_query_from_url(batch.url) or UNKNOWN,
            referrer_navigation_uuid=batch.referrer_navigation_uuid,
            timestamp=batch.timestamp,
            tab_active_dwell_time_ms=batch.tab_active_dwell_time_ms,
        )

    def _video_metadata(self, batch: NavigationBatch) -> VideoMetadata:
        metadata = VideoMetadata()
        for event in batch.events:
            if event.event_type is not EventType.HTTP:
                continue
            # Open batches still carry raw bodies
            extracted = self.trim_event(event).payload.get(PAGE_METADATA_KEY)
            if isinstance(extracted, dict):
                metadata = metadata.filled_from(VideoMetadata.from_dict(extracted))
        return metadata

    def _classify_via(
        self,
        batch: NavigationBatch,
        batches_by_uuid: Mapping[str, NavigationBatch]
    ) -> NavigationVia:
        navigation_payload = batch.navigation_events[0].payload if batch.navigation_events else {}
        referrer = batches_by_uuid.get(batch.referrer_navigation_uuid) if batch.referrer_navigation_uuid else None

        if referrer is None:
            if navigation_payload.get("transition_type") in DIRECT_TRANSITION_TYPES:
                return NavigationVia.DIRECT
            return NavigationVia.UNKNOWN

        referrer_page_type = classify_page_type(referrer.url)
        if referrer_page_type is PageType.SEARCH_RESULTS_PAGE:
            return NavigationVia.SEARCH_RESULTS_PAGE
        if referrer_page_type is PageType.WATCH_PAGE:
            if navigation_payload.get("user_initiated") is False:
                return NavigationVia.AUTOPLAY
            return NavigationVia.WATCH_PAGE_RECOMMENDATION
        if referrer_page_type is PageType.YOUTUBE_MAIN_PAGE:
            return NavigationVia.YOUTUBE_MAIN_PAGE_RECOMMENDATION
        return NavigationVia.OTHER

    def regret_report_data_from_youtube_navigations(
        self,
        navigations: Mapping[str, YouTubeNavigation],
        reported_navigation_uuid: Optional[str] = None
    ) -> RegretReportData:
        """Select the reported navigation and its preceding watch pages.

        The reported navigation is the one given, or else the most recent
        watch page. Predecessors are found by walking referrers and only
        watch pages are kept, capped at max_parent_chain_length.

        Args:
            navigations: Summaries by navigation UUID
            reported_navigation_uuid: Optional explicit navigation to report

        Returns:
            RegretReportData; empty when there is nothing to report

        Raises:
            ValueError: If reported_navigation_uuid is not among navigations
        """
        if reported_navigation_uuid is not None:
            if reported_navigation_uuid not in navigations:
                raise ValueError(f"Unknown navigation: {reported_navigation_uuid}")
            reported = navigations[reported_navigation_uuid]
        else:
            reported = self._most_recent_watch_page(navigations)
        if reported is None:
            return RegretReportData()

        chain: List[YouTubeNavigation] = [reported]
        visited = {reported.navigation_uuid}
        current = reported
        parents = 0
        while parents < self.max_parent_chain_length and current.referrer_navigation_uuid:
            referrer_uuid = current.referrer_navigation_uuid
            if referrer_uuid in visited or referrer_uuid not in navigations:
                break
            visited.add(referrer_uuid)
            current = navigations[referrer_uuid]
            if current.is_watch_page:
                chain.append(current)
                parents += 1
        return RegretReportData(navigations=tuple(chain))

    @staticmethod
    def _most_recent_watch_page(
        navigations: Mapping[str, YouTubeNavigation]
    ) -> Optional[YouTubeNavigation]:
        watch_pages = [n for n in navigations.values() if n.is_watch_page]
        if not watch_pages:
            return None
        # Later insertion wins ties and missing timestamps
        indexed = list(enumerate(watch_pages))
        return max(
            indexed,
            key=lambda pair: (pair[1].timestamp is not None, pair[1].timestamp or datetime.min, pair[0]),
        )[1]
