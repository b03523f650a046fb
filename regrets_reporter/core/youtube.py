"""
YouTube page classification and metadata extraction.

Classifies URLs by page type and pulls video metadata out of captured
watch page HTML or JSON responses.
"""

import json
import re
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

UNKNOWN = "unknown"

YOUTUBE_HOSTS = ("youtube.com", "youtube-nocookie.com")
SHORT_LINK_HOST = "youtu.be"
VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
ISO_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
PLAYER_RESPONSE_MARKER = "ytInitialPlayerResponse"


class PageType(Enum):
    """Kind of page a navigation landed on."""
    WATCH_PAGE = "watch_page"
    SEARCH_RESULTS_PAGE = "search_results_page"
    CHANNEL_PAGE = "channel_page"
    YOUTUBE_MAIN_PAGE = "youtube_main_page"
    OTHER = "other"
    UNKNOWN = UNKNOWN


def _is_youtube_host(host: str) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in YOUTUBE_HOSTS)


def classify_page_type(url: Optional[str]) -> PageType:
    """Classify a URL by the YouTube page it points at."""
    if not url:
        return PageType.UNKNOWN
    try:
        parsed = urlparse(url)
    except ValueError:
        return PageType.UNKNOWN
    host = (parsed.hostname or "").lower()
    path = parsed.path or "/"

    if host == SHORT_LINK_HOST:
        return PageType.WATCH_PAGE if len(path.strip("/")) > 0 else PageType.OTHER
    if not _is_youtube_host(host):
        return PageType.OTHER
    if path.startswith("/watch"):
        return PageType.WATCH_PAGE
    if path.rstrip("/") == "/results":
        return PageType.SEARCH_RESULTS_PAGE
    if path == "/":
        return PageType.YOUTUBE_MAIN_PAGE
    if path.startswith(("/channel/", "/c/", "/user/", "/@")):
        return PageType.CHANNEL_PAGE
    return PageType.OTHER


def is_watch_page_url(url: Optional[str]) -> bool:
    return classify_page_type(url) is PageType.WATCH_PAGE


def video_id_from_url(url: Optional[str]) -> Optional[str]:
    """Return the video id of a watch page URL, or None."""
    if not is_watch_page_url(url):
        return None
    parsed = urlparse(url)
    if (parsed.hostname or "").lower() == SHORT_LINK_HOST:
        candidate = parsed.path.strip("/").split("/")[0]
    else:
        candidate = (parse_qs(parsed.query).get("v") or [""])[0]
    return candidate if VIDEO_ID_PATTERN.match(candidate) else None


def search_query_from_url(url: Optional[str]) -> Optional[str]:
    if classify_page_type(url) is not PageType.SEARCH_RESULTS_PAGE:
        return None
    values = parse_qs(urlparse(url).query).get("search_query")
    return values[0] if values else None


@dataclass(frozen=True)
class VideoMetadata:
    """Declared metadata of a watched video. Unknown fields hold UNKNOWN."""
    video_id: str = UNKNOWN
    title: str = UNKNOWN
    channel_name: str = UNKNOWN
    channel_id: str = UNKNOWN
    view_count: Union[int, str] = UNKNOWN
    duration_seconds: Union[int, str] = UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VideoMetadata":
        if not data:
            return cls()
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names and v not in (None, "")})

    def filled_from(self, other: "VideoMetadata") -> "VideoMetadata":
        """Return a copy with unknown fields taken from another record."""
        values = {}
        for f in fields(self):
            own = getattr(self, f.name)
            values[f.name] = getattr(other, f.name) if own == UNKNOWN else own
        return VideoMetadata(**values)


def _to_int(value: Any) -> Union[int, str]:
    try:
        return int(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return UNKNOWN


def _iso_duration_to_seconds(value: Optional[str]) -> Union[int, str]:
    match = ISO_DURATION_PATTERN.match(value or "")
    if not match or not any(match.groupdict().values()):
        return UNKNOWN
    parts = {k: int(v or 0) for k, v in match.groupdict().items()}
    return parts["days"] * 86400 + parts["hours"] * 3600 + parts["minutes"] * 60 + parts["seconds"]


def _find_video_details(node: Any, depth: int = 0) -> Optional[Dict[str, Any]]:
    if depth > 8:
        return None
    if isinstance(node, dict):
        details = node.get("videoDetails")
        if isinstance(details, dict):
            return details
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = _find_video_details(child, depth + 1)
        if found is not None:
            return found
    return None


def _metadata_from_video_details(details: Dict[str, Any]) -> Dict[str, Any]:
    metadata = {
        "video_id": details.get("videoId"),
        "title": details.get("title"),
        "channel_name": details.get("author"),
        "channel_id": details.get("channelId"),
        "view_count": _to_int(details.get("viewCount")),
        "duration_seconds": _to_int(details.get("lengthSeconds")),
    }
    return {k: v for k, v in metadata.items() if v not in (None, "", UNKNOWN)}


def _player_response_from_html(html: str) -> Optional[Dict[str, Any]]:
    marker = html.find(PLAYER_RESPONSE_MARKER)
    if marker < 0:
        return None
    start = html.find("{", marker)
    if start < 0:
        return None
    try:
        player_response, _ = json.JSONDecoder().raw_decode(html, start)
    except ValueError:
        return None
    return player_response if isinstance(player_response, dict) else None


def _metadata_from_meta_tags(html: str) -> Dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")

    def content(**attrs) -> Optional[str]:
        tag = soup.find(["meta", "link"], attrs=attrs)
        value = tag.get("content") if tag is not None else None
        return value.strip() if isinstance(value, str) and value.strip() else None

    metadata = {
        "video_id": content(itemprop="videoId"),
        "title": content(property="og:title") or content(name="title"),
        "channel_id": content(itemprop="channelId"),
        "view_count": _to_int(content(itemprop="interactionCount")),
        "duration_seconds": _iso_duration_to_seconds(content(itemprop="duration")),
    }
    author = soup.find(attrs={"itemprop": "author"})
    if author is not None:
        name = author.find(attrs={"itemprop": "name"})
        if name is not None and name.get("content"):
            metadata["channel_name"] = name["content"].strip()
    return {k: v for k, v in metadata.items() if v not in (None, "", UNKNOWN)}


def extract_page_metadata(body: Union[str, bytes, None]) -> Optional[Dict[str, Any]]:
    """Extract video metadata from a captured response body.

    Tries, in order: a JSON body containing videoDetails, the
    ytInitialPlayerResponse embedded in watch page HTML, and finally the
    page's meta tags.

    Args:
        body: Response body as captured by the HTTP instrument

    Returns:
        Dict of the metadata fields that were found, or None if none were
    """
    if body is None:
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not isinstance(body, str) or not body.strip():
        return None

    text = body.strip()
    if text.startswith(("{", "[")):
        try:
            details = _find_video_details(json.loads(text))
        except ValueError:
            details = None
        if details:
            return _metadata_from_video_details(details) or None
        return None

    player_response = _player_response_from_html(text)
    details = _find_video_details(player_response) if player_response else None
    metadata = _metadata_from_video_details(details) if details else {}
    for key, value in _metadata_from_meta_tags(text).items():
        metadata.setdefault(key, value)
    return metadata or None
