"""
Candidate search adapters for YouTube and SoundCloud

Each platform client issues its provider-specific search and maps results to
the common Candidate shape (duration normalised to whole seconds). The
CandidateSearchAdapter in front of them isolates failures: a failing,
unconfigured or circuit-broken platform yields an empty list (or a clearly
marked placeholder when enabled) and never affects the other platform.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote_plus

import aiohttp
import structlog
from prometheus_client import Counter

from .circuit_breaker import CircuitBreaker, CircuitOpenError
from .config import Settings
from .errors import SearchProviderError
from .models import Candidate, CandidateSource, Platform
from .scoring import parse_iso8601_duration

logger = structlog.get_logger(__name__)

search_requests_total = Counter(
    "audio_match_search_requests_total",
    "Candidate searches by platform and outcome",
    ["platform", "status"],
)

YOUTUBE_SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"
YOUTUBE_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"
SOUNDCLOUD_TRACKS_URL = "https://api.soundcloud.com/tracks"

# Raised while mapping a provider payload that lacks the documented shape
_MALFORMED_PAYLOAD = (KeyError, TypeError, AttributeError, ValueError)


class SearchClient(ABC):
    """Base class for a single platform's search"""

    platform: Platform

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        max_results: int = 3,
        timeout_seconds: float = 10.0,
    ):
        self._session = session
        self._owns_session = session is None
        self.max_results = max_results
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    @abstractmethod
    def configured(self) -> bool:
        """Whether credentials for this platform are present"""

    @abstractmethod
    async def search(self, query: str) -> List[Candidate]:
        """Search the platform; raises SearchProviderError on failure"""

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        session = await self._get_session()
        try:
            async with session.get(url, params=params, timeout=self.timeout) as response:
                if response.status != 200:
                    raise SearchProviderError(
                        self.platform.value,
                        f"HTTP {response.status} from {url}",
                        status=response.status,
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SearchProviderError(self.platform.value, f"request failed: {e}") from e

    def _malformed(self, error: Exception) -> SearchProviderError:
        logger.warning("Malformed search response", platform=self.platform.value, error=repr(error))
        return SearchProviderError(self.platform.value, "malformed response")

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class YouTubeSearchClient(SearchClient):
    """YouTube Data API v3: search for video ids, then fetch durations"""

    platform = Platform.YOUTUBE

    def __init__(self, api_key: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str) -> List[Candidate]:
        search_data = await self._get_json(
            YOUTUBE_SEARCH_URL,
            {
                "part": "snippet",
                "type": "video",
                "maxResults": self.max_results,
                "q": query,
                "key": self.api_key,
            },
        )

        try:
            video_ids = [
                item["id"]["videoId"]
                for item in search_data.get("items", [])
                if item.get("id", {}).get("videoId")
            ]
        except _MALFORMED_PAYLOAD as e:
            raise self._malformed(e) from e
        if not video_ids:
            return []

        details = await self._get_json(
            YOUTUBE_VIDEOS_URL,
            {
                "part": "contentDetails,snippet",
                "id": ",".join(video_ids),
                "key": self.api_key,
            },
        )

        try:
            return [self._to_candidate(video) for video in details.get("items", [])]
        except _MALFORMED_PAYLOAD as e:
            raise self._malformed(e) from e

    @staticmethod
    def _to_candidate(video: Dict[str, Any]) -> Candidate:
        video_id = video["id"]
        snippet = video.get("snippet", {})
        thumbnails = snippet.get("thumbnails", {})
        thumbnail = (thumbnails.get("high") or thumbnails.get("default") or {}).get("url")

        return Candidate(
            platform=Platform.YOUTUBE,
            external_id=video_id,
            title=snippet.get("title", ""),
            artist=snippet.get("channelTitle", ""),
            duration=parse_iso8601_duration(video.get("contentDetails", {}).get("duration")),
            url=youtube_watch_url(video_id),
            embed_url=youtube_embed_url(video_id),
            thumbnail_url=thumbnail,
        )


class SoundCloudSearchClient(SearchClient):
    """
    SoundCloud public API search.

    Client ids are tried in order; an id rejected with 401/403 is skipped
    for the rest of the process.
    """

    platform = Platform.SOUNDCLOUD

    def __init__(self, client_ids: Iterable[str], **kwargs):
        super().__init__(**kwargs)
        self.client_ids = [client_id for client_id in client_ids if client_id]
        self._rejected: set = set()

    @property
    def configured(self) -> bool:
        return any(client_id not in self._rejected for client_id in self.client_ids)

    async def search(self, query: str) -> List[Candidate]:
        last_error: Optional[SearchProviderError] = None

        for client_id in self.client_ids:
            if client_id in self._rejected:
                continue
            try:
                data = await self._get_json(
                    SOUNDCLOUD_TRACKS_URL,
                    {"q": query, "client_id": client_id, "limit": self.max_results},
                )
            except SearchProviderError as e:
                if e.status in (401, 403):
                    logger.warning(
                        "SoundCloud client id rejected, trying next",
                        client_id=client_id[:8],
                        status=e.status,
                    )
                    self._rejected.add(client_id)
                    last_error = e
                    continue
                raise

            try:
                tracks = data.get("collection", []) if isinstance(data, dict) else data
                tracks = tracks[: self.max_results]
                previews = await asyncio.gather(
                    *(self._preview_url(track, client_id) for track in tracks)
                )
                return [self._to_candidate(track, preview) for track, preview in zip(tracks, previews)]
            except _MALFORMED_PAYLOAD as e:
                raise self._malformed(e) from e

        raise last_error or SearchProviderError(self.platform.value, "no usable client id")

    async def _preview_url(self, track: Dict[str, Any], client_id: str) -> Optional[str]:
        transcodings = (track.get("media") or {}).get("transcodings") or []
        progressive = next(
            (
                t for t in transcodings
                if t.get("format", {}).get("mime_type") == "audio/mpeg"
                and t.get("format", {}).get("protocol") == "progressive"
            ),
            None,
        )
        if not progressive:
            return None

        try:
            stream = await self._get_json(progressive["url"], {"client_id": client_id})
        except SearchProviderError as e:
            logger.debug("SoundCloud stream url unavailable", track_id=track.get("id"), error=str(e))
            return None
        return stream.get("url") if isinstance(stream, dict) else None

    @staticmethod
    def _to_candidate(track: Dict[str, Any], preview_url: Optional[str]) -> Candidate:
        user = track.get("user") or {}
        return Candidate(
            platform=Platform.SOUNDCLOUD,
            external_id=str(track["id"]),
            title=track.get("title", ""),
            artist=user.get("username", ""),
            duration=int(track.get("duration") or 0) // 1000,
            url=track.get("permalink_url", ""),
            preview_url=preview_url,
            thumbnail_url=track.get("artwork_url") or user.get("avatar_url"),
        )


class CandidateSearchAdapter:
    """
    ``search(platform, query)`` over the configured platform clients.

    Never raises: provider errors, open circuits and missing credentials
    all yield an empty list (or one placeholder when ``placeholders`` is on).
    """

    def __init__(
        self,
        clients: Iterable[SearchClient],
        placeholders: bool = False,
        failure_threshold: int = 5,
        circuit_timeout_seconds: int = 60,
    ):
        self.clients: Dict[Platform, SearchClient] = {client.platform: client for client in clients}
        self.placeholders = placeholders
        self.breakers: Dict[Platform, CircuitBreaker] = {
            platform: CircuitBreaker(
                name=f"search:{platform.value}",
                failure_threshold=failure_threshold,
                timeout_seconds=circuit_timeout_seconds,
            )
            for platform in self.clients
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "CandidateSearchAdapter":
        common = {
            "max_results": settings.search_max_results,
            "timeout_seconds": settings.search_timeout_seconds,
        }
        return cls(
            clients=[
                YouTubeSearchClient(settings.youtube_api_key, **common),
                SoundCloudSearchClient(settings.soundcloud_client_id_list, **common),
            ],
            placeholders=settings.placeholder_results,
            failure_threshold=settings.circuit_failure_threshold,
            circuit_timeout_seconds=settings.circuit_timeout_seconds,
        )

    @property
    def platforms(self) -> List[Platform]:
        return list(self.clients)

    async def search(self, platform: Platform, query: str) -> List[Candidate]:
        client = self.clients.get(platform)
        if client is None:
            return []

        if not client.configured:
            logger.warning("Search platform not configured", platform=platform.value)
            search_requests_total.labels(platform=platform.value, status="skipped").inc()
            return self._placeholder(platform, query)

        try:
            candidates = await self.breakers[platform].call(client.search, query)
        except CircuitOpenError:
            search_requests_total.labels(platform=platform.value, status="circuit_open").inc()
            return []
        except SearchProviderError as e:
            logger.warning("Search provider failed", platform=platform.value, query=query, error=str(e))
            search_requests_total.labels(platform=platform.value, status="error").inc()
            return self._placeholder(platform, query)

        search_requests_total.labels(platform=platform.value, status="success").inc()
        logger.debug("Search completed", platform=platform.value, query=query, results=len(candidates))
        return candidates

    def _placeholder(self, platform: Platform, query: str) -> List[Candidate]:
        if not self.placeholders:
            return []

        artist, _, title = query.partition(" - ")
        digest = hashlib.md5(f"{platform.value}:{query}".encode()).hexdigest()[:10]
        if platform == Platform.YOUTUBE:
            url = f"https://www.youtube.com/results?search_query={quote_plus(query)}"
        else:
            url = f"https://soundcloud.com/search?q={quote_plus(query)}"

        return [
            Candidate(
                platform=platform,
                external_id=f"placeholder-{digest}",
                title=title or query,
                artist=artist if title else "Unknown Artist",
                duration=0,
                url=url,
                source=CandidateSource.SEARCH,
                is_placeholder=True,
            )
        ]

    async def close(self) -> None:
        for client in self.clients.values():
            await client.close()


def youtube_watch_url(video_id: str) -> str:
    return f"https://youtube.com/watch?v={video_id}"


def youtube_embed_url(video_id: str) -> str:
    return f"https://www.youtube.com/embed/{video_id}"
