"""
Match orchestrator

Tiered lookup for one (release, track index) key:

    cache -> database (back-fills cache) -> fresh resolution -> auto-approve
    -> persist -> cache

Only MissingInputError escapes ``resolve``; tier outages degrade to the next
tier or to the "none" sentinel. Admin writes (approve/reject/clear) persist
first and treat the cache as best effort.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog
from prometheus_client import Counter, Histogram

from .cache import DEFAULT_TTL_SECONDS, MatchCache
from .config import Settings
from .errors import CacheUnavailableError, InvalidMatchError, MissingInputError, PersistenceUnavailableError
from .models import CatalogTrack, EmbeddedVideo, MatchRecord, MatchSource
from .resolution import MatchResolutionEngine
from .store import MatchStore

logger = structlog.get_logger(__name__)

resolutions_total = Counter(
    "audio_match_resolutions_total",
    "Match lookups by the tier that answered",
    ["source"],
)

persistence_write_failures_total = Counter(
    "audio_match_persistence_write_failures_total",
    "Auto-approved matches that could not be persisted",
)

resolution_seconds = Histogram(
    "audio_match_resolution_seconds",
    "Time spent in resolve()",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchOrchestrator:
    def __init__(
        self,
        cache: MatchCache,
        store: MatchStore,
        engine: MatchResolutionEngine,
        cache_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        single_flight: bool = False,
        single_flight_timeout: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cache = cache
        self.store = store
        self.engine = engine
        self.cache_ttl_seconds = cache_ttl_seconds
        self.single_flight = single_flight
        self.single_flight_timeout = single_flight_timeout
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cache: MatchCache,
        store: MatchStore,
        engine: MatchResolutionEngine,
    ) -> "MatchOrchestrator":
        return cls(
            cache,
            store,
            engine,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            single_flight=settings.single_flight,
            single_flight_timeout=settings.single_flight_timeout,
        )

    async def resolve(
        self,
        release_id: int,
        track_index: int,
        admin_id: str,
        release_title: Optional[str] = None,
        release_artist: Optional[str] = None,
        track: Optional[CatalogTrack] = None,
        embedded_videos: Optional[Iterable[EmbeddedVideo]] = None,
    ) -> MatchRecord:
        """
        Return the match for a track, computing and auto-approving it on a full miss.

        The returned record's ``source`` names the tier that answered. A fresh
        computation needs ``release_title``, ``release_artist`` and ``track``;
        without them a full miss raises MissingInputError.
        """
        log = logger.bind(release_id=release_id, track_index=track_index)
        started = time.perf_counter()
        try:
            cached = await self._cache_get(release_id, track_index)
            if cached is not None:
                log.debug("Match served from cache")
                resolutions_total.labels(source=MatchSource.CACHE.value).inc()
                return cached

            stored = await self._store_get(release_id, track_index)
            if stored is not None:
                log.debug("Match served from database, back-filling cache")
                await self._cache_set(stored)
                resolutions_total.labels(source=MatchSource.DATABASE.value).inc()
                return stored

            if not release_title or not release_artist or track is None:
                raise MissingInputError(
                    f"No stored match for release {release_id} track {track_index}; "
                    "release title, release artist and track are required to compute one"
                )

            if not self.single_flight:
                return await self._compute(
                    release_id, track_index, admin_id, release_title, release_artist, track, embedded_videos
                )

            async with self.cache.single_flight(release_id, track_index, self.single_flight_timeout) as locked:
                if locked:
                    # Another caller may have finished while we waited
                    cached = await self._cache_get(release_id, track_index)
                    if cached is not None:
                        resolutions_total.labels(source=MatchSource.CACHE.value).inc()
                        return cached
                return await self._compute(
                    release_id, track_index, admin_id, release_title, release_artist, track, embedded_videos
                )
        finally:
            resolution_seconds.observe(time.perf_counter() - started)

    async def _compute(
        self,
        release_id: int,
        track_index: int,
        admin_id: str,
        release_title: str,
        release_artist: str,
        track: CatalogTrack,
        embedded_videos: Optional[Iterable[EmbeddedVideo]],
    ) -> MatchRecord:
        log = logger.bind(release_id=release_id, track_index=track_index)

        result = await self.engine.find_matches(
            release_id, release_title, release_artist, [track], embedded_videos
        )
        candidates = result.matches[0].candidates if result.matches else []
        best = next((c for c in candidates if not c.is_placeholder), None)

        if best is None:
            log.info("No audio match found", candidates=len(candidates))
            resolutions_total.labels(source="none").inc()
            return MatchRecord.no_match(release_id, track_index)

        record = MatchRecord(
            platform=best.platform.value,
            match_url=best.url,
            confidence=best.confidence,
            approved=True,
            verified_by=admin_id,
            verified_at=self._clock(),
            source=MatchSource.COMPUTED,
            release_id=release_id,
            track_index=track_index,
        )
        log.info(
            "Auto-approved best candidate",
            platform=record.platform,
            confidence=record.confidence,
            tier=best.tier.value if best.tier else None,
        )

        try:
            stored = await self.store.upsert(record)
        except PersistenceUnavailableError as e:
            # Cache stays a mirror of the database, so nothing is cached either
            persistence_write_failures_total.inc()
            log.warning("Auto-approved match not persisted", degraded=True, error=str(e))
        else:
            record.verified_at = stored.verified_at or record.verified_at
            await self._cache_set(record)

        resolutions_total.labels(source=MatchSource.COMPUTED.value).inc()
        return record

    async def approve(
        self,
        release_id: int,
        track_index: int,
        platform: str,
        url: str,
        confidence: int,
        admin_id: str,
    ) -> MatchRecord:
        """
        Manually approve a match.

        Raises InvalidMatchError for a confidence outside 0-100 and
        PersistenceUnavailableError if the match cannot be stored.
        """
        if not 0 <= confidence <= 100:
            raise InvalidMatchError(f"confidence must be within 0-100, got {confidence}")

        stored = await self.store.upsert(
            MatchRecord(
                platform=platform,
                match_url=url,
                confidence=confidence,
                approved=True,
                verified_by=admin_id,
                release_id=release_id,
                track_index=track_index,
            )
        )
        await self._cache_set(stored)

        logger.info(
            "Match approved",
            release_id=release_id,
            track_index=track_index,
            platform=platform,
            admin_id=admin_id,
        )
        return stored.with_source(MatchSource.DATABASE)

    async def reject(
        self,
        release_id: int,
        track_index: int,
        admin_id: str,
        better_match: Optional[Mapping[str, Any]] = None,
    ) -> Optional[MatchRecord]:
        """Drop the current match; approve ``better_match`` ({platform, url, confidence}) if given"""
        await self.clear(release_id, track_index)
        logger.info(
            "Match rejected",
            release_id=release_id,
            track_index=track_index,
            admin_id=admin_id,
            replaced=better_match is not None,
        )

        if not better_match:
            return None

        return await self.approve(
            release_id,
            track_index,
            better_match["platform"],
            better_match["url"],
            int(better_match["confidence"]),
            admin_id,
        )

    async def clear(self, release_id: int, track_index: int) -> None:
        try:
            await self.cache.delete(release_id, track_index)
        except CacheUnavailableError as e:
            logger.warning("Cache delete failed", release_id=release_id, track_index=track_index, error=str(e))

        deleted = await self.store.delete(release_id, track_index)
        logger.info("Match cleared", release_id=release_id, track_index=track_index, existed=deleted)

    async def matches_for_release(self, release_id: int) -> List[MatchRecord]:
        return await self.store.list_for_release(release_id)

    async def clear_release(self, release_id: int) -> int:
        """Remove every cached and stored match of a release; returns stored rows removed"""
        try:
            await self.cache.clear_release(release_id)
        except CacheUnavailableError as e:
            logger.warning("Cache release clear failed", release_id=release_id, error=str(e))

        removed = await self.store.delete_release(release_id)
        logger.info("Release matches cleared", release_id=release_id, removed=removed)
        return removed

    async def health_check(self) -> Dict[str, Any]:
        cache_up = await self.cache.ping()
        store_up = await self.store.ping()

        cache_stats = None
        if cache_up:
            try:
                cache_stats = await self.cache.stats()
            except CacheUnavailableError as e:
                logger.warning("Cache stats unavailable", error=str(e))

        return {"cache_up": cache_up, "store_up": store_up, "cache_stats": cache_stats}

    async def _cache_get(self, release_id: int, track_index: int) -> Optional[MatchRecord]:
        try:
            return await self.cache.get(release_id, track_index)
        except CacheUnavailableError as e:
            logger.warning("Cache read failed, treating as miss", release_id=release_id, track_index=track_index, error=str(e))
            return None

    async def _store_get(self, release_id: int, track_index: int) -> Optional[MatchRecord]:
        try:
            return await self.store.get(release_id, track_index)
        except PersistenceUnavailableError as e:
            logger.warning("Database read failed, computing instead", release_id=release_id, track_index=track_index, error=str(e))
            return None

    async def _cache_set(self, record: MatchRecord) -> None:
        try:
            await self.cache.set(record.release_id, record.track_index, record, self.cache_ttl_seconds)
        except CacheUnavailableError as e:
            logger.warning(
                "Cache write failed",
                release_id=record.release_id,
                track_index=record.track_index,
                error=str(e),
            )
