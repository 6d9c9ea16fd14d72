"""
Match resolution engine

For up to ``max_tracks`` catalog tracks of a release, gathers candidates
(catalog-embedded videos first, then a parallel search on every platform),
scores each against its track and buckets them by confidence tier.
"""

import asyncio
import re
from dataclasses import asdict
from typing import Iterable, List, Optional, Sequence

import structlog

from .config import Settings
from .models import (
    AudioMatchResult,
    Candidate,
    CandidateSource,
    CatalogTrack,
    ConfidenceTier,
    EmbeddedVideo,
    MatchSummary,
    Platform,
    TrackMatch,
)
from .scoring import DEFAULT_TRACK_DURATION, classify, match_confidence, parse_track_duration
from .search_clients import CandidateSearchAdapter, youtube_embed_url

logger = structlog.get_logger(__name__)

MAX_TRACKS_PER_RELEASE = 10

_YOUTUBE_ID_PATTERNS = [
    re.compile(r"(?:https?://)?(?:www\.)?youtube\.com/watch\?v=([^&\n?#]+)"),
    re.compile(r"(?:https?://)?(?:www\.)?youtube\.com/embed/([^&\n?#]+)"),
    re.compile(r"(?:https?://)?(?:www\.)?youtu\.be/([^&\n?#]+)"),
    re.compile(r"(?:https?://)?(?:www\.)?youtube\.com/v/([^&\n?#]+)"),
]


def extract_youtube_video_id(url: str) -> Optional[str]:
    for pattern in _YOUTUBE_ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    return None


class MatchResolutionEngine:
    """Produces one TrackMatch per processed catalog track; never aborts a batch"""

    def __init__(
        self,
        search_adapter: CandidateSearchAdapter,
        max_tracks: int = MAX_TRACKS_PER_RELEASE,
        default_duration: int = DEFAULT_TRACK_DURATION,
        embedded_boost: int = 15,
        embedded_min_confidence: int = 65,
    ):
        self.search_adapter = search_adapter
        self.max_tracks = max_tracks
        self.default_duration = default_duration
        self.embedded_boost = embedded_boost
        self.embedded_min_confidence = embedded_min_confidence

    @classmethod
    def from_settings(cls, settings: Settings, search_adapter: CandidateSearchAdapter) -> "MatchResolutionEngine":
        return cls(
            search_adapter,
            max_tracks=settings.max_tracks_per_release,
            default_duration=settings.default_track_duration,
            embedded_boost=settings.embedded_confidence_boost,
            embedded_min_confidence=settings.embedded_min_confidence,
        )

    async def find_matches(
        self,
        release_id: int,
        release_title: str,
        release_artist: str,
        tracks: Sequence[CatalogTrack],
        embedded_videos: Optional[Iterable[EmbeddedVideo]] = None,
    ) -> AudioMatchResult:
        videos = list(embedded_videos or [])
        to_process = list(tracks)[: self.max_tracks]

        logger.info(
            "Resolving audio matches",
            release_id=release_id,
            release_title=release_title,
            total_tracks=len(tracks),
            processed_tracks=len(to_process),
            embedded_videos=len(videos),
        )

        matches = []
        for index, track in enumerate(to_process):
            matches.append(await self._match_track(index, track, release_artist, videos))

        summary = summarize(matches)
        logger.info("Audio match resolution complete", release_id=release_id, **asdict(summary))

        return AudioMatchResult(
            release_id=release_id,
            total_tracks=len(tracks),
            processed_tracks=len(to_process),
            matches=matches,
            summary=summary,
        )

    async def _match_track(
        self,
        index: int,
        track: CatalogTrack,
        release_artist: str,
        videos: List[EmbeddedVideo],
    ) -> TrackMatch:
        duration = parse_track_duration(track.duration, self.default_duration)
        artist = track.primary_artist or release_artist

        candidates = self._embedded_candidates(track.title, artist, duration, release_artist, videos)

        best_embedded = max(candidates, key=lambda c: c.confidence, default=None)
        if best_embedded is None or best_embedded.tier == ConfidenceTier.LOW:
            found = await self._search_all(f"{artist} - {track.title}")
            for candidate in found:
                self._score(candidate, track.title, artist, duration)
            candidates.extend(found)
        else:
            logger.debug(
                "Embedded video matched, skipping search",
                track_index=index,
                confidence=best_embedded.confidence,
            )

        ranked = sorted(candidates, key=lambda c: c.confidence, reverse=True)

        return TrackMatch(
            track_index=index,
            position=track.position,
            title=track.title,
            artist=artist,
            duration_seconds=duration,
            candidates=ranked,
            auto_approved=[c for c in ranked if c.tier == ConfidenceTier.HIGH],
            needs_review=[c for c in ranked if c.tier == ConfidenceTier.MEDIUM],
            rejected=[c for c in ranked if c.tier == ConfidenceTier.LOW],
        )

    def _embedded_candidates(
        self,
        title: str,
        artist: str,
        duration: int,
        release_artist: str,
        videos: List[EmbeddedVideo],
    ) -> List[Candidate]:
        candidates = []
        for video in videos:
            video_id = extract_youtube_video_id(video.uri)
            if not video_id:
                continue

            candidate = Candidate(
                platform=Platform.YOUTUBE,
                external_id=video_id,
                title=video.title,
                artist=release_artist,
                duration=video.duration,
                url=video.uri,
                embed_url=youtube_embed_url(video_id),
                source=CandidateSource.CATALOG_EMBEDDED,
            )
            self._score(candidate, title, artist, duration, boost=self.embedded_boost)
            if candidate.confidence >= self.embedded_min_confidence:
                candidates.append(candidate)
        return candidates

    async def _search_all(self, query: str) -> List[Candidate]:
        platforms = self.search_adapter.platforms
        results = await asyncio.gather(
            *(self._search_platform(platform, query) for platform in platforms)
        )
        return [candidate for found in results for candidate in found]

    async def _search_platform(self, platform: Platform, query: str) -> List[Candidate]:
        try:
            return await self.search_adapter.search(platform, query)
        except Exception as e:
            logger.error("Platform search raised, continuing without it", platform=platform.value, error=str(e))
            return []

    @staticmethod
    def _score(candidate: Candidate, title: str, artist: str, duration: int, boost: int = 0) -> None:
        candidate.confidence = match_confidence(
            title,
            artist,
            duration,
            candidate.title,
            candidate.artist,
            candidate.duration,
            boost=boost,
        )
        candidate.tier = classify(candidate.confidence)


def summarize(matches: Iterable[TrackMatch]) -> MatchSummary:
    """Tier counts over all candidates, plus per-track best-match counts"""
    summary = MatchSummary()
    for match in matches:
        summary.high_confidence += len(match.auto_approved)
        summary.medium_confidence += len(match.needs_review)
        summary.low_confidence += len(match.rejected)

        best = match.best_match
        if best is None:
            summary.no_matches += 1
            continue
        if best.source == CandidateSource.CATALOG_EMBEDDED:
            summary.catalog_matches += 1
        else:
            summary.search_matches += 1
        if best.tier == ConfidenceTier.HIGH:
            summary.auto_approved += 1
        elif best.tier == ConfidenceTier.MEDIUM:
            summary.needs_review += 1
    return summary
