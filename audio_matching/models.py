"""
Domain types for catalog tracks, audio candidates and resolved matches
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


NO_MATCH_PLATFORM = "none"


class Platform(str, Enum):
    """Audio platforms searched for candidates"""
    YOUTUBE = "youtube"
    SOUNDCLOUD = "soundcloud"


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CandidateSource(str, Enum):
    """Where a candidate came from"""
    SEARCH = "search"
    CATALOG_EMBEDDED = "catalog_embedded"


class MatchSource(str, Enum):
    """Which tier satisfied a lookup"""
    CACHE = "cache"
    DATABASE = "database"
    COMPUTED = "computed"


@dataclass(frozen=True)
class CatalogTrack:
    """A track of a cataloged release, as supplied by the catalog provider"""
    position: str
    title: str
    duration: str = ""  # "M:SS"
    artists: List[str] = field(default_factory=list)

    @property
    def primary_artist(self) -> Optional[str]:
        return self.artists[0] if self.artists else None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CatalogTrack":
        """Build from a catalog payload; artists may be names or {"name": ...} objects"""
        artists = []
        for artist in data.get("artists") or []:
            name = artist.get("name") if isinstance(artist, Mapping) else artist
            if name:
                artists.append(str(name))
        return cls(
            position=str(data.get("position") or ""),
            title=str(data.get("title") or ""),
            duration=str(data.get("duration") or ""),
            artists=artists,
        )


@dataclass(frozen=True)
class EmbeddedVideo:
    """A video the catalog already links to a release"""
    uri: str
    title: str
    duration: int = 0  # seconds
    embed: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EmbeddedVideo":
        return cls(
            uri=str(data.get("uri") or ""),
            title=str(data.get("title") or ""),
            duration=int(data.get("duration") or 0),
            embed=bool(data.get("embed", True)),
            description=str(data.get("description") or ""),
        )


@dataclass
class Candidate:
    """One external audio result considered for a catalog track"""
    platform: Platform
    external_id: str
    title: str
    artist: str
    duration: int  # seconds
    url: str
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None
    embed_url: Optional[str] = None
    confidence: int = 0
    tier: Optional[ConfidenceTier] = None
    source: CandidateSource = CandidateSource.SEARCH
    is_placeholder: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["platform"] = self.platform.value
        data["tier"] = self.tier.value if self.tier else None
        data["source"] = self.source.value
        return data


@dataclass
class TrackMatch:
    """All scored candidates for one catalog track, bucketed by tier"""
    track_index: int
    position: str
    title: str
    artist: str
    duration_seconds: int
    candidates: List[Candidate] = field(default_factory=list)
    auto_approved: List[Candidate] = field(default_factory=list)
    needs_review: List[Candidate] = field(default_factory=list)
    rejected: List[Candidate] = field(default_factory=list)

    @property
    def best_match(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "track_index": self.track_index,
            "position": self.position,
            "title": self.title,
            "artist": self.artist,
            "duration_seconds": self.duration_seconds,
            "candidates": [c.to_dict() for c in self.candidates],
            "auto_approved": len(self.auto_approved),
            "needs_review": len(self.needs_review),
            "rejected": len(self.rejected),
        }


@dataclass
class MatchSummary:
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    auto_approved: int = 0
    needs_review: int = 0
    catalog_matches: int = 0
    search_matches: int = 0
    no_matches: int = 0


@dataclass
class AudioMatchResult:
    """Outcome of one resolution batch for a release"""
    release_id: int
    total_tracks: int
    processed_tracks: int
    matches: List[TrackMatch]
    summary: MatchSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "release_id": self.release_id,
            "total_tracks": self.total_tracks,
            "processed_tracks": self.processed_tracks,
            "matches": [m.to_dict() for m in self.matches],
            "summary": asdict(self.summary),
        }


@dataclass
class MatchRecord:
    """
    The reviewable decision for one (release, track index) pair.

    ``source`` is computed at read time and never persisted.
    """
    platform: str
    match_url: str
    confidence: int
    approved: bool
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    source: MatchSource = MatchSource.COMPUTED
    release_id: Optional[int] = None
    track_index: Optional[int] = None

    @classmethod
    def no_match(cls, release_id: Optional[int] = None, track_index: Optional[int] = None) -> "MatchRecord":
        return cls(
            platform=NO_MATCH_PLATFORM,
            match_url="",
            confidence=0,
            approved=False,
            source=MatchSource.COMPUTED,
            release_id=release_id,
            track_index=track_index,
        )

    @property
    def is_match(self) -> bool:
        return self.platform != NO_MATCH_PLATFORM

    def with_source(self, source: MatchSource) -> "MatchRecord":
        return replace(self, source=source)

    def to_cache_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "match_url": self.match_url,
            "confidence": self.confidence,
            "approved": self.approved,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }

    @classmethod
    def from_cache_dict(
        cls,
        data: Mapping[str, Any],
        release_id: Optional[int] = None,
        track_index: Optional[int] = None,
    ) -> "MatchRecord":
        verified_at = data.get("verified_at")
        return cls(
            platform=data["platform"],
            match_url=data["match_url"],
            confidence=int(data["confidence"]),
            approved=bool(data["approved"]),
            verified_by=data.get("verified_by"),
            verified_at=datetime.fromisoformat(verified_at) if verified_at else None,
            source=MatchSource.CACHE,
            release_id=release_id,
            track_index=track_index,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MatchRecord":
        """Build from a ``track_matches`` row"""
        return cls(
            platform=row["platform"],
            match_url=row["match_url"],
            confidence=int(row["confidence"]),
            approved=row["approved"],
            verified_by=row["verified_by"],
            verified_at=row["verified_at"],
            source=MatchSource.DATABASE,
            release_id=row["release_id"],
            track_index=row["track_index"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_cache_dict()
        data["source"] = self.source.value
        data["release_id"] = self.release_id
        data["track_index"] = self.track_index
        return data
