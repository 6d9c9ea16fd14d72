"""
Audio Matching
==============

Matches catalog tracks of vinyl releases to playable audio on YouTube and
SoundCloud, and keeps reviewed matches in a Redis cache backed by PostgreSQL.

- Fuzzy confidence scoring of candidates (title, artist, duration)
- Parallel per-platform search with isolated failures
- Tiered lookup: cache, database, fresh resolution with auto-approval
"""

from .cache import MatchCache, RedisMatchCache
from .config import Settings, get_settings
from .errors import (
    AudioMatchError,
    CacheUnavailableError,
    InvalidMatchError,
    MissingInputError,
    PersistenceUnavailableError,
    SearchProviderError,
)
from .models import (
    AudioMatchResult,
    Candidate,
    CandidateSource,
    CatalogTrack,
    ConfidenceTier,
    EmbeddedVideo,
    MatchRecord,
    MatchSource,
    Platform,
    TrackMatch,
)
from .orchestrator import MatchOrchestrator
from .resolution import MatchResolutionEngine
from .scoring import classify, duration_similarity, match_confidence, string_similarity
from .search_clients import CandidateSearchAdapter, SoundCloudSearchClient, YouTubeSearchClient
from .store import MatchStore, PostgresMatchStore

__all__ = [
    'AudioMatchError',
    'AudioMatchResult',
    'CacheUnavailableError',
    'Candidate',
    'CandidateSearchAdapter',
    'CandidateSource',
    'CatalogTrack',
    'ConfidenceTier',
    'EmbeddedVideo',
    'InvalidMatchError',
    'MatchCache',
    'MatchOrchestrator',
    'MatchRecord',
    'MatchResolutionEngine',
    'MatchSource',
    'MatchStore',
    'MissingInputError',
    'PersistenceUnavailableError',
    'Platform',
    'PostgresMatchStore',
    'RedisMatchCache',
    'SearchProviderError',
    'Settings',
    'SoundCloudSearchClient',
    'TrackMatch',
    'YouTubeSearchClient',
    'classify',
    'duration_similarity',
    'get_settings',
    'match_confidence',
    'string_similarity',
]

__version__ = '1.0.0'
