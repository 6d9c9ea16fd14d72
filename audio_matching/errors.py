"""
Exception taxonomy for audio matching.

Only MissingInputError is meant to reach callers of ``resolve``; the tier
errors are raised by the cache/store adapters and recovered by the
orchestrator.
"""

from typing import Optional


class AudioMatchError(Exception):
    """Base class for all audio matching errors"""


class MissingInputError(AudioMatchError):
    """Fresh computation requested without release title, artist and track"""


class SearchProviderError(AudioMatchError):
    """A platform search failed"""

    def __init__(self, platform: str, message: str, status: Optional[int] = None):
        self.platform = platform
        self.status = status
        super().__init__(f"{platform}: {message}")


class CacheUnavailableError(AudioMatchError):
    """Cache tier read or write failed"""


class PersistenceUnavailableError(AudioMatchError):
    """Persistence tier read or write failed"""


class InvalidMatchError(AudioMatchError):
    """A manually supplied match is out of range"""
